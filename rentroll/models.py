"""SQLAlchemy models for rent roll verification continuity.

Data Architecture Overview:
- Every rent roll upload recreates its Lease and Resident rows; no key survives
- VerificationContinuity is the durable identity of "the same tenancy" within
  a unit, recognized by content signatures instead of ids
- VerificationSnapshot is an append-only join: one row per lease per upload

Key Concepts:
- Future lease: a Lease with no Tenancy row (signed, not yet in effect)
- Master verification: VerificationContinuity.master_verification_id, the single
  authoritative IncomeVerification of a lineage. Reassigned only through
  inheritance.set_master_verification
- Inherited documents reference the same file_path; files are never duplicated

References:
- See rentroll/schemas.py for enums and value objects
- See rentroll/continuity.py for the matching tiers
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import (
    DocumentStatus,
    DocumentType,
    VerificationReason,
    VerificationStatus,
)


class Property(Base):
    """A managed property that uploads rent rolls."""

    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    units: Mapped[list["Unit"]] = relationship("Unit", back_populates="property")
    rent_rolls: Mapped[list["RentRoll"]] = relationship("RentRoll", back_populates="property")

    def __repr__(self) -> str:
        return f"<Property {self.name}>"


class Unit(Base):
    """A rentable unit within a property."""

    __tablename__ = "units"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    unit_number: Mapped[str] = mapped_column(String(50), nullable=False)

    # Relationships
    property: Mapped["Property"] = relationship("Property", back_populates="units")
    leases: Mapped[list["Lease"]] = relationship("Lease", back_populates="unit")

    def __repr__(self) -> str:
        return f"<Unit {self.unit_number}>"


class RentRoll(Base):
    """One upload (snapshot) of a property's occupancy roster."""

    __tablename__ = "rent_rolls"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False, index=True
    )
    date: Mapped[datetime] = mapped_column(
        DateTime, nullable=False,
        doc="As-of date of the roster"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    property: Mapped["Property"] = relationship("Property", back_populates="rent_rolls")
    tenancies: Mapped[list["Tenancy"]] = relationship("Tenancy", back_populates="rent_roll")

    def __repr__(self) -> str:
        return f"<RentRoll {self.property_id} {self.date:%Y-%m-%d}>"


# =============================================================================
# LEASES AND RESIDENTS (recreated every upload)
# =============================================================================


class Lease(Base):
    """A lease on a unit.

    Rent roll leases get a Tenancy tying them to the upload that reported
    them. Leases without a tenancy are future leases: renewals or new move-ins
    entered ahead of the roster.
    """

    __tablename__ = "leases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("units.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    lease_start_date: Mapped[date | None] = mapped_column(Date)
    lease_end_date: Mapped[date | None] = mapped_column(Date)
    lease_rent: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    unit: Mapped["Unit"] = relationship("Unit", back_populates="leases")
    tenancy: Mapped["Tenancy | None"] = relationship(
        "Tenancy", back_populates="lease", uselist=False
    )
    residents: Mapped[list["Resident"]] = relationship(
        "Resident", back_populates="lease", order_by="Resident.created_at"
    )
    verifications: Mapped[list["IncomeVerification"]] = relationship(
        "IncomeVerification", back_populates="lease"
    )

    def __repr__(self) -> str:
        return f"<Lease {self.name}>"


class Tenancy(Base):
    """Links a lease to the rent roll upload that reported it."""

    __tablename__ = "tenancies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), unique=True, nullable=False
    )
    rent_roll_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rent_rolls.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    lease: Mapped["Lease"] = relationship("Lease", back_populates="tenancy")
    rent_roll: Mapped["RentRoll"] = relationship("RentRoll", back_populates="tenancies")


class Resident(Base):
    """A resident on a lease.

    annualized_income is the figure the rent roll reported.
    calculated_annualized_income is the figure verified from documents.
    """

    __tablename__ = "residents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    annualized_income: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        doc="Income as reported by the rent roll upload"
    )
    calculated_annualized_income: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2),
        doc="Income verified from supporting documents"
    )
    income_finalized: Mapped[bool] = mapped_column(Boolean, default=False)
    has_no_income: Mapped[bool] = mapped_column(Boolean, default=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    lease: Mapped["Lease"] = relationship("Lease", back_populates="residents")
    documents: Mapped[list["IncomeDocument"]] = relationship(
        "IncomeDocument", back_populates="resident"
    )

    def __repr__(self) -> str:
        return f"<Resident {self.name}>"


# =============================================================================
# INCOME VERIFICATION (owned by the verification workflow, copied from here)
# =============================================================================


class IncomeVerification(Base):
    """An income verification for a lease."""

    __tablename__ = "income_verifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), nullable=False, index=True
    )
    continuity_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("verification_continuities.id"), index=True,
        doc="Lineage this verification was created for (set by inheritance)"
    )
    status: Mapped[VerificationStatus] = mapped_column(
        SQLEnum(VerificationStatus), default=VerificationStatus.IN_PROGRESS, index=True
    )
    reason: Mapped[VerificationReason] = mapped_column(
        SQLEnum(VerificationReason), default=VerificationReason.ANNUAL_RECERTIFICATION
    )
    calculated_verified_income: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime)
    due_date: Mapped[datetime | None] = mapped_column(DateTime)
    lease_year: Mapped[int | None] = mapped_column(Integer)
    associated_lease_start: Mapped[datetime | None] = mapped_column(DateTime)
    associated_lease_end: Mapped[datetime | None] = mapped_column(DateTime)
    verification_period_start: Mapped[datetime | None] = mapped_column(DateTime)
    verification_period_end: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    lease: Mapped["Lease"] = relationship("Lease", back_populates="verifications")
    documents: Mapped[list["IncomeDocument"]] = relationship(
        "IncomeDocument", back_populates="verification"
    )

    def __repr__(self) -> str:
        return f"<IncomeVerification {self.id} {self.status}>"


class IncomeDocument(Base):
    """A supporting income document with extracted fields.

    file_path points into external storage. Inheritance creates new rows
    referencing the same path.
    """

    __tablename__ = "income_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    verification_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("income_verifications.id"), nullable=False, index=True
    )
    resident_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("residents.id"), nullable=False, index=True
    )
    document_type: Mapped[DocumentType] = mapped_column(SQLEnum(DocumentType), nullable=False)
    document_date: Mapped[datetime | None] = mapped_column(DateTime)
    upload_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    status: Mapped[DocumentStatus] = mapped_column(
        SQLEnum(DocumentStatus), default=DocumentStatus.UPLOADED
    )
    file_path: Mapped[str] = mapped_column(Text, nullable=False)

    # Extracted fields
    box1_wages: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    box3_ss_wages: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    box5_med_wages: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    employee_name: Mapped[str | None] = mapped_column(String(200))
    employer_name: Mapped[str | None] = mapped_column(String(200))
    tax_year: Mapped[int | None] = mapped_column(Integer)
    gross_pay_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    pay_frequency: Mapped[str | None] = mapped_column(String(20))
    pay_period_start_date: Mapped[datetime | None] = mapped_column(DateTime)
    pay_period_end_date: Mapped[datetime | None] = mapped_column(DateTime)
    calculated_annualized_income: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))

    # Relationships
    verification: Mapped["IncomeVerification"] = relationship(
        "IncomeVerification", back_populates="documents"
    )
    resident: Mapped["Resident"] = relationship("Resident", back_populates="documents")

    def __repr__(self) -> str:
        return f"<IncomeDocument {self.document_type} {self.file_path}>"


# =============================================================================
# CONTINUITY LEDGER
# =============================================================================


class VerificationContinuity(Base):
    """One lineage of the same real-world tenancy across uploads.

    Invariants:
    - At most one master verification at a time
    - lease_signature / structural_signature reflect the latest accepted lease
    - Never deleted
    """

    __tablename__ = "verification_continuities"
    __table_args__ = (
        Index("ix_continuity_unit_signature", "property_id", "unit_id", "lease_signature"),
        Index("ix_continuity_unit_structural", "property_id", "unit_id", "structural_signature"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    property_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("properties.id"), nullable=False
    )
    unit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("units.id"), nullable=False
    )
    lease_signature: Mapped[str] = mapped_column(
        String(64), nullable=False,
        doc="Full signature (dates, rent, names, incomes) of the latest accepted lease"
    )
    structural_signature: Mapped[str] = mapped_column(
        String(64), nullable=False,
        doc="Structural signature (no incomes) of the latest accepted lease"
    )
    master_verification_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey(
            "income_verifications.id",
            use_alter=True,
            name="fk_continuity_master_verification",
        ),
        doc="Authoritative verification for this lineage; null until verified"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    master_verification: Mapped["IncomeVerification | None"] = relationship(
        "IncomeVerification", foreign_keys=[master_verification_id], post_update=True
    )
    snapshots: Mapped[list["VerificationSnapshot"]] = relationship(
        "VerificationSnapshot", back_populates="continuity"
    )

    def __repr__(self) -> str:
        return f"<VerificationContinuity {self.unit_id} {self.lease_signature[:8]}>"


class VerificationSnapshot(Base):
    """Ties one upload's lease to a lineage. Append-only."""

    __tablename__ = "verification_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    continuity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("verification_continuities.id"), nullable=False, index=True
    )
    rent_roll_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("rent_rolls.id"), nullable=False, index=True
    )
    lease_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("leases.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationships
    continuity: Mapped["VerificationContinuity"] = relationship(
        "VerificationContinuity", back_populates="snapshots"
    )

    def __repr__(self) -> str:
        return f"<VerificationSnapshot {self.rent_roll_id} lease {self.lease_id}>"
