"""Shared fixtures for the continuity test suite.

Each test gets its own file-backed SQLite database so the importer's
per-lease sessions see committed data the same way they would on Postgres.
"""

import os

# Must be set before rentroll.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rentroll.database import Base
from rentroll.models import (
    IncomeDocument,
    IncomeVerification,
    Lease,
    Property,
    RentRoll,
    Resident,
    Tenancy,
    Unit,
)
from rentroll.schemas import (
    DocumentStatus,
    DocumentType,
    VerificationReason,
    VerificationStatus,
    to_decimal,
)

LEASE_START = date(2024, 1, 1)
LEASE_END = date(2024, 12, 31)
FINALIZED_AT = datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'rentroll.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def prop(db):
    property_ = Property(name="Maple Court")
    db.add(property_)
    db.flush()
    return property_


@pytest.fixture
def unit(db, prop):
    unit = Unit(property_id=prop.id, unit_number="101")
    db.add(unit)
    db.flush()
    return unit


# =============================================================================
# Builders
# =============================================================================


def add_rent_roll(db, prop, as_of: datetime) -> RentRoll:
    rent_roll = RentRoll(property_id=prop.id, date=as_of)
    db.add(rent_roll)
    db.flush()
    return rent_roll


def add_lease(
    db,
    unit,
    residents,
    rent_roll=None,
    rent="1500.00",
    start=LEASE_START,
    end=LEASE_END,
    name="Lease",
) -> Lease:
    """Persist a lease. With a rent roll it gets a tenancy; without, it is a future lease.

    residents is a list of (name, reported income) pairs.
    """
    lease = Lease(
        unit_id=unit.id,
        name=name,
        lease_start_date=start,
        lease_end_date=end,
        lease_rent=to_decimal(rent),
        residents=[
            Resident(name=resident_name, annualized_income=to_decimal(income))
            for resident_name, income in residents
        ],
    )
    db.add(lease)
    db.flush()

    if rent_roll is not None:
        db.add(Tenancy(lease_id=lease.id, rent_roll_id=rent_roll.id))
        db.flush()
    return lease


def add_verification(
    db,
    lease,
    verified_incomes=None,
    status=VerificationStatus.FINALIZED,
    finalized_at=FINALIZED_AT,
) -> IncomeVerification:
    """Verify every resident of a lease, one W2 each.

    verified_incomes maps resident name to verified income; residents not
    listed are verified at their reported income.
    """
    verified_incomes = verified_incomes or {}
    is_final = status == VerificationStatus.FINALIZED

    verification = IncomeVerification(
        lease_id=lease.id,
        status=status,
        reason=VerificationReason.ANNUAL_RECERTIFICATION,
        finalized_at=finalized_at if is_final else None,
        lease_year=lease.lease_start_date.year if lease.lease_start_date else None,
        associated_lease_start=datetime.combine(lease.lease_start_date, datetime.min.time()),
        associated_lease_end=datetime.combine(lease.lease_end_date, datetime.min.time()),
    )
    db.add(verification)
    db.flush()

    total = Decimal(0)
    for resident in lease.residents:
        income = to_decimal(verified_incomes.get(resident.name, resident.annualized_income))
        resident.calculated_annualized_income = income
        resident.income_finalized = is_final
        resident.finalized_at = finalized_at if is_final else None
        total += income or Decimal(0)

        db.add(IncomeDocument(
            verification_id=verification.id,
            resident_id=resident.id,
            document_type=DocumentType.W2,
            status=DocumentStatus.COMPLETED,
            file_path=f"documents/{lease.id}/{resident.name.replace(' ', '_')}_w2.pdf",
            employee_name=resident.name,
            employer_name="Acme Corp",
            tax_year=2023,
            box1_wages=income,
            calculated_annualized_income=income,
        ))

    verification.calculated_verified_income = total
    db.flush()
    return verification
