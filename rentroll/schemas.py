"""Pydantic schemas for verification continuity.

Schema Engineering Philosophy:
- Field descriptions document the matching contract between the rent roll
  importer, the continuity engine, and the reconciliation UI
- Validators normalize money and names at the boundary so signatures and
  discrepancy checks never see raw upload noise
- Business outcomes are values (ContinuityResult), never exceptions

Key Concepts:
- Snapshot: one ingestion event of a rent roll file
- Continuity: persistent identity linking a unit's leases across snapshots
- Master verification: the verification treated as authoritative for a lineage
- Future lease: a lease with no tenancy yet (signed renewal awaiting move-in)
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

if TYPE_CHECKING:
    from .models import Lease


# =============================================================================
# ENUMS: Canonical value sets shared with the ORM
# =============================================================================


class VerificationStatus(str, Enum):
    """Lifecycle of an income verification."""

    IN_PROGRESS = "IN_PROGRESS"
    FINALIZED = "FINALIZED"
    """Income reviewed and locked. Only finalized verifications are inherited
    from future leases."""
    OVERDUE = "OVERDUE"


class VerificationReason(str, Enum):
    """Why a verification was opened."""

    INITIAL_LEASE = "INITIAL_LEASE"
    ANNUAL_RECERTIFICATION = "ANNUAL_RECERTIFICATION"
    LEASE_RENEWAL = "LEASE_RENEWAL"
    INCOME_CHANGE = "INCOME_CHANGE"
    COMPLIANCE_AUDIT = "COMPLIANCE_AUDIT"


class DocumentType(str, Enum):
    """Supporting income document types."""

    W2 = "W2"
    PAYSTUB = "PAYSTUB"
    BANK_STATEMENT = "BANK_STATEMENT"
    OFFER_LETTER = "OFFER_LETTER"
    SOCIAL_SECURITY = "SOCIAL_SECURITY"


class DocumentStatus(str, Enum):
    """Processing state of an income document."""

    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class MatchType(str, Enum):
    """How a new lease was related to a future lease."""

    EXACT = "exact"
    STRUCTURAL = "structural"
    MANUAL_REVIEW = "manual_review"


class ContinuityOutcome(str, Enum):
    """Result of reconciling one uploaded lease."""

    INHERITED = "inherited"
    """Known lineage. The master verification (if any) carries forward."""

    DISCREPANCY_PENDING = "discrepancy_pending"
    """Structurally the same lease, but reported income drifted from verified
    income. A human decides which figure wins."""

    MANUAL_REVIEW_PENDING = "manual_review_pending"
    """Residents resemble a verified future lease closely enough to ask."""

    FRESH = "fresh"
    """No match. A new lineage starts with no master verification."""


# =============================================================================
# Normalization helpers
# =============================================================================


def normalize_name(raw_name: str | None) -> str:
    """Normalize a resident name for comparison: trimmed, lowercase."""
    if not raw_name:
        return ""
    return raw_name.strip().lower()


def to_decimal(value) -> Decimal | None:
    """Coerce a money value to Decimal, preserving None."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    # str() first so floats keep their printed value, not binary noise
    return Decimal(str(value))


# =============================================================================
# Lease snapshots (ephemeral, one reconciliation call)
# =============================================================================


class ResidentSnapshot(BaseModel):
    """One resident line from a rent roll upload."""

    name: str = Field(min_length=1, description="Resident name as reported")
    annualized_income: Decimal | None = Field(
        default=None,
        description="Reported annual income; missing income signs as 0"
    )

    @field_validator("annualized_income", mode="before")
    @classmethod
    def coerce_income(cls, v):
        return to_decimal(v)


class LeaseSnapshotRecord(BaseModel):
    """A lease as reported by one upload.

    lease_id is scoped to the current upload only: the next upload recreates
    the lease under a new id. Identity across uploads comes from signatures.
    """

    lease_id: UUID = Field(description="Lease row created for this upload")
    lease_name: str | None = Field(default=None)
    lease_start_date: date | None = Field(default=None)
    lease_end_date: date | None = Field(default=None)
    lease_rent: Decimal | None = Field(default=None, description="Monthly rent")
    residents: list[ResidentSnapshot] = Field(
        default_factory=list,
        description="Ordered as uploaded; signatures sort internally"
    )

    @field_validator("lease_rent", mode="before")
    @classmethod
    def coerce_rent(cls, v):
        return to_decimal(v)

    @field_validator("lease_start_date", "lease_end_date", mode="before")
    @classmethod
    def drop_time(cls, v):
        """Dates compare by calendar day; timestamps from ORM rows are truncated."""
        if isinstance(v, datetime):
            return v.date()
        return v

    @classmethod
    def from_lease(
        cls,
        lease: "Lease",
        income_source: Literal["uploaded", "verified"] = "uploaded",
    ) -> "LeaseSnapshotRecord":
        """Build a snapshot from a persisted lease and its residents.

        income_source="uploaded" reads the rent roll figure (annualized_income);
        "verified" reads calculated_annualized_income, which is how future
        leases with finalized verifications are compared.
        """
        residents = []
        for resident in lease.residents:
            if income_source == "verified":
                income = resident.calculated_annualized_income
            else:
                income = resident.annualized_income
            residents.append(ResidentSnapshot(name=resident.name, annualized_income=income))

        return cls(
            lease_id=lease.id,
            lease_name=lease.name,
            lease_start_date=lease.lease_start_date,
            lease_end_date=lease.lease_end_date,
            lease_rent=lease.lease_rent,
            residents=residents,
        )


# =============================================================================
# Matching results (transient, never persisted)
# =============================================================================


class IncomeDiscrepancy(BaseModel):
    """Drift between reported and previously verified income for one resident."""

    resident_name: str
    uploaded_income: Decimal
    verified_income: Decimal
    discrepancy: Decimal = Field(ge=0, description="|uploaded - verified|")


class ResidentNameMatch(BaseModel):
    """How one resident name fared against the other list."""

    name: str
    matched_name: str | None = Field(default=None)
    similarity: float = Field(default=0.0, ge=0, le=1)
    is_match: bool = False


class ResidentListMatch(BaseModel):
    """Fuzzy comparison of two resident lists."""

    match_percentage: float = Field(default=0.0, ge=0, le=1)
    matches: list[ResidentNameMatch] = Field(default_factory=list)

    @property
    def matched_count(self) -> int:
        return sum(1 for m in self.matches if m.is_match)


class FutureLeaseMatch(BaseModel):
    """A new lease resembles a lease with no tenancy yet but a finalized verification."""

    lease_id: UUID
    lease_name: str | None = None
    match_type: MatchType
    match_confidence: float = Field(ge=0, le=1)
    has_verified_income: bool = True
    master_verification_id: UUID | None = None


class ContinuityResult(BaseModel):
    """Outcome of reconciling one uploaded lease."""

    outcome: ContinuityOutcome
    continuity_id: UUID
    tier: str = Field(description="Name of the matching tier that decided")
    master_verification_id: UUID | None = Field(
        default=None,
        description="Lineage's authoritative verification (may be null for known, unverified lineages)"
    )
    inherited_verification_id: UUID | None = Field(
        default=None,
        description="Verification created on the new lease by inheritance"
    )
    matched_continuity_id: UUID | None = Field(
        default=None,
        description="Lineage holding the verified income when a discrepancy was found"
    )
    discrepancies: list[IncomeDiscrepancy] = Field(default_factory=list)
    future_lease_match: FutureLeaseMatch | None = None

    @property
    def should_inherit_verification(self) -> bool:
        return self.outcome == ContinuityOutcome.INHERITED and self.master_verification_id is not None

    @property
    def has_income_discrepancies(self) -> bool:
        return bool(self.discrepancies)

    @property
    def requires_manual_review(self) -> bool:
        return self.outcome == ContinuityOutcome.MANUAL_REVIEW_PENDING


# =============================================================================
# Upload statistics
# =============================================================================


class LeaseReconciliationFailure(BaseModel):
    """A lease whose transaction was rolled back."""

    lease_id: UUID
    unit_id: UUID
    error: str


class UploadReconciliationStats(BaseModel):
    """Statistics from reconciling every lease in one rent roll."""

    rent_roll_id: UUID
    leases_processed: int = 0
    inherited: int = 0
    discrepancy_pending: int = 0
    manual_review_pending: int = 0
    fresh: int = 0
    failures: list[LeaseReconciliationFailure] = Field(default_factory=list)
    results: dict[UUID, ContinuityResult] = Field(
        default_factory=dict,
        description="Keyed by lease id"
    )

    def record(self, lease_id: UUID, result: ContinuityResult) -> None:
        self.leases_processed += 1
        self.results[lease_id] = result
        if result.outcome == ContinuityOutcome.INHERITED:
            self.inherited += 1
        elif result.outcome == ContinuityOutcome.DISCREPANCY_PENDING:
            self.discrepancy_pending += 1
        elif result.outcome == ContinuityOutcome.MANUAL_REVIEW_PENDING:
            self.manual_review_pending += 1
        else:
            self.fresh += 1

    def record_failure(self, lease_id: UUID, unit_id: UUID, error: Exception) -> None:
        self.leases_processed += 1
        self.failures.append(
            LeaseReconciliationFailure(lease_id=lease_id, unit_id=unit_id, error=str(error))
        )

    @property
    def success_rate(self) -> float:
        if self.leases_processed == 0:
            return 0.0
        return (self.leases_processed - len(self.failures)) / self.leases_processed


# =============================================================================
# RECONCILIATION API SCHEMAS
# Human-in-the-loop review of discrepancies and future-lease matches
# =============================================================================


class IncomeDiscrepancyReport(BaseModel):
    """A lease from an upload whose reported income drifted from a verified lineage."""

    lease_id: str
    unit_number: str | None = None
    continuity_id: str = Field(description="Lineage the lease was placed in")
    structural_continuity_id: str = Field(description="Lineage holding the verified income")
    discrepancies: list[IncomeDiscrepancy]


class IncomeReconciliationAction(BaseModel):
    """Request body for resolving an income discrepancy."""

    action: Literal["accept_verified_income", "reject_verified_income"]
    lease_id: str
    continuity_id: str
    structural_continuity_id: str | None = Field(
        default=None,
        description="Required when accepting the previously verified income"
    )

    @model_validator(mode="after")
    def validate_action_requirements(self) -> "IncomeReconciliationAction":
        if self.action == "accept_verified_income" and not self.structural_continuity_id:
            raise ValueError("structural_continuity_id is required when action is 'accept_verified_income'")
        return self


class FutureLeaseReconciliationAction(BaseModel):
    """Request body for resolving a future-lease match."""

    action: Literal["accept_future_lease", "reject_future_lease"]
    lease_id: str
    continuity_id: str
    future_lease_id: str | None = None
    master_verification_id: str | None = None

    @model_validator(mode="after")
    def validate_action_requirements(self) -> "FutureLeaseReconciliationAction":
        if self.action == "accept_future_lease" and not (self.future_lease_id and self.master_verification_id):
            raise ValueError(
                "future_lease_id and master_verification_id are required when action is 'accept_future_lease'"
            )
        return self


class ReconciliationActionResponse(BaseModel):
    """Response after a reconciliation decision."""

    success: bool
    action: str
    lease_id: str
    verification_id: str | None = None
    requires_new_verification: bool = False
    message: str


class SetMasterVerificationRequest(BaseModel):
    """Administrative override of a lineage's authoritative verification."""

    verification_id: str


class RentRollSnapshotItem(BaseModel):
    """A rent roll upload for a property."""

    id: str
    date: datetime
    created_at: datetime
