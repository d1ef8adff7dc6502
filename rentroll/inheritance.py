"""Inheritance of verified income onto a newly uploaded lease.

A master verification is treated as read-only source of truth. Inheritance
creates a NEW verification on the new lease and:
1. Copies status, reason, verified income, finalize timestamp and period bounds
2. Re-points each supporting document at the same stored file (no copy) for the
   same-named resident on the new lease
3. Copies resident finalization flags by exact normalized name

Residents or documents without a same-named counterpart are left alone.

Not re-entrant for the same new lease: callers invoke it at most once per
lease per upload. All writes are flushed, never committed, so the caller's
transaction decides.
"""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .errors import ContinuityNotFoundError, MasterVerificationNotFoundError
from .models import (
    IncomeDocument,
    IncomeVerification,
    Lease,
    Resident,
    VerificationContinuity,
)
from .schemas import normalize_name

logger = logging.getLogger(__name__)

# Extracted fields copied verbatim onto inherited document rows
DOCUMENT_FIELDS = (
    "document_type",
    "document_date",
    "upload_date",
    "status",
    "file_path",
    "box1_wages",
    "box3_ss_wages",
    "box5_med_wages",
    "employee_name",
    "employer_name",
    "tax_year",
    "gross_pay_amount",
    "pay_frequency",
    "pay_period_start_date",
    "pay_period_end_date",
    "calculated_annualized_income",
)

VERIFICATION_FIELDS = (
    "status",
    "reason",
    "calculated_verified_income",
    "finalized_at",
    "due_date",
    "lease_year",
    "associated_lease_start",
    "associated_lease_end",
    "verification_period_start",
    "verification_period_end",
)

RESIDENT_FINALIZATION_FIELDS = (
    "income_finalized",
    "has_no_income",
    "calculated_annualized_income",
    "finalized_at",
)


def load_verification(db: Session, verification_id: UUID) -> IncomeVerification:
    """Fetch a verification with its documents and lease residents, or fail."""
    verification = db.execute(
        select(IncomeVerification)
        .where(IncomeVerification.id == verification_id)
        .options(
            selectinload(IncomeVerification.documents),
            selectinload(IncomeVerification.lease).selectinload(Lease.residents),
        )
    ).scalar_one_or_none()

    if verification is None:
        raise MasterVerificationNotFoundError(verification_id)
    return verification


def _residents_for_lease(db: Session, lease_id: UUID) -> list[Resident]:
    return list(db.execute(
        select(Resident).where(Resident.lease_id == lease_id).order_by(Resident.created_at)
    ).scalars())


def inherit_verification(
    db: Session,
    master_verification_id: UUID,
    new_lease_id: UUID,
    continuity_id: UUID,
) -> UUID:
    """Copy a master verification onto a new lease. Returns the new verification id.

    Raises MasterVerificationNotFoundError if the master does not resolve.
    """
    master = load_verification(db, master_verification_id)
    logger.info(f"Inheriting verification {master_verification_id} onto lease {new_lease_id}")

    new_verification = IncomeVerification(
        lease_id=new_lease_id,
        continuity_id=continuity_id,
        **{field: getattr(master, field) for field in VERIFICATION_FIELDS},
    )
    db.add(new_verification)
    db.flush()

    master_residents_by_id = {r.id: r for r in master.lease.residents}
    master_residents_by_name = {normalize_name(r.name): r for r in master.lease.residents}
    new_residents = _residents_for_lease(db, new_lease_id)
    new_residents_by_name = {normalize_name(r.name): r for r in new_residents}

    # Documents: same file, new owner
    documents_linked = 0
    for document in master.documents:
        master_resident = master_residents_by_id.get(document.resident_id)
        if master_resident is None:
            continue
        new_resident = new_residents_by_name.get(normalize_name(master_resident.name))
        if new_resident is None:
            logger.debug(f"Skipping document {document.id}: no {master_resident.name} on new lease")
            continue

        db.add(IncomeDocument(
            verification_id=new_verification.id,
            resident_id=new_resident.id,
            **{field: getattr(document, field) for field in DOCUMENT_FIELDS},
        ))
        documents_linked += 1

    # Residents: carry finalization state
    residents_updated = 0
    for new_resident in new_residents:
        master_resident = master_residents_by_name.get(normalize_name(new_resident.name))
        if master_resident is None:
            continue
        for field in RESIDENT_FINALIZATION_FIELDS:
            setattr(new_resident, field, getattr(master_resident, field))
        residents_updated += 1

    db.flush()
    logger.info(
        f"Verification {new_verification.id}: linked {documents_linked} documents, "
        f"updated {residents_updated} residents"
    )
    return new_verification.id


def load_continuity(db: Session, continuity_id: UUID) -> VerificationContinuity:
    """Fetch and row-lock a continuity, or fail."""
    continuity = db.execute(
        select(VerificationContinuity)
        .where(VerificationContinuity.id == continuity_id)
        .with_for_update()
    ).scalar_one_or_none()
    if continuity is None:
        raise ContinuityNotFoundError(continuity_id)
    return continuity


def set_master_verification(db: Session, verification_id: UUID, continuity_id: UUID) -> None:
    """(Re)designate the authoritative verification of a lineage.

    The only path that reassigns master_verification_id on an existing
    continuity.
    """
    continuity = load_continuity(db, continuity_id)

    if db.get(IncomeVerification, verification_id) is None:
        raise MasterVerificationNotFoundError(verification_id)

    continuity.master_verification_id = verification_id
    db.flush()
    logger.info(f"Set verification {verification_id} as master for continuity {continuity_id}")


def _copy_verified_incomes(new_residents: list[Resident], source_residents: list[Resident]) -> int:
    """Overwrite uploaded incomes with verified figures so roster and verification agree."""
    source_by_name = {normalize_name(r.name): r for r in source_residents}
    updated = 0
    for resident in new_residents:
        source = source_by_name.get(normalize_name(resident.name))
        if source is None or source.calculated_annualized_income is None:
            continue
        resident.annualized_income = source.calculated_annualized_income
        resident.calculated_annualized_income = source.calculated_annualized_income
        resident.income_finalized = source.income_finalized
        resident.has_no_income = source.has_no_income
        resident.finalized_at = source.finalized_at
        updated += 1
    return updated


def accept_previously_verified_income(
    db: Session,
    continuity_id: UUID,
    structural_continuity_id: UUID,
    new_lease_id: UUID,
) -> UUID:
    """User keeps the old verified income over newly uploaded figures.

    Inherits from the structural lineage's master onto the new lease, makes
    the result the master of the new lineage, and rewrites resident incomes.
    """
    load_continuity(db, continuity_id)

    structural = db.get(VerificationContinuity, structural_continuity_id)
    if structural is None:
        raise ContinuityNotFoundError(structural_continuity_id)
    if structural.master_verification_id is None:
        raise MasterVerificationNotFoundError(
            None, f"Continuity {structural_continuity_id} has no master verification"
        )

    new_verification_id = inherit_verification(
        db, structural.master_verification_id, new_lease_id, continuity_id
    )
    set_master_verification(db, new_verification_id, continuity_id)

    master = load_verification(db, structural.master_verification_id)
    updated = _copy_verified_incomes(_residents_for_lease(db, new_lease_id), master.lease.residents)
    db.flush()

    logger.info(
        f"Accepted previously verified income for lease {new_lease_id} "
        f"({updated} residents updated)"
    )
    return new_verification_id


def accept_future_lease_verification(
    db: Session,
    continuity_id: UUID,
    future_lease_id: UUID,
    master_verification_id: UUID,
    new_lease_id: UUID,
) -> UUID:
    """User confirms a new lease is the future lease it resembled.

    Inherits the future lease's verification, makes it the lineage's master,
    and copies finalized future residents' incomes onto the new residents.
    """
    load_continuity(db, continuity_id)

    verification = db.get(IncomeVerification, master_verification_id)
    if verification is None:
        raise MasterVerificationNotFoundError(master_verification_id)
    if verification.lease_id != future_lease_id:
        raise MasterVerificationNotFoundError(
            master_verification_id,
            f"Verification {master_verification_id} does not belong to future lease {future_lease_id}",
        )

    new_verification_id = inherit_verification(
        db, master_verification_id, new_lease_id, continuity_id
    )
    set_master_verification(db, new_verification_id, continuity_id)

    future_residents = [r for r in _residents_for_lease(db, future_lease_id) if r.income_finalized]
    updated = _copy_verified_incomes(_residents_for_lease(db, new_lease_id), future_residents)
    db.flush()

    logger.info(
        f"Accepted future lease {future_lease_id} verification for lease {new_lease_id} "
        f"({updated} residents updated)"
    )
    return new_verification_id
