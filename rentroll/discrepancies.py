"""Income drift between an uploaded lease and a verified one."""

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from . import config
from .models import IncomeVerification, Lease
from .schemas import IncomeDiscrepancy, LeaseSnapshotRecord, normalize_name

logger = logging.getLogger(__name__)


def is_significant(discrepancy: Decimal) -> bool:
    """A delta counts only when strictly above the rounding threshold."""
    return discrepancy > config.INCOME_DISCREPANCY_THRESHOLD


def detect_discrepancies(
    db: Session,
    uploaded_lease: LeaseSnapshotRecord,
    master_verification_id: UUID,
) -> list[IncomeDiscrepancy]:
    """Compare uploaded incomes with the verified residents of a verification.

    Residents missing from the verified lease are new occupants, not drift,
    and are skipped. So are verified residents with no calculated income.
    Read-only.
    """
    verification = db.execute(
        select(IncomeVerification)
        .where(IncomeVerification.id == master_verification_id)
        .options(selectinload(IncomeVerification.lease).selectinload(Lease.residents))
    ).scalar_one_or_none()

    if verification is None:
        return []

    verified_by_name = {normalize_name(r.name): r for r in verification.lease.residents}
    discrepancies = []

    for resident in uploaded_lease.residents:
        verified = verified_by_name.get(normalize_name(resident.name))
        if verified is None or verified.calculated_annualized_income is None:
            continue

        uploaded_income = resident.annualized_income or Decimal(0)
        verified_income = Decimal(verified.calculated_annualized_income)
        delta = abs(uploaded_income - verified_income)

        if is_significant(delta):
            discrepancies.append(IncomeDiscrepancy(
                resident_name=resident.name,
                uploaded_income=uploaded_income,
                verified_income=verified_income,
                discrepancy=delta,
            ))

    if discrepancies:
        logger.info(
            f"Lease {uploaded_lease.lease_id}: {len(discrepancies)} income discrepancies "
            f"against verification {master_verification_id}"
        )
    return discrepancies
