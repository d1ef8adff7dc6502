"""Verification continuity matching for uploaded leases.

Decides, for one lease from a new rent roll, whether it continues a known
lineage (and inherits its verification), needs a human to reconcile income,
resembles a verified future lease, or starts fresh.

Tier Hierarchy (first match wins):
| Tier | Match | Candidates | Outcome |
|------|-------|------------|---------|
| 1 | full signature | unit's continuities | INHERITED |
| 2 | structural signature | unit's verified continuities | INHERITED or DISCREPANCY_PENDING |
| 3 | full signature | unit's verified future leases | INHERITED |
| 4 | structural signature | unit's verified future leases | INHERITED or DISCREPANCY_PENDING |
| 5 | resident names >= 80% | unit's verified future leases | MANUAL_REVIEW_PENDING |
| - | nothing | - | FRESH |

Every outcome writes exactly one VerificationSnapshot. Nothing here commits:
reconcile() runs inside the caller's per-lease transaction.

Tie-break within a tier: continuities most recently updated first; future
leases by most recently finalized verification, then newest lease.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from . import config
from .discrepancies import detect_discrepancies
from .inheritance import inherit_verification
from .models import IncomeVerification, Lease, VerificationContinuity, VerificationSnapshot
from .schemas import (
    ContinuityOutcome,
    ContinuityResult,
    FutureLeaseMatch,
    IncomeDiscrepancy,
    LeaseSnapshotRecord,
    MatchType,
    VerificationStatus,
)
from .signatures import full_signature, structural_signature
from .similarity import resident_list_match

logger = logging.getLogger(__name__)


@dataclass
class FutureLeaseCandidate:
    """A lease with no tenancy and a finalized verification, with its signatures."""

    lease: Lease
    verification: IncomeVerification
    snapshot: LeaseSnapshotRecord
    full_signature: str
    structural_signature: str


@dataclass
class MatchContext:
    """Everything the tiers need for one reconciliation call."""

    db: Session
    property_id: UUID
    unit_id: UUID
    lease: LeaseSnapshotRecord
    rent_roll_id: UUID
    full_signature: str
    structural_signature: str
    _future_candidates: list[FutureLeaseCandidate] | None = field(default=None, repr=False)

    @property
    def future_candidates(self) -> list[FutureLeaseCandidate]:
        if self._future_candidates is None:
            self._future_candidates = load_future_lease_candidates(
                self.db, self.unit_id, exclude_lease_id=self.lease.lease_id
            )
            logger.debug(
                f"Unit {self.unit_id}: {len(self._future_candidates)} future leases with verified income"
            )
        return self._future_candidates


# =============================================================================
# Ledger access
# =============================================================================


def _create_continuity(ctx: MatchContext, master_verification_id: UUID | None = None) -> VerificationContinuity:
    continuity = VerificationContinuity(
        property_id=ctx.property_id,
        unit_id=ctx.unit_id,
        lease_signature=ctx.full_signature,
        structural_signature=ctx.structural_signature,
        master_verification_id=master_verification_id,
    )
    ctx.db.add(continuity)
    ctx.db.flush()
    return continuity


def _record_snapshot(ctx: MatchContext, continuity: VerificationContinuity) -> None:
    ctx.db.add(VerificationSnapshot(
        continuity_id=continuity.id,
        rent_roll_id=ctx.rent_roll_id,
        lease_id=ctx.lease.lease_id,
    ))
    ctx.db.flush()


def _find_continuity(ctx: MatchContext, *criteria) -> VerificationContinuity | None:
    return ctx.db.execute(
        select(VerificationContinuity)
        .where(
            VerificationContinuity.property_id == ctx.property_id,
            VerificationContinuity.unit_id == ctx.unit_id,
            *criteria,
        )
        .order_by(VerificationContinuity.updated_at.desc(), VerificationContinuity.created_at.desc())
        .limit(1)
        .with_for_update()
    ).scalar_one_or_none()


def _latest_finalized(lease: Lease) -> IncomeVerification | None:
    finalized = [v for v in lease.verifications if v.status == VerificationStatus.FINALIZED]
    if not finalized:
        return None
    return max(finalized, key=lambda v: (v.finalized_at or datetime.min, v.created_at or datetime.min))


def load_future_lease_candidates(
    db: Session,
    unit_id: UUID,
    exclude_lease_id: UUID | None = None,
) -> list[FutureLeaseCandidate]:
    """Leases on the unit with no tenancy but a finalized verification.

    Residents are compared on verified income (calculated_annualized_income).
    """
    query = (
        select(Lease)
        .where(
            Lease.unit_id == unit_id,
            ~Lease.tenancy.has(),
            Lease.verifications.any(IncomeVerification.status == VerificationStatus.FINALIZED),
        )
        .options(selectinload(Lease.residents), selectinload(Lease.verifications))
    )
    if exclude_lease_id is not None:
        query = query.where(Lease.id != exclude_lease_id)

    candidates = []
    for lease in db.execute(query).scalars():
        verification = _latest_finalized(lease)
        if verification is None:
            continue
        snapshot = LeaseSnapshotRecord.from_lease(lease, income_source="verified")
        candidates.append(FutureLeaseCandidate(
            lease=lease,
            verification=verification,
            snapshot=snapshot,
            full_signature=full_signature(snapshot),
            structural_signature=structural_signature(snapshot),
        ))

    candidates.sort(
        key=lambda c: (c.verification.finalized_at or datetime.min, c.lease.created_at or datetime.min),
        reverse=True,
    )
    return candidates


# =============================================================================
# Tiers
# =============================================================================


def match_exact_current(ctx: MatchContext) -> ContinuityResult | None:
    """Tier 1: a lineage whose latest lease has the same full signature."""
    continuity = _find_continuity(ctx, VerificationContinuity.lease_signature == ctx.full_signature)
    if continuity is None:
        return None

    _record_snapshot(ctx, continuity)

    # Known lineage without a master: nothing to copy yet
    inherited_id = None
    if continuity.master_verification_id is not None:
        inherited_id = inherit_verification(
            ctx.db, continuity.master_verification_id, ctx.lease.lease_id, continuity.id
        )

    return ContinuityResult(
        outcome=ContinuityOutcome.INHERITED,
        continuity_id=continuity.id,
        tier="exact_current",
        master_verification_id=continuity.master_verification_id,
        inherited_verification_id=inherited_id,
    )


def match_structural_current(ctx: MatchContext) -> ContinuityResult | None:
    """Tier 2: same dates, rent and residents as a verified lineage; incomes may differ."""
    continuity = _find_continuity(
        ctx,
        VerificationContinuity.structural_signature == ctx.structural_signature,
        VerificationContinuity.master_verification_id.isnot(None),
    )
    if continuity is None:
        return None

    discrepancies = detect_discrepancies(ctx.db, ctx.lease, continuity.master_verification_id)

    if discrepancies:
        # Old lineage keeps its verified state; the new one waits for a human
        new_continuity = _create_continuity(ctx)
        _record_snapshot(ctx, new_continuity)
        return ContinuityResult(
            outcome=ContinuityOutcome.DISCREPANCY_PENDING,
            continuity_id=new_continuity.id,
            tier="structural_current",
            matched_continuity_id=continuity.id,
            discrepancies=discrepancies,
        )

    # Income unchanged or within rounding: lineage moves to the new signature
    continuity.lease_signature = ctx.full_signature
    continuity.structural_signature = ctx.structural_signature
    _record_snapshot(ctx, continuity)
    inherited_id = inherit_verification(
        ctx.db, continuity.master_verification_id, ctx.lease.lease_id, continuity.id
    )

    return ContinuityResult(
        outcome=ContinuityOutcome.INHERITED,
        continuity_id=continuity.id,
        tier="structural_current",
        master_verification_id=continuity.master_verification_id,
        inherited_verification_id=inherited_id,
    )


def _future_match(candidate: FutureLeaseCandidate, match_type: MatchType, confidence: float) -> FutureLeaseMatch:
    return FutureLeaseMatch(
        lease_id=candidate.lease.id,
        lease_name=candidate.lease.name,
        match_type=match_type,
        match_confidence=confidence,
        has_verified_income=True,
        master_verification_id=candidate.verification.id,
    )


def _inherit_from_future(
    ctx: MatchContext,
    candidate: FutureLeaseCandidate,
    match_type: MatchType,
    confidence: float,
    tier: str,
) -> ContinuityResult:
    continuity = _create_continuity(ctx, master_verification_id=candidate.verification.id)
    _record_snapshot(ctx, continuity)
    inherited_id = inherit_verification(
        ctx.db, candidate.verification.id, ctx.lease.lease_id, continuity.id
    )
    logger.info(f"Inherited verification from future lease {candidate.lease.id} to lease {ctx.lease.lease_id}")

    return ContinuityResult(
        outcome=ContinuityOutcome.INHERITED,
        continuity_id=continuity.id,
        tier=tier,
        master_verification_id=candidate.verification.id,
        inherited_verification_id=inherited_id,
        future_lease_match=_future_match(candidate, match_type, confidence),
    )


def match_future_exact(ctx: MatchContext) -> ContinuityResult | None:
    """Tier 3: a verified future lease with the same full signature."""
    for candidate in ctx.future_candidates:
        if candidate.full_signature == ctx.full_signature:
            return _inherit_from_future(ctx, candidate, MatchType.EXACT, 1.0, tier="exact_future")
    return None


def match_future_structural(ctx: MatchContext) -> ContinuityResult | None:
    """Tier 4: a verified future lease with the same structural signature."""
    for candidate in ctx.future_candidates:
        if candidate.structural_signature != ctx.structural_signature:
            continue

        discrepancies = detect_discrepancies(ctx.db, ctx.lease, candidate.verification.id)
        if not discrepancies:
            return _inherit_from_future(
                ctx, candidate, MatchType.STRUCTURAL, config.STRUCTURAL_MATCH_CONFIDENCE,
                tier="structural_future",
            )

        continuity = _create_continuity(ctx)
        _record_snapshot(ctx, continuity)
        return ContinuityResult(
            outcome=ContinuityOutcome.DISCREPANCY_PENDING,
            continuity_id=continuity.id,
            tier="structural_future",
            discrepancies=discrepancies,
            future_lease_match=_future_match(
                candidate, MatchType.STRUCTURAL, config.STRUCTURAL_MATCH_CONFIDENCE
            ),
        )
    return None


def match_future_fuzzy(ctx: MatchContext) -> ContinuityResult | None:
    """Tier 5: resident names resemble a verified future lease's closely enough to ask."""
    new_names = [r.name for r in ctx.lease.residents]

    for candidate in ctx.future_candidates:
        match = resident_list_match([r.name for r in candidate.snapshot.residents], new_names)
        if match.match_percentage < config.RESIDENT_MATCH_THRESHOLD:
            continue

        logger.info(
            f"Possible match with future lease {candidate.lease.id} "
            f"({match.match_percentage:.0%} resident match)"
        )
        continuity = _create_continuity(ctx)
        _record_snapshot(ctx, continuity)
        return ContinuityResult(
            outcome=ContinuityOutcome.MANUAL_REVIEW_PENDING,
            continuity_id=continuity.id,
            tier="fuzzy_future",
            future_lease_match=_future_match(
                candidate, MatchType.MANUAL_REVIEW, match.match_percentage
            ),
        )
    return None


def start_fresh(ctx: MatchContext) -> ContinuityResult:
    """No match: new lineage with no master verification."""
    continuity = _create_continuity(ctx)
    _record_snapshot(ctx, continuity)
    return ContinuityResult(
        outcome=ContinuityOutcome.FRESH,
        continuity_id=continuity.id,
        tier="fresh",
    )


MATCH_TIERS: tuple[Callable[[MatchContext], ContinuityResult | None], ...] = (
    match_exact_current,
    match_structural_current,
    match_future_exact,
    match_future_structural,
    match_future_fuzzy,
)


def reconcile(
    db: Session,
    property_id: UUID,
    unit_id: UUID,
    lease: LeaseSnapshotRecord,
    rent_roll_id: UUID,
) -> ContinuityResult:
    """Place one uploaded lease into a verification lineage.

    Must run inside a transaction the caller commits or rolls back, and
    leases of the same unit must not be reconciled concurrently.
    """
    ctx = MatchContext(
        db=db,
        property_id=property_id,
        unit_id=unit_id,
        lease=lease,
        rent_roll_id=rent_roll_id,
        full_signature=full_signature(lease),
        structural_signature=structural_signature(lease),
    )
    logger.debug(
        f"Lease {lease.lease_id}: structural {ctx.structural_signature[:8]}..., "
        f"full {ctx.full_signature[:8]}..."
    )

    for tier in MATCH_TIERS:
        result = tier(ctx)
        if result is not None:
            break
    else:
        result = start_fresh(ctx)

    logger.info(f"Lease {lease.lease_id}: {result.outcome.value} via {result.tier}")
    return result


# =============================================================================
# Reconciliation queries
# =============================================================================


def find_verified_structural_match(
    db: Session,
    property_id: UUID,
    unit_id: UUID,
    lease: LeaseSnapshotRecord,
    exclude_continuity_id: UUID | None = None,
) -> tuple[VerificationContinuity, list[IncomeDiscrepancy]] | None:
    """Recompute the structural-current discrepancy check for an already placed lease.

    Returns the verified lineage and its discrepancies, or None when there is
    no verified structural match or incomes agree.
    """
    query = (
        select(VerificationContinuity)
        .where(
            VerificationContinuity.property_id == property_id,
            VerificationContinuity.unit_id == unit_id,
            VerificationContinuity.structural_signature == structural_signature(lease),
            VerificationContinuity.master_verification_id.isnot(None),
        )
        .order_by(VerificationContinuity.updated_at.desc(), VerificationContinuity.created_at.desc())
    )
    if exclude_continuity_id is not None:
        query = query.where(VerificationContinuity.id != exclude_continuity_id)

    continuity = db.execute(query.limit(1)).scalar_one_or_none()
    if continuity is None:
        return None

    discrepancies = detect_discrepancies(db, lease, continuity.master_verification_id)
    if not discrepancies:
        return None
    return continuity, discrepancies
