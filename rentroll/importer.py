"""Reconcile every lease of a rent roll upload against the continuity ledger.

Processing model:
- Leases are partitioned by (property_id, unit_id)
- Partitions run in parallel worker threads
- Leases within a partition run serially: tiers read-then-write the unit's
  continuity rows, so two leases of one unit must never race
- Each lease gets its own session and transaction. A failure rolls back that
  lease only and is recorded in the stats

Re-running a lease after its transaction committed would append a duplicate
snapshot. already_reconciled() lets callers skip those.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from . import config
from .continuity import reconcile
from .database import SessionLocal
from .models import Lease, RentRoll, Tenancy, Unit, VerificationSnapshot
from .schemas import ContinuityResult, LeaseSnapshotRecord, UploadReconciliationStats

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

# (property_id, unit_id) -> lease ids in upload order
Partitions = dict[tuple[UUID, UUID], list[UUID]]


def already_reconciled(db: Session, rent_roll_id: UUID, lease_id: UUID) -> bool:
    """True if this lease already has a snapshot for this upload."""
    return db.execute(
        select(VerificationSnapshot.id).where(
            VerificationSnapshot.rent_roll_id == rent_roll_id,
            VerificationSnapshot.lease_id == lease_id,
        ).limit(1)
    ).first() is not None


def partition_rent_roll(db: Session, rent_roll_id: UUID) -> Partitions:
    """Group the upload's leases by unit."""
    rows = db.execute(
        select(Unit.property_id, Lease.unit_id, Lease.id)
        .join(Tenancy, Tenancy.lease_id == Lease.id)
        .join(Unit, Unit.id == Lease.unit_id)
        .where(Tenancy.rent_roll_id == rent_roll_id)
        .order_by(Lease.unit_id, Lease.created_at)
    ).all()

    partitions: Partitions = defaultdict(list)
    for property_id, unit_id, lease_id in rows:
        partitions[(property_id, unit_id)].append(lease_id)
    return dict(partitions)


def reconcile_lease(
    session_factory: SessionFactory,
    property_id: UUID,
    unit_id: UUID,
    lease_id: UUID,
    rent_roll_id: UUID,
) -> ContinuityResult | None:
    """Reconcile one persisted lease in its own transaction.

    Returns None when the lease was already reconciled for this upload.
    Exceptions propagate after the transaction rolls back.
    """
    with session_factory() as db, db.begin():
        if already_reconciled(db, rent_roll_id, lease_id):
            logger.info(f"Lease {lease_id} already reconciled for rent roll {rent_roll_id}, skipping")
            return None

        lease = db.execute(
            select(Lease).where(Lease.id == lease_id).options(selectinload(Lease.residents))
        ).scalar_one()
        snapshot = LeaseSnapshotRecord.from_lease(lease)
        return reconcile(db, property_id, unit_id, snapshot, rent_roll_id)


def _reconcile_partition(
    session_factory: SessionFactory,
    key: tuple[UUID, UUID],
    lease_ids: list[UUID],
    rent_roll_id: UUID,
    stats: UploadReconciliationStats,
    stats_lock: threading.Lock,
) -> None:
    property_id, unit_id = key
    for lease_id in lease_ids:
        try:
            result = reconcile_lease(session_factory, property_id, unit_id, lease_id, rent_roll_id)
        except Exception as e:
            # Transaction already rolled back; the rest of the upload proceeds
            logger.exception(f"Reconciliation failed for lease {lease_id} (unit {unit_id}): {e}")
            with stats_lock:
                stats.record_failure(lease_id, unit_id, e)
            continue
        if result is not None:
            with stats_lock:
                stats.record(lease_id, result)


def reconcile_rent_roll(
    rent_roll_id: UUID,
    session_factory: SessionFactory = SessionLocal,
    max_workers: int | None = None,
) -> UploadReconciliationStats:
    """Reconcile all leases reported by a rent roll upload."""
    if max_workers is None:
        max_workers = config.RECONCILE_MAX_WORKERS

    with session_factory() as db:
        if db.get(RentRoll, rent_roll_id) is None:
            raise LookupError(f"Rent roll {rent_roll_id} not found")
        partitions = partition_rent_roll(db, rent_roll_id)

    stats = UploadReconciliationStats(rent_roll_id=rent_roll_id)
    lease_count = sum(len(ids) for ids in partitions.values())
    logger.info(
        f"Reconciling rent roll {rent_roll_id}: {lease_count} leases "
        f"across {len(partitions)} units ({max_workers} workers)"
    )

    stats_lock = threading.Lock()
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = [
            pool.submit(_reconcile_partition, session_factory, key, lease_ids, rent_roll_id, stats, stats_lock)
            for key, lease_ids in partitions.items()
        ]
        for future in futures:
            future.result()

    logger.info(
        f"Rent roll {rent_roll_id}: {stats.inherited} inherited, "
        f"{stats.discrepancy_pending} discrepancies, {stats.manual_review_pending} manual review, "
        f"{stats.fresh} fresh, {len(stats.failures)} failed"
    )
    return stats
