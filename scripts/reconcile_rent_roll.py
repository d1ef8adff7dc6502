"""Reconcile a rent roll upload against the verification continuity ledger.

Runs the continuity matcher for every lease the upload reported:
1. Leases are grouped by unit and units run in parallel workers
2. Each lease is matched in its own transaction (exact, structural, future lease)
3. Failed leases are rolled back and listed; the rest of the upload proceeds

Usage:
    uv run python scripts/reconcile_rent_roll.py --rent-roll <id>               # Reconcile one upload
    uv run python scripts/reconcile_rent_roll.py --rent-roll <id> --workers 8   # More parallel units
    uv run python scripts/reconcile_rent_roll.py --stats                        # Ledger statistics
"""

import argparse
import logging
import sys
from pathlib import Path
from uuid import UUID

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rentroll import config
from rentroll.database import engine, init_db
from rentroll.importer import reconcile_rent_roll
from rentroll.models import VerificationContinuity, VerificationSnapshot


# =============================================================================
# Statistics
# =============================================================================


def print_stats(session: Session):
    """Print statistics about the continuity ledger."""
    continuity_count = session.scalar(select(func.count(VerificationContinuity.id)))
    verified_count = session.scalar(
        select(func.count(VerificationContinuity.id))
        .where(VerificationContinuity.master_verification_id.isnot(None))
    )
    snapshot_count = session.scalar(select(func.count(VerificationSnapshot.id)))

    print(f"\n=== Ledger: verification_continuities ===")
    print(f"Total lineages: {continuity_count:,}")
    if continuity_count > 0:
        print(f"With master verification: {verified_count:,} ({verified_count/continuity_count*100:.1f}%)")
        print(f"Awaiting verification: {continuity_count - verified_count:,}")
    print(f"Snapshots recorded: {snapshot_count:,}")


# =============================================================================
# Main
# =============================================================================


def main():
    parser = argparse.ArgumentParser(description="Reconcile rent roll leases against verification continuity")
    parser.add_argument("--rent-roll", type=UUID, metavar="ID", help="Rent roll upload to reconcile")
    parser.add_argument("--workers", type=int, default=config.RECONCILE_MAX_WORKERS,
                        help=f"Units reconciled in parallel (default {config.RECONCILE_MAX_WORKERS})")
    parser.add_argument("--stats", action="store_true", help="Show ledger statistics")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log each lease decision")
    args = parser.parse_args()

    if not (args.rent_roll or args.stats):
        parser.print_help()
        return

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Create tables if they don't exist
    print("Creating tables if needed...")
    init_db()

    if args.rent_roll:
        print(f"\n=== Reconciling rent roll {args.rent_roll} ({args.workers} workers) ===")
        try:
            stats = reconcile_rent_roll(args.rent_roll, max_workers=args.workers)
        except LookupError as e:
            print(f"Error: {e}")
            sys.exit(1)

        print(f"Processed: {stats.leases_processed}")
        print(f"Inherited: {stats.inherited}")
        print(f"Income discrepancies: {stats.discrepancy_pending}")
        print(f"Manual review: {stats.manual_review_pending}")
        print(f"Fresh: {stats.fresh}")
        if stats.failures:
            print(f"Failed ({len(stats.failures)}):")
            for failure in stats.failures[:10]:
                print(f"  - lease {failure.lease_id} (unit {failure.unit_id}): {failure.error}")

    if args.stats:
        with Session(engine) as session:
            print_stats(session)


if __name__ == "__main__":
    main()
