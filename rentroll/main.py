"""FastAPI application for rent roll verification continuity."""

import logging
from contextlib import asynccontextmanager
from uuid import UUID

import logfire
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from . import config
from .continuity import find_verified_structural_match
from .database import SessionLocal, get_db, init_db
from .errors import ContinuityNotFoundError, MasterVerificationNotFoundError
from .importer import SessionFactory, reconcile_rent_roll
from .inheritance import (
    accept_future_lease_verification,
    accept_previously_verified_income,
    set_master_verification,
)
from .models import Lease, RentRoll, Tenancy, Unit, VerificationContinuity, VerificationSnapshot
from .schemas import (
    FutureLeaseReconciliationAction,
    IncomeDiscrepancyReport,
    IncomeReconciliationAction,
    LeaseSnapshotRecord,
    ReconciliationActionResponse,
    RentRollSnapshotItem,
    SetMasterVerificationRequest,
    UploadReconciliationStats,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield


app = FastAPI(
    title="Rent Roll Continuity API",
    description="Carries income verifications across rent roll uploads",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure Logfire for observability (after app creation)
if config.LOGFIRE_TOKEN:
    logfire.configure()
    logfire.instrument_fastapi(app)

# CORS for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_session_factory() -> SessionFactory:
    """Dependency for the per-lease session factory used by batch reconciliation."""
    return SessionLocal


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid {label}: {value}")


def _get_property_lease(db: Session, property_id: UUID, lease_id: UUID) -> Lease:
    """Fetch a lease only if it belongs to the property."""
    lease = db.execute(
        select(Lease)
        .join(Unit, Unit.id == Lease.unit_id)
        .where(Lease.id == lease_id, Unit.property_id == property_id)
    ).scalar_one_or_none()
    if lease is None:
        raise HTTPException(status_code=404, detail="Lease not found")
    return lease


def _get_property_continuity(db: Session, property_id: UUID, continuity_id: UUID) -> VerificationContinuity:
    """Fetch a continuity only if it belongs to the property."""
    continuity = db.get(VerificationContinuity, continuity_id)
    if continuity is None or continuity.property_id != property_id:
        raise HTTPException(status_code=404, detail="Continuity not found")
    return continuity


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Rent Roll Continuity API"}


# =============================================================================
# Snapshots and batch reconciliation
# =============================================================================


@app.get("/api/properties/{property_id}/snapshots")
def get_property_snapshots(property_id: UUID, db: Session = Depends(get_db)) -> list[RentRollSnapshotItem]:
    """All rent roll uploads for a property, newest first."""
    rent_rolls = db.execute(
        select(RentRoll)
        .where(RentRoll.property_id == property_id)
        .order_by(RentRoll.date.desc())
    ).scalars()

    return [
        RentRollSnapshotItem(id=str(r.id), date=r.date, created_at=r.created_at)
        for r in rent_rolls
    ]


@app.post("/api/properties/{property_id}/rent-rolls/{rent_roll_id}/reconcile")
def reconcile_upload(
    property_id: UUID,
    rent_roll_id: UUID,
    db: Session = Depends(get_db),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> UploadReconciliationStats:
    """Run continuity matching for every lease in a rent roll upload."""
    rent_roll = db.get(RentRoll, rent_roll_id)
    if rent_roll is None or rent_roll.property_id != property_id:
        raise HTTPException(status_code=404, detail="Rent roll not found")
    # Release the read connection before workers open their own
    db.close()

    return reconcile_rent_roll(rent_roll_id, session_factory=session_factory)


# =============================================================================
# RECONCILIATION API: Income discrepancies
# Human-in-the-loop choice between uploaded and previously verified income
# =============================================================================


@app.get("/api/properties/{property_id}/income-reconciliation")
def get_income_discrepancies(
    property_id: UUID,
    rent_roll_id: UUID,
    db: Session = Depends(get_db),
) -> list[IncomeDiscrepancyReport]:
    """Leases of an upload still awaiting a decision on drifted income."""
    rows = db.execute(
        select(Lease, Unit, VerificationContinuity)
        .join(Tenancy, Tenancy.lease_id == Lease.id)
        .join(Unit, Unit.id == Lease.unit_id)
        .join(
            VerificationSnapshot,
            (VerificationSnapshot.lease_id == Lease.id)
            & (VerificationSnapshot.rent_roll_id == rent_roll_id),
        )
        .join(VerificationContinuity, VerificationContinuity.id == VerificationSnapshot.continuity_id)
        .where(
            Tenancy.rent_roll_id == rent_roll_id,
            Unit.property_id == property_id,
            VerificationContinuity.master_verification_id.is_(None),
        )
        .options(selectinload(Lease.residents))
        .order_by(Unit.unit_number)
    ).all()

    reports = []
    for lease, unit, continuity in rows:
        snapshot = LeaseSnapshotRecord.from_lease(lease)
        match = find_verified_structural_match(
            db, property_id, unit.id, snapshot, exclude_continuity_id=continuity.id
        )
        if match is None:
            continue
        structural, discrepancies = match
        reports.append(IncomeDiscrepancyReport(
            lease_id=str(lease.id),
            unit_number=unit.unit_number,
            continuity_id=str(continuity.id),
            structural_continuity_id=str(structural.id),
            discrepancies=discrepancies,
        ))

    logger.info(f"Rent roll {rent_roll_id}: {len(reports)} leases with income discrepancies")
    return reports


@app.post("/api/properties/{property_id}/income-reconciliation")
def resolve_income_discrepancy(
    property_id: UUID,
    action: IncomeReconciliationAction,
    db: Session = Depends(get_db),
) -> ReconciliationActionResponse:
    """Accept previously verified income, or reject it and verify afresh."""
    lease_id = _parse_uuid(action.lease_id, "lease_id")
    continuity_id = _parse_uuid(action.continuity_id, "continuity_id")
    try:
        _get_property_lease(db, property_id, lease_id)
        _get_property_continuity(db, property_id, continuity_id)

        if action.action == "reject_verified_income":
            # The lineage already exists without a master; normal verification proceeds
            return ReconciliationActionResponse(
                success=True,
                action=action.action,
                lease_id=action.lease_id,
                requires_new_verification=True,
                message="Verified income rejected. Proceed with new income verification for this lease.",
            )

        structural_id = _parse_uuid(action.structural_continuity_id, "structural_continuity_id")
        verification_id = accept_previously_verified_income(db, continuity_id, structural_id, lease_id)
        db.commit()

        return ReconciliationActionResponse(
            success=True,
            action=action.action,
            lease_id=action.lease_id,
            verification_id=str(verification_id),
            message=(
                "Previously verified income accepted. Update resident incomes in the "
                "property management system to match and avoid future discrepancies."
            ),
        )
    except HTTPException:
        db.rollback()
        raise
    except ContinuityNotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except MasterVerificationNotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.exception(f"Income reconciliation failed for lease {action.lease_id}")
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# RECONCILIATION API: Future lease matches
# =============================================================================


@app.post("/api/properties/{property_id}/future-lease-reconciliation")
def resolve_future_lease_match(
    property_id: UUID,
    action: FutureLeaseReconciliationAction,
    db: Session = Depends(get_db),
) -> ReconciliationActionResponse:
    """Confirm or reject that a new lease is a previously verified future lease."""
    lease_id = _parse_uuid(action.lease_id, "lease_id")
    continuity_id = _parse_uuid(action.continuity_id, "continuity_id")
    try:
        _get_property_lease(db, property_id, lease_id)
        _get_property_continuity(db, property_id, continuity_id)

        if action.action == "reject_future_lease":
            return ReconciliationActionResponse(
                success=True,
                action=action.action,
                lease_id=action.lease_id,
                requires_new_verification=True,
                message="Future lease rejected. Proceed with new income verification for this lease.",
            )

        future_lease_id = _parse_uuid(action.future_lease_id, "future_lease_id")
        master_id = _parse_uuid(action.master_verification_id, "master_verification_id")
        _get_property_lease(db, property_id, future_lease_id)

        verification_id = accept_future_lease_verification(
            db, continuity_id, future_lease_id, master_id, lease_id
        )
        db.commit()

        return ReconciliationActionResponse(
            success=True,
            action=action.action,
            lease_id=action.lease_id,
            verification_id=str(verification_id),
            message="Future lease verification transferred. Documents and status are active for this lease.",
        )
    except HTTPException:
        db.rollback()
        raise
    except ContinuityNotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except MasterVerificationNotFoundError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.exception(f"Future lease reconciliation failed for lease {action.lease_id}")
        raise HTTPException(status_code=500, detail=str(e))


# =============================================================================
# ADMIN API: Master verification override
# =============================================================================

security = HTTPBearer(auto_error=False)


async def verify_admin(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify admin bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Admin token required")
    if credentials.credentials != config.ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


@app.put("/api/admin/continuities/{continuity_id}/master", dependencies=[Depends(verify_admin)])
def update_master_verification(
    continuity_id: UUID,
    request: SetMasterVerificationRequest,
    db: Session = Depends(get_db),
):
    """Designate a lineage's authoritative verification."""
    verification_id = _parse_uuid(request.verification_id, "verification_id")
    try:
        set_master_verification(db, verification_id, continuity_id)
        db.commit()
    except (ContinuityNotFoundError, MasterVerificationNotFoundError) as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "success": True,
        "continuity_id": str(continuity_id),
        "master_verification_id": request.verification_id,
    }
