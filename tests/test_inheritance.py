"""Tests for verification inheritance and reconciliation follow-ups."""

import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import FINALIZED_AT, add_lease, add_rent_roll, add_verification
from rentroll.continuity import reconcile
from rentroll.errors import ContinuityNotFoundError, MasterVerificationNotFoundError
from rentroll.inheritance import (
    accept_future_lease_verification,
    accept_previously_verified_income,
    inherit_verification,
    set_master_verification,
)
from rentroll.models import IncomeDocument, IncomeVerification, Resident, VerificationContinuity
from rentroll.schemas import ContinuityOutcome, LeaseSnapshotRecord, VerificationStatus


def _residents(db, lease) -> dict[str, Resident]:
    rows = db.execute(select(Resident).where(Resident.lease_id == lease.id)).scalars()
    return {r.name: r for r in rows}


def _verification_count(db, lease) -> int:
    return db.execute(
        select(func.count()).select_from(IncomeVerification).where(IncomeVerification.lease_id == lease.id)
    ).scalar_one()


@pytest.fixture
def master(db, prop, unit):
    rent_roll = add_rent_roll(db, prop, datetime(2024, 1, 31))
    lease = add_lease(db, unit, [("Jane Doe", "52000.00"), ("Bob Doe", "31000.00")], rent_roll=rent_roll)
    verification = add_verification(db, lease)
    continuity = VerificationContinuity(
        property_id=prop.id,
        unit_id=unit.id,
        lease_signature="a" * 64,
        structural_signature="b" * 64,
        master_verification_id=verification.id,
    )
    db.add(continuity)
    db.commit()
    return verification, continuity


@pytest.fixture
def upload(db, prop):
    return add_rent_roll(db, prop, datetime(2024, 2, 29))


class TestInheritVerification:
    def test_copies_verification_fields(self, db, unit, master, upload):
        verification, continuity = master
        lease = add_lease(db, unit, [("Jane Doe", "52000.00"), ("Bob Doe", "31000.00")], rent_roll=upload)
        db.commit()

        new_id = inherit_verification(db, verification.id, lease.id, continuity.id)
        db.commit()

        inherited = db.get(IncomeVerification, new_id)
        assert inherited.id != verification.id
        assert inherited.lease_id == lease.id
        assert inherited.continuity_id == continuity.id
        assert inherited.status == VerificationStatus.FINALIZED
        assert inherited.finalized_at == FINALIZED_AT
        assert inherited.calculated_verified_income == Decimal("83000.00")
        assert inherited.associated_lease_start == verification.associated_lease_start

    def test_documents_reference_same_files(self, db, unit, master, upload):
        verification, continuity = master
        lease = add_lease(db, unit, [("Jane Doe", "52000.00"), ("Bob Doe", "31000.00")], rent_roll=upload)
        db.commit()

        new_id = inherit_verification(db, verification.id, lease.id, continuity.id)
        db.commit()

        inherited = db.get(IncomeVerification, new_id)
        new_residents = _residents(db, lease)
        by_path = {d.file_path: d for d in verification.documents}

        assert len(inherited.documents) == 2
        for document in inherited.documents:
            original = by_path[document.file_path]
            assert document.id != original.id
            assert document.resident_id == new_residents[document.employee_name].id
            assert document.box1_wages == original.box1_wages
            assert document.document_type == original.document_type

        # Master is read-only
        master_documents = db.execute(
            select(func.count()).select_from(IncomeDocument).where(IncomeDocument.verification_id == verification.id)
        ).scalar_one()
        assert master_documents == 2

    def test_resident_finalization_copied_by_name(self, db, unit, master, upload):
        verification, continuity = master
        lease = add_lease(db, unit, [("jane doe", "52000.00"), ("Newcomer", "12000.00")], rent_roll=upload)
        db.commit()

        new_id = inherit_verification(db, verification.id, lease.id, continuity.id)
        db.commit()

        residents = _residents(db, lease)
        assert residents["jane doe"].income_finalized
        assert residents["jane doe"].calculated_annualized_income == Decimal("52000.00")
        assert residents["jane doe"].finalized_at == FINALIZED_AT
        assert not residents["Newcomer"].income_finalized
        assert residents["Newcomer"].calculated_annualized_income is None

        # Bob's document has no owner on the new lease
        inherited = db.get(IncomeVerification, new_id)
        assert [d.resident_id for d in inherited.documents] == [residents["jane doe"].id]

    def test_missing_master_raises(self, db, unit, master, upload):
        _, continuity = master
        lease = add_lease(db, unit, [("Jane Doe", "52000.00")], rent_roll=upload)
        db.commit()

        with pytest.raises(MasterVerificationNotFoundError):
            inherit_verification(db, uuid.uuid4(), lease.id, continuity.id)


class TestSetMasterVerification:
    def test_reassigns_master(self, db, unit, master, upload):
        _, continuity = master
        lease = add_lease(db, unit, [("Jane Doe", "52000.00")], rent_roll=upload)
        replacement = add_verification(db, lease)
        db.commit()

        set_master_verification(db, replacement.id, continuity.id)
        db.commit()

        db.refresh(continuity)
        assert continuity.master_verification_id == replacement.id

    def test_unknown_continuity(self, db, master):
        verification, _ = master
        with pytest.raises(ContinuityNotFoundError):
            set_master_verification(db, verification.id, uuid.uuid4())

    def test_unknown_verification(self, db, master):
        verification, continuity = master
        with pytest.raises(MasterVerificationNotFoundError):
            set_master_verification(db, uuid.uuid4(), continuity.id)
        db.rollback()
        db.refresh(continuity)
        assert continuity.master_verification_id == verification.id


class TestAcceptPreviouslyVerifiedIncome:
    def test_accept_after_discrepancy(self, db, prop, unit, upload):
        first = add_rent_roll(db, prop, datetime(2024, 1, 31))
        old_lease = add_lease(db, unit, [("Jane Doe", "52000.00")], rent_roll=first)
        db.commit()
        fresh = reconcile(db, prop.id, unit.id, LeaseSnapshotRecord.from_lease(old_lease), first.id)
        verification = add_verification(db, old_lease)
        set_master_verification(db, verification.id, fresh.continuity_id)
        db.commit()

        new_lease = add_lease(db, unit, [("Jane Doe", "55000.00")], rent_roll=upload)
        db.commit()
        pending = reconcile(db, prop.id, unit.id, LeaseSnapshotRecord.from_lease(new_lease), upload.id)
        db.commit()
        assert pending.outcome == ContinuityOutcome.DISCREPANCY_PENDING

        new_verification_id = accept_previously_verified_income(
            db, pending.continuity_id, pending.matched_continuity_id, new_lease.id
        )
        db.commit()

        continuity = db.get(VerificationContinuity, pending.continuity_id)
        assert continuity.master_verification_id == new_verification_id
        jane = _residents(db, new_lease)["Jane Doe"]
        assert jane.annualized_income == Decimal("52000.00")
        assert jane.calculated_annualized_income == Decimal("52000.00")
        assert jane.income_finalized
        # Old lineage keeps its own master
        assert db.get(VerificationContinuity, fresh.continuity_id).master_verification_id == verification.id

    def test_structural_lineage_without_master(self, db, prop, unit, upload):
        unverified = VerificationContinuity(
            property_id=prop.id, unit_id=unit.id, lease_signature="c" * 64, structural_signature="d" * 64,
        )
        pending = VerificationContinuity(
            property_id=prop.id, unit_id=unit.id, lease_signature="e" * 64, structural_signature="f" * 64,
        )
        lease = add_lease(db, unit, [("Jane Doe", "52000.00")], rent_roll=upload)
        db.add_all([unverified, pending])
        db.commit()

        with pytest.raises(MasterVerificationNotFoundError):
            accept_previously_verified_income(db, pending.id, unverified.id, lease.id)

    def test_unknown_structural_lineage(self, db, unit, master, upload):
        _, continuity = master
        lease = add_lease(db, unit, [("Jane Doe", "52000.00")], rent_roll=upload)
        db.commit()

        with pytest.raises(ContinuityNotFoundError):
            accept_previously_verified_income(db, continuity.id, uuid.uuid4(), lease.id)

    def test_unknown_pending_lineage(self, db, unit, master, upload):
        _, continuity = master
        lease = add_lease(db, unit, [("Jane Doe", "52000.00")], rent_roll=upload)
        db.commit()

        with pytest.raises(ContinuityNotFoundError):
            accept_previously_verified_income(db, uuid.uuid4(), continuity.id, lease.id)
        db.rollback()

        # Nothing inherited before the lineage was checked
        assert _verification_count(db, lease) == 0


class TestAcceptFutureLeaseVerification:
    def test_accept_fuzzy_match(self, db, prop, unit, upload):
        future = add_lease(db, unit, [("John Smith", "45000.00")], name="Renewal")
        future_verification = add_verification(db, future, verified_incomes={"John Smith": "48000.00"})
        lease = add_lease(db, unit, [("Jon Smyth", "45000.00")], rent_roll=upload)
        db.commit()

        pending = reconcile(db, prop.id, unit.id, LeaseSnapshotRecord.from_lease(lease), upload.id)
        db.commit()
        assert pending.outcome == ContinuityOutcome.MANUAL_REVIEW_PENDING

        new_verification_id = accept_future_lease_verification(
            db, pending.continuity_id, future.id, future_verification.id, lease.id
        )
        db.commit()

        continuity = db.get(VerificationContinuity, pending.continuity_id)
        assert continuity.master_verification_id == new_verification_id
        inherited = db.get(IncomeVerification, new_verification_id)
        assert inherited.lease_id == lease.id
        assert inherited.status == VerificationStatus.FINALIZED

    def test_incomes_copied_for_same_names(self, db, prop, unit, upload):
        future = add_lease(db, unit, [("Jane Doe", "50000.00")], name="Renewal")
        future_verification = add_verification(db, future, verified_incomes={"Jane Doe": "51000.00"})
        lease = add_lease(db, unit, [("Jane Doe", "50000.00")], rent="1600.00", rent_roll=upload)
        continuity = VerificationContinuity(
            property_id=prop.id, unit_id=unit.id, lease_signature="1" * 64, structural_signature="2" * 64,
        )
        db.add(continuity)
        db.commit()

        accept_future_lease_verification(db, continuity.id, future.id, future_verification.id, lease.id)
        db.commit()

        jane = _residents(db, lease)["Jane Doe"]
        assert jane.annualized_income == Decimal("51000.00")
        assert jane.income_finalized

    def test_missing_future_verification(self, db, prop, unit, upload):
        future = add_lease(db, unit, [("Jane Doe", "50000.00")])
        lease = add_lease(db, unit, [("Jane Doe", "50000.00")], rent_roll=upload)
        continuity = VerificationContinuity(
            property_id=prop.id, unit_id=unit.id, lease_signature="1" * 64, structural_signature="2" * 64,
        )
        db.add(continuity)
        db.commit()

        with pytest.raises(MasterVerificationNotFoundError):
            accept_future_lease_verification(db, continuity.id, future.id, uuid.uuid4(), lease.id)

    def test_unknown_lineage(self, db, unit, upload):
        future = add_lease(db, unit, [("Jane Doe", "50000.00")])
        future_verification = add_verification(db, future)
        lease = add_lease(db, unit, [("Jane Doe", "50000.00")], rent_roll=upload)
        db.commit()

        with pytest.raises(ContinuityNotFoundError):
            accept_future_lease_verification(db, uuid.uuid4(), future.id, future_verification.id, lease.id)
        db.rollback()

        assert _verification_count(db, lease) == 0

    def test_verification_of_another_lease(self, db, prop, unit, master, upload):
        other_verification, _ = master
        future = add_lease(db, unit, [("Jane Doe", "50000.00")])
        add_verification(db, future)
        lease = add_lease(db, unit, [("Jane Doe", "50000.00")], rent_roll=upload)
        continuity = VerificationContinuity(
            property_id=prop.id, unit_id=unit.id, lease_signature="1" * 64, structural_signature="2" * 64,
        )
        db.add(continuity)
        db.commit()

        with pytest.raises(MasterVerificationNotFoundError, match="does not belong"):
            accept_future_lease_verification(db, continuity.id, future.id, other_verification.id, lease.id)
        db.rollback()

        assert _verification_count(db, lease) == 0
        assert db.get(VerificationContinuity, continuity.id).master_verification_id is None
