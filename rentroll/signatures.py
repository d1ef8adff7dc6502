"""Content signatures for recognizing the same lease across uploads.

Leases carry no durable key between rent roll uploads. Instead, the comparable
fields are canonicalized into a sorted JSON document and hashed:

| Signature  | Dates | Rent | Names | Incomes |
|------------|-------|------|-------|---------|
| structural |  yes  | yes  |  yes  |   no    |
| full       |  yes  | yes  |  yes  |   yes   |

Equal structural signatures with different full signatures mean "same lease,
reported income changed".
"""

import hashlib
import json
from decimal import Decimal

from .schemas import LeaseSnapshotRecord, normalize_name

CENTS = Decimal("0.01")


def _money(value: Decimal | None) -> str:
    """Canonical money string so 1200, 1200.0 and Decimal('1200.00') agree."""
    return str((value or Decimal(0)).quantize(CENTS))


def _canonical_lease(lease: LeaseSnapshotRecord, include_income: bool) -> dict:
    residents = []
    for resident in lease.residents:
        entry = {"name": normalize_name(resident.name)}
        if include_income:
            entry["income"] = _money(resident.annualized_income)
        residents.append(entry)
    residents.sort(key=lambda r: (r["name"], r.get("income", "")))

    return {
        "start_date": lease.lease_start_date.isoformat() if lease.lease_start_date else None,
        "end_date": lease.lease_end_date.isoformat() if lease.lease_end_date else None,
        # Zero rent is treated as unreported
        "rent": _money(lease.lease_rent) if lease.lease_rent else None,
        "residents": residents,
    }


def _hash(document: dict) -> str:
    payload = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def structural_signature(lease: LeaseSnapshotRecord) -> str:
    """Hash of dates, rent and sorted normalized resident names."""
    return _hash(_canonical_lease(lease, include_income=False))


def full_signature(lease: LeaseSnapshotRecord) -> str:
    """Structural signature plus each resident's reported income (missing = 0)."""
    return _hash(_canonical_lease(lease, include_income=True))
