"""
License pool and hardware availability checks used before assigning
resources to a client.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from mssp.errors import NotFoundError
from mssp.models import LicensePool, ClientLicense, HardwareAsset, AssetStatus

logger = logging.getLogger(__name__)

# First match wins
POOL_TYPE_KEYWORDS = [
    ("SIEM", ("siem", "splunk", "qradar")),
    ("EDR", ("edr", "crowdstrike", "sentinelone")),
    ("NDR", ("ndr", "darktrace", "extrahop")),
]


def classify_pool(pool: LicensePool) -> str:
    haystack = " ".join(
        str(v).lower() for v in (pool.name, pool.vendor, pool.product_name, pool.license_type) if v
    )
    for pool_type, keywords in POOL_TYPE_KEYWORDS:
        if any(k in haystack for k in keywords):
            return pool_type
    return "OTHER"


def _assigned_by_pool(db: Session) -> Dict[int, int]:
    return dict(
        db.execute(
            select(ClientLicense.license_pool_id, func.coalesce(func.sum(ClientLicense.assigned_licenses), 0))
            .group_by(ClientLicense.license_pool_id)
        ).all()
    )


def remaining_licenses(db: Session, pool: LicensePool, assigned: Optional[Dict[int, int]] = None) -> int:
    if assigned is None:
        assigned_count = db.scalar(
            select(func.coalesce(func.sum(ClientLicense.assigned_licenses), 0))
            .where(ClientLicense.license_pool_id == pool.id)
        )
    else:
        assigned_count = assigned.get(pool.id, 0)
    return int(pool.available_licenses or 0) - int(assigned_count or 0)


def available_license_pools(db: Session) -> Dict:
    pools = db.scalars(select(LicensePool).where(LicensePool.is_active.is_(True)).order_by(LicensePool.name)).all()
    assigned = _assigned_by_pool(db)

    grouped: Dict[str, List[Dict]] = {"SIEM": [], "EDR": [], "NDR": [], "OTHER": []}
    for pool in pools:
        remaining = remaining_licenses(db, pool, assigned)
        grouped[classify_pool(pool)].append({
            "id": pool.id,
            "name": pool.name,
            "vendor": pool.vendor,
            "product_name": pool.product_name,
            "total_licenses": pool.total_licenses,
            "available_licenses": pool.available_licenses,
            "assigned_licenses": int(assigned.get(pool.id, 0)),
            "remaining": remaining,
        })

    summary = {
        pool_type: {"pools": len(items), "totalRemaining": sum(p["remaining"] for p in items)}
        for pool_type, items in grouped.items()
    }
    return {"pools": grouped, "summary": summary}


def available_hardware(db: Session) -> Dict:
    assets = db.scalars(
        select(HardwareAsset).where(HardwareAsset.status == AssetStatus.AVAILABLE).order_by(HardwareAsset.name)
    ).all()
    grouped: Dict[str, Dict] = {}
    for asset in assets:
        category = (asset.category or "OTHER").upper()
        bucket = grouped.setdefault(category, {"assets": [], "availableCount": 0, "totalValue": 0.0})
        bucket["assets"].append({
            "id": asset.id,
            "name": asset.name,
            "manufacturer": asset.manufacturer,
            "model": asset.model,
            "serial_number": asset.serial_number,
            "purchase_cost": float(asset.purchase_cost) if asset.purchase_cost is not None else None,
            "location": asset.location,
        })
        bucket["availableCount"] += 1
        bucket["totalValue"] += float(asset.purchase_cost or 0)
    return grouped


def validate_license_allocation(db: Session, pool_id: Optional[int], requested: Optional[int]) -> Dict:
    """
    Check whether a pool can cover a requested allocation.

    Raises:
        ValueError: Missing pool ID or non-positive request
        NotFoundError: Unknown pool
    """
    if not pool_id or requested is None or requested <= 0:
        raise ValueError("poolId and a positive requestedLicenses are required")

    pool = db.get(LicensePool, pool_id)
    if not pool:
        raise NotFoundError("License pool", pool_id)

    remaining = remaining_licenses(db, pool)
    after = remaining - requested
    is_valid = after >= 0 and bool(pool.is_active)
    if not pool.is_active:
        message = f"License pool '{pool.name}' is inactive"
    elif is_valid:
        message = f"Allocation valid: {after} licenses remain after allocation"
    else:
        message = f"Insufficient licenses: requested {requested}, only {remaining} remaining"

    return {
        "isValid": is_valid,
        "poolName": pool.name,
        "remaining": remaining,
        "requested": requested,
        "availableAfterAllocation": after,
        "message": message,
    }


def validate_hardware_assignment(db: Session, asset_ids: List[int]) -> Dict:
    if not asset_ids:
        raise ValueError("assetIds must be a non-empty list")

    found = {a.id: a for a in db.scalars(select(HardwareAsset).where(HardwareAsset.id.in_(asset_ids))).all()}
    missing = [i for i in asset_ids if i not in found]
    unavailable = [
        {"id": a.id, "name": a.name, "status": a.status.value}
        for a in found.values() if a.status != AssetStatus.AVAILABLE
    ]
    is_valid = not missing and not unavailable

    if is_valid:
        message = f"All {len(asset_ids)} assets are available"
    else:
        parts = []
        if missing:
            parts.append(f"{len(missing)} not found")
        if unavailable:
            parts.append(f"{len(unavailable)} unavailable")
        message = "Cannot assign assets: " + ", ".join(parts)

    return {"isValid": is_valid, "missingAssets": missing, "unavailableAssets": unavailable, "message": message}
