"""
Indexed service-scope search.

Filters and sorts on the fixed sizing columns of service_scopes (eps,
endpoints, tier, coverage, ...) joined with contract, client and service
names. Dynamic, per-variable filtering lives in scope_variables.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.orm import Session

from mssp.models import ServiceScope, Contract, Client, Service
from mssp.services.scope_variables import serialize_scope

logger = logging.getLogger(__name__)

MAX_LIMIT = 100

# request name -> column
RANGE_FILTERS = {
    "eps": ServiceScope.eps,
    "endpoints": ServiceScope.endpoints,
    "responseTime": ServiceScope.response_time_minutes,
    "dataVolume": ServiceScope.data_volume_gb,
    "logSources": ServiceScope.log_sources,
    "firewallDevices": ServiceScope.firewall_devices,
    "pamUsers": ServiceScope.pam_users,
}

SORT_COLUMNS = {
    "eps": ServiceScope.eps,
    "endpoints": ServiceScope.endpoints,
    "serviceTier": ServiceScope.service_tier,
    "coverageHours": ServiceScope.coverage_hours,
    "responseTimeMinutes": ServiceScope.response_time_minutes,
    "serviceName": Service.name,
    "clientName": Client.name,
    "createdAt": ServiceScope.created_at,
}


@dataclass
class ScopeSearchParams:
    q: Optional[str] = None
    client_ids: List[int] = field(default_factory=list)
    service_ids: List[int] = field(default_factory=list)
    service_tier: Optional[str] = None
    coverage_hours: Optional[str] = None
    status: Optional[str] = None
    ranges: Dict[str, Tuple[Optional[float], Optional[float]]] = field(default_factory=dict)
    sort_by: str = "createdAt"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 20


def parse_id_list(raw: Optional[str]) -> List[int]:
    """'1, 2,x,3' -> [1, 2, 3]"""
    if not raw:
        return []
    ids = []
    for part in str(raw).split(","):
        part = part.strip()
        if part.isdigit():
            ids.append(int(part))
    return ids


def search_service_scopes(db: Session, params: ScopeSearchParams) -> Dict:
    page = max(1, params.page)
    limit = max(1, min(MAX_LIMIT, params.limit))

    stmt = (
        select(ServiceScope, Contract.name, Client.name, Service.name)
        .join(Contract, ServiceScope.contract_id == Contract.id)
        .join(Client, Contract.client_id == Client.id)
        .join(Service, ServiceScope.service_id == Service.id)
        .where(Client.deleted_at.is_(None))
    )

    if params.q:
        term = params.q.strip()
        stmt = stmt.where(or_(
            ServiceScope.notes.icontains(term, autoescape=True),
            ServiceScope.description.icontains(term, autoescape=True),
            ServiceScope.scope_definition["description"].as_string().icontains(term, autoescape=True),
        ))
    if params.client_ids:
        stmt = stmt.where(Contract.client_id.in_(params.client_ids))
    if params.service_ids:
        stmt = stmt.where(ServiceScope.service_id.in_(params.service_ids))
    if params.service_tier and params.service_tier != "all":
        stmt = stmt.where(ServiceScope.service_tier == params.service_tier)
    if params.coverage_hours and params.coverage_hours != "all":
        stmt = stmt.where(ServiceScope.coverage_hours == params.coverage_hours)
    if params.status and params.status != "all":
        stmt = stmt.where(ServiceScope.status == params.status)

    for name, (low, high) in params.ranges.items():
        column = RANGE_FILTERS.get(name)
        if column is None:
            continue
        if low is not None:
            stmt = stmt.where(column >= low)
        if high is not None:
            stmt = stmt.where(column <= high)

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0

    sort_column = SORT_COLUMNS.get(params.sort_by, ServiceScope.created_at)
    descending = str(params.sort_order).lower() != "asc"
    stmt = stmt.order_by(
        sort_column.is_(None),
        sort_column.desc() if descending else sort_column.asc(),
        ServiceScope.id.desc() if descending else ServiceScope.id,
    )

    rows = db.execute(stmt.offset((page - 1) * limit).limit(limit)).all()
    total_pages = math.ceil(total / limit) if total else 0

    return {
        "data": [
            {**serialize_scope(scope), "contract_name": contract_name, "client_name": client_name,
             "service_name": service_name}
            for scope, contract_name, client_name, service_name in rows
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }
