"""
Service Scope API

Indexed scope search plus the dynamic scope-variable endpoints
(definitions, dynamic search, add variable, usage stats, discovery).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Optional

from mssp.audit import record_audit
from mssp.database import get_db
from mssp.models import User
from mssp.security import get_current_user, require_manager_or_above
from mssp.services.scope_search import ScopeSearchParams, RANGE_FILTERS, parse_id_list, search_service_scopes
from mssp.services.scope_variables import ScopeVariableService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/service-scopes", tags=["service-scopes"])

_DYNAMIC_RESERVED = {"page", "limit", "sortBy", "sortOrder"}


class AddVariableRequest(BaseModel):
    variableName: Optional[str] = None
    value: Any = None
    type: str = "auto"


def _float_or_none(raw):
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid numeric value: {raw!r}")


def _int_param(raw, default: int) -> int:
    try:
        return int(raw) if raw not in (None, "") else default
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid integer value: {raw!r}")


@router.get("/search")
def search_scopes(request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    qp = request.query_params
    ranges = {}
    for name in RANGE_FILTERS:
        low = _float_or_none(qp.get(f"{name}Min"))
        high = _float_or_none(qp.get(f"{name}Max"))
        if low is not None or high is not None:
            ranges[name] = (low, high)

    params = ScopeSearchParams(
        q=qp.get("q"),
        client_ids=parse_id_list(qp.get("clientIds")),
        service_ids=parse_id_list(qp.get("serviceIds")),
        service_tier=qp.get("serviceTier"),
        coverage_hours=qp.get("coverageHours"),
        status=qp.get("status"),
        ranges=ranges,
        sort_by=qp.get("sortBy", "createdAt"),
        sort_order=qp.get("sortOrder", "desc"),
        page=_int_param(qp.get("page"), 1),
        limit=_int_param(qp.get("limit"), 20),
    )
    return search_service_scopes(db, params)


@router.get("/variables/definitions")
def variable_definitions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ScopeVariableService(db).list_definitions()


@router.get("/variables/stats")
def variable_stats(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ScopeVariableService(db).variable_stats()


@router.get("/variables/discover")
def discover_variables(
    request: Request,
    user: User = Depends(require_manager_or_above),
    db: Session = Depends(get_db),
):
    result = ScopeVariableService(db).discover_all()
    record_audit(
        db, user.id, "discover", "scope_variable",
        description=f"Variable discovery extracted {result['valuesExtracted']} values",
        category="data",
        ip_address=request.client.host if request.client else None,
    )
    db.commit()
    return result


@router.get("/dynamic")
def dynamic_search(request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    qp = request.query_params
    filters = {k: v for k, v in qp.items() if k not in _DYNAMIC_RESERVED}
    try:
        return ScopeVariableService(db).dynamic_search(
            filters,
            page=_int_param(qp.get("page"), 1),
            limit=_int_param(qp.get("limit"), 50),
            sort_by=qp.get("sortBy", "created_at"),
            sort_order=qp.get("sortOrder", "desc"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{scope_id}/variables")
def add_scope_variable(
    scope_id: int,
    body: AddVariableRequest,
    request: Request,
    user: User = Depends(require_manager_or_above),
    db: Session = Depends(get_db),
):
    if not body.variableName or body.value is None:
        raise HTTPException(status_code=400, detail="variableName and value are required")

    try:
        result = ScopeVariableService(db).add_scope_variable(scope_id, body.variableName, body.value, body.type)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    record_audit(
        db, user.id, "update", "service_scope",
        entity_id=scope_id,
        description=f"Set variable {result['variableName']} = {result['value']!r}",
        category="data",
        metadata=result,
        ip_address=request.client.host if request.client else None,
    )
    db.commit()

    return {
        "success": True,
        "message": f"Variable {result['variableName']} added to scope {scope_id}",
        **result,
    }
