"""
Custom Query API

Execute stored queries against external systems, inspect execution
history, render query widgets and control the result cache.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sqlalchemy import select, or_
from pydantic import BaseModel
from typing import Any, Dict, Optional

from mssp.audit import record_audit
from mssp.database import get_db
from mssp.errors import NotFoundError
from mssp.models import CustomQuery, QueryWidget, User
from mssp.security import get_current_user, require_manager_or_above
from mssp.services.aggregation import aggregate
from mssp.services.query_execution import query_execution_service

router = APIRouter(prefix="/api/queries", tags=["custom-queries"])


class ExecuteRequest(BaseModel):
    parameters: Optional[Dict[str, Any]] = None
    forceRefresh: bool = False


def _visible_query(db: Session, query_id: int, user: User) -> CustomQuery:
    query = db.get(CustomQuery, query_id)
    if not query or (not query.is_public and query.created_by not in (None, user.id)
                     and user.role.value not in ("admin", "manager")):
        raise NotFoundError("Query", query_id)
    return query


@router.get("")
def list_queries(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = db.scalars(
        select(CustomQuery)
        .where(CustomQuery.is_active.is_(True))
        .where(or_(CustomQuery.is_public.is_(True), CustomQuery.created_by == user.id))
        .order_by(CustomQuery.name)
    ).all()
    return [
        {
            "id": q.id,
            "name": q.name,
            "description": q.description,
            "system_id": q.system_id,
            "query_type": q.query_type.value,
            "refresh_interval": q.refresh_interval,
            "cache_enabled": q.cache_enabled,
            "is_public": q.is_public,
        }
        for q in rows
    ]


@router.post("/{query_id}/execute")
def execute_query(query_id: int, body: ExecuteRequest, user: User = Depends(get_current_user),
                  db: Session = Depends(get_db)):
    _visible_query(db, query_id, user)
    return query_execution_service.execute(
        db, query_id, user_id=user.id, parameters=body.parameters, force_refresh=body.forceRefresh,
    )


@router.get("/{query_id}/executions")
def executions(query_id: int, limit: int = 20, user: User = Depends(get_current_user),
               db: Session = Depends(get_db)):
    _visible_query(db, query_id, user)
    return query_execution_service.execution_history(db, query_id, max(1, min(100, limit)))


@router.get("/widgets/{widget_id}/data")
def widget_data(widget_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    widget = db.get(QueryWidget, widget_id)
    if not widget or not widget.is_active:
        raise NotFoundError("Widget", widget_id)
    _visible_query(db, widget.query_id, user)

    result = query_execution_service.execute(db, widget.query_id, user_id=user.id)
    data_config = widget.data_config or {}
    if result["success"] and data_config.get("aggregations"):
        result["data"] = aggregate(result["data"], data_config["aggregations"])

    return {
        "widget": {
            "id": widget.id,
            "name": widget.name,
            "widget_type": widget.widget_type.value,
            "visual_config": widget.visual_config or {},
            "size": widget.size,
            "position": widget.position,
        },
        **result,
    }


@router.delete("/cache")
def clear_all_cache(request: Request, user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    cleared = query_execution_service.clear_all_cache()
    record_audit(db, user.id, "delete", "query_cache", description=f"Cleared query cache ({cleared} entries)",
                 category="integration", ip_address=request.client.host if request.client else None)
    db.commit()
    return {"success": True, "cleared": cleared}


@router.delete("/{query_id}/cache")
def clear_query_cache(query_id: int, request: Request, user: User = Depends(require_manager_or_above),
                      db: Session = Depends(get_db)):
    cleared = query_execution_service.clear_cache(query_id)
    record_audit(db, user.id, "delete", "query_cache", entity_id=query_id,
                 description=f"Cleared cache for query {query_id}", category="integration",
                 ip_address=request.client.host if request.client else None)
    db.commit()
    return {"success": True, "cleared": cleared}
