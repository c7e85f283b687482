"""
Dashboard API

Headline stats, card values, recent activity, widget preview and the
per-user card layout.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from mssp.audit import record_audit, recent_activity
from mssp.database import get_db
from mssp.models import User
from mssp.security import get_current_user
from mssp.services import dashboard as dashboard_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


class WidgetFilter(BaseModel):
    field: str
    operator: str
    value: Any = None


class WidgetPreviewRequest(BaseModel):
    dataSource: str
    fields: Optional[List[str]] = None
    filters: Optional[List[WidgetFilter]] = None
    groupBy: Optional[str] = None
    aggregation: Optional[Dict[str, Any]] = None
    orderBy: Optional[Dict[str, Any]] = None
    limit: Optional[int] = None


class DashboardCardRequest(BaseModel):
    card_id: Optional[str] = None
    title: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    data_source: Optional[str] = None
    size: Optional[str] = None
    visible: Optional[bool] = None
    position: Optional[int] = None
    config: Optional[Dict[str, Any]] = None


@router.get("/stats")
def stats(timeRange: str = "mtd", user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        return dashboard_service.dashboard_stats(db, timeRange)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/card-data")
def card_data(request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    qp = request.query_params
    table = qp.get("table")
    if not table:
        raise HTTPException(status_code=400, detail="table is required")

    filters = {k[len("filter_"):]: v for k, v in qp.items() if k.startswith("filter_") and v not in ("", "all")}
    status = qp.get("status")
    try:
        return dashboard_service.card_data(
            db,
            table,
            aggregation=qp.get("aggregation", "count"),
            filters=filters,
            status=status if status not in (None, "", "all") else None,
            date_range=qp.get("dateRange") or None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/recent-activity")
def activity(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return recent_activity(db, limit=10)


@router.post("/widgets/preview")
def preview_widget(request: WidgetPreviewRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    config = request.model_dump(exclude={"dataSource"}, exclude_none=True)
    ok, errors = dashboard_service.validate_widget_config(request.dataSource, config)
    if not ok:
        raise HTTPException(status_code=400, detail={"message": "Invalid widget configuration", "errors": errors})
    try:
        rows = dashboard_service.run_widget_query(db, request.dataSource, config)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"dataSource": request.dataSource, "rows": rows, "count": len(rows)}


@router.get("/settings")
def get_settings(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return dashboard_service.get_user_settings(db, user.id)


@router.post("/settings")
def add_card(body: DashboardCardRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not body.card_id or not body.title or not body.type:
        raise HTTPException(status_code=400, detail="card_id, title and type are required")
    card = dashboard_service.add_user_setting(db, user.id, body.model_dump())
    record_audit(db, user.id, "create", "dashboard_card", description=f"Added dashboard card {body.card_id}",
                 entity_name=body.card_id, category="dashboard")
    db.commit()
    return card


@router.put("/settings/{card_id}")
def update_card(card_id: str, body: DashboardCardRequest, user: User = Depends(get_current_user),
                db: Session = Depends(get_db)):
    changes = body.model_dump(exclude={"card_id"}, exclude_none=True)
    card = dashboard_service.update_user_setting(db, user.id, card_id, changes)
    record_audit(db, user.id, "update", "dashboard_card", description=f"Updated dashboard card {card_id}",
                 entity_name=card_id, category="dashboard", metadata={"fields": sorted(changes)})
    db.commit()
    return card


@router.delete("/settings/{card_id}")
def delete_card(card_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        dashboard_service.delete_user_setting(db, user.id, card_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    record_audit(db, user.id, "delete", "dashboard_card", description=f"Removed dashboard card {card_id}",
                 entity_name=card_id, category="dashboard")
    db.commit()
    return {"success": True}


@router.post("/settings/reset")
def reset_cards(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    logger.info(f"Resetting dashboard layout for user {user.id}")
    dashboard_service.reset_user_settings(db, user.id)
    record_audit(db, user.id, "update", "dashboard_layout", description="Reset dashboard to built-in cards",
                 entity_id=user.id, category="dashboard")
    db.commit()
    return dashboard_service.get_user_settings(db, user.id)
