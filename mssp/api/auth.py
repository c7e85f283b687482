"""
Auth & Navigation API

Login, current-user lookup, role-filtered navigation pages and admin
management of page permissions.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from sqlalchemy import select
from pydantic import BaseModel
from typing import Optional, List

from mssp.audit import record_audit
from mssp.database import get_db
from mssp.errors import AuthorizationError, NotFoundError
from mssp.models import PagePermission, User
from mssp.security import (
    authenticate, get_current_user, require_admin, serialize_user, page_access_column, role_value,
)

router = APIRouter(prefix="/api", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


class ReorderItem(BaseModel):
    id: int
    sort_order: int
    is_active: Optional[bool] = None
    category: Optional[str] = None


class ReorderRequest(BaseModel):
    items: Optional[List[ReorderItem]] = None


def _serialize_page(p: PagePermission) -> dict:
    return {
        "id": p.id,
        "page_name": p.page_name,
        "page_url": p.page_url,
        "display_name": p.display_name,
        "description": p.description,
        "category": p.category,
        "icon": p.icon,
        "admin_access": p.admin_access,
        "manager_access": p.manager_access,
        "engineer_access": p.engineer_access,
        "user_access": p.user_access,
        "sort_order": p.sort_order,
        "is_active": p.is_active,
    }


@router.post("/auth/login")
def login(request: LoginRequest, db: Session = Depends(get_db)):
    return authenticate(db, request.username, request.password)


@router.get("/auth/me")
def me(user: User = Depends(get_current_user)):
    return serialize_user(user)


@router.get("/user/accessible-pages")
def accessible_pages(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    try:
        column = getattr(PagePermission, page_access_column(role_value(user.role)))
    except ValueError as e:
        raise AuthorizationError(str(e))

    pages = db.scalars(
        select(PagePermission)
        .where(PagePermission.is_active.is_(True), column.is_(True))
        .order_by(PagePermission.sort_order, PagePermission.id)
    ).all()
    return [_serialize_page(p) for p in pages]


@router.get("/admin/page-permissions")
def list_page_permissions(user: User = Depends(require_admin), db: Session = Depends(get_db)):
    pages = db.scalars(select(PagePermission).order_by(PagePermission.sort_order, PagePermission.id)).all()
    return [_serialize_page(p) for p in pages]


@router.put("/admin/page-permissions/reorder")
def reorder_page_permissions(
    body: ReorderRequest,
    request: Request,
    user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """
    Apply a new navigation order in one transaction.

    Every listed page must exist; otherwise nothing is changed.
    """
    if not body.items:
        raise HTTPException(status_code=400, detail="items array is required")

    try:
        for item in body.items:
            page = db.get(PagePermission, item.id)
            if not page:
                raise NotFoundError("Page permission", item.id)
            page.sort_order = item.sort_order
            if item.is_active is not None:
                page.is_active = item.is_active
            if item.category is not None:
                page.category = item.category

        record_audit(
            db, user.id, "update", "page_permissions",
            description=f"Reordered {len(body.items)} navigation pages",
            category="security",
            metadata={"ids": [i.id for i in body.items]},
            ip_address=request.client.host if request.client else None,
        )
        db.commit()
    except NotFoundError:
        db.rollback()
        raise

    return {"success": True, "updated": len(body.items)}
