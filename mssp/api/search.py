"""
Search API

Global relevance search, search history and saved searches.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from mssp.database import get_db
from mssp.errors import NotFoundError
from mssp.models import SavedSearch, User
from mssp.security import get_current_user
from mssp.services.global_search import (
    timed_search, log_search, search_history, visible_saved_searches, mark_saved_search_used,
)

router = APIRouter(prefix="/api/search", tags=["search"])


class SearchRequest(BaseModel):
    query: Optional[str] = None
    entityTypes: Optional[List[str]] = None
    limit: Optional[int] = None
    filters: Optional[Dict[str, Any]] = None


class SaveSearchRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    searchConfig: Optional[Dict[str, Any]] = None
    entityTypes: Optional[List[str]] = None
    isPublic: bool = False
    isQuickFilter: bool = False
    tags: Optional[List[str]] = None


class LogSearchRequest(BaseModel):
    query: str
    searchConfig: Optional[Dict[str, Any]] = None
    entityTypes: Optional[List[str]] = None
    resultsCount: int = 0
    executionTime: int = 0


def _serialize_saved(s: SavedSearch) -> dict:
    return {
        "id": s.id,
        "user_id": s.user_id,
        "name": s.name,
        "description": s.description,
        "search_config": s.search_config,
        "entity_types": s.entity_types,
        "is_public": s.is_public,
        "is_quick_filter": s.is_quick_filter,
        "use_count": s.use_count,
        "last_used": s.last_used.isoformat() if s.last_used else None,
        "tags": s.tags,
    }


@router.post("/execute")
def execute(request: SearchRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return timed_search(
        db,
        user.id,
        request.query or "",
        entity_types=request.entityTypes,
        limit=request.limit,
        search_config={"filters": request.filters or {}},
    )


@router.get("/history")
def history(limit: int = 10, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return search_history(db, user.id, max(1, min(100, limit)))


@router.get("/saved")
def saved(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return [_serialize_saved(s) for s in visible_saved_searches(db, user.id)]


@router.post("/save")
def save(request: SaveSearchRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not request.name or request.searchConfig is None:
        raise HTTPException(status_code=400, detail="name and searchConfig are required")

    saved_search = SavedSearch(
        user_id=user.id,
        name=request.name,
        description=request.description,
        search_config=request.searchConfig,
        entity_types=request.entityTypes or [],
        is_public=request.isPublic,
        is_quick_filter=request.isQuickFilter,
        tags=request.tags or [],
    )
    db.add(saved_search)
    db.commit()
    db.refresh(saved_search)
    return _serialize_saved(saved_search)


@router.post("/saved/{search_id}/use")
def use_saved(search_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    saved_search = db.get(SavedSearch, search_id)
    if not saved_search or (saved_search.user_id != user.id and not saved_search.is_public):
        raise NotFoundError("Saved search", search_id)
    return _serialize_saved(mark_saved_search_used(db, saved_search))


@router.post("/log")
def log(request: LogSearchRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    entry = log_search(
        db, user.id, request.query, request.searchConfig, request.entityTypes,
        request.resultsCount, request.executionTime,
    )
    db.commit()
    return {"success": True, "id": entry.id}
