"""
Global search across clients, contracts, services and users.

Candidates are narrowed in SQL with case-insensitive LIKE, then ranked in
Python by match tier (exact > prefix > contains > secondary fields).
"""

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, or_, func
from sqlalchemy.orm import Session

from mssp.models import Client, Contract, Service, User, UserRole, SearchHistory, SavedSearch

logger = logging.getLogger(__name__)

DEFAULT_ENTITY_TYPES = ["clients", "contracts", "services", "users"]
DEFAULT_LIMIT = 50
MAX_LIMIT = 1000
MIN_QUERY_LENGTH = 2
CANDIDATE_CAP = 500


def _tier(value: Optional[str], q: str, exact: float, prefix: float, contains: float) -> float:
    if not value:
        return 0.0
    v = value.lower()
    if v == q:
        return exact
    if v.startswith(q):
        return prefix
    if q in v:
        return contains
    return 0.0


def _contains(value: Optional[str], q: str, score: float) -> float:
    return score if value and q in value.lower() else 0.0


def score_client(c: Client, q: str) -> float:
    return max(
        _tier(c.name, q, 1.0, 0.9, 0.7),
        _tier(c.short_name, q, 0.95, 0.85, 0.65),
        _tier(c.domain, q, 0.9, 0.8, 0.6),
        _contains(c.industry, q, 0.5),
        _contains(c.notes, q, 0.3),
    )


def score_contract(c: Contract, q: str) -> float:
    return max(_tier(c.name, q, 1.0, 0.9, 0.7), _contains(c.notes, q, 0.3))


def score_service(s: Service, q: str) -> float:
    return max(
        _tier(s.name, q, 1.0, 0.9, 0.7),
        _contains(s.category, q, 0.5),
        _contains(s.description, q, 0.3),
    )


def score_user(u: User, q: str) -> float:
    full_name = (u.full_name or "").lower()
    email = (u.email or "").lower()
    role = u.role.value if isinstance(u.role, UserRole) else str(u.role or "")
    if q in (full_name, email):
        return 1.0
    return max(
        0.8 if full_name and q in full_name else 0.0,
        0.6 if email and q in email else 0.0,
        0.4 if q in role.lower() else 0.0,
    )


def _search_clients(db: Session, q: str, limit: int) -> List[Dict]:
    rows = db.scalars(
        select(Client)
        .where(Client.deleted_at.is_(None))
        .where(or_(
            Client.name.icontains(q, autoescape=True),
            Client.short_name.icontains(q, autoescape=True),
            Client.domain.icontains(q, autoescape=True),
            Client.industry.icontains(q, autoescape=True),
            Client.notes.icontains(q, autoescape=True),
        ))
        .limit(CANDIDATE_CAP)
    ).all()
    results = [
        {
            "id": c.id,
            "type": "client",
            "title": c.name,
            "subtitle": c.short_name or c.domain,
            "description": c.industry,
            "url": f"/clients/{c.id}",
            "relevance": score_client(c, q),
            "metadata": {"status": c.status.value if c.status else None, "domain": c.domain},
        }
        for c in rows
    ]
    return _top(results, limit)


def _search_contracts(db: Session, q: str, limit: int) -> List[Dict]:
    rows = db.execute(
        select(Contract, Client.name)
        .join(Client, Contract.client_id == Client.id)
        .where(Client.deleted_at.is_(None))
        .where(or_(Contract.name.icontains(q, autoescape=True), Contract.notes.icontains(q, autoescape=True)))
        .limit(CANDIDATE_CAP)
    ).all()
    results = [
        {
            "id": c.id,
            "type": "contract",
            "title": c.name,
            "subtitle": f"Contract - {client_name}",
            "description": c.notes,
            "url": f"/contracts/{c.id}",
            "relevance": score_contract(c, q),
            "metadata": {
                "status": c.status.value if c.status else None,
                "clientId": c.client_id,
                "totalValue": float(c.total_value) if c.total_value is not None else None,
            },
        }
        for c, client_name in rows
    ]
    return _top(results, limit)


def _search_services(db: Session, q: str, limit: int) -> List[Dict]:
    rows = db.scalars(
        select(Service)
        .where(or_(
            Service.name.icontains(q, autoescape=True),
            Service.category.icontains(q, autoescape=True),
            Service.description.icontains(q, autoescape=True),
        ))
        .limit(CANDIDATE_CAP)
    ).all()
    results = [
        {
            "id": s.id,
            "type": "service",
            "title": s.name,
            "subtitle": s.category,
            "description": s.description,
            "url": f"/services/{s.id}",
            "relevance": score_service(s, q),
            "metadata": {"isActive": s.is_active, "deliveryModel": s.delivery_model},
        }
        for s in rows
    ]
    return _top(results, limit)


def _search_users(db: Session, q: str, limit: int) -> List[Dict]:
    full_name = func.coalesce(User.first_name, "") + " " + func.coalesce(User.last_name, "")
    matching_roles = [r for r in UserRole if q in r.value]
    conditions = [
        full_name.icontains(q, autoescape=True),
        User.email.icontains(q, autoescape=True),
    ]
    if matching_roles:
        conditions.append(User.role.in_(matching_roles))
    rows = db.scalars(
        select(User).where(User.is_active.is_(True)).where(or_(*conditions)).limit(CANDIDATE_CAP)
    ).all()
    results = [
        {
            "id": u.id,
            "type": "user",
            "title": u.full_name or u.username,
            "subtitle": u.email,
            "description": u.role.value if u.role else None,
            "url": f"/users/{u.id}",
            "relevance": score_user(u, q),
            "metadata": {"username": u.username},
        }
        for u in rows
    ]
    return _top(results, limit)


_SEARCHERS = {
    "clients": _search_clients,
    "contracts": _search_contracts,
    "services": _search_services,
    "users": _search_users,
}


def _top(results: List[Dict], limit: int) -> List[Dict]:
    results = [r for r in results if r["relevance"] > 0]
    results.sort(key=lambda r: (-r["relevance"], r["title"] or ""))
    return results[:limit]


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, int(limit)))


def execute_search(
    db: Session,
    query: Optional[str],
    entity_types: Optional[Sequence[str]] = None,
    limit: Optional[int] = None,
) -> List[Dict]:
    """
    Run a relevance-ranked search.

    Returns:
        Results sorted by relevance (highest first); [] for queries shorter
        than two characters
    """
    q = (query or "").strip().lower()
    if len(q) < MIN_QUERY_LENGTH:
        return []

    types = [t for t in (entity_types or DEFAULT_ENTITY_TYPES) if t in _SEARCHERS]
    if not types:
        return []

    total_limit = clamp_limit(limit)
    per_entity = max(1, total_limit // len(types))

    results: List[Dict] = []
    for entity_type in types:
        results.extend(_SEARCHERS[entity_type](db, q, per_entity))

    results.sort(key=lambda r: -r["relevance"])
    return results[:total_limit]


def log_search(
    db: Session,
    user_id: int,
    query: str,
    search_config: Optional[Dict],
    entity_types: Optional[Sequence[str]],
    results_count: int,
    execution_time_ms: int,
) -> SearchHistory:
    entry = SearchHistory(
        user_id=user_id,
        search_query=query,
        search_config=search_config or {},
        entity_types=list(entity_types or []),
        results_count=results_count,
        execution_time=execution_time_ms,
    )
    db.add(entry)
    return entry


def timed_search(db: Session, user_id: int, query: str, entity_types=None, limit=None, search_config=None) -> Dict:
    """Execute, record in search history and return results with timing"""
    started = time.perf_counter()
    results = execute_search(db, query, entity_types, limit)
    elapsed_ms = int((time.perf_counter() - started) * 1000)

    log_search(db, user_id, query or "", search_config, entity_types or DEFAULT_ENTITY_TYPES, len(results), elapsed_ms)
    db.commit()
    logger.info(f"Search '{query}' returned {len(results)} results in {elapsed_ms}ms")

    return {"results": results, "total": len(results), "executionTime": elapsed_ms}


def search_history(db: Session, user_id: int, limit: int = 10) -> List[Dict]:
    rows = db.scalars(
        select(SearchHistory)
        .where(SearchHistory.user_id == user_id)
        .order_by(SearchHistory.created_at.desc(), SearchHistory.id.desc())
        .limit(limit)
    ).all()
    return [
        {
            "id": h.id,
            "search_query": h.search_query,
            "search_config": h.search_config,
            "entity_types": h.entity_types,
            "results_count": h.results_count,
            "execution_time": h.execution_time,
            "created_at": h.created_at.isoformat() if h.created_at else None,
        }
        for h in rows
    ]


def visible_saved_searches(db: Session, user_id: int):
    return db.scalars(
        select(SavedSearch)
        .where(or_(SavedSearch.user_id == user_id, SavedSearch.is_public.is_(True)))
        .order_by(SavedSearch.use_count.desc(), SavedSearch.id)
    ).all()


def mark_saved_search_used(db: Session, saved: SavedSearch) -> SavedSearch:
    saved.use_count = (saved.use_count or 0) + 1
    saved.last_used = datetime.utcnow()
    db.commit()
    db.refresh(saved)
    return saved
