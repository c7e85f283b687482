"""
Plugin API

List registered external-system plugins and their instances, run plugin
queries (cached) and manage the plugin cache.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Dict, Optional

from mssp.audit import record_audit
from mssp.database import get_db
from mssp.models import User
from mssp.security import get_current_user, require_manager_or_above
from mssp.services.plugins import registry

router = APIRouter(prefix="/api/plugins", tags=["plugins"])


class PluginQueryRequest(BaseModel):
    query: str
    method: Optional[str] = "GET"
    opts: Optional[Dict[str, Any]] = None
    useCache: bool = True


@router.get("")
def list_plugins(user: User = Depends(get_current_user)):
    return registry.list_plugins()


@router.get("/instances")
def list_instances(user: User = Depends(get_current_user)):
    return registry.get_all_instances()


@router.get("/cache/stats")
def cache_stats(user: User = Depends(get_current_user)):
    return registry.cache.get_cache_stats()


@router.delete("/cache")
def clear_cache(request: Request, prefix: Optional[str] = None, user: User = Depends(require_manager_or_above),
                db: Session = Depends(get_db)):
    removed = registry.cache.clear_plugin_cache(prefix)
    record_audit(db, user.id, "delete", "plugin_cache", description=f"Cleared plugin cache ({removed} entries)",
                 category="integration", metadata={"prefix": prefix},
                 ip_address=request.client.host if request.client else None)
    db.commit()
    return {"success": True, "removed": removed}


@router.post("/{system}/instances/{instance_id}/query")
def run_plugin_query(system: str, instance_id: str, body: PluginQueryRequest,
                     user: User = Depends(get_current_user)):
    result = registry.execute(system, body.query, body.method, instance_id, body.opts, use_cache=body.useCache)
    return {"system": system.lower(), "instanceId": instance_id, **result}
