"""
Custom Query Execution

Runs a stored CustomQuery against its external system, maps and
aggregates the result, caches it for refresh_interval seconds and logs
every run (completed / cached / failed) to query_executions.
"""

import logging
import re
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from mssp.errors import AppError, ConfigurationError
from mssp.models import CustomQuery, ExternalSystem, QueryExecution, QueryType, ExecutionStatus
from mssp.services.aggregation import aggregate, get_path
from mssp.services.plugins import (
    PluginInstance, PluginRegistry, JiraPlugin, GenericRestPlugin, registry as default_registry,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def substitute_parameters(text: str, parameters: Optional[Dict[str, Any]]) -> str:
    """Replace {{key}} placeholders; unknown keys are left as-is"""
    params = parameters or {}

    def _replace(match):
        key = match.group(1)
        if key in params and not isinstance(params[key], (dict, list)):
            return str(params[key])
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text or "")


def _condition_holds(record: Any, condition: Optional[Dict]) -> bool:
    condition = condition or {}
    value = get_path(record, condition.get("field"))
    expected = condition.get("value")
    operator = condition.get("operator")
    if operator == "equals":
        return value == expected
    if operator == "not_equals":
        return value != expected
    if operator == "contains":
        return str(expected) in str(value)
    if operator in ("greater_than", "less_than"):
        try:
            left, right = float(value), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "greater_than" else left < right
    return True


def _apply_transforms(data: Any, transforms: List[Dict]) -> Any:
    result = data
    for transform in transforms:
        if not isinstance(result, list):
            break
        kind = transform.get("type")
        if kind == "filter":
            result = [r for r in result if _condition_holds(r, transform.get("condition"))]
        elif kind == "map":
            fields = transform.get("mapping") or {}
            result = [{key: get_path(r, path) for key, path in fields.items()} for r in result]
        elif kind == "sort":
            field = transform.get("field")
            descending = str(transform.get("order", "asc")).lower() == "desc"
            present = [r for r in result if get_path(r, field) is not None]
            missing = [r for r in result if get_path(r, field) is None]
            present.sort(key=lambda r: get_path(r, field), reverse=descending)
            result = present + missing
        elif kind == "limit":
            result = result[: int(transform.get("count", len(result)))]
    return result


def apply_data_mapping(data: Any, mapping: Optional[Dict]) -> Any:
    """
    Reshape raw results according to a query's data_mapping.

    Supported:
        {"fields": {"alias": "dotted.path"}}            projection per record
        {"type": "transform", "transforms": [...]}      filter/map/sort/limit steps
        {"type": "jq" | "jsonpath", ...}                passed through unchanged
        {"root": "dotted.path"}                         select the record list first

    Transform steps:
        {"type": "filter", "condition": {"field", "operator", "value"}}
            operators equals, not_equals, contains, greater_than, less_than
        {"type": "map", "mapping": {"alias": "dotted.path"}}
        {"type": "sort", "field": "...", "order": "asc" | "desc"}
        {"type": "limit", "count": n}
    Unknown step types and operators are ignored.

    A mapping that fails is logged and the unmapped data returned.
    """
    if not mapping:
        return data
    try:
        if mapping.get("root"):
            data = get_path(data, mapping["root"], data)

        mapping_type = mapping.get("type")
        if mapping_type in ("jq", "jsonpath"):
            return data
        if mapping_type == "transform":
            return _apply_transforms(data, mapping.get("transforms") or [])
        if not mapping.get("fields"):
            return data

        records = data if isinstance(data, list) else [data]
        return [{alias: get_path(r, path) for alias, path in mapping["fields"].items()} for r in records]
    except Exception as e:
        logger.warning(f"Data mapping failed, returning original data: {e}")
        return data


def instance_for_system(system: ExternalSystem) -> PluginInstance:
    return PluginInstance(
        id=f"system-{system.id}",
        name=system.display_name,
        base_url=system.base_url,
        auth_type=system.auth_type or "none",
        auth_config=system.auth_config or {},
        is_active=bool(system.is_active),
    )


class QueryExecutionService:
    """
    Execute custom queries with caching and an execution log.

    One instance is shared by the API; the cache is per-process.
    """

    def __init__(self, plugin_registry: Optional[PluginRegistry] = None, clock=time.monotonic):
        self.registry = plugin_registry or default_registry
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @staticmethod
    def cache_key(query_id: int) -> str:
        return f"query_{query_id}"

    def _cached(self, query: CustomQuery) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(self.cache_key(query.id))
            if entry is None:
                return None
            age = self._clock() - entry["stored_at"]
            if age >= (query.refresh_interval or 0):
                del self._cache[self.cache_key(query.id)]
                return None
            return entry["data"]

    def _store(self, query_id: int, data: Any):
        with self._lock:
            self._cache[self.cache_key(query_id)] = {"data": data, "stored_at": self._clock()}

    def clear_cache(self, query_id: int) -> bool:
        with self._lock:
            return self._cache.pop(self.cache_key(query_id), None) is not None

    def clear_all_cache(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
        logger.info(f"Query cache cleared ({count} entries)")
        return count

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        db: Session,
        query_id: int,
        user_id: Optional[int] = None,
        parameters: Optional[Dict[str, Any]] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        Execute one custom query.

        Returns:
            {success, data, error, executionTime, recordCount, cached}
        """
        started = time.monotonic()
        query = db.get(CustomQuery, query_id)
        if query is None or not query.is_active:
            return self._failure(db, None, user_id, started, f"Query {query_id} not found or inactive")

        system = db.get(ExternalSystem, query.system_id)
        if system is None:
            return self._failure(db, query.id, user_id, started, f"External system {query.system_id} not found")

        if query.cache_enabled and not force_refresh:
            cached = self._cached(query)
            if cached is not None:
                elapsed = int((time.monotonic() - started) * 1000)
                count = len(cached) if isinstance(cached, list) else 1
                self._log(db, query.id, user_id, ExecutionStatus.CACHED, None, elapsed, count)
                return {"success": True, "data": cached, "error": None, "executionTime": elapsed,
                        "recordCount": count, "cached": True}

        merged = {**(query.parameters or {}), **(parameters or {})}
        try:
            raw = self._dispatch(query, system, merged)
            mapping = query.data_mapping or {}
            data = apply_data_mapping(raw, mapping)
            if mapping.get("aggregations"):
                data = aggregate(data, mapping["aggregations"])
        except AppError as e:
            return self._failure(db, query.id, user_id, started, e.message)
        except Exception as e:
            # Bad mapping or aggregation config still counts as a failed run
            return self._failure(db, query.id, user_id, started, str(e) or type(e).__name__)

        elapsed = int((time.monotonic() - started) * 1000)
        count = len(data) if isinstance(data, list) else 1
        if query.cache_enabled:
            self._store(query.id, data)
        self._log(db, query.id, user_id, ExecutionStatus.COMPLETED, data, elapsed, count)
        logger.info(f"Query {query.id} ({query.query_type.value}) completed: {count} records in {elapsed}ms")

        return {"success": True, "data": data, "error": None, "executionTime": elapsed,
                "recordCount": count, "cached": False}

    def _dispatch(self, query: CustomQuery, system: ExternalSystem, parameters: Dict[str, Any]) -> Any:
        text = substitute_parameters(query.query, parameters)
        instance = instance_for_system(system)
        if not instance.is_active:
            raise ValueError(f"External system '{system.system_name}' is not active")

        query_type = QueryType(query.query_type)
        if query_type == QueryType.SQL:
            raise ConfigurationError("SQL queries require database driver configuration")

        if query_type == QueryType.JQL:
            plugin = self.registry.get("jira") or JiraPlugin()
            payload = plugin.run(instance, text, "GET", {
                "maxResults": parameters.get("maxResults", 100),
                "fields": parameters.get("fields", "key,summary,status,assignee,priority,created,updated"),
            })
            return payload.get("issues", payload) if isinstance(payload, dict) else payload

        plugin = self.registry.get(system.system_name)
        if not isinstance(plugin, GenericRestPlugin):
            plugin = self.registry.get("rest") or GenericRestPlugin()

        if query_type == QueryType.GRAPHQL:
            return plugin.graphql(instance, text, parameters.get("variables"))

        return plugin.run(instance, text, parameters.get("method", "GET"), {
            "headers": parameters.get("headers"),
            "body": parameters.get("body"),
        })

    def _failure(self, db: Session, query_id: Optional[int], user_id: Optional[int], started: float,
                 message: str) -> Dict[str, Any]:
        elapsed = int((time.monotonic() - started) * 1000)
        if query_id is not None:
            self._log(db, query_id, user_id, ExecutionStatus.FAILED, None, elapsed, 0, message)
        logger.error(f"Query {query_id} failed: {message}")
        return {"success": False, "data": None, "error": message, "executionTime": elapsed,
                "recordCount": 0, "cached": False}

    def _log(self, db: Session, query_id: int, user_id: Optional[int], status: ExecutionStatus, data: Any,
             elapsed_ms: int, record_count: int, error: Optional[str] = None):
        now = datetime.utcnow()
        db.add(QueryExecution(
            query_id=query_id,
            executed_by=user_id,
            status=status,
            result_data=data if status == ExecutionStatus.COMPLETED else None,
            execution_time=elapsed_ms,
            error=error,
            record_count=record_count,
            started_at=now,
            completed_at=now,
        ))
        db.commit()

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @staticmethod
    def execution_history(db: Session, query_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        rows = db.scalars(
            select(QueryExecution)
            .where(QueryExecution.query_id == query_id)
            .order_by(QueryExecution.started_at.desc(), QueryExecution.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "id": r.id,
                "status": r.status.value,
                "executed_by": r.executed_by,
                "execution_time": r.execution_time,
                "record_count": r.record_count,
                "error": r.error,
                "started_at": r.started_at.isoformat() if r.started_at else None,
            }
            for r in rows
        ]


query_execution_service = QueryExecutionService()
