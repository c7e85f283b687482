"""
TTL cache for plugin connection checks and query results.

Keys: "<plugin>:<instance>" for connection entries and
"<plugin>:<instance>:<query_id>:<json params>" for query results.
Expired entries are dropped on read and by clean_expired(), which the
maintenance scheduler calls periodically.
"""

import json
import logging
import threading
import time
from typing import Any, Dict, Optional

from mssp.config import QUERY_CACHE_TTL_SECONDS, CONNECTION_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)


class PluginCache:

    def __init__(self, query_ttl_seconds: int = QUERY_CACHE_TTL_SECONDS,
                 connection_ttl_seconds: int = CONNECTION_CACHE_TTL_SECONDS, clock=time.monotonic):
        self.query_ttl = query_ttl_seconds
        self.connection_ttl = connection_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._query_cache: Dict[str, Dict[str, Any]] = {}
        self._connection_cache: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def make_key(plugin: str, instance: str, query_id: Optional[str] = None,
                 params: Optional[Dict] = None) -> str:
        key = f"{plugin}:{instance}"
        if query_id is not None:
            key += f":{query_id}:{json.dumps(params or {}, sort_keys=True, default=str)}"
        return key

    def _store(self, connection: bool) -> Dict[str, Dict[str, Any]]:
        return self._connection_cache if connection else self._query_cache

    def get(self, key: str, connection: bool = False) -> Optional[Any]:
        with self._lock:
            store = self._store(connection)
            entry = store.get(key)
            if entry is None:
                return None
            if self._clock() >= entry["expires_at"]:
                del store[key]
                return None
            return entry["data"]

    def set(self, key: str, data: Any, connection: bool = False, ttl_seconds: Optional[int] = None):
        ttl = ttl_seconds if ttl_seconds is not None else (self.connection_ttl if connection else self.query_ttl)
        with self._lock:
            self._store(connection)[key] = {"data": data, "expires_at": self._clock() + ttl}

    def clear_plugin_cache(self, prefix: Optional[str] = None) -> int:
        """Drop entries whose key starts with prefix (all entries if None)"""
        with self._lock:
            removed = 0
            for store in (self._query_cache, self._connection_cache):
                doomed = [k for k in store if prefix is None or k.startswith(prefix)]
                for k in doomed:
                    del store[k]
                removed += len(doomed)
        logger.info(f"Plugin cache cleared ({removed} entries, prefix={prefix!r})")
        return removed

    def clean_expired(self) -> int:
        now = self._clock()
        with self._lock:
            removed = 0
            for store in (self._query_cache, self._connection_cache):
                doomed = [k for k, v in store.items() if now >= v["expires_at"]]
                for k in doomed:
                    del store[k]
                removed += len(doomed)
        if removed:
            logger.info(f"Plugin cache cleanup removed {removed} expired entries")
        return removed

    def get_cache_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "connectionCacheSize": len(self._connection_cache),
                "queryCacheSize": len(self._query_cache),
                "totalSize": len(self._connection_cache) + len(self._query_cache),
            }


plugin_cache = PluginCache()
