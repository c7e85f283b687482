"""
External system plugins.

A plugin knows how to talk to one kind of system (Jira, a generic REST
API) and holds one or more configured instances of it. The registry keys
plugins by lowercased system name and fronts execution with the shared
PluginCache.

Plugin instance config file (MSSP_PLUGIN_CONFIG), JSON:
    [
      {"system": "jira", "type": "jira",
       "instances": [{"id": "jira-main", "name": "Main Jira",
                      "baseUrl": "https://jira.example.com",
                      "authType": "basic",
                      "authConfig": {"username": "svc", "password": "..."},
                      "isActive": true, "tags": ["tickets"]}]}
    ]
"""

import base64
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from mssp.config import PLUGIN_TIMEOUT_SECONDS
from mssp.errors import (
    ConfigurationError, ExternalServiceError, NotFoundError, OperationTimeoutError, ValidationError,
)
from mssp.services.plugin_cache import PluginCache, plugin_cache

logger = logging.getLogger(__name__)

HEALTH_CHECK_QUERY = "__health_check__"


@dataclass
class PluginInstance:
    id: str
    name: str
    base_url: str
    auth_type: str = "none"  # 'none', 'basic', 'bearer', 'api_key'
    auth_config: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PluginInstance":
        try:
            return cls(
                id=str(raw["id"]),
                name=raw.get("name") or str(raw["id"]),
                base_url=raw.get("baseUrl") or raw["base_url"],
                auth_type=raw.get("authType") or raw.get("auth_type") or "none",
                auth_config=raw.get("authConfig") or raw.get("auth_config") or {},
                is_active=bool(raw.get("isActive", raw.get("is_active", True))),
                tags=list(raw.get("tags") or []),
            )
        except KeyError as e:
            raise ConfigurationError(f"Plugin instance missing required field: {e.args[0]}")

    def to_public_dict(self) -> Dict[str, Any]:
        """Instance description without credentials"""
        return {
            "id": self.id,
            "name": self.name,
            "baseUrl": self.base_url,
            "authType": self.auth_type,
            "isActive": self.is_active,
            "tags": self.tags,
        }


def build_auth_headers(instance: PluginInstance) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    auth = instance.auth_config or {}
    auth_type = (instance.auth_type or "none").lower()

    if auth_type == "basic" and auth.get("username"):
        raw = f"{auth.get('username')}:{auth.get('password', '')}".encode()
        headers["Authorization"] = f"Basic {base64.b64encode(raw).decode()}"
    elif auth_type == "bearer" and auth.get("token"):
        headers["Authorization"] = f"Bearer {auth['token']}"
    elif auth_type == "api_key" and (auth.get("apiKey") or auth.get("api_key")):
        header_name = auth.get("header") or auth.get("headerName") or "X-API-Key"
        headers[header_name] = auth.get("apiKey") or auth.get("api_key")
    return headers


class BasePlugin:
    """Common instance handling and HTTP plumbing"""

    system_name = "generic"
    default_queries: List[Dict[str, str]] = []

    def __init__(self, instances: Optional[List[PluginInstance]] = None, timeout: int = PLUGIN_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.instances: List[PluginInstance] = list(instances or [])
        self.timeout = timeout
        self._session = session or requests.Session()

    def get_instances(self) -> List[PluginInstance]:
        return self.instances

    def get_instance(self, instance_id: str) -> Optional[PluginInstance]:
        for instance in self.instances:
            if instance.id == instance_id:
                return instance
        return None

    def add_instance(self, instance: PluginInstance):
        self.instances = [i for i in self.instances if i.id != instance.id] + [instance]

    def execute_query(self, query: str, method: Optional[str], instance_id: str, opts: Optional[Dict] = None) -> Any:
        instance = self.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"{self.system_name} instance '{instance_id}'")
        if not instance.is_active:
            raise ValidationError(f"{self.system_name} instance '{instance_id}' is not active")
        return self.run(instance, query, method, opts or {})

    def run(self, instance: PluginInstance, query: str, method: Optional[str], opts: Dict) -> Any:
        raise NotImplementedError

    def _request(self, instance: PluginInstance, method: str, url: str, **kwargs) -> requests.Response:
        headers = build_auth_headers(instance)
        headers.update(kwargs.pop("headers", None) or {})
        try:
            return self._session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.Timeout:
            raise OperationTimeoutError(f"{self.system_name} request timed out after {self.timeout}s: {url}")
        except requests.RequestException as e:
            raise ExternalServiceError(self.system_name, f"request failed: {e}")

    def _json(self, response: requests.Response, context: str) -> Any:
        if not response.ok:
            raise ExternalServiceError(
                self.system_name, f"{context} {response.status_code}: {response.reason} - {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError:
            raise ExternalServiceError(self.system_name, f"{context} returned invalid JSON: {response.text[:200]}")

    def describe(self) -> Dict[str, Any]:
        return {
            "systemName": self.system_name,
            "instances": [i.to_public_dict() for i in self.instances],
            "defaultQueries": self.default_queries,
        }


class JiraPlugin(BasePlugin):
    system_name = "jira"
    default_queries = [
        {"id": "healthCheck", "method": "GET", "path": HEALTH_CHECK_QUERY, "description": "Server health check"},
        {"id": "recentIssues", "method": "GET", "path": "created >= -1w ORDER BY created DESC",
         "description": "Issues created in the last week"},
        {"id": "openBugs", "method": "GET", "path": "issuetype = Bug AND resolution = Unresolved ORDER BY priority DESC",
         "description": "Unresolved bugs by priority"},
        {"id": "myIssues", "method": "GET", "path": "assignee = currentUser() AND resolution = Unresolved",
         "description": "Open issues assigned to the service account"},
        {"id": "recentlyUpdated", "method": "GET", "path": "updated >= -1d ORDER BY updated DESC",
         "description": "Issues updated in the last day"},
    ]

    @staticmethod
    def validate_jql(query: str):
        trimmed = (query or "").strip()
        if not trimmed:
            raise ValidationError("Query cannot be empty")
        if trimmed == HEALTH_CHECK_QUERY:
            return
        if trimmed.endswith("=") or trimmed.split()[-1].upper() in ("AND", "OR"):
            raise ValidationError("Invalid JQL syntax: query ends with an incomplete operator")
        if trimmed.count("'") % 2 or trimmed.count('"') % 2:
            raise ValidationError("Invalid JQL syntax: unmatched quotes")

    def _check_html(self, response: requests.Response):
        content_type = response.headers.get("content-type", "")
        if "text/html" in content_type or "<html" in response.text[:500].lower():
            if response.status_code == 403:
                raise ExternalServiceError("jira", "Authentication failed (403): invalid API token or credentials")
            if response.status_code == 401:
                raise ExternalServiceError("jira", "Authentication required (401): verify API token and credentials")
            raise ExternalServiceError(
                "jira", f"Returned a web page instead of an API response ({response.status_code})"
            )

    def run(self, instance: PluginInstance, query: str, method: Optional[str], opts: Dict) -> Any:
        self.validate_jql(query)
        base = instance.base_url.rstrip("/")

        if query.strip() == HEALTH_CHECK_QUERY:
            response = self._request(instance, "GET", f"{base}/rest/api/2/serverInfo")
            self._check_html(response)
            info = self._json(response, "Health check")
            return {
                "status": "healthy",
                "serverInfo": {
                    "version": info.get("version"),
                    "title": info.get("serverTitle"),
                    "baseUrl": info.get("baseUrl"),
                    "deploymentType": info.get("deploymentType"),
                },
            }

        params = {"jql": query.strip(), "maxResults": int(opts.get("maxResults", 100))}
        if opts.get("fields"):
            params["fields"] = opts["fields"]
        response = self._request(instance, "GET", f"{base}/rest/api/2/search", params=params)
        self._check_html(response)
        return self._json(response, "Search")


class GenericRestPlugin(BasePlugin):
    system_name = "rest"
    default_queries = [
        {"id": "healthCheck", "method": "GET", "path": "/health", "description": "Health endpoint"},
    ]

    def __init__(self, system_name: str = "rest", **kwargs):
        super().__init__(**kwargs)
        self.system_name = system_name

    def run(self, instance: PluginInstance, query: str, method: Optional[str], opts: Dict) -> Any:
        method = (method or "GET").upper()
        if method not in ("GET", "POST", "PUT", "DELETE"):
            raise ValidationError(f"Unsupported HTTP method: {method}")
        path = query if (query or "").startswith("/") else f"/{query or ''}"
        kwargs: Dict[str, Any] = {"headers": opts.get("headers")}
        if method != "GET" and opts.get("body") is not None:
            kwargs["json"] = opts["body"]
        if opts.get("params"):
            kwargs["params"] = opts["params"]
        response = self._request(instance, method, instance.base_url.rstrip("/") + path, **kwargs)
        if method == "DELETE" and response.ok and not response.content:
            return {"status": response.status_code}
        return self._json(response, f"{method} {path}")

    def graphql(self, instance: PluginInstance, query: str, variables: Optional[Dict] = None) -> Any:
        response = self._request(
            instance, "POST", instance.base_url.rstrip("/") + "/graphql",
            json={"query": query, "variables": variables or {}},
        )
        payload = self._json(response, "GraphQL")
        if isinstance(payload, dict) and payload.get("errors"):
            messages = ", ".join(str(e.get("message", e)) for e in payload["errors"])
            raise ExternalServiceError(self.system_name, f"GraphQL errors: {messages}")
        return payload.get("data") if isinstance(payload, dict) else payload


PLUGIN_TYPES = {"jira": JiraPlugin, "rest": GenericRestPlugin}


class PluginRegistry:

    def __init__(self, cache: Optional[PluginCache] = None):
        self.cache = cache or plugin_cache
        self._plugins: Dict[str, BasePlugin] = {}

    def register(self, plugin: BasePlugin):
        key = plugin.system_name.lower()
        if key in self._plugins:
            logger.warning(f"Plugin '{key}' re-registered; replacing previous instance")
        self._plugins[key] = plugin
        logger.info(f"Registered plugin '{key}' with {len(plugin.instances)} instance(s)")

    def get(self, system_name: str) -> Optional[BasePlugin]:
        return self._plugins.get((system_name or "").lower())

    def list_plugins(self) -> List[Dict[str, Any]]:
        return [p.describe() for _, p in sorted(self._plugins.items())]

    def get_all_instances(self) -> List[Dict[str, Any]]:
        return [
            {"systemName": name, **instance.to_public_dict()}
            for name, plugin in sorted(self._plugins.items())
            for instance in plugin.get_instances()
        ]

    def execute(self, system_name: str, query: str, method: Optional[str], instance_id: str,
                opts: Optional[Dict] = None, use_cache: bool = True, query_id: Optional[str] = None) -> Dict:
        plugin = self.get(system_name)
        if plugin is None:
            raise NotFoundError(f"Plugin '{system_name}'")

        cache_key = self.cache.make_key(plugin.system_name, instance_id, query_id or query,
                                        {"method": method, **(opts or {})})
        if use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return {"data": cached, "cached": True}

        data = plugin.execute_query(query, method, instance_id, opts)
        if use_cache:
            self.cache.set(cache_key, data)
        return {"data": data, "cached": False}

    def load_config(self, path: str) -> int:
        """
        Load plugin instances from a JSON config file.

        Returns:
            Number of instances loaded

        Raises:
            ConfigurationError: Unreadable file or invalid structure
        """
        config_path = Path(path)
        try:
            raw = json.loads(config_path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read plugin config {path}: {e}")
        if not isinstance(raw, list):
            raise ConfigurationError("Plugin config must be a list of systems")

        loaded = 0
        for entry in raw:
            system = str(entry.get("system", "")).lower()
            if not system:
                raise ConfigurationError("Plugin config entry missing 'system'")
            plugin = self.get(system)
            if plugin is None:
                plugin_type = entry.get("type", system)
                if plugin_type == "jira":
                    plugin = JiraPlugin()
                else:
                    plugin = GenericRestPlugin(system_name=system)
                self.register(plugin)
            for raw_instance in entry.get("instances") or []:
                plugin.add_instance(PluginInstance.from_dict(raw_instance))
                loaded += 1

        logger.info(f"Loaded {loaded} plugin instance(s) from {path}")
        return loaded


def create_default_registry(cache: Optional[PluginCache] = None) -> PluginRegistry:
    registry = PluginRegistry(cache)
    registry.register(JiraPlugin())
    registry.register(GenericRestPlugin())
    return registry


registry = create_default_registry()
