"""
Tests for custom query execution: parameter substitution, data mapping,
result caching, the execution log and the query API.
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from fakes import FakeClock, FakeSession, make_response
from mssp.models import (
    CustomQuery, ExecutionStatus, ExternalSystem, QueryExecution, QueryType, QueryWidget, WidgetType,
)
from mssp.services.plugin_cache import PluginCache
from mssp.services.plugins import GenericRestPlugin, JiraPlugin, PluginRegistry
from mssp.services.query_execution import QueryExecutionService, apply_data_mapping, substitute_parameters

JIRA_ISSUES = {
    "total": 3,
    "issues": [
        {"key": "SEC-1", "fields": {"status": {"name": "Open"}, "priority": {"name": "High"}}},
        {"key": "SEC-2", "fields": {"status": {"name": "Open"}, "priority": {"name": "Low"}}},
        {"key": "SEC-3", "fields": {"status": {"name": "Done"}, "priority": {"name": "High"}}},
    ],
}


class TestSubstituteParameters:
    def test_placeholders(self) -> None:
        text = "project = {{ project }} AND assignee = {{user.name}} AND x = {{missing}}"
        result = substitute_parameters(text, {"project": "SEC", "user.name": "svc", "ignored": 1})
        assert result == "project = SEC AND assignee = svc AND x = {{missing}}"

    def test_structured_values_not_inlined(self) -> None:
        assert substitute_parameters("{{body}}", {"body": {"a": 1}}) == "{{body}}"
        assert substitute_parameters(None, {}) == ""


class TestDataMapping:
    def test_root_and_fields(self) -> None:
        mapped = apply_data_mapping(JIRA_ISSUES, {"root": "issues", "fields": {"key": "key", "status": "fields.status.name"}})
        assert mapped[0] == {"key": "SEC-1", "status": "Open"}
        assert len(mapped) == 3

    def test_transform_steps(self) -> None:
        mapped = apply_data_mapping(JIRA_ISSUES["issues"], {
            "type": "transform",
            "transforms": [
                {"type": "filter", "condition": {"field": "fields.priority.name", "operator": "equals", "value": "High"}},
                {"type": "sort", "field": "key", "order": "desc"},
                {"type": "limit", "count": 1},
                {"type": "map", "mapping": {"id": "key"}},
            ],
        })
        assert mapped == [{"id": "SEC-3"}]

    @pytest.mark.parametrize("condition, expected", [
        ({"field": "n", "operator": "greater_than", "value": 1}, ["B", "C"]),
        ({"field": "n", "operator": "less_than", "value": "3"}, ["A", "B"]),
        ({"field": "key", "operator": "not_equals", "value": "A"}, ["B", "C"]),
        ({"field": "key", "operator": "contains", "value": "C"}, ["C"]),
        ({"field": "n", "operator": "between", "value": 1}, ["A", "B", "C"]),
    ])
    def test_filter_conditions(self, condition, expected) -> None:
        rows = [{"key": "A", "n": 1}, {"key": "B", "n": 2}, {"key": "C", "n": 3}]
        mapped = apply_data_mapping(rows, {"type": "transform", "transforms": [{"type": "filter", "condition": condition}]})
        assert [r["key"] for r in mapped] == expected

    def test_filter_then_limit(self) -> None:
        rows = [{"key": "A", "n": 1}, {"key": "B", "n": 2}, {"key": "C", "n": 3}]
        mapped = apply_data_mapping(rows, {
            "type": "transform",
            "transforms": [
                {"type": "filter", "condition": {"field": "n", "operator": "greater_than", "value": 1}},
                {"type": "limit", "count": 1},
            ],
        })
        assert mapped == [{"key": "B", "n": 2}]

    def test_passthrough_types(self) -> None:
        assert apply_data_mapping(JIRA_ISSUES, {"type": "jq", "expression": ".issues"}) is JIRA_ISSUES
        assert apply_data_mapping(JIRA_ISSUES, None) is JIRA_ISSUES
        assert apply_data_mapping(JIRA_ISSUES, {"root": "issues"}) == JIRA_ISSUES["issues"]

    def test_unknown_steps_ignored(self) -> None:
        data = [{"key": "SEC-1"}]
        assert apply_data_mapping(data, {"type": "transform", "transforms": [{"type": "explode"}]}) == data

    def test_failed_mapping_returns_original(self) -> None:
        data = [{"key": "SEC-1"}]
        assert apply_data_mapping(data, {"fields": ["key"]}) == data


# ── Service ──────────────────────────────────────────────────────────────────


@pytest.fixture
def jira_session():
    return FakeSession(make_response(payload=JIRA_ISSUES), make_response(payload=JIRA_ISSUES))


@pytest.fixture
def rest_session():
    return FakeSession()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(jira_session, rest_session, clock):
    registry = PluginRegistry(PluginCache())
    registry.register(JiraPlugin(session=jira_session))
    registry.register(GenericRestPlugin(session=rest_session))
    return QueryExecutionService(plugin_registry=registry, clock=clock)


@pytest.fixture
def systems(db):
    jira = ExternalSystem(system_name="jira", display_name="SOC Jira", base_url="https://jira.example.com",
                          auth_type="basic", auth_config={"username": "svc", "password": "pw"})
    crm = ExternalSystem(system_name="crm", display_name="CRM", base_url="https://crm.example.com",
                         auth_type="bearer", auth_config={"token": "t"})
    db.add_all([jira, crm])
    db.commit()
    return {"jira": jira, "crm": crm}


@pytest.fixture
def make_query(db, systems):
    def _make(system: str = "jira", **kwargs) -> CustomQuery:
        values = {
            "name": "Open issues",
            "system_id": systems[system].id,
            "query_type": QueryType.JQL,
            "query": "project = {{project}} AND resolution = Unresolved",
            "parameters": {"project": "SEC"},
            "data_mapping": {"fields": {"key": "key", "status": "fields.status.name"}},
            "refresh_interval": 300,
            "cache_enabled": True,
            "is_public": True,
        }
        values.update(kwargs)
        query = CustomQuery(**values)
        db.add(query)
        db.commit()
        return query

    return _make


def _log_statuses(db, query_id):
    rows = db.scalars(select(QueryExecution).where(QueryExecution.query_id == query_id).order_by(QueryExecution.id))
    return [r.status for r in rows]


class TestQueryExecutionService:
    def test_jql_query(self, db, service, make_query, jira_session) -> None:
        query = make_query()
        result = service.execute(db, query.id, user_id=None)

        assert result["success"] is True
        assert result["cached"] is False
        assert result["recordCount"] == 3
        assert result["data"][0] == {"key": "SEC-1", "status": "Open"}
        call = jira_session.calls[0]
        assert call["url"] == "https://jira.example.com/rest/api/2/search"
        assert call["params"]["jql"] == "project = SEC AND resolution = Unresolved"
        assert _log_statuses(db, query.id) == [ExecutionStatus.COMPLETED]

    def test_call_parameters_override_defaults(self, db, service, make_query, jira_session) -> None:
        query = make_query()
        service.execute(db, query.id, parameters={"project": "OPS", "maxResults": 5})
        assert jira_session.calls[0]["params"]["jql"].startswith("project = OPS")
        assert jira_session.calls[0]["params"]["maxResults"] == 5

    def test_results_cached_for_refresh_interval(self, db, service, make_query, jira_session, clock) -> None:
        query = make_query(refresh_interval=60)
        service.execute(db, query.id)
        cached = service.execute(db, query.id)
        assert cached["cached"] is True
        assert cached["recordCount"] == 3
        assert len(jira_session.calls) == 1

        clock.now += 60
        assert service.execute(db, query.id)["cached"] is False
        assert len(jira_session.calls) == 2
        assert _log_statuses(db, query.id) == [
            ExecutionStatus.COMPLETED, ExecutionStatus.CACHED, ExecutionStatus.COMPLETED,
        ]

    def test_force_refresh_and_disabled_cache(self, db, service, make_query, jira_session) -> None:
        query = make_query()
        service.execute(db, query.id)
        assert service.execute(db, query.id, force_refresh=True)["cached"] is False

        uncached = make_query(name="No cache", cache_enabled=False)
        jira_session.responses.append(make_response(payload=JIRA_ISSUES))
        service.execute(db, uncached.id)
        assert service.cache_size() == 1

    def test_clear_cache(self, db, service, make_query) -> None:
        query = make_query()
        service.execute(db, query.id)
        assert service.clear_cache(query.id) is True
        assert service.clear_cache(query.id) is False
        assert service.clear_all_cache() == 0

    def test_aggregation_in_mapping(self, db, service, make_query) -> None:
        query = make_query(data_mapping={
            "root": "issues",
            "aggregations": {"groupBy": ["fields.status.name"], "sort": [{"field": "_group_size", "direction": "desc"}]},
        })
        result = service.execute(db, query.id)
        rows = result["data"]["aggregated_data"]
        assert rows[0] == {"fields.status.name": "Open", "_group_size": 2}

    def test_aggregation_unwraps_rest_results(self, db, service, make_query, rest_session) -> None:
        rest_session.responses.append(make_response(payload={"results": [{"key": "A"}, {"key": "B"}, {"key": "B"}]}))
        query = make_query("crm", query_type=QueryType.REST, query="/alerts", data_mapping={
            "aggregations": {"metrics": [{"function": "count", "field": "key"},
                                         {"function": "count_distinct", "field": "key"}]},
        })
        result = service.execute(db, query.id)
        assert result["success"] is True
        assert result["data"]["total_records"] == 3
        assert result["data"]["aggregated_data"] == [{"count_key": 3, "count_distinct_key": 2}]

    def test_malformed_aggregation_is_logged_as_failure(self, db, service, make_query) -> None:
        query = make_query(data_mapping={"aggregations": ["groupBy"]})
        result = service.execute(db, query.id)
        assert result["success"] is False
        assert result["error"]
        assert _log_statuses(db, query.id) == [ExecutionStatus.FAILED]

    def test_sql_not_supported(self, db, service, make_query) -> None:
        query = make_query(query_type=QueryType.SQL, query="SELECT 1")
        result = service.execute(db, query.id)
        assert result["success"] is False
        assert result["error"] == "SQL queries require database driver configuration"
        assert _log_statuses(db, query.id) == [ExecutionStatus.FAILED]

    def test_missing_and_inactive_queries(self, db, service, make_query) -> None:
        assert service.execute(db, 9999)["success"] is False
        inactive = make_query(is_active=False)
        assert "not found or inactive" in service.execute(db, inactive.id)["error"]

    def test_inactive_system(self, db, service, make_query, systems) -> None:
        systems["jira"].is_active = False
        db.commit()
        result = service.execute(db, make_query().id)
        assert result["success"] is False
        assert "not active" in result["error"]

    def test_upstream_failure_is_logged(self, db, make_query, clock) -> None:
        registry = PluginRegistry(PluginCache())
        registry.register(JiraPlugin(session=FakeSession(make_response(500, payload={"errorMessages": ["x"]}))))
        service = QueryExecutionService(plugin_registry=registry, clock=clock)
        query = make_query()

        result = service.execute(db, query.id)
        assert result["success"] is False
        assert result["error"].startswith("jira:")
        assert service.cache_size() == 0
        row = db.scalars(select(QueryExecution).where(QueryExecution.query_id == query.id)).one()
        assert row.error == result["error"]

    def test_rest_query_uses_generic_plugin(self, db, service, make_query, rest_session) -> None:
        rest_session.responses.append(make_response(payload=[{"id": 1}, {"id": 2}]))
        query = make_query("crm", query_type=QueryType.REST, query="/accounts?region={{region}}",
                           parameters={"region": "emea"}, data_mapping={})
        result = service.execute(db, query.id)
        assert result["data"] == [{"id": 1}, {"id": 2}]
        assert rest_session.calls[0]["url"] == "https://crm.example.com/accounts?region=emea"
        assert rest_session.calls[0]["headers"]["Authorization"] == "Bearer t"

    def test_graphql_query(self, db, service, make_query, rest_session) -> None:
        rest_session.responses.append(make_response(payload={"data": {"accounts": [{"id": 1}]}}))
        query = make_query("crm", query_type=QueryType.GRAPHQL, query="{ accounts { id } }",
                           parameters={"variables": {"first": 5}}, data_mapping={"root": "accounts"})
        result = service.execute(db, query.id)
        assert result["data"] == [{"id": 1}]
        assert rest_session.calls[0]["json"] == {"query": "{ accounts { id } }", "variables": {"first": 5}}

    def test_execution_history(self, db, service, make_query) -> None:
        query = make_query()
        service.execute(db, query.id, user_id=None)
        service.execute(db, query.id, user_id=None)
        history = service.execution_history(db, query.id)
        assert [h["status"] for h in history] == ["cached", "completed"]


# ── API ──────────────────────────────────────────────────────────────────────


class TestQueryApi:
    @pytest.fixture(autouse=True)
    def patched_service(self, monkeypatch, service):
        monkeypatch.setattr("mssp.api.queries.query_execution_service", service)
        return service

    def test_list_and_execute(self, client, make_query, basic_user, auth_headers) -> None:
        query = make_query()
        headers = auth_headers(basic_user)
        listed = client.get("/api/queries", headers=headers).json()
        assert [q["id"] for q in listed] == [query.id]
        assert listed[0]["query_type"] == "jql"

        resp = client.post(f"/api/queries/{query.id}/execute", headers=headers, json={})
        assert resp.status_code == 200
        assert resp.json()["recordCount"] == 3

        history = client.get(f"/api/queries/{query.id}/executions", headers=headers).json()
        assert history[0]["executed_by"] == basic_user.id

    def test_private_query_visibility(self, client, make_query, make_user, manager, auth_headers) -> None:
        owner = make_user()
        stranger = make_user()
        query = make_query(is_public=False, created_by=owner.id)

        assert client.post(f"/api/queries/{query.id}/execute", headers=auth_headers(stranger),
                           json={}).status_code == 404
        assert client.get("/api/queries", headers=auth_headers(stranger)).json() == []
        assert client.post(f"/api/queries/{query.id}/execute", headers=auth_headers(owner),
                           json={}).status_code == 200
        assert client.get(f"/api/queries/{query.id}/executions",
                          headers=auth_headers(manager)).status_code == 200

    def test_widget_data(self, client, db, make_query, basic_user, auth_headers) -> None:
        query = make_query(data_mapping={"root": "issues"})
        widget = QueryWidget(query_id=query.id, name="Issues by status", widget_type=WidgetType.CHART,
                             data_config={"aggregations": {"groupBy": "fields.status.name",
                                                          "metrics": [{"function": "count", "alias": "n"}]}})
        db.add(widget)
        db.commit()

        resp = client.get(f"/api/queries/widgets/{widget.id}/data", headers=auth_headers(basic_user))
        assert resp.status_code == 200
        body = resp.json()
        assert body["widget"]["widget_type"] == "chart"
        counts = {row["fields.status.name"]: row["n"] for row in body["data"]["aggregated_data"]}
        assert counts == {"Open": 2, "Done": 1}

        assert client.get("/api/queries/widgets/9999/data", headers=auth_headers(basic_user)).status_code == 404

    def test_cache_endpoints(self, client, make_query, basic_user, manager, auth_headers) -> None:
        query = make_query()
        client.post(f"/api/queries/{query.id}/execute", headers=auth_headers(basic_user), json={})

        assert client.delete("/api/queries/cache", headers=auth_headers(basic_user)).status_code == 403
        assert client.delete(f"/api/queries/{query.id}/cache", headers=auth_headers(manager)).json() == {
            "success": True, "cleared": True,
        }
        assert client.delete("/api/queries/cache", headers=auth_headers(manager)).json()["cleared"] == 0
