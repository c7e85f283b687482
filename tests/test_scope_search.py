"""
Tests for indexed service-scope search.
"""

from __future__ import annotations

from datetime import datetime

from mssp.services.scope_search import ScopeSearchParams, parse_id_list, search_service_scopes


def _ids(result) -> list:
    return [row["id"] for row in result["data"]]


class TestParseIdList:
    def test_skips_junk(self) -> None:
        assert parse_id_list("1, 2,x,3,") == [1, 2, 3]
        assert parse_id_list(None) == []
        assert parse_id_list("") == []


class TestSearchServiceScopes:
    def test_joins_names(self, db, sample_data) -> None:
        result = search_service_scopes(db, ScopeSearchParams(client_ids=[sample_data["clients"]["globex"].id]))
        assert _ids(result) == [sample_data["scopes"]["edr"].id]
        row = result["data"][0]
        assert row["client_name"] == "Globex"
        assert row["contract_name"] == "Globex Endpoint"
        assert row["service_name"] == "Managed EDR"

    def test_text_query_matches_notes_and_description(self, db, sample_data) -> None:
        result = search_service_scopes(db, ScopeSearchParams(q="rollout"))
        assert _ids(result) == [sample_data["scopes"]["edr"].id]

    def test_text_query_matches_definition_description(self, db, sample_data) -> None:
        result = search_service_scopes(db, ScopeSearchParams(q="monitoring"))
        assert _ids(result) == [sample_data["scopes"]["siem_large"].id]

    def test_wildcard_characters_are_literal(self, db, sample_data) -> None:
        assert search_service_scopes(db, ScopeSearchParams(q="%"))["pagination"]["total"] == 0
        assert search_service_scopes(db, ScopeSearchParams(q="Phase_1"))["pagination"]["total"] == 0

    def test_range_filters(self, db, sample_data) -> None:
        scopes = sample_data["scopes"]
        assert _ids(search_service_scopes(db, ScopeSearchParams(ranges={"eps": (2000, None)}))) == [
            scopes["siem_large"].id
        ]
        assert _ids(search_service_scopes(db, ScopeSearchParams(ranges={"endpoints": (None, 100)}))) == [
            scopes["siem_small"].id
        ]
        both = search_service_scopes(db, ScopeSearchParams(ranges={"endpoints": (100, 500)}))
        assert _ids(both) == [scopes["siem_large"].id]

    def test_tier_filter_with_sort(self, db, sample_data) -> None:
        scopes = sample_data["scopes"]
        result = search_service_scopes(db, ScopeSearchParams(
            service_tier="Premium", sort_by="endpoints", sort_order="asc",
        ))
        assert _ids(result) == [scopes["siem_large"].id, scopes["edr"].id]

        everything = search_service_scopes(db, ScopeSearchParams(service_tier="all"))
        assert everything["pagination"]["total"] == 3

    def test_status_and_service_filters(self, db, sample_data) -> None:
        pending = search_service_scopes(db, ScopeSearchParams(status="pending"))
        assert _ids(pending) == [sample_data["scopes"]["edr"].id]

        siem = search_service_scopes(db, ScopeSearchParams(service_ids=[sample_data["services"]["siem"].id]))
        assert set(_ids(siem)) == {sample_data["scopes"]["siem_small"].id, sample_data["scopes"]["siem_large"].id}

    def test_deleted_clients_excluded(self, db, sample_data) -> None:
        sample_data["clients"]["acme"].deleted_at = datetime.utcnow()
        db.commit()
        result = search_service_scopes(db, ScopeSearchParams())
        assert _ids(result) == [sample_data["scopes"]["edr"].id]

    def test_pagination(self, db, sample_data) -> None:
        first = search_service_scopes(db, ScopeSearchParams(limit=2))
        assert len(first["data"]) == 2
        assert first["pagination"] == {
            "page": 1, "limit": 2, "total": 3, "totalPages": 2, "hasNext": True, "hasPrev": False,
        }
        second = search_service_scopes(db, ScopeSearchParams(limit=2, page=2))
        assert len(second["data"]) == 1
        assert second["pagination"]["hasPrev"] is True
        assert not set(_ids(first)) & set(_ids(second))

    def test_limit_is_clamped(self, db, sample_data) -> None:
        assert search_service_scopes(db, ScopeSearchParams(limit=0))["pagination"]["limit"] == 1
        assert search_service_scopes(db, ScopeSearchParams(limit=500))["pagination"]["limit"] == 100


class TestScopeSearchApi:
    def test_query_params(self, client, sample_data, basic_user, auth_headers) -> None:
        resp = client.get(
            "/api/service-scopes/search",
            params={"epsMin": "2000", "sortBy": "eps"},
            headers=auth_headers(basic_user),
        )
        assert resp.status_code == 200
        assert _ids(resp.json()) == [sample_data["scopes"]["siem_large"].id]

    def test_bad_number_is_400(self, client, sample_data, basic_user, auth_headers) -> None:
        resp = client.get("/api/service-scopes/search", params={"epsMin": "many"}, headers=auth_headers(basic_user))
        assert resp.status_code == 400

    def test_requires_auth(self, client) -> None:
        assert client.get("/api/service-scopes/search").status_code == 401
