"""
Tests for the in-memory aggregation pipeline used by query widgets.
"""

from __future__ import annotations

import pytest

from mssp.services.aggregation import aggregate, apply_filters, compute_metric, get_path, sort_records

ISSUES = [
    {"key": "SEC-1", "fields": {"status": {"name": "Open"}, "priority": "High", "hours": 4}},
    {"key": "SEC-2", "fields": {"status": {"name": "Open"}, "priority": "Low", "hours": 1.5}},
    {"key": "SEC-3", "fields": {"status": {"name": "Closed"}, "priority": "High", "hours": "10"}},
    {"key": "SEC-4", "fields": {"status": {"name": "Closed"}, "priority": None, "hours": None}},
]


class TestGetPath:
    def test_nested_and_list_access(self) -> None:
        record = {"a": {"b": [{"c": 1}, {"c": 2}]}}
        assert get_path(record, "a.b.1.c") == 2
        assert get_path(record, "a.x", default="none") == "none"
        assert get_path(record, "a.b.9.c") is None


class TestFilters:
    @pytest.mark.parametrize("flt, keys", [
        ({"field": "fields.priority", "operator": "equals", "value": "High"}, ["SEC-1", "SEC-3"]),
        ({"field": "fields.hours", "operator": ">", "value": 2}, ["SEC-1", "SEC-3"]),
        ({"field": "fields.hours", "operator": "<=", "value": "4"}, ["SEC-1", "SEC-2"]),
        ({"field": "key", "operator": "contains", "value": "sec-"}, ["SEC-1", "SEC-2", "SEC-3", "SEC-4"]),
        ({"field": "fields.status.name", "operator": "in", "value": ["Closed"]}, ["SEC-3", "SEC-4"]),
        ({"field": "fields.priority", "operator": "is_null"}, ["SEC-4"]),
        ({"field": "fields.priority", "operator": "not_equals", "value": "High"}, ["SEC-2", "SEC-4"]),
    ])
    def test_operators(self, flt, keys) -> None:
        assert [r["key"] for r in apply_filters(ISSUES, [flt])] == keys

    def test_filters_are_anded(self) -> None:
        result = apply_filters(ISSUES, [
            {"field": "fields.priority", "operator": "equals", "value": "High"},
            {"field": "fields.status.name", "operator": "equals", "value": "Open"},
        ])
        assert [r["key"] for r in result] == ["SEC-1"]


class TestMetrics:
    def test_numeric_metrics_skip_non_numbers(self) -> None:
        assert compute_metric(ISSUES, {"function": "sum", "field": "fields.hours"}) == 15.5
        assert compute_metric(ISSUES, {"function": "max", "field": "fields.hours"}) == 10.0
        assert compute_metric(ISSUES, {"function": "median", "field": "fields.hours"}) == 4
        assert compute_metric(ISSUES, {"function": "count", "field": "fields.hours"}) == 3
        assert compute_metric(ISSUES, {"function": "count"}) == 4

    def test_distinct_and_concat(self) -> None:
        assert compute_metric(ISSUES, {"function": "count_distinct", "field": "fields.priority"}) == 2
        assert compute_metric(ISSUES[:2], {"function": "concat", "field": "key", "separator": "/"}) == "SEC-1/SEC-2"

    def test_empty_input(self) -> None:
        assert compute_metric([], {"function": "sum", "field": "x"}) == 0
        assert compute_metric([], {"function": "avg", "field": "x"}) is None

    def test_unknown_function(self) -> None:
        with pytest.raises(ValueError):
            compute_metric(ISSUES, {"function": "stddev", "field": "fields.hours"})


class TestSort:
    def test_missing_values_last_in_both_directions(self) -> None:
        asc = sort_records(ISSUES, [{"field": "fields.hours", "direction": "asc"}])
        desc = sort_records(ISSUES, [{"field": "fields.hours", "direction": "desc"}])
        assert [r["key"] for r in asc] == ["SEC-2", "SEC-1", "SEC-3", "SEC-4"]
        assert [r["key"] for r in desc] == ["SEC-3", "SEC-1", "SEC-2", "SEC-4"]


class TestAggregate:
    def test_group_by_with_metrics(self) -> None:
        result = aggregate(ISSUES, {
            "groupBy": ["fields.status.name"],
            "metrics": [{"function": "sum", "field": "fields.hours", "alias": "hours"}],
            "sort": [{"field": "hours", "direction": "desc"}],
        })
        rows = result["aggregated_data"]
        assert rows == [
            {"fields.status.name": "Closed", "_group_size": 2, "hours": 10.0},
            {"fields.status.name": "Open", "_group_size": 2, "hours": 5.5},
        ]
        assert result["total_records"] == 4
        assert result["aggregation_summary"]["metrics"] == ["hours"]

    def test_multi_key_groups(self) -> None:
        rows = aggregate(ISSUES, {"groupBy": ["fields.status.name", "fields.priority"]})["aggregated_data"]
        assert len(rows) == 4

    def test_metrics_without_grouping(self) -> None:
        result = aggregate(ISSUES, {
            "filters": [{"field": "fields.status.name", "operator": "equals", "value": "Open"}],
            "metrics": [{"function": "avg", "field": "fields.hours"}],
        })
        assert result["aggregated_data"] == [{"avg_fields.hours": 2.75}]
        assert result["processed_records"] == 2

    def test_single_record_and_limit(self) -> None:
        assert aggregate({"a": 1}, None)["aggregated_data"] == [{"a": 1}]
        assert len(aggregate(ISSUES, {"limit": 2})["aggregated_data"]) == 2

    @pytest.mark.parametrize("wrapper", ["results", "issues"])
    def test_wrapped_record_lists(self, wrapper) -> None:
        result = aggregate({"total": 4, wrapper: ISSUES}, {"metrics": [{"function": "count", "field": "key"}]})
        assert result["total_records"] == 4
        assert result["aggregated_data"] == [{"count_key": 4}]

    def test_already_aggregated_passes_through(self) -> None:
        first = aggregate(ISSUES, {"groupBy": "fields.status.name"})
        assert aggregate(first, {"metrics": [{"function": "count", "field": "key"}]}) is first
