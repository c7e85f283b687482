"""
In-memory aggregation over query results.

Pipeline: filters -> groupBy -> metrics -> sort -> limit. Field names may be
dotted paths into nested records ("fields.status.name").
"""

import logging
import statistics
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


def get_path(record: Any, path: str, default: Any = None) -> Any:
    current = record
    for part in str(path).split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value))
    except ValueError:
        return None


def _compare(left: Any, right: Any, op) -> bool:
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return op(ln, rn)
    if left is None or right is None:
        return False
    return op(str(left), str(right))


def _matches(record: Dict, flt: Dict) -> bool:
    value = get_path(record, flt.get("field", ""))
    operator = flt.get("operator", "equals")
    target = flt.get("value")

    if operator in ("equals", "="):
        return value == target or (value is not None and target is not None and str(value) == str(target))
    if operator in ("not_equals", "!="):
        return not (value == target or (value is not None and target is not None and str(value) == str(target)))
    if operator == ">":
        return _compare(value, target, lambda a, b: a > b)
    if operator == "<":
        return _compare(value, target, lambda a, b: a < b)
    if operator == ">=":
        return _compare(value, target, lambda a, b: a >= b)
    if operator == "<=":
        return _compare(value, target, lambda a, b: a <= b)
    if operator == "contains":
        return value is not None and str(target).lower() in str(value).lower()
    if operator == "not_contains":
        return value is None or str(target).lower() not in str(value).lower()
    if operator == "starts_with":
        return value is not None and str(value).lower().startswith(str(target).lower())
    if operator == "ends_with":
        return value is not None and str(value).lower().endswith(str(target).lower())
    if operator == "in":
        return isinstance(target, list) and value in target
    if operator == "not_in":
        return isinstance(target, list) and value not in target
    if operator == "is_null":
        return value is None or value == ""
    if operator == "is_not_null":
        return value is not None and value != ""

    logger.warning(f"Unknown filter operator '{operator}' ignored")
    return True


def apply_filters(records: List[Dict], filters: List[Dict]) -> List[Dict]:
    if not filters:
        return list(records)
    return [r for r in records if all(_matches(r, f) for f in filters)]


def compute_metric(records: List[Dict], metric: Dict) -> Any:
    function = str(metric.get("function", "count")).lower()
    field = metric.get("field")

    if function == "count":
        if not field or field == "*":
            return len(records)
        return sum(1 for r in records if get_path(r, field) is not None)

    values = [get_path(r, field) for r in records] if field else []

    if function == "count_distinct":
        seen = set()
        for v in values:
            if v is not None:
                seen.add(repr(v) if isinstance(v, (dict, list)) else v)
        return len(seen)
    if function == "concat":
        separator = metric.get("separator", ", ")
        return separator.join(str(v) for v in values if v is not None)

    numbers = [n for n in (_as_number(v) for v in values) if n is not None]
    if function == "sum":
        return sum(numbers)
    if not numbers:
        return None
    if function in ("avg", "average"):
        return sum(numbers) / len(numbers)
    if function == "min":
        return min(numbers)
    if function == "max":
        return max(numbers)
    if function == "median":
        return statistics.median(numbers)

    raise ValueError(f"Unsupported aggregation function: {function}")


def _metric_alias(metric: Dict) -> str:
    return metric.get("alias") or f"{str(metric.get('function', 'count')).lower()}_{metric.get('field') or 'all'}"


def group_records(records: List[Dict], group_by: List[str], metrics: List[Dict]) -> List[Dict]:
    groups: Dict[str, List[Dict]] = {}
    keys: Dict[str, Dict[str, Any]] = {}
    for record in records:
        values = {field: get_path(record, field) for field in group_by}
        key = "|".join("" if v is None else str(v) for v in values.values())
        groups.setdefault(key, []).append(record)
        keys.setdefault(key, values)

    output = []
    for key, members in groups.items():
        row = dict(keys[key])
        row["_group_size"] = len(members)
        for metric in metrics:
            row[_metric_alias(metric)] = compute_metric(members, metric)
        output.append(row)
    return output


def sort_records(records: List[Dict], sort: List[Dict]) -> List[Dict]:
    result = list(records)
    # Stable sorts applied from the least significant key
    for spec in reversed(sort or []):
        field = spec.get("field")
        descending = str(spec.get("direction", "asc")).lower() == "desc"
        present = [r for r in result if get_path(r, field) is not None]
        missing = [r for r in result if get_path(r, field) is None]

        def sort_key(r, _field=field):
            value = get_path(r, _field)
            number = _as_number(value)
            return (0, number, "") if number is not None else (1, 0, str(value))

        present.sort(key=sort_key, reverse=descending)
        result = present + missing
    return result


def _records_from(data: Any) -> List[Any]:
    """Pick the record list out of a raw payload (REST `results`, Jira `issues`)."""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("results", "issues"):
            if isinstance(data.get(key), list):
                return data[key]
    return [data]


def aggregate(records: Any, config: Optional[Dict]) -> Dict:
    """
    Run the aggregation pipeline.

    Args:
        records: List of dicts, or a payload wrapping one under `results` or
            `issues`; any other dict is treated as one record. A payload that
            already carries `aggregated_data` is returned as-is.
        config: {filters, groupBy, metrics, sort, limit}

    Returns:
        {aggregated_data, total_records, processed_records, aggregation_summary}
    """
    if isinstance(records, dict) and "aggregated_data" in records:
        return records
    records = list(_records_from(records))
    config = config or {}

    filtered = apply_filters(records, config.get("filters") or [])

    group_by = config.get("groupBy") or []
    if isinstance(group_by, str):
        group_by = [group_by]
    metrics = config.get("metrics") or []

    if group_by:
        data = group_records(filtered, group_by, metrics)
    elif metrics:
        data = [{_metric_alias(m): compute_metric(filtered, m) for m in metrics}]
    else:
        data = filtered

    data = sort_records(data, config.get("sort") or [])

    limit = config.get("limit")
    if isinstance(limit, int) and limit > 0:
        data = data[:limit]

    return {
        "aggregated_data": data,
        "total_records": len(records),
        "processed_records": len(filtered),
        "aggregation_summary": {
            "filters_applied": len(config.get("filters") or []),
            "grouped_by": group_by,
            "metrics": [_metric_alias(m) for m in metrics],
            "output_rows": len(data),
        },
    }
