"""
Dynamic Scope Variables

Schema-less key/value attributes attached to service scopes. Each variable
has one definition (type, display name, unit, filter widget) and at most one
typed value per scope. New variables are registered on first use, so
filtering on a new sizing attribute never needs a migration.

Type inference from a sample value:
- "123"        -> integer (range filter)
- "12.5"       -> decimal (range filter)
- "yes"/"true" -> boolean (boolean filter)
- anything else -> text (text filter)
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.orm import Session, aliased

from mssp.errors import NotFoundError
from mssp.models import (
    ServiceScope, ScopeVariableDefinition, ScopeVariableValue, VariableType, FilterComponent,
)

logger = logging.getLogger(__name__)

AUTO_DESCRIPTION = "Auto-discovered variable from scope definitions"

_INTEGER_RE = re.compile(r"^[0-9]+$")
_DECIMAL_RE = re.compile(r"^[0-9]+\.[0-9]+$")
_BOOLEAN_RE = re.compile(r"^(true|false|yes|no)$", re.IGNORECASE)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

# First match wins
_UNIT_RULES = [
    (("eps", "events_per_second"), "EPS"),
    (("endpoint",), "endpoints"),
    (("gb", "gigabyte"), "GB"),
    (("minute", "time"), "minutes"),
    (("hour",), "hours"),
    (("percent", "uptime"), "%"),
]

_FILTER_FOR_TYPE = {
    VariableType.INTEGER: FilterComponent.RANGE,
    VariableType.DECIMAL: FilterComponent.RANGE,
    VariableType.BOOLEAN: FilterComponent.BOOLEAN,
    VariableType.TEXT: FilterComponent.TEXT,
}

# Indexed ServiceScope columns mirrored into variables
INDEXED_SCOPE_COLUMNS = [
    ("eps", VariableType.INTEGER),
    ("endpoints", VariableType.INTEGER),
    ("service_tier", VariableType.TEXT),
    ("coverage_hours", VariableType.TEXT),
    ("response_time_minutes", VariableType.INTEGER),
]

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def infer_variable_type(sample: Any) -> Tuple[VariableType, FilterComponent]:
    text = str(sample).strip()
    if _INTEGER_RE.match(text):
        return VariableType.INTEGER, FilterComponent.RANGE
    if _DECIMAL_RE.match(text):
        return VariableType.DECIMAL, FilterComponent.RANGE
    if _BOOLEAN_RE.match(text):
        return VariableType.BOOLEAN, FilterComponent.BOOLEAN
    return VariableType.TEXT, FilterComponent.TEXT


def guess_unit(variable_name: str) -> Optional[str]:
    name = variable_name.lower()
    for needles, unit in _UNIT_RULES:
        if any(n in name for n in needles):
            return unit
    return None


def display_name_for(variable_name: str) -> str:
    return variable_name.replace("_", " ").title()


def normalize_variable_name(raw: str) -> str:
    """'Log Sources (max)' -> 'log_sources_max'"""
    return _NON_ALNUM_RE.sub("_", str(raw).lower()).strip("_")


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "yes", "1")


def typed_column(variable_type: VariableType, entity=ScopeVariableValue):
    """Return the value column holding a variable of this type"""
    return {
        VariableType.INTEGER: entity.value_integer,
        VariableType.DECIMAL: entity.value_decimal,
        VariableType.BOOLEAN: entity.value_boolean,
        VariableType.TEXT: entity.value_text,
    }[VariableType(variable_type)]


def coerce_value(value: Any, variable_type: VariableType):
    """
    Convert a raw value to the Python type stored for variable_type.

    Raises:
        ValueError: If the value cannot be represented in that type
    """
    variable_type = VariableType(variable_type)
    if variable_type == VariableType.BOOLEAN:
        return parse_boolean(value)
    if variable_type == VariableType.INTEGER:
        if isinstance(value, bool):
            raise ValueError("Boolean value given for integer variable")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"Value {value!r} is not an integer")
        return int(str(value).strip()) if not isinstance(value, (int, float)) else int(value)
    if variable_type == VariableType.DECIMAL:
        if isinstance(value, bool):
            raise ValueError("Boolean value given for decimal variable")
        result = float(value)
        if math.isnan(result) or math.isinf(result):
            raise ValueError(f"Value {value!r} is not a finite number")
        return result
    return str(value)


def resolve_auto_type(value: Any) -> VariableType:
    if isinstance(value, bool):
        return VariableType.BOOLEAN
    if isinstance(value, int):
        return VariableType.INTEGER
    if isinstance(value, float):
        return VariableType.DECIMAL
    return infer_variable_type(value)[0]


class ScopeVariableService:
    """
    Definitions, values and search for dynamic scope variables.

    Methods flush but do not commit; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def get_definition(self, variable_name: str) -> Optional[ScopeVariableDefinition]:
        return self.db.scalars(
            select(ScopeVariableDefinition).where(ScopeVariableDefinition.variable_name == variable_name)
        ).first()

    def ensure_variable_definition(
        self,
        variable_name: str,
        sample: Any,
        variable_type: Optional[VariableType] = None,
    ) -> ScopeVariableDefinition:
        """
        Register a variable on first use.

        Args:
            variable_name: Normalized variable name
            sample: Example value used for type inference
            variable_type: Explicit type (skips inference)

        Returns:
            The existing or newly created definition
        """
        existing = self.get_definition(variable_name)
        if existing:
            return existing

        if variable_type is None:
            variable_type, filter_component = infer_variable_type(sample)
        else:
            variable_type = VariableType(variable_type)
            filter_component = _FILTER_FOR_TYPE[variable_type]

        definition = ScopeVariableDefinition(
            variable_name=variable_name,
            variable_type=variable_type,
            display_name=display_name_for(variable_name),
            description=AUTO_DESCRIPTION,
            is_filterable=True,
            is_indexed=False,
            filter_component=filter_component,
            unit=guess_unit(variable_name),
        )
        self.db.add(definition)
        self.db.flush()
        logger.info(f"Registered scope variable '{variable_name}' ({variable_type.value})")
        return definition

    def list_definitions(self, filterable_only: bool = True) -> List[Dict]:
        stmt = select(ScopeVariableDefinition)
        if filterable_only:
            stmt = stmt.where(ScopeVariableDefinition.is_filterable.is_(True))
        stmt = stmt.order_by(ScopeVariableDefinition.display_name)
        return [self._serialize_definition(d) for d in self.db.scalars(stmt).all()]

    @staticmethod
    def _serialize_definition(d: ScopeVariableDefinition) -> Dict:
        return {
            "name": d.variable_name,
            "type": VariableType(d.variable_type).value,
            "displayName": d.display_name,
            "description": d.description,
            "filterComponent": FilterComponent(d.filter_component).value if d.filter_component else None,
            "unit": d.unit,
            "isIndexed": d.is_indexed,
        }

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    def add_scope_variable(self, scope_id: int, variable_name: str, value: Any, variable_type: str = "auto") -> Dict:
        """
        Set (insert or replace) one variable on one scope.

        Args:
            scope_id: ServiceScope ID
            variable_name: Variable name (normalized before use)
            value: Raw value
            variable_type: 'auto' or one of integer/decimal/text/boolean

        Returns:
            Dict describing the stored value

        Raises:
            ValueError: Missing name/value or value incompatible with the type
            NotFoundError: Unknown scope
        """
        if not variable_name or value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("variableName and value are required")

        scope = self.db.get(ServiceScope, scope_id)
        if not scope:
            raise NotFoundError("Service scope", scope_id)

        name = normalize_variable_name(variable_name)
        if not name:
            raise ValueError(f"Invalid variable name: {variable_name!r}")

        definition = self.get_definition(name)
        if variable_type and variable_type != "auto":
            try:
                resolved = VariableType(variable_type)
            except ValueError:
                raise ValueError(f"Unknown variable type: {variable_type}")
        elif definition is not None:
            resolved = VariableType(definition.variable_type)
        else:
            resolved = resolve_auto_type(value)

        if definition is not None and VariableType(definition.variable_type) != resolved:
            raise ValueError(
                f"Variable '{name}' is defined as {VariableType(definition.variable_type).value}, "
                f"got {resolved.value}"
            )

        typed = coerce_value(value, resolved)
        self.ensure_variable_definition(name, value, resolved)
        row = self._upsert_value(scope.id, name, resolved, typed)

        return {
            "scopeId": scope.id,
            "variableName": name,
            "variableType": resolved.value,
            "value": row.value,
        }

    def _upsert_value(self, scope_id: int, name: str, variable_type: VariableType, typed: Any) -> ScopeVariableValue:
        row = self.db.scalars(
            select(ScopeVariableValue).where(
                ScopeVariableValue.service_scope_id == scope_id,
                ScopeVariableValue.variable_name == name,
            )
        ).first()
        if row is None:
            row = ScopeVariableValue(service_scope_id=scope_id, variable_name=name)
            self.db.add(row)

        row.value_integer = typed if variable_type == VariableType.INTEGER else None
        row.value_decimal = typed if variable_type == VariableType.DECIMAL else None
        row.value_boolean = typed if variable_type == VariableType.BOOLEAN else None
        row.value_text = str(typed).lower() if variable_type == VariableType.BOOLEAN else str(typed)
        self.db.flush()
        return row

    def variables_for_scopes(self, scope_ids: List[int]) -> Dict[int, Dict[str, Any]]:
        if not scope_ids:
            return {}
        rows = self.db.scalars(
            select(ScopeVariableValue).where(ScopeVariableValue.service_scope_id.in_(scope_ids))
        ).all()
        grouped: Dict[int, Dict[str, Any]] = {}
        for row in rows:
            grouped.setdefault(row.service_scope_id, {})[row.variable_name] = row.value
        return grouped

    # ------------------------------------------------------------------
    # Extraction / discovery
    # ------------------------------------------------------------------

    def extract_scope_variables(self, scope: ServiceScope) -> int:
        """
        Pull variables out of a scope's definition JSON and indexed columns.

        Returns:
            Number of variables written
        """
        written = 0
        definition = scope.scope_definition or {}
        deliverables = definition.get("deliverables") if isinstance(definition, dict) else None

        for item in deliverables or []:
            if not isinstance(item, dict) or not item.get("item") or item.get("value") in (None, ""):
                continue
            name = normalize_variable_name(item["item"])
            if not name:
                continue
            variable_type, typed = self._classify_deliverable(item["value"])
            existing = self.get_definition(name)
            if existing is not None and VariableType(existing.variable_type) != variable_type:
                try:
                    typed = coerce_value(item["value"], existing.variable_type)
                    variable_type = VariableType(existing.variable_type)
                except ValueError:
                    logger.warning(f"Scope {scope.id}: skipping '{name}', value does not fit {existing.variable_type}")
                    continue
            self.ensure_variable_definition(name, item["value"], variable_type)
            self._upsert_value(scope.id, name, variable_type, typed)
            written += 1

        for column, variable_type in INDEXED_SCOPE_COLUMNS:
            raw = getattr(scope, column)
            if raw is None:
                continue
            definition_row = self.ensure_variable_definition(column, raw, variable_type)
            if not definition_row.is_indexed:
                definition_row.is_indexed = True
            self._upsert_value(scope.id, column, variable_type, coerce_value(raw, variable_type))
            written += 1

        return written

    @staticmethod
    def _classify_deliverable(raw: Any) -> Tuple[VariableType, Any]:
        text = str(raw).strip()
        if _INTEGER_RE.match(text) and int(text) > 0:
            return VariableType.INTEGER, int(text)
        if _DECIMAL_RE.match(text) and float(text) > 0:
            return VariableType.DECIMAL, float(text)
        return VariableType.TEXT, text

    def discover_all(self) -> Dict:
        scopes = self.db.scalars(select(ServiceScope)).all()
        extracted = 0
        for scope in scopes:
            extracted += self.extract_scope_variables(scope)
        logger.info(f"Variable discovery: {extracted} values extracted from {len(scopes)} scopes")
        return {
            "scopesProcessed": len(scopes),
            "valuesExtracted": extracted,
            "variables": self.variable_stats(),
        }

    def variable_stats(self) -> List[Dict]:
        usage = dict(
            self.db.execute(
                select(ScopeVariableValue.variable_name, func.count(ScopeVariableValue.id))
                .group_by(ScopeVariableValue.variable_name)
            ).all()
        )
        definitions = self.db.scalars(
            select(ScopeVariableDefinition).order_by(ScopeVariableDefinition.variable_name)
        ).all()
        return [
            {
                "variable_name": d.variable_name,
                "display_name": d.display_name,
                "variable_type": VariableType(d.variable_type).value,
                "unit": d.unit,
                "is_indexed": d.is_indexed,
                "usage_count": int(usage.get(d.variable_name, 0)),
            }
            for d in definitions
        ]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def dynamic_search(
        self,
        filters: Dict[str, str],
        page: int = 1,
        limit: int = DEFAULT_LIMIT,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict:
        """
        Search scopes by arbitrary variable filters.

        Filter keys:
            <name>=value   exact match (case-insensitive contains for text)
            <name>_min=N   lower bound (numeric variables)
            <name>_max=N   upper bound (numeric variables)

        Raises:
            ValueError: If a filter value does not fit the variable's type
        """
        page = max(1, int(page or 1))
        limit = max(1, min(MAX_LIMIT, int(limit or DEFAULT_LIMIT)))

        definitions = {
            d.variable_name: d for d in self.db.scalars(select(ScopeVariableDefinition)).all()
        }

        stmt = select(ServiceScope)
        applied: Dict[str, str] = {}
        ignored: List[str] = []

        for key, raw in filters.items():
            if raw is None or str(raw) == "":
                continue
            name, op = self._split_filter_key(key, definitions)
            if name is None:
                ignored.append(key)
                continue

            definition = definitions[name]
            variable_type = VariableType(definition.variable_type)
            v = aliased(ScopeVariableValue)
            column = typed_column(variable_type, v)

            if op == "eq":
                if variable_type == VariableType.TEXT:
                    condition = column.icontains(str(raw), autoescape=True)
                else:
                    condition = column == coerce_value(raw, variable_type)
            else:
                if variable_type not in (VariableType.INTEGER, VariableType.DECIMAL):
                    raise ValueError(f"Range filter '{key}' requires a numeric variable")
                bound = coerce_value(raw, VariableType.DECIMAL)
                condition = column >= bound if op == "min" else column <= bound

            stmt = stmt.join(
                v,
                and_(v.service_scope_id == ServiceScope.id, v.variable_name == name, condition),
            )
            applied[key] = raw

        total = self.db.scalar(select(func.count()).select_from(stmt.subquery())) or 0

        stmt = self._apply_sort(stmt, sort_by, sort_order, definitions)
        scopes = self.db.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
        variables = self.variables_for_scopes([s.id for s in scopes])

        return {
            "data": [{**serialize_scope(s), "variables": variables.get(s.id, {})} for s in scopes],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
            "appliedFilters": applied,
            "ignoredFilters": ignored,
        }

    @staticmethod
    def _split_filter_key(key: str, definitions: Dict[str, ScopeVariableDefinition]):
        if key in definitions:
            return key, "eq"
        for suffix, op in (("_min", "min"), ("_max", "max")):
            if key.endswith(suffix) and key[: -len(suffix)] in definitions:
                return key[: -len(suffix)], op
        return None, None

    @staticmethod
    def _apply_sort(stmt, sort_by: str, sort_order: str, definitions):
        descending = str(sort_order).lower() != "asc"

        if sort_by in definitions:
            sv = aliased(ScopeVariableValue)
            column = typed_column(definitions[sort_by].variable_type, sv)
            stmt = stmt.outerjoin(
                sv, and_(sv.service_scope_id == ServiceScope.id, sv.variable_name == sort_by)
            )
            ordered = column.desc() if descending else column.asc()
            # Scopes without the variable go last
            return stmt.order_by(column.is_(None), ordered, ServiceScope.id)

        column = ServiceScope.id if sort_by == "id" else ServiceScope.created_at
        return stmt.order_by(column.desc() if descending else column.asc(), ServiceScope.id.desc() if descending else ServiceScope.id)


def serialize_scope(s: ServiceScope) -> Dict:
    return {
        "id": s.id,
        "contract_id": s.contract_id,
        "service_id": s.service_id,
        "status": s.status,
        "description": s.description,
        "notes": s.notes,
        "monthly_value": float(s.monthly_value) if s.monthly_value is not None else None,
        "eps": s.eps,
        "endpoints": s.endpoints,
        "data_volume_gb": s.data_volume_gb,
        "log_sources": s.log_sources,
        "firewall_devices": s.firewall_devices,
        "pam_users": s.pam_users,
        "response_time_minutes": s.response_time_minutes,
        "coverage_hours": s.coverage_hours,
        "service_tier": s.service_tier,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }
