"""
Dashboard data: headline stats, single-value cards, configurable widgets
and per-user card layout.

Widget configs are user-supplied, so every table, column, aggregation and
operator is checked against an allowlist before a query is built. Queries
are assembled with SQLAlchemy Core and bound parameters only.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, Enum as SAEnum, delete
from sqlalchemy.orm import Session

from mssp.errors import DuplicateError, NotFoundError
from mssp.models import (
    Client, Contract, Service, LicensePool, HardwareAsset, User, UserDashboardSetting, ContractStatus,
    FinancialTransaction,
)

logger = logging.getLogger(__name__)

TABLE_MODELS = {
    "clients": Client,
    "contracts": Contract,
    "services": Service,
    "license_pools": LicensePool,
    "hardware_assets": HardwareAsset,
    "users": User,
    "financial_transactions": FinancialTransaction,
}

ALLOWED_COLUMNS = {
    "clients": ["id", "name", "short_name", "domain", "industry", "company_size", "status", "created_at"],
    "contracts": ["id", "client_id", "name", "start_date", "end_date", "auto_renewal", "total_value", "status",
                  "created_at"],
    "services": ["id", "name", "category", "delivery_model", "base_price", "pricing_unit", "is_active",
                 "created_at"],
    "license_pools": ["id", "name", "vendor", "product_name", "license_type", "total_licenses",
                      "available_licenses", "ordered_licenses", "cost_per_license", "renewal_date", "is_active",
                      "created_at"],
    "hardware_assets": ["id", "name", "category", "manufacturer", "model", "purchase_cost", "warranty_expiry",
                        "status", "location", "created_at"],
    "users": ["id", "username", "role", "is_active", "created_at", "last_login_at"],
    "financial_transactions": ["id", "client_id", "contract_id", "transaction_type", "amount", "status",
                               "transaction_date"],
}

# Field used by sum/average/min/max card aggregations
VALUE_FIELDS = {
    "contracts": "total_value",
    "license_pools": "total_licenses",
    "hardware_assets": "purchase_cost",
    "financial_transactions": "amount",
}

CARD_AGGREGATIONS = {
    "count": func.count,
    "sum": func.sum,
    "average": func.avg,
    "max": func.max,
    "min": func.min,
}

WIDGET_AGGREGATIONS = {"COUNT": func.count, "SUM": func.sum, "AVG": func.avg, "MIN": func.min, "MAX": func.max}
WIDGET_OPERATORS = {"=", ">", "<", ">=", "<=", "!=", "LIKE", "IN"}
MAX_WIDGET_ROWS = 1000

DATE_RANGES = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}

BUILT_IN_CARDS = [
    {"card_id": "total-clients", "title": "Total Clients", "type": "metric", "data_source": "clients",
     "config": {"aggregation": "count"}},
    {"card_id": "active-contracts", "title": "Active Contracts", "type": "metric", "data_source": "contracts",
     "config": {"aggregation": "count", "filters": {"status": "active"}}},
    {"card_id": "total-revenue", "title": "Contract Revenue", "type": "metric", "data_source": "contracts",
     "config": {"aggregation": "sum", "filters": {"status": "active"}, "format": "currency"}},
    {"card_id": "license-capacity", "title": "License Capacity", "type": "metric", "data_source": "license_pools",
     "config": {"aggregation": "sum"}},
    {"card_id": "recent-activity", "title": "Recent Activity", "type": "table", "data_source": "audit_logs",
     "size": "large", "config": {"limit": 10}},
]


# ============================================================================
# HELPERS
# ============================================================================

def period_start(time_range: str, now: Optional[datetime] = None) -> datetime:
    """Start of the month/quarter/year containing now"""
    now = now or datetime.utcnow()
    if time_range == "mtd":
        return datetime(now.year, now.month, 1)
    if time_range == "qtd":
        return datetime(now.year, ((now.month - 1) // 3) * 3 + 1, 1)
    if time_range == "ytd":
        return datetime(now.year, 1, 1)
    raise ValueError(f"Invalid timeRange: {time_range}")


def coerce_for_column(column, value: Any) -> Any:
    """Convert request strings into values comparable with the column"""
    if isinstance(column.type, SAEnum) and column.type.enum_class is not None:
        enum_class = column.type.enum_class
        if isinstance(value, enum_class):
            return value
        try:
            return enum_class(str(value).lower())
        except ValueError:
            raise ValueError(f"Invalid value {value!r} for {column.name}")
    python_type = None
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        pass
    if python_type is bool and isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return value


def _number(value) -> float:
    return float(value) if value is not None else 0.0


# ============================================================================
# STATS & CARDS
# ============================================================================

def dashboard_stats(db: Session, time_range: str = "mtd") -> Dict:
    start = period_start(time_range)
    live_clients = Client.deleted_at.is_(None)

    total_clients = db.scalar(select(func.count()).select_from(Client).where(live_clients))
    total_contracts = db.scalar(select(func.count()).select_from(Contract))
    total_services = db.scalar(select(func.count()).select_from(Service))
    active_contracts = db.scalar(
        select(func.count()).select_from(Contract).where(Contract.status == ContractStatus.ACTIVE)
    )
    total_revenue = db.scalar(
        select(func.coalesce(func.sum(Contract.total_value), 0)).where(Contract.status == ContractStatus.ACTIVE)
    )
    new_clients = db.scalar(
        select(func.count()).select_from(Client).where(live_clients, Client.created_at >= start)
    )
    period_revenue = db.scalar(
        select(func.coalesce(func.sum(Contract.total_value), 0))
        .where(Contract.status == ContractStatus.ACTIVE, Contract.start_date >= start)
    )

    recent_clients = db.scalars(
        select(Client).where(live_clients).order_by(Client.created_at.desc(), Client.id.desc()).limit(5)
    ).all()
    recent_contracts = db.scalars(
        select(Contract).order_by(Contract.created_at.desc(), Contract.id.desc()).limit(5)
    ).all()

    return {
        "timeRange": time_range,
        "periodStart": start.isoformat(),
        "overview": {
            "totalClients": total_clients,
            "totalContracts": total_contracts,
            "totalServices": total_services,
            "activeContracts": active_contracts,
            "totalRevenue": _number(total_revenue),
            "newClientsInPeriod": new_clients,
            "revenueInPeriod": _number(period_revenue),
        },
        "recentClients": [
            {"id": c.id, "name": c.name, "status": c.status.value if c.status else None,
             "created_at": c.created_at.isoformat() if c.created_at else None}
            for c in recent_clients
        ],
        "recentContracts": [
            {"id": c.id, "name": c.name, "client_id": c.client_id,
             "status": c.status.value if c.status else None,
             "total_value": float(c.total_value) if c.total_value is not None else None}
            for c in recent_contracts
        ],
    }


def card_data(
    db: Session,
    table: str,
    aggregation: str = "count",
    filters: Optional[Dict[str, str]] = None,
    status: Optional[str] = None,
    date_range: Optional[str] = None,
) -> Dict:
    """
    Compute one number for a dashboard card.

    Args:
        table: Allowlisted table name
        aggregation: count, sum, average, max or min
        filters: column -> value equality filters (allowlisted columns only)
        status: Shortcut for filters['status']
        date_range: 7d, 30d, 90d or 1y window on created_at

    Raises:
        ValueError: Unknown table, aggregation, column or date range
    """
    model = TABLE_MODELS.get(table)
    if model is None:
        raise ValueError(f"Invalid table: {table}")
    aggregate = CARD_AGGREGATIONS.get(aggregation)
    if aggregate is None:
        raise ValueError(f"Invalid aggregation: {aggregation}")

    field = None
    if aggregation == "count":
        expr = func.count()
    else:
        field = VALUE_FIELDS.get(table)
        if field is None:
            raise ValueError(f"Aggregation '{aggregation}' not supported for table {table}")
        expr = aggregate(getattr(model, field))

    stmt = select(expr).select_from(model)
    if model is Client:
        stmt = stmt.where(Client.deleted_at.is_(None))

    conditions = dict(filters or {})
    if status:
        conditions["status"] = status
    for column_name, value in conditions.items():
        if column_name not in ALLOWED_COLUMNS[table]:
            raise ValueError(f"Invalid filter field '{column_name}' for table {table}")
        column = model.__table__.c[column_name]
        stmt = stmt.where(column == coerce_for_column(column, value))

    if date_range:
        delta = DATE_RANGES.get(date_range)
        if delta is None:
            raise ValueError(f"Invalid dateRange: {date_range}")
        stmt = stmt.where(model.created_at >= datetime.utcnow() - delta)

    value = db.scalar(stmt)
    if aggregation == "count":
        value = int(value or 0)
    elif value is not None:
        value = float(value)
    elif aggregation == "sum":
        value = 0.0

    return {"value": value, "table": table, "aggregation": aggregation, "field": field}


# ============================================================================
# CONFIGURABLE WIDGETS
# ============================================================================

def validate_widget_config(data_source: str, config: Dict) -> Tuple[bool, List[str]]:
    errors: List[str] = []
    allowed = ALLOWED_COLUMNS.get(data_source)
    if allowed is None:
        return False, [f"Invalid data source: {data_source}"]

    for f in config.get("fields") or []:
        if f not in allowed:
            errors.append(f"Invalid field: {f}")

    for flt in config.get("filters") or []:
        if not isinstance(flt, dict):
            errors.append("Filters must be objects")
            continue
        if flt.get("field") not in allowed:
            errors.append(f"Invalid filter field: {flt.get('field')}")
        if str(flt.get("operator", "")).upper() not in WIDGET_OPERATORS:
            errors.append(f"Invalid filter operator: {flt.get('operator')}")
        if str(flt.get("operator", "")).upper() == "IN" and not isinstance(flt.get("value"), list):
            errors.append(f"IN filter on {flt.get('field')} requires a list value")

    group_by = config.get("groupBy")
    if group_by and group_by not in allowed:
        errors.append(f"Invalid groupBy field: {group_by}")

    aggregation = config.get("aggregation")
    if aggregation:
        function = str(aggregation.get("function", "")).upper()
        if function not in WIDGET_AGGREGATIONS:
            errors.append(f"Invalid aggregation function: {aggregation.get('function')}")
        agg_field = aggregation.get("field")
        if not (function == "COUNT" and agg_field in (None, "*")) and agg_field not in allowed:
            errors.append(f"Invalid aggregation field: {agg_field}")

    order_by = config.get("orderBy")
    if order_by:
        if order_by.get("field") not in allowed and not (aggregation and order_by.get("field") == "value"):
            errors.append(f"Invalid orderBy field: {order_by.get('field')}")
        if str(order_by.get("direction", "ASC")).upper() not in ("ASC", "DESC"):
            errors.append(f"Invalid orderBy direction: {order_by.get('direction')}")

    limit = config.get("limit")
    if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= MAX_WIDGET_ROWS):
        errors.append(f"Limit must be an integer between 1 and {MAX_WIDGET_ROWS}")

    return not errors, errors


def build_widget_query(data_source: str, config: Dict):
    """
    Build a parameterised select for an already-validated widget config.

    Raises:
        ValueError: If the config does not pass validate_widget_config
    """
    ok, errors = validate_widget_config(data_source, config)
    if not ok:
        raise ValueError("; ".join(errors))

    table = TABLE_MODELS[data_source].__table__
    columns = table.c

    aggregation = config.get("aggregation")
    group_by = config.get("groupBy")
    if aggregation:
        function = WIDGET_AGGREGATIONS[aggregation["function"].upper()]
        agg_field = aggregation.get("field")
        value_expr = function() if agg_field in (None, "*") else function(columns[agg_field])
        selected = [value_expr.label("value")]
        if group_by:
            selected.append(columns[group_by])
        stmt = select(*selected).select_from(table)
    elif config.get("fields"):
        stmt = select(*[columns[f] for f in config["fields"]])
    else:
        stmt = select(*[columns[f] for f in ALLOWED_COLUMNS[data_source]])

    if data_source == "clients":
        stmt = stmt.where(columns["deleted_at"].is_(None))

    for flt in config.get("filters") or []:
        column = columns[flt["field"]]
        operator = flt["operator"].upper()
        value = flt.get("value")
        if operator == "IN":
            stmt = stmt.where(column.in_([coerce_for_column(column, v) for v in value]))
            continue
        if operator == "LIKE":
            stmt = stmt.where(column.like(str(value)))
            continue
        value = coerce_for_column(column, value)
        stmt = stmt.where({
            "=": column == value,
            "!=": column != value,
            ">": column > value,
            "<": column < value,
            ">=": column >= value,
            "<=": column <= value,
        }[operator])

    if aggregation and group_by:
        stmt = stmt.group_by(columns[group_by])

    order_by = config.get("orderBy")
    if order_by:
        field = order_by["field"]
        target = selected[0] if (aggregation and field == "value") else columns[field]
        descending = str(order_by.get("direction", "ASC")).upper() == "DESC"
        stmt = stmt.order_by(target.desc() if descending else target.asc())

    return stmt.limit(config.get("limit") or MAX_WIDGET_ROWS)


def run_widget_query(db: Session, data_source: str, config: Dict) -> List[Dict]:
    stmt = build_widget_query(data_source, config)
    return [dict(row) for row in db.execute(stmt).mappings().all()]


# ============================================================================
# USER DASHBOARD SETTINGS
# ============================================================================

def serialize_setting(s: UserDashboardSetting) -> Dict:
    return {
        "id": s.id,
        "card_id": s.card_id,
        "title": s.title,
        "type": s.type,
        "category": s.category,
        "data_source": s.data_source,
        "size": s.size,
        "visible": s.visible,
        "position": s.position,
        "config": s.config or {},
        "is_built_in": s.is_built_in,
        "is_removable": s.is_removable,
    }


def _seed_built_in_cards(db: Session, user_id: int):
    for position, card in enumerate(BUILT_IN_CARDS):
        db.add(UserDashboardSetting(
            user_id=user_id,
            card_id=card["card_id"],
            title=card["title"],
            type=card["type"],
            category="dashboard",
            data_source=card["data_source"],
            size=card.get("size", "small"),
            visible=True,
            position=position,
            config=dict(card["config"]),
            is_built_in=True,
            is_removable=card["card_id"] != "total-clients",
        ))
    db.flush()


def get_user_settings(db: Session, user_id: int) -> List[Dict]:
    def _load():
        return db.scalars(
            select(UserDashboardSetting)
            .where(UserDashboardSetting.user_id == user_id)
            .order_by(UserDashboardSetting.position, UserDashboardSetting.id)
        ).all()

    settings = _load()
    if not settings:
        _seed_built_in_cards(db, user_id)
        db.commit()
        logger.info(f"Seeded built-in dashboard cards for user {user_id}")
        settings = _load()
    return [serialize_setting(s) for s in settings]


def _get_setting(db: Session, user_id: int, card_id: str) -> UserDashboardSetting:
    setting = db.scalars(
        select(UserDashboardSetting).where(
            UserDashboardSetting.user_id == user_id, UserDashboardSetting.card_id == card_id
        )
    ).first()
    if not setting:
        raise NotFoundError("Dashboard card", card_id)
    return setting


UPDATABLE_SETTING_FIELDS = ("title", "type", "category", "data_source", "size", "visible", "position", "config")


def add_user_setting(db: Session, user_id: int, values: Dict) -> Dict:
    existing = db.scalars(
        select(UserDashboardSetting).where(
            UserDashboardSetting.user_id == user_id, UserDashboardSetting.card_id == values["card_id"]
        )
    ).first()
    if existing:
        raise DuplicateError(f"Card '{values['card_id']}' already exists")

    setting = UserDashboardSetting(
        user_id=user_id,
        card_id=values["card_id"],
        is_built_in=False,
        is_removable=True,
        **{k: v for k, v in values.items() if k in UPDATABLE_SETTING_FIELDS and v is not None},
    )
    db.add(setting)
    db.flush()
    return serialize_setting(setting)


def update_user_setting(db: Session, user_id: int, card_id: str, values: Dict) -> Dict:
    setting = _get_setting(db, user_id, card_id)
    for key, value in values.items():
        if key in UPDATABLE_SETTING_FIELDS and value is not None:
            setattr(setting, key, value)
    db.flush()
    return serialize_setting(setting)


def delete_user_setting(db: Session, user_id: int, card_id: str):
    """
    Raises:
        NotFoundError: Unknown card
        ValueError: Card is not removable
    """
    setting = _get_setting(db, user_id, card_id)
    if not setting.is_removable:
        raise ValueError(f"Card '{card_id}' cannot be removed")
    db.delete(setting)
    db.flush()


def reset_user_settings(db: Session, user_id: int):
    """Replace the user's cards with the built-in set; the caller commits"""
    db.execute(delete(UserDashboardSetting).where(UserDashboardSetting.user_id == user_id))
    _seed_built_in_cards(db, user_id)
    db.flush()
