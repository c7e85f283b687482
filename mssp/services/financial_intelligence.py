"""
Financial intelligence over transactions, contracts and service scopes.

- Revenue metrics for a period (recurring split, growth, churn)
- 12-month cash-flow forecast from active scope values
- Client profitability and service performance rankings
- Financial alerts (overdue payments, low cash flow, contracts at risk)
- Executive summary combining the above with headline KPIs

Costs are not tracked per client or service yet, so expenses and margins
are estimated with the ratios below.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, and_, or_
from sqlalchemy.orm import Session

from mssp.models import (
    Client, ClientStatus, Contract, ContractStatus, FinancialTransaction, Service, ServiceScope,
)

logger = logging.getLogger(__name__)

FORECAST_MONTHS = 12
EXPENSE_RATIO = 0.65  # Share of projected revenue spent on delivery
CLIENT_COST_RATIO = 0.6
CUSTOMER_LIFETIME_MONTHS = 24
LOW_CASH_FLOW_THRESHOLD = 50000
OVERDUE_AFTER_DAYS = 30
AT_RISK_WINDOW_DAYS = 60

CATEGORY_MARGINS = {
    "monitoring": 45,
    "consulting": 60,
    "support": 35,
    "infrastructure": 25,
}
DEFAULT_MARGIN = 40

SEVERITY_ORDER = {"critical": 4, "high": 3, "medium": 2, "low": 1}
PERIODS = ("month", "quarter", "year")


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = moment.day
    while True:
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def _revenue_between(db: Session, start: datetime, end: datetime, *conditions) -> float:
    total = db.scalar(
        select(func.sum(FinancialTransaction.amount)).where(
            FinancialTransaction.transaction_type == "revenue",
            FinancialTransaction.transaction_date >= start,
            FinancialTransaction.transaction_date <= end,
            *conditions,
        )
    )
    return float(total or 0)


def revenue_metrics(db: Session, start: datetime, end: datetime) -> Dict[str, float]:
    """
    Revenue for [start, end] compared against the preceding period of the same length.

    Recurring revenue is revenue whose description mentions 'recurring' or
    'monthly'. Churn is contracts that ended in the period as a percentage
    of active plus ended contracts.
    """
    total = _revenue_between(db, start, end)
    recurring = _revenue_between(
        db, start, end,
        or_(
            FinancialTransaction.description.icontains("recurring"),
            FinancialTransaction.description.icontains("monthly"),
        ),
    )

    previous = _revenue_between(db, start - (end - start), start)
    growth = (total - previous) / previous * 100 if previous > 0 else 0.0

    average_value = db.scalar(
        select(func.avg(Contract.total_value)).where(Contract.status == ContractStatus.ACTIVE)
    )
    active_count = db.scalar(
        select(func.count()).select_from(Contract).where(Contract.status == ContractStatus.ACTIVE)
    ) or 1
    ended_count = db.scalar(
        select(func.count()).select_from(Contract).where(
            Contract.end_date >= start,
            Contract.end_date <= end,
            Contract.status.in_([ContractStatus.EXPIRED, ContractStatus.TERMINATED]),
        )
    )

    return {
        "totalRevenue": total,
        "recurringRevenue": recurring,
        "oneTimeRevenue": total - recurring,
        "growthRate": growth,
        "averageContractValue": float(average_value or 0),
        "customerLifetimeValue": recurring * CUSTOMER_LIFETIME_MONTHS,
        "churnRate": ended_count / (active_count + ended_count) * 100,
    }


def cash_flow_forecast(db: Session, now: Optional[datetime] = None, months: int = FORECAST_MONTHS) -> List[Dict]:
    """
    Monthly projection: revenue is the monthly value of active scopes whose
    active contract is still running at the start of that month.
    Confidence starts at 0.95 and drops 0.05 a month, floored at 0.5.
    """
    now = now or datetime.utcnow()
    forecast = []
    for i in range(months):
        month_start = _add_months(now, i)
        revenue = db.scalar(
            select(func.sum(ServiceScope.monthly_value))
            .join(Contract, ServiceScope.contract_id == Contract.id)
            .where(
                ServiceScope.status == "active",
                Contract.status == ContractStatus.ACTIVE,
                Contract.end_date >= month_start,
            )
        )
        revenue = float(revenue or 0)
        expenses = revenue * EXPENSE_RATIO
        forecast.append({
            "month": month_start.strftime("%Y-%m"),
            "projectedRevenue": revenue,
            "projectedExpenses": expenses,
            "netCashFlow": revenue - expenses,
            "confidence": round(max(0.95 - i * 0.05, 0.5), 2),
        })
    return forecast


def _profitability_tier(margin: float):
    if margin > 30:
        return "highly_profitable", "low"
    if margin > 15:
        return "profitable", "low"
    if margin > 0:
        return "break_even", "medium"
    return "loss_making", "high"


def client_profitability(db: Session) -> List[Dict]:
    """Active clients with booked revenue, most profitable first"""
    rows = db.execute(
        select(Client.id, Client.name, func.sum(FinancialTransaction.amount))
        .join(FinancialTransaction, FinancialTransaction.client_id == Client.id)
        .where(
            Client.deleted_at.is_(None),
            Client.status == ClientStatus.ACTIVE,
            FinancialTransaction.transaction_type == "revenue",
        )
        .group_by(Client.id, Client.name)
    ).all()

    results = []
    for client_id, client_name, revenue in rows:
        revenue = float(revenue or 0)
        costs = revenue * CLIENT_COST_RATIO
        margin = (revenue - costs) / revenue * 100 if revenue > 0 else 0.0
        profitability, risk = _profitability_tier(margin)
        results.append({
            "clientId": client_id,
            "clientName": client_name,
            "totalRevenue": revenue,
            "totalCosts": costs,
            "profitMargin": margin,
            "profitability": profitability,
            "riskLevel": risk,
        })

    results.sort(key=lambda r: r["profitMargin"], reverse=True)
    return results


def service_performance(db: Session) -> List[Dict]:
    """
    Annualized revenue and demand per active service, from active scopes on
    active contracts. Demand is scopes x (annual revenue / 100k), capped at 100.
    """
    rows = db.execute(
        select(Service.id, Service.name, Service.category,
               func.sum(ServiceScope.monthly_value), func.count(ServiceScope.id))
        .join(ServiceScope, ServiceScope.service_id == Service.id)
        .join(Contract, ServiceScope.contract_id == Contract.id)
        .where(
            Service.is_active.is_(True),
            ServiceScope.status == "active",
            Contract.status == ContractStatus.ACTIVE,
        )
        .group_by(Service.id, Service.name, Service.category)
    ).all()

    results = []
    for service_id, name, category, monthly, scope_count in rows:
        annual = float(monthly or 0) * 12
        demand = scope_count * (annual / 100000)
        if demand > 10:
            trend = "increasing"
        elif demand > 5:
            trend = "stable"
        else:
            trend = "declining"
        results.append({
            "serviceId": service_id,
            "serviceName": name,
            "category": category or "uncategorized",
            "totalRevenue": annual,
            "activeContracts": scope_count,
            "averageMargin": CATEGORY_MARGINS.get((category or "").lower(), DEFAULT_MARGIN),
            "growthTrend": trend,
            "demandScore": min(demand, 100),
        })

    results.sort(key=lambda r: r["totalRevenue"], reverse=True)
    return results


def financial_alerts(db: Session, now: Optional[datetime] = None,
                     forecast: Optional[List[Dict]] = None) -> List[Dict[str, Any]]:
    """
    Alerts sorted by severity, critical first:

    - payment_overdue: pending revenue older than 30 days
    - low_cash_flow: forecast months with net cash flow under 50k
    - contract_at_risk: active contracts without auto-renewal ending within 60 days
    """
    now = now or datetime.utcnow()
    alerts = []

    overdue = db.execute(
        select(FinancialTransaction, Client.name)
        .outerjoin(Client, FinancialTransaction.client_id == Client.id)
        .where(
            FinancialTransaction.transaction_type == "revenue",
            FinancialTransaction.status == "pending",
            FinancialTransaction.transaction_date <= now - timedelta(days=OVERDUE_AFTER_DAYS),
        )
        .order_by(FinancialTransaction.transaction_date)
    ).all()
    for txn, client_name in overdue:
        days = (now - txn.transaction_date).days
        amount = float(txn.amount or 0)
        alerts.append({
            "type": "payment_overdue",
            "severity": "critical" if days > 60 else "high" if days > 30 else "medium",
            "title": f"Payment Overdue: {client_name or 'Unknown client'}",
            "description": f"Payment of ${amount:,.2f} is {days} days overdue",
            "actionRequired": "Contact client for payment collection",
            "impactAmount": abs(amount),
            "clientId": txn.client_id,
        })

    if forecast is None:
        forecast = cash_flow_forecast(db, now)
    low_months = [m for m in forecast if m["netCashFlow"] < LOW_CASH_FLOW_THRESHOLD]
    if low_months:
        alerts.append({
            "type": "low_cash_flow",
            "severity": "critical" if len(low_months) > 3 else "high",
            "title": "Low Cash Flow Projected",
            "description": f"{len(low_months)} months with cash flow below $50K threshold",
            "actionRequired": "Review expenses and accelerate collections",
            "impactAmount": abs(min(m["netCashFlow"] for m in low_months)),
        })

    at_risk = db.execute(
        select(Contract, Client.name)
        .join(Client, Contract.client_id == Client.id)
        .where(
            Contract.status == ContractStatus.ACTIVE,
            Contract.end_date <= now + timedelta(days=AT_RISK_WINDOW_DAYS),
            or_(Contract.auto_renewal.is_(False), Contract.auto_renewal.is_(None)),
        )
        .order_by(Contract.end_date)
    ).all()
    for contract, client_name in at_risk:
        alerts.append({
            "type": "contract_at_risk",
            "severity": "high",
            "title": f"Contract Renewal Required: {client_name}",
            "description": f'Contract "{contract.name}" expires soon and requires manual renewal',
            "actionRequired": "Initiate renewal discussions with client",
            "impactAmount": float(contract.total_value or 0),
            "clientId": contract.client_id,
            "contractId": contract.id,
        })

    alerts.sort(key=lambda a: SEVERITY_ORDER[a["severity"]], reverse=True)
    return alerts


def period_start(period: str, now: datetime) -> datetime:
    if period == "year":
        return datetime(now.year, 1, 1)
    if period == "quarter":
        return datetime(now.year, (now.month - 1) // 3 * 3 + 1, 1)
    if period == "month":
        return datetime(now.year, now.month, 1)
    raise ValueError(f"Invalid period: {period}")


def _trend(value: float) -> str:
    if value > 0:
        return "up"
    if value < 0:
        return "down"
    return "stable"


def executive_summary(db: Session, period: str = "month", now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Revenue metrics since the start of the current month/quarter/year, the
    top 10 profitable clients, a 6-month forecast, the top 5 alerts and KPIs.

    Raises:
        ValueError: Unknown period
    """
    now = now or datetime.utcnow()
    revenue = revenue_metrics(db, period_start(period, now), now)
    profitability = client_profitability(db)
    forecast = cash_flow_forecast(db, now)
    alerts = financial_alerts(db, now, forecast=forecast)

    kpis = [
        {
            "name": "Monthly Recurring Revenue",
            "value": revenue["recurringRevenue"],
            "trend": _trend(revenue["growthRate"]),
            "target": revenue["recurringRevenue"] * 1.1,
            "unit": "USD",
        },
        {
            "name": "Customer Churn Rate",
            "value": revenue["churnRate"],
            "trend": "up" if revenue["churnRate"] < 5 else "down",
            "target": 5,
            "unit": "%",
        },
        {
            "name": "Average Contract Value",
            "value": revenue["averageContractValue"],
            "trend": "stable",
            "target": revenue["averageContractValue"] * 1.15,
            "unit": "USD",
        },
        {
            "name": "Client Profitability",
            "value": sum(1 for p in profitability if p["profitability"] == "highly_profitable"),
            "trend": "stable",
            "target": len(profitability) * 0.6,
            "unit": "clients",
        },
    ]

    logger.debug(f"Executive summary for {period}: {len(alerts)} alert(s)")
    return {
        "period": period,
        "revenue": revenue,
        "profitability": profitability[:10],
        "forecast": forecast[:6],
        "alerts": alerts[:5],
        "kpis": kpis,
    }


def list_transactions(db: Session, client_id: Optional[int] = None, transaction_type: Optional[str] = None,
                      limit: int = 100) -> List[FinancialTransaction]:
    stmt = select(FinancialTransaction)
    conditions = []
    if client_id is not None:
        conditions.append(FinancialTransaction.client_id == client_id)
    if transaction_type:
        conditions.append(FinancialTransaction.transaction_type == transaction_type)
    if conditions:
        stmt = stmt.where(and_(*conditions))
    stmt = stmt.order_by(FinancialTransaction.transaction_date.desc()).limit(max(1, min(limit, 1000)))
    return db.scalars(stmt).all()
