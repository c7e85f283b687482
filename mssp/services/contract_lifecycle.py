"""
Contract lifecycle tracking: upcoming renewals/expiries, per-contract
metrics, renewal recommendations, health scoring, termination analysis
and automatic renewal/expiry.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from mssp.audit import record_audit
from mssp.errors import NotFoundError, BusinessLogicError
from mssp.models import Contract, ContractStatus, Client, ServiceScope, ClientHardwareAssignment

logger = logging.getLogger(__name__)

RENEWAL_WINDOW_DAYS = 30
EXPIRY_WINDOW_DAYS = 60

# Baselines reported for every contract until survey, SLA and cost data exist
BASELINE_PROFIT_MARGIN = 0.25
BASELINE_CLIENT_SATISFACTION = 0.85
BASELINE_SLA_COMPLIANCE = 0.92
PAYMENT_HISTORY_SCORE = 95

TERMINATION_TIMELINE = [
    ("Client notification (30 days notice)", 1),
    ("Service scope completion", 30),
    ("Asset return and inventory", 7),
    ("Final billing and reconciliation", 14),
    ("Knowledge transfer", 5),
    ("Contract closure", 3),
]


def _days_until(end: datetime, now: datetime) -> int:
    return math.ceil((end - now).total_seconds() / 86400)


def _renewal_priority(days: int) -> str:
    if days <= 7:
        return "critical"
    if days <= 15:
        return "high"
    return "medium"


def _expiry_priority(days: int) -> str:
    if days <= 15:
        return "critical"
    if days <= 30:
        return "high"
    return "medium"


def _get_contract(db: Session, contract_id: int) -> Contract:
    contract = db.get(Contract, contract_id)
    if not contract:
        raise NotFoundError("Contract", contract_id)
    return contract


def upcoming_events(db: Session, days_ahead: int = 90, now: Optional[datetime] = None) -> List[Dict]:
    """
    Renewal and expiry events for active contracts ending within days_ahead.

    Auto-renewing contracts produce 'renewal_due' inside 30 days; others
    produce 'expiring' inside 60 days. Sorted by days remaining.
    """
    now = now or datetime.utcnow()
    horizon = now + timedelta(days=days_ahead)

    rows = db.execute(
        select(Contract, Client.name)
        .join(Client, Contract.client_id == Client.id)
        .where(
            Contract.status == ContractStatus.ACTIVE,
            Client.deleted_at.is_(None),
            Contract.end_date >= now,
            Contract.end_date <= horizon,
        )
        .order_by(Contract.end_date)
    ).all()

    events = []
    for contract, client_name in rows:
        days = _days_until(contract.end_date, now)
        if contract.auto_renewal:
            if days <= RENEWAL_WINDOW_DAYS:
                events.append({
                    "type": "renewal_due",
                    "contractId": contract.id,
                    "daysUntil": days,
                    "priority": _renewal_priority(days),
                    "description": f"Auto-renewal for {client_name} - {contract.name}",
                    "actionRequired": "Review renewal terms and execute auto-renewal",
                })
        elif days <= EXPIRY_WINDOW_DAYS:
            events.append({
                "type": "expiring",
                "contractId": contract.id,
                "daysUntil": days,
                "priority": _expiry_priority(days),
                "description": f"Contract expiring for {client_name} - {contract.name}",
                "actionRequired": "Contact client for renewal negotiation",
            })

    events.sort(key=lambda e: e["daysUntil"])
    return events


def contract_metrics(db: Session, contract_id: int) -> Dict:
    contract = _get_contract(db, contract_id)

    scopes = db.scalars(select(ServiceScope).where(ServiceScope.contract_id == contract_id)).all()
    monthly = sum(float(s.monthly_value or 0) for s in scopes)
    active = sum(1 for s in scopes if s.status == "active")

    return {
        "contractId": contract.id,
        "totalValue": float(contract.total_value or 0),
        "monthlyRecurring": monthly,
        "utilizationRate": active / max(len(scopes), 1),
        "scopeCount": len(scopes),
        "activeScopes": active,
        "profitMargin": BASELINE_PROFIT_MARGIN,
        "clientSatisfaction": BASELINE_CLIENT_SATISFACTION,
        "slaCompliance": BASELINE_SLA_COMPLIANCE,
    }


def score_renewal(metrics: Dict) -> Dict:
    """
    Turn contract metrics into a renewal recommendation.

    Strong satisfaction, SLA compliance, margin and utilization add points;
    weak satisfaction, SLA or margin subtract them. The score picks the
    action (auto_renew >= 70, negotiate >= 40, review >= 20, else
    terminate) and confidence is the score scaled to 0..1.
    """
    satisfaction = metrics["clientSatisfaction"]
    sla = metrics["slaCompliance"]
    margin = metrics["profitMargin"]
    utilization = metrics["utilizationRate"]

    score = 0
    reasons = []
    if satisfaction > 0.8:
        score += 30
        reasons.append("High client satisfaction score")
    if sla > 0.9:
        score += 25
        reasons.append("Excellent SLA compliance")
    if margin > 0.2:
        score += 20
        reasons.append("Healthy profit margin")
    if utilization > 0.8:
        score += 15
        reasons.append("High service utilization")

    if satisfaction < 0.6:
        score -= 40
        reasons.append("Low client satisfaction - needs improvement")
    if sla < 0.8:
        score -= 30
        reasons.append("Poor SLA compliance")
    if margin < 0.1:
        score -= 25
        reasons.append("Low profit margin")

    if score >= 70:
        action = "auto_renew"
    elif score >= 40:
        action = "negotiate"
    elif score >= 20:
        action = "review"
    else:
        action = "terminate"

    recommendation = {
        "contractId": metrics["contractId"],
        "action": action,
        "confidence": min(max(score / 100, 0.0), 1.0),
        "reasons": reasons,
    }
    if action == "negotiate":
        recommendation["suggestedTerms"] = {
            "duration": 24 if satisfaction > 0.7 else 12,
            "priceAdjustment": 5 if sla > 0.9 else 0,
            "serviceChanges": [
                "Add performance monitoring",
                "Implement quarterly reviews",
                "Enhanced support tier",
            ],
        }
    return recommendation


def renewal_recommendation(db: Session, contract_id: int) -> Dict:
    return score_renewal(contract_metrics(db, contract_id))


def _add_year(moment: datetime) -> datetime:
    try:
        return moment.replace(year=moment.year + 1)
    except ValueError:
        # Feb 29 rolls forward to Mar 1
        return moment.replace(year=moment.year + 1, month=3, day=1)


def process_automatic_renewal(db: Session, contract_id: int, user_id: Optional[int]) -> Contract:
    """
    Extend an auto-renewing contract by one year and audit it.

    Raises:
        NotFoundError: Unknown contract
        BusinessLogicError: Auto-renewal is not enabled on the contract
    """
    contract = _get_contract(db, contract_id)
    if not contract.auto_renewal:
        raise BusinessLogicError(
            "auto-renewal is not enabled for this contract",
            details={"contractId": contract_id},
        )

    contract.end_date = _add_year(contract.end_date)
    record_audit(
        db, user_id, "renewal", "contract",
        entity_id=contract.id,
        entity_name=contract.name,
        description=f"Automatic contract renewal processed. New end date: {contract.end_date.date().isoformat()}",
        category="contract_management",
    )
    db.commit()
    logger.info(f"Renewed contract {contract.id} until {contract.end_date.date().isoformat()}")
    return contract


def score_health(metrics: Dict) -> Dict:
    factors = [
        {"name": "Client Satisfaction", "score": metrics["clientSatisfaction"] * 100, "weight": 0.3},
        {"name": "SLA Compliance", "score": metrics["slaCompliance"] * 100, "weight": 0.25},
        {"name": "Profit Margin", "score": min(metrics["profitMargin"] * 200, 100), "weight": 0.2},
        {"name": "Service Utilization", "score": metrics["utilizationRate"] * 100, "weight": 0.15},
        {"name": "Payment History", "score": PAYMENT_HISTORY_SCORE, "weight": 0.1},
    ]
    overall = sum(f["score"] * f["weight"] for f in factors)

    if overall >= 90:
        status = "excellent"
    elif overall >= 75:
        status = "good"
    elif overall >= 60:
        status = "warning"
    else:
        status = "critical"

    return {"score": math.floor(overall + 0.5), "status": status, "factors": factors}


def contract_health(db: Session, contract_id: int) -> Dict:
    """Weighted 0-100 health score with its contributing factors"""
    return score_health(contract_metrics(db, contract_id))


def analyze_termination(db: Session, contract_id: int, now: Optional[datetime] = None) -> Dict:
    """
    What terminating a contract now would involve.

    Active service scopes block termination. The financial impact is the
    monthly recurring value times the remaining (30-day) months. Assets
    still assigned to the client are listed for return.
    """
    now = now or datetime.utcnow()
    contract = _get_contract(db, contract_id)
    metrics = contract_metrics(db, contract_id)

    blockers = []
    if metrics["activeScopes"]:
        blockers.append(f"{metrics['activeScopes']} active service scope(s) must be completed first")

    remaining_months = 0
    if contract.end_date:
        remaining_months = max(0, math.ceil((contract.end_date - now).total_seconds() / (86400 * 30)))

    assignments = db.scalars(
        select(ClientHardwareAssignment).where(
            ClientHardwareAssignment.client_id == contract.client_id,
            ClientHardwareAssignment.status == "active",
        )
    ).all()

    return {
        "canTerminate": not blockers,
        "blockers": blockers,
        "financialImpact": metrics["monthlyRecurring"] * remaining_months,
        "assetReturns": [a.asset.name for a in assignments if a.asset is not None],
        "timeline": [{"step": step, "daysRequired": days} for step, days in TERMINATION_TIMELINE],
    }


def expire_overdue_contracts(db: Session, now: Optional[datetime] = None) -> int:
    """Mark active, non-auto-renewing contracts past their end date as expired"""
    now = now or datetime.utcnow()
    overdue = db.scalars(
        select(Contract).where(
            Contract.status == ContractStatus.ACTIVE,
            Contract.end_date < now,
            or_(Contract.auto_renewal.is_(False), Contract.auto_renewal.is_(None)),
        )
    ).all()

    for contract in overdue:
        contract.status = ContractStatus.EXPIRED
        record_audit(
            db, None, "update", "contract",
            entity_id=contract.id,
            entity_name=contract.name,
            description=f"Contract '{contract.name}' expired on {contract.end_date.date().isoformat()}",
            severity="medium",
            category="contract",
        )

    if overdue:
        db.commit()
        logger.info(f"Expired {len(overdue)} overdue contract(s)")
    return len(overdue)


def contracts_expiring_within(db: Session, days: int, now: Optional[datetime] = None) -> List[Contract]:
    now = now or datetime.utcnow()
    return db.scalars(
        select(Contract).where(
            Contract.status == ContractStatus.ACTIVE,
            Contract.end_date >= now,
            Contract.end_date <= now + timedelta(days=days),
        ).order_by(Contract.end_date)
    ).all()
