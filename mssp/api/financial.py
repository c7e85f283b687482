"""
Financial API

Transactions plus the financial-intelligence views. Manager or above only.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from mssp.audit import record_audit
from mssp.database import get_db
from mssp.models import FinancialTransaction, User
from mssp.security import require_manager_or_above
from mssp.services import financial_intelligence

router = APIRouter(prefix="/api/financial", tags=["financial"])

TRANSACTION_TYPES = ("revenue", "expense")


class TransactionRequest(BaseModel):
    type: str
    amount: float
    description: Optional[str] = None
    status: str = "completed"
    clientId: Optional[int] = None
    contractId: Optional[int] = None
    transactionDate: Optional[datetime] = None


def _serialize_transaction(t: FinancialTransaction) -> dict:
    return {
        "id": t.id,
        "client_id": t.client_id,
        "contract_id": t.contract_id,
        "type": t.transaction_type,
        "amount": float(t.amount),
        "description": t.description,
        "status": t.status,
        "transaction_date": t.transaction_date.isoformat(),
    }


@router.get("/transactions")
def list_transactions(clientId: Optional[int] = None, type: Optional[str] = None, limit: int = 100,
                      user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    rows = financial_intelligence.list_transactions(db, client_id=clientId, transaction_type=type, limit=limit)
    return [_serialize_transaction(t) for t in rows]


@router.post("/transactions")
def create_transaction(body: TransactionRequest, user: User = Depends(require_manager_or_above),
                       db: Session = Depends(get_db)):
    if body.type not in TRANSACTION_TYPES:
        raise HTTPException(status_code=400, detail=f"type must be one of: {', '.join(TRANSACTION_TYPES)}")

    txn = FinancialTransaction(
        transaction_type=body.type,
        amount=body.amount,
        description=body.description,
        status=body.status,
        client_id=body.clientId,
        contract_id=body.contractId,
        transaction_date=body.transactionDate or datetime.utcnow(),
    )
    db.add(txn)
    db.flush()
    record_audit(db, user.id, "create", "financial_transaction", entity_id=txn.id,
                 description=f"Recorded {body.type} of {body.amount:,.2f}", category="financial")
    db.commit()
    return _serialize_transaction(txn)


@router.get("/revenue-metrics")
def revenue_metrics(startDate: Optional[datetime] = None, endDate: Optional[datetime] = None,
                    user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    end = endDate or datetime.utcnow()
    start = startDate or financial_intelligence.period_start("month", end)
    if start >= end:
        raise HTTPException(status_code=400, detail="startDate must be before endDate")
    return financial_intelligence.revenue_metrics(db, start, end)


@router.get("/cash-flow-forecast")
def cash_flow_forecast(user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    return financial_intelligence.cash_flow_forecast(db)


@router.get("/client-profitability")
def client_profitability(user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    return financial_intelligence.client_profitability(db)


@router.get("/service-performance")
def service_performance(user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    return financial_intelligence.service_performance(db)


@router.get("/alerts")
def alerts(user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    return financial_intelligence.financial_alerts(db)


@router.get("/executive-summary")
def executive_summary(period: str = "month", user: User = Depends(require_manager_or_above),
                      db: Session = Depends(get_db)):
    try:
        return financial_intelligence.executive_summary(db, period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
