from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from mssp.database import get_db
from mssp.models import User
from mssp.security import get_current_user, require_manager_or_above
from mssp.services import contract_lifecycle

router = APIRouter(prefix="/api/contracts", tags=["contracts"])


@router.get("/lifecycle/events")
def lifecycle_events(daysAhead: int = 90, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if daysAhead < 1 or daysAhead > 730:
        raise HTTPException(status_code=400, detail="daysAhead must be between 1 and 730")
    return contract_lifecycle.upcoming_events(db, daysAhead)


@router.get("/{contract_id}/metrics")
def metrics(contract_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return contract_lifecycle.contract_metrics(db, contract_id)


@router.get("/{contract_id}/renewal-recommendation")
def renewal_recommendation(contract_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return contract_lifecycle.renewal_recommendation(db, contract_id)


@router.get("/{contract_id}/health")
def health(contract_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return contract_lifecycle.contract_health(db, contract_id)


@router.get("/{contract_id}/termination-analysis")
def termination_analysis(contract_id: int, user: User = Depends(require_manager_or_above),
                         db: Session = Depends(get_db)):
    return contract_lifecycle.analyze_termination(db, contract_id)


@router.post("/{contract_id}/renew")
def renew(contract_id: int, user: User = Depends(require_manager_or_above), db: Session = Depends(get_db)):
    contract = contract_lifecycle.process_automatic_renewal(db, contract_id, user.id)
    return {"success": True, "contractId": contract.id, "endDate": contract.end_date.isoformat()}
