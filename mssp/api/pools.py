from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import List, Optional

from mssp.database import get_db
from mssp.models import User
from mssp.security import get_current_user
from mssp.services import pool_validation

router = APIRouter(prefix="/api/pools", tags=["pool-validation"])


class LicenseAllocationRequest(BaseModel):
    poolId: Optional[int] = None
    requestedLicenses: Optional[int] = None


class HardwareAssignmentRequest(BaseModel):
    assetIds: List[int] = []


@router.get("/licenses/available")
def available_licenses(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return pool_validation.available_license_pools(db)


@router.get("/hardware/available")
def available_hardware(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return pool_validation.available_hardware(db)


@router.post("/licenses/validate")
def validate_license(request: LicenseAllocationRequest, user: User = Depends(get_current_user),
                     db: Session = Depends(get_db)):
    try:
        return pool_validation.validate_license_allocation(db, request.poolId, request.requestedLicenses)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/hardware/validate")
def validate_hardware(request: HardwareAssignmentRequest, user: User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    try:
        return pool_validation.validate_hardware_assignment(db, request.assetIds)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
