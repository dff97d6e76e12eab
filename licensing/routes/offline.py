# licensing/routes/offline.py
from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.orm import Session

from licensing.auth import app_settings, current_customer_id
from licensing.config import Settings
from licensing.database import get_db
from licensing.routes.licenses import CamelModel
from licensing.services.provisioning import AirGappedProvisioningService
from licensing.services.rate_limit import rate_limit

router = APIRouter(prefix="/license/offline", tags=["offline"], dependencies=[Depends(rate_limit("offline"))])


# code lengths are checked by the codec so failures carry its error codes
class ProvisionRequest(CamelModel):
    entitlement_id: int
    setup_code: str = Field(max_length=50000)


class RefreshRequest(CamelModel):
    request_code: str = Field(max_length=50000)


class DeactivateRequest(CamelModel):
    deactivation_code: str = Field(max_length=50000)


def provisioning_service(
    db: Session = Depends(get_db), settings: Settings = Depends(app_settings)
) -> AirGappedProvisioningService:
    return AirGappedProvisioningService(db, settings)


@router.post("/provision")
def provision(
    payload: ProvisionRequest,
    customer_id: int = Depends(current_customer_id),
    service: AirGappedProvisioningService = Depends(provisioning_service),
):
    return service.provision(customer_id, payload.entitlement_id, payload.setup_code)


@router.post("/lease-refresh")
def lease_refresh(
    payload: RefreshRequest,
    customer_id: int = Depends(current_customer_id),
    service: AirGappedProvisioningService = Depends(provisioning_service),
):
    return service.refresh(customer_id, payload.request_code)


@router.post("/deactivate")
def deactivate(
    payload: DeactivateRequest,
    customer_id: int = Depends(current_customer_id),
    service: AirGappedProvisioningService = Depends(provisioning_service),
):
    return service.deactivate(customer_id, payload.deactivation_code)
