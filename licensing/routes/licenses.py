# licensing/routes/licenses.py
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from licensing.auth import app_settings, current_customer_id
from licensing.config import Settings
from licensing.database import get_db
from licensing.services.activation import ActivationService
from licensing.services.rate_limit import rate_limit

router = APIRouter(prefix="/license", tags=["license"], dependencies=[Depends(rate_limit("license"))])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActivateRequest(CamelModel):
    entitlement_id: int
    device_id: str = Field(min_length=3, max_length=256)
    device_name: str | None = Field(default=None, max_length=256)
    platform: str | None = Field(default=None, max_length=64)


class DeviceRequest(CamelModel):
    device_id: str = Field(min_length=3, max_length=256)


class LeaseRequest(CamelModel):
    entitlement_id: int
    device_id: str = Field(min_length=3, max_length=256)


class VerifyLeaseRequest(CamelModel):
    lease_token: str = Field(min_length=1)


class RedeemChallengeRequest(CamelModel):
    challenge: str = Field(min_length=1)


def activation_service(db: Session = Depends(get_db), settings: Settings = Depends(app_settings)) -> ActivationService:
    return ActivationService(db, settings)


@router.post("/activate")
def activate(
    payload: ActivateRequest,
    customer_id: int = Depends(current_customer_id),
    service: ActivationService = Depends(activation_service),
):
    return service.activate(
        customer_id, payload.entitlement_id, payload.device_id, payload.device_name, payload.platform
    )


@router.post("/deactivate")
def deactivate(
    payload: DeviceRequest,
    customer_id: int = Depends(current_customer_id),
    service: ActivationService = Depends(activation_service),
):
    return service.deactivate(customer_id, payload.device_id)


@router.post("/lease/refresh")
def refresh_lease(
    payload: LeaseRequest,
    customer_id: int = Depends(current_customer_id),
    service: ActivationService = Depends(activation_service),
):
    return service.refresh_lease(customer_id, payload.entitlement_id, payload.device_id)


@router.post("/lease/verify")
def verify_lease(payload: VerifyLeaseRequest, service: ActivationService = Depends(activation_service)):
    return service.verify_lease(payload.lease_token)


@router.post("/offline-challenge")
def offline_challenge(
    payload: LeaseRequest,
    customer_id: int = Depends(current_customer_id),
    service: ActivationService = Depends(activation_service),
):
    return service.issue_challenge(customer_id, payload.entitlement_id, payload.device_id)


@router.post("/offline-refresh")
def offline_refresh(
    payload: RedeemChallengeRequest,
    customer_id: int = Depends(current_customer_id),
    service: ActivationService = Depends(activation_service),
):
    return service.redeem_challenge(customer_id, payload.challenge)
