# licensing/routes/admin.py
from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.orm import Session

from licensing.auth import app_settings, require_admin
from licensing.config import Settings
from licensing.database import get_db
from licensing.routes.licenses import CamelModel
from licensing.services.entitlements import EntitlementService, entitlement_to_dict

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class GrantTrialRequest(CamelModel):
    customer_id: int
    tier: str = "pro"
    days: int | None = Field(default=None, gt=0)


class RetireRequest(CamelModel):
    reason: str = Field(default="admin", max_length=128)


def entitlement_service(db: Session = Depends(get_db), settings: Settings = Depends(app_settings)) -> EntitlementService:
    return EntitlementService(db, settings)


@router.post("/trials")
def grant_trial(payload: GrantTrialRequest, service: EntitlementService = Depends(entitlement_service)):
    entitlement = service.grant_trial(payload.customer_id, payload.tier, payload.days)
    return entitlement_to_dict(entitlement)


@router.get("/entitlements")
def list_entitlements(customer_id: int | None = None, service: EntitlementService = Depends(entitlement_service)):
    return {"entitlements": [entitlement_to_dict(e) for e in service.list_entitlements(customer_id)]}


@router.post("/entitlements/{entitlement_id}/retire")
def retire_entitlement(
    entitlement_id: int,
    payload: RetireRequest | None = None,
    service: EntitlementService = Depends(entitlement_service),
):
    reason = payload.reason if payload else "admin"
    return entitlement_to_dict(service.retire_entitlement(entitlement_id, reason))


@router.post("/repair-founders")
def repair_founders(service: EntitlementService = Depends(entitlement_service)):
    repaired = service.repair_founders_entitlements()
    return {"repaired": repaired, "count": len(repaired)}


@router.post("/prune-ledger")
def prune_ledger(service: EntitlementService = Depends(entitlement_service)):
    return {"removed": service.prune_replay_ledger()}
