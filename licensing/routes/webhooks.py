# licensing/routes/webhooks.py
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from licensing.auth import app_settings
from licensing.config import Settings
from licensing.database import get_db
from licensing.services.reconciler import BillingReconciler
from licensing.services.stripe_webhook import SignatureVerificationError, verify_stripe_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(app_settings),
):
    payload = await request.body()
    try:
        verify_stripe_signature(payload, stripe_signature, settings.stripe_webhook_secret)
    except SignatureVerificationError as exc:
        logger.warning("Stripe webhook rejected", extra={"reason": str(exc)})
        raise HTTPException(status_code=400, detail=f"Webhook signature verification failed: {exc}")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Event payload must be a JSON object")

    try:
        # reconcile blocks on the database and on Stripe lookups
        result = await asyncio.to_thread(BillingReconciler(db, settings).reconcile, event)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    # anything else propagates as a 500 so Stripe redelivers

    return {"received": True, **result.to_dict()}
