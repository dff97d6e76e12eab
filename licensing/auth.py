# licensing/auth.py
import hmac
import logging

import jwt
from fastapi import Depends, Header, HTTPException, Request, status

from licensing.config import Settings
from licensing.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


def app_settings(request: Request) -> Settings:
    return request.app.state.settings


def current_customer_id(
    authorization: str | None = Header(None),
    settings: Settings = Depends(app_settings),
) -> int:
    """Customer id from an HS256 ``Authorization: Bearer`` token with ``type == "customer"``."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    if not settings.customer_jwt_secret:
        logger.error("CUSTOMER_JWT_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    token = authorization[7:].strip()
    try:
        claims = jwt.decode(token, settings.customer_jwt_secret, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    if claims.get("type") != "customer" or not isinstance(claims.get("id"), int):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not a customer token")
    return claims["id"]


def require_admin(
    x_admin_token: str | None = Header(None),
    settings: Settings = Depends(app_settings),
) -> None:
    if not settings.admin_token or not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def issue_customer_token(customer_id: int, secret: str, ttl_seconds: int = 3600) -> str:
    """Mint a customer session token. The storefront normally does this; the CLI and tests use it too."""
    now = int(utcnow().timestamp())
    return jwt.encode({"id": customer_id, "type": "customer", "iat": now, "exp": now + ttl_seconds}, secret, algorithm="HS256")
