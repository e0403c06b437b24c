"""
API Dependencies

FastAPI dependency injection for authentication and billing services.

Security: bearer tokens are HS256 JWTs issued by the auth service and
verified with the shared ``JWT_SECRET``. Never decode without verification.
The ``sub`` claim is the tenant ID.
"""

import logging
from functools import lru_cache
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings
from app.infrastructure.payments.stripe_service import get_stripe_service
from app.infrastructure.services.billing_service import BillingService
from app.infrastructure.services.subscription_lifecycle import SubscriptionLifecycleService
from app.infrastructure.services.webhook_reconciler import WebhookReconciler


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _decode_token(token: str, secret: str, issuer: Optional[str]) -> dict:
    """Verify an HS256 token; the issuer is checked when configured."""
    required = ["exp", "sub", "iss"] if issuer else ["exp", "sub"]
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        issuer=issuer,
        options={"require": required},
    )


async def get_current_tenant_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Extract and verify the tenant ID from a bearer JWT.

    Returns:
        Authenticated tenant ID (``sub`` claim).

    Raises:
        HTTPException 401: token missing, expired, or invalid.
        HTTPException 500: no JWT secret configured.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT_SECRET is not configured; rejecting authenticated request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication is not configured",
        )

    try:
        payload = _decode_token(credentials.credentials, settings.jwt_secret, settings.jwt_issuer)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )

    tenant_id = payload.get("sub")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing tenant ID",
        )

    return str(tenant_id)


# =============================================================================
# Service Providers
# Cached per process; tests override them with app.dependency_overrides.
# =============================================================================

@lru_cache
def get_billing_service() -> BillingService:
    return BillingService(stripe_service=get_stripe_service())


@lru_cache
def get_lifecycle_service() -> SubscriptionLifecycleService:
    return SubscriptionLifecycleService(get_stripe_service())


@lru_cache
def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler(get_stripe_service())
