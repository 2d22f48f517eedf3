"""Request authentication for the Gantry HTTP surface.

Security Model:
    Gantry is deployed as a single-tenant service. Both checks are optional
    and controlled by environment variables.

    - GANTRY_WEBHOOK_SECRET: when set, ``POST /webhook`` deliveries must carry
      a valid ``X-Hub-Signature-256`` HMAC-SHA256 signature of the raw body.
    - GANTRY_API_KEY: when set, the REST API requires
      ``Authorization: Bearer <api_key>``. When unset, it is open (trusted
      network deployments).

Usage:
    @router.get("/runs")
    async def list_runs(authorized: bool = Depends(require_api_key)):
        ...
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

API_KEY_ENV = "GANTRY_API_KEY"
WEBHOOK_SECRET_ENV = "GANTRY_WEBHOOK_SECRET"

# Security scheme for OpenAPI docs
_bearer_scheme = HTTPBearer(auto_error=False)


def get_security_config() -> dict:
    """Get current security configuration status."""
    api_key = os.environ.get(API_KEY_ENV)
    return {
        "authentication_required": api_key is not None,
        "api_key_env_var": API_KEY_ENV,
        "webhook_signature_required": bool(os.environ.get(WEBHOOK_SECRET_ENV)),
    }


def sign_payload(secret: str, payload: bytes) -> str:
    """Compute the ``X-Hub-Signature-256`` header value for a body."""
    return "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: str, secret: str | None) -> bool:
    """Verify an HMAC-SHA256 webhook signature.

    Args:
        payload: Raw request body bytes.
        signature: X-Hub-Signature-256 header value.
        secret: Shared webhook secret; None or empty skips verification.
    """
    if not secret:
        logger.warning("No webhook secret configured — skipping signature verification")
        return True
    return hmac.compare_digest(sign_payload(secret, payload), signature or "")


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency that validates the API key if one is configured.

    An empty-string GANTRY_API_KEY still enforces authentication; only an
    unset variable disables it.

    Raises HTTPException 401 if the key is configured and missing or wrong.
    """
    expected_key = os.environ.get(API_KEY_ENV)
    if expected_key is None:
        return True

    client = request.client.host if request.client else "unknown"
    if credentials is None:
        logger.warning("API request without credentials from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide Authorization: Bearer <api_key> header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Invalid API key from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True
