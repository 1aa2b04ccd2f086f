"""
shared/utils/security.py
Signed accept/decline links for professionals, plus contact masking for logs.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

from jose import JWTError, jwt

from config.settings import settings
from shared.utils.errors import AuthorizationError

RESPONSE_TOKEN_TYPE = "attribution_response"


# ── JWT ───────────────────────────────────────────────────────

def create_response_token(
    attribution_id: uuid.UUID,
    professional_id: uuid.UUID,
    expires_in: Optional[timedelta] = None,
) -> str:
    """
    Create the token embedded in a professional's accept/decline links.
    It binds one professional to one attribution; the decision itself is
    chosen by the link and sent alongside the token.
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_in or timedelta(hours=settings.RESPONSE_LINK_EXPIRE_HOURS))

    payload = {
        "sub": str(professional_id),
        "attribution_id": str(attribution_id),
        "jti": str(uuid.uuid4()),
        "iat": now,
        "exp": expire,
        "type": RESPONSE_TOKEN_TYPE,
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_response_token(token: str, attribution_id: uuid.UUID) -> uuid.UUID:
    """
    Decode a response token and check it belongs to this attribution.
    Returns the professional id it was issued to.
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as e:
        raise AuthorizationError("Invalid or expired response link") from e

    if payload.get("type") != RESPONSE_TOKEN_TYPE:
        raise AuthorizationError("Invalid token type")
    if payload.get("attribution_id") != str(attribution_id):
        raise AuthorizationError("Response link does not match this attribution")

    try:
        return uuid.UUID(payload["sub"])
    except (KeyError, ValueError) as e:
        raise AuthorizationError("Response link has no professional") from e


def build_response_urls(attribution_id: uuid.UUID, professional_id: uuid.UUID) -> dict[str, str]:
    """Accept / decline URLs pointing at the frontend response page."""
    token = create_response_token(attribution_id, professional_id)
    base = f"{settings.FRONTEND_URL}/attributions/{attribution_id}/respond"
    return {
        "accept_url": f"{base}?{urlencode({'token': token, 'decision': 'accept'})}",
        "decline_url": f"{base}?{urlencode({'token': token, 'decision': 'decline'})}",
    }


# ── Masking ───────────────────────────────────────────────────

def mask_address(address: Optional[str]) -> str:
    """j***@example.com / ******4567 for log lines."""
    if not address:
        return "<none>"
    if "@" in address:
        local, _, domain = address.partition("@")
        return f"{local[:1]}***@{domain}"
    return "*" * max(len(address) - 4, 0) + address[-4:]
