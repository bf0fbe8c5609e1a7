import logging
import time
from typing import Any, Dict, Optional

from fastapi import Request
from jose import JWTError, jwt

from . import config
from .tenancy.resolver import Principal

log = logging.getLogger(__name__)

ACCESS_TOKEN_TTL_SECONDS = 3600


def _jwt_secret() -> str:
    if not config.JWT_SECRET and not config.DISABLE_AUTH:
        log.warning("JWT_SECRET is empty; set it for secure authentication.")
    return config.JWT_SECRET or "dev-unsafe-secret"


def issue_access_token(claims: Dict[str, Any], ttl_seconds: int = ACCESS_TOKEN_TTL_SECONDS) -> str:
    now = int(time.time())
    payload = dict(claims)
    payload.update(
        {
            "iss": config.JWT_ISSUER,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
    )
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def parse_access_token(token: str) -> Optional[Principal]:
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            options={"require_sub": True, "require_exp": True},
            issuer=config.JWT_ISSUER,
        )
    except JWTError:
        return None
    if not str(payload.get("sub") or "").strip():
        return None
    return Principal.from_claims(payload)


def extract_access_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or ""
    parts = auth_header.split()
    if len(parts) >= 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def dev_principal() -> Principal:
    """Principal used when DISABLE_AUTH=1 (local development)."""
    return Principal(level="global", role="super_admin", username="dev")
