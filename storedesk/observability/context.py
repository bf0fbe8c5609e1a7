from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Optional
import uuid

# NOTE: These are request-scoped for HTTP handlers. Background migrations/sync runs will
# have empty values unless explicitly set.
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_STORE_ID: ContextVar[Optional[int]] = ContextVar("store_id", default=None)
_PRINCIPAL: ContextVar[Optional[str]] = ContextVar("principal", default=None)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def set_request_id(value: Optional[str] = None) -> tuple[str, Token[Optional[str]]]:
    rid = (value or "").strip() or uuid.uuid4().hex
    tok = _REQUEST_ID.set(rid)
    return rid, tok


def reset_request_id(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)


def get_store_id() -> Optional[int]:
    return _STORE_ID.get()


def set_store_id(value: Optional[int]) -> Token[Optional[int]]:
    return _STORE_ID.set(int(value) if value is not None else None)


def reset_store_id(token: Token[Optional[int]]) -> None:
    _STORE_ID.reset(token)


def get_principal() -> Optional[str]:
    return _PRINCIPAL.get()


def set_principal(value: Optional[str]) -> Token[Optional[str]]:
    v = (value or "").strip() if value else None
    return _PRINCIPAL.set(v or None)


def reset_principal(token: Token[Optional[str]]) -> None:
    _PRINCIPAL.reset(token)
