from __future__ import annotations

import logging
from typing import Callable, Optional


class _ContextFilter(logging.Filter):
    def __init__(
        self,
        *,
        store_getter: Optional[Callable[[], Optional[int]]] = None,
        request_id_getter: Optional[Callable[[], Optional[str]]] = None,
        principal_getter: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        super().__init__()
        self._store_getter = store_getter
        self._request_id_getter = request_id_getter
        self._principal_getter = principal_getter

    def filter(self, record: logging.LogRecord) -> bool:
        # Inject defaults so formatters can always reference these fields.
        record.store_id = None
        record.request_id = None
        record.principal = None
        try:
            if self._store_getter:
                record.store_id = self._store_getter()
        except Exception:
            record.store_id = None
        try:
            if self._request_id_getter:
                record.request_id = self._request_id_getter()
        except Exception:
            record.request_id = None
        try:
            if self._principal_getter:
                record.principal = self._principal_getter()
        except Exception:
            record.principal = None
        return True


def configure_logging(
    *,
    level: str = "INFO",
    store_getter: Optional[Callable[[], Optional[int]]] = None,
    request_id_getter: Optional[Callable[[], Optional[str]]] = None,
    principal_getter: Optional[Callable[[], Optional[str]]] = None,
) -> None:
    """Configure root logging with consistent contextual fields."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(lvl)

    # If something already configured handlers (uvicorn), avoid duplicating them.
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s "
                "request_id=%(request_id)s store_id=%(store_id)s principal=%(principal)s "
                "%(message)s"
            )
        )
        root.addHandler(handler)

    ctx_filter = _ContextFilter(
        store_getter=store_getter,
        request_id_getter=request_id_getter,
        principal_getter=principal_getter,
    )
    # Filters on the root logger do not see records propagated from child loggers,
    # so attach to the handlers as well.
    for h in root.handlers:
        if not any(isinstance(f, _ContextFilter) for f in h.filters):
            h.addFilter(ctx_filter)
