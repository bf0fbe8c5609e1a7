import logging
from typing import Any, Dict, Optional

import httpx

from . import config

log = logging.getLogger(__name__)


async def notify_failure(kind: str, report: Dict[str, Any], *, url: Optional[str] = None) -> bool:
    """POST a failed migration/sync report to the alert webhook (best-effort).

    Returns True only when the webhook accepted the payload.
    """
    target = (url if url is not None else config.ALERT_WEBHOOK_URL or "").strip()
    if not target:
        return False
    payload = {"kind": kind, "report": report}
    timeout = httpx.Timeout(config.ALERT_HTTP_TIMEOUT_SECONDS, connect=min(3.0, config.ALERT_HTTP_TIMEOUT_SECONDS))
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(target, json=payload)
        if resp.status_code >= 400:
            log.warning("Alert webhook rejected %s report: HTTP %s", kind, resp.status_code)
            return False
        return True
    except httpx.HTTPError as exc:
        log.warning("Alert webhook unreachable for %s report: %s", kind, exc)
        return False
