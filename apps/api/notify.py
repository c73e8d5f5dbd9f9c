from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

logger = logging.getLogger(__name__)


def send_webhook(url: str, payload: Dict[str, Any]) -> bool:
    if not url:
        return False
    try:
        resp = httpx.post(url, json=payload, timeout=5.0)
        resp.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.warning("Alert webhook delivery failed: %s", e)
        return False
