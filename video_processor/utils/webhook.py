from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from typing import Any

import requests

from video_processor import USER_AGENT

logger = logging.getLogger(__name__)

CALLBACK_TIMEOUT_SECONDS = 10


def serialize_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def post_callback(url: str, payload: dict[str, Any], secret: str | None = None) -> bool:
    """POST a job result to the caller. Failures are logged, never raised."""
    body = serialize_payload(payload)
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    if secret:
        headers["X-Signature"] = sign_payload(body, secret)

    try:
        response = requests.post(
            url, data=body, headers=headers, timeout=CALLBACK_TIMEOUT_SECONDS
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Callback to %s failed: %s", url, e)
        return False
    logger.info("Callback sent: %s", response.status_code)
    return True


async def send_callback(
    url: str | None, payload: dict[str, Any], secret: str | None = None
) -> bool:
    if not url:
        return False
    return await asyncio.to_thread(post_callback, url, payload, secret)
