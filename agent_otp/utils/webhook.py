"""Fire-and-forget webhook notifications for permission events"""
import hashlib
import hmac
import json
import threading
from typing import Any, Dict

import requests

from agent_otp.config import settings
from agent_otp.utils.logger import logger
from agent_otp.utils.timeutil import utcnow, to_iso


def _deliver(url: str, body: bytes, headers: Dict[str, str]) -> None:
    """Deliver webhook payload in a daemon background thread (fire-and-forget)."""
    try:
        resp = requests.post(url, data=body, headers=headers, timeout=5)
        logger.debug(
            "Webhook delivered",
            extra={"url": url, "status_code": resp.status_code},
        )
    except Exception as exc:
        logger.warning(
            "Webhook delivery failed",
            extra={"url": url, "error": str(exc)},
        )


def sign_body(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature header value for a webhook body"""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_webhook(event_type: str, payload: Dict[str, Any]) -> tuple[bytes, Dict[str, str]]:
    """Serialize an event and compute its headers"""
    body_dict: Dict[str, Any] = {
        "event": event_type,
        "timestamp": to_iso(utcnow()),
        **payload,
    }
    body = json.dumps(body_dict, default=str).encode()
    headers = {"Content-Type": "application/json"}

    if settings.WEBHOOK_SECRET:
        headers["X-AgentOTP-Signature"] = sign_body(body, settings.WEBHOOK_SECRET)

    return body, headers


def send_webhook(event_type: str, payload: Dict[str, Any]) -> None:
    """
    Send a webhook notification for a permission event (non-blocking).

    Supported event types:
      - ``permission.pending``   : a request needs a human decision; the payload
                                   carries request id, agent, action, resource,
                                   scope, context and expiry for the notifier
      - ``permission.approved``  : a human approved the request
      - ``permission.denied``    : a human denied the request
      - ``permission.expired``   : nobody decided before the approval window closed

    Configuration (.env):
      - ``WEBHOOK_URL``    : destination URL (e.g. the Telegram bot's webhook server).
      - ``WEBHOOK_SECRET`` : if set, adds ``X-AgentOTP-Signature: sha256=<hex>`` header
                             so the receiver can verify authenticity.

    The call returns immediately; delivery happens in a daemon thread.
    """
    url = settings.WEBHOOK_URL
    if not url:
        return

    body, headers = build_webhook(event_type, payload)
    threading.Thread(target=_deliver, args=(url, body, headers), daemon=True).start()
