"""
Transport-independent webhook entry points

main.py maps HTTP requests onto these functions; each one returns a
(status_code, body) pair and never raises.
"""
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple

from followup.call_executor import FollowupExecutor
from followup.status_tracker import StatusTracker
from scheduling.models import Channel

logger = logging.getLogger("webhooks")

SIGNATURE_HEADER = "x-provider-signature"
MAX_PAYLOAD_BYTES = 1 * 1024 * 1024  # 1 MB

WebhookResponse = Tuple[int, Dict[str, Any]]


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body"""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify a provider callback signature

    Without a configured secret every callback is accepted (with a warning),
    which keeps local development usable.
    """
    if not secret:
        logger.warning("WEBHOOK_SECRET not set, accepting unverified provider callback")
        return True
    if not signature:
        logger.warning(f"Missing {SIGNATURE_HEADER} header")
        return False
    if signature.startswith("sha256="):
        signature = signature[7:]
    return hmac.compare_digest(compute_signature(raw_body, secret), signature)


def _decode(raw_body: bytes) -> Optional[Dict[str, Any]]:
    try:
        body = json.loads(raw_body.decode("utf-8") or "{}")
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def handle_execute_webhook(executor: FollowupExecutor, raw_body: bytes) -> WebhookResponse:
    """
    Dispatch-queue callback: fire the item named in the body

    Body: {"item_id": "...", "channel": "call" | "email"}; channel defaults to call.
    """
    body = _decode(raw_body)
    if body is None:
        return 400, {"success": False, "error": "Invalid JSON body"}

    item_id = body.get("item_id") or body.get("itemId")
    if not item_id:
        return 400, {"success": False, "error": "item_id is required"}
    try:
        channel = Channel(body.get("channel") or Channel.CALL.value)
    except ValueError:
        return 400, {"success": False, "error": f"Unknown channel '{body.get('channel')}'"}

    result = executor.execute(channel, str(item_id))
    # Failures are reported in the body; a non-2xx would make the queue redeliver
    return 200, result.to_dict()


def handle_provider_webhook(
    tracker: StatusTracker,
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str]
) -> WebhookResponse:
    """Provider status-update / hang / end-of-call-report callback"""
    if len(raw_body) > MAX_PAYLOAD_BYTES:
        return 413, {"success": False, "error": "Payload too large"}

    if not verify_signature(raw_body, _header(headers, SIGNATURE_HEADER), secret):
        logger.warning("Provider callback signature verification failed")
        return 401, {"success": False, "error": "Invalid signature"}

    body = _decode(raw_body)
    if body is None:
        return 400, {"success": False, "error": "Invalid JSON body"}

    result = tracker.handle_callback(body)
    return 200, result.to_dict()
