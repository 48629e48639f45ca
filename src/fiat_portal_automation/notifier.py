from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from .errors import ErrorKind
from .models import EventType, WebhookPayload


logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook/payments/result"


class WebhookNotifier:
    """
    Delivers automation outcomes to the backend over HTTP.

    Every send is best-effort: failures are logged and swallowed so that a flaky webhook endpoint
    never turns a finished browser job into a failed one.
    """

    def __init__(self, base_url: str = "", *, timeout_seconds: float = 10.0) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.timeout_seconds = timeout_seconds

    @property
    def url(self) -> str:
        return f"{self.base_url}{WEBHOOK_PATH}" if self.base_url else ""

    def send_qr_generated(self, order_id: str, image_reference: str) -> bool:
        return self.dispatch(
            WebhookPayload(
                type=EventType.QR_GENERATED,
                order_id=order_id,
                data={"qr_image_base64": image_reference},
            )
        )

    def send_verification_result(self, order_id: str, success: bool) -> bool:
        return self.dispatch(
            WebhookPayload(
                type=EventType.VERIFICATION_RESULT,
                order_id=order_id,
                data={"success": bool(success)},
            )
        )

    def send_step_up_required(self, message: str = "Bank is asking for Token/SMS code.") -> bool:
        return self.dispatch(
            WebhookPayload(
                type=EventType.LOGIN_2FA_REQUIRED,
                data={"message": message, "timestamp": datetime.now(timezone.utc).isoformat()},
            )
        )

    def send_automation_failed(self, order_id: Optional[str], *, error: str, kind: ErrorKind) -> bool:
        return self.dispatch(
            WebhookPayload(
                type=EventType.AUTOMATION_FAILED,
                order_id=order_id,
                data={"error": error, "kind": kind.value},
            )
        )

    def dispatch(self, payload: WebhookPayload) -> bool:
        if not self.url:
            logger.warning("Notifier base URL is not configured. Skipping payload %s.", payload.type.value)
            return False

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.post(self.url, json=payload.to_json_dict())
        except httpx.HTTPError as e:
            logger.error("Failed to send webhook (%s): %s", payload.type.value, e)
            return False

        if not (200 <= resp.status_code < 300):
            logger.error(
                "Webhook rejected (%s): status=%s body=%r",
                payload.type.value,
                resp.status_code,
                (resp.text or "")[:200],
            )
            return False

        logger.info("Webhook delivered (%s order_id=%s).", payload.type.value, payload.order_id or "-")
        return True
