from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class JobRecord:
    business_key: str
    secondary_key: str
    registered_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    LAUNCHING = "launching"
    READY = "ready"
    BROKEN = "broken"


class TaskKind(str, Enum):
    GENERATE_QR = "generate_qr"
    VERIFY_PAYMENT = "verify_payment"


@dataclass(frozen=True)
class AutomationTask:
    kind: TaskKind
    order_id: str
    details: str
    amount: Optional[Decimal] = None
    deadline_seconds: Optional[float] = None

    def describe(self) -> str:
        parts = [f"kind={self.kind.value}", f"order_id={self.order_id}", f"details={self.details}"]
        if self.amount is not None:
            parts.append(f"amount={self.amount}")
        if self.deadline_seconds is not None:
            # Caller-side wait only; the job itself always runs to completion.
            parts.append(f"deadline={self.deadline_seconds:g}s")
        return " ".join(parts)


@dataclass
class QrImage:
    data: bytes
    filename: str = "QR.png"
    saved_path: Optional[str] = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class EventType(str, Enum):
    QR_GENERATED = "QR_GENERATED"
    VERIFICATION_RESULT = "VERIFICATION_RESULT"
    LOGIN_2FA_REQUIRED = "LOGIN_2FA_REQUIRED"
    AUTOMATION_FAILED = "AUTOMATION_FAILED"


class WebhookPayload(BaseModel):
    type: EventType
    order_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
