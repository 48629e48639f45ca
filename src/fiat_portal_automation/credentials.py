from __future__ import annotations

import logging
import threading
from typing import Optional


logger = logging.getLogger(__name__)


def mask_code(code: str) -> str:
    return f"{code[:2]}****{code[-2:]}" if len(code) >= 4 else "***"


class StepUpCodeStore:
    """
    Single-slot holder for the portal's step-up (2FA) code.

    Contract:
    - one external writer (an operator answering a LOGIN_2FA_REQUIRED notification); last write wins
    - one destructive reader (the login flow); a consumed code is gone even if the portal then rejects it

    A lock guards the slot because writers arrive on caller threads while the reader runs on the
    automation worker thread.
    """

    def __init__(self, initial_code: Optional[str] = None) -> None:
        self._lock = threading.Lock()
        self._code: Optional[str] = None
        if initial_code and initial_code.strip():
            self._code = initial_code.strip()

    def set_code(self, code: str) -> None:
        cleaned = (code or "").strip()
        with self._lock:
            self._code = cleaned or None
        if cleaned:
            logger.info("Step-up code updated (code=%s).", mask_code(cleaned))
        else:
            logger.info("Step-up code cleared.")

    def has_code(self) -> bool:
        with self._lock:
            return bool(self._code)

    def consume_code(self) -> Optional[str]:
        with self._lock:
            current = self._code
            self._code = None
        return current
