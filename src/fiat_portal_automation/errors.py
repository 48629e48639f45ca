from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    DUPLICATE_JOB = "DUPLICATE_JOB"
    STEP_UP_REQUIRED = "STEP_UP_REQUIRED"
    AUTOMATION_FAILURE = "AUTOMATION_FAILURE"
    SESSION_LAUNCH_FAILURE = "SESSION_LAUNCH_FAILURE"


class AutomationError(RuntimeError):
    """
    Base class for every failure the automation reports on purpose.

    Subclasses carry a `kind` tag so callers at the orchestrator boundary can dispatch on it
    instead of chaining isinstance checks.
    """

    kind: ErrorKind = ErrorKind.AUTOMATION_FAILURE


class DuplicateJob(AutomationError):
    """
    Raised synchronously at enqueue time when an unexpired job already exists for the order id or memo.
    """

    kind = ErrorKind.DUPLICATE_JOB

    def __init__(self, key: str, secondary_key: str) -> None:
        self.key = key
        self.secondary_key = secondary_key
        super().__init__(
            f"A QR job is already in progress or generated for order {key!r} or memo {secondary_key!r}"
        )


class StepUpRequired(AutomationError):
    kind = ErrorKind.STEP_UP_REQUIRED

    def __init__(self, message: str = "A step-up (2FA) code is required to complete the portal login.") -> None:
        super().__init__(message)


class AutomationFailure(AutomationError):
    """
    Structural failure while driving the portal: an element never materialized, a navigation timed out,
    or the page ended up in a state we do not understand.
    """

    kind = ErrorKind.AUTOMATION_FAILURE

    def __init__(
        self,
        message: str,
        *,
        element: Optional[str] = None,
        selector: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        self.element = element
        self.selector = selector
        self.url = url

        context = []
        if element:
            context.append(f"element={element}")
        if selector:
            context.append(f"selector={selector!r}")
        if url:
            context.append(f"url={url}")
        full = f"{message} ({' '.join(context)})" if context else message
        super().__init__(full)


class SessionLaunchFailure(AutomationError):
    """
    The browser process could not be started. This is a configuration problem (missing executable,
    sandbox restrictions) rather than something a retry will fix.
    """

    kind = ErrorKind.SESSION_LAUNCH_FAILURE


def classify(exc: BaseException) -> ErrorKind:
    # Anything outside the taxonomy (Playwright errors, OSError, bugs) is reported as a generic failure.
    if isinstance(exc, AutomationError):
        return exc.kind
    return ErrorKind.AUTOMATION_FAILURE
