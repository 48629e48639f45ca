from .credentials import StepUpCodeStore
from .errors import AutomationFailure, DuplicateJob, SessionLaunchFailure, StepUpRequired
from .job_queue import JobQueue
from .notifier import WebhookNotifier
from .orchestrator import AutomationOrchestrator

__all__ = [
    "AutomationFailure",
    "AutomationOrchestrator",
    "DuplicateJob",
    "JobQueue",
    "SessionLaunchFailure",
    "StepUpCodeStore",
    "StepUpRequired",
    "WebhookNotifier",
]
