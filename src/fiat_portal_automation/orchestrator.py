from __future__ import annotations

import logging
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import timedelta
from decimal import Decimal
from functools import partial
from typing import Any, Callable, Optional, TypeVar, Union

from .config import AppConfig
from .credentials import StepUpCodeStore
from .errors import ErrorKind, classify
from .job_queue import JobQueue
from .models import AutomationTask, QrImage, TaskKind
from .notifier import WebhookNotifier
from .portal.session import BrowserSessionManager, Launcher
from .util.money import parse_amount


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Maps a generated QR to the reference sent in QR_GENERATED (e.g. a content-store URL).
ImagePublisher = Callable[[QrImage, str], str]


class AutomationOrchestrator:
    """
    Entry point for callers: schedules portal jobs on the single pipeline and reports their outcome.

    Each logical operation has one queued task and three call shapes over it:
    - `submit_*` returns the task's Future
    - `queue_*` is fire-and-forget (failures are logged)
    - `generate_qr` / `verify_payment` wait up to a deadline and return None on timeout

    The queued task itself sends the terminal notification, so exactly one event reaches the notifier per
    executed job no matter which call shape scheduled it or whether its caller stopped waiting.
    """

    def __init__(
        self,
        *,
        session: BrowserSessionManager,
        queue: JobQueue,
        notifier: WebhookNotifier,
        code_store: StepUpCodeStore,
        image_publisher: Optional[ImagePublisher] = None,
    ) -> None:
        self.session = session
        self.queue = queue
        self.notifier = notifier
        self.code_store = code_store
        self.image_publisher = image_publisher

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        launcher: Optional[Launcher] = None,
        image_publisher: Optional[ImagePublisher] = None,
    ) -> "AutomationOrchestrator":
        code_store = StepUpCodeStore(cfg.step_up.initial_code)
        session = BrowserSessionManager(
            cfg.portal,
            code_store=code_store,
            qr_output_dir=cfg.storage.qr_output_dir,
            debug_dir=cfg.storage.debug_dir,
            launcher=launcher,
        )
        queue = JobQueue(dedup_window=timedelta(hours=cfg.queue.dedup_window_hours))
        notifier = WebhookNotifier(cfg.notifier.base_url, timeout_seconds=cfg.notifier.timeout_seconds)
        return cls(
            session=session,
            queue=queue,
            notifier=notifier,
            code_store=code_store,
            image_publisher=image_publisher,
        )

    # ----- QR generation ---------------------------------------------------------------------------

    def submit_generate_qr(
        self,
        order_id: str,
        amount: Union[str, int, float, Decimal],
        details: str,
        *,
        deadline: Optional[float] = None,
    ) -> "Future[QrImage]":
        task = AutomationTask(
            kind=TaskKind.GENERATE_QR,
            order_id=order_id,
            details=details,
            amount=parse_amount(amount),
            deadline_seconds=deadline,
        )
        # Raises DuplicateJob synchronously; nothing is scheduled in that case.
        return self.queue.enqueue_exclusive(order_id, details, partial(self._run_generate_qr, task))

    def generate_qr(
        self,
        order_id: str,
        amount: Union[str, int, float, Decimal],
        details: str,
        deadline: Optional[float] = None,
    ) -> Optional[QrImage]:
        """
        Generate a QR and wait up to `deadline` seconds for it.

        Returns None when the deadline passes first; the job keeps running and still notifies.
        """
        future = self.submit_generate_qr(order_id, amount, details, deadline=deadline)
        return self._await_with_deadline(future, deadline, what=f"QR generation for order_id={order_id}")

    def queue_generate_qr(
        self, order_id: str, amount: Union[str, int, float, Decimal], details: str
    ) -> "Future[QrImage]":
        future = self.submit_generate_qr(order_id, amount, details)
        future.add_done_callback(partial(_log_async_failure, "QR generation job failed"))
        return future

    def _run_generate_qr(self, task: AutomationTask) -> QrImage:
        logger.info("Starting job (%s)", task.describe())
        try:
            qr = self.session.generate_qr(task.amount, task.details)
        except Exception as e:
            self._report_failure(task, e)
            raise

        reference = self._image_reference(qr, task)
        self._safe_notify("QR_GENERATED", self.notifier.send_qr_generated, task.order_id, reference)
        return qr

    def _image_reference(self, qr: QrImage, task: AutomationTask) -> str:
        if self.image_publisher is None:
            return qr.base64()
        try:
            return self.image_publisher(qr, task.details)
        except Exception as e:
            logger.warning("Image publisher failed for order_id=%s; sending inline image instead. (%s)", task.order_id, e)
            return qr.base64()

    # ----- payment verification --------------------------------------------------------------------

    def submit_verify_payment(self, order_id: str, details: str, *, deadline: Optional[float] = None) -> "Future[bool]":
        task = AutomationTask(
            kind=TaskKind.VERIFY_PAYMENT, order_id=order_id, details=details, deadline_seconds=deadline
        )
        return self.queue.enqueue(partial(self._run_verify_payment, task))

    def verify_payment(self, order_id: str, details: str, deadline: Optional[float] = None) -> Optional[bool]:
        future = self.submit_verify_payment(order_id, details, deadline=deadline)
        return self._await_with_deadline(future, deadline, what=f"payment verification for order_id={order_id}")

    def queue_verify_payment(self, order_id: str, details: str) -> "Future[bool]":
        future = self.submit_verify_payment(order_id, details)
        future.add_done_callback(partial(_log_async_failure, "Payment verification job failed"))
        return future

    def _run_verify_payment(self, task: AutomationTask) -> bool:
        logger.info("Starting job (%s)", task.describe())
        try:
            success = self.session.verify_payment(task.details)
        except Exception as e:
            self._report_failure(task, e)
            raise

        self._safe_notify("VERIFICATION_RESULT", self.notifier.send_verification_result, task.order_id, success)
        return success

    # ----- step-up administration ------------------------------------------------------------------

    def set_step_up_code(self, code: str) -> dict[str, str]:
        self.code_store.set_code(code)
        return {"status": "updated", "message": "Retry the job now"}

    def has_step_up_code(self) -> bool:
        return self.code_store.has_code()

    # ----- shared plumbing -------------------------------------------------------------------------

    def _await_with_deadline(self, future: "Future[T]", deadline: Optional[float], *, what: str) -> Optional[T]:
        timeout = None if deadline is None else max(0.0, float(deadline))
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            # The task itself may have raised TimeoutError; only a still-running task means our deadline hit.
            if future.done():
                return future.result()
            logger.warning("Deadline of %.3fs reached for %s; job continues in the background.", timeout, what)
            return None

    def _report_failure(self, task: AutomationTask, exc: BaseException) -> None:
        kind = classify(exc)
        if kind is ErrorKind.STEP_UP_REQUIRED:
            logger.warning("Portal requires a step-up code (%s): %s", task.describe(), exc)
            self._safe_notify("LOGIN_2FA_REQUIRED", self.notifier.send_step_up_required)
            return

        if kind is ErrorKind.SESSION_LAUNCH_FAILURE:
            logger.error("Browser could not be launched (%s); check the browser installation/config.", task.describe(), exc_info=exc)
        elif kind is ErrorKind.DUPLICATE_JOB:
            logger.error("Duplicate job reached the pipeline (%s).", task.describe(), exc_info=exc)
        else:
            logger.error("Portal automation failed (%s): %s", task.describe(), exc, exc_info=exc)

        self._safe_notify(
            "AUTOMATION_FAILED",
            self.notifier.send_automation_failed,
            task.order_id,
            error=str(exc),
            kind=kind,
        )

    def _safe_notify(self, event: str, send: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            send(*args, **kwargs)
        except Exception:
            logger.error("Notifier failed while sending %s.", event, exc_info=True)

    def close(self) -> None:
        # Playwright objects belong to the worker thread, so teardown is queued behind any running job.
        self.queue.enqueue(self.session.teardown)
        self.queue.shutdown(wait=True)


def _log_async_failure(context: str, future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("%s: %s", context, exc)
