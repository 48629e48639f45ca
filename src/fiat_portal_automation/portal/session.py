from __future__ import annotations

import logging
import re
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import Locator, Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from ..config import PortalConfig
from ..credentials import StepUpCodeStore, mask_code
from ..errors import AutomationError, AutomationFailure, SessionLaunchFailure, StepUpRequired
from ..models import QrImage, SessionState
from ..util.files import persist_qr_copy
from ..util.money import format_amount
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)

T = TypeVar("T")

# (playwright driver, browser, context)
Launcher = Callable[[PortalConfig], tuple[Any, Any, Any]]

ELEMENT_TIMEOUT_MS = 15_000
MEMO_ROW_TIMEOUT_MS = 10_000
QR_FORM_PROBE_MS = 5_000
DIALOG_PROBE_MS = 1_000
DOWNLOAD_TIMEOUT_MS = 30_000


def launch_chromium(cfg: PortalConfig) -> tuple[Any, Any, Any]:
    """
    Start Playwright + Chromium. Prefers an explicit executable, then the bundled Chromium, then the
    system Chrome channel when the bundled browser was never installed.
    """
    pw = sync_playwright().start()
    try:
        launch_kwargs: dict = {"headless": cfg.headless}
        if cfg.executable_path:
            browser = pw.chromium.launch(executable_path=cfg.executable_path, chromium_sandbox=False, **launch_kwargs)
        else:
            try:
                browser = pw.chromium.launch(**launch_kwargs)
            except PlaywrightError as e:
                if "Executable doesn't exist" not in str(e):
                    raise
                logger.warning(
                    "Playwright Chromium executable missing; falling back to system Chrome channel. (%s)", e
                )
                browser = pw.chromium.launch(channel="chrome", **launch_kwargs)
        context = browser.new_context(accept_downloads=True)
    except Exception:
        pw.stop()
        raise
    return pw, browser, context


def memo_matches(memo: str, details: str, *, prefix: str = "") -> bool:
    memo = (memo or "").strip()
    if not details or details not in memo:
        return False
    return not prefix or prefix in memo


class BrowserSessionManager:
    """
    Owns the single live browser session for the banking portal.

    State machine: NO_SESSION -> LAUNCHING -> READY, and READY -> BROKEN on an unrecoverable page error.
    A BROKEN session is torn down completely before the next launch; it is never partially reused.

    The page handle never leaves this class. Callers only see `state` and the high-level operations,
    and every operation is expected to run on the job queue's worker thread.
    """

    def __init__(
        self,
        portal: PortalConfig,
        *,
        code_store: StepUpCodeStore,
        selectors: Optional[PortalSelectors] = None,
        qr_output_dir: str = "data/qr",
        debug_dir: str = "data/debug",
        launcher: Optional[Launcher] = None,
    ) -> None:
        self.portal = portal
        self.code_store = code_store
        self.selectors = selectors or PortalSelectors()
        self.qr_output_dir = qr_output_dir
        self.debug_dir = debug_dir
        self._launcher = launcher or launch_chromium

        self._state = SessionState.NO_SESSION
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._page: Optional[Page] = None
        self._session_lock = threading.RLock()
        self.launch_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    # ----- lifecycle -------------------------------------------------------------------------------

    def ensure_page(self) -> SessionState:
        self._open_page()
        return self._state

    def ensure_session(self) -> SessionState:
        self._run_guarded("ensure_session", lambda page: None)
        return self._state

    def teardown(self) -> None:
        with self._session_lock:
            ctx, browser, pw = self._context, self._browser, self._playwright
            had_session = any(x is not None for x in (ctx, browser, pw))
            self._page = None
            self._context = None
            self._browser = None
            self._playwright = None
            self._state = SessionState.NO_SESSION

            for label, obj, method in (("context", ctx, "close"), ("browser", browser, "close"), ("driver", pw, "stop")):
                if obj is None:
                    continue
                try:
                    getattr(obj, method)()
                except Exception:
                    logger.debug("Failed to close %s during teardown.", label, exc_info=True)

            if had_session:
                logger.info("Browser session torn down.")

    def _is_browser_active(self) -> bool:
        if self._browser is None or self._context is None:
            return False
        try:
            return bool(self._browser.is_connected())
        except Exception:
            return False

    def _ensure_browser(self) -> None:
        with self._session_lock:
            if self._state is SessionState.BROKEN:
                logger.info("Discarding broken browser session before relaunch.")
                self.teardown()
            if self._is_browser_active():
                return
            if any(x is not None for x in (self._context, self._browser, self._playwright)):
                # Disconnected browser: drop whatever is left before launching again.
                self.teardown()

            self._state = SessionState.LAUNCHING
            logger.info("Launching new headless browser instance.")
            try:
                pw, browser, context = self._launcher(self.portal)
            except Exception as e:
                self.teardown()
                logger.error("Failed to launch Chromium: %s", e)
                raise SessionLaunchFailure(
                    "Could not start the browser. Run `playwright install chromium` or set CHROME_EXECUTABLE_PATH."
                ) from e

            self._playwright, self._browser, self._context = pw, browser, context
            self.launch_count += 1
            logger.info("Browser session ready (launch #%d).", self.launch_count)

    def _open_page(self) -> Page:
        with self._session_lock:
            page = self._page
            if page is not None and self._state is SessionState.READY and not page.is_closed():
                return page

            self._ensure_browser()
            try:
                page = self._context.new_page()
            except Exception as e:
                logger.warning("Relaunching browser after failing to open a page: %s", e)
                self.teardown()
                self._ensure_browser()
                try:
                    page = self._context.new_page()
                except Exception as e2:
                    self.teardown()
                    raise AutomationFailure("Could not open a browser page after relaunching") from e2

            page.set_default_timeout(self.portal.default_timeout_ms)
            self._page = page
            self._state = SessionState.READY
            return page

    def _ensure_session_page(self) -> Page:
        page = self._open_page()
        self._navigate(page, self.portal.index_url)
        login_visible = self._is_visible(page.locator(self.selectors.login_logo))
        self._dismiss_announcement_if_present(page)
        if login_visible:
            self._run_login_flow(page)
        return page

    def _mark_broken(self, action: str, exc: BaseException) -> None:
        self._state = SessionState.BROKEN
        logger.warning("Browser session marked broken during %s: %s", action, exc)

    def _run_guarded(self, action: str, fn: Callable[[Page], T]) -> T:
        page: Optional[Page] = None
        try:
            page = self._ensure_session_page()
            return fn(page)
        except AutomationError:
            raise
        except PlaywrightTimeoutError as e:
            url = self._safe_url(page)
            self._save_debug(page, name_prefix=f"{action}_timeout")
            raise AutomationFailure(f"Timed out during {action}: {e}", url=url) from e
        except PlaywrightError as e:
            url = self._safe_url(page)
            self._mark_broken(action, e)
            raise AutomationFailure(f"Browser error during {action}: {e}", url=url) from e

    # ----- operations ------------------------------------------------------------------------------

    def generate_qr(self, amount: Decimal, details: str) -> QrImage:
        return self._run_guarded("generate_qr", lambda page: self._generate_qr(page, amount, details))

    def verify_payment(self, details: str) -> bool:
        return self._run_guarded("verify_payment", lambda page: self._verify_payment(page, details))

    def _generate_qr(self, page: Page, amount: Decimal, details: str) -> QrImage:
        sel = self.selectors
        self._dismiss_announcement_if_present(page)
        self._open_generate_qr_page(page)
        self._log_page_info(page, "Generate QR")

        self._wait_visible(page, sel.qr_origin_account, name="origin account")
        self._wait_visible(page, sel.qr_destination_account, name="destination account")

        self._fill(page, sel.qr_details_input, details, name="memo input")
        self._fill(page, sel.qr_amount_input, format_amount(amount), name="amount input")
        logger.debug("Filled QR form with details=%r amount=%s.", details, amount)

        # The single-use checkbox is styled over; it is attached but not always "visible".
        self._interact(
            page,
            sel.qr_single_use_checkbox,
            name="single-use checkbox",
            state="attached",
            action=lambda loc: loc.check(force=True, timeout=ELEMENT_TIMEOUT_MS),
        )
        self._click(page, sel.qr_generate_button, name="generate button")
        self._wait_visible(page, sel.qr_download_link, name="QR download link")

        try:
            with page.expect_download(timeout=DOWNLOAD_TIMEOUT_MS) as download_info:
                self._click(page, sel.qr_download_link, name="QR download link")
            download = download_info.value
        except PlaywrightTimeoutError as e:
            self._save_debug(page, name_prefix="qr_download_timeout")
            raise AutomationFailure(
                "QR download did not start",
                element="QR download",
                selector=sel.qr_download_link,
                url=self._safe_url(page),
            ) from e

        data = self._read_download(download, page=page)
        saved = persist_qr_copy(data, out_dir=self.qr_output_dir, details=details)
        return QrImage(
            data=data,
            filename=getattr(download, "suggested_filename", None) or "QR.png",
            saved_path=str(saved) if saved else None,
        )

    def _verify_payment(self, page: Page, details: str) -> bool:
        sel = self.selectors
        self._dismiss_announcement_if_present(page)
        self._navigate(page, self.portal.index_url)

        self._click(page, sel.last_movement_button, name="latest movement")
        self._wait_visible(page, sel.receipt_panel, name="receipt panel")

        memo_row = page.locator(sel.receipt_panel).locator(sel.receipt_memo_row)
        self._wait_visible(
            page,
            sel.receipt_memo_row,
            name="receipt memo row",
            timeout_ms=MEMO_ROW_TIMEOUT_MS,
            locator=memo_row,
        )
        memo = (memo_row.locator("td").last.inner_text(timeout=MEMO_ROW_TIMEOUT_MS) or "").strip()

        matched = memo_matches(memo, details, prefix=self.portal.memo_prefix)
        if matched:
            logger.info("Payment verified for details=%r. Memo=%r.", details, memo)
        else:
            logger.warning("Payment not found for details=%r. Latest memo=%r.", details, memo)
        return matched

    def _read_download(self, download: Any, *, page: Page) -> bytes:
        raw_path = download.path()
        if not raw_path:
            raise AutomationFailure("Unable to read QR download stream.", element="QR download", url=self._safe_url(page))
        data = Path(raw_path).read_bytes()
        if not data:
            raise AutomationFailure("QR download was empty.", element="QR download", url=self._safe_url(page))
        return data

    def _open_generate_qr_page(self, page: Page) -> None:
        sel = self.selectors
        self._navigate(page, self.portal.generate_qr_url)
        if self._is_visible(page.locator(sel.qr_details_input), timeout_ms=QR_FORM_PROBE_MS):
            return

        logger.warning("QR form not visible after direct navigation. Trying guided navigation.")
        self._navigate(page, self.portal.index_url)
        if not self._click_if_visible(page.locator(sel.simple_qr_menu), "Simple QR menu"):
            self._click_if_visible(page.locator(sel.simple_qr_text_fallback), "Simple QR text fallback")
        self._click_if_visible(page.locator(sel.goto_generate_qr_button), "Go to Generate QR button")

        try:
            page.wait_for_url(sel.generate_qr_url_glob, timeout=ELEMENT_TIMEOUT_MS)
        except PlaywrightTimeoutError as e:
            # The form assertions that follow raise with the exact element that is missing.
            logger.warning("Timed out waiting for QR generator URL: %s", e)

    # ----- login -----------------------------------------------------------------------------------

    def _run_login_flow(self, page: Page) -> None:
        sel = self.selectors
        try:
            self.portal.require_credentials()
        except ValueError as e:
            raise AutomationFailure(str(e), element="login form", url=self._safe_url(page)) from e

        logger.info("Executing portal login flow.")
        self._fill(page, sel.username_input, self.portal.username, name="username input")
        self._fill(page, sel.password_input, self.portal.password, name="password input")
        self._click(page, sel.login_button, name="login button")
        self._wait_for_network_idle(page)

        self._handle_step_up(page)
        self._dismiss_modals_if_present(page)
        self._dismiss_announcement_if_present(page)

    def _handle_step_up(self, page: Page) -> None:
        sel = self.selectors
        if not self._is_visible(page.locator(sel.step_up_input), timeout_ms=self.portal.step_up_wait_ms):
            return

        code = self.code_store.consume_code()
        if not code:
            logger.warning("Portal is asking for a step-up code and none is stored.")
            raise StepUpRequired()

        self._fill(page, sel.step_up_input, code, name="step-up input")
        self._click(page, sel.step_up_continue_button, name="step-up continue button")
        self._wait_for_network_idle(page)

        if self._is_visible(page.locator(sel.step_up_input), timeout_ms=500):
            self._save_debug(page, name_prefix="step_up_rejected")
            raise StepUpRequired("The portal rejected the step-up code; a fresh code is required.")

        logger.info("Step-up code submitted successfully (code=%s).", mask_code(code))

    # ----- incidental dialogs ----------------------------------------------------------------------

    def _dismiss_modals_if_present(self, page: Page) -> None:
        sel = self.selectors
        for modal, accept in (
            (sel.message_modal, sel.message_modal_accept),
            (sel.decision_modal, sel.decision_modal_accept),
        ):
            if not self._is_visible(page.locator(modal), timeout_ms=DIALOG_PROBE_MS):
                continue
            try:
                page.locator(accept).click(timeout=5_000)
                page.wait_for_load_state("networkidle", timeout=self.portal.default_timeout_ms)
            except PlaywrightError as e:
                logger.warning("Failed to dismiss dialog %s: %s", modal, e)

    def _dismiss_announcement_if_present(self, page: Page) -> None:
        sel = self.selectors
        if not self._is_visible(page.locator(sel.announcement_modal), timeout_ms=DIALOG_PROBE_MS):
            return

        logger.debug("Closing announcement modal before continuing.")
        try:
            page.locator(sel.announcement_close_icon).click(timeout=5_000)
        except PlaywrightError as e:
            logger.warning("Failed to click announcement modal close icon: %s", e)
            return

        try:
            page.wait_for_function(
                "(selector) => document.querySelector(selector)?.getAttribute('hidden') === 'true'",
                arg=sel.announcement_modal,
                timeout=5_000,
            )
            logger.debug("Announcement modal hidden attribute confirmed.")
        except PlaywrightError:
            logger.warning('Announcement modal did not expose hidden="true" after closing attempt.')

    # ----- element helpers -------------------------------------------------------------------------

    def _navigate(self, page: Page, url: str) -> None:
        logger.debug("Navigating to %s", url)
        try:
            page.goto(url, wait_until="networkidle", timeout=self.portal.default_timeout_ms)
        except PlaywrightTimeoutError as e:
            self._save_debug(page, name_prefix="navigation_timeout")
            raise AutomationFailure("Navigation did not reach network idle in time", element="navigation", url=url) from e
        self._log_page_info(page, f"After navigation to {url}")

    def _wait_for_network_idle(self, page: Page) -> None:
        try:
            page.wait_for_load_state("networkidle", timeout=self.portal.default_timeout_ms)
        except PlaywrightTimeoutError as e:
            self._save_debug(page, name_prefix="network_idle_timeout")
            raise AutomationFailure(
                "Page did not reach network idle in time", element="network idle", url=self._safe_url(page)
            ) from e

    def _interact(
        self,
        page: Page,
        selector: str,
        *,
        name: str,
        action: Optional[Callable[[Locator], Any]] = None,
        state: str = "visible",
        timeout_ms: int = ELEMENT_TIMEOUT_MS,
        locator: Optional[Locator] = None,
    ) -> None:
        loc = locator if locator is not None else page.locator(selector)
        try:
            loc.wait_for(state=state, timeout=timeout_ms)
            if action is not None:
                action(loc)
        except PlaywrightTimeoutError as e:
            safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name).strip("_") or "element"
            self._save_debug(page, name_prefix=f"missing_{safe}")
            raise AutomationFailure(
                f"{name} was not ready within {timeout_ms}ms",
                element=name,
                selector=selector,
                url=self._safe_url(page),
            ) from e

    def _wait_visible(
        self,
        page: Page,
        selector: str,
        *,
        name: str,
        timeout_ms: int = ELEMENT_TIMEOUT_MS,
        locator: Optional[Locator] = None,
    ) -> None:
        self._interact(page, selector, name=name, timeout_ms=timeout_ms, locator=locator)

    def _fill(self, page: Page, selector: str, value: str, *, name: str) -> None:
        self._interact(page, selector, name=name, action=lambda loc: loc.fill(value, timeout=ELEMENT_TIMEOUT_MS))

    def _click(self, page: Page, selector: str, *, name: str) -> None:
        self._interact(page, selector, name=name, action=lambda loc: loc.click(timeout=ELEMENT_TIMEOUT_MS))

    def _is_visible(self, locator: Locator, *, timeout_ms: int = 1_500) -> bool:
        try:
            locator.wait_for(state="visible", timeout=timeout_ms)
            return True
        except PlaywrightError:
            return False

    def _click_if_visible(self, locator: Locator, description: str, *, timeout_ms: int = 5_000) -> bool:
        try:
            locator.wait_for(state="visible", timeout=timeout_ms)
            locator.click(timeout=timeout_ms)
            logger.debug("Clicked %s.", description)
            return True
        except PlaywrightError as e:
            logger.debug("Unable to click %s: %s", description, e)
            return False

    # ----- diagnostics -----------------------------------------------------------------------------

    def _safe_url(self, page: Optional[Page]) -> Optional[str]:
        if page is None:
            return None
        try:
            return page.url
        except Exception:
            return None

    def _log_page_info(self, page: Page, context: str) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        try:
            logger.debug("[%s] URL=%s | Title=%s", context, page.url, page.title())
        except Exception as e:
            logger.debug("[%s] Unable to retrieve page info: %s", context, e)

    def _save_debug(self, page: Optional[Page], *, name_prefix: str) -> None:
        if page is None:
            return
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(page.content(), encoding="utf-8")
            # Rendered body text so failures can be inspected without a browser.
            try:
                (out_dir / f"{name_prefix}.txt").write_text(page.inner_text("body"), encoding="utf-8")
            except Exception:
                pass
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)
