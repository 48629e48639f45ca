"""
In-memory stand-ins for the slice of Playwright's sync API the session manager touches.

A FakePage is driven by sets of "visible" / "attached" selectors plus optional click handlers that mutate
those sets, which is enough to script login, step-up, QR and receipt flows without a browser.
"""
from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    @property
    def last(self) -> "FakeLocator":
        return self

    def locator(self, selector: str) -> "FakeLocator":
        return FakeLocator(self.page, selector)

    def wait_for(self, state: str = "visible", timeout: Optional[float] = None) -> None:
        self.page.waits.append((self.selector, state, timeout))
        present = self.selector in self.page.visible
        if state == "attached":
            present = present or self.selector in self.page.attached
        if not present:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {self.selector}")

    def fill(self, value: str, timeout: Optional[float] = None) -> None:
        self.page.fills.append((self.selector, value))

    def click(self, timeout: Optional[float] = None) -> None:
        err = self.page.click_errors.get(self.selector)
        if err is not None:
            raise err
        self.page.clicks.append(self.selector)
        handler = self.page.on_click.get(self.selector)
        if handler is not None:
            handler(self.page)

    def check(self, force: bool = False, timeout: Optional[float] = None) -> None:
        self.page.checks.append(self.selector)

    def inner_text(self, timeout: Optional[float] = None) -> str:
        return self.page.texts.get(self.selector, "")


class FakeDownload:
    def __init__(self, path: Optional[str]) -> None:
        self._path = path
        self.suggested_filename = "QR.png"

    def path(self) -> Optional[str]:
        return self._path


class FakeDownloadContext:
    def __init__(self, page: "FakePage") -> None:
        self.page = page

    def __enter__(self) -> "FakeDownloadContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None and self.page.download_path is None:
            raise PlaywrightTimeoutError("Timeout exceeded while waiting for event 'download'")
        return False

    @property
    def value(self) -> FakeDownload:
        return FakeDownload(self.page.download_path)


class FakePage:
    def __init__(self, visible: Iterable[str] = (), attached: Iterable[str] = ()) -> None:
        self.visible: set[str] = set(visible)
        self.attached: set[str] = set(attached)
        self.url = "about:blank"
        self.closed = False
        self.default_timeout: Optional[float] = None
        self.goto_error: Optional[Exception] = None
        self.download_path: Optional[str] = None
        self.texts: dict[str, str] = {}
        self.on_click: dict[str, Callable[["FakePage"], None]] = {}
        self.click_errors: dict[str, Exception] = {}

        self.gotos: list[tuple[str, Optional[str]]] = []
        self.fills: list[tuple[str, str]] = []
        self.clicks: list[str] = []
        self.checks: list[str] = []
        self.waits: list[tuple[str, str, Optional[float]]] = []

    def is_closed(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> None:
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url
        self.gotos.append((url, wait_until))

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def wait_for_load_state(self, state: Optional[str] = None, timeout: Optional[float] = None) -> None:
        return None

    def wait_for_function(self, expression: str, arg=None, timeout: Optional[float] = None) -> None:
        return None

    def wait_for_url(self, url, timeout: Optional[float] = None) -> None:
        return None

    def expect_download(self, timeout: Optional[float] = None) -> FakeDownloadContext:
        return FakeDownloadContext(self)

    def title(self) -> str:
        return "Econet"

    def screenshot(self, path: Optional[str] = None, full_page: bool = False) -> None:
        if path:
            Path(path).write_bytes(b"png")

    def content(self) -> str:
        return "<html><body></body></html>"

    def inner_text(self, selector: str) -> str:
        return ""


class FakeContext:
    def __init__(self, launcher: "FakeLauncher") -> None:
        self.launcher = launcher
        self.closed = False

    def new_page(self) -> FakePage:
        if self.launcher.new_page_failures > 0:
            self.launcher.new_page_failures -= 1
            raise PlaywrightError("Target page, context or browser has been closed")
        page = self.launcher.page_factory()
        self.launcher.pages.append(page)
        return page

    def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self) -> None:
        self.connected = True
        self.closed = False

    def is_connected(self) -> bool:
        return self.connected

    def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeDriver:
    def __init__(self) -> None:
        self.stopped = 0

    def stop(self) -> None:
        self.stopped += 1


class FakeLauncher:
    def __init__(
        self,
        page_factory: Callable[[], FakePage],
        *,
        new_page_failures: int = 0,
        launch_error: Optional[Exception] = None,
        launch_delay: float = 0.0,
    ) -> None:
        self.page_factory = page_factory
        self.new_page_failures = new_page_failures
        self.launch_error = launch_error
        self.launch_delay = launch_delay
        self.calls = 0
        self.pages: list[FakePage] = []
        self.sessions: list[tuple[FakeDriver, FakeBrowser, FakeContext]] = []
        self._lock = threading.Lock()

    def __call__(self, cfg) -> tuple[FakeDriver, FakeBrowser, FakeContext]:
        with self._lock:
            self.calls += 1
        if self.launch_delay:
            time.sleep(self.launch_delay)
        if self.launch_error is not None:
            raise self.launch_error
        session = (FakeDriver(), FakeBrowser(), FakeContext(self))
        self.sessions.append(session)
        return session
