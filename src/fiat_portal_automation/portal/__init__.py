from .selectors import PortalSelectors
from .session import BrowserSessionManager, launch_chromium, memo_matches

__all__ = ["BrowserSessionManager", "PortalSelectors", "launch_chromium", "memo_matches"]
