"""Page driver contract and the Playwright adapter."""

from .driver import ContextInfo, DomWatcherConfig, DriverResult, PageDriver

__all__ = ["ContextInfo", "DomWatcherConfig", "DriverResult", "PageDriver"]
