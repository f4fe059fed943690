"""Execution contexts (browser tabs) opened for inspection jobs."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from itertools import count
from threading import Lock
from typing import Any, Callable, Protocol, TypeVar

from .config_loader import get_browser_config
from .log_config import get_logger

logger = get_logger("browser")

T = TypeVar("T")


class ExecutionContextOpener(Protocol):
    def open(self, url: str) -> str: ...

    def close(self, context_id: str) -> None: ...

    def is_closed(self, context_id: str) -> bool: ...

    def shutdown(self) -> None: ...


@dataclass(slots=True)
class BrowserSettings:
    headless: bool = True
    user_data_dir: str | None = None
    channel: str | None = None
    navigation_timeout_sec: float = 30.0


def load_browser_settings() -> BrowserSettings:
    try:
        cfg = get_browser_config()
    except Exception:
        cfg = {}

    headless = cfg.get("headless", True)
    user_data_dir = cfg.get("user_data_dir")
    channel = cfg.get("channel")
    nav_timeout = cfg.get("navigation_timeout_sec", 30.0)
    return BrowserSettings(
        headless=bool(headless),
        user_data_dir=str(user_data_dir) if isinstance(user_data_dir, str) and user_data_dir.strip() else None,
        channel=str(channel) if isinstance(channel, str) and channel.strip() else None,
        navigation_timeout_sec=float(nav_timeout) if isinstance(nav_timeout, (int, float)) and nav_timeout > 0 else 30.0,
    )


class PlaywrightContextOpener:
    """Open one page per job in a shared Chromium context.

    Playwright's sync API is bound to the thread that started it, so every
    call is funnelled through a single-worker executor.

    Chromium has no background-tab flag, so a headed browser brings each new
    page to the front. Runs are headless unless `browser.headless` is false.
    """

    def __init__(self, settings: BrowserSettings | None = None) -> None:
        self._settings = settings or load_browser_settings()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="subwatch-browser")
        self._lock = Lock()
        self._ids = count(1)
        self._playwright: Any = None
        self._browser: Any = None
        self._context: Any = None
        self._pages: dict[str, Any] = {}

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        return self._executor.submit(fn, *args).result()

    def _ensure_context(self) -> Any:
        if self._context is not None:
            return self._context
        try:
            from playwright.sync_api import sync_playwright
        except Exception as exc:  # pragma: no cover - dependency error guard
            raise RuntimeError("playwright is required to open execution contexts") from exc

        settings = self._settings
        self._playwright = sync_playwright().start()
        launch_kwargs: dict[str, Any] = {"headless": settings.headless}
        if settings.channel:
            launch_kwargs["channel"] = settings.channel
        if settings.user_data_dir:
            self._context = self._playwright.chromium.launch_persistent_context(settings.user_data_dir, **launch_kwargs)
        else:
            self._browser = self._playwright.chromium.launch(**launch_kwargs)
            self._context = self._browser.new_context()
        self._context.set_default_navigation_timeout(settings.navigation_timeout_sec * 1000)
        logger.info("Browser context ready (headless=%s, persistent=%s)", settings.headless, bool(settings.user_data_dir))
        return self._context

    def _open_sync(self, url: str) -> str:
        context = self._ensure_context()
        page = context.new_page()
        try:
            page.goto(url, wait_until="commit")
        except Exception:
            page.close()
            raise
        context_id = f"page_{next(self._ids)}"
        with self._lock:
            self._pages[context_id] = page
        return context_id

    def _close_sync(self, context_id: str) -> None:
        with self._lock:
            page = self._pages.pop(context_id, None)
        if page is not None and not page.is_closed():
            page.close()

    def _is_closed_sync(self, context_id: str) -> bool:
        with self._lock:
            page = self._pages.get(context_id)
        return page is None or page.is_closed()

    def _shutdown_sync(self) -> None:
        with self._lock:
            pages = list(self._pages.values())
            self._pages.clear()
        for page in pages:
            try:
                page.close()
            except Exception:
                logger.debug("Ignoring page close error during shutdown", exc_info=True)
        if self._context is not None:
            self._context.close()
        if self._browser is not None:
            self._browser.close()
        if self._playwright is not None:
            self._playwright.stop()
        self._context = None
        self._browser = None
        self._playwright = None

    def open(self, url: str) -> str:
        return self._call(self._open_sync, url)

    def close(self, context_id: str) -> None:
        self._call(self._close_sync, context_id)

    def is_closed(self, context_id: str) -> bool:
        return self._call(self._is_closed_sync, context_id)

    def shutdown(self) -> None:
        try:
            self._call(self._shutdown_sync)
        finally:
            self._executor.shutdown(wait=False)
