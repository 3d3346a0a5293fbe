from __future__ import annotations

import json
import logging
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright

from ..config import DashboardConfig
from ..errors import DashboardNotOpenError
from .selectors import DashboardSelectors


logger = logging.getLogger(__name__)

# Installed browsers tried, in order, when Playwright has not downloaded its own Chromium.
BROWSER_CHANNELS = ("chrome", "msedge")


def url_looks_like_login(url: str, pattern: str) -> bool:
    return bool(re.search(pattern, url or ""))


class DashboardClient:
    """
    Long-lived Playwright session against the investment dashboard.

    Login is left to the user (headful browser); this class only navigates and reads pages. It is the
    `Navigator` the extraction walk drives. Playwright's sync API is bound to the thread that started it,
    so every call on an instance must come from that one thread.
    """

    def __init__(
        self,
        *,
        dashboard: DashboardConfig,
        selectors: Optional[DashboardSelectors] = None,
        storage_state_path: str = "data/dashboard_storage_state.json",
        debug_dir: str = "data/debug",
        page_load_ms: int = 15_000,
    ) -> None:
        self.dashboard = dashboard
        self.selectors = selectors or DashboardSelectors()
        self.storage_state_path = Path(storage_state_path) if storage_state_path else None
        self.debug_dir = debug_dir
        self.page_load_ms = int(page_load_ms)

        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._ctx: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_started(self) -> bool:
        return self._ctx is not None

    def start(self, *, headless: bool = False, slow_mo_ms: int = 0, force_fresh_session: bool = False) -> None:
        if self.is_started:
            return

        self._pw = sync_playwright().start()
        try:
            self._browser = self._launch(self._pw, headless=headless, slow_mo=int(slow_mo_ms or 0))
        except Exception:
            self._stop_playwright()
            raise

        state_path = self.storage_state_path
        use_storage = bool(state_path is not None and state_path.exists() and not force_fresh_session)
        if use_storage and state_path is not None:
            use_storage = self._validate_or_restore_storage_state(state_path)

        ctx_kwargs: dict[str, Any] = {"color_scheme": "light"}
        if use_storage:
            ctx_kwargs["storage_state"] = str(state_path)
        try:
            self._ctx = self._browser.new_context(**ctx_kwargs)
        except Exception as e:
            if not use_storage or state_path is None:
                raise
            logger.warning("Stored dashboard session rejected by the browser; starting logged out (%s)", e)
            self._quarantine_file(state_path, prefix="storage_state")
            ctx_kwargs.pop("storage_state", None)
            self._ctx = self._browser.new_context(**ctx_kwargs)

        self._ctx.set_default_navigation_timeout(self.page_load_ms)
        logger.info("Browser started (headless=%s stored_session=%s)", headless, use_storage)

    @staticmethod
    def _launch(pw: Playwright, *, headless: bool, slow_mo: int) -> Browser:
        chromium = pw.chromium
        try:
            return chromium.launch(headless=headless, slow_mo=slow_mo)
        except Exception as e:
            if "Executable doesn't exist" not in str(e):
                raise
        for channel in BROWSER_CHANNELS[:-1]:
            try:
                logger.warning("Bundled Chromium not installed; trying the %s channel", channel)
                return chromium.launch(headless=headless, slow_mo=slow_mo, channel=channel)
            except Exception:
                logger.debug("Browser channel %s failed to launch", channel, exc_info=True)
        logger.warning("Trying the %s channel", BROWSER_CHANNELS[-1])
        return chromium.launch(headless=headless, slow_mo=slow_mo, channel=BROWSER_CHANNELS[-1])

    def close(self) -> None:
        if self._ctx is not None:
            self.persist_session()
            try:
                self._ctx.close()
            except Exception:
                logger.debug("Failed to close browser context.", exc_info=True)
        if self._browser is not None:
            try:
                self._browser.close()
            except Exception:
                logger.debug("Failed to close browser.", exc_info=True)
        self._ctx = None
        self._browser = None
        self._page = None
        self._stop_playwright()

    def _stop_playwright(self) -> None:
        if self._pw is not None:
            try:
                self._pw.stop()
            except Exception:
                logger.debug("Failed to stop Playwright.", exc_info=True)
        self._pw = None

    # ------------------------------------------------------------------
    # Dashboard tab
    # ------------------------------------------------------------------

    def _is_dashboard_url(self, url: str) -> bool:
        return (urlparse(url or "").netloc or "").lower() == self.dashboard.host

    def _find_dashboard_page(self) -> Optional[Page]:
        if self._ctx is None:
            return None
        if self._page is not None and not self._page.is_closed() and self._is_dashboard_url(self._page.url):
            return self._page
        for page in self._ctx.pages:
            if not page.is_closed() and self._is_dashboard_url(page.url):
                return page
        return None

    def _require_page(self) -> Page:
        page = self._find_dashboard_page() or self._page
        if page is None or page.is_closed():
            raise DashboardNotOpenError()
        return page

    def open_dashboard(self) -> None:
        """
        Focus an existing dashboard tab, or open one.
        """
        if self._ctx is None:
            raise RuntimeError("Browser not started")

        existing = self._find_dashboard_page()
        if existing is not None:
            self._page = existing
            existing.bring_to_front()
            logger.info("Focused existing dashboard tab (url=%s)", existing.url)
            return

        self._page = self._ctx.new_page()
        self.navigate(self.dashboard.base_url + "/")

    def is_open(self) -> bool:
        try:
            return self._find_dashboard_page() is not None
        except Exception:
            return False

    def looks_logged_in(self) -> bool:
        """
        Any dashboard URL that is not the login page counts as an authenticated session.
        """
        page = self._require_page()
        url = page.url or ""
        if not url:
            return False
        return not url_looks_like_login(url, self.dashboard.login_url_pattern)

    def wait_for_manual_login(self, *, timeout_s: float, poll_ms: int = 1_000) -> bool:
        """
        Poll until the user has logged in by hand in the open browser window.
        """
        deadline = time.time() + float(timeout_s)
        while True:
            if self.looks_logged_in():
                self.persist_session()
                return True
            if time.time() >= deadline:
                return False
            self._require_page().wait_for_timeout(poll_ms)

    def persist_session(self) -> None:
        """
        Save cookies/localStorage so the next run can skip the manual login (best-effort).
        """
        state_path = self.storage_state_path
        if self._ctx is None or state_path is None:
            return
        try:
            state_path.parent.mkdir(parents=True, exist_ok=True)
            self._ctx.storage_state(path=str(state_path))
            self._backup_storage_state(state_path)
        except Exception:
            logger.debug("Failed to persist browser session.", exc_info=True)

    # ------------------------------------------------------------------
    # Navigator
    # ------------------------------------------------------------------

    @property
    def current_url(self) -> str:
        try:
            return self._require_page().url or ""
        except DashboardNotOpenError:
            return ""

    def navigate(self, url: str) -> None:
        """
        Full browser navigation; returns once the new document has loaded.
        """
        if self._page is None or self._page.is_closed():
            if self._ctx is None:
                raise RuntimeError("Browser not started")
            self._page = self._ctx.new_page()
        page = self._page
        logger.debug("Navigating to %s", url)
        page.goto(url, wait_until="domcontentloaded", timeout=self.page_load_ms)
        try:
            page.wait_for_load_state("load", timeout=self.page_load_ms)
        except Exception:
            logger.info("Page load did not complete within %dms; continuing anyway (url=%s)", self.page_load_ms, url)

    def wait_for_selector(self, selector: str, *, timeout_ms: int) -> bool:
        """
        Wait for `selector` to appear. Gives up (returns False) instead of raising on timeout.
        """
        try:
            self._require_page().wait_for_selector(selector, state="attached", timeout=timeout_ms)
            return True
        except Exception:
            logger.debug("Element %s not found within %dms", selector, timeout_ms)
            return False

    def settle(self, delay_ms: int) -> None:
        if delay_ms > 0:
            self._require_page().wait_for_timeout(delay_ms)

    def widen_page_size(self, *, timeout_ms: int) -> bool:
        """
        Pick the largest numeric option of the list page's page-size <select> so every row shows at once.

        Best-effort: returns False instead of raising when there is nothing to change.
        """
        page = self._require_page()
        selector = self.selectors.page_size_select
        if not self.wait_for_selector(selector, timeout_ms=timeout_ms):
            return False
        try:
            sel = page.locator(selector).first
            values: list[str] = sel.evaluate("(el) => Array.from(el.options).map((o) => o.value)")
            numeric = [(int(v), v) for v in values if (v or "").strip().lstrip("-").isdigit()]
            if not numeric:
                return False
            _, best = max(numeric)
            if sel.input_value() == best:
                return True
            sel.select_option(value=best)
            try:
                page.wait_for_load_state("domcontentloaded", timeout=self.page_load_ms)
            except Exception:
                pass
            logger.info("Set list page size to %s", best)
            return True
        except Exception as e:
            logger.warning("Could not set page size: %s", e)
            return False

    def content(self) -> str:
        return self._require_page().content()

    def save_debug(self, name_prefix: str) -> None:
        try:
            page = self._require_page()
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(page.content(), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    # ------------------------------------------------------------------
    # Stored session file
    # ------------------------------------------------------------------

    @staticmethod
    def _looks_like_storage_state(path: Path) -> bool:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        return isinstance(data, dict) and ("cookies" in data or "origins" in data)

    def _validate_or_restore_storage_state(self, state_path: Path) -> bool:
        """
        True when `state_path` can be handed to Playwright. A damaged file is set aside and replaced by its
        `.bak` copy when that one is usable; otherwise the user simply logs in again.
        """
        if self._looks_like_storage_state(state_path):
            return True

        logger.warning("Stored dashboard session %s is unreadable; trying its backup", state_path)
        self._quarantine_file(state_path, prefix="storage_state")

        bak = state_path.with_name(state_path.name + ".bak")
        if not self._looks_like_storage_state(bak):
            return False
        try:
            shutil.copy2(bak, state_path)
        except OSError:
            logger.debug("Could not restore stored session from %s", bak, exc_info=True)
            return False
        logger.warning("Restored stored dashboard session from %s", bak)
        return True

    def _backup_storage_state(self, state_path: Path) -> None:
        if not self._looks_like_storage_state(state_path):
            return
        try:
            shutil.copy2(state_path, state_path.with_name(state_path.name + ".bak"))
        except OSError:
            logger.debug("Could not back up stored session", exc_info=True)

    def _quarantine_file(self, path: Path, *, prefix: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        try:
            path.replace(path.with_name(f"{prefix}.{path.name}.corrupt-{stamp}"))
        except OSError:
            logger.debug("Could not move aside %s", path, exc_info=True)
