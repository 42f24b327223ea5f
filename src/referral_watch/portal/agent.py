from __future__ import annotations

import logging
from typing import Optional

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright

from ..errors import ProvisioningError


logger = logging.getLogger(__name__)

_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1280,800",
]


class InteractiveAgent:
    """
    Owns one Playwright browser + page for the lifetime of a portal session.

    Playwright's sync API is bound to the thread that started it: create, use and close an agent
    from the same thread (the worker thread).
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        executable_path: str = "",
        default_timeout_ms: int = 60_000,
        user_agent: str = "",
    ) -> None:
        self.headless = headless
        self.user_agent = user_agent
        self.executable_path = executable_path
        self.default_timeout_ms = default_timeout_ms

        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._ctx: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise ProvisioningError("Interactive agent is not open")
        return self._page

    @property
    def is_open(self) -> bool:
        return self._page is not None

    def open(self) -> "InteractiveAgent":
        if self._page is not None:
            return self
        try:
            self._pw = sync_playwright().start()
            self._browser = self._launch(self._pw)
            self._ctx = self._browser.new_context(**self.context_options())
            self._page = self._ctx.new_page()
            self._page.set_default_timeout(self.default_timeout_ms)
            self._page.set_default_navigation_timeout(self.default_timeout_ms)
        except Exception as e:
            self.close()
            raise ProvisioningError(f"Could not start browser: {e}") from e
        logger.info("Browser launched (headless=%s)", self.headless)
        return self

    def context_options(self) -> dict:
        # API calls reuse these cookies, so the browser must present the same User-Agent.
        opts: dict = {"viewport": {"width": 1280, "height": 800}, "color_scheme": "light"}
        if self.user_agent:
            opts["user_agent"] = self.user_agent
        return opts

    def _launch(self, pw: Playwright) -> Browser:
        kwargs: dict = {"headless": self.headless, "args": _LAUNCH_ARGS, "timeout": self.default_timeout_ms}
        if self.executable_path:
            return pw.chromium.launch(executable_path=self.executable_path, **kwargs)
        try:
            return pw.chromium.launch(**kwargs)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning(
                "Playwright Chromium executable missing; falling back to system Chrome channel. (%s)", msg
            )
            return pw.chromium.launch(channel="chrome", **kwargs)

    def cookie_header(self) -> str:
        """Current cookie jar as a `Cookie:` header value (`name=value; name2=value2`)."""
        if self._ctx is None:
            raise ProvisioningError("Interactive agent is not open")
        cookies = self._ctx.cookies()
        return "; ".join(f"{c['name']}={c['value']}" for c in cookies)

    def close(self) -> None:
        for label, closer in (
            ("context", self._ctx.close if self._ctx else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._pw.stop if self._pw else None),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception:
                logger.debug("Failed to close %s.", label, exc_info=True)
        self._pw = None
        self._browser = None
        self._ctx = None
        self._page = None
