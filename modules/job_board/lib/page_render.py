from __future__ import annotations

import logging
from dataclasses import dataclass

from . import logging_bridge

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderResult:
    success: bool
    html: str | None = None
    error: str | None = None


class BrowserRenderer:
    """
    Fetch a page through headless Chromium so client-side rendered boards
    (e.g. Ashby postings) come back with their content filled in.

    A browser is launched per call; detail fetches are staggered by the
    scheduler so there is never more than a handful in flight.
    """

    def __init__(self, *, wait_ms: int = 2000, timeout_ms: int = 45_000, user_agent: str | None = None):
        self.wait_ms = int(wait_ms)
        self.timeout_ms = int(timeout_ms)
        self.user_agent = user_agent

    def render_and_fetch(self, url: str) -> RenderResult:
        """Never raises; failures come back as RenderResult(success=False)."""
        try:
            from playwright.sync_api import sync_playwright  # local import keeps tests light

            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True)
                try:
                    ctx = browser.new_context(user_agent=self.user_agent) if self.user_agent else browser.new_context()
                    page = ctx.new_page()
                    page.set_default_timeout(self.timeout_ms)
                    page.goto(url, wait_until="domcontentloaded")
                    if self.wait_ms:
                        page.wait_for_timeout(self.wait_ms)
                    html = page.content()
                finally:
                    browser.close()
        except Exception as e:
            logging_bridge.error({
                "component": "job_board.render",
                "op": "render_failed",
                "url": url,
                "error": repr(e),
            })
            return RenderResult(success=False, error=str(e) or e.__class__.__name__)

        LOG.debug("rendered %s (%d chars)", url, len(html))
        return RenderResult(success=True, html=html)
