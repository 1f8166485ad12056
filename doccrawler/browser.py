from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import Page as PWPage

from .config import Config
from .errors import BrowserError, is_ignorable

logger = logging.getLogger(__name__)

# Puppeteer-style strategy names -> Playwright wait_until values
_WAIT_UNTIL = {
    "domcontentloaded": "domcontentloaded",
    "load": "load",
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
    "networkidle": "networkidle",
    "commit": "commit",
}

DEFAULT_PDF_OPTIONS: Dict[str, Any] = {
    "format": "A4",
    "print_background": True,
    "margin": {"top": "1cm", "right": "1cm", "bottom": "1cm", "left": "1cm"},
}


# ---------------------------
# Contract
# ---------------------------

@runtime_checkable
class Page(Protocol):
    async def navigate(self, url: str, timeout_ms: int, wait_until: str) -> Optional[int]:
        """Load ``url``; returns the main response status when known."""

    async def evaluate(self, script: str, *args: Any) -> Any:
        """Run a JS function in the page. Extra args arrive as one array argument."""

    async def generate_artifact(self, path: Path, options: Optional[Dict[str, Any]] = None) -> None:
        ...

    async def close(self) -> None:
        ...


@runtime_checkable
class Renderer(Protocol):
    async def acquire_page(self, page_id: str) -> Page:
        ...

    async def release_page(self, page_id: str) -> None:
        ...

    async def release_all(self) -> None:
        ...

    async def close(self) -> None:
        ...


async def try_close_page(page: Any, timeout_ms: int = 1500) -> None:
    """Bounded-time page close; a page that is already gone is not an error."""
    if page is None:
        return
    try:
        await asyncio.wait_for(page.close(), timeout=max(0.1, (timeout_ms or 1) / 1000.0))
    except Exception as e:
        logger.debug("page close ignored: %s", e)


# ---------------------------
# Playwright adapter
# ---------------------------

class PlaywrightPage:
    def __init__(self, page: PWPage, page_id: str, close_timeout_ms: int = 1500):
        self._page = page
        self.page_id = page_id
        self._close_timeout_ms = close_timeout_ms
        page.on("pageerror", self._on_page_error)

    def _on_page_error(self, err: Any) -> None:
        if is_ignorable(err):
            logger.debug("[%s] ignorable page script error: %s", self.page_id, err)
        else:
            logger.warning("[%s] page script error: %s", self.page_id, err)

    @property
    def raw(self) -> PWPage:
        return self._page

    async def navigate(self, url: str, timeout_ms: int, wait_until: str) -> Optional[int]:
        resp = await self._page.goto(
            url,
            wait_until=_WAIT_UNTIL.get(wait_until, "load"),
            timeout=timeout_ms,
        )
        return resp.status if resp else None

    async def evaluate(self, script: str, *args: Any) -> Any:
        if args:
            return await self._page.evaluate(script, list(args))
        return await self._page.evaluate(script)

    async def generate_artifact(self, path: Path, options: Optional[Dict[str, Any]] = None) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        opts = {**DEFAULT_PDF_OPTIONS, **(options or {})}
        await self._page.pdf(path=str(path), **opts)

    async def close(self) -> None:
        await try_close_page(self._page, self._close_timeout_ms)


class PlaywrightRenderer:
    """
    Chromium via playwright.async_api. One shared browser context; at most
    ``max_pages_open`` pages exist at a time. Pages are keyed by caller-chosen
    ids ("page-3", "url-collector") so release is idempotent.
    """

    def __init__(self, cfg: Config):
        self.cfg = cfg
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._sem = asyncio.Semaphore(max(1, cfg.max_pages_open))
        self._pages: Dict[str, PlaywrightPage] = {}
        self._start_lock = asyncio.Lock()

    def _browser_args(self) -> list[str]:
        args = [
            "--disable-dev-shm-usage",
            "--no-sandbox",
            "--disable-extensions",
            "--disable-background-networking",
            "--disable-background-timer-throttling",
            "--mute-audio",
            "--no-first-run",
            "--no-default-browser-check",
        ]
        args.extend(a.strip() for a in self.cfg.browser_args_extra if a and a.strip())
        return args

    async def start(self) -> None:
        async with self._start_lock:
            if self._context is not None:
                return
            try:
                self._pw = await async_playwright().start()
                self._browser = await self._pw.chromium.launch(
                    headless=self.cfg.headless, args=self._browser_args()
                )
                self._context = await self._browser.new_context(
                    user_agent=self.cfg.user_agent,
                    java_script_enabled=True,
                    ignore_https_errors=True,
                )
            except Exception as e:
                await self.close()
                raise BrowserError(f"Failed to acquire browser: {e}") from e
            logger.info("[browser] chromium started (headless=%s)", self.cfg.headless)

    async def __aenter__(self) -> "PlaywrightRenderer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def acquire_page(self, page_id: str) -> PlaywrightPage:
        existing = self._pages.get(page_id)
        if existing is not None:
            return existing
        if self._context is None:
            await self.start()
        await self._sem.acquire()
        try:
            raw = await self._context.new_page()  # type: ignore[union-attr]
            raw.set_default_timeout(self.cfg.page_timeout_ms)
        except Exception as e:
            self._sem.release()
            raise BrowserError(f"Page creation failed: {e}", {"page_id": page_id}) from e
        page = PlaywrightPage(raw, page_id, self.cfg.page_close_timeout_ms)
        self._pages[page_id] = page
        return page

    async def release_page(self, page_id: str) -> None:
        page = self._pages.pop(page_id, None)
        if page is None:
            return
        try:
            await page.close()
        finally:
            self._sem.release()

    async def release_all(self) -> None:
        for page_id in list(self._pages):
            await self.release_page(page_id)

    @property
    def open_pages(self) -> int:
        return len(self._pages)

    async def close(self) -> None:
        await self.release_all()
        context, browser, pw = self._context, self._browser, self._pw
        self._context = self._browser = self._pw = None
        for closer in (context, browser):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception as e:
                logger.debug("[browser] close ignored: %s", e)
        if pw is not None:
            try:
                await pw.stop()
            except Exception as e:
                logger.debug("[browser] playwright stop ignored: %s", e)
