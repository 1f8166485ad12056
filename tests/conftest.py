from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from doccrawler.config import Config
from doccrawler.crawler import (
    CONTENT_HTML_JS,
    CONTENT_READY_JS,
    IMAGES_JS,
    LINKS_JS,
    NEXT_PAGE_JS,
    SECTION_TITLE_JS,
    TITLE_JS,
)


class FakeSite:
    """Scripted site shared by every FakePage a FakeRenderer hands out."""

    def __init__(self):
        self.statuses: Dict[str, int] = {}
        self.nav_script: Dict[str, List[Any]] = {}   # url -> outcomes (status or exception), consumed in order
        self.links: Dict[str, List[str]] = {}
        self.next_page: Dict[str, str] = {}
        self.titles: Dict[str, str] = {}
        self.section_titles: Dict[str, str] = {}
        self.html: Dict[str, str] = {}
        self.broken_images: Dict[str, int] = {}
        self.content_present = True
        self.gate = None                             # asyncio.Event that navigation waits on
        self.navigations: List[tuple] = []
        self.artifacts: List[Path] = []

    def urls_navigated(self, page_prefix: str = "page-") -> List[str]:
        return [url for page_id, url, _ in self.navigations if page_id.startswith(page_prefix)]


class FakePage:
    def __init__(self, site: FakeSite, page_id: str):
        self.site = site
        self.page_id = page_id
        self.current_url: Optional[str] = None
        self.closed = False

    async def navigate(self, url: str, timeout_ms: int, wait_until: str) -> Optional[int]:
        self.site.navigations.append((self.page_id, url, wait_until))
        if self.site.gate is not None:
            await self.site.gate.wait()
        script = self.site.nav_script.get(url)
        if script:
            outcome = script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            self.current_url = url
            return outcome
        self.current_url = url
        return self.site.statuses.get(url, 200)

    async def evaluate(self, script: str, *args: Any) -> Any:
        url = self.current_url
        if script == CONTENT_READY_JS:
            return self.site.content_present
        if script == TITLE_JS:
            title = self.site.titles.get(url, "")
            return {"title": title, "source": "document.title" if title else "none"}
        if script == IMAGES_JS:
            return {"total": 2, "broken": self.site.broken_images.get(url, 0)}
        if script == CONTENT_HTML_JS:
            return self.site.html.get(url, "<main><p>body</p></main>")
        if script == LINKS_JS:
            return list(self.site.links.get(url, []))
        if script == NEXT_PAGE_JS:
            return self.site.next_page.get(url)
        if script == SECTION_TITLE_JS:
            return self.site.section_titles.get(args[0])
        raise AssertionError(f"unexpected script: {script[:40]}")

    async def generate_artifact(self, path: Path, options: Optional[Dict[str, Any]] = None) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"%PDF-1.4 fake")
        self.site.artifacts.append(path)

    async def close(self) -> None:
        self.closed = True


class FakeRenderer:
    def __init__(self, site: FakeSite):
        self.site = site
        self.pages: Dict[str, FakePage] = {}
        self.acquired: List[str] = []
        self.released: List[str] = []
        self.fail_acquire = False
        self.closed = False

    async def acquire_page(self, page_id: str) -> FakePage:
        if self.fail_acquire:
            raise RuntimeError("Page creation failed: browser has been closed")
        self.acquired.append(page_id)
        page = self.pages.get(page_id)
        if page is None:
            page = self.pages[page_id] = FakePage(self.site, page_id)
        return page

    async def release_page(self, page_id: str) -> None:
        page = self.pages.pop(page_id, None)
        if page is not None:
            self.released.append(page_id)
            await page.close()

    async def release_all(self) -> None:
        for page_id in list(self.pages):
            await self.release_page(page_id)

    async def close(self) -> None:
        await self.release_all()
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def renderer(site):
    return FakeRenderer(site)


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        base = dict(
            root_url="https://docs.example.com/docs/",
            output_dir=tmp_path / "out",
            content_timeout_ms=500,
            retry_delay_ms=0,
            queue_interval_ms=1,
            queue_interval_cap=100,
            auto_save_interval_s=0,
        )
        base.update(overrides)
        return Config(**base)

    return _make
