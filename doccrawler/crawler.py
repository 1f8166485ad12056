from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urlparse

from extensions.crawl_state import CrawlState
from extensions.json_store import JsonFileStore
from extensions.logging import url_context
from extensions.metadata import MetadataStore
from extensions.output_paths import OutputPaths
from extensions.progress import ProgressTracker

from .browser import Page, Renderer
from .config import Config
from .errors import (
    ErrorCategory,
    HttpStatusError,
    ImageLoadError,
    NavigationError,
    NetworkError,
    ProcessingError,
    ValidationError,
    categorize,
    error_message,
)
from .events import EventBus
from .markdown import MarkdownSourceFetcher, add_frontmatter, clean_markdown, html_to_markdown
from .retry import retry, retry_with_policy
from .task_queue import TaskQueue
from .utils import (
    clean_title,
    host_matches,
    normalize_for_entry_comparison,
    normalize_url,
    resolve_link,
    title_from_url,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# (strategy, timeout_ms), fastest first
NAV_STRATEGIES: Tuple[Tuple[str, int], ...] = (
    ("domcontentloaded", 15000),
    ("networkidle2", 30000),
    ("networkidle0", 45000),
    ("load", 60000),
)
NAV_ABORT_PAUSE_S = 2.0
CONTENT_POLL_MS = 250
COLLECT_RETRY_DELAY_MS = 2000

# ---------------------------
# In-page scripts. Each takes a single array argument.
# ---------------------------

CONTENT_READY_JS = "([selector]) => !!document.querySelector(selector)"

CONTENT_HTML_JS = """([selector]) => {
  const el = document.querySelector(selector) || document.body;
  return el ? el.outerHTML : '';
}"""

TITLE_JS = """([selector]) => {
  const text = (el) => (el && el.innerText ? el.innerText.trim() : '');
  const docTitle = (document.title || '').trim();
  if (docTitle) return { title: docTitle, source: 'document.title' };
  const content = document.querySelector(selector);
  if (content) {
    const h1 = text(content.querySelector('h1'));
    if (h1) return { title: h1, source: 'content-h1' };
    const cls = text(content.querySelector('.title, .page-title, [class*="page-title"], [class*="PageTitle"]'));
    if (cls) return { title: cls, source: 'content-title-class' };
    const h = text(content.querySelector('h2, h3'));
    if (h) return { title: h, source: 'content-h2-h3' };
  }
  const g = text(document.querySelector('h1'));
  if (g) return { title: g, source: 'global-h1' };
  return { title: '', source: 'none' };
}"""

IMAGES_JS = """async ([timeoutMs]) => {
  const imgs = Array.from(document.images || []);
  imgs.forEach((img) => {
    if (img.loading === 'lazy') img.loading = 'eager';
    const ds = img.getAttribute('data-src');
    if (ds && !img.src) img.src = ds;
  });
  window.scrollTo(0, document.body ? document.body.scrollHeight : 0);
  const deadline = Date.now() + timeoutMs;
  while (Date.now() < deadline && imgs.some((i) => !i.complete)) {
    await new Promise((r) => setTimeout(r, 100));
  }
  window.scrollTo(0, 0);
  const broken = imgs.filter((i) => !i.complete || i.naturalWidth === 0).length;
  return { total: imgs.length, broken };
}"""

LINKS_JS = """([selector, excludeSel]) => {
  let els = Array.from(document.querySelectorAll(selector));
  if (excludeSel) {
    try { document.querySelector(excludeSel); els = els.filter((el) => !el.closest(excludeSel)); }
    catch (e) { /* invalid exclude selector */ }
  }
  return els
    .map((el) => el.getAttribute('href') || el.href || '')
    .map((h) => (typeof h === 'string' ? h.trim() : ''))
    .filter(Boolean);
}"""

NEXT_PAGE_JS = """([selector]) => {
  for (const s of selector.split(',').map((x) => x.trim()).filter(Boolean)) {
    const links = Array.from(document.querySelectorAll(s));
    const link = links[links.length - 1];
    if (link && link.href) return link.href;
  }
  return null;
}"""

SECTION_TITLE_JS = """([targetUrl, navSelector]) => {
  const norm = (u) => { try { return new URL(u, location.href).href.replace(/\\/$/, ''); } catch (e) { return u; } };
  const target = norm(targetUrl);
  let best = null, bestScore = -1;
  for (const link of document.querySelectorAll(navSelector)) {
    const href = link.href || link.getAttribute('href');
    if (!href) continue;
    const h = norm(href);
    let score = -1;
    if (h === target) score = 1000;
    else {
      try {
        const tp = new URL(target).pathname, hp = new URL(h).pathname;
        const td = tp.split('/').filter(Boolean).length, hd = hp.split('/').filter(Boolean).length;
        if (td === hd + 1 && tp.startsWith(hp + '/')) score = 300;
      } catch (e) { continue; }
    }
    const t = (link.textContent || '').trim();
    if (score > bestScore && t.length >= 2) {
      best = t; bestScore = score;
      if (score === 1000) return best;
    }
  }
  if (best) return best;
  const h1 = document.querySelector('h1, [role="heading"][aria-level="1"]');
  return h1 ? (h1.textContent || '').trim() || null : null;
}"""


class Translator(Protocol):
    async def translate_page(self, page: Page) -> None:
        ...


@dataclass
class NavigationResult:
    success: bool
    strategy: Optional[str] = None
    error: Any = None
    status: Optional[int] = None


@dataclass
class PageResult:
    url: str
    index: int
    status: str                      # success | failed | skipped
    title: Optional[str] = None
    output_path: Optional[str] = None
    error: Optional[str] = None
    category: Optional[str] = None
    strategy: Optional[str] = None
    images_ok: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


@dataclass
class _Section:
    index: int
    title: str
    entry_url: str
    pages: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "title": self.title, "entryUrl": self.entry_url, "pages": self.pages}


class DocCrawler(EventBus):
    """
    Drives a documentation crawl: discovers URLs from the configured entry
    points, runs one pipeline per URL through the task queue, and records the
    outcome in the persisted crawl state so an interrupted run can resume.
    """

    def __init__(
        self,
        cfg: Config,
        renderer: Renderer,
        *,
        store: Optional[JsonFileStore] = None,
        paths: Optional[OutputPaths] = None,
        state: Optional[CrawlState] = None,
        metadata: Optional[MetadataStore] = None,
        progress: Optional[ProgressTracker] = None,
        queue: Optional[TaskQueue] = None,
        translator: Optional[Translator] = None,
        markdown_source: Optional[MarkdownSourceFetcher] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        super().__init__()
        self.cfg = cfg
        self.renderer = renderer
        self.store = store or JsonFileStore()
        self.paths = paths or OutputPaths(cfg.output_dir, cfg.metadata_dir_name)
        self.state = state or CrawlState(self.store, self.paths)
        self.metadata = metadata or MetadataStore(self.store, self.paths)
        self.progress = progress or ProgressTracker()
        self.queue = queue or TaskQueue(
            concurrency=cfg.concurrency,
            interval_ms=cfg.queue_interval_ms,
            interval_cap=cfg.queue_interval_cap,
            timeout_ms=cfg.queue_task_timeout_ms,
            max_task_history=cfg.max_task_history,
        )
        self.translator = translator
        self.markdown_source = markdown_source
        self._sleep = sleep

        self._urls: List[str] = []
        self._url_index: Dict[str, int] = {}
        self._initialized = False
        self._running = False
        self._started_at: Optional[float] = None

        self._bind_events()

    def _bind_events(self) -> None:
        for event in ("active", "idle"):
            self.queue.on(event, functools.partial(self.emit, event))
        for event in ("url-processed", "url-failed", "image-load-failure"):
            self.state.on(event, functools.partial(self.emit, event))
        self.queue.on(
            "task-failed",
            lambda info: logger.warning("queue task %s failed: %s", info["id"], info["error"]),
        )

    # ---------------------- Properties ----------------------

    @property
    def urls(self) -> List[str]:
        return list(self._urls)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ---------------------- Lifecycle ----------------------

    async def initialize(self) -> None:
        if self._initialized:
            logger.warning("crawler already initialized")
            return
        logger.info("initializing crawler (output=%s)", self.paths.output_dir)
        await self.state.load()
        self.queue.set_concurrency(self.cfg.concurrency)
        await self.store.ensure_directory(self.paths.output_dir)
        await self.store.ensure_directory(self.paths.metadata_dir)
        self._initialized = True
        self.emit("initialized")

    # ---------------------- URL filters ----------------------

    def is_ignored(self, url: str) -> bool:
        if any(s and s in url for s in self.cfg.ignore_urls):
            return True
        return any(p.search(url) for p in self.cfg.ignore_patterns)

    def validate_url(self, url: str) -> bool:
        try:
            parsed = urlparse(url)
        except ValueError:
            logger.debug("url rejected (unparseable): %s", url)
            return False
        if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
            return False
        domains = self.cfg.effective_allowed_domains()
        if domains and not host_matches(parsed.hostname, domains):
            return False
        base = self.cfg.base_url
        if base:
            if base.lower().startswith(("http://", "https://")):
                ok = url.startswith(base)
            else:
                ok = (parsed.path or "/").startswith(base)
            if not ok:
                logger.debug("url outside base %s: %s", base, url)
                return False
        return True

    # ---------------------- Discovery ----------------------

    async def collect_urls(self) -> List[str]:
        if not self._initialized:
            raise ValidationError("Crawler has not been initialized")

        if self.cfg.target_urls:
            logger.info("using %d configured target URL(s)", len(self.cfg.target_urls))
            section = _Section(0, "Custom Selection", self.cfg.root_url)
            raw = [(u, 0, order) for order, u in enumerate(self.cfg.target_urls)]
            return await self._process_collected([section], raw)

        entry_points = list(self.cfg.entry_points())
        if not entry_points:
            raise ValidationError("No root_url or section entry points configured")
        if len(entry_points) < 1 + len(self.cfg.section_entry_points):
            logger.warning("duplicate entry points dropped; root_url may repeat a section entry")
        logger.info("collecting URLs from %d entry point(s)", len(entry_points))

        try:
            page = await self.renderer.acquire_page("url-collector")
        except Exception as e:
            raise NetworkError("URL collection failed", self.cfg.root_url, e) from e

        sections: List[_Section] = []
        raw: List[Tuple[str, int, int]] = []
        try:
            for sec_idx, entry in enumerate(entry_points):
                try:
                    entry_urls = await self._collect_from_entry(page, entry, entry_points)
                    title = await self._section_title(page, entry)
                except Exception as e:
                    logger.error("entry point %s failed, skipping: %s", entry, e)
                    sections.append(_Section(sec_idx, f"Section {sec_idx + 1}", entry))
                    continue
                sections.append(_Section(sec_idx, title, entry))
                raw.extend((u, sec_idx, order) for order, u in enumerate(entry_urls))
                logger.info(
                    "section %d/%d '%s': %d link(s) from %s",
                    sec_idx + 1, len(entry_points), title, len(entry_urls), entry,
                )
        finally:
            try:
                await self.renderer.release_page("url-collector")
            except Exception as e:
                logger.debug("releasing url-collector page failed: %s", e)

        return await self._process_collected(sections, raw)

    async def _section_title(self, page: Page, entry: str) -> str:
        configured = self.cfg.section_titles.get(entry)
        if configured:
            return configured
        try:
            title = await page.evaluate(SECTION_TITLE_JS, entry, self.cfg.nav_links_selector)
        except Exception as e:
            logger.debug("section title lookup failed for %s: %s", entry, e)
            title = None
        if isinstance(title, str) and title.strip():
            return title.strip()
        return title_from_url(entry)

    async def _load_listing(self, page: Page, url: str) -> None:
        status = await page.navigate(url, self.cfg.page_timeout_ms, self.cfg.navigation_wait_until)
        if status is not None and status >= 400:
            raise HttpStatusError(status, url)

    async def _collect_from_entry(self, page: Page, entry: str, entry_points: List[str]) -> List[str]:
        others = {normalize_for_entry_comparison(u) for u in entry_points if u != entry}
        collected: List[str] = []
        current = entry
        page_num = 1

        while True:
            await retry(
                functools.partial(self._load_listing, page, current),
                max_attempts=self.cfg.max_retries,
                delay_ms=COLLECT_RETRY_DELAY_MS,
                backoff=2.0,
                max_delay_ms=30000,
                retry_if=lambda e: categorize(e) is not ErrorCategory.PERMANENT_HTTP,
                on_retry=lambda attempt, err, wait_ms: logger.warning(
                    "listing load retry %d for %s: %s", attempt, current, err
                ),
                sleep=self._sleep,
            )

            hrefs = await page.evaluate(LINKS_JS, self.cfg.nav_links_selector, self.cfg.nav_exclude_selector) or []
            found = 0
            for href in hrefs:
                resolved = resolve_link(href, current)
                if resolved is None or normalize_for_entry_comparison(resolved) in others:
                    continue
                collected.append(resolved)
                found += 1
            logger.debug("page %d of %s: %d link(s)", page_num, entry, found)

            if not self.cfg.pagination_selector:
                break
            if page_num >= self.cfg.max_pagination_pages:
                logger.info("pagination limit (%d) reached for %s", self.cfg.max_pagination_pages, entry)
                break
            nxt = await page.evaluate(NEXT_PAGE_JS, self.cfg.pagination_selector)
            if not nxt or nxt == current:
                break
            current = nxt
            page_num += 1

        return [entry] + [u for u in collected if u != entry]

    async def _process_collected(self, sections: List[_Section], raw: List[Tuple[str, int, int]]) -> List[str]:
        kept: Dict[str, Tuple[int, int]] = {}
        duplicates: set[str] = set()
        conflicts: List[Dict[str, Any]] = []
        rejected = 0

        for url, sec_idx, order in raw:
            norm = normalize_url(url)
            if norm in kept:
                duplicates.add(url)
                existing_sec = kept[norm][0]
                if existing_sec != sec_idx:
                    conflicts.append({
                        "url": norm,
                        "existing": sections[existing_sec].title if existing_sec < len(sections) else existing_sec,
                        "conflict": sections[sec_idx].title if sec_idx < len(sections) else sec_idx,
                    })
                continue
            if self.is_ignored(norm) or not self.validate_url(norm):
                rejected += 1
                continue
            kept[norm] = (sec_idx, order)

        if conflicts:
            logger.warning("%d URL(s) appear in more than one section; first wins. e.g. %s", len(conflicts), conflicts[:3])

        by_index = {s.index: s for s in sections}
        url_to_section: Dict[str, int] = {}
        self._urls = list(kept)
        self._url_index = {u: i for i, u in enumerate(self._urls)}
        for final_index, (url, (sec_idx, order)) in enumerate(kept.items()):
            section = by_index.get(sec_idx)
            if section is None:
                continue
            section.pages.append({"index": str(final_index), "url": url, "order": order})
            url_to_section[url] = sec_idx
        for s in sections:
            s.pages.sort(key=lambda p: p["order"])

        await self.metadata.save_section_structure({
            "sections": [s.to_dict() for s in sections],
            "urlToSection": url_to_section,
        })

        empty = [s.title for s in sections if not s.pages]
        if empty:
            logger.warning("%d section(s) have no pages: %s", len(empty), empty)
        logger.info(
            "URL collection done: raw=%d kept=%d duplicates=%d rejected=%d sections=%d",
            len(raw), len(self._urls), len(duplicates), rejected, len(sections),
        )
        self.emit("urls-collected", {
            "total_urls": len(self._urls),
            "duplicates": len(duplicates),
            "sections": len(sections),
        })
        return list(self._urls)

    # ---------------------- Navigation ----------------------

    def _strategies(self) -> List[Tuple[str, int]]:
        strategies = list(NAV_STRATEGIES)
        preferred = self.cfg.navigation_strategy
        if preferred and preferred != "auto":
            first = [s for s in strategies if s[0] == preferred]
            if first:
                strategies = first + [s for s in strategies if s[0] != preferred]
        return strategies

    async def navigate_with_fallback(self, page: Page, url: str) -> NavigationResult:
        """
        Try each wait strategy in turn. Timeouts and aborted loads move on to
        the next strategy; any other failure stops early. Never raises.
        """
        last_error: Any = None
        for name, timeout_ms in self._strategies():
            try:
                logger.debug("navigate %s (%s, %dms)", url, name, timeout_ms)
                status = await page.navigate(url, timeout_ms, name)
                if status is not None and status >= 400:
                    raise HttpStatusError(status, url)
                return NavigationResult(True, strategy=name, status=status)
            except Exception as e:
                last_error = e
                logger.warning("navigation strategy %s failed for %s: %s", name, url, e)
                if categorize(e) is ErrorCategory.RETRYABLE_TIMEOUT:
                    continue
                msg = str(e)
                if "net::ERR_ABORTED" in msg or "net::ERR_FAILED" in msg:
                    await self._sleep(NAV_ABORT_PAUSE_S)
                    continue
                break
        return NavigationResult(False, error=last_error or "All navigation strategies failed")

    async def _navigate(self, page: Page, url: str) -> NavigationResult:
        result = await self.navigate_with_fallback(page, url)
        if not result.success:
            raise NavigationError(f"Navigation failed: {error_message(result.error)}", url, result.error)
        return result

    # ---------------------- Page pipeline ----------------------

    async def _wait_for_content(self, page: Page) -> None:
        polls = max(1, -(-self.cfg.content_timeout_ms // CONTENT_POLL_MS))
        for i in range(polls):
            if await page.evaluate(CONTENT_READY_JS, self.cfg.content_selector):
                return
            if i < polls - 1:
                await self._sleep(CONTENT_POLL_MS / 1000.0)
        logger.warning("content selector %r not found", self.cfg.content_selector)
        raise ValidationError("Page content not found", {"selector": self.cfg.content_selector})

    async def _check_images(self, page: Page, url: str, index: int) -> bool:
        failure: Optional[ImageLoadError] = None
        try:
            info = await page.evaluate(IMAGES_JS, 5000)
            if isinstance(info, dict) and info.get("broken"):
                failure = ImageLoadError(
                    f"{info.get('broken')} of {info.get('total')} image(s) did not load", url, {"index": index}
                )
        except Exception as e:
            failure = ImageLoadError(f"Image check failed: {error_message(e)}", url, {"index": index})
        if failure is not None:
            logger.warning("%s", failure)
            self.state.mark_image_load_failure(url)
            try:
                await self.metadata.log_image_load_failure(url, index, failure)
            except Exception as e:
                logger.warning("could not record image failure: %s", e)
        return failure is None

    async def _translate(self, page: Page) -> None:
        if self.translator is None:
            return
        try:
            await retry(
                functools.partial(self.translator.translate_page, page),
                max_attempts=self.cfg.translation_max_retries,
                delay_ms=self.cfg.translation_retry_delay_ms,
                backoff=2.0,
                max_delay_ms=self.cfg.translation_max_delay_ms,
                jitter_strategy=self.cfg.translation_jitter,  # type: ignore[arg-type]
                on_retry=lambda attempt, err, wait_ms: logger.warning(
                    "translation retry %d in %.0fms: %s", attempt, wait_ms, err
                ),
                sleep=self._sleep,
            )
        except Exception as e:
            logger.warning("translation failed; keeping original content: %s", e)

    async def _write_markdown(self, page: Page, url: str, index: int, title: str) -> Path:
        path = self.paths.artifact_path(url, index, "md")
        content: Optional[str] = None
        source_title: Optional[str] = None
        if self.markdown_source is not None:
            fetched = await self.markdown_source.fetch(url)
            if fetched:
                content, source_title = fetched
        if content is None:
            html = await page.evaluate(CONTENT_HTML_JS, self.cfg.content_selector)
            try:
                content = clean_markdown(html_to_markdown(html or ""))
            except Exception as e:
                raise ProcessingError(f"Markdown conversion failed: {error_message(e)}", {"url": url}) from e
        doc = add_frontmatter(content, title=source_title or title or None, url=url, index=index)
        await self.store.write_text(path, doc)
        return path

    async def _generate_artifact(self, page: Page, url: str, index: int, title: str) -> Path:
        if self.cfg.output_format == "markdown":
            return await self._write_markdown(page, url, index, title)
        path = self.paths.artifact_path(url, index, "pdf")
        await page.generate_artifact(path, {})
        return path

    def _on_policy_retry(self, url: str, step: str) -> Callable[[int, BaseException, float], None]:
        def hook(attempt: int, err: BaseException, wait_ms: float) -> None:
            logger.warning(
                "%s retry %d for %s in %.0fms (%s): %s",
                step, attempt, url, wait_ms, categorize(err).value, err,
            )
        return hook

    async def scrape_page(self, url: str, index: int, *, is_retry: bool = False) -> PageResult:
        """
        Process one URL end to end. Per-URL failures are recorded, never raised.
        Success is signalled only after the artifact and the title are saved.
        """
        with url_context(url):
            if self.state.is_processed(url):
                logger.debug("already processed, skipping")
                self.progress.skip(url, "already processed")
                self.emit("page-skipped", {"url": url, "index": index})
                return PageResult(url, index, "skipped")

            page_id = f"page-{index}"
            page: Optional[Page] = None
            try:
                logger.info("scraping [%d/%d] %s", index + 1, max(len(self._urls), index + 1), url)
                self.progress.start_url(url, index)
                page = await self.renderer.acquire_page(page_id)

                nav = await retry_with_policy(
                    functools.partial(self._navigate, page, url),
                    on_retry=self._on_policy_retry(url, "navigation"),
                    sleep=self._sleep,
                )
                await self._wait_for_content(page)

                title_info = await page.evaluate(TITLE_JS, self.cfg.content_selector) or {}
                raw_title = title_info.get("title") or ""
                title_source = title_info.get("source") or "none"

                images_ok = await self._check_images(page, url, index)
                await self._translate(page)

                output_path = await retry_with_policy(
                    functools.partial(self._generate_artifact, page, url, index, raw_title),
                    on_retry=self._on_policy_retry(url, "artifact"),
                    sleep=self._sleep,
                )

                cleaned = clean_title(raw_title)
                if cleaned:
                    await self.metadata.save_article_title(str(index), cleaned)
                    if is_retry:
                        await self.metadata.remove_from_failed_links(url)
                else:
                    logger.warning("no title found (source=%s)", title_source)
                    await self.metadata.log_failed_link(
                        url, index, f"Title extraction failed: source={title_source}"
                    )

                self.state.set_url_index(url, index)
                self.state.mark_processed(url, output_path)
                self.progress.success(url)

                processed = self.state.get_stats()["processed"]
                if processed % self.cfg.save_every_n_processed == 0:
                    await self.state.save()

                self.emit("page-scraped", {
                    "url": url, "index": index, "title": cleaned or raw_title, "output_path": str(output_path),
                })
                return PageResult(
                    url, index, "success",
                    title=cleaned or raw_title,
                    output_path=str(output_path),
                    strategy=nav.strategy,
                    images_ok=images_ok,
                )
            except Exception as e:
                category = categorize(e)
                logger.error("page failed [%s]: %s", category.value, e)
                self.state.mark_failed(url, e)
                will_retry = self.cfg.retry_failed_urls and not is_retry
                self.progress.failure(url, e, will_retry)
                self.emit("page-failed", {
                    "url": url, "index": index, "error": error_message(e),
                    "category": category.value, "will_retry": will_retry,
                })
                return PageResult(url, index, "failed", error=error_message(e), category=category.value)
            finally:
                if page is not None:
                    try:
                        await self.renderer.release_page(page_id)
                    except Exception as e:
                        logger.warning("releasing %s failed: %s", page_id, e)

    # ---------------------- Retry pass ----------------------

    async def retry_failed_urls(self) -> Dict[str, int]:
        """
        Re-run every currently failed URL that is still in the discovered list,
        one at a time, outside the queue. A second failure is terminal.
        """
        failed = self.state.get_failed_urls()
        counts = {"success_count": 0, "fail_count": 0, "stale_count": 0}
        candidates = [(u, err) for u, err in failed if u in self._url_index]
        if not candidates:
            logger.info("no failed URLs to retry")
            self.emit("retry-completed", counts)
            return counts

        logger.info("retrying %d failed URL(s)", len(candidates))
        for n, (url, prev_error) in enumerate(candidates):
            if self.state.is_processed(url):
                logger.warning("failure record for already processed %s is stale; clearing", url)
                self.state.clear_failure(url)
                counts["stale_count"] += 1
                continue

            self.state.clear_failure(url)
            record = self.progress.get_record(url)
            self.progress.retry(url, (record.attempts if record else 0) + 1)
            result = await self.scrape_page(url, self._url_index[url], is_retry=True)
            if result.ok:
                counts["success_count"] += 1
            else:
                counts["fail_count"] += 1
                logger.error("retry failed for %s (was: %s; now: %s)", url, prev_error, result.error)

            if n < len(candidates) - 1 and self.cfg.retry_delay_ms > 0:
                await self._sleep(self.cfg.retry_delay_ms / 1000.0)

        await self.state.save(force=True)
        logger.info(
            "retry pass done: %d recovered, %d failed, %d stale",
            counts["success_count"], counts["fail_count"], counts["stale_count"],
        )
        self.emit("retry-completed", counts)
        return counts

    # ---------------------- Run ----------------------

    async def run(self) -> Optional[Dict[str, Any]]:
        if self._running:
            raise ValidationError("Crawler is already running")
        self._running = True
        self._started_at = time.time()

        try:
            logger.info("=== crawl started ===")
            await self.initialize()

            urls = await self.collect_urls()
            if not urls:
                logger.warning("no URLs to crawl")
                return None

            self.state.set_start_time()
            for i, u in enumerate(urls):
                self.state.set_url_index(u, i)

            self.progress.start(len(urls))
            self.queue.resume()
            self.queue.set_concurrency(self.cfg.concurrency)
            self.state.start_auto_save(self.cfg.auto_save_interval_s)

            for i, u in enumerate(urls):
                # Each pipeline step owns its timeout; no queue-level timeout here.
                self.queue.add_task(f"scrape-{i}", functools.partial(self.scrape_page, u, i), timeout_ms=None)

            await self.queue.wait_for_idle()
            await self.state.save(force=True)

            if self.cfg.auto_retry_failed and self.cfg.retry_failed_urls:
                await self.retry_failed_urls()

            summary = self.progress.finish()
            summary["failed"] = summary["failed"] + summary["pending_retry"]
            summary["total_urls"] = len(urls)
            logger.info(
                "=== crawl finished: %d/%d succeeded, %d failed, %d skipped (%.1fs) ===",
                summary["succeeded"], len(urls), summary["failed"], summary["skipped"], summary["duration_s"],
            )
            self.emit("completed", summary)
            return summary
        except Exception as e:
            logger.error("crawl failed: %s", e)
            self.emit("error", e)
            raise
        finally:
            try:
                await self.cleanup()
            except Exception as e:
                logger.error("cleanup failed: %s", e)
            finally:
                self._running = False

    async def pause(self) -> None:
        if not self._running:
            logger.warning("crawler is not running; nothing to pause")
            return
        self.queue.pause()
        logger.info("crawler paused")
        self.emit("paused")

    async def resume(self) -> None:
        if not self._running:
            logger.warning("crawler is not running; nothing to resume")
            return
        self.queue.resume()
        logger.info("crawler resumed")
        self.emit("resumed")

    async def stop(self) -> None:
        """Drop pending work, wait for in-flight pipelines, then clean up."""
        if not self._running:
            logger.warning("crawler is not running")
            return
        logger.info("stopping crawler")
        self.queue.clear()
        await self.queue.wait_for_idle()
        await self.cleanup()
        self.emit("stopped")

    async def cleanup(self) -> None:
        try:
            self.queue.pause()
            self.queue.clear()
            await self.renderer.release_all()
        finally:
            self.state.stop_auto_save()
            await self.state.save(force=True)
        logger.info("resources cleaned up")
        self.emit("cleanup")

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_initialized": self._initialized,
            "is_running": self._running,
            "start_time": self._started_at,
            "total_urls": len(self._urls),
            "progress": self.progress.get_stats(),
            "queue": self.queue.get_status(),
            "state": self.state.get_stats(),
            "uptime_s": (time.time() - self._started_at) if self._started_at else 0.0,
        }
