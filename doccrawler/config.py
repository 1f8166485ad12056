from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Literal, Optional, Pattern, Tuple
from urllib.parse import urlparse

from .utils import (
    getenv_bool,
    getenv_csv,
    getenv_float,
    getenv_int,
    getenv_str,
    get_base_domain,
)

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DEFAULT_OUTPUT_DIR: Path = PROJECT_ROOT / "output"

NavigationStrategyName = Literal["auto", "domcontentloaded", "networkidle2", "networkidle0", "load"]


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Discovery
    root_url: str = ""
    section_entry_points: Tuple[str, ...] = ()
    section_titles: Dict[str, str] = field(default_factory=dict)
    target_urls: Tuple[str, ...] = ()               # explicit URL list; skips entry-point discovery
    allowed_domains: Tuple[str, ...] = ()           # empty -> registrable domain of root_url
    base_url: Optional[str] = None                  # URL or path prefix filter
    ignore_urls: Tuple[str, ...] = ()               # substring exclusions
    ignore_patterns: Tuple[Pattern[str], ...] = ()  # regex exclusions
    nav_links_selector: str = "nav a[href]"
    nav_exclude_selector: str = ""
    content_selector: str = "main, article"
    pagination_selector: Optional[str] = None
    max_pagination_pages: int = 10

    # Output
    output_dir: Path = DEFAULT_OUTPUT_DIR
    metadata_dir_name: str = "metadata"
    output_format: Literal["pdf", "markdown"] = "pdf"

    # Queue
    concurrency: int = 3
    queue_interval_ms: int = 1000
    queue_interval_cap: int = 5
    queue_task_timeout_ms: int = 30000
    max_task_history: int = 100

    # Navigation / timeouts
    page_timeout_ms: int = 30000
    content_timeout_ms: int = 10000
    navigation_wait_until: str = "domcontentloaded"
    navigation_strategy: NavigationStrategyName = "auto"

    # Retry
    max_retries: int = 3
    retry_delay_ms: int = 2000
    retry_failed_urls: bool = True                  # first-pass failures are pending-retry
    auto_retry_failed: bool = False                 # run the retry pass inside run()

    # State persistence
    auto_save_interval_s: float = 30.0
    save_every_n_processed: int = 10

    # Translation retry knobs (translator itself is an injected collaborator)
    translation_max_retries: int = 3
    translation_retry_delay_ms: int = 2000
    translation_max_delay_ms: int = 30000
    translation_jitter: str = "decorrelated"

    # Raw markdown source (sites that serve page.md next to page)
    markdown_source_enabled: bool = False
    markdown_source_suffix: str = ".md"

    # Browser
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    )
    headless: bool = True
    max_pages_open: int = 8
    page_close_timeout_ms: int = 1500
    browser_args_extra: Tuple[str, ...] = ()

    log_level: str = "INFO"

    @property
    def metadata_dir(self) -> Path:
        return Path(self.output_dir) / self.metadata_dir_name

    def effective_allowed_domains(self) -> Tuple[str, ...]:
        if self.allowed_domains:
            return tuple(d.lower() for d in self.allowed_domains)
        host = urlparse(self.root_url).hostname or ""
        base = get_base_domain(host)
        return (base,) if base else ()

    def entry_points(self) -> Tuple[str, ...]:
        """root_url followed by section entry points, order kept, duplicates dropped."""
        seen: list[str] = []
        for u in (self.root_url, *self.section_entry_points):
            u = (u or "").strip()
            if u and u not in seen:
                seen.append(u)
        return tuple(seen)


def _compile_patterns(raw: Tuple[str, ...]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(p) for p in raw)


# ---------- Loader ----------
def load_config() -> Config:

    output_dir = Path(getenv_str("OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR)))

    cfg = Config(
        root_url=getenv_str("ROOT_URL", ""),
        section_entry_points=getenv_csv("SECTION_ENTRY_POINTS", ""),
        target_urls=getenv_csv("TARGET_URLS", ""),
        allowed_domains=getenv_csv("ALLOWED_DOMAINS", ""),
        base_url=getenv_str("BASE_URL", "") or None,
        ignore_urls=getenv_csv("IGNORE_URLS", ""),
        ignore_patterns=_compile_patterns(getenv_csv("IGNORE_PATTERNS", "")),
        nav_links_selector=getenv_str("NAV_LINKS_SELECTOR", "nav a[href]"),
        nav_exclude_selector=getenv_str("NAV_EXCLUDE_SELECTOR", ""),
        content_selector=getenv_str("CONTENT_SELECTOR", "main, article"),
        pagination_selector=getenv_str("PAGINATION_SELECTOR", "") or None,
        max_pagination_pages=getenv_int("MAX_PAGINATION_PAGES", 10, 1, 500),

        output_dir=output_dir,
        metadata_dir_name=getenv_str("METADATA_DIR_NAME", "metadata"),
        output_format="markdown" if getenv_str("OUTPUT_FORMAT", "pdf").lower() == "markdown" else "pdf",

        # Keep dispatch modest; the docs host is a single origin.
        concurrency=getenv_int("CONCURRENCY", 3, 1, 64),
        queue_interval_ms=getenv_int("QUEUE_INTERVAL_MS", 1000, 1, 60000),
        queue_interval_cap=getenv_int("QUEUE_INTERVAL_CAP", 5, 1, 1000),
        queue_task_timeout_ms=getenv_int("QUEUE_TASK_TIMEOUT_MS", 30000, 0, 600000),
        max_task_history=getenv_int("MAX_TASK_HISTORY", 100, 0, 100000),

        page_timeout_ms=getenv_int("PAGE_TIMEOUT_MS", 30000, 1000, 180000),
        content_timeout_ms=getenv_int("CONTENT_TIMEOUT_MS", 10000, 0, 120000),
        navigation_wait_until=getenv_str("NAV_WAIT_UNTIL", "domcontentloaded"),
        navigation_strategy=getenv_str("NAVIGATION_STRATEGY", "auto"),  # type: ignore[arg-type]

        max_retries=getenv_int("MAX_RETRIES", 3, 1, 10),
        retry_delay_ms=getenv_int("RETRY_DELAY_MS", 2000, 0, 60000),
        retry_failed_urls=getenv_bool("RETRY_FAILED_URLS", True),
        auto_retry_failed=getenv_bool("AUTO_RETRY_FAILED", False),

        auto_save_interval_s=getenv_float("AUTO_SAVE_INTERVAL_S", 30.0, 0.0, 3600.0),
        save_every_n_processed=getenv_int("SAVE_EVERY_N_PROCESSED", 10, 1, 10000),

        translation_max_retries=getenv_int("TRANSLATION_MAX_RETRIES", 3, 1, 10),
        translation_retry_delay_ms=getenv_int("TRANSLATION_RETRY_DELAY_MS", 2000, 0, 60000),
        translation_max_delay_ms=getenv_int("TRANSLATION_MAX_DELAY_MS", 30000, 0, 300000),
        translation_jitter=getenv_str("TRANSLATION_JITTER", "decorrelated"),

        markdown_source_enabled=getenv_bool("MARKDOWN_SOURCE_ENABLED", False),
        markdown_source_suffix=getenv_str("MARKDOWN_SOURCE_SUFFIX", ".md"),

        user_agent=getenv_str("SCRAPER_USER_AGENT", Config.user_agent),
        headless=getenv_bool("BROWSER_HEADLESS", True),
        max_pages_open=getenv_int("MAX_PAGES_OPEN", 8, 1, 256),
        page_close_timeout_ms=getenv_int("PAGE_CLOSE_TIMEOUT_MS", 1500, 100, 10000),
        browser_args_extra=getenv_csv("BROWSER_ARGS_EXTRA", ""),

        log_level=getenv_str("LOG_LEVEL", "INFO").upper(),
    )
    return cfg
