from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from doccrawler.browser import PlaywrightRenderer
from doccrawler.config import Config, load_config
from doccrawler.crawler import DocCrawler
from doccrawler.markdown import MarkdownSourceFetcher
from extensions.crawl_state import CrawlState
from extensions.json_store import JsonFileStore
from extensions.logging import LoggingExtension
from extensions.output_paths import OutputPaths

logger = logging.getLogger("run_crawl")

_exit_code = 0


# ----------------------------
# CLI parsing
# ----------------------------

def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Crawl a documentation site into one PDF or Markdown file per page (resumable)"
    )
    p.add_argument("--root-url", type=str, default=None, help="Documentation root (overrides ROOT_URL)")
    p.add_argument(
        "--entry",
        action="append",
        default=[],
        help="Section entry point URL; repeat for several sections (overrides SECTION_ENTRY_POINTS)",
    )
    p.add_argument("--output-dir", type=Path, default=None, help="Output directory (overrides OUTPUT_DIR)")
    p.add_argument("--concurrency", type=int, default=None, help="Max pages processed at once")
    p.add_argument("--format", choices=["pdf", "markdown"], default=None, help="Artifact format")
    p.add_argument(
        "--retry-failed",
        action="store_true",
        help="Re-run URLs that failed in this run once the main pass is done",
    )
    p.add_argument("--reset", action="store_true", help="Discard saved crawl state and start from scratch")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> Config:
    cfg = load_config()
    overrides: Dict[str, Any] = {}
    if args.root_url:
        overrides["root_url"] = args.root_url
    if args.entry:
        overrides["section_entry_points"] = tuple(args.entry)
    if args.output_dir is not None:
        overrides["output_dir"] = args.output_dir
    if args.concurrency is not None:
        overrides["concurrency"] = max(1, args.concurrency)
    if args.format:
        overrides["output_format"] = args.format
    if args.retry_failed:
        overrides["auto_retry_failed"] = True
        overrides["retry_failed_urls"] = True
    if args.log_level:
        overrides["log_level"] = args.log_level
    return replace(cfg, **overrides) if overrides else cfg


async def _reset_state(store: JsonFileStore, paths: OutputPaths) -> None:
    state = CrawlState(store, paths)
    state.reset()
    await state.save(force=True)
    logger.info("crawl state reset under %s", paths.metadata_dir)


# ----------------------------
# Main
# ----------------------------

async def main_async(args: argparse.Namespace) -> None:
    global _exit_code

    cfg = build_config(args)
    log_level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging_ext = LoggingExtension(cfg.metadata_dir, global_level=log_level)

    if not cfg.root_url and not cfg.target_urls:
        logger.error("no root URL configured; pass --root-url or set ROOT_URL")
        _exit_code = 2
        logging_ext.close()
        return

    store = JsonFileStore()
    paths = OutputPaths(cfg.output_dir, cfg.metadata_dir_name)
    if args.reset:
        await _reset_state(store, paths)

    md_source = MarkdownSourceFetcher(cfg) if cfg.markdown_source_enabled else None
    renderer = PlaywrightRenderer(cfg)
    try:
        await renderer.start()
        crawler = DocCrawler(cfg, renderer, store=store, paths=paths, markdown_source=md_source)
        summary = await crawler.run()
        if summary is None:
            logger.warning("nothing was crawled")
        elif summary["failed"]:
            logger.warning("%d URL(s) failed; re-run to retry them", summary["failed"])
            _exit_code = 1
        await crawler.state.export_report(paths.metadata_dir / "report.json")
    finally:
        await renderer.close()
        if md_source is not None:
            await md_source.aclose()
        logging_ext.close()


def main(argv: Optional[Iterable[str]] = None) -> None:
    args = parse_args(argv)
    try:
        asyncio.run(main_async(args))
    except KeyboardInterrupt:
        logger.warning("KeyboardInterrupt; exiting. Saved state allows resume.")
    if _exit_code != 0:
        raise SystemExit(_exit_code)


if __name__ == "__main__":
    main()
