from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from doccrawler.errors import error_message
from extensions.json_store import JsonFileStore
from extensions.output_paths import OutputPaths

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MetadataStore:
    """
    Side documents consumed by downstream tooling (TOC generation, reports).
    Title writes are read-modify-write under the store's per-file lock.
    """

    def __init__(self, store: JsonFileStore, paths: OutputPaths):
        self.store = store
        self.paths = paths

    # ---------------------- Titles ----------------------

    async def save_article_title(self, index: Any, title: str) -> None:
        def _set(titles: Any) -> Dict[str, str]:
            titles = dict(titles) if isinstance(titles, dict) else {}
            titles[str(index)] = title
            return titles

        await self.store.update_json(
            self.paths.metadata_path("article_titles"), {}, _set, recover_invalid_json=True
        )
        logger.info("[metadata] title [%s] %s", index, title)

    async def get_article_titles(self) -> Dict[str, str]:
        return await self.store.read_json(self.paths.metadata_path("article_titles"), {})

    # ---------------------- Sections ----------------------

    async def save_section_structure(self, structure: Dict[str, Any]) -> None:
        await self.store.write_json(self.paths.metadata_path("section_structure"), structure)
        logger.debug("[metadata] section structure saved (%d sections)", len(structure.get("sections") or []))

    async def get_section_structure(self) -> Optional[Dict[str, Any]]:
        return await self.store.read_json(self.paths.metadata_path("section_structure"), None)

    # ---------------------- Failed links ----------------------

    async def log_failed_link(self, url: str, index: Any, error: Any) -> None:
        message = error_message(error)
        await self.store.append_to_json_array(
            self.paths.metadata_path("failed_links"),
            {"url": url, "index": index, "error": message, "timestamp": _now()},
        )
        logger.warning("[metadata] failed link %s: %s", url, message)

    async def get_failed_links(self) -> List[Dict[str, Any]]:
        return await self.store.read_json(self.paths.metadata_path("failed_links"), [])

    async def remove_from_failed_links(self, url: str) -> None:
        await self.store.remove_from_json_array(
            self.paths.metadata_path("failed_links"), lambda item: isinstance(item, dict) and item.get("url") == url
        )
        logger.debug("[metadata] removed %s from failed links", url)

    # ---------------------- Image load failures ----------------------

    async def log_image_load_failure(self, url: str, index: Any, error: Any = None) -> None:
        added = False

        def _add(failures: Any) -> List[Dict[str, Any]]:
            nonlocal added
            failures = list(failures) if isinstance(failures, list) else []
            if not any(isinstance(f, dict) and f.get("url") == url and f.get("index") == index for f in failures):
                entry = {"url": url, "index": index, "timestamp": _now()}
                if error is not None:
                    entry["error"] = error_message(error)
                failures.append(entry)
                added = True
            return failures

        await self.store.update_json(
            self.paths.metadata_path("image_load_log"), [], _add, recover_invalid_json=True
        )
        if added:
            logger.warning("[metadata] image load failure recorded for %s", url)

    async def get_image_load_failures(self) -> List[Dict[str, Any]]:
        return await self.store.read_json(self.paths.metadata_path("image_load_log"), [])

