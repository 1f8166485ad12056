from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from doccrawler.errors import error_message
from doccrawler.events import EventBus
from extensions.json_store import JsonFileStore
from extensions.output_paths import OutputPaths

logger = logging.getLogger(__name__)

SAVE_DEBOUNCE_S = 5.0
DEFAULT_AUTO_SAVE_INTERVAL_S = 30.0


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _parse_ts(raw: Any) -> Optional[float]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        # Epoch milliseconds from older state files
        return raw / 1000.0 if raw > 1e11 else float(raw)
    if isinstance(raw, str):
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    raise ValueError(f"unrecognised timestamp: {raw!r}")


class CrawlState(EventBus):
    """
    Durable per-URL outcome record for a crawl; the basis of resume.

    A URL is never both processed and failed. Marks keep that true as they
    happen, and every load()/save() re-checks it (failure wins) to repair
    files written by older or crashed runs.

    Files under the metadata directory:
      progress.json           {processedUrls, failedUrls:[{url,error}], urlToIndex, startTime, savedAt, stats}
      imageLoadFailures.json  [{url, timestamp}]
      urlMapping.json         {url: {path, timestamp}}
    """

    def __init__(
        self,
        store: JsonFileStore,
        paths: OutputPaths,
        *,
        clock: Callable[[], float] = time.time,
        debounce_s: float = SAVE_DEBOUNCE_S,
    ):
        super().__init__()
        self._store = store
        self._paths = paths
        self._clock = clock
        self._debounce_s = debounce_s

        self._processed: Set[str] = set()
        self._failed: Dict[str, str] = {}
        self._url_to_index: Dict[str, int] = {}
        self._index_to_url: Dict[int, str] = {}
        self._image_failures: Set[str] = set()
        self._url_to_output: Dict[str, str] = {}
        self._start_time: Optional[float] = None
        self._last_persist_time: Optional[float] = None

        self._auto_save_task: Optional[asyncio.Task] = None

    # ---------------------- Paths ----------------------

    @property
    def progress_path(self) -> Path:
        return self._paths.metadata_path("progress")

    @property
    def image_failures_path(self) -> Path:
        return self._paths.metadata_path("image_load_failures")

    @property
    def url_mapping_path(self) -> Path:
        return self._paths.metadata_path("url_mapping")

    # ---------------------- Invariant ----------------------

    def _enforce_disjoint(self, source: str) -> int:
        overlap = [u for u in self._failed if u in self._processed]
        if not overlap:
            return 0
        for u in overlap:
            self._processed.discard(u)
            self._url_to_output.pop(u, None)
        logger.warning(
            "[state] %d URL(s) recorded as both processed and failed (%s); keeping the failure. e.g. %s",
            len(overlap), source, overlap[:5],
        )
        return len(overlap)

    def _clear_fields(self) -> None:
        self._processed = set()
        self._failed = {}
        self._url_to_index = {}
        self._index_to_url = {}
        self._image_failures = set()
        self._url_to_output = {}
        self._start_time = None
        self._last_persist_time = None

    # ---------------------- Load / Save ----------------------

    async def load(self) -> bool:
        """Hydrate from disk. Returns False (state left empty) when the files are unreadable."""
        logger.info("[state] loading from %s", self._paths.metadata_dir)
        try:
            progress = await self._store.read_json(
                self.progress_path,
                {"processedUrls": [], "failedUrls": [], "urlToIndex": {}, "startTime": None},
            )
            image_failures = await self._store.read_json(self.image_failures_path, [])
            url_mapping = await self._store.read_json(self.url_mapping_path, {})

            # Parse everything into locals first; commit only if all of it is well-formed.
            if not isinstance(progress, dict):
                raise ValueError("progress document is not an object")
            processed = {str(u) for u in progress.get("processedUrls") or []}
            failed: Dict[str, str] = {}
            for entry in progress.get("failedUrls") or []:
                if isinstance(entry, dict):
                    failed[str(entry["url"])] = str(entry.get("error") or "")
                else:
                    url, err = entry
                    failed[str(url)] = str(err)
            url_to_index = {str(u): int(i) for u, i in (progress.get("urlToIndex") or {}).items()}
            start_time = _parse_ts(progress.get("startTime"))
            images = {str(e["url"]) if isinstance(e, dict) else str(e) for e in image_failures or []}
            outputs = {
                str(u): str(v["path"] if isinstance(v, dict) else v)
                for u, v in (url_mapping or {}).items()
            }
        except Exception as e:
            logger.warning("[state] load failed, starting from empty state: %s", e)
            self._clear_fields()
            self.emit("load-error", e)
            return False

        self._processed = processed
        self._failed = failed
        self._url_to_index = url_to_index
        self._index_to_url = {i: u for u, i in url_to_index.items()}
        self._image_failures = images
        self._url_to_output = outputs
        self._start_time = start_time
        self._enforce_disjoint("load")

        logger.info("[state] loaded: %d processed, %d failed", len(self._processed), len(self._failed))
        self.emit("loaded", self.get_stats())
        return True

    async def save(self, force: bool = False) -> bool:
        """Persist state. Without ``force`` a call within the debounce window is a no-op."""
        self._enforce_disjoint("save")
        now = self._clock()
        if (
            not force
            and self._last_persist_time is not None
            and now - self._last_persist_time < self._debounce_s
        ):
            return False

        saved_at = datetime.now(timezone.utc).isoformat()
        progress = {
            "processedUrls": sorted(self._processed),
            "failedUrls": [{"url": u, "error": err} for u, err in self._failed.items()],
            "urlToIndex": dict(self._url_to_index),
            "startTime": _iso(self._start_time),
            "savedAt": saved_at,
            "stats": self.get_stats(),
        }
        image_failures = [{"url": u, "timestamp": saved_at} for u in sorted(self._image_failures)]
        url_mapping = {u: {"path": p, "timestamp": saved_at} for u, p in self._url_to_output.items()}

        try:
            await self._store.write_json(self.progress_path, progress)
            await self._store.write_json(self.image_failures_path, image_failures)
            await self._store.write_json(self.url_mapping_path, url_mapping)
        except Exception as e:
            logger.error("[state] save failed: %s", e)
            self.emit("save-error", e)
            return False

        self._last_persist_time = now
        logger.debug("[state] saved (%d processed, %d failed)", len(self._processed), len(self._failed))
        self.emit("saved", progress["stats"])
        return True

    # ---------------------- Auto-save ----------------------

    def start_auto_save(self, interval_s: float = DEFAULT_AUTO_SAVE_INTERVAL_S) -> None:
        if self._auto_save_task is not None and not self._auto_save_task.done():
            return
        if interval_s <= 0:
            return
        self._auto_save_task = asyncio.get_running_loop().create_task(
            self._auto_save_loop(interval_s), name="crawl-state-autosave"
        )
        logger.info("[state] auto-save every %.0fs", interval_s)

    async def _auto_save_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.save()
            except Exception:
                logger.exception("[state] auto-save failed")

    def stop_auto_save(self) -> None:
        task, self._auto_save_task = self._auto_save_task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info("[state] auto-save stopped")

    # ---------------------- Mutations ----------------------

    def set_url_index(self, url: str, index: int) -> None:
        old_index = self._url_to_index.get(url)
        if old_index is not None and self._index_to_url.get(old_index) == url:
            del self._index_to_url[old_index]
        old_url = self._index_to_url.get(index)
        if old_url is not None and old_url != url:
            self._url_to_index.pop(old_url, None)
        self._url_to_index[url] = index
        self._index_to_url[index] = url

    def mark_processed(self, url: str, output_path: Optional[Union[str, Path]] = None) -> None:
        self._processed.add(url)
        self._failed.pop(url, None)
        if output_path:
            self._url_to_output[url] = str(output_path)
        self.emit("url-processed", {"url": url, "total": len(self._processed)})

    def mark_failed(self, url: str, error: Any) -> None:
        message = error_message(error)
        self._processed.discard(url)
        self._url_to_output.pop(url, None)
        self._failed[url] = message
        self.emit("url-failed", {"url": url, "error": message})

    def mark_image_load_failure(self, url: str) -> None:
        self._image_failures.add(url)
        self.emit("image-load-failure", {"url": url})

    def clear_failure(self, url: str) -> None:
        self._failed.pop(url, None)
        self._processed.discard(url)

    def set_start_time(self, ts: Optional[float] = None) -> None:
        self._start_time = self._clock() if ts is None else ts

    def reset(self) -> None:
        self._clear_fields()
        self.emit("reset")

    # ---------------------- Queries ----------------------

    def is_processed(self, url: str) -> bool:
        return url in self._processed

    def is_failed(self, url: str) -> bool:
        return url in self._failed

    def get_index(self, url: str) -> Optional[int]:
        return self._url_to_index.get(url)

    def get_url(self, index: int) -> Optional[str]:
        return self._index_to_url.get(index)

    def get_failed_urls(self) -> List[Tuple[str, str]]:
        return list(self._failed.items())

    def has_image_load_failure(self, url: str) -> bool:
        return url in self._image_failures

    def output_path_for(self, url: str) -> Optional[str]:
        return self._url_to_output.get(url)

    def processed_urls(self) -> Set[str]:
        return set(self._processed)

    @property
    def start_time(self) -> Optional[float]:
        return self._start_time

    @property
    def last_persist_time(self) -> Optional[float]:
        return self._last_persist_time

    def get_stats(self) -> Dict[str, Any]:
        total = len(self._url_to_index)
        processed = len(self._processed)
        failed = len(self._failed)
        return {
            "total": total,
            "processed": processed,
            "failed": failed,
            "pending": max(0, total - processed - failed),
            "image_load_failures": len(self._image_failures),
            "success_rate": round(processed / total * 100, 2) if total else 0.0,
            "start_time": _iso(self._start_time),
            "elapsed": round(self._clock() - self._start_time, 3) if self._start_time else 0.0,
        }

    async def export_report(self, path: Union[str, Path]) -> Dict[str, Any]:
        report = {
            "summary": self.get_stats(),
            "failedUrls": [{"url": u, "error": err} for u, err in self._failed.items()],
            "imageLoadFailures": sorted(self._image_failures),
            "processedFiles": [{"url": u, "path": p} for u, p in self._url_to_output.items()],
            "generatedAt": datetime.now(timezone.utc).isoformat(),
        }
        await self._store.write_json(path, report)
        logger.info("[state] report exported to %s", path)
        return report
