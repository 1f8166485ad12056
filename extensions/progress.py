from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from doccrawler.errors import error_message
from doccrawler.events import EventBus

logger = logging.getLogger(__name__)

# Per-URL states
PENDING = "pending"
PROCESSING = "processing"
SUCCESS = "success"
FAILED = "failed"
PENDING_RETRY = "pending-retry"
SKIPPED = "skipped"
RETRYING = "retrying"


@dataclass
class CrawlRecord:
    url: str
    index: Optional[int] = None
    status: str = PENDING
    attempts: int = 0
    error: Optional[str] = None
    started_at: Optional[float] = None
    ended_at: Optional[float] = None

    @property
    def duration_s(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["duration_s"] = self.duration_s
        return d


class ProgressTracker(EventBus):
    """
    One CrawlRecord per URL. Counters are derived from record states, so a URL
    that fails, goes pending-retry and later succeeds is counted once, as a success.
    pending-retry is not terminal and is not counted as failed.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, log_every: int = 10):
        super().__init__()
        self._clock = clock
        self.log_every = max(1, log_every)
        self._records: Dict[str, CrawlRecord] = {}
        self.total = 0
        self.retried = 0
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self._settled = 0

    def _record(self, url: str) -> CrawlRecord:
        rec = self._records.get(url)
        if rec is None:
            rec = self._records[url] = CrawlRecord(url=url)
        return rec

    # ---------------------- Lifecycle ----------------------

    def start(self, total: int) -> None:
        self._records.clear()
        self.total = total
        self.retried = 0
        self._settled = 0
        self.started_at = self._clock()
        self.finished_at = None
        logger.info("[progress] crawl started: %d URL(s)", total)
        self.emit("start", {"total": total})

    def start_url(self, url: str, index: Optional[int] = None) -> None:
        rec = self._record(url)
        if index is not None:
            rec.index = index
        rec.status = PROCESSING
        rec.started_at = self._clock()
        rec.ended_at = None
        self.emit("url-start", {"url": url, "index": rec.index})

    def success(self, url: str) -> None:
        rec = self._record(url)
        rec.status = SUCCESS
        rec.error = None
        rec.attempts += 1
        rec.ended_at = self._clock()
        self._after_settle(url, "ok")
        self.emit("success", {"url": url, "stats": self.get_stats()})

    def failure(self, url: str, error: Any, will_retry: bool = False) -> None:
        rec = self._record(url)
        rec.status = PENDING_RETRY if will_retry else FAILED
        rec.error = error_message(error)
        rec.attempts += 1
        rec.ended_at = self._clock()
        self._after_settle(url, "retry later" if will_retry else "failed")
        self.emit("failure", {"url": url, "error": rec.error, "will_retry": will_retry, "stats": self.get_stats()})

    def skip(self, url: str, reason: str = "") -> None:
        rec = self._record(url)
        rec.status = SKIPPED
        rec.ended_at = self._clock()
        logger.debug("[progress] skip %s (%s)", url, reason or "already processed")
        self._after_settle(url, "skipped")
        self.emit("skip", {"url": url, "reason": reason, "stats": self.get_stats()})

    def retry(self, url: str, attempt: int) -> None:
        self.retried += 1
        rec = self._record(url)
        rec.status = RETRYING
        logger.warning("[progress] retry #%d: %s", attempt, url)
        self.emit("retry", {"url": url, "attempt": attempt})

    def _after_settle(self, url: str, outcome: str) -> None:
        self._settled += 1
        if self._settled % self.log_every == 0 or outcome != "ok":
            s = self.get_stats()
            logger.info(
                "[progress] %s %s | done=%d failed=%d pending-retry=%d skipped=%d / %d",
                outcome, url, s["succeeded"], s["failed"], s["pending_retry"], s["skipped"], s["total"],
            )

    def finish(self) -> Dict[str, Any]:
        self.finished_at = self._clock()
        summary = self.get_summary()
        logger.info(
            "[progress] crawl finished in %.2fs: %d succeeded, %d failed, %d pending retry, %d skipped",
            summary["duration_s"], summary["succeeded"], summary["failed"], summary["pending_retry"], summary["skipped"],
        )
        self.emit("finish", summary)
        return summary

    # ---------------------- Queries ----------------------

    def _count(self, status: str) -> int:
        return sum(1 for r in self._records.values() if r.status == status)

    def get_stats(self) -> Dict[str, Any]:
        succeeded = self._count(SUCCESS)
        failed = self._count(FAILED)
        pending_retry = self._count(PENDING_RETRY)
        skipped = self._count(SKIPPED)
        processed = succeeded + failed + skipped
        elapsed = (self._clock() - self.started_at) if self.started_at else 0.0
        eta = None
        remaining = max(0, self.total - processed - pending_retry)
        if processed and elapsed > 0 and remaining:
            eta = remaining / (processed / elapsed)
        return {
            "total": self.total,
            "processed": processed,
            "succeeded": succeeded,
            "failed": failed,
            "pending_retry": pending_retry,
            "skipped": skipped,
            "retried": self.retried,
            "elapsed_s": round(elapsed, 3),
            "eta_s": round(eta, 1) if eta is not None else None,
        }

    def get_summary(self) -> Dict[str, Any]:
        s = self.get_stats()
        end = self.finished_at or self._clock()
        duration = (end - self.started_at) if self.started_at else 0.0
        return {
            "total": s["total"],
            "succeeded": s["succeeded"],
            "failed": s["failed"],
            "pending_retry": s["pending_retry"],
            "skipped": s["skipped"],
            "retried": s["retried"],
            "success_rate": round(s["succeeded"] / s["total"] * 100, 2) if s["total"] else 0.0,
            "duration_s": round(duration, 3),
        }

    def get_record(self, url: str) -> Optional[CrawlRecord]:
        return self._records.get(url)

    def records(self) -> List[CrawlRecord]:
        return list(self._records.values())

    def failed_records(self) -> List[CrawlRecord]:
        return [r for r in self._records.values() if r.status in (FAILED, PENDING_RETRY)]
