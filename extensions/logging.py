from __future__ import annotations
import logging
from contextlib import contextmanager
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Iterator, List, Optional

# Per-task context: which URL is this asyncio task processing right now?
_CURRENT_URL: ContextVar[Optional[str]] = ContextVar("_CURRENT_URL", default=None)


def current_url() -> Optional[str]:
    return _CURRENT_URL.get()


@contextmanager
def url_context(url: str) -> Iterator[None]:
    """Attribute every log record emitted inside the block to ``url``."""
    token = _CURRENT_URL.set(url)
    try:
        yield
    finally:
        _CURRENT_URL.reset(token)


class _UrlContextFilter(logging.Filter):
    """
    Stamp the current URL onto each record as ``crawl_url`` ("-" outside a
    page pipeline). Concurrent pipelines interleave on one event loop; this
    keeps their lines attributable.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        if not hasattr(record, "crawl_url"):
            record.crawl_url = _CURRENT_URL.get() or "-"
        return True


class _OnlyUrlFilter(logging.Filter):
    """Pass only records emitted while some URL context is active."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        return getattr(record, "crawl_url", "-") != "-"


class LoggingExtension:
    def __init__(
        self,
        log_dir: Optional[Path] = None,
        *,
        global_level: int = logging.INFO,
        file_level: Optional[int] = None,  # default to global_level if None
        run_log_name: str = "crawl.log",
    ) -> None:
        self.log_dir = log_dir
        self.global_level = global_level
        self.file_level = file_level if file_level is not None else global_level
        self._context_filter = _UrlContextFilter()
        self._file_handlers: List[logging.Handler] = []

        self._install_console(self.global_level)
        if log_dir is not None:
            self._install_file(Path(log_dir) / run_log_name)

        # Make root permissive; rely on handler levels to filter.
        logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        # Remove any default handlers (e.g., from basicConfig)
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.addFilter(self._context_filter)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(ch)

    # ---------------- Files ----------------

    def _install_file(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, mode="a", encoding="utf-8")
        fh.setLevel(self.file_level)
        fh.addFilter(self._context_filter)
        fh.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] [%(crawl_url)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logging.getLogger().addHandler(fh)
        self._file_handlers.append(fh)

    def add_page_log(self, path: Path, level: int = logging.WARNING) -> None:
        """Extra file receiving only records raised inside a page pipeline."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, mode="a", encoding="utf-8")
        fh.setLevel(level)
        fh.addFilter(self._context_filter)
        fh.addFilter(_OnlyUrlFilter())
        fh.setFormatter(logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(crawl_url)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logging.getLogger().addHandler(fh)
        self._file_handlers.append(fh)

    # ---------------- Context helpers ----------------

    def set_url_context(self, url: str) -> Token:
        return _CURRENT_URL.set(url)

    def reset_url_context(self, token: Token) -> None:
        try:
            _CURRENT_URL.reset(token)
        except ValueError:
            # Token created in another context
            pass

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        root = logging.getLogger()
        for fh in self._file_handlers:
            root.removeHandler(fh)
            fh.flush()
            fh.close()
        self._file_handlers.clear()
