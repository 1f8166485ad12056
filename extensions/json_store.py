from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Union

from doccrawler.errors import FileOperationError
from doccrawler.utils import atomic_write_text

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


# ---------------------------------------------------------------------------
#  Blocking helpers (run via asyncio.to_thread)
# ---------------------------------------------------------------------------

def _read_json_sync(path: Path, default: Any) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("[json_store] %s missing; using default", path)
        return copy.deepcopy(default)
    except OSError as e:
        raise FileOperationError(f"Failed to read JSON file: {path} - {e}", str(path), "read_json") from e
    try:
        return json.loads(text)
    except ValueError as e:
        raise FileOperationError(f"Failed to parse JSON file: {path} - {e}", str(path), "read_json") from e


def _write_json_sync(path: Path, data: Any) -> None:
    try:
        atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))
    except (OSError, TypeError, ValueError) as e:
        raise FileOperationError(f"Failed to write JSON file: {path} - {e}", str(path), "write_json") from e


def is_recoverable_parse_error(err: BaseException) -> bool:
    """True when a read failed because the file held invalid JSON (not an I/O error)."""
    if isinstance(err, json.JSONDecodeError):
        return True
    return isinstance(err, FileOperationError) and isinstance(err.__cause__, ValueError)


class JsonFileStore:
    """
    JSON/text persistence with one asyncio.Lock per target file, so concurrent
    read-modify-write cycles on the same document never interleave. Every write
    goes to a temp file first and is renamed into place.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, path: Path) -> asyncio.Lock:
        key = str(path.resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ---------------------- JSON ----------------------

    async def read_json(self, path: PathLike, default: Any = None) -> Any:
        path = Path(path)
        async with self._lock_for(path):
            return await asyncio.to_thread(_read_json_sync, path, default)

    async def write_json(self, path: PathLike, data: Any) -> None:
        path = Path(path)
        async with self._lock_for(path):
            await asyncio.to_thread(_write_json_sync, path, data)
        logger.debug("[json_store] wrote %s", path)

    async def update_json(
        self,
        path: PathLike,
        default: Any,
        updater: Callable[[Any], Any],
        *,
        recover_invalid_json: bool = False,
    ) -> Any:
        """
        Serialised read-modify-write. ``updater`` receives the current document
        (or a copy of ``default``) and returns the new one; it may be async.
        With ``recover_invalid_json`` a corrupt file is replaced by the default.
        """
        path = Path(path)
        async with self._lock_for(path):
            try:
                current = await asyncio.to_thread(_read_json_sync, path, default)
            except FileOperationError as e:
                if not (recover_invalid_json and is_recoverable_parse_error(e)):
                    raise
                logger.warning("[json_store] corrupt JSON in %s; recovering with default (%s)", path, e)
                current = copy.deepcopy(default)

            nxt = updater(current)
            if inspect.isawaitable(nxt):
                nxt = await nxt
            await asyncio.to_thread(_write_json_sync, path, nxt)
            return nxt

    async def append_to_json_array(self, path: PathLike, item: Any) -> list:
        def _append(arr: Any) -> list:
            arr = list(arr) if isinstance(arr, list) else []
            arr.append(item)
            return arr

        return await self.update_json(path, [], _append)

    async def remove_from_json_array(self, path: PathLike, predicate: Callable[[Any], bool]) -> list:
        def _remove(arr: Any) -> list:
            return [x for x in (arr if isinstance(arr, list) else []) if not predicate(x)]

        return await self.update_json(path, [], _remove)

    # ---------------------- Text / FS ----------------------

    async def write_text(self, path: PathLike, content: str) -> None:
        path = Path(path)
        async with self._lock_for(path):
            try:
                await asyncio.to_thread(atomic_write_text, path, content)
            except OSError as e:
                raise FileOperationError(f"Failed to write text file: {path} - {e}", str(path), "write_text") from e
        logger.debug("[json_store] wrote text %s", path)

    async def ensure_directory(self, path: PathLike) -> None:
        path = Path(path)
        try:
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise FileOperationError(f"Failed to create directory: {path} - {e}", str(path), "mkdir") from e

    async def exists(self, path: PathLike) -> bool:
        return await asyncio.to_thread(Path(path).exists)
