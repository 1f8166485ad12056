import asyncio
import json

import pytest

from doccrawler.errors import FileOperationError
from extensions.json_store import JsonFileStore, is_recoverable_parse_error


@pytest.mark.asyncio
async def test_read_missing_returns_copy_of_default(tmp_path):
    store = JsonFileStore()
    default = {"items": []}
    got = await store.read_json(tmp_path / "nope.json", default)
    got["items"].append(1)
    assert default == {"items": []}


@pytest.mark.asyncio
async def test_write_then_read(tmp_path):
    store = JsonFileStore()
    path = tmp_path / "nested" / "doc.json"
    await store.write_json(path, {"a": 1, "ü": "ß"})
    assert await store.read_json(path) == {"a": 1, "ü": "ß"}
    assert not list(path.parent.glob("*.tmp"))


@pytest.mark.asyncio
async def test_corrupt_json_raises_file_operation_error(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{oops")
    with pytest.raises(FileOperationError) as info:
        await JsonFileStore().read_json(path, {})
    assert is_recoverable_parse_error(info.value)
    assert info.value.details["operation"] == "read_json"


@pytest.mark.asyncio
async def test_update_recovers_invalid_json_only_when_asked(tmp_path):
    store = JsonFileStore()
    path = tmp_path / "titles.json"
    path.write_text("[broken")

    with pytest.raises(FileOperationError):
        await store.update_json(path, {}, lambda d: {**d, "0": "x"})

    result = await store.update_json(path, {}, lambda d: {**d, "0": "x"}, recover_invalid_json=True)
    assert result == {"0": "x"}
    assert json.loads(path.read_text()) == {"0": "x"}


@pytest.mark.asyncio
async def test_concurrent_updates_do_not_lose_writes(tmp_path):
    store = JsonFileStore()
    path = tmp_path / "counter.json"

    async def bump(doc):
        await asyncio.sleep(0)
        return {"n": doc.get("n", 0) + 1}

    await asyncio.gather(*(store.update_json(path, {}, bump) for _ in range(20)))
    assert json.loads(path.read_text()) == {"n": 20}


@pytest.mark.asyncio
async def test_array_helpers(tmp_path):
    store = JsonFileStore()
    path = tmp_path / "failed.json"
    await store.append_to_json_array(path, {"url": "a"})
    await store.append_to_json_array(path, {"url": "b"})
    remaining = await store.remove_from_json_array(path, lambda item: item["url"] == "a")
    assert remaining == [{"url": "b"}]


@pytest.mark.asyncio
async def test_text_and_directories(tmp_path):
    store = JsonFileStore()
    target = tmp_path / "md" / "000-intro.md"
    await store.write_text(target, "# Intro\n")
    assert await store.exists(target)
    assert target.read_text() == "# Intro\n"

    await store.ensure_directory(tmp_path / "x" / "y")
    assert (tmp_path / "x" / "y").is_dir()
