import asyncio

import pytest

from extensions.crawl_state import CrawlState
from extensions.json_store import JsonFileStore
from extensions.metadata import MetadataStore
from extensions.output_paths import METADATA_FILES, OutputPaths


@pytest.fixture
def meta(tmp_path):
    return MetadataStore(JsonFileStore(), OutputPaths(tmp_path / "out"))


@pytest.mark.asyncio
async def test_concurrent_title_saves_all_land(meta):
    await asyncio.gather(*(meta.save_article_title(i, f"Title {i}") for i in range(10)))
    titles = await meta.get_article_titles()
    assert titles == {str(i): f"Title {i}" for i in range(10)}


@pytest.mark.asyncio
async def test_title_save_recovers_corrupt_file(meta):
    path = meta.paths.metadata_path("article_titles")
    path.parent.mkdir(parents=True)
    path.write_text("{{{")
    await meta.save_article_title(3, "Three")
    assert await meta.get_article_titles() == {"3": "Three"}


@pytest.mark.asyncio
async def test_failed_links(meta):
    await meta.log_failed_link("https://d/a", 0, RuntimeError("HTTP 404"))
    await meta.log_failed_link("https://d/b", 1, "no title")
    links = await meta.get_failed_links()
    assert [(x["url"], x["error"]) for x in links] == [("https://d/a", "HTTP 404"), ("https://d/b", "no title")]

    await meta.remove_from_failed_links("https://d/a")
    assert [x["url"] for x in await meta.get_failed_links()] == ["https://d/b"]


@pytest.mark.asyncio
async def test_image_failures_are_deduplicated(meta):
    await meta.log_image_load_failure("https://d/a", 0)
    await meta.log_image_load_failure("https://d/a", 0)
    await meta.log_image_load_failure("https://d/b", 1)
    failures = await meta.get_image_load_failures()
    assert [(f["url"], f["index"]) for f in failures] == [("https://d/a", 0), ("https://d/b", 1)]


@pytest.mark.asyncio
async def test_section_structure(meta):
    assert await meta.get_section_structure() is None
    structure = {"sections": [{"index": 0, "title": "Guide", "entryUrl": "https://d/", "pages": []}], "urlToSection": {}}
    await meta.save_section_structure(structure)
    assert await meta.get_section_structure() == structure


def test_output_paths_layout(tmp_path):
    paths = OutputPaths(tmp_path / "out")
    assert paths.metadata_path("progress").name == METADATA_FILES["progress"]
    assert paths.metadata_path("other").name == "other.json"
    assert paths.artifact_path("https://d/docs/Getting Started/", 7).name == "007-getting-started.pdf"
    assert paths.artifact_path("https://d/", 12, "md") == tmp_path / "out" / "markdown" / "012-d.md"

    paths.ensure_dirs()
    assert paths.metadata_dir.is_dir()


@pytest.mark.asyncio
async def test_image_log_survives_state_save(meta):
    await meta.log_image_load_failure("https://d/a", 3, "2 of 5 image(s) did not load")
    state = CrawlState(meta.store, meta.paths)
    state.mark_image_load_failure("https://d/a")
    await state.save(force=True)

    failures = await meta.get_image_load_failures()
    assert [(f["url"], f["index"], f["error"]) for f in failures] == [
        ("https://d/a", 3, "2 of 5 image(s) did not load")
    ]
    assert meta.paths.metadata_path("image_load_log") != meta.paths.metadata_path("image_load_failures")
