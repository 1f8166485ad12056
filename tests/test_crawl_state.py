import json

import pytest

from extensions.crawl_state import CrawlState
from extensions.json_store import JsonFileStore
from extensions.output_paths import OutputPaths

A = "https://docs.example.com/a"
B = "https://docs.example.com/b"
C = "https://docs.example.com/c"


class Clock:
    def __init__(self, t=1_700_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


@pytest.fixture
def paths(tmp_path):
    return OutputPaths(tmp_path / "out")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def state(paths, clock):
    return CrawlState(JsonFileStore(), paths, clock=clock)


def test_processed_and_failed_stay_disjoint(state):
    state.mark_processed(A, "/out/000-a.pdf")
    state.mark_failed(A, RuntimeError("late failure"))
    assert state.is_failed(A) and not state.is_processed(A)
    assert state.output_path_for(A) is None

    state.mark_processed(A)
    assert state.is_processed(A) and not state.is_failed(A)


def test_url_index_is_bidirectional(state):
    state.set_url_index(A, 0)
    state.set_url_index(B, 1)
    assert state.get_index(B) == 1 and state.get_url(1) == B

    # moving A to index 1 evicts B's entry
    state.set_url_index(A, 1)
    assert state.get_url(1) == A
    assert state.get_url(0) is None
    assert state.get_index(B) is None


def test_image_failure_is_not_exclusive(state):
    state.mark_processed(A)
    state.mark_image_load_failure(A)
    assert state.is_processed(A) and state.has_image_load_failure(A)


@pytest.mark.asyncio
async def test_save_and_load_round_trip(state, paths, clock):
    state.set_start_time()
    for i, u in enumerate((A, B, C)):
        state.set_url_index(u, i)
    state.mark_processed(A, paths.output_dir / "000-a.pdf")
    state.mark_failed(B, "HTTP 404")
    state.mark_image_load_failure(A)
    assert await state.save(force=True)

    progress = json.loads(paths.metadata_path("progress").read_text())
    assert progress["processedUrls"] == [A]
    assert progress["failedUrls"] == [{"url": B, "error": "HTTP 404"}]
    assert progress["urlToIndex"] == {A: 0, B: 1, C: 2}
    assert progress["startTime"].startswith("2023-11-14T22:13:20")

    fresh = CrawlState(JsonFileStore(), paths, clock=clock)
    assert await fresh.load()
    assert fresh.is_processed(A)
    assert fresh.get_failed_urls() == [(B, "HTTP 404")]
    assert fresh.get_url(2) == C
    assert fresh.has_image_load_failure(A)
    assert fresh.output_path_for(A) == str(paths.output_dir / "000-a.pdf")
    assert fresh.start_time == clock.t


@pytest.mark.asyncio
async def test_save_is_debounced(state, clock):
    events = []
    state.on("saved", events.append)
    assert await state.save()
    clock.t += 1
    assert not await state.save()
    assert await state.save(force=True)
    clock.t += 10
    assert await state.save()
    assert len(events) == 3


@pytest.mark.asyncio
async def test_load_repairs_overlap_in_favour_of_failure(paths, clock):
    paths.metadata_dir.mkdir(parents=True)
    paths.metadata_path("progress").write_text(json.dumps({
        "processedUrls": [A, B],
        "failedUrls": [{"url": B, "error": "boom"}],
        "urlToIndex": {A: 0, B: 1},
        "startTime": 1_700_000_000_000,
    }))
    state = CrawlState(JsonFileStore(), paths, clock=clock)

    assert await state.load()
    assert state.is_processed(A)
    assert state.is_failed(B) and not state.is_processed(B)
    # epoch milliseconds from older files
    assert state.start_time == 1_700_000_000.0


@pytest.mark.asyncio
async def test_corrupt_file_leaves_state_empty(paths, clock):
    paths.metadata_dir.mkdir(parents=True)
    paths.metadata_path("progress").write_text("{not json")
    state = CrawlState(JsonFileStore(), paths, clock=clock)
    state.mark_processed(A)
    errors = []
    state.on("load-error", errors.append)

    assert await state.load() is False
    assert errors
    assert state.processed_urls() == set()
    assert state.get_stats()["processed"] == 0


@pytest.mark.asyncio
async def test_missing_files_load_as_empty(state):
    assert await state.load()
    assert state.get_stats()["total"] == 0


@pytest.mark.asyncio
async def test_save_error_is_reported_not_raised(tmp_path, clock):
    blocker = tmp_path / "blocker"
    blocker.write_text("file where a directory should be")
    state = CrawlState(JsonFileStore(), OutputPaths(blocker), clock=clock)
    errors = []
    state.on("save-error", errors.append)

    assert await state.save(force=True) is False
    assert errors


def test_stats(state, clock):
    state.set_start_time(clock.t - 12.5)
    for i, u in enumerate((A, B, C)):
        state.set_url_index(u, i)
    state.mark_processed(A)
    state.mark_failed(B, "x")

    stats = state.get_stats()
    assert stats["total"] == 3
    assert stats["processed"] == 1
    assert stats["failed"] == 1
    assert stats["pending"] == 1
    assert stats["success_rate"] == 33.33
    assert stats["elapsed"] == 12.5


def test_clear_failure_and_reset(state):
    state.mark_failed(A, "x")
    state.clear_failure(A)
    assert not state.is_failed(A)

    state.mark_processed(B)
    state.reset()
    assert state.processed_urls() == set()


@pytest.mark.asyncio
async def test_export_report(state, paths):
    state.mark_processed(A, "000-a.pdf")
    state.mark_failed(B, "HTTP 404")
    target = paths.output_dir / "report.json"

    report = await state.export_report(target)

    on_disk = json.loads(target.read_text())
    assert on_disk["failedUrls"] == [{"url": B, "error": "HTTP 404"}]
    assert on_disk["processedFiles"] == [{"url": A, "path": "000-a.pdf"}]
    assert report["summary"]["processed"] == 1


@pytest.mark.asyncio
async def test_auto_save_start_stop(state):
    state.start_auto_save(3600)
    task = state._auto_save_task
    assert task is not None and not task.done()
    state.stop_auto_save()
    assert state._auto_save_task is None


@pytest.mark.asyncio
async def test_debounced_save_still_repairs_overlap(state, clock):
    assert await state.save()
    state._processed.add(A)
    state._failed[A] = "stale failure"
    clock.t += 1

    assert not await state.save()
    assert state.is_failed(A) and not state.is_processed(A)


def test_pending_never_goes_negative(state):
    state.set_url_index(A, 0)
    state.mark_processed(A)
    state.mark_processed(B)
    state.mark_failed(C, "x")

    stats = state.get_stats()
    assert stats["total"] == 1
    assert stats["pending"] == 0


def test_repeated_marks_keep_latest_details(state):
    state.mark_processed(A, "/out/000-a.pdf")
    state.mark_processed(A, "/out/000-a-v2.pdf")
    assert state.processed_urls() == {A}
    assert state.output_path_for(A) == "/out/000-a-v2.pdf"

    state.mark_failed(B, "first")
    state.mark_failed(B, RuntimeError("second"))
    assert state.get_failed_urls() == [(B, "second")]
    assert state.get_stats()["processed"] == 1
    assert state.get_stats()["failed"] == 1
