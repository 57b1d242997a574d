from types import SimpleNamespace

import pytest

from gallery_extensions.checkpoint import SessionCheckpoint
from gallery_scraper.catalog_store import CatalogStore
from gallery_scraper.orchestrator import UnitOfWork

URLS = [f"https://templates.example.com/html/t{i}" for i in range(5)]


@pytest.fixture
def checkpoint(tmp_path):
    store = CatalogStore(tmp_path / "catalog.sqlite3")
    yield SessionCheckpoint(store)
    store.close()


def _state(**kw):
    base = dict(
        processed=0, successful=0, failed=0, skipped=0, total=len(URLS), batch_number=1,
        remaining=[], paused=[], error=None,
    )
    base.update(kw)
    return SimpleNamespace(**base)


@pytest.mark.asyncio
async def test_session_lifecycle(checkpoint):
    sid = await checkpoint.start_session(URLS, {"concurrency": 2}, batch_size=2)
    session = await checkpoint.get_session(sid)
    assert session["status"] == "running"
    assert session["total_batches"] == 3
    assert (await checkpoint.interrupted_session())["id"] == sid

    await checkpoint.update_session(sid, _state(processed=2, successful=2), status="paused")
    session = await checkpoint.get_session(sid)
    assert session["status"] == "paused"
    assert session["paused_at"] is not None
    assert session["processed_templates"] == 2

    await checkpoint.update_session(sid, _state(processed=5, successful=5), status="completed")
    assert await checkpoint.interrupted_session() is None


@pytest.mark.asyncio
async def test_batch_and_unit_rows(checkpoint):
    sid = await checkpoint.start_session(URLS, {})
    batch_id = await checkpoint.start_batch(sid, 1, URLS[:2])
    units = await checkpoint.batch_units(batch_id)
    assert [u["status"] for u in units] == ["pending", "pending"]

    unit = UnitOfWork(URLS[0], "t0")
    unit.enter("completed")
    unit.name = "T0"
    unit.row_id = 42
    await checkpoint.record_unit(batch_id, unit)
    await checkpoint.complete_batch(batch_id, {"processed": 1, "successful": 1}, status="partial")

    units = await checkpoint.batch_units(batch_id)
    assert units[0]["status"] == "completed"
    assert units[0]["result_template_id"] == 42
    assert units[0]["completed_at"] is not None
    assert units[1]["status"] == "pending"


@pytest.mark.asyncio
async def test_resume_point_round_trip(checkpoint):
    sid = await checkpoint.start_session(URLS, {})
    state = _state(
        processed=3, successful=1, failed=2, batch_number=2,
        remaining=URLS[3:], paused=[URLS[1]],
    )
    await checkpoint.save_resume_point(sid, state, last_batch_id=7)

    assert await checkpoint.resume_urls(sid) == [URLS[3], URLS[4], URLS[1]]
    progress = await checkpoint.load_progress(sid)
    assert progress == {
        "processed": 3, "successful": 1, "failed": 2, "skipped": 0, "batch_number": 2, "paused": 1,
    }

    # a later save without a batch id keeps the last one
    await checkpoint.save_resume_point(sid, _state(remaining=URLS[4:]))
    row = await checkpoint.store.query_one(
        "SELECT last_completed_batch_id FROM session_resume_points WHERE session_id = ?", (sid,)
    )
    assert row["last_completed_batch_id"] == 7


@pytest.mark.asyncio
async def test_resume_without_resume_point_uses_snapshot(checkpoint):
    sid = await checkpoint.start_session(URLS, {})
    batch_id = await checkpoint.start_batch(sid, 1, URLS[:2])
    done = UnitOfWork(URLS[0], "t0")
    done.enter("failed")
    await checkpoint.record_unit(batch_id, done)
    assert await checkpoint.resume_urls(sid) == URLS[1:]
    assert await checkpoint.resume_urls(9999) == []


@pytest.mark.asyncio
async def test_timed_out_unit_survives_resume_without_resume_point(checkpoint):
    sid = await checkpoint.start_session(URLS[:4], {})
    batch_id = await checkpoint.start_batch(sid, 1, URLS[:4])

    done = UnitOfWork(URLS[0], "t0")
    done.enter("completed")
    await checkpoint.record_unit(batch_id, done)

    timed_out = UnitOfWork(URLS[1], "t1")
    timed_out.enter("failed")
    timed_out.parked = True
    timed_out.error = "TimeoutError: Timeout 60000ms exceeded"
    await checkpoint.record_unit(batch_id, timed_out)

    units = {u["template_url"]: u for u in await checkpoint.batch_units(batch_id)}
    assert units[URLS[1]]["status"] == "paused"
    assert units[URLS[1]]["completed_at"] is None
    assert await checkpoint.resume_urls(sid) == [URLS[1], URLS[2], URLS[3]]
