# tests/test_sync_engine.py

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from align_planner.errors import StorageError
from align_planner.sync.codec import deserialize_shard, serialize_shard
from align_planner.sync.engine import FailureReason, SyncOutcome
from align_planner.tasks.task_models import Task

from .fakes import InMemoryRemoteStore

MARCH = "/align/data/tasks_2024-03.json"
APRIL = "/align/data/tasks_2024-04.json"
MAY = "/align/data/tasks_2024-05.json"


def _task(title: str, start: datetime, **kw) -> Task:
    return Task(title=title, start_time=start, end_time=start + timedelta(hours=1), **kw)


def _titles(tasks: list[Task]) -> list[str]:
    return sorted(t.title for t in tasks)


@pytest.mark.asyncio
async def test_push_creates_directories_and_clears_dirty(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("A", datetime(2024, 3, 15, 9, 0, tzinfo=UTC)))

    result = await dev.engine.push()

    assert result.outcome == SyncOutcome.SUCCESS
    assert {"/align", "/align/data"} <= remote.dirs
    assert _titles(deserialize_shard(remote.files[MARCH])) == ["A"]
    # First push of a device also uploads its settings.
    assert result.config_written
    assert "/align/config.json" in remote.files
    assert dev.dirty.dirty_keys() == set()
    assert dev.engine.status().last_sync_time == result.last_sync_time
    assert remote.closed == 1


@pytest.mark.asyncio
async def test_push_with_nothing_dirty_makes_no_remote_calls(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))
    assert (await dev.engine.push()).ok
    remote.calls.clear()

    result = await dev.engine.push()

    assert result.outcome == SyncOutcome.NOTHING_TO_SYNC
    assert remote.calls == []
    assert result.summary() == "Nothing to sync."


@pytest.mark.asyncio
async def test_pushing_unchanged_shard_twice_is_idempotent(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))
    dev.store.add_task(_task("B", datetime(2024, 3, 16, tzinfo=UTC)))

    await dev.engine.push()
    first = remote.files[MARCH]
    dev.dirty.mark_dirty("2024-03")
    await dev.engine.push()

    assert remote.files[MARCH] == first
    assert deserialize_shard(first) == deserialize_shard(remote.files[MARCH])


@pytest.mark.asyncio
async def test_config_only_pushed_when_changed(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))
    await dev.engine.push()

    dev.store.add_task(_task("B", datetime(2024, 3, 16, tzinfo=UTC)))
    remote.calls.clear()
    result = await dev.engine.push()
    assert not result.config_written
    assert "/align/config.json" not in remote.calls_of("put")

    dev.store.update_work_schedule(work_start_time="10:00")
    result = await dev.engine.push()
    assert result.outcome == SyncOutcome.SUCCESS
    assert result.config_written
    assert result.shards_written == []
    assert dev.dirty.dirty_keys() == set()


@pytest.mark.asyncio
async def test_partial_push_failure_keeps_failed_shard_dirty(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("Jan", datetime(2024, 1, 10, tzinfo=UTC)))
    assert (await dev.engine.push()).ok
    last_sync = dev.engine.status().last_sync_time

    dev.store.add_task(_task("Apr", datetime(2024, 4, 10, tzinfo=UTC)))
    dev.store.add_task(_task("May", datetime(2024, 5, 10, tzinfo=UTC)))
    remote.fail_put.add(MAY)

    result = await dev.engine.push()

    assert result.outcome == SyncOutcome.FAILED
    assert result.reason == FailureReason.NETWORK_ERROR
    assert result.shards_written == ["2024-04"]
    assert result.shards_pending == ["2024-05"]
    assert dev.dirty.dirty_keys() == {"2024-05"}
    assert dev.engine.status().last_sync_time == last_sync
    assert not dev.engine.syncing

    # Retry succeeds once the remote recovers.
    remote.fail_put.clear()
    retry = await dev.engine.push()
    assert retry.shards_written == ["2024-05"]
    assert dev.dirty.dirty_keys() == set()


@pytest.mark.asyncio
async def test_mutation_during_push_stays_dirty(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")
    task = dev.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))
    remote.put_gate = asyncio.Event()

    push = asyncio.create_task(dev.engine.push())
    await remote.put_started.wait()
    dev.store.update_task(task.id, title="A (edited)")
    remote.put_gate.set()
    result = await push

    assert result.outcome == SyncOutcome.SUCCESS
    assert result.shards_pending == ["2024-03"]
    assert dev.dirty.dirty_keys() == {"2024-03"}
    # The uploaded snapshot predates the edit.
    assert _titles(deserialize_shard(remote.files[MARCH])) == ["A"]


@pytest.mark.asyncio
async def test_second_device_pull_receives_task(make_device) -> None:
    d1 = make_device("d1")
    d1.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))
    assert (await d1.engine.push()).ok

    d2 = make_device("d2")
    assert d2.engine.status().last_sync_time is None
    result = await d2.engine.pull()

    assert result.outcome == SyncOutcome.SUCCESS
    assert result.shards_downloaded == ["2024-03"]
    march = d2.store.tasks_in_shard("2024-03")
    assert [t.title for t in march] == ["A"]
    assert d2.store.count_tasks() == 1
    assert d2.dirty.dirty_keys() == set()


@pytest.mark.asyncio
async def test_last_write_wins_per_shard(make_device) -> None:
    d1 = make_device("d1")
    d1.store.add_task(_task("A", datetime(2024, 3, 1, tzinfo=UTC)))
    d1.store.add_task(_task("B", datetime(2024, 3, 2, tzinfo=UTC)))
    assert (await d1.engine.push()).ok

    d2 = make_device("d2")
    d2.store.add_task(_task("C", datetime(2024, 3, 3, tzinfo=UTC)))
    assert (await d2.engine.push()).ok

    result = await d1.engine.pull()

    assert result.shards_downloaded == ["2024-03"]
    assert _titles(d1.store.tasks_in_shard("2024-03")) == ["C"]


@pytest.mark.asyncio
async def test_pull_only_downloads_newer_shards(make_device, remote: InMemoryRemoteStore, clock) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("Mar", datetime(2024, 3, 1, tzinfo=UTC)))
    dev.store.add_task(_task("Apr", datetime(2024, 4, 1, tzinfo=UTC)))
    await dev.engine.push()
    remote.calls.clear()

    up_to_date = await dev.engine.pull()
    assert up_to_date.outcome == SyncOutcome.UP_TO_DATE
    assert [p for p in remote.calls_of("get") if p.startswith("/align/data/")] == []

    # Another device rewrote April after our last sync.
    remote.mtimes[APRIL] = clock()
    remote.calls.clear()
    result = await dev.engine.pull()

    assert result.outcome == SyncOutcome.SUCCESS
    assert result.shards_downloaded == ["2024-04"]
    assert [p for p in remote.calls_of("get") if p.startswith("/align/data/")] == [APRIL]


@pytest.mark.asyncio
async def test_pull_from_empty_remote_is_up_to_date(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")

    result = await dev.engine.pull()

    assert result.outcome == SyncOutcome.UP_TO_DATE
    assert result.summary() == "Already up to date."
    assert dev.engine.status().last_sync_time is not None


@pytest.mark.asyncio
async def test_pull_skips_broken_shard_and_continues(make_device, remote: InMemoryRemoteStore) -> None:
    d1 = make_device("d1")
    d1.store.add_task(_task("Mar", datetime(2024, 3, 1, tzinfo=UTC)))
    d1.store.add_task(_task("Apr", datetime(2024, 4, 1, tzinfo=UTC)))
    d1.store.add_task(_task("May", datetime(2024, 5, 1, tzinfo=UTC)))
    await d1.engine.push()
    remote.files[MARCH] = b"{ not json"
    remote.fail_get.add(MAY)

    d2 = make_device("d2")
    result = await d2.engine.pull()

    assert result.outcome == SyncOutcome.SUCCESS
    assert result.shards_downloaded == ["2024-04"]
    assert sorted(result.shards_skipped) == ["2024-03", "2024-05"]
    assert _titles(d2.store.get_all_tasks()) == ["Apr"]


@pytest.mark.asyncio
async def test_pull_applies_remote_config(make_device) -> None:
    d1 = make_device("d1")
    d1.store.update_work_schedule(work_start_time="07:30")
    assert (await d1.engine.push()).config_written

    d2 = make_device("d2")
    result = await d2.engine.pull()

    assert result.config_applied
    assert d2.store.get_work_schedule().work_start_time == "07:30"


@pytest.mark.asyncio
async def test_pull_listing_failure_fails_and_keeps_last_sync(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1")
    remote.fail_list = True

    result = await dev.engine.pull()

    assert result.outcome == SyncOutcome.FAILED
    assert result.reason == FailureReason.NETWORK_ERROR
    assert dev.engine.status().last_sync_time is None


@pytest.mark.asyncio
async def test_push_during_pull_is_rejected(make_device, remote: InMemoryRemoteStore) -> None:
    d1 = make_device("d1")
    d1.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))
    await d1.engine.push()

    d2 = make_device("d2")
    d2.store.add_task(_task("Local", datetime(2024, 6, 1, tzinfo=UTC)))
    remote.list_gate = asyncio.Event()

    pull = asyncio.create_task(d2.engine.pull())
    await remote.list_started.wait()
    assert d2.engine.syncing

    rejected = await d2.engine.push()
    assert rejected.outcome == SyncOutcome.FAILED
    assert rejected.reason == FailureReason.SYNC_IN_PROGRESS
    assert "in progress" in rejected.summary()

    remote.list_gate.set()
    result = await pull

    assert result.outcome == SyncOutcome.SUCCESS
    assert result.shards_downloaded == ["2024-03"]
    assert not d2.engine.syncing
    assert "2024-06" in d2.dirty.dirty_keys()


@pytest.mark.asyncio
async def test_local_edit_during_pull_is_kept(make_device, remote: InMemoryRemoteStore) -> None:
    d1 = make_device("d1")
    d1.store.add_task(_task("Remote", datetime(2024, 3, 1, tzinfo=UTC)))
    await d1.engine.push()

    d2 = make_device("d2")
    remote.list_gate = asyncio.Event()
    pull = asyncio.create_task(d2.engine.pull())
    await remote.list_started.wait()
    d2.store.add_task(_task("Typed during pull", datetime(2024, 3, 20, tzinfo=UTC)))
    remote.list_gate.set()
    result = await pull

    assert result.shards_kept_local == ["2024-03"]
    assert _titles(d2.store.tasks_in_shard("2024-03")) == ["Typed during pull"]
    assert "2024-03" in d2.dirty.dirty_keys()


@pytest.mark.asyncio
async def test_pull_replaces_month_touched_by_earlier_shard(make_device) -> None:
    d1 = make_device("d1")
    moved = d1.store.add_task(_task("X", datetime(2024, 4, 10, tzinfo=UTC)))
    assert (await d1.engine.push()).ok

    d2 = make_device("d2")
    assert (await d2.engine.pull()).ok
    d2.store.move_task(moved.id, datetime(2024, 3, 10, tzinfo=UTC), datetime(2024, 3, 10, 1, tzinfo=UTC))
    d2.store.add_task(_task("Y", datetime(2024, 4, 20, tzinfo=UTC)))
    assert (await d2.engine.push()).shards_written == ["2024-03", "2024-04"]

    # March brings X over from local April; April must still be replaced in the same pull.
    result = await d1.engine.pull()

    assert result.shards_downloaded == ["2024-03", "2024-04"]
    assert result.shards_kept_local == []
    assert _titles(d1.store.tasks_in_shard("2024-03")) == ["X"]
    assert _titles(d1.store.tasks_in_shard("2024-04")) == ["Y"]
    assert d1.dirty.dirty_keys() == set()

    assert (await d1.engine.push()).outcome == SyncOutcome.NOTHING_TO_SYNC
    await d2.engine.pull()
    assert _titles(d2.store.tasks_in_shard("2024-04")) == ["Y"]


@pytest.mark.asyncio
async def test_pull_keeps_task_filed_under_wrong_month(make_device, remote: InMemoryRemoteStore) -> None:
    remote.dirs.update({"/align", "/align/data"})
    misfiled = _task("Misfiled", datetime(2024, 4, 2, tzinfo=UTC))
    remote.files[MARCH] = serialize_shard([misfiled])
    remote.files[APRIL] = serialize_shard([_task("Z", datetime(2024, 4, 5, tzinfo=UTC))])

    dev = make_device("d1")
    result = await dev.engine.pull()

    assert result.shards_downloaded == ["2024-03", "2024-04"]
    assert _titles(dev.store.tasks_in_shard("2024-04")) == ["Misfiled", "Z"]
    # April's remote file does not list the task yet.
    assert dev.dirty.dirty_keys() == {"2024-04"}


@pytest.mark.asyncio
async def test_pull_skips_shard_with_overflowing_number(make_device, remote: InMemoryRemoteStore) -> None:
    d1 = make_device("d1")
    d1.store.add_task(_task("Mar", datetime(2024, 3, 1, tzinfo=UTC), estimated_duration=12345))
    d1.store.add_task(_task("Apr", datetime(2024, 4, 1, tzinfo=UTC)))
    await d1.engine.push()
    doc = json.loads(remote.files[MARCH])
    remote.files[MARCH] = json.dumps(doc).replace('"estimatedDuration": 12345', '"estimatedDuration": 1e400').encode()

    d2 = make_device("d2")
    result = await d2.engine.pull()

    assert result.outcome == SyncOutcome.SUCCESS
    assert result.shards_skipped == ["2024-03"]
    assert result.shards_downloaded == ["2024-04"]
    assert _titles(d2.store.get_all_tasks()) == ["Apr"]


@pytest.mark.asyncio
async def test_missing_credentials_refuse_without_network(make_device, remote: InMemoryRemoteStore) -> None:
    dev = make_device("d1", configured=False)
    dev.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))

    push = await dev.engine.push()
    pull = await dev.engine.pull()

    assert push.reason == FailureReason.CONFIG_MISSING
    assert pull.reason == FailureReason.CONFIG_MISSING
    assert remote.calls == []
    assert dev.dirty.dirty_keys() == {"2024-03"}


@pytest.mark.asyncio
async def test_storage_error_propagates_and_releases_guard(make_device, monkeypatch) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))

    def boom(_key: str):
        raise StorageError("disk full")

    monkeypatch.setattr(dev.store, "tasks_in_shard", boom)

    with pytest.raises(StorageError):
        await dev.engine.push()
    assert not dev.engine.syncing


@pytest.mark.asyncio
async def test_unexpected_error_is_reported(make_device, monkeypatch) -> None:
    dev = make_device("d1")
    dev.store.add_task(_task("A", datetime(2024, 3, 15, tzinfo=UTC)))

    def boom(_key: str):
        raise RuntimeError("bug")

    monkeypatch.setattr(dev.store, "tasks_in_shard", boom)
    result = await dev.engine.push()

    assert result.reason == FailureReason.UNEXPECTED
    assert "RuntimeError" in result.message
    assert not dev.engine.syncing
