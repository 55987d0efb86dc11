# tests/test_dirty.py

from __future__ import annotations

from align_planner.sync.dirty import DirtyTracker


def test_mark_is_idempotent_set_insert(dirty: DirtyTracker) -> None:
    dirty.mark_dirty("2024-03")
    dirty.mark_dirty("2024-03")
    dirty.mark_dirty("2024-04")

    assert dirty.dirty_keys() == {"2024-03", "2024-04"}
    assert list(dirty.snapshot()) == ["2024-03", "2024-04"]


def test_clear_removes_only_given_keys(dirty: DirtyTracker) -> None:
    for key in ("2024-01", "2024-02", "2024-03"):
        dirty.mark_dirty(key)

    assert dirty.clear_dirty(["2024-02", "2099-01"]) == 1
    assert dirty.dirty_keys() == {"2024-01", "2024-03"}


def test_clear_with_snapshot_keeps_keys_re_marked_after_it(dirty: DirtyTracker) -> None:
    dirty.mark_dirty("2024-03")
    dirty.mark_dirty("2024-04")
    snap = dirty.snapshot()

    # A mutation races with an in-flight push.
    dirty.mark_dirty("2024-04")
    dirty.mark_dirty("2024-05")

    assert dirty.clear_dirty(snap) == 1
    assert dirty.dirty_keys() == {"2024-04", "2024-05"}


def test_watermark_never_regresses_after_clear(dirty: DirtyTracker) -> None:
    dirty.mark_dirty("2024-03")
    before = dirty.snapshot().watermark
    dirty.clear_dirty(["2024-03"])

    assert dirty.snapshot().watermark == before
    dirty.mark_dirty("2024-03")
    assert dirty.snapshot().seqs["2024-03"] > before
