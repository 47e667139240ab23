"""
Tests for the file-based run state store
"""

import os
import threading
import pytest
from datetime import datetime, timedelta, timezone

from hourstats.errors import DuplicateRunError, RunNotFound, StoreUnavailable
from hourstats.models import AggregateSentiment, Item
from hourstats.storage.file_store import FileStore

NOW = datetime(2026, 2, 13, 10, 30, tzinfo=timezone.utc)


def create_test_item(external_id: str, likes: int = 0) -> Item:
    """Helper to create test item"""
    return Item(
        external_id=external_id,
        text="Test post",
        author_handle="tester.bsky.social",
        created_at=NOW - timedelta(minutes=1),
        like_count=likes
    )


@pytest.fixture
def store(tmp_path):
    return FileStore(str(tmp_path), retention_hours=48, retry_attempts=2, retry_backoff_seconds=0)


def test_create_run_initial_state(store):
    """測試新 run 的初始狀態"""
    run = store.create_run(30, now=NOW)

    assert run.window_end == NOW
    assert run.window_start == NOW - timedelta(minutes=30)
    assert run.cursor == ""
    assert run.has_more is True
    assert run.status == "running"
    assert run.stage == "collecting"
    assert run.expires_at == NOW + timedelta(hours=48)

    loaded = store.get_run(run.run_id)
    assert loaded.run_id == run.run_id
    assert loaded.items == []


def test_get_unknown_run(store):
    with pytest.raises(RunNotFound):
        store.get_run("run-missing")


def test_append_items_is_additive(store):
    """測試 append 只增加、不覆寫 (重複也保留，交給 aggregation 去重)"""
    run = store.create_run(30, now=NOW)

    store.append_items(run.run_id, [create_test_item("at://a/post/1")])
    store.append_items(run.run_id, [create_test_item("at://a/post/1"), create_test_item("at://a/post/2")])

    loaded = store.get_run(run.run_id)
    assert [item.external_id for item in loaded.items] == ["at://a/post/1", "at://a/post/1", "at://a/post/2"]
    assert loaded.total_items_retrieved == 3


def test_concurrent_appends_are_a_union(store):
    """測試多個 thread 同時 append 不會遺失資料"""
    run = store.create_run(30, now=NOW)

    def worker(worker_id):
        for batch in range(5):
            items = [create_test_item(f"at://w{worker_id}/post/{batch}-{i}") for i in range(10)]
            store.append_items(run.run_id, items)

    threads = [threading.Thread(target=worker, args=(w,)) for w in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    loaded = store.get_run(run.run_id)
    assert len(loaded.items) == 400
    assert len({item.external_id for item in loaded.items}) == 400
    assert loaded.total_items_retrieved == 400


def test_malformed_item_line_is_skipped(store):
    """測試寫到一半的最後一行會被略過"""
    run = store.create_run(30, now=NOW)
    store.append_items(run.run_id, [create_test_item("at://a/post/1")])

    with open(store._items_path(run.run_id), 'a', encoding='utf-8') as f:
        f.write('{"external_id": "at://a/po')

    assert len(store.get_run(run.run_id).items) == 1


def test_cursor_never_rewinds(store):
    """測試 cursor 不會倒退，has_more 不會從 False 回到 True"""
    run = store.create_run(30, now=NOW)

    store.advance_cursor(run.run_id, "2000", True)
    store.advance_cursor(run.run_id, "1000", True)
    assert store.get_run(run.run_id).cursor == "2000"

    store.advance_cursor(run.run_id, "3000", False, "boundary_crossed")
    store.advance_cursor(run.run_id, "4000", True, "max_rounds")

    loaded = store.get_run(run.run_id)
    assert loaded.cursor == "4000"
    assert loaded.has_more is False
    assert loaded.stop_reason == "boundary_crossed"


def test_idempotency_token(store):
    """測試同一個 token 不能建立第二個 run"""
    run = store.create_run(30, idempotency_token="30m-100", now=NOW)

    with pytest.raises(DuplicateRunError) as exc_info:
        store.create_run(30, idempotency_token="30m-100", now=NOW)

    assert exc_info.value.run_id == run.run_id
    assert store.find_run_by_token("30m-100").run_id == run.run_id
    assert store.find_run_by_token("30m-101") is None


def test_terminal_transitions(store):
    """測試 completed 為終態；failed 只能從 running 進入"""
    run = store.create_run(30, now=NOW)
    sentiment = AggregateSentiment(
        average_compound_score=0.1, net_sentiment_percent=10.0,
        category="neutral", mood_label="pleased", item_count=1
    )

    store.mark_failed(run.run_id, "round failed", step="collector")
    failed = store.get_run(run.run_id)
    assert failed.status == "failed"
    assert failed.last_error_step == "collector"
    assert failed.retry_count == 1
    assert failed.last_error_time is not None

    # operator retry
    store.mark_completed(run.run_id, [create_test_item("at://a/post/1")], sentiment)
    completed = store.get_run(run.run_id)
    assert completed.status == "completed"
    assert completed.outcome == "ranked"

    store.mark_failed(run.run_id, "late failure")
    store.mark_completed(run.run_id, [], None, outcome="no_items_in_window")

    final = store.get_run(run.run_id)
    assert final.status == "completed"
    assert final.outcome == "ranked"
    assert len(final.top_items) == 1


def test_set_stage_only_while_running(store):
    run = store.create_run(30, now=NOW)
    store.set_stage(run.run_id, "aggregating")
    assert store.get_run(run.run_id).stage == "aggregating"

    store.mark_failed(run.run_id, "boom")
    store.set_stage(run.run_id, "aggregating")
    assert store.get_run(run.run_id).stage == "failed"


def test_record_publish(store):
    run = store.create_run(30, now=NOW)
    store.record_publish(run.run_id, "at://did:plc:me/app.bsky.feed.post/xyz", "bafycid")

    loaded = store.get_run(run.run_id)
    assert loaded.post_uri == "at://did:plc:me/app.bsky.feed.post/xyz"
    assert loaded.post_cid == "bafycid"


def test_list_recent_runs_newest_first(store):
    older = store.create_run(30, now=NOW - timedelta(hours=1))
    newer = store.create_run(30, now=NOW)

    assert store.list_recent_runs(10) == [newer.run_id, older.run_id]
    assert store.list_recent_runs(1) == [newer.run_id]


def test_purge_expired(store):
    """測試超過 TTL 的 run 會被刪除 (連同 token)"""
    old = store.create_run(30, idempotency_token="old-tick", now=NOW - timedelta(hours=49))
    store.append_items(old.run_id, [create_test_item("at://a/post/1")])
    recent = store.create_run(30, now=NOW - timedelta(hours=2))

    purged = store.purge_expired(NOW)

    assert purged == 1
    assert store.list_recent_runs(10) == [recent.run_id]
    assert store.find_run_by_token("old-tick") is None
    with pytest.raises(RunNotFound):
        store.get_run(old.run_id)

    # token 可以再次使用
    store.create_run(30, idempotency_token="old-tick", now=NOW)


def test_retry_exhaustion_raises_store_unavailable(store, monkeypatch):
    """測試暫時性錯誤重試耗盡 → StoreUnavailable"""
    run = store.create_run(30, now=NOW)
    calls = []

    def broken_replace(src, dst):
        calls.append(dst)
        raise OSError("disk unavailable")

    monkeypatch.setattr(os, "replace", broken_replace)

    with pytest.raises(StoreUnavailable):
        store.record_publish(run.run_id, "at://x", "cid")

    assert len(calls) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
