"""
Tests for the run coordinator state machine
"""

import pytest
from datetime import datetime, timedelta, timezone

from hourstats.config import CollectorConfig, HourStatsConfig
from hourstats.collectors.parallel import ParallelCollector
from hourstats.coordinator import RunCoordinator
from hourstats.errors import PublishFailed, SearchError
from hourstats.models import Item, SearchPage
from hourstats.processing.aggregate import Aggregator
from hourstats.storage.file_store import FileStore

NOW = datetime(2026, 2, 13, 10, 30, tzinfo=timezone.utc)


class FakeSearchSource:
    def __init__(self, items, fail_all=False):
        self.items = items
        self.fail_all = fail_all
        self.calls = 0

    def search(self, query, cursor, page_size):
        self.calls += 1
        if self.fail_all:
            raise SearchError("upstream down")
        offset = int(cursor) if cursor else 0
        page = self.items[offset:offset + page_size]
        return SearchPage(items=page, has_more=offset + page_size < len(self.items))


class FakeScorer:
    def score(self, text):
        return -0.5 if "sad" in text else 0.5


class FakePublisher:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def publish(self, text, top_items):
        self.calls.append((text, top_items))
        if self.error:
            raise self.error
        return "at://did:plc:me/app.bsky.feed.post/abc", "bafypost"


def create_test_item(index: int, minutes_before_now: float, likes: int = 0, text: str = "happy day") -> Item:
    """Helper to create test item"""
    return Item(
        external_id=f"at://did:plc:u{index}/app.bsky.feed.post/{index}",
        content_id=f"cid{index}",
        text=text,
        author_handle=f"user{index}.bsky.social",
        created_at=NOW - timedelta(minutes=minutes_before_now),
        like_count=likes
    )


def window_items():
    """45 篇在時間窗內 + 10 篇在時間窗之前"""
    items = [create_test_item(i, minutes_before_now=i * 0.5, likes=i) for i in range(45)]
    items += [create_test_item(100 + i, minutes_before_now=31 + i) for i in range(10)]
    return items


def build_coordinator(tmp_path, source, publisher=None, dry_run=False, store=None):
    cfg = HourStatsConfig(
        window_minutes=30,
        top_n=3,
        dry_run=dry_run,
        collector=CollectorConfig(workers=2, page_size=10, round_retry_backoff_seconds=0)
    )
    store = store or FileStore(str(tmp_path), retry_attempts=1, retry_backoff_seconds=0)
    collector = ParallelCollector(source, store, cfg.collector, clock=lambda: NOW, sleep=lambda s: None)
    aggregator = Aggregator(store, FakeScorer(), cfg)
    coordinator = RunCoordinator(store, collector, aggregator, cfg, publisher=publisher, clock=lambda: NOW)
    return coordinator, store


def test_run_once_publishes(tmp_path):
    """測試完整 pipeline：collect → aggregate → publish"""
    publisher = FakePublisher()
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource(window_items()), publisher)

    outcome = coordinator.run_once()

    assert outcome.status == "completed"
    assert outcome.published
    assert outcome.post_uri == "at://did:plc:me/app.bsky.feed.post/abc"
    assert outcome.summary_text.startswith("Bluesky is #")
    assert "from 45 posts in 30 minutes" in outcome.summary_text
    assert len(publisher.calls) == 1

    run = store.get_run(outcome.run_id, include_items=False)
    assert run.post_uri == outcome.post_uri
    assert run.post_cid == "bafypost"
    assert run.stop_reason == "boundary_crossed"
    assert [item.like_count for item in run.top_items] == [44, 43, 42]


def test_stepwise_advance(tmp_path):
    """測試 scheduler 逐步呼叫 advance 的流程"""
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource(window_items()))

    run_id = coordinator.start_run()
    assert store.get_run(run_id).total_items_retrieved == 20
    assert not coordinator.check_completion(run_id)

    run = coordinator.advance(run_id)
    assert run.stage == "collecting"
    assert run.total_items_retrieved == 40

    run = coordinator.advance(run_id)
    assert coordinator.check_completion(run_id)
    assert run.stage == "aggregating"
    assert run.total_items_retrieved == 55

    run = coordinator.advance(run_id)
    assert run.status == "completed"
    assert run.aggregate_sentiment.item_count == 45

    # 終態後再 advance 不會改變任何東西
    assert coordinator.advance(run_id).updated_at == run.updated_at


def test_start_run_is_idempotent(tmp_path):
    """測試同一個 token 不會建立第二個 run"""
    source = FakeSearchSource(window_items())
    coordinator, store = build_coordinator(tmp_path, source)

    first = coordinator.start_run(idempotency_token="30m-42")
    calls_after_first = source.calls
    second = coordinator.start_run(idempotency_token="30m-42")

    assert first == second
    assert source.calls == calls_after_first
    assert coordinator.list_recent_runs(10) == [first]


def test_start_run_handles_token_race(tmp_path):
    """測試 lookup 之後被搶先建立 (store 丟 DuplicateRunError)"""

    class RacingStore(FileStore):
        def find_run_by_token(self, token):
            return None

    store = RacingStore(str(tmp_path), retry_attempts=1, retry_backoff_seconds=0)
    coordinator, _ = build_coordinator(tmp_path, FakeSearchSource(window_items()), store=store)

    first = coordinator.start_run(idempotency_token="30m-42")
    second = coordinator.start_run(idempotency_token="30m-42")

    assert first == second
    assert coordinator.list_recent_runs(10) == [first]


def test_collection_failure_marks_run_failed(tmp_path):
    """測試整輪失敗 → run failed，不發文"""
    publisher = FakePublisher()
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource([], fail_all=True), publisher)

    outcome = coordinator.run_once()

    assert outcome.status == "failed"
    assert not outcome.published
    assert outcome.summary_text is None
    assert publisher.calls == []

    summary = coordinator.get_run_summary(outcome.run_id)
    assert summary.status == "failed"
    assert "failed after retry" in summary.error_message
    assert store.get_run(outcome.run_id).last_error_step == "collector"


def test_dry_run_does_not_publish(tmp_path):
    publisher = FakePublisher()
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource(window_items()), publisher, dry_run=True)

    outcome = coordinator.run_once()

    assert outcome.status == "completed"
    assert outcome.summary_text is not None
    assert not outcome.published
    assert publisher.calls == []


def test_quiet_period_does_not_publish(tmp_path):
    """測試時間窗內沒有貼文 → quiet period"""
    publisher = FakePublisher()
    old_items = [create_test_item(i, minutes_before_now=40 + i) for i in range(5)]
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource(old_items), publisher)

    outcome = coordinator.run_once()

    assert outcome.status == "completed"
    assert outcome.result.is_quiet_period
    assert outcome.result.top_items == []
    assert outcome.summary_text is None
    assert publisher.calls == []


def test_publish_failure_keeps_run_completed(tmp_path):
    """測試發文失敗 → PublishFailed 往外拋，run 仍為 completed"""
    publisher = FakePublisher(error=PublishFailed("HTTP 500"))
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource(window_items()), publisher)

    run_id = coordinator.start_run()
    with pytest.raises(PublishFailed):
        coordinator.run_to_completion(run_id)

    run = store.get_run(run_id, include_items=False)
    assert run.status == "completed"
    assert run.post_uri is None


def test_published_run_is_not_republished(tmp_path):
    publisher = FakePublisher()
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource(window_items()), publisher)

    outcome = coordinator.run_once(idempotency_token="30m-7")
    again = coordinator.run_once(idempotency_token="30m-7")

    assert again.run_id == outcome.run_id
    assert again.published
    assert len(publisher.calls) == 1


def test_run_summary_fields(tmp_path):
    coordinator, store = build_coordinator(tmp_path, FakeSearchSource(window_items()), dry_run=True)
    outcome = coordinator.run_once()

    summary = coordinator.get_run_summary(outcome.run_id)

    assert summary.status == "completed"
    assert summary.stage == "completed"
    assert summary.item_count == 55
    assert len(summary.top_items) == 3
    assert summary.aggregate_sentiment.category == "positive"
    assert summary.outcome == "ranked"
    assert summary.window_end == NOW


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
