"""
Tests for deduplication logic
"""

import pytest
from datetime import datetime, timezone

from hourstats.models import Item
from hourstats.processing.dedupe import deduplicate_items


def create_test_item(
    external_id: str,
    likes: int = 0,
    reposts: int = 0,
    replies: int = 0,
    text: str = "Test post",
    created_at: datetime = None
) -> Item:
    """Helper to create test item"""
    if created_at is None:
        created_at = datetime.now(timezone.utc)

    return Item(
        external_id=external_id,
        content_id=f"cid-{external_id}",
        text=text,
        author_handle="tester.bsky.social",
        created_at=created_at,
        like_count=likes,
        repost_count=reposts,
        reply_count=replies
    )


def test_dedupe_keeps_highest_engagement():
    """測試 engagement 10 與 20 → 保留 20"""
    item1 = create_test_item("at://a/post/1", likes=10, text="low")
    item2 = create_test_item("at://a/post/1", likes=15, reposts=3, replies=2, text="high")

    deduped, stats = deduplicate_items([item1, item2])

    assert len(deduped) == 1
    assert deduped[0].raw_engagement == 20
    assert deduped[0].text == "high"
    assert stats['duplicates'] == 1


def test_dedupe_tie_keeps_first_seen():
    """測試 engagement 相同時保留先出現的"""
    item1 = create_test_item("at://a/post/1", likes=5, text="first")
    item2 = create_test_item("at://a/post/1", likes=5, text="second")

    deduped, _ = deduplicate_items([item1, item2])

    assert len(deduped) == 1
    assert deduped[0].text == "first"


def test_dedupe_preserves_first_encounter_order():
    """測試輸出維持第一次出現的順序 (即使後面的重複勝出)"""
    items = [
        create_test_item("at://a/post/1", likes=1),
        create_test_item("at://a/post/2", likes=1),
        create_test_item("at://a/post/3", likes=1),
        create_test_item("at://a/post/1", likes=50),
    ]

    deduped, _ = deduplicate_items(items)

    assert [item.external_id for item in deduped] == [
        "at://a/post/1", "at://a/post/2", "at://a/post/3"
    ]
    assert deduped[0].like_count == 50


def test_dedupe_idempotent():
    """測試對去重結果再去重一次不會改變"""
    items = [create_test_item(f"at://a/post/{i % 7}", likes=i) for i in range(30)]

    once, _ = deduplicate_items(items)
    twice, stats = deduplicate_items(once)

    assert [item.model_dump() for item in twice] == [item.model_dump() for item in once]
    assert stats['duplicates'] == 0


def test_dedupe_drops_items_without_id():
    """測試沒有 external_id 的 item 會被丟棄"""
    items = [create_test_item(""), create_test_item("at://a/post/1")]

    deduped, stats = deduplicate_items(items)

    assert len(deduped) == 1
    assert stats['missing_id'] == 1
    assert stats['final_count'] == 1


def test_dedupe_empty():
    """測試空輸入"""
    deduped, stats = deduplicate_items([])

    assert deduped == []
    assert stats['original_count'] == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
