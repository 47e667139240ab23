"""
Tests for the summary formatter and publisher
"""

import pytest
from datetime import datetime, timezone

from hourstats.errors import PublishFailed, SearchError
from hourstats.models import Item
from hourstats.publishing.formatter import (
    at_uri_to_web_url, build_facets, format_summary, format_time_period, sentiment_symbol
)
from hourstats.publishing.poster import BlueskyPublisher, build_embed


def create_test_item(
    index: int,
    handle: str = None,
    engagement: int = 10,
    category: str = "positive",
    content_id: str = "bafycid"
) -> Item:
    """Helper to create a scored test item"""
    return Item(
        external_id=f"at://did:plc:user{index}/app.bsky.feed.post/rkey{index}",
        content_id=content_id,
        text="Test post",
        author_handle=handle or f"user{index}.bsky.social",
        created_at=datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc),
        like_count=engagement,
        sentiment_score=0.5,
        sentiment_category=category,
        engagement_score=engagement
    )


def test_format_time_period():
    assert format_time_period(30) == "30 minutes"
    assert format_time_period(60) == "1 hour"
    assert format_time_period(90) == "1 hour 30 minutes"
    assert format_time_period(120) == "2 hours"
    assert format_time_period(150) == "2 hours 30 minutes"


def test_sentiment_symbol():
    assert sentiment_symbol("positive") == "+"
    assert sentiment_symbol("negative") == "-"
    assert sentiment_symbol("neutral") == "x"
    assert sentiment_symbol(None) == "x"


def test_format_summary_layout():
    items = [
        create_test_item(1, engagement=420, category="positive"),
        create_test_item(2, engagement=301, category="neutral"),
        create_test_item(3, engagement=12, category="negative"),
    ]

    text = format_summary(items, "upbeat", 12.4, 2310, 30)

    assert text == (
        "Bluesky is #upbeat (+12%) from 2310 posts in 30 minutes\n\n"
        "1. @user1.bsky.social (420) +\n"
        "2. @user2.bsky.social (301) x\n"
        "3. @user3.bsky.social (12) -"
    )


def test_format_summary_negative_percent():
    text = format_summary([], "worried", -37.6, 10, 60)

    assert text == "Bluesky is #worried (-38%) from 10 posts in 1 hour"


def test_format_summary_respects_limit():
    """測試超過 300 字時從尾端移除排名行"""
    items = [create_test_item(i, handle=f"{'x' * 60}{i}.bsky.social") for i in range(5)]

    text = format_summary(items, "calm", 0.0, 100, 30)

    assert len(text) <= 300
    assert text.startswith("Bluesky is #calm")
    assert "1. @" in text
    assert "5. @" not in text


def test_at_uri_to_web_url():
    assert at_uri_to_web_url("at://did:plc:abc123/app.bsky.feed.post/xyz789") == \
        "https://bsky.app/profile/did:plc:abc123/post/xyz789"
    assert at_uri_to_web_url("https://example.com") == "https://example.com"
    assert at_uri_to_web_url("at://did:plc:abc/app.bsky.feed.like/1") == "at://did:plc:abc/app.bsky.feed.like/1"


def test_build_facets_byte_offsets():
    """測試 facets 使用 UTF-8 byte offset"""
    items = [create_test_item(1, handle="café.example")]
    text = format_summary(items, "serene", 5.0, 3, 30)

    facets = build_facets(text, items)
    encoded = text.encode("utf-8")

    tag_facet, link_facet = facets
    tag_index = tag_facet["index"]
    assert encoded[tag_index["byteStart"]:tag_index["byteEnd"]].decode("utf-8") == "#serene"
    assert tag_facet["features"][0]["tag"] == "serene"

    link_index = link_facet["index"]
    assert encoded[link_index["byteStart"]:link_index["byteEnd"]].decode("utf-8") == "@café.example"
    assert link_facet["features"][0]["uri"] == "https://bsky.app/profile/did:plc:user1/post/rkey1"


def test_build_facets_skips_truncated_lines():
    items = [create_test_item(i) for i in range(3)]
    text = format_summary(items[:1], "calm", 0.0, 10, 30)

    facets = build_facets(text, items)

    assert len(facets) == 2


def test_build_embed_uses_first_item_with_cid():
    items = [create_test_item(1, content_id=""), create_test_item(2)]

    embed = build_embed(items)

    assert embed["$type"] == "app.bsky.embed.record"
    assert embed["record"]["uri"] == items[1].external_id


class FakeClient:
    def __init__(self, error=None):
        self.error = error
        self.records = []

    def create_record(self, record, collection="app.bsky.feed.post"):
        self.records.append(record)
        if self.error:
            raise self.error
        return {"uri": "at://did:plc:me/app.bsky.feed.post/new", "cid": "bafynew"}


def test_publisher_builds_record():
    client = FakeClient()
    items = [create_test_item(1)]
    text = format_summary(items, "calm", 0.0, 10, 30)

    uri, cid = BlueskyPublisher(client).publish(text, items)

    assert (uri, cid) == ("at://did:plc:me/app.bsky.feed.post/new", "bafynew")
    record = client.records[0]
    assert record["text"] == text
    assert len(record["facets"]) == 2
    assert record["embed"]["record"]["cid"] == "bafycid"


def test_publisher_wraps_client_errors():
    client = FakeClient(error=SearchError("Failed to authenticate"))

    with pytest.raises(PublishFailed):
        BlueskyPublisher(client).publish("Bluesky is #calm", [])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
