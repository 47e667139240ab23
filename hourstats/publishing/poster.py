"""
Bluesky publisher

把 summary 發到 Bluesky：facets 讓 hashtag / handle 可點擊，
第一個有 URI + CID 的 top item 以 record embed 引用。
"""

from typing import Any, Dict, List, Optional, Tuple
import logging

import httpx

from hourstats.errors import PublishFailed, SearchError
from hourstats.models import Item
from hourstats.publishing.formatter import build_facets
from hourstats.utils.time import utcnow, format_iso8601

logger = logging.getLogger(__name__)


def build_embed(top_items: List[Item]) -> Optional[Dict[str, Any]]:
    """第一個同時有 URI 與 CID 的 item → app.bsky.embed.record"""
    for item in top_items:
        if item.external_id.startswith("at://") and item.content_id:
            return {
                "$type": "app.bsky.embed.record",
                "record": {"uri": item.external_id, "cid": item.content_id},
            }
    return None


class BlueskyPublisher:
    """發文到 Bluesky"""

    def __init__(self, client):
        """
        Args:
            client: BlueskyClient (需要 create_record)
        """
        self.client = client

    def publish(self, text: str, top_items: List[Item]) -> Tuple[str, str]:
        """
        發文

        Args:
            text: format_summary 的輸出
            top_items: 排名結果

        Returns:
            (post_uri, post_cid)

        Raises:
            PublishFailed: 發文失敗
        """
        record: Dict[str, Any] = {
            "$type": "app.bsky.feed.post",
            "text": text,
            "createdAt": format_iso8601(utcnow()),
            "facets": build_facets(text, top_items),
        }
        embed = build_embed(top_items)
        if embed:
            record["embed"] = embed
            logger.info(f"Embedding post {embed['record']['uri']}")

        try:
            result = self.client.create_record(record)
        except PublishFailed:
            raise
        except (SearchError, httpx.HTTPError) as e:
            raise PublishFailed(f"Failed to post to Bluesky: {e}") from e

        logger.info(f"✓ Posted to Bluesky: {result['uri']}")
        return result["uri"], result["cid"]
