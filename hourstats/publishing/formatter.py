"""
Summary post formatter

產生像這樣的貼文：

    Bluesky is #upbeat (+12%) from 2310 posts in 30 minutes

    1. @alice.bsky.social (420) +
    2. @bob.bsky.social (301) x

Facets (hashtag / link) 使用 UTF-8 byte offset (AT Protocol richtext 規格)。
"""

from typing import Any, Dict, List
import logging

from hourstats.models import Item

logger = logging.getLogger(__name__)

MAX_POST_CHARS = 300
ELLIPSIS = "..."


def format_time_period(minutes: int) -> str:
    """分鐘數 → 可讀的時間長度 (e.g. "30 minutes", "1 hour 30 minutes")"""
    if minutes < 60:
        return f"{minutes} minutes"

    hours, rest = divmod(minutes, 60)
    hour_text = "1 hour" if hours == 1 else f"{hours} hours"
    if rest == 0:
        return hour_text
    return f"{hour_text} {rest} minutes"


def sentiment_symbol(category: str) -> str:
    """+ positive / - negative / x neutral (未知視為 neutral)"""
    return {"positive": "+", "negative": "-"}.get(category or "", "x")


def _item_line(rank: int, item: Item) -> str:
    engagement = item.engagement_score if item.engagement_score is not None else item.raw_engagement
    return f"{rank}. @{item.author_handle} ({engagement}) {sentiment_symbol(item.sentiment_category)}"


def format_summary(
    top_items: List[Item],
    mood: str,
    net_percent: float,
    total_items: int,
    window_minutes: int,
    max_chars: int = MAX_POST_CHARS
) -> str:
    """
    產生貼文內容

    超過 max_chars 時先從尾端移除排名行，只剩標題仍太長才截斷標題。

    Args:
        top_items: 已排名的 Top N
        mood: mood 詞
        net_percent: net sentiment percent
        total_items: 分析的貼文數
        window_minutes: 時間窗長度
        max_chars: 字數上限

    Returns:
        貼文內容
    """
    header = f"Bluesky is #{mood} ({net_percent:+.0f}%) from {total_items} posts in {format_time_period(window_minutes)}"
    lines = [_item_line(rank, item) for rank, item in enumerate(top_items, 1)]

    while lines:
        text = header + "\n\n" + "\n".join(lines)
        if len(text) <= max_chars:
            return text
        dropped = lines.pop()
        logger.debug(f"Summary too long, dropping line: {dropped}")

    if len(header) <= max_chars:
        return header

    logger.warning(f"Summary header exceeds {max_chars} chars, truncating")
    return header[:max_chars - len(ELLIPSIS)] + ELLIPSIS


def at_uri_to_web_url(uri: str) -> str:
    """
    AT URI → bsky.app 網址

    at://did:plc:abc/app.bsky.feed.post/xyz → https://bsky.app/profile/did:plc:abc/post/xyz
    無法轉換時原樣回傳。
    """
    if not uri.startswith("at://"):
        return uri

    parts = uri[len("at://"):].split("/")
    if len(parts) >= 3 and parts[1] == "app.bsky.feed.post":
        return f"https://bsky.app/profile/{parts[0]}/post/{parts[2]}"
    return uri


def _byte_offset(text: str, char_index: int) -> int:
    return len(text[:char_index].encode("utf-8"))


def _byte_slice(text: str, start: int, end: int) -> Dict[str, int]:
    return {"byteStart": _byte_offset(text, start), "byteEnd": _byte_offset(text, end)}


def build_facets(text: str, top_items: List[Item]) -> List[Dict[str, Any]]:
    """
    建立 richtext facets

    - mood hashtag → tag facet
    - 每個 @handle → 連到該篇貼文的 link facet (只找該排名行，避免同名 handle 對錯)

    Returns:
        app.bsky.richtext.facet 清單
    """
    facets: List[Dict[str, Any]] = []

    if text.startswith("Bluesky is #"):
        start = text.index("#")
        end = start + 1
        while end < len(text) and not text[end].isspace():
            end += 1
        tag = text[start + 1:end]
        if tag:
            facets.append({
                "index": _byte_slice(text, start, end),
                "features": [{"$type": "app.bsky.richtext.facet#tag", "tag": tag}],
            })

    search_from = 0
    for rank, item in enumerate(top_items, 1):
        if not item.external_id or not item.author_handle:
            continue

        prefix = f"\n{rank}. @"
        line_start = text.find(prefix, search_from)
        if line_start == -1:
            # 被截斷的行
            continue

        start = line_start + len(prefix) - 1
        end = start + 1 + len(item.author_handle)
        if text[start + 1:end] != item.author_handle:
            continue
        search_from = end

        facets.append({
            "index": _byte_slice(text, start, end),
            "features": [{
                "$type": "app.bsky.richtext.facet#link",
                "uri": at_uri_to_web_url(item.external_id),
            }],
        })

    return facets
