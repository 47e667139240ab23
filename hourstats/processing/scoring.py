"""
Item scoring

engagement = likes + reposts + replies (不做 sentiment 加權，排名可稽核且穩定)
sentiment = 外部 scorer 的 compound score，單篇失敗視為 neutral。
"""

from typing import List
import logging
import math

from hourstats.errors import ScorerUnavailable
from hourstats.models import Item

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.0


def engagement_score(item: Item) -> int:
    """
    Engagement score

    Args:
        item: Item

    Returns:
        likes + reposts + replies
    """
    return item.like_count + item.repost_count + item.reply_count


def categorize(score: float, positive_threshold: float, negative_threshold: float) -> str:
    """依門檻分類 (門檻值本身算在該側)"""
    if score >= positive_threshold:
        return "positive"
    if score <= negative_threshold:
        return "negative"
    return "neutral"


def score_items(
    items: List[Item],
    scorer,
    positive_threshold: float = 0.2,
    negative_threshold: float = -0.2
) -> List[Item]:
    """
    為每個 item 填入 sentiment 與 engagement

    Args:
        items: 已去重、已過濾的 items
        scorer: 提供 score(text) -> float 的物件
        positive_threshold: 單篇 positive 門檻
        negative_threshold: 單篇 negative 門檻

    Returns:
        更新後的 items (in place)

    Raises:
        ScorerUnavailable: scorer 整體無法使用，或每一篇都失敗
    """
    failed = 0

    for item in items:
        try:
            score = float(scorer.score(item.text))
        except ScorerUnavailable:
            raise
        except Exception as e:
            logger.warning(f"Scoring failed for {item.external_id}, using neutral: {e}")
            score = NEUTRAL_SCORE
            failed += 1

        # scorer 應回傳 [-1, 1]；超出範圍時夾住
        if math.isnan(score):
            score = NEUTRAL_SCORE
        score = max(-1.0, min(1.0, score))

        item.sentiment_score = score
        item.sentiment_category = categorize(score, positive_threshold, negative_threshold)
        item.engagement_score = engagement_score(item)

    if items and failed == len(items):
        raise ScorerUnavailable(f"Scoring failed for all {failed} items")

    if failed:
        logger.warning(f"{failed}/{len(items)} items fell back to neutral sentiment")
    logger.debug(f"Scored {len(items)} items")

    return items
