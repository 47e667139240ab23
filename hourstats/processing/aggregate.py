"""
Aggregation pipeline

步驟 (順序固定):
1. 去重 (external_id，engagement 高者勝)
2. 時間窗過濾 (created_at < window_start 者丟棄)
3. 評分 (sentiment + engagement)
4. 排名 (engagement 降冪，stable sort)
5. 整體 sentiment (所有過濾後的 items，不只 top N)
6. 空集合 → no_items_in_window (quiet period，不是錯誤)
"""

from datetime import datetime
from typing import List, Optional
import logging

from hourstats.config import HourStatsConfig, SentimentConfig
from hourstats.errors import AggregationFailed, ScorerUnavailable, StoreUnavailable
from hourstats.models import AggregateSentiment, AggregationResult, Item
from hourstats.processing.dedupe import deduplicate_items
from hourstats.processing.mood import mood_label
from hourstats.processing.scoring import categorize, score_items

logger = logging.getLogger(__name__)


def filter_by_window(items: List[Item], window_start: datetime) -> List[Item]:
    """丟棄時間窗開始之前的 items (window_start 本身保留)"""
    return [item for item in items if item.created_at >= window_start]


def rank_top_items(items: List[Item], n: int) -> List[Item]:
    """
    依 engagement 取 Top N

    sorted() 是 stable，reverse=True 仍保留相同分數的原始順序。
    """
    ranked = sorted(items, key=lambda item: item.engagement_score or 0, reverse=True)
    return ranked[:n]


def summarize_sentiment(
    items: List[Item],
    thresholds: Optional[SentimentConfig] = None
) -> AggregateSentiment:
    """
    整體 sentiment 統計

    Args:
        items: 所有過濾後且已評分的 items (非空)
        thresholds: 分類門檻

    Returns:
        AggregateSentiment
    """
    thresholds = thresholds or SentimentConfig()

    scores = [item.sentiment_score or 0.0 for item in items]
    average = sum(scores) / len(scores)
    net_percent = average * 100

    return AggregateSentiment(
        average_compound_score=average,
        net_sentiment_percent=net_percent,
        category=categorize(
            average,
            thresholds.aggregate_positive_threshold,
            thresholds.aggregate_negative_threshold
        ),
        mood_label=mood_label(net_percent),
        item_count=len(items),
    )


def aggregate_items(
    items: List[Item],
    window_start: datetime,
    scorer,
    top_n: int = 5,
    thresholds: Optional[SentimentConfig] = None
) -> AggregationResult:
    """
    執行完整的 aggregation

    Args:
        items: Run 的全部 items (含重複與超出時間窗者)
        window_start: 時間窗開始
        scorer: sentiment scorer
        top_n: 輸出數量
        thresholds: sentiment 門檻

    Returns:
        AggregationResult

    Raises:
        ScorerUnavailable: scorer 整體無法使用
    """
    thresholds = thresholds or SentimentConfig()

    deduped, dedupe_stats = deduplicate_items(items)
    filtered = filter_by_window(deduped, window_start)

    stats = {
        'retrieved': len(items),
        'deduplicated': len(deduped),
        'duplicates': dedupe_stats['duplicates'],
        'outside_window': len(deduped) - len(filtered),
        'analyzed': len(filtered),
    }
    logger.info(f"Time filter: {len(deduped)} -> {len(filtered)} items "
                f"({stats['outside_window']} before {window_start.isoformat()})")

    if not filtered:
        logger.info("No items in window (quiet period)")
        return AggregationResult(outcome="no_items_in_window", stats=stats)

    score_items(
        filtered,
        scorer,
        positive_threshold=thresholds.item_positive_threshold,
        negative_threshold=thresholds.item_negative_threshold
    )

    top_items = rank_top_items(filtered, top_n)
    sentiment = summarize_sentiment(filtered, thresholds)

    logger.info(f"✓ Aggregated {sentiment.item_count} items: avg={sentiment.average_compound_score:.3f} "
                f"({sentiment.category}), mood={sentiment.mood_label}")

    return AggregationResult(
        outcome="ranked",
        top_items=top_items,
        sentiment=sentiment,
        stats=stats,
    )


class Aggregator:
    """Aggregation stage: 讀 run → aggregate → mark_completed"""

    def __init__(self, store, scorer, config: HourStatsConfig):
        self.store = store
        self.scorer = scorer
        self.config = config

    def run(self, run_id: str) -> AggregationResult:
        """
        對 run 執行 aggregation 並寫回結果

        Raises:
            AggregationFailed: scorer 或 store 無法使用 (run 會被標記為 failed)
        """
        try:
            run = self.store.get_run(run_id, include_items=True)
            logger.info(f"Aggregating run {run_id}: {len(run.items)} items")

            result = aggregate_items(
                run.items,
                run.window_start,
                self.scorer,
                top_n=self.config.top_n,
                thresholds=self.config.sentiment
            )

            self.store.mark_completed(run_id, result.top_items, result.sentiment, result.outcome)

        except (ScorerUnavailable, StoreUnavailable) as e:
            logger.error(f"✗ Aggregation failed for {run_id}: {e}", exc_info=True)
            try:
                self.store.mark_failed(run_id, str(e), step="aggregator")
            except StoreUnavailable as mark_error:
                logger.error(f"Could not mark {run_id} failed: {mark_error}")
            raise AggregationFailed(f"Aggregation failed for {run_id}: {e}") from e

        return result
