"""
Run Coordinator

狀態機: collecting → aggregating → completed | failed

每個 step 都是獨立的工作單位，狀態只透過 store 交換；scheduler 可以在
不同 process 重複呼叫 advance()，重送是安全的 (append / cursor 前進都是 idempotent)。
"""

from datetime import datetime
from typing import Callable, List, Optional
import logging

from hourstats.config import HourStatsConfig
from hourstats.errors import AggregationFailed, CollectionFailed, DuplicateRunError
from hourstats.models import AggregationResult, PipelineOutcome, Run, RunSummary
from hourstats.publishing.formatter import format_summary
from hourstats.utils.hashing import config_hash
from hourstats.utils.time import utcnow

logger = logging.getLogger(__name__)


class RunCoordinator:
    """驅動單一 run 走完 pipeline"""

    def __init__(
        self,
        store,
        collector,
        aggregator,
        config: HourStatsConfig,
        publisher=None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            store: Run state store
            collector: ParallelCollector
            aggregator: Aggregator
            config: 完整設定 (每個 run 只讀一次)
            publisher: BlueskyPublisher (None = 不發文)
            clock: 取得現在時間
        """
        self.store = store
        self.collector = collector
        self.aggregator = aggregator
        self.config = config
        self.publisher = publisher
        self.clock = clock
        self.config_hash = config_hash(config.model_dump())

    # ------------------------------------------------------------------
    # run lifecycle
    # ------------------------------------------------------------------

    def start_run(self, window_minutes: Optional[int] = None, idempotency_token: Optional[str] = None) -> str:
        """
        建立 run 並執行第一輪 collection

        同一個 idempotency token 只會有一個 run；重複呼叫回傳既有的 run ID。

        Returns:
            run ID
        """
        window_minutes = window_minutes or self.config.window_minutes

        if idempotency_token:
            existing = self.store.find_run_by_token(idempotency_token)
            if existing is not None:
                logger.info(f"Run {existing.run_id} already exists for token {idempotency_token}, not starting another")
                return existing.run_id

        try:
            run = self.store.create_run(
                window_minutes,
                idempotency_token=idempotency_token,
                config_hash=self.config_hash,
                now=self.clock()
            )
        except DuplicateRunError as e:
            # 另一個 invocation 在 lookup 之後搶先建立
            logger.info(f"Lost start race for token {e.token}, using run {e.run_id}")
            return e.run_id

        logger.info(f"✓ Started run {run.run_id} ({window_minutes} minute window)")
        self._collect_round(run.run_id)
        return run.run_id

    def check_completion(self, run_id: str) -> bool:
        """Collection 是否已結束 (沒有更多資料 / 停止條件觸發 / run 已終止)"""
        run = self.store.get_run(run_id, include_items=False)
        return run.is_terminal or not run.has_more or run.stop_reason is not None

    def advance(self, run_id: str) -> Run:
        """
        執行一個 state machine step

        - collecting: 跑一輪；collection 結束就切到 aggregating
        - aggregating: 執行 aggregation (成功 → completed，失敗 → failed)
        - completed / failed: 不做事

        StoreUnavailable 會直接拋出 (stage 中止，可安全重送)。
        """
        run = self.store.get_run(run_id, include_items=False)
        if run.is_terminal:
            return run

        if run.stage == "collecting":
            if not self.check_completion(run_id):
                self._collect_round(run_id)

            if self.check_completion(run_id):
                self.store.set_stage(run_id, "aggregating")

        elif run.stage == "aggregating":
            try:
                self.aggregator.run(run_id)
            except AggregationFailed as e:
                # Aggregator 已把 run 標記為 failed
                logger.error(f"✗ Run {run_id} aggregation failed: {e}")

        return self.store.get_run(run_id, include_items=False)

    def run_to_completion(self, run_id: str) -> PipelineOutcome:
        """
        持續 advance 直到 run 終止，成功時發文

        Raises:
            PublishFailed: 發文失敗 (run 仍維持 completed)
        """
        run = self.store.get_run(run_id, include_items=False)
        while not run.is_terminal:
            run = self.advance(run_id)

        return self._finish(run)

    def run_once(self, window_minutes: Optional[int] = None, idempotency_token: Optional[str] = None) -> PipelineOutcome:
        """In-process driver: start + 走完整個 pipeline"""
        run_id = self.start_run(window_minutes, idempotency_token)
        return self.run_to_completion(run_id)

    # ------------------------------------------------------------------
    # operational
    # ------------------------------------------------------------------

    def get_run_summary(self, run_id: str) -> RunSummary:
        """Run 摘要 (不載入 items)"""
        run = self.store.get_run(run_id, include_items=False)
        return RunSummary(
            run_id=run.run_id,
            status=run.status,
            stage=run.stage,
            item_count=run.total_items_retrieved,
            top_items=run.top_items,
            aggregate_sentiment=run.aggregate_sentiment,
            outcome=run.outcome,
            stop_reason=run.stop_reason,
            error_message=run.error_message,
            window_start=run.window_start,
            window_end=run.window_end,
            post_uri=run.post_uri,
        )

    def list_recent_runs(self, limit: int = 10) -> List[str]:
        return self.store.list_recent_runs(limit)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _collect_round(self, run_id: str) -> None:
        try:
            self.collector.collect_round(run_id)
        except CollectionFailed as e:
            logger.error(f"✗ Collection failed for {run_id}: {e}")
            self.store.mark_failed(run_id, str(e), step="collector")

    def _finish(self, run: Run) -> PipelineOutcome:
        outcome = PipelineOutcome(run_id=run.run_id, status=run.status,
                                  post_uri=run.post_uri, post_cid=run.post_cid)

        if run.status != "completed" or run.outcome is None:
            logger.info(f"Run {run.run_id} ended as {run.status}, nothing to publish")
            return outcome

        outcome.result = AggregationResult(
            outcome=run.outcome,
            top_items=run.top_items,
            sentiment=run.aggregate_sentiment,
        )

        if outcome.result.is_quiet_period or run.aggregate_sentiment is None:
            logger.info(f"Run {run.run_id}: quiet period, no summary")
            return outcome

        sentiment = run.aggregate_sentiment
        outcome.summary_text = format_summary(
            run.top_items,
            sentiment.mood_label,
            sentiment.net_sentiment_percent,
            sentiment.item_count,
            run.window_minutes
        )

        if run.post_uri:
            logger.info(f"Run {run.run_id} already published as {run.post_uri}")
            outcome.published = True
            return outcome

        if self.config.dry_run or self.publisher is None:
            logger.info(f"Dry run, not publishing run {run.run_id}")
            return outcome

        post_uri, post_cid = self.publisher.publish(outcome.summary_text, run.top_items)
        self.store.record_publish(run.run_id, post_uri, post_cid)

        outcome.post_uri = post_uri
        outcome.post_cid = post_cid
        outcome.published = True
        return outcome
