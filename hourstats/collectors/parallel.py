"""
Parallel boundary-detecting collector

每一輪 (round) 從共用的 round-start offset 同時發出 K 個 search 請求，
worker i 使用 offset = start + i * page_size。全部 worker 回來 (或 timeout)
之後才做停止判斷：以整輪最舊的時間戳為準，而不是第一個回來的 worker。

每輪的 items 立即 append 到 run，crash 最多損失一輪。
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from hourstats.config import CollectorConfig
from hourstats.errors import CollectionFailed, SearchRequestRejected
from hourstats.models import CollectionSummary, Item, RoundOutcome, Run, WorkerResult
from hourstats.utils.cursor import cursor_offset, offset_cursor
from hourstats.utils.time import utcnow

logger = logging.getLogger(__name__)


class ParallelCollector:
    """K-way parallel collector over an offset-paginated search source"""

    def __init__(
        self,
        source,
        store,
        config: CollectorConfig,
        query: str = "*",
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            source: 提供 search(query, cursor, page_size) -> SearchPage 的物件
            store: Run state store
            config: Collector 參數
            query: 搜尋字串
            clock: 取得現在時間 (測試可替換)
            sleep: 重試等待 (測試可替換)
        """
        self.source = source
        self.store = store
        self.config = config
        self.query = query
        self.clock = clock
        self.sleep = sleep

    @property
    def stride(self) -> int:
        """每輪前進的 offset"""
        return self.config.workers * self.config.page_size

    # ------------------------------------------------------------------
    # public
    # ------------------------------------------------------------------

    def collect(self, run_id: str) -> CollectionSummary:
        """
        連續執行 round 直到 run 不再有更多資料

        Returns:
            CollectionSummary
        """
        summary = CollectionSummary(run_id=run_id)

        while True:
            outcome = self.collect_round(run_id)
            if outcome.skipped:
                summary.stop_reason = summary.stop_reason or outcome.stop_reason
                break

            summary.rounds += 1
            summary.items_appended += outcome.items_appended
            if not outcome.has_more:
                summary.stop_reason = outcome.stop_reason
                break

        logger.info(f"✓ Collection for {run_id} finished: {summary.rounds} rounds, "
                    f"{summary.items_appended} items, stop_reason={summary.stop_reason}")
        return summary

    def collect_round(self, run_id: str) -> RoundOutcome:
        """
        執行一輪 K 個平行 fetch

        Raises:
            CollectionFailed: 所有 worker 失敗 (含一次重試)
            StoreUnavailable: store 重試耗盡
        """
        run = self.store.get_run(run_id, include_items=False)
        start_offset = cursor_offset(run.cursor)
        if start_offset is None:
            raise CollectionFailed(f"Run {run_id} has a non-offset cursor: {run.cursor!r}")
        round_index = start_offset // self.stride

        if run.status != "running" or run.stage != "collecting" or not run.has_more:
            logger.info(f"Skipping round for {run_id}: status={run.status}, stage={run.stage}, "
                        f"has_more={run.has_more}")
            return RoundOutcome(run_id=run_id, round_index=round_index, start_offset=start_offset,
                                stop_reason=run.stop_reason, skipped=True)

        stop_reason = self._pre_round_stop(run, round_index, start_offset)
        if stop_reason:
            logger.info(f"Run {run_id} stops before round {round_index + 1}: {stop_reason}")
            self.store.advance_cursor(run_id, run.cursor, False, stop_reason)
            return RoundOutcome(run_id=run_id, round_index=round_index, start_offset=start_offset,
                                stop_reason=stop_reason)

        logger.info(f"🔄 Round {round_index + 1} for {run_id}: {self.config.workers} workers from offset {start_offset}")

        results, timed_out = self._fetch_round(start_offset)
        if not timed_out and self._all_failed(results):
            logger.warning(f"All {len(results)} workers failed in round {round_index + 1}, "
                           f"retrying in {self.config.round_retry_backoff_seconds}s")
            self.sleep(self.config.round_retry_backoff_seconds)
            results, timed_out = self._fetch_round(start_offset)
            if not timed_out and self._all_failed(results):
                errors = "; ".join(r.error for r in results if r.error)
                raise CollectionFailed(f"Round {round_index + 1} of {run_id} failed after retry: {errors}")

        items: List[Item] = [item for result in results for item in result.items]
        if items:
            self.store.append_items(run_id, items)

        oldest_times = [r.oldest_at for r in results if r.oldest_at is not None]
        oldest_at = min(oldest_times) if oldest_times else None
        next_offset = start_offset + self.stride

        stop_reason = self._post_round_stop(
            run, results, len(items), oldest_at, timed_out, round_index, next_offset
        )
        self.store.advance_cursor(run_id, offset_cursor(next_offset), stop_reason is None, stop_reason)

        workers_failed = sum(1 for r in results if r.failed)
        logger.info(f"✓ Round {round_index + 1} for {run_id}: {len(items)} items, "
                    f"{workers_failed} failed workers, oldest={oldest_at.isoformat() if oldest_at else None}, "
                    f"stop_reason={stop_reason}")

        return RoundOutcome(
            run_id=run_id,
            round_index=round_index,
            start_offset=start_offset,
            items_appended=len(items),
            workers_failed=workers_failed,
            oldest_at=oldest_at,
            stop_reason=stop_reason,
        )

    # ------------------------------------------------------------------
    # round internals
    # ------------------------------------------------------------------

    def _fetch_worker(self, index: int, cursor: str) -> WorkerResult:
        """單一 worker：失敗只影響自己這一頁"""
        try:
            page = self.source.search(self.query, cursor, self.config.page_size)
        except SearchRequestRejected as e:
            # 上游 pagination 深度限制，視為空頁
            logger.warning(f"Worker {index + 1} rejected at cursor {cursor!r}: {e}")
            return WorkerResult(index=index, cursor=cursor, error=str(e), rejected=True)
        except Exception as e:
            logger.error(f"Worker {index + 1} failed at cursor {cursor!r}: {e}")
            return WorkerResult(index=index, cursor=cursor, error=str(e))

        oldest_at = min((item.created_at for item in page.items), default=None)
        logger.debug(f"Worker {index + 1} cursor={cursor!r}: {len(page.items)} items")
        return WorkerResult(
            index=index,
            cursor=cursor,
            items=page.items,
            oldest_at=oldest_at,
            has_more=page.has_more,
        )

    def _fetch_round(self, start_offset: int) -> Tuple[List[WorkerResult], bool]:
        """
        平行執行 K 個 worker，join barrier 等待全部完成或 timeout

        Returns:
            (依 worker index 排序的結果, 是否有 worker timeout)
        """
        page_size = self.config.page_size
        executor = ThreadPoolExecutor(max_workers=self.config.workers, thread_name_prefix="collector")
        futures = {}
        for index in range(self.config.workers):
            cursor = offset_cursor(start_offset + index * page_size)
            futures[executor.submit(self._fetch_worker, index, cursor)] = (index, cursor)

        done, not_done = wait(futures, timeout=self.config.round_timeout_seconds)
        # 不再等待尚未回來的 worker；已回來的結果照常使用
        executor.shutdown(wait=False, cancel_futures=True)

        results = []
        for future, (index, cursor) in futures.items():
            if future in done:
                results.append(future.result())
            else:
                logger.warning(f"Worker {index + 1} timed out at cursor {cursor!r}")
                results.append(WorkerResult(index=index, cursor=cursor, error="round timeout"))

        results.sort(key=lambda r: r.index)
        return results, bool(not_done)

    @staticmethod
    def _all_failed(results: List[WorkerResult]) -> bool:
        return bool(results) and all(r.failed for r in results)

    def _elapsed_seconds(self, run: Run) -> float:
        return (self.clock() - run.created_at).total_seconds()

    def _pre_round_stop(self, run: Run, round_index: int, start_offset: int) -> Optional[str]:
        """發出請求前的安全閥 (re-dispatch 的 run 也適用)"""
        if round_index >= self.config.max_rounds:
            return "max_rounds"
        if self._elapsed_seconds(run) >= self.config.max_collection_seconds:
            return "time_budget"
        if self.config.max_cursor_offset is not None and start_offset >= self.config.max_cursor_offset:
            return "cursor_depth"
        return None

    def _post_round_stop(
        self,
        run: Run,
        results: List[WorkerResult],
        item_count: int,
        oldest_at: Optional[datetime],
        timed_out: bool,
        round_index: int,
        next_offset: int
    ) -> Optional[str]:
        """整輪完成後的停止判斷 (先觸發者優先)"""
        collected = run.total_items_retrieved + item_count
        if (oldest_at is not None and oldest_at < run.window_start
                and collected >= self.config.boundary_min_items):
            return "boundary_crossed"

        if round_index + 1 >= self.config.max_rounds:
            return "max_rounds"

        if timed_out or self._elapsed_seconds(run) >= self.config.max_collection_seconds:
            return "time_budget"

        if item_count == 0 or not any(r.has_more for r in results):
            return "exhausted"

        if self.config.max_cursor_offset is not None and next_offset >= self.config.max_cursor_offset:
            return "cursor_depth"

        return None
