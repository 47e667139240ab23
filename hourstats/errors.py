"""
Error taxonomy

每種錯誤只影響單一 run，不會讓整個 process 掛掉。
NoItemsInWindow 不是錯誤：請見 AggregationResult.outcome。
"""


class HourStatsError(Exception):
    """所有 hourstats 錯誤的基底類別"""


class StoreUnavailable(HourStatsError):
    """Run state store 重試耗盡後仍無法讀寫"""


class RunNotFound(HourStatsError, LookupError):
    """找不到指定的 run"""

    def __init__(self, run_id: str):
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class DuplicateRunError(HourStatsError):
    """同一個 idempotency token 已經有 run"""

    def __init__(self, token: str, run_id: str):
        super().__init__(f"Idempotency token {token!r} already used by run {run_id}")
        self.token = token
        self.run_id = run_id


class CollectionFailed(HourStatsError):
    """整個 round 的 worker 全部失敗 (含一次重試)"""


class AggregationFailed(HourStatsError):
    """Scorer 或 store 無法使用，aggregation 中止"""


class PublishFailed(HourStatsError):
    """發文失敗 (不影響 run 本身的狀態)"""


class SearchError(HourStatsError):
    """Search API 呼叫失敗"""


class SearchRequestRejected(SearchError):
    """Search API 回 400 (常見於過深的 cursor offset)"""


class TransientSearchError(SearchError):
    """可重試的 search 錯誤 (5xx / 429 / timeout)"""


class ScorerUnavailable(HourStatsError):
    """Sentiment scorer 完全無法運作"""
