"""
Core data models for hourstats

Run 是所有 stage 之間唯一的交換媒介；Item 是收集到的單篇貼文。
"""

from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, field_validator

from hourstats.utils.time import to_utc


RunStatus = Literal["running", "completed", "failed"]
RunStage = Literal["collecting", "aggregating", "completed", "failed"]
StopReason = Literal["boundary_crossed", "max_rounds", "time_budget", "exhausted", "cursor_depth"]
AggregationOutcome = Literal["ranked", "no_items_in_window"]


class Item(BaseModel):
    """
    單篇貼文

    external_id 是去重的 identity key (AT URI)。
    sentiment_* 與 engagement_score 由 Aggregator 填入。
    """
    external_id: str = Field(..., description="穩定全域 ID (AT URI)")
    content_id: str = Field(default="", description="CID，embed 用")
    text: str = Field(default="", description="貼文內容")
    author_handle: str = Field(default="", description="作者 handle")
    created_at: datetime = Field(..., description="來源回報的時間 (UTC tz-aware)")
    like_count: int = Field(default=0)
    repost_count: int = Field(default=0)
    reply_count: int = Field(default=0)

    sentiment_score: Optional[float] = Field(None, description="compound score (-1..+1)")
    sentiment_category: Optional[str] = Field(None, description="positive|neutral|negative")
    engagement_score: Optional[int] = Field(None, description="likes + reposts + replies")

    @field_validator("created_at")
    @classmethod
    def _normalize_created_at(cls, v: datetime) -> datetime:
        # naive 視為 UTC，和 parse_iso8601 一致
        return to_utc(v)

    @property
    def raw_engagement(self) -> int:
        return self.like_count + self.repost_count + self.reply_count

    class Config:
        json_schema_extra = {
            "example": {
                "external_id": "at://did:plc:abc123/app.bsky.feed.post/3kxyz",
                "content_id": "bafyreiabc",
                "text": "What a morning",
                "author_handle": "alice.bsky.social",
                "created_at": "2026-02-13T10:00:00Z",
                "like_count": 12,
                "repost_count": 3,
                "reply_count": 1
            }
        }


class AggregateSentiment(BaseModel):
    """整個時間窗的 sentiment 統計 (所有過濾後的 items，不只 top N)"""
    average_compound_score: float
    net_sentiment_percent: float
    category: str
    mood_label: str
    item_count: int


class Run(BaseModel):
    """
    一次分析週期

    window_end 在建立時固定，重試時時間窗不會漂移。
    cursor / has_more 只會前進；items 只會追加。
    """
    run_id: str
    window_minutes: int
    window_start: datetime
    window_end: datetime
    cursor: str = Field(default="", description="下一輪的 cursor，空字串代表從頭開始")
    has_more: bool = Field(default=True)
    status: RunStatus = Field(default="running")
    stage: RunStage = Field(default="collecting")
    stop_reason: Optional[StopReason] = None

    items: List[Item] = Field(default_factory=list)
    total_items_retrieved: int = Field(default=0, description="append 過的 item 數 (含重複)")

    top_items: List[Item] = Field(default_factory=list)
    aggregate_sentiment: Optional[AggregateSentiment] = None
    outcome: Optional[AggregationOutcome] = None

    idempotency_token: Optional[str] = None
    config_hash: str = Field(default="")

    # Error tracking
    error_message: Optional[str] = None
    retry_count: int = Field(default=0)
    last_error_step: Optional[str] = None
    last_error_time: Optional[datetime] = None

    # Publish result
    post_uri: Optional[str] = None
    post_cid: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @field_validator("window_start", "window_end", "created_at", "updated_at", "expires_at", "last_error_time")
    @classmethod
    def _normalize_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else v

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")


class SearchPage(BaseModel):
    """Search API 單頁結果 (newest-first)"""
    items: List[Item] = Field(default_factory=list)
    next_cursor: str = ""
    has_more: bool = False


class WorkerResult(BaseModel):
    """Round 中單一 worker 的結果"""
    index: int
    cursor: str
    items: List[Item] = Field(default_factory=list)
    oldest_at: Optional[datetime] = None
    has_more: bool = False
    error: Optional[str] = None
    rejected: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None and not self.rejected


class RoundOutcome(BaseModel):
    """一個 collector round 的結果"""
    run_id: str
    round_index: int
    start_offset: int
    items_appended: int = 0
    workers_failed: int = 0
    oldest_at: Optional[datetime] = None
    stop_reason: Optional[StopReason] = None
    skipped: bool = False

    @property
    def has_more(self) -> bool:
        return not self.skipped and self.stop_reason is None


class CollectionSummary(BaseModel):
    """整段 collection 的統計"""
    run_id: str
    rounds: int = 0
    items_appended: int = 0
    stop_reason: Optional[StopReason] = None


class AggregationResult(BaseModel):
    """Aggregator 的輸出"""
    outcome: AggregationOutcome
    top_items: List[Item] = Field(default_factory=list)
    sentiment: Optional[AggregateSentiment] = None
    stats: dict = Field(default_factory=dict, description="去重數、過濾數等")

    @property
    def is_quiet_period(self) -> bool:
        return self.outcome == "no_items_in_window"


class RunSummary(BaseModel):
    """Operational 查詢用的 run 摘要"""
    run_id: str
    status: RunStatus
    stage: RunStage
    item_count: int
    top_items: List[Item] = Field(default_factory=list)
    aggregate_sentiment: Optional[AggregateSentiment] = None
    outcome: Optional[AggregationOutcome] = None
    stop_reason: Optional[StopReason] = None
    error_message: Optional[str] = None
    window_start: datetime
    window_end: datetime
    post_uri: Optional[str] = None


class PipelineOutcome(BaseModel):
    """一次完整 pipeline 的結果"""
    run_id: str
    status: RunStatus
    result: Optional[AggregationResult] = None
    summary_text: Optional[str] = None
    post_uri: Optional[str] = None
    post_cid: Optional[str] = None
    published: bool = False
