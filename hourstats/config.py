"""
Configuration schemas using Pydantic

定義完整的配置結構，包含 Bluesky 連線、collector 安全閥、sentiment 門檻與儲存後端。
每個 run 只讀取一次設定。
"""

from typing import List, Optional, Literal
from pydantic import BaseModel, Field
import os


class BlueskyConfig(BaseModel):
    """Bluesky API 設定"""
    service_url: str = Field(default="https://bsky.social", description="登入/發文用的 PDS")
    search_url: str = Field(
        default="https://public.api.bsky.app",
        description="未登入時的 search host (登入後改用 service_url)"
    )
    handle_env: str = Field(default="BLUESKY_HANDLE", description="handle 的環境變數名稱")
    password_env: str = Field(default="BLUESKY_PASSWORD", description="app password 的環境變數名稱")
    query: str = Field(default="*", description="搜尋字串")
    language: Optional[str] = Field(default="en", description="語言過濾")
    sort: Literal["latest"] = Field(default="latest", description="只支援 newest-first (boundary 判斷依賴此順序)")
    request_timeout_seconds: float = Field(default=30.0, description="單次 HTTP timeout")
    max_request_attempts: int = Field(default=3, description="可重試錯誤的最多嘗試次數")
    blocked_labels: List[str] = Field(
        default_factory=lambda: ["porn", "sexual", "nudity", "graphic-media"],
        description="有這些 moderation label 的貼文直接略過"
    )


class CollectorConfig(BaseModel):
    """Parallel collector 參數 (安全閥都可調，數值本身沒有特殊意義)"""
    workers: int = Field(default=10, ge=1, description="每輪平行 fetch 數 (K)")
    page_size: int = Field(default=100, ge=1, le=100, description="每頁筆數")
    max_rounds: int = Field(default=20, ge=1, description="最多輪數")
    max_collection_seconds: float = Field(default=600.0, description="從 run 建立起算的 wall-clock 預算")
    round_timeout_seconds: float = Field(default=60.0, description="單輪等待上限")
    round_retry_backoff_seconds: float = Field(default=5.0, description="整輪失敗後重試前的等待")
    boundary_min_items: int = Field(default=0, ge=0, description="boundary 停止前至少要收集的筆數")
    max_cursor_offset: Optional[int] = Field(default=10000, description="cursor offset 上限 (None=不限)")


class SentimentConfig(BaseModel):
    """Sentiment 分類門檻"""
    item_positive_threshold: float = Field(default=0.2)
    item_negative_threshold: float = Field(default=-0.2)
    aggregate_positive_threshold: float = Field(default=0.3)
    aggregate_negative_threshold: float = Field(default=-0.3)


class StorageConfig(BaseModel):
    """Run state store 後端設定"""
    mode: Literal["file", "postgres"] = Field(default="file", description="儲存後端")
    base_dir: str = Field(default="memory", description="file 模式的根目錄")
    postgres_dsn_env: Optional[str] = Field(None, description="Postgres DSN 的環境變數名稱")
    retention_hours: float = Field(default=48.0, description="Run 保留時間 (TTL)")
    retry_attempts: int = Field(default=4, ge=1, description="暫時性錯誤重試次數")
    retry_backoff_seconds: float = Field(default=0.5, ge=0, description="exponential backoff 基數")


class HourStatsConfig(BaseModel):
    """完整設定 schema"""
    # 基本設定
    window_minutes: int = Field(default=30, ge=1, description="分析時間窗 (分鐘)")
    top_n: int = Field(default=5, ge=1, description="輸出 Top N 貼文")
    dry_run: bool = Field(default=False, description="不發文")
    run_timezone: str = Field(default="UTC", description="顯示用時區")
    output_dir: str = Field(default="out", description="summary 匯出目錄")

    bluesky: BlueskyConfig = Field(default_factory=BlueskyConfig)
    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    sentiment: SentimentConfig = Field(default_factory=SentimentConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "HourStatsConfig":
        """從 YAML 檔案載入設定"""
        import yaml
        with open(yaml_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def get_postgres_dsn(self) -> Optional[str]:
        """取得 Postgres DSN (從環境變數)"""
        if self.storage.postgres_dsn_env:
            return os.environ.get(self.storage.postgres_dsn_env)
        return None

    def get_bluesky_credentials(self) -> tuple:
        """取得 Bluesky handle / password (從環境變數，未設定則為空字串)"""
        return (
            os.environ.get(self.bluesky.handle_env, ""),
            os.environ.get(self.bluesky.password_env, ""),
        )
