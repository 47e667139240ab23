"""
Postgres run state store with automatic schema initialization

使用 psycopg2-binary。Items 存在 run_items (每次 append 一列，insert-only)，
所以多個 worker 同時 append 等同 list union，不會有 lost update。
"""

import threading
from datetime import datetime, timedelta
from typing import List, Optional
import logging
import psycopg2
import psycopg2.errors
from psycopg2.extras import execute_values, Json, RealDictCursor

from hourstats.errors import DuplicateRunError, RunNotFound
from hourstats.models import Item, Run, AggregateSentiment
from hourstats.storage.common import with_store_retry, apply_cursor_advance
from hourstats.utils.time import utcnow, to_utc, calculate_window, new_run_id

logger = logging.getLogger(__name__)


DDL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    window_minutes INT NOT NULL,
    window_start TIMESTAMPTZ NOT NULL,
    window_end TIMESTAMPTZ NOT NULL,
    cursor TEXT NOT NULL DEFAULT '',
    has_more BOOLEAN NOT NULL DEFAULT TRUE,
    status TEXT NOT NULL,
    stage TEXT NOT NULL,
    stop_reason TEXT,
    total_items_retrieved INT NOT NULL DEFAULT 0,
    top_items JSONB NOT NULL DEFAULT '[]'::jsonb,
    aggregate_sentiment JSONB,
    outcome TEXT,
    idempotency_token TEXT,
    config_hash TEXT NOT NULL DEFAULT '',
    error_message TEXT,
    retry_count INT NOT NULL DEFAULT 0,
    last_error_step TEXT,
    last_error_time TIMESTAMPTZ,
    post_uri TEXT,
    post_cid TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS run_items (
    id BIGSERIAL PRIMARY KEY,
    run_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    payload JSONB NOT NULL,
    appended_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_idempotency_token
    ON runs(idempotency_token) WHERE idempotency_token IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_runs_created_at ON runs(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_runs_expires_at ON runs(expires_at);
CREATE INDEX IF NOT EXISTS idx_run_items_run_id ON run_items(run_id, id);
"""

RUN_COLUMNS = [
    "run_id", "window_minutes", "window_start", "window_end", "cursor", "has_more",
    "status", "stage", "stop_reason", "total_items_retrieved", "top_items",
    "aggregate_sentiment", "outcome", "idempotency_token", "config_hash",
    "error_message", "retry_count", "last_error_step", "last_error_time",
    "post_uri", "post_cid", "created_at", "updated_at", "expires_at",
]


class PostgresStore:
    """Postgres 儲存後端（連線失敗 fail fast，不 fallback）"""

    transient_errors = (psycopg2.OperationalError, psycopg2.InterfaceError)

    def __init__(
        self,
        dsn: str,
        auto_init_schema: bool = True,
        retention_hours: float = 48.0,
        retry_attempts: int = 4,
        retry_backoff_seconds: float = 0.5
    ):
        """
        初始化 PostgresStore

        Args:
            dsn: Postgres connection string
            auto_init_schema: 是否自動建立 schema
            retention_hours: Run 保留時間 (TTL)
            retry_attempts: 暫時性錯誤重試次數
            retry_backoff_seconds: backoff 基數
        """
        self.dsn = dsn
        self.conn = None
        self.retention = timedelta(hours=retention_hours)
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._lock = threading.RLock()
        self._connect()

        if auto_init_schema:
            self.init_schema()

    def _connect(self):
        """建立資料庫連線（連線失敗直接拋出異常，不 fallback）"""
        try:
            self.conn = psycopg2.connect(self.dsn)
            self.conn.autocommit = False  # 使用 transaction
            logger.info("✓ Connected to Postgres")
        except psycopg2.Error as e:
            logger.error(f"✗ Failed to connect to Postgres: {e}")
            raise RuntimeError(f"Postgres connection failed (no fallback): {e}")

    def _before_retry(self, retry_state) -> None:
        """重試前重建連線"""
        logger.warning(f"Postgres retry #{retry_state.attempt_number}: {retry_state.outcome.exception()}")
        with self._lock:
            try:
                if self.conn is not None:
                    self.conn.close()
            except psycopg2.Error as e:
                logger.debug(f"Closing stale connection failed: {e}")
            try:
                self.conn = psycopg2.connect(self.dsn)
                self.conn.autocommit = False
            except psycopg2.OperationalError as e:
                # 下一次嘗試會再失敗並進入 retry
                logger.warning(f"Reconnect failed: {e}")

    def init_schema(self):
        """初始化資料庫 schema（若表不存在則建立）"""
        try:
            with self.conn.cursor() as cur:
                cur.execute(DDL)
            self.conn.commit()
            logger.info("✓ Schema initialized successfully")
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Failed to initialize schema: {e}")
            raise

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _rollback(self):
        try:
            self.conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed: {e}")

    @staticmethod
    def _row_to_run(row: dict) -> Run:
        data = dict(row)
        data["top_items"] = data.get("top_items") or []
        return Run.model_validate(data)

    def _select_run(self, cur, run_id: str, for_update: bool = False) -> Run:
        sql = f"SELECT {', '.join(RUN_COLUMNS)} FROM runs WHERE run_id = %s"
        if for_update:
            sql += " FOR UPDATE"
        cur.execute(sql, (run_id,))
        row = cur.fetchone()
        if row is None:
            raise RunNotFound(run_id)
        return self._row_to_run(row)

    # ------------------------------------------------------------------
    # run lifecycle
    # ------------------------------------------------------------------

    def create_run(
        self,
        window_minutes: int,
        idempotency_token: Optional[str] = None,
        config_hash: str = "",
        now: Optional[datetime] = None
    ) -> Run:
        """建立新 run (token 重複時拋出 DuplicateRunError)"""
        now = to_utc(now) if now else utcnow()
        self.purge_expired(now)

        window_start, window_end = calculate_window(window_minutes, now)
        run = Run(
            run_id=new_run_id(),
            window_minutes=window_minutes,
            window_start=window_start,
            window_end=window_end,
            idempotency_token=idempotency_token,
            config_hash=config_hash,
            created_at=now,
            updated_at=now,
            expires_at=now + self.retention,
        )
        self._insert_run(run)

        logger.info(f"✓ Created run {run.run_id} (window {window_start.isoformat()} -> {window_end.isoformat()})")
        return run

    @with_store_retry
    def _insert_run(self, run: Run) -> None:
        sql = """
        INSERT INTO runs (
            run_id, window_minutes, window_start, window_end, cursor, has_more,
            status, stage, idempotency_token, config_hash, created_at, updated_at, expires_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (run_id) DO NOTHING
        """

        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(sql, (
                        run.run_id, run.window_minutes, run.window_start, run.window_end,
                        run.cursor, run.has_more, run.status, run.stage,
                        run.idempotency_token, run.config_hash,
                        run.created_at, run.updated_at, run.expires_at
                    ))
                self.conn.commit()
            except psycopg2.errors.UniqueViolation:
                self._rollback()
                existing = self._find_run_id_by_token(run.idempotency_token)
                raise DuplicateRunError(run.idempotency_token, existing or "unknown")
            except Exception as e:
                self._rollback()
                logger.error(f"Failed to create run: {e}")
                raise

    def _find_run_id_by_token(self, token: str) -> Optional[str]:
        with self.conn.cursor() as cur:
            cur.execute("SELECT run_id FROM runs WHERE idempotency_token = %s", (token,))
            row = cur.fetchone()
        self.conn.commit()
        return row[0] if row else None

    @with_store_retry
    def append_items(self, run_id: str, items: List[Item]) -> None:
        """Bulk insert items (insert-only，不改寫既有列)"""
        if not items:
            return

        values = [
            (run_id, item.external_id, Json(item.model_dump(mode='json')))
            for item in items
        ]

        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(
                        "UPDATE runs SET total_items_retrieved = total_items_retrieved + %s, "
                        "updated_at = now() WHERE run_id = %s",
                        (len(items), run_id)
                    )
                    if cur.rowcount == 0:
                        raise RunNotFound(run_id)
                    execute_values(
                        cur,
                        "INSERT INTO run_items (run_id, external_id, payload) VALUES %s",
                        values
                    )
                self.conn.commit()
                logger.info(f"✓ Appended {len(items)} items to {run_id} (bulk insert)")
            except Exception as e:
                self._rollback()
                if not isinstance(e, RunNotFound):
                    logger.error(f"Failed to append items: {e}")
                raise

    @with_store_retry
    def advance_cursor(self, run_id: str, cursor: str, has_more: bool, stop_reason: Optional[str] = None) -> None:
        """更新 cursor (不允許倒退)"""
        with self._lock:
            try:
                with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    run = self._select_run(cur, run_id, for_update=True)
                    if apply_cursor_advance(run, cursor, has_more, stop_reason):
                        cur.execute(
                            "UPDATE runs SET cursor = %s, has_more = %s, stop_reason = %s, "
                            "updated_at = now() WHERE run_id = %s",
                            (run.cursor, run.has_more, run.stop_reason, run_id)
                        )
                self.conn.commit()
            except Exception:
                self._rollback()
                raise

    @with_store_retry
    def set_stage(self, run_id: str, stage: str) -> None:
        """切換 stage (僅限 running 的 run)"""
        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(
                        "UPDATE runs SET stage = %s, updated_at = now() "
                        "WHERE run_id = %s AND status = 'running'",
                        (stage, run_id)
                    )
                    updated = cur.rowcount
                self.conn.commit()
            except Exception:
                self._rollback()
                raise

        if updated == 0:
            logger.warning(f"Not moving {run_id} to {stage}: run missing or not running")

    @with_store_retry
    def get_run(self, run_id: str, include_items: bool = True) -> Run:
        """讀取 run (items 依 append 順序)"""
        with self._lock:
            try:
                with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    run = self._select_run(cur, run_id)
                    if include_items:
                        cur.execute(
                            "SELECT payload FROM run_items WHERE run_id = %s ORDER BY id",
                            (run_id,)
                        )
                        run.items = [Item.model_validate(row["payload"]) for row in cur.fetchall()]
                self.conn.commit()
            except Exception:
                self._rollback()
                raise
        return run

    @with_store_retry
    def find_run_by_token(self, token: str) -> Optional[Run]:
        """以 idempotency token 查詢 run"""
        with self._lock:
            try:
                with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        f"SELECT {', '.join(RUN_COLUMNS)} FROM runs WHERE idempotency_token = %s",
                        (token,)
                    )
                    row = cur.fetchone()
                self.conn.commit()
            except Exception:
                self._rollback()
                raise
        return self._row_to_run(row) if row else None

    @with_store_retry
    def mark_completed(
        self,
        run_id: str,
        top_items: List[Item],
        sentiment: Optional[AggregateSentiment],
        outcome: str = "ranked"
    ) -> None:
        """標記完成 (completed 為終態)"""
        sql = """
        UPDATE runs SET
            status = 'completed',
            stage = 'completed',
            top_items = %s,
            aggregate_sentiment = %s,
            outcome = %s,
            updated_at = now()
        WHERE run_id = %s AND status <> 'completed'
        """

        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(sql, (
                        Json([item.model_dump(mode='json') for item in top_items]),
                        Json(sentiment.model_dump(mode='json')) if sentiment else None,
                        outcome,
                        run_id
                    ))
                    updated = cur.rowcount
                self.conn.commit()
            except Exception as e:
                self._rollback()
                logger.error(f"Failed to mark run completed: {e}")
                raise

        if updated:
            logger.info(f"✓ Run {run_id} completed ({outcome})")
        else:
            logger.warning(f"Run {run_id} missing or already completed, ignoring")

    @with_store_retry
    def mark_failed(self, run_id: str, reason: str, step: str = "") -> None:
        """標記失敗 (僅限 running 的 run)"""
        sql = """
        UPDATE runs SET
            status = 'failed',
            stage = 'failed',
            error_message = %s,
            last_error_step = %s,
            last_error_time = now(),
            retry_count = retry_count + 1,
            updated_at = now()
        WHERE run_id = %s AND status = 'running'
        """

        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(sql, (reason, step or None, run_id))
                    updated = cur.rowcount
                self.conn.commit()
            except Exception:
                self._rollback()
                raise

        if updated:
            logger.error(f"✗ Run {run_id} failed at {step or 'unknown step'}: {reason}")
        else:
            logger.warning(f"Run {run_id} missing or not running, not marking failed")

    @with_store_retry
    def record_publish(self, run_id: str, post_uri: str, post_cid: str) -> None:
        """記錄發文結果"""
        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(
                        "UPDATE runs SET post_uri = %s, post_cid = %s, updated_at = now() WHERE run_id = %s",
                        (post_uri, post_cid, run_id)
                    )
                self.conn.commit()
            except Exception:
                self._rollback()
                raise

    # ------------------------------------------------------------------
    # operational
    # ------------------------------------------------------------------

    @with_store_retry
    def list_recent_runs(self, limit: int = 10) -> List[str]:
        """列出最近的 run ID (新到舊)"""
        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute(
                        "SELECT run_id FROM runs ORDER BY created_at DESC, run_id DESC LIMIT %s",
                        (limit,)
                    )
                    rows = cur.fetchall()
                self.conn.commit()
            except Exception:
                self._rollback()
                raise
        return [row[0] for row in rows]

    @with_store_retry
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """刪除超過 TTL 的 run (run_items 透過 ON DELETE CASCADE 一併刪除)"""
        now = to_utc(now) if now else utcnow()

        with self._lock:
            try:
                with self.conn.cursor() as cur:
                    cur.execute("DELETE FROM runs WHERE expires_at <= %s", (now,))
                    purged = cur.rowcount
                self.conn.commit()
            except Exception:
                self._rollback()
                raise

        if purged:
            logger.info(f"Purged {purged} expired runs")
        return purged

    def close(self):
        """關閉連線"""
        if self.conn:
            self.conn.close()
            logger.info("Postgres connection closed")
