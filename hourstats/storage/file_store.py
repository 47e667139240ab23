"""
File-based run state store

所有 run 的資料都儲存在本地檔案系統：
- runs/<run_id>.json: run 記錄 (不含 items，以 os.replace 原子替換)
- items/<run_id>.jsonl: append-only item 清單
- tokens/<sha256(token)>: idempotency token 佔位 (exclusive create)

適用單機部署；多 process 同時寫入請用 PostgresStore。
"""

import hashlib
import json
import os
import threading
import uuid
from datetime import datetime, timedelta
from typing import List, Optional
from pathlib import Path
import logging

from hourstats.errors import DuplicateRunError, RunNotFound
from hourstats.models import Item, Run, AggregateSentiment
from hourstats.storage.common import with_store_retry, apply_cursor_advance
from hourstats.utils.time import utcnow, to_utc, calculate_window, new_run_id

logger = logging.getLogger(__name__)


class FileStore:
    """檔案儲存後端"""

    transient_errors = (OSError,)

    def __init__(
        self,
        base_dir: str = "memory",
        retention_hours: float = 48.0,
        retry_attempts: int = 4,
        retry_backoff_seconds: float = 0.5
    ):
        """
        初始化 FileStore

        Args:
            base_dir: 基礎目錄
            retention_hours: Run 保留時間 (TTL)
            retry_attempts: 暫時性錯誤重試次數
            retry_backoff_seconds: backoff 基數
        """
        self.base_dir = Path(base_dir)
        self.runs_dir = self.base_dir / "runs"
        self.items_dir = self.base_dir / "items"
        self.tokens_dir = self.base_dir / "tokens"
        self.retention = timedelta(hours=retention_hours)
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._lock = threading.RLock()

        # 建立目錄
        for dir_path in [self.runs_dir, self.items_dir, self.tokens_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

        logger.info(f"FileStore initialized at {self.base_dir}")

    def _before_retry(self, retry_state) -> None:
        logger.warning(f"FileStore retry #{retry_state.attempt_number}: {retry_state.outcome.exception()}")

    # ------------------------------------------------------------------
    # paths & raw IO
    # ------------------------------------------------------------------

    def _run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def _items_path(self, run_id: str) -> Path:
        return self.items_dir / f"{run_id}.jsonl"

    def _token_path(self, token: str) -> Path:
        digest = hashlib.sha256(token.encode('utf-8')).hexdigest()
        return self.tokens_dir / digest

    def _read_run(self, run_id: str) -> Run:
        file_path = self._run_path(run_id)
        if not file_path.exists():
            raise RunNotFound(run_id)

        with open(file_path, 'r', encoding='utf-8') as f:
            return Run.model_validate_json(f.read())

    def _write_run(self, run: Run) -> None:
        file_path = self._run_path(run.run_id)
        tmp_path = file_path.with_name(f"{file_path.name}.{uuid.uuid4().hex[:8]}.tmp")

        data = run.model_dump(mode='json', exclude={'items'})
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, file_path)

    def _read_items(self, run_id: str) -> List[Item]:
        file_path = self._items_path(run_id)
        if not file_path.exists():
            return []

        items = []
        with open(file_path, 'r', encoding='utf-8') as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(Item.model_validate_json(line))
                except ValueError as e:
                    # 寫到一半 crash 的最後一行
                    logger.warning(f"Skipping malformed item line {line_no} in {file_path}: {e}")
        return items

    def _claim_token(self, token: str, run_id: str) -> None:
        token_path = self._token_path(token)
        try:
            with open(token_path, 'x', encoding='utf-8') as f:
                f.write(run_id)
        except FileExistsError:
            existing = token_path.read_text(encoding='utf-8').strip()
            if existing != run_id:
                raise DuplicateRunError(token, existing)

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
        """
        建立新 run

        Args:
            window_minutes: 時間窗長度
            idempotency_token: schedule tick token (可選)
            config_hash: 設定指紋
            now: 建立時間 (= window_end)

        Returns:
            新的 Run

        Raises:
            DuplicateRunError: token 已被其他 run 使用
        """
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
        self._persist_new_run(run)

        logger.info(f"Created run {run.run_id} (window {window_start.isoformat()} -> {window_end.isoformat()})")
        return run

    @with_store_retry
    def _persist_new_run(self, run: Run) -> None:
        with self._lock:
            if run.idempotency_token:
                self._claim_token(run.idempotency_token, run.run_id)
            self._write_run(run)
            self._items_path(run.run_id).touch()

    @with_store_retry
    def append_items(self, run_id: str, items: List[Item]) -> None:
        """追加 items (JSONL append，不改寫既有內容)"""
        if not items:
            return

        payload = "".join(item.model_dump_json() + "\n" for item in items)

        with self._lock:
            run = self._read_run(run_id)
            with open(self._items_path(run_id), 'a', encoding='utf-8') as f:
                f.write(payload)

            run.total_items_retrieved += len(items)
            run.updated_at = utcnow()
            self._write_run(run)

        logger.info(f"Appended {len(items)} items to {run_id} (total {run.total_items_retrieved})")

    @with_store_retry
    def advance_cursor(self, run_id: str, cursor: str, has_more: bool, stop_reason: Optional[str] = None) -> None:
        """更新 cursor (不允許倒退)"""
        with self._lock:
            run = self._read_run(run_id)
            if not apply_cursor_advance(run, cursor, has_more, stop_reason):
                return
            run.updated_at = utcnow()
            self._write_run(run)

        logger.debug(f"Run {run_id} cursor={cursor!r} has_more={run.has_more} stop_reason={run.stop_reason}")

    @with_store_retry
    def set_stage(self, run_id: str, stage: str) -> None:
        """切換 stage (僅限 running 的 run)"""
        with self._lock:
            run = self._read_run(run_id)
            if run.status != "running":
                logger.warning(f"Not moving {run_id} to {stage}: status is {run.status}")
                return
            run.stage = stage
            run.updated_at = utcnow()
            self._write_run(run)

    @with_store_retry
    def get_run(self, run_id: str, include_items: bool = True) -> Run:
        """讀取 run (可選擇是否載入 items)"""
        with self._lock:
            run = self._read_run(run_id)
            if include_items:
                run.items = self._read_items(run_id)
        return run

    @with_store_retry
    def find_run_by_token(self, token: str) -> Optional[Run]:
        """以 idempotency token 查詢 run"""
        token_path = self._token_path(token)
        if not token_path.exists():
            return None

        run_id = token_path.read_text(encoding='utf-8').strip()
        try:
            return self._read_run(run_id)
        except RunNotFound:
            return None

    @with_store_retry
    def mark_completed(
        self,
        run_id: str,
        top_items: List[Item],
        sentiment: Optional[AggregateSentiment],
        outcome: str = "ranked"
    ) -> None:
        """標記完成 (completed 為終態，不會再改寫)"""
        with self._lock:
            run = self._read_run(run_id)
            if run.status == "completed":
                logger.warning(f"Run {run_id} already completed, ignoring")
                return

            run.status = "completed"
            run.stage = "completed"
            run.top_items = top_items
            run.aggregate_sentiment = sentiment
            run.outcome = outcome
            run.updated_at = utcnow()
            self._write_run(run)

        logger.info(f"✓ Run {run_id} completed ({outcome})")

    @with_store_retry
    def mark_failed(self, run_id: str, reason: str, step: str = "") -> None:
        """標記失敗 (僅限 running 的 run)"""
        with self._lock:
            run = self._read_run(run_id)
            if run.status != "running":
                logger.warning(f"Run {run_id} is {run.status}, not marking failed")
                return

            now = utcnow()
            run.status = "failed"
            run.stage = "failed"
            run.error_message = reason
            run.last_error_step = step or None
            run.last_error_time = now
            run.retry_count += 1
            run.updated_at = now
            self._write_run(run)

        logger.error(f"✗ Run {run_id} failed at {step or 'unknown step'}: {reason}")

    @with_store_retry
    def record_publish(self, run_id: str, post_uri: str, post_cid: str) -> None:
        """記錄發文結果"""
        with self._lock:
            run = self._read_run(run_id)
            run.post_uri = post_uri
            run.post_cid = post_cid
            run.updated_at = utcnow()
            self._write_run(run)

    # ------------------------------------------------------------------
    # operational
    # ------------------------------------------------------------------

    def _load_all_runs(self) -> List[Run]:
        runs = []
        for file_path in self.runs_dir.glob("*.json"):
            try:
                with open(file_path, 'r', encoding='utf-8') as f:
                    runs.append(Run.model_validate_json(f.read()))
            except FileNotFoundError:
                # 被其他 thread purge 掉
                continue
            except ValueError as e:
                logger.warning(f"Skipping unreadable run file {file_path}: {e}")
        return runs

    @with_store_retry
    def list_recent_runs(self, limit: int = 10) -> List[str]:
        """列出最近的 run ID (新到舊)"""
        with self._lock:
            runs = self._load_all_runs()
        runs.sort(key=lambda r: (r.created_at, r.run_id), reverse=True)
        return [run.run_id for run in runs[:limit]]

    @with_store_retry
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """刪除超過 TTL 的 run (不論成功或失敗)"""
        now = to_utc(now) if now else utcnow()
        purged = 0

        with self._lock:
            for run in self._load_all_runs():
                if run.expires_at > now:
                    continue
                self._items_path(run.run_id).unlink(missing_ok=True)
                if run.idempotency_token:
                    self._token_path(run.idempotency_token).unlink(missing_ok=True)
                self._run_path(run.run_id).unlink(missing_ok=True)
                purged += 1

        if purged:
            logger.info(f"Purged {purged} expired runs")
        return purged

    def close(self):
        """FileStore 沒有需要釋放的資源"""
        pass
