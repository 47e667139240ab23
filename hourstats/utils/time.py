"""Time utilities for timezone-aware datetime handling."""

from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple
import threading
import time
import pytz


_run_id_lock = threading.Lock()
_last_run_id_ns = 0


def utcnow() -> datetime:
    """取得當前 UTC 時間 (tz-aware)"""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """
    轉換時間為 UTC tz-aware datetime

    Args:
        dt: 輸入時間
        tz_name: 原時區名稱 (若 dt 為 naive)

    Returns:
        UTC tz-aware datetime
    """
    if dt.tzinfo is None:
        # Naive datetime，需要指定時區
        if tz_name:
            tz = pytz.timezone(tz_name)
            dt = tz.localize(dt)
        else:
            # 假設為 UTC
            dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def to_local(dt: datetime, tz_name: str = "UTC") -> datetime:
    """UTC 時間轉為顯示用時區"""
    return to_utc(dt).astimezone(pytz.timezone(tz_name))


def calculate_window(window_minutes: int, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    計算時間窗

    Args:
        window_minutes: 時間窗長度 (分鐘)
        now: 時間窗結束點 (預設為現在)

    Returns:
        (window_start, window_end)
    """
    window_end = to_utc(now) if now else utcnow()
    return window_end - timedelta(minutes=window_minutes), window_end


def format_iso8601(dt: datetime) -> str:
    """格式化為 ISO8601 字串"""
    return dt.isoformat()


def parse_iso8601(date_str: str) -> datetime:
    """解析 ISO8601 字串為 tz-aware datetime"""
    dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
    return to_utc(dt)


def new_run_id() -> str:
    """
    產生以時間為基礎的 run ID

    同一 process 內保證單調遞增 (同一 nanosecond 會往後推一格)。
    """
    global _last_run_id_ns
    with _run_id_lock:
        now_ns = time.time_ns()
        if now_ns <= _last_run_id_ns:
            now_ns = _last_run_id_ns + 1
        _last_run_id_ns = now_ns
    return f"run-{now_ns}"
