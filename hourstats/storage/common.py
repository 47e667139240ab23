"""
Shared helpers for run state store backends

- with_store_retry: tenacity exponential backoff，耗盡後轉成 StoreUnavailable
- apply_cursor_advance: cursor / has_more 只前進不倒退
"""

import functools
import logging
from typing import Optional

from tenacity import Retrying, RetryError, stop_after_attempt, wait_exponential, retry_if_exception_type

from hourstats.errors import StoreUnavailable
from hourstats.models import Run
from hourstats.utils.cursor import cursor_offset

logger = logging.getLogger(__name__)


def with_store_retry(method):
    """
    Store method decorator

    backend 需提供 retry_attempts、retry_backoff_seconds、transient_errors
    以及 _before_retry(retry_state)。非暫時性錯誤 (RunNotFound 等) 直接拋出。
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        retryer = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_backoff_seconds, max=30),
            retry=retry_if_exception_type(self.transient_errors),
            before_sleep=self._before_retry,
        )
        try:
            return retryer(method, self, *args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            logger.error(f"✗ Store operation {method.__name__} failed after "
                         f"{self.retry_attempts} attempts: {last_error}")
            raise StoreUnavailable(f"{method.__name__}: {last_error}") from last_error

    return wrapper


def apply_cursor_advance(run: Run, cursor: str, has_more: bool, stop_reason: Optional[str] = None) -> bool:
    """
    套用 cursor 前進 (in place)

    Args:
        run: 目前的 run 記錄
        cursor: 新 cursor
        has_more: 上游是否可能還有 in-window items
        stop_reason: 停止原因 (若有)

    Returns:
        是否有套用 (倒退的 cursor 會被忽略)
    """
    current = cursor_offset(run.cursor)
    requested = cursor_offset(cursor)

    if current is not None and requested is not None and requested < current:
        logger.warning(f"Ignoring cursor rewind for {run.run_id}: {run.cursor!r} -> {cursor!r}")
        return False

    run.cursor = cursor
    # has_more 一旦為 False 就不會再變回 True
    run.has_more = run.has_more and has_more
    if stop_reason and not run.stop_reason:
        run.stop_reason = stop_reason
    return True
