"""Offset cursor helpers for the search API."""

from typing import Optional


def cursor_offset(cursor: str) -> Optional[int]:
    """
    解析 cursor 為 offset

    空字串代表結果集開頭 (0)；非數字的 opaque cursor 回傳 None (無法比較先後)。
    """
    if not cursor:
        return 0
    try:
        return int(cursor)
    except ValueError:
        return None


def offset_cursor(offset: int) -> str:
    """offset 轉為 cursor 字串 (0 → "")"""
    if offset <= 0:
        return ""
    return str(offset)
