"""Hashing utilities for config fingerprints and schedule tokens."""

import hashlib
import json
from datetime import datetime
from typing import Dict, Any

from hourstats.utils.time import to_utc


def config_hash(config_dict: Dict[str, Any]) -> str:
    """
    產生 config hash

    Args:
        config_dict: 設定字典

    Returns:
        SHA256 hash (hex, 前 16 字元)
    """
    # 排除會變動或敏感的欄位 (例如 dry_run、output_dir、credentials)
    stable_keys = ['window_minutes', 'top_n', 'collector', 'sentiment']
    stable_config = {k: config_dict.get(k) for k in stable_keys if k in config_dict}

    json_str = json.dumps(stable_config, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(json_str.encode('utf-8')).hexdigest()[:16]


def schedule_token(window_minutes: int, now: datetime) -> str:
    """
    產生 schedule tick 的 idempotency token

    同一個時間窗內重複觸發 (例如 scheduler 重送) 會得到相同 token。

    Args:
        window_minutes: 時間窗長度
        now: 觸發時間

    Returns:
        e.g. "30m-984512"
    """
    if window_minutes <= 0:
        raise ValueError(f"window_minutes must be positive: {window_minutes}")

    epoch_seconds = int(to_utc(now).timestamp())
    tick = epoch_seconds // (window_minutes * 60)
    return f"{window_minutes}m-{tick}"
