"""
Deduplication logic

去重策略: external_id
- external_id 相同 → 保留 engagement 高的，相同則保留先出現的
- 輸出維持第一次出現的順序 (ranking 的 tie-break 依賴這個順序)

去重必須在時間窗過濾之前執行，重複與否和時間窗無關。
"""

from typing import List, Dict, Tuple
from hourstats.models import Item
import logging

logger = logging.getLogger(__name__)


def deduplicate_items(items: List[Item]) -> Tuple[List[Item], Dict[str, int]]:
    """
    去重

    Args:
        items: 原始 items (可能含跨 round 的重複)

    Returns:
        (去重後的 items, 統計資訊)
    """
    stats = {
        'original_count': len(items),
        'missing_id': 0,
        'duplicates': 0,
        'final_count': 0
    }

    # dict 保留插入順序；替換 value 不會改變位置
    id_map: Dict[str, Item] = {}

    for item in items:
        external_id = item.external_id
        if not external_id:
            stats['missing_id'] += 1
            continue

        if external_id not in id_map:
            id_map[external_id] = item
            continue

        stats['duplicates'] += 1
        existing = id_map[external_id]
        if item.raw_engagement > existing.raw_engagement:
            id_map[external_id] = item

    final_items = list(id_map.values())
    stats['final_count'] = len(final_items)

    if stats['missing_id']:
        logger.warning(f"Dropped {stats['missing_id']} items without external_id")
    logger.info(f"Dedupe: {stats['original_count']} -> {stats['final_count']} "
                f"({stats['duplicates']} duplicates)")

    return final_items, stats
