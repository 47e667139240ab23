"""
VADER sentiment scorer

score(text) 為純函數：同一段文字永遠得到同一個 compound score (-1..+1)。
分析器在第一次使用時才載入 (lexicon 載入需要一點時間)。
"""

from functools import lru_cache
import logging

from hourstats.errors import ScorerUnavailable

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _load_analyzer():
    """
    載入 VADER analyzer

    Raises:
        ScorerUnavailable: vaderSentiment 未安裝或 lexicon 無法載入
    """
    try:
        from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer
    except ImportError as e:
        raise ScorerUnavailable(
            "vaderSentiment is not installed. Try: pip install vaderSentiment"
        ) from e

    try:
        analyzer = SentimentIntensityAnalyzer()
    except (OSError, LookupError) as e:
        raise ScorerUnavailable(f"Failed to load VADER lexicon: {e}") from e

    logger.info("✓ VADER sentiment analyzer loaded")
    return analyzer


class VaderScorer:
    """Compound-score scorer backed by vaderSentiment"""

    def score(self, text: str) -> float:
        if not text or not text.strip():
            return 0.0
        return float(_load_analyzer().polarity_scores(text)["compound"])
