"""
Mood mapper

net sentiment percent (-100..+100) → 100 個依情緒排序的詞之一。

映射不是線性的：大部分實際的 sentiment 都聚集在 0 附近，中段用 power-law
拉開，讓常見的數值落在不同的中段詞彙；只有極端值才會到兩端。
"""

import math

MOOD_WORDS = [
    # 0-9: devastated
    "hopeless", "devastated", "shattered", "destroyed", "ruined",
    "distressed", "anguished", "tormented", "crushed", "broken",
    # 10-19: angry
    "angry", "furious", "enraged", "livid", "outraged",
    "upset", "disturbed", "agitated", "perturbed", "unsettled",
    # 20-29: frustrated / disappointed
    "frustrated", "exasperated", "annoyed", "irritated", "bothered",
    "disappointed", "let-down", "disheartened", "discouraged", "dejected",
    # 30-39: worried
    "worried", "anxious", "uneasy", "concerned", "troubled",
    "apprehensive", "nervous", "edgy", "tense", "restless",
    # 40-49: cautious / neutral
    "cautious", "wary", "guarded", "reserved", "hesitant",
    "indifferent", "apathetic", "unmoved", "detached", "neutral",
    # 50-59: calm / content
    "calm", "peaceful", "serene", "tranquil", "composed",
    "pleased", "satisfied", "content", "gratified", "fulfilled",
    # 60-69: cheerful / happy
    "cheerful", "upbeat", "bright", "sunny", "optimistic",
    "happy", "joyful", "glad", "delighted", "merry",
    # 70-79: excited
    "excited", "enthusiastic", "eager", "thrilled", "elated",
    "ecstatic", "overjoyed", "joyous", "rapturous", "exultant",
    # 80-89: exuberant
    "exhilarated", "exuberant", "vibrant", "energetic", "lively",
    "jubilant", "triumphant", "victorious", "celebratory", "festive",
    # 90-99: transcendent
    "transcendent", "blissful", "divine", "heavenly", "sublime",
    "euphoric", "magnificent", "glorious", "radiant", "exalted",
]

LOW_KNEE = 0.3
HIGH_KNEE = 0.7
MID_EXPONENT = 1.5


def curve_index(x: float) -> int:
    """
    [0, 1] → [0, 99] 的非遞減 curve

    - x < 0.3: 線性映射到 [0, 30)
    - 0.3 <= x <= 0.7: power-law (1.5) 映射到 [30, 69]
    - x > 0.7: 線性映射到 (70, 99]
    """
    x = max(0.0, min(1.0, x))

    if x < LOW_KNEE:
        position = x / LOW_KNEE * 30
    elif x <= HIGH_KNEE:
        t = (x - LOW_KNEE) / (HIGH_KNEE - LOW_KNEE)
        position = 30 + (t ** MID_EXPONENT) * 39
    else:
        position = 70 + (x - HIGH_KNEE) / (1 - HIGH_KNEE) * 29

    # 消除浮點誤差 (e.g. 0.7 - 0.3 != 0.4)，讓分段端點落在整數上
    index = int(math.floor(round(position, 9)))
    return max(0, min(len(MOOD_WORDS) - 1, index))


def mood_label(net_sentiment_percent: float) -> str:
    """
    取得 mood 詞

    Args:
        net_sentiment_percent: -100..+100 (超出範圍會夾住，NaN 視為 0)

    Returns:
        MOOD_WORDS 中的一個詞
    """
    value = float(net_sentiment_percent)
    if math.isnan(value):
        value = 0.0
    value = max(-100.0, min(100.0, value))

    normalized = (value + 100.0) / 200.0
    return MOOD_WORDS[curve_index(normalized)]
