"""
Similarity and size heuristics shared by conflict detection and compaction.
"""

import math
import re
from typing import Optional, Sequence

CJK_PATTERN = re.compile(r'[\u4e00-\u9fa5]')


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched or zero-length vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    magnitude = norm_a * norm_b
    return 0.0 if magnitude == 0 else dot / magnitude


def jaccard_similarity(a: str, b: str) -> float:
    """Lexical Jaccard similarity over lowercase whitespace-separated words."""
    words_a = set(a.lower().split())
    words_b = set(b.lower().split())
    union = words_a | words_b
    if not union:
        return 1.0 if a == b else 0.0
    return len(words_a & words_b) / len(union)


def estimate_tokens(text: Optional[str]) -> int:
    """Approximate token count: CJK characters / 1.5 plus other characters / 4, rounded up."""
    if not text:
        return 0
    cjk = len(CJK_PATTERN.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / 1.5 + other / 4)
