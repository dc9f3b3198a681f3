"""
Heuristic stand-in for the Grok classifier.

Used when classification is unavailable so that every post still reaches
a decision. The result is deliberately low-confidence.
"""

from __future__ import annotations

from . import IntentAnalysis
from ..models import Post

QUESTION_MARKERS = ("?", "help", "support")
POSITIVE_MARKERS = ("great", "awesome", "love")
NEGATIVE_MARKERS = ("bad", "terrible", "hate")

FALLBACK_CONFIDENCE = 0.5


def fallback_classification(post: Post, reason: str = "classifier unavailable") -> IntentAnalysis:
    """Keyword-presence classification with a crude sentiment guess."""
    text = post.text.lower()
    has_question = any(marker in text for marker in QUESTION_MARKERS)
    has_positive = any(marker in text for marker in POSITIVE_MARKERS)
    has_negative = any(marker in text for marker in NEGATIVE_MARKERS)

    if has_positive:
        sentiment = "positive"
    elif has_negative:
        sentiment = "negative"
    else:
        sentiment = "neutral"

    return IntentAnalysis(
        category="customer_support" if has_question else "community_building",
        confidence=FALLBACK_CONFIDENCE,
        keywords=[word for word in text.split() if len(word) > 3][:5],
        sentiment=sentiment,
        engagement_opportunity=has_question or has_positive,
        priority="high" if has_question else "medium",
        reasoning=f"Default analysis ({reason})",
    )
