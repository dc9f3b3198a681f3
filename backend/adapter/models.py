"""
Shared data models for adapters.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class EngagementMetrics(BaseModel):
    """Public engagement counters of a post."""
    likes: int = Field(default=0, ge=0)
    retweets: int = Field(default=0, ge=0)
    replies: int = Field(default=0, ge=0)
    quotes: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        """Engagement sum used by the decision policy (quotes excluded)."""
        return self.likes + self.retweets + self.replies


class Post(BaseModel):
    """
    A single post (tweet) from X, the unit of work of the agent.

    The author is the counterparty: replies, likes and retweets are
    directed at them, and per-author cooldowns are keyed by author_id.

    Attributes:
        id: Unique post ID
        text: Full post text
        author_id: Author account ID
        author_username: Author handle (without @)
        created_at: When the post was created
        metrics: Engagement metrics
        lang: BCP47 language tag reported by X
    """
    id: str = Field(description="Unique post ID")
    text: str = Field(description="Full post text")
    author_id: str = Field(description="Author account ID")
    author_username: str = Field(default="unknown", description="Author handle (without @)")
    created_at: datetime = Field(description="When the post was created")
    metrics: EngagementMetrics = Field(default_factory=EngagementMetrics)
    lang: Optional[str] = Field(default=None, description="Language tag")


class SearchFilters(BaseModel):
    """Filter parameters appended to a search query."""
    keywords: List[str] = Field(default_factory=list)
    authors: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    exclude_retweets: bool = True
    exclude_replies: bool = False
    min_engagement: int = Field(default=0, ge=0)
    max_results: int = Field(default=100, ge=10, le=100)


class ResultSource(str, Enum):
    """Where a read result came from."""
    LIVE = "live"
    CACHED_FRESH = "cached_fresh"
    CACHED_DUE_TO_RATE_LIMIT = "cached_due_to_rate_limit"
    CACHED_DUE_TO_ERROR = "cached_due_to_error"


class SearchResult(BaseModel):
    """Result of a gateway read, tagged with its provenance."""
    posts: List[Post] = Field(default_factory=list)
    query: str
    signature: str
    source: ResultSource
    is_fresh: bool = True
    cached_at: Optional[datetime] = None
    message: Optional[str] = Field(default=None, description="Why a cached result was served")

    @property
    def is_cached(self) -> bool:
        return self.source != ResultSource.LIVE


class WriteResult(BaseModel):
    """Outcome of a write call (post, reply, quote, like, retweet)."""
    action: str
    target_id: Optional[str] = None
    created_id: Optional[str] = None
    success: bool = True


__all__ = [
    "EngagementMetrics",
    "Post",
    "SearchFilters",
    "ResultSource",
    "SearchResult",
    "WriteResult",
]
