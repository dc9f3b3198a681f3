"""
Typed helper wrapping Grok (xai-sdk) flows for the engagement agent.

Two collaborators of the decision engine live here: the content classifier
(classify_post) and the reply generator (generate_response). Both raise a
GrokAdapterError subclass when Grok cannot answer; the engine decides what
to do about it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import List, Literal, Optional

from dotenv import load_dotenv, find_dotenv
from pydantic import BaseModel, ConfigDict, Field
from xai_sdk import Client
from xai_sdk.chat import system, user

from monitoring import monitor, EventType
from ..models import Post

load_dotenv(find_dotenv(usecwd=True))

logger = logging.getLogger(__name__)

INTENT_CATEGORIES = [
    "community_building",
    "customer_support",
    "engagement_opportunity",
    "spam_detection",
    "sentiment_analysis",
    "trending_topic",
    "influencer_interaction",
    "brand_mention",
]
UNKNOWN_CATEGORY = "unknown"

SENTIMENTS = ("positive", "negative", "neutral")
PRIORITIES = ("high", "medium", "low")

RESPONSE_TEMPLATES = {
    "community_building": [
        "Thanks for reaching out! We love connecting with our community. {custom_response}",
        "Welcome to the conversation! {custom_response} What's on your mind?",
    ],
    "customer_support": [
        "We're here to help! {custom_response} Let us know if you need anything else.",
        "Thanks for bringing this to our attention. {custom_response} We're on it!",
    ],
    "engagement_opportunity": [
        "Love this energy! {custom_response} Keep the conversation going!",
        "Amazing insight! {custom_response} What do others think?",
    ],
}


class GrokAdapterError(Exception):
    """Base exception for Grok collaborator errors."""
    pass


class ClassificationUnavailable(GrokAdapterError):
    """Raised when the classifier cannot produce a result."""
    pass


class GenerationUnavailable(GrokAdapterError):
    """Raised when the reply generator cannot produce a result."""
    pass


class IntentAnalysis(BaseModel):
    """Classification of a single post. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    category: str = Field(description="Intent category from the fixed taxonomy, or 'unknown'")
    confidence: float = Field(ge=0.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)
    sentiment: Literal["positive", "negative", "neutral"] = "neutral"
    engagement_opportunity: bool = False
    priority: Literal["high", "medium", "low"] = "medium"
    reasoning: str = ""


class GeneratedResponse(BaseModel):
    """A drafted reply or quote text."""
    content: str
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    intent: str = ""
    tone: str = ""
    hashtags: List[str] = Field(default_factory=list)
    emojis: List[str] = Field(default_factory=list)
    length: int = 0
    is_appropriate: bool = True
    reasoning: str = ""


# Raw structured-output schemas. Grok fills these; they are normalized before use.
class IntentReport(BaseModel):
    category: str = Field(description=f"One of: {', '.join(INTENT_CATEGORIES)}")
    confidence: float = Field(description="Confidence from 0.0 to 1.0")
    keywords: List[str] = Field(description="Key terms from the post")
    sentiment: str = Field(description="positive / negative / neutral")
    engagement_opportunity: bool = Field(description="Whether engaging with this post is worthwhile")
    priority: str = Field(description="high / medium / low")
    reasoning: str = Field(description="One sentence explaining the classification")


class ReplyDraft(BaseModel):
    content: str = Field(description="The reply text, ready to post")
    confidence: float = Field(description="Confidence from 0.0 to 1.0 that this reply is a good one")
    tone: str = Field(description="Tone of the reply")
    hashtags: List[str] = Field(description="Hashtags used in the reply")
    emojis: List[str] = Field(description="Emojis used in the reply")
    reasoning: str = Field(description="Why this reply fits the post")


class HealthPing(BaseModel):
    ok: bool = Field(description="Always true")


def normalize_intent(report: IntentReport) -> IntentAnalysis:
    """Clamp and coerce a raw Grok classification into an IntentAnalysis."""
    category = (report.category or "").strip().lower()
    if category not in INTENT_CATEGORIES:
        logger.debug(f"Unrecognized intent category {report.category!r}, using '{UNKNOWN_CATEGORY}'")
        category = UNKNOWN_CATEGORY

    sentiment = (report.sentiment or "").strip().lower()
    priority = (report.priority or "").strip().lower()

    return IntentAnalysis(
        category=category,
        confidence=max(0.0, min(1.0, report.confidence if report.confidence is not None else 0.5)),
        keywords=[k for k in report.keywords if k] if report.keywords else [],
        sentiment=sentiment if sentiment in SENTIMENTS else "neutral",
        engagement_opportunity=bool(report.engagement_opportunity),
        priority=priority if priority in PRIORITIES else "medium",
        reasoning=report.reasoning or "AI analysis",
    )


class GrokAdapter:
    """
    Adapter for Grok API calls with proper error handling and logging.
    """

    def __init__(self, persona: str = "a friendly community manager", max_length: int = 280) -> None:
        self.api_key = os.getenv("XAI_API_KEY")
        self.fast_model = os.getenv("GROK_MODEL_FAST", "grok-4-1-fast")
        self.reasoning_model = os.getenv("GROK_MODEL_REASONING", "grok-4-1-fast-reasoning")
        self.persona = persona
        self.max_length = max_length
        self._client: Optional[Client] = None

        if self.api_key:
            try:
                self._client = Client(api_key=self.api_key)
                logger.info("GrokAdapter initialized with live API client")
            except Exception as e:
                logger.warning(f"Failed to initialize xAI client: {e}")
                self._client = None
        else:
            logger.warning("GrokAdapter initialized without API client (XAI_API_KEY not set)")
            self._client = None

    @property
    def is_live(self) -> bool:
        return self._client is not None

    def _structured_call(self, *, model: str, system_prompt: str, user_prompt: str, schema: type[BaseModel]) -> Optional[BaseModel]:
        """
        Perform a structured chat call via xai-sdk.

        Returns None when no client is configured or the call fails.
        """
        if not self._client:
            logger.debug("No client available, returning None")
            return None

        start_time_ms = time.time() * 1000

        try:
            logger.debug(f"Making API call to model {model} for {schema.__name__}")

            chat = self._client.chat.create(model=model)
            chat.append(system(system_prompt))
            chat.append(user(user_prompt))
            _, payload = chat.parse(schema)

            latency_ms = (time.time() * 1000) - start_time_ms
            logger.debug(f"API call successful ({latency_ms:.0f}ms)")

            monitor.metrics.record_grok_call(latency_ms, error=False)
            monitor.activity.add_event(
                EventType.GROK_CALL,
                model=model,
                schema=schema.__name__,
                latency_ms=round(latency_ms, 1)
            )
            return payload

        except Exception as e:
            latency_ms = (time.time() * 1000) - start_time_ms
            logger.error(f"API call failed: {e}", exc_info=True)

            monitor.metrics.record_grok_call(latency_ms, error=True)
            monitor.activity.add_event(
                EventType.ERROR,
                error=f"Grok API: {str(e)[:100]}",
                model=model
            )
            return None

    # ---------------------------------------------------------------------
    # Collaborators of the decision engine
    # ---------------------------------------------------------------------

    def classify_post(self, post: Post) -> IntentAnalysis:
        """
        Classify a post's intent, sentiment and engagement opportunity.

        Raises:
            ClassificationUnavailable: If Grok is not configured or the call fails
        """
        metrics = post.metrics
        user_prompt = f"""Analyze this post for intent and engagement opportunities:

Post: "{post.text}"
Author: @{post.author_username}
Language: {post.lang or 'unknown'}
Engagement: {metrics.total} (likes: {metrics.likes}, retweets: {metrics.retweets}, replies: {metrics.replies})
Created: {post.created_at.isoformat()}

Available categories: {', '.join(INTENT_CATEGORIES)}

Consider:
- What is the author's intent?
- Is this an opportunity for community engagement?
- What's the sentiment?
- How should we prioritize responding?"""

        payload = self._structured_call(
            model=self.fast_model,
            system_prompt="You are an expert in social media analysis. Classify the post for intent, sentiment and engagement opportunity.",
            user_prompt=user_prompt,
            schema=IntentReport,
        )
        if isinstance(payload, IntentReport):
            return normalize_intent(payload)
        raise ClassificationUnavailable(f"Grok API call failed for classify_post({post.id}).")

    def generate_response(self, post: Post, intent: IntentAnalysis) -> GeneratedResponse:
        """
        Draft a reply to a post given its classification.

        Raises:
            GenerationUnavailable: If Grok is not configured or the call fails
        """
        templates = RESPONSE_TEMPLATES.get(intent.category, RESPONSE_TEMPLATES["community_building"])
        template_lines = "\n".join(f"- {t}" for t in templates)

        user_prompt = f"""Generate a reply to this post:

Original post: "{post.text}"
Author: @{post.author_username}
Intent: {intent.category} (confidence: {intent.confidence:.2f})
Sentiment: {intent.sentiment}
Priority: {intent.priority}

Example reply shapes:
{template_lines}

Requirements:
- Keep under {self.max_length} characters
- Make it feel human and engaging
- Replace {{custom_response}} with your own content"""

        payload = self._structured_call(
            model=self.reasoning_model,
            system_prompt=f"You are {self.persona}. Write engaging, contextual and appropriate replies to posts on X.",
            user_prompt=user_prompt,
            schema=ReplyDraft,
        )
        if not isinstance(payload, ReplyDraft):
            raise GenerationUnavailable(f"Grok API call failed for generate_response({post.id}).")

        content = payload.content.strip()
        if not content:
            raise GenerationUnavailable(f"Grok returned an empty reply for {post.id}.")

        return GeneratedResponse(
            content=content,
            confidence=max(0.0, min(1.0, payload.confidence)),
            intent=intent.category,
            tone=payload.tone,
            hashtags=payload.hashtags,
            emojis=payload.emojis,
            length=len(content),
            reasoning=payload.reasoning or "AI-generated response",
        )

    def health_check(self) -> bool:
        """True if Grok answers a trivial structured call."""
        payload = self._structured_call(
            model=self.fast_model,
            system_prompt="Reply with ok=true.",
            user_prompt="ping",
            schema=HealthPing,
        )
        return isinstance(payload, HealthPing)

    # -------------------------------------------------------------------------
    # Async versions (run blocking calls in thread pool)
    # -------------------------------------------------------------------------

    async def classify_post_async(self, post: Post) -> IntentAnalysis:
        """
        Async version of classify_post.
        Runs the blocking xai-sdk call in a thread pool to avoid blocking the event loop.
        """
        return await asyncio.to_thread(self.classify_post, post)

    async def generate_response_async(self, post: Post, intent: IntentAnalysis) -> GeneratedResponse:
        return await asyncio.to_thread(self.generate_response, post, intent)


__all__ = [
    "GrokAdapter",
    "GrokAdapterError",
    "ClassificationUnavailable",
    "GenerationUnavailable",
    "IntentAnalysis",
    "GeneratedResponse",
    "IntentReport",
    "ReplyDraft",
    "normalize_intent",
    "INTENT_CATEGORIES",
    "UNKNOWN_CATEGORY",
]
