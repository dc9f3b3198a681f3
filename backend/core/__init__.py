"""
Core services for the engagement agent backend.
- AgentRuntimeState: daily quota, per-author cooldowns, rolling action history
- DecisionEngine: classify -> decide -> gate -> generate -> score -> execute

Every post reaches exactly one terminal outcome (acted, ignored, flagged or
failed) and every outcome is logged with the post ID, category and reasoning.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from adapter.models import Post, WriteResult
from adapter.x import XGateway, XAdapterError, XRateLimitError
from adapter.grok import GrokAdapter, GeneratedResponse, IntentAnalysis
from adapter.grok.fallbacks import fallback_classification
from monitoring import monitor, EventType
from .config import AgentConfig

logger = logging.getLogger(__name__)

ROLLING_WINDOW_SECONDS = 24 * 60 * 60
MAX_PRIORITY_SCORE = 200
TIER_BASE = {"high": 100, "medium": 50, "low": 25}
SUPPORT_CATEGORIES = ("customer_support", "community_building")


class ActionKind(str, Enum):
    """What the agent does with a post."""
    REPLY = "reply"
    QUOTE = "quote"
    RETWEET = "retweet"
    LIKE = "like"
    IGNORE = "ignore"
    FLAG = "flag"


class Outcome(str, Enum):
    """Terminal state of a processed post."""
    ACTED = "acted"
    IGNORED = "ignored"
    FLAGGED = "flagged"
    FAILED = "failed"


class PolicyBlocked(Exception):
    """Raised when a generated response fails the appropriateness or length check."""
    pass


class ClassificationResult(BaseModel):
    """A classification tagged with whether it came from the classifier or the heuristic fallback."""
    status: Literal["ok", "degraded"]
    intent: IntentAnalysis
    reason: Optional[str] = None

    @classmethod
    def ok(cls, intent: IntentAnalysis) -> "ClassificationResult":
        return cls(status="ok", intent=intent)

    @classmethod
    def degraded(cls, intent: IntentAnalysis, reason: str) -> "ClassificationResult":
        return cls(status="degraded", intent=intent, reason=reason)

    @property
    def is_degraded(self) -> bool:
        return self.status == "degraded"


class AgentDecision(BaseModel):
    """Policy verdict for a classified post."""
    should_act: bool
    priority: Literal["high", "medium", "low"]
    action: ActionKind
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    priority_keyword_hit: bool = False
    engagement: int = 0


class AgentAction(BaseModel):
    """The full record of one post's trip through the engine."""
    post: Post
    intent: IntentAnalysis
    action: ActionKind
    outcome: Outcome
    reasoning: str
    priority_score: int = Field(default=0, ge=0, le=MAX_PRIORITY_SCORE)
    response: Optional[GeneratedResponse] = None
    write_result: Optional[WriteResult] = None
    degraded: bool = False
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Reservation:
    """Result of an atomic quota/cooldown check-and-reserve."""
    granted: bool
    author_id: str
    reason: Optional[str] = None
    reserved_at: Optional[float] = None
    previous_time: Optional[float] = None


class AgentRuntimeState:
    """
    Mutable counters of one agent instance.

    Daily counters and cooldowns reset only through reset_daily(); there is
    no wall-clock rollover.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.daily_action_count = 0
        self.last_action_time: Dict[str, float] = {}
        self.recent_actions: Dict[str, float] = {}
        self.outcome_counts: Dict[str, int] = {}

    def now(self) -> float:
        return self._clock()

    def _block_reason(self, author_id: str, max_daily_actions: int, cooldown_seconds: float) -> Optional[str]:
        if self.daily_action_count >= max_daily_actions:
            return f"daily quota reached ({self.daily_action_count}/{max_daily_actions})"
        last = self.last_action_time.get(author_id)
        if last is not None and self.now() - last < cooldown_seconds:
            remaining = cooldown_seconds - (self.now() - last)
            return f"author {author_id} in cooldown for {remaining:.0f}s"
        return None

    def can_act(self, author_id: str, max_daily_actions: int, cooldown_seconds: float) -> bool:
        with self._lock:
            return self._block_reason(author_id, max_daily_actions, cooldown_seconds) is None

    def try_reserve(self, author_id: str, max_daily_actions: int, cooldown_seconds: float) -> Reservation:
        """Check quota and cooldown and, if both pass, claim a slot in one step."""
        with self._lock:
            reason = self._block_reason(author_id, max_daily_actions, cooldown_seconds)
            if reason is not None:
                return Reservation(granted=False, author_id=author_id, reason=reason)

            now = self.now()
            previous = self.last_action_time.get(author_id)
            self.daily_action_count += 1
            self.last_action_time[author_id] = now
            return Reservation(granted=True, author_id=author_id, reserved_at=now, previous_time=previous)

    def release(self, reservation: Reservation) -> None:
        """Give back a reserved slot whose action never went out."""
        if not reservation.granted:
            return
        with self._lock:
            self.daily_action_count = max(0, self.daily_action_count - 1)
            if self.last_action_time.get(reservation.author_id) == reservation.reserved_at:
                if reservation.previous_time is None:
                    del self.last_action_time[reservation.author_id]
                else:
                    self.last_action_time[reservation.author_id] = reservation.previous_time

    def record_action(self, post_id: str, author_id: Optional[str] = None) -> None:
        """Record a completed action; the author's cooldown restarts from now."""
        with self._lock:
            now = self.now()
            if author_id is not None:
                self.last_action_time[author_id] = now
            self.recent_actions[post_id] = now
            cutoff = now - ROLLING_WINDOW_SECONDS
            for key in [k for k, ts in self.recent_actions.items() if ts <= cutoff]:
                del self.recent_actions[key]

    def record_outcome(self, outcome: Outcome) -> None:
        with self._lock:
            self.outcome_counts[outcome.value] = self.outcome_counts.get(outcome.value, 0) + 1

    def reset_daily(self) -> None:
        with self._lock:
            self.daily_action_count = 0
            self.last_action_time.clear()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self.now()
            recent = [ts for ts in self.recent_actions.values() if now - ts < ROLLING_WINDOW_SECONDS]
            return {
                "daily_action_count": self.daily_action_count,
                "authors_in_cooldown_map": len(self.last_action_time),
                "recent_actions": len(recent),
                "average_action_age_seconds": round(sum(now - ts for ts in recent) / len(recent), 1) if recent else 0.0,
                "outcomes": dict(self.outcome_counts),
            }


def _monitor_sink(event_type: EventType, subject: Optional[str] = None, **details) -> None:
    monitor.activity.add_event(event_type, subject=subject, **details)


class DecisionEngine:
    """
    Decides, per inbound post, whether and how to engage.

    Usage:
        engine = DecisionEngine(gateway, grok, AgentConfig.from_env())
        action = engine.process_post(post)
        print(action.outcome, action.reasoning)
    """

    def __init__(
        self,
        gateway: XGateway,
        grok_adapter: GrokAdapter,
        config: Optional[AgentConfig] = None,
        state: Optional[AgentRuntimeState] = None,
        sink: Optional[Callable[..., None]] = None,
        classifier=None,
        generator=None,
    ):
        """
        Args:
            gateway: Access path for every X API write
            grok_adapter: Default classifier and reply generator
            config: Thresholds and quotas (defaults to AgentConfig())
            state: Runtime counters (a fresh one is created if omitted)
            sink: Structured log sink, called as sink(event_type, subject=..., **details)
            classifier: Override for grok_adapter.classify_post
            generator: Override for grok_adapter.generate_response
        """
        self.gateway = gateway
        self.grok_adapter = grok_adapter
        self.classifier = classifier or grok_adapter
        self.generator = generator or grok_adapter
        self.config = config or AgentConfig()
        self.state = state or AgentRuntimeState()
        self.sink = sink or _monitor_sink

    # ------------------------------------------------------------------
    # Log sink
    # ------------------------------------------------------------------

    def _record(self, event_type: EventType, subject: Optional[str] = None, **details) -> None:
        """Send an event to the sink. Sink failures are logged, never raised."""
        try:
            self.sink(event_type, subject=subject, **details)
        except Exception as e:
            logger.warning(f"Log sink failed for {event_type}: {e}")

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def classify(self, post: Post) -> ClassificationResult:
        """Classify a post, degrading to the keyword heuristic if the classifier fails."""
        try:
            return ClassificationResult.ok(self.classifier.classify_post(post))
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.error(f"Classification unavailable for post {post.id}, using heuristic default: {reason}")
            self._record(EventType.CLASSIFICATION_DEGRADED, subject=post.id, reason=reason)
            return ClassificationResult.degraded(fallback_classification(post, reason), reason)

    def _priority_keyword(self, text: str) -> Optional[str]:
        lowered = text.lower()
        for keyword in self.config.priority_keywords:
            if keyword.lower() in lowered:
                return keyword
        return None

    def make_decision(self, post: Post, intent: IntentAnalysis) -> AgentDecision:
        """Apply the engagement policy to a classified post."""
        engagement = post.metrics.total
        high_engagement = engagement > self.config.high_engagement_threshold
        confidence = min(0.95, intent.confidence * 0.8 + min(engagement / 100, 1) * 0.2)

        if intent.category == "spam_detection" and intent.confidence >= self.config.detection_threshold:
            return AgentDecision(
                should_act=False,
                priority=intent.priority,
                action=ActionKind.FLAG,
                confidence=confidence,
                reasoning=f"Intent: spam_detection ({intent.confidence:.2f}), flagged for review",
                engagement=engagement,
            )

        should_act = intent.engagement_opportunity and intent.confidence >= self.config.detection_threshold
        if high_engagement:
            should_act = True

        priority = intent.priority
        keyword = self._priority_keyword(post.text)
        if keyword is not None:
            should_act = True
            priority = "high"

        action = ActionKind.IGNORE
        if should_act:
            action = ActionKind.LIKE
            if intent.category in SUPPORT_CATEGORIES:
                action = ActionKind.REPLY
            elif intent.sentiment == "positive" and high_engagement:
                action = ActionKind.QUOTE
            elif intent.sentiment == "positive":
                action = ActionKind.RETWEET

        reasoning = (
            f"Intent: {intent.category}, Sentiment: {intent.sentiment}, Engagement: {engagement}, "
            f"Keywords: {'Priority (' + keyword + ')' if keyword else 'Standard'}"
        )
        if not should_act:
            reasoning += f", confidence {intent.confidence:.2f} below threshold {self.config.detection_threshold}"

        return AgentDecision(
            should_act=should_act,
            priority=priority,
            action=action,
            confidence=confidence,
            reasoning=reasoning,
            priority_keyword_hit=keyword is not None,
            engagement=engagement,
        )

    def can_act(self, author_id: str) -> bool:
        """False if the daily quota is used up or the author is still in cooldown."""
        return self.state.can_act(author_id, self.config.max_daily_actions, self.config.cooldown_seconds)

    def calculate_priority(
        self,
        intent: IntentAnalysis,
        decision: AgentDecision,
        response: Optional[GeneratedResponse] = None,
    ) -> int:
        score = TIER_BASE.get(decision.priority, 0)
        score += int(intent.confidence * 50)
        if intent.engagement_opportunity:
            score += 30
        if intent.category == "customer_support":
            score += 40
        if intent.sentiment == "positive":
            score += 20
        if response is not None and response.confidence > 0.8:
            score += 25
        return max(0, min(score, MAX_PRIORITY_SCORE))

    def validate_response(self, response: GeneratedResponse) -> None:
        """
        Raise PolicyBlocked if a response must not be posted.

        Over-long responses are rejected, never truncated.
        """
        content = response.content
        if len(content) > self.config.max_response_length:
            raise PolicyBlocked(
                f"response length {len(content)} exceeds limit {self.config.max_response_length}"
            )
        lowered = content.lower()
        for term in self.config.blocked_terms:
            if term.lower() in lowered:
                raise PolicyBlocked(f"response contains blocked term '{term}'")
        if not response.is_appropriate:
            raise PolicyBlocked("response marked inappropriate by generator")

    def execute(self, post: Post, action: ActionKind, response: Optional[GeneratedResponse] = None) -> Optional[WriteResult]:
        """Route an action through the gateway. Returns None in dry-run mode."""
        if self.config.dry_run:
            logger.info(f"[dry run] would {action.value} post {post.id}")
            return None

        if action == ActionKind.REPLY:
            return self.gateway.reply_to(post.id, response.content)
        if action == ActionKind.QUOTE:
            return self.gateway.quote(post.id, response.content)
        if action == ActionKind.RETWEET:
            return self.gateway.retweet(post.id)
        if action == ActionKind.LIKE:
            return self.gateway.like(post.id)
        raise ValueError(f"Action {action.value} has no outbound call")

    # ------------------------------------------------------------------
    # End-to-end processing
    # ------------------------------------------------------------------

    def _finish(
        self,
        post: Post,
        classification: ClassificationResult,
        action: ActionKind,
        outcome: Outcome,
        reasoning: str,
        priority_score: int = 0,
        response: Optional[GeneratedResponse] = None,
        write_result: Optional[WriteResult] = None,
    ) -> AgentAction:
        intent = classification.intent
        result = AgentAction(
            post=post,
            intent=intent,
            action=action,
            outcome=outcome,
            reasoning=reasoning,
            priority_score=priority_score,
            response=response,
            write_result=write_result,
            degraded=classification.is_degraded,
        )

        log_line = (
            f"Post {post.id} {outcome.value} (action={action.value}, category={intent.category}, "
            f"priority={priority_score}): {reasoning}"
        )
        if outcome == Outcome.FLAGGED:
            logger.warning(log_line)
        elif outcome == Outcome.FAILED:
            logger.error(log_line)
        else:
            logger.info(log_line)

        event_type = {
            Outcome.ACTED: EventType.POST_ACTED,
            Outcome.IGNORED: EventType.POST_IGNORED,
            Outcome.FLAGGED: EventType.POST_FLAGGED,
            Outcome.FAILED: EventType.POST_FAILED,
        }[outcome]
        self._record(
            event_type,
            subject=post.id,
            author_id=post.author_id,
            category=intent.category,
            action=action.value,
            priority_score=priority_score,
            degraded=classification.is_degraded,
            reasoning=reasoning,
        )
        self.state.record_outcome(outcome)
        monitor.metrics.record_outcome(outcome.value)
        return result

    def process_post(self, post: Post) -> AgentAction:
        """
        Run one post through the full pipeline.

        Never raises: collaborator, policy and gateway failures all end in a
        terminal AgentAction.
        """
        classification = self.classify(post)
        try:
            return self._process_classified(post, classification)
        except Exception as e:
            logger.error(f"Unexpected failure processing post {post.id}: {e}", exc_info=True)
            return self._finish(post, classification, ActionKind.IGNORE, Outcome.FAILED, f"processing error: {e}")

    def _process_classified(self, post: Post, classification: ClassificationResult) -> AgentAction:
        intent = classification.intent
        decision = self.make_decision(post, intent)

        if decision.action == ActionKind.FLAG:
            return self._finish(post, classification, ActionKind.FLAG, Outcome.FLAGGED, decision.reasoning)

        if not decision.should_act:
            return self._finish(post, classification, ActionKind.IGNORE, Outcome.IGNORED, decision.reasoning)

        reservation = self.state.try_reserve(
            post.author_id, self.config.max_daily_actions, self.config.cooldown_seconds
        )
        if not reservation.granted:
            return self._finish(
                post, classification, decision.action, Outcome.IGNORED,
                f"rate limited or cooldown: {reservation.reason}",
            )

        response = None
        if decision.action in (ActionKind.REPLY, ActionKind.QUOTE):
            try:
                response = self.generator.generate_response(post, intent)
            except Exception as e:
                self.state.release(reservation)
                return self._finish(
                    post, classification, decision.action, Outcome.IGNORED, f"response generation unavailable: {e}"
                )

        score = self.calculate_priority(intent, decision, response)

        if response is not None:
            try:
                self.validate_response(response)
            except PolicyBlocked as e:
                self.state.release(reservation)
                logger.warning(f"Policy blocked response for post {post.id}: {e}")
                self._record(EventType.POLICY_BLOCKED, subject=post.id, reason=str(e), content=response.content)
                return self._finish(
                    post, classification, decision.action, Outcome.IGNORED,
                    f"policy blocked: {e}", priority_score=score, response=response,
                )

        try:
            write_result = self.execute(post, decision.action, response)
        except XRateLimitError as e:
            self.state.release(reservation)
            return self._finish(
                post, classification, decision.action, Outcome.IGNORED,
                f"X API rate limited: {e}", priority_score=score, response=response,
            )
        except XAdapterError as e:
            self.state.release(reservation)
            return self._finish(
                post, classification, decision.action, Outcome.FAILED,
                f"X API error: {e}", priority_score=score, response=response,
            )
        except Exception:
            self.state.release(reservation)
            raise

        self.state.record_action(post.id, post.author_id)
        reasoning = decision.reasoning + (" (dry run)" if self.config.dry_run else "")
        return self._finish(
            post, classification, decision.action, Outcome.ACTED, reasoning,
            priority_score=score, response=response, write_result=write_result,
        )

    async def process_post_async(self, post: Post) -> AgentAction:
        """
        Async version of process_post.
        Runs the blocking pipeline in a thread pool to avoid blocking the event loop.
        """
        return await asyncio.to_thread(self.process_post, post)

    async def process_batch(self, posts: List[Post], max_concurrency: int = 5) -> List[AgentAction]:
        """
        Process several posts concurrently.

        Returns the actions ordered by priority score, highest first.
        """
        semaphore = asyncio.Semaphore(max_concurrency)

        async def run(post: Post) -> AgentAction:
            async with semaphore:
                return await self.process_post_async(post)

        results = await asyncio.gather(*(run(post) for post in posts))
        logger.info(f"Processed batch of {len(posts)} posts")
        return sorted(results, key=lambda a: a.priority_score, reverse=True)

    # ------------------------------------------------------------------
    # Administrative controls
    # ------------------------------------------------------------------

    def get_engagement_metrics(self) -> Dict[str, Any]:
        """Totals for today plus rolling 24h action history."""
        snapshot = self.state.snapshot()
        return {
            "total_actions_today": snapshot["daily_action_count"],
            "max_daily_actions": self.config.max_daily_actions,
            "successful_engagements_24h": snapshot["recent_actions"],
            "average_action_age_seconds": snapshot["average_action_age_seconds"],
            "outcomes": snapshot["outcomes"],
        }

    def reset_daily_counters(self) -> None:
        """Start a new day: clear the daily count and all cooldowns."""
        self.state.reset_daily()
        logger.info("Daily counters and cooldowns reset")
        self._record(EventType.DAILY_RESET, subject="agent")

    def health_check(self) -> Dict[str, Any]:
        classifier_ok = self.grok_adapter.health_check()
        gateway_ok = self.gateway.validate_credentials()
        return {
            "status": "healthy" if classifier_ok and gateway_ok else "degraded",
            "classifier": classifier_ok,
            "gateway": gateway_ok,
            "dry_run": self.config.dry_run,
            "state": self.state.snapshot(),
        }


__all__ = [
    "ActionKind",
    "Outcome",
    "PolicyBlocked",
    "ClassificationResult",
    "AgentDecision",
    "AgentAction",
    "AgentRuntimeState",
    "Reservation",
    "DecisionEngine",
    "AgentConfig",
]
