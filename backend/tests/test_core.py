"""Unit tests for the decision engine and agent runtime state."""

import asyncio
import threading

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from adapter.grok import (
    ClassificationUnavailable,
    GenerationUnavailable,
    GeneratedResponse,
    IntentAnalysis,
)
from adapter.models import Post, EngagementMetrics, WriteResult
from adapter.x import XAPIError, XRateLimitError
from core import (
    ActionKind,
    AgentDecision,
    AgentRuntimeState,
    ClassificationResult,
    DecisionEngine,
    Outcome,
    PolicyBlocked,
)
from core.config import AgentConfig


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ============================================================================
# Fixtures
# ============================================================================

def make_post(post_id="post_1", text="anyone know a good designer?", author_id="author_1",
              likes=5, retweets=1, replies=0):
    return Post(
        id=post_id,
        text=text,
        author_id=author_id,
        author_username=f"{author_id}_handle",
        created_at=datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc),
        metrics=EngagementMetrics(likes=likes, retweets=retweets, replies=replies, quotes=0),
        lang="en",
    )


def make_intent(category="community_building", confidence=0.9, sentiment="neutral",
                engagement_opportunity=True, priority="medium"):
    return IntentAnalysis(
        category=category,
        confidence=confidence,
        keywords=[],
        sentiment=sentiment,
        engagement_opportunity=engagement_opportunity,
        priority=priority,
        reasoning="test",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_gateway():
    """Create a mock gateway whose writes succeed."""
    gateway = Mock()
    gateway.reply_to = Mock(side_effect=lambda pid, text: WriteResult(action="reply", target_id=pid, created_id="r1"))
    gateway.quote = Mock(side_effect=lambda pid, text: WriteResult(action="quote", target_id=pid, created_id="q1"))
    gateway.like = Mock(side_effect=lambda pid: WriteResult(action="like", target_id=pid))
    gateway.retweet = Mock(side_effect=lambda pid: WriteResult(action="retweet", target_id=pid))
    gateway.validate_credentials = Mock(return_value=True)
    return gateway


@pytest.fixture
def mock_grok():
    """Create a mock Grok adapter acting as classifier and generator."""
    grok = Mock()
    grok.is_live = True
    grok.classify_post = Mock(return_value=make_intent())
    grok.generate_response = Mock(return_value=GeneratedResponse(
        content="Check the design community threads!", confidence=0.9, length=35,
    ))
    grok.health_check = Mock(return_value=True)
    return grok


@pytest.fixture
def sink():
    return Mock()


@pytest.fixture
def engine(mock_gateway, mock_grok, clock, sink):
    return DecisionEngine(
        gateway=mock_gateway,
        grok_adapter=mock_grok,
        config=AgentConfig(),
        state=AgentRuntimeState(clock=clock),
        sink=sink,
    )


# ============================================================================
# Config
# ============================================================================

class TestAgentConfig:

    def test_defaults(self):
        config = AgentConfig()

        assert config.detection_threshold == 0.6
        assert config.max_daily_actions == 50
        assert config.cooldown_seconds == 15 * 60
        assert config.max_response_length == 280
        assert "collaborate" in config.priority_keywords

    def test_from_env(self):
        env = {
            "AGENT_DETECTION_THRESHOLD": "0.75",
            "AGENT_MAX_DAILY_ACTIONS": "3",
            "AGENT_COOLDOWN_MINUTES": "1",
            "AGENT_PRIORITY_KEYWORDS": "Urgent, outage",
            "AGENT_DRY_RUN": "true",
        }
        with patch.dict("os.environ", env):
            config = AgentConfig.from_env()

        assert config.detection_threshold == 0.75
        assert config.max_daily_actions == 3
        assert config.cooldown_seconds == 60
        assert config.priority_keywords == ["urgent", "outage"]
        assert config.dry_run is True


# ============================================================================
# Classification
# ============================================================================

class TestClassify:

    def test_ok(self, engine):
        result = engine.classify(make_post())

        assert result.status == "ok"
        assert result.is_degraded is False

    def test_degrades_to_heuristic(self, engine, mock_grok, sink):
        mock_grok.classify_post.side_effect = ClassificationUnavailable("down")

        result = engine.classify(make_post(text="Can you help?"))

        assert result.is_degraded is True
        assert "down" in result.reason
        assert result.intent.category == "customer_support"
        assert result.intent.confidence == 0.5
        assert sink.call_args_list[0].args[0].value == "classification_degraded"

    def test_degraded_post_still_reaches_decision(self, engine, mock_grok):
        mock_grok.classify_post.side_effect = RuntimeError("unexpected")

        action = engine.process_post(make_post(text="Need help with my account"))

        assert action.degraded is True
        assert action.outcome == Outcome.ACTED


# ============================================================================
# Decision policy
# ============================================================================

class TestMakeDecision:

    def test_designer_scenario_replies(self, engine):
        decision = engine.make_decision(make_post(), make_intent(confidence=0.9))

        assert decision.should_act is True
        assert decision.action == ActionKind.REPLY
        assert decision.confidence == pytest.approx(0.9 * 0.8 + 0.06 * 0.2)

    def test_low_confidence_ignored(self, engine):
        post = make_post(text="just shipped a new build")
        decision = engine.make_decision(post, make_intent(confidence=0.4))

        assert decision.should_act is False
        assert decision.action == ActionKind.IGNORE
        assert "below threshold" in decision.reasoning

    @pytest.mark.parametrize("confidence", [0.0, 0.3, 0.59])
    @pytest.mark.parametrize("likes", [0, 20, 50])
    def test_below_threshold_without_overrides_always_ignored(self, engine, confidence, likes):
        post = make_post(text="nice weather today", likes=likes, retweets=0, replies=0)

        decision = engine.make_decision(post, make_intent(confidence=confidence))

        assert decision.should_act is False

    def test_no_engagement_opportunity_ignored(self, engine):
        post = make_post(text="nice weather today")
        decision = engine.make_decision(post, make_intent(engagement_opportunity=False))

        assert decision.should_act is False

    def test_high_engagement_overrides(self, engine):
        post = make_post(text="nice weather today", likes=40, retweets=10, replies=1)
        decision = engine.make_decision(post, make_intent(confidence=0.1, category="trending_topic"))

        assert decision.should_act is True
        assert decision.action == ActionKind.LIKE

    def test_engagement_at_threshold_does_not_override(self, engine):
        post = make_post(text="nice weather today", likes=50, retweets=0, replies=0)
        decision = engine.make_decision(post, make_intent(confidence=0.1))

        assert decision.should_act is False

    def test_priority_keyword_forces_high(self, engine):
        post = make_post(text="Would love to COLLABORATE on this")
        decision = engine.make_decision(post, make_intent(confidence=0.1, priority="low"))

        assert decision.should_act is True
        assert decision.priority == "high"
        assert decision.priority_keyword_hit is True

    def test_positive_high_engagement_quotes(self, engine):
        post = make_post(text="we shipped it", likes=60)
        decision = engine.make_decision(post, make_intent(category="brand_mention", sentiment="positive"))

        assert decision.action == ActionKind.QUOTE

    def test_positive_moderate_engagement_retweets(self, engine):
        post = make_post(text="we shipped it", likes=10)
        decision = engine.make_decision(post, make_intent(category="brand_mention", sentiment="positive"))

        assert decision.action == ActionKind.RETWEET

    def test_spam_is_flagged(self, engine):
        decision = engine.make_decision(make_post(text="free coins"), make_intent(category="spam_detection", confidence=0.8))

        assert decision.action == ActionKind.FLAG
        assert decision.should_act is False

    def test_confidence_capped(self, engine):
        post = make_post(likes=500)
        decision = engine.make_decision(post, make_intent(confidence=1.0))

        assert decision.confidence == 0.95


class TestCalculatePriority:

    def decision(self, priority="medium"):
        return AgentDecision(should_act=True, priority=priority, action=ActionKind.REPLY, confidence=0.8, reasoning="")

    def test_all_boosts(self, engine):
        intent = make_intent(category="customer_support", confidence=0.9, sentiment="positive")
        response = GeneratedResponse(content="x", confidence=0.85)

        score = engine.calculate_priority(intent, self.decision("high"), response)

        assert score == 200  # 100 + 45 + 30 + 40 + 20 + 25 = 260, clamped

    def test_medium_without_boosts(self, engine):
        intent = make_intent(confidence=0.5, engagement_opportunity=False)

        assert engine.calculate_priority(intent, self.decision("medium")) == 75

    def test_low_tier(self, engine):
        intent = make_intent(confidence=0.0, engagement_opportunity=False)

        assert engine.calculate_priority(intent, self.decision("low")) == 25


class TestValidateResponse:

    def test_too_long(self, engine):
        with pytest.raises(PolicyBlocked, match="exceeds"):
            engine.validate_response(GeneratedResponse(content="x" * 281))

    def test_blocked_term(self, engine):
        with pytest.raises(PolicyBlocked, match="blocked term"):
            engine.validate_response(GeneratedResponse(content="Join our Giveaway now"))

    def test_marked_inappropriate(self, engine):
        with pytest.raises(PolicyBlocked):
            engine.validate_response(GeneratedResponse(content="fine", is_appropriate=False))

    def test_ok(self, engine):
        engine.validate_response(GeneratedResponse(content="x" * 280))


# ============================================================================
# End-to-end processing
# ============================================================================

class TestProcessPost:

    def test_designer_scenario_acts_with_reply(self, engine, mock_gateway, sink):
        action = engine.process_post(make_post())

        assert action.outcome == Outcome.ACTED
        assert action.action == ActionKind.REPLY
        assert action.response.content.startswith("Check")
        mock_gateway.reply_to.assert_called_once_with("post_1", "Check the design community threads!")
        assert engine.state.daily_action_count == 1
        assert "post_1" in engine.state.recent_actions
        assert sink.call_args.args[0].value == "post_acted"
        assert sink.call_args.kwargs["category"] == "community_building"

    def test_ignored_is_logged(self, engine, mock_grok, mock_gateway, sink):
        mock_grok.classify_post.return_value = make_intent(confidence=0.2)

        action = engine.process_post(make_post(text="nice weather today"))

        assert action.outcome == Outcome.IGNORED
        assert action.action == ActionKind.IGNORE
        assert sink.call_args.args[0].value == "post_ignored"
        assert sink.call_args.kwargs["reasoning"] == action.reasoning
        mock_gateway.reply_to.assert_not_called()

    def test_flagged_makes_no_call(self, engine, mock_grok, mock_gateway):
        mock_grok.classify_post.return_value = make_intent(category="spam_detection", confidence=0.9)

        action = engine.process_post(make_post(text="free coins"))

        assert action.outcome == Outcome.FLAGGED
        mock_gateway.like.assert_not_called()
        mock_gateway.reply_to.assert_not_called()

    def test_like_action(self, engine, mock_grok, mock_gateway):
        mock_grok.classify_post.return_value = make_intent(category="trending_topic")

        action = engine.process_post(make_post(text="interesting thread"))

        assert action.action == ActionKind.LIKE
        mock_gateway.like.assert_called_once_with("post_1")
        mock_grok.generate_response.assert_not_called()

    def test_generation_failure_ignored_and_released(self, engine, mock_grok, mock_gateway):
        mock_grok.generate_response.side_effect = GenerationUnavailable("down")

        action = engine.process_post(make_post())

        assert action.outcome == Outcome.IGNORED
        assert "generation unavailable" in action.reasoning
        assert engine.state.daily_action_count == 0
        assert engine.can_act("author_1") is True
        mock_gateway.reply_to.assert_not_called()

    def test_policy_blocked_never_posted(self, engine, mock_grok, mock_gateway, sink):
        mock_grok.generate_response.return_value = GeneratedResponse(content="y" * 400, confidence=0.9)

        action = engine.process_post(make_post())

        assert action.outcome == Outcome.IGNORED
        assert action.reasoning.startswith("policy blocked")
        mock_gateway.reply_to.assert_not_called()
        assert engine.state.daily_action_count == 0
        event_types = [c.args[0].value for c in sink.call_args_list]
        assert "policy_blocked" in event_types

    def test_gateway_rate_limit_ignored(self, engine, mock_gateway):
        mock_gateway.reply_to.side_effect = XRateLimitError("Rate limited. Retry in 2 minutes.", retry_delay=120)

        action = engine.process_post(make_post())

        assert action.outcome == Outcome.IGNORED
        assert "Retry in 2 minutes" in action.reasoning
        assert engine.state.daily_action_count == 0

    def test_gateway_error_fails_gracefully(self, engine, mock_gateway):
        mock_gateway.reply_to.side_effect = XAPIError("X API error: 400", status_code=400)

        action = engine.process_post(make_post())

        assert action.outcome == Outcome.FAILED
        assert engine.can_act("author_1") is True

    def test_unexpected_error_fails_gracefully(self, engine, mock_gateway):
        mock_gateway.reply_to.side_effect = KeyError("boom")

        action = engine.process_post(make_post())

        assert action.outcome == Outcome.FAILED

    def test_sink_failure_does_not_block(self, engine, sink):
        sink.side_effect = IOError("disk full")

        action = engine.process_post(make_post())

        assert action.outcome == Outcome.ACTED

    def test_dry_run_makes_no_calls(self, mock_gateway, mock_grok, clock, sink):
        engine = DecisionEngine(
            mock_gateway, mock_grok, AgentConfig(dry_run=True), AgentRuntimeState(clock=clock), sink=sink
        )

        action = engine.process_post(make_post())

        assert action.outcome == Outcome.ACTED
        assert action.write_result is None
        assert "(dry run)" in action.reasoning
        mock_gateway.reply_to.assert_not_called()


class TestQuotaAndCooldown:

    def test_cooldown_allows_one_action_per_author(self, engine, clock):
        first = engine.process_post(make_post(post_id="p1"))
        clock.advance(60)
        second = engine.process_post(make_post(post_id="p2"))

        assert first.outcome == Outcome.ACTED
        assert second.outcome == Outcome.IGNORED
        assert second.reasoning.startswith("rate limited or cooldown")

    def test_cooldown_expires(self, engine, clock):
        engine.process_post(make_post(post_id="p1"))
        clock.advance(15 * 60)

        assert engine.process_post(make_post(post_id="p2")).outcome == Outcome.ACTED

    def test_cooldown_starts_after_execution(self, engine, mock_grok, clock):
        reply = mock_grok.generate_response.return_value

        def slow_generate(post, intent):
            clock.advance(120)
            return reply

        mock_grok.generate_response.side_effect = slow_generate
        first = engine.process_post(make_post(post_id="p1"))
        acted_at = clock.now
        clock.advance(15 * 60 - 60)

        second = engine.process_post(make_post(post_id="p2"))

        assert first.outcome == Outcome.ACTED
        assert engine.state.last_action_time["author_1"] == acted_at
        assert second.outcome == Outcome.IGNORED
        assert "cooldown" in second.reasoning

    def test_other_authors_unaffected(self, engine):
        engine.process_post(make_post(post_id="p1", author_id="a"))

        assert engine.process_post(make_post(post_id="p2", author_id="b")).outcome == Outcome.ACTED

    def test_daily_quota_until_reset(self, mock_gateway, mock_grok, clock, sink):
        engine = DecisionEngine(
            mock_gateway, mock_grok, AgentConfig(max_daily_actions=2), AgentRuntimeState(clock=clock), sink=sink
        )

        outcomes = [
            engine.process_post(make_post(post_id=f"p{i}", author_id=f"a{i}")).outcome
            for i in range(3)
        ]
        blocked = engine.process_post(make_post(post_id="p9", author_id="fresh"))

        assert outcomes == [Outcome.ACTED, Outcome.ACTED, Outcome.IGNORED]
        assert "daily quota" in blocked.reasoning

        engine.reset_daily_counters()

        assert engine.process_post(make_post(post_id="p10", author_id="a0")).outcome == Outcome.ACTED

    def test_concurrent_same_author_acts_once(self, mock_gateway, mock_grok, clock, sink):
        engine = DecisionEngine(mock_gateway, mock_grok, AgentConfig(), AgentRuntimeState(clock=clock), sink=sink)
        barrier = threading.Barrier(8)
        results = []

        def run(i):
            barrier.wait()
            results.append(engine.process_post(make_post(post_id=f"p{i}")))

        threads = [threading.Thread(target=run, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        acted = [r for r in results if r.outcome == Outcome.ACTED]
        assert len(acted) == 1
        assert mock_gateway.reply_to.call_count == 1


class TestRuntimeState:

    def test_reserve_and_release(self, clock):
        state = AgentRuntimeState(clock=clock)

        reservation = state.try_reserve("a", max_daily_actions=5, cooldown_seconds=60)
        assert reservation.granted is True
        assert state.can_act("a", 5, 60) is False

        state.release(reservation)
        assert state.daily_action_count == 0
        assert state.can_act("a", 5, 60) is True

    def test_record_action_restamps_cooldown(self, clock):
        state = AgentRuntimeState(clock=clock)
        state.try_reserve("a", max_daily_actions=5, cooldown_seconds=60)
        clock.advance(30)

        state.record_action("p1", "a")
        clock.advance(45)

        assert state.can_act("a", 5, 60) is False
        assert state.daily_action_count == 1

    def test_denied_reservation_has_reason(self, clock):
        state = AgentRuntimeState(clock=clock)

        denied = state.try_reserve("a", max_daily_actions=0, cooldown_seconds=60)

        assert denied.granted is False
        assert "daily quota" in denied.reason

    def test_rolling_history_drops_old_entries(self, clock):
        state = AgentRuntimeState(clock=clock)
        state.record_action("old")
        clock.advance(25 * 3600)
        state.record_action("new")

        assert list(state.recent_actions) == ["new"]


class TestBatchAndMetrics:

    def test_process_batch_orders_by_priority(self, engine, mock_grok):
        mock_grok.classify_post.side_effect = lambda post: (
            make_intent(category="customer_support", priority="high")
            if post.id == "urgent" else make_intent(confidence=0.1)
        )
        posts = [make_post(post_id="calm", author_id="x", text="nice day"),
                 make_post(post_id="urgent", author_id="y", text="my order is broken")]

        actions = asyncio.run(engine.process_batch(posts))

        assert [a.post.id for a in actions] == ["urgent", "calm"]
        assert actions[0].outcome == Outcome.ACTED
        assert actions[1].outcome == Outcome.IGNORED

    def test_batch_survives_failures(self, engine, mock_gateway):
        mock_gateway.reply_to.side_effect = [XAPIError("boom"), WriteResult(action="reply", created_id="ok")]
        posts = [make_post(post_id="a", author_id="a"), make_post(post_id="b", author_id="b")]

        actions = asyncio.run(engine.process_batch(posts, max_concurrency=1))

        assert sorted(a.outcome.value for a in actions) == ["acted", "failed"]

    def test_engagement_metrics(self, engine, clock):
        engine.process_post(make_post(post_id="p1", author_id="a"))
        engine.process_post(make_post(post_id="p2", author_id="a"))
        clock.advance(100)

        metrics = engine.get_engagement_metrics()

        assert metrics["total_actions_today"] == 1
        assert metrics["successful_engagements_24h"] == 1
        assert metrics["average_action_age_seconds"] == 100
        assert metrics["outcomes"] == {"acted": 1, "ignored": 1}

    def test_health_check(self, engine, mock_gateway):
        health = engine.health_check()

        assert health["status"] == "healthy"
        mock_gateway.validate_credentials.return_value = False
        assert engine.health_check()["status"] == "degraded"


def test_classification_result_variants():
    intent = make_intent()

    assert ClassificationResult.ok(intent).is_degraded is False
    degraded = ClassificationResult.degraded(intent, "timeout")
    assert degraded.status == "degraded"
    assert degraded.reason == "timeout"
