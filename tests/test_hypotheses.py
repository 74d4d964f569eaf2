"""
Test the hypothesis lifecycle: transitions, evidence, auto-conclusion,
scoring and engine status.

Run with: python -m pytest tests/test_hypotheses.py -v
"""

import pytest

from core.events import EventType, get_event_bus
from hypotheses.engine_status import compute_engine_status, engine_state, update_engine_status
from hypotheses.models import Hypothesis, HypothesisStatus, clamp
from hypotheses.scoring import learnings_impact, related_learnings, select_next
from hypotheses.state_machine import find_rule
from memory.learnings import Learning, LearningJournal
from memory.store import Document
from scheduling.models import HandoffStatus, HandoffType, Role

from tests.conftest import make_hypothesis, write_hypotheses


class TestTransitionTable:

    def test_allowed_pairs(self):
        allowed = [
            ("proposed", "testing"),
            ("proposed", "invalidated"),
            ("proposed", "blocked"),
            ("testing", "validated"),
            ("testing", "invalidated"),
            ("testing", "blocked"),
            ("blocked", "proposed"),
            ("blocked", "testing"),
        ]
        for source, target in allowed:
            assert find_rule(HypothesisStatus(source), HypothesisStatus(target)) is not None

    def test_concluded_states_are_terminal(self):
        for source in (HypothesisStatus.VALIDATED, HypothesisStatus.INVALIDATED):
            for target in HypothesisStatus:
                assert find_rule(source, target) is None

    def test_proposed_cannot_jump_to_validated(self):
        assert find_rule(HypothesisStatus.PROPOSED, HypothesisStatus.VALIDATED) is None


class TestRegistryTransitions:

    def test_start_testing_sets_timestamp(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1"))
        result = registry.transition("h1", HypothesisStatus.TESTING, "ready")
        assert result.success
        stored = registry.get("h1")
        assert stored.status == HypothesisStatus.TESTING
        assert stored.test_started_at is not None

    def test_testing_requires_test_method(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", testMethod=""))
        result = registry.transition("h1", HypothesisStatus.TESTING, "go")
        assert not result.success
        assert "testMethod" in result.error
        assert registry.get("h1").status == HypothesisStatus.PROPOSED

    def test_invalid_pair_leaves_record_unchanged(self, store, registry):
        write_hypotheses(store, make_hypothesis(
            "h1", confidence=0.6,
            evidence=[{"date": "2025-01-01T00:00:00Z", "observation": "x", "supports": True, "confidenceImpact": 0.1}],
        ))
        before = store.load(Document.HYPOTHESES)

        result = registry.transition("h1", HypothesisStatus.VALIDATED, "skip ahead")

        assert not result.success
        assert "Invalid transition" in result.error
        assert store.load(Document.HYPOTHESES) == before

    def test_unknown_hypothesis(self, registry):
        result = registry.transition("nope", HypothesisStatus.TESTING, "x")
        assert not result.success
        assert "not found" in result.error

    def test_unknown_target_status(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1"))
        result = registry.transition("h1", "archived", "tidy up")
        assert not result.success
        assert result.error == "Invalid transition: proposed → archived"
        assert registry.get("h1").status == HypothesisStatus.PROPOSED

    def test_manual_validation_needs_trades(self, store, registry):
        write_hypotheses(store, make_hypothesis(
            "h1", status="testing", confidence=0.7, minSampleSize=5,
            testResults={"trades": 2, "wins": 2, "losses": 0, "totalPnL": 1.0, "actualWinRate": 1.0},
        ))
        result = registry.transition("h1", HypothesisStatus.VALIDATED, "looks good")
        assert not result.success
        assert "need 5" in result.error

    def test_conclusion_records_learning(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", status="testing"))
        result = registry.transition("h1", HypothesisStatus.INVALIDATED, "No edge after costs")
        assert result.success
        h = registry.get("h1")
        assert h.conclusion == "No edge after costs"
        assert h.test_ended_at is not None
        learnings = LearningJournal(store).get_all()
        assert len(learnings) == 1
        assert learnings[0].applied_to == ["h1"]
        assert "No edge after costs" in learnings[0].content

    def test_transition_emits_event(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1"))
        registry.transition("h1", HypothesisStatus.INVALIDATED, "duplicate idea")
        events = get_event_bus().get_recent_events(EventType.HYPOTHESIS_TRANSITIONED)
        assert len(events) == 1
        assert "proposed → invalidated" in events[0].message


class TestBlocking:

    def test_block_opens_capability_handoff(self, store, registry, handoffs):
        write_hypotheses(store, make_hypothesis("h1", status="testing"))
        result = registry.block("h1", "Order book depth feed")

        assert result.success
        h = registry.get("h1")
        assert h.status == HypothesisStatus.BLOCKED
        handoff = handoffs.get(h.blocked_handoff_id)
        assert handoff is not None
        assert handoff.type == HandoffType.BUILD_CAPABILITY
        assert handoff.to_role == Role.AGENT_ENGINEER
        assert handoff.status == HandoffStatus.PENDING
        assert handoff.context["hypothesisId"] == "h1"

    def test_block_requires_reason(self, store, registry, handoffs):
        write_hypotheses(store, make_hypothesis("h1"))
        result = registry.transition("h1", HypothesisStatus.BLOCKED, "  ")
        assert not result.success
        assert handoffs.get_all() == []

    def test_unblock_back_to_testing(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", status="blocked"))
        assert registry.transition("h1", HypothesisStatus.TESTING, "capability built").success


class TestEvidence:

    def test_confidence_is_clamped(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", confidence=0.9))
        result = registry.add_evidence("h1", "strong signal", True, 0.5)
        assert result.hypothesis.confidence == 1.0

        result = registry.add_evidence("h1", "total reversal", False, -3.0)
        assert result.hypothesis.confidence == 0.0

    def test_clamp_helper(self):
        assert clamp(1.3) == 1.0
        assert clamp(-0.2) == 0.0
        assert clamp(0.42) == 0.42

    def test_evidence_rejected_on_concluded(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", status="validated", confidence=0.8))
        result = registry.add_evidence("h1", "late data", True, 0.05)
        assert not result.success
        assert registry.get("h1").evidence == []

    def test_auto_validate_scenario(self, store, registry):
        write_hypotheses(store, make_hypothesis(
            "h1", status="testing", confidence=0.50, minSampleSize=5,
            testResults={"trades": 5, "wins": 3, "losses": 2, "totalPnL": 4.0, "actualWinRate": 0.6},
        ))
        result = registry.add_evidence("h1", "Another favourable resolution", True, 0.30)

        assert result.success
        h = registry.get("h1")
        assert h.confidence == pytest.approx(0.80)
        assert h.status == HypothesisStatus.VALIDATED
        assert h.test_ended_at is not None

    def test_high_confidence_without_sample_stays_testing(self, store, registry):
        write_hypotheses(store, make_hypothesis(
            "h1", status="testing", confidence=0.50, minSampleSize=5,
            testResults={"trades": 3, "wins": 3, "losses": 0, "totalPnL": 3.0, "actualWinRate": 1.0},
        ))
        registry.add_evidence("h1", "looks great", True, 0.30)
        h = registry.get("h1")
        assert h.confidence == pytest.approx(0.80)
        assert h.status == HypothesisStatus.TESTING

    def test_auto_invalidate(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", status="testing", confidence=0.35))
        registry.add_evidence("h1", "market moved against us", False, -0.10)
        h = registry.get("h1")
        assert h.confidence == pytest.approx(0.25)
        assert h.status == HypothesisStatus.INVALIDATED
        assert h.conclusion.startswith("Auto-invalidated")
        assert h.test_ended_at is not None

    def test_proposed_is_not_auto_concluded(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", confidence=0.3))
        registry.add_evidence("h1", "weak", False, -0.2)
        assert registry.get("h1").status == HypothesisStatus.PROPOSED

    def test_confidence_movement_tracked(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", confidence=0.45))
        registry.add_evidence("h1", "supportive", True, 0.10)
        movements = registry.journal.get_movements()
        assert len(movements) == 1
        assert movements[0].previous_confidence == pytest.approx(0.45)
        assert movements[0].current_confidence == pytest.approx(0.55)
        assert movements[0].crossed_threshold()

    def test_zero_impact_not_tracked(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", confidence=0.45))
        assert registry.add_evidence("h1", "neutral", None, 0.0).success
        assert registry.journal.get_movements() == []
        assert store.load_if_exists(Document.CONFIDENCE_HISTORY) is None

    @pytest.mark.parametrize("impact", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_impact_rejected(self, store, registry, impact):
        write_hypotheses(store, make_hypothesis(
            "h1", status="testing", confidence=0.50, minSampleSize=5,
            testResults={"trades": 5, "wins": 3, "losses": 2, "totalPnL": 4.0, "actualWinRate": 0.6},
        ))
        before = store.load(Document.HYPOTHESES)

        result = registry.add_evidence("h1", "garbage", True, impact)

        assert not result.success
        assert "finite" in result.error
        assert store.load(Document.HYPOTHESES) == before
        assert registry.get("h1").status == HypothesisStatus.TESTING

    def test_trade_result_does_not_touch_confidence(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", status="testing", confidence=0.6))
        registry.record_trade_result("h1", True, 2.5)
        registry.record_trade_result("h1", False, -1.0)
        h = registry.get("h1")
        assert h.test_results.trades == 2
        assert h.test_results.actual_win_rate == pytest.approx(0.5)
        assert h.confidence == pytest.approx(0.6)


class TestQueries:

    def test_create_and_filters(self, store, registry):
        created = registry.create("Favourites are overpriced near close", test_method="entry at close")
        assert created.status == HypothesisStatus.PROPOSED
        assert registry.get(created.id) is not None

        write_hypotheses(
            store,
            make_hypothesis("a", status="testing", confidence=0.6),
            make_hypothesis("b", status="proposed", confidence=0.2),
            make_hypothesis("c", status="blocked"),
            make_hypothesis("d", status="validated"),
        )
        assert {h.id for h in registry.get_active()} == {"a", "b"}
        assert [h.id for h in registry.get_testable()] == ["a"]
        assert [h.id for h in registry.get_blocked()] == ["c"]

    def test_malformed_records_skipped(self, store, registry):
        write_hypotheses(
            store,
            make_hypothesis("h1"),
            {"statement": "written by hand, no id"},
            make_hypothesis("h2", confidence=None),
            "not a record",
        )
        assert [h.id for h in registry.get_all()] == ["h1"]
        assert registry.get("h2") is None
        assert registry.transition("h1", HypothesisStatus.INVALIDATED, "duplicate").success

    def test_trade_validation_by_backtest(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", backtestResults={"winRate": 0.5, "sampleSize": 12}))
        ok, reason = registry.has_trade_validation("h1")
        assert ok
        assert "Backtest" in reason

    def test_trade_validation_needs_more(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", confidence=0.4))
        ok, reason = registry.has_trade_validation("h1")
        assert not ok
        assert "5 more observations" in reason


class TestScoring:

    def test_related_learning_by_link(self):
        h = Hypothesis(id="h1", statement="Underdogs in tennis finals")
        learning = Learning(id="l1", category="hypothesis", title="t", content="c", source="s", applied_to=["h1"])
        assert related_learnings(h, [learning]) == [learning]

    def test_learnings_impact_is_bounded(self):
        h = Hypothesis(id="h1", statement="Tennis underdogs finals pricing")
        learnings = [
            Learning(id=f"l{i}", category="hypothesis", title="Failed", content="Similar hypothesis failed in practice",
                     source="s", applied_to=["h1"])
            for i in range(10)
        ]
        impact = learnings_impact(h, learnings)
        assert impact.adjustment == pytest.approx(-0.2)
        assert len(impact.related_learnings) == 10

    def test_select_next_prefers_higher_score(self):
        low = Hypothesis(id="low", statement="Something", confidence=0.35)
        high = Hypothesis(id="high", statement="Something else", confidence=0.9)
        selection = select_next([low, high], [])
        assert selection.hypothesis.id == "high"
        assert selection.alternatives[0][0] == "low"

    def test_select_next_empty(self):
        assert select_next([], []).hypothesis is None


class TestEngineStatus:

    def test_engine_state_bands(self):
        assert engine_state(0) == "starved"
        assert engine_state(2) == "starved"
        assert engine_state(3) == "healthy"
        assert engine_state(10) == "healthy"
        assert engine_state(11) == "saturated"

    def test_counts_and_testable(self, now):
        hypotheses = [
            Hypothesis.from_dict(make_hypothesis("a", status="testing", confidence=0.6)),
            Hypothesis.from_dict(make_hypothesis("b", confidence=0.2)),
            Hypothesis.from_dict(make_hypothesis("c", status="validated")),
        ]
        status = compute_engine_status(hypotheses, [], now)
        health = status["hypothesisHealth"]
        assert health["total"] == 3
        assert health["byStatus"]["testing"] == 1
        assert health["testableIds"] == ["a"]
        assert status["engineState"] == "starved"
        assert status["needsAttention"][0]["hypothesisId"] == "b"

    def test_blocked_ids_excluded(self, now):
        hypotheses = [Hypothesis.from_dict(make_hypothesis("a", confidence=0.6))]
        status = compute_engine_status(hypotheses, ["a"], now)
        assert status["hypothesisHealth"]["testableNow"] == 0

    def test_recompute_is_idempotent(self, store, now):
        write_hypotheses(store, make_hypothesis("a", confidence=0.6), make_hypothesis("b", status="testing"))
        store.save(Document.ENGINE_STATUS, {"notes": "kept by workers"})

        first = update_engine_status(store, now=now)
        second = update_engine_status(store, now=now)

        assert first == second
        assert store.load(Document.ENGINE_STATUS)["notes"] == "kept by workers"

    def test_malformed_records_skipped(self, store, now):
        write_hypotheses(
            store,
            make_hypothesis("a", confidence=0.6),
            {"statement": "no id"},
            make_hypothesis("b", confidence=None),
        )
        status = update_engine_status(store, now=now)
        assert status["hypothesisHealth"]["testableIds"] == ["a"]
