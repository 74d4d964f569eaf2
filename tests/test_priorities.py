"""
Test signal detectors, the decision engine and in-process exits.

Run with: python -m pytest tests/test_priorities.py -v
"""

import asyncio
from datetime import timedelta

import pytest

from core.clock import to_iso
from core.events import EventType, get_event_bus
from execution.code_executor import CodeExecutor
from hypotheses.models import Hypothesis
from memory.store import Document
from portfolio.positions import Portfolio, PositionManager, evidence_impact
from priorities.detectors import (
    StateSnapshot,
    detect_execution_velocity,
    detect_portfolio_risk,
    detect_stuck_hypotheses,
    detect_system_health,
    detect_time_sensitive,
)
from priorities.engine import PriorityEngine
from priorities.models import ExitTriggerContext, Priority, PriorityType, SystemHealthContext

from tests.conftest import make_hypothesis, make_portfolio, write_hypotheses


def position(pid="p1", entry=0.10, current=0.10, shares=100.0, stop=None, take_profit=None, **extra):
    data = {
        "id": pid,
        "market": f"Market {pid}",
        "entryPrice": entry,
        "currentPrice": current,
        "shares": shares,
        "cost": entry * shares,
        "exitCriteria": {k: v for k, v in {"stopLoss": stop, "takeProfit": take_profit}.items() if v is not None},
    }
    data.update(extra)
    return data


def snapshot_with(*positions, trades=None, hypotheses=None, health=None):
    return StateSnapshot(
        hypotheses=[Hypothesis.from_dict(h) for h in hypotheses or []],
        portfolio=Portfolio.from_dict(make_portfolio(*positions, trades=trades)),
        health=health,
    )


def fake_priority(urgency, action="x", spawns_worker=True):
    return Priority(
        type=PriorityType.SYSTEM_HEALTH,
        urgency=urgency,
        action=action,
        context=SystemHealthContext(issue=action),
        spawns_worker=spawns_worker,
    )


class TestPortfolioRisk:

    def test_stop_loss_breach(self, priority_config, now):
        snap = snapshot_with(position("p1", entry=0.10, current=0.045, stop=0.05))
        priorities = detect_portfolio_risk(snap, priority_config, now)

        stop = [p for p in priorities if p.action == "execute-stop-loss"]
        assert len(stop) == 1
        assert stop[0].urgency == 99
        assert stop[0].spawns_worker is False
        assert stop[0].context.position_id == "p1"
        assert stop[0].context.current_price == pytest.approx(0.045)

    def test_near_stop_warning(self, priority_config, now):
        snap = snapshot_with(position("p1", entry=0.10, current=0.054, stop=0.05))
        actions = {p.action: p for p in detect_portfolio_risk(snap, priority_config, now)}
        assert actions["stop-loss-warning"].urgency == 85
        assert actions["stop-loss-warning"].context.distance_to_stop_pct == pytest.approx(8.0)
        assert "execute-stop-loss" not in actions

    def test_loss_levels(self, priority_config, now):
        snap = snapshot_with(
            position("warn", entry=0.50, current=0.40),
            position("crit", entry=0.50, current=0.30),
            position("fine", entry=0.50, current=0.48),
        )
        by_id = {p.context.position_id: p for p in detect_portfolio_risk(snap, priority_config, now)}
        assert by_id["warn"].urgency == 75
        assert by_id["crit"].urgency == 95
        assert "fine" not in by_id
        assert by_id["crit"].role.value == "trade-research"
        assert "exit-position crit" in by_id["crit"].focused_prompt

    def test_take_profit(self, priority_config, now):
        snap = snapshot_with(position("p2", entry=0.30, current=0.62, take_profit=0.60))
        actions = [p.action for p in detect_portfolio_risk(snap, priority_config, now)]
        assert actions == ["execute-take-profit"]

    def test_no_portfolio(self, priority_config, now):
        assert detect_portfolio_risk(StateSnapshot(), priority_config, now) == []


class TestTimeSensitive:

    def hypothesis_closing_in(self, hours, now, status="testing"):
        return make_hypothesis(
            "h1", status=status,
            trackingMarkets=[{"market": "Election", "closesAt": to_iso(now + timedelta(hours=hours))}],
        )

    def test_critical_and_urgent(self, priority_config, now):
        critical = detect_time_sensitive(
            snapshot_with(hypotheses=[self.hypothesis_closing_in(3, now)]), priority_config, now)
        assert [(p.urgency, p.action) for p in critical] == [(90, "closing-market-critical")]

        urgent = detect_time_sensitive(
            snapshot_with(hypotheses=[self.hypothesis_closing_in(20, now)]), priority_config, now)
        assert [(p.urgency, p.action) for p in urgent] == [(70, "closing-market-soon")]

    def test_closed_or_distant_markets_ignored(self, priority_config, now):
        for hours in (-1, 48):
            snap = snapshot_with(hypotheses=[self.hypothesis_closing_in(hours, now)])
            assert detect_time_sensitive(snap, priority_config, now) == []

    def test_inactive_hypotheses_ignored(self, priority_config, now):
        snap = snapshot_with(hypotheses=[self.hypothesis_closing_in(3, now, status="validated")])
        assert detect_time_sensitive(snap, priority_config, now) == []


class TestStuckHypotheses:

    def test_old_proposal(self, priority_config, now):
        old = to_iso(now - timedelta(hours=72))
        snap = snapshot_with(hypotheses=[make_hypothesis("h1", createdAt=old, updatedAt=old)])
        priorities = detect_stuck_hypotheses(snap, priority_config, now)
        assert [(p.urgency, p.action) for p in priorities] == [(60, "unstick-proposed-hypothesis")]
        assert priorities[0].context.hours_stuck == pytest.approx(72.0)

    def test_fresh_proposal(self, priority_config, now):
        snap = snapshot_with(hypotheses=[make_hypothesis("h1")])
        assert detect_stuck_hypotheses(snap, priority_config, now) == []

    def test_low_confidence_test(self, priority_config, now):
        snap = snapshot_with(hypotheses=[make_hypothesis("h1", status="testing", confidence=0.2)])
        priorities = detect_stuck_hypotheses(snap, priority_config, now)
        assert [(p.urgency, p.action) for p in priorities] == [(65, "review-low-confidence-hypothesis")]


class TestExecutionVelocity:

    def trade(self, now, days_ago):
        return {"id": f"t{days_ago}", "timestamp": to_iso(now - timedelta(days=days_ago))}

    def test_no_trades(self, priority_config, now):
        snap = snapshot_with(trades=[], hypotheses=[make_hypothesis("h1", confidence=0.6)])
        priorities = detect_execution_velocity(snap, priority_config, now)
        assert priorities[0].urgency == 70
        assert priorities[0].context.hypotheses_available == 1

    def test_some_trades(self, priority_config, now):
        snap = snapshot_with(trades=[self.trade(now, 1), self.trade(now, 2), self.trade(now, 10)])
        priorities = detect_execution_velocity(snap, priority_config, now)
        assert priorities[0].urgency == 50
        assert priorities[0].context.trades_last_7_days == 2

    def test_enough_trades(self, priority_config, now):
        snap = snapshot_with(trades=[self.trade(now, d) for d in range(1, 6)])
        assert detect_execution_velocity(snap, priority_config, now) == []


class TestSystemHealth:

    def fresh_snapshot(self, now, health=None, run_history=None, ages=None):
        return StateSnapshot(
            health=health if health is not None else {"lastCheck": to_iso(now)},
            run_history=run_history or [],
            document_ages=ages if ages is not None else {"portfolio": 1.0, "hypotheses": 1.0, "schedule": 1.0},
        )

    def test_healthy(self, priority_config, now):
        assert detect_system_health(self.fresh_snapshot(now), priority_config, now) == []

    def test_missing_health_file_still_checks_documents(self, priority_config, now):
        snap = StateSnapshot(health=None, document_ages={"portfolio": None, "hypotheses": 1.0, "schedule": 1.0})
        actions = [p.action for p in detect_system_health(snap, priority_config, now)]
        assert "create-health-file" in actions
        assert "missing-critical-file" in actions

    def test_error_burst(self, priority_config, now):
        errors = [{"timestamp": to_iso(now - timedelta(minutes=i)), "message": f"e{i}"} for i in range(10)]
        snap = self.fresh_snapshot(now, health={"lastCheck": to_iso(now), "recentErrors": errors})
        priorities = detect_system_health(snap, priority_config, now)
        assert [(p.urgency, p.action) for p in priorities] == [(80, "investigate-errors")]

    def test_stale_health_check_is_code_action(self, priority_config, now):
        snap = self.fresh_snapshot(now, health={"lastCheck": to_iso(now - timedelta(hours=8))})
        priorities = detect_system_health(snap, priority_config, now)
        assert [(p.urgency, p.action, p.spawns_worker) for p in priorities] == [(50, "run-health-check", False)]

    def test_service_down(self, priority_config, now):
        snap = self.fresh_snapshot(now, health={"lastCheck": to_iso(now), "services": {"prices": "down", "db": "ok"}})
        priorities = detect_system_health(snap, priority_config, now)
        assert [(p.urgency, p.context.service) for p in priorities] == [(85, "prices")]

    def test_failing_pipeline(self, priority_config, now):
        runs = [
            {"pipeline": "scan", "success": False, "error": f"boom {i}", "finishedAt": to_iso(now - timedelta(hours=i))}
            for i in range(1, 4)
        ]
        runs.append({"pipeline": "scan", "success": False, "finishedAt": to_iso(now - timedelta(hours=30))})
        priorities = detect_system_health(self.fresh_snapshot(now, run_history=runs), priority_config, now)
        assert len(priorities) == 1
        assert priorities[0].urgency == 75
        assert priorities[0].context.failures == 3
        assert priorities[0].context.last_error == "boom 3"

    def test_stale_document(self, priority_config, now):
        snap = self.fresh_snapshot(now, ages={"portfolio": 30.0, "hypotheses": 1.0, "schedule": 1.0})
        priorities = detect_system_health(snap, priority_config, now)
        assert [(p.urgency, p.action) for p in priorities] == [(55, "stale-data-file")]


class TestDecision:

    def test_high_urgency_overrides(self, store, priority_config):
        engine = PriorityEngine(store, priority_config, detectors=[])
        decision = engine.decide_from([fake_priority(95, "a"), fake_priority(60, "b")])
        assert decision.should_override
        assert decision.tier == "high"
        assert decision.priority.action == "a"
        assert decision.reason == "High urgency (95): a"

    def test_medium_urgency_overrides(self, store, priority_config):
        engine = PriorityEngine(store, priority_config, detectors=[])
        decision = engine.decide_from([fake_priority(60, "b")])
        assert decision.should_override
        assert decision.tier == "medium"

    def test_low_urgency_does_not_override(self, store, priority_config):
        engine = PriorityEngine(store, priority_config, detectors=[])
        decision = engine.decide_from([fake_priority(40), fake_priority(30)])
        assert not decision.should_override
        assert decision.priority.urgency == 40

    def test_nothing_detected(self, store, priority_config):
        decision = PriorityEngine(store, priority_config, detectors=[]).decide_from([])
        assert not decision.should_override
        assert decision.priority is None

    def test_rank_survives_failing_detector_and_keeps_order(self, store, priority_config, now):
        def broken(snapshot, config, at):
            raise RuntimeError("detector bug")

        def first(snapshot, config, at):
            return [fake_priority(70, "first")]

        def second(snapshot, config, at):
            return [fake_priority(70, "second"), fake_priority(90, "top")]

        engine = PriorityEngine(store, priority_config, detectors=[broken, first, second])
        ranked = engine.detect(now)
        assert [p.action for p in ranked] == ["top", "first", "second"]

    def test_report(self, store, priority_config, now):
        engine = PriorityEngine(store, priority_config, detectors=[lambda s, c, n: [fake_priority(80, "fix-it")]])
        report = engine.report(now)
        assert "[80] fix-it" in report

        quiet = PriorityEngine(store, priority_config, detectors=[])
        assert "No urgent priorities" in quiet.report(now)


class TestStopLossScenario:

    def test_detect_then_execute(self, store, registry, priority_config, now):
        store.save(Document.PORTFOLIO, make_portfolio(
            position("p1", entry=0.10, current=0.045, stop=0.05, shares=200.0),
            cash=500.0,
        ))
        engine = PriorityEngine(store, priority_config, detectors=[detect_portfolio_risk])

        decision = engine.decide(now)
        assert decision.should_override
        assert decision.priority.urgency == 99
        assert decision.priority.action == "execute-stop-loss"

        positions = PositionManager(store, registry)
        executor = CodeExecutor(positions)
        assert asyncio.run(executor.execute(decision.priority.action, decision.priority.context))

        portfolio = positions.load()
        assert portfolio.get_position("p1") is None
        assert portfolio.cash == pytest.approx(500.0 + 200.0 * 0.045)
        assert portfolio.trade_history[-1]["type"] == "EXIT"
        assert get_event_bus().get_recent_events(EventType.POSITION_CLOSED)

    def test_exit_is_idempotent(self, store, registry):
        store.save(Document.PORTFOLIO, make_portfolio(cash=100.0))
        executor = CodeExecutor(PositionManager(store, registry))
        context = ExitTriggerContext("gone", "Market", 0.2, take_profit=0.2)
        assert asyncio.run(executor.execute("execute-take-profit", context))
        assert PositionManager(store).load().cash == pytest.approx(100.0)

    def test_unknown_action(self, store):
        executor = CodeExecutor(PositionManager(store))
        assert not asyncio.run(executor.execute("do-magic", SystemHealthContext(issue="x")))

    def test_exit_feeds_back_into_hypothesis(self, store, registry):
        write_hypotheses(store, make_hypothesis("h1", status="testing", confidence=0.5))
        store.save(Document.PORTFOLIO, make_portfolio(
            position("p1", entry=0.40, current=0.60, shares=10.0, hypothesisId="h1"),
        ))
        result = PositionManager(store, registry).exit_position("p1", 0.60, "Take profit")
        assert result.success
        assert result.pnl == pytest.approx(2.0)

        h = registry.get("h1")
        assert h.test_results.trades == 1
        assert h.test_results.wins == 1
        # +50% is a big move
        assert h.confidence == pytest.approx(0.58)


class TestPositionHelpers:

    def test_evidence_impact(self):
        assert evidence_impact(True, 0.1) == pytest.approx(0.04)
        assert evidence_impact(True, 0.5) == pytest.approx(0.08)
        assert evidence_impact(False, -0.1) == pytest.approx(-0.05)
        assert evidence_impact(False, -0.5) == pytest.approx(-0.10)
