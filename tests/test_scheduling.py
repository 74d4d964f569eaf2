"""
Test the work queues: responsibilities, handoffs and scheduled tasks.

Run with: python -m pytest tests/test_scheduling.py -v
"""

from datetime import timedelta

import pytest

from config.loader import PipelineConfig
from core.clock import to_iso
from memory.store import Document
from scheduling.context import ContextBuilder, build_handoff_prompt, build_task_prompt
from scheduling.models import (
    HandoffStatus,
    HandoffType,
    PriorityTier,
    Role,
    ScheduledTask,
    TaskContext,
)
from scheduling.responsibilities import ResponsibilityTracker
from scheduling.schedule import ScheduleQueue

from tests.conftest import make_hypothesis, make_portfolio, write_hypotheses


def forbid_writes(store, monkeypatch):
    def save(document, data):
        raise AssertionError(f"unexpected write to {document.value}")
    monkeypatch.setattr(store, "save", save)


HEALTH_CHECK = {
    "health-check": PipelineConfig(name="health-check", command=["true"], frequency="12h"),
}


class TestResponsibilities:

    @pytest.fixture
    def tracker(self, store, now):
        store.save(Document.RESPONSIBILITIES, {
            "trade-research": {
                "portfolio-review": {"frequency": "4h", "lastRun": to_iso(now - timedelta(hours=5))},
                "market-scan": {"frequency": "1h", "lastRun": to_iso(now - timedelta(hours=3))},
                "strategy-review": {"frequency": "1d", "lastRun": to_iso(now - timedelta(hours=2))},
            },
            "agent-engineer": {
                "system-health": {"frequency": "2h", "lastRun": None},
            },
        })
        return ResponsibilityTracker(store)

    def test_never_run_is_most_overdue(self, tracker, now):
        due = tracker.get_next_due(now)
        assert (due.role, due.name) == (Role.AGENT_ENGINEER, "system-health")

    def test_due_for_role_sorted_by_overdue(self, tracker, now):
        due = tracker.get_due_for(Role.TRADE_RESEARCH, now)
        assert [d.name for d in due] == ["market-scan", "portfolio-review"]
        assert due[0].overdue_seconds == pytest.approx(2 * 3600)

    def test_mark_complete(self, tracker, now):
        assert tracker.mark_complete(Role.AGENT_ENGINEER, "system-health", now)
        due = tracker.get_next_due(now)
        assert due.name == "market-scan"

    def test_mark_complete_unknown(self, store, tracker, now, monkeypatch):
        forbid_writes(store, monkeypatch)
        assert not tracker.mark_complete(Role.TRADE_RESEARCH, "nonexistent", now)

    def test_bad_frequency_falls_back_to_default(self, store, now):
        store.save(Document.RESPONSIBILITIES, {
            "trade-research": {"weird": {"frequency": "every so often", "lastRun": to_iso(now - timedelta(hours=5))}},
        })
        tracker = ResponsibilityTracker(store)
        responsibility = tracker.get_all()[0]
        assert tracker.next_due_at(responsibility) == now + timedelta(hours=1)
        assert tracker.get_next_due(now) is None

    def test_register_and_status(self, store, now):
        tracker = ResponsibilityTracker(store)
        tracker.register(Role.TRADE_RESEARCH, "hypothesis-health", "6h")
        tracker.register(Role.TRADE_RESEARCH, "hypothesis-health", "1h")
        rows = tracker.status(now)
        assert len(rows) == 1
        assert rows[0]["frequency"] == "6h"
        assert rows[0]["isDue"] is True


class TestHandoffs:

    def test_next_pending_by_tier_then_age(self, handoffs):
        low = handoffs.request_analysis("Is volume predictive?", priority=PriorityTier.LOW)
        first_high = handoffs.request_capability("Price history API", priority=PriorityTier.HIGH)
        handoffs.report_issue(Role.TRADE_RESEARCH, "Scanner crashes", priority=PriorityTier.HIGH)

        assert handoffs.get_next_pending().id == first_high
        assert handoffs.get_pending_for(Role.TRADE_RESEARCH)[0].id == low

    def test_lifecycle(self, handoffs):
        hid = handoffs.request_capability("Depth feed")
        assert handoffs.start(hid)
        assert not handoffs.start(hid)
        assert handoffs.get(hid).status == HandoffStatus.IN_PROGRESS
        assert handoffs.complete(hid, {"built": "depth.py"})
        handoff = handoffs.get(hid)
        assert handoff.status == HandoffStatus.COMPLETED
        assert handoff.result == {"built": "depth.py"}
        assert not handoffs.fail(hid, "too late")

    def test_failed_handoff_never_reselected(self, handoffs):
        hid = handoffs.request_capability("Depth feed")
        handoffs.start(hid)
        assert handoffs.fail(hid, "Worker exited with code 2")

        handoff = handoffs.get(hid)
        assert handoff.status == HandoffStatus.FAILED
        assert handoff.result == {"error": "Worker exited with code 2"}
        assert handoffs.get_next_pending() is None
        assert not handoffs.start(hid)

    def test_refused_change_writes_nothing(self, store, handoffs, monkeypatch):
        hid = handoffs.request_capability("Depth feed")
        handoffs.complete(hid)
        forbid_writes(store, monkeypatch)

        assert not handoffs.start(hid)
        assert not handoffs.fail(hid, "too late")

    def test_cleanup_keeps_open_and_recent(self, handoffs):
        open_id = handoffs.request_capability("still open")
        done = []
        for i in range(4):
            hid = handoffs.request_capability(f"done {i}")
            handoffs.complete(hid)
            done.append(hid)
        removed = handoffs.cleanup(keep=2)
        remaining = {h.id for h in handoffs.get_all()}
        assert removed == 2
        assert open_id in remaining
        assert len(remaining) == 3

    def test_summary(self, handoffs):
        assert handoffs.summary() == "No pending handoffs."
        handoffs.request_capability("Order book feed")
        assert "Pending (1)" in handoffs.summary()

    def test_handoff_prompt(self, handoffs):
        hid = handoffs.create(
            Role.TRADE_RESEARCH, Role.AGENT_ENGINEER, HandoffType.FIX_ISSUE,
            {"description": "Scanner crashes on empty markets", "file": "scanner.py"},
        )
        prompt = build_handoff_prompt(handoffs.get(hid))
        assert "Scanner crashes on empty markets" in prompt
        assert "scanner.py" in prompt


class TestScheduleQueue:

    @pytest.fixture
    def queue(self, store):
        return ScheduleQueue(store)

    def test_self_heal_inserts_exactly_one(self, queue, now):
        created = queue.ensure_recurring_pipelines(HEALTH_CHECK, now)
        assert len(created) == 1
        task = queue.pending()[0]
        assert task.context.pipeline == "health-check"
        assert task.context.recurring
        assert task.due_at == now + timedelta(hours=12)

        assert queue.ensure_recurring_pipelines(HEALTH_CHECK, now) == []
        assert len(queue.pending()) == 1

    def test_self_heal_bad_frequency_uses_default(self, queue, now):
        pipelines = {"scan": PipelineConfig(name="scan", command=["true"], frequency="soon")}
        queue.ensure_recurring_pipelines(pipelines, now)
        assert queue.pending()[0].due_at == now + timedelta(hours=6)

    def test_next_due_orders_by_time_then_tier(self, queue, now):
        queue.create("research", "later", now + timedelta(hours=1))
        queue.create("research", "medium now", now - timedelta(minutes=5), PriorityTier.MEDIUM)
        queue.create("research", "critical now", now - timedelta(minutes=5), PriorityTier.CRITICAL)
        queue.create("research", "oldest", now - timedelta(minutes=30), PriorityTier.LOW)

        assert queue.get_next_due(now).description == "oldest"

        queue.mark_complete(queue.get_next_due(now), now)
        assert queue.get_next_due(now).description == "critical now"

    def test_nothing_due(self, queue, now):
        queue.create("research", "later", now + timedelta(hours=1))
        assert queue.get_next_due(now) is None
        assert queue.first_pending().description == "later"

    def test_complete_one_off(self, queue, now):
        task = queue.create("research", "one-off", now)
        assert queue.mark_complete(task, now, {"success": True}) is None
        assert queue.pending() == []
        completed = queue.store.load(Document.SCHEDULE)["completedTasks"]
        assert completed[0]["id"] == task.id
        assert completed[0]["result"] == {"success": True}

    def test_complete_recurring_reschedules_under_fresh_id(self, queue, now):
        task = queue.add(ScheduledTask(
            id="market-scan-0001",
            type="scan",
            description="Scan markets",
            scheduled_for=to_iso(now),
            context=TaskContext(recurring=True, frequency="30m", extra={"focus": "sports"}),
        ))
        next_task = queue.mark_complete(task, now)

        assert next_task.id != task.id
        assert next_task.id.startswith("market-scan-")
        assert next_task.due_at == now + timedelta(minutes=30)
        assert next_task.context.extra == {"focus": "sports"}
        assert [t.id for t in queue.pending()] == [next_task.id]

    def test_failure_leaves_task_pending(self, queue, now):
        task = queue.create("research", "flaky", now)
        queue.record_failure(task, "exit code 1", now)
        queue.record_failure(task, "exit code 1", now)

        pending = queue.get(task.id)
        assert pending is not None
        assert pending.attempts == 2
        assert pending.last_error == "exit code 1"
        assert queue.get_next_due(now).id == task.id

    def test_failed_task_waits_out_backoff(self, queue, now):
        flaky = queue.create("research", "flaky", now - timedelta(hours=1))
        steady = queue.create("research", "steady", now - timedelta(minutes=1))
        queue.record_failure(flaky, "exit code 1", now)

        assert queue.get(flaky.id).last_attempt_at == "2025-01-15T12:00:00Z"
        assert queue.get_next_due(now, retry_backoff=60).id == steady.id
        assert queue.get_next_due(now + timedelta(seconds=61), retry_backoff=60).id == flaky.id
        # No backoff: failed work is eligible again straight away
        assert queue.get_next_due(now).id == flaky.id

    def test_run_history(self, queue, now):
        task = queue.create("pipeline", "scan", now, context=TaskContext(pipeline="scan"))
        queue.record_run(task, False, "Traceback...", now)
        history = queue.run_history()
        assert history == [{
            "taskId": task.id,
            "pipeline": "scan",
            "success": False,
            "error": "Traceback...",
            "finishedAt": to_iso(now),
        }]

    def test_malformed_task_skipped(self, queue, store, now):
        store.save(Document.SCHEDULE, {
            "pendingTasks": [{"description": "no id"}, {"id": "ok-1", "scheduledFor": to_iso(now)}],
            "completedTasks": [],
        })
        assert [t.id for t in queue.pending()] == ["ok-1"]

    def test_unparseable_time_is_never_due(self, queue, store, now):
        store.save(Document.SCHEDULE, {
            "pendingTasks": [{"id": "bad-1", "scheduledFor": "whenever"}],
            "completedTasks": [],
        })
        assert queue.get_next_due(now) is None


class TestContextBuilder:

    @pytest.fixture
    def builder(self, store, now):
        write_hypotheses(
            store,
            make_hypothesis("h1", status="testing", confidence=0.62),
            make_hypothesis("h2", confidence=0.2),
        )
        store.save(Document.PORTFOLIO, make_portfolio({
            "id": "p1", "market": "Election", "entryPrice": 0.4, "currentPrice": 0.5, "shares": 10,
        }))
        return ContextBuilder(store)

    def test_known_duties(self, builder, now):
        assert "h1" in builder.for_responsibility(Role.TRADE_RESEARCH, "hypothesis-health", now)
        assert "p1" in builder.for_responsibility(Role.TRADE_RESEARCH, "portfolio-review", now)
        assert builder.for_responsibility(Role.AGENT_ENGINEER, "system-health", now)

    def test_unknown_duty(self, builder, now):
        text = builder.for_responsibility(Role.AGENT_ENGINEER, "gardening", now)
        assert "Unknown responsibility" in text

    def test_task_prompt(self, now):
        task = ScheduledTask(
            id="followup-1", type="followup", description="Check the election market",
            scheduled_for=to_iso(now), context=TaskContext(extra={"hypothesisId": "h1"}),
        )
        prompt = build_task_prompt(task)
        assert prompt.startswith("You are waking up to execute a scheduled task.")
        assert "followup-1" in prompt
        assert '"hypothesisId": "h1"' in prompt
