"""
SCHEDULER DAEMON - One unit of work per tick

Every tick:
1. Pull shared state (best effort)
2. Recompute engine status
3. Strategic override: the top priority wins if urgent enough
4. Otherwise the most overdue responsibility
5. Otherwise the highest-priority pending handoff
6. Otherwise the earliest due scheduled task (missing recurring pipelines
   are queued first)
7. Push shared state (best effort)

Ticks never overlap and run at most one executor. Everything published on
the event bus during a tick is forwarded as a notification once the tick
is over.
"""

import asyncio
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from loguru import logger

from config.loader import EngineConfig
from core.clock import utcnow
from core.events import Event, EventType, emit, get_event_bus
from core.retry import TASK_RETRY_POLICY, RetryPolicy
from execution.code_executor import CodeExecutor
from execution.pipelines import PipelineExecutor
from execution.worker import SubprocessWorkerExecutor, WorkerContext, WorkerExecutor
from hypotheses.engine_status import update_engine_status
from hypotheses.state_machine import HypothesisRegistry
from interface.telegram.notifier import Notifier, create_notifier
from memory.learnings import LearningJournal
from memory.store import StateStore, StoreError
from memory.sync import GitSync, NullSync, StoreSync
from portfolio.positions import PositionManager
from priorities.engine import PriorityEngine
from priorities.models import Priority
from scheduling.context import ContextBuilder, build_handoff_prompt, build_task_prompt
from scheduling.handoffs import HandoffQueue
from scheduling.models import DueResponsibility, Handoff, ScheduledTask
from scheduling.responsibilities import ResponsibilityTracker
from scheduling.schedule import ScheduleQueue


# Events forwarded to the notifier
NOTIFY_EVENTS = frozenset({
    EventType.STRATEGIC_OVERRIDE,
    EventType.TASK_STARTED,
    EventType.TASK_COMPLETED,
    EventType.TASK_FAILED,
    EventType.HYPOTHESIS_TRANSITIONED,
    EventType.HANDOFF_STARTED,
    EventType.HANDOFF_COMPLETED,
    EventType.HANDOFF_FAILED,
    EventType.POSITION_CLOSED,
    EventType.SYSTEM_ERROR,
})


class TickAction(str, Enum):
    """What a tick ended up doing."""
    OVERRIDE = "override"
    RESPONSIBILITY = "responsibility"
    HANDOFF = "handoff"
    TASK = "task"
    IDLE = "idle"
    ERROR = "error"


@dataclass
class TickResult:
    action: TickAction
    label: str = ""
    success: Optional[bool] = None
    detail: str = ""

    def describe(self) -> str:
        if self.action == TickAction.IDLE:
            return "Nothing due"
        outcome = {True: "ok", False: "failed", None: "-"}[self.success]
        return f"{self.action.value}: {self.label} ({outcome}) {self.detail}".rstrip()


class SchedulerDaemon:
    """
    Owns the work queues and executors and runs ticks.

    Components can be injected for tests; anything not given is built from
    the configuration.
    """

    def __init__(
        self,
        config: EngineConfig,
        store: Optional[StateStore] = None,
        sync: Optional[StoreSync] = None,
        worker: Optional[WorkerExecutor] = None,
        pipelines: Optional[PipelineExecutor] = None,
        notifier: Optional[Notifier] = None,
        retry_policy: RetryPolicy = TASK_RETRY_POLICY,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        scheduler = config.scheduler
        self.store = store or StateStore(scheduler.state_dir)
        self.sync = sync or self._default_sync()
        self.retry_policy = retry_policy
        self._clock = clock

        self.handoffs = HandoffQueue(self.store)
        self.journal = LearningJournal(self.store, config.hypothesis.confidence_history_limit)
        self.registry = HypothesisRegistry(self.store, config.hypothesis, self.handoffs, self.journal)
        self.positions = PositionManager(self.store, self.registry)
        self.responsibilities = ResponsibilityTracker(self.store, scheduler.default_frequency)
        self.schedule = ScheduleQueue(self.store, scheduler.default_frequency)
        self.engine = PriorityEngine(self.store, config.priority)
        self.context = ContextBuilder(self.store, config.hypothesis, config.priority)

        self.pipelines = pipelines or PipelineExecutor(scheduler.pipelines, str(self.store.root))
        self.worker = worker or SubprocessWorkerExecutor(config.worker, str(self.store.root / "logs"))
        self.code = CodeExecutor(self.positions, self.pipelines)
        self.notifier = notifier or create_notifier(config.telegram)

        self._lock = asyncio.Lock()
        self._outbox: List[str] = []
        self._shutdown_event: Optional[asyncio.Event] = None
        self.running = False
        self.ticks = 0

    def _default_sync(self) -> StoreSync:
        scheduler = self.config.scheduler
        if not scheduler.sync_enabled:
            return NullSync()
        return GitSync(str(self.store.root), scheduler.sync_remote, scheduler.sync_branch)

    # ===== Notifications =====

    def _on_event(self, event: Event) -> None:
        if event.event_type in NOTIFY_EVENTS:
            self._outbox.append(event.message)

    @contextmanager
    def capture_events(self) -> Iterator[None]:
        """Queue bus events for notification while the block runs."""
        bus = get_event_bus()
        bus.subscribe_all(self._on_event)
        try:
            yield
        finally:
            bus.unsubscribe_all(self._on_event)

    async def flush_notifications(self) -> None:
        messages, self._outbox = self._outbox, []
        for text in messages:
            try:
                await self.notifier.send(text)
            except Exception as e:
                logger.error(f"Notification failed: {e}")

    # ===== Sync =====

    def _pull(self) -> None:
        try:
            if not self.sync.pull():
                logger.warning("State pull failed, continuing with local state")
        except Exception as e:
            logger.error(f"State pull error: {e}")

    def _push(self) -> None:
        try:
            if not self.sync.push():
                logger.warning("State push failed, changes stay local until the next tick")
        except Exception as e:
            logger.error(f"State push error: {e}")

    # ===== Tick =====

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """Run one scheduling cycle. Never raises."""
        async with self._lock:
            now = now or self._clock()
            with self.capture_events():
                try:
                    self._pull()
                    result = await self._select_and_run(now)
                except Exception as e:
                    logger.exception(f"Tick failed: {e}")
                    emit(EventType.SYSTEM_ERROR, "daemon", f"❌ *Tick failed*\n{e}")
                    result = TickResult(TickAction.ERROR, success=False, detail=str(e))
                finally:
                    self._push()
            await self.flush_notifications()

            self.ticks += 1
            logger.info(f"Tick {self.ticks}: {result.describe()}")
            return result

    async def _select_and_run(self, now: datetime) -> TickResult:
        try:
            update_engine_status(self.store, self.config.hypothesis, now)
        except StoreError as e:
            logger.error(f"Engine status not updated: {e}")

        decision = self.engine.decide(now)
        if decision.should_override and decision.priority is not None:
            logger.info(f"Strategic override: {decision.reason}")
            emit(
                EventType.STRATEGIC_OVERRIDE, "daemon",
                f"{decision.priority.emoji} *Strategic override*\n{decision.reason}",
                action=decision.priority.action,
                urgency=decision.priority.urgency,
                tier=decision.tier,
            )
            return await self._run_priority(decision.priority, decision.reason)
        logger.debug(decision.reason)

        due = self.responsibilities.get_next_due(now)
        if due is not None:
            return await self._run_responsibility(due, now)

        handoff = self.handoffs.get_next_pending()
        if handoff is not None:
            return await self._run_handoff(handoff)

        self.schedule.ensure_recurring_pipelines(self.config.scheduler.pipelines, now)
        task = self.schedule.get_next_due(now, self.retry_policy.backoff_seconds)
        if task is not None:
            return await self._run_task(task, now)

        return TickResult(TickAction.IDLE)

    # ===== Units of work =====

    async def _run_priority(self, priority: Priority, reason: str) -> TickResult:
        label = priority.action
        if not priority.spawns_worker:
            success = await self.code.execute(priority.action, priority.context)
            detail = ""
        else:
            code = await self.worker.execute(
                priority.focused_prompt or f"Handle priority: {priority.action}",
                WorkerContext(role=priority.role, label=label, description=reason),
            )
            success = code == 0
            detail = "" if success else f"exit code {code}"

        if success:
            emit(EventType.TASK_COMPLETED, "daemon", f"✅ *Priority handled*\n`{label}`")
        else:
            emit(EventType.TASK_FAILED, "daemon", f"❌ *Priority failed*\n`{label}`\n{detail}".rstrip())
        return TickResult(TickAction.OVERRIDE, label, success, detail)

    async def _run_responsibility(self, due: DueResponsibility, now: datetime) -> TickResult:
        label = f"{due.role.value}/{due.name}"
        emit(
            EventType.TASK_STARTED, "daemon",
            f"🚀 *Starting task*\n`{label}`\nResponsibility overdue by {due.overdue_seconds / 3600:.1f}h",
        )
        instructions = self.context.for_responsibility(due.role, due.name, now)
        code = await self.worker.execute(
            instructions,
            WorkerContext(role=due.role, label=f"{due.role.value}-{due.name}", description=due.name),
        )
        if code == 0:
            self.responsibilities.mark_complete(due.role, due.name, now)
            emit(EventType.TASK_COMPLETED, "daemon", f"✅ *Task completed*\n`{label}`")
            return TickResult(TickAction.RESPONSIBILITY, label, True)

        emit(EventType.TASK_FAILED, "daemon", f"❌ *Task failed*\n`{label}`\nExit code: {code}")
        return TickResult(TickAction.RESPONSIBILITY, label, False, f"exit code {code}")

    async def _run_handoff(self, handoff: Handoff) -> TickResult:
        if not self.handoffs.start(handoff.id):
            return TickResult(TickAction.HANDOFF, handoff.id, False, "could not start")

        try:
            code = await self.worker.execute(
                build_handoff_prompt(handoff),
                WorkerContext(
                    role=handoff.to_role,
                    label=handoff.id,
                    description=str(handoff.context.get("description", handoff.type.value)),
                ),
            )
        except Exception as e:
            # An in-progress handoff is never selected again
            self.handoffs.fail(handoff.id, f"Worker crashed: {e}")
            raise
        if code == 0:
            self.handoffs.complete(handoff.id, {"exitCode": code})
            return TickResult(TickAction.HANDOFF, handoff.id, True)

        self.handoffs.fail(handoff.id, f"Worker exited with code {code}")
        return TickResult(TickAction.HANDOFF, handoff.id, False, f"exit code {code}")

    async def _run_task(self, task: ScheduledTask, now: datetime) -> TickResult:
        emit(
            EventType.TASK_STARTED, "daemon",
            f"🚀 *Starting task*\n`{task.id}`\n{task.description}",
            task_id=task.id,
        )
        if task.is_pipeline:
            return await self._run_pipeline_task(task, now)

        code = await self.worker.execute(
            build_task_prompt(task),
            WorkerContext(label=task.id, description=task.description),
        )
        if code == 0:
            self.schedule.mark_complete(task, now, {"success": True, "exitCode": code})
            emit(EventType.TASK_COMPLETED, "daemon", f"✅ *Task completed*\n`{task.id}`", task_id=task.id)
            return TickResult(TickAction.TASK, task.id, True)

        error = f"Worker exited with code {code}"
        self._task_failed(task, error, now)
        emit(EventType.TASK_FAILED, "daemon", f"❌ *Task failed*\n`{task.id}`\nExit code: {code}", task_id=task.id)
        return TickResult(TickAction.TASK, task.id, False, error)

    async def _run_pipeline_task(self, task: ScheduledTask, now: datetime) -> TickResult:
        result = await self.pipelines.run(task.context.pipeline)
        self._write_session_log(task.id, result.output)
        self.schedule.record_run(task, result.success, None if result.success else result.output, now)

        if result.success:
            summary = result.summary()
            self.schedule.mark_complete(task, now, {"success": True, "summary": summary})
            emit(
                EventType.TASK_COMPLETED, "daemon",
                f"✅ *Pipeline completed*\n`{task.id}`\n{summary}".rstrip(),
                task_id=task.id,
            )
            return TickResult(TickAction.TASK, task.id, True, summary)

        self._task_failed(task, result.output or f"exit code {result.exit_code}", now)
        emit(
            EventType.TASK_FAILED, "daemon",
            f"❌ *Pipeline failed*\n`{task.id}`\n{result.output[:200]}".rstrip(),
            task_id=task.id,
        )
        return TickResult(TickAction.TASK, task.id, False, result.output[:200])

    def _task_failed(self, task: ScheduledTask, error: str, now: datetime) -> None:
        self.schedule.record_failure(task, error, now)
        if not self.retry_policy.should_retry(task.attempts + 1):
            logger.warning(f"Task {task.id} gave up after {task.attempts + 1} attempts")
            self.schedule.mark_complete(task, now, {"success": False, "error": error[:500]})

    def _write_session_log(self, label: str, output: str) -> None:
        path = Path(self.store.root) / "logs" / f"session-{label}-{int(self._clock().timestamp() * 1000)}.log"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(output or "", encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write session log {path}: {e}")

    # ===== Manual entry points =====

    async def trigger(self, now: Optional[datetime] = None) -> TickResult:
        """Run the next due task now, or the first pending one if none is due."""
        async with self._lock:
            now = now or self._clock()
            with self.capture_events():
                try:
                    self._pull()
                    task = self.schedule.get_next_due(now) or self.schedule.first_pending()
                    if task is None:
                        result = TickResult(TickAction.IDLE)
                    else:
                        result = await self._run_task(task, now)
                finally:
                    self._push()
            await self.flush_notifications()
            return result

    async def query(self, question: str) -> int:
        """Ask a worker a one-off question; returns its exit code."""
        async with self._lock:
            return await self.worker.execute(
                f"Answer this query: {question}",
                WorkerContext(label="query", description=question),
            )

    # ===== Loop =====

    async def run(self) -> None:
        """Tick every tick_interval_seconds until SIGINT/SIGTERM."""
        self.running = True
        self._shutdown_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown)

        interval = self.config.scheduler.tick_interval_seconds
        logger.info(f"Scheduler daemon started (tick every {interval}s, state in {self.store.root})")
        try:
            pending = self.schedule.summary()
        except StoreError as e:
            pending = f"Schedule unreadable: {e}"
        emit(EventType.DAEMON_STARTED, "daemon", f"Scheduler daemon started (tick every {interval}s)")
        await self.notifier.send(f"🤖 *Trader daemon started*\nTick interval: {interval}s\n{pending}")

        try:
            while not self._shutdown_event.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.running = False
            logger.info("Scheduler daemon stopped")
            emit(EventType.DAEMON_STOPPED, "daemon", f"Scheduler daemon stopped after {self.ticks} ticks")

    def _handle_shutdown(self):
        """Handle shutdown signal."""
        logger.info("Shutdown signal received")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def status(self) -> str:
        """Pending work at a glance."""
        due = self.responsibilities.get_next_due()
        lines = [
            self.schedule.summary(),
            "",
            self.handoffs.summary(),
            "",
            f"Next responsibility: {due.role.value}/{due.name}" if due else "No responsibilities due",
        ]
        return "\n".join(lines)
