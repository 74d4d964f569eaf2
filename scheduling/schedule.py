"""
SCHEDULED-TASK QUEUE - One-off and recurring work due at a given time

Tasks live in the schedule document's `pendingTasks` until they succeed, then
move to `completedTasks`. A task that fails stays pending and is picked up
again on the next tick; only its attempt counter and last error change.

Recurring pipelines must always have an occurrence queued. The daemon calls
ensure_recurring_pipelines() before each selection so a lost task (manual
edit, crash between complete and reschedule) heals itself.

Every pipeline run is also appended to `runHistory`, which the system-health
detector reads to spot failing pipelines.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from config.loader import PipelineConfig
from core.clock import DEFAULT_FREQUENCY, parse_frequency, parse_timestamp, to_iso, utcnow
from memory.store import Document, StateStore
from scheduling.models import PriorityTier, ScheduledTask, TaskContext


KEEP_COMPLETED_TASKS = 200
KEEP_RUN_HISTORY = 200


def _new_id(base: str) -> str:
    return f"{base}-{uuid.uuid4().hex[:8]}"


def _base_id(task: ScheduledTask) -> str:
    """Identifier stem shared by all occurrences of a recurring task."""
    if task.context.pipeline:
        return task.context.pipeline
    head, sep, _ = task.id.rpartition("-")
    return head if sep else task.id


def _selection_key(task: ScheduledTask):
    # Earliest due first, then higher tier
    return (task.due_at, task.priority.rank)


def _backing_off(task: ScheduledTask, now: datetime, seconds: float) -> bool:
    if seconds <= 0 or not task.attempts:
        return False
    last = parse_timestamp(task.last_attempt_at or "")
    return last is not None and last + timedelta(seconds=seconds) > now


class ScheduleQueue:
    """Persistent queue in the schedule document."""

    def __init__(self, store: StateStore, default_frequency: str = DEFAULT_FREQUENCY):
        self.store = store
        self.default_frequency = default_frequency

    # ===== Reads =====

    def pending(self) -> List[ScheduledTask]:
        data = self.store.load(Document.SCHEDULE)
        tasks = []
        for raw in data.get("pendingTasks", []):
            try:
                tasks.append(ScheduledTask.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed task: {e}")
        return tasks

    def completed(self) -> List[ScheduledTask]:
        data = self.store.load(Document.SCHEDULE)
        return [ScheduledTask.from_dict(raw) for raw in data.get("completedTasks", []) if "id" in raw]

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        for task in self.pending():
            if task.id == task_id:
                return task
        return None

    def get_next_due(
        self,
        now: Optional[datetime] = None,
        retry_backoff: float = 0.0,
    ) -> Optional[ScheduledTask]:
        """
        Earliest-due pending task, ties broken by priority tier.

        A task that failed within the last `retry_backoff` seconds is not
        eligible yet.
        """
        now = now or utcnow()
        due = [
            t for t in self.pending()
            if t.due_at is not None and t.due_at <= now and not _backing_off(t, now, retry_backoff)
        ]
        if not due:
            return None
        return min(due, key=_selection_key)

    def first_pending(self) -> Optional[ScheduledTask]:
        """Next task regardless of due time (manual trigger)."""
        tasks = [t for t in self.pending() if t.due_at is not None]
        return min(tasks, key=_selection_key) if tasks else None

    def run_history(self) -> List[Dict[str, Any]]:
        return list(self.store.load(Document.SCHEDULE).get("runHistory") or [])

    # ===== Writes =====

    def add(self, task: ScheduledTask) -> ScheduledTask:
        with self.store.transaction(Document.SCHEDULE) as data:
            data["pendingTasks"].append(task.to_dict())
        logger.info(f"Scheduled {task.id} for {task.scheduled_for}")
        return task

    def create(
        self,
        task_type: str,
        description: str,
        scheduled_for: datetime,
        priority: PriorityTier = PriorityTier.MEDIUM,
        context: Optional[TaskContext] = None,
        base_id: Optional[str] = None,
    ) -> ScheduledTask:
        task = ScheduledTask(
            id=_new_id(base_id or task_type),
            type=task_type,
            description=description,
            scheduled_for=to_iso(scheduled_for),
            priority=PriorityTier(priority),
            context=context or TaskContext(),
        )
        return self.add(task)

    def ensure_recurring_pipelines(
        self,
        pipelines: Dict[str, PipelineConfig],
        now: Optional[datetime] = None,
    ) -> List[ScheduledTask]:
        """
        Queue one occurrence at now + frequency for every configured pipeline
        that has no pending task. Returns the tasks created.
        """
        now = now or utcnow()
        created: List[ScheduledTask] = []
        with self.store.transaction(Document.SCHEDULE) as data:
            queued = {
                (raw.get("context") or {}).get("pipeline")
                for raw in data["pendingTasks"]
            }
            for name, pipeline in pipelines.items():
                if name in queued:
                    continue
                interval = parse_frequency(pipeline.frequency, self.default_frequency)
                task = ScheduledTask(
                    id=_new_id(name),
                    type="pipeline",
                    description=pipeline.description or f"Run {name} pipeline",
                    scheduled_for=to_iso(now + interval),
                    priority=PriorityTier.parse(pipeline.priority),
                    context=TaskContext(pipeline=name, recurring=True, frequency=pipeline.frequency),
                )
                data["pendingTasks"].append(task.to_dict())
                created.append(task)

        for task in created:
            logger.info(f"Self-healed missing pipeline task {task.id} for {task.scheduled_for}")
        return created

    def mark_complete(
        self,
        task: ScheduledTask,
        now: Optional[datetime] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> Optional[ScheduledTask]:
        """
        Move a task from pending to completed. Recurring tasks get their next
        occurrence at now + frequency under a fresh id, which is returned.
        """
        now = now or utcnow()
        next_task = None
        with self.store.transaction(Document.SCHEDULE) as data:
            remaining = [raw for raw in data["pendingTasks"] if raw.get("id") != task.id]
            if len(remaining) == len(data["pendingTasks"]):
                logger.warning(f"Task {task.id} is no longer pending")
            data["pendingTasks"] = remaining

            done = task.to_dict()
            done["completedAt"] = to_iso(now)
            if result is not None:
                done["result"] = result
            data["completedTasks"].append(done)
            data["completedTasks"] = data["completedTasks"][-KEEP_COMPLETED_TASKS:]

            if task.context.recurring:
                interval = parse_frequency(task.context.frequency, self.default_frequency)
                next_task = ScheduledTask(
                    id=_new_id(_base_id(task)),
                    type=task.type,
                    description=task.description,
                    scheduled_for=to_iso(now + interval),
                    priority=task.priority,
                    context=task.context,
                )
                data["pendingTasks"].append(next_task.to_dict())

        logger.info(f"Task {task.id} complete")
        if next_task is not None:
            logger.info(f"Rescheduled {next_task.id} for {next_task.scheduled_for}")
        return next_task

    def record_failure(self, task: ScheduledTask, error: str, now: Optional[datetime] = None) -> None:
        """Leave the task pending; note the attempt."""
        with self.store.transaction(Document.SCHEDULE) as data:
            for raw in data["pendingTasks"]:
                if raw.get("id") == task.id:
                    raw["attempts"] = int(raw.get("attempts", 0) or 0) + 1
                    raw["lastError"] = error[:500]
                    raw["lastAttemptAt"] = to_iso(now or utcnow())
                    break
        logger.warning(f"Task {task.id} failed, will retry next tick: {error[:200]}")

    def record_run(
        self,
        task: ScheduledTask,
        success: bool,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Append a pipeline run outcome to the run history."""
        with self.store.transaction(Document.SCHEDULE) as data:
            history = data.setdefault("runHistory", [])
            history.append({
                "taskId": task.id,
                "pipeline": task.context.pipeline,
                "success": success,
                "error": error[:500] if error else None,
                "finishedAt": to_iso(now or utcnow()),
            })
            data["runHistory"] = history[-KEEP_RUN_HISTORY:]

    def summary(self) -> str:
        tasks = sorted(
            (t for t in self.pending() if t.due_at is not None),
            key=_selection_key,
        )
        completed = self.store.load(Document.SCHEDULE).get("completedTasks", [])
        lines = [
            f"Pending tasks: {len(tasks)}",
            f"Completed tasks: {len(completed)}",
        ]
        if tasks:
            lines.append("\nPending:")
        for t in tasks:
            retry = f" (attempts: {t.attempts})" if t.attempts else ""
            lines.append(f"  [{t.priority.value}] {t.id}: {t.description}{retry}")
            lines.append(f"         Scheduled: {t.scheduled_for}")
        return "\n".join(lines)
