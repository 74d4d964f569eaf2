"""
SCHEDULING MODULE - The work queues the daemon draws from

Components:
- ResponsibilityTracker: recurring duties per role
- HandoffQueue: cross-role requests
- ScheduleQueue: time-ordered one-off and recurring tasks

Worker context builders live in scheduling.context and are imported from
there directly.
"""

from scheduling.models import (
    DueResponsibility,
    Handoff,
    HandoffStatus,
    HandoffType,
    PriorityTier,
    Responsibility,
    Role,
    ScheduledTask,
    TaskContext,
)
from scheduling.handoffs import HandoffQueue
from scheduling.responsibilities import ResponsibilityTracker
from scheduling.schedule import ScheduleQueue

__all__ = [
    "DueResponsibility",
    "Handoff",
    "HandoffStatus",
    "HandoffType",
    "PriorityTier",
    "Responsibility",
    "Role",
    "ScheduledTask",
    "TaskContext",
    "HandoffQueue",
    "ResponsibilityTracker",
    "ScheduleQueue",
]
