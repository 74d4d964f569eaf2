"""
SCHEDULING MODELS - Roles, priority tiers and the units of scheduled work
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from core.clock import parse_timestamp


class Role(str, Enum):
    """Worker roles."""
    TRADE_RESEARCH = "trade-research"
    AGENT_ENGINEER = "agent-engineer"


class PriorityTier(str, Enum):
    """Coarse priority used by handoffs and scheduled tasks."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank sorts first."""
        return _TIER_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> 'PriorityTier':
        """Unknown tiers are treated as medium."""
        try:
            return cls(value)
        except ValueError:
            return cls.MEDIUM


_TIER_RANK = {
    PriorityTier.CRITICAL: 0,
    PriorityTier.HIGH: 1,
    PriorityTier.MEDIUM: 2,
    PriorityTier.LOW: 3,
}


# ===== Handoffs =====

class HandoffType(str, Enum):
    BUILD_CAPABILITY = "build_capability"
    FIX_ISSUE = "fix_issue"
    ANALYSIS_REQUEST = "analysis_request"
    TRADE_EXECUTION = "trade_execution"


class HandoffStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (HandoffStatus.COMPLETED, HandoffStatus.FAILED)


@dataclass
class Handoff:
    """A unit of work one role hands to another."""
    id: str
    from_role: Role
    to_role: Role
    type: HandoffType
    priority: PriorityTier
    status: HandoffStatus = HandoffStatus.PENDING
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "from": self.from_role.value,
            "to": self.to_role.value,
            "type": self.type.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "context": self.context,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "result": self.result,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Handoff':
        return cls(
            id=str(data["id"]),
            from_role=Role(data.get("from", Role.TRADE_RESEARCH.value)),
            to_role=Role(data.get("to", Role.AGENT_ENGINEER.value)),
            type=HandoffType(data.get("type", HandoffType.ANALYSIS_REQUEST.value)),
            priority=PriorityTier.parse(data.get("priority")),
            status=HandoffStatus(data.get("status", HandoffStatus.PENDING.value)),
            context=dict(data.get("context") or {}),
            created_at=data.get("createdAt"),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            result=data.get("result"),
        )


# ===== Scheduled tasks =====

@dataclass
class TaskContext:
    """
    Structured part of a scheduled task's context.

    `pipeline` names a registered pipeline for pipeline tasks. Recurring
    tasks carry `recurring` and a frequency string. Anything else the task
    author put in the context is kept in `extra`.
    """
    pipeline: Optional[str] = None
    recurring: bool = False
    frequency: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        if self.pipeline is not None:
            data["pipeline"] = self.pipeline
        if self.recurring:
            data["recurring"] = True
        if self.frequency is not None:
            data["frequency"] = self.frequency
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TaskContext':
        data = dict(data or {})
        return cls(
            pipeline=data.pop("pipeline", None),
            recurring=bool(data.pop("recurring", False)),
            frequency=data.pop("frequency", None),
            extra=data,
        )


@dataclass
class ScheduledTask:
    """A unit of work due at a specific time."""
    id: str
    type: str
    description: str
    scheduled_for: str
    priority: PriorityTier = PriorityTier.MEDIUM
    context: TaskContext = field(default_factory=TaskContext)
    attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_pipeline(self) -> bool:
        return self.type == "pipeline" and bool(self.context.pipeline)

    @property
    def due_at(self) -> Optional[datetime]:
        return parse_timestamp(self.scheduled_for)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "scheduledFor": self.scheduled_for,
            "priority": self.priority.value,
            "context": self.context.to_dict(),
            "attempts": self.attempts or None,
            "lastError": self.last_error,
            "lastAttemptAt": self.last_attempt_at,
            "completedAt": self.completed_at,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledTask':
        return cls(
            id=str(data["id"]),
            type=str(data.get("type", "task")),
            description=str(data.get("description", "")),
            scheduled_for=str(data.get("scheduledFor", "")),
            priority=PriorityTier.parse(data.get("priority")),
            context=TaskContext.from_dict(data.get("context")),
            attempts=int(data.get("attempts", 0) or 0),
            last_error=data.get("lastError"),
            last_attempt_at=data.get("lastAttemptAt"),
            completed_at=data.get("completedAt"),
        )


# ===== Responsibilities =====

@dataclass
class Responsibility:
    """A recurring duty of a role."""
    role: Role
    name: str
    frequency: str
    last_run: Optional[str] = None


@dataclass
class DueResponsibility:
    """A responsibility that is due, with how overdue it is."""
    responsibility: Responsibility
    due_at: datetime
    overdue_seconds: float

    @property
    def role(self) -> Role:
        return self.responsibility.role

    @property
    def name(self) -> str:
        return self.responsibility.name
