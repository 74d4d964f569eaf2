"""
PRIORITY MODELS

A Priority is an ephemeral signal: it is recomputed from scratch on every
detection pass and never persisted. Each family of priority carries its own
typed context.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from scheduling.models import Role


class PriorityType(str, Enum):
    PORTFOLIO_RISK = "portfolio-risk"
    EXIT_TRIGGER = "exit-trigger"
    TIME_SENSITIVE = "time-sensitive"
    STUCK_HYPOTHESIS = "stuck-hypothesis"
    EXECUTION_VELOCITY = "execution-velocity"
    SYSTEM_HEALTH = "system-health"


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None and v != []}


class _Context:
    def to_dict(self) -> Dict[str, Any]:
        return _compact(asdict(self))


@dataclass
class PositionRiskContext(_Context):
    position_id: str
    market: str
    pnl_pct: float
    current_price: float
    stop_loss: Optional[float] = None


@dataclass
class ExitTriggerContext(_Context):
    position_id: str
    market: str
    current_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    distance_to_stop_pct: Optional[float] = None


@dataclass
class ClosingMarketContext(_Context):
    hypothesis_id: str
    market: str
    hours_to_close: float


@dataclass
class StuckHypothesisContext(_Context):
    hypothesis_id: str
    statement: str
    confidence: float
    hours_stuck: Optional[float] = None
    evidence_count: int = 0


@dataclass
class VelocityContext(_Context):
    trades_last_7_days: int
    target: int
    hypotheses_available: int


@dataclass
class SystemHealthContext(_Context):
    issue: str
    service: Optional[str] = None
    status: Optional[str] = None
    pipeline: Optional[str] = None
    failures: Optional[int] = None
    successes: Optional[int] = None
    last_error: Optional[str] = None
    error_count: Optional[int] = None
    recent_errors: List[str] = field(default_factory=list)
    file: Optional[str] = None
    path: Optional[str] = None
    hours_since: Optional[float] = None
    max_age_hours: Optional[float] = None


PriorityContext = Union[
    PositionRiskContext,
    ExitTriggerContext,
    ClosingMarketContext,
    StuckHypothesisContext,
    VelocityContext,
    SystemHealthContext,
]


@dataclass
class Priority:
    """
    Something that may deserve this tick's unit of work.

    spawns_worker=False means the code executor handles `action` in process.
    """
    type: PriorityType
    urgency: int  # 0-100
    action: str
    context: PriorityContext
    spawns_worker: bool
    role: Optional[Role] = None
    focused_prompt: Optional[str] = None

    @property
    def emoji(self) -> str:
        if self.urgency >= 90:
            return "🔴"
        if self.urgency >= 70:
            return "🟠"
        if self.urgency >= 50:
            return "🟡"
        return "🟢"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "urgency": self.urgency,
            "action": self.action,
            "context": self.context.to_dict(),
            "spawnsWorker": self.spawns_worker,
            "role": self.role.value if self.role else None,
        }


@dataclass
class StrategicDecision:
    """Whether the top priority overrides the regular schedule this tick."""
    should_override: bool
    reason: str
    priority: Optional[Priority] = None
    tier: Optional[str] = None  # "high" | "medium"
