"""
LEARNINGS JOURNAL - What the system concluded, and how its beliefs moved

Two documents:
- learnings: insights written when hypotheses conclude (and by workers)
- confidence-history: every meaningful confidence movement, for progress
  monitoring
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from loguru import logger

from core.clock import parse_timestamp, to_iso, utcnow
from core.events import EventType, emit
from memory.store import Document, StateStore

if TYPE_CHECKING:
    from hypotheses.models import Hypothesis


MIN_TRACKED_DELTA = 0.001
ADVANCE_DELTA = 0.05
THRESHOLD_MARKS = (0.5, 0.75)


@dataclass
class Learning:
    """One recorded insight."""
    id: str
    category: str
    title: str
    content: str
    source: str = ""
    actionable: bool = False
    applied_to: List[str] = field(default_factory=list)
    created_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "title": self.title,
            "content": self.content,
            "source": self.source,
            "actionable": self.actionable,
            "appliedTo": self.applied_to,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Learning':
        return cls(
            id=str(data.get("id", "")),
            category=str(data.get("category", "")),
            title=str(data.get("title", "")),
            content=str(data.get("content", "")),
            source=str(data.get("source", "")),
            actionable=bool(data.get("actionable", False)),
            applied_to=list(data.get("appliedTo") or []),
            created_at=data.get("createdAt"),
        )


@dataclass
class ConfidenceMovement:
    hypothesis_id: str
    previous_confidence: float
    current_confidence: float
    delta: float
    reason: str
    timestamp: str

    def crossed_threshold(self) -> bool:
        for mark in THRESHOLD_MARKS:
            if (self.previous_confidence < mark) != (self.current_confidence < mark):
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hypothesisId": self.hypothesis_id,
            "previousConfidence": self.previous_confidence,
            "currentConfidence": self.current_confidence,
            "delta": self.delta,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfidenceMovement':
        return cls(
            hypothesis_id=str(data.get("hypothesisId", "")),
            previous_confidence=float(data.get("previousConfidence", 0.0)),
            current_confidence=float(data.get("currentConfidence", 0.0)),
            delta=float(data.get("delta", 0.0)),
            reason=str(data.get("reason", "")),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class WeeklyProgress:
    total_movement: float
    hypotheses_advanced: int
    threshold_crossings: int
    movements: List[ConfidenceMovement]


def format_conclusion(hypothesis: 'Hypothesis', conclusion: str) -> str:
    """Markdown body of the learning written when a hypothesis concludes."""
    results = hypothesis.test_results
    lines = [
        f"## Hypothesis {hypothesis.status.value.upper()}",
        "",
        f"**Statement:** {hypothesis.statement}",
        "",
        f"**Conclusion:** {conclusion}",
        "",
        "**Evidence Summary:**",
        f"- Total observations: {len(hypothesis.evidence)}",
        f"- Supporting: {len(hypothesis.supporting_evidence)}",
        f"- Contradicting: {len(hypothesis.contradicting_evidence)}",
        f"- Final confidence: {hypothesis.confidence * 100:.0f}%",
    ]
    if results.trades > 0:
        lines += [
            "",
            "**Trade Results:**",
            f"- Trades: {results.trades}",
            f"- Win rate: {results.actual_win_rate * 100:.0f}%",
            f"- Total P&L: ${results.total_pnl:.2f}",
        ]
    if hypothesis.evidence:
        lines += ["", "**Key Evidence:**"]
        for e in hypothesis.evidence[-3:]:
            lines.append(f"- {e.date.split('T')[0]}: {e.observation[:150]}")
    return "\n".join(lines)


class LearningJournal:
    """Access to the learnings and confidence-history documents."""

    def __init__(self, store: StateStore, history_limit: int = 500):
        self.store = store
        self.history_limit = history_limit

    # ===== Learnings =====

    def get_all(self) -> List[Learning]:
        data = self.store.load(Document.LEARNINGS)
        return [Learning.from_dict(item) for item in data.get("insights", [])]

    def record(self, learning: Learning) -> None:
        with self.store.transaction(Document.LEARNINGS) as data:
            data["insights"].append(learning.to_dict())
        logger.info(f"Learning recorded: {learning.title}")
        emit(EventType.LEARNING_RECORDED, "learnings", f"📝 {learning.title}", learning_id=learning.id)

    def record_hypothesis_conclusion(self, hypothesis: 'Hypothesis', conclusion: str) -> Learning:
        """Write the learning for a hypothesis that just reached validated/invalidated."""
        now = utcnow()
        mark = "✅" if hypothesis.status.value == "validated" else "❌"
        learning = Learning(
            id=f"learning-{hypothesis.id}-{int(now.timestamp() * 1000)}",
            category="hypothesis",
            title=f"{mark} {hypothesis.id}: {hypothesis.statement[:50]}",
            content=format_conclusion(hypothesis, conclusion),
            source=f"Hypothesis {hypothesis.id} {hypothesis.status.value}",
            actionable=hypothesis.status.value == "validated",
            applied_to=[hypothesis.id],
            created_at=to_iso(now),
        )
        self.record(learning)
        return learning

    # ===== Confidence history =====

    def track_confidence_change(
        self,
        hypothesis_id: str,
        previous: float,
        current: float,
        reason: str,
    ) -> Optional[ConfidenceMovement]:
        """Append a movement; tiny deltas are ignored. Keeps the last `history_limit`."""
        if abs(current - previous) <= MIN_TRACKED_DELTA:
            return None
        movement = ConfidenceMovement(
            hypothesis_id=hypothesis_id,
            previous_confidence=previous,
            current_confidence=current,
            delta=current - previous,
            reason=reason,
            timestamp=to_iso(utcnow()),
        )
        with self.store.transaction(Document.CONFIDENCE_HISTORY) as data:
            movements = data["movements"]
            movements.append(movement.to_dict())
            data["movements"] = movements[-self.history_limit:]
        return movement

    def get_movements(self) -> List[ConfidenceMovement]:
        data = self.store.load(Document.CONFIDENCE_HISTORY)
        return [ConfidenceMovement.from_dict(m) for m in data.get("movements", [])]

    def weekly_progress(self, now: Optional[datetime] = None) -> WeeklyProgress:
        """Movement over the trailing seven days."""
        now = now or utcnow()
        cutoff = now - timedelta(days=7)
        week = []
        for m in self.get_movements():
            ts = parse_timestamp(m.timestamp)
            if ts is not None and ts >= cutoff:
                week.append(m)

        return WeeklyProgress(
            total_movement=sum(abs(m.delta) for m in week),
            hypotheses_advanced=len({m.hypothesis_id for m in week if abs(m.delta) >= ADVANCE_DELTA}),
            threshold_crossings=sum(1 for m in week if m.crossed_threshold()),
            movements=week,
        )
