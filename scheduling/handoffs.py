"""
HANDOFF QUEUE - Work one role asks another role to do

Status only moves forward:

    pending ──► in_progress ──► completed
                     │
                     └────────► failed

A handoff that reached a terminal state keeps its result payload and is
never selected again.
"""

import uuid
from typing import Any, Dict, List, Optional

from loguru import logger

from core.clock import parse_timestamp, to_iso, utcnow
from core.events import EventType, emit
from memory.store import Document, StateStore
from scheduling.models import (
    Handoff,
    HandoffStatus,
    HandoffType,
    PriorityTier,
    Role,
)


KEEP_TERMINAL_HANDOFFS = 50


def _sort_key(handoff: Handoff):
    # Tier first, then oldest first
    return (handoff.priority.rank, handoff.created_at or "")


def _describe(handoff: Handoff, width: int = 60) -> str:
    text = handoff.context.get("description") or handoff.context.get("question") or "No description"
    return str(text)[:width]


class HandoffQueue:
    """Persistent queue of handoffs in the handoffs document."""

    def __init__(self, store: StateStore):
        self.store = store

    def _load(self) -> List[Handoff]:
        data = self.store.load(Document.HANDOFFS)
        return [Handoff.from_dict(h) for h in data.get("handoffs", [])]

    def _update(self, handoff_id: str, mutate) -> Optional[Handoff]:
        """Apply `mutate` to one handoff inside a transaction; None if refused."""
        with self.store.transaction(Document.HANDOFFS) as data:
            for i, raw in enumerate(data["handoffs"]):
                if raw.get("id") != handoff_id:
                    continue
                handoff = Handoff.from_dict(raw)
                if not mutate(handoff):
                    return None
                data["handoffs"][i] = handoff.to_dict()
                return handoff
        return None

    # ===== CRUD Operations =====

    def create(
        self,
        from_role: Role,
        to_role: Role,
        handoff_type: HandoffType,
        context: Dict[str, Any],
        priority: PriorityTier = PriorityTier.MEDIUM,
    ) -> str:
        """Create a pending handoff and return its id."""
        handoff = Handoff(
            id=f"handoff-{uuid.uuid4().hex[:8]}",
            from_role=Role(from_role),
            to_role=Role(to_role),
            type=HandoffType(handoff_type),
            priority=PriorityTier.parse(priority),
            context=dict(context),
            created_at=to_iso(utcnow()),
        )
        with self.store.transaction(Document.HANDOFFS) as data:
            data["handoffs"].append(handoff.to_dict())

        logger.info(f"Handoff created: {handoff.id} {handoff.from_role.value} → {handoff.to_role.value} ({handoff.type.value})")
        emit(
            EventType.HANDOFF_CREATED, "handoffs",
            f"📨 Handoff {handoff.id}: {handoff.from_role.value} → {handoff.to_role.value} [{handoff.type.value}] {_describe(handoff)}",
            handoff_id=handoff.id,
        )
        return handoff.id

    def get(self, handoff_id: str) -> Optional[Handoff]:
        for handoff in self._load():
            if handoff.id == handoff_id:
                return handoff
        return None

    def get_all(self) -> List[Handoff]:
        return self._load()

    def get_pending_for(self, role: Role) -> List[Handoff]:
        pending = [h for h in self._load() if h.to_role == Role(role) and h.status == HandoffStatus.PENDING]
        return sorted(pending, key=_sort_key)

    def get_next_pending(self) -> Optional[Handoff]:
        """Highest-tier pending handoff; ties go to the oldest."""
        pending = [h for h in self._load() if h.status == HandoffStatus.PENDING]
        if not pending:
            return None
        return sorted(pending, key=_sort_key)[0]

    # ===== Status Transitions =====

    def start(self, handoff_id: str) -> bool:
        """pending → in_progress. Refused from any other status."""
        def mutate(h: Handoff) -> bool:
            if h.status != HandoffStatus.PENDING:
                return False
            h.status = HandoffStatus.IN_PROGRESS
            h.started_at = to_iso(utcnow())
            return True

        handoff = self._update(handoff_id, mutate)
        if handoff is None:
            logger.warning(f"Cannot start handoff {handoff_id}: missing or not pending")
            return False
        emit(EventType.HANDOFF_STARTED, "handoffs", f"🤝 Handoff started: {handoff_id}", handoff_id=handoff_id)
        return True

    def _finish(self, handoff_id: str, status: HandoffStatus, result: Dict[str, Any]) -> Optional[Handoff]:
        def mutate(h: Handoff) -> bool:
            if h.status.is_terminal:
                return False
            h.status = status
            h.completed_at = to_iso(utcnow())
            h.result = result
            return True

        return self._update(handoff_id, mutate)

    def complete(self, handoff_id: str, result: Optional[Dict[str, Any]] = None) -> bool:
        handoff = self._finish(handoff_id, HandoffStatus.COMPLETED, result or {})
        if handoff is None:
            logger.warning(f"Cannot complete handoff {handoff_id}: missing or already finished")
            return False
        logger.info(f"Handoff completed: {handoff_id}")
        emit(EventType.HANDOFF_COMPLETED, "handoffs", f"✅ Handoff completed: {handoff_id}", handoff_id=handoff_id)
        return True

    def fail(self, handoff_id: str, error: str) -> bool:
        handoff = self._finish(handoff_id, HandoffStatus.FAILED, {"error": error})
        if handoff is None:
            logger.warning(f"Cannot fail handoff {handoff_id}: missing or already finished")
            return False
        logger.warning(f"Handoff failed: {handoff_id}: {error}")
        emit(EventType.HANDOFF_FAILED, "handoffs", f"❌ Handoff failed: {handoff_id}: {error}", handoff_id=handoff_id)
        return True

    def cleanup(self, keep: int = KEEP_TERMINAL_HANDOFFS) -> int:
        """Drop all but the most recent `keep` terminal handoffs. Returns removed count."""
        with self.store.transaction(Document.HANDOFFS) as data:
            handoffs = [Handoff.from_dict(h) for h in data["handoffs"]]
            open_ = [h for h in handoffs if not h.status.is_terminal]
            finished = sorted(
                (h for h in handoffs if h.status.is_terminal),
                key=lambda h: parse_timestamp(h.completed_at) or parse_timestamp("1970-01-01T00:00:00Z"),
                reverse=True,
            )[:keep]
            removed = len(handoffs) - len(open_) - len(finished)
            data["handoffs"] = [h.to_dict() for h in open_ + finished]
        if removed:
            logger.info(f"Cleaned up {removed} old handoffs")
        return removed

    # ===== Common Patterns =====

    def request_capability(
        self,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        priority: PriorityTier = PriorityTier.MEDIUM,
    ) -> str:
        """Research is blocked and needs infrastructure from engineering."""
        return self.create(
            Role.TRADE_RESEARCH, Role.AGENT_ENGINEER, HandoffType.BUILD_CAPABILITY,
            {"description": description, **(context or {})}, priority,
        )

    def request_analysis(
        self,
        question: str,
        context: Optional[Dict[str, Any]] = None,
        priority: PriorityTier = PriorityTier.MEDIUM,
    ) -> str:
        """Engineering needs trading insight from research."""
        return self.create(
            Role.AGENT_ENGINEER, Role.TRADE_RESEARCH, HandoffType.ANALYSIS_REQUEST,
            {"question": question, **(context or {})}, priority,
        )

    def report_issue(
        self,
        from_role: Role,
        description: str,
        context: Optional[Dict[str, Any]] = None,
        priority: PriorityTier = PriorityTier.MEDIUM,
    ) -> str:
        return self.create(
            from_role, Role.AGENT_ENGINEER, HandoffType.FIX_ISSUE,
            {"description": description, **(context or {})}, priority,
        )

    def summary(self) -> str:
        """Human-readable summary of open handoffs."""
        handoffs = self._load()
        pending = sorted((h for h in handoffs if h.status == HandoffStatus.PENDING), key=_sort_key)
        in_progress = [h for h in handoffs if h.status == HandoffStatus.IN_PROGRESS]

        if not pending and not in_progress:
            return "No pending handoffs."

        lines: List[str] = []
        if in_progress:
            lines.append(f"*In Progress ({len(in_progress)}):*")
            for h in in_progress:
                lines.append(f"- [{h.type.value}] {h.from_role.value} → {h.to_role.value}: {_describe(h)}")
        if pending:
            lines.append(f"*Pending ({len(pending)}):*")
            for h in pending[:5]:
                lines.append(f"- [{h.priority.value}] {h.from_role.value} → {h.to_role.value}: {_describe(h)}")
            if len(pending) > 5:
                lines.append(f"  ...and {len(pending) - 5} more")
        return "\n".join(lines)
