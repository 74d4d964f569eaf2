"""
RESPONSIBILITY TRACKER - Recurring duties per role

The responsibilities document maps role -> name -> {frequency, lastRun}:

    {
      "trade-research": {
        "hypothesis-health": {"frequency": "4h", "lastRun": "2026-01-01T00:00:00Z"}
      }
    }

A responsibility is due when now >= lastRun + frequency. Never-run
responsibilities are due immediately and count as overdue since the epoch.
Bad frequencies fall back to the default instead of stopping the loop.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from core.clock import DEFAULT_FREQUENCY, parse_frequency, parse_timestamp, to_iso, utcnow
from memory.store import Document, StateStore
from scheduling.models import DueResponsibility, Responsibility, Role


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ResponsibilityTracker:
    """Store-backed view of the responsibilities document."""

    def __init__(self, store: StateStore, default_frequency: str = DEFAULT_FREQUENCY):
        self.store = store
        self.default_frequency = default_frequency

    def get_all(self) -> List[Responsibility]:
        data = self.store.load(Document.RESPONSIBILITIES)
        result = []
        for role_name, duties in data.items():
            try:
                role = Role(role_name)
            except ValueError:
                logger.warning(f"Unknown role in responsibilities: {role_name}")
                continue
            if not isinstance(duties, dict):
                continue
            for name, entry in duties.items():
                entry = entry if isinstance(entry, dict) else {}
                result.append(Responsibility(
                    role=role,
                    name=name,
                    frequency=str(entry.get("frequency") or self.default_frequency),
                    last_run=entry.get("lastRun"),
                ))
        return result

    def next_due_at(self, responsibility: Responsibility) -> datetime:
        last_run = parse_timestamp(responsibility.last_run) or EPOCH
        return last_run + parse_frequency(responsibility.frequency, self.default_frequency)

    def _due(self, responsibilities: List[Responsibility], now: datetime) -> List[DueResponsibility]:
        due = []
        for r in responsibilities:
            due_at = self.next_due_at(r)
            if now >= due_at:
                due.append(DueResponsibility(r, due_at, (now - due_at).total_seconds()))
        # Most overdue first
        due.sort(key=lambda d: d.overdue_seconds, reverse=True)
        return due

    def get_next_due(self, now: Optional[datetime] = None) -> Optional[DueResponsibility]:
        due = self._due(self.get_all(), now or utcnow())
        return due[0] if due else None

    def get_due_for(self, role: Role, now: Optional[datetime] = None) -> List[DueResponsibility]:
        return self._due([r for r in self.get_all() if r.role == role], now or utcnow())

    def mark_complete(self, role: Role, name: str, now: Optional[datetime] = None) -> bool:
        """Set lastRun. Returns False for an unknown responsibility."""
        now = now or utcnow()
        with self.store.transaction(Document.RESPONSIBILITIES) as data:
            entry = (data.get(Role(role).value) or {}).get(name)
            if not isinstance(entry, dict):
                logger.warning(f"Unknown responsibility {role}/{name}")
                return False
            entry["lastRun"] = to_iso(now)
        logger.info(f"Responsibility {Role(role).value}/{name} complete")
        return True

    def register(self, role: Role, name: str, frequency: str) -> None:
        """Add a responsibility if it is not tracked yet."""
        with self.store.transaction(Document.RESPONSIBILITIES) as data:
            duties = data.setdefault(Role(role).value, {})
            duties.setdefault(name, {"frequency": frequency, "lastRun": None})

    def status(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or utcnow()
        rows = []
        for r in self.get_all():
            due_at = self.next_due_at(r)
            rows.append({
                "role": r.role.value,
                "name": r.name,
                "frequency": r.frequency,
                "lastRun": r.last_run,
                "nextDue": to_iso(due_at),
                "isDue": now >= due_at,
            })
        return rows
