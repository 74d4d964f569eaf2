"""
PRIORITY ENGINE - Rank detector output and decide whether to override

Flow per tick:
    snapshot = engine.build_snapshot(now)      # one read of the store
    priorities = engine.detect(now)            # all detectors, ranked
    decision = engine.decide(now)              # override or not

Ranking is a stable sort on urgency (descending), so ties keep detector
registration order. A detector that raises is logged and contributes
nothing; the other detectors still run.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import json
from typing import Any, Dict, List, Optional

from loguru import logger

from config.loader import PriorityConfig
from core.clock import hours_between, utcnow
from hypotheses.models import parse_hypotheses
from memory.store import Document, StateStore, StoreError
from portfolio.positions import Portfolio
from priorities.detectors import DETECTORS, Detector, StateSnapshot, trades_since
from priorities.models import Priority, StrategicDecision


@dataclass
class ExecutionMetrics:
    """How fast hypotheses are being turned into trades."""
    trades_last_7_days: int
    trades_last_30_days: int
    hypotheses_with_trades: int
    hypotheses_without_trades: int
    velocity_score: str  # healthy | warning | critical

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tradesLast7Days": self.trades_last_7_days,
            "tradesLast30Days": self.trades_last_30_days,
            "hypothesesWithTrades": self.hypotheses_with_trades,
            "hypothesesWithoutTrades": self.hypotheses_without_trades,
            "velocityScore": self.velocity_score,
        }


class PriorityEngine:
    """Runs the detectors over a store snapshot and picks the winner."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[PriorityConfig] = None,
        detectors: Optional[List[Detector]] = None,
    ):
        self.store = store
        self.config = config or PriorityConfig()
        self.detectors = list(detectors) if detectors is not None else list(DETECTORS)

    # ===== Snapshot =====

    def _load_optional(self, document: Document) -> Optional[Dict[str, Any]]:
        try:
            return self.store.load_if_exists(document)
        except StoreError as e:
            logger.error(f"Snapshot: {e}")
            return None

    def build_snapshot(self, now: Optional[datetime] = None) -> StateSnapshot:
        now = now or utcnow()

        raw_hypotheses = self._load_optional(Document.HYPOTHESES) or {}
        hypotheses = parse_hypotheses(raw_hypotheses.get("hypotheses", []))

        raw_portfolio = self._load_optional(Document.PORTFOLIO)
        portfolio = Portfolio.from_dict(raw_portfolio) if raw_portfolio is not None else None

        schedule = self._load_optional(Document.SCHEDULE) or {}

        ages: Dict[str, Optional[float]] = {}
        paths: Dict[str, str] = {}
        for critical in self.config.critical_files:
            try:
                document = Document(critical.document)
            except ValueError:
                logger.warning(f"Unknown critical document: {critical.document}")
                continue
            modified = self.store.modified_at(document)
            ages[critical.document] = hours_between(modified, now) if modified else None
            paths[critical.document] = str(self.store.path(document))

        return StateSnapshot(
            hypotheses=hypotheses,
            portfolio=portfolio,
            health=self._load_optional(Document.HEALTH),
            run_history=list(schedule.get("runHistory") or []),
            document_ages=ages,
            document_paths=paths,
        )

    # ===== Detection =====

    def rank(self, snapshot: StateSnapshot, now: datetime) -> List[Priority]:
        priorities: List[Priority] = []
        for detector in self.detectors:
            try:
                priorities.extend(detector(snapshot, self.config, now))
            except Exception as e:
                logger.error(f"Detector {detector.__name__} failed: {e}")
        # sorted() is stable: equal urgencies keep detector order
        return sorted(priorities, key=lambda p: p.urgency, reverse=True)

    def detect(self, now: Optional[datetime] = None) -> List[Priority]:
        now = now or utcnow()
        return self.rank(self.build_snapshot(now), now)

    def decide_from(self, priorities: List[Priority]) -> StrategicDecision:
        if not priorities:
            return StrategicDecision(False, "No urgent priorities detected")

        top = priorities[0]
        if top.urgency > self.config.high_urgency_threshold:
            return StrategicDecision(True, f"High urgency ({top.urgency}): {top.action}", top, "high")
        if top.urgency >= self.config.medium_urgency_threshold:
            return StrategicDecision(True, f"Medium urgency ({top.urgency}): {top.action}", top, "medium")
        return StrategicDecision(False, f"Top priority urgency ({top.urgency}) below threshold", top)

    def decide(self, now: Optional[datetime] = None) -> StrategicDecision:
        """Should this tick's unit of work be the top priority?"""
        return self.decide_from(self.detect(now))

    # ===== Reporting =====

    def report(self, now: Optional[datetime] = None, limit: int = 5) -> str:
        priorities = self.detect(now)
        if not priorities:
            return "✅ No urgent priorities. System operating normally."

        lines = []
        for i, p in enumerate(priorities[:limit], 1):
            context = json.dumps(p.context.to_dict(), default=str)
            lines.append(f"{i}. {p.emoji} [{p.urgency}] {p.action}\n   {context[:100]}")
        return "## Current Priorities\n\n" + "\n\n".join(lines)

    def execution_metrics(self, now: Optional[datetime] = None) -> ExecutionMetrics:
        now = now or utcnow()
        snapshot = self.build_snapshot(now)
        portfolio = snapshot.portfolio or Portfolio(cash=0.0, starting_capital=0.0)

        last_7 = trades_since(portfolio, now - timedelta(days=7))
        last_30 = trades_since(portfolio, now - timedelta(days=30))

        if last_7 == 0:
            velocity = "critical"
        elif last_7 < self.config.min_trades_per_week:
            velocity = "warning"
        else:
            velocity = "healthy"

        return ExecutionMetrics(
            trades_last_7_days=last_7,
            trades_last_30_days=last_30,
            hypotheses_with_trades=sum(1 for h in snapshot.hypotheses if h.linked_trade),
            hypotheses_without_trades=sum(
                1 for h in snapshot.hypotheses if h.status.is_active and not h.linked_trade
            ),
            velocity_score=velocity,
        )
