"""
HYPOTHESIS MODELS

A hypothesis is a falsifiable trading belief. It is proposed, tested with
paper trades and observations, and finally validated or invalidated. It is
never deleted: concluded hypotheses stay in the store as history.

Records are stored as camelCase JSON because the workers read and write the
same documents.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger


class HypothesisStatus(str, Enum):
    """Lifecycle states."""
    PROPOSED = "proposed"
    TESTING = "testing"
    VALIDATED = "validated"
    INVALIDATED = "invalidated"
    BLOCKED = "blocked"

    @property
    def is_active(self) -> bool:
        return self in (HypothesisStatus.PROPOSED, HypothesisStatus.TESTING)

    @property
    def is_concluded(self) -> bool:
        return self in (HypothesisStatus.VALIDATED, HypothesisStatus.INVALIDATED)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class Evidence:
    """One observation for or against a hypothesis."""
    date: str
    observation: str
    supports: Optional[bool] = None  # None = neutral
    confidence_impact: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "observation": self.observation,
            "supports": self.supports,
            "confidenceImpact": self.confidence_impact,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Evidence':
        return cls(
            date=str(data.get("date", "")),
            observation=str(data.get("observation", "")),
            supports=data.get("supports"),
            confidence_impact=float(data.get("confidenceImpact", 0.0) or 0.0),
        )


@dataclass
class TestResults:
    """Aggregated outcomes of resolved paper trades."""
    __test__ = False  # not a pytest class

    trades: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    actual_win_rate: float = 0.0

    def record(self, won: bool, pnl: float) -> None:
        self.trades += 1
        if won:
            self.wins += 1
        else:
            self.losses += 1
        self.total_pnl += pnl
        self.actual_win_rate = self.wins / self.trades if self.trades > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades": self.trades,
            "wins": self.wins,
            "losses": self.losses,
            "totalPnL": self.total_pnl,
            "actualWinRate": self.actual_win_rate,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TestResults':
        data = data or {}
        return cls(
            trades=int(data.get("trades", 0) or 0),
            wins=int(data.get("wins", 0) or 0),
            losses=int(data.get("losses", 0) or 0),
            total_pnl=float(data.get("totalPnL", 0.0) or 0.0),
            actual_win_rate=float(data.get("actualWinRate", 0.0) or 0.0),
        )


@dataclass
class TrackedMarket:
    """A market whose close makes the hypothesis time-sensitive."""
    market: str
    closes_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"market": self.market, "closesAt": self.closes_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrackedMarket':
        return cls(market=str(data.get("market", "")), closes_at=data.get("closesAt"))


@dataclass
class Hypothesis:
    """
    A falsifiable trading belief.

    `status` changes only through HypothesisRegistry.transition(); confidence
    is kept in [0, 1] by every mutation path.
    """

    # Identity
    id: str
    statement: str
    rationale: str = ""
    source: str = ""

    # How to test it
    test_method: str = ""
    entry_rules: Optional[str] = None
    exit_rules: Optional[str] = None
    expected_win_rate: Optional[float] = None
    expected_payoff: Optional[float] = None
    min_sample_size: Optional[int] = None

    # Lifecycle
    status: HypothesisStatus = HypothesisStatus.PROPOSED
    confidence: float = 0.5
    evidence: List[Evidence] = field(default_factory=list)
    test_results: TestResults = field(default_factory=TestResults)
    conclusion: Optional[str] = None

    # Timestamps (ISO strings)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    test_started_at: Optional[str] = None
    test_ended_at: Optional[str] = None

    # Links
    linked_trade: Optional[str] = None
    linked_strategy: Optional[str] = None
    blocked_reason: Optional[str] = None
    blocked_handoff_id: Optional[str] = None
    tracking_markets: List[TrackedMarket] = field(default_factory=list)
    backtest_results: Optional[Dict[str, Any]] = None

    # Keys we don't model are carried through untouched
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.confidence = clamp(self.confidence)

    @property
    def supporting_evidence(self) -> List[Evidence]:
        return [e for e in self.evidence if e.supports is True]

    @property
    def contradicting_evidence(self) -> List[Evidence]:
        return [e for e in self.evidence if e.supports is False]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update({
            "id": self.id,
            "statement": self.statement,
            "rationale": self.rationale,
            "source": self.source,
            "testMethod": self.test_method,
            "entryRules": self.entry_rules,
            "exitRules": self.exit_rules,
            "expectedWinRate": self.expected_win_rate,
            "expectedPayoff": self.expected_payoff,
            "minSampleSize": self.min_sample_size,
            "status": self.status.value,
            "confidence": self.confidence,
            "evidence": [e.to_dict() for e in self.evidence],
            "testResults": self.test_results.to_dict(),
            "conclusion": self.conclusion,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "testStartedAt": self.test_started_at,
            "testEndedAt": self.test_ended_at,
            "linkedTrade": self.linked_trade,
            "linkedStrategy": self.linked_strategy,
            "blockedReason": self.blocked_reason,
            "blockedHandoffId": self.blocked_handoff_id,
            "trackingMarkets": [m.to_dict() for m in self.tracking_markets],
            "backtestResults": self.backtest_results,
        })
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Hypothesis':
        known = {
            "id", "statement", "rationale", "source", "testMethod", "entryRules",
            "exitRules", "expectedWinRate", "expectedPayoff", "minSampleSize",
            "status", "confidence", "evidence", "testResults", "conclusion",
            "createdAt", "updatedAt", "testStartedAt", "testEndedAt",
            "linkedTrade", "linkedStrategy", "blockedReason", "blockedHandoffId",
            "trackingMarkets", "backtestResults",
        }
        try:
            status = HypothesisStatus(data.get("status", "proposed"))
        except ValueError:
            status = HypothesisStatus.PROPOSED
        min_sample = data.get("minSampleSize")
        return cls(
            id=str(data["id"]),
            statement=str(data.get("statement", "")),
            rationale=str(data.get("rationale", "") or ""),
            source=str(data.get("source", "") or ""),
            test_method=str(data.get("testMethod", "") or ""),
            entry_rules=data.get("entryRules"),
            exit_rules=data.get("exitRules"),
            expected_win_rate=data.get("expectedWinRate"),
            expected_payoff=data.get("expectedPayoff"),
            min_sample_size=int(min_sample) if min_sample is not None else None,
            status=status,
            confidence=float(data.get("confidence", 0.5)),
            evidence=[Evidence.from_dict(e) for e in data.get("evidence") or []],
            test_results=TestResults.from_dict(data.get("testResults")),
            conclusion=data.get("conclusion"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            test_started_at=data.get("testStartedAt"),
            test_ended_at=data.get("testEndedAt"),
            linked_trade=data.get("linkedTrade"),
            linked_strategy=data.get("linkedStrategy"),
            blocked_reason=data.get("blockedReason"),
            blocked_handoff_id=data.get("blockedHandoffId"),
            tracking_markets=[TrackedMarket.from_dict(m) for m in data.get("trackingMarkets") or []],
            backtest_results=data.get("backtestResults"),
            extra={k: v for k, v in data.items() if k not in known},
        )


def parse_hypotheses(records: Iterable[Any]) -> List[Hypothesis]:
    """Records workers wrote by hand may be broken; those are skipped."""
    hypotheses = []
    for data in records:
        try:
            hypotheses.append(Hypothesis.from_dict(data))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed hypothesis record: {e!r}")
    return hypotheses
