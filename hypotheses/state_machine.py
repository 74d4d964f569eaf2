"""
HYPOTHESIS REGISTRY - Lifecycle state machine for trading hypotheses

The Registry is responsible for:
1. Creating and retrieving hypotheses
2. Enforcing the transition table below
3. Folding evidence and trade results into confidence / test results
4. Writing a learning whenever a hypothesis concludes

State Machine:

    PROPOSED ──[test method + entry criteria]──► TESTING
       │  ▲                                        │  │
       │  │                   [confidence ≥ 55%,   │  │
       │  │                    enough trades,      │  │
       │  │                    win rate ≥ 50%]     │  ▼
       │  │                                        │ VALIDATED
       │  └──────────── BLOCKED ◄──────────────────┤
       │   [always]    (handoff to engineering)    │
       │                   │ [test method]         │
       │                   └──────► TESTING        │
       └───────────────────► INVALIDATED ◄─────────┘
                                [always]

Rejected transitions return a failed TransitionResult and leave the stored
record exactly as it was.
"""

from dataclasses import dataclass
import math
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple
import uuid

from loguru import logger

from config.loader import HypothesisConfig
from core.clock import to_iso, utcnow
from core.events import EventType, emit
from hypotheses.models import (
    Evidence,
    Hypothesis,
    HypothesisStatus,
    TrackedMarket,
    clamp,
    parse_hypotheses,
)
from memory.learnings import LearningJournal
from memory.store import Document, StateStore, StoreError
from scheduling.handoffs import HandoffQueue
from scheduling.models import HandoffType, PriorityTier, Role


@dataclass
class TransitionResult:
    """Outcome of any registry mutation."""
    success: bool
    hypothesis: Optional[Hypothesis] = None
    error: Optional[str] = None

    @property
    def message(self) -> str:
        if self.success and self.hypothesis is not None:
            return f"{self.hypothesis.id}: {self.hypothesis.status.value}"
        return self.error or ""


Guard = Callable[[Hypothesis, HypothesisConfig], Optional[str]]


@dataclass(frozen=True)
class TransitionRule:
    sources: FrozenSet[HypothesisStatus]
    target: HypothesisStatus
    guard: Guard


def min_samples(hypothesis: Hypothesis, config: HypothesisConfig) -> int:
    return hypothesis.min_sample_size or config.default_min_sample_size


def _can_start_testing(h: Hypothesis, config: HypothesisConfig) -> Optional[str]:
    if not h.test_method:
        return "testMethod is required to start testing"
    if not h.entry_rules and "entry" not in h.test_method.lower():
        return "entryRules or entry criteria in testMethod required"
    return None


def _can_resume_testing(h: Hypothesis, config: HypothesisConfig) -> Optional[str]:
    if not h.test_method:
        return "testMethod is required to start testing"
    return None


def _can_validate(h: Hypothesis, config: HypothesisConfig) -> Optional[str]:
    if h.confidence < config.validation_confidence:
        return (
            f"Confidence {h.confidence * 100:.0f}% below "
            f"{config.validation_confidence * 100:.0f}% threshold"
        )
    needed = min_samples(h, config)
    if h.test_results.trades < needed:
        return f"Only {h.test_results.trades} trades, need {needed} minimum"
    if h.test_results.actual_win_rate < config.validation_win_rate:
        return (
            f"Win rate {h.test_results.actual_win_rate * 100:.0f}% below "
            f"{config.validation_win_rate * 100:.0f}% threshold"
        )
    return None


def _always(h: Hypothesis, config: HypothesisConfig) -> Optional[str]:
    return None


ACTIVE = frozenset({HypothesisStatus.PROPOSED, HypothesisStatus.TESTING})

TRANSITIONS: Tuple[TransitionRule, ...] = (
    TransitionRule(frozenset({HypothesisStatus.PROPOSED}), HypothesisStatus.TESTING, _can_start_testing),
    TransitionRule(frozenset({HypothesisStatus.TESTING}), HypothesisStatus.VALIDATED, _can_validate),
    TransitionRule(ACTIVE, HypothesisStatus.INVALIDATED, _always),
    TransitionRule(ACTIVE, HypothesisStatus.BLOCKED, _always),
    TransitionRule(frozenset({HypothesisStatus.BLOCKED}), HypothesisStatus.PROPOSED, _always),
    TransitionRule(frozenset({HypothesisStatus.BLOCKED}), HypothesisStatus.TESTING, _can_resume_testing),
)


def find_rule(source: HypothesisStatus, target: HypothesisStatus) -> Optional[TransitionRule]:
    for rule in TRANSITIONS:
        if source in rule.sources and rule.target == target:
            return rule
    return None


def meets_validation_criteria(hypothesis: Hypothesis, config: HypothesisConfig) -> bool:
    """Sample size and win rate are good enough to validate."""
    results = hypothesis.test_results
    if results.trades < min_samples(hypothesis, config):
        return False
    return results.actual_win_rate >= config.validation_win_rate


def invalidation_reason(hypothesis: Hypothesis, config: HypothesisConfig) -> Optional[str]:
    """Why a hypothesis should be killed, or None if it should not."""
    if hypothesis.confidence < config.invalidation_confidence:
        return f"confidence {hypothesis.confidence * 100:.0f}% below {config.invalidation_confidence * 100:.0f}%"
    results = hypothesis.test_results
    if results.trades >= min_samples(hypothesis, config) and results.actual_win_rate < config.invalidation_win_rate:
        return (
            f"win rate {results.actual_win_rate * 100:.0f}% over {results.trades} trades "
            f"below {config.invalidation_win_rate * 100:.0f}%"
        )
    return None


class HypothesisRegistry:
    """
    Store-backed registry of hypotheses.

    Every call re-reads the hypotheses document; nothing is cached between
    calls because workers edit the same file.
    """

    def __init__(
        self,
        store: StateStore,
        config: Optional[HypothesisConfig] = None,
        handoffs: Optional[HandoffQueue] = None,
        journal: Optional[LearningJournal] = None,
    ):
        self.store = store
        self.config = config or HypothesisConfig()
        self.handoffs = handoffs or HandoffQueue(store)
        self.journal = journal or LearningJournal(store, self.config.confidence_history_limit)

    # ===== Persistence helpers =====

    def _load_raw(self) -> Dict:
        return self.store.load(Document.HYPOTHESES)

    @staticmethod
    def _find(data: Dict, hypothesis_id: str) -> Tuple[int, Optional[Hypothesis]]:
        for i, raw in enumerate(data.get("hypotheses", [])):
            if isinstance(raw, dict) and raw.get("id") == hypothesis_id:
                found = parse_hypotheses([raw])
                return (i, found[0]) if found else (-1, None)
        return -1, None

    def _save(self, data: Dict, index: int, hypothesis: Hypothesis) -> None:
        data["hypotheses"][index] = hypothesis.to_dict()
        self.store.save(Document.HYPOTHESES, data)

    # ===== CRUD Operations =====

    def create(
        self,
        statement: str,
        rationale: str = "",
        test_method: str = "",
        source: str = "",
        entry_rules: Optional[str] = None,
        exit_rules: Optional[str] = None,
        expected_win_rate: Optional[float] = None,
        expected_payoff: Optional[float] = None,
        min_sample_size: Optional[int] = None,
        initial_confidence: Optional[float] = None,
        tracking_markets: Optional[List[TrackedMarket]] = None,
    ) -> Hypothesis:
        """Create a new hypothesis in PROPOSED state."""
        now = to_iso(utcnow())
        hypothesis = Hypothesis(
            id=f"hyp-{uuid.uuid4().hex[:8]}",
            statement=statement,
            rationale=rationale,
            source=source,
            test_method=test_method,
            entry_rules=entry_rules,
            exit_rules=exit_rules,
            expected_win_rate=expected_win_rate,
            expected_payoff=expected_payoff,
            min_sample_size=min_sample_size or self.config.default_min_sample_size,
            status=HypothesisStatus.PROPOSED,
            confidence=self.config.default_confidence if initial_confidence is None else initial_confidence,
            tracking_markets=list(tracking_markets or []),
            created_at=now,
            updated_at=now,
        )
        with self.store.transaction(Document.HYPOTHESES) as data:
            data["hypotheses"].append(hypothesis.to_dict())

        logger.info(f"Created hypothesis {hypothesis.id}: {statement[:50]}")
        emit(
            EventType.HYPOTHESIS_CREATED, "hypotheses",
            f"💡 New hypothesis {hypothesis.id}: {statement[:100]}",
            hypothesis_id=hypothesis.id,
        )
        return hypothesis

    def get(self, hypothesis_id: str) -> Optional[Hypothesis]:
        return self._find(self._load_raw(), hypothesis_id)[1]

    def get_all(self, status: Optional[HypothesisStatus] = None) -> List[Hypothesis]:
        hypotheses = parse_hypotheses(self._load_raw().get("hypotheses", []))
        if status is not None:
            return [h for h in hypotheses if h.status == status]
        return hypotheses

    def get_active(self) -> List[Hypothesis]:
        return [h for h in self.get_all() if h.status.is_active]

    def get_testable(self) -> List[Hypothesis]:
        """Active hypotheses still worth testing."""
        return [
            h for h in self.get_active()
            if h.confidence > self.config.testable_min_confidence
        ]

    def get_blocked(self) -> List[Hypothesis]:
        return self.get_all(HypothesisStatus.BLOCKED)

    # ===== State Transitions =====

    def transition(
        self,
        hypothesis_id: str,
        target: HypothesisStatus,
        reason: str,
        handoff_priority: PriorityTier = PriorityTier.MEDIUM,
        capability_needed: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move a hypothesis to `target` if the transition table allows it.

        Entering BLOCKED requires a reason and opens a build_capability
        handoff to engineering. Entering VALIDATED / INVALIDATED records the
        conclusion and writes a learning.
        """
        data = self._load_raw()
        index, hypothesis = self._find(data, hypothesis_id)
        if hypothesis is None:
            return TransitionResult(False, error=f"Hypothesis {hypothesis_id} not found")

        previous = hypothesis.status
        try:
            target = HypothesisStatus(target)
        except ValueError:
            return TransitionResult(
                False, hypothesis, f"Invalid transition: {previous.value} → {target}"
            )
        rule = find_rule(previous, target)
        if rule is None:
            return TransitionResult(
                False, hypothesis, f"Invalid transition: {previous.value} → {target.value}"
            )

        error = rule.guard(hypothesis, self.config)
        if error:
            return TransitionResult(False, hypothesis, error)

        if target == HypothesisStatus.BLOCKED and not (reason or "").strip():
            return TransitionResult(False, hypothesis, "A reason is required to block a hypothesis")

        now = to_iso(utcnow())

        if target == HypothesisStatus.BLOCKED:
            hypothesis.blocked_handoff_id = self.handoffs.create(
                Role.TRADE_RESEARCH,
                Role.AGENT_ENGINEER,
                HandoffType.BUILD_CAPABILITY,
                {
                    "hypothesisId": hypothesis.id,
                    "capabilityNeeded": capability_needed or reason,
                    "hypothesisStatement": hypothesis.statement[:200],
                    "description": f"Unblock {hypothesis.id}: {capability_needed or reason}",
                },
                handoff_priority,
            )
            hypothesis.blocked_reason = reason

        hypothesis.status = target
        hypothesis.updated_at = now

        if target == HypothesisStatus.TESTING:
            hypothesis.test_started_at = now
        elif target.is_concluded:
            hypothesis.test_ended_at = now
            hypothesis.conclusion = reason

        self._save(data, index, hypothesis)
        logger.info(f"Hypothesis {hypothesis.id}: {previous.value} → {target.value} ({reason})")

        if target.is_concluded:
            try:
                self.journal.record_hypothesis_conclusion(hypothesis, reason)
            except StoreError as e:
                logger.error(f"Failed to log learning for {hypothesis.id}: {e}")

        emit(
            EventType.HYPOTHESIS_TRANSITIONED, "hypotheses",
            f"📊 *Hypothesis {target.value}*\n\n"
            f"{hypothesis.id}: {hypothesis.statement[:100]}\n\n"
            f"{previous.value} → {target.value}\n"
            f"Reason: {reason}",
            hypothesis_id=hypothesis.id,
            previous=previous.value,
            status=target.value,
        )
        return TransitionResult(True, hypothesis)

    def block(
        self,
        hypothesis_id: str,
        capability_needed: str,
        priority: PriorityTier = PriorityTier.MEDIUM,
    ) -> TransitionResult:
        """Block a hypothesis until engineering builds a capability."""
        return self.transition(
            hypothesis_id,
            HypothesisStatus.BLOCKED,
            f"Awaiting capability: {capability_needed}",
            handoff_priority=priority,
            capability_needed=capability_needed,
        )

    # ===== Evidence & Results =====

    def add_evidence(
        self,
        hypothesis_id: str,
        observation: str,
        supports: Optional[bool],
        confidence_impact: float,
    ) -> TransitionResult:
        """
        Append an observation and move confidence by `confidence_impact`.

        A TESTING hypothesis is then checked for auto-transitions: it is
        invalidated when confidence falls to the auto-invalidate bound, or
        validated when confidence reaches the auto-validate bound and the
        sample / win-rate criteria hold.
        """
        data = self._load_raw()
        index, hypothesis = self._find(data, hypothesis_id)
        if hypothesis is None:
            return TransitionResult(False, error=f"Hypothesis {hypothesis_id} not found")
        if not hypothesis.status.is_active:
            return TransitionResult(
                False, hypothesis, f"Cannot add evidence to {hypothesis.status.value} hypothesis"
            )
        if not math.isfinite(confidence_impact):
            return TransitionResult(
                False, hypothesis, f"Confidence impact must be a finite number, got {confidence_impact}"
            )

        now = to_iso(utcnow())
        hypothesis.evidence.append(Evidence(
            date=now,
            observation=observation,
            supports=supports,
            confidence_impact=confidence_impact,
        ))
        previous = hypothesis.confidence
        hypothesis.confidence = clamp(previous + confidence_impact)
        hypothesis.updated_at = now
        self._save(data, index, hypothesis)

        try:
            self.journal.track_confidence_change(
                hypothesis.id, previous, hypothesis.confidence, f"Evidence: {observation[:50]}"
            )
        except StoreError as e:
            logger.error(f"Failed to track confidence change for {hypothesis.id}: {e}")

        logger.debug(f"Evidence for {hypothesis.id}: {previous:.2f} → {hypothesis.confidence:.2f}")
        emit(
            EventType.EVIDENCE_ADDED, "hypotheses",
            f"🔎 {hypothesis.id} confidence {previous * 100:.0f}% → {hypothesis.confidence * 100:.0f}%",
            hypothesis_id=hypothesis.id,
        )

        if hypothesis.status == HypothesisStatus.TESTING:
            if hypothesis.confidence <= self.config.auto_invalidate_confidence:
                return self.transition(
                    hypothesis.id,
                    HypothesisStatus.INVALIDATED,
                    f"Auto-invalidated: confidence dropped to {hypothesis.confidence * 100:.0f}%",
                )
            if (hypothesis.confidence >= self.config.auto_validate_confidence
                    and meets_validation_criteria(hypothesis, self.config)):
                return self.transition(
                    hypothesis.id,
                    HypothesisStatus.VALIDATED,
                    f"Auto-validated: confidence reached {hypothesis.confidence * 100:.0f}% with sufficient evidence",
                )

        return TransitionResult(True, hypothesis)

    def record_trade_result(self, hypothesis_id: str, won: bool, pnl: float) -> TransitionResult:
        """Count one resolved trade. Confidence and status are untouched."""
        data = self._load_raw()
        index, hypothesis = self._find(data, hypothesis_id)
        if hypothesis is None:
            return TransitionResult(False, error=f"Hypothesis {hypothesis_id} not found")

        hypothesis.test_results.record(won, pnl)
        hypothesis.updated_at = to_iso(utcnow())
        self._save(data, index, hypothesis)

        logger.info(
            f"Trade result for {hypothesis.id}: {'win' if won else 'loss'} {pnl:+.2f} "
            f"({hypothesis.test_results.wins}/{hypothesis.test_results.trades})"
        )
        return TransitionResult(True, hypothesis)

    # ===== Reporting =====

    def has_trade_validation(self, hypothesis_id: str) -> Tuple[bool, str]:
        """
        Whether a hypothesis is validated enough for larger trades.

        Backtest results take precedence (≥10 samples, ≥45% win rate);
        otherwise ≥5 observations with confidence ≥55%.
        """
        hypothesis = self.get(hypothesis_id)
        if hypothesis is None:
            return False, "Hypothesis not found"

        if hypothesis.backtest_results:
            bt = hypothesis.backtest_results
            win_rate = float(bt.get("winRate", 0.0))
            samples = int(bt.get("sampleSize", 0))
            if win_rate >= 0.45 and samples >= 10:
                return True, f"Backtest: {samples} samples, {win_rate * 100:.0f}% win rate"
            return False, (
                f"Backtest insufficient: {samples} samples, {win_rate * 100:.0f}% win rate "
                f"(need ≥10 samples, ≥45% win rate)"
            )

        min_evidence, min_confidence = 5, 0.55
        if len(hypothesis.evidence) >= min_evidence and hypothesis.confidence >= min_confidence:
            return True, (
                f"Evidence: {len(hypothesis.evidence)} observations, "
                f"{hypothesis.confidence * 100:.0f}% confidence, "
                f"{len(hypothesis.supporting_evidence)} supporting"
            )

        needs = []
        if len(hypothesis.evidence) < min_evidence:
            needs.append(f"{min_evidence - len(hypothesis.evidence)} more observations")
        if hypothesis.confidence < min_confidence:
            needs.append(f"confidence {hypothesis.confidence * 100:.0f}% → {min_confidence * 100:.0f}%")
        return False, f"Needs: {', '.join(needs)}. Either add backtest results or gather more evidence."

    def summary(self) -> str:
        hypotheses = self.get_all()
        sections = []
        for status in (
            HypothesisStatus.PROPOSED,
            HypothesisStatus.TESTING,
            HypothesisStatus.BLOCKED,
            HypothesisStatus.VALIDATED,
            HypothesisStatus.INVALIDATED,
        ):
            group = [h for h in hypotheses if h.status == status]
            lines = [f"  - {h.id}: {h.statement[:60]} ({h.confidence * 100:.0f}%)" for h in group]
            sections.append(f"*{status.value.capitalize()} ({len(group)}):*\n" + ("\n".join(lines) or "  (none)"))
        return "## Hypothesis Summary\n\n" + "\n\n".join(sections)
