"""
HYPOTHESIS SCORING - Which hypothesis to work on next

Priority score = weighted sum of five components, each in [0, 1]:

    confidence           0.30   current belief
    learnings support    0.20   0.5 + adjustment from related learnings
    time sensitivity     0.20   urgency words in statement / test method
    infrastructure       0.15   0 if blocked, else 1
    potential edge       0.15   p·b − (1 − p) from expected win rate / payoff
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from hypotheses.models import Hypothesis, HypothesisStatus, clamp
from memory.learnings import Learning


WEIGHTS: Dict[str, float] = {
    "confidence": 0.30,
    "learnings_support": 0.20,
    "time_sensitivity": 0.20,
    "infrastructure_ready": 0.15,
    "potential_edge": 0.15,
}

MAX_LEARNINGS_ADJUSTMENT = 0.2
RELATED_CATEGORIES = ("hypothesis", "strategy", "market")
MIN_KEYWORD_MATCHES = 2

KEYWORDS = (
    "momentum", "arbitrage", "spread", "liquidity", "volatility",
    "market maker", "mm", "sports", "crypto", "politics", "election",
    "contrarian", "mean reversion", "trend", "overpriced", "underpriced",
    "tail risk", "edge", "mispricing", "polymarket", "closing",
    "leaderboard", "top traders", "hft", "high frequency",
)

SOON_WORDS = ("closing", "expires", "deadline")
IMMEDIATE_WORDS = ("24 hour", "tomorrow", "this week")


@dataclass
class LearningsImpact:
    adjustment: float
    reasoning: str
    related_learnings: List[str] = field(default_factory=list)


@dataclass
class HypothesisPriorityScore:
    hypothesis_id: str
    score: float
    breakdown: Dict[str, float]


def extract_keywords(text: str) -> List[str]:
    text = text.lower()
    return [term for term in KEYWORDS if term in text]


def related_learnings(hypothesis: Hypothesis, learnings: List[Learning]) -> List[Learning]:
    """Learnings linked to the hypothesis directly or sharing enough keywords."""
    keywords = extract_keywords(f"{hypothesis.statement} {hypothesis.rationale} {hypothesis.test_method}")
    related = []
    for learning in learnings:
        if hypothesis.id in learning.applied_to:
            related.append(learning)
            continue
        if learning.category in RELATED_CATEGORIES:
            text = f"{learning.title} {learning.content}".lower()
            if sum(1 for kw in keywords if kw in text) >= MIN_KEYWORD_MATCHES:
                related.append(learning)
    return related


def learnings_impact(hypothesis: Hypothesis, learnings: List[Learning]) -> LearningsImpact:
    """Confidence adjustment in [-0.2, 0.2] suggested by related learnings."""
    related = related_learnings(hypothesis, learnings)
    if not related:
        return LearningsImpact(0.0, "No related learnings found")

    adjustment = 0.0
    reasons = []
    for learning in related:
        content = learning.content.lower()
        if "hypothesis" in content:
            if any(w in content for w in ("validated", "working", "confirmed")):
                adjustment += 0.05
                reasons.append(f"{learning.id}: Similar hypothesis validated")
            if any(w in content for w in ("invalidated", "not working", "failed")):
                adjustment -= 0.05
                reasons.append(f"{learning.id}: Similar hypothesis invalidated")
        if any(w in content for w in ("misleading", "false positive", "doesn't work")):
            adjustment -= 0.03
            reasons.append(f"{learning.id}: Cautionary insight")
        if (learning.actionable and "opportunity" in content) or "+ev" in content or "edge" in content:
            adjustment += 0.02
            reasons.append(f"{learning.id}: Actionable opportunity identified")

    adjustment = clamp(adjustment, -MAX_LEARNINGS_ADJUSTMENT, MAX_LEARNINGS_ADJUSTMENT)
    return LearningsImpact(
        adjustment=adjustment,
        reasoning="; ".join(reasons) or "Related learnings found but no clear signal",
        related_learnings=[l.id for l in related],
    )


def time_sensitivity(hypothesis: Hypothesis) -> float:
    text = f"{hypothesis.statement} {hypothesis.test_method}".lower()
    if any(w in text for w in IMMEDIATE_WORDS):
        return 1.0
    if any(w in text for w in SOON_WORDS):
        return 0.8
    return 0.3


def potential_edge(hypothesis: Hypothesis) -> float:
    p, b = hypothesis.expected_win_rate, hypothesis.expected_payoff
    if not p or not b:
        return 0.5
    return clamp(p * b - (1 - p))


def priority_score(hypothesis: Hypothesis, learnings: List[Learning]) -> HypothesisPriorityScore:
    breakdown = {
        "confidence": hypothesis.confidence,
        "learnings_support": clamp(0.5 + learnings_impact(hypothesis, learnings).adjustment),
        "time_sensitivity": time_sensitivity(hypothesis),
        "infrastructure_ready": 0.0 if hypothesis.status == HypothesisStatus.BLOCKED else 1.0,
        "potential_edge": potential_edge(hypothesis),
    }
    score = sum(WEIGHTS[k] * v for k, v in breakdown.items())
    return HypothesisPriorityScore(hypothesis.id, score, breakdown)


def top_testable(
    testable: List[Hypothesis],
    learnings: List[Learning],
    n: int = 3,
) -> List[Tuple[Hypothesis, HypothesisPriorityScore]]:
    scored = [(h, priority_score(h, learnings)) for h in testable]
    scored.sort(key=lambda pair: pair[1].score, reverse=True)
    return scored[:n]


@dataclass
class HypothesisSelection:
    hypothesis: Optional[Hypothesis]
    score: Optional[HypothesisPriorityScore]
    alternatives: List[Tuple[str, float]] = field(default_factory=list)


def select_next(testable: List[Hypothesis], learnings: List[Learning]) -> HypothesisSelection:
    """Highest-scored testable hypothesis plus up to four runners-up."""
    top = top_testable(testable, learnings, n=5)
    if not top:
        return HypothesisSelection(None, None)
    best, best_score = top[0]
    return HypothesisSelection(
        hypothesis=best,
        score=best_score,
        alternatives=[(h.id, s.score) for h, s in top[1:]],
    )
