"""
ENGINE STATUS - Aggregate health of the hypothesis pipeline

Recomputed from the hypotheses document on every tick. The aggregates are a
pure function of the stored hypotheses, so recomputing twice without an
intervening mutation yields the same values; only `lastEvaluated` moves.

Engine state:
    starved    fewer than 3 testable hypotheses
    healthy    3..10 testable
    saturated  more than 10 testable
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from config.loader import HypothesisConfig
from core.clock import parse_timestamp, to_iso, utcnow
from hypotheses.models import Hypothesis, HypothesisStatus, parse_hypotheses
from memory.store import Document, StateStore


STARVED_BELOW = 3
SATURATED_ABOVE = 10


def engine_state(testable: int) -> str:
    if testable < STARVED_BELOW:
        return "starved"
    if testable > SATURATED_ABOVE:
        return "saturated"
    return "healthy"


def compute_engine_status(
    hypotheses: List[Hypothesis],
    blocked_ids: Iterable[str],
    now: datetime,
    config: Optional[HypothesisConfig] = None,
) -> Dict[str, Any]:
    """Aggregates for the engine-status document (without lastEvaluated)."""
    config = config or HypothesisConfig()
    blocked = set(blocked_ids)

    by_status = {status.value: 0 for status in HypothesisStatus}
    for h in hypotheses:
        by_status[h.status.value] += 1

    testable = [
        h for h in hypotheses
        if h.status.is_active
        and h.id not in blocked
        and h.confidence > config.testable_min_confidence
    ]

    needs_attention: List[Dict[str, Any]] = []
    for h in hypotheses:
        if h.status.is_active and h.confidence <= config.testable_min_confidence:
            needs_attention.append({
                "hypothesisId": h.id,
                "issue": "low_confidence",
                "detail": f"Confidence {h.confidence * 100:.0f}% - consider invalidating or gathering more evidence",
                "suggestedAction": "invalidate" if len(h.evidence) >= 3 else "research",
            })

        started = parse_timestamp(h.test_started_at)
        if h.status == HypothesisStatus.TESTING and started is not None:
            days = (now - started).total_seconds() / 86400
            if days > config.stale_test_days and h.test_results.trades < config.default_min_sample_size:
                needs_attention.append({
                    "hypothesisId": h.id,
                    "issue": "stale_test",
                    "detail": f"Testing for {days:.0f} days with insufficient data",
                    "suggestedAction": "review",
                })

    return {
        "hypothesisHealth": {
            "total": len(hypotheses),
            "byStatus": by_status,
            "testableNow": len(testable),
            "testableIds": [h.id for h in testable],
        },
        "needsAttention": needs_attention,
        "engineState": engine_state(len(testable)),
    }


def update_engine_status(
    store: StateStore,
    config: Optional[HypothesisConfig] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Recompute the aggregates and persist them, keeping worker-owned keys."""
    now = now or utcnow()
    raw = store.load(Document.HYPOTHESES)
    hypotheses = parse_hypotheses(raw.get("hypotheses", []))

    with store.transaction(Document.ENGINE_STATUS) as status:
        blocked_ids = [
            b.get("hypothesisId") for b in status.get("blockedHypotheses", [])
            if isinstance(b, dict)
        ]
        status.update(compute_engine_status(hypotheses, blocked_ids, now, config))
        status["lastEvaluated"] = to_iso(now)
        result = dict(status)

    health = result["hypothesisHealth"]
    logger.info(
        f"Engine status: {result['engineState']} "
        f"({health['testableNow']} testable: {', '.join(health['testableIds']) or 'none'})"
    )
    if result["needsAttention"]:
        ids = ", ".join(n["hypothesisId"] for n in result["needsAttention"])
        logger.info(f"Hypotheses needing attention: {ids}")
    return result
