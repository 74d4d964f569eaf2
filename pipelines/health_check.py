"""
HEALTH CHECK PIPELINE

Checks that every state document is readable, looks for hypotheses that
should be killed or picked up, and writes the health record the system-health
detector reads. Prints a JSON summary on stdout.

Usage:
    python -m pipelines.health_check --state-dir state
"""

import argparse
import json
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from core.clock import parse_timestamp, to_iso, utcnow
from hypotheses.models import Hypothesis, HypothesisStatus
from memory.store import Document, StateStore, StoreError


KILL_CONFIDENCE = 0.25
KILL_MIN_EVIDENCE = 3
STALE_PROPOSAL_DAYS = 7
KEEP_RECENT_ERRORS = 50


def check_documents(store: StateStore) -> Dict[str, str]:
    """Per-document service status: ok, missing or error."""
    services = {}
    for document in Document:
        if document == Document.HEALTH:
            continue
        if not store.exists(document):
            services[f"store:{document.value}"] = "missing"
            continue
        try:
            store.load(document)
            services[f"store:{document.value}"] = "ok"
        except StoreError as e:
            logger.error(str(e))
            services[f"store:{document.value}"] = "error"
    return services


def check_hypotheses(hypotheses: List[Hypothesis], now: datetime) -> List[Dict[str, Any]]:
    issues = []
    for h in hypotheses:
        if (h.status.is_active and h.confidence <= KILL_CONFIDENCE
                and len(h.evidence) >= KILL_MIN_EVIDENCE):
            issues.append({
                "hypothesisId": h.id,
                "issue": "should_invalidate",
                "detail": f"{h.confidence * 100:.0f}% confidence after {len(h.evidence)} observations",
            })
        if h.status == HypothesisStatus.PROPOSED:
            created = parse_timestamp(h.created_at)
            if created is not None:
                days = (now - created).total_seconds() / 86400
                if days > STALE_PROPOSAL_DAYS:
                    issues.append({
                        "hypothesisId": h.id,
                        "issue": "stale_proposal",
                        "detail": f"Proposed {days:.0f} days ago without testing",
                    })
    return issues


def run_health_check(store: StateStore, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    services = check_documents(store)

    hypotheses: List[Hypothesis] = []
    if services.get(f"store:{Document.HYPOTHESES.value}") == "ok":
        raw = store.load(Document.HYPOTHESES)
        hypotheses = [Hypothesis.from_dict(h) for h in raw.get("hypotheses", [])]
    issues = check_hypotheses(hypotheses, now)

    try:
        previous = store.load_if_exists(Document.HEALTH) or {}
    except StoreError as e:
        logger.error(f"Health record unreadable, rewriting: {e}")
        previous = {}

    recent_errors = list(previous.get("recentErrors") or [])
    for name, status in services.items():
        if status == "error":
            recent_errors.append({"timestamp": to_iso(now), "message": f"{name} unreadable"})

    merged_services = dict(previous.get("services") or {})
    merged_services.update(services)

    health = dict(previous)
    health.update({
        "lastCheck": to_iso(now),
        "services": merged_services,
        "recentErrors": recent_errors[-KEEP_RECENT_ERRORS:],
        "issues": issues,
    })
    store.save(Document.HEALTH, health)

    broken = [name for name, status in services.items() if status == "error"]
    summary = f"Found {len(issues)} hypothesis issues"
    if broken:
        summary += f", {len(broken)} unreadable documents"
    return {
        "runAt": to_iso(now),
        "issuesFound": len(issues) + len(broken),
        "issues": issues,
        "summary": summary,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check state health")
    parser.add_argument("--state-dir", default="state", help="State directory")
    args = parser.parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level="INFO")

    try:
        output = run_health_check(StateStore(args.state_dir))
    except StoreError as e:
        logger.error(f"Health check failed: {e}")
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
