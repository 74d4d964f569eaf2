"""
SIGNAL DETECTORS - Find what needs attention right now

Each detector is a pure function over a StateSnapshot taken once per tick:

    detector(snapshot, config, now) -> List[Priority]

Detectors never touch the store themselves, so they can be tested with
in-memory snapshots and one failing detector cannot corrupt another.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config.loader import PriorityConfig
from core.clock import hours_between, parse_timestamp
from hypotheses.models import Hypothesis, HypothesisStatus
from portfolio.positions import Portfolio
from priorities.models import (
    ClosingMarketContext,
    ExitTriggerContext,
    PositionRiskContext,
    Priority,
    PriorityType,
    StuckHypothesisContext,
    SystemHealthContext,
    VelocityContext,
)
from priorities import prompts
from scheduling.models import Role


@dataclass
class StateSnapshot:
    """
    Everything the detectors read, loaded once.

    `portfolio` and `health` are None when their documents are absent.
    `document_ages` maps a document name to hours since last write, or None
    when the file does not exist.
    """
    hypotheses: List[Hypothesis] = field(default_factory=list)
    portfolio: Optional[Portfolio] = None
    health: Optional[Dict[str, Any]] = None
    run_history: List[Dict[str, Any]] = field(default_factory=list)
    document_ages: Dict[str, Optional[float]] = field(default_factory=dict)
    document_paths: Dict[str, str] = field(default_factory=dict)

    @property
    def active_hypotheses(self) -> List[Hypothesis]:
        return [h for h in self.hypotheses if h.status.is_active]


Detector = Callable[[StateSnapshot, PriorityConfig, datetime], List[Priority]]


# ===== Portfolio risk =====

def detect_portfolio_risk(snapshot: StateSnapshot, config: PriorityConfig, now: datetime) -> List[Priority]:
    """Losing positions and positions at or near their exit levels."""
    if snapshot.portfolio is None:
        return []

    priorities: List[Priority] = []
    for position in snapshot.portfolio.positions:
        pnl_pct = position.pnl_pct
        current = position.current_price
        stop = position.exit_criteria.stop_loss
        take_profit = position.exit_criteria.take_profit

        if pnl_pct <= config.position_loss_critical_pct:
            priorities.append(Priority(
                type=PriorityType.PORTFOLIO_RISK,
                urgency=95,
                action="review-critical-position",
                context=PositionRiskContext(position.id, position.label, round(pnl_pct, 1), current, stop),
                spawns_worker=True,
                role=Role.TRADE_RESEARCH,
                focused_prompt=prompts.position_review_prompt(position, "critical"),
            ))
        elif pnl_pct <= config.position_loss_warning_pct:
            priorities.append(Priority(
                type=PriorityType.PORTFOLIO_RISK,
                urgency=75,
                action="review-underwater-position",
                context=PositionRiskContext(position.id, position.label, round(pnl_pct, 1), current, stop),
                spawns_worker=True,
                role=Role.TRADE_RESEARCH,
                focused_prompt=prompts.position_review_prompt(position, "warning"),
            ))

        if stop is not None and stop < current <= stop * config.near_stop_loss_buffer:
            priorities.append(Priority(
                type=PriorityType.EXIT_TRIGGER,
                urgency=85,
                action="stop-loss-warning",
                context=ExitTriggerContext(
                    position.id, position.label, current,
                    stop_loss=stop,
                    distance_to_stop_pct=round((current - stop) / stop * 100, 1),
                ),
                spawns_worker=True,
                role=Role.TRADE_RESEARCH,
                focused_prompt=prompts.stop_loss_warning_prompt(position),
            ))

        if stop is not None and current <= stop:
            priorities.append(Priority(
                type=PriorityType.EXIT_TRIGGER,
                urgency=99,
                action="execute-stop-loss",
                context=ExitTriggerContext(position.id, position.label, current, stop_loss=stop),
                spawns_worker=False,
            ))

        if take_profit is not None and current >= take_profit:
            priorities.append(Priority(
                type=PriorityType.EXIT_TRIGGER,
                urgency=98,
                action="execute-take-profit",
                context=ExitTriggerContext(position.id, position.label, current, take_profit=take_profit),
                spawns_worker=False,
            ))

    return priorities


# ===== Time-sensitive markets =====

def detect_time_sensitive(snapshot: StateSnapshot, config: PriorityConfig, now: datetime) -> List[Priority]:
    """Markets tracked by active hypotheses that close soon."""
    priorities: List[Priority] = []
    for hypothesis in snapshot.active_hypotheses:
        for market in hypothesis.tracking_markets:
            closes = parse_timestamp(market.closes_at)
            if closes is None:
                continue
            hours = hours_between(now, closes)
            if hours <= 0:
                continue

            if hours <= config.market_closing_critical_hours:
                urgency, action, severity = 90, "closing-market-critical", "critical"
            elif hours <= config.market_closing_urgent_hours:
                urgency, action, severity = 70, "closing-market-soon", "warning"
            else:
                continue

            priorities.append(Priority(
                type=PriorityType.TIME_SENSITIVE,
                urgency=urgency,
                action=action,
                context=ClosingMarketContext(hypothesis.id, market.market, round(hours, 1)),
                spawns_worker=True,
                role=Role.TRADE_RESEARCH,
                focused_prompt=prompts.closing_market_prompt(hypothesis, market, severity, now),
            ))
    return priorities


# ===== Stuck hypotheses =====

def detect_stuck_hypotheses(snapshot: StateSnapshot, config: PriorityConfig, now: datetime) -> List[Priority]:
    """Proposals nobody picked up and tests that are going nowhere."""
    priorities: List[Priority] = []
    for h in snapshot.hypotheses:
        if h.status == HypothesisStatus.PROPOSED:
            since = parse_timestamp(h.updated_at) or parse_timestamp(h.created_at)
            if since is None:
                continue
            hours = hours_between(since, now)
            if hours > config.stuck_hypothesis_hours:
                priorities.append(Priority(
                    type=PriorityType.STUCK_HYPOTHESIS,
                    urgency=60,
                    action="unstick-proposed-hypothesis",
                    context=StuckHypothesisContext(
                        h.id, h.statement[:100], h.confidence,
                        hours_stuck=round(hours, 1),
                        evidence_count=len(h.evidence),
                    ),
                    spawns_worker=True,
                    role=Role.TRADE_RESEARCH,
                    focused_prompt=prompts.stuck_hypothesis_prompt(h, hours),
                ))

        elif h.status == HypothesisStatus.TESTING and h.confidence < config.low_confidence_threshold:
            priorities.append(Priority(
                type=PriorityType.STUCK_HYPOTHESIS,
                urgency=65,
                action="review-low-confidence-hypothesis",
                context=StuckHypothesisContext(
                    h.id, h.statement[:100], h.confidence,
                    evidence_count=len(h.evidence),
                ),
                spawns_worker=True,
                role=Role.TRADE_RESEARCH,
                focused_prompt=prompts.low_confidence_prompt(h, config.low_confidence_threshold),
            ))
    return priorities


# ===== Execution velocity =====

def trades_since(portfolio: Portfolio, since: datetime) -> int:
    count = 0
    for trade in portfolio.trade_history:
        ts = parse_timestamp(trade.get("timestamp"))
        if ts is not None and ts > since:
            count += 1
    return count


def detect_execution_velocity(snapshot: StateSnapshot, config: PriorityConfig, now: datetime) -> List[Priority]:
    """Too few paper trades in the past week."""
    if snapshot.portfolio is None:
        return []

    recent = trades_since(snapshot.portfolio, now - timedelta(days=7))
    if recent >= config.min_trades_per_week:
        return []

    available = sum(1 for h in snapshot.active_hypotheses if h.confidence > config.low_confidence_threshold)
    return [Priority(
        type=PriorityType.EXECUTION_VELOCITY,
        urgency=70 if recent == 0 else 50,
        action="increase-trade-velocity",
        context=VelocityContext(recent, config.min_trades_per_week, available),
        spawns_worker=True,
        role=Role.TRADE_RESEARCH,
        focused_prompt=prompts.velocity_prompt(recent, config.min_trades_per_week),
    )]


# ===== System health =====

def _health_file_issues(health: Optional[Dict[str, Any]], config: PriorityConfig, now: datetime) -> List[Priority]:
    if health is None:
        return [Priority(
            type=PriorityType.SYSTEM_HEALTH,
            urgency=60,
            action="create-health-file",
            context=SystemHealthContext(issue="health record does not exist"),
            spawns_worker=True,
            role=Role.AGENT_ENGINEER,
            focused_prompt=prompts.system_health_prompt(
                "Health file missing",
                "Create state/agent-engineering/health.json with current system status",
            ),
        )]

    priorities: List[Priority] = []
    hour_ago = now - timedelta(hours=1)
    recent_errors = []
    for error in health.get("recentErrors") or []:
        if not isinstance(error, dict):
            continue
        ts = parse_timestamp(error.get("timestamp"))
        if ts is not None and ts > hour_ago:
            recent_errors.append(error)

    if len(recent_errors) >= config.max_errors_per_hour:
        messages = [str(e.get("message", "")) for e in recent_errors[-3:]]
        priorities.append(Priority(
            type=PriorityType.SYSTEM_HEALTH,
            urgency=80,
            action="investigate-errors",
            context=SystemHealthContext(
                issue=f"{len(recent_errors)} errors in past hour",
                error_count=len(recent_errors),
                recent_errors=messages,
            ),
            spawns_worker=True,
            role=Role.AGENT_ENGINEER,
            focused_prompt=prompts.system_health_prompt(
                f"{len(recent_errors)} errors in past hour",
                f"Investigate and fix: {', '.join(messages)}",
            ),
        ))

    last_check = parse_timestamp(health.get("lastCheck"))
    if last_check is not None:
        hours = hours_between(last_check, now)
        if hours > config.stale_health_check_hours:
            priorities.append(Priority(
                type=PriorityType.SYSTEM_HEALTH,
                urgency=50,
                action="run-health-check",
                context=SystemHealthContext(
                    issue="health check is stale",
                    hours_since=round(hours, 1),
                    max_age_hours=config.stale_health_check_hours,
                ),
                spawns_worker=False,
            ))

    services = health.get("services") or {}
    if isinstance(services, dict):
        for name, status in services.items():
            if status in ("error", "down"):
                priorities.append(Priority(
                    type=PriorityType.SYSTEM_HEALTH,
                    urgency=85,
                    action="fix-service",
                    context=SystemHealthContext(issue=f"Service {name} is {status}", service=name, status=status),
                    spawns_worker=True,
                    role=Role.AGENT_ENGINEER,
                    focused_prompt=prompts.system_health_prompt(
                        f"Service {name} is {status}",
                        f"Diagnose and fix the {name} service",
                    ),
                ))
    return priorities


def _pipeline_issues(run_history: List[Dict[str, Any]], config: PriorityConfig, now: datetime) -> List[Priority]:
    day_ago = now - timedelta(hours=24)
    results: Dict[str, Dict[str, Any]] = {}
    for run in run_history:
        finished = parse_timestamp(run.get("finishedAt"))
        if finished is None or finished <= day_ago:
            continue
        stats = results.setdefault(run.get("pipeline") or "unknown", {"successes": 0, "failures": 0, "last_error": None})
        if run.get("success"):
            stats["successes"] += 1
        else:
            stats["failures"] += 1
            stats["last_error"] = run.get("error") or "Unknown error"

    priorities: List[Priority] = []
    for name, stats in results.items():
        if stats["failures"] < config.max_pipeline_failures:
            continue
        issue = f"Pipeline {name} failing ({stats['failures']} failures in 24h)"
        priorities.append(Priority(
            type=PriorityType.SYSTEM_HEALTH,
            urgency=75,
            action="fix-failing-pipeline",
            context=SystemHealthContext(
                issue=issue,
                pipeline=name,
                failures=stats["failures"],
                successes=stats["successes"],
                last_error=stats["last_error"],
            ),
            spawns_worker=True,
            role=Role.AGENT_ENGINEER,
            focused_prompt=prompts.system_health_prompt(issue, f"Last error: {stats['last_error']}. Fix the pipeline."),
        ))
    return priorities


def _staleness_issues(snapshot: StateSnapshot, config: PriorityConfig) -> List[Priority]:
    priorities: List[Priority] = []
    for critical in config.critical_files:
        path = snapshot.document_paths.get(critical.document, critical.document)
        age = snapshot.document_ages.get(critical.document)
        if age is None:
            priorities.append(Priority(
                type=PriorityType.SYSTEM_HEALTH,
                urgency=90,
                action="missing-critical-file",
                context=SystemHealthContext(issue=f"Critical file missing: {critical.document}", file=critical.document, path=path),
                spawns_worker=True,
                role=Role.AGENT_ENGINEER,
                focused_prompt=prompts.system_health_prompt(
                    f"Critical file missing: {critical.document}",
                    f"File {path} does not exist. Create or restore it.",
                ),
            ))
        elif age > critical.max_age_hours:
            priorities.append(Priority(
                type=PriorityType.SYSTEM_HEALTH,
                urgency=55,
                action="stale-data-file",
                context=SystemHealthContext(
                    issue=f"{critical.document} not updated in {age:.1f}h",
                    file=critical.document,
                    path=path,
                    hours_since=round(age, 1),
                    max_age_hours=critical.max_age_hours,
                ),
                spawns_worker=False,
            ))
    return priorities


def detect_system_health(snapshot: StateSnapshot, config: PriorityConfig, now: datetime) -> List[Priority]:
    """Health record, failing pipelines and missing or stale critical documents."""
    return (
        _health_file_issues(snapshot.health, config, now)
        + _pipeline_issues(snapshot.run_history, config, now)
        + _staleness_issues(snapshot, config)
    )


# Registration order breaks urgency ties
DETECTORS: List[Detector] = [
    detect_portfolio_risk,
    detect_time_sensitive,
    detect_stuck_hypotheses,
    detect_execution_velocity,
    detect_system_health,
]
