"""
WORKER CONTEXT - Focused instructions for each unit of dispatched work

Instead of handing a worker the entire state directory, each dispatch gets
only what its duty needs: the hypotheses that need attention, the positions
under review, the ideas waiting for triage, and so on.

Responsibilities per role:
    trade-research   hypothesis-health, portfolio-review, market-scan,
                     strategy-review, learning-synthesis
    agent-engineer   idea-triage, build-sprint, system-health
"""

import json
from datetime import datetime
from typing import Callable, Dict, Optional

from config.loader import HypothesisConfig, PriorityConfig
from core.clock import hours_between, parse_timestamp, utcnow
from hypotheses.models import Hypothesis, HypothesisStatus
from memory.learnings import LearningJournal
from memory.store import Document, StateStore
from portfolio.positions import Portfolio, Position
from priorities.engine import PriorityEngine
from scheduling.models import Handoff, Role, ScheduledTask


def _pct(value: float) -> str:
    return f"{value * 100:.0f}%"


def _cents(price: Optional[float]) -> str:
    return f"{price * 100:.1f}¢" if price is not None else "N/A"


def format_hypothesis(h: Hypothesis, now: datetime) -> str:
    updated = parse_timestamp(h.updated_at) or parse_timestamp(h.created_at)
    age = f"{hours_between(updated, now):.0f}h since last update" if updated else "never updated"
    lines = [
        f"### {h.id}: {h.statement}",
        "",
        f"- **Status:** {h.status.value} ({age})",
        f"- **Confidence:** {_pct(h.confidence)}",
        f"- **Evidence:** {len(h.evidence)} observations",
        f"- **Source:** {h.source or 'manual'}",
        "",
        f"**Rationale:** {h.rationale[:200]}",
        "",
        f"**Test Method:** {h.test_method[:200]}",
    ]
    if h.evidence:
        lines += ["", "**Recent Evidence:**"]
        for e in h.evidence[-2:]:
            mark = {True: "✓", False: "✗"}.get(e.supports, "?")
            lines.append(f"- {e.date[:10]}: {e.observation[:100]} ({mark})")
    return "\n".join(lines)


def format_position(p: Position, now: datetime) -> str:
    entered = parse_timestamp(p.entry_date)
    days = f"{int(hours_between(entered, now) // 24)}d ago" if entered else "unknown"
    return "\n".join([
        f"### {p.label}",
        "",
        f"- **Position ID:** {p.id}",
        f"- **Direction:** {p.direction}",
        f"- **Entry:** {_cents(p.entry_price)} ({days})",
        f"- **Current:** {_cents(p.current_price)}",
        f"- **P&L:** {p.pnl_pct:.1f}% (${p.unrealized_pnl:.2f})",
        f"- **Shares:** {p.shares}",
        f"- **Exit Criteria:** TP {_cents(p.exit_criteria.take_profit)} / SL {_cents(p.exit_criteria.stop_loss)}",
        f"- **Hypothesis:** {p.hypothesis_id}",
        "",
        f"**Original Rationale:** {p.rationale[:200]}",
    ])


class ContextBuilder:
    """Builds role/duty-scoped instructions from the current store."""

    def __init__(
        self,
        store: StateStore,
        hypothesis_config: Optional[HypothesisConfig] = None,
        priority_config: Optional[PriorityConfig] = None,
    ):
        self.store = store
        self.hypothesis_config = hypothesis_config or HypothesisConfig()
        self.priority_config = priority_config or PriorityConfig()
        self._builders: Dict[Role, Dict[str, Callable[[datetime], str]]] = {
            Role.TRADE_RESEARCH: {
                "hypothesis-health": self.hypothesis_health,
                "portfolio-review": self.portfolio_review,
                "market-scan": self.market_scan,
                "strategy-review": self.strategy_review,
                "learning-synthesis": self.learning_synthesis,
            },
            Role.AGENT_ENGINEER: {
                "idea-triage": self.idea_triage,
                "build-sprint": self.build_sprint,
                "system-health": self.system_health,
            },
        }

    def _hypotheses(self):
        return [Hypothesis.from_dict(h) for h in self.store.load(Document.HYPOTHESES).get("hypotheses", [])]

    def _portfolio(self) -> Portfolio:
        return Portfolio.from_dict(self.store.load(Document.PORTFOLIO))

    def _metrics(self, now: datetime):
        return PriorityEngine(self.store, self.priority_config).execution_metrics(now)

    # ===== Dispatch =====

    def for_responsibility(self, role: Role, name: str, now: Optional[datetime] = None) -> str:
        builder = self._builders.get(Role(role), {}).get(name)
        if builder is None:
            return f"## {name}\n\nUnknown responsibility for {Role(role).value}. Review the state directory and report what this duty should cover."
        return builder(now or utcnow())

    # ===== Trade research =====

    def hypothesis_health(self, now: datetime) -> str:
        hypotheses = self._hypotheses()
        attention = []
        for h in hypotheses:
            if h.status == HypothesisStatus.PROPOSED:
                updated = parse_timestamp(h.updated_at) or parse_timestamp(h.created_at)
                if updated and hours_between(updated, now) > self.priority_config.stuck_hypothesis_hours:
                    attention.append(h)
            elif h.status == HypothesisStatus.TESTING:
                if (h.confidence < self.hypothesis_config.invalidation_confidence
                        or h.confidence > 0.60):
                    attention.append(h)

        counts = ", ".join(
            f"{status.value} {sum(1 for h in hypotheses if h.status == status)}"
            for status in HypothesisStatus
        )
        if not attention:
            return (
                "## Hypothesis Health Check\n\n"
                "✅ No hypotheses need immediate attention.\n\n"
                f"Current status: {counts}\n\n"
                "If all looks good, you can end this session."
            )

        first = attention[0].id
        body = "\n\n---\n\n".join(format_hypothesis(h, now) for h in attention)
        return (
            "## Hypothesis Health Check\n\n"
            f"{len(attention)} hypotheses need your attention:\n\n{body}\n\n"
            "## Your Task\n\n"
            "For EACH hypothesis above, decide ONE of:\n"
            f"1. **Activate** → `python main.py transition {first} testing \"<reason>\"`\n"
            f"2. **Kill** → `python main.py transition {first} invalidated \"<reason>\"`\n"
            f"3. **Block** → `python main.py block {first} \"<capability needed>\"`\n"
            f"4. **Wait** → `python main.py evidence {first} \"<what you are waiting for>\"`"
        )

    def portfolio_review(self, now: datetime) -> str:
        portfolio = self._portfolio()
        m = portfolio.metrics
        summary = (
            f"- Cash: ${portfolio.cash:.2f} / ${portfolio.starting_capital:.2f}\n"
            f"- Positions: {len(portfolio.positions)}\n"
            f"- Total Return: ${m.get('totalReturn', 0.0):+.2f} ({m.get('totalReturnPct', 0.0):+.2f}%)"
        )
        if not portfolio.positions:
            return f"## Portfolio Review\n\nNo open positions.\n\n{summary}\n\nConsider: Are there hypotheses ready to trade?"

        body = "\n\n---\n\n".join(format_position(p, now) for p in portfolio.positions)
        return (
            f"## Portfolio Review\n\n{summary}\n\n## Position Analysis\n\n{body}\n\n"
            "## Your Task\n\n"
            "For EACH position:\n"
            "1. **Hold** → Explain why the thesis is still valid\n"
            "2. **Exit** → `python main.py exit-position <position-id> <price> \"<reason>\"`\n"
            "3. **Adjust** → Modify exit criteria if thesis changed"
        )

    def market_scan(self, now: datetime) -> str:
        hypotheses = self._hypotheses()
        metrics = self._metrics(now)
        testing = sum(1 for h in hypotheses if h.status == HypothesisStatus.TESTING)
        proposed = sum(1 for h in hypotheses if h.status == HypothesisStatus.PROPOSED)
        return (
            "## Market Scan\n\n"
            "### Current State\n"
            f"- Hypotheses testing: {testing}\n"
            f"- Hypotheses proposed: {proposed}\n"
            f"- Trades last 7 days: {metrics.trades_last_7_days}\n"
            f"- Velocity: {metrics.velocity_score}\n\n"
            "### Your Task\n\n"
            "1. **Find opportunities** - Scan prediction markets for mispricing\n"
            "2. **Generate hypotheses** - `python main.py create-hypothesis \"<statement>\" --rationale ... --test-method ...`\n"
            "3. **Prioritize tradeable** - Focus on hypotheses we can test NOW"
        )

    def strategy_review(self, now: datetime) -> str:
        portfolio = self._portfolio()
        metrics = self._metrics(now)
        hypotheses = self._hypotheses()
        validated = [h for h in hypotheses if h.status == HypothesisStatus.VALIDATED]
        invalidated = [h for h in hypotheses if h.status == HypothesisStatus.INVALIDATED]
        m = portfolio.metrics

        recent_valid = "\n".join(f"- {h.id}: {h.statement[:80]}" for h in validated[-3:]) or "(none)"
        recent_invalid = "\n".join(
            f"- {h.id}: {(h.conclusion or h.statement)[:80]}" for h in invalidated[-3:]
        ) or "(none)"
        return (
            "## Weekly Strategy Review\n\n"
            "### Performance Summary\n"
            f"- Total Return: {m.get('totalReturnPct', 0.0):+.2f}%\n"
            f"- Realized P&L: ${m.get('realizedPnL', 0.0):.2f}\n"
            f"- Win Rate: {_pct(m.get('winRate', 0.0))} "
            f"({int(m.get('winCount', 0))}W/{int(m.get('lossCount', 0))}L)\n\n"
            "### Execution Velocity\n"
            f"- Trades last 7 days: {metrics.trades_last_7_days}\n"
            f"- Trades last 30 days: {metrics.trades_last_30_days}\n"
            f"- Velocity score: {metrics.velocity_score}\n\n"
            "### Hypothesis Outcomes\n"
            f"- Validated: {len(validated)}\n"
            f"- Invalidated: {len(invalidated)}\n\n"
            f"### Recent Validated Hypotheses\n{recent_valid}\n\n"
            f"### Recent Invalidated Hypotheses\n{recent_invalid}\n\n"
            "### Your Task\n\n"
            "1. **What's working?** - Identify patterns in wins\n"
            "2. **What's not?** - Identify patterns in losses\n"
            "3. **Adjust strategy** - Update approach based on learnings\n"
            "4. **Log insights** - Add key learnings to the learnings journal\n\n"
            "Write a brief strategy memo (200 words max) summarizing findings."
        )

    def learning_synthesis(self, now: datetime) -> str:
        recent = LearningJournal(self.store).get_all()[-10:]
        if not recent:
            return (
                "## Weekly Learning Synthesis\n\n"
                "No learnings found. Focus on generating learnings through trades and hypothesis testing."
            )
        entries = "\n---\n".join(
            f"**{l.title}** ({(l.created_at or 'unknown')[:10]})\nCategory: {l.category}\n{l.content[:200]}"
            for l in recent
        )
        return (
            f"## Weekly Learning Synthesis\n\n### Recent Learnings ({len(recent)})\n\n{entries}\n\n"
            "### Your Task\n\n"
            "1. **Find patterns** - What themes repeat across learnings?\n"
            "2. **Consolidate** - Merge similar insights\n"
            "3. **Extract meta-insights** - What are we learning about learning?\n"
            "4. **Identify gaps** - What should we be learning that we're not?\n\n"
            "Write a synthesis (300 words max) with actionable takeaways."
        )

    # ===== Agent engineer =====

    def idea_triage(self, now: datetime) -> str:
        backlog = self.store.load(Document.IDEAS).get("backlog") or []
        untriaged = [i for i in backlog if i.get("status") == "proposed"]
        if not untriaged:
            current = "\n".join(f"- [{i.get('priority')}] {i.get('title')}" for i in backlog[:5]) or "(empty)"
            return f"## Idea Triage\n\nNo untriaged ideas. Current backlog:\n{current}"

        ideas = "\n---\n".join(
            f"### {i.get('id')}: {i.get('title')}\nCategory: {i.get('category')}\n"
            f"Rationale: {str(i.get('rationale', ''))[:200]}"
            for i in untriaged
        )
        return (
            f"## Idea Triage\n\n{len(untriaged)} ideas need triage:\n\n{ideas}\n\n"
            "### Your Task\n\n"
            "For each idea, assess:\n"
            "1. **Leverage** - How much will this help? (high/medium/low)\n"
            "2. **Effort** - How long to build? (high/medium/low)\n"
            "3. **Priority** - Based on leverage/effort ratio\n\n"
            "Update each idea with your assessment and set status to 'triaged'."
        )

    def build_sprint(self, now: datetime) -> str:
        backlog = self.store.load(Document.IDEAS).get("backlog") or []
        triaged = sorted(
            (i for i in backlog if i.get("status") == "triaged"),
            key=lambda i: i.get("priority") if isinstance(i.get("priority"), (int, float)) else 99,
        )
        if not triaged:
            return "## Build Sprint\n\nNo triaged ideas to build. Run idea-triage first."

        top = triaged[0]
        others = "\n".join(f"- {i.get('title')}" for i in triaged[1:4]) or "(none)"
        notes = f"\nTriage Notes: {top['triageNotes']}\n" if top.get("triageNotes") else ""
        return (
            f"## Build Sprint\n\n### Top Priority: {top.get('id')}\n**{top.get('title')}**\n\n"
            f"Category: {top.get('category')}\nLeverage: {top.get('leverage')}\nEffort: {top.get('effort')}\n\n"
            f"Rationale: {top.get('rationale')}\n{notes}\n"
            "### Your Task\n\n"
            "Implement this improvement. When done:\n"
            "1. Move it to the `completed` array in the ideas backlog\n"
            "2. Add an `outcome` describing what was built\n\n"
            f"### Other Triaged Ideas ({len(triaged) - 1})\n{others}"
        )

    def system_health(self, now: datetime) -> str:
        health = self.store.load_if_exists(Document.HEALTH)
        if health is None:
            return (
                "## System Health Check\n\n"
                "The health record does not exist. Create it with current system status."
            )
        services = "\n".join(
            f"- {name}: {status}" for name, status in (health.get("services") or {}).items()
        ) or "(no services tracked)"
        errors = "\n".join(
            f"- {e.get('timestamp')}: {e.get('message')}"
            for e in (health.get("recentErrors") or [])[-5:]
            if isinstance(e, dict)
        ) or "(none)"
        return (
            "## System Health Check\n\n"
            f"Last check: {health.get('lastCheck') or 'never'}\n\n"
            f"### Services\n{services}\n\n"
            f"### Recent Errors\n{errors}\n\n"
            "### Your Task\n\n"
            "1. Check the daemon is running\n"
            "2. Check notifications are being delivered\n"
            "3. Review any errors\n"
            "4. Update the health record with findings"
        )


# ===== Task and handoff prompts =====

def build_task_prompt(task: ScheduledTask) -> str:
    """Instructions for a worker woken up by a scheduled task."""
    return f"""You are waking up to execute a scheduled task.

## Current Task
ID: {task.id}
Type: {task.type}
Description: {task.description}
Priority: {task.priority.value}
Context: {json.dumps(task.context.to_dict(), indent=2)}

## Instructions
1. Load relevant state from the state/ directory
2. Execute this task according to your role
3. Update state files with any changes
4. Log your session summary to state/logs/
5. Record hypothesis changes through `python main.py` so the lifecycle rules apply
6. Schedule any follow-up tasks by adding them to state/orchestrator/schedule.json
7. If you need to wake up again, add tasks to the schedule with appropriate times

Remember: You are autonomous. Make decisions, take actions, create tools if needed.
"""


def build_handoff_prompt(handoff: Handoff) -> str:
    """Instructions for the role receiving a handoff."""
    context = dict(handoff.context)
    headline = context.pop("description", None) or context.pop("question", None) or "No description"
    return f"""## Handoff {handoff.id}

From: {handoff.from_role.value}
Type: {handoff.type.value}
Priority: {handoff.priority.value}

### Request
{headline}

### Context
{json.dumps(context, indent=2) if context else "(none)"}

### Your Task
Complete this request. Exit successfully only if it is done; a non-zero exit
marks the handoff as failed and it will not be retried automatically.
"""
