"""
FOCUSED PROMPTS - Narrow instructions for a worker handling one priority

Workers act on the shared state through the CLI (`python main.py ...`), so
each prompt names the exact commands that resolve its situation.
"""

from datetime import datetime

from core.clock import hours_between, parse_timestamp
from hypotheses.models import Hypothesis, TrackedMarket
from portfolio.positions import Position


def _cents(price) -> str:
    return f"{price * 100:.1f}¢" if price is not None else "N/A"


def position_review_prompt(position: Position, severity: str) -> str:
    header = "🔴 CRITICAL" if severity == "critical" else "🟠 WARNING"
    return f"""
## {header}: Position Review Required

### Position: {position.market}
- Entry: {_cents(position.entry_price)}
- Current: {_cents(position.current_price)}
- P&L: {position.pnl_pct:.1f}% (${position.unrealized_pnl:.2f})
- Stop Loss: {_cents(position.exit_criteria.stop_loss)}
- Hypothesis: {position.hypothesis_id}

### Your Task
1. **Assess**: Is the original thesis still valid?
2. **Decide**: Hold, exit, or adjust stop loss?
3. **Act**: Exit with `python main.py exit-position {position.id} <price> "<reason>"`, or explain why holding.
""".strip()


def stop_loss_warning_prompt(position: Position) -> str:
    stop = position.exit_criteria.stop_loss or 0.0
    distance = (position.current_price - stop) / stop * 100 if stop else 0.0
    return f"""
## ⚠️ Stop Loss Warning

### Position: {position.market}
- Current: {_cents(position.current_price)}
- Stop Loss: {_cents(stop)}
- Distance: {distance:.1f}% above stop

### Your Task
Position is approaching stop loss. Decide:
1. **Let it ride**: Stop loss will trigger automatically if hit
2. **Exit now**: Cut losses before stop is hit
3. **Adjust stop**: Lower stop loss (only if thesis changed)

If exiting: `python main.py exit-position {position.id} <price> "<reason>"`
""".strip()


def closing_market_prompt(hypothesis: Hypothesis, market: TrackedMarket, severity: str, now: datetime) -> str:
    header = "🔴 URGENT" if severity == "critical" else "🟠 ATTENTION"
    closes = parse_timestamp(market.closes_at)
    hours = hours_between(now, closes) if closes else 0.0
    return f"""
## {header}: Market Closing Soon

### Market: {market.market}
- Closes in: {hours:.1f} hours
- Linked Hypothesis: {hypothesis.id}
- Hypothesis Confidence: {hypothesis.confidence * 100:.0f}%

### Hypothesis: {hypothesis.statement[:200]}

### Your Task
Time-sensitive decision required:
1. **Trade**: Execute trade before market closes
2. **Pass**: Explain why not trading
3. **Gather data**: Final check before decision
""".strip()


def stuck_hypothesis_prompt(hypothesis: Hypothesis, hours_stuck: float) -> str:
    return f"""
## 🟡 Stuck Hypothesis: {hypothesis.id}

### Statement: {hypothesis.statement[:200]}
- Status: {hypothesis.status.value} for {hours_stuck:.0f}h
- Confidence: {hypothesis.confidence * 100:.0f}%
- Evidence: {len(hypothesis.evidence)} observations

### Your Task
Hypothesis stuck in "{hypothesis.status.value}". You must:
1. **Activate**: `python main.py transition {hypothesis.id} testing "<reason>"` (requires entry rules)
2. **Kill**: `python main.py transition {hypothesis.id} invalidated "<reason>"`
3. **Block**: `python main.py block {hypothesis.id} "<capability needed>"`
""".strip()


def low_confidence_prompt(hypothesis: Hypothesis, threshold: float) -> str:
    recent = "\n".join(
        f"- {e.date}: {e.observation[:100]} ({'supports' if e.supports else 'contradicts'})"
        for e in hypothesis.evidence[-3:]
    )
    return f"""
## 🟡 Low Confidence Hypothesis: {hypothesis.id}

### Statement: {hypothesis.statement[:200]}
- Confidence: {hypothesis.confidence * 100:.0f}% (below {threshold * 100:.0f}% threshold)
- Evidence: {len(hypothesis.evidence)} observations

### Recent Evidence
{recent or "(none)"}

### Your Task
Low confidence suggests hypothesis may be invalid. Decide:
1. **Invalidate**: `python main.py transition {hypothesis.id} invalidated "<reason>"`
2. **Continue**: Need more data (explain what)
3. **Pivot**: Record what changed with `python main.py evidence {hypothesis.id} "<observation>" --impact <delta>`
""".strip()


def velocity_prompt(trades_last_7_days: int, target: int) -> str:
    return f"""
## 🟡 Execution Velocity Warning

### Status
- Trades last 7 days: {trades_last_7_days}
- Target: {target}+

### Your Task
Trade velocity is low. Paper money is free: we learn from trades, not research.

1. **Review hypotheses**: Which can be traded TODAY? (`python main.py hypotheses`)
2. **Execute small trades**: $20-50 per trade is fine
3. **Prioritize breadth**: Better to test 5 hypotheses shallowly than 1 deeply
""".strip()


def system_health_prompt(issue: str, task: str) -> str:
    return f"""
## 🔧 System Health Issue

### Issue: {issue}

### Your Task
{task}

### Guidelines
1. Diagnose the root cause
2. Implement a fix
3. Verify the fix works
4. Update the health record with the resolution

### Updating Health Status
After fixing, update state/agent-engineering/health.json:
```json
{{
  "lastCheck": "ISO timestamp",
  "services": {{ "daemon": "ok", "telegram": "ok" }},
  "recentErrors": []
}}
```
""".strip()
