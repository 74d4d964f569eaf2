"""
POSITION MANAGER - Paper positions, exits and the hypothesis feedback loop

Positions are held in the portfolio document. Closing a position:
- removes it and credits shares × exit price to cash
- appends an EXIT record to the trade history
- updates portfolio metrics
- feeds the result back into the hypothesis that motivated the trade
  (one trade result + one piece of evidence)

Closing is idempotent: a position that is already gone is reported as
closed without touching the portfolio again.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING
import uuid

from loguru import logger

from core.clock import to_iso, utcnow
from core.events import EventType, emit
from memory.store import Document, StateStore

if TYPE_CHECKING:
    from hypotheses.state_machine import HypothesisRegistry


BIG_MOVE_PCT = 0.20
WIN_IMPACT = (0.04, 0.08)      # small, big
LOSS_IMPACT = (-0.05, -0.10)   # small, big


@dataclass
class ExitCriteria:
    take_profit: Optional[float] = None
    stop_loss: Optional[float] = None
    time_limit: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "takeProfit": self.take_profit,
            "stopLoss": self.stop_loss,
            "timeLimit": self.time_limit,
            "notes": self.notes,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ExitCriteria':
        data = data or {}
        tp, sl = data.get("takeProfit"), data.get("stopLoss")
        return cls(
            take_profit=float(tp) if tp is not None else None,
            stop_loss=float(sl) if sl is not None else None,
            time_limit=data.get("timeLimit"),
            notes=data.get("notes"),
        )


@dataclass
class Position:
    """An open paper position in a prediction market."""

    id: str
    market: str
    entry_price: float
    shares: float
    cost: float
    current_price: float
    market_slug: str = ""
    direction: str = "YES"
    outcome: Optional[str] = None
    unrealized_pnl: float = 0.0
    hypothesis_id: Optional[str] = None
    entry_date: Optional[str] = None
    exit_criteria: ExitCriteria = field(default_factory=ExitCriteria)
    rationale: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.outcome or self.market

    @property
    def pnl_pct(self) -> float:
        """Unrealized P&L in percent of entry price."""
        if self.entry_price <= 0:
            return 0.0
        return (self.current_price - self.entry_price) / self.entry_price * 100

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "market": self.market,
            "marketSlug": self.market_slug,
            "direction": self.direction,
            "outcome": self.outcome,
            "entryPrice": self.entry_price,
            "shares": self.shares,
            "cost": self.cost,
            "currentPrice": self.current_price,
            "unrealizedPnL": self.unrealized_pnl,
            "hypothesisId": self.hypothesis_id,
            "entryDate": self.entry_date,
            "exitCriteria": self.exit_criteria.to_dict(),
            "rationale": self.rationale,
        })
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        known = {
            "id", "market", "marketSlug", "direction", "outcome", "entryPrice",
            "shares", "cost", "currentPrice", "unrealizedPnL", "hypothesisId",
            "entryDate", "exitCriteria", "rationale",
        }
        entry = float(data.get("entryPrice", 0.0))
        shares = float(data.get("shares", 0.0))
        return cls(
            id=str(data["id"]),
            market=str(data.get("market", "")),
            market_slug=str(data.get("marketSlug", "")),
            direction=str(data.get("direction", "YES")),
            outcome=data.get("outcome"),
            entry_price=entry,
            shares=shares,
            cost=float(data.get("cost", entry * shares)),
            current_price=float(data.get("currentPrice", entry)),
            unrealized_pnl=float(data.get("unrealizedPnL", 0.0)),
            hypothesis_id=data.get("hypothesisId"),
            entry_date=data.get("entryDate"),
            exit_criteria=ExitCriteria.from_dict(data.get("exitCriteria")),
            rationale=str(data.get("rationale", "")),
            extra={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class Portfolio:
    cash: float
    starting_capital: float
    positions: List[Position] = field(default_factory=list)
    trade_history: List[Dict[str, Any]] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    last_updated: Optional[str] = None

    def get_position(self, position_id: str) -> Optional[Position]:
        for p in self.positions:
            if p.id == position_id:
                return p
        return None

    def update_metrics(self) -> None:
        m = self.metrics
        for key in ("realizedPnL", "winCount", "lossCount"):
            m.setdefault(key, 0)
        unrealized = sum(p.unrealized_pnl for p in self.positions)
        total = m["realizedPnL"] + unrealized
        m["unrealizedPnL"] = unrealized
        m["totalReturn"] = total
        m["totalReturnPct"] = (total / self.starting_capital * 100) if self.starting_capital else 0.0
        trades = m["winCount"] + m["lossCount"]
        m["winRate"] = m["winCount"] / trades if trades > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cash": self.cash,
            "startingCapital": self.starting_capital,
            "positions": [p.to_dict() for p in self.positions],
            "tradeHistory": self.trade_history,
            "metrics": self.metrics,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Portfolio':
        return cls(
            cash=float(data.get("cash", 0.0)),
            starting_capital=float(data.get("startingCapital", 0.0)),
            positions=[Position.from_dict(p) for p in data.get("positions") or []],
            trade_history=list(data.get("tradeHistory") or []),
            metrics=dict(data.get("metrics") or {}),
            last_updated=data.get("lastUpdated"),
        )


@dataclass
class ExitResult:
    success: bool
    position_id: str
    pnl: float = 0.0
    proceeds: float = 0.0
    already_closed: bool = False
    error: Optional[str] = None


def evidence_impact(won: bool, pnl_ratio: float) -> float:
    """Confidence delta for a closed trade, larger for moves beyond 20%."""
    big = abs(pnl_ratio) > BIG_MOVE_PCT
    if won:
        return WIN_IMPACT[1] if big else WIN_IMPACT[0]
    return LOSS_IMPACT[1] if big else LOSS_IMPACT[0]


class PositionManager:
    """Store-backed access to the portfolio document."""

    def __init__(self, store: StateStore, registry: Optional['HypothesisRegistry'] = None):
        self.store = store
        self.registry = registry

    def load(self) -> Portfolio:
        return Portfolio.from_dict(self.store.load(Document.PORTFOLIO))

    def save(self, portfolio: Portfolio) -> None:
        portfolio.last_updated = to_iso(utcnow())
        self.store.save(Document.PORTFOLIO, portfolio.to_dict())

    def exit_position(self, position_id: str, exit_price: float, reason: str) -> ExitResult:
        """Close a position at `exit_price`. Closing an absent position is a no-op success."""
        portfolio = self.load()
        position = portfolio.get_position(position_id)
        if position is None:
            logger.info(f"Position {position_id} already closed")
            return ExitResult(True, position_id, already_closed=True)

        proceeds = position.shares * exit_price
        pnl = proceeds - position.cost
        pnl_ratio = pnl / position.cost if position.cost else 0.0

        portfolio.positions = [p for p in portfolio.positions if p.id != position_id]
        portfolio.cash += proceeds
        portfolio.trade_history.append({
            "id": f"exit-{uuid.uuid4().hex[:8]}",
            "type": "EXIT",
            "timestamp": to_iso(utcnow()),
            "positionId": position.id,
            "market": position.market,
            "marketSlug": position.market_slug,
            "direction": position.direction,
            "outcome": position.outcome,
            "entryPrice": position.entry_price,
            "exitPrice": exit_price,
            "shares": position.shares,
            "proceeds": proceeds,
            "pnl": pnl,
            "pnlPct": pnl_ratio,
            "reason": reason,
            "cashAfter": portfolio.cash,
            "hypothesisId": position.hypothesis_id,
        })
        portfolio.metrics.setdefault("winCount", 0)
        portfolio.metrics.setdefault("lossCount", 0)
        portfolio.metrics.setdefault("realizedPnL", 0.0)
        if pnl > 0:
            portfolio.metrics["winCount"] += 1
        else:
            portfolio.metrics["lossCount"] += 1
        portfolio.metrics["realizedPnL"] += pnl
        portfolio.update_metrics()
        self.save(portfolio)

        logger.info(f"Closed {position.id} at {exit_price:.3f}: P&L {pnl:+.2f} ({reason})")

        if position.hypothesis_id and self.registry is not None:
            self._feed_back(position, pnl, pnl_ratio, reason)

        sign = "+" if pnl >= 0 else ""
        emit(
            EventType.POSITION_CLOSED, "portfolio",
            f"{'✅' if pnl >= 0 else '❌'} *Position Closed*\n\n"
            f"{position.direction} {position.label}\n"
            f"Entry: {position.entry_price * 100:.1f}¢ → Exit: {exit_price * 100:.1f}¢\n"
            f"P&L: {sign}${pnl:.2f} ({sign}{pnl_ratio * 100:.1f}%)\n"
            f"Reason: {reason}\n\n"
            f"Cash: ${portfolio.cash:.2f}",
            position_id=position.id,
            pnl=pnl,
        )
        return ExitResult(True, position_id, pnl=pnl, proceeds=proceeds)

    def _feed_back(self, position: Position, pnl: float, pnl_ratio: float, reason: str) -> None:
        won = pnl > 0
        impact = evidence_impact(won, pnl_ratio)
        result = self.registry.record_trade_result(position.hypothesis_id, won, pnl)
        if not result.success:
            logger.warning(f"Could not record trade result: {result.error}")
            return
        result = self.registry.add_evidence(
            position.hypothesis_id,
            f"Trade closed: {'WIN' if won else 'LOSS'} ${pnl:.2f} ({pnl_ratio * 100:.1f}%). {reason}",
            won,
            impact,
        )
        if not result.success:
            logger.warning(f"Could not add trade evidence: {result.error}")
        else:
            logger.info(f"Recorded {'winning' if won else 'losing'} trade for {position.hypothesis_id} ({impact:+.2f})")

    def summary(self) -> str:
        portfolio = self.load()
        m = portfolio.metrics
        lines = []
        for p in portfolio.positions:
            sign = "+" if p.unrealized_pnl >= 0 else ""
            lines.append(
                f"  - {p.label}: {p.entry_price * 100:.1f}¢ → {p.current_price * 100:.1f}¢ "
                f"({sign}{p.pnl_pct:.1f}%, {sign}${p.unrealized_pnl:.2f})"
            )
        cash_pct = portfolio.cash / portfolio.starting_capital * 100 if portfolio.starting_capital else 0.0
        return (
            "## Portfolio Summary\n"
            f"- Cash: ${portfolio.cash:.2f} / ${portfolio.starting_capital:.2f} ({cash_pct:.0f}%)\n"
            f"- Positions: {len(portfolio.positions)}\n"
            f"- Total Return: ${m.get('totalReturn', 0.0):+.2f} ({m.get('totalReturnPct', 0.0):+.2f}%)\n"
            f"- Win Rate: {m.get('winRate', 0.0) * 100:.0f}% "
            f"({int(m.get('winCount', 0))}W/{int(m.get('lossCount', 0))}L)\n\n"
            "## Open Positions\n" + ("\n".join(lines) or "  (none)")
        )
