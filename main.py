#!/usr/bin/env python3
"""
TRADER DAEMON - Hypothesis-driven paper trading agent
Main Entry Point

Daemon:
    python main.py start                 run the scheduler loop
    python main.py tick                  run one tick now
    python main.py trigger               run the next scheduled task now
    python main.py query "<question>"    ask a worker a one-off question

Inspection:
    python main.py status | priorities | hypotheses

State changes (used by workers, so lifecycle rules always apply):
    python main.py create-hypothesis "<statement>" --rationale ... --test-method ...
    python main.py transition <id> <status> "<reason>"
    python main.py evidence <id> "<observation>" --supports --impact 0.05
    python main.py block <id> "<capability>"
    python main.py exit-position <position-id> <price> "<reason>"
"""

import sys
import asyncio
import argparse
from pathlib import Path

from loguru import logger

from config.loader import ConfigLoader, EngineConfig
from daemon import SchedulerDaemon
from hypotheses.models import HypothesisStatus
from hypotheses.scoring import select_next
from memory.store import StateStore, StoreError
from scheduling.models import PriorityTier


def setup_logging(log_dir: str = "logs") -> None:
    Path(log_dir).mkdir(exist_ok=True)
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level="INFO"
    )
    logger.add(
        f"{log_dir}/daemon_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="30 days",
        level="DEBUG"
    )


def load_config(args: argparse.Namespace) -> EngineConfig:
    config = ConfigLoader(args.config_dir).load()
    if args.state_dir:
        config.scheduler.state_dir = args.state_dir
    return config


def build_daemon(args: argparse.Namespace) -> SchedulerDaemon:
    config = load_config(args)
    return SchedulerDaemon(config, StateStore(config.scheduler.state_dir))


# ===== Daemon commands =====

async def cmd_start(daemon: SchedulerDaemon, args) -> int:
    await daemon.run()
    return 0


async def cmd_tick(daemon: SchedulerDaemon, args) -> int:
    result = await daemon.tick()
    print(result.describe())
    return 0 if result.success is not False else 1


async def cmd_trigger(daemon: SchedulerDaemon, args) -> int:
    result = await daemon.trigger()
    if result.success is None:
        print("No pending tasks")
        return 0
    print(result.describe())
    return 0 if result.success else 1


async def cmd_query(daemon: SchedulerDaemon, args) -> int:
    return await daemon.query(args.question)


# ===== Inspection =====

async def cmd_status(daemon: SchedulerDaemon, args) -> int:
    print(daemon.status())
    print()
    for row in daemon.responsibilities.status():
        flag = "DUE" if row["isDue"] else "   "
        print(f"{flag} {row['role']}/{row['name']} every {row['frequency']} (next {row['nextDue']})")
    return 0


async def cmd_priorities(daemon: SchedulerDaemon, args) -> int:
    print(daemon.engine.report(limit=args.limit))
    decision = daemon.engine.decide()
    print()
    print(f"Override: {'yes' if decision.should_override else 'no'} - {decision.reason}")
    return 0


async def cmd_hypotheses(daemon: SchedulerDaemon, args) -> int:
    print(daemon.registry.summary())
    selection = select_next(daemon.registry.get_testable(), daemon.journal.get_all())
    print()
    if selection.hypothesis is None:
        print("No testable hypotheses.")
        return 0
    print(f"Next to test: {selection.hypothesis.id} (score {selection.score.score:.2f})")
    print(f"  {selection.hypothesis.statement}")
    if selection.alternatives:
        print("  Alternatives: " + ", ".join(f"{hid} ({score:.2f})" for hid, score in selection.alternatives))
    return 0


# ===== State changes =====

async def cmd_create_hypothesis(daemon: SchedulerDaemon, args) -> int:
    hypothesis = daemon.registry.create(
        args.statement,
        rationale=args.rationale,
        test_method=args.test_method,
        source=args.source,
        min_sample_size=args.min_samples,
        initial_confidence=args.confidence,
    )
    print(f"Created {hypothesis.id}")
    return 0


async def cmd_transition(daemon: SchedulerDaemon, args) -> int:
    result = daemon.registry.transition(args.id, HypothesisStatus(args.status), args.reason)
    print(result.message)
    return 0 if result.success else 1


async def cmd_evidence(daemon: SchedulerDaemon, args) -> int:
    result = daemon.registry.add_evidence(args.id, args.observation, args.supports, args.impact)
    print(result.message)
    return 0 if result.success else 1


async def cmd_block(daemon: SchedulerDaemon, args) -> int:
    result = daemon.registry.block(args.id, args.capability, PriorityTier(args.priority))
    print(result.message)
    return 0 if result.success else 1


async def cmd_exit_position(daemon: SchedulerDaemon, args) -> int:
    result = daemon.positions.exit_position(args.id, args.price, args.reason)
    if not result.success:
        print(f"Exit failed: {result.error}")
        return 1
    if result.already_closed:
        print(f"{args.id} was already closed")
    else:
        print(f"Closed {args.id}: P&L {result.pnl:+.2f}")
    return 0


COMMANDS = {
    "start": cmd_start,
    "tick": cmd_tick,
    "trigger": cmd_trigger,
    "query": cmd_query,
    "status": cmd_status,
    "priorities": cmd_priorities,
    "hypotheses": cmd_hypotheses,
    "create-hypothesis": cmd_create_hypothesis,
    "transition": cmd_transition,
    "evidence": cmd_evidence,
    "block": cmd_block,
    "exit-position": cmd_exit_position,
}

# Commands run by workers or humans that change state outside a tick
MUTATING = {"create-hypothesis", "transition", "evidence", "block", "exit-position"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trader daemon - hypothesis-driven paper trading")
    parser.add_argument("--config-dir", default="config", help="Directory holding settings.yaml")
    parser.add_argument("--state-dir", default=None, help="Override the state directory")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("start", help="Run the scheduler loop")
    sub.add_parser("tick", help="Run one tick now")
    sub.add_parser("trigger", help="Run the next scheduled task now")
    query = sub.add_parser("query", help="Ask a worker a question")
    query.add_argument("question")

    sub.add_parser("status", help="Pending tasks, handoffs and responsibilities")
    priorities = sub.add_parser("priorities", help="Current priority report")
    priorities.add_argument("--limit", type=int, default=5)
    sub.add_parser("hypotheses", help="Hypothesis summary and next to test")

    create = sub.add_parser("create-hypothesis", help="Propose a new hypothesis")
    create.add_argument("statement")
    create.add_argument("--rationale", default="")
    create.add_argument("--test-method", default="")
    create.add_argument("--source", default="")
    create.add_argument("--min-samples", type=int, default=None)
    create.add_argument("--confidence", type=float, default=None)

    transition = sub.add_parser("transition", help="Move a hypothesis to a new status")
    transition.add_argument("id")
    transition.add_argument("status", choices=[s.value for s in HypothesisStatus])
    transition.add_argument("reason")

    evidence = sub.add_parser("evidence", help="Record an observation")
    evidence.add_argument("id")
    evidence.add_argument("observation")
    stance = evidence.add_mutually_exclusive_group()
    stance.add_argument("--supports", dest="supports", action="store_true", default=None)
    stance.add_argument("--contradicts", dest="supports", action="store_false")
    evidence.add_argument("--impact", type=float, required=True, help="Confidence delta, e.g. 0.05")

    block = sub.add_parser("block", help="Block a hypothesis on a missing capability")
    block.add_argument("id")
    block.add_argument("capability")
    block.add_argument("--priority", choices=[t.value for t in PriorityTier], default=PriorityTier.MEDIUM.value)

    exit_position = sub.add_parser("exit-position", help="Close a position")
    exit_position.add_argument("id")
    exit_position.add_argument("price", type=float, help="Exit price in dollars (0-1)")
    exit_position.add_argument("reason")

    return parser


async def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    daemon = build_daemon(args)
    handler = COMMANDS[args.command]

    try:
        if args.command not in MUTATING:
            return await handler(daemon, args)
        with daemon.capture_events():
            code = await handler(daemon, args)
        await daemon.flush_notifications()
        return code
    except StoreError as e:
        logger.error(f"State error: {e}")
        return 1


def run() -> None:
    setup_logging()
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
