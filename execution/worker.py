"""
WORKER EXECUTOR - Hand a unit of work to an external reasoning worker

The scheduler only looks at the worker's exit code. Everything the worker
changes, it changes in the state directory, and the scheduler re-reads it
on the next tick.

The worker command comes from settings.yaml (worker.command). The element
"{prompt}" is replaced by the full instructions; if no element contains it
the instructions are written to the worker's stdin.

There is no timeout: a worker that never exits blocks the daemon.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from loguru import logger

from config.loader import WorkerConfig
from core.clock import utcnow
from scheduling.models import Role


ROLE_PREAMBLES = {
    Role.TRADE_RESEARCH: """You are the Trade Research Engineer.

## Your Job
1. **Evaluate opportunities** - Is this market mispriced? Why?
2. **Decide on trades** - Should we buy/sell? How confident?
3. **Interpret results** - What does this outcome teach us?

## Tools
- `python main.py hypotheses` - current hypotheses
- `python main.py transition <id> <status> "<reason>"` - lifecycle changes
- `python main.py evidence <id> "<observation>" --impact <delta>` - record evidence
- `python main.py block <id> "<capability>"` - block and ask engineering for help
- `python main.py exit-position <position-id> <price> "<reason>"` - close a position

## Key Principles
- Trade > Research: one trade teaches more than ten analyses
- Kill hypotheses ruthlessly; don't rationalize poor performance
- Link every trade to a hypothesis
- If blocked, create a handoff instead of staying stuck""",

    Role.AGENT_ENGINEER: """You are the Agent Engineer.

## Your Job
1. **Build capabilities** - Create tools, fix bugs, improve infrastructure
2. **Fix issues** - Debug and resolve system problems
3. **Improve agents** - Update prompts, add features, optimize workflows

## Principles
- Build incrementally with small, working changes
- Test before deploying
- Keep code simple and readable""",
}


@dataclass
class WorkerContext:
    """Who the worker is and what the dispatch is for."""
    role: Optional[Role] = None
    label: str = "task"          # id used in the session log name
    description: str = ""

    def preamble(self) -> str:
        return ROLE_PREAMBLES.get(self.role, "") if self.role else ""


class WorkerExecutor(ABC):
    """execute(instructions, context) -> exit code"""

    @abstractmethod
    async def execute(self, instructions: str, context: WorkerContext) -> int:
        ...


def compose_prompt(instructions: str, context: WorkerContext) -> str:
    preamble = context.preamble()
    return f"{preamble}\n\n---\n\n{instructions}" if preamble else instructions


class SubprocessWorkerExecutor(WorkerExecutor):
    """Runs the configured worker command and logs its session output."""

    def __init__(self, config: WorkerConfig, log_dir: str = "state/logs"):
        self.config = config
        self.log_dir = Path(log_dir)

    def build_command(self, prompt: str) -> List[str]:
        return [part.replace("{prompt}", prompt) for part in self.config.command]

    def _uses_stdin(self) -> bool:
        return not any("{prompt}" in part for part in self.config.command)

    def session_log_path(self, context: WorkerContext) -> Path:
        stamp = int(utcnow().timestamp() * 1000)
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in context.label)
        return self.log_dir / f"session-{safe}-{stamp}.log"

    async def execute(self, instructions: str, context: WorkerContext) -> int:
        prompt = compose_prompt(instructions, context)
        command = self.build_command(prompt)
        stdin = prompt.encode("utf-8") if self._uses_stdin() else None
        log_path = self.session_log_path(context)

        logger.info(
            f"Dispatching worker ({context.role.value if context.role else 'general'}): "
            f"{context.label} - {context.description[:80]}"
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.config.cwd,
            )
            output, _ = await proc.communicate(stdin)
        except OSError as e:
            logger.error(f"Could not start worker: {e}")
            return 127

        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_bytes(output or b"")
        except OSError as e:
            logger.warning(f"Could not write session log {log_path}: {e}")

        logger.info(f"Worker for {context.label} exited with code {proc.returncode}")
        return proc.returncode if proc.returncode is not None else 1
