"""
CODE EXECUTOR - Priorities handled in process, without a worker

    execute-stop-loss     close the position at its current price
    execute-take-profit   close the position at its current price
    run-health-check      run the health-check pipeline
    stale-data-file       informational; logged only

Exits are idempotent: a position that is already gone counts as success.
"""

from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from execution.pipelines import PipelineExecutor
from portfolio.positions import PositionManager
from priorities.models import ExitTriggerContext, PriorityContext


HEALTH_CHECK_PIPELINE = "health-check"

Handler = Callable[[PriorityContext], Awaitable[bool]]


class CodeExecutor:
    """execute(action, context) -> success"""

    def __init__(self, positions: PositionManager, pipelines: Optional[PipelineExecutor] = None):
        self.positions = positions
        self.pipelines = pipelines
        self._handlers: Dict[str, Handler] = {
            "execute-stop-loss": self._stop_loss,
            "execute-take-profit": self._take_profit,
            "run-health-check": self._health_check,
            "stale-data-file": self._stale_data,
        }

    def can_handle(self, action: str) -> bool:
        return action in self._handlers

    async def execute(self, action: str, context: PriorityContext) -> bool:
        handler = self._handlers.get(action)
        if handler is None:
            logger.error(f"No code handler for action: {action}")
            return False
        return await handler(context)

    async def _exit(self, context: PriorityContext, reason: str) -> bool:
        if not isinstance(context, ExitTriggerContext):
            logger.error(f"Exit action needs a position context, got {type(context).__name__}")
            return False
        result = self.positions.exit_position(context.position_id, context.current_price, reason)
        if not result.success:
            logger.error(f"Exit of {context.position_id} failed: {result.error}")
        return result.success

    async def _stop_loss(self, context: PriorityContext) -> bool:
        stop = getattr(context, "stop_loss", None)
        reason = f"Stop loss triggered at {stop * 100:.1f}¢" if stop is not None else "Stop loss triggered"
        return await self._exit(context, reason)

    async def _take_profit(self, context: PriorityContext) -> bool:
        target = getattr(context, "take_profit", None)
        reason = f"Take profit triggered at {target * 100:.1f}¢" if target is not None else "Take profit triggered"
        return await self._exit(context, reason)

    async def _health_check(self, context: PriorityContext) -> bool:
        if self.pipelines is None:
            logger.warning("No pipeline executor configured for health checks")
            return False
        result = await self.pipelines.run(HEALTH_CHECK_PIPELINE)
        if not result.success:
            logger.error(f"Health check failed: {result.output[:200]}")
        return result.success

    async def _stale_data(self, context: PriorityContext) -> bool:
        issue = getattr(context, "issue", "stale data")
        logger.warning(f"Stale data: {issue}")
        return True
