"""
PIPELINE EXECUTOR - Run registered scripted pipelines

A pipeline is an external command registered in settings.yaml under
scheduler.pipelines. The executor only cares whether it exited 0; the
output is kept for the session log and the completion notification.

"{state_dir}" in a command is replaced by the configured state directory.
No timeout is applied: a hung pipeline blocks the tick until it exits.
"""

import asyncio
import json
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from config.loader import PipelineConfig


@dataclass
class PipelineResult:
    success: bool
    output: str
    exit_code: Optional[int] = None

    def summary(self) -> str:
        """Summary line from JSON output, if the pipeline printed one."""
        try:
            data = json.loads(self.output)
        except (ValueError, TypeError):
            return ""
        if not isinstance(data, dict):
            return ""
        summary = str(data.get("summary") or "")
        if not summary and "issuesFound" in data:
            summary = f"Found {data['issuesFound']} issues"
        return summary


class PipelineExecutor:
    """Runs pipelines as subprocesses and collects their output."""

    def __init__(
        self,
        pipelines: Dict[str, PipelineConfig],
        state_dir: str = "state",
        cwd: Optional[str] = None,
    ):
        self.pipelines = pipelines
        self.state_dir = state_dir
        self.cwd = cwd

    def command_for(self, name: str) -> Optional[List[str]]:
        pipeline = self.pipelines.get(name)
        if pipeline is None:
            return None
        command = [part.replace("{state_dir}", self.state_dir) for part in pipeline.command]
        # Run python pipelines with the daemon's own interpreter
        if command and command[0] == "python":
            command[0] = sys.executable
        return command

    async def run(self, name: str) -> PipelineResult:
        command = self.command_for(name)
        if command is None:
            return PipelineResult(False, f"Unknown pipeline: {name}")

        logger.info(f"Running pipeline: {name} ({' '.join(command)})")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            logger.error(f"Pipeline {name} could not start: {e}")
            return PipelineResult(False, str(e))

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        success = proc.returncode == 0
        if success:
            logger.info(f"Pipeline {name} completed successfully")
        else:
            logger.warning(f"Pipeline {name} exited with code {proc.returncode}")
        return PipelineResult(success, out or err, proc.returncode)

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {"name": p.name, "frequency": p.frequency, "priority": p.priority, "command": p.command}
            for p in self.pipelines.values()
        ]
