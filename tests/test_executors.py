"""
Test the subprocess executors and the in-process code executor.

Run with: python -m pytest tests/test_executors.py -v
"""

import asyncio
import sys

from config.loader import PipelineConfig, WorkerConfig
from execution.code_executor import CodeExecutor
from execution.pipelines import PipelineExecutor, PipelineResult
from execution.worker import SubprocessWorkerExecutor, WorkerContext, compose_prompt
from portfolio.positions import PositionManager
from priorities.models import SystemHealthContext
from scheduling.models import Role

from tests.conftest import FakePipelines


ECHO_ARG = "import sys; print(sys.argv[1]); sys.exit(0)"
ECHO_STDIN = "import sys; print(sys.stdin.read().upper()); sys.exit(3)"


class TestWorkerExecutor:

    def test_prompt_as_argument(self, tmp_path):
        worker = SubprocessWorkerExecutor(
            WorkerConfig(command=[sys.executable, "-c", ECHO_ARG, "{prompt}"]),
            str(tmp_path / "logs"),
        )
        code = asyncio.run(worker.execute("review the portfolio", WorkerContext(label="trade-research/review")))

        assert code == 0
        logs = list((tmp_path / "logs").glob("session-trade-research_review-*.log"))
        assert len(logs) == 1
        assert "review the portfolio" in logs[0].read_text()

    def test_prompt_on_stdin(self, tmp_path):
        worker = SubprocessWorkerExecutor(
            WorkerConfig(command=[sys.executable, "-c", ECHO_STDIN]),
            str(tmp_path / "logs"),
        )
        code = asyncio.run(worker.execute("fix it", WorkerContext(role=Role.AGENT_ENGINEER, label="fix")))

        assert code == 3
        log = next((tmp_path / "logs").glob("session-fix-*.log")).read_text()
        assert "YOU ARE THE AGENT ENGINEER" in log
        assert "FIX IT" in log

    def test_missing_binary(self, tmp_path):
        worker = SubprocessWorkerExecutor(WorkerConfig(command=["no-such-worker-binary", "{prompt}"]), str(tmp_path))
        assert asyncio.run(worker.execute("x", WorkerContext())) == 127

    def test_role_preamble(self):
        assert compose_prompt("do it", WorkerContext()) == "do it"
        prompt = compose_prompt("do it", WorkerContext(role=Role.TRADE_RESEARCH))
        assert prompt.startswith("You are the Trade Research Engineer.")
        assert prompt.endswith("do it")


class TestPipelineExecutor:

    def make(self, tmp_path, script):
        pipelines = {"scan": PipelineConfig(name="scan", command=["python", "-c", script, "{state_dir}"])}
        return PipelineExecutor(pipelines, str(tmp_path))

    def test_success_with_summary(self, tmp_path):
        executor = self.make(tmp_path, 'import json, sys; print(json.dumps({"summary": sys.argv[1]}))')
        result = asyncio.run(executor.run("scan"))
        assert result.success
        assert result.exit_code == 0
        assert result.summary() == str(tmp_path)

    def test_failure_keeps_stderr(self, tmp_path):
        executor = self.make(tmp_path, 'import sys; sys.stderr.write("boom"); sys.exit(2)')
        result = asyncio.run(executor.run("scan"))
        assert not result.success
        assert result.exit_code == 2
        assert result.output == "boom"

    def test_unknown_pipeline(self, tmp_path):
        result = asyncio.run(PipelineExecutor({}, str(tmp_path)).run("nope"))
        assert result == PipelineResult(False, "Unknown pipeline: nope")

    def test_summary_from_issue_count(self):
        assert PipelineResult(True, '{"issuesFound": 2}').summary() == "Found 2 issues"
        assert PipelineResult(True, "plain text").summary() == ""


class TestCodeExecutor:

    def test_health_check_action(self, store):
        pipelines = FakePipelines()
        executor = CodeExecutor(PositionManager(store), pipelines)
        assert asyncio.run(executor.execute("run-health-check", SystemHealthContext(issue="stale")))
        assert pipelines.runs == ["health-check"]

    def test_unknown_action(self, store):
        executor = CodeExecutor(PositionManager(store))
        assert not executor.can_handle("rebalance")
        assert not asyncio.run(executor.execute("rebalance", SystemHealthContext(issue="x")))
