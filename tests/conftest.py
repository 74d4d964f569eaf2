"""
Shared fixtures: a throwaway state directory, fixed clock, and doubles for
the executors, sync and notifier.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from config.loader import (
    EngineConfig,
    HypothesisConfig,
    PipelineConfig,
    PriorityConfig,
    SchedulerConfig,
)
from core.clock import to_iso
from core.events import get_event_bus
from execution.pipelines import PipelineResult
from execution.worker import WorkerContext, WorkerExecutor
from hypotheses.state_machine import HypothesisRegistry
from memory.store import Document, StateStore
from scheduling.handoffs import HandoffQueue


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_event_bus():
    bus = get_event_bus()
    bus.clear_history()
    yield bus
    bus.clear_history()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state"))


@pytest.fixture
def hypothesis_config():
    return HypothesisConfig()


@pytest.fixture
def priority_config():
    return PriorityConfig()


@pytest.fixture
def handoffs(store):
    return HandoffQueue(store)


@pytest.fixture
def registry(store, hypothesis_config, handoffs):
    return HypothesisRegistry(store, hypothesis_config, handoffs)


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(
        hypothesis=HypothesisConfig(),
        priority=PriorityConfig(),
        scheduler=SchedulerConfig(
            state_dir=str(tmp_path / "state"),
            pipelines={
                "health-check": PipelineConfig(
                    name="health-check",
                    command=["python", "-m", "pipelines.health_check", "--state-dir", "{state_dir}"],
                    frequency="12h",
                ),
            },
        ),
    )


def write_hypotheses(store: StateStore, *hypotheses: Dict) -> None:
    store.save(Document.HYPOTHESES, {"hypotheses": list(hypotheses)})


def make_hypothesis(hid: str = "h1", **overrides) -> Dict:
    data = {
        "id": hid,
        "statement": f"Statement for {hid}",
        "testMethod": "Paper trade with entry at 10c below fair value",
        "status": "proposed",
        "confidence": 0.5,
        "createdAt": to_iso(NOW),
        "updatedAt": to_iso(NOW),
    }
    data.update(overrides)
    return data


def make_portfolio(*positions: Dict, cash: float = 1000.0, trades: Optional[List[Dict]] = None) -> Dict:
    return {
        "cash": cash,
        "startingCapital": 1000.0,
        "positions": list(positions),
        "tradeHistory": list(trades or []),
        "metrics": {},
    }


# ===== Doubles =====

class FakeWorker(WorkerExecutor):
    """Returns queued exit codes (0 once the queue is empty) and records calls."""

    def __init__(self, exit_codes: Optional[List[int]] = None):
        self.exit_codes = list(exit_codes or [])
        self.calls: List[tuple] = []

    async def execute(self, instructions: str, context: WorkerContext) -> int:
        self.calls.append((instructions, context))
        return self.exit_codes.pop(0) if self.exit_codes else 0


class FakePipelines:
    """Stands in for PipelineExecutor."""

    def __init__(self, results: Optional[Dict[str, PipelineResult]] = None):
        self.results = results or {}
        self.runs: List[str] = []

    async def run(self, name: str) -> PipelineResult:
        self.runs.append(name)
        return self.results.get(name, PipelineResult(True, '{"summary": "ok"}', 0))


class FakeSync:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.pulls = 0
        self.pushes = 0

    def pull(self) -> bool:
        self.pulls += 1
        return self.ok

    def push(self) -> bool:
        self.pushes += 1
        return self.ok


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: List[str] = []
        self.fail = fail

    async def send(self, text: str) -> bool:
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append(text)
        return True

    async def send_alert(self, alert) -> bool:
        return await self.send(alert.format())
