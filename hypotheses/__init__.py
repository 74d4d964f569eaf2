"""
HYPOTHESES MODULE - Lifecycle of falsifiable trading beliefs

Components:
- Hypothesis and friends: the stored records
- HypothesisRegistry: transitions, evidence and trade results
- scoring: which testable hypothesis to work on next
- engine_status: pipeline-wide aggregates recomputed every tick
"""

from hypotheses.models import (
    Evidence,
    Hypothesis,
    HypothesisStatus,
    TestResults,
    TrackedMarket,
    parse_hypotheses,
)

from hypotheses.state_machine import (
    TRANSITIONS,
    HypothesisRegistry,
    TransitionResult,
)

from hypotheses.scoring import (
    HypothesisPriorityScore,
    HypothesisSelection,
    priority_score,
    select_next,
)

from hypotheses.engine_status import (
    compute_engine_status,
    update_engine_status,
)

__all__ = [
    'Evidence',
    'Hypothesis',
    'HypothesisStatus',
    'TestResults',
    'TrackedMarket',
    'parse_hypotheses',
    'TRANSITIONS',
    'HypothesisRegistry',
    'TransitionResult',
    'HypothesisPriorityScore',
    'HypothesisSelection',
    'priority_score',
    'select_next',
    'compute_engine_status',
    'update_engine_status',
]
