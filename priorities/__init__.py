"""
Priority detection: signal detectors, ranking and the override decision.
"""

from priorities.models import (
    Priority,
    PriorityType,
    StrategicDecision,
)
from priorities.detectors import DETECTORS, StateSnapshot
from priorities.engine import ExecutionMetrics, PriorityEngine

__all__ = [
    'Priority',
    'PriorityType',
    'StrategicDecision',
    'DETECTORS',
    'StateSnapshot',
    'ExecutionMetrics',
    'PriorityEngine',
]
