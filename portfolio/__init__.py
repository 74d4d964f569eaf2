"""
PORTFOLIO MODULE - Paper positions and exits
"""

from portfolio.positions import (
    ExitCriteria,
    ExitResult,
    Portfolio,
    Position,
    PositionManager,
    evidence_impact,
)

__all__ = [
    'ExitCriteria',
    'ExitResult',
    'Portfolio',
    'Position',
    'PositionManager',
    'evidence_impact',
]
