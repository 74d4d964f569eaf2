"""
MEMORY MODULE - Persistent state shared with the workers

Components:
- StateStore: atomic JSON documents under the state directory
- LearningJournal: insights and confidence movements
- GitSync / NullSync: pull and push the state directory
"""

from memory.store import (
    DEFAULT_DOCUMENTS,
    DOCUMENT_PATHS,
    Document,
    StateStore,
    StoreError,
)

from memory.learnings import (
    ConfidenceMovement,
    Learning,
    LearningJournal,
    WeeklyProgress,
)

from memory.sync import (
    GitSync,
    NullSync,
    StoreSync,
)

__all__ = [
    'DEFAULT_DOCUMENTS',
    'DOCUMENT_PATHS',
    'Document',
    'StateStore',
    'StoreError',
    'ConfidenceMovement',
    'Learning',
    'LearningJournal',
    'WeeklyProgress',
    'GitSync',
    'NullSync',
    'StoreSync',
]
