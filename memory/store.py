"""
STATE STORE - File-backed documents shared by the scheduler and its workers

Every piece of state lives in a JSON document under the state directory.
Workers (external processes) edit the same files, so the store never caches
anything between calls: each read goes to disk, each write replaces the file
atomically.

Usage:
    store = StateStore("state")

    with store.transaction(Document.HYPOTHESES) as doc:
        doc["hypotheses"].append(...)

    # Exceptions inside the block discard the changes; nothing is written.
"""

import copy
import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from loguru import logger


class StoreError(Exception):
    """A document exists but cannot be read or written."""


class Document(str, Enum):
    """Known state documents."""
    HYPOTHESES = "hypotheses"
    LEARNINGS = "learnings"
    CONFIDENCE_HISTORY = "confidence-history"
    PORTFOLIO = "portfolio"
    ENGINE_STATUS = "engine-status"
    HEALTH = "health"
    SCHEDULE = "schedule"
    HANDOFFS = "handoffs"
    RESPONSIBILITIES = "responsibilities"
    IDEAS = "ideas"


DOCUMENT_PATHS: Dict[Document, str] = {
    Document.HYPOTHESES: "trading/hypotheses.json",
    Document.LEARNINGS: "trading/learnings.json",
    Document.CONFIDENCE_HISTORY: "trading/confidence-history.json",
    Document.PORTFOLIO: "trading/portfolio.json",
    Document.ENGINE_STATUS: "trading/engine-status.json",
    Document.HEALTH: "agent-engineering/health.json",
    Document.SCHEDULE: "orchestrator/schedule.json",
    Document.HANDOFFS: "orchestrator/handoffs.json",
    Document.RESPONSIBILITIES: "orchestrator/responsibilities.json",
    Document.IDEAS: "improvements/ideas.json",
}

DEFAULT_DOCUMENTS: Dict[Document, Dict[str, Any]] = {
    Document.HYPOTHESES: {"hypotheses": []},
    Document.LEARNINGS: {"insights": []},
    Document.CONFIDENCE_HISTORY: {"movements": []},
    Document.PORTFOLIO: {
        "cash": 0.0,
        "startingCapital": 0.0,
        "positions": [],
        "tradeHistory": [],
        "metrics": {},
    },
    Document.ENGINE_STATUS: {},
    Document.HEALTH: {},
    Document.SCHEDULE: {"pendingTasks": [], "completedTasks": [], "runHistory": []},
    Document.HANDOFFS: {"handoffs": []},
    Document.RESPONSIBILITIES: {},
    Document.IDEAS: {"backlog": [], "completed": []},
}


class StateStore:
    """
    Read-mutate-write access to the shared state documents.

    No in-memory caching across calls: two consecutive loads may return
    different data if a worker wrote in between, and that is expected.
    """

    def __init__(self, root: str = "state"):
        self.root = Path(root)

    def path(self, document: Document) -> Path:
        return self.root / DOCUMENT_PATHS[Document(document)]

    def exists(self, document: Document) -> bool:
        return self.path(document).exists()

    def modified_at(self, document: Document) -> Optional[datetime]:
        """Last write time of a document, or None when absent."""
        path = self.path(document)
        if not path.exists():
            return None
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

    def load(self, document: Document) -> Dict[str, Any]:
        """
        Read a document from disk.

        Absent documents yield a fresh copy of their default body. Present but
        unreadable documents raise StoreError rather than silently resetting.
        """
        document = Document(document)
        path = self.path(document)
        if not path.exists():
            return copy.deepcopy(DEFAULT_DOCUMENTS[document])
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read {document.value} ({path}): {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Document {document.value} is not a JSON object")
        # Older files may lack keys the defaults introduce
        for key, value in DEFAULT_DOCUMENTS[document].items():
            data.setdefault(key, copy.deepcopy(value))
        return data

    def load_if_exists(self, document: Document) -> Optional[Dict[str, Any]]:
        if not self.exists(document):
            return None
        return self.load(document)

    def save(self, document: Document, data: Dict[str, Any]) -> None:
        """Atomically replace a document."""
        document = Document(document)
        path = self.path(document)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2, default=str)
                    f.write("\n")
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StoreError(f"Cannot write {document.value} ({path}): {e}") from e
        logger.debug(f"Saved {document.value}")

    @contextmanager
    def transaction(self, document: Document) -> Iterator[Dict[str, Any]]:
        """
        Load a document, yield it for mutation, and save it on clean exit.

        If the block raises, or leaves the document as it found it, the file
        on disk is left untouched.
        """
        data = self.load(document)
        before = copy.deepcopy(data)
        yield data
        if data == before:
            logger.debug(f"No change to {document.value}")
            return
        self.save(document, data)
