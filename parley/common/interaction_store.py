"""
Interaction Store

Durable log of every inbound and outbound message per sender.

The store is the deduplication backstop: a message id can be written once.
JsonInteractionStore keeps the log in memory behind a lock and mirrors it
to an append-only JSON Lines file, standing in for a relational table with a
unique index on message_id.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .errors import DuplicateMessageError
from .schemas import Interaction

logger = logging.getLogger("parley.common.interaction_store")


class InteractionStore(ABC):
    """
    Interface consumed by the orchestrator.

    Implementations must make save() atomic with respect to the message id
    uniqueness check.
    """

    @abstractmethod
    def exists_by_message_id(self, message_id: str) -> bool:
        """True if an interaction with this inbound message id is stored"""
        pass

    @abstractmethod
    def save(self, interaction: Interaction) -> None:
        """
        Append an interaction.

        Raises:
            DuplicateMessageError: message_id is already stored
        """
        pass

    @abstractmethod
    def find_recent(self, tenant_id: str, sender_id: str, limit: int) -> List[Interaction]:
        """Most recent interactions for (tenant, sender), newest first"""
        pass


class JsonInteractionStore(InteractionStore):
    """
    Thread-safe in-process store with optional JSON Lines persistence.

    Each save appends one line to the file, so a write costs the same no
    matter how long the log grows. A line is written before the in-memory
    log changes; a failed write leaves the store as it was.

    Usage:
        store = JsonInteractionStore(Path("~/.parley/data/interactions.jsonl"))
        if not store.exists_by_message_id(mid):
            store.save(Interaction(...))
    """

    def __init__(self, path: Optional[Path] = None):
        """
        Initialize store.

        Args:
            path: JSONL file to load from and append to (None keeps it in memory)
        """
        self._path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()
        self._interactions: List[Interaction] = []
        self._message_ids: Dict[str, int] = {}
        self._load()

    def _load(self) -> None:
        """Load log from disk, skipping unreadable lines"""
        if self._path is None or not self._path.exists():
            return

        try:
            with open(self._path, encoding="utf-8") as f:
                lines = f.readlines()
        except IOError as e:
            logger.warning("Failed to load interactions from %s: %s", self._path, e)
            return

        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                item = Interaction.model_validate_json(line)
            except ValueError as e:
                logger.warning("Skipping unreadable line %d in %s: %s", lineno, self._path, e)
                continue
            if item.message_id and item.message_id in self._message_ids:
                logger.warning("Skipping repeated message id %s in %s", item.message_id, self._path)
                continue
            self._interactions.append(item)
            if item.message_id:
                self._message_ids[item.message_id] = len(self._interactions) - 1

    def _append_line(self, interaction: Interaction) -> None:
        """Append one record to disk (caller holds the lock)"""
        if self._path is None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(interaction.model_dump(mode="json"), ensure_ascii=False) + "\n"
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(line)

    def exists_by_message_id(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._message_ids

    def save(self, interaction: Interaction) -> None:
        with self._lock:
            if interaction.message_id and interaction.message_id in self._message_ids:
                raise DuplicateMessageError(interaction.message_id)

            self._append_line(interaction)

            self._interactions.append(interaction)
            if interaction.message_id:
                self._message_ids[interaction.message_id] = len(self._interactions) - 1

    def find_recent(self, tenant_id: str, sender_id: str, limit: int) -> List[Interaction]:
        if limit <= 0:
            return []
        with self._lock:
            matching = [
                item for item in reversed(self._interactions)
                if item.tenant_id == tenant_id and item.sender_id == sender_id
            ]
        # Equal timestamps keep newest-inserted first
        matching.sort(key=lambda item: item.timestamp, reverse=True)
        return matching[:limit]

    def count(self) -> int:
        with self._lock:
            return len(self._interactions)
