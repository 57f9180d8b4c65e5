"""
Per-entity remediation locks.

Entities are named `service:<id>`, `file:<path>` and `network:ruleset`. Each
entity has exactly one owning monitor, and all corrective actions on it run
under its lock, so two remediations of the same thing can never interleave.
"""

import threading
from typing import Dict


class RemediationLocks:
    """Registry of entity locks and owners."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._owners: Dict[str, str] = {}

    def lock_for(self, entity: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(entity)
            if lock is None:
                lock = threading.Lock()
                self._locks[entity] = lock
            return lock

    def claim(self, entity: str, owner: str) -> None:
        """Register `owner` as the only monitor allowed to remediate `entity`.

        Raises:
            ValueError: if another owner already holds the entity
        """
        with self._guard:
            current = self._owners.get(entity)
            if current is not None and current != owner:
                raise ValueError(f"{entity} is already owned by {current}")
            self._owners[entity] = owner

    def release(self, entity: str, owner: str) -> None:
        with self._guard:
            if self._owners.get(entity) == owner:
                del self._owners[entity]

    def owner_of(self, entity: str):
        with self._guard:
            return self._owners.get(entity)
