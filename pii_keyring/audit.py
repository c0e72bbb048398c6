"""
Rotation log: append-only audit trail of key registry changes.

This module provides:
- RotationAction: Kind of registry change recorded
- RotationEvent: One immutable audit entry
- RotationLog: Abstract async interface implemented by the in-memory and
  PostgreSQL backends
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .errors import StorageError


class RotationAction(Enum):
    """Registry change recorded by a rotation event (matches database ENUM)."""

    REGISTER = "register"
    SET_PRIMARY = "set_primary"
    RETIRE = "retire"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> RotationAction:
        """Parse from string."""
        try:
            return cls(s.lower())
        except ValueError:
            raise StorageError(f"Invalid rotation action: {s}")


@dataclass(frozen=True)
class RotationEvent:
    """
    Audit entry for a key registry change.

    For SET_PRIMARY, old_version is the demoted primary (None for the first
    primary) and new_version the promoted one. For REGISTER, old_version is
    None. For RETIRE, old_version is the retired version and new_version is
    None.
    """

    action: RotationAction
    old_version: Optional[str]
    new_version: Optional[str]
    operator: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Assigned by the log on append; gives a total order among equal timestamps
    sequence: Optional[int] = None


class RotationLog(ABC):
    """
    Append-only audit log.

    Entries are never reordered, mutated or deleted.
    """

    @abstractmethod
    async def append(self, event: RotationEvent) -> RotationEvent:
        """
        Append an event.

        Returns:
            The stored event with its sequence number assigned

        Raises:
            StorageError: If the underlying store is unavailable
        """
        ...

    @abstractmethod
    async def list(
        self,
        since: Optional[datetime] = None,
        action: Optional[RotationAction] = None,
    ) -> List[RotationEvent]:
        """
        List events in append order.

        Args:
            since: Only return events at or after this timestamp
            action: Only return events of this kind
        """
        ...
