"""Audit trail for household actions in KidVolts."""

from __future__ import annotations

import threading
from collections import Counter, deque
from datetime import datetime
from typing import Any, Deque, Dict, Mapping, Optional

from .models import AuditEvent


class AuditLog:
    """Bounded, thread-safe record of who submitted, decided and claimed what."""

    def __init__(self, *, max_events: int = 5000) -> None:
        self._events: Deque[AuditEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def record(
        self,
        actor: str,
        action: str,
        target: str,
        *,
        details: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor or "anonymous",
            action=action,
            target=target,
            timestamp=timestamp or datetime.utcnow(),
            details=dict(details or {}),
        )
        with self._lock:
            self._events.append(event)
        return event

    def entries(
        self,
        *,
        actor: str | None = None,
        action: str | None = None,
        target: str | None = None,
    ) -> tuple[AuditEvent, ...]:
        """Return matching events, oldest first."""

        with self._lock:
            snapshot = tuple(self._events)
        return tuple(
            event
            for event in snapshot
            if (actor is None or event.actor == actor)
            and (action is None or event.action == action)
            and (target is None or event.target == target)
        )

    def latest(self) -> AuditEvent | None:
        with self._lock:
            return self._events[-1] if self._events else None

    def action_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(event.action for event in self._events))


__all__ = ["AuditLog"]
