"""Domain models used by the KidVolts package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    """Household roles an actor can hold."""

    PARENT = "parent"
    CHILD = "child"


class HistoryStatus(str, Enum):
    """Lifecycle states for mission submissions."""

    SUBMITTED = "submitted"
    REVIEW = "review"
    REDO = "redo"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (HistoryStatus.APPROVED, HistoryStatus.REJECTED)


class Decision(str, Enum):
    """Decisions that move a history record between states."""

    APPROVE = "approve"
    REJECT = "reject"
    REDO = "redo"
    RESUBMIT = "resubmit"


@dataclass(frozen=True, slots=True)
class Actor:
    """The identity performing an operation."""

    id: str
    role: Optional[Role] = None

    @classmethod
    def anonymous(cls) -> "Actor":
        return cls(id="", role=None)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.id)

    @property
    def is_parent(self) -> bool:
        return self.role is Role.PARENT


@dataclass(slots=True)
class BatchFailure:
    """A record a batch job could not update."""

    record_id: str
    reason: str


@dataclass(slots=True)
class BatchResult:
    """Outcome of a batch job run over a whole collection."""

    job: str
    touched: int = 0
    skipped: int = 0
    failures: List[BatchFailure] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return not self.failures

    def record_failure(self, record_id: str, reason: str) -> BatchFailure:
        failure = BatchFailure(record_id=record_id, reason=reason)
        self.failures.append(failure)
        return failure

    def finish(self) -> "BatchResult":
        self.finished_at = datetime.utcnow()
        return self


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable action taken against a record."""

    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = field(default_factory=dict)


__all__ = ["Role", "HistoryStatus", "Decision", "Actor", "BatchFailure", "BatchResult", "AuditEvent"]
