"""Mission submission state machine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .exceptions import InvalidTransitionError, UnauthorizedError
from .ledger import PointsLedger
from .models import Actor, Decision, HistoryStatus
from .ops import StructuredLogger
from .persistence import HistoryRecord, Mission, RecordStore, StoreSession, utcnow
from .policy import PolicyGate

Guard = Callable[[Actor, HistoryRecord], bool]


def _parent_only(actor: Actor, record: HistoryRecord) -> bool:
    return actor.is_parent


def _owner_only(actor: Actor, record: HistoryRecord) -> bool:
    return actor.is_authenticated and actor.id == record.user_id


@dataclass(frozen=True, slots=True)
class Transition:
    """An allowed move between two history statuses."""

    source: HistoryStatus
    target: HistoryStatus
    guard: Guard
    guard_label: str


TRANSITIONS: Dict[Decision, Transition] = {
    Decision.APPROVE: Transition(HistoryStatus.REVIEW, HistoryStatus.APPROVED, _parent_only, "a parent"),
    Decision.REJECT: Transition(HistoryStatus.REVIEW, HistoryStatus.REJECTED, _parent_only, "a parent"),
    Decision.REDO: Transition(HistoryStatus.REVIEW, HistoryStatus.REDO, _parent_only, "a parent"),
    Decision.RESUBMIT: Transition(HistoryStatus.REDO, HistoryStatus.REVIEW, _owner_only, "the owner"),
}


def coerce_decision(value: Decision | str) -> Decision:
    if isinstance(value, Decision):
        return value
    try:
        return Decision(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown decision '{value}'.") from exc


class HistoryWorkflow:
    """Create history records and move them through review."""

    def __init__(
        self,
        store: RecordStore,
        ledger: PointsLedger,
        *,
        policy: PolicyGate | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._policy = policy or PolicyGate()
        self._logger = logger or StructuredLogger()

    def submit(self, actor: Actor, mission_id: str) -> HistoryRecord:
        """Record a completed mission for ``actor`` and queue it for review."""

        def apply(uow: StoreSession) -> HistoryRecord:
            record = HistoryRecord(user_id=actor.id, mission_id=mission_id)
            self._policy.require("history", "create", actor, record)
            mission = uow.find_by_id(Mission, mission_id)
            if not mission.is_active:
                raise InvalidTransitionError(f"Mission '{mission.title}' is not active.")
            uow.save(record)
            return self._intake(uow, record)

        record = self._store.atomic(apply)
        self._logger.log("mission_submitted", record=record.id, user=actor.id, mission=mission_id)
        return record

    def _intake(self, uow: StoreSession, record: HistoryRecord) -> HistoryRecord:
        record.status = HistoryStatus.REVIEW.value
        record.updated_at = utcnow()
        return uow.save(record)

    def decide(self, actor: Actor, record_id: str, decision: Decision | str) -> HistoryRecord:
        """Apply ``decision`` to a history record.

        The status precondition is checked inside the same unit of work that
        flips the status and credits the ledger, so an approval can only ever
        credit once.
        """

        chosen = coerce_decision(decision)
        transition = TRANSITIONS[chosen]

        def apply(uow: StoreSession) -> HistoryRecord:
            record = uow.find_by_id(HistoryRecord, record_id)
            self._policy.require("history", "update", actor, record)
            if not transition.guard(actor, record):
                raise UnauthorizedError(f"Only {transition.guard_label} may {chosen.value} this submission.")
            try:
                current = HistoryStatus(record.status)
            except ValueError as exc:
                raise InvalidTransitionError(f"Submission '{record.id}' has unknown status '{record.status}'.") from exc
            if current is not transition.source:
                raise InvalidTransitionError(
                    f"Cannot {chosen.value} a submission in '{current.value}' (needs '{transition.source.value}')."
                )
            record.status = transition.target.value
            record.decided_by = actor.id
            record.updated_at = utcnow()
            if chosen is Decision.APPROVE:
                mission = uow.find_by_id(Mission, record.mission_id)
                if mission.base_points <= 0:
                    raise InvalidTransitionError(f"Mission '{mission.title}' has no points to award.")
                self._ledger.credit(record.user_id, mission.base_points, completes_mission=True, uow=uow)
                record.points_awarded = mission.base_points
            return uow.save(record)

        record = self._store.atomic(apply)
        self._logger.log(
            f"mission_{record.status}",
            record=record.id,
            actor=actor.id,
            user=record.user_id,
            points_awarded=record.points_awarded,
        )
        return record

    def list_records(self, actor: Actor, *, status: Optional[HistoryStatus] = None) -> List[HistoryRecord]:
        records = self._policy.visible("history", actor, self._store.find_all(HistoryRecord))
        if status is not None:
            records = [record for record in records if record.status == status.value]
        records.sort(key=lambda record: record.created_at)
        return records

    def view_record(self, actor: Actor, record_id: str) -> HistoryRecord:
        record = self._store.find_by_id(HistoryRecord, record_id)
        self._policy.require("history", "view", actor, record)
        return record


__all__ = ["Transition", "TRANSITIONS", "coerce_decision", "HistoryWorkflow"]
