"""Points ledger owning every user's volt balance."""

from __future__ import annotations

from typing import Callable, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from .config import DEFAULT_DECAY_RATE
from .exceptions import InsufficientPointsError, KidVoltsError
from .models import Actor, BatchResult
from .ops import StructuredLogger
from .persistence import RecordStore, StoreSession, User
from .policy import PolicyGate
from .volts import RateLike, decayed, format_volts, require_positive, saturating_add, to_rate

T = TypeVar("T")

DECAY_JOB = "decay_volts"


class PointsLedger:
    """Credit, debit and decay user points.

    Mutations accept an optional ``uow`` so they can join a caller's unit of
    work (a bazaar claim or a mission approval). Without one the ledger runs
    its own retried unit.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        policy: PolicyGate | None = None,
        decay_rate: RateLike = DEFAULT_DECAY_RATE,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or PolicyGate()
        self._decay_rate = to_rate(decay_rate)
        self._logger = logger or StructuredLogger()

    def _apply(self, fn: Callable[[StoreSession], T], uow: StoreSession | None) -> T:
        if uow is not None:
            return fn(uow)
        return self._store.atomic(fn)

    def balance(self, user_id: str) -> int:
        return self._store.find_by_id(User, user_id).points

    def credit(
        self,
        user_id: str,
        amount: int,
        *,
        completes_mission: bool = False,
        uow: StoreSession | None = None,
    ) -> User:
        """Add ``amount`` points, saturating at the column ceiling."""

        require_positive(amount)

        def apply(session: StoreSession) -> User:
            user = session.find_by_id(User, user_id)
            user.points = saturating_add(user.points, amount)
            if completes_mission:
                user.missions_completed += 1
            return session.save(user)

        user = self._apply(apply, uow)
        if uow is None:
            self._logger.log("points_credited", user=user_id, amount=amount, balance=user.points)
        return user

    def debit(self, user_id: str, amount: int, *, uow: StoreSession | None = None) -> User:
        """Remove ``amount`` points, refusing to go below zero."""

        require_positive(amount)

        def apply(session: StoreSession) -> User:
            user = session.find_by_id(User, user_id)
            if user.points < amount:
                raise InsufficientPointsError(
                    f"User '{user_id}' has {format_volts(user.points)}, needs {format_volts(amount)}."
                )
            user.points -= amount
            return session.save(user)

        user = self._apply(apply, uow)
        if uow is None:
            self._logger.log("points_debited", user=user_id, amount=amount, balance=user.points)
        return user

    def decay(self, user_id: str) -> bool:
        """Apply one decay step; return ``True`` when the balance changed."""

        def apply(session: StoreSession) -> Optional[tuple[int, int]]:
            user = session.find_by_id(User, user_id)
            current = user.points
            reduced = decayed(current, self._decay_rate)
            if reduced == current:
                return None
            user.points = reduced
            session.save(user)
            return current, reduced

        change = self._store.atomic(apply)
        if change is None:
            return False
        self._logger.log("volts_decayed", user=user_id, before=change[0], after=change[1])
        return True

    def decay_all(self) -> BatchResult:
        """Decay every user's balance, skipping (and reporting) failures."""

        result = BatchResult(job=DECAY_JOB)
        self._logger.log("decay_started")
        for user in self._store.find_all(User):
            try:
                changed = self.decay(user.id)
            except (KidVoltsError, SQLAlchemyError) as exc:
                result.record_failure(user.id, str(exc))
                self._logger.log("decay_failed", user=user.id, error=str(exc))
                continue
            if changed:
                result.touched += 1
            else:
                result.skipped += 1
        result.finish()
        self._logger.log(
            "decay_completed", touched=result.touched, skipped=result.skipped, failures=len(result.failures)
        )
        return result

    def leaderboard(self, actor: Actor, *, limit: int | None = None) -> List[User]:
        """Return users visible to ``actor`` ranked by points then missions completed."""

        users = self._policy.visible("users", actor, self._store.find_all(User))
        users.sort(key=lambda user: (-user.points, -user.missions_completed, user.username))
        return users[:limit] if limit is not None else users


__all__ = ["DECAY_JOB", "PointsLedger"]
