"""High level service coordinating missions, the bazaar and the points ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional

from .admin import AuditLog
from .bazaar import REPLENISH_JOB, BazaarEconomy
from .config import Settings
from .exceptions import RecordNotFoundError
from .ledger import DECAY_JOB, PointsLedger
from .models import Actor, BatchResult, Decision, HistoryStatus, Role
from .ops import StructuredLogger
from .persistence import (
    BazaarItem,
    HistoryRecord,
    Mission,
    RecordStore,
    User,
    create_db_and_tables,
    make_engine,
    seed_defaults,
)
from .policy import PolicyGate, RuleSet
from .scheduler import Scheduler, build_jobs
from .volts import format_volts
from .workflow import HistoryWorkflow


class KidVolts:
    """Entry point used by request handlers and the scheduler."""

    __slots__ = (
        "_store",
        "_settings",
        "_logger",
        "_policy",
        "_ledger",
        "_bazaar",
        "_workflow",
        "_audit_log",
        "_scheduler",
    )

    def __init__(
        self,
        store: RecordStore,
        *,
        settings: Settings | None = None,
        rules: RuleSet | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._settings = settings or Settings()
        self._logger = logger or StructuredLogger(path=self._settings.log_path)
        if rules is None:
            rules = RuleSet.from_file(self._settings.rules_file) if self._settings.rules_file else RuleSet.load()
        self._policy = PolicyGate(rules)
        self._ledger = PointsLedger(
            store,
            policy=self._policy,
            decay_rate=self._settings.decay_rate,
            logger=self._logger,
        )
        self._bazaar = BazaarEconomy(store, self._ledger, policy=self._policy, logger=self._logger)
        self._workflow = HistoryWorkflow(store, self._ledger, policy=self._policy, logger=self._logger)
        self._audit_log = AuditLog()
        self._scheduler = Scheduler(
            store,
            build_jobs(
                replenish=self.run_replenishment,
                decay=self.run_decay,
                replenish_cron=self._settings.replenish_cron,
                decay_cron=self._settings.decay_cron,
            ),
            clock=clock,
            poll_seconds=self._settings.scheduler_poll_seconds,
            logger=self._logger,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, seed: bool = False) -> "KidVolts":
        """Build a service (engine, tables and store) from ``settings``."""

        resolved = settings or Settings.from_env()
        engine = make_engine(resolved.database_url)
        create_db_and_tables(engine)
        store = RecordStore(engine, attempts=resolved.save_attempts)
        service = cls(store, settings=resolved)
        if seed:
            service.seed()
        return service

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def policy(self) -> PolicyGate:
        return self._policy

    @property
    def ledger(self) -> PointsLedger:
        return self._ledger

    @property
    def bazaar(self) -> BazaarEconomy:
        return self._bazaar

    @property
    def workflow(self) -> HistoryWorkflow:
        return self._workflow

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    def seed(self) -> Dict[str, int]:
        created = seed_defaults(self._store)
        self._logger.log("seeded", **created)
        return created

    def resolve_actor(self, actor_id: Optional[str]) -> Actor:
        """Map an authenticated user id to an :class:`Actor`.

        Unknown ids resolve to the anonymous actor, which the default rules deny.
        """

        if not actor_id:
            return Actor.anonymous()
        try:
            user = self._store.find_by_id(User, actor_id)
        except RecordNotFoundError:
            return Actor.anonymous()
        try:
            role: Optional[Role] = Role(user.role)
        except ValueError:
            role = None
        return Actor(id=user.id, role=role)

    # ------------------------------------------------------------------
    # Missions
    # ------------------------------------------------------------------
    def submit_mission(self, actor_id: str, mission_id: str) -> HistoryRecord:
        actor = self.resolve_actor(actor_id)
        record = self._workflow.submit(actor, mission_id)
        self._audit_log.record(actor.id, "submit_mission", record.id, details={"mission": mission_id})
        return record

    def decide_mission(self, actor_id: str, record_id: str, decision: Decision | str) -> HistoryRecord:
        actor = self.resolve_actor(actor_id)
        record = self._workflow.decide(actor, record_id, decision)
        details = {"status": record.status}
        if record.points_awarded is not None and record.status == HistoryStatus.APPROVED.value:
            details["points_awarded"] = format_volts(record.points_awarded)
        self._audit_log.record(actor.id, f"decide_mission:{record.status}", record.id, details=details)
        return record

    def resubmit_mission(self, actor_id: str, record_id: str) -> HistoryRecord:
        return self.decide_mission(actor_id, record_id, Decision.RESUBMIT)

    def list_history(self, actor_id: str, *, status: HistoryStatus | None = None) -> List[HistoryRecord]:
        return self._workflow.list_records(self.resolve_actor(actor_id), status=status)

    def view_history(self, actor_id: str, record_id: str) -> HistoryRecord:
        return self._workflow.view_record(self.resolve_actor(actor_id), record_id)

    def list_missions(self, actor_id: str, *, include_inactive: bool = False) -> List[Mission]:
        actor = self.resolve_actor(actor_id)
        missions = self._policy.visible("missions", actor, self._store.find_all(Mission))
        if not include_inactive:
            missions = [mission for mission in missions if mission.is_active]
        return missions

    # ------------------------------------------------------------------
    # Bazaar & ledger
    # ------------------------------------------------------------------
    def claim_item(self, actor_id: str, item_id: str) -> BazaarItem:
        actor = self.resolve_actor(actor_id)
        item = self._bazaar.claim(actor, item_id)
        self._audit_log.record(actor.id, "claim_item", item.id, details={"cost": item.cost, "stock": item.stock})
        return item

    def list_bazaar(self, actor_id: str) -> List[BazaarItem]:
        return self._bazaar.list_items(self.resolve_actor(actor_id))

    def leaderboard(self, actor_id: str, *, limit: int | None = None) -> List[User]:
        return self._ledger.leaderboard(self.resolve_actor(actor_id), limit=limit)

    def view_user(self, actor_id: str, user_id: str) -> User:
        actor = self.resolve_actor(actor_id)
        user = self._store.find_by_id(User, user_id)
        self._policy.require("users", "view", actor, user)
        return user

    def balance(self, actor_id: str, user_id: str | None = None) -> int:
        """Return the points of ``user_id`` (the caller by default)."""

        return self.view_user(actor_id, user_id or actor_id).points

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------
    def run_replenishment(self) -> BatchResult:
        return self._bazaar.replenish_all()

    def run_decay(self) -> BatchResult:
        return self._ledger.decay_all()

    def run_scheduled(self, *, at: Optional[datetime] = None) -> Dict[str, BatchResult]:
        return self._scheduler.tick(at=at)

    def scheduled_jobs(self) -> Dict[str, Optional[datetime]]:
        return {name: self._scheduler.last_firing(name) for name in (REPLENISH_JOB, DECAY_JOB)}


__all__ = ["KidVolts"]
