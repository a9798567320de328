import json
from datetime import datetime

import pytest

from kidvolts.config import Settings
from kidvolts.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    RecordNotFoundError,
    RuleSyntaxError,
    UnauthorizedError,
)
from kidvolts.models import Actor, HistoryStatus, Role
from kidvolts.persistence import DEFAULT_MISSIONS, BazaarItem, HistoryRecord, Mission, User
from kidvolts.service import KidVolts

TUESDAY = datetime(2026, 10, 20)


@pytest.fixture()
def app_settings() -> Settings:
    return Settings(database_url="sqlite://", scheduler_enabled=False)


@pytest.fixture()
def kidvolts(store, household, logger, app_settings) -> KidVolts:
    return KidVolts(store, settings=app_settings, logger=logger, clock=lambda: TUESDAY)


def test_claim_scenario(kidvolts, store) -> None:
    item = kidvolts.claim_item("ava", "movie")

    assert (item.stock, item.claimed_by) == (4, ["ava"])
    assert kidvolts.balance("ava") == 15
    entry = kidvolts.audit_log.latest()
    assert (entry.actor, entry.action, entry.target) == ("ava", "claim_item", "movie")


def test_approval_scenario(kidvolts, store) -> None:
    record = store.save(HistoryRecord(user_id="ben", mission_id="dishes", status=HistoryStatus.REVIEW.value))

    approved = kidvolts.decide_mission("mom", record.id, "approve")

    assert (approved.status, approved.points_awarded) == ("approved", 20)
    assert kidvolts.balance("mom", "ben") == 20
    assert kidvolts.audit_log.entries(action="decide_mission:approved")[0].details["points_awarded"] == "20 volts"

    with pytest.raises(InvalidTransitionError):
        kidvolts.decide_mission("mom", record.id, "approve")
    assert kidvolts.balance("ben") == 20


def test_redo_scenario(kidvolts) -> None:
    record = kidvolts.submit_mission("ava", "dishes")
    kidvolts.decide_mission("mom", record.id, "redo")

    resubmitted = kidvolts.resubmit_mission("ava", record.id)
    assert resubmitted.status == HistoryStatus.REVIEW.value

    with pytest.raises(UnauthorizedError):
        kidvolts.decide_mission("ben", record.id, "approve")
    assert kidvolts.view_history("mom", record.id).status == HistoryStatus.REVIEW.value


def test_replenishment_scenario(kidvolts, store) -> None:
    store.save(BazaarItem(id="empty", item_name="Ice Cream Trip", cost=100, stock=0, max_stock=5, claimed_by=["ben"]))
    store.save(BazaarItem(id="fixed", item_name="Pony", cost=9000, stock=5, max_stock=0))

    result = kidvolts.run_replenishment()

    assert result.ok
    assert result.touched == 1
    empty = store.find_by_id(BazaarItem, "empty")
    assert (empty.stock, empty.claimed_by) == (5, [])
    fixed = store.find_by_id(BazaarItem, "fixed")
    assert (fixed.stock, fixed.version) == (5, 1)


def test_failed_claims_leave_state_untouched(kidvolts, store) -> None:
    store.save(BazaarItem(id="gone", item_name="Skip a Chore", cost=1, stock=0, max_stock=3))
    with pytest.raises(InsufficientStockError):
        kidvolts.claim_item("ava", "gone")
    with pytest.raises(UnauthorizedError):
        kidvolts.claim_item("stranger", "movie")
    with pytest.raises(RecordNotFoundError):
        kidvolts.claim_item("ava", "nothing")

    assert kidvolts.balance("ava") == 25
    assert store.find_by_id(BazaarItem, "movie").stock == 5
    assert kidvolts.audit_log.entries(action="claim_item") == ()


def test_decay_twice(kidvolts, store) -> None:
    store.save(User(id="cleo", username="Cleo", role=Role.CHILD.value, points=75))
    kidvolts.run_decay()
    result = kidvolts.run_decay()

    assert kidvolts.balance("cleo") == 18
    assert kidvolts.balance("ava") == 6
    assert result.skipped == 2


def test_resolve_actor(kidvolts, store) -> None:
    store.save(User(id="odd", username="Odd", role="guest"))

    assert kidvolts.resolve_actor("mom") == Actor(id="mom", role=Role.PARENT)
    assert kidvolts.resolve_actor("ava") == Actor(id="ava", role=Role.CHILD)
    assert kidvolts.resolve_actor("odd") == Actor(id="odd", role=None)
    assert kidvolts.resolve_actor("ghost") == Actor.anonymous()
    assert kidvolts.resolve_actor("") == Actor.anonymous()
    assert kidvolts.resolve_actor(None) == Actor.anonymous()


def test_reads_follow_rules(kidvolts) -> None:
    kidvolts.submit_mission("ava", "dishes")
    kidvolts.submit_mission("ben", "dishes")

    assert len(kidvolts.list_history("mom")) == 2
    assert [record.user_id for record in kidvolts.list_history("ben")] == ["ben"]
    assert kidvolts.list_history("ghost") == []
    assert [mission.id for mission in kidvolts.list_missions("ava")] == ["dishes"]
    assert {mission.id for mission in kidvolts.list_missions("ava", include_inactive=True)} == {"dishes", "retired"}
    assert kidvolts.list_missions("ghost") == []
    assert [item.id for item in kidvolts.list_bazaar("ben")] == ["movie"]
    assert [user.id for user in kidvolts.leaderboard("ben", limit=1)] == ["ava"]
    with pytest.raises(UnauthorizedError):
        kidvolts.balance("ghost", "ava")


def test_submissions_are_audited_and_logged(kidvolts, logger) -> None:
    record = kidvolts.submit_mission("ava", "dishes")
    entry = kidvolts.audit_log.latest()
    assert (entry.action, entry.target, entry.details) == ("submit_mission", record.id, {"mission": "dishes"})
    assert logger.tail(event="mission_submitted")[-1]["user"] == "ava"


def test_scheduled_batch_jobs(kidvolts, store) -> None:
    assert kidvolts.run_scheduled(at=datetime(2026, 10, 21)) == {}
    assert kidvolts.scheduled_jobs() == {"replenish_stock": TUESDAY, "decay_volts": TUESDAY}

    kidvolts.claim_item("ava", "movie")
    results = kidvolts.run_scheduled(at=datetime(2026, 10, 27, 0, 1))

    assert set(results) == {"replenish_stock", "decay_volts"}
    assert store.find_by_id(BazaarItem, "movie").stock == 5
    assert kidvolts.balance("ava") == 7


def test_rules_file_from_settings(store, household, logger, tmp_path) -> None:
    rules = tmp_path / "rules.json"
    rules.write_text(json.dumps({"bazaar": {"update": "@request.auth.role = 'parent'"}}), encoding="utf-8")
    settings = Settings(database_url="sqlite://", rules_file=rules)
    service = KidVolts(store, settings=settings, logger=logger)

    with pytest.raises(UnauthorizedError):
        service.claim_item("ava", "movie")

    rules.write_text(json.dumps({"bazaar": {"update": "owner = @request.auth.id"}}), encoding="utf-8")
    with pytest.raises(RuleSyntaxError):
        KidVolts(store, settings=settings, logger=logger)


def test_from_settings_seeds(tmp_path) -> None:
    settings = Settings(database_url=f"sqlite:///{tmp_path / 'family.db'}", log_path=tmp_path / "events.log")
    service = KidVolts.from_settings(settings, seed=True)

    assert len(service.store.find_all(Mission)) == len(DEFAULT_MISSIONS)
    assert service.store.find_all(User) == []
    logged = [json.loads(line) for line in (tmp_path / "events.log").read_text(encoding="utf-8").splitlines()]
    assert logged[-1]["event"] == "seeded"
    service.store.engine.dispose()
