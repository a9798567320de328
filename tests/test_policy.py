import json

import pytest

from kidvolts.exceptions import RuleSyntaxError, UnauthorizedError
from kidvolts.models import Actor, Role
from kidvolts.persistence import HistoryRecord
from kidvolts.policy import (
    ActorMatchesField,
    AllOf,
    AnyOf,
    Authenticated,
    PolicyGate,
    RuleContext,
    RuleSet,
    compile_rule,
)

PARENT = Actor(id="mom", role=Role.PARENT)
AVA = Actor(id="ava", role=Role.CHILD)
BEN = Actor(id="ben", role=Role.CHILD)
NOBODY = Actor.anonymous()


def _allowed(rule_source, actor, record=None):
    rule = compile_rule(rule_source)
    return rule.evaluate(RuleContext(actor=actor, record=record or {}))


def test_null_rule_is_locked_and_empty_rule_is_open() -> None:
    locked = compile_rule(None)
    assert locked.locked
    assert not locked.evaluate(RuleContext(actor=PARENT))

    open_rule = compile_rule("   ")
    assert not open_rule.locked
    assert open_rule.evaluate(RuleContext(actor=NOBODY))


def test_signed_in_predicate() -> None:
    rule = compile_rule("@request.auth.id != ''")
    assert isinstance(rule.root, Authenticated)
    assert rule.evaluate(RuleContext(actor=AVA))
    assert not rule.evaluate(RuleContext(actor=NOBODY))


def test_owner_or_parent_rule() -> None:
    source = "@request.auth.role = 'parent' || user_id = @request.auth.id"
    record = {"user_id": "ava"}

    assert _allowed(source, PARENT, record)
    assert _allowed(source, AVA, record)
    assert not _allowed(source, BEN, record)
    assert not _allowed(source, NOBODY, record)


def test_field_reference_on_either_side() -> None:
    rule = compile_rule("@request.auth.id = user_id")
    assert isinstance(rule.root, ActorMatchesField)
    flipped = compile_rule("user_id = @request.auth.id")
    assert flipped.root == rule.root


def test_missing_field_fails_closed_for_both_operators() -> None:
    assert not _allowed("status = 'review'", PARENT, {})
    assert not _allowed("status != 'review'", PARENT, {})
    assert not _allowed("user_id = @request.auth.id", AVA, {})


def test_and_binds_tighter_than_or() -> None:
    source = "kind = 'x' || kind = 'y' && color = 'red'"
    rule = compile_rule(source)
    assert isinstance(rule.root, AnyOf)
    assert isinstance(rule.root.terms[1], AllOf)

    assert _allowed(source, AVA, {"kind": "x", "color": "blue"})
    assert not _allowed(source, AVA, {"kind": "y", "color": "blue"})
    assert _allowed(source, AVA, {"kind": "y", "color": "red"})


def test_parentheses_and_literals() -> None:
    source = "(status = 'redo' || status = 'review') && points = 5 && is_active = true"
    assert _allowed(source, AVA, {"status": "redo", "points": 5, "is_active": True})
    assert not _allowed(source, AVA, {"status": "approved", "points": 5, "is_active": True})
    assert not _allowed(source, AVA, {"status": "redo", "points": 6, "is_active": True})


@pytest.mark.parametrize(
    "source",
    [
        "user_id = ",
        "user_id == 'ava'",
        "(user_id = 'ava'",
        "user_id = 'ava' &&",
        "user_id ~ 'ava'",
        "'a' = 'b'",
        "@request.auth.email = 'x@example.com'",
    ],
)
def test_malformed_rules_fail_at_compile_time(source) -> None:
    with pytest.raises(RuleSyntaxError):
        compile_rule(source)


def test_unknown_field_rejected_when_fields_known() -> None:
    with pytest.raises(RuleSyntaxError):
        compile_rule("owner = @request.auth.id", fields={"user_id", "status"})
    compile_rule("user_id = @request.auth.id", fields={"user_id", "status"})


def test_default_history_update_rule() -> None:
    gate = PolicyGate()
    in_review = HistoryRecord(id="h1", user_id="ava", mission_id="dishes", status="review")
    approved = HistoryRecord(id="h2", user_id="ava", mission_id="dishes", status="approved")

    assert gate.allows("history", "update", PARENT, approved)
    assert gate.allows("history", "update", AVA, in_review)
    assert not gate.allows("history", "update", AVA, approved)
    assert not gate.allows("history", "update", BEN, in_review)


def test_require_raises_and_visible_filters() -> None:
    gate = PolicyGate()
    records = [
        HistoryRecord(id="h1", user_id="ava", mission_id="dishes"),
        HistoryRecord(id="h2", user_id="ben", mission_id="dishes"),
    ]

    assert [record.id for record in gate.visible("history", AVA, records)] == ["h1"]
    assert [record.id for record in gate.visible("history", PARENT, records)] == ["h1", "h2"]
    assert gate.visible("history", NOBODY, records) == []

    with pytest.raises(UnauthorizedError):
        gate.require("history", "view", BEN, records[0])
    gate.require("history", "view", AVA, records[0])


def test_missing_collection_rule_is_locked() -> None:
    gate = PolicyGate()
    assert not gate.allows("payouts", "list", PARENT, {})


def test_rule_overrides_and_validation() -> None:
    rules = RuleSet.load({"missions": {"create": "@request.auth.role = 'parent'"}})
    gate = PolicyGate(rules)
    assert gate.allows("missions", "create", PARENT, {})
    assert not gate.allows("missions", "create", AVA, {})
    assert rules.sources()["missions"]["update"] is None

    with pytest.raises(RuleSyntaxError):
        RuleSet.load({"payouts": {"list": ""}})
    with pytest.raises(RuleSyntaxError):
        RuleSet.load({"missions": {"delete": ""}})
    with pytest.raises(RuleSyntaxError):
        RuleSet.load({"missions": {"list": "title = @request.auth.email"}})


def test_rules_file(tmp_path) -> None:
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"bazaar": {"update": None}}), encoding="utf-8")
    rules = RuleSet.from_file(path)
    assert rules.rule("bazaar", "update").locked

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(RuleSyntaxError):
        RuleSet.from_file(path)
