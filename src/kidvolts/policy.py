"""Access rules for KidVolts collections.

Rules are short boolean expressions in the record store's filter syntax, e.g.
``@request.auth.role = 'parent' || user_id = @request.auth.id``. They are
compiled once into a small expression tree and evaluated against a
:class:`RuleContext` for every request. Compilation is where all syntax
checking happens; evaluation never raises.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .config import COLLECTIONS, RULE_ACTIONS
from .exceptions import RuleSyntaxError, UnauthorizedError
from .models import Actor
from .persistence import collection_fields, record_fields

RecordT = TypeVar("RecordT")

AUTH_ATTRIBUTES = frozenset({"id", "role"})

_MISSING = object()

_TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<lparen>\()
    |(?P<rparen>\))
    |(?P<and>&&)
    |(?P<or>\|\|)
    |(?P<neq>!=)
    |(?P<eq>=)
    |(?P<auth>@request\.auth\.[A-Za-z_][A-Za-z0-9_]*)
    |(?P<string>'[^']*'|"[^"]*")
    |(?P<number>-?\d+)
    |(?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True, slots=True)
class RuleContext:
    """The actor making a request and the fields of the record it targets."""

    actor: Actor
    record: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def for_record(cls, actor: Actor, record: Any) -> "RuleContext":
        fields = record if isinstance(record, Mapping) else record_fields(record)
        return cls(actor=actor, record=fields)

    def actor_value(self, attribute: str) -> str:
        if attribute == "id":
            return self.actor.id
        return self.actor.role.value if self.actor.role is not None else ""


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------
class Node:
    """Base class for compiled rule nodes."""

    __slots__ = ()

    def evaluate(self, context: RuleContext) -> bool:  # pragma: no cover - abstract
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class AllowAll(Node):
    def evaluate(self, context: RuleContext) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class DenyAll(Node):
    def evaluate(self, context: RuleContext) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Authenticated(Node):
    negated: bool = False

    def evaluate(self, context: RuleContext) -> bool:
        return context.actor.is_authenticated != self.negated


@dataclass(frozen=True, slots=True)
class ActorMatchesField(Node):
    attribute: str
    field_name: str
    negated: bool = False

    def evaluate(self, context: RuleContext) -> bool:
        value = context.record.get(self.field_name, _MISSING)
        if value is _MISSING:
            return False
        return (context.actor_value(self.attribute) == value) != self.negated


@dataclass(frozen=True, slots=True)
class ActorEqualsLiteral(Node):
    attribute: str
    value: Any
    negated: bool = False

    def evaluate(self, context: RuleContext) -> bool:
        return (context.actor_value(self.attribute) == self.value) != self.negated


@dataclass(frozen=True, slots=True)
class FieldEqualsLiteral(Node):
    field_name: str
    value: Any
    negated: bool = False

    def evaluate(self, context: RuleContext) -> bool:
        value = context.record.get(self.field_name, _MISSING)
        if value is _MISSING:
            return False
        return (value == self.value) != self.negated


@dataclass(frozen=True, slots=True)
class AllOf(Node):
    terms: Tuple[Node, ...]

    def evaluate(self, context: RuleContext) -> bool:
        return all(term.evaluate(context) for term in self.terms)


@dataclass(frozen=True, slots=True)
class AnyOf(Node):
    terms: Tuple[Node, ...]

    def evaluate(self, context: RuleContext) -> bool:
        return any(term.evaluate(context) for term in self.terms)


@dataclass(frozen=True, slots=True)
class Rule:
    """A compiled access rule."""

    source: Optional[str]
    root: Node

    def evaluate(self, context: RuleContext) -> bool:
        return self.root.evaluate(context)

    @property
    def locked(self) -> bool:
        return isinstance(self.root, DenyAll)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str
    position: int


@dataclass(frozen=True, slots=True)
class _AuthRef:
    attribute: str


@dataclass(frozen=True, slots=True)
class _FieldRef:
    name: str


@dataclass(frozen=True, slots=True)
class _Literal:
    value: Any


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    position = 0
    while position < len(source):
        match = _TOKEN_PATTERN.match(source, position)
        if match is None:
            raise RuleSyntaxError(f"Unexpected character {source[position]!r} at {position} in rule {source!r}.")
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind=kind, text=match.group(), position=position))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, source: str, fields: Optional[frozenset[str]]) -> None:
        self._source = source
        self._fields = fields
        self._tokens = _tokenize(source)
        self._index = 0

    def parse(self) -> Node:
        node = self._or()
        if self._index < len(self._tokens):
            token = self._tokens[self._index]
            raise RuleSyntaxError(f"Unexpected {token.text!r} at {token.position} in rule {self._source!r}.")
        return node

    def _peek(self) -> Optional[_Token]:
        return self._tokens[self._index] if self._index < len(self._tokens) else None

    def _take(self, *kinds: str) -> _Token:
        token = self._peek()
        if token is None:
            raise RuleSyntaxError(f"Rule {self._source!r} ended unexpectedly.")
        if kinds and token.kind not in kinds:
            raise RuleSyntaxError(f"Unexpected {token.text!r} at {token.position} in rule {self._source!r}.")
        self._index += 1
        return token

    def _or(self) -> Node:
        terms = [self._and()]
        while (token := self._peek()) is not None and token.kind == "or":
            self._index += 1
            terms.append(self._and())
        return terms[0] if len(terms) == 1 else AnyOf(tuple(terms))

    def _and(self) -> Node:
        terms = [self._primary()]
        while (token := self._peek()) is not None and token.kind == "and":
            self._index += 1
            terms.append(self._primary())
        return terms[0] if len(terms) == 1 else AllOf(tuple(terms))

    def _primary(self) -> Node:
        token = self._peek()
        if token is not None and token.kind == "lparen":
            self._index += 1
            node = self._or()
            self._take("rparen")
            return node
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._operand()
        operator = self._take("eq", "neq")
        right = self._operand()
        return self._build(left, right, negated=operator.kind == "neq")

    def _operand(self) -> Any:
        token = self._take("auth", "string", "number", "ident")
        if token.kind == "auth":
            attribute = token.text.rsplit(".", 1)[1]
            if attribute not in AUTH_ATTRIBUTES:
                raise RuleSyntaxError(f"Unknown auth attribute {token.text!r} in rule {self._source!r}.")
            return _AuthRef(attribute)
        if token.kind == "string":
            return _Literal(token.text[1:-1])
        if token.kind == "number":
            return _Literal(int(token.text))
        if token.text in ("true", "false"):
            return _Literal(token.text == "true")
        if self._fields is not None and token.text not in self._fields:
            raise RuleSyntaxError(f"Unknown field {token.text!r} in rule {self._source!r}.")
        return _FieldRef(token.text)

    def _build(self, left: Any, right: Any, *, negated: bool) -> Node:
        if isinstance(right, _AuthRef) and not isinstance(left, _AuthRef):
            left, right = right, left
        elif isinstance(right, _FieldRef) and isinstance(left, _Literal):
            left, right = right, left

        if isinstance(left, _AuthRef):
            if isinstance(right, _FieldRef):
                return ActorMatchesField(left.attribute, right.name, negated)
            if isinstance(right, _Literal):
                if left.attribute == "id" and right.value == "":
                    # "@request.auth.id != ''" is the authenticated predicate.
                    return Authenticated(negated=not negated)
                return ActorEqualsLiteral(left.attribute, right.value, negated)
        elif isinstance(left, _FieldRef) and isinstance(right, _Literal):
            return FieldEqualsLiteral(left.name, right.value, negated)
        raise RuleSyntaxError(f"Unsupported comparison in rule {self._source!r}.")


def compile_rule(source: Optional[str], *, fields: Optional[Iterable[str]] = None) -> Rule:
    """Compile ``source`` into a :class:`Rule`.

    ``None`` compiles to a locked rule and an empty string to a rule that
    admits every caller. When ``fields`` is given, references to any other
    record field are rejected.
    """

    if source is None:
        return Rule(source=None, root=DenyAll())
    if not source.strip():
        return Rule(source=source, root=AllowAll())
    known = frozenset(fields) if fields is not None else None
    return Rule(source=source, root=_Parser(source, known).parse())


# ---------------------------------------------------------------------------
# Rule sets
# ---------------------------------------------------------------------------
_OWNER_OR_PARENT = "@request.auth.role = 'parent' || user_id = @request.auth.id"
_SIGNED_IN = "@request.auth.id != ''"

DEFAULT_RULES: Dict[str, Dict[str, Optional[str]]] = {
    "history": {
        "list": _OWNER_OR_PARENT,
        "view": _OWNER_OR_PARENT,
        "create": "@request.auth.id != '' && user_id = @request.auth.id",
        "update": (
            "@request.auth.role = 'parent' || "
            "(@request.auth.id = user_id && (status = 'redo' || status = 'review'))"
        ),
    },
    "missions": {"list": _SIGNED_IN, "view": _SIGNED_IN, "create": None, "update": None},
    "bazaar": {"list": _SIGNED_IN, "view": _SIGNED_IN, "create": None, "update": _SIGNED_IN},
    "users": {
        "list": _SIGNED_IN,
        "view": _SIGNED_IN,
        "create": None,
        "update": "id = @request.auth.id || @request.auth.role = 'parent'",
    },
}


class RuleSet:
    """Compiled rules keyed by collection and action."""

    def __init__(self, rules: Mapping[Tuple[str, str], Rule]) -> None:
        self._rules: Dict[Tuple[str, str], Rule] = dict(rules)

    @classmethod
    def load(
        cls,
        overrides: Optional[Mapping[str, Mapping[str, Optional[str]]]] = None,
        *,
        fields_for: Callable[[str], Iterable[str]] = collection_fields,
    ) -> "RuleSet":
        """Compile the default rules with ``overrides`` merged on top."""

        merged: Dict[str, Dict[str, Optional[str]]] = {name: dict(rules) for name, rules in DEFAULT_RULES.items()}
        for collection, actions in (overrides or {}).items():
            if collection not in COLLECTIONS:
                raise RuleSyntaxError(f"Unknown collection '{collection}' in rule overrides.")
            for action, source in actions.items():
                if action not in RULE_ACTIONS:
                    raise RuleSyntaxError(f"Unknown action '{action}' for collection '{collection}'.")
                if source is not None and not isinstance(source, str):
                    raise RuleSyntaxError(f"Rule for {collection}.{action} must be a string or null.")
                merged[collection][action] = source
        compiled: Dict[Tuple[str, str], Rule] = {}
        for collection, actions in merged.items():
            fields = fields_for(collection)
            for action, source in actions.items():
                compiled[(collection, action)] = compile_rule(source, fields=fields)
        return cls(compiled)

    @classmethod
    def from_file(cls, path: Path) -> "RuleSet":
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RuleSyntaxError(f"Rules file {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise RuleSyntaxError(f"Rules file {path} must contain an object keyed by collection.")
        return cls.load(payload)

    def rule(self, collection: str, action: str) -> Rule:
        return self._rules.get((collection, action)) or compile_rule(None)

    def sources(self) -> Dict[str, Dict[str, Optional[str]]]:
        result: Dict[str, Dict[str, Optional[str]]] = {}
        for (collection, action), rule in sorted(self._rules.items()):
            result.setdefault(collection, {})[action] = rule.source
        return result


class PolicyGate:
    """Decide whether an actor may perform an action on a record."""

    def __init__(self, rules: RuleSet | None = None) -> None:
        self.rules = rules or RuleSet.load()

    @staticmethod
    def evaluate(rule: Rule, context: RuleContext) -> bool:
        return rule.evaluate(context)

    def allows(self, collection: str, action: str, actor: Actor, record: Any) -> bool:
        context = RuleContext.for_record(actor, record)
        return self.rules.rule(collection, action).evaluate(context)

    def require(self, collection: str, action: str, actor: Actor, record: Any) -> None:
        if not self.allows(collection, action, actor, record):
            who = actor.id or "anonymous"
            raise UnauthorizedError(f"Actor '{who}' may not {action} this {collection} record.")

    def visible(self, collection: str, actor: Actor, records: Sequence[RecordT]) -> List[RecordT]:
        rule = self.rules.rule(collection, "list")
        return [record for record in records if rule.evaluate(RuleContext.for_record(actor, record))]


__all__ = [
    "AUTH_ATTRIBUTES",
    "RuleContext",
    "Node",
    "AllowAll",
    "DenyAll",
    "Authenticated",
    "ActorMatchesField",
    "ActorEqualsLiteral",
    "FieldEqualsLiteral",
    "AllOf",
    "AnyOf",
    "Rule",
    "compile_rule",
    "DEFAULT_RULES",
    "RuleSet",
    "PolicyGate",
]
