"""
Conditions over the run context.

Conditions compose with ``&`` (AND), ``|`` (OR) and ``~`` (NOT)::

    event("release") & action("published")
    branch("main") | tag("v*")

The same predicates can be written as text in definition documents and parsed
with :func:`parse_condition`::

    event == 'release' && action == 'published'
    !(branch matches 'release/*') || event == 'manual'
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import DefinitionError
from .model import EventKind, RunContext


class Condition:
    """Base class for predicates over a RunContext."""

    def matches(self, ctx: RunContext) -> bool:
        raise NotImplementedError

    def __and__(self, other: Condition) -> Condition:
        return And(self, other)

    def __or__(self, other: Condition) -> Condition:
        return Or(self, other)

    def __invert__(self) -> Condition:
        return Not(self)


FIELDS = ("event", "branch", "tag", "action", "ref", "workflow")

# GitHub-style spellings accepted by the parser
_FIELD_ALIASES = {
    "event_name": "event",
    "github.event_name": "event",
    "github.event.action": "action",
    "github.ref": "ref",
    "github.ref_name": "branch",
    "github.workflow": "workflow",
}


def _field_value(ctx: RunContext, name: str) -> str:
    if name == "event":
        return ctx.event.value
    if name == "action":
        return ctx.action or ""
    return str(getattr(ctx, name) or "")


@dataclass(frozen=True)
class Compare(Condition):
    field: str
    op: str  # "==", "!=", "matches"
    value: str

    def matches(self, ctx: RunContext) -> bool:
        actual = _field_value(ctx, self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        return fnmatchcase(actual, self.value)

    def __str__(self) -> str:
        return f"{self.field} {self.op} '{self.value}'"


@dataclass(frozen=True)
class Const(Condition):
    value: bool

    def matches(self, ctx: RunContext) -> bool:
        return self.value

    def __str__(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class And(Condition):
    left: Condition
    right: Condition

    def matches(self, ctx: RunContext) -> bool:
        return self.left.matches(ctx) and self.right.matches(ctx)

    def __str__(self) -> str:
        return f"({self.left}) && ({self.right})"


@dataclass(frozen=True)
class Or(Condition):
    left: Condition
    right: Condition

    def matches(self, ctx: RunContext) -> bool:
        return self.left.matches(ctx) or self.right.matches(ctx)

    def __str__(self) -> str:
        return f"({self.left}) || ({self.right})"


@dataclass(frozen=True)
class Not(Condition):
    inner: Condition

    def matches(self, ctx: RunContext) -> bool:
        return not self.inner.matches(ctx)

    def __str__(self) -> str:
        return f"!({self.inner})"


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def always() -> Condition:
    return Const(True)


def never() -> Condition:
    return Const(False)


def event(kind: str | EventKind) -> Condition:
    """Match a specific event kind."""
    return Compare("event", "==", EventKind.parse(kind).value)


def branch(pattern: str) -> Condition:
    """Match a branch name or glob pattern."""
    if any(c in pattern for c in "*?["):
        return Compare("branch", "matches", pattern)
    return Compare("branch", "==", pattern)


def tag(pattern: str) -> Condition:
    """Match a tag name or glob pattern."""
    if any(c in pattern for c in "*?["):
        return Compare("tag", "matches", pattern)
    return Compare("tag", "==", pattern)


def action(name: str) -> Condition:
    """Match the event action (e.g. "published")."""
    return Compare("action", "==", name)


def not_(c: Condition) -> Condition:
    return Not(c)


def any_of(conditions: Iterable[Condition]) -> Condition:
    result: Optional[Condition] = None
    for c in conditions:
        result = c if result is None else Or(result, c)
    return result if result is not None else never()


def all_of(conditions: Iterable[Condition]) -> Condition:
    result: Optional[Condition] = None
    for c in conditions:
        result = c if result is None else And(result, c)
    return result if result is not None else always()


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

@lru_cache(maxsize=1024)
def _evaluate_cached(predicate: Condition, ctx: RunContext) -> bool:
    return predicate.matches(ctx)


def evaluate(predicate: Optional[Condition], ctx: RunContext) -> bool:
    """Pure predicate check. `None` means "always"."""
    if predicate is None:
        return True
    return _evaluate_cached(predicate, ctx)


# ---------------------------------------------------------------------
# Pipeline-level triggers (`on:` declarations)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerRule:
    """
    One `on:` entry: an event kind, optionally narrowed by branch globs
    and event actions (GitHub's `types:`).
    """
    event: EventKind
    branches: Tuple[str, ...] = ()
    actions: Tuple[str, ...] = ()

    def to_condition(self) -> Condition:
        parts: List[Condition] = [event(self.event)]
        if self.branches:
            parts.append(any_of(branch(b) for b in self.branches))
        if self.actions:
            parts.append(any_of(action(a) for a in self.actions))
        return all_of(parts)


def triggers(*rules: TriggerRule) -> Condition:
    """The run proceeds if any rule matches."""
    return any_of(r.to_condition() for r in rules)


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<str>'[^']*'|"[^"]*")
      | (?P<op>==|!=|&&|\|\||!|\(|\))
      | (?P<word>[A-Za-z_][\w.\-]*)
    )""",
    re.VERBOSE,
)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise DefinitionError(f"Cannot parse condition {text!r} at offset {pos}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise DefinitionError(f"Unexpected end of condition: {self.text!r}")
        self.pos += 1
        return tok

    def _error(self, msg: str) -> DefinitionError:
        return DefinitionError(f"{msg} in condition {self.text!r}")

    def parse(self) -> Condition:
        cond = self._or()
        if self._peek() is not None:
            raise self._error(f"Unexpected token {self._peek()[1]!r}")
        return cond

    def _or(self) -> Condition:
        left = self._and()
        while self._peek() == ("op", "||"):
            self._next()
            left = Or(left, self._and())
        return left

    def _and(self) -> Condition:
        left = self._unary()
        while self._peek() == ("op", "&&"):
            self._next()
            left = And(left, self._unary())
        return left

    def _unary(self) -> Condition:
        if self._peek() == ("op", "!"):
            self._next()
            return Not(self._unary())
        return self._primary()

    def _primary(self) -> Condition:
        kind, value = self._next()
        if (kind, value) == ("op", "("):
            inner = self._or()
            if self._next() != ("op", ")"):
                raise self._error("Expected ')'")
            return inner
        if kind != "word":
            raise self._error(f"Unexpected token {value!r}")
        if value in ("true", "false"):
            return Const(value == "true")

        name = _FIELD_ALIASES.get(value, value)
        if name not in FIELDS:
            raise self._error(f"Unknown field {value!r} (expected one of {list(FIELDS)})")

        op_kind, op = self._next()
        if not ((op_kind == "op" and op in ("==", "!=")) or (op_kind == "word" and op == "matches")):
            raise self._error(f"Expected ==, != or matches after {value!r}")

        lit_kind, lit = self._next()
        if lit_kind != "str":
            raise self._error(f"Expected a quoted string after {op!r}")
        lit = lit[1:-1]
        if name == "event" and op != "matches":
            try:
                lit = EventKind.parse(lit).value
            except ValueError:
                raise self._error(f"Unknown event kind {lit!r}") from None
        return Compare(name, op, lit)


def parse_condition(text: str) -> Condition:
    """Parse a textual condition into a Condition tree."""
    if not text or not text.strip():
        raise DefinitionError("Empty condition")
    return _Parser(text).parse()


def coerce_condition(value: Condition | str | None) -> Optional[Condition]:
    if value is None or isinstance(value, Condition):
        return value
    if isinstance(value, str):
        return parse_condition(value)
    raise DefinitionError(f"Invalid condition: {value!r}")


def describe(predicate: Optional[Condition]) -> str:
    return "always" if predicate is None else str(predicate)


__all__: Sequence[str] = [
    "Condition",
    "TriggerRule",
    "action",
    "all_of",
    "always",
    "any_of",
    "branch",
    "coerce_condition",
    "describe",
    "evaluate",
    "event",
    "never",
    "not_",
    "parse_condition",
    "tag",
    "triggers",
]
