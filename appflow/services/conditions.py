"""
Conditional field logic — showWhen / requireWhen rule groups.

A condition group is ``{"mode": "all" | "any", "rules": [rule, ...]}``
where each rule is ``{"fieldKey", "operator", "value"}``.  Raw JSON is
parsed once into frozen rule variants; evaluation dispatches on the
variant type and fails loudly on anything it does not know.

Supported operators (aliases in parentheses):
    eq (==, =), neq (!=, <>), contains, not_contains (notcontains),
    gt (>), gte (>=), lt (<), lte (<=), exists, not_exists (notexists),
    in, not_in (notin)

Values in rules are compared as strings, numbers only for the ordering
operators.  An unknown operator string parses as ``eq``, matching how the
form builder stores legacy rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


# ── Rule variants ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Equals:
    field_key: str
    value: Any = None


@dataclass(frozen=True)
class NotEquals:
    field_key: str
    value: Any = None


@dataclass(frozen=True)
class Contains:
    field_key: str
    value: Any = None


@dataclass(frozen=True)
class NotContains:
    field_key: str
    value: Any = None


@dataclass(frozen=True)
class GreaterThan:
    field_key: str
    value: Any = None
    inclusive: bool = False


@dataclass(frozen=True)
class LessThan:
    field_key: str
    value: Any = None
    inclusive: bool = False


@dataclass(frozen=True)
class Exists:
    field_key: str


@dataclass(frozen=True)
class NotExists:
    field_key: str


@dataclass(frozen=True)
class InSet:
    field_key: str
    values: tuple = ()


@dataclass(frozen=True)
class NotInSet:
    field_key: str
    values: tuple = ()


Rule = Equals | NotEquals | Contains | NotContains | GreaterThan | LessThan | Exists | NotExists | InSet | NotInSet

RULE_TYPES = (Equals, NotEquals, Contains, NotContains, GreaterThan, LessThan, Exists, NotExists, InSet, NotInSet)


@dataclass(frozen=True)
class ConditionGroup:
    mode: str = "all"
    rules: tuple = ()

    @property
    def field_keys(self) -> list[str]:
        """Field keys referenced by the group's rules, in order, deduplicated."""
        seen = []
        for rule in self.rules:
            if rule.field_key not in seen:
                seen.append(rule.field_key)
        return seen


# ── Parsing ──────────────────────────────────────────────────────────────────

_OPERATOR_ALIASES = {
    "==": "eq",
    "=": "eq",
    "!=": "neq",
    "<>": "neq",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "notcontains": "not_contains",
    "notexists": "not_exists",
    "notin": "not_in",
}

OPERATORS = frozenset({
    "eq", "neq", "contains", "not_contains",
    "gt", "gte", "lt", "lte",
    "exists", "not_exists", "in", "not_in",
})


def normalize_operator(raw) -> str:
    op = str(raw if raw is not None else "").strip().lower()
    op = _OPERATOR_ALIASES.get(op, op)
    return op if op in OPERATORS else "eq"


def _split_values(value) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        return tuple(_as_text(v) for v in value)
    return tuple(part.strip() for part in str(value).split(",") if part.strip())


def parse_rule(raw: dict) -> Rule | None:
    """Build a rule variant from its JSON form; None when no field key is given."""
    if not isinstance(raw, dict):
        return None
    field_key = raw.get("fieldKey") or raw.get("key") or ""
    field_key = str(field_key).strip()
    if not field_key:
        return None

    op = normalize_operator(raw.get("operator"))
    value = raw.get("value")

    if op == "eq":
        return Equals(field_key, value)
    if op == "neq":
        return NotEquals(field_key, value)
    if op == "contains":
        return Contains(field_key, value)
    if op == "not_contains":
        return NotContains(field_key, value)
    if op in ("gt", "gte"):
        return GreaterThan(field_key, value, inclusive=(op == "gte"))
    if op in ("lt", "lte"):
        return LessThan(field_key, value, inclusive=(op == "lte"))
    if op == "exists":
        return Exists(field_key)
    if op == "not_exists":
        return NotExists(field_key)
    if op == "in":
        return InSet(field_key, _split_values(value))
    return NotInSet(field_key, _split_values(value))


def parse_group(raw) -> ConditionGroup | None:
    """Parse a showWhen / requireWhen payload.  Returns None for empty groups."""
    if isinstance(raw, ConditionGroup):
        return raw
    if not isinstance(raw, dict):
        return None
    raw_rules = raw.get("rules")
    if not isinstance(raw_rules, list):
        raw_rules = raw.get("conditions") if isinstance(raw.get("conditions"), list) else []
    rules = tuple(r for r in (parse_rule(item) for item in raw_rules) if r is not None)
    if not rules:
        return None
    mode = "any" if str(raw.get("mode", "all")).lower() == "any" else "all"
    return ConditionGroup(mode=mode, rules=rules)


def group_to_dict(group: ConditionGroup | None) -> dict | None:
    if group is None:
        return None
    return {"mode": group.mode, "rules": [rule_to_dict(r) for r in group.rules]}


def rule_to_dict(rule: Rule) -> dict:
    if isinstance(rule, Equals):
        return {"fieldKey": rule.field_key, "operator": "eq", "value": rule.value}
    if isinstance(rule, NotEquals):
        return {"fieldKey": rule.field_key, "operator": "neq", "value": rule.value}
    if isinstance(rule, Contains):
        return {"fieldKey": rule.field_key, "operator": "contains", "value": rule.value}
    if isinstance(rule, NotContains):
        return {"fieldKey": rule.field_key, "operator": "not_contains", "value": rule.value}
    if isinstance(rule, GreaterThan):
        return {"fieldKey": rule.field_key, "operator": "gte" if rule.inclusive else "gt", "value": rule.value}
    if isinstance(rule, LessThan):
        return {"fieldKey": rule.field_key, "operator": "lte" if rule.inclusive else "lt", "value": rule.value}
    if isinstance(rule, Exists):
        return {"fieldKey": rule.field_key, "operator": "exists"}
    if isinstance(rule, NotExists):
        return {"fieldKey": rule.field_key, "operator": "not_exists"}
    if isinstance(rule, InSet):
        return {"fieldKey": rule.field_key, "operator": "in", "value": list(rule.values)}
    if isinstance(rule, NotInSet):
        return {"fieldKey": rule.field_key, "operator": "not_in", "value": list(rule.values)}
    raise TypeError(f"Unknown condition rule: {rule!r}")


# ── Evaluation ───────────────────────────────────────────────────────────────


def _as_text(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value).strip()


def _as_number(value) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def is_empty(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _equals(answer, expected) -> bool:
    if isinstance(answer, (list, tuple)):
        return _as_text(expected) in {_as_text(a) for a in answer}
    return _as_text(answer) == _as_text(expected)


def _contains(answer, expected) -> bool:
    needle = _as_text(expected)
    if isinstance(answer, (list, tuple)):
        return needle in {_as_text(a) for a in answer}
    return needle in _as_text(answer)


def _compare(answer, expected, greater: bool, inclusive: bool) -> bool:
    left, right = _as_number(answer), _as_number(expected)
    if left is None or right is None:
        return False
    if left == right:
        return inclusive
    return left > right if greater else left < right


def _in_set(answer, values: tuple) -> bool:
    allowed = set(values)
    if isinstance(answer, (list, tuple)):
        return any(_as_text(a) in allowed for a in answer)
    return _as_text(answer) in allowed


def evaluate_rule(rule: Rule, values: dict, aliases: dict | None = None) -> bool:
    """Evaluate one rule against *values*.

    ``aliases`` maps a field id to the answer key its value is stored
    under, so rules authored against ids and keys read the same answer.
    """
    if not isinstance(rule, RULE_TYPES):
        raise TypeError(f"Unknown condition rule: {rule!r}")
    key = (aliases or {}).get(rule.field_key, rule.field_key)
    answer = values.get(key)
    if isinstance(rule, Equals):
        return _equals(answer, rule.value)
    if isinstance(rule, NotEquals):
        return not _equals(answer, rule.value)
    if isinstance(rule, Contains):
        return _contains(answer, rule.value)
    if isinstance(rule, NotContains):
        return not _contains(answer, rule.value)
    if isinstance(rule, GreaterThan):
        return _compare(answer, rule.value, greater=True, inclusive=rule.inclusive)
    if isinstance(rule, LessThan):
        return _compare(answer, rule.value, greater=False, inclusive=rule.inclusive)
    if isinstance(rule, Exists):
        return not is_empty(answer)
    if isinstance(rule, NotExists):
        return is_empty(answer)
    if isinstance(rule, InSet):
        return _in_set(answer, rule.values)
    return not _in_set(answer, rule.values)


def evaluate_group(group: ConditionGroup | None, values: dict, aliases: dict | None = None) -> bool:
    """True when the group is satisfied; an absent group is always satisfied."""
    if group is None or not group.rules:
        return True
    results = (evaluate_rule(rule, values, aliases) for rule in group.rules)
    return any(results) if group.mode == "any" else all(results)
