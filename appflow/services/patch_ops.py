"""
JSON Patch operations (RFC 6902) over answer documents.

Raw op dicts are parsed into frozen variants once (``parse_ops``), which
is where malformed input is rejected.  ``apply_ops`` always works on a deep
copy and never mutates the document it is given.

Paths are JSON Pointers (RFC 6901): ``/key``, ``/list/0``, ``/list/-``
(append, ``add`` only), with ``~1`` for ``/`` and ``~0`` for ``~``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from appflow.core.exceptions import ValidationError

VALID_OPS = ("replace", "add", "remove", "test", "move", "copy")


class PatchApplyError(Exception):
    """Raised when an op cannot be applied (missing path or failed test)."""

    def __init__(self, index: int, op: str, path: str, reason: str):
        self.index = index
        self.op = op
        self.path = path
        self.reason = reason
        super().__init__(f"op #{index} ({op} {path}): {reason}")


# ── Op variants ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Replace:
    path: str
    value: Any


@dataclass(frozen=True)
class Add:
    path: str
    value: Any


@dataclass(frozen=True)
class Remove:
    path: str


@dataclass(frozen=True)
class Test:
    path: str
    value: Any

    __test__ = False  # not a pytest test class


@dataclass(frozen=True)
class Move:
    from_path: str
    path: str


@dataclass(frozen=True)
class Copy:
    from_path: str
    path: str


PatchOp = Replace | Add | Remove | Test | Move | Copy


# ── Parsing ──────────────────────────────────────────────────────────────────


def _check_op(raw) -> str | None:
    if not isinstance(raw, dict):
        return "Operation must be an object"
    op = raw.get("op")
    if op not in VALID_OPS:
        return f"Invalid op: {op!r}"
    path = raw.get("path")
    if not isinstance(path, str) or not path.startswith("/"):
        return "Path must start with '/'"
    if op in ("add", "replace", "test") and "value" not in raw:
        return f"Value is required for {op}"
    if op in ("move", "copy"):
        source = raw.get("from")
        if not isinstance(source, str) or not source.startswith("/"):
            return f"'from' path must start with '/' for {op}"
        if op == "move" and (path == source or path.startswith(source + "/")):
            return "Cannot move a value into its own child"
    return None


def parse_op(raw: dict) -> PatchOp:
    op = raw["op"]
    if op == "replace":
        return Replace(raw["path"], copy.deepcopy(raw["value"]))
    if op == "add":
        return Add(raw["path"], copy.deepcopy(raw["value"]))
    if op == "remove":
        return Remove(raw["path"])
    if op == "test":
        return Test(raw["path"], copy.deepcopy(raw["value"]))
    if op == "move":
        return Move(raw["from"], raw["path"])
    return Copy(raw["from"], raw["path"])


def parse_ops(raw_ops) -> list[PatchOp]:
    """Validate and parse a list of op dicts.

    Raises:
        ValidationError: with ``details`` keyed by op index for every bad op.
    """
    if not isinstance(raw_ops, list) or not raw_ops:
        raise ValidationError("Patch must contain at least one operation")
    errors = {}
    for index, raw in enumerate(raw_ops):
        problem = _check_op(raw)
        if problem:
            errors[str(index)] = problem
    if errors:
        raise ValidationError("Invalid patch operations", details=errors)
    return [parse_op(raw) for raw in raw_ops]


def op_to_dict(op: PatchOp) -> dict:
    if isinstance(op, Replace):
        return {"op": "replace", "path": op.path, "value": op.value}
    if isinstance(op, Add):
        return {"op": "add", "path": op.path, "value": op.value}
    if isinstance(op, Remove):
        return {"op": "remove", "path": op.path}
    if isinstance(op, Test):
        return {"op": "test", "path": op.path, "value": op.value}
    if isinstance(op, Move):
        return {"op": "move", "from": op.from_path, "path": op.path}
    if isinstance(op, Copy):
        return {"op": "copy", "from": op.from_path, "path": op.path}
    raise TypeError(f"Unknown patch op: {op!r}")


# ── JSON Pointer helpers ─────────────────────────────────────────────────────


def _tokens(pointer: str) -> list[str]:
    return [t.replace("~1", "/").replace("~0", "~") for t in pointer.split("/")[1:]]


def _list_index(container: list, token: str, allow_end: bool) -> int:
    if token == "-" and allow_end:
        return len(container)
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        raise KeyError(token)
    index = int(token)
    limit = len(container) if allow_end else len(container) - 1
    if index > limit:
        raise KeyError(token)
    return index


def _child(container, token: str):
    if isinstance(container, dict):
        if token not in container:
            raise KeyError(token)
        return container[token]
    if isinstance(container, list):
        return container[_list_index(container, token, allow_end=False)]
    raise KeyError(token)


def _resolve_parent(doc, pointer: str):
    tokens = _tokens(pointer)
    parent = doc
    for token in tokens[:-1]:
        parent = _child(parent, token)
    return parent, tokens[-1]


def _get(doc, pointer: str):
    value = doc
    for token in _tokens(pointer):
        value = _child(value, token)
    return value


def _add(doc, pointer: str, value):
    parent, last = _resolve_parent(doc, pointer)
    if isinstance(parent, dict):
        parent[last] = value
    elif isinstance(parent, list):
        parent.insert(_list_index(parent, last, allow_end=True), value)
    else:
        raise KeyError(last)


def _remove(doc, pointer: str):
    parent, last = _resolve_parent(doc, pointer)
    if isinstance(parent, dict):
        if last not in parent:
            raise KeyError(last)
        return parent.pop(last)
    if isinstance(parent, list):
        return parent.pop(_list_index(parent, last, allow_end=False))
    raise KeyError(last)


def _replace(doc, pointer: str, value):
    parent, last = _resolve_parent(doc, pointer)
    if isinstance(parent, dict):
        if last not in parent:
            raise KeyError(last)
        parent[last] = value
    elif isinstance(parent, list):
        parent[_list_index(parent, last, allow_end=False)] = value
    else:
        raise KeyError(last)


# ── Application ──────────────────────────────────────────────────────────────


def apply_op(doc, op: PatchOp, index: int = 0):
    """Apply one op to *doc* in place."""
    try:
        if isinstance(op, Replace):
            _replace(doc, op.path, copy.deepcopy(op.value))
        elif isinstance(op, Add):
            _add(doc, op.path, copy.deepcopy(op.value))
        elif isinstance(op, Remove):
            _remove(doc, op.path)
        elif isinstance(op, Test):
            if _get(doc, op.path) != op.value:
                raise PatchApplyError(index, "test", op.path, "value does not match")
        elif isinstance(op, Move):
            _add(doc, op.path, _remove(doc, op.from_path))
        elif isinstance(op, Copy):
            _add(doc, op.path, copy.deepcopy(_get(doc, op.from_path)))
        else:
            raise TypeError(f"Unknown patch op: {op!r}")
    except KeyError as exc:
        name = op_to_dict(op)["op"]
        raise PatchApplyError(index, name, op.path, f"path segment {exc.args[0]!r} not found") from exc


def apply_ops(document: dict, ops: list[PatchOp]) -> dict:
    """Return a patched deep copy of *document*; the input is left untouched.

    The ops of one call are atomic: the first failing op raises
    PatchApplyError and no partial result escapes.
    """
    doc = copy.deepcopy(document)
    for index, op in enumerate(ops):
        apply_op(doc, op, index)
    return doc
