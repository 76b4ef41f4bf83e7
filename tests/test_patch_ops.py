"""
Tests: JSON-Patch op parsing and application over answer documents.
"""

import pytest

from appflow.core.exceptions import ValidationError
from appflow.services.patch_ops import (
    Add,
    Move,
    PatchApplyError,
    Replace,
    apply_ops,
    op_to_dict,
    parse_ops,
)

DOC = {"name": "Ada", "topics": ["math", "engines"], "address": {"city": "London"}, "a/b": 1}


def _apply(*raw_ops, doc=DOC):
    return apply_ops(doc, parse_ops(list(raw_ops)))


class TestParse:
    def test_ops_become_variants(self):
        ops = parse_ops([
            {"op": "replace", "path": "/name", "value": "Ada L."},
            {"op": "add", "path": "/topics/-", "value": "poetry"},
            {"op": "move", "from": "/name", "path": "/full_name"},
        ])
        assert ops == [Replace("/name", "Ada L."), Add("/topics/-", "poetry"), Move("/name", "/full_name")]
        assert op_to_dict(ops[2]) == {"op": "move", "from": "/name", "path": "/full_name"}

    def test_errors_are_keyed_by_index(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_ops([
                {"op": "replace", "path": "/name", "value": "ok"},
                {"op": "upsert", "path": "/name"},
                {"op": "add", "path": "name", "value": 1},
                {"op": "replace", "path": "/name"},
                {"op": "move", "from": "/address", "path": "/address/city"},
            ])
        assert set(exc_info.value.details) == {"1", "2", "3", "4"}

    @pytest.mark.parametrize("raw", [[], None, "replace"])
    def test_empty_patch_is_rejected(self, raw):
        with pytest.raises(ValidationError):
            parse_ops(raw)


class TestApply:
    def test_replace_and_nested_paths(self):
        result = _apply({"op": "replace", "path": "/address/city", "value": "Paris"})
        assert result["address"] == {"city": "Paris"}

    def test_input_document_is_never_mutated(self):
        _apply({"op": "remove", "path": "/topics/0"}, {"op": "add", "path": "/topics/-", "value": "x"})
        assert DOC["topics"] == ["math", "engines"]

    def test_list_insert_and_append(self):
        result = _apply(
            {"op": "add", "path": "/topics/0", "value": "logic"},
            {"op": "add", "path": "/topics/-", "value": "music"},
        )
        assert result["topics"] == ["logic", "math", "engines", "music"]

    def test_escaped_pointer_tokens(self):
        assert _apply({"op": "replace", "path": "/a~1b", "value": 2})["a/b"] == 2

    def test_move_and_copy(self):
        result = _apply(
            {"op": "copy", "from": "/address/city", "path": "/birthplace"},
            {"op": "move", "from": "/name", "path": "/full_name"},
        )
        assert result["birthplace"] == "London"
        assert result["full_name"] == "Ada"
        assert "name" not in result

    def test_failed_test_op_aborts_whole_patch(self):
        with pytest.raises(PatchApplyError) as exc_info:
            _apply(
                {"op": "replace", "path": "/name", "value": "Grace"},
                {"op": "test", "path": "/address/city", "value": "Paris"},
            )
        assert exc_info.value.index == 1
        assert exc_info.value.op == "test"

    @pytest.mark.parametrize("raw", [
        {"op": "replace", "path": "/missing", "value": 1},
        {"op": "remove", "path": "/topics/5"},
        {"op": "add", "path": "/nowhere/deep", "value": 1},
        {"op": "replace", "path": "/topics/01", "value": 1},
    ])
    def test_unresolvable_paths(self, raw):
        with pytest.raises(PatchApplyError):
            _apply(raw)
