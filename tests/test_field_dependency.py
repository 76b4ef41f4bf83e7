"""
Tests: field dependency graph (expansion closure, aliasing, caching).
"""

from appflow.services.field_dependency import (
    FieldDependencyGraph,
    get_dependency_graph,
    invalidate_graph_cache,
)
from appflow.services.form_schema import get_form_fields


def _show_when(key, operator="exists", value=None):
    rule = {"fieldKey": key, "operator": operator}
    if value is not None:
        rule["value"] = value
    return {"logic": {"showWhen": {"rules": [rule]}}}


CHAIN_FORM = {"sections": [{"fields": [
    {"id": "f_participated", "key": "participated", "type": "select"},
    {"id": "f_year", "key": "participation_year", "type": "text",
     **_show_when("participated", "eq", "yes")},
    {"id": "f_details", "key": "details", "type": "textarea", **_show_when("participation_year")},
    {"id": "f_motivation", "key": "motivation", "type": "textarea"},
]}]}


def _graph(schema=CHAIN_FORM):
    return FieldDependencyGraph(get_form_fields(schema))


class TestExpand:
    def test_transitive_dependents_are_included(self):
        assert _graph().expand(["f_participated"]) == {"f_participated", "f_year", "f_details"}

    def test_field_without_dependents_expands_to_itself(self):
        assert _graph().expand(["f_motivation"]) == {"f_motivation"}

    def test_answer_keys_alias_to_field_ids(self):
        graph = _graph()
        assert graph.expand(["participation_year"]) == {"f_year", "f_details"}
        assert graph.canonical("details") == "f_details"
        assert graph.answer_key("f_year") == "participation_year"

    def test_unknown_seed_passes_through(self):
        assert _graph().expand(["ghost"]) == {"ghost"}

    def test_expand_is_a_fixed_point(self):
        graph = _graph()
        for seeds in (["f_participated"], ["details", "f_motivation"], ["ghost", "participated"], []):
            once = graph.expand(seeds)
            assert graph.expand(once) == once

    def test_cycles_terminate(self):
        schema = {"sections": [{"fields": [
            {"key": "a", **_show_when("b")},
            {"key": "b", **_show_when("c")},
            {"key": "c", **_show_when("a")},
            {"key": "d"},
        ]}]}
        graph = _graph(schema)
        assert graph.expand(["a"]) == {"a", "b", "c"}
        assert graph.dependents("a") == {"c"}

    def test_require_when_also_creates_edges(self):
        schema = {"sections": [{"fields": [
            {"key": "member", "type": "checkbox"},
            {"key": "member_id", "requireWhen": {"rules": [{"fieldKey": "member", "operator": "eq", "value": True}]}},
        ]}]}
        assert _graph(schema).expand(["member"]) == {"member", "member_id"}

    def test_len_and_contains(self):
        graph = _graph()
        assert len(graph) == 4
        assert "f_year" in graph and "participation_year" in graph
        assert "ghost" not in graph


class TestGraphCache:
    def test_graph_is_built_once_per_form_version(self, make_form):
        form_id = make_form(CHAIN_FORM)
        first = get_dependency_graph(form_id)
        assert get_dependency_graph(form_id) is first
        invalidate_graph_cache(form_id)
        assert get_dependency_graph(form_id) is not first
