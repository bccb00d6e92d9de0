"""Tests for dependency ordering."""

import pytest

from fakes import make_fk, make_schema, make_table
from retention_purge.config.models import JoinRule, RetentionSettings
from retention_purge.errors import ConfigurationError
from retention_purge.purge.planner import build_plan
from retention_purge.purge.predicate import resolve_nodes


def _dated(name: str, *fk_columns: str):
    columns = {"id": "integer", "created_at": "timestamp"}
    columns.update({c: "integer" for c in fk_columns})
    return make_table(name, columns)


def _plan(schema, settings=None):
    settings = settings or RetentionSettings()
    return build_plan(resolve_nodes(schema, settings), schema)


class TestOrdering:
    """Children come before parents; ties are broken by name."""

    def test_child_before_parent(self) -> None:
        schema = make_schema(
            [_dated("parent"), _dated("child", "parent_id")],
            [make_fk("child", "parent_id", "parent")],
        )
        assert _plan(schema).order == ["child", "parent"]

    def test_diamond_is_deterministic(self) -> None:
        schema = make_schema(
            [
                _dated("root"),
                _dated("b_mid", "root_id"),
                _dated("a_mid", "root_id"),
                _dated("leaf", "a_id", "b_id"),
            ],
            [
                make_fk("b_mid", "root_id", "root"),
                make_fk("a_mid", "root_id", "root"),
                make_fk("leaf", "a_id", "a_mid"),
                make_fk("leaf", "b_id", "b_mid"),
            ],
        )
        first = _plan(schema).order
        assert first == ["leaf", "a_mid", "b_mid", "root"]
        assert all(_plan(schema).order == first for _ in range(5))

    def test_independent_tables_sorted_by_name(self) -> None:
        schema = make_schema([_dated("zeta"), _dated("alpha"), _dated("mu")])
        assert _plan(schema).order == ["alpha", "mu", "zeta"]

    def test_join_rule_adds_edge(self) -> None:
        schema = make_schema(
            [_dated("aaa_parent"), make_table("zzz_child", {"id": "integer", "parent_id": "integer"})],
            [make_fk("zzz_child", "parent_id", "aaa_parent")],
        )
        plan = _plan(schema, RetentionSettings(joins=[JoinRule(child="zzz_child", parent="aaa_parent")]))
        assert plan.order == ["zzz_child", "aaa_parent"]
        assert ("zzz_child", "aaa_parent") in plan.edges

    def test_edges_to_unplanned_tables_ignored(self) -> None:
        schema = make_schema(
            [_dated("parent"), _dated("child", "parent_id")],
            [make_fk("child", "parent_id", "parent")],
        )
        plan = _plan(schema, RetentionSettings(exclude=["parent"]))
        assert plan.order == ["child"]
        assert plan.edges == set()
        assert plan.skipped == {"parent": "excluded by configuration"}


class TestCycles:
    def test_cycle_is_configuration_error(self) -> None:
        schema = make_schema(
            [_dated("a", "b_id"), _dated("b", "a_id")],
            [make_fk("a", "b_id", "b"), make_fk("b", "a_id", "a")],
        )
        with pytest.raises(ConfigurationError, match="a, b"):
            _plan(schema)

    def test_self_reference_is_a_cycle(self) -> None:
        schema = make_schema([_dated("tree", "parent_id")], [make_fk("tree", "parent_id", "tree")])
        with pytest.raises(ConfigurationError, match="cycle"):
            _plan(schema)

    def test_excluding_one_member_breaks_cycle(self) -> None:
        schema = make_schema(
            [_dated("a", "b_id"), _dated("b", "a_id")],
            [make_fk("a", "b_id", "b"), make_fk("b", "a_id", "a")],
        )
        assert _plan(schema, RetentionSettings(exclude=["b"])).order == ["a"]


class TestDownstream:
    def test_transitive_parents(self) -> None:
        schema = make_schema(
            [_dated("top"), _dated("mid", "top_id"), _dated("leaf", "mid_id"), _dated("other")],
            [make_fk("mid", "top_id", "top"), make_fk("leaf", "mid_id", "mid")],
        )
        plan = _plan(schema)
        assert plan.downstream_of("leaf") == {"mid", "top"}
        assert plan.downstream_of("top") == set()
        assert plan.downstream_of("other") == set()
