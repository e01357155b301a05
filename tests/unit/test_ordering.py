"""
Unit tests for table selection and ordering.
"""

from __future__ import annotations

import logging

import pytest

from dbcloner.models import CloneOptions
from dbcloner.ordering import order_tables, select_tables


class TestSelectTables:
    """Tests for select_tables."""

    def test_all_tables_sorted_by_default(self) -> None:
        assert select_tables(["b", "c", "a"], CloneOptions()) == ["a", "b", "c"]

    def test_exclusions_are_removed(self) -> None:
        options = CloneOptions(exclude_tables=("audit_log",))
        assert select_tables(["users", "audit_log"], options) == ["users"]

    def test_allow_list_keeps_given_order(self) -> None:
        options = CloneOptions(tables=("orders", "users"))
        assert select_tables(["users", "orders", "items"], options) == ["orders", "users"]

    def test_exclusion_applies_to_allow_list(self) -> None:
        options = CloneOptions(tables=("orders", "users"), exclude_tables=("users",))
        assert select_tables(["users", "orders"], options) == ["orders"]

    def test_unknown_allowed_table_raises(self) -> None:
        """Every missing table is named in the error."""
        options = CloneOptions(tables=("users", "ghost", "phantom"))

        with pytest.raises(ValueError, match="ghost, phantom"):
            select_tables(["users"], options)


class TestOrderTables:
    """Tests for order_tables."""

    def test_alphabetical_without_foreign_keys(self) -> None:
        assert order_tables(["c", "a", "b"]) == ["a", "b", "c"]

    def test_parents_before_children(self) -> None:
        """A table referenced by another comes first even if it sorts later."""
        foreign_keys = {"orders": {"users"}, "items": {"orders"}, "users": set()}

        assert order_tables(["items", "orders", "users"], foreign_keys) == [
            "users",
            "orders",
            "items",
        ]

    def test_independent_tables_ordered_by_name(self) -> None:
        foreign_keys = {"b": {"z"}, "a": set(), "z": set()}

        assert order_tables(["b", "a", "z"], foreign_keys) == ["a", "z", "b"]

    def test_self_reference_is_ignored(self) -> None:
        assert order_tables(["tree"], {"tree": {"tree"}}) == ["tree"]

    def test_references_outside_selection_are_ignored(self) -> None:
        assert order_tables(["orders"], {"orders": {"users"}}) == ["orders"]

    def test_order_is_deterministic(self) -> None:
        """Input order does not change the result."""
        foreign_keys = {"c": {"a"}, "d": {"b"}, "b": set(), "a": set()}

        results = {
            tuple(order_tables(tables, foreign_keys))
            for tables in (["a", "b", "c", "d"], ["d", "c", "b", "a"], ["c", "a", "d", "b"])
        }

        assert results == {("a", "b", "c", "d")}

    def test_cycle_is_broken_with_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        """Mutually dependent tables are still all returned, once each."""
        foreign_keys = {"a": {"b"}, "b": {"a"}, "c": {"a"}}

        with caplog.at_level(logging.WARNING, logger="dbcloner.ordering"):
            first = order_tables(["a", "b", "c"], foreign_keys)
            second = order_tables(["c", "b", "a"], foreign_keys)

        assert sorted(first) == ["a", "b", "c"]
        assert first == second
        assert first.index("a") < first.index("c")
        assert "Breaking foreign-key cycle" in caplog.text

    def test_configured_order_comes_first(self) -> None:
        foreign_keys = {"orders": {"users"}}

        assert order_tables(
            ["orders", "users", "settings"],
            foreign_keys,
            configured_order=["settings", "missing"],
        ) == ["settings", "users", "orders"]

    def test_configured_order_without_foreign_keys(self) -> None:
        assert order_tables(["a", "b", "c"], configured_order=["c"]) == ["c", "a", "b"]
