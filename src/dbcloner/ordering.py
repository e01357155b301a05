"""
Table selection and copy ordering.

Tables are copied one at a time, so a table referencing another must be
copied after it. The order is chosen as:

1. an explicit per-operation table list, in the order given;
2. otherwise a configured server-wide order, for the tables it names,
   followed by the remaining tables;
3. remaining tables in foreign-key order (referenced tables first), with
   ties broken by name;
4. alphabetical order when dependency ordering is off.

Ordering is deterministic: the same tables and foreign keys always produce
the same order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from graphlib import CycleError, TopologicalSorter

from dbcloner.models import CloneOptions

logger = logging.getLogger(__name__)


def select_tables(available: Sequence[str], options: CloneOptions) -> list[str]:
    """
    Apply the allow and deny lists of ``options`` to the source tables.

    Args:
        available: Tables present in the source.
        options: Clone options.

    Returns:
        Selected tables. Allow-list order is kept; otherwise sorted by name.

    Raises:
        ValueError: If the allow-list names tables missing from the source.
    """
    excluded = set(options.exclude_tables)
    if options.tables is not None:
        present = set(available)
        unknown = [t for t in options.tables if t not in present]
        if unknown:
            raise ValueError(f"Tables not found in source: {', '.join(unknown)}")
        return [t for t in options.tables if t not in excluded]
    return sorted(t for t in available if t not in excluded)


def order_tables(
    tables: Iterable[str],
    foreign_keys: Mapping[str, set[str]] | None = None,
    *,
    configured_order: Sequence[str] = (),
) -> list[str]:
    """
    Compute the copy order of ``tables``.

    Args:
        tables: Tables to order.
        foreign_keys: Table -> tables it references. Empty or None gives
            alphabetical order.
        configured_order: Tables that must come first, in this order. Names
            not in ``tables`` are ignored.

    Returns:
        Every table exactly once.
    """
    remaining = sorted(set(tables))
    wanted = set(remaining)

    head = []
    for table in configured_order:
        if table in wanted and table not in head:
            head.append(table)
    placed = set(head)
    rest = [t for t in remaining if t not in placed]

    if not foreign_keys:
        return head + rest

    graph: dict[str, set[str]] = {}
    for table in rest:
        parents = foreign_keys.get(table, set())
        graph[table] = {p for p in parents if p in wanted and p not in placed and p != table}

    return head + _topological_order(graph)


def _topological_order(graph: dict[str, set[str]]) -> list[str]:
    """Parents before children, ties by name, cycles broken one edge at a time."""
    while True:
        # Insert in name order so cycle detection is reproducible
        sorter: TopologicalSorter[str] = TopologicalSorter()
        for node in sorted(graph):
            sorter.add(node, *sorted(graph[node]))
        try:
            sorter.prepare()
        except CycleError as e:
            _break_cycle(graph, e)
            continue

        ordered: list[str] = []
        while sorter.is_active():
            ready = sorted(sorter.get_ready())
            ordered.extend(ready)
            sorter.done(*ready)
        return ordered


def _break_cycle(graph: dict[str, set[str]], error: CycleError) -> None:
    cycle = list(error.args[1]) if len(error.args) > 1 else []
    if len(cycle) < 2:
        raise error
    logger.warning("Breaking foreign-key cycle: %s", " -> ".join(cycle))
    # Each node of the cycle is a predecessor of the next one
    parent, child = cycle[0], cycle[1]
    graph[child].discard(parent)


__all__ = ["select_tables", "order_tables"]
