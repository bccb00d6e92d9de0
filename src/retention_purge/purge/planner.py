"""Dependency order planning.

Orders purge tables so that every child is handled before its parents,
using foreign keys plus configured join rules as edges.  Ties are broken by
table name so the same graph always yields the same order.  A cycle is a
configuration error -- there is no safe static order for one, and this
module never breaks cycles on its own.

Usage:
    from retention_purge.purge.planner import build_plan

    plan = build_plan(resolution, schema)
    for node in plan.nodes:
        ...
    blocked = plan.downstream_of("order_lines")  # parents to skip if it fails
"""

import heapq
from collections import defaultdict
from dataclasses import dataclass, field

from retention_purge.errors import ConfigurationError
from retention_purge.purge.predicate import Resolution, TableNode
from retention_purge.schema.models import DatabaseSchema


@dataclass
class PurgePlan:
    """Ordered purge tables.

    Attributes:
        nodes: Tables in execution order (children before parents).
        edges: ``(child, parent)`` pairs among planned tables.
        skipped: Tables left out of the plan, with the reason.
    """

    nodes: list[TableNode] = field(default_factory=list)
    edges: set[tuple[str, str]] = field(default_factory=set)
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def order(self) -> list[str]:
        return [node.name for node in self.nodes]

    def downstream_of(self, table: str) -> set[str]:
        """Planned tables that must not run if ``table`` failed.

        These are the transitive parents of ``table``: deleting them while
        the failed child still holds old rows would break dependency order.
        """
        parents: dict[str, set[str]] = defaultdict(set)
        for child, parent in self.edges:
            parents[child].add(parent)

        blocked: set[str] = set()
        stack = [table]
        while stack:
            for parent in parents.get(stack.pop(), ()):
                if parent not in blocked:
                    blocked.add(parent)
                    stack.append(parent)
        return blocked


def _topological_sort(tables: list[str], edges: set[tuple[str, str]]) -> list[str]:
    """Kahn's algorithm, children first, ties broken by name.

    Args:
        tables: Table names to order.
        edges: ``(child, parent)`` pairs; the child must precede the parent.

    Returns:
        Tables in dependency order.

    Raises:
        ConfigurationError: If the edges contain a cycle (including a
            self-referencing table).
    """
    pending_children: dict[str, int] = {t: 0 for t in tables}
    parents: dict[str, set[str]] = defaultdict(set)
    for child, parent in edges:
        if parent not in parents[child]:
            parents[child].add(parent)
            pending_children[parent] += 1

    ready = [t for t, count in pending_children.items() if count == 0]
    heapq.heapify(ready)

    ordered: list[str] = []
    while ready:
        table = heapq.heappop(ready)
        ordered.append(table)
        for parent in sorted(parents.get(table, ())):
            pending_children[parent] -= 1
            if pending_children[parent] == 0:
                heapq.heappush(ready, parent)

    if len(ordered) != len(tables):
        stuck = sorted(t for t, count in pending_children.items() if count > 0)
        raise ConfigurationError(
            f"Foreign-key cycle among purge tables: {', '.join(stuck)}. "
            f"Exclude one of them or break the cycle before purging."
        )
    return ordered


def build_plan(resolution: Resolution, schema: DatabaseSchema) -> PurgePlan:
    """Order resolved nodes into a ``PurgePlan``.

    Edges are every FK between two planned tables plus every join-rule
    dependency (a join-based child must be purged while its parent rows
    still exist).

    Raises:
        ConfigurationError: On a cycle among planned tables.
    """
    planned = set(resolution.nodes)
    edges: set[tuple[str, str]] = set()

    for fk in schema.foreign_keys:
        if fk.child_table in planned and fk.parent_table in planned:
            edges.add((fk.child_table, fk.parent_table))

    for node in resolution.nodes.values():
        parent = node.join_parent
        if parent is not None and parent in planned:
            edges.add((node.name, parent))

    order = _topological_sort(sorted(planned), edges)
    return PurgePlan(
        nodes=[resolution.nodes[name] for name in order],
        edges=edges,
        skipped=dict(resolution.skipped),
    )
