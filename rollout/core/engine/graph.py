"""
Dependency graph resolver — apply and destroy ordering for resource nodes.

Pure functions over the static node declarations. No I/O, no cloud
calls. Orders are deterministic: nodes with no constraint between them
keep their declaration order, so dry-run plans are reproducible.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from rollout.core.config.loader import ConfigError
from rollout.core.models.resource import ResourceNode, Stage, Target

logger = logging.getLogger(__name__)


def validate_nodes(nodes: list[ResourceNode]) -> list[str]:
    """Validate the node dependency DAG.

    Checks for:
    - Duplicate node IDs
    - References to non-existent node IDs
    - Cycles (Kahn's algorithm)
    - App nodes that do not transitively depend on any infra node

    Returns:
        List of error strings (empty = valid).
    """
    errors: list[str] = []
    ids = {n.id for n in nodes}

    seen: set[str] = set()
    for n in nodes:
        if n.id in seen:
            errors.append(f"Duplicate node ID: {n.id}")
        seen.add(n.id)

    for n in nodes:
        for dep in n.depends_on:
            if dep not in ids:
                errors.append(f"Node '{n.id}' depends on unknown node '{dep}'")

    if errors:
        return errors

    # Cycle detection (Kahn's algorithm)
    in_degree: dict[str, int] = {n.id: len(set(n.depends_on)) for n in nodes}
    adj: dict[str, list[str]] = {n.id: [] for n in nodes}
    for n in nodes:
        for dep in set(n.depends_on):
            adj[dep].append(n.id)

    queue = [nid for nid, deg in in_degree.items() if deg == 0]
    processed = 0
    while queue:
        nid = queue.pop(0)
        processed += 1
        for successor in adj[nid]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if processed < len(nodes):
        stuck = sorted(nid for nid, deg in in_degree.items() if deg > 0)
        errors.append(f"Dependency cycle detected among: {', '.join(stuck)}")
        return errors

    by_id = {n.id: n for n in nodes}
    for n in nodes:
        if n.stage != Stage.APP:
            continue
        closure = _closure(n.id, lambda x: by_id[x].depends_on)
        if not any(by_id[d].stage == Stage.INFRA for d in closure):
            errors.append(f"App node '{n.id}' does not depend on any infra node")

    return errors


def _closure(start: str, edges) -> list[str]:
    """Transitive closure of ``start`` along ``edges`` (excluding start)."""
    found: list[str] = []
    seen = {start}
    stack = list(edges(start))
    while stack:
        nid = stack.pop()
        if nid in seen:
            continue
        seen.add(nid)
        found.append(nid)
        stack.extend(edges(nid))
    return found


@dataclass
class DestroyOrder:
    """Nodes to destroy, dependents first, plus outside dependents.

    ``dependents`` maps each node outside the requested stage to the
    in-stage nodes it depends on directly. If any of them is still
    present, it blocks its branch.
    """

    target: Target
    nodes: list[ResourceNode] = field(default_factory=list)
    dependents: dict[str, list[str]] = field(default_factory=dict)

    @property
    def ids(self) -> list[str]:
        return [n.id for n in self.nodes]


class ResourceGraph:
    """Validated, immutable set of resource nodes with ordering queries."""

    def __init__(self, nodes: list[ResourceNode]):
        errors = validate_nodes(nodes)
        if errors:
            raise ConfigError("Invalid resource graph: " + "; ".join(errors))
        self._nodes = list(nodes)
        self._by_id = {n.id: n for n in nodes}
        self._index = {n.id: i for i, n in enumerate(nodes)}
        self._dependents: dict[str, list[str]] = {n.id: [] for n in nodes}
        for n in nodes:
            for dep in n.depends_on:
                if n.id not in self._dependents[dep]:
                    self._dependents[dep].append(n.id)

    # ── Lookup ──────────────────────────────────────────────────

    @property
    def nodes(self) -> list[ResourceNode]:
        return list(self._nodes)

    def get(self, node_id: str) -> ResourceNode:
        return self._by_id[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._by_id

    def __iter__(self):
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def stage_nodes(self, stage: Stage) -> list[ResourceNode]:
        return [n for n in self._nodes if n.stage == stage]

    def dependencies(self, node_id: str, transitive: bool = False) -> list[str]:
        """Ids a node depends on, in declaration order."""
        if not transitive:
            return list(self._by_id[node_id].depends_on)
        closure = _closure(node_id, lambda x: self._by_id[x].depends_on)
        return sorted(closure, key=self._index.__getitem__)

    def dependents(self, node_id: str, transitive: bool = False) -> list[str]:
        """Ids that depend on a node, in declaration order."""
        if not transitive:
            return list(self._dependents[node_id])
        closure = _closure(node_id, lambda x: self._dependents[x])
        return sorted(closure, key=self._index.__getitem__)

    # ── Ordering ────────────────────────────────────────────────

    def topological(self, ids: set[str]) -> list[ResourceNode]:
        """Topologically sort a subset, ties broken by declaration order."""
        in_degree = {
            nid: sum(1 for d in set(self._by_id[nid].depends_on) if d in ids)
            for nid in ids
        }
        heap = [(self._index[nid], nid) for nid, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)

        ordered: list[ResourceNode] = []
        while heap:
            _, nid = heapq.heappop(heap)
            ordered.append(self._by_id[nid])
            for succ in self._dependents[nid]:
                if succ not in ids:
                    continue
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(heap, (self._index[succ], succ))
        return ordered

    def order_for_apply(self, target: Target | Stage) -> list[ResourceNode]:
        """Nodes of the target's stage(s) plus all their transitive dependencies."""
        stages = Target(str(target)).stages
        ids: set[str] = set()
        for n in self._nodes:
            if n.stage in stages:
                ids.add(n.id)
                ids.update(self.dependencies(n.id, transitive=True))
        order = self.topological(ids)
        logger.debug("Apply order for %s: %s", target, [n.id for n in order])
        return order

    def order_for_destroy(self, target: Target | Stage) -> DestroyOrder:
        """Reverse apply order of the target's own nodes.

        Dependencies pulled in by the apply order that belong to another
        stage are never destroyed. Outside nodes depending on an in-stage
        node are reported in ``dependents`` instead.
        """
        target = Target(str(target))
        stages = target.stages
        in_scope = [n for n in self.order_for_apply(target) if n.stage in stages]
        scope_ids = {n.id for n in in_scope}

        dependents: dict[str, list[str]] = {}
        for n in self._nodes:
            if n.id in scope_ids:
                continue
            hits = [d for d in n.depends_on if d in scope_ids]
            if hits:
                dependents[n.id] = hits

        return DestroyOrder(
            target=target,
            nodes=list(reversed(in_scope)),
            dependents=dependents,
        )

    def blocked_branches(
        self,
        order: DestroyOrder,
        live_dependents: set[str] | list[str],
    ) -> dict[str, list[str]]:
        """Map each in-scope node that must not be destroyed to its blockers.

        A blocked branch is the node a live outside dependent relies on,
        plus every in-scope node that node itself depends on.
        """
        scope_ids = set(order.ids)
        blocked: dict[str, set[str]] = {}
        for ext in live_dependents:
            for nid in order.dependents.get(ext, []):
                branch = [nid] + [
                    d for d in self.dependencies(nid, transitive=True) if d in scope_ids
                ]
                for member in branch:
                    blocked.setdefault(member, set()).add(ext)
        return {
            nid: sorted(blocked[nid], key=self._index.__getitem__)
            for nid in order.ids
            if nid in blocked
        }
