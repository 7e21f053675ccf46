"""
stratum/graph.py

Dependency graph over resources and outputs, and the operation graph that
orders the provider calls of a plan.

Nodes live in an arena (a list) and are addressed by integer index; edges are
sets of indices. An edge A -> B means "A depends on B", so B is applied before A
and destroyed after A. Topological order breaks ties by node index, which is
the declaration order, so every order produced here is deterministic.
"""

from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict

from stratum.config.expressions import find_references
from stratum.errors import ConfigError, CycleError, ReferenceError
from stratum.models.config import Configuration
from stratum.models.plan import Action, ResourceChange
from stratum.models.state import StateRecord

NodeKind = Literal["resource", "output"]

DESTROY_PHASE = "destroy"
APPLY_PHASE = "apply"


class GraphNode(BaseModel):
    """One arena entry: a resource address or 'output.<name>'."""

    model_config = ConfigDict(frozen=True)

    index: int
    key: str
    kind: NodeKind


class DependencyGraph:
    """A DAG of resources and outputs keyed by address."""

    def __init__(self) -> None:
        self._nodes: List[GraphNode] = []
        self._index: Dict[str, int] = {}
        self._deps: List[Set[int]] = []
        self._rdeps: List[Set[int]] = []

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __len__(self) -> int:
        return len(self._nodes)

    def add_node(self, key: str, kind: NodeKind = "resource") -> int:
        """Add a node, returning its index. Adding an existing key is a no-op."""
        if key in self._index:
            return self._index[key]
        idx = len(self._nodes)
        self._nodes.append(GraphNode(index=idx, key=key, kind=kind))
        self._index[key] = idx
        self._deps.append(set())
        self._rdeps.append(set())
        return idx

    def add_edge(self, source: str, target: str) -> None:
        """Record that `source` depends on `target`.

        Raises:
            ReferenceError: If `target` is not a node of this graph.
        """
        if target not in self._index:
            raise ReferenceError(target, source)
        src, dst = self._index[source], self._index[target]
        self._deps[src].add(dst)
        self._rdeps[dst].add(src)

    def node(self, key: str) -> GraphNode:
        return self._nodes[self._index[key]]

    def keys(self, kind: Optional[NodeKind] = None) -> List[str]:
        return [n.key for n in self._nodes if kind is None or n.kind == kind]

    def _keys(self, indices: Iterable[int]) -> List[str]:
        return [self._nodes[i].key for i in sorted(indices)]

    def dependencies(self, key: str) -> List[str]:
        """Direct dependencies of `key`, in declaration order."""
        return self._keys(self._deps[self._index[key]])

    def dependents(self, key: str) -> List[str]:
        """Direct dependents of `key`, in declaration order."""
        return self._keys(self._rdeps[self._index[key]])

    def _closure(self, start: int, edges: List[Set[int]]) -> Set[int]:
        seen: Set[int] = set()
        stack = list(edges[start])
        while stack:
            idx = stack.pop()
            if idx not in seen:
                seen.add(idx)
                stack.extend(edges[idx])
        return seen

    def ancestors(self, key: str) -> List[str]:
        """Everything `key` depends on, directly or transitively."""
        return self._keys(self._closure(self._index[key], self._deps))

    def descendants(self, key: str) -> List[str]:
        """Everything that depends on `key`, directly or transitively."""
        return self._keys(self._closure(self._index[key], self._rdeps))

    def roots(self) -> List[str]:
        """Nodes without dependencies."""
        return [n.key for n in self._nodes if not self._deps[n.index]]

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a list of keys (first key repeated last), or None."""
        white, grey, black = 0, 1, 2
        color = [white] * len(self._nodes)

        for start in range(len(self._nodes)):
            if color[start] != white:
                continue
            path: List[int] = [start]
            iters = [iter(sorted(self._deps[start]))]
            color[start] = grey
            while iters:
                nxt = next(iters[-1], None)
                if nxt is None:
                    color[path.pop()] = black
                    iters.pop()
                elif color[nxt] == grey:
                    cycle = path[path.index(nxt) :] + [nxt]
                    return [self._nodes[i].key for i in cycle]
                elif color[nxt] == white:
                    color[nxt] = grey
                    path.append(nxt)
                    iters.append(iter(sorted(self._deps[nxt])))
        return None

    def check_acyclic(self) -> None:
        """Raise CycleError if the graph has a cycle."""
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleError(cycle)

    def topological_order(self, kind: Optional[NodeKind] = None) -> List[str]:
        """Dependencies first; ties broken by declaration order.

        Raises:
            CycleError: If the graph has a cycle.
        """
        self.check_acyclic()
        pending = [len(d) for d in self._deps]
        ready = [i for i, count in enumerate(pending) if count == 0]
        heapq.heapify(ready)
        order: List[int] = []
        while ready:
            idx = heapq.heappop(ready)
            order.append(idx)
            for dependent in self._rdeps[idx]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return [
            self._nodes[i].key
            for i in order
            if kind is None or self._nodes[i].kind == kind
        ]

    def reverse_topological_order(self, kind: Optional[NodeKind] = None) -> List[str]:
        """Dependents first: the exact reverse of topological_order()."""
        return list(reversed(self.topological_order(kind)))


def build_graph(config: Configuration) -> DependencyGraph:
    """Build the dependency graph of a configuration.

    Raises:
        ReferenceError: If any reference names an undeclared resource, variable or output.
        ConfigError: If a resource references an output.
        CycleError: If the references form a cycle.
    """
    graph = DependencyGraph()
    for res in config.resources:
        graph.add_node(res.address, "resource")
    for name in config.outputs:
        graph.add_node(f"output.{name}", "output")

    for res in config.resources:
        for ref in find_references(res.attributes):
            if ref.kind == "var":
                if ref.target not in config.variables:
                    raise ReferenceError(ref.text, res.address)
                continue
            if ref.kind == "output":
                raise ConfigError(
                    f"{res.address}: resources cannot reference outputs ('{ref.text}')."
                )
            graph.add_edge(res.address, ref.node)
        for target in res.depends_on:
            if config.resource(target) is None:
                raise ReferenceError(target, res.address)
            graph.add_edge(res.address, target)

    for name, out in config.outputs.items():
        key = f"output.{name}"
        for ref in find_references(out.value):
            if ref.kind == "var":
                if ref.target not in config.variables:
                    raise ReferenceError(ref.text, key)
                continue
            if ref.node not in graph:
                raise ReferenceError(ref.text, key)
            graph.add_edge(key, ref.node)

    graph.check_acyclic()
    return graph


def build_graph_from_state(
    records: Sequence[StateRecord],
    config: Optional[Configuration] = None,
) -> DependencyGraph:
    """Build the resource graph used for destroy ordering.

    Declared resources come first in declaration order, followed by resources
    that only exist in state. A declared resource takes its edges from the
    configuration; a resource the configuration no longer declares takes them
    from its record's stored dependencies. Dependencies on resources that no
    longer exist anywhere are dropped.

    Raises:
        CycleError: If the edges form a cycle.
    """
    graph = DependencyGraph()
    config_graph = build_graph(config) if config is not None else None

    if config is not None:
        for res in config.resources:
            graph.add_node(res.address, "resource")
    for record in records:
        graph.add_node(record.address, "resource")

    if config_graph is not None:
        for key in config_graph.keys("resource"):
            for dep in config_graph.dependencies(key):
                graph.add_edge(key, dep)
    for record in records:
        if config is not None and config.resource(record.address) is not None:
            continue
        for dep in record.dependencies:
            if dep in graph:
                graph.add_edge(record.address, dep)

    graph.check_acyclic()
    return graph


def operation_key(phase: str, address: str) -> str:
    return f"{phase}:{address}"


def split_operation_key(key: str) -> Tuple[str, str]:
    phase, address = key.split(":", 1)
    return phase, address


def build_operation_graph(changes: Sequence[ResourceChange]) -> DependencyGraph:
    """Build the graph of the provider operations that carry out `changes`.

    Destroy and Replace changes get a 'destroy:<address>' node; every other
    change, and the second half of a Replace, gets an 'apply:<address>' node.
    A NoOp's apply node does no work but keeps ordering transitive through it.

    Destroys follow what the state records (each change's prior_dependencies),
    applies follow the configuration (each change's dependencies):

      - destroy X waits for the destroy of everything recorded as depending on X
      - apply X waits for the apply of its configured dependencies, and for
        destroy X when X is replaced
      - destroying a resource that is not kept also waits for the update of
        everything recorded as depending on it, unless that update already
        has to wait for the destroy

    Raises:
        CycleError: If the recorded dependencies form a cycle.
    """
    by_addr = {c.address: c for c in changes}
    recorded = DependencyGraph()
    for change in changes:
        recorded.add_node(change.address, "resource")
    for change in changes:
        for dep in change.prior_dependencies:
            if dep in recorded:
                recorded.add_edge(change.address, dep)

    graph = DependencyGraph()
    for change in changes:
        if change.action in (Action.DESTROY, Action.REPLACE):
            graph.add_node(operation_key(DESTROY_PHASE, change.address), "resource")
    for change in changes:
        if change.action != Action.DESTROY:
            graph.add_node(operation_key(APPLY_PHASE, change.address), "resource")

    for change in changes:
        destroy_key = operation_key(DESTROY_PHASE, change.address)
        apply_key = operation_key(APPLY_PHASE, change.address)
        if destroy_key in graph:
            for dependent in recorded.descendants(change.address):
                key = operation_key(DESTROY_PHASE, dependent)
                if key in graph:
                    graph.add_edge(destroy_key, key)
        if apply_key in graph:
            if change.action == Action.REPLACE:
                graph.add_edge(apply_key, destroy_key)
            for dep in change.dependencies:
                key = operation_key(APPLY_PHASE, dep)
                if key in graph:
                    graph.add_edge(apply_key, key)
    graph.check_acyclic()

    for change in changes:
        if change.action != Action.DESTROY:
            continue
        destroy_key = operation_key(DESTROY_PHASE, change.address)
        for dependent in recorded.descendants(change.address):
            if by_addr[dependent].action != Action.UPDATE:
                continue
            update_key = operation_key(APPLY_PHASE, dependent)
            if destroy_key not in graph.ancestors(update_key):
                graph.add_edge(destroy_key, update_key)
    return graph
