"""
Workflow Graph

Owns the Node set and answers structural queries. The effective edge set
is the union of both declarations on a node: `X -> Y` exists when Y is in
X's next_nodes or X is in Y's dependencies. Adjacency is derived lazily
and invalidated whenever a node is added.
"""

import logging
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set

from .node import Node
from .types import (
    CycleDetectedError,
    DanglingReferenceError,
    DuplicateIdError,
    MalformedNodeError,
)

logger = logging.getLogger(__name__)


class Graph:
    """
    Collection of Nodes plus the adjacency derived from their
    dependency / next-node lists.

    Example:
        graph = Graph.from_definition({
            "outline": {"promptTemplate": "...", "outputSchema": {...}},
            "draft": {"promptTemplate": "...", "outputSchema": {...},
                      "dependencies": ["outline"]},
        })
        graph.roots()            # [Node(id="outline", ...)]
        graph.neighbors_of("outline")  # frozenset({"draft"})
    """

    def __init__(self, nodes: Optional[List[Node]] = None, name: str = "graph"):
        self.name = name
        self._nodes: Dict[str, Node] = {}
        self._deps: Optional[Dict[str, FrozenSet[str]]] = None
        self._succ: Optional[Dict[str, FrozenSet[str]]] = None
        for node in nodes or []:
            self.add_node(node)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_definition(cls, definition: Mapping[str, Any], name: str = "graph") -> "Graph":
        """
        Load a graph from a mapping of node id -> node descriptor.

        The whole definition is checked before returning: malformed
        descriptors, dangling references and cycles all fail here, never
        at run time.

        Raises:
            MalformedNodeError, DuplicateIdError, DanglingReferenceError,
            CycleDetectedError
        """
        if not isinstance(definition, Mapping):
            raise MalformedNodeError(
                None, f"Graph definition must be an object, got {type(definition).__name__}"
            )

        graph = cls(name=name)
        for node_id, descriptor in definition.items():
            graph.add_node(Node.from_descriptor(node_id, descriptor))
        graph.validate()

        logger.info(f"[{name}] Loaded graph with {len(graph)} nodes")
        return graph

    def add_node(self, node: Node) -> "Graph":
        """
        Add a node.

        Raises:
            DuplicateIdError: If a node with the same id is already present
        """
        if node.id in self._nodes:
            raise DuplicateIdError(node.id)
        self._nodes[node.id] = node
        self._deps = None
        self._succ = None
        return self

    def to_definition(self) -> Dict[str, Dict[str, Any]]:
        """Serialize to the mapping format accepted by from_definition."""
        return {node_id: node.to_descriptor() for node_id, node in self._nodes.items()}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Check references then acyclicity."""
        self.validate_references()
        self.validate_acyclic()

    def validate_references(self) -> None:
        """
        Raises:
            DanglingReferenceError: If any dependency or next-node id is unknown
        """
        for node in self._nodes.values():
            for dep in sorted(node.dependencies):
                if dep not in self._nodes:
                    raise DanglingReferenceError(node.id, dep, "dependencies")
            for nxt in sorted(node.next_nodes):
                if nxt not in self._nodes:
                    raise DanglingReferenceError(node.id, nxt, "nextNodes")

    def validate_acyclic(self) -> None:
        """
        Topological check (Kahn's algorithm) over the effective edges.

        Raises:
            CycleDetectedError: Naming one node on a cycle and the cycle path
        """
        self.topological_order()

    def topological_order(self) -> List[str]:
        """
        Node ids in dependency order; ties keep insertion order.

        Raises:
            CycleDetectedError: If the dependency relation is cyclic
        """
        deps, succ = self._index()
        in_degree = {node_id: len(d) for node_id, d in deps.items()}
        position = {node_id: i for i, node_id in enumerate(self._nodes)}

        ready = [node_id for node_id in self._nodes if in_degree[node_id] == 0]
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            released = []
            for nxt in succ[current]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    released.append(nxt)
            ready.extend(released)
            ready.sort(key=position.__getitem__)

        if len(order) < len(self._nodes):
            done = set(order)
            remaining = {n for n in self._nodes if n not in done}
            cycle = self._find_cycle(remaining, deps)
            raise CycleDetectedError(cycle[0], cycle)
        return order

    def _find_cycle(self, remaining: Set[str], deps: Dict[str, FrozenSet[str]]) -> List[str]:
        # Every node left over by Kahn's algorithm has a dependency that is
        # also left over, so walking dependencies must revisit a node.
        start = next(n for n in self._nodes if n in remaining)
        path: List[str] = []
        seen: Dict[str, int] = {}
        current = start
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            current = min(d for d in deps[current] if d in remaining)
        cycle = path[seen[current]:] + [current]
        cycle.reverse()
        return cycle

    # ------------------------------------------------------------------
    # Structural queries
    # ------------------------------------------------------------------

    def _index(self):
        if self._deps is None or self._succ is None:
            deps: Dict[str, Set[str]] = {node_id: set() for node_id in self._nodes}
            succ: Dict[str, Set[str]] = {node_id: set() for node_id in self._nodes}
            for node in self._nodes.values():
                for dep in node.dependencies:
                    if dep in self._nodes:
                        deps[node.id].add(dep)
                        succ[dep].add(node.id)
                for nxt in node.next_nodes:
                    if nxt in self._nodes:
                        succ[node.id].add(nxt)
                        deps[nxt].add(node.id)
            self._deps = {k: frozenset(v) for k, v in deps.items()}
            self._succ = {k: frozenset(v) for k, v in succ.items()}
        return self._deps, self._succ

    def roots(self) -> List[Node]:
        """All nodes with no effective dependencies, in insertion order."""
        deps, _ = self._index()
        return [node for node_id, node in self._nodes.items() if not deps[node_id]]

    def neighbors_of(self, node_id: str) -> FrozenSet[str]:
        """Ids to trigger after `node_id` succeeds. Read-only."""
        _, succ = self._index()
        return succ[self._require(node_id)]

    def dependencies_of(self, node_id: str) -> FrozenSet[str]:
        """Effective dependencies: declared ones plus every node listing it as next."""
        deps, _ = self._index()
        return deps[self._require(node_id)]

    def transitive_dependents(self, node_id: str) -> Set[str]:
        """Every node reachable downstream of `node_id` (excluding itself)."""
        _, succ = self._index()
        seen: Set[str] = set()
        stack = list(succ[self._require(node_id)])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(succ[current])
        return seen

    def _require(self, node_id: str) -> str:
        if node_id not in self._nodes:
            raise KeyError(f"Unknown node: {node_id}")
        return node_id

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------

    def __getitem__(self, node_id: str) -> Node:
        return self._nodes[self._require(node_id)]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(list(self._nodes.values()))

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def ids(self) -> List[str]:
        return list(self._nodes)

    def __repr__(self) -> str:
        return f"Graph(name={self.name!r}, nodes={len(self)})"
