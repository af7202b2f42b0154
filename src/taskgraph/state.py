"""
Run State

Per-run mutable state, kept apart from the immutable Graph:

  - NodeRun: lifecycle record of one node in one run
  - StateTable: the only place node state changes; every change goes
    through `transition`, which enforces the monotonic lifecycle
  - JoinGate: per-node fan-in barrier that hands out the right to run
    exactly once
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from .graph import Graph
from .report import ErrorDetail
from .types import IllegalTransitionError, NodeState

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[NodeState, FrozenSet[NodeState]] = {
    NodeState.PENDING: frozenset({NodeState.WAITING, NodeState.BLOCKED, NodeState.CANCELLED}),
    NodeState.WAITING: frozenset({NodeState.RUNNING, NodeState.BLOCKED, NodeState.CANCELLED}),
    NodeState.RUNNING: frozenset({NodeState.SUCCEEDED, NodeState.FAILED, NodeState.CANCELLED}),
    NodeState.SUCCEEDED: frozenset(),
    NodeState.FAILED: frozenset(),
    NodeState.BLOCKED: frozenset(),
    NodeState.CANCELLED: frozenset(),
}


@dataclass
class NodeRun:
    """Lifecycle record of one node during one run."""

    node_id: str
    state: NodeState = NodeState.PENDING
    result: Any = None
    error: Optional[ErrorDetail] = None
    attempts: int = 0
    blocked_by: Optional[str] = None
    transient_errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds() * 1000
        return 0.0


@dataclass(frozen=True)
class StateChange:
    """Notification passed to transition listeners."""

    node_id: str
    old: NodeState
    new: NodeState
    timestamp: datetime = field(default_factory=datetime.now)


TransitionListener = Callable[[StateChange], None]


class StateTable:
    """
    Concurrency-safe map of node id -> NodeRun for a single run.

    Example:
        table = StateTable(graph)
        table.transition("a", NodeState.WAITING)
        table.transition("a", NodeState.RUNNING)
        table.transition("a", NodeState.SUCCEEDED, result={"ok": True})
    """

    def __init__(self, graph: Graph, on_transition: Optional[TransitionListener] = None):
        self.graph = graph
        self.on_transition = on_transition
        self._runs: Dict[str, NodeRun] = {node_id: NodeRun(node_id) for node_id in graph.ids}
        self._lock = threading.Lock()

    def transition(
        self,
        node_id: str,
        new_state: NodeState,
        *,
        result: Any = None,
        error: Optional[ErrorDetail] = None,
        attempts: Optional[int] = None,
        blocked_by: Optional[str] = None,
        transient_errors: Optional[List[str]] = None,
    ) -> StateChange:
        """
        Move a node to `new_state`.

        Raises:
            IllegalTransitionError: If the change is not a forward step of
                the lifecycle, or a node would start Running before all of
                its dependencies have Succeeded
        """
        with self._lock:
            run = self._runs[node_id]
            old_state = run.state
            if new_state not in ALLOWED_TRANSITIONS[old_state]:
                raise IllegalTransitionError(node_id, old_state, new_state)

            if new_state == NodeState.RUNNING:
                unmet = sorted(
                    dep for dep in self.graph.dependencies_of(node_id)
                    if self._runs[dep].state != NodeState.SUCCEEDED
                )
                if unmet:
                    raise IllegalTransitionError(
                        node_id, old_state, new_state, f"dependencies not succeeded: {unmet}"
                    )
                run.started_at = datetime.now()

            run.state = new_state
            if new_state.is_terminal:
                run.finished_at = datetime.now()
                if run.started_at is None:
                    run.started_at = run.finished_at
            if result is not None:
                run.result = result
            if error is not None:
                run.error = error
            if attempts is not None:
                run.attempts = attempts
            if blocked_by is not None:
                run.blocked_by = blocked_by
            if transient_errors is not None:
                run.transient_errors = list(transient_errors)

            change = StateChange(node_id, old_state, new_state)

        logger.debug(f"[{node_id}] {old_state.value} -> {new_state.value}")
        if self.on_transition is not None:
            try:
                self.on_transition(change)
            except Exception as e:
                logger.exception(f"[{node_id}] Transition listener failed: {e}")
        return change

    def mark_waiting(self, node_id: str) -> bool:
        """Pending -> Waiting on first trigger; later triggers are no-ops."""
        with self._lock:
            if self._runs[node_id].state != NodeState.PENDING:
                return False
        try:
            self.transition(node_id, NodeState.WAITING)
        except IllegalTransitionError:
            # Another trigger won the race between the check and the change
            return False
        return True

    def state_of(self, node_id: str) -> NodeState:
        with self._lock:
            return self._runs[node_id].state

    def get(self, node_id: str) -> NodeRun:
        return self._runs[node_id]

    def results_of(self, node_ids) -> Dict[str, Any]:
        """Stored results of the given nodes; all must have Succeeded. Not copied."""
        with self._lock:
            return {node_id: self._runs[node_id].result for node_id in node_ids}

    def unfinished(self) -> List[str]:
        with self._lock:
            return [n for n, run in self._runs.items() if not run.state.is_terminal]

    def in_state(self, state: NodeState) -> List[str]:
        with self._lock:
            return [n for n, run in self._runs.items() if run.state == state]

    def runs(self) -> List[NodeRun]:
        return list(self._runs.values())


class JoinGate:
    """
    Fan-in barrier for one node.

    Each Succeeded predecessor calls `arrive` once. The call that removes
    the last outstanding dependency gets True (the right to run); every
    other call gets False. A root (no dependencies) is claimed by its
    first arrival.
    """

    def __init__(self, node_id: str, required: FrozenSet[str]):
        self.node_id = node_id
        self._remaining: Set[str] = set(required)
        self._claimed = False
        self._lock = threading.Lock()

    def arrive(self, predecessor: Optional[str] = None) -> bool:
        with self._lock:
            if predecessor is not None:
                self._remaining.discard(predecessor)
            if self._remaining or self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        with self._lock:
            return self._claimed

    @property
    def remaining(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._remaining)
