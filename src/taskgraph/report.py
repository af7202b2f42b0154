"""
Run Report

Final, auditable account of a run: for every node its terminal state,
result or error, and the attempts it consumed.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .types import FailureKind, NodeState


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    ABORTED = "aborted"


class ErrorDetail(BaseModel):
    """Why a node did not succeed."""

    kind: FailureKind
    message: str
    violations: List[Dict[str, str]] = Field(default_factory=list)


class NodeReport(BaseModel):
    node_id: str
    state: NodeState
    result: Any = None
    error: Optional[ErrorDetail] = None
    attempts: int = 0
    retries: int = 0
    blocked_by: Optional[str] = None
    transient_errors: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0


class RunReport(BaseModel):
    """
    Result of Executor.run().

    Example:
        report = await executor.run(graph)
        if report.status != RunStatus.SUCCEEDED:
            print(report.summary())
        report.nodes["draft"].result
    """

    run_id: str
    graph_name: str
    status: RunStatus
    nodes: Dict[str, NodeReport]
    started_at: datetime
    finished_at: datetime
    duration_ms: float = 0.0
    aborted_reason: Optional[str] = None

    @classmethod
    def from_runs(
        cls,
        run_id: str,
        graph_name: str,
        runs,
        started_at: datetime,
        finished_at: datetime,
        aborted_reason: Optional[str] = None,
    ) -> "RunReport":
        """Build a report from the NodeRun records of a finished run."""
        nodes = {
            run.node_id: NodeReport(
                node_id=run.node_id,
                state=run.state,
                result=run.result,
                error=run.error,
                attempts=run.attempts,
                retries=max(run.attempts - 1, 0),
                blocked_by=run.blocked_by,
                transient_errors=list(run.transient_errors),
                duration_ms=run.duration_ms,
            )
            for run in runs
        }

        states = [n.state for n in nodes.values()]
        if aborted_reason:
            status = RunStatus.ABORTED
        elif all(s == NodeState.SUCCEEDED for s in states):
            status = RunStatus.SUCCEEDED
        elif NodeState.SUCCEEDED not in states:
            status = RunStatus.FAILED
        else:
            status = RunStatus.PARTIAL

        return cls(
            run_id=run_id,
            graph_name=graph_name,
            status=status,
            nodes=nodes,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=(finished_at - started_at).total_seconds() * 1000,
            aborted_reason=aborted_reason,
        )

    def _ids_in(self, state: NodeState) -> List[str]:
        return [node_id for node_id, n in self.nodes.items() if n.state == state]

    def succeeded(self) -> List[str]:
        return self._ids_in(NodeState.SUCCEEDED)

    def failed(self) -> List[str]:
        return self._ids_in(NodeState.FAILED)

    def blocked(self) -> List[str]:
        return self._ids_in(NodeState.BLOCKED)

    def cancelled(self) -> List[str]:
        return self._ids_in(NodeState.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe dict."""
        return self.model_dump(mode="json")

    def summary(self) -> str:
        """Human-readable table of node outcomes."""
        lines = [
            f"Run {self.run_id} [{self.graph_name}]: {self.status.value} "
            f"({self.duration_ms / 1000:.2f}s)",
        ]
        if self.aborted_reason:
            lines.append(f"  aborted: {self.aborted_reason}")
        for node_id, node in self.nodes.items():
            line = f"  {node_id:<24} {node.state.value:<10} attempts={node.attempts}"
            if node.blocked_by:
                line += f" blocked_by={node.blocked_by}"
            elif node.error:
                line += f" {node.error.kind.value}: {node.error.message}"
            lines.append(line)
        return "\n".join(lines)
