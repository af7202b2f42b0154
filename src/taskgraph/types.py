"""Shared type definitions: node lifecycle states and the error taxonomy."""

from enum import Enum
from typing import Any, Dict, List, Optional


class NodeState(str, Enum):
    """Lifecycle state of a node within one run."""

    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"  # A transitive dependency failed
    CANCELLED = "cancelled"  # Withdrawn by global abort or run timeout

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {NodeState.SUCCEEDED, NodeState.FAILED, NodeState.BLOCKED, NodeState.CANCELLED}
)


class FailureKind(str, Enum):
    """Why a node did not succeed."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    FATAL = "fatal"
    PROMPT = "prompt"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


# =============================================================================
# ERROR TAXONOMY
# =============================================================================

class TaskGraphError(Exception):
    """Base class for every error raised by taskgraph."""


# Structural errors - raised before any node executes

class GraphDefinitionError(TaskGraphError):
    """A graph definition could not be loaded."""

    def __init__(self, node_id: Optional[str], reason: str):
        self.node_id = node_id
        self.reason = reason
        prefix = f"[{node_id}] " if node_id else ""
        super().__init__(f"{prefix}{reason}")


class MalformedNodeError(GraphDefinitionError):
    """A node descriptor is missing a field or has an invalid value."""


class DuplicateIdError(GraphDefinitionError):
    """A node id is already present in the graph."""

    def __init__(self, node_id: str):
        super().__init__(node_id, f"Duplicate node id: {node_id}")


class DanglingReferenceError(GraphDefinitionError):
    """A dependency or next-node reference names an unknown node."""

    def __init__(self, node_id: str, reference: str, field_name: str):
        self.reference = reference
        self.field_name = field_name
        super().__init__(
            node_id, f"{field_name} references unknown node: {reference}"
        )


class CycleDetectedError(GraphDefinitionError):
    """The dependency relation contains a cycle."""

    def __init__(self, node_id: str, cycle: Optional[List[str]] = None):
        self.cycle = cycle or [node_id]
        super().__init__(
            node_id, f"Dependency cycle detected: {' -> '.join(self.cycle)}"
        )


class IllegalTransitionError(TaskGraphError):
    """A node state change violates the monotonic lifecycle."""

    def __init__(self, node_id: str, old: NodeState, new: NodeState, reason: str = ""):
        self.node_id = node_id
        self.old = old
        self.new = new
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"[{node_id}] Illegal transition {old.value} -> {new.value}{detail}"
        )


# Runtime errors - contained to a single node

class ModelCallError(TaskGraphError):
    """Base for failures reported by a ModelClient."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message)


class TransientError(ModelCallError):
    """Retryable model-call failure (rate limit, timeout, connection)."""


class FatalError(ModelCallError):
    """Non-retryable model-call failure (malformed request, auth)."""


class PromptRenderError(FatalError):
    """The prompt template references a key the effective input lacks."""


class ValidationError(TaskGraphError):
    """Model output does not satisfy the node's output schema.

    Not raised by the Validator itself; built from a failed ValidatedResult
    so the executor can record it as the node's error.
    """

    def __init__(self, node_id: str, violations: List[Dict[str, Any]]):
        self.node_id = node_id
        self.violations = violations
        summary = "; ".join(f"{v['path']}: {v['message']}" for v in violations)
        super().__init__(f"[{node_id}] Output failed validation: {summary}")
