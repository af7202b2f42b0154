"""taskgraph: dependency-gated execution of LLM task graphs."""

from .config import ExecutorConfig
from .executor import Executor
from .graph import Graph
from .logger import get_logger
from .metrics import MetricsCollector
from .model_client import (
    LangChainModelClient,
    ModelClient,
    classify_exception,
    create_model_client,
)
from .node import Node
from .report import ErrorDetail, NodeReport, RunReport, RunStatus
from .retry import BackoffStrategy, CallOutcome, OutcomeKind, RetryPolicy, call_with_retry
from .state import JoinGate, NodeRun, StateChange, StateTable
from .types import (
    CycleDetectedError,
    DanglingReferenceError,
    DuplicateIdError,
    FailureKind,
    FatalError,
    GraphDefinitionError,
    IllegalTransitionError,
    MalformedNodeError,
    ModelCallError,
    NodeState,
    PromptRenderError,
    TaskGraphError,
    TransientError,
    ValidationError,
)
from .validator import SchemaViolation, ValidatedResult, Validator, validate
from .workflow import Workflow, WorkflowExecutionError, run_workflow

__version__ = "0.1.0"

__all__ = [
    # Graph model
    "Node",
    "Graph",
    "NodeState",
    # Execution
    "Executor",
    "ExecutorConfig",
    "Workflow",
    "WorkflowExecutionError",
    "run_workflow",
    "StateTable",
    "StateChange",
    "NodeRun",
    "JoinGate",
    # Retry
    "RetryPolicy",
    "BackoffStrategy",
    "CallOutcome",
    "OutcomeKind",
    "call_with_retry",
    # Validation
    "Validator",
    "ValidatedResult",
    "SchemaViolation",
    "validate",
    # Model boundary
    "ModelClient",
    "LangChainModelClient",
    "classify_exception",
    "create_model_client",
    # Reporting
    "RunReport",
    "RunStatus",
    "NodeReport",
    "ErrorDetail",
    "MetricsCollector",
    "get_logger",
    # Errors
    "TaskGraphError",
    "GraphDefinitionError",
    "MalformedNodeError",
    "DuplicateIdError",
    "DanglingReferenceError",
    "CycleDetectedError",
    "IllegalTransitionError",
    "ModelCallError",
    "TransientError",
    "FatalError",
    "PromptRenderError",
    "ValidationError",
    "FailureKind",
]
