"""
Executor - the scheduling core.

Drives every node of a Graph from Pending to a terminal state:

  1. The graph is validated (references, acyclicity) before anything runs.
  2. Every root is triggered.
  3. A trigger marks the node Waiting and arrives at its JoinGate. Only
     the arrival that completes the gate schedules the node, so a node
     with N dependencies runs exactly once however its predecessors
     interleave.
  4. Running a node: render the prompt, call the model with retry on
     transient failures, validate the output against the node schema.
  5. A Succeeded node triggers every successor. A Failed node triggers
     nothing; its dependents stay unsatisfied and are reported Blocked.
  6. The run ends when no node task is in flight.

Each node runs in its own asyncio task, tracked in a set the run loop
drains; no recursion is involved in fan-out.

Example:
    executor = Executor(client, ExecutorConfig(max_retries=3))
    report = await executor.run(graph)
    print(report.summary())
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict, Optional, Set

from .config import ExecutorConfig
from .graph import Graph
from .metrics import MetricsCollector
from .model_client import ModelClient
from .node import Node
from .prompting import build_effective_input, render_prompt
from .report import ErrorDetail, RunReport
from .retry import OutcomeKind, RetryResult, SleepFunc, call_with_retry
from .state import JoinGate, StateTable, TransitionListener
from .types import FailureKind, NodeState, PromptRenderError, ValidationError
from .validator import Validator

logger = logging.getLogger(__name__)


class Executor:
    """
    Runs graphs against an injected ModelClient.

    An Executor holds configuration and collaborators only; every call to
    `run` gets fresh per-run state, so one Executor can run many graphs
    (or the same graph many times).
    """

    def __init__(
        self,
        client: ModelClient,
        config: Optional[ExecutorConfig] = None,
        validator: Optional[Validator] = None,
        sleep: SleepFunc = asyncio.sleep,
        on_transition: Optional[TransitionListener] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            client: Model-calling collaborator
            config: Retry, concurrency, timeout and abort settings
            validator: Output validator (a fresh Validator by default)
            sleep: Awaitable used for backoff delays
            on_transition: Called with a StateChange for every node transition
            metrics: Collector for node/run timings
        """
        self.client = client
        self.config = config or ExecutorConfig()
        self.validator = validator or Validator()
        self.sleep = sleep
        self.on_transition = on_transition
        self.metrics = metrics or MetricsCollector()

    async def run(self, graph: Graph) -> RunReport:
        """
        Execute every node of `graph` and report the outcome.

        Raises:
            DanglingReferenceError, CycleDetectedError: Before any node runs.
                Per-node failures never raise; they appear in the report.
        """
        graph.validate()
        return await _GraphRun(self, graph).execute()


class _GraphRun:
    """State and scheduling for a single run of a graph."""

    def __init__(self, executor: Executor, graph: Graph):
        self.executor = executor
        self.config = executor.config
        self.graph = graph
        self.run_id = uuid.uuid4().hex[:12]
        self.policy = self.config.retry_policy()
        self.table = StateTable(graph, on_transition=executor.on_transition)
        self.gates: Dict[str, JoinGate] = {
            node_id: JoinGate(node_id, graph.dependencies_of(node_id)) for node_id in graph.ids
        }
        self.inflight: Set[asyncio.Task] = set()
        self.task_nodes: Dict[asyncio.Task, str] = {}
        self.abort_reason: Optional[str] = None
        self.call_results: Dict[str, RetryResult] = {}
        self.semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(self.config.max_concurrency)
            if self.config.max_concurrency
            else None
        )

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def execute(self) -> RunReport:
        metrics = self.executor.metrics
        metrics.start()
        started_at = datetime.now()
        logger.info(f"[{self.graph.name}] Run {self.run_id} starting ({len(self.graph)} nodes)")

        for root in self.graph.roots():
            self.trigger(root.id, None)

        try:
            if self.config.run_timeout is not None:
                await asyncio.wait_for(self.drain(), timeout=self.config.run_timeout)
            else:
                await self.drain()
        except asyncio.TimeoutError:
            self.abort(f"run timed out after {self.config.run_timeout}s")
            await self.drain()
        except asyncio.CancelledError:
            self.abort("run cancelled by caller")
            await asyncio.gather(*list(self.inflight), return_exceptions=True)
            self.finalize()
            metrics.stop()
            raise

        self.finalize()
        metrics.stop()

        report = RunReport.from_runs(
            run_id=self.run_id,
            graph_name=self.graph.name,
            runs=self.table.runs(),
            started_at=started_at,
            finished_at=datetime.now(),
            aborted_reason=self.abort_reason,
        )
        logger.info(
            f"[{self.graph.name}] Run {self.run_id} {report.status.value}: "
            f"{len(report.succeeded())} succeeded, {len(report.failed())} failed, "
            f"{len(report.blocked())} blocked, {len(report.cancelled())} cancelled "
            f"({report.duration_ms:.1f}ms)"
        )
        return report

    async def drain(self) -> None:
        """Wait until no node task is in flight, including ones spawned meanwhile."""
        while self.inflight:
            await asyncio.wait(set(self.inflight), return_when=asyncio.FIRST_COMPLETED)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self.inflight.discard(task)
        node_id = self.task_nodes.pop(task, "?")
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{node_id}] Node task ended with an error: {task.exception()}")

    # ------------------------------------------------------------------
    # Triggering and the join gate
    # ------------------------------------------------------------------

    def trigger(self, node_id: str, predecessor: Optional[str]) -> None:
        """
        Entry point, invoked once per root and once per succeeded
        predecessor edge. Schedules the node body at most once.
        """
        if self.abort_reason:
            return
        self.table.mark_waiting(node_id)
        if not self.gates[node_id].arrive(predecessor):
            logger.debug(
                f"[{node_id}] Trigger from {predecessor} recorded, "
                f"waiting on {sorted(self.gates[node_id].remaining)}"
            )
            return

        task = asyncio.ensure_future(self.run_node(self.graph[node_id]))
        self.inflight.add(task)
        self.task_nodes[task] = node_id
        task.add_done_callback(self._on_task_done)

    def abort(self, reason: str) -> None:
        """Cancel all outstanding work (global-abort mode and run timeout)."""
        if self.abort_reason:
            return
        self.abort_reason = reason
        logger.warning(f"[{self.graph.name}] Aborting run {self.run_id}: {reason}")
        current = asyncio.current_task()
        for task in list(self.inflight):
            if task is not current and not task.done():
                task.cancel()

    # ------------------------------------------------------------------
    # Running a node
    # ------------------------------------------------------------------

    async def run_node(self, node: Node) -> None:
        try:
            if self.semaphore is not None:
                async with self.semaphore:
                    await self.execute_node(node)
            else:
                await self.execute_node(node)
        except asyncio.CancelledError:
            if not self.table.state_of(node.id).is_terminal:
                self.table.transition(
                    node.id,
                    NodeState.CANCELLED,
                    error=ErrorDetail(
                        kind=FailureKind.CANCELLED,
                        message=self.abort_reason or "cancelled",
                    ),
                )
                self._record(node.id)
            raise
        except Exception as e:
            logger.exception(f"[{node.id}] Unexpected executor error: {e}")
            if self.table.state_of(node.id) == NodeState.RUNNING:
                self.fail(node.id, FailureKind.FATAL, f"Executor error: {e}")

    async def execute_node(self, node: Node) -> None:
        if self.abort_reason:
            return
        self.table.transition(node.id, NodeState.RUNNING)
        logger.info(f"[{node.id}] Running")

        upstream = self.table.results_of(sorted(self.graph.dependencies_of(node.id)))
        effective_input = build_effective_input(node, upstream)
        try:
            prompt = render_prompt(
                node, effective_input, include_schema=self.config.include_schema_in_prompt
            )
        except PromptRenderError as e:
            self.fail(node.id, FailureKind.PROMPT, str(e))
            return

        client = self.executor.client
        retry = await call_with_retry(
            lambda: client.call(prompt, effective_input),
            self.policy.with_max_retries(node.max_retries),
            sleep=self.executor.sleep,
            timeout=self.config.call_timeout,
            label=node.id,
        )
        self.call_results[node.id] = retry

        outcome = retry.outcome
        if not outcome.ok:
            kind = (
                FailureKind.TRANSIENT
                if outcome.kind == OutcomeKind.TRANSIENT
                else FailureKind.FATAL
            )
            self.fail(node.id, kind, str(outcome.error))
            return

        validated = self.executor.validator.validate(outcome.output, node.output_schema)
        if not validated.valid:
            violations = [v.to_dict() for v in validated.violations]
            error = ValidationError(node.id, violations)
            self.fail(
                node.id,
                FailureKind.VALIDATION,
                str(error),
                violations=violations,
            )
            return

        self.table.transition(
            node.id,
            NodeState.SUCCEEDED,
            result=validated.output,
            attempts=retry.attempts,
            transient_errors=retry.transient_errors,
        )
        self._record(node.id)
        logger.info(f"[{node.id}] Succeeded after {retry.attempts} attempt(s)")

        for successor in sorted(self.graph.neighbors_of(node.id)):
            self.trigger(successor, node.id)

    def fail(
        self,
        node_id: str,
        kind: FailureKind,
        message: str,
        violations=None,
    ) -> None:
        retry = self.call_results.get(node_id)
        self.table.transition(
            node_id,
            NodeState.FAILED,
            error=ErrorDetail(kind=kind, message=message, violations=violations or []),
            attempts=retry.attempts if retry else 0,
            transient_errors=retry.transient_errors if retry else None,
        )
        self._record(node_id)
        logger.error(f"[{node_id}] Failed ({kind.value}): {message}")
        if self.config.abort_on_failure:
            self.abort(f"node {node_id} failed")

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def finalize(self) -> None:
        """
        Give every non-terminal node an explicit final state.

        Walks in topological order so each node's dependencies are already
        final: a Failed or Blocked dependency makes it Blocked (naming the
        failed ancestor); otherwise its work was withdrawn and it is
        Cancelled.
        """
        for node_id in self.graph.topological_order():
            if self.table.state_of(node_id).is_terminal:
                continue

            cause = None
            for dep in sorted(self.graph.dependencies_of(node_id)):
                dep_run = self.table.get(dep)
                if dep_run.state == NodeState.FAILED:
                    cause = dep
                    break
                if dep_run.state == NodeState.BLOCKED:
                    cause = dep_run.blocked_by
                    break

            if cause is not None:
                self.table.transition(
                    node_id,
                    NodeState.BLOCKED,
                    blocked_by=cause,
                    error=ErrorDetail(
                        kind=FailureKind.BLOCKED, message=f"dependency {cause} failed"
                    ),
                )
                logger.warning(f"[{node_id}] Blocked by failed dependency {cause}")
            else:
                if not self.abort_reason:
                    logger.error(f"[{node_id}] Never scheduled although no dependency failed")
                self.table.transition(
                    node_id,
                    NodeState.CANCELLED,
                    error=ErrorDetail(
                        kind=FailureKind.CANCELLED,
                        message=self.abort_reason or "never scheduled",
                    ),
                )
            self._record(node_id)

    def _record(self, node_id: str) -> None:
        run = self.table.get(node_id)
        self.executor.metrics.record_node(
            node_id,
            run.state.value,
            run.duration_ms,
            attempts=run.attempts,
            error=run.error.message if run.error else None,
        )
