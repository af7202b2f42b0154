"""
Workflow Facade

Bundles a named Graph with an Executor so callers deal with one object:

    workflow = Workflow(
        name="article",
        graph=definition,          # mapping or Graph
        client=create_model_client(),
        config=ExecutorConfig.from_env(),
    )

    report = await workflow.invoke()
    print(workflow.visualize())
    print(workflow.get_metrics())
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from .config import ExecutorConfig
from .executor import Executor
from .graph import Graph
from .model_client import ModelClient
from .report import RunReport, RunStatus

logger = logging.getLogger(__name__)


class WorkflowExecutionError(Exception):
    """
    Raised by `Workflow.invoke(raise_on_failure=True)` when a run does
    not fully succeed.

    Attributes:
        workflow_name: Name of the workflow
        failed_nodes: Ids of nodes that ended Failed
        report: The full run report
    """

    def __init__(self, workflow_name: str, report: RunReport):
        self.workflow_name = workflow_name
        self.failed_nodes = report.failed()
        self.report = report
        super().__init__(
            f"[{workflow_name}] Run {report.run_id} ended {report.status.value}; "
            f"failed: {self.failed_nodes or 'none'}"
        )


class Workflow:
    """Named graph plus the executor that runs it."""

    def __init__(
        self,
        name: str,
        graph: Union[Graph, Mapping[str, Any]],
        client: ModelClient,
        config: Optional[ExecutorConfig] = None,
        **executor_kwargs: Any,
    ):
        """
        Args:
            name: Workflow identifier
            graph: Graph instance, or a definition mapping to load
            client: Model-calling collaborator
            config: Executor settings
            executor_kwargs: Passed through to Executor (sleep, on_transition, ...)

        Raises:
            GraphDefinitionError: If a definition mapping fails to load
        """
        self.name = name
        if isinstance(graph, Graph):
            self.graph = graph
        else:
            self.graph = Graph.from_definition(graph, name=name)
        self.executor = Executor(client, config, **executor_kwargs)
        self.last_report: Optional[RunReport] = None

    async def invoke(self, raise_on_failure: bool = False) -> RunReport:
        """
        Run the graph once.

        Args:
            raise_on_failure: Raise WorkflowExecutionError unless every node succeeded

        Returns:
            RunReport
        """
        logger.info(f"[{self.name}] Starting workflow execution")
        report = await self.executor.run(self.graph)
        self.last_report = report
        if raise_on_failure and report.status != RunStatus.SUCCEEDED:
            raise WorkflowExecutionError(self.name, report)
        return report

    def layers(self) -> List[List[str]]:
        """Node ids grouped by depth: layer k depends only on layers < k."""
        depth: Dict[str, int] = {}
        for node_id in self.graph.topological_order():
            deps = self.graph.dependencies_of(node_id)
            depth[node_id] = 1 + max((depth[d] for d in deps), default=-1)
        layers: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for node_id, level in depth.items():
            layers[level].append(node_id)
        return layers

    def visualize(self) -> str:
        """
        ASCII rendering of the graph, one line per layer; nodes on the
        same line may run concurrently.
        """
        lines = [
            f"Workflow: {self.name}",
            f"Nodes: {len(self.graph)}",
            "",
        ]
        for level, layer in enumerate(self.layers()):
            entries = []
            for node_id in layer:
                deps = sorted(self.graph.dependencies_of(node_id))
                entries.append(f"{node_id} <- {', '.join(deps)}" if deps else node_id)
            lines.append(f"  [{level}] " + " | ".join(entries))
        return "\n".join(lines)

    def get_metrics(self) -> Dict[str, Any]:
        """Metrics of the most recent run."""
        return self.executor.metrics.get_run_metrics()

    def __repr__(self) -> str:
        return f"Workflow(name={self.name!r}, nodes={len(self.graph)})"

    def __str__(self) -> str:
        return self.visualize()


async def run_workflow(
    definition: Mapping[str, Any],
    client: ModelClient,
    config: Optional[ExecutorConfig] = None,
    name: str = "workflow",
) -> RunReport:
    """
    Load a definition mapping and run it once.

    Example:
        report = await run_workflow(definition, client, ExecutorConfig(max_retries=1))
    """
    return await Workflow(name, definition, client, config).invoke()
