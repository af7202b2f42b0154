"""
Metrics Collection

Timing and outcome counters for graph runs. One collector is owned by an
Executor; `start()` resets per-run node metrics while the cumulative
per-node history survives across runs.
"""

import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Optional


class MetricsCollector:
    """
    Collect metrics from node executions.

    Supports both per-run detail (`get_run_metrics`) and cumulative
    statistics across runs (`get_summary`).
    """

    def __init__(self, name: str = "taskgraph"):
        """
        Args:
            name: Identifier for this collector (e.g., graph name)
        """
        self.name = name
        self.history = defaultdict(list)
        self.node_metrics: Dict[str, Dict[str, Any]] = {}
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None

    def start(self) -> None:
        """Mark start of a run."""
        self.start_time = datetime.now()
        self.end_time = None
        self.node_metrics = {}

    def stop(self) -> None:
        """Mark end of a run."""
        self.end_time = datetime.now()

    def record_node(
        self,
        node_id: str,
        state: str,
        duration_ms: float,
        attempts: int = 0,
        error: Optional[str] = None,
    ) -> None:
        """
        Record the terminal outcome of one node.

        Args:
            node_id: Node identifier
            state: Terminal state value ("succeeded", "failed", ...)
            duration_ms: Time from Running to terminal
            attempts: Model calls consumed
            error: Error message if the node did not succeed
        """
        self.node_metrics[node_id] = {
            "node_id": node_id,
            "state": state,
            "duration_ms": duration_ms,
            "attempts": attempts,
            "error_message": error,
        }
        self.history[node_id].append({
            "timestamp": time.time(),
            "duration_ms": duration_ms,
            "state": state,
            "attempts": attempts,
        })

    def get_summary(self) -> Dict[str, Any]:
        """
        Cumulative per-node statistics across every run seen so far.

        Returns:
            Dict of node id -> count, timing and success rate
        """
        summary = {}
        for node_id, executions in self.history.items():
            durations = [e["duration_ms"] for e in executions]
            succeeded = [e for e in executions if e["state"] == "succeeded"]
            summary[node_id] = {
                "count": len(executions),
                "avg_ms": sum(durations) / len(durations) if durations else 0,
                "min_ms": min(durations) if durations else 0,
                "max_ms": max(durations) if durations else 0,
                "total_attempts": sum(e["attempts"] for e in executions),
                "success_rate": len(succeeded) / len(executions) if executions else 0,
            }
        return summary

    def get_run_metrics(self) -> Dict[str, Any]:
        """
        Detailed metrics for the most recent run.

        Returns:
            Dict with run-level totals and per-node details
        """
        total_duration_ms = 0.0
        if self.start_time and self.end_time:
            total_duration_ms = (self.end_time - self.start_time).total_seconds() * 1000

        counts: Dict[str, int] = defaultdict(int)
        for metrics in self.node_metrics.values():
            counts[metrics["state"]] += 1

        return {
            "name": self.name,
            "total_duration_ms": total_duration_ms,
            "nodes_recorded": len(self.node_metrics),
            "total_attempts": sum(m["attempts"] for m in self.node_metrics.values()),
            "state_counts": dict(counts),
            "nodes": dict(self.node_metrics),
        }
