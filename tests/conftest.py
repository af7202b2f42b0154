"""Shared test fixtures: scripted model client, instant sleep, node builders."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

import pytest

from taskgraph import ExecutorConfig, Graph, ModelClient


# ============================================================================
# Mock Model Client
# ============================================================================

class ScriptedModelClient(ModelClient):
    """
    Model client whose replies are scripted per node.

    The first line of a prompt identifies the node (tests use the template
    "task <id>"). Each script entry is either a value to return or an
    exception instance to raise; the last entry repeats once the script
    is exhausted. Unscripted nodes return {"ok": True}.
    """

    def __init__(
        self,
        script: Optional[Dict[str, Sequence[Any]]] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delays = delays or {}
        self.calls: List[Dict[str, Any]] = []
        self.events: List[tuple] = []
        self.active = 0
        self.max_active = 0

    @staticmethod
    def key_for(prompt: str) -> str:
        return prompt.splitlines()[0].replace("task ", "", 1).strip()

    def calls_for(self, node_id: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["node"] == node_id]

    async def call(self, prompt: str, input):
        node_id = self.key_for(prompt)
        self.calls.append({"node": node_id, "prompt": prompt, "input": dict(input)})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", node_id))
        try:
            await asyncio.sleep(self.delays.get(node_id, 0))

            entries = self.script.get(node_id)
            if not entries:
                reply: Any = {"ok": True}
            elif len(entries) > 1:
                reply = entries.pop(0)
            else:
                reply = entries[0]

            if isinstance(reply, BaseException):
                raise reply
            return reply
        finally:
            self.active -= 1
            self.events.append(("end", node_id))


class RecordingSleep:
    """Backoff sleep that records requested delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ============================================================================
# Definition helpers
# ============================================================================

OK_SCHEMA = {
    "type": "object",
    "properties": {"ok": {"type": "boolean"}},
    "required": ["ok"],
}


def node_def(
    dependencies: Sequence[str] = (),
    next_nodes: Sequence[str] = (),
    schema: Optional[Dict[str, Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Descriptor with the default test schema; build_graph fills the template."""
    descriptor: Dict[str, Any] = {
        "outputSchema": schema or OK_SCHEMA,
        "dependencies": list(dependencies),
        "nextNodes": list(next_nodes),
    }
    descriptor.update(extra)
    return descriptor


def build_graph(definition: Dict[str, Dict[str, Any]], name: str = "test") -> Graph:
    """Give every node the template "task <id>" unless it has one, then load."""
    full = {}
    for node_id, descriptor in definition.items():
        descriptor = dict(descriptor)
        descriptor.setdefault("promptTemplate", f"task {node_id}")
        full[node_id] = descriptor
    return Graph.from_definition(full, name=name)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def config():
    """Config that keeps prompts bare (no schema appended)."""
    return ExecutorConfig(include_schema_in_prompt=False)
