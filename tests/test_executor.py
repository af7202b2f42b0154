"""Tests for the Executor scheduling core."""

import asyncio

import pytest

from taskgraph import (
    CycleDetectedError,
    Executor,
    ExecutorConfig,
    FailureKind,
    FatalError,
    Graph,
    MetricsCollector,
    Node,
    NodeState,
    RunStatus,
    TransientError,
    Validator,
)
from conftest import OK_SCHEMA, RecordingSleep, ScriptedModelClient, build_graph, node_def


def make_executor(client, config=None, **kwargs):
    config = config or ExecutorConfig(include_schema_in_prompt=False)
    kwargs.setdefault("sleep", RecordingSleep())
    return Executor(client, config, **kwargs)


class TestHappyPath:
    """Tests for graphs where every node succeeds."""

    @pytest.mark.asyncio
    async def test_single_node(self, config):
        """Test a one-node graph runs its node once and succeeds."""
        client = ScriptedModelClient()
        graph = build_graph({"a": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert report.nodes["a"].state == NodeState.SUCCEEDED
        assert report.nodes["a"].result == {"ok": True}
        assert report.nodes["a"].attempts == 1
        assert report.nodes["a"].retries == 0
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_empty_graph(self, config):
        """Test an empty graph completes immediately."""
        report = await make_executor(ScriptedModelClient(), config).run(Graph())
        assert report.status == RunStatus.SUCCEEDED
        assert report.nodes == {}

    @pytest.mark.asyncio
    async def test_chain_runs_in_order(self, config):
        """Test a -> b -> c runs strictly one after another."""
        client = ScriptedModelClient()
        graph = build_graph({
            "a": node_def(next_nodes=["b"]),
            "b": node_def(next_nodes=["c"]),
            "c": node_def(),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert [c["node"] for c in client.calls] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_upstream_results_reach_dependents(self, config):
        """Test dependency results are merged into input and usable in the template."""
        client = ScriptedModelClient({"outline": [{"ok": True, "title": "Rivers"}]})
        graph = build_graph({
            "outline": node_def(),
            "draft": node_def(
                dependencies=["outline"],
                promptTemplate="task draft\nWrite about {upstream[outline][title]} for {audience}",
                input={"audience": "kids"},
            ),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        draft_call = client.calls_for("draft")[0]
        assert draft_call["prompt"] == "task draft\nWrite about Rivers for kids"
        assert draft_call["input"] == {
            "audience": "kids",
            "upstream": {"outline": {"ok": True, "title": "Rivers"}},
        }

    @pytest.mark.asyncio
    async def test_client_cannot_mutate_upstream_results(self, config):
        """Test a client editing its input leaves stored results and siblings intact."""

        class EditingClient(ScriptedModelClient):
            async def call(self, prompt, input):
                if self.key_for(prompt) == "b":
                    input["upstream"]["a"]["ok"] = False
                    input["upstream"]["a"]["note"] = "edited"
                return await super().call(prompt, input)

        client = EditingClient()
        graph = build_graph({
            "a": node_def(next_nodes=["b", "c"]),
            "b": node_def(),
            "c": node_def(),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert report.nodes["a"].result == {"ok": True}
        assert client.calls_for("b")[0]["input"]["upstream"]["a"]["ok"] is False
        assert client.calls_for("c")[0]["input"]["upstream"] == {"a": {"ok": True}}

    @pytest.mark.asyncio
    async def test_schema_appended_to_prompt(self):
        """Test the output schema is appended to the prompt by default."""
        client = ScriptedModelClient()
        graph = build_graph({"a": node_def()})

        await make_executor(client, ExecutorConfig()).run(graph)

        prompt = client.calls[0]["prompt"]
        assert prompt.startswith("task a")
        assert '"required": [' in prompt
        assert "JSON Schema" in prompt

    @pytest.mark.asyncio
    async def test_executor_is_reusable(self, config):
        """Test one executor can run the same graph twice with fresh state."""
        client = ScriptedModelClient()
        executor = make_executor(client, config)
        graph = build_graph({"a": node_def(next_nodes=["b"]), "b": node_def()})

        first = await executor.run(graph)
        second = await executor.run(graph)

        assert first.status == second.status == RunStatus.SUCCEEDED
        assert first.run_id != second.run_id
        assert len(client.calls) == 4


class TestJoinAndConcurrency:
    """Tests for fan-in gating and parallel execution."""

    @pytest.mark.asyncio
    async def test_join_waits_for_all_dependencies(self, config):
        """Test c runs once, only after both a and b succeeded."""
        client = ScriptedModelClient(delays={"a": 0.01, "b": 0.03})
        graph = build_graph({
            "a": node_def(),
            "b": node_def(),
            "c": node_def(dependencies=["a", "b"]),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert len(client.calls_for("c")) == 1
        start_c = client.events.index(("start", "c"))
        assert client.events.index(("end", "a")) < start_c
        assert client.events.index(("end", "b")) < start_c
        assert set(client.calls_for("c")[0]["input"]["upstream"]) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_diamond_runs_join_once(self, config):
        """Test a node reached through two paths still runs exactly once."""
        client = ScriptedModelClient(delays={"b": 0.02, "c": 0.01})
        graph = build_graph({
            "a": node_def(next_nodes=["b", "c"]),
            "b": node_def(next_nodes=["d"]),
            "c": node_def(next_nodes=["d"]),
            "d": node_def(),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert [c["node"] for c in client.calls].count("d") == 1

    @pytest.mark.asyncio
    async def test_wide_join_with_simultaneous_predecessors(self, config):
        """Test a join over several predecessors finishing together runs once, last."""
        client = ScriptedModelClient()
        graph = build_graph({
            "p1": node_def(),
            "p2": node_def(),
            "p3": node_def(),
            "p4": node_def(),
            "join": node_def(dependencies=["p1", "p2", "p3", "p4"]),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert len(client.calls_for("join")) == 1
        start_join = client.events.index(("start", "join"))
        for predecessor in ("p1", "p2", "p3", "p4"):
            assert client.events.index(("end", predecessor)) < start_join
        assert sorted(client.calls_for("join")[0]["input"]["upstream"]) == ["p1", "p2", "p3", "p4"]

    @pytest.mark.asyncio
    async def test_independent_roots_run_concurrently(self, config):
        """Test nodes with no dependencies are in flight at the same time."""
        client = ScriptedModelClient(delays={"a": 0.05, "b": 0.05, "c": 0.05})
        graph = build_graph({"a": node_def(), "b": node_def(), "c": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert client.max_active == 3

    @pytest.mark.asyncio
    async def test_max_concurrency_caps_running_nodes(self):
        """Test max_concurrency limits simultaneous model calls."""
        client = ScriptedModelClient(delays={"a": 0.02, "b": 0.02, "c": 0.02})
        graph = build_graph({"a": node_def(), "b": node_def(), "c": node_def()})
        config = ExecutorConfig(include_schema_in_prompt=False, max_concurrency=1)

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.SUCCEEDED
        assert client.max_active == 1


class TestFailureContainment:
    """Tests for per-node failures and their effect on the rest of the graph."""

    @pytest.mark.asyncio
    async def test_validation_failure_is_isolated(self, config):
        """Test a -> b, c: b failing validation leaves c succeeded."""
        client = ScriptedModelClient({"b": [{"ok": "not a boolean"}]})
        graph = build_graph({
            "a": node_def(next_nodes=["b", "c"]),
            "b": node_def(),
            "c": node_def(),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.PARTIAL
        assert report.nodes["a"].state == NodeState.SUCCEEDED
        assert report.nodes["b"].state == NodeState.FAILED
        assert report.nodes["c"].state == NodeState.SUCCEEDED

        error = report.nodes["b"].error
        assert error.kind == FailureKind.VALIDATION
        assert error.violations[0]["path"] == "$.ok"
        assert "$.ok" in error.message

    @pytest.mark.asyncio
    async def test_validation_failure_is_not_retried(self, config):
        """Test a schema mismatch consumes a single attempt."""
        client = ScriptedModelClient({"a": [{"wrong": 1}]})
        graph = build_graph({"a": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.nodes["a"].attempts == 1
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_unparseable_text_fails_validation(self, config):
        """Test raw text output is reported as a validation failure at the root path."""
        client = ScriptedModelClient({"a": ["Sure! Here is your answer."]})
        graph = build_graph({"a": node_def()})

        report = await make_executor(client, config).run(graph)

        error = report.nodes["a"].error
        assert error.kind == FailureKind.VALIDATION
        assert error.violations[0]["path"] == "$"

    @pytest.mark.asyncio
    async def test_failure_blocks_transitive_dependents(self, config):
        """Test dependents of a failed node end Blocked, naming the failed node."""
        client = ScriptedModelClient({"a": [FatalError("bad request")]})
        graph = build_graph({
            "a": node_def(next_nodes=["b"]),
            "b": node_def(next_nodes=["c"]),
            "c": node_def(),
            "other": node_def(),
        })

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.PARTIAL
        assert report.nodes["a"].state == NodeState.FAILED
        assert report.nodes["b"].state == NodeState.BLOCKED
        assert report.nodes["c"].state == NodeState.BLOCKED
        assert report.nodes["b"].blocked_by == "a"
        assert report.nodes["c"].blocked_by == "a"
        assert report.nodes["other"].state == NodeState.SUCCEEDED
        assert report.blocked() == ["b", "c"]
        assert {c["node"] for c in client.calls} == {"a", "other"}

    @pytest.mark.asyncio
    async def test_join_with_one_failed_dependency_is_blocked(self, config):
        """Test a join never runs when one of its dependencies failed."""
        client = ScriptedModelClient({"b": [FatalError("nope")]})
        graph = build_graph({
            "a": node_def(),
            "b": node_def(),
            "c": node_def(dependencies=["a", "b"]),
        })

        report = await make_executor(client, config).run(graph)

        assert report.nodes["c"].state == NodeState.BLOCKED
        assert report.nodes["c"].blocked_by == "b"
        assert client.calls_for("c") == []

    @pytest.mark.asyncio
    async def test_all_failed_status(self, config):
        """Test a run where nothing succeeds reports failed."""
        client = ScriptedModelClient({"a": [FatalError("nope")]})
        graph = build_graph({"a": node_def(next_nodes=["b"]), "b": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_prompt_render_failure(self, config):
        """Test a template with a missing key fails the node without calling the model."""
        client = ScriptedModelClient()
        graph = build_graph({"a": node_def(promptTemplate="task a {missing}")})

        report = await make_executor(client, config).run(graph)

        assert report.nodes["a"].state == NodeState.FAILED
        assert report.nodes["a"].error.kind == FailureKind.PROMPT
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_fatal(self, config):
        """Test an exception outside the taxonomy fails the node without retry."""
        client = ScriptedModelClient({"a": [RuntimeError("boom")]})
        graph = build_graph({"a": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.nodes["a"].state == NodeState.FAILED
        assert report.nodes["a"].error.kind == FailureKind.FATAL
        assert report.nodes["a"].attempts == 1
        assert "boom" in report.nodes["a"].error.message

    @pytest.mark.asyncio
    async def test_executor_error_keeps_attempt_count(self, config):
        """Test a crash after the model call still reports the attempts made."""

        class CrashingValidator(Validator):
            def validate(self, output, schema):
                raise RuntimeError("validator crashed")

        client = ScriptedModelClient({"a": [TransientError("rate limited"), {"ok": True}]})
        graph = build_graph({"a": node_def(next_nodes=["b"]), "b": node_def()})

        report = await make_executor(client, config, validator=CrashingValidator()).run(graph)

        assert report.nodes["a"].state == NodeState.FAILED
        assert report.nodes["a"].error.kind == FailureKind.FATAL
        assert "validator crashed" in report.nodes["a"].error.message
        assert report.nodes["a"].attempts == 2
        assert report.nodes["a"].transient_errors == ["rate limited"]
        assert len(client.calls_for("a")) == 2
        assert report.nodes["b"].state == NodeState.BLOCKED

    @pytest.mark.asyncio
    async def test_cycle_raises_before_any_call(self):
        """Test a cyclic graph is rejected before the model is called."""
        client = ScriptedModelClient()
        graph = Graph([
            Node(id="a", prompt_template="task a", output_schema=OK_SCHEMA,
                 dependencies=frozenset({"b"})),
            Node(id="b", prompt_template="task b", output_schema=OK_SCHEMA,
                 dependencies=frozenset({"a"})),
        ])

        with pytest.raises(CycleDetectedError):
            await make_executor(client).run(graph)
        assert client.calls == []


class TestRetry:
    """Tests for the transient-failure retry loop inside a run."""

    @pytest.mark.asyncio
    async def test_transient_then_success(self, config):
        """Test two transient failures then success on a budget of 2."""
        client = ScriptedModelClient({
            "x": [TransientError("rate limited"), TransientError("rate limited"), {"ok": True}],
        })
        sleep = RecordingSleep()
        graph = build_graph({"x": node_def()})

        report = await make_executor(client, config, sleep=sleep).run(graph)

        assert report.nodes["x"].state == NodeState.SUCCEEDED
        assert report.nodes["x"].attempts == 3
        assert report.nodes["x"].retries == 2
        assert sleep.delays == [0.5, 1.0]
        assert report.nodes["x"].transient_errors == ["rate limited", "rate limited"]
        assert report.to_dict()["nodes"]["x"]["transient_errors"] == ["rate limited", "rate limited"]

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, config):
        """Test persistent transient failures stop after budget + 1 attempts."""
        client = ScriptedModelClient({"x": [TransientError("unavailable")]})
        graph = build_graph({"x": node_def(next_nodes=["y"]), "y": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.nodes["x"].state == NodeState.FAILED
        assert report.nodes["x"].attempts == config.max_retries + 1
        assert report.nodes["x"].error.kind == FailureKind.TRANSIENT
        assert report.nodes["x"].transient_errors == ["unavailable"] * (config.max_retries + 1)
        assert report.nodes["y"].state == NodeState.BLOCKED

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, config):
        """Test a fatal failure ends the node after one attempt."""
        client = ScriptedModelClient({"x": [FatalError("invalid api key")]})
        graph = build_graph({"x": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.nodes["x"].attempts == 1
        assert report.nodes["x"].error.kind == FailureKind.FATAL
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_per_node_retry_override(self):
        """Test maxRetries on a node overrides the executor budget."""
        client = ScriptedModelClient({
            "strict": [TransientError("busy")],
            "lenient": [TransientError("busy")],
        })
        graph = build_graph({
            "strict": node_def(maxRetries=0),
            "lenient": node_def(),
        })
        config = ExecutorConfig(include_schema_in_prompt=False, max_retries=3)

        report = await make_executor(client, config).run(graph)

        assert report.nodes["strict"].attempts == 1
        assert report.nodes["lenient"].attempts == 4

    @pytest.mark.asyncio
    async def test_call_timeout_is_transient(self):
        """Test a call exceeding call_timeout is retried and then fails as transient."""
        client = ScriptedModelClient(delays={"slow": 1.0})
        graph = build_graph({"slow": node_def()})
        config = ExecutorConfig(include_schema_in_prompt=False, max_retries=1, call_timeout=0.01)

        report = await make_executor(client, config).run(graph)

        node = report.nodes["slow"]
        assert node.state == NodeState.FAILED
        assert node.attempts == 2
        assert node.error.kind == FailureKind.TRANSIENT
        assert "timed out" in node.error.message


class TestAbort:
    """Tests for global abort and run timeout."""

    @pytest.mark.asyncio
    async def test_abort_on_failure_cancels_outstanding_work(self):
        """Test the first failure cancels in-flight and unscheduled nodes."""
        client = ScriptedModelClient(
            {"bad": [FatalError("nope")]},
            delays={"slow": 1.0},
        )
        graph = build_graph({
            "bad": node_def(next_nodes=["after_bad"]),
            "after_bad": node_def(),
            "slow": node_def(next_nodes=["after_slow"]),
            "after_slow": node_def(),
        })
        config = ExecutorConfig(include_schema_in_prompt=False, abort_on_failure=True)

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.ABORTED
        assert "bad" in report.aborted_reason
        assert report.nodes["bad"].state == NodeState.FAILED
        assert report.nodes["slow"].state == NodeState.CANCELLED
        assert report.nodes["after_slow"].state == NodeState.CANCELLED
        assert report.nodes["after_bad"].state == NodeState.BLOCKED

    @pytest.mark.asyncio
    async def test_default_mode_does_not_abort(self, config):
        """Test independent branches keep running after a failure by default."""
        client = ScriptedModelClient({"bad": [FatalError("nope")]}, delays={"slow": 0.02})
        graph = build_graph({"bad": node_def(), "slow": node_def()})

        report = await make_executor(client, config).run(graph)

        assert report.nodes["slow"].state == NodeState.SUCCEEDED
        assert report.aborted_reason is None

    @pytest.mark.asyncio
    async def test_run_timeout_aborts(self):
        """Test exceeding run_timeout cancels outstanding nodes."""
        client = ScriptedModelClient(delays={"slow": 1.0})
        graph = build_graph({
            "fast": node_def(),
            "slow": node_def(next_nodes=["tail"]),
            "tail": node_def(),
        })
        config = ExecutorConfig(include_schema_in_prompt=False, run_timeout=0.05)

        report = await make_executor(client, config).run(graph)

        assert report.status == RunStatus.ABORTED
        assert "timed out" in report.aborted_reason
        assert report.nodes["fast"].state == NodeState.SUCCEEDED
        assert report.nodes["slow"].state == NodeState.CANCELLED
        assert report.nodes["tail"].state == NodeState.CANCELLED


class TestObservability:
    """Tests for transition listeners, metrics and report rendering."""

    @pytest.mark.asyncio
    async def test_transition_listener_sees_lifecycle(self, config):
        """Test every state change is reported in order."""
        changes = []
        client = ScriptedModelClient()
        graph = build_graph({"a": node_def()})

        await make_executor(client, config, on_transition=changes.append).run(graph)

        assert [(c.old, c.new) for c in changes] == [
            (NodeState.PENDING, NodeState.WAITING),
            (NodeState.WAITING, NodeState.RUNNING),
            (NodeState.RUNNING, NodeState.SUCCEEDED),
        ]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_run(self, config):
        """Test an exception in the listener is contained."""
        def listener(change):
            raise RuntimeError("listener bug")

        graph = build_graph({"a": node_def(next_nodes=["b"]), "b": node_def()})
        report = await make_executor(
            ScriptedModelClient(), config, on_transition=listener
        ).run(graph)

        assert report.status == RunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, config):
        """Test metrics hold one entry per node with its final state."""
        metrics = MetricsCollector("test")
        client = ScriptedModelClient({"b": [FatalError("nope")]})
        graph = build_graph({"a": node_def(), "b": node_def(next_nodes=["c"]), "c": node_def()})

        await make_executor(client, config, metrics=metrics).run(graph)

        run_metrics = metrics.get_run_metrics()
        assert run_metrics["nodes_recorded"] == 3
        assert run_metrics["state_counts"] == {"succeeded": 1, "failed": 1, "blocked": 1}
        assert run_metrics["total_duration_ms"] >= 0
        assert metrics.get_summary()["a"]["success_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_report_to_dict_and_summary(self, config):
        """Test the report serializes to plain JSON types and renders a summary."""
        client = ScriptedModelClient({"b": [FatalError("nope")]})
        graph = build_graph({"a": node_def(), "b": node_def(next_nodes=["c"]), "c": node_def()})

        report = await make_executor(client, config).run(graph)
        data = report.to_dict()

        assert data["status"] == "partial"
        assert data["nodes"]["c"]["state"] == "blocked"
        assert data["nodes"]["b"]["error"]["kind"] == "fatal"
        assert isinstance(data["started_at"], str)

        summary = report.summary()
        assert report.run_id in summary
        assert "blocked_by=b" in summary

    @pytest.mark.asyncio
    async def test_every_node_ends_terminal(self, config):
        """Test no node is left Pending, Waiting or Running after a mixed run."""
        client = ScriptedModelClient({
            "a": [TransientError("x"), {"ok": True}],
            "c": [{"ok": 1}],
        })
        graph = build_graph({
            "a": node_def(next_nodes=["b", "c"]),
            "b": node_def(next_nodes=["d"]),
            "c": node_def(next_nodes=["d"]),
            "d": node_def(),
            "e": node_def(),
        })

        report = await make_executor(client, config).run(graph)

        assert all(n.state.is_terminal for n in report.nodes.values())
        assert report.nodes["d"].state == NodeState.BLOCKED
        assert report.nodes["d"].blocked_by == "c"


@pytest.mark.asyncio
async def test_run_can_be_cancelled_by_caller(config):
    """Test cancelling the run stops in-flight nodes and finalizes before re-raising."""
    client = ScriptedModelClient(delays={"a": 1.0})
    changes = []
    graph = build_graph({"a": node_def(next_nodes=["b"]), "b": node_def()})
    task = asyncio.ensure_future(
        make_executor(client, config, on_transition=changes.append).run(graph)
    )
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert client.active == 0
    assert ("end", "a") in client.events
    final = {c.node_id: c.new for c in changes}
    assert final == {"a": NodeState.CANCELLED, "b": NodeState.CANCELLED}
