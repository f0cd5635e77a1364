"""
Tests for the Workflow Engine core components.
"""

import pytest
import asyncio
import time
from typing import Any, Dict, List

from portflow.engine.context import RunStatus, StepStatus, WorkflowRun, output_key
from portflow.engine.models import WorkflowDefinition
from portflow.engine.ports import DataType, PortDescriptor, RetryPolicy, define_plugin
from portflow.engine.registry import PluginRegistry
from portflow.engine.scheduler import GraphWalker
from portflow.engine.supervisor import RunSupervisor, run_workflow
from portflow.plugins.builtin import register_builtin_plugins


# ============================================================
# Helpers
# ============================================================

def make_definition(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]] = None) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate({
        "id": "wf-test",
        "name": "Test Workflow",
        "nodes": nodes,
        "edges": edges or [],
    })


def edge(source: str, target: str, source_handle: str = None, target_handle: str = None) -> Dict[str, Any]:
    return {
        "id": f"{source}-{target}-{target_handle or 'input'}",
        "source": source,
        "target": target,
        "sourceHandle": source_handle,
        "targetHandle": target_handle,
    }


@define_plugin(
    id="echo",
    inputs=[PortDescriptor("input")],
    outputs=[PortDescriptor("output")],
)
async def echo(inputs, context):
    return {"output": inputs.get("input")}


@pytest.fixture
def registry():
    registry = register_builtin_plugins(PluginRegistry())
    registry.register(echo)
    return registry


@pytest.fixture
def calls():
    return []


@pytest.fixture
def collector(registry, calls):
    """A two-input node that records every invocation."""
    @registry.plugin(
        "collect",
        inputs=[PortDescriptor("a"), PortDescriptor("b")],
        outputs=[PortDescriptor("output", data_type=DataType.ARRAY)],
    )
    def collect(inputs, context):
        calls.append(context.node_id)
        return {"output": [inputs.get("a"), inputs.get("b")]}
    return collect


# ============================================================
# Registry Tests
# ============================================================

class TestPluginRegistry:
    """Tests for PluginRegistry."""

    def test_register_and_get(self, registry):
        """Registered plugins can be looked up by id."""
        assert registry.get("echo") is echo
        assert "trigger" in registry
        assert registry.get("missing") is None

    def test_overwrite_warns(self, registry, caplog):
        """Re-registering an id replaces the plugin and logs a warning."""
        replacement = define_plugin(id="echo")(lambda inputs, context: {})
        registry.register(replacement)

        assert registry.get("echo") is replacement
        assert "already registered" in caplog.text

    def test_empty_id_rejected(self, registry):
        """A descriptor without id cannot be registered."""
        with pytest.raises(ValueError):
            registry.register(define_plugin(id="")(lambda inputs, context: {}))

    def test_get_by_category(self, registry):
        """Plugins can be filtered by category."""
        math = registry.get_by_category("Math")
        assert [p.id for p in math] == ["adder_node"]

    def test_builtin_trigger_has_no_inputs(self, registry):
        assert registry.get("trigger").is_trigger
        assert registry.get("webhook_trigger").is_trigger
        assert not registry.get("adder_node").is_trigger

    def test_builtin_registration_can_keep_existing(self, registry, caplog):
        """Registering the built-ins again with replace=False changes nothing."""
        transform = registry.get("transform")
        register_builtin_plugins(registry, replace=False)

        assert registry.get("transform") is transform
        assert registry.get("echo") is echo
        assert "already registered" not in caplog.text

    def test_expression_plugins_run_in_executor(self, registry):
        """Expression evaluation is CPU work, so it must not run on the event loop."""
        assert registry.get("transform").is_async is False
        assert registry.get("adder_node").is_async is False
        assert registry.get("greeting_node").is_async is False


# ============================================================
# Graph Model Tests
# ============================================================

class TestWorkflowDefinition:
    """Tests for the graph model."""

    def test_handles_default(self):
        """Missing handles fall back to output/input."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "e", "type": "echo"}],
            [{"source": "t", "target": "e"}],
        )
        assert definition.edges[0].source_port == "output"
        assert definition.edges[0].target_port == "input"

    def test_validate_structure(self):
        """Dangling edges and duplicate ids are structural errors."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "t", "type": "echo"}],
            [edge("t", "ghost")],
        )
        errors = definition.validate_structure()
        assert any("Duplicate node id 't'" in e for e in errors)
        assert any("ghost" in e for e in errors)

    def test_find_cycle(self):
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}],
            [edge("t", "a"), edge("a", "b"), edge("b", "a")],
        )
        assert definition.find_cycle(definition.reachable_from("t")) == ["a", "b"]

    def test_check_connections(self, registry):
        """Type checking is available to the editor."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "g", "type": "greeting_node"}],
            [edge("t", "g", "output", "name_input"), edge("t", "g", "output", "nope")],
        )
        problems = definition.check_connections(registry)
        assert any("cannot connect object output to string input" in p for p in problems)
        assert any("'nope' is not an input" in p for p in problems)

    def test_any_port_is_compatible(self, registry):
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "x", "type": "transform"}],
            [edge("t", "x")],
        )
        assert definition.check_connections(registry) == []


# ============================================================
# Trigger Discovery Tests
# ============================================================

class TestTriggerDiscovery:
    """Tests for trigger selection and structural validation."""

    def test_find_trigger_nodes(self, registry):
        """Nodes whose plugin has no inputs are triggers."""
        supervisor = RunSupervisor(registry)
        definition = make_definition(
            [{"id": "e", "type": "echo"}, {"id": "t", "type": "trigger"}],
            [edge("t", "e")],
        )
        assert [n.id for n in supervisor.find_trigger_nodes(definition)] == ["t"]

    @pytest.mark.asyncio
    async def test_no_trigger_fails_run(self, registry):
        """A workflow without trigger fails before executing anything."""
        definition = make_definition([{"id": "e", "type": "echo"}])
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert run.error.message == "No trigger node found."
        assert run.executed_nodes == []

    @pytest.mark.asyncio
    async def test_multiple_triggers_run_first(self, registry, caplog):
        """Only the first trigger in definition order is executed."""
        definition = make_definition(
            [{"id": "t1", "type": "trigger"}, {"id": "t2", "type": "trigger"}],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.COMPLETED
        assert run.executed_nodes == ["t1"]
        assert "Multiple trigger nodes" in caplog.text

    @pytest.mark.asyncio
    async def test_explicit_trigger(self, registry):
        """An explicit trigger id selects the entry node."""
        supervisor = RunSupervisor(registry)
        definition = make_definition(
            [{"id": "t1", "type": "trigger"}, {"id": "t2", "type": "webhook_trigger"}],
        )
        run = await supervisor.start_workflow(definition, payload={"a": 1}, trigger_node_id="t2")

        assert run.executed_nodes == ["t2"]
        assert run.get_output("t2", "output") == {"a": 1}

    @pytest.mark.asyncio
    async def test_explicit_trigger_must_be_trigger(self, registry):
        supervisor = RunSupervisor(registry)
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "e", "type": "echo"}],
            [edge("t", "e")],
        )
        run = await supervisor.start_workflow(definition, trigger_node_id="e")

        assert run.status == RunStatus.FAILED
        assert run.error.node_id == "e"
        assert run.executed_nodes == []

    @pytest.mark.asyncio
    async def test_dangling_edge_rejected(self, registry):
        definition = make_definition(
            [{"id": "t", "type": "trigger"}],
            [edge("t", "ghost")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert run.error.message.startswith("Invalid workflow definition")
        assert run.executed_nodes == []

    @pytest.mark.asyncio
    async def test_reachable_cycle_rejected(self, registry):
        """A cycle reachable from the trigger is refused before any node runs."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}],
            [edge("t", "a"), edge("a", "b"), edge("b", "a")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert "cycle" in run.error.message
        assert run.error.details == {"nodes": ["a", "b"]}
        assert run.executed_nodes == []

    @pytest.mark.asyncio
    async def test_unreachable_cycle_ignored(self, registry):
        """Cycles the trigger cannot reach are never executed."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}],
            [edge("a", "b"), edge("b", "a")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.COMPLETED
        assert run.executed_nodes == ["t"]


# ============================================================
# Execution Tests
# ============================================================

class TestExecution:
    """Tests for data propagation and node ordering."""

    @pytest.mark.asyncio
    async def test_output_propagates_along_edge(self, registry):
        """The trigger output arrives on the connected input port."""
        definition = make_definition(
            [{"id": "t", "type": "trigger", "data": {"initial_value": "hi"}}, {"id": "e", "type": "echo"}],
            [edge("t", "e", "output", "input")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.COMPLETED
        assert run.context_data["e.output"] == run.context_data["t.output"]
        assert run.context_data["t.output"]["initial_value"] == "hi"
        assert run.executed_nodes == ["t", "e"]

    @pytest.mark.asyncio
    async def test_type_mismatch_not_enforced(self, registry):
        """An object wired into a string port still executes."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "g", "type": "greeting_node"}],
            [edge("t", "g", "output", "name_input")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.COMPLETED
        assert run.get_output("g", "greeting_output").startswith("Hello, {")

    @pytest.mark.asyncio
    async def test_missing_plugin_stops_run(self, registry):
        """A node without plugin fails the run and nothing downstream runs."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "x", "type": "unknown"}, {"id": "e", "type": "echo"}],
            [edge("t", "x"), edge("x", "e")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert run.error.node_id == "x"
        assert run.error.message == "Plugin not found for node type: unknown"
        assert run.executed_nodes == ["t"]

    @pytest.mark.asyncio
    async def test_fan_out(self, registry):
        """Both branches of a fan-out execute exactly once."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}],
            [edge("t", "a"), edge("t", "b")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.COMPLETED
        assert sorted(run.executed_nodes) == ["a", "b", "t"]
        assert run.get_output("a", "output") == run.get_output("b", "output")

    @pytest.mark.asyncio
    async def test_diamond_runs_join_once(self, registry, collector, calls):
        """A convergent node runs once, after both branches, with both inputs."""
        definition = make_definition(
            [
                {"id": "t", "type": "trigger"},
                {"id": "a", "type": "transform", "data": {"expression": "'left'"}},
                {"id": "b", "type": "transform", "data": {"expression": "'right'"}},
                {"id": "c", "type": "collect"},
            ],
            [edge("t", "a"), edge("t", "b"), edge("a", "c", "output", "a"), edge("b", "c", "output", "b")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.COMPLETED
        assert calls == ["c"]
        assert run.executed_nodes[-1] == "c"
        assert run.get_output("c", "output") == ["left", "right"]

    @pytest.mark.asyncio
    async def test_uneven_diamond(self, registry, collector, calls):
        """The join waits for the longer branch as well."""
        definition = make_definition(
            [
                {"id": "t", "type": "trigger"},
                {"id": "a", "type": "transform", "data": {"expression": "1"}},
                {"id": "a2", "type": "transform", "data": {"expression": "input + 1"}},
                {"id": "b", "type": "transform", "data": {"expression": "10"}},
                {"id": "c", "type": "collect"},
            ],
            [
                edge("t", "a"), edge("a", "a2"), edge("t", "b"),
                edge("a2", "c", "output", "a"), edge("b", "c", "output", "b"),
            ],
        )
        run = await run_workflow(definition, registry)

        assert calls == ["c"]
        assert run.get_output("c", "output") == [2, 10]

    @pytest.mark.asyncio
    async def test_diamond_with_concurrency(self, registry, collector, calls):
        """Overlapping branches still release the join exactly once."""
        definition = make_definition(
            [
                {"id": "t", "type": "trigger"},
                {"id": "a", "type": "transform", "data": {"expression": "1"}},
                {"id": "b", "type": "transform", "data": {"expression": "2"}},
                {"id": "c", "type": "collect"},
            ],
            [edge("t", "a"), edge("t", "b"), edge("a", "c", "output", "a"), edge("b", "c", "output", "b")],
        )
        run = await run_workflow(definition, registry, max_concurrency=4)

        assert run.status == RunStatus.COMPLETED
        assert calls == ["c"]
        assert run.executed_nodes[-1] == "c"
        assert run.get_output("c", "output") == [1, 2]

    @pytest.mark.asyncio
    async def test_failed_branch_skips_queued_nodes(self, registry):
        """Nodes still queued when a sibling fails are reported as skipped."""
        @registry.plugin("boom", inputs=[PortDescriptor("input")], outputs=[PortDescriptor("output")])
        async def boom(inputs, context):
            raise RuntimeError("kaboom")

        steps = []
        supervisor = RunSupervisor(registry, max_concurrency=1)
        supervisor.add_step_sink(lambda run, step: steps.append(step))
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "a", "type": "boom"}, {"id": "b", "type": "echo"}],
            [edge("t", "a"), edge("t", "b")],
        )
        run = await supervisor.start_workflow(definition)

        assert run.status == RunStatus.FAILED
        assert run.executed_nodes == ["t"]
        assert [(s.node_id, s.status) for s in steps] == [
            ("t", StepStatus.SUCCESS),
            ("a", StepStatus.ERROR),
            ("b", StepStatus.SKIPPED),
        ]
        assert steps[-1].error == "Run failed before node started"

    @pytest.mark.asyncio
    async def test_adder_scenario(self, registry):
        """trigger -> adder_node.num1 sums the trigger value with 0."""
        @registry.plugin("trigger", outputs=[PortDescriptor("output", data_type=DataType.NUMBER)])
        def number_trigger(inputs, context):
            return {"output": context.node_data.get("value")}

        definition = WorkflowDefinition.model_validate({
            "nodes": [{"id": "t", "type": "trigger", "data": {"value": 7}}, {"id": "a", "type": "adder_node"}],
            "edges": [{"id": "e1", "source": "t", "target": "a", "sourceHandle": "output", "targetHandle": "num1"}],
        })
        run = await run_workflow(definition, registry)
        assert run.context_data["a.sum_output"] == 7

        definition.nodes[0].data = {"value": None}
        run = await run_workflow(definition, registry)
        assert run.context_data["a.sum_output"] == 0

    @pytest.mark.asyncio
    async def test_missing_input_is_warning(self, registry):
        """An edge from a port that produced nothing only logs a warning."""
        steps = []
        supervisor = RunSupervisor(registry)
        supervisor.add_step_sink(lambda run, step: steps.append(step))
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "e", "type": "echo"}],
            [edge("t", "e", "nothing", "input")],
        )
        run = await supervisor.start_workflow(definition)

        assert run.status == RunStatus.COMPLETED
        assert run.get_output("e", "output") is None
        echo_step = next(s for s in steps if s.node_id == "e")
        assert echo_step.logs[0].level == "warning"

    @pytest.mark.asyncio
    async def test_node_exception_fails_run(self, registry):
        """A raising node fails the run; its successors never run."""
        @registry.plugin("boom", inputs=[PortDescriptor("input")], outputs=[PortDescriptor("output")])
        async def boom(inputs, context):
            raise RuntimeError("kaboom")

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "b", "type": "boom"}, {"id": "e", "type": "echo"}],
            [edge("t", "b"), edge("b", "e")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert run.error.node_id == "b"
        assert "kaboom" in run.error.message
        assert run.executed_nodes == ["t"]

    @pytest.mark.asyncio
    async def test_non_dict_result_is_error(self, registry):
        @registry.plugin("bad", inputs=[PortDescriptor("input")])
        def bad(inputs, context):
            return 42

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "b", "type": "bad"}],
            [edge("t", "b")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert "must return a dict" in run.error.message

    @pytest.mark.asyncio
    async def test_definition_snapshot(self, registry):
        """Editing the definition during a run does not affect it."""
        started = asyncio.Event()
        release = asyncio.Event()

        @registry.plugin("gate", inputs=[PortDescriptor("input")], outputs=[PortDescriptor("output")])
        async def gate(inputs, context):
            started.set()
            await release.wait()
            return {"output": "done"}

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "g", "type": "gate"}],
            [edge("t", "g")],
        )
        task = asyncio.create_task(run_workflow(definition, registry))
        await started.wait()
        definition.nodes.append(definition.nodes[1].model_copy(update={"id": "late"}))
        definition.edges.append(definition.edges[0].model_copy(update={"id": "late", "target": "late"}))
        release.set()
        run = await task

        assert run.executed_nodes == ["t", "g"]


# ============================================================
# Timeout / Retry / Cancellation Tests
# ============================================================

class TestResilience:
    """Tests for timeouts, retries and cancellation."""

    @pytest.mark.asyncio
    async def test_node_timeout(self, registry):
        @registry.plugin("slow", inputs=[PortDescriptor("input")])
        async def slow(inputs, context):
            await asyncio.sleep(5)

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "s", "type": "slow"}],
            [edge("t", "s")],
        )
        run = await run_workflow(definition, registry, node_timeout=0.05)

        assert run.status == RunStatus.FAILED
        assert run.error.node_id == "s"
        assert "timed out after 0.05s" in run.error.message

    @pytest.mark.asyncio
    async def test_expression_timeout(self, registry):
        """A slow expression in a transform node is cut off by the node timeout."""
        class SlowSized:
            def __len__(self):
                time.sleep(0.5)
                return 1

        @registry.plugin("slow_value", inputs=[PortDescriptor("input")], outputs=[PortDescriptor("output")])
        async def slow_value(inputs, context):
            return {"output": SlowSized()}

        definition = make_definition(
            [
                {"id": "t", "type": "trigger"},
                {"id": "v", "type": "slow_value"},
                {"id": "x", "type": "transform", "data": {"expression": "len(input)"}},
            ],
            [edge("t", "v"), edge("v", "x")],
        )
        started = time.monotonic()
        run = await run_workflow(definition, registry, node_timeout=0.1)
        elapsed = time.monotonic() - started

        assert run.status == RunStatus.FAILED
        assert run.error.node_id == "x"
        assert "timed out after 0.1s" in run.error.message
        assert elapsed < 0.45

    @pytest.mark.asyncio
    async def test_retry_recovers(self, registry):
        """A transient failure is retried per the plugin's policy."""
        attempts = []

        @registry.plugin(
            "flaky",
            inputs=[PortDescriptor("input")],
            outputs=[PortDescriptor("output")],
            retry=RetryPolicy(max_attempts=3, backoff_seconds=0.01),
        )
        async def flaky(inputs, context):
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("try again")
            return {"output": "ok"}

        steps = []
        supervisor = RunSupervisor(registry)
        supervisor.add_step_sink(lambda run, step: steps.append(step))
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "f", "type": "flaky"}],
            [edge("t", "f")],
        )
        run = await supervisor.start_workflow(definition)

        assert run.status == RunStatus.COMPLETED
        assert run.get_output("f", "output") == "ok"
        flaky_step = next(s for s in steps if s.node_id == "f")
        assert flaky_step.attempts == 3
        assert sum(1 for entry in flaky_step.logs if entry.level == "warning") == 2

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, registry):
        @registry.plugin(
            "broken",
            inputs=[PortDescriptor("input")],
            retry=RetryPolicy(max_attempts=2, backoff_seconds=0),
        )
        async def broken(inputs, context):
            raise ConnectionError("down")

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "b", "type": "broken"}],
            [edge("t", "b")],
        )
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert run.error.details == {"type": "ConnectionError", "attempts": 2}

    @pytest.mark.asyncio
    async def test_no_retry_by_default(self, registry):
        attempts = []

        @registry.plugin("once", inputs=[PortDescriptor("input")])
        async def once(inputs, context):
            attempts.append(1)
            raise ConnectionError("down")

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "o", "type": "once"}],
            [edge("t", "o")],
        )
        await run_workflow(definition, registry)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_cancel_run(self, registry):
        """Cancelling interrupts the in-flight node and skips the rest."""
        started = asyncio.Event()

        @registry.plugin("wait", inputs=[PortDescriptor("input")], outputs=[PortDescriptor("output")])
        async def wait(inputs, context):
            started.set()
            await asyncio.sleep(5)
            return {"output": 1}

        steps = []
        supervisor = RunSupervisor(registry)
        supervisor.add_step_sink(lambda run, step: steps.append(step))
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "w", "type": "wait"}, {"id": "e", "type": "echo"}],
            [edge("t", "w"), edge("w", "e")],
        )
        run = await supervisor.create_run(definition)
        task = asyncio.create_task(supervisor.execute(run, definition))
        await started.wait()

        assert supervisor.cancel_run(run.id, reason="stop")
        await task

        assert run.status == RunStatus.CANCELLED
        assert run.error.message == "stop"
        assert run.executed_nodes == ["t"]
        assert [s.node_id for s in steps] == ["t", "w"]
        assert steps[-1].status == StepStatus.ERROR

    @pytest.mark.asyncio
    async def test_cancelled_task_stops_node_tasks(self, registry):
        """Cancelling the task driving a run also stops its in-flight nodes."""
        started = asyncio.Event()
        finished = []

        @registry.plugin("late", inputs=[PortDescriptor("input")], outputs=[PortDescriptor("output")])
        async def late(inputs, context):
            started.set()
            await asyncio.sleep(0.2)
            finished.append(context.node_id)
            return {"output": "late"}

        supervisor = RunSupervisor(registry)
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "s", "type": "late"}],
            [edge("t", "s")],
        )
        run = await supervisor.create_run(definition)
        task = asyncio.create_task(supervisor.execute(run, definition))
        await started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.3)

        assert finished == []
        assert "s.output" not in run.context_data
        assert run.executed_nodes == ["t"]
        assert run.status == RunStatus.CANCELLED
        assert supervisor.active_runs() == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, registry):
        supervisor = RunSupervisor(registry)
        assert supervisor.cancel_run("nope") is False


# ============================================================
# Supervisor Tests
# ============================================================

class TestRunSupervisor:
    """Tests for run tracking and sinks."""

    @pytest.mark.asyncio
    async def test_finished_runs_are_evicted(self, registry):
        supervisor = RunSupervisor(registry)
        definition = make_definition([{"id": "t", "type": "trigger"}])

        run = await supervisor.create_run(definition)
        assert supervisor.get_run_status(run.id) is run
        assert run.status == RunStatus.PENDING

        await supervisor.execute(run, definition)
        assert supervisor.get_run_status(run.id) is None
        assert supervisor.active_runs() == []

    @pytest.mark.asyncio
    async def test_sinks_receive_steps_and_runs(self, registry):
        steps = []
        finished: List[WorkflowRun] = []

        async def run_sink(run):
            finished.append(run)

        supervisor = RunSupervisor(registry)
        supervisor.add_step_sink(lambda run, step: steps.append(step.to_dict()))
        supervisor.add_run_sink(run_sink)

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "e", "type": "echo"}],
            [edge("t", "e")],
        )
        run = await supervisor.start_workflow(definition)

        assert [s["node_id"] for s in steps] == ["t", "e"]
        assert all(s["status"] == "success" for s in steps)
        assert steps[0]["duration_ms"] is not None
        assert finished == [run]
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_run(self, registry):
        def broken_sink(run, step):
            raise RuntimeError("sink down")

        supervisor = RunSupervisor(registry)
        supervisor.add_step_sink(broken_sink)
        run = await supervisor.start_workflow(make_definition([{"id": "t", "type": "trigger"}]))

        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_branches(self, registry):
        """With max_concurrency > 1 independent branches overlap."""
        running = []
        peak = []

        @registry.plugin("busy", inputs=[PortDescriptor("input")], outputs=[PortDescriptor("output")])
        async def busy(inputs, context):
            running.append(context.node_id)
            peak.append(len(running))
            await asyncio.sleep(0.02)
            running.remove(context.node_id)
            return {"output": context.node_id}

        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "a", "type": "busy"}, {"id": "b", "type": "busy"}],
            [edge("t", "a"), edge("t", "b")],
        )

        run = await run_workflow(definition, registry, max_concurrency=2)
        assert run.status == RunStatus.COMPLETED
        assert max(peak) == 2

        peak.clear()
        await run_workflow(definition, registry, max_concurrency=1)
        assert max(peak) == 1

    @pytest.mark.asyncio
    async def test_walker_directly(self, registry):
        """The walker can be driven without a supervisor."""
        definition = make_definition(
            [{"id": "t", "type": "trigger"}, {"id": "e", "type": "echo"}],
            [edge("t", "e")],
        )
        run = WorkflowRun(workflow_definition_id=definition.id)
        await GraphWalker(registry).walk(run, definition, definition.get_node("t"), payload="p")

        assert run.status == RunStatus.RUNNING
        assert run.finalize().status == RunStatus.COMPLETED
        assert run.get_output("t", "output")["payload"] == "p"
        assert output_key("e", "output") in run.context_data


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
