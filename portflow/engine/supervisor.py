"""
Run Supervisor.

The supervisor owns the table of active runs. It allocates run ids,
checks a definition is executable, picks the trigger node, hands the walk
to the GraphWalker and settles the final status. Finished runs leave the
active table immediately; callers that need history register a run sink.
"""

from typing import Any, Callable, Dict, List, Optional
import asyncio
import inspect
import logging

from portflow.engine.context import (
    CancellationToken,
    RunStatus,
    StepExecutionResult,
    WorkflowRun,
)
from portflow.engine.models import WorkflowDefinition, WorkflowNode
from portflow.engine.registry import PluginRegistry
from portflow.engine.scheduler import GraphWalker


logger = logging.getLogger(__name__)


StepSink = Callable[[WorkflowRun, StepExecutionResult], Any]
RunSink = Callable[[WorkflowRun], Any]


class RunSupervisor:
    """
    Starts workflow runs and tracks the ones in flight.

    ``start_workflow`` always returns a WorkflowRun; every failure is
    reported through its ``status`` and ``error`` fields.

    Usage:
        supervisor = RunSupervisor(registry)
        supervisor.add_step_sink(lambda run, step: print(step.to_dict()))
        run = await supervisor.start_workflow(definition)
    """

    def __init__(
        self,
        registry: PluginRegistry,
        node_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
    ):
        """
        Initialize the supervisor.

        Args:
            registry: Plugin registry used to resolve node types
            node_timeout: Default per-node timeout (seconds)
            max_concurrency: Ready nodes allowed to run at once
        """
        self.registry = registry
        self._walker = GraphWalker(
            registry,
            node_timeout=node_timeout,
            max_concurrency=max_concurrency,
            on_step=self._emit_step,
        )
        self._active: Dict[str, WorkflowRun] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = asyncio.Lock()
        self._step_sinks: List[StepSink] = []
        self._run_sinks: List[RunSink] = []

    # ------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------

    def add_step_sink(self, sink: StepSink) -> None:
        """Receive every StepExecutionResult (sync or async callable)."""
        self._step_sinks.append(sink)

    def add_run_sink(self, sink: RunSink) -> None:
        """Receive every run once it has finished (sync or async callable)."""
        self._run_sinks.append(sink)

    # ------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------

    async def start_workflow(
        self,
        definition: WorkflowDefinition,
        payload: Any = None,
        trigger_node_id: Optional[str] = None,
    ) -> WorkflowRun:
        """
        Run a workflow to completion.

        Args:
            definition: Workflow to execute (a snapshot is taken)
            payload: Trigger payload, e.g. a webhook body
            trigger_node_id: Explicit entry node; defaults to trigger discovery

        Returns:
            The finished run
        """
        run = await self.create_run(definition)
        return await self.execute(run, definition, payload, trigger_node_id)

    async def create_run(self, definition: WorkflowDefinition) -> WorkflowRun:
        """Allocate a pending run and make it visible to status queries."""
        run = WorkflowRun(workflow_definition_id=definition.id)
        async with self._lock:
            self._active[run.id] = run
            self._tokens[run.id] = CancellationToken()
        return run

    async def execute(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        payload: Any = None,
        trigger_node_id: Optional[str] = None,
    ) -> WorkflowRun:
        """Execute a run created by ``create_run``; never raises for run failures."""
        snapshot = definition.snapshot()
        token = self._tokens.get(run.id) or CancellationToken()

        run.status = RunStatus.RUNNING
        logger.info(f"Starting workflow run: {run.id} for definition: {snapshot.name}")

        try:
            trigger = self._prepare(run, snapshot, trigger_node_id)
            if trigger is not None:
                await self._walker.walk(run, snapshot, trigger, payload, token)
        except asyncio.CancelledError:
            run.fail("Run task was cancelled", status=RunStatus.CANCELLED)
            raise
        except Exception as e:
            logger.exception(f"Workflow run {run.id} crashed: {e}")
            run.fail(f"Internal error: {e}", details={"type": type(e).__name__})
        finally:
            run.finalize()
            await self._evict(run)
            await self._emit_run(run)

        logger.info(f"Workflow run {run.id} finished with status: {run.status.value}")
        return run

    def get_run_status(self, run_id: str) -> Optional[WorkflowRun]:
        """Look up an active run; finished runs are no longer tracked."""
        return self._active.get(run_id)

    def active_runs(self) -> List[WorkflowRun]:
        """Snapshot of the runs currently tracked."""
        return list(self._active.values())

    def cancel_run(self, run_id: str, reason: str = "Run cancelled") -> bool:
        """
        Ask an active run to stop.

        Queued nodes are skipped and in-flight plugin calls interrupted.

        Returns:
            False if the run is not active
        """
        token = self._tokens.get(run_id)
        if token is None:
            return False
        logger.info(f"Cancelling workflow run {run_id}: {reason}")
        token.cancel(reason)
        return True

    # ------------------------------------------------------------
    # Trigger discovery and validation
    # ------------------------------------------------------------

    def find_trigger_nodes(self, definition: WorkflowDefinition) -> List[WorkflowNode]:
        """Nodes whose registered plugin declares no input ports, in definition order."""
        triggers = []
        for node in definition.nodes:
            plugin = self.registry.get(node.type)
            if plugin is not None and plugin.is_trigger:
                triggers.append(node)
        return triggers

    def _prepare(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        trigger_node_id: Optional[str],
    ) -> Optional[WorkflowNode]:
        """
        Structural checks done before any node runs.

        A workflow must have exactly one entry node for defined behavior;
        when several trigger nodes exist only the first one is executed.

        Returns:
            The trigger node, or None after failing the run
        """
        errors = definition.validate_structure()
        if errors:
            logger.error(f"Invalid workflow definition {definition.id}: {errors}")
            run.fail("Invalid workflow definition: " + "; ".join(errors), details={"errors": errors})
            return None

        triggers = self.find_trigger_nodes(definition)

        if trigger_node_id is not None:
            trigger = next((n for n in triggers if n.id == trigger_node_id), None)
            if trigger is None:
                run.fail(f"Node '{trigger_node_id}' is not a trigger node.", node_id=trigger_node_id)
                return None
        elif not triggers:
            logger.error("No trigger node found in workflow definition.")
            run.fail("No trigger node found.")
            return None
        else:
            if len(triggers) > 1:
                logger.warning(
                    f"Multiple trigger nodes found ({[n.id for n in triggers]}). "
                    f"Executing the first one only."
                )
            trigger = triggers[0]

        cycle = definition.find_cycle(definition.reachable_from(trigger.id))
        if cycle:
            run.fail(
                f"Workflow contains a cycle reachable from trigger '{trigger.id}': {cycle}",
                details={"nodes": cycle},
            )
            return None

        return trigger

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    async def _evict(self, run: WorkflowRun) -> None:
        async with self._lock:
            self._active.pop(run.id, None)
            self._tokens.pop(run.id, None)

    async def _emit_step(self, run: WorkflowRun, step: StepExecutionResult) -> None:
        for sink in self._step_sinks:
            await self._call_sink(sink, run, step)

    async def _emit_run(self, run: WorkflowRun) -> None:
        for sink in self._run_sinks:
            await self._call_sink(sink, run)

    @staticmethod
    async def _call_sink(sink: Callable, *args: Any) -> None:
        try:
            result = sink(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Sink {getattr(sink, '__name__', sink)} failed: {e}")


async def run_workflow(
    definition: WorkflowDefinition,
    registry: PluginRegistry,
    payload: Any = None,
    node_timeout: Optional[float] = None,
    max_concurrency: Optional[int] = None,
) -> WorkflowRun:
    """
    Convenience function to run a workflow with a throwaway supervisor.

    Args:
        definition: The workflow definition
        registry: Plugin registry
        payload: Trigger payload
        node_timeout: Per-node timeout override
        max_concurrency: Concurrency override

    Returns:
        The finished WorkflowRun
    """
    supervisor = RunSupervisor(registry, node_timeout=node_timeout, max_concurrency=max_concurrency)
    return await supervisor.start_workflow(definition, payload=payload)
