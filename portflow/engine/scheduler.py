"""
Graph Walker.

The walker executes the part of a workflow reachable from its trigger
node. Work is modelled as a queue of ready ``(run_id, node_id)`` tasks: a
node enters the queue only once every upstream node that can reach it
from the trigger has finished, so each node runs exactly once and sees
all of its inputs. Diamond-shaped graphs therefore run the shared node
once, after both branches.
"""

from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set
from collections import deque
from datetime import datetime
import asyncio
import logging
import time

from portflow.config import settings
from portflow.engine.context import (
    CancellationToken,
    RunStatus,
    StepExecutionResult,
    StepLogEntry,
    StepStatus,
    WorkflowRun,
    output_key,
)
from portflow.engine.models import WorkflowDefinition, WorkflowNode
from portflow.engine.ports import PluginContext, PluginDescriptor, RetryPolicy
from portflow.engine.registry import PluginRegistry


logger = logging.getLogger(__name__)


StepCallback = Callable[[WorkflowRun, StepExecutionResult], Awaitable[None]]

NO_RETRY = RetryPolicy(max_attempts=1, backoff_seconds=0)


class NodeTimeoutError(RuntimeError):
    """A plugin's run did not finish within its timeout."""


class RunCancelledError(Exception):
    """The run's cancellation token was set while a node was executing."""


class GraphWalker:
    """
    Executes a workflow run from its trigger node.

    Handles:
    - Exactly-once execution in dependency order
    - Input gathering from context data by reverse-mapping edges
    - Per-node timeout and opt-in retry with backoff
    - Cancellation of queued and in-flight nodes
    - Optional concurrent execution of independent ready nodes

    Usage:
        walker = GraphWalker(registry)
        await walker.walk(run, definition, trigger_node)
    """

    def __init__(
        self,
        registry: PluginRegistry,
        node_timeout: Optional[float] = None,
        max_concurrency: Optional[int] = None,
        on_step: Optional[StepCallback] = None,
    ):
        """
        Initialize the walker.

        Args:
            registry: Plugin lookup for node types
            node_timeout: Default per-node timeout in seconds
            max_concurrency: Ready nodes allowed to run at once (1 = sequential)
            on_step: Awaited with every step result
        """
        self.registry = registry
        self.node_timeout = node_timeout if node_timeout is not None else settings.NODE_TIMEOUT_SECONDS
        self.max_concurrency = max(1, max_concurrency or settings.MAX_CONCURRENCY)
        self.on_step = on_step

    async def walk(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        trigger: WorkflowNode,
        payload: Any = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowRun:
        """
        Execute every node reachable from ``trigger``.

        Never raises for node failures; they are recorded on the run. The
        final status is left to the caller (see ``WorkflowRun.finalize``).

        Args:
            run: The run to mutate
            definition: Snapshot of the workflow definition
            trigger: Entry node
            payload: Trigger payload exposed to plugins via their context
            cancel_token: Cancellation signal for this run

        Returns:
            The same run
        """
        token = cancel_token or CancellationToken()
        if run.status == RunStatus.PENDING:
            run.status = RunStatus.RUNNING

        reachable = definition.reachable_from(trigger.id)
        waiting_on = self._upstream_of(definition, reachable)

        ready: Deque[str] = deque([trigger.id])
        scheduled: Set[str] = {trigger.id}
        in_flight: Dict[asyncio.Task, str] = {}

        try:
            while ready or in_flight:
                while ready and len(in_flight) < self.max_concurrency and self._may_start(run, token):
                    node_id = ready.popleft()
                    node = definition.get_node(node_id)
                    task = asyncio.create_task(
                        self._execute_node(run, definition, node, payload, token)
                    )
                    in_flight[task] = node_id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id = in_flight.pop(task)
                    if not task.result() or run.status != RunStatus.RUNNING:
                        continue
                    for target in self._release(definition, node_id, waiting_on):
                        if target not in scheduled:
                            scheduled.add(target)
                            ready.append(target)
        finally:
            # Never leave node tasks running past the walk
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        if token.cancelled:
            run.fail(token.reason or "Run cancelled", status=RunStatus.CANCELLED)

        for node_id in ready:
            await self._skip_node(run, definition.get_node(node_id))

        if run.status == RunStatus.RUNNING:
            stalled = [n.id for n in definition.nodes if n.id in reachable and n.id not in scheduled]
            if stalled:
                run.fail(
                    f"Nodes never became ready (cyclic dependency?): {stalled}",
                    details={"nodes": stalled},
                )

        return run

    # ------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------

    @staticmethod
    def _upstream_of(definition: WorkflowDefinition, reachable: Set[str]) -> Dict[str, Set[str]]:
        """Reachable producers each reachable node has to wait for."""
        waiting_on: Dict[str, Set[str]] = {node_id: set() for node_id in reachable}
        for edge in definition.edges:
            if edge.target in reachable and edge.source in reachable:
                waiting_on[edge.target].add(edge.source)
        return waiting_on

    @staticmethod
    def _release(
        definition: WorkflowDefinition,
        node_id: str,
        waiting_on: Dict[str, Set[str]],
    ) -> List[str]:
        """Mark ``node_id`` finished and return successors that became ready."""
        released = []
        for edge in definition.outgoing_edges(node_id):
            pending = waiting_on.get(edge.target)
            if pending is None:
                continue
            pending.discard(node_id)
            if not pending and edge.target not in released:
                released.append(edge.target)
        return released

    @staticmethod
    def _may_start(run: WorkflowRun, token: CancellationToken) -> bool:
        return run.status == RunStatus.RUNNING and not token.cancelled

    # ------------------------------------------------------------
    # Node execution
    # ------------------------------------------------------------

    async def _execute_node(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        payload: Any,
        token: CancellationToken,
    ) -> bool:
        """Execute a single node; returns True on success."""
        run.current_step_id = node.id
        node_start_time = time.time()
        step = StepExecutionResult(
            node_id=node.id,
            node_type=node.type,
            status=StepStatus.ERROR,
            started_at=datetime.now(),
        )

        logger.info(f"Executing node: {node.id} (type: {node.type}) for run: {run.id}")

        plugin = self.registry.get(node.type)
        if plugin is None:
            message = f"Plugin not found for node type: {node.type}"
            logger.error(message)
            step.error = message
            run.fail(message, node_id=node.id)
            await self._finish_step(run, step, node_start_time)
            return False

        step.inputs = self._gather_inputs(run, definition, node, step.logs)
        context = PluginContext(
            node_id=node.id,
            node_data=plugin.merge_data(node.data),
            run_id=run.id,
            payload=payload,
            cancel_token=token,
            logs=step.logs,
        )

        try:
            outputs = await self._invoke(plugin, step, context, token)
        except RunCancelledError as e:
            logger.info(f"Node {node.id} interrupted: {e}")
            step.error = str(e)
            run.fail(str(e), node_id=node.id, status=RunStatus.CANCELLED)
            await self._finish_step(run, step, node_start_time)
            return False
        except Exception as e:
            logger.error(f"Node {node.id} failed: {e}")
            step.error = str(e) or type(e).__name__
            run.fail(
                f"Error in node '{node.id}': {step.error}",
                node_id=node.id,
                details={"type": type(e).__name__, "attempts": step.attempts},
            )
            await self._finish_step(run, step, node_start_time)
            return False

        step.status = StepStatus.SUCCESS
        step.outputs = outputs
        run.store_outputs(node.id, outputs)
        run.executed_nodes.append(node.id)
        logger.debug(f"Node {node.id} produced outputs: {list(outputs.keys())}")

        if not definition.outgoing_edges(node.id):
            logger.debug(f"Node {node.id} is the end of its path")

        await self._finish_step(run, step, node_start_time)
        return True

    def _gather_inputs(
        self,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        node: WorkflowNode,
        logs: List[StepLogEntry],
    ) -> Dict[str, Any]:
        """
        Resolve a node's inputs from the context data.

        Missing upstream values are only a warning; the plugin runs with
        whatever inputs are available.
        """
        inputs: Dict[str, Any] = {}

        for edge in definition.incoming_edges(node.id):
            key = output_key(edge.source, edge.source_port)
            if key in run.context_data:
                inputs[edge.target_port] = run.context_data[key]
            else:
                message = (
                    f"Input data for {node.id} from {edge.source} "
                    f"(handle: {edge.source_port}) not found in context data"
                )
                logger.warning(message)
                logs.append(StepLogEntry(message=message, level="warning"))

        return inputs

    async def _invoke(
        self,
        plugin: PluginDescriptor,
        step: StepExecutionResult,
        context: PluginContext,
        token: CancellationToken,
    ) -> Dict[str, Any]:
        """Call the plugin, retrying per its policy."""
        policy = plugin.retry or NO_RETRY
        timeout = plugin.timeout_seconds or self.node_timeout

        while True:
            step.attempts += 1
            try:
                return await self._call_with_deadline(plugin, dict(step.inputs), context, timeout, token)
            except RunCancelledError:
                raise
            except Exception as e:
                if step.attempts >= policy.max_attempts:
                    raise
                delay = policy.delay_for(step.attempts)
                context.log(
                    f"Attempt {step.attempts}/{policy.max_attempts} failed: {e}; "
                    f"retrying in {delay:.2f}s",
                    level="warning",
                )
                logger.warning(f"Retrying node {context.node_id} after error: {e}")
                await self._sleep(delay, token)

    async def _call_with_deadline(
        self,
        plugin: PluginDescriptor,
        inputs: Dict[str, Any],
        context: PluginContext,
        timeout: Optional[float],
        token: CancellationToken,
    ) -> Dict[str, Any]:
        """Run the plugin once, racing its timeout and the cancellation token."""
        if token.cancelled:
            raise RunCancelledError(token.reason or "Run cancelled")

        run_task = asyncio.ensure_future(
            asyncio.wait_for(plugin.execute(inputs, context), timeout=timeout)
        )
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {run_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            run_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if run_task in done:
            try:
                return run_task.result()
            except asyncio.TimeoutError:
                raise NodeTimeoutError(
                    f"Node '{context.node_id}' timed out after {timeout}s"
                ) from None

        run_task.cancel()
        await asyncio.gather(run_task, return_exceptions=True)
        raise RunCancelledError(token.reason or "Run cancelled")

    @staticmethod
    async def _sleep(delay: float, token: CancellationToken) -> None:
        """Back off before a retry; wakes up early if the run is cancelled."""
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RunCancelledError(token.reason or "Run cancelled")

    # ------------------------------------------------------------
    # Step results
    # ------------------------------------------------------------

    async def _skip_node(self, run: WorkflowRun, node: WorkflowNode) -> None:
        """Record a queued node that never started because the run stopped."""
        now = datetime.now()
        step = StepExecutionResult(
            node_id=node.id,
            node_type=node.type,
            status=StepStatus.SKIPPED,
            started_at=now,
            completed_at=now,
            duration_ms=0.0,
            error=f"Run {run.status.value} before node started",
        )
        await self._emit(run, step)

    async def _finish_step(self, run: WorkflowRun, step: StepExecutionResult, start_time: float) -> None:
        step.completed_at = datetime.now()
        step.duration_ms = (time.time() - start_time) * 1000
        await self._emit(run, step)

    async def _emit(self, run: WorkflowRun, step: StepExecutionResult) -> None:
        if not self.on_step:
            return
        try:
            await self.on_step(run, step)
        except Exception as e:
            logger.warning(f"Step callback failed: {e}")
