"""Workflow graph execution engine.

This module implements the in-process graph orchestrator that:
- Validates the graph before any node runs
- Launches ready nodes as asyncio tasks, bounded by max_concurrent_nodes
- Builds each node's input bag from the run's result store
- Applies the continue-on-error policy and assembles the execution report
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from canvasflow.core.agents import AgentInvoker
from canvasflow.core.evaluators import (
    EvaluationContext,
    NodeEvaluationError,
    NodeEvaluator,
    build_evaluators,
)
from canvasflow.core.graph_schema import BaseNode, NodeStatus, NodeType, WorkflowGraph
from canvasflow.core.inputs import InputMaterializer
from canvasflow.core.models import (
    ExecutionOptions,
    ExecutionReport,
    NodeResult,
    RunContext,
    RunControl,
    RunStatus,
)
from canvasflow.core.scheduler import DependencyScheduler, InternalSchedulingError
from canvasflow.core.utils import utc_now

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[NodeResult], None]

SKIP_NOT_LIVE = "No live incoming edge (branch not taken or upstream did not complete)"
SKIP_HALTED = "Run stopped after a node failure"
SKIP_CANCELLED = "Run cancelled"


class GraphOrchestrator:
    """
    Workflow graph orchestrator.

    Key Features:
    - All run state lives in a RunContext created per execute() call
    - Independent ready nodes run concurrently
    - Node failures are recorded in the report, never raised
    - InternalSchedulingError (an ordering bug) aborts the run and is raised

    Usage:
        orchestrator = GraphOrchestrator(agent_invoker=EchoAgentInvoker())
        report = await orchestrator.execute(workflow, input={"topic": "EVs"})
    """

    def __init__(
        self,
        agent_invoker: AgentInvoker | None = None,
        evaluators: dict[NodeType, NodeEvaluator] | None = None,
        materializer: InputMaterializer | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.evaluators = dict(evaluators) if evaluators is not None else build_evaluators(agent_invoker)
        missing = set(NodeType) - set(self.evaluators)
        if missing:
            raise ValueError(f"No evaluator for node types: {sorted(t.value for t in missing)}")
        self.materializer = materializer or InputMaterializer()
        self.on_progress = on_progress

    async def execute(
        self,
        workflow: WorkflowGraph,
        options: ExecutionOptions | None = None,
        *,
        control: RunControl | None = None,
        **overrides: Any,
    ) -> ExecutionReport:
        """
        Run a workflow to completion.

        Args:
            workflow: The workflow graph definition
            options: Run options; keyword overrides are applied on top
            control: Optional handle to cancel, pause or resume the run

        Returns:
            ExecutionReport with one result per node, in node-list order

        Raises:
            GraphValidationError: If the graph is invalid (nothing runs)
            InternalSchedulingError: If a run invariant is violated
        """
        if options is None:
            options = ExecutionOptions(**overrides)
        elif overrides:
            options = ExecutionOptions(**{**options.model_dump(), **overrides})

        workflow.ensure_valid()

        run = RunContext(workflow=workflow, options=options, control=control or RunControl())
        scheduler = DependencyScheduler(workflow, continue_on_error=options.continue_on_error)
        scheduler.build()

        self._log(
            run,
            logging.INFO,
            f"Run {run.run_id} started: workflow '{workflow.name}' ({len(workflow.nodes)} nodes)",
        )

        halted = False
        running: dict[asyncio.Task, str] = {}
        try:
            while True:
                if not (halted or run.control.cancelled or run.control.paused):
                    capacity = options.max_concurrent_nodes - len(running)
                    if capacity > 0:
                        for node_id in scheduler.pop_ready(capacity):
                            task = asyncio.create_task(
                                self._execute_node(run, scheduler, node_id), name=f"node:{node_id}"
                            )
                            running[task] = node_id

                if not running:
                    if run.control.paused and not run.control.cancelled and scheduler.has_ready():
                        self._log(run, logging.INFO, f"Run {run.run_id} paused")
                        await run.control.wait_resumed()
                        continue
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: scheduler.order_of(running[t])):
                    running.pop(task)
                    result = task.result()
                    self._record(run, scheduler, result)
                    if result.status == NodeStatus.FAILED and not options.continue_on_error:
                        if not halted:
                            self._log(
                                run,
                                logging.INFO,
                                f"Node '{result.node_id}' failed; no further nodes will start",
                            )
                        halted = True
        finally:
            pending = [task for task in running if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        reason = SKIP_CANCELLED if run.control.cancelled else SKIP_HALTED
        for node_id in scheduler.skip_remaining():
            self._record_skip(run, node_id, reason)

        return self._build_report(run)

    async def _execute_node(
        self, run: RunContext, scheduler: DependencyScheduler, node_id: str
    ) -> NodeResult:
        """Evaluate one node and return its terminal result.

        Node-level errors become a FAILED result; InternalSchedulingError
        propagates.
        """
        node = run.workflow.get_node(node_id)
        started_at = utc_now()
        inputs = self.materializer.materialize(node, run.results)
        ctx = EvaluationContext(
            node=node, inputs=inputs, run=run, upstream=scheduler.upstream(node_id)
        )
        evaluator = self.evaluators[node.node_type]
        timeout = run.options.node_timeout

        self._log(run, logging.INFO, f"Node '{node_id}' ({node.type}) started")
        try:
            if timeout:
                output = await asyncio.wait_for(evaluator.evaluate(ctx), timeout)
            else:
                output = await evaluator.evaluate(ctx)
        except InternalSchedulingError:
            raise
        except NodeEvaluationError as e:
            return self._failed(run, node, ctx, started_at, str(e), e.output)
        except asyncio.TimeoutError:
            return self._failed(run, node, ctx, started_at, f"Timed out after {timeout}s")
        except Exception as e:
            return self._failed(run, node, ctx, started_at, str(e) or type(e).__name__)

        if hasattr(output, "model_dump"):
            output = output.model_dump()
        result = NodeResult(
            node_id=node_id,
            node_type=node.node_type,
            status=NodeStatus.COMPLETED,
            output=output,
            input=inputs,
            attempts=ctx.attempts,
            started_at=started_at,
            finished_at=utc_now(),
        )
        self._log(run, logging.INFO, f"Node '{node_id}' completed in {result.duration:.2f}s")
        return result

    def _failed(
        self,
        run: RunContext,
        node: BaseNode,
        ctx: EvaluationContext,
        started_at,
        error: str,
        output: dict[str, Any] | None = None,
    ) -> NodeResult:
        level = logging.ERROR if run.options.logging else logging.WARNING
        logger.log(level, f"Node {node.id} failed: {error}")
        return NodeResult(
            node_id=node.id,
            node_type=node.node_type,
            status=NodeStatus.FAILED,
            output=output,
            error=error,
            input=ctx.inputs,
            attempts=ctx.attempts,
            started_at=started_at,
            finished_at=utc_now(),
        )

    def _record(self, run: RunContext, scheduler: DependencyScheduler, result: NodeResult) -> None:
        """Store a result, tell the scheduler, and record any cascaded skips."""
        run.results.record(result)
        skipped = scheduler.mark_finished(result.node_id, result.status, result.output)
        self._notify(result)
        for node_id in skipped:
            self._record_skip(run, node_id, SKIP_NOT_LIVE)

    def _record_skip(self, run: RunContext, node_id: str, reason: str) -> None:
        node = run.workflow.get_node(node_id)
        now = utc_now()
        result = NodeResult(
            node_id=node_id,
            node_type=node.node_type,
            status=NodeStatus.SKIPPED,
            skip_reason=reason,
            started_at=now,
            finished_at=now,
        )
        run.results.record(result)
        self._log(run, logging.INFO, f"Node '{node_id}' skipped: {reason}")
        self._notify(result)

    def _notify(self, result: NodeResult) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(result)
        except Exception as e:
            logger.warning(f"Progress callback failed for node {result.node_id}: {e}")

    def _build_report(self, run: RunContext) -> ExecutionReport:
        results = []
        for node in run.workflow.nodes:
            result = run.results.get(node.id)
            if result is None:
                raise InternalSchedulingError(f"Node '{node.id}' finished the run without a result")
            results.append(result)

        failed = [r.node_id for r in results if r.status == NodeStatus.FAILED]
        if run.control.cancelled:
            status = RunStatus.CANCELLED
            error = SKIP_CANCELLED
        elif failed:
            status = RunStatus.FAILED
            error = f"Node(s) failed: {', '.join(failed)}"
        else:
            status = RunStatus.COMPLETED
            error = None

        report = ExecutionReport(
            run_id=run.run_id,
            workflow_id=run.workflow.id,
            status=status,
            node_results=results,
            outputs=dict(run.outputs),
            variables=dict(run.variables),
            error=error,
            started_at=run.started_at,
            finished_at=utc_now(),
        )
        self._log(
            run,
            logging.INFO,
            f"Run {run.run_id} {status.value} in {report.duration:.2f}s "
            f"({len(report.nodes_with_status(NodeStatus.COMPLETED))} completed, "
            f"{len(failed)} failed, "
            f"{len(report.nodes_with_status(NodeStatus.SKIPPED))} skipped)",
        )
        return report

    @staticmethod
    def _log(run: RunContext, level: int, message: str) -> None:
        if not run.options.logging and level < logging.WARNING:
            level = logging.DEBUG
        logger.log(level, message)


def execute_workflow(
    workflow: WorkflowGraph,
    options: ExecutionOptions | None = None,
    *,
    agent_invoker: AgentInvoker | None = None,
    on_progress: ProgressCallback | None = None,
    **overrides: Any,
) -> ExecutionReport:
    """Run a workflow from synchronous code."""
    orchestrator = GraphOrchestrator(agent_invoker=agent_invoker, on_progress=on_progress)
    return asyncio.run(orchestrator.execute(workflow, options, **overrides))
