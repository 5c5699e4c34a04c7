"""Graph workflow execution engine.

Runs a validated graph from its trigger:

- A node becomes eligible once every predecessor is terminal
- Eligible nodes run concurrently as asyncio tasks, bounded by
  ``max_parallel``; blocking action calls go through ``asyncio.to_thread``
- Successful nodes activate outgoing edges (conditions only the matching
  branch); nodes whose join policy is not met are skipped
- Failing actions and transforms are retried with exponential backoff

All run-state mutation happens on the event loop thread, so a node's output
is published before any successor is evaluated.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from flowsmith.core.conditions import parse_condition
from flowsmith.core.config import RuntimeSettings
from flowsmith.core.credentials import (
    CredentialError,
    CredentialSource,
    EnvironmentCredentialSource,
)
from flowsmith.core.graph_schema import Edge, Graph, NodeKind, validate_structure
from flowsmith.core.models import ErrorKind, ExecutionRun, NodeStatus, RunStatus
from flowsmith.core.registry import ActionError, ActionRegistry, ActionResult, get_registry
from flowsmith.core.templates import ResolutionError, config_references, resolve_config
from flowsmith.core.transforms import TransformContext, get_transform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeEvent:
    """Notification that a node started or reached a terminal state."""

    run_id: str
    node_id: str
    status: NodeStatus
    attempts: int = 0
    error: str | None = None


@dataclass
class _Outcome:
    status: NodeStatus
    fields: dict[str, Any] | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    attempts: int = 1

    @classmethod
    def success(cls, fields: dict[str, Any], attempts: int = 1) -> _Outcome:
        return cls(NodeStatus.SUCCESS, fields=fields, attempts=attempts)

    @classmethod
    def failed(cls, error: str, kind: ErrorKind, attempts: int = 1) -> _Outcome:
        return cls(NodeStatus.FAILED, error=error, error_kind=kind, attempts=attempts)


def trigger_fields(payload: Any) -> dict[str, Any]:
    """Output fields of the trigger for a given run payload."""
    if payload is None:
        return {}
    if isinstance(payload, dict):
        return dict(payload)
    return {"payload": payload}


class GraphExecutor:
    """Executes graphs against an action registry.

    Args:
        registry: Action registry (process-wide registry by default)
        credentials: Credential source (environment variables by default)
        settings: Runtime settings (defaults when omitted)
        on_event: Optional callback for node start/finish events
    """

    def __init__(
        self,
        registry: ActionRegistry | None = None,
        credentials: CredentialSource | None = None,
        settings: RuntimeSettings | None = None,
        on_event: Callable[[NodeEvent], None] | None = None,
    ):
        self.settings = settings or RuntimeSettings()
        self.registry = registry if registry is not None else get_registry()
        self.credentials = (
            credentials
            if credentials is not None
            else EnvironmentCredentialSource(prefix=self.settings.credential_prefix)
        )
        self.on_event = on_event

    # ========== Entry points ==========

    def prepare(
        self, graph: Graph, trigger_payload: Any = None, run_id: str | None = None
    ) -> ExecutionRun:
        """Validate the graph and create a run without starting it.

        Raises:
            StructuralError: If the graph is not executable
        """
        validate_structure(graph, self.registry)
        if trigger_payload is None:
            trigger_payload = self._mock_payload(graph)
        return ExecutionRun.create(graph, trigger_payload, run_id)

    async def execute(
        self, graph: Graph, trigger_payload: Any = None, run_id: str | None = None
    ) -> ExecutionRun:
        run = self.prepare(graph, trigger_payload, run_id)
        return await self.execute_run(run)

    def run(self, graph: Graph, trigger_payload: Any = None, run_id: str | None = None) -> ExecutionRun:
        """Blocking wrapper around :meth:`execute`."""
        return asyncio.run(self.execute(graph, trigger_payload, run_id))

    async def execute_run(self, run: ExecutionRun) -> ExecutionRun:
        """Drive a prepared run to completion (or cancellation)."""
        graph = run.graph
        semaphore = asyncio.Semaphore(self.settings.max_parallel)
        in_flight: dict[asyncio.Task, str] = {}
        logger.info(f"Run {run.run_id} started for graph '{graph.name}'")

        while not run.cancel_requested:
            for node_id in self._schedule(run):
                run.mark_running(node_id)
                self._emit(run, node_id)
                task = asyncio.create_task(self._execute_node(run, node_id, semaphore))
                in_flight[task] = node_id

            if not in_flight:
                break

            done, _ = await asyncio.wait(
                in_flight,
                timeout=self.settings.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if run.cancel_requested:
                break
            for task in done:
                node_id = in_flight.pop(task)
                self._apply(run, node_id, task.result())

        if run.cancel_requested:
            await self._cancel(run, in_flight)

        # Anything still pending could never be reached
        for node_id, state in run.nodes.items():
            if state.status == NodeStatus.PENDING:
                run.mark_skipped(node_id, "unreachable")

        terminal = graph.terminal_nodes()
        succeeded = any(
            node_id in run.nodes and run.status_of(node_id) == NodeStatus.SUCCESS
            for node_id in terminal
        )
        run.finish(RunStatus.SUCCESS if succeeded else RunStatus.FAILED)
        logger.info(
            f"Run {run.run_id} finished: {run.status.value} "
            f"(failed: {run.failed_node_ids}, skipped: {len(run.skipped_node_ids)})"
        )
        return run

    # ========== Scheduling ==========

    def _schedule(self, run: ExecutionRun) -> list[str]:
        """Settle every decidable pending node; return the ones to start.

        Triggers complete inline and skips propagate immediately, so this
        loops until no pending node changes.
        """
        eligible: list[str] = []
        changed = True
        while changed:
            changed = False
            for node in run.graph.nodes:
                if node.id in eligible or run.status_of(node.id) != NodeStatus.PENDING:
                    continue

                if node.kind == NodeKind.TRIGGER:
                    run.mark_running(node.id)
                    run.mark_success(node.id, trigger_fields(run.trigger_payload))
                    self._emit(run, node.id)
                    changed = True
                    continue

                incoming = run.graph.incoming(node.id)
                if any(not run.status_of(edge.source).is_terminal for edge in incoming):
                    continue

                skip_reason = self._skip_reason(run, node, incoming)
                if skip_reason:
                    logger.debug(f"Skipping node {node.id}: {skip_reason}")
                    run.mark_skipped(node.id, skip_reason)
                    self._emit(run, node.id)
                    changed = True
                    continue

                eligible.append(node.id)
        return eligible

    def _edge_activated(self, run: ExecutionRun, edge: Edge) -> bool:
        if run.status_of(edge.source) != NodeStatus.SUCCESS:
            return False
        source = run.graph.get_node(edge.source)
        if source.kind != NodeKind.CONDITION:
            return True
        result = run.outputs[edge.source].fields.get("result") is True
        # A condition edge without a branch is the "true" branch
        return (edge.branch or "true") == ("true" if result else "false")

    def _activated_sources(self, run: ExecutionRun, node_id: str) -> list[str]:
        return list(
            dict.fromkeys(
                edge.source for edge in run.graph.incoming(node_id) if self._edge_activated(run, edge)
            )
        )

    def _skip_reason(self, run: ExecutionRun, node, incoming: list[Edge]) -> str | None:
        activated = [edge for edge in incoming if self._edge_activated(run, edge)]
        if node.join == "all":
            if not incoming or len(activated) < len(incoming):
                return "not all incoming edges activated"
        elif not activated:
            return "no incoming edge activated"

        if self.settings.skipped_reference_policy == "skip":
            skipped = [
                node_id
                for node_id in self._referenced_node_ids(node)
                if node_id in run.nodes and run.status_of(node_id) == NodeStatus.SKIPPED
            ]
            if skipped:
                return f"references skipped node(s): {', '.join(skipped)}"
        return None

    def _referenced_node_ids(self, node) -> list[str]:
        if node.kind == NodeKind.ACTION:
            refs = config_references(node.config.action_fields())
        elif node.kind == NodeKind.TRANSFORM:
            config = node.config.transform_fields()
            refs = config_references(config)
            spec = get_transform(node.config.transform_type)
            extra = spec.sources(config) if spec else []
            return list(dict.fromkeys([r.node_id for r in refs] + extra))
        elif node.kind == NodeKind.CONDITION:
            refs = parse_condition(node.config.condition).references()
        else:
            refs = []
        return list(dict.fromkeys(ref.node_id for ref in refs))

    def _apply(self, run: ExecutionRun, node_id: str, outcome: _Outcome) -> None:
        if outcome.status == NodeStatus.SUCCESS:
            run.mark_success(node_id, outcome.fields or {}, outcome.attempts)
        else:
            run.mark_failed(node_id, outcome.error or "unknown error", outcome.error_kind, outcome.attempts)
            logger.error(f"Node {node_id} failed: {outcome.error}")
        self._emit(run, node_id)

    async def _cancel(self, run: ExecutionRun, in_flight: dict[asyncio.Task, str]) -> None:
        for node_id, state in run.nodes.items():
            if state.status in (NodeStatus.PENDING, NodeStatus.RUNNING):
                run.mark_skipped(node_id, "cancelled")
                self._emit(run, node_id)
        if in_flight:
            # Let in-flight calls finish; their results are discarded
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info(f"Run {run.run_id} cancelled")

    def _emit(self, run: ExecutionRun, node_id: str) -> None:
        if self.on_event is None:
            return
        state = run.nodes[node_id]
        event = NodeEvent(run.run_id, node_id, state.status, state.attempts, state.error)
        try:
            self.on_event(event)
        except Exception as e:
            logger.warning(f"Event callback failed for node {node_id}: {e}")

    def _mock_payload(self, graph: Graph) -> Any:
        """Use the trigger's ``mockRequest`` when no payload is supplied."""
        trigger = graph.trigger
        mock = trigger.config.mock_request if trigger else None
        if isinstance(mock, str) and mock.strip():
            try:
                return json.loads(mock)
            except ValueError:
                logger.warning(f"Ignoring mockRequest on trigger '{trigger.id}': not valid JSON")
                return None
        return mock

    # ========== Node execution ==========

    async def _execute_node(self, run: ExecutionRun, node_id: str, semaphore: asyncio.Semaphore) -> _Outcome:
        node = run.graph.get_node(node_id)
        # Only ancestors are visible; they are all terminal by now, so
        # resolution does not depend on scheduling order.
        outputs = {
            ancestor: run.outputs[ancestor]
            for ancestor in run.graph.ancestors(node_id)
            if ancestor in run.outputs
        }
        try:
            if node.kind == NodeKind.ACTION:
                return await self._execute_action(run, node, outputs, semaphore)
            if node.kind == NodeKind.CONDITION:
                return self._execute_condition(run, node, outputs)
            if node.kind == NodeKind.TRANSFORM:
                return await self._execute_transform(run, node, outputs, semaphore)
            return _Outcome.failed(f"Unsupported node kind '{node.kind}'", ErrorKind.INTERNAL)
        except ResolutionError as e:
            return _Outcome.failed(str(e), ErrorKind.RESOLUTION, run.nodes[node_id].attempts)
        except Exception as e:
            logger.exception(f"Node {node_id} raised unexpectedly")
            return _Outcome.failed(f"Internal error: {e}", ErrorKind.INTERNAL, run.nodes[node_id].attempts)

    async def _execute_action(self, run, node, outputs, semaphore) -> _Outcome:
        descriptor = self.registry.resolve(node.config.action_type)

        # Resolved once; every attempt receives an identical copy
        resolved = resolve_config(node.config.action_fields(), outputs)

        integration_id = node.config.integration_id or descriptor.integration
        try:
            credentials = await asyncio.to_thread(
                self.credentials.fetch_credentials, integration_id, descriptor.credential_keys
            )
        except CredentialError as e:
            return _Outcome.failed(f"Credentials unavailable: {e}", ErrorKind.CREDENTIALS)

        def call() -> ActionResult:
            return self.registry.execute(descriptor, copy.deepcopy(resolved), credentials)

        try:
            return await self._with_retries(run, node, semaphore, call)
        finally:
            del credentials

    def _execute_condition(self, run, node, outputs) -> _Outcome:
        expression = parse_condition(node.config.condition)
        scope = [
            (source, run.outputs[source].fields) for source in self._activated_sources(run, node.id)
        ]
        result = expression.evaluate(outputs, scope)
        logger.debug(f"Condition {node.id} evaluated to {result}")
        return _Outcome.success({"result": result})

    async def _execute_transform(self, run, node, outputs, semaphore) -> _Outcome:
        spec = get_transform(node.config.transform_type)
        resolved = resolve_config(node.config.transform_fields(), outputs)
        ctx = TransformContext(
            node_id=node.id,
            outputs=outputs,
            predecessor_ids=tuple(self._activated_sources(run, node.id)),
        )

        def call() -> ActionResult:
            try:
                fields = spec.apply(copy.deepcopy(resolved), ctx)
            except ActionError as e:
                return ActionResult.failure(str(e))
            return ActionResult(ok=True, fields=fields)

        return await self._with_retries(run, node, semaphore, call)

    async def _with_retries(self, run, node, semaphore, call: Callable[[], ActionResult]) -> _Outcome:
        policy = self.settings.retry
        error = None
        attempt = 0
        for attempt in range(1, policy.max_attempts + 1):
            if run.cancel_requested:
                # No new calls once the run is cancelled; this outcome is discarded
                return _Outcome.failed("cancelled", ErrorKind.ACTION, attempt - 1)
            run.nodes[node.id].attempts = attempt
            async with semaphore:
                result = await asyncio.to_thread(call)
            if result.ok:
                return _Outcome.success(result.fields, attempt)

            error = result.error
            if attempt >= policy.max_attempts or run.cancel_requested:
                break
            delay = policy.get_delay(attempt - 1)
            logger.warning(
                f"Node {node.id} attempt {attempt}/{policy.max_attempts} failed: {error}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

        return _Outcome.failed(error or "Action failed", ErrorKind.ACTION, attempt)
