"""DAG executor: runs step implementations layer by layer.

Each layer is a fork-join barrier: every eligible step in the layer is
dispatched to a thread pool and the next layer does not start until all of
them have settled. Skip decisions, output registration, result tracking
and mode latching all happen on the coordinating thread, so the shared
context is never written concurrently.

Failures are data: a step that returns ``success=False``, raises, times
out, returns something other than a ``StepResult``, or has no registered
implementation becomes a failed ``ExecutionResult``. Progress and layer
callbacks that raise are logged and ignored. The only exception that escapes a run is
``CircularDependencyError`` from ``get_layers()``.
"""

from __future__ import annotations

import contextvars
import dataclasses
import json
import logging
import re
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable

from .circuit_breaker import call_with_timeout
from .context import SharedContext
from .exceptions import CircularDependencyError, SpecZeroError
from .logging_config import agent_id_var
from .models import (
    AgentOutput,
    DAGDefinition,
    DAGNode,
    DetectedFeatures,
    ExecutionResult,
    ExecutionSummary,
    PlannedAgent,
    PromptVersion,
    RunMode,
    StepInput,
    StepResult,
    StepStatus,
    ValidationResult,
)
from .planner import DAGPlanner

logger = logging.getLogger("speczero.executor")

DEFAULT_SUMMARY_MAX_CHARS = 500

ProgressCallback = Callable[[str, StepStatus, "str | None"], None]
LayerStartCallback = Callable[[int, list[str]], None]
LayerCompleteCallback = Callable[[int, list[ExecutionResult]], None]

_EXEC_SUMMARY_RE = re.compile(r"## Executive Summary\n(.*?)(?=\n##|\Z)", re.DOTALL)
_FRONTMATTER_RE = re.compile(r"^---[\s\S]*?---\n?")


def extract_summary(content: str, max_length: int = DEFAULT_SUMMARY_MAX_CHARS) -> str:
    """Bounded digest of a step's output.

    Prefers an ``## Executive Summary`` section; otherwise the first
    paragraph after any leading frontmatter block.
    """
    if not content:
        return ""
    match = _EXEC_SUMMARY_RE.search(content)
    if match:
        return match.group(1).strip()[:max_length]
    body = _FRONTMATTER_RE.sub("", content, count=1)
    first_paragraph = body.split("\n\n")[0]
    return (first_paragraph or content)[:max_length]


def _notify(callback: Callable[..., None] | None, *args: Any) -> None:
    """Invoke a caller-supplied callback; its errors are logged, never raised."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Callback %s failed", getattr(callback, "__name__", callback))


@dataclasses.dataclass
class _RunState:
    """Tracking for one ``execute()`` call; never stored on the executor."""
    mode: RunMode
    completed: set[str] = dataclasses.field(default_factory=set)
    failed: set[str] = dataclasses.field(default_factory=set)
    skipped: set[str] = dataclasses.field(default_factory=set)
    results: list[ExecutionResult] = dataclasses.field(default_factory=list)


class DAGExecutor:
    """Executes a DAGDefinition against a registry of step implementations.

    Args:
        definition: Nodes and edges to run.
        context: Shared context for this run.
        registry: Mapping of agent id to an object with ``process(StepInput)``.
        planner: Optional planner whose ``should_skip_agent`` is consulted
            before each dispatch. Needs ``features`` as well.
        features: Detected features for the skip policy.
        mode: Initial run mode; a mode step may change it during the run.
        step_timeout: Per-step wall-clock limit in seconds. ``None`` or 0
            disables it.
        max_workers: Upper bound on concurrent steps per layer. ``None`` or 0
            means one thread per eligible step.
        options: Run-wide values copied into every ``StepInput.options``.
    """

    def __init__(
        self,
        definition: DAGDefinition,
        context: SharedContext,
        registry: Mapping[str, Any],
        planner: DAGPlanner | None = None,
        features: DetectedFeatures | None = None,
        mode: RunMode = RunMode.GENERATION,
        on_progress: ProgressCallback | None = None,
        on_layer_start: LayerStartCallback | None = None,
        on_layer_complete: LayerCompleteCallback | None = None,
        step_timeout: float | None = None,
        max_workers: int | None = None,
        options: dict[str, Any] | None = None,
        summary_max_chars: int = DEFAULT_SUMMARY_MAX_CHARS,
        mode_agent_ids: tuple[str, ...] = ("submodule_check", "bootstrap"),
    ) -> None:
        self.definition = definition
        self.context = context
        self.registry = registry
        self.planner = planner
        self.features = features
        self.initial_mode = mode
        self.on_progress = on_progress
        self.on_layer_start = on_layer_start
        self.on_layer_complete = on_layer_complete
        self.step_timeout = step_timeout or None
        self.max_workers = max_workers or None
        self.options = dict(options or {})
        self.summary_max_chars = summary_max_chars
        self.mode_agent_ids = mode_agent_ids

        self._nodes: dict[str, DAGNode] = {n.agent_id: n for n in definition.nodes}

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def _dependents_of(self, agent_id: str) -> set[str]:
        """Every node that transitively lists *agent_id* as a dependency."""
        found: set[str] = set()
        stack = [agent_id]
        while stack:
            current = stack.pop()
            for node in self.definition.nodes:
                if current in node.dependencies and node.agent_id not in found:
                    found.add(node.agent_id)
                    stack.append(node.agent_id)
        return found

    def _compute_layers(self) -> tuple[list[list[str]], list[str]]:
        layers: list[list[str]] = []
        dropped: list[str] = []
        executed: set[str] = set()
        remaining: dict[str, DAGNode] = dict(self._nodes)

        while remaining:
            layer: list[str] = []
            for agent_id, node in remaining.items():
                if node.depends_on_all:
                    # Eligible once everything left is downstream of it
                    others = set(remaining) - {agent_id}
                    if others <= self._dependents_of(agent_id):
                        layer.append(agent_id)
                    continue
                if all(d in executed for d in node.dependencies):
                    layer.append(agent_id)

            if not layer:
                missing = {
                    d
                    for node in remaining.values()
                    for d in node.dependencies
                    if d not in executed and d not in remaining
                }
                if not missing:
                    raise CircularDependencyError(list(remaining))
                stalled = [
                    agent_id for agent_id, node in remaining.items()
                    if any(d in missing for d in node.dependencies)
                ]
                logger.warning(
                    "Missing agents: %s. Dropping dependent nodes: %s",
                    ", ".join(sorted(missing)), ", ".join(stalled),
                )
                for agent_id in stalled:
                    del remaining[agent_id]
                dropped.extend(stalled)
                continue

            layers.append(layer)
            for agent_id in layer:
                executed.add(agent_id)
                del remaining[agent_id]

        return layers, dropped

    def get_layers(self) -> list[list[str]]:
        """Topologically sorted layers, recomputed from the node edges.

        Nodes waiting on an id absent from the DAG are dropped with a
        warning; any other stall is a cycle.

        Raises:
            CircularDependencyError: if the remaining nodes form a cycle.
        """
        layers, _ = self._compute_layers()
        return layers

    def get_dependencies(self, agent_id: str) -> list[str]:
        """Effective dependency ids of *agent_id*.

        A ``depends_on_all`` node depends on every other node except the
        ones downstream of it.
        """
        node = self._nodes.get(agent_id)
        if node is None:
            return []
        if node.depends_on_all:
            downstream = self._dependents_of(agent_id)
            return [
                n.agent_id for n in self.definition.nodes
                if n.agent_id != agent_id and n.agent_id not in downstream
            ]
        return list(node.dependencies)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, client: Any = None) -> ExecutionSummary:
        """Run every layer and return the summary. Never raises for step failures.

        Raises:
            CircularDependencyError: if the DAG contains a cycle.
        """
        layers, dropped = self._compute_layers()
        state = _RunState(mode=self.initial_mode, skipped=set(dropped))
        started = time.monotonic()

        logger.info(
            "Executing %d agents in %d layers", len(self.definition.nodes), len(layers),
        )

        for index, layer in enumerate(layers):
            logger.info("Layer %d/%d: %s", index + 1, len(layers), ", ".join(layer))
            _notify(self.on_layer_start, index, list(layer))

            layer_results = self._run_layer(layer, state, client)
            state.results.extend(layer_results)

            _notify(self.on_layer_complete, index, layer_results)

            logger.info(
                "Layer %d complete: %d success, %d skipped, %d failed",
                index + 1,
                sum(1 for r in layer_results if r.success and not r.skipped),
                sum(1 for r in layer_results if r.skipped),
                sum(1 for r in layer_results if not r.success),
            )

        results = tuple(state.results)
        summary = ExecutionSummary(
            total_agents=len(self.definition.nodes),
            executed=sum(1 for r in results if not r.skipped),
            successful=sum(1 for r in results if r.success and not r.skipped),
            failed=sum(1 for r in results if not r.success),
            skipped=sum(1 for r in results if r.skipped) + len(dropped),
            total_duration_ms=int((time.monotonic() - started) * 1000),
            results=results,
            dropped=tuple(dropped),
            mode=state.mode,
        )
        logger.info(
            "Execution complete: %d successful, %d skipped, %d failed in %dms",
            summary.successful, summary.skipped, summary.failed, summary.total_duration_ms,
        )
        return summary

    def _run_layer(self, layer: list[str], state: _RunState, client: Any) -> list[ExecutionResult]:
        results: dict[str, ExecutionResult] = {}
        dispatch: list[tuple[str, StepInput, Any]] = []

        for agent_id in layer:
            skip_reason = self._skip_reason(agent_id, state)
            if skip_reason is not None:
                logger.info("Skipping agent %s: %s", agent_id, skip_reason)
                self._progress(agent_id, StepStatus.SKIP, skip_reason)
                results[agent_id] = ExecutionResult(
                    agent_id=agent_id, success=True, skipped=True, skip_reason=skip_reason,
                )
                state.skipped.add(agent_id)
                continue

            implementation = self.registry.get(agent_id)
            if implementation is None:
                error = f"Agent {agent_id} not found in registry"
                logger.error(error)
                results[agent_id] = self._fail(agent_id, error, state)
                continue

            dispatch.append((agent_id, self._build_input(agent_id, state, client), implementation))

        if dispatch:
            workers = min(self.max_workers or len(dispatch), len(dispatch))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="speczero-step") as pool:
                futures: dict[str, Future] = {}
                for agent_id, step_input, implementation in dispatch:
                    self._progress(agent_id, StepStatus.START, None)
                    ctx = contextvars.copy_context()
                    ctx.run(agent_id_var.set, agent_id)
                    futures[agent_id] = pool.submit(ctx.run, self._invoke, agent_id, implementation, step_input)
                wait(futures.values())

            for agent_id, future in futures.items():
                results[agent_id] = self._settle(agent_id, future, state)

        return [results[agent_id] for agent_id in layer]

    def _skip_reason(self, agent_id: str, state: _RunState) -> str | None:
        if self.planner is None or self.features is None:
            return None
        node = self._nodes[agent_id]
        planned = PlannedAgent(
            id=agent_id,
            prompt_id="",
            dependencies=tuple(self.get_dependencies(agent_id)),
            optional=node.optional,
        )
        decision = self.planner.should_skip_agent(
            planned, self.features, state.completed, state.failed, state.skipped,
        )
        return decision.reason if decision.skip else None

    def _build_input(self, agent_id: str, state: _RunState, client: Any) -> StepInput:
        dependencies = self.get_dependencies(agent_id)
        return StepInput(
            agent_id=agent_id,
            repo_structure=self.context.repo_structure,
            project_slug=self.context.project_slug,
            base_dir=self.context.base_dir,
            repo_type=self.context.repo_type,
            mode=state.mode,
            dependency_context=self.context.build_agent_context(dependencies),
            dependencies=dependencies,
            client=client,
            options=dict(self.options),
        )

    def _invoke(self, agent_id: str, implementation: Any, step_input: StepInput) -> tuple[StepResult, int]:
        """Worker-thread body: run one step, optionally under a timeout."""
        started = time.monotonic()
        if self.step_timeout:
            result = call_with_timeout(
                lambda: implementation.process(step_input), self.step_timeout, label=agent_id,
            )
        else:
            result = implementation.process(step_input)
        return result, int((time.monotonic() - started) * 1000)

    def _settle(self, agent_id: str, future: Future, state: _RunState) -> ExecutionResult:
        """Turn a finished future into an ExecutionResult (coordinating thread)."""
        try:
            result, duration_ms = future.result()
        except Exception as e:
            logger.error("Agent %s raised: %s", agent_id, e)
            return self._fail(agent_id, str(e), state)

        if not isinstance(result, StepResult):
            error = f"Agent {agent_id} returned {type(result).__name__}, expected StepResult"
            logger.error(error)
            return self._fail(agent_id, error, state, duration_ms)

        if not result.success:
            error = result.message or result.error or "Step reported failure"
            logger.warning("Agent %s failed: %s", agent_id, error)
            return self._fail(agent_id, error, state, duration_ms)

        output = None
        if result.data:
            if not isinstance(result.data, Mapping):
                error = f"Agent {agent_id} returned data of type {type(result.data).__name__}, expected a mapping"
                logger.error(error)
                return self._fail(agent_id, error, state, duration_ms)
            try:
                self._latch_mode(agent_id, result.data, state)
                output = self._to_output(agent_id, result.data)
                self.context.register_output(output)
            except SpecZeroError as e:
                logger.error("Could not register output for %s: %s", agent_id, e)
                return self._fail(agent_id, e.message, state, duration_ms)
            except Exception as e:
                error = f"Agent {agent_id} returned unusable data: {e}"
                logger.error(error)
                return self._fail(agent_id, error, state, duration_ms)

        self._progress(agent_id, StepStatus.SUCCESS, None)
        state.completed.add(agent_id)
        return ExecutionResult(agent_id=agent_id, success=True, duration_ms=duration_ms, output=output)

    def _fail(self, agent_id: str, error: str, state: _RunState, duration_ms: int = 0) -> ExecutionResult:
        self._progress(agent_id, StepStatus.ERROR, error)
        state.failed.add(agent_id)
        return ExecutionResult(agent_id=agent_id, success=False, duration_ms=duration_ms, error=error)

    def _latch_mode(self, agent_id: str, data: dict[str, Any], state: _RunState) -> None:
        if agent_id not in self.mode_agent_ids or not data.get("mode"):
            return
        try:
            state.mode = RunMode(data["mode"])
        except ValueError:
            logger.warning("Agent %s reported unknown mode %r; keeping %s", agent_id, data["mode"], state.mode.value)
            return
        logger.info("Mode detected: %s", state.mode.value)

    def _to_output(self, agent_id: str, data: dict[str, Any]) -> AgentOutput:
        content = data.get("output") or json.dumps(data, default=str)
        diagrams = data.get("diagrams")
        return AgentOutput(
            agent_id=agent_id,
            file_path=data.get("path") or "",
            summary=extract_summary(content, self.summary_max_chars),
            full_content=content,
            prompt_version=PromptVersion.coerce(data.get("prompt_version"), agent_id),
            timestamp=datetime.now(timezone.utc),
            diagrams=tuple(diagrams) if diagrams is not None else None,
        )

    def _progress(self, agent_id: str, status: StepStatus, message: str | None) -> None:
        _notify(self.on_progress, agent_id, status, message)

    # ------------------------------------------------------------------
    # Static validation
    # ------------------------------------------------------------------

    @staticmethod
    def validate(definition: DAGDefinition) -> ValidationResult:
        """Collect every structural problem in *definition* without raising."""
        errors: list[str] = []
        agent_ids = {n.agent_id for n in definition.nodes}

        for node in definition.nodes:
            if node.agent_id in node.dependencies:
                errors.append(f"Agent {node.agent_id} depends on itself")
            for dep in node.dependencies:
                if dep not in agent_ids:
                    errors.append(f"Agent {node.agent_id} depends on unknown agent {dep}")

        cycle = _find_cycle(definition)
        if cycle:
            errors.append(f"Circular dependency detected involving {cycle[0]} and {cycle[1]}")

        return ValidationResult.from_errors(errors)


def _find_cycle(definition: DAGDefinition) -> tuple[str, str] | None:
    """Depth-first search over dependency edges; return the first back edge.

    Self-loops are reported separately by ``validate`` and ignored here.
    """
    edges = {
        n.agent_id: [d for d in n.dependencies if d != n.agent_id] for n in definition.nodes
    }
    visited: set[str] = set()
    on_stack: set[str] = set()

    for root in edges:
        if root in visited:
            continue
        stack: list[tuple[str, int]] = [(root, 0)]
        visited.add(root)
        on_stack.add(root)
        while stack:
            current, idx = stack[-1]
            deps = edges.get(current, [])
            if idx >= len(deps):
                stack.pop()
                on_stack.discard(current)
                continue
            stack[-1] = (current, idx + 1)
            dep = deps[idx]
            if dep not in edges:
                continue
            if dep in on_stack:
                return current, dep
            if dep not in visited:
                visited.add(dep)
                on_stack.add(dep)
                stack.append((dep, 0))
    return None
