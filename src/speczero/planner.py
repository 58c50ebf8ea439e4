"""Planner: turns a DetectedFeatures snapshot into a Planned DAG.

Walks a fixed tier structure (bootstrap -> overview -> architecture ->
entities -> modules -> API -> data -> auth -> UI -> integration/ops ->
security -> summary -> finalizers). Each tier's membership is gated on
feature flags and structure booleans; later tiers also look at which
agents earlier tiers actually selected.

The planner also owns the run-time skip policy (``should_skip_agent``)
that the executor consults before dispatching each step, and a shallow
validator for planned DAGs.

Everything here is a pure function of its inputs: the same features always
yield the same agent ids, dependencies and layers.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from pathlib import Path
from typing import Callable, Iterable, Protocol

from .models import (
    ALL_PREVIOUS,
    AllPrevious,
    DAGDefinition,
    DAGNode,
    Dependency,
    DetectedFeatures,
    DiagramType as D,
    FeatureFlag as F,
    PlannedAgent,
    PlannedDAG,
    RepoStructure,
    SkipResult,
    ValidationResult,
)

logger = logging.getLogger("speczero.planner")

PLAN_VERSION = "2.1.0"

# Duration model: one agent alone costs the base; each extra agent running
# in parallel in the same layer adds a smaller increment.
BASE_AGENT_SECONDS = 45
PARALLEL_AGENT_SECONDS = 10

# Agents selected regardless of features.
ALWAYS_SELECTED: frozenset[str] = frozenset({
    "bootstrap", "overview", "architecture", "entities",
    "summary", "structure_builder", "write_specs",
})


class FeatureDetectorProtocol(Protocol):
    def detect(self, repo_path: Path) -> DetectedFeatures: ...


# ---------------------------------------------------------------------------
# Skip policy tables
# ---------------------------------------------------------------------------

# Agent id -> at least one of these flags must be present.
FEATURE_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "api-rest":       (F.HAS_REST_API,),
    "api-graphql":    (F.HAS_GRAPHQL,),
    "api-websocket":  (F.HAS_WEBSOCKET,),
    "database":       (F.HAS_SQL_DB, F.HAS_NOSQL_DB),
    "authentication": (F.HAS_AUTH,),
    "authorization":  (F.HAS_RBAC,),
    "components":     (F.HAS_REACT, F.HAS_VUE, F.HAS_ANGULAR),
    "state":          (F.HAS_STATE_MGMT,),
    "routing":        (F.HAS_ROUTING,),
}

# Hard structural preconditions: applied whether or not the agent is optional.
STRUCTURE_REQUIREMENTS: list[tuple[str, Callable[[RepoStructure], bool], str]] = [
    ("backend-modules",  lambda s: s.has_backend,                 "No backend structure detected"),
    ("frontend-modules", lambda s: s.has_frontend,                "No frontend structure detected"),
    ("deployment",       lambda s: s.has_docker or s.has_cicd,    "No Docker or CI/CD detected"),
    ("cicd",             lambda s: s.has_cicd,                    "No CI/CD configuration detected"),
]

# (agent id, predicate over features, replacement prompt id). First match wins.
PROMPT_BINDINGS: list[tuple[str, Callable[[DetectedFeatures], bool], str]] = [
    ("frontend-modules", lambda f: "nextjs" in f.frameworks,  "analysis/modules-nextjs"),
    ("frontend-modules", lambda f: "nuxt" in f.frameworks,    "analysis/modules-nuxt"),
    ("backend-modules",  lambda f: "nest" in f.frameworks,    "analysis/modules-nestjs"),
    ("api-rest",         lambda f: "fastify" in f.frameworks, "api/detect-endpoints-fastify"),
    ("api-rest",         lambda f: "express" in f.frameworks, "api/detect-endpoints-express"),
    ("database",
     lambda f: f.has(F.HAS_ORM) and "prisma" in f.frameworks, "data/detect-schema-prisma"),
]


def _agent(
    id: str,
    prompt_id: str,
    dependencies: Iterable[Dependency],
    layer: int,
    *,
    output_file: str = "",
    diagrams: Iterable[D] = (),
    template_id: str | None = None,
    parallel: bool = True,
    optional: bool = False,
) -> PlannedAgent:
    return PlannedAgent(
        id=id,
        prompt_id=prompt_id,
        template_id=template_id,
        dependencies=tuple(dependencies),
        parallel=parallel,
        optional=optional,
        diagrams=tuple(diagrams),
        output_file=output_file,
        layer=layer,
    )


def _concrete(dependencies: Iterable[Dependency]) -> list[str]:
    return [d for d in dependencies if not isinstance(d, AllPrevious)]


# ---------------------------------------------------------------------------
# DAGPlanner
# ---------------------------------------------------------------------------

class DAGPlanner:
    """Feature-driven planner.

    Args:
        detector: Feature detector used by ``plan_repository``. Optional
            when callers always pass pre-detected features to ``plan``.
        require_features_for_mandatory: When true, the feature-requirement
            skip rule also applies to mandatory agents. Off by default so a
            mandatory agent always attempts to produce its output file.
    """

    def __init__(
        self,
        detector: FeatureDetectorProtocol | None = None,
        require_features_for_mandatory: bool = False,
    ) -> None:
        self._detector = detector
        self.require_features_for_mandatory = require_features_for_mandatory

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_repository(self, repo_path: Path) -> PlannedDAG:
        """Detect features of *repo_path*, then plan."""
        if self._detector is None:
            raise RuntimeError("DAGPlanner was created without a feature detector")
        features = self._detector.detect(repo_path)
        return self.plan(features)

    def plan(self, features: DetectedFeatures) -> PlannedDAG:
        """Build a complete, wildcard-free PlannedDAG for *features*."""
        selected = self._select_agents(features)
        resolved = self._resolve_wildcards(selected)
        bound = self._assign_prompts(resolved, features)
        layers = self.build_layers(bound)

        seconds = self.estimate_duration_seconds(layers)
        dag = PlannedDAG(
            version=PLAN_VERSION,
            repo_type=features.repo_type,
            agents=tuple(bound),
            layers=layers,
            metadata={
                "total_agents": len(bound),
                "optional_agents": sum(1 for a in bound if a.optional),
                "estimated_duration_seconds": seconds,
                "estimated_duration": f"~{math.ceil(seconds / 60)} min",
                "features": sorted(features.features),
            },
        )
        logger.info(
            "Planned %d agents in %d layers for %s repo (%s)",
            len(bound), len(layers), features.repo_type.value, dag.metadata["estimated_duration"],
        )
        return dag

    def _select_agents(self, features: DetectedFeatures) -> list[PlannedAgent]:
        agents: list[PlannedAgent] = []
        agents.extend(self._select_foundation(features))
        agents.extend(self._select_api_data_auth_ui(features, agents))
        agents.extend(self._select_integration_to_finalizers(features, agents))
        return agents

    def _select_foundation(self, features: DetectedFeatures) -> list[PlannedAgent]:
        """Layers 0-4: bootstrap, overview, architecture, entities, modules."""
        s = features.structure
        agents = [
            # Context gathering only, no output file
            _agent("bootstrap", "analysis/bootstrap", [], 0, parallel=False),
            _agent("overview", "analysis/overview", ["bootstrap"], 1,
                   template_id="overview", parallel=False,
                   diagrams=[D.C4, D.FLOWCHART], output_file="00-foundation/overview.md"),
            _agent("architecture", "analysis/architecture", ["overview"], 2,
                   diagrams=[D.C4, D.FLOWCHART], output_file="00-foundation/architecture.md"),
            _agent("entities", "analysis/entities", ["overview"], 3,
                   template_id="entity/model",
                   diagrams=[D.ERD, D.CLASS], output_file="01-domain/entities.md"),
        ]
        if s.has_backend:
            agents.append(_agent("backend-modules", "analysis/modules", ["architecture"], 4,
                                 diagrams=[D.FLOWCHART], output_file="02-modules/backend/index.md"))
        if s.has_frontend:
            agents.append(_agent("frontend-modules", "analysis/modules", ["architecture"], 4,
                                 diagrams=[D.FLOWCHART], output_file="02-modules/frontend/index.md"))
        return agents

    def _select_api_data_auth_ui(
        self, features: DetectedFeatures, existing: list[PlannedAgent]
    ) -> list[PlannedAgent]:
        """Layers 5-8: API, data, auth, UI components."""
        agents: list[PlannedAgent] = []

        def has_agent(agent_id: str) -> bool:
            return any(a.id == agent_id for a in existing) or any(a.id == agent_id for a in agents)

        # Layer 5: API
        if features.has(F.HAS_REST_API):
            deps = ["entities"]
            if has_agent("backend-modules"):
                deps.append("backend-modules")
            agents.append(_agent("api-rest", "api/detect-endpoints", deps, 5,
                                 template_id="api/endpoint",
                                 diagrams=[D.SEQUENCE], output_file="03-api/rest.md"))
        if features.has(F.HAS_GRAPHQL):
            agents.append(_agent("api-graphql", "api/detect-graphql", ["entities"], 5,
                                 diagrams=[D.CLASS], output_file="03-api/graphql.md"))
        if features.has(F.HAS_WEBSOCKET):
            agents.append(_agent("api-websocket", "api/detect-websocket", ["entities"], 5,
                                 optional=True,
                                 diagrams=[D.SEQUENCE], output_file="03-api/websocket.md"))

        # Layer 6: Data
        if features.has_any(F.HAS_SQL_DB, F.HAS_NOSQL_DB):
            agents.append(_agent("database", "data/detect-schema", ["entities"], 6,
                                 diagrams=[D.ERD], output_file="04-data/database.md"))
        if features.has(F.HAS_MIGRATIONS) and has_agent("database"):
            agents.append(_agent("migrations", "data/detect-migrations", ["database"], 6,
                                 optional=True, output_file="04-data/migrations.md"))

        # Layer 7: Auth, wired to whichever API agents exist
        if features.has(F.HAS_AUTH):
            auth_deps = [i for i in ("api-rest", "api-graphql") if has_agent(i)] or ["entities"]
            agents.append(_agent("authentication", "auth/detect-auth", auth_deps, 7,
                                 template_id="auth/flow",
                                 diagrams=[D.SEQUENCE, D.STATE], output_file="05-auth/authentication.md"))
            if features.has(F.HAS_RBAC):
                agents.append(_agent("authorization", "auth/detect-authz", ["authentication"], 7,
                                     diagrams=[D.FLOWCHART], output_file="05-auth/authorization.md"))

        # Layer 8: UI components
        if features.structure.has_frontend and features.has_any(F.HAS_REACT, F.HAS_VUE, F.HAS_ANGULAR):
            component_deps = ["frontend-modules"] if has_agent("frontend-modules") else ["architecture"]
            agents.append(_agent("components", "ui/detect-components", component_deps, 8,
                                 template_id="ui/component",
                                 diagrams=[D.CLASS, D.FLOWCHART],
                                 output_file="02-modules/frontend/components.md"))
            if features.has(F.HAS_STATE_MGMT):
                agents.append(_agent("state", "ui/analyze-state", ["components"], 8,
                                     diagrams=[D.STATE, D.FLOWCHART],
                                     output_file="02-modules/frontend/state.md"))
            if features.has(F.HAS_ROUTING):
                agents.append(_agent("routing", "ui/analyze-routing", ["components"], 8,
                                     optional=True, diagrams=[D.FLOWCHART],
                                     output_file="02-modules/frontend/routing.md"))
        return agents

    def _select_integration_to_finalizers(
        self, features: DetectedFeatures, existing: list[PlannedAgent]
    ) -> list[PlannedAgent]:
        """Layers 9-12: integration, ops, security, summary, finalizers."""
        s = features.structure
        agents: list[PlannedAgent] = []

        def has_agent(agent_id: str) -> bool:
            return any(a.id == agent_id for a in existing) or any(a.id == agent_id for a in agents)

        # Layer 9: Integration
        api_ids = [a.id for a in existing if a.id.startswith("api-")]
        if api_ids or features.has(F.HAS_GRPC):
            agents.append(_agent("services", "integration/detect-services", api_ids or ["entities"], 9,
                                 optional=True,
                                 diagrams=[D.SEQUENCE], output_file="06-integration/services.md"))
        if features.package_manager or features.languages:
            agents.append(_agent("dependencies", "integration/dependencies", ["bootstrap"], 9,
                                 diagrams=[D.PIE], output_file="06-integration/dependencies.md"))

        # Layer 10: Ops
        if s.has_docker or s.has_cicd:
            agents.append(_agent("deployment", "ops/deployment", ["architecture"], 10,
                                 optional=True,
                                 diagrams=[D.FLOWCHART, D.C4], output_file="07-ops/deployment.md"))
        if s.has_cicd:
            cicd_deps = ["deployment"] if has_agent("deployment") else ["architecture"]
            agents.append(_agent("cicd", "ops/cicd", cicd_deps, 10,
                                 optional=True,
                                 diagrams=[D.FLOWCHART, D.GANTT], output_file="07-ops/ci-cd.md"))
        if s.has_docker and features.has(F.HAS_K8S):
            agents.append(_agent("kubernetes", "ops/kubernetes", ["deployment"], 10,
                                 optional=True, diagrams=[D.C4], output_file="07-ops/kubernetes.md"))

        # Layer 11: Security audit
        security_deps = [i for i in ("authentication", "api-rest", "database") if has_agent(i)]
        if security_deps or features.has(F.HAS_AUTH):
            agents.append(_agent("security", "analysis/security-audit", security_deps or ["entities"], 11,
                                 parallel=False, optional=True,
                                 diagrams=[D.FLOWCHART], output_file="05-auth/security.md"))

        # Layer 12: Summary synthesises every earlier mandatory agent
        agents.append(_agent("summary", "analysis/summary", [ALL_PREVIOUS], 12,
                             parallel=False, diagrams=[D.C4], output_file="index.md"))
        agents.append(_agent("structure_builder", "finalizer/structure", ["summary"], 12,
                             parallel=False))
        agents.append(_agent("write_specs", "finalizer/write", ["structure_builder"], 12,
                             parallel=False))
        return agents

    @staticmethod
    def _resolve_wildcards(agents: list[PlannedAgent]) -> list[PlannedAgent]:
        """Replace ALL_PREVIOUS with every earlier-layer, non-optional agent id."""
        resolved: list[PlannedAgent] = []
        for agent in agents:
            if ALL_PREVIOUS not in agent.dependencies:
                resolved.append(agent)
                continue
            previous = [a.id for a in agents if a.layer < agent.layer and not a.optional]
            deps: list[str] = []
            for dep in agent.dependencies:
                for dep_id in (previous if isinstance(dep, AllPrevious) else [dep]):
                    if dep_id not in deps and dep_id != agent.id:
                        deps.append(dep_id)
            resolved.append(dataclasses.replace(agent, dependencies=tuple(deps)))
        return resolved

    @staticmethod
    def _assign_prompts(agents: list[PlannedAgent], features: DetectedFeatures) -> list[PlannedAgent]:
        """Swap in framework-specific prompt ids. Never touches ids, deps or layers."""
        bound: list[PlannedAgent] = []
        for agent in agents:
            for agent_id, predicate, prompt_id in PROMPT_BINDINGS:
                if agent.id == agent_id and predicate(features):
                    agent = dataclasses.replace(agent, prompt_id=prompt_id)
                    break
            bound.append(agent)
        return bound

    @staticmethod
    def build_layers(agents: Iterable[PlannedAgent]) -> tuple[tuple[PlannedAgent, ...], ...]:
        """Group agents by ``layer``, ascending, with empty layers dropped."""
        by_layer: dict[int, list[PlannedAgent]] = {}
        for agent in agents:
            by_layer.setdefault(agent.layer, []).append(agent)
        return tuple(tuple(by_layer[i]) for i in sorted(by_layer))

    @staticmethod
    def estimate_duration_seconds(layers: Iterable[Iterable[PlannedAgent]]) -> int:
        total = 0
        for layer in layers:
            size = len(list(layer))
            if size == 0:
                continue
            total += BASE_AGENT_SECONDS + (size - 1) * PARALLEL_AGENT_SECONDS
        return total

    # ------------------------------------------------------------------
    # Run-time skip policy
    # ------------------------------------------------------------------

    def should_skip_agent(
        self,
        agent: PlannedAgent,
        features: DetectedFeatures,
        completed_agents: set[str] | frozenset[str],
        failed_agents: set[str] | frozenset[str],
        skipped_agents: set[str] | frozenset[str] = frozenset(),
    ) -> SkipResult:
        """Decide whether *agent* should be skipped right now. First match wins.

        Failed and skipped dependencies only cascade to optional agents: a
        mandatory agent is still dispatched so its failure surfaces. A
        skipped dependency counts as resolved, so it never shows up as
        "waiting".
        """
        deps = _concrete(agent.dependencies)

        failed = [d for d in deps if d in failed_agents]
        if failed and agent.optional:
            return SkipResult(True, f"Dependency {failed[0]} failed")

        skipped = [d for d in deps if d in skipped_agents]
        if skipped and agent.optional:
            return SkipResult(True, f"Dependency {skipped[0]} was skipped")

        pending = [
            d for d in deps
            if d not in completed_agents and d not in failed_agents and d not in skipped_agents
        ]
        if pending:
            return SkipResult(True, f"Waiting for dependency {pending[0]}")

        required = FEATURE_REQUIREMENTS.get(agent.id)
        if required and not features.has_any(*required):
            if agent.optional or self.require_features_for_mandatory:
                return SkipResult(True, f"Missing required features: {' or '.join(required)}")

        for agent_id, predicate, reason in STRUCTURE_REQUIREMENTS:
            if agent.id == agent_id and not predicate(features.structure):
                return SkipResult(True, reason)

        return SkipResult(False)

    def filter_agents(self, dag: PlannedDAG, features: DetectedFeatures) -> PlannedDAG:
        """Pre-execution pruning: drop agents the skip policy rejects up front."""
        kept_ids: set[str] = set()
        kept: list[PlannedAgent] = []
        for agent in dag.agents:
            result = self.should_skip_agent(agent, features, kept_ids, set())
            if result.skip:
                logger.info("Skipping %s: %s", agent.id, result.reason)
                continue
            kept_ids.add(agent.id)
            kept.append(agent)

        layers = self.build_layers(kept)
        return dataclasses.replace(
            dag,
            agents=tuple(kept),
            layers=layers,
            metadata={
                **dag.metadata,
                "total_agents": len(kept),
                "optional_agents": sum(1 for a in kept if a.optional),
            },
        )

    # ------------------------------------------------------------------
    # Validation and translation
    # ------------------------------------------------------------------

    @staticmethod
    def validate_dag(dag: PlannedDAG) -> ValidationResult:
        """Shallow check: dangling references and direct self-dependencies.

        Multi-hop cycles are caught by the executor's topological sort.
        """
        errors: list[str] = []
        agent_ids = {a.id for a in dag.agents}
        for agent in dag.agents:
            for dep in _concrete(agent.dependencies):
                if dep not in agent_ids:
                    errors.append(f"Agent {agent.id} depends on non-existent agent {dep}")
            if agent.id in agent.dependencies:
                errors.append(f"Agent {agent.id} has circular dependency on itself")
        return ValidationResult.from_errors(errors)

    @staticmethod
    def to_definition(dag: PlannedDAG) -> DAGDefinition:
        """Translate planned agents 1:1 into executor nodes."""
        nodes = tuple(
            DAGNode(
                agent_id=a.id,
                dependencies=tuple(_concrete(a.dependencies)),
                parallel=a.parallel,
                optional=a.optional,
                depends_on_all=ALL_PREVIOUS in a.dependencies,
            )
            for a in dag.agents
        )
        return DAGDefinition(version=dag.version, nodes=nodes)
