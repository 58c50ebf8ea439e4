"""Shared data model: detected features, planned agents, DAG nodes and results.

Plain dataclasses with no behaviour beyond (de)serialisation helpers, so
the planner, executor and steps can all import from here without cycles.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from enum import Enum
from typing import Any, Union


# ---------------------------------------------------------------------------
# Feature vocabulary
# ---------------------------------------------------------------------------

class FeatureFlag:
    """String tokens found in ``DetectedFeatures.features``."""

    # API
    HAS_REST_API = "has_rest_api"
    HAS_GRAPHQL = "has_graphql"
    HAS_WEBSOCKET = "has_websocket"
    HAS_GRPC = "has_grpc"
    # Database
    HAS_SQL_DB = "has_sql_db"
    HAS_NOSQL_DB = "has_nosql_db"
    HAS_ORM = "has_orm"
    HAS_MIGRATIONS = "has_migrations"
    # Auth
    HAS_AUTH = "has_auth"
    HAS_OAUTH = "has_oauth"
    HAS_JWT = "has_jwt"
    HAS_RBAC = "has_rbac"
    # Frontend
    HAS_REACT = "has_react"
    HAS_VUE = "has_vue"
    HAS_ANGULAR = "has_angular"
    HAS_STATE_MGMT = "has_state_mgmt"
    HAS_ROUTING = "has_routing"
    # Infra
    HAS_DOCKER = "has_docker"
    HAS_K8S = "has_k8s"
    HAS_SERVERLESS = "has_serverless"
    HAS_CICD = "has_cicd"
    # Quality
    HAS_TESTS = "has_tests"
    HAS_LINTING = "has_linting"
    HAS_TYPES = "has_types"
    # Packaging
    HAS_BIN = "has_bin"


class RepoType(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    FULLSTACK = "fullstack"
    LIBRARY = "library"
    MOBILE = "mobile"
    INFRA_AS_CODE = "infra-as-code"
    MONOREPO = "monorepo"
    CLI = "cli"
    GENERIC = "generic"
    UNKNOWN = "unknown"


class DiagramType(str, Enum):
    C4 = "c4"
    FLOWCHART = "flowchart"
    SEQUENCE = "sequence"
    ERD = "erd"
    CLASS = "classDiagram"
    STATE = "stateDiagram"
    GANTT = "gantt"
    PIE = "pie"


class RunMode(str, Enum):
    """First-time generation pass vs. subsequent update/audit pass."""
    GENERATION = "generation"
    AUDIT = "audit"


class StepStatus(str, Enum):
    """Status values reported through ``on_progress``."""
    START = "start"
    SUCCESS = "success"
    ERROR = "error"
    SKIP = "skip"


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

class AllPrevious:
    """Tagged dependency meaning "every earlier non-optional agent".

    Only the planner ever sees this value; ``plan()`` replaces it with
    concrete ids before returning.
    """

    _instance: "AllPrevious | None" = None

    def __new__(cls) -> "AllPrevious":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ALL_PREVIOUS"

    def __str__(self) -> str:
        return "*"


ALL_PREVIOUS = AllPrevious()

Dependency = Union[str, AllPrevious]


# ---------------------------------------------------------------------------
# Detected features
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class RepoStructure:
    has_backend: bool = False
    has_frontend: bool = False
    has_tests: bool = False
    has_docs: bool = False
    has_docker: bool = False
    has_cicd: bool = False
    is_monorepo: bool = False


@dataclasses.dataclass(frozen=True)
class DetectedFeatures:
    """Immutable snapshot produced once per run by the feature detector."""
    repo_type: RepoType = RepoType.UNKNOWN
    languages: frozenset[str] = frozenset()
    frameworks: frozenset[str] = frozenset()
    features: frozenset[str] = frozenset()
    structure: RepoStructure = dataclasses.field(default_factory=RepoStructure)
    package_manager: str | None = None
    entry_points: tuple[str, ...] = ()

    def has(self, flag: str) -> bool:
        return flag in self.features

    def has_any(self, *flags: str) -> bool:
        return any(f in self.features for f in flags)

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo_type": self.repo_type.value,
            "languages": sorted(self.languages),
            "frameworks": sorted(self.frameworks),
            "features": sorted(self.features),
            "structure": dataclasses.asdict(self.structure),
            "package_manager": self.package_manager,
            "entry_points": list(self.entry_points),
        }


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class PlannedAgent:
    """One selected analysis step. ``id`` is stable across runs."""
    id: str
    prompt_id: str
    dependencies: tuple[Dependency, ...] = ()
    template_id: str | None = None
    parallel: bool = True
    optional: bool = False
    diagrams: tuple[DiagramType, ...] = ()
    output_file: str = ""
    layer: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt_id": self.prompt_id,
            "template_id": self.template_id,
            "dependencies": [str(d) for d in self.dependencies],
            "parallel": self.parallel,
            "optional": self.optional,
            "diagrams": [d.value for d in self.diagrams],
            "output_file": self.output_file,
            "layer": self.layer,
        }


@dataclasses.dataclass(frozen=True)
class PlannedDAG:
    version: str
    repo_type: RepoType
    agents: tuple[PlannedAgent, ...]
    layers: tuple[tuple[PlannedAgent, ...], ...]
    metadata: dict[str, Any]

    def agent_ids(self) -> list[str]:
        return [a.id for a in self.agents]

    def get(self, agent_id: str) -> PlannedAgent | None:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "repo_type": self.repo_type.value,
            "agents": [a.to_dict() for a in self.agents],
            "layers": [[a.id for a in layer] for layer in self.layers],
            "metadata": dict(self.metadata),
        }


@dataclasses.dataclass(frozen=True)
class SkipResult:
    skip: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

@dataclasses.dataclass(frozen=True)
class DAGNode:
    """Executor input unit. ``depends_on_all`` replaces the ``*`` sentinel."""
    agent_id: str
    dependencies: tuple[str, ...] = ()
    parallel: bool = False
    optional: bool = False
    depends_on_all: bool = False


@dataclasses.dataclass(frozen=True)
class DAGDefinition:
    version: str
    nodes: tuple[DAGNode, ...]

    def get(self, agent_id: str) -> DAGNode | None:
        for node in self.nodes:
            if node.agent_id == agent_id:
                return node
        return None


@dataclasses.dataclass(frozen=True)
class PromptVersion:
    id: str
    version: str
    hash: str

    @classmethod
    def coerce(cls, value: Any, agent_id: str) -> "PromptVersion":
        """Accept a PromptVersion, a mapping, or nothing (placeholder)."""
        if isinstance(value, PromptVersion):
            return value
        if isinstance(value, dict):
            return cls(
                id=str(value.get("id", agent_id)),
                version=str(value.get("version", "1")),
                hash=str(value.get("hash", "unknown")),
            )
        return cls(id=agent_id, version="1", hash="unknown")


@dataclasses.dataclass(frozen=True)
class AgentOutput:
    agent_id: str
    file_path: str
    summary: str
    full_content: str
    prompt_version: PromptVersion
    timestamp: datetime
    diagrams: tuple[Any, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "file_path": self.file_path,
            "summary": self.summary,
            "full_content": self.full_content,
            "prompt_version": dataclasses.asdict(self.prompt_version),
            "diagrams": list(self.diagrams) if self.diagrams is not None else None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclasses.dataclass(frozen=True)
class KeyFile:
    relative_path: str
    content: str
    truncated: bool


@dataclasses.dataclass
class StepInput:
    """Everything a step implementation is allowed to see."""
    agent_id: str
    repo_structure: str
    project_slug: str
    base_dir: str
    repo_type: str
    mode: RunMode
    dependency_context: str
    dependencies: list[str] = dataclasses.field(default_factory=list)
    client: Any = None
    options: dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class StepResult:
    """Return value of ``StepImplementation.process``.

    The executor reads only ``output``, ``path``, ``diagrams``,
    ``prompt_version`` and ``mode`` from ``data``; other keys pass through.
    """
    success: bool
    data: dict[str, Any] | None = None
    message: str | None = None
    error: str | None = None


@dataclasses.dataclass(frozen=True)
class ExecutionResult:
    agent_id: str
    success: bool
    duration_ms: int = 0
    error: str | None = None
    output: AgentOutput | None = None
    skipped: bool = False
    skip_reason: str | None = None


@dataclasses.dataclass(frozen=True)
class ExecutionSummary:
    total_agents: int
    executed: int
    successful: int
    failed: int
    skipped: int
    total_duration_ms: int
    results: tuple[ExecutionResult, ...]
    dropped: tuple[str, ...] = ()
    mode: RunMode = RunMode.GENERATION

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_agents": self.total_agents,
            "executed": self.executed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_duration_ms": self.total_duration_ms,
            "dropped": list(self.dropped),
            "mode": self.mode.value,
            "results": [
                {
                    "agent_id": r.agent_id,
                    "success": r.success,
                    "skipped": r.skipped,
                    "skip_reason": r.skip_reason,
                    "error": r.error,
                    "duration_ms": r.duration_ms,
                }
                for r in self.results
            ],
        }


@dataclasses.dataclass(frozen=True)
class ValidationResult:
    """Outcome of a static DAG check; errors are collected, never raised."""
    valid: bool
    errors: tuple[str, ...] = ()

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationResult":
        return cls(valid=not errors, errors=tuple(errors))
