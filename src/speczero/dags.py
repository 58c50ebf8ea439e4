"""Static DAG definitions for runs that bypass the feature-driven planner.

``GENERATION_DAG`` is the first-run pipeline, ``AUDIT_DAG`` the update-run
pipeline; both share the same analysis core. ``DEFAULT_DAG`` is the older
single-mode layout kept for callers that pin it explicitly.
"""

from __future__ import annotations

from typing import Iterable

from .models import DAGDefinition, DAGNode, RunMode


def _node(agent_id: str, *deps: str, parallel: bool = False, optional: bool = False) -> DAGNode:
    return DAGNode(agent_id=agent_id, dependencies=tuple(deps), parallel=parallel, optional=optional)


# Shared between generation and audit runs
ANALYSIS_NODES: tuple[DAGNode, ...] = (
    _node("overview", "bootstrap"),

    _node("module", "overview", parallel=True),
    _node("entity", "overview", parallel=True),

    _node("db", "module", "entity", parallel=True),
    _node("data_map", "module", "entity", parallel=True),
    _node("event", "module", "entity", parallel=True),

    _node("api", "db", "entity", parallel=True),
    _node("dependency", "module", parallel=True),
    _node("service_dep", "api", parallel=True),

    _node("auth", "api", parallel=True),
    _node("authz", "auth", parallel=True),
    _node("security", "api", "db", parallel=True),
    _node("prompt_sec", "api", parallel=True, optional=True),

    _node("deployment", "module", "dependency", parallel=True),
    _node("monitor", "api", "db", parallel=True),
    _node("ml", "api", "data_map", parallel=True, optional=True),
    _node("flag", "module", parallel=True, optional=True),

    DAGNode(agent_id="summary", depends_on_all=True),
)

GENERATION_DAG = DAGDefinition(
    version="2.0.0",
    nodes=(
        _node("submodule_check"),
        _node("bootstrap", "submodule_check"),
        *ANALYSIS_NODES,
        _node("structure_builder", "summary"),
        _node("write_specs", "structure_builder"),
    ),
)

AUDIT_DAG = DAGDefinition(
    version="2.0.0",
    nodes=(
        _node("submodule_check"),
        _node("bootstrap", "submodule_check"),
        *ANALYSIS_NODES,
        _node("audit_report", "summary"),
    ),
)

DEFAULT_DAG = DAGDefinition(
    version="1.0.0",
    nodes=(_node("bootstrap"), *ANALYSIS_NODES),
)


def select_dag(mode: RunMode | str) -> DAGDefinition:
    """Return the static DAG for *mode*; unknown modes fall back to generation."""
    if mode == RunMode.AUDIT:
        return AUDIT_DAG
    return GENERATION_DAG


def create_custom_dag(agent_ids: Iterable[str], base: DAGDefinition = DEFAULT_DAG) -> DAGDefinition:
    """Keep only *agent_ids* from *base*, pruning edges to dropped nodes."""
    keep = set(agent_ids)
    nodes = tuple(
        DAGNode(
            agent_id=n.agent_id,
            dependencies=tuple(d for d in n.dependencies if d in keep),
            parallel=n.parallel,
            optional=n.optional,
            depends_on_all=n.depends_on_all,
        )
        for n in base.nodes
        if n.agent_id in keep
    )
    return DAGDefinition(version=base.version, nodes=nodes)
