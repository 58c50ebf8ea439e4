"""Shared pytest fixtures: feature and node builders, step doubles."""

import pytest

from speczero.circuit_breaker import reset_all
from speczero.context import SharedContext
from speczero.models import (
    DAGDefinition,
    DAGNode,
    DetectedFeatures,
    RepoStructure,
    RepoType,
    StepResult,
)


@pytest.fixture(autouse=True)
def _clean_breakers():
    """Reset global breaker registry between tests."""
    reset_all()
    yield
    reset_all()


@pytest.fixture
def make_features():
    """Build DetectedFeatures with keyword shortcuts for structure flags."""

    def _make(
        repo_type=RepoType.BACKEND,
        features=(),
        frameworks=(),
        languages=("typescript",),
        package_manager="npm",
        **structure,
    ):
        return DetectedFeatures(
            repo_type=repo_type,
            languages=frozenset(languages),
            frameworks=frozenset(frameworks),
            features=frozenset(features),
            structure=RepoStructure(**structure),
            package_manager=package_manager,
        )

    return _make


@pytest.fixture
def make_node():
    def _make(agent_id, *deps, optional=False, depends_on_all=False):
        return DAGNode(
            agent_id=agent_id,
            dependencies=tuple(deps),
            optional=optional,
            depends_on_all=depends_on_all,
        )

    return _make


@pytest.fixture
def make_dag(make_node):
    """``make_dag({"A": [], "B": ["A"]})`` -> DAGDefinition."""

    def _make(edges, optional=()):
        return DAGDefinition(
            version="test",
            nodes=tuple(make_node(a, *deps, optional=a in optional) for a, deps in edges.items()),
        )

    return _make


@pytest.fixture
def context(tmp_path):
    return SharedContext(
        project_slug="demo",
        repo_type="backend",
        base_dir=str(tmp_path),
        repo_structure="├── src/\n└── package.json",
    )


class RecordingStep:
    """Step double that records its inputs and returns a canned result."""

    def __init__(self, result=None, error=None, output=None):
        self.inputs = []
        self._result = result
        self._error = error
        self._output = output

    def process(self, step_input):
        self.inputs.append(step_input)
        if self._error is not None:
            raise self._error
        if self._result is not None:
            return self._result
        output = self._output or f"## Executive Summary\nSummary of {step_input.agent_id}.\n\n## Body\nFULL-{step_input.agent_id}"
        return StepResult(success=True, data={"output": output, "path": f"{step_input.agent_id}.md"})


@pytest.fixture
def recording_step():
    return RecordingStep
