"""End-to-end analysis run: detect, plan, validate, execute, snapshot."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Callable

from .circuit_breaker import breaker_states, configure_breakers
from .config import Settings
from .context import SharedContext
from .exceptions import DAGValidationError
from .executor import DAGExecutor
from .logging_config import run_id_var
from .models import ExecutionSummary, PlannedDAG
from .planner import DAGPlanner
from .prompts import CONTEXT_SNAPSHOT_FILE
from .repo_scan import FeatureDetector, build_repo_tree, load_key_files
from .steps import CompleteFn, LLMClient, build_default_registry

logger = logging.getLogger("speczero.pipeline")


def plan_repository(repo_path: Path, settings: Settings) -> PlannedDAG:
    planner = DAGPlanner(
        detector=FeatureDetector(),
        require_features_for_mandatory=settings.require_features_for_mandatory,
    )
    return planner.plan_repository(Path(repo_path))


def run_analysis(
    repo_path: Path,
    settings: Settings,
    complete: CompleteFn | None = None,
    client: Any = None,
    project_slug: str | None = None,
    on_progress: Callable | None = None,
) -> ExecutionSummary:
    """Analyse *repo_path* and write specs under its specs folder.

    ``complete`` defaults to ``client.complete``, and ``client`` to an
    ``LLMClient`` built from *settings*.

    Raises:
        DAGValidationError: if the planned DAG is structurally invalid.
        CircularDependencyError: if the executor finds a cycle.
    """
    repo_path = Path(repo_path).resolve()
    token = run_id_var.set(uuid.uuid4().hex[:12])
    try:
        detector = FeatureDetector()
        planner = DAGPlanner(
            detector=detector,
            require_features_for_mandatory=settings.require_features_for_mandatory,
        )
        features = detector.detect(repo_path)
        planned = planner.plan(features)

        validation = planner.validate_dag(planned)
        if not validation.valid:
            raise DAGValidationError(list(validation.errors))
        definition = planner.to_definition(planned)
        static_check = DAGExecutor.validate(definition)
        if not static_check.valid:
            raise DAGValidationError(list(static_check.errors))

        slug = project_slug or repo_path.name
        context = SharedContext(
            project_slug=slug,
            repo_type=features.repo_type.value,
            base_dir=str(repo_path),
            repo_structure=build_repo_tree(repo_path),
        )
        load_key_files(context, repo_path, features.repo_type.value, settings.key_file_max_chars)

        if complete is None:
            if client is None:
                configure_breakers(settings.llm_failure_threshold, settings.llm_cooldown_seconds)
                client = LLMClient.from_settings(settings)
            complete = client.complete
        registry = build_default_registry(definition, complete, planned)

        executor = DAGExecutor(
            definition,
            context,
            registry,
            planner=planner,
            features=features,
            on_progress=on_progress,
            step_timeout=settings.step_timeout_seconds,
            max_workers=settings.max_parallel_steps,
            options={
                "specs_folder": settings.specs_folder,
                "plugin_version": settings.plugin_version,
                "no_push": settings.no_push,
            },
            summary_max_chars=settings.summary_max_chars,
        )
        summary = executor.execute(client)

        for endpoint, state in breaker_states().items():
            if state["state"] != "closed":
                logger.warning("Model %s ended the run with its circuit %s", endpoint, state["state"])

        context.save_snapshot(repo_path / settings.specs_folder / CONTEXT_SNAPSHOT_FILE)
        return summary
    finally:
        run_id_var.reset(token)
