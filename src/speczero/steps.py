"""Step implementations and the registry the executor dispatches to.

A step is anything with ``process(StepInput) -> StepResult``. Steps never
see the shared context object, only the rendered ``dependency_context``
string, and report everything they produced through ``StepResult.data``.

LLM-backed steps take an injected ``complete(system, user) -> str``
callable. ``LLMClient.complete`` is the real one (litellm behind a circuit
breaker and a timeout); ``stub_complete`` is the offline one used for
dry runs and tests.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

from .circuit_breaker import run_with_timeout
from .models import (
    DAGDefinition,
    DiagramType,
    PlannedDAG,
    PromptVersion,
    RunMode,
    StepInput,
    StepResult,
)
from .prompts import (
    AUDIT_NOTE,
    DIAGRAM_HINT,
    MANIFEST_FILE,
    PROMPT_HASH_LENGTH,
    PROMPTS,
    SPEC_SECTIONS,
    STATIC_AGENT_PROMPTS,
    SYSTEM_PROMPT,
    USER_PROMPT_TEMPLATE,
)

logger = logging.getLogger("speczero.steps")

CompleteFn = Callable[[str, str], str]

MODE_STEP_IDS = ("submodule_check", "bootstrap")

_MERMAID_BLOCK_RE = re.compile(r"^```mermaid\s*\n(.*?)^```", re.MULTILINE | re.DOTALL)


class StepImplementation(Protocol):
    def process(self, step_input: StepInput) -> StepResult: ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class StepRegistry(Mapping[str, StepImplementation]):
    """Agent id -> step implementation, populated once and then frozen."""

    def __init__(self) -> None:
        self._steps: dict[str, StepImplementation] = {}
        self._frozen = False

    def register(self, agent_id: str, step: StepImplementation) -> None:
        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register {agent_id}")
        if agent_id in self._steps:
            raise ValueError(f"Step already registered for agent: {agent_id}")
        self._steps[agent_id] = step

    def freeze(self) -> "StepRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __getitem__(self, agent_id: str) -> StepImplementation:
        return self._steps[agent_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def extract_mermaid_blocks(content: str) -> list[str]:
    """Bodies of the ```mermaid fenced blocks in *content*, in order."""
    return [m.group(1).strip() for m in _MERMAID_BLOCK_RE.finditer(content)]


def prompt_version(prompt_id: str, version: str = "1") -> PromptVersion:
    """Version record for *prompt_id*; the hash changes whenever its text does."""
    title, instructions = PROMPTS[prompt_id]
    digest = hashlib.sha256(
        "\n".join((SYSTEM_PROMPT, title, instructions)).encode("utf-8")
    ).hexdigest()
    return PromptVersion(id=prompt_id, version=version, hash=digest[:PROMPT_HASH_LENGTH])


def _specs_dir(step_input: StepInput) -> Path:
    return Path(step_input.base_dir) / step_input.options.get("specs_folder", "specs")


# ---------------------------------------------------------------------------
# LLM access
# ---------------------------------------------------------------------------

class LLMClient:
    """Thin litellm wrapper shared by every analysis step in a run.

    Calls are keyed on the model name in the circuit-breaker registry, so
    once the endpoint trips, remaining steps fail fast.
    """

    def __init__(
        self,
        model: str,
        api_key: str = "",
        api_base: str = "",
        timeout: float = 300,
        max_tokens: int = 4096,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Any) -> "LLMClient":
        return cls(
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            api_base=settings.llm_api_base,
            timeout=settings.llm_timeout_seconds,
            max_tokens=settings.llm_max_tokens,
        )

    def complete(self, system: str, user: str) -> str:
        import litellm

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "max_tokens": self.max_tokens,
            "temperature": 0.2,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        response = run_with_timeout(
            lambda: litellm.completion(**kwargs), self.timeout, label=self.model,
        )
        return response.choices[0].message.content or ""


def stub_complete(system: str, user: str) -> str:
    """Offline completion: a deterministic document echoing the task title."""
    match = re.search(r"^# Task: (.+)$", user, re.MULTILINE)
    title = match.group(1).strip() if match else "Analysis"
    return (
        f"# {title}\n\n"
        "## Executive Summary\n"
        f"Dry-run placeholder for {title}. No model was called.\n\n"
        "## Details\n"
        f"The prompt carried {len(user)} characters of context.\n"
    )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

class BootstrapStep:
    """Confirms the repository is readable and detects the run mode.

    Existing specs (a manifest under the specs folder) mean this is an
    update run, so the mode becomes ``audit``.
    """

    def process(self, step_input: StepInput) -> StepResult:
        base_dir = Path(step_input.base_dir)
        if not base_dir.is_dir():
            return StepResult(success=False, message=f"Base directory does not exist: {base_dir}")

        specs_dir = _specs_dir(step_input)
        mode = RunMode.AUDIT if (specs_dir / MANIFEST_FILE).is_file() else RunMode.GENERATION
        output = (
            "## Executive Summary\n"
            f"{step_input.repo_type} repository `{step_input.project_slug}` at {base_dir}. "
            f"Run mode: {mode.value}.\n\n"
            "## Repository Structure\n"
            f"```\n{step_input.repo_structure}\n```\n"
        )
        logger.info("Bootstrap for %s: mode=%s", step_input.project_slug, mode.value)
        return StepResult(
            success=True,
            data={
                "output": output,
                "mode": mode.value,
                "prompt_version": {"id": step_input.agent_id, "version": "1", "hash": "native"},
            },
            message=f"Bootstrap complete: mode {mode.value}",
        )


class AnalysisStep:
    """One LLM-backed analysis agent: render prompt, call model, write file."""

    def __init__(
        self,
        prompt_id: str,
        output_file: str,
        complete: CompleteFn,
        diagrams: tuple[DiagramType, ...] = (),
    ) -> None:
        if prompt_id not in PROMPTS:
            raise KeyError(f"Unknown prompt id: {prompt_id}")
        self.prompt_id = prompt_id
        self.output_file = output_file
        self.diagrams = diagrams
        self._complete = complete

    def render(self, step_input: StepInput) -> str:
        title, instructions = PROMPTS[self.prompt_id]
        hint = DIAGRAM_HINT.format(diagrams=", ".join(d.value for d in self.diagrams)) if self.diagrams else ""
        return USER_PROMPT_TEMPLATE.format(
            title=title,
            instructions=instructions,
            project_slug=step_input.project_slug,
            repo_type=step_input.repo_type,
            mode=step_input.mode.value,
            diagram_hint=hint,
            audit_note=AUDIT_NOTE + "\n" if step_input.mode == RunMode.AUDIT else "",
            context=step_input.dependency_context,
        )

    def process(self, step_input: StepInput) -> StepResult:
        content = self._complete(SYSTEM_PROMPT, self.render(step_input))
        if not content or not content.strip():
            return StepResult(success=False, message=f"Empty response from model for {step_input.agent_id}")

        data: dict[str, Any] = {
            "output": content,
            "diagrams": extract_mermaid_blocks(content),
            "prompt_version": prompt_version(self.prompt_id, step_input.options.get("plugin_version", "1")),
        }
        if self.output_file:
            target = _specs_dir(step_input) / self.output_file
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            data["path"] = target.relative_to(Path(step_input.base_dir)).as_posix()
            logger.info("Wrote %s (%d chars)", data["path"], len(content))
        return StepResult(success=True, data=data)


class StructureBuilderStep:
    """Creates the specs folder layout before files are finalised."""

    def process(self, step_input: StepInput) -> StepResult:
        specs_dir = _specs_dir(step_input)
        for section in SPEC_SECTIONS:
            (specs_dir / section).mkdir(parents=True, exist_ok=True)
        return StepResult(
            success=True,
            data={
                "output": (
                    "## Executive Summary\n"
                    f"Prepared {len(SPEC_SECTIONS)} folders under {specs_dir.name}/."
                ),
                "folders": list(SPEC_SECTIONS),
            },
        )


class WriteSpecsStep:
    """Writes the manifest that lists every spec file of this run."""

    def process(self, step_input: StepInput) -> StepResult:
        specs_dir = _specs_dir(step_input)
        if not specs_dir.is_dir():
            return StepResult(success=False, message=f"Specs folder missing: {specs_dir}")

        files = sorted(p.relative_to(specs_dir).as_posix() for p in specs_dir.rglob("*.md"))
        manifest = {
            "project_slug": step_input.project_slug,
            "repo_type": step_input.repo_type,
            "mode": step_input.mode.value,
            "plugin_version": step_input.options.get("plugin_version", ""),
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "files": files,
        }
        manifest_path = specs_dir / MANIFEST_FILE
        manifest_path.parent.mkdir(parents=True, exist_ok=True)
        manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        logger.info("Manifest lists %d spec files", len(files))
        return StepResult(
            success=True,
            data={
                "output": f"## Executive Summary\nWrote manifest for {len(files)} spec files.",
                "path": manifest_path.relative_to(Path(step_input.base_dir)).as_posix(),
                "files": files,
            },
        )


# ---------------------------------------------------------------------------
# Default wiring
# ---------------------------------------------------------------------------

def build_default_registry(
    definition: DAGDefinition,
    complete: CompleteFn,
    planned: PlannedDAG | None = None,
) -> StepRegistry:
    """Register a built-in step for every node of *definition*, then freeze.

    Planned agents take their prompt and output file from the plan; static
    DAG ids fall back to STATIC_AGENT_PROMPTS. Ids with no built-in step
    stay unregistered and fail at run time.
    """
    registry = StepRegistry()
    for node in definition.nodes:
        agent_id = node.agent_id
        planned_agent = planned.get(agent_id) if planned else None

        if agent_id in MODE_STEP_IDS:
            registry.register(agent_id, BootstrapStep())
        elif agent_id == "structure_builder":
            registry.register(agent_id, StructureBuilderStep())
        elif agent_id == "write_specs":
            registry.register(agent_id, WriteSpecsStep())
        elif planned_agent is not None and planned_agent.prompt_id in PROMPTS:
            registry.register(
                agent_id,
                AnalysisStep(planned_agent.prompt_id, planned_agent.output_file, complete, planned_agent.diagrams),
            )
        elif agent_id in STATIC_AGENT_PROMPTS:
            prompt_id, output_file = STATIC_AGENT_PROMPTS[agent_id]
            registry.register(agent_id, AnalysisStep(prompt_id, output_file, complete))
        else:
            logger.warning("No built-in step for agent %s", agent_id)
    return registry.freeze()
