"""SharedContext: the per-run accumulator that feeds each step its context.

Holds two kinds of data:
  - run-global inputs (repository tree and key-file snippets) that every
    step sees, loaded once before execution starts;
  - per-agent outputs registered by the executor after each step settles.

Downstream steps only ever receive the *summary* of an upstream output,
never its full content, which keeps each prompt bounded regardless of how
verbose earlier steps were. Only the executor's coordinating thread writes
here; step implementations get a rendered string, not this object.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .exceptions import DuplicateOutputError
from .models import AgentOutput, KeyFile, PromptVersion

logger = logging.getLogger("speczero.context")

DEFAULT_KEY_FILE_MAX_CHARS = 5000


class SharedContext:
    """Append-only store of key files and agent outputs for one run."""

    def __init__(
        self,
        project_slug: str,
        repo_type: str,
        base_dir: str,
        repo_structure: str,
    ) -> None:
        self.project_slug = project_slug
        self.repo_type = repo_type
        self.base_dir = base_dir
        self.repo_structure = repo_structure
        self.start_time = datetime.now(timezone.utc)
        self._start_monotonic = time.monotonic()

        self._key_files: dict[str, KeyFile] = {}
        self._outputs: dict[str, AgentOutput] = {}
        self._prompt_versions: list[PromptVersion] = []

    # ------------------------------------------------------------------
    # Key files
    # ------------------------------------------------------------------

    def add_key_file(
        self, relative_path: str, content: str, max_chars: int = DEFAULT_KEY_FILE_MAX_CHARS
    ) -> None:
        self._key_files[relative_path] = KeyFile(
            relative_path=relative_path,
            content=content[:max_chars],
            truncated=len(content) > max_chars,
        )

    def get_key_file(self, relative_path: str) -> KeyFile | None:
        return self._key_files.get(relative_path)

    def has_key_file(self, relative_path: str) -> bool:
        return relative_path in self._key_files

    @property
    def key_files(self) -> dict[str, KeyFile]:
        return dict(self._key_files)

    # ------------------------------------------------------------------
    # Agent outputs
    # ------------------------------------------------------------------

    def register_output(self, output: AgentOutput) -> None:
        """Record an agent's output. Each agent id may register once per run.

        Raises:
            DuplicateOutputError: if *output.agent_id* was already registered.
        """
        if output.agent_id in self._outputs:
            raise DuplicateOutputError(output.agent_id)
        self._outputs[output.agent_id] = output
        self._prompt_versions.append(output.prompt_version)
        logger.debug(
            "Registered output for %s (%d chars, summary %d chars)",
            output.agent_id, len(output.full_content), len(output.summary),
        )

    def get_outputs(self, agent_ids: Iterable[str]) -> list[AgentOutput]:
        return [self._outputs[i] for i in agent_ids if i in self._outputs]

    def get_summaries(self, agent_ids: Iterable[str]) -> str:
        return "\n\n".join(f"## {o.agent_id}\n{o.summary}" for o in self.get_outputs(agent_ids))

    def get_all_summaries(self) -> str:
        return self.get_summaries(self._outputs.keys())

    def get_full_content(self, agent_id: str) -> str | None:
        output = self._outputs.get(agent_id)
        return output.full_content if output else None

    def has_output(self, agent_id: str) -> bool:
        return agent_id in self._outputs

    def executed_agent_ids(self) -> list[str]:
        return list(self._outputs.keys())

    # ------------------------------------------------------------------
    # Context building
    # ------------------------------------------------------------------

    def build_agent_context(self, dependencies: Iterable[str]) -> str:
        """Render the context a step with *dependencies* is allowed to see.

        Repository structure and key files are always included. For each
        dependency that has registered output, only its summary is added.
        """
        parts: list[str] = ["## Repository Structure\n```\n" + self.repo_structure + "\n```"]

        if self._key_files:
            parts.append("\n## Key Files\n")
            for path, key_file in self._key_files.items():
                note = " (truncated)" if key_file.truncated else ""
                parts.append(f"### {path}{note}\n```\n{key_file.content}\n```")

        summaries = self.get_summaries(list(dependencies))
        if summaries:
            parts.append("\n## Previous Analysis Results\n")
            parts.append(summaries)

        return "\n".join(parts)

    def build_minimal_context(self) -> str:
        return self.build_agent_context([])

    def build_full_context(self) -> str:
        return self.build_agent_context(self._outputs.keys())

    def create_agent_snapshot(self, agent_id: str, dependencies: list[str]) -> dict[str, Any]:
        """What *agent_id* can see, for debugging prompt assembly."""
        return {
            "agent_id": agent_id,
            "project_slug": self.project_slug,
            "repo_type": self.repo_type,
            "base_dir": self.base_dir,
            "context": self.build_agent_context(dependencies),
            "available_deps": [d for d in dependencies if self.has_output(d)],
        }

    # ------------------------------------------------------------------
    # Audit output
    # ------------------------------------------------------------------

    def generate_metadata(self) -> dict[str, Any]:
        return {
            "project_slug": self.project_slug,
            "repo_type": self.repo_type,
            "base_dir": self.base_dir,
            "analysis_date": self.start_time.isoformat(),
            "duration_ms": int((time.monotonic() - self._start_monotonic) * 1000),
            "agents_executed": self.executed_agent_ids(),
            "key_files_loaded": list(self._key_files.keys()),
            "prompt_versions": [dataclasses.asdict(v) for v in self._prompt_versions],
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.generate_metadata(),
            "key_files": {p: dataclasses.asdict(k) for p, k in self._key_files.items()},
            "agent_outputs": {i: o.to_dict() for i, o in self._outputs.items()},
        }

    def save_snapshot(self, path: Path) -> Path:
        """Write an immutable JSON snapshot of this context to *path*."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, default=str), encoding="utf-8")
        logger.info("Context snapshot written to %s", path)
        return path
