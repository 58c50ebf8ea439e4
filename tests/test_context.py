"""Tests for SharedContext: key files, output registry, context building."""

import json
from datetime import datetime, timezone

import pytest

from speczero.exceptions import DuplicateOutputError
from speczero.models import AgentOutput, PromptVersion


def _output(agent_id, summary=None, content=None):
    return AgentOutput(
        agent_id=agent_id,
        file_path=f"{agent_id}.md",
        summary=summary or f"summary-{agent_id}",
        full_content=content or f"full-{agent_id}",
        prompt_version=PromptVersion(agent_id, "1", "h"),
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class TestKeyFiles:
    def test_truncates_and_flags(self, context):
        context.add_key_file("README.md", "x" * 20, max_chars=10)
        key_file = context.get_key_file("README.md")
        assert key_file.content == "x" * 10
        assert key_file.truncated

    def test_short_file_not_truncated(self, context):
        context.add_key_file("package.json", "{}")
        assert not context.get_key_file("package.json").truncated
        assert context.has_key_file("package.json")
        assert not context.has_key_file("missing")

    def test_default_budget(self, context):
        context.add_key_file("big.txt", "y" * 6000)
        assert len(context.get_key_file("big.txt").content) == 5000


class TestOutputs:
    def test_register_and_read(self, context):
        context.register_output(_output("A"))
        assert context.has_output("A")
        assert context.get_full_content("A") == "full-A"
        assert context.get_full_content("B") is None
        assert context.executed_agent_ids() == ["A"]

    def test_duplicate_registration_raises(self, context):
        context.register_output(_output("A"))
        with pytest.raises(DuplicateOutputError):
            context.register_output(_output("A"))

    def test_summaries_only_for_requested_ids(self, context):
        context.register_output(_output("A"))
        context.register_output(_output("B"))
        assert context.get_summaries(["A", "missing"]) == "## A\nsummary-A"
        assert context.get_all_summaries() == "## A\nsummary-A\n\n## B\nsummary-B"


class TestBuildAgentContext:
    def test_layout(self, context):
        context.add_key_file("README.md", "hello", max_chars=3)
        context.register_output(_output("A"))
        rendered = context.build_agent_context(["A"])
        assert rendered.startswith("## Repository Structure\n```\n├── src/")
        assert "## Key Files" in rendered
        assert "### README.md (truncated)\n```\nhel\n```" in rendered
        assert rendered.endswith("## Previous Analysis Results\n\n## A\nsummary-A")

    def test_isolation(self, context):
        context.register_output(_output("A"))
        context.register_output(_output("B"))
        context.register_output(_output("C"))
        rendered = context.build_agent_context(["A", "B"])
        assert "summary-A" in rendered and "summary-B" in rendered
        assert "C" not in rendered.split("## Previous Analysis Results")[1]
        for agent_id in "ABC":
            assert f"full-{agent_id}" not in rendered

    def test_key_files_visible_without_dependencies(self, context):
        context.add_key_file("package.json", "{}")
        assert context.build_minimal_context() == context.build_agent_context([])
        assert "### package.json" in context.build_minimal_context()
        assert "Previous Analysis Results" not in context.build_minimal_context()

    def test_full_context_has_every_summary(self, context):
        context.register_output(_output("A"))
        context.register_output(_output("B"))
        rendered = context.build_full_context()
        assert "summary-A" in rendered and "summary-B" in rendered

    def test_snapshot(self, context):
        context.register_output(_output("A"))
        snapshot = context.create_agent_snapshot("B", ["A", "Z"])
        assert snapshot["available_deps"] == ["A"]
        assert "summary-A" in snapshot["context"]


class TestMetadata:
    def test_generate_metadata(self, context):
        context.add_key_file("README.md", "r")
        context.register_output(_output("A"))
        metadata = context.generate_metadata()
        assert metadata["project_slug"] == "demo"
        assert metadata["agents_executed"] == ["A"]
        assert metadata["key_files_loaded"] == ["README.md"]
        assert metadata["prompt_versions"] == [{"id": "A", "version": "1", "hash": "h"}]
        assert metadata["duration_ms"] >= 0

    def test_save_snapshot(self, context, tmp_path):
        context.register_output(_output("A"))
        path = context.save_snapshot(tmp_path / "out" / "context.json")
        data = json.loads(path.read_text())
        assert data["agent_outputs"]["A"]["summary"] == "summary-A"
        assert data["metadata"]["agents_executed"] == ["A"]
