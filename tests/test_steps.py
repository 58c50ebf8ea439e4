"""Tests for built-in steps, the registry and the litellm client wrapper."""

import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from speczero.circuit_breaker import CircuitBreakerOpen, get_breaker
from speczero.dags import GENERATION_DAG
from speczero.models import DAGDefinition, DAGNode, DiagramType, RunMode, StepInput
from speczero.prompts import MANIFEST_FILE, PROMPT_HASH_LENGTH, SPEC_SECTIONS
from speczero.steps import (
    AnalysisStep,
    BootstrapStep,
    LLMClient,
    StepRegistry,
    StructureBuilderStep,
    WriteSpecsStep,
    build_default_registry,
    extract_mermaid_blocks,
    prompt_version,
    stub_complete,
)


@pytest.fixture
def make_input(tmp_path):
    def _make(agent_id="overview", mode=RunMode.GENERATION, base_dir=None, **options):
        return StepInput(
            agent_id=agent_id,
            repo_structure="└── src/",
            project_slug="demo",
            base_dir=str(base_dir or tmp_path),
            repo_type="backend",
            mode=mode,
            dependency_context="## Previous Analysis Results\n\n## bootstrap\nok",
            options=options,
        )

    return _make


class FakeComplete:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    def __call__(self, system, user):
        self.calls.append((system, user))
        return self.reply


class TestStepRegistry:
    def test_register_and_lookup(self):
        registry = StepRegistry()
        step = BootstrapStep()
        registry.register("bootstrap", step)
        assert registry["bootstrap"] is step
        assert "bootstrap" in registry and len(registry) == 1
        assert registry.get("missing") is None

    def test_duplicate_rejected(self):
        registry = StepRegistry()
        registry.register("bootstrap", BootstrapStep())
        with pytest.raises(ValueError, match="already registered"):
            registry.register("bootstrap", BootstrapStep())

    def test_frozen_registry_rejects_writes(self):
        registry = StepRegistry().freeze()
        assert registry.frozen
        with pytest.raises(RuntimeError, match="frozen"):
            registry.register("bootstrap", BootstrapStep())


class TestHelpers:
    def test_extract_mermaid_blocks(self):
        content = "intro\n```mermaid\ngraph TD\n  A-->B\n```\ntext\n```python\nx = 1\n```\n```mermaid\nerDiagram\n```\n"
        assert extract_mermaid_blocks(content) == ["graph TD\n  A-->B", "erDiagram"]

    def test_prompt_version_hash_is_stable(self):
        first = prompt_version("analysis/overview", "2.1.0")
        assert first == prompt_version("analysis/overview", "2.1.0")
        assert len(first.hash) == PROMPT_HASH_LENGTH
        assert first.hash != prompt_version("analysis/architecture").hash

    def test_stub_complete_echoes_title(self):
        text = stub_complete("sys", "# Task: Data Model\n\nbody")
        assert text.startswith("# Data Model")
        assert "## Executive Summary\nDry-run placeholder for Data Model." in text


class TestBootstrapStep:
    def test_generation_when_no_manifest(self, make_input):
        result = BootstrapStep().process(make_input("bootstrap"))
        assert result.success
        assert result.data["mode"] == "generation"
        assert result.data["output"].startswith("## Executive Summary")

    def test_audit_when_manifest_exists(self, make_input, tmp_path):
        manifest = tmp_path / "docs" / MANIFEST_FILE
        manifest.parent.mkdir(parents=True)
        manifest.write_text("{}")
        result = BootstrapStep().process(make_input("bootstrap", specs_folder="docs"))
        assert result.data["mode"] == "audit"

    def test_missing_base_dir_fails(self, make_input, tmp_path):
        result = BootstrapStep().process(make_input("bootstrap", base_dir=tmp_path / "gone"))
        assert not result.success
        assert "does not exist" in result.message


class TestAnalysisStep:
    REPLY = "## Executive Summary\nAll good.\n\n```mermaid\nflowchart LR\n  a-->b\n```\n"

    def test_writes_file_and_reports_data(self, make_input, tmp_path):
        complete = FakeComplete(self.REPLY)
        step = AnalysisStep("analysis/overview", "00-foundation/overview.md", complete, (DiagramType.FLOWCHART,))
        result = step.process(make_input(plugin_version="2.1.0"))

        assert result.success
        assert (tmp_path / "specs" / "00-foundation" / "overview.md").read_text() == self.REPLY
        assert result.data["path"] == "specs/00-foundation/overview.md"
        assert result.data["diagrams"] == ["flowchart LR\n  a-->b"]
        assert result.data["prompt_version"] == prompt_version("analysis/overview", "2.1.0")

    def test_prompt_carries_task_context_and_hint(self, make_input):
        complete = FakeComplete(self.REPLY)
        AnalysisStep("analysis/overview", "", complete, (DiagramType.FLOWCHART,)).process(make_input())
        _, user = complete.calls[0]
        assert user.startswith("# Task: System Overview")
        assert "flowchart" in user
        assert "## bootstrap\nok" in user
        assert "already exist" not in user

    def test_audit_mode_adds_note(self, make_input):
        complete = FakeComplete(self.REPLY)
        AnalysisStep("analysis/overview", "", complete).process(make_input(mode=RunMode.AUDIT))
        assert "already exist" in complete.calls[0][1]

    def test_no_output_file_skips_write(self, make_input, tmp_path):
        result = AnalysisStep("analysis/overview", "", FakeComplete(self.REPLY)).process(make_input())
        assert "path" not in result.data
        assert not (tmp_path / "specs").exists()

    def test_empty_reply_is_failure(self, make_input):
        result = AnalysisStep("analysis/overview", "x.md", FakeComplete("  \n")).process(make_input())
        assert not result.success
        assert "Empty response" in result.message

    def test_unknown_prompt(self):
        with pytest.raises(KeyError):
            AnalysisStep("nope/nope", "x.md", stub_complete)


class TestFinalizers:
    def test_structure_builder_creates_sections(self, make_input, tmp_path):
        result = StructureBuilderStep().process(make_input("structure_builder"))
        assert result.success
        for section in SPEC_SECTIONS:
            assert (tmp_path / "specs" / section).is_dir()

    def test_write_specs_manifest(self, make_input, tmp_path):
        (tmp_path / "specs" / "03-api").mkdir(parents=True)
        (tmp_path / "specs" / "03-api" / "rest.md").write_text("x")
        (tmp_path / "specs" / "index.md").write_text("x")

        result = WriteSpecsStep().process(make_input("write_specs", plugin_version="2.1.0"))

        manifest = json.loads((tmp_path / "specs" / MANIFEST_FILE).read_text())
        assert manifest["files"] == ["03-api/rest.md", "index.md"]
        assert manifest["plugin_version"] == "2.1.0"
        assert manifest["mode"] == "generation"
        assert result.data["path"] == "specs/.meta/manifest.json"

    def test_write_specs_without_folder_fails(self, make_input):
        assert not WriteSpecsStep().process(make_input("write_specs")).success


class TestBuildDefaultRegistry:
    def test_static_generation_dag(self):
        registry = build_default_registry(GENERATION_DAG, stub_complete)
        assert registry.frozen
        assert set(registry) == {n.agent_id for n in GENERATION_DAG.nodes}
        assert isinstance(registry["submodule_check"], BootstrapStep)
        assert isinstance(registry["write_specs"], WriteSpecsStep)
        assert registry["api"].output_file == "03-api/rest.md"

    def test_unknown_id_left_unregistered(self):
        definition = DAGDefinition("t", (DAGNode("bootstrap"), DAGNode("custom", ("bootstrap",))))
        registry = build_default_registry(definition, stub_complete)
        assert "custom" not in registry


class TestLLMClient:
    def _response(self, content):
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    def test_complete_passes_settings(self):
        client = LLMClient("openai/test", api_key="k", api_base="http://llm", timeout=5, max_tokens=100)
        with patch("litellm.completion", return_value=self._response("hello")) as completion:
            assert client.complete("sys", "user") == "hello"
        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "openai/test"
        assert kwargs["api_key"] == "k" and kwargs["api_base"] == "http://llm"
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}

    def test_none_content_becomes_empty(self):
        with patch("litellm.completion", return_value=self._response(None)):
            assert LLMClient("openai/test").complete("s", "u") == ""

    def test_open_circuit_fails_fast(self):
        breaker = get_breaker("openai/down")
        for _ in range(3):
            breaker.record_failure()
        with patch("litellm.completion") as completion:
            with pytest.raises(CircuitBreakerOpen):
                LLMClient("openai/down").complete("s", "u")
        completion.assert_not_called()

    def test_from_settings(self):
        settings = SimpleNamespace(
            llm_model="m", llm_api_key="", llm_api_base="", llm_timeout_seconds=7, llm_max_tokens=9,
        )
        client = LLMClient.from_settings(settings)
        assert (client.model, client.timeout, client.max_tokens) == ("m", 7, 9)
