"""End-to-end runs over a small fixture repository with an offline model."""

import json

import pytest

from speczero.config import load_settings
from speczero.exceptions import DAGValidationError
from speczero.logging_config import run_id_var
from speczero.models import RunMode, StepStatus, ValidationResult
from speczero.pipeline import plan_repository, run_analysis
from speczero.prompts import CONTEXT_SNAPSHOT_FILE, MANIFEST_FILE
from speczero.steps import stub_complete


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "shop-api"
    (root / "src" / "routes").mkdir(parents=True)
    (root / "package.json").write_text(json.dumps({"dependencies": {"express": "^4"}}))
    (root / "package-lock.json").write_text("{}")
    (root / "README.md").write_text("# Shop API")
    (root / "src" / "routes" / "orders.ts").write_text("router.post('/orders', create)")
    return root


@pytest.fixture
def settings():
    return load_settings(env_file=None)


class RecordingComplete:
    """Offline model that also records the prompts and run ids it saw."""

    def __init__(self):
        self.prompts = []
        self.run_ids = set()

    def __call__(self, system, user):
        self.prompts.append(user)
        self.run_ids.add(run_id_var.get())
        return stub_complete(system, user)


def test_plan_repository(repo, settings):
    dag = plan_repository(repo, settings)
    ids = dag.agent_ids()
    assert {"bootstrap", "backend-modules", "api-rest", "summary", "write_specs"} <= set(ids)
    assert "frontend-modules" not in ids
    assert dag.get("api-rest").prompt_id == "api/detect-endpoints-express"


class TestRunAnalysis:
    def test_first_run_generates_specs(self, repo, settings):
        complete = RecordingComplete()
        progress = []
        summary = run_analysis(
            repo, settings, complete=complete,
            on_progress=lambda agent_id, status, message: progress.append((agent_id, status)),
        )

        assert summary.failed == 0, summary.to_dict()
        assert summary.mode is RunMode.GENERATION
        specs = repo / "specs"
        assert (specs / "00-foundation" / "overview.md").is_file()
        assert (specs / "03-api" / "rest.md").is_file()
        assert (specs / "index.md").is_file()

        manifest = json.loads((specs / MANIFEST_FILE).read_text())
        assert manifest["project_slug"] == "shop-api"
        assert "03-api/rest.md" in manifest["files"]

        snapshot = json.loads((specs / CONTEXT_SNAPSHOT_FILE).read_text())
        assert "README.md" in snapshot["metadata"]["key_files_loaded"]
        assert "api-rest" in snapshot["agent_outputs"]

        assert ("api-rest", StepStatus.SUCCESS) in progress
        assert len(complete.run_ids) == 1 and "" not in complete.run_ids
        assert run_id_var.get() == ""

    def test_second_run_switches_to_audit(self, repo, settings):
        run_analysis(repo, settings, complete=stub_complete)
        complete = RecordingComplete()
        summary = run_analysis(repo, settings, complete=complete, project_slug="shop")

        assert summary.mode is RunMode.AUDIT
        assert complete.prompts
        assert all("already exist" in prompt for prompt in complete.prompts)
        manifest = json.loads((repo / "specs" / MANIFEST_FILE).read_text())
        assert manifest["mode"] == "audit"
        assert manifest["project_slug"] == "shop"

    def test_failed_model_call_is_reported_not_raised(self, repo, settings):
        def broken(system, user):
            raise RuntimeError("endpoint down")

        summary = run_analysis(repo, settings, complete=broken)
        assert summary.failed >= 1
        failures = {r.agent_id: r.error for r in summary.results if not r.success and not r.skipped}
        assert failures["overview"] == "endpoint down"
        # mandatory dependents still run; optional ones are skipped
        assert failures["architecture"] == "endpoint down"
        skipped = {r.agent_id for r in summary.results if r.skipped}
        assert {"services", "security"} <= skipped
        assert "architecture" not in skipped

    def test_invalid_plan_aborts(self, repo, settings, monkeypatch):
        monkeypatch.setattr(
            "speczero.pipeline.DAGPlanner.validate_dag",
            lambda self, dag: ValidationResult.from_errors(["Agent x depends on non-existent agent y"]),
        )
        with pytest.raises(DAGValidationError) as exc_info:
            run_analysis(repo, settings, complete=stub_complete)
        assert exc_info.value.errors == ["Agent x depends on non-existent agent y"]
        assert not (repo / "specs").exists()
