"""Tests for the speczero command-line entry point."""

import json
import logging

import pytest

from speczero.cli import build_parser, main


@pytest.fixture(autouse=True)
def _restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "tool"
    root.mkdir()
    (root / "package.json").write_text(json.dumps({"bin": {"tool": "cli.js"}}))
    (root / "cli.js").write_text("console.log('hi')")
    return root


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_plan_json(repo, capsys):
    assert main(["--env-file", "", "plan", str(repo), "--json"]) == 0
    plan = json.loads(capsys.readouterr().out)
    assert plan["repo_type"] == "cli"
    assert plan["agents"][0]["id"] == "bootstrap"


def test_plan_text(repo, capsys):
    assert main(["--env-file", "", "plan", str(repo)]) == 0
    out = capsys.readouterr().out
    assert "Repository type: cli" in out
    assert "Layer 0: bootstrap" in out


def test_dry_run(repo, capsys):
    assert main(["--env-file", "", "run", str(repo), "--dry-run", "--slug", "tool"]) == 0
    captured = capsys.readouterr()
    summary = json.loads(captured.out)
    assert summary["failed"] == 0
    assert summary["mode"] == "generation"
    assert "[success] bootstrap" in captured.err
    assert (repo / "specs" / ".meta" / "manifest.json").is_file()


def test_not_a_directory(tmp_path, capsys):
    assert main(["--env-file", "", "plan", str(tmp_path / "missing")]) == 2
    assert "not a directory" in capsys.readouterr().err


def test_invalid_settings(repo, monkeypatch, capsys):
    monkeypatch.setenv("SPECZERO_LOG_LEVEL", "LOUD")
    assert main(["--env-file", "", "plan", str(repo)]) == 2
    assert "Invalid configuration" in capsys.readouterr().err
