"""Tests for the axiomflow command line."""

import json
import logging
from pathlib import Path

import pytest

from axiomflow.cli import main

TEMPLATES = Path(__file__).parents[2] / "examples" / "templates"

APPROVAL_WORKFLOW = {
    "id": "approval",
    "name": "Approval",
    "nodes": [
        {"id": "trigger", "type": "trigger"},
        {
            "id": "ask",
            "type": "humanInput",
            "data": {"prompt": "Ship {{release}}?", "options": ["approve", "reject"]},
        },
        {
            "id": "done",
            "type": "output",
            "data": {"outputs": {"release": "{{release}}", "decision": "{{ask.decision}}"}},
        },
    ],
    "edges": [{"source": "trigger", "target": "ask"}, {"source": "ask", "target": "done"}],
}


@pytest.fixture(autouse=True)
def _keep_root_logger():
    # main() installs its own root handler
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def approval_file(tmp_path) -> Path:
    path = tmp_path / "approval.json"
    path.write_text(json.dumps(APPROVAL_WORKFLOW), encoding="utf-8")
    return path


def _stdout_json(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


class TestValidate:
    @pytest.mark.parametrize("template", ["lead_generation", "content_pipeline", "support_ticket"])
    def test_bundled_templates_are_valid(self, capsys, template):
        assert main(["validate", str(TEMPLATES / template / "workflow.json")]) == 0
        assert capsys.readouterr().out.startswith("✓ ")

    def test_invalid_definition_as_json(self, tmp_path, capsys):
        broken = dict(APPROVAL_WORKFLOW, edges=[{"source": "trigger", "target": "ghost"}])
        path = tmp_path / "broken.json"
        path.write_text(json.dumps(broken), encoding="utf-8")

        assert main(["validate", str(path), "--json"]) == 1
        report = _stdout_json(capsys)
        assert report["valid"] is False
        kinds = {e["kind"] for e in report["errors"]}
        assert {"DanglingEdge", "UnreachableNode"} <= kinds


class TestRunResumeShow:
    def test_run_completes(self, tmp_path, capsys):
        path = tmp_path / "greet.json"
        path.write_text(
            json.dumps(
                {
                    "id": "greet",
                    "nodes": [
                        {"id": "trigger", "type": "trigger"},
                        {
                            "id": "done",
                            "type": "output",
                            "data": {"outputs": {"greeting": "Hi {{name}}"}},
                        },
                    ],
                    "edges": [{"source": "trigger", "target": "done"}],
                }
            ),
            encoding="utf-8",
        )

        code = main(
            ["run", str(path), "--input", '{"name": "Ada"}', "--store", str(tmp_path), "--mock"]
        )

        summary = _stdout_json(capsys)
        assert code == 0
        assert summary["status"] == "completed"
        assert summary["final_output"] == {"greeting": "Hi Ada"}
        assert summary["path"] == ["trigger", "done"]

    def test_suspend_resume_and_show(self, approval_file, tmp_path, capsys):
        store = str(tmp_path / "store")

        assert main(
            ["run", str(approval_file), "--input", '{"release": "v2"}', "--store", store, "--mock"]
        ) == 0
        suspended = _stdout_json(capsys)
        assert suspended["status"] == "suspended"
        assert suspended["pending_input"]["prompt"] == "Ship v2?"
        token = suspended["pending_input"]["resume_token"]

        decision = '{"decision": "approve", "responder": "ops"}'
        resume_args = ["resume", token, "--decision", decision, "--workflow", str(approval_file)]
        assert main([*resume_args, "--store", store, "--mock"]) == 0
        resumed = _stdout_json(capsys)
        assert resumed["status"] == "completed"
        assert resumed["final_output"] == {"release": "v2", "decision": "approve"}

        # Tokens are single-use
        assert main([*resume_args, "--store", store, "--mock"]) == 2
        assert "AlreadyResumed" in capsys.readouterr().err

        assert main(["show", suspended["execution_id"], "--store", store]) == 0
        assert _stdout_json(capsys)["status"] == "completed"

        assert main(["show", suspended["execution_id"], "--store", store, "--full"]) == 0
        full = _stdout_json(capsys)
        assert full["variables"]["ask"]["responder"] == "ops"
        assert full["resumed_tokens"] == [token]

    def test_invalid_input_fails(self, approval_file, tmp_path, capsys):
        with pytest.raises(SystemExit):
            main(["run", str(approval_file), "--input", "{nope", "--store", str(tmp_path)])

    def test_show_unknown_execution(self, tmp_path, capsys):
        assert main(["show", "exec_missing", "--store", str(tmp_path)]) == 1
        assert "not found" in capsys.readouterr().err
