# CUI // SP-CTI
"""Tests for the falcon-engine command-line interface."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import json

import pytest

from falcon_engine.cli.falcon_cli import build_parser, main


def _run(capsys, db, *argv):
    code = main(["--db", str(db), "--json", *argv])
    out = capsys.readouterr().out
    return code, json.loads(out) if out.strip() else None


@pytest.fixture
def cli_db(tmp_path, capsys):
    db = tmp_path / "cli.db"
    code, payload = _run(capsys, db, "init-db")
    assert code == 0
    assert "pattern_definitions" in payload["tables"]
    return db


@pytest.fixture
def cli_scope(cli_db, capsys):
    _, created = _run(capsys, cli_db, "workspace-create", "--name", "Acme Platform")
    workspace_id = created["workspace"]["id"]
    _, project = _run(capsys, cli_db, "project-create", "--workspace", workspace_id,
                      "--name", "api", "--repo-url", "git@github.com:acme/api.git")
    return cli_db, workspace_id, project["id"]


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_select_target_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["select", "--workspace", "w", "--project", "p",
                                       "--issue", "CON-1", "--target", "both"])


class TestCommands:
    def test_workspace_create_seeds_baselines(self, cli_db, capsys):
        code, payload = _run(capsys, cli_db, "workspace-create", "--name", "Acme Platform")
        assert code == 0
        assert payload["workspace"]["slug"] == "acme-platform"
        assert payload["baselines_seeded"] == 11

        code, payload = _run(capsys, cli_db, "seed-baselines",
                             "--workspace", payload["workspace"]["id"])
        assert payload == {"added": 0, "seeded": 11, "expected": 11}

    def test_duplicate_workspace_is_an_error(self, cli_db, capsys):
        _run(capsys, cli_db, "workspace-create", "--name", "Acme", "--no-baselines")
        code, payload = _run(capsys, cli_db, "workspace-create", "--name", "Acme")
        assert code == 1
        assert "already exists" in payload["error"]

    def test_kill_switch_controls(self, cli_scope, capsys):
        db, ws, pj = cli_scope
        code, payload = _run(capsys, db, "kill-switch", "status", "--workspace", ws,
                             "--project", pj)
        assert code == 0
        assert payload["status"]["state"] == "active"
        assert payload["metrics"]["total_attributions"] == 0

        _, paused = _run(capsys, db, "kill-switch", "pause-inferred", "--workspace", ws,
                         "--project", pj, "--reason", "noisy inferences")
        assert paused["state"] == "inferred_paused"
        assert paused["reason"] == "noisy inferences"

        _, resumed = _run(capsys, db, "kill-switch", "resume", "--workspace", ws,
                          "--project", pj)
        assert resumed["state"] == "active"

    def test_kill_switch_unknown_project(self, cli_scope, capsys):
        db, ws, _ = cli_scope
        code, payload = _run(capsys, db, "kill-switch", "status", "--workspace", ws,
                             "--project", "missing")
        assert code == 1
        assert "not found" in payload["error"]

    def test_select_prints_markdown(self, cli_scope, capsys):
        db, ws, pj = cli_scope
        code, payload = _run(capsys, db, "select", "--workspace", ws, "--project", pj,
                             "--issue", "CON-12", "--target", "context-pack",
                             "--title", "Add login endpoint",
                             "--description", "Validate the session token")
        assert code == 0
        assert payload["target"] == "context-pack"
        assert payload["injection_log_id"]
        assert payload["summary"].startswith("Injected: ")
        assert [w["kind"] for w in payload["warnings"]] == ["principle"] * len(payload["warnings"])

    def test_maintenance_and_promotions(self, cli_scope, capsys):
        db, ws, pj = cli_scope
        code, payload = _run(capsys, db, "maintenance", "--workspace", ws)
        assert code == 0
        assert payload[pj]["decay"]["archived_patterns"] == 0

        code, payload = _run(capsys, db, "promote-check", "--workspace", ws)
        assert code == 0
        assert payload == []

    def test_rollback_unknown_key(self, cli_scope, capsys):
        db, ws, _ = cli_scope
        code, payload = _run(capsys, db, "rollback-principle", "--workspace", ws,
                             "--key", "k" * 64)
        assert code == 1
        assert "No active principle" in payload["error"]

    def test_delete_project_requires_confirmation(self, cli_scope, capsys):
        db, ws, pj = cli_scope
        code, payload = _run(capsys, db, "delete-project", "--workspace", ws, "--project", pj)
        assert code == 1
        code, payload = _run(capsys, db, "delete-project", "--workspace", ws, "--project", pj,
                             "--yes")
        assert code == 0
        assert payload["projects"] == 1

    def test_metrics_snapshot(self, cli_scope, capsys):
        db, ws, pj = cli_scope
        code, payload = _run(capsys, db, "metrics", "--workspace", ws, "--project", pj)
        assert code == 0
        assert payload["patterns"]["total"] == 0
        assert payload["principles"]["baseline"] == 11
        assert payload["health"]["kill_switch_state"] == "active"

    def test_metrics_text_and_trailing_json_flag(self, cli_scope, capsys):
        db, ws, pj = cli_scope
        assert main(["--db", str(db), "metrics", "--workspace", ws, "--project", pj]) == 0
        out = capsys.readouterr().out
        assert out.startswith("Patterns: 0")
        assert "Kill switch: active" in out

        assert main(["--db", str(db), "metrics", "--workspace", ws, "--project", pj,
                     "--json"]) == 0
        assert json.loads(capsys.readouterr().out)["project_id"] == pj

    def test_missing_database(self, tmp_path, capsys):
        code, payload = _run(capsys, tmp_path / "absent.db", "workspace-create", "--name", "x")
        assert code == 1
        assert "Database not found" in payload["error"]
