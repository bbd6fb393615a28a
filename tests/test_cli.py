from __future__ import annotations

import json
from typing import Any

from typer.testing import CliRunner

from offline_capture.cli import app

runner = CliRunner()


def test_serve_uses_settings(isolated_env, monkeypatch):
    call_args: dict[str, Any] = {}

    def fake_uvicorn_run(app, host, port, log_level="info"):
        call_args.update(app=app, host=host, port=port, log_level=log_level)

    monkeypatch.setattr("uvicorn.run", fake_uvicorn_run)
    result = runner.invoke(app, ["serve", "--port", "9001"])

    assert result.exit_code == 0, result.output
    assert call_args["host"] == "127.0.0.1"
    assert call_args["port"] == 9001


def test_init_db_then_status(isolated_env):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.output
    assert "schema v4" in result.output

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 0, status.output
    assert "0 pending" in status.output


def test_report_commands_round_trip(isolated_env):
    added = runner.invoke(app, ["reports", "add", json.dumps({"incident": "fall"})])
    assert added.exit_code == 0, added.output
    assert "#1" in added.output

    pending = runner.invoke(app, ["reports", "list", "--pending"])
    assert "fall" in pending.output

    assert runner.invoke(app, ["reports", "mark-synced", "1"]).exit_code == 0
    assert "No reports" in runner.invoke(app, ["reports", "list", "--pending"]).output

    purged = runner.invoke(app, ["reports", "purge"])
    assert "Purged 1" in purged.output


def test_missing_report_exits_non_zero(isolated_env):
    result = runner.invoke(app, ["reports", "delete", "42"])

    assert result.exit_code == 1
    assert "record_not_found" in result.output


def test_invalid_payload_is_rejected(isolated_env):
    result = runner.invoke(app, ["reports", "add", "[1, 2]"])

    assert result.exit_code == 2


def test_students_load_replaces_snapshot(isolated_env):
    first = isolated_env / "students.json"
    first.write_text(json.dumps([{"student_name": "A"}, {"student_name": "B"}]), encoding="utf-8")
    second = isolated_env / "students2.json"
    second.write_text(json.dumps([{"student_name": "C", "grade": 5}]), encoding="utf-8")

    assert runner.invoke(app, ["students", "load", str(first)]).exit_code == 0
    loaded = runner.invoke(app, ["students", "load", str(second)])
    assert "Cached 1 students" in loaded.output

    listed = runner.invoke(app, ["students", "list"])
    assert "C" in listed.output
    assert "grade" in listed.output
    assert "No cached teachers" in runner.invoke(app, ["teachers", "list"]).output


def test_students_load_rejects_entries_without_name(isolated_env):
    bad = isolated_env / "bad.json"
    bad.write_text(json.dumps([{"grade": 1}]), encoding="utf-8")

    result = runner.invoke(app, ["students", "load", str(bad)])

    assert result.exit_code == 2


def test_destroy_db_requires_confirmation(isolated_env):
    runner.invoke(app, ["init-db"])
    db_file = isolated_env / "capture.sqlite3"
    assert db_file.exists()

    declined = runner.invoke(app, ["destroy-db"], input="n\n")
    assert declined.exit_code == 1
    assert db_file.exists()

    confirmed = runner.invoke(app, ["destroy-db", "--yes"])
    assert confirmed.exit_code == 0, confirmed.output
    assert not db_file.exists()


def test_assets_list_and_activate_without_install(isolated_env, write_manifest):
    write_manifest("v2", [])
    caches = isolated_env / "caches"
    (caches / "offline-cache-v1").mkdir(parents=True)

    listed = runner.invoke(app, ["assets", "list"])
    assert "offline-cache-v1" in listed.output

    result = runner.invoke(app, ["assets", "activate"])
    assert result.exit_code == 1
    assert (caches / "offline-cache-v1").exists()


def test_assets_install_with_empty_manifest(isolated_env, write_manifest):
    write_manifest("v3", [])
    (isolated_env / "caches" / "offline-cache-v1").mkdir(parents=True)

    result = runner.invoke(app, ["assets", "install"])

    assert result.exit_code == 0, result.output
    assert "offline-cache-v3" in result.output
    assert not (isolated_env / "caches" / "offline-cache-v1").exists()
