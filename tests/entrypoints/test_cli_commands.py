from __future__ import annotations

import json

import pytest

from offline_sync.entrypoints.cli import EXIT_FAILED, EXIT_OK, main

pytestmark = pytest.mark.usefixtures("restore_logging")


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("POS_SYNC_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "appdata"))
    monkeypatch.delenv("POS_SYNC_REMOTE_URL", raising=False)
    monkeypatch.delenv("POS_SYNC_API_TOKEN", raising=False)


def _run(capsys, *argv: str) -> tuple[int, dict]:
    code = main(list(argv))
    output = capsys.readouterr().out.strip().splitlines()
    return code, json.loads(output[-1])


def test_status_reports_empty_queue(tmp_path, capsys) -> None:
    code, payload = _run(capsys, "--db", str(tmp_path / "pos.db"), "status")

    assert code == EXIT_OK
    assert payload["success"] is True
    assert payload["remote_configured"] is False
    assert payload["queue"] == {"pending": 0, "failed": 0, "conflict": 0}
    assert payload["device_id"]


def test_sync_without_remote_fails_cleanly(tmp_path, capsys) -> None:
    code, payload = _run(capsys, "--db", str(tmp_path / "pos.db"), "sync")

    assert code == EXIT_FAILED
    assert payload["error"] == "Remote not configured"
    assert payload["status"]["phase"] == "idle"


def test_migrate_status_and_up(tmp_path, capsys) -> None:
    db_path = str(tmp_path / "pos.db")

    code, status = _run(capsys, "--db", db_path, "migrate", "status")
    assert code == EXIT_OK
    assert [item["applied"] for item in status["migrations"]] == [False, False, False, False, False]

    code, applied = _run(capsys, "--db", db_path, "migrate", "up")
    assert applied["applied"] == [1, 2, 3, 4, 5]

    code, reverted = _run(capsys, "--db", db_path, "migrate", "down", "--steps", "2")
    assert reverted["reverted"] == [5, 4]


def test_resolve_unknown_conflict_exits_with_failure(tmp_path, capsys) -> None:
    code, payload = _run(capsys, "--db", str(tmp_path / "pos.db"), "resolve", "--keep", "local", "--id", "missing")

    assert code == EXIT_FAILED
    assert payload == {"success": False, "error": "Conflict missing not found"}


def test_conflicts_and_log_are_empty_on_fresh_device(tmp_path, capsys) -> None:
    db_path = str(tmp_path / "pos.db")

    _, conflicts = _run(capsys, "--db", db_path, "conflicts")
    _, log = _run(capsys, "--db", db_path, "log", "--limit", "5")

    assert conflicts == {"success": True, "count": 0, "conflicts": []}
    assert log == {"success": True, "count": 0, "entries": []}


def test_cli_writes_main_log(tmp_path, capsys) -> None:
    _run(capsys, "--db", str(tmp_path / "pos.db"), "status")

    assert (tmp_path / "logs" / "sync.log").exists()
