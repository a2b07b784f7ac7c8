from __future__ import annotations

import json

import pytest

from inventory_engine.main import EXIT_ERROR, EXIT_OK, build_parser, main


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("UPSTREAM_ACCOUNT_PATH", "acme-warehouse")
    monkeypatch.setenv("UPSTREAM_API_KEY", "key-1234567890")
    monkeypatch.setenv("UPSTREAM_API_SECRET", "secret-0987654321")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    env_file = tmp_path / ".env"
    env_file.write_text("", encoding="utf-8")
    return ["--env-file", str(env_file)]


def test_parser_sync_options():
    args = build_parser().parse_args(
        [
            "sync",
            "--type",
            "full",
            "--mode",
            "smart",
            "--since",
            "2025-03-01T00:00:00Z",
            "--sku",
            "SKU-1",
            "--sku",
            "SKU-2",
            "--dry-run",
        ]
    )

    assert args.sync_type == "full"
    assert args.mode == "smart"
    assert args.since.isoformat() == "2025-03-01T00:00:00+00:00"
    assert args.skus == ["SKU-1", "SKU-2"]
    assert args.dry_run is True


def test_parser_rejects_bad_timestamp():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["sync", "--since", "yesterday"])


def test_init_db_then_status(cli_env, capsys):
    assert main([*cli_env, "init-db"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out) == {"status": "ok"}

    assert main([*cli_env, "status", "--type", "vendors"]) == EXIT_OK
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"sync_type": "vendors", "running": None, "latest": None, "recent": []}


def test_watchdog_once_on_empty_database(cli_env, capsys):
    main([*cli_env, "init-db"])
    capsys.readouterr()

    assert main([*cli_env, "watchdog", "--once"]) == EXIT_OK
    assert json.loads(capsys.readouterr().out) == {"reaped": []}


def test_missing_credentials_exit_with_error(tmp_path, monkeypatch, capsys):
    for name in ("UPSTREAM_ACCOUNT_PATH", "UPSTREAM_API_KEY", "UPSTREAM_API_SECRET"):
        monkeypatch.delenv(name, raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("", encoding="utf-8")

    assert main(["--env-file", str(env_file), "init-db"]) == EXIT_ERROR
    assert "Configuration error" in capsys.readouterr().err
