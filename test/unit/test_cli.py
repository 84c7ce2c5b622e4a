"""Unit tests for the command line entry point."""

import json

import pytest

import cli
from config import Settings


def test_parser_requires_a_command():
    """Ensure running without a subcommand is an error."""
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_parser_parses_worker_options():
    """Ensure worker flags are parsed."""
    args = cli.build_parser().parse_args(["worker", "--once", "--max-jobs", "3"])

    assert args.once is True
    assert args.max_jobs == 3
    assert args.handler is cli._cmd_worker


def test_migrate_then_sweep(monkeypatch, tmp_path, capsys):
    """Ensure the CLI creates the schema and runs an empty sweep."""
    settings = Settings(database={"url": f"sqlite:///{tmp_path / 'cli.db'}"}, log_json=False)
    monkeypatch.setattr(cli, "load_settings", lambda: settings)
    monkeypatch.setattr(cli, "configure_logging", lambda **_kwargs: None)

    assert cli.main(["migrate", "--create-all"]) == 0
    assert cli.main(["sweep", "--force"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["total_checked"] == 0
    assert report["errors"] == []
