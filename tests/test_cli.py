"""Tests for the Cronkit CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import types

import pytest

from cronkit import cli
from cronkit.backends.memory import MemoryBackend
from cronkit.contracts import JobType
from cronkit.worker import Handler


class _FakeAsyncEngine:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True


class _CliBackend(MemoryBackend):
    """Memory backend standing in for ``SQLBackend`` inside the CLI."""

    instances: list["_CliBackend"] = []

    def __init__(self, engine, *, prefer_pg_skip_locked: bool) -> None:
        super().__init__()
        self.engine = engine
        self.prefer_pg_skip_locked = prefer_pg_skip_locked
        _CliBackend.instances.append(self)


class _NewsHandler(Handler):
    job_type = JobType.NEWS_SUMMARY

    async def run(self, item) -> None:
        return None


def _install_fakes(monkeypatch) -> dict:
    created: dict = {}

    def fake_create_engine(dsn: str):
        created["engine"] = _FakeAsyncEngine(dsn)
        return created["engine"]

    _CliBackend.instances = []
    monkeypatch.setattr(cli, "create_async_engine", fake_create_engine)
    monkeypatch.setattr(cli, "SQLBackend", _CliBackend)
    return created


def _run_args(argv: list[str]) -> argparse.Namespace:
    return cli.build_parser().parse_args(argv)


def test_main_invokes_async_entrypoint(monkeypatch) -> None:
    ran: list[argparse.Namespace] = []

    async def fake_run(args: argparse.Namespace) -> None:
        ran.append(args)

    monkeypatch.setattr(cli, "_run_command", fake_run)
    cli.main(["--dsn", "sqlite+aiosqlite://", "stats"])
    assert ran and ran[0].dsn == "sqlite+aiosqlite://"
    assert ran[0].command is cli._stats


def test_dsn_defaults_to_environment(monkeypatch) -> None:
    monkeypatch.setenv(cli.DSN_ENV_VAR, "postgresql+asyncpg://db/app")
    args = _run_args(["stats"])
    assert args.dsn == "postgresql+asyncpg://db/app"


def test_missing_dsn_exits_with_error(monkeypatch, capsys) -> None:
    monkeypatch.delenv(cli.DSN_ENV_VAR, raising=False)
    with pytest.raises(SystemExit) as exc:
        cli.main(["stats"])
    assert exc.value.code == 1
    assert "--dsn is required" in capsys.readouterr().err


def test_enqueue_and_stats_commands(monkeypatch, capsys) -> None:
    created = _install_fakes(monkeypatch)

    async def _run() -> None:
        args = _run_args(["--dsn", "sqlite://", "enqueue", "PATCH_SUMMARY", "g1", "g2", "g1"])
        await cli._run_command(args)
        out = json.loads(capsys.readouterr().out)
        assert sorted(out) == ["g1", "g2"]
        assert out["g1"]["created"] is True and out["g1"]["error"] is None

        backend = _CliBackend.instances[0]
        await cli._stats(backend, _run_args(["--dsn", "sqlite://", "stats"]))
        assert json.loads(capsys.readouterr().out)["pending"] == 2

    asyncio.run(_run())
    assert created["engine"].disposed is True


def test_process_command_runs_locked_batch(monkeypatch, capsys) -> None:
    _install_fakes(monkeypatch)
    module = types.ModuleType("cronkit_test_handlers")
    module.make = _NewsHandler  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "cronkit_test_handlers", module)

    async def _run() -> None:
        backend = MemoryBackend()
        await cli.WorkQueue(backend).enqueue("NEWS_SUMMARY", "n1")
        args = _run_args(
            ["--dsn", "sqlite://", "process", "--batch", "3", "--handler", "cronkit_test_handlers:make"]
        )
        await cli._process(backend, args)
        out = json.loads(capsys.readouterr().out)
        assert out == {"ok": True, "skipped": False, "claimed": 1, "processed": 1, "failed": 0}

        await cli.CronLock(backend).acquire("process-ai-jobs")
        await cli._process(backend, args)
        assert json.loads(capsys.readouterr().out) == {"ok": True, "skipped": True}

        args = _run_args(["--dsn", "sqlite://", "process", "--no-lock"])
        await cli._process(backend, args)
        assert json.loads(capsys.readouterr().out)["claimed"] == 0

    asyncio.run(_run())


def test_show_lease_and_release_commands(capsys) -> None:
    async def _run() -> None:
        backend = MemoryBackend()
        await cli.CronLock(backend).acquire("sync-libraries")

        await cli._show_lease(backend, _run_args(["--dsn", "x", "show-lease", "sync-libraries"]))
        out = json.loads(capsys.readouterr().out)
        assert "released" not in out
        assert out["lease"]["job_name"] == "sync-libraries"
        assert await backend.get_lease("sync-libraries") is not None

        await cli._release(backend, _run_args(["--dsn", "x", "release", "sync-libraries"]))
        assert json.loads(capsys.readouterr().out)["released"] is True
        assert await backend.get_lease("sync-libraries") is None

        await cli._release(backend, _run_args(["--dsn", "x", "release", "sync-libraries"]))
        assert json.loads(capsys.readouterr().out)["released"] is False

        await cli._show_lease(backend, _run_args(["--dsn", "x", "show-lease", "sync-libraries"]))
        assert json.loads(capsys.readouterr().out)["lease"] is None

    asyncio.run(_run())


def test_release_no_longer_accepts_force_flag() -> None:
    with pytest.raises(SystemExit):
        _run_args(["--dsn", "x", "release", "sync-libraries", "--force"])


def test_load_handler_errors() -> None:
    with pytest.raises(cli.CLIError):
        cli._load_handler("no_colon")
    with pytest.raises(cli.CLIError):
        cli._load_handler("cronkit_missing_module_xyz:make")
    with pytest.raises(cli.CLIError):
        cli._load_handler("cronkit.cli:missing_attr")


def test_invalid_job_type_rejected_by_parser(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        _run_args(["--dsn", "x", "enqueue", "BOGUS", "e1"])
    assert exc.value.code == 2
