"""Entry-point for the ``cronkit`` console script."""

from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import importlib
import json
import logging
import os
import sys
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from .backends.sql import SQLBackend, metadata
from .contracts import JobType
from .lock import CronLock
from .queue import WorkQueue
from .worker import DEFAULT_LOCK_NAME, BatchWorker

DSN_ENV_VAR = "CRONKIT_DSN"


class CLIError(RuntimeError):
    """Raised when the CLI fails to start or complete a command."""


def _positive_int(name: str) -> Callable[[str], int]:
    def _validate(value: str) -> int:
        try:
            converted = int(value)
        except ValueError as exc:  # pragma: no cover - argparse already reports
            raise argparse.ArgumentTypeError(f"{name} must be an integer") from exc
        if converted <= 0:
            raise argparse.ArgumentTypeError(f"{name} must be greater than 0")
        return converted

    return _validate


def _configure_logging(level_name: str) -> None:
    numeric = logging.getLevelName(level_name.upper())
    if not isinstance(numeric, int):  # pragma: no cover - guarded by argparse choices
        raise CLIError(f"Unknown log level: {level_name}")
    logging.basicConfig(level=numeric, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _load_handler(dotted_path: str):
    module_name, sep, attr = dotted_path.rpartition(":")
    if not module_name or not sep:
        raise CLIError("Handler path must be in 'module:attr' format")
    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise CLIError(f"Cannot import handler module '{module_name}': {exc}") from exc
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise CLIError(f"Module '{module_name}' has no attribute '{attr}'") from exc
    try:
        return factory()
    except Exception as exc:  # pragma: no cover - defensive
        raise CLIError(f"Handler factory '{dotted_path}' raised: {exc}") from exc


def _emit(payload: Any) -> None:
    print(json.dumps(payload, default=str, sort_keys=True))


async def _init_db(backend: SQLBackend, args: argparse.Namespace) -> None:
    async with backend.engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    _emit({"ok": True})


async def _enqueue(backend: SQLBackend, args: argparse.Namespace) -> None:
    results = await WorkQueue(backend).enqueue_many(args.job_type, args.entity_ids)
    failed = [entity_id for entity_id, result in results.items() if not result.ok]
    _emit(
        {
            entity_id: {"id": result.id, "created": result.created, "error": result.error}
            for entity_id, result in results.items()
        }
    )
    if failed:
        raise CLIError(f"failed to enqueue {len(failed)} item(s)")


async def _stats(backend: SQLBackend, args: argparse.Namespace) -> None:
    _emit(await WorkQueue(backend).stats())


async def _process(backend: SQLBackend, args: argparse.Namespace) -> None:
    handlers = [_load_handler(path) for path in args.handler or []]
    lock = None if args.no_lock else CronLock(backend, default_ttl=timedelta(minutes=args.lease_minutes))
    try:
        worker = BatchWorker(
            WorkQueue(backend),
            handlers,
            batch_size=args.batch,
            max_concurrency=args.concurrency,
            lock=lock,
            lock_name=args.lock_name,
        )
    except ValueError as exc:
        raise CLIError(str(exc)) from exc
    if lock is None:
        report = await worker.run_once()
        _emit({"ok": True, "skipped": False, **_report(report)})
        return
    outcome = await worker.run_locked()
    if outcome.skipped:
        _emit({"ok": True, "skipped": True})
        return
    _emit({"ok": True, "skipped": False, **_report(outcome.result)})


async def _show_lease(backend: SQLBackend, args: argparse.Namespace) -> None:
    lease = await backend.get_lease(args.job_name)
    _emit({"job_name": args.job_name, "lease": lease})


async def _release(backend: SQLBackend, args: argparse.Namespace) -> None:
    deleted = await CronLock(backend).force_release(args.job_name)
    _emit({"job_name": args.job_name, "released": deleted})


def _report(report: Any) -> dict:
    return {"claimed": report.claimed, "processed": report.processed, "failed": report.failed}


async def _run_command(args: argparse.Namespace) -> None:
    _configure_logging(args.log_level)
    if not args.dsn:
        raise CLIError(f"--dsn is required when {DSN_ENV_VAR} is not set")
    try:
        engine = create_async_engine(args.dsn)
    except SQLAlchemyError as exc:
        raise CLIError(f"Failed to create engine for DSN {args.dsn!r}: {exc}") from exc

    try:
        backend = SQLBackend(engine, prefer_pg_skip_locked=not args.disable_skip_locked)
        try:
            await args.command(backend, args)
        except CLIError:
            raise
        except SQLAlchemyError as exc:
            raise CLIError(f"Database error: {exc}") from exc
    finally:
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cronkit lease and work queue tools")
    parser.add_argument(
        "--dsn",
        default=os.environ.get(DSN_ENV_VAR),
        help=f"SQLAlchemy async DSN (defaults to ${DSN_ENV_VAR})",
    )
    parser.add_argument(
        "--disable-skip-locked",
        action="store_true",
        help="Disable Postgres SKIP LOCKED optimization",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Root logging level",
    )
    sub = parser.add_subparsers(dest="command_name", required=True)

    init_db = sub.add_parser("init-db", help="Create the cron_locks and work_items tables")
    init_db.set_defaults(command=_init_db)

    enqueue = sub.add_parser("enqueue", help="Request processing of one or more entities")
    enqueue.add_argument("job_type", choices=[t.value for t in JobType])
    enqueue.add_argument("entity_ids", nargs="+")
    enqueue.set_defaults(command=_enqueue)

    stats = sub.add_parser("stats", help="Print work item counts by status")
    stats.set_defaults(command=_stats)

    process = sub.add_parser("process", help="Claim and process one batch of work items")
    process.add_argument("--batch", type=_positive_int("batch"), default=5)
    process.add_argument("--concurrency", type=_positive_int("concurrency"), default=4)
    process.add_argument("--lock-name", default=DEFAULT_LOCK_NAME)
    process.add_argument("--lease-minutes", type=_positive_int("lease-minutes"), default=10)
    process.add_argument("--no-lock", action="store_true", help="Process without taking the lease")
    process.add_argument(
        "--handler",
        action="append",
        help="Handler factory in the form 'module:attr'; repeat for each job type",
    )
    process.set_defaults(command=_process)

    show_lease = sub.add_parser("show-lease", help="Print the current lease for a job without changing it")
    show_lease.add_argument("job_name")
    show_lease.set_defaults(command=_show_lease)

    release = sub.add_parser(
        "release",
        help="Delete the lease for a job whoever holds it (for clearing a stuck lease)",
    )
    release.add_argument("job_name")
    release.set_defaults(command=_release)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        asyncio.run(_run_command(args))
    except KeyboardInterrupt:  # pragma: no cover - CLI convenience
        print("Interrupted", file=sys.stderr)
        raise SystemExit(130)
    except CLIError as exc:
        print(f"cronkit: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except Exception as exc:  # pragma: no cover - defensive
        print(f"cronkit: unexpected failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
