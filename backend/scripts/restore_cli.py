#!/usr/bin/env python3
"""Drive an archive restore from the shell.

Examples:
  python scripts/restore_cli.py start --backup-id nightly --file /data/backups/nightly.zip
  python scripts/restore_cli.py run
  python scripts/restore_cli.py status
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from archive_restore.core.config import get_settings
from archive_restore.core.logging import configure_logging
from archive_restore.db.session import SessionLocal
from archive_restore.schemas.restore import BackupDescriptor
from archive_restore.services.restore_errors import RestoreError
from archive_restore.services.restore_orchestrator import RestoreOrchestrator, build_orchestrator


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Restore a backup archive onto the configured installation")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="stage, extract and prepare a restore")
    start.add_argument("--backup-id", required=True)
    start.add_argument("--file", required=True, help="archive file name or path")
    start.add_argument("--storage", default="local", help="local, minio, s3 or http")
    start.add_argument("--object-key", default="", help="remote object key when it differs from --file")
    start.add_argument("--queue", action="store_true", help="hand the restore to the worker")

    sub.add_parser("step", help="run one bounded invocation")

    run = sub.add_parser("run", help="invoke steps until the restore is terminal")
    run.add_argument("--interval", type=float, default=0.0)

    sub.add_parser("status", help="print the current status document")
    sub.add_parser("cancel", help="cancel the current restore")

    history = sub.add_parser("history", help="print recent restores")
    history.add_argument("--limit", type=int, default=20)
    return parser.parse_args(argv)


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _descriptor(args: argparse.Namespace) -> BackupDescriptor:
    storage_info = {"object_name": args.object_key} if args.object_key else {}
    return BackupDescriptor(id=args.backup_id, file=args.file, storage=args.storage, storage_info=storage_info)


def run_command(args: argparse.Namespace, orchestrator: RestoreOrchestrator) -> int:
    if args.command == "start":
        descriptor = _descriptor(args)
        if args.queue:
            from archive_restore.worker.tasks_restore import start_restore_task

            job = start_restore_task.delay(descriptor.model_dump())
            _print({"status": "queued", "task_id": job.id, "backup_id": descriptor.id})
            return 0
        status = orchestrator.start_restore(descriptor)
        _print({"restore_id": status.id, "phase": status.phase.value, "message": status.message})
        return 0

    if args.command == "step":
        status = orchestrator.process_next_step()
        _print({"restore_id": status.id, "phase": status.phase.value, "progress": round(status.progress, 1), "message": status.message})
        return 0

    if args.command == "run":
        status = orchestrator.process_next_step()
        while not status.is_terminal:
            print(f"{status.progress:5.1f}% {status.message}", flush=True)
            if args.interval > 0:
                time.sleep(args.interval)
            status = orchestrator.process_next_step()
        _print({"restore_id": status.id, "status": status.status.value, "message": status.message})
        return 0 if status.status.value in {"completed", "partial"} else 1

    if args.command == "status":
        status = orchestrator.store.get_current()
        _print(status.model_dump(mode="json") if status else {"status": "idle"})
        return 0

    if args.command == "cancel":
        status = orchestrator.cancel_restore()
        _print({"restore_id": status.id, "status": status.status.value, "message": status.message})
        return 0

    if args.command == "history":
        _print([entry.model_dump(mode="json") for entry in orchestrator.store.list_history(limit=args.limit)])
        return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    # stdout carries the JSON documents
    configure_logging(stream=sys.stderr)
    orchestrator = build_orchestrator(get_settings(), SessionLocal)
    try:
        return run_command(args, orchestrator)
    except RestoreError as exc:
        _print({"status": "error", "code": exc.code, "kind": exc.kind.value, "message": exc.message})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
