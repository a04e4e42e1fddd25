"""Console entry point for the search-index sync worker and its admin controls."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from core.settings import INDEX, LOG_DIR
from models.product import Product
from services.admin import SyncAdmin
from services.change_capture import install_change_capture, register_source
from services.index_client import build_index_client
from services.sync_worker import SyncWorker
from storage.db import init_db
from utils.datetime_utils import to_rfc3339_utc


LOG_PATH = LOG_DIR / "indexsync.log"

# source tables captured by the portal
register_source(Product)


def _setup_logging(log_path: Optional[Path]) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _run_worker(args: argparse.Namespace) -> int:
    client = build_index_client(INDEX)
    worker = SyncWorker(client)

    def _handle_signal(signum, _frame):
        logging.info("Signal %s received", signal.Signals(signum).name)
        worker.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    try:
        if args.once:
            result = worker.run_once()
            _print_json(result.__dict__)
        else:
            worker.run_forever()
    finally:
        worker.close()
    return 0


def _history(args: argparse.Namespace) -> int:
    admin = SyncAdmin()
    item = admin.queue.get(args.item_id)
    if item is None:
        print(f"Queue item {args.item_id} not found", file=sys.stderr)
        return 1
    _print_json(
        {
            "id": item.id,
            "sourceTable": item.source_table,
            "recordId": item.record_id,
            "operation": item.operation,
            "status": item.status,
            "retryCount": item.retry_count,
            "lastError": item.last_error,
            "createdAt": to_rfc3339_utc(item.created_at),
            "processedAt": to_rfc3339_utc(item.processed_at),
            "attempts": [
                {
                    "attempt": entry.attempt_number,
                    "outcome": entry.outcome,
                    "category": entry.error_category,
                    "worker": entry.worker_id,
                    "at": to_rfc3339_utc(entry.timestamp),
                    "detail": entry.error_detail,
                }
                for entry in admin.item_history(args.item_id)
            ],
        }
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__ or "")
    parser.add_argument(
        "--log",
        type=Path,
        default=LOG_PATH,
        help="Path to a log file (default: %(default)s)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables, indexes and capture triggers")

    worker = sub.add_parser("worker", help="Run the sync worker")
    worker.add_argument("--once", action="store_true", help="Process a single batch and exit")

    sub.add_parser("status", help="Queue depth, configuration and metrics")
    sub.add_parser("configs", help="List index configurations")

    set_config = sub.add_parser("set-config", help="Create or update a table's index configuration")
    set_config.add_argument("table")
    set_config.add_argument("index")
    set_config.add_argument("--transform", default=None)
    set_config.add_argument("--batch-size", type=int, default=None)
    set_config.add_argument("--disabled", action="store_true")

    for name in ("enable", "disable"):
        toggle = sub.add_parser(name, help=f"{name.capitalize()} sync for a table")
        toggle.add_argument("table")

    reset = sub.add_parser("reset-failed", help="Move failed items back to pending")
    reset.add_argument("--table", default=None)
    reset.add_argument("--id", dest="ids", type=int, action="append", default=None)

    history = sub.add_parser("history", help="Show a queue item and its sync attempts")
    history.add_argument("item_id", type=int)

    reindex = sub.add_parser("reindex", help="Queue every row of a table for re-indexing")
    reindex.add_argument("table")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.log)

    init_db()
    install_change_capture()

    if args.command == "init-db":
        print("Database initialised.")
        return 0
    if args.command == "worker":
        return _run_worker(args)
    if args.command == "history":
        return _history(args)

    admin = SyncAdmin()
    if args.command == "status":
        _print_json({**admin.status(), "metrics": admin.metrics()})
    elif args.command == "configs":
        _print_json(admin.status()["configs"])
    elif args.command == "set-config":
        cfg = admin.upsert_config(
            args.table,
            args.index,
            transform_selector=args.transform,
            batch_size=args.batch_size,
            is_enabled=False if args.disabled else None,
        )
        print(f"Configured {cfg.source_table} -> {cfg.index_name} (enabled={cfg.is_enabled})")
    elif args.command in ("enable", "disable"):
        try:
            cfg = admin.set_enabled(args.table, args.command == "enable")
        except KeyError as exc:
            print(exc.args[0], file=sys.stderr)
            return 1
        print(f"{cfg.source_table}: enabled={cfg.is_enabled}")
    elif args.command == "reset-failed":
        count = admin.reset_failed(source_table=args.table, item_ids=args.ids)
        print(f"Reset {count} items.")
    elif args.command == "reindex":
        try:
            count = admin.reindex_table(args.table)
        except KeyError as exc:
            print(exc.args[0], file=sys.stderr)
            return 1
        print(f"Queued {count} rows from {args.table}.")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
