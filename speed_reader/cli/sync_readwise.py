"""Operate the Readwise Reader sync from the command line.

Usage::

    python -m speed_reader.cli.sync_readwise run <user_id>
    python -m speed_reader.cli.sync_readwise run-due
    python -m speed_reader.cli.sync_readwise status <user_id>
    python -m speed_reader.cli.sync_readwise show <user_id> <document_id>
    python -m speed_reader.cli.sync_readwise connect <user_id> --token <reader token>
    python -m speed_reader.cli.sync_readwise reset <user_id>
    python -m speed_reader.cli.sync_readwise unlock <user_id>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from speed_reader.adapters.readwise.client import ReaderApiError, ReaderClient
from speed_reader.adapters.readwise.sync.errors import (
    SyncInProgressError,
    SyncLockError,
    SyncRateLimitedError,
    SyncTriggerError,
)
from speed_reader.adapters.readwise.sync.trigger import SyncTrigger
from speed_reader.config import AppConfig, load_config
from speed_reader.core.logging_utils import setup_json_logging
from speed_reader.db.session import DatabaseSessionManager
from speed_reader.infrastructure.persistence.sqlite.repositories import (
    SqliteDocumentCacheRepositoryAdapter,
    SqliteSyncStateRepositoryAdapter,
)

logger = logging.getLogger(__name__)

__all__ = ["main", "run_sync_cli"]

# Exit code when the account is rate limited or locked; the caller should retry later.
EXIT_RETRY_LATER = 75


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Mirror Readwise Reader libraries into the local cache",
        allow_abbrev=False,
    )
    parser.add_argument(
        "--db-path",
        type=Path,
        help="Override the configured SQLite path for this run.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level for this session.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Sync one account now (manual trigger).")
    run.add_argument("user_id")

    commands.add_parser("run-due", help="Sync every account whose back-off has elapsed.")

    status = commands.add_parser("status", help="Show sync progress for one account.")
    status.add_argument("user_id")

    show = commands.add_parser("show", help="Print one cached document and its text.")
    show.add_argument("user_id")
    show.add_argument("document_id", help="Reader document id.")

    connect = commands.add_parser("connect", help="Store a Reader token and create sync state.")
    connect.add_argument("user_id")
    connect.add_argument("--token", required=True, help="Reader access token.")
    connect.add_argument(
        "--skip-validation",
        action="store_true",
        help="Store the token without checking it against Reader.",
    )

    reset = commands.add_parser("reset", help="Forget progress and backfill from scratch.")
    reset.add_argument("user_id")

    unlock = commands.add_parser("unlock", help="Clear a stuck in-progress flag.")
    unlock.add_argument("user_id")

    return parser.parse_args(argv)


def _prepare_config(args: argparse.Namespace) -> AppConfig:
    """Load configuration, applying CLI overrides."""
    try:
        cfg = load_config()
    except RuntimeError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc

    runtime = cfg.runtime
    if args.db_path:
        runtime = runtime.model_copy(update={"db_path": str(args.db_path)})
    if args.log_level:
        runtime = runtime.model_copy(update={"log_level": args.log_level})
    if runtime is not cfg.runtime:
        cfg = replace(cfg, runtime=runtime)
    return cfg


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


async def _validate_token(token: str, cfg: AppConfig) -> None:
    async with ReaderClient(
        token, api_url=cfg.readwise.api_url, timeout=cfg.readwise.request_timeout_sec
    ) as client:
        await client.validate_token()


async def run_sync_cli(args: argparse.Namespace) -> int:
    """Execute one CLI command; returns the process exit code."""
    cfg = _prepare_config(args)
    setup_json_logging(
        cfg.runtime.log_level, use_loguru=cfg.runtime.use_loguru, log_file=cfg.runtime.log_file
    )

    session = DatabaseSessionManager(cfg.runtime.db_path)
    session.migrate()
    states = SqliteSyncStateRepositoryAdapter(session)
    cache = SqliteDocumentCacheRepositoryAdapter(session)
    trigger = SyncTrigger(states, cache, cfg.readwise)

    try:
        if args.command == "run":
            result = await trigger.trigger(args.user_id)
            _emit(
                {
                    "user_id": args.user_id,
                    "outcome": result.outcome,
                    "mode": result.mode,
                    "documents": result.documents_synced,
                    "correlation_id": result.correlation_id,
                    "state": result.delta.as_log_dict(),
                }
            )
        elif args.command == "run-due":
            outcomes = await trigger.run_due()
            _emit({"ok": True, "results": [asdict(item) for item in outcomes]})
        elif args.command == "status":
            status = await trigger.status(args.user_id)
            status["cached_documents"] = await cache.async_count_documents(args.user_id)
            _emit(status)
        elif args.command == "show":
            document = await cache.async_get_document(args.user_id, args.document_id)
            if document is None:
                _emit({"error": f"Document not cached: {args.document_id}"})
                return 1
            article = await cache.async_get_article(args.user_id, args.document_id)
            _emit(
                {
                    **document,
                    "plain_text": article["plain_text"] if article else None,
                    "has_html": bool(article and article["html_content"]),
                }
            )
        elif args.command == "connect":
            if not args.skip_validation:
                await _validate_token(args.token, cfg)
            state = await states.async_connect_reader(args.user_id, args.token)
            _emit({"user_id": state.user_id, "connected": True})
        elif args.command == "reset":
            _emit({"user_id": args.user_id, "reset": await states.async_reset_state(args.user_id)})
        elif args.command == "unlock":
            _emit({"user_id": args.user_id, "unlocked": await states.async_force_unlock(args.user_id)})
    except SyncRateLimitedError as exc:
        _emit({"error": str(exc), "wait_seconds": exc.wait_seconds})
        return EXIT_RETRY_LATER
    except (SyncInProgressError, SyncLockError) as exc:
        _emit({"error": str(exc)})
        return EXIT_RETRY_LATER
    except SyncTriggerError as exc:
        _emit({"error": str(exc)})
        return 1
    except ReaderApiError as exc:
        _emit({"error": str(exc), "status_code": exc.status_code})
        return 1
    finally:
        session.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m speed_reader.cli.sync_readwise``."""
    args = parse_args(argv)
    try:
        return asyncio.run(run_sync_cli(args))
    except KeyboardInterrupt:  # pragma: no cover - user cancelled
        return 1
    except Exception as exc:
        logger.exception("cli_sync_readwise_failed", exc_info=exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
