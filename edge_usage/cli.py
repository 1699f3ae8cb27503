from __future__ import annotations

import argparse
import copy
import logging.config
import os

import anyio
import uvicorn
import uvicorn.config

from edge_usage.core.config.settings import Settings, get_settings


def _build_log_config(settings: Settings) -> dict:
    # Uvicorn's default LOGGING_CONFIG does not attach handlers to the `edge_usage.*` logger namespace.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["edge_usage"] = {
        "handlers": ["default"],
        "level": "DEBUG" if settings.debug_logging else "INFO",
        "propagate": False,
    }
    return config


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the edge usage dashboard API server.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8787")))

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser(
        "prewarm",
        help="Build the pre-warmed dashboard snapshot for the configured accounts and exit.",
    )
    subparsers.add_parser(
        "check-thresholds",
        help="Fetch current usage, evaluate configured thresholds and notify the webhook once per month.",
    )
    return parser.parse_args()


async def _run_command(settings: Settings, command: str) -> None:
    from edge_usage.core.clients.http import close_http_client, init_http_client
    from edge_usage.core.usage.refresh_scheduler import check_thresholds_once, prewarm_once
    from edge_usage.db.session import close_db, init_db

    logging.config.dictConfig(_build_log_config(settings))
    try:
        if settings.kv_backend == "db":
            await init_db()
        await init_http_client()
        if command == "prewarm":
            outcome = await prewarm_once(settings)
            failed = outcome.snapshot.core.failed_accounts if outcome.snapshot.core is not None else []
            print(
                f"prewarmed_accounts={len(outcome.account_ids)} failed_accounts={len(failed)} "
                f"duration_seconds={outcome.duration_seconds:.2f}"
            )
        else:
            result = await check_thresholds_once(settings)
            if result is None:
                print("threshold_check=skipped")
            else:
                print(
                    f"alerts_triggered={len(result.alerts)} slack_sent={bool(result.slack_sent)} "
                    f"skipped={result.skipped or 0}"
                )
    finally:
        try:
            await close_http_client()
        finally:
            await close_db()


def main() -> None:
    args = _parse_args()
    settings = get_settings()

    if args.command is None:
        uvicorn.run(
            "edge_usage.main:app",
            host=args.host,
            port=args.port,
            log_config=_build_log_config(settings),
            access_log=settings.access_log_enabled,
        )
        return

    if args.command in ("prewarm", "check-thresholds"):
        anyio.run(_run_command, settings, args.command)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
