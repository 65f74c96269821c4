"""Command line entry point.

Usage:
    escrow-engine run            # start the service and scheduler
    escrow-engine init-db        # create tables without alembic (local/dev)
    escrow-engine show-config    # print settings with secrets redacted
    escrow-engine sweep expiry   # run one reconciliation sweep and exit
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys

from escrow_engine.config import Settings, get_settings
from escrow_engine.service import EscrowService
from escrow_engine.storage.database import DatabaseManager

logger = logging.getLogger("escrow_engine")

SWEEPS = ("payments", "expiry", "reminders", "confirmations", "stats", "cleanup")


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager.from_settings(settings.database)
    try:
        await db.create_schema()
    finally:
        await db.dispose()


async def _sweep(settings: Settings, name: str) -> int:
    # One-shot sweeps run without the background loops.
    service_settings = settings.model_copy(
        update={"scheduler": settings.scheduler.model_copy(update={"enabled": True})}
    )
    service = EscrowService(service_settings)
    await service.start()
    try:
        scheduler = service.scheduler
        if scheduler is None:
            raise RuntimeError("scheduler unavailable")
        await scheduler.stop()
        jobs = {
            "payments": scheduler.run_payment_checks,
            "expiry": scheduler.run_expiry_sweep,
            "reminders": scheduler.run_reminders,
            "confirmations": scheduler.run_confirmation_refresh,
            "stats": scheduler.run_stats_rollup,
            "cleanup": scheduler.run_cleanup,
        }
        processed = await jobs[name]()
        logger.info("Sweep %s processed %d items", name, processed)
        return processed
    finally:
        await service.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="escrow-engine", description="Custodial BTC/LTC escrow engine")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Run the service until interrupted")
    commands.add_parser("init-db", help="Create database tables from the ORM models")
    commands.add_parser("show-config", help="Print the effective configuration with secrets redacted")
    sweep = commands.add_parser("sweep", help="Run a single reconciliation sweep")
    sweep.add_argument("name", choices=SWEEPS)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)

    if args.command == "show-config":
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0

    if args.command == "init-db":
        asyncio.run(_init_db(settings))
        return 0

    if args.command == "sweep":
        asyncio.run(_sweep(settings, args.name))
        return 0

    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(EscrowService(settings).run())
    return 0


if __name__ == "__main__":
    sys.exit(main())
