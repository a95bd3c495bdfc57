#!/usr/bin/env python3
"""
Main entry point for the Experiment Promotion Engine.

Runs the auto-promotion scheduler and exposes the operator commands:
eligibility checks, manual promotion, rollback, audit history and status.
Command results are printed as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

from promotion_engine.config.promotion_rules import resolve_promotion_rules
from promotion_engine.config.settings import Settings, get_settings
from promotion_engine.core.exceptions import PromotionEngineError
from promotion_engine.database.connection import DatabaseManager
from promotion_engine.monitoring.logger import LogCategory, LogFormat, get_logger, setup_logging
from promotion_engine.monitoring.metrics import get_metrics_collector
from promotion_engine.promotion.scheduler import PromotionScheduler
from promotion_engine.promotion.service import PromotionService


logger = get_logger("main", LogCategory.SYSTEM)


def parse_split(value: str) -> tuple[str, float]:
    """Parse a name=percent traffic entry."""
    name, sep, pct = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected name=percent, got {value!r}")
    try:
        return name, float(pct)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid percentage in {value!r}") from e


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Experiment Promotion Engine",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Scheduler command
    scheduler_parser = subparsers.add_parser("run-scheduler", help="Run the auto-promotion scheduler")
    scheduler_parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    scheduler_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate experiments without promoting",
    )

    # Eligibility command
    check_parser = subparsers.add_parser("check", help="Evaluate promotion eligibility")
    check_parser.add_argument("experiment", help="Experiment name")

    # Promote command
    promote_parser = subparsers.add_parser("promote", help="Promote an experiment's winner")
    promote_parser.add_argument("experiment", help="Experiment name")
    promote_parser.add_argument("--operator", help="Operator id recorded on the audit trail")
    promote_parser.add_argument("--variant", help="Variant to promote (defaults to the winner)")
    promote_parser.add_argument(
        "--force",
        action="store_true",
        help="Bypass the eligibility recommendation (audited)",
    )

    # Rollback command
    rollback_parser = subparsers.add_parser("rollback", help="Roll back the latest promotion")
    rollback_parser.add_argument("experiment", help="Experiment name")
    rollback_parser.add_argument("--reason", required=True, help="Why the promotion is reverted")
    rollback_parser.add_argument("--operator", help="Operator id recorded on the audit trail")
    rollback_parser.add_argument(
        "--split",
        type=parse_split,
        action="append",
        metavar="NAME=PCT",
        help="Traffic to restore per variant (repeatable); equal split if omitted",
    )

    # History command
    history_parser = subparsers.add_parser("history", help="Show promotion audit history")
    history_parser.add_argument("experiment", help="Experiment name")
    history_parser.add_argument("--limit", type=int, default=50, help="Maximum records")

    subparsers.add_parser("status", help="Show scheduler, rules and database status")
    subparsers.add_parser("init-db", help="Create database tables")

    # Common arguments
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a YAML settings file",
    )
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default="json",
        help="Log format",
    )

    return parser.parse_args(argv)


def load_settings(config_path: Path | None) -> Settings:
    """Settings from the environment, optionally overlaid with a YAML file."""
    if config_path is None:
        return get_settings()
    return Settings(**Settings.load_yaml_config(config_path))


def emit(payload: Any) -> None:
    """Print a command result as JSON."""
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(mode="json")
    print(json.dumps(payload, indent=2, default=str))


async def run_scheduler(args: argparse.Namespace, service: PromotionService) -> None:
    """Run the scheduler once or until a shutdown signal.

    Args:
        args: Command line arguments.
        service: Promotion service.
    """
    config = service.settings.scheduler
    if args.dry_run:
        config = config.model_copy(update={"dry_run": True})
    scheduler = PromotionScheduler(service, scheduler_settings=config)

    if args.once:
        result = await scheduler.run_once()
        emit(result.to_dict())
        return

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass  # Windows

    await scheduler.run_forever(stop_event)


async def run_command(args: argparse.Namespace, service: PromotionService) -> None:
    """Dispatch an operator command."""
    name = getattr(args, "experiment", None)

    if args.command == "run-scheduler":
        await run_scheduler(args, service)
    elif args.command == "check":
        emit(await service.check_eligibility(name))
    elif args.command == "promote":
        emit(
            await service.promote(
                name,
                operator_id=args.operator,
                force=args.force,
                variant_name=args.variant,
            )
        )
    elif args.command == "rollback":
        traffic = dict(args.split) if args.split else None
        emit(await service.rollback(name, args.reason, operator_id=args.operator, traffic=traffic))
    elif args.command == "history":
        records = await service.get_promotion_history(name, limit=args.limit)
        emit([record.model_dump(mode="json") for record in records])
    elif args.command == "status":
        scheduler = PromotionScheduler(service)
        window = service.settings.scheduler.promotion_window_minutes
        emit(
            {
                "app": service.settings.app_name,
                "version": service.settings.app_version,
                "environment": service.settings.environment,
                "database_healthy": service.db.health_check(),
                "scheduler": scheduler.get_status(),
                "recent_promotions": await service.count_recent_promotions(window),
                "rules": resolve_promotion_rules(service.settings).model_dump(mode="json"),
            }
        )


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    settings = load_settings(args.config)

    # Setup logging
    log_format = LogFormat.JSON if args.log_format == "json" else LogFormat.TEXT
    setup_logging(level=args.log_level, log_format=log_format, log_file=settings.logging.file_path)

    get_metrics_collector().set_engine_info(settings.app_version, settings.environment)

    logger.info(
        f"Experiment Promotion Engine v{settings.app_version}",
        extra={"extra_data": {"command": args.command, "environment": settings.environment}},
    )

    db = DatabaseManager(settings)
    try:
        if args.command == "init-db":
            db.create_all()
            emit({"status": "ok", "database": db.url})
            return

        service = PromotionService(settings=settings, db_manager=db)
        asyncio.run(run_command(args, service))
    except PromotionEngineError as e:
        logger.error(f"Command failed: {e}")
        emit({"error": e.to_dict()})
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
