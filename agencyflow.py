#!/usr/bin/env python3
"""AgencyFlow - Marketing automation for insurance agencies.

Single entry point for the scheduled actions.

Usage:
    python agencyflow.py --refresh       # Enroll matching contacts
    python agencyflow.py --verify        # Advance past elapsed delays and branches
    python agencyflow.py --send          # Hand off due emails
    python agencyflow.py --daily         # refresh + verify + send
    python agencyflow.py --orchestrator  # Run the scheduler (headless)
    python agencyflow.py --check         # Report email service status
    python agencyflow.py --version       # Show version
"""

import argparse
import logging
import sys
from typing import Optional

from src import __version__
from src.core.config import critical_issues, get_config, validate_config
from src.core.exceptions import AgencyFlowError, ConfigurationError, RunLockError
from src.core.logging import get_logger, setup_logging


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for AgencyFlow.

    Returns:
        Exit code (0 = success, non-zero = error)
    """
    parser = argparse.ArgumentParser(
        description="AgencyFlow - Marketing automation for insurance agencies"
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--refresh", action="store_true", help="Run the refresh action")
    actions.add_argument("--verify", action="store_true", help="Run the verify action")
    actions.add_argument("--send", action="store_true", help="Run the send action")
    actions.add_argument(
        "--daily", action="store_true", help="Run refresh, verify and send in sequence"
    )
    actions.add_argument(
        "--orchestrator",
        action="store_true",
        help="Run the scheduler until interrupted (headless mode)",
    )
    actions.add_argument(
        "--check", action="store_true", help="Report email service configuration and health"
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    if args.version:
        print(f"AgencyFlow v{__version__}")
        return 0

    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    debug = args.debug or config.debug
    setup_logging(
        log_dir=config.log_path,
        console_level=logging.DEBUG if debug else logging.INFO,
    )
    logger = get_logger("main")
    logger.info(f"AgencyFlow v{__version__} starting...")

    issues = validate_config(config)
    for issue in issues:
        if issue.startswith("CRITICAL:"):
            logger.error(f"Configuration: {issue}")
        else:
            logger.warning(f"Configuration issue: {issue}")
    if critical_issues(issues):
        return 1

    from src.integrations.mailer import WebhookMailer

    if args.check:
        status = WebhookMailer().status()
        print(
            f"{status['name']}: configured={status['configured']} healthy={status['healthy']}"
        )
        return 0 if status["healthy"] else 1

    if not (args.refresh or args.verify or args.send or args.daily or args.orchestrator):
        parser.print_help()
        return 0

    from src.autonomous.runner import AutomationRunner
    from src.db.database import Database

    try:
        db = Database()
        db.initialize()
        logger.info("Database initialized", extra={"context": {"path": str(config.db_path)}})
    except AgencyFlowError as e:
        logger.error(f"Failed to initialize database: {e}")
        return 1

    runner = AutomationRunner(db, WebhookMailer(), config=config)

    try:
        if args.orchestrator:
            from src.autonomous.orchestrator import Orchestrator

            logger.info("Starting orchestrator (headless)...")
            Orchestrator(runner, config=config).run_headless()
            return 0

        if args.refresh:
            result = runner.refresh()
        elif args.verify:
            result = runner.verify()
        elif args.send:
            result = runner.send()
        else:
            result = runner.daily()
    except RunLockError as e:
        logger.warning(f"Skipped: {e}")
        return 0
    finally:
        db.close()

    if result.errors:
        logger.warning(
            f"{result.action} completed with {len(result.errors)} error(s)",
            extra={"context": {"errors": result.errors}},
        )
    print(result.summary())
    logger.info("AgencyFlow shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
