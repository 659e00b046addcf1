#!/usr/bin/env python3
"""
ClassArena Tournament CLI

Usage:
    python -m classarena.cli <command> [options]

Commands:
    db          Database operations (init)
    tournament  Tournament operations (list, replay, sweep-timeouts)

Environment:
    DATABASE_URL    SQLAlchemy async connection string
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from classarena import __version__
from classarena.cli.db_commands import DbCommand
from classarena.cli.tournament_commands import TournamentCommand


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="classarena",
        description="ClassArena Tournament CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s db init
  %(prog)s tournament list --classroom 3
  %(prog)s tournament replay
  %(prog)s tournament sweep-timeouts
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_action")
    db_subparsers.add_parser("init", help="Create missing tables")

    # Tournament commands
    tournament_parser = subparsers.add_parser("tournament", help="Tournament operations")
    tournament_subparsers = tournament_parser.add_subparsers(dest="tournament_action")

    # tournament list
    list_parser = tournament_subparsers.add_parser("list", help="List tournaments")
    list_parser.add_argument("--classroom", "-c", type=int, help="Only this classroom")
    list_parser.add_argument(
        "--status",
        choices=["DRAFT", "IN_PROGRESS", "COMPLETED", "CANCELLED"],
        help="Filter by status"
    )

    # tournament replay
    tournament_subparsers.add_parser("replay", help="Replay winner propagation left pending by a crash")

    # tournament sweep-timeouts
    tournament_subparsers.add_parser("sweep-timeouts", help="Advance matches whose question time ran out")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    # Setup logging
    setup_logging(parsed.log_level)

    # Route to appropriate command handler
    command_map = {
        "db": DbCommand,
        "tournament": TournamentCommand,
    }

    if parsed.command in command_map:
        handler = command_map[parsed.command](dry_run=parsed.dry_run)
        return handler.execute(parsed)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
