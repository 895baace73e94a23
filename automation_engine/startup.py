"""Command line interface: serve the API, initialize the database or run one scheduler tick."""

import argparse
import json
import sys
from datetime import datetime
from typing import List, Optional

from .config import (
    AppConfig,
    LogLevel,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from .core.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="automation-engine",
        description="Event-driven workflow automation engine"
    )
    parser.add_argument("--env", choices=["development", "production", "testing"], help="Configuration preset")
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument("--log-level", choices=[level.value for level in LogLevel], help="Logging level")
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    serve_parser.add_argument("--max-concurrent-executions", type=int, help="Worker threads advancing executions")

    init_parser = subparsers.add_parser("init-db", help="Create tables and indexes")
    init_parser.add_argument("--reset", action="store_true", help="Drop all tables first")

    tick_parser = subparsers.add_parser("tick", help="Run one scheduler pass and walk what it wakes")
    tick_parser.add_argument("--now", type=datetime.fromisoformat, help="Evaluate due work as of this ISO time")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration from a preset or the environment, then apply CLI overrides."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = LogLevel(args.log_level)
    if args.log_file:
        config.log_file = args.log_file
    if args.debug:
        config.debug = True

    if getattr(args, "host", None):
        config.host = args.host
    if getattr(args, "port", None):
        config.port = args.port
    if getattr(args, "reload", False):
        config.reload = True
    if getattr(args, "max_concurrent_executions", None):
        config.max_concurrent_executions = args.max_concurrent_executions
    return config


def run_server(config: AppConfig):
    import uvicorn
    from .factory import create_app

    uvicorn.run(create_app(config), **config.get_uvicorn_config())


def run_init_db(config: AppConfig, reset: bool = False):
    from .storage import database
    from .storage.migrations import run_migrations

    database.configure_database(config.database_url, echo=config.database_echo)
    if reset:
        logger.info("Dropping all tables")
        database.drop_tables()
    database.create_tables()
    run_migrations()
    logger.info("Database initialized")


def run_tick(config: AppConfig, now: Optional[datetime] = None) -> dict:
    """Run one wake-up pass with executions walked on this thread."""
    from .factory import build_components, initialize_database

    initialize_database(config)
    state = build_components(config, run_inline=True)
    try:
        return state.scheduler.tick(now)
    finally:
        state.execution_engine.shutdown()


def main(argv: Optional[List[str]] = None):
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
        validate_config(config)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_logging(
        level=config.log_level.value,
        log_file=config.log_file,
        log_format=config.log_format,
        structured=config.log_structured
    )

    if args.command == "serve" or args.command is None:
        run_server(config)
    elif args.command == "init-db":
        run_init_db(config, reset=args.reset)
    elif args.command == "tick":
        print(json.dumps(run_tick(config, args.now), indent=2))


if __name__ == "__main__":
    main()
