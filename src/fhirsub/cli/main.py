#!/usr/bin/env python3
"""
fhirsub CLI - Main entry point.

Usage:
    fhirsub init                          # Write a default fhirsub.yaml
    fhirsub serve                         # Run the subscription server
    fhirsub check-criteria <criteria>     # Parse criteria and show constraints
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from .. import __version__
from ..config import DEFAULT_CONFIG_PATH, FhirSubConfig, load_config
from ..core.criteria import CriteriaParser
from ..core.errors import ValidationError


def cmd_init(args: argparse.Namespace) -> int:
    """Write a default configuration file."""
    config_path = Path(args.config)

    if config_path.exists() and not args.force:
        print(f"Error: {config_path} already exists. Use --force to overwrite.")
        return 1

    config = FhirSubConfig()
    if args.store:
        config.store = args.store
    config.save(config_path)
    print(f"Created {config_path}")

    print("Next steps:")
    print("  fhirsub serve                      # Start the server")
    print("  fhirsub check-criteria '<query>'   # Try out a criteria string")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the subscription server with uvicorn."""
    import uvicorn

    from ..app import configure_logging, create_app

    config = load_config(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.store:
        config.store = args.store

    configure_logging(config.log_level)
    print(f"Starting fhirsub on {config.host}:{config.port} (store: {config.store})")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level.lower())
    return 0


def cmd_check_criteria(args: argparse.Namespace) -> int:
    """Parse a criteria string and print its constraints."""
    config = load_config(args.config)
    parser = CriteriaParser(config.resource_types)

    try:
        parsed = parser.parse(args.criteria)
    except ValidationError as e:
        print("Invalid criteria:")
        for error in e.errors:
            print(f"  - {error}")
        return 1

    print(f"Resource type: {parsed.resource_type}")
    if not parsed.constraints:
        print("Constraints: none (matches every resource of this type)")
    for constraint in parsed.constraints:
        name = f"{constraint.name}:{constraint.modifier}" if constraint.modifier else constraint.name
        print(f"  {name} = {' OR '.join(constraint.values)}")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="fhirsub",
        description="fhirsub - FHIR subscription engine"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", default=DEFAULT_CONFIG_PATH, help="Config file path")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init
    init_parser = subparsers.add_parser("init", help="Write default configuration")
    init_parser.add_argument("--store", choices=["memory", "sql"], help="Subscription store")
    init_parser.add_argument("--force", "-f", action="store_true", help="Overwrite existing config")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the subscription server")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, help="Port")
    serve_parser.add_argument("--store", choices=["memory", "sql"], help="Subscription store")

    # check-criteria
    check_parser = subparsers.add_parser("check-criteria", help="Validate a criteria string")
    check_parser.add_argument("criteria", help="Criteria, e.g. 'Observation?subject=Patient/1'")

    return parser


def app(args: Optional[List[str]] = None) -> int:
    """Main CLI application."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 0

    commands = {
        "init": cmd_init,
        "serve": cmd_serve,
        "check-criteria": cmd_check_criteria,
    }

    handler = commands.get(parsed.command)
    if handler:
        return handler(parsed)

    parser.print_help()
    return 1


def main() -> None:
    """Entry point for CLI."""
    sys.exit(app())


if __name__ == "__main__":
    main()
