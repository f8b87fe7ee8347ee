#!/usr/bin/env python3
"""
authgate -- Database management CLI.

Usage:
  python main.py migrate     Apply pending migrations in order
  python main.py rollback    Undo the most recently applied migration
  python main.py status      Show every known migration as applied or pending
  python main.py test        Check that the configured database is reachable

Exit status is 0 on success and 1 on any failure.

Environment variables (see core/config.py for the full list):
  DATABASE_URL  SQLAlchemy URL. Default: sqlite:///authgate.db
  SECRET_KEY    Required unless DEBUG=true.
"""

import argparse
import logging
import sys
from typing import Optional

from sqlalchemy.engine import make_url

from auth.services import AuthServices, build_services
from core.config import get_settings
from core.errors import GatewayError

logger = logging.getLogger("authgate.cli")


def cmd_migrate(services: AuthServices) -> int:
    applied = services.migrations.run_migrations()
    if applied:
        for name in applied:
            print(f"  applied  {name}")
        print(f"\n{len(applied)} migration(s) applied.")
    else:
        print("Database is up to date.")
    return 0


def cmd_rollback(services: AuthServices) -> int:
    name = services.migrations.rollback_last_migration()
    print(f"  rolled back  {name}")
    return 0


def cmd_status(services: AuthServices) -> int:
    print("\nMigration status")
    print("-" * 40)
    for entry in services.migrations.get_migration_status():
        if entry.applied:
            when = entry.applied_at.isoformat() if entry.applied_at else "unknown"
            print(f"  [x] {entry.name} (applied: {when})")
        else:
            print(f"  [ ] {entry.name} (pending)")
    print()
    return 0


def cmd_test(services: AuthServices) -> int:
    url = make_url(services.store.db_url).render_as_string(hide_password=True)
    print(f"Testing database connection: {url}")
    services.store.ping()
    print("Database connection successful.")
    print(f"Pool: {services.store.engine.pool.status()}")
    return 0


COMMANDS = {
    "migrate": cmd_migrate,
    "rollback": cmd_rollback,
    "status": cmd_status,
    "test": cmd_test,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="authgate database management.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "command",
        choices=sorted(COMMANDS),
        help="Operation to run against the configured database.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        services = build_services(get_settings())
    except ValueError as e:
        # pydantic ValidationError subclasses ValueError (e.g. missing SECRET_KEY)
        print(f"  [!] Invalid configuration: {e}", file=sys.stderr)
        return 1

    try:
        return COMMANDS[args.command](services)
    except GatewayError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"  [!] {args.command} failed: {e.message}", file=sys.stderr)
        return 1
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
