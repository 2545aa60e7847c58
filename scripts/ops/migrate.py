#!/usr/bin/env python3
"""Apply, inspect or generate Alembic migrations for the inventory schema.

    python scripts/ops/migrate.py                  # upgrade to head
    python scripts/ops/migrate.py status           # show the current revision
    python scripts/ops/migrate.py create "message" # autogenerate a revision
"""

import argparse
import logging
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy.exc import DBAPIError

logger = logging.getLogger("inventory.migrate")

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def alembic_config() -> Config:
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    return cfg


def _lost_version_table_race(error: Exception) -> bool:
    # Two API replicas booting together can both try to create alembic_version
    message = str(error)
    return "alembic_version" in message and "pg_type_typname_nsp_index" in message


def upgrade(revision: str = "head") -> None:
    """Upgrade the schema, retrying once if another process created the version table first."""
    cfg = alembic_config()
    logger.info(f"Upgrading inventory schema to {revision}")
    try:
        command.upgrade(cfg, revision)
    except DBAPIError as e:
        if not _lost_version_table_race(e):
            raise
        logger.warning("alembic_version was created concurrently; retrying upgrade")
        command.upgrade(cfg, revision)
    logger.info("Inventory schema is up to date")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="action")
    up = sub.add_parser("upgrade", help="apply pending migrations")
    up.add_argument("revision", nargs="?", default="head")
    sub.add_parser("status", help="show the current revision")
    create = sub.add_parser("create", help="autogenerate a revision from the models")
    create.add_argument("message", nargs="+")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    try:
        if args.action == "status":
            command.current(alembic_config(), verbose=True)
        elif args.action == "create":
            command.revision(alembic_config(), message=" ".join(args.message), autogenerate=True)
        else:
            upgrade(getattr(args, "revision", "head"))
    except Exception:
        logger.exception(f"Migration command '{args.action or 'upgrade'}' failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
