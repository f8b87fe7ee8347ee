"""
auth/migrations.py -- Ledger-backed schema migrations for the credential store.

Each Migration has a unique name plus up/down callables that receive a
SQLAlchemy Connection already inside a transaction. MigrationRunner applies
the fixed, ordered MIGRATIONS list exactly once each and records every
application in the schema_migrations ledger.

Rules:
  - A ledger row for `name` is the ONLY proof that the migration ran. The
    runner never inspects tables or columns to guess what was applied.
  - up() and the ledger insert share one transaction; down() and the ledger
    delete share one transaction. DDL is transactional on both PostgreSQL
    and SQLite (CredentialStore issues its own BEGIN on SQLite), so a failed
    up() leaves neither its tables nor a ledger row behind.
  - A failing up() halts the run with SchemaError. Later migrations are not
    attempted and nothing is retried: a half-applied schema change needs an
    operator, not a loop.

Adding a migration: append to MIGRATIONS. Never reorder or rename entries that
may already be recorded in a deployed ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, text
from sqlalchemy.engine import Connection

from auth.store import CredentialStore, api_keys, parse_timestamp, schema_migrations, users
from core.errors import MigrationNotFound, SchemaError

logger = logging.getLogger("authgate.migrations")


@dataclass(frozen=True)
class Migration:
    name: str
    up: Callable[[Connection], None]
    down: Callable[[Connection], None]


@dataclass(frozen=True)
class MigrationStatus:
    name: str
    applied: bool
    applied_at: datetime | None = None


# ---------------------------------------------------------------------------
# Migration definitions
# ---------------------------------------------------------------------------


def _initial_schema_up(conn: Connection) -> None:
    users.create(conn)
    api_keys.create(conn)


def _initial_schema_down(conn: Connection) -> None:
    api_keys.drop(conn, checkfirst=True)
    users.drop(conn, checkfirst=True)


def _api_keys_user_index_up(conn: Connection) -> None:
    # list_api_keys_for_user filters on user_id and sorts by created_at.
    conn.execute(text("CREATE INDEX ix_api_keys_user_id_created_at ON api_keys (user_id, created_at)"))


def _api_keys_user_index_down(conn: Connection) -> None:
    conn.execute(text("DROP INDEX IF EXISTS ix_api_keys_user_id_created_at"))


def _api_keys_unique_name_up(conn: Connection) -> None:
    # Key names are unique per owner; concurrent creates race on this index.
    conn.execute(text("CREATE UNIQUE INDEX uq_api_keys_user_id_name ON api_keys (user_id, name)"))


def _api_keys_unique_name_down(conn: Connection) -> None:
    conn.execute(text("DROP INDEX IF EXISTS uq_api_keys_user_id_name"))


MIGRATIONS: tuple[Migration, ...] = (
    Migration("001_initial_schema", _initial_schema_up, _initial_schema_down),
    Migration("002_api_keys_user_index", _api_keys_user_index_up, _api_keys_user_index_down),
    Migration("003_api_keys_unique_name", _api_keys_unique_name_up, _api_keys_unique_name_down),
)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MigrationRunner:
    """Applies, rolls back and reports on the ordered migration list.

    Usage:
        runner = MigrationRunner(store)
        runner.run_migrations()          # at process start, before serving
        runner.get_migration_status()    # read-only
        runner.rollback_last_migration() # operator action
    """

    def __init__(self, store: CredentialStore, migrations: Sequence[Migration] = MIGRATIONS) -> None:
        names = [m.name for m in migrations]
        if len(names) != len(set(names)):
            raise ValueError("Migration names must be unique.")
        self.store = store
        self.migrations: tuple[Migration, ...] = tuple(migrations)

    def _ensure_ledger(self) -> None:
        """Create the ledger table if it does not exist. Safe on every startup."""
        with self.store.transaction() as conn:
            schema_migrations.create(conn, checkfirst=True)

    @staticmethod
    def _is_applied(conn: Connection, name: str) -> bool:
        row = conn.execute(select(schema_migrations.c.id).where(schema_migrations.c.name == name)).fetchone()
        return row is not None

    def run_migrations(self) -> list[str]:
        """Apply every pending migration in list order. Returns the names applied.

        Raises SchemaError (chained to the underlying failure) on the first
        migration whose up() fails; the run stops there.
        """
        logger.info("Starting database migrations")
        self._ensure_ledger()

        applied: list[str] = []
        for migration in self.migrations:
            try:
                with self.store.transaction() as conn:
                    if self._is_applied(conn, migration.name):
                        logger.info("Migration %s already applied", migration.name)
                        continue
                    logger.info("Running migration %s", migration.name)
                    migration.up(conn)
                    conn.execute(schema_migrations.insert().values(name=migration.name, applied_at=_now_iso()))
            except Exception as exc:
                logger.error("Migration %s failed: %s", migration.name, exc)
                raise SchemaError(f"Migration {migration.name} failed.") from exc
            applied.append(migration.name)
            logger.info("Migration %s completed", migration.name)

        logger.info("Migrations complete (%d applied)", len(applied))
        return applied

    def rollback_last_migration(self) -> str:
        """Run down() for the most recently applied migration and drop its ledger row.

        Returns the rolled-back migration name. Raises MigrationNotFound when
        nothing has been applied, or when the ledger names a migration the
        code does not define (schema/code drift).
        """
        if not self.store.has_table(schema_migrations.name):
            raise MigrationNotFound("No migrations have been applied.")

        by_name = {m.name: m for m in self.migrations}
        with self.store.transaction() as conn:
            row = conn.execute(
                select(schema_migrations.c.name)
                .order_by(schema_migrations.c.applied_at.desc(), schema_migrations.c.id.desc())
                .limit(1)
            ).fetchone()
            if row is None:
                raise MigrationNotFound("No migrations have been applied.")
            name = row.name
            migration = by_name.get(name)
            if migration is None:
                logger.error("Ledger references unknown migration %s", name)
                raise MigrationNotFound(f"Migration {name} not found.")

            logger.info("Rolling back migration %s", name)
            try:
                migration.down(conn)
            except Exception as exc:
                logger.error("Rollback of %s failed: %s", name, exc)
                raise SchemaError(f"Rollback of {name} failed.") from exc
            conn.execute(schema_migrations.delete().where(schema_migrations.c.name == name))

        logger.info("Migration %s rolled back", name)
        return name

    def get_migration_status(self) -> list[MigrationStatus]:
        """Report applied/pending for each migration, in list order.

        Pure read: when the ledger table does not exist yet, every migration is
        reported as pending and nothing is created.
        """
        if not self.store.has_table(schema_migrations.name):
            return [MigrationStatus(name=m.name, applied=False) for m in self.migrations]

        rows = self.store.execute(
            select(schema_migrations.c.name, schema_migrations.c.applied_at).order_by(schema_migrations.c.applied_at)
        )
        applied_at = {r.name: parse_timestamp(r.applied_at) for r in rows}
        return [
            MigrationStatus(name=m.name, applied=m.name in applied_at, applied_at=applied_at.get(m.name))
            for m in self.migrations
        ]
