"""
auth/store.py -- SQLAlchemy Core persistence layer for credentials.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_api_key are the mappers. Services never touch SQL
directly, and the store owns no business rules: expiry, ownership and quota
decisions all live in the services.

Schema:
  The Table objects below describe the CURRENT shape of the schema so queries
  can be built with SQLAlchemy Core. The store never creates them. Tables are
  created and dropped only by auth/migrations.py, which records every change
  in the schema_migrations ledger.

Security:
  All queries use bound parameters. No f-strings in SQL.
  API keys are looked up by their HMAC digest; raw keys never reach the store.

Resource limits:
  Server databases get a bounded QueuePool (pool_size + max_overflow) with a
  checkout timeout, and PostgreSQL connections get a statement_timeout. SQLite
  gets a driver busy timeout instead (its pools do not accept sizing args).
  Pool exhaustion, timeouts and connection failures surface as
  core.errors.Unavailable so callers can fail fast instead of hanging.
  Missing tables or columns surface as core.errors.SchemaError.

Transactions:
  SQLite connections run with the driver's implicit transaction handling
  switched off and an explicit BEGIN on every SQLAlchemy transaction, so DDL
  commits and rolls back with the surrounding unit of work.

  IntegrityError is NOT translated: ApiKeyService relies on the UNIQUE
  constraints on key_hash and (user_id, name) to detect collisions and
  duplicate names under concurrency.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    inspect,
    select,
    text,
)
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine

from auth.models import ApiKey, Permission, RateLimit, SubscriptionTier, User
from core.errors import SchemaError, Unavailable

logger = logging.getLogger("authgate.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("subscription", String(50), nullable=False, server_default="free"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# user_id is a reference, not a foreign key: key rows outlive their owner and
# validation treats a missing owner as an invalid key.
api_keys = Table(
    "api_keys",
    metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("user_id", String(32), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # display only
    Column("name", String(100), nullable=False),
    Column("permissions", Text, nullable=False, server_default="[]"),  # JSON array
    Column("rate_limit", Text, nullable=False),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32)),
    Column("last_used_at", String(32)),
)

schema_migrations = Table(
    "schema_migrations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("applied_at", String(32), nullable=False, server_default=text("CURRENT_TIMESTAMP")),
)


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL journal mode.

    pysqlite on its own commits before DDL and never opens a transaction for
    it, so a migration's CREATE TABLE could not be rolled back together with
    its ledger row. With isolation_level=None the driver stays out of the way
    and _begin_sqlite emits BEGIN itself.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_sqlite(conn) -> None:
    conn.exec_driver_sql("BEGIN")


def _engine_for(db_url: str, pool_size: int, max_overflow: int, pool_timeout: float, statement_timeout_ms: int) -> Engine:
    if db_url.startswith("sqlite"):
        # Plain :memory: and shared-cache memory URIs use SingletonThreadPool,
        # which rejects pool sizing arguments.
        connect_args = {"check_same_thread": False, "timeout": statement_timeout_ms / 1000}
        engine = create_engine(db_url, connect_args=connect_args)
        event.listen(engine, "connect", _set_sqlite_pragmas)
        event.listen(engine, "begin", _begin_sqlite)
        return engine

    connect_args: dict = {}
    if db_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        connect_args["connect_timeout"] = max(1, int(pool_timeout))
    return create_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 string into an aware UTC datetime.

    Naive values (e.g. CURRENT_TIMESTAMP server defaults) are treated as UTC.
    """
    if not value:
        return None
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# SQLite reports schema problems as OperationalError too. These mean a missing
# or failed migration, not an outage.
_SCHEMA_ERROR_MARKERS = ("no such table", "no such column", "already exists", "has no column")


def _is_schema_error(exc: sa_exc.DBAPIError) -> bool:
    message = str(exc.orig).lower()
    return any(marker in message for marker in _SCHEMA_ERROR_MARKERS)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map pool exhaustion and connectivity failures onto Unavailable.

    Schema mismatches become SchemaError. The raw driver message is logged
    here and never travels further up.
    """
    try:
        yield
    except sa_exc.TimeoutError as exc:
        logger.error("Connection pool exhausted during %s: %s", operation, exc)
        raise Unavailable() from exc
    except sa_exc.OperationalError as exc:
        if _is_schema_error(exc):
            logger.error("Schema mismatch during %s: %s", operation, exc)
            raise SchemaError() from exc
        logger.error("Database operation %s failed: %s", operation, exc)
        raise Unavailable() from exc
    except sa_exc.DBAPIError as exc:
        if exc.connection_invalidated:
            logger.error("Database connection lost during %s: %s", operation, exc)
            raise Unavailable() from exc
        raise


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and ApiKey records plus the migrations ledger.

    Usage:
        store = CredentialStore("sqlite:///authgate.db")
        MigrationRunner(store).run_migrations()
        user = store.insert_user(User(email="a@example.com", username="a", password_hash=h))
        store.close()
    """

    def __init__(
        self,
        db_url: str,
        pool_size: int = 10,
        max_overflow: int = 5,
        pool_timeout: float = 5.0,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.db_url = db_url
        self.engine: Engine = _engine_for(db_url, pool_size, max_overflow, pool_timeout, statement_timeout_ms)

    @classmethod
    def from_settings(cls, settings) -> CredentialStore:
        return cls(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Generic capabilities (used by MigrationRunner only)
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a Connection inside one transaction; commit on success, roll back on error."""
        with _translate_errors("transaction"):
            with self.engine.begin() as conn:
                yield conn

    def execute(self, statement, params: dict | None = None):
        """Run a single statement in its own transaction and return the buffered result."""
        if isinstance(statement, str):
            statement = text(statement)
        with _translate_errors("execute"):
            with self.engine.begin() as conn:
                result = conn.execute(statement, params or {})
                return result.fetchall() if result.returns_rows else result.rowcount

    def has_table(self, name: str) -> bool:
        with _translate_errors("has_table"):
            return inspect(self.engine).has_table(name)

    def ping(self) -> bool:
        """Round-trip a trivial query. Raises Unavailable if the database is unreachable."""
        with _translate_errors("ping"):
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def insert_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps assigned.

        Raises sqlalchemy.exc.IntegrityError if the email or username already
        exists. Callers treat that as a signal that a concurrent request won.
        """
        user_id = uuid.uuid4().hex
        now = _now_iso()
        with _translate_errors("insert_user"):
            with self.engine.begin() as conn:
                conn.execute(
                    users.insert().values(
                        id=user_id,
                        email=user.email,
                        username=user.username,
                        password_hash=user.password_hash,
                        subscription=SubscriptionTier(user.subscription).value,
                        created_at=now,
                        updated_at=now,
                    )
                )
        return User(
            id=user_id,
            email=user.email,
            username=user.username,
            password_hash=user.password_hash,
            subscription=SubscriptionTier(user.subscription),
            created_at=parse_timestamp(now),
            updated_at=parse_timestamp(now),
        )

    def find_user_by_id(self, user_id: str) -> User | None:
        with _translate_errors("find_user_by_id"):
            with self.engine.connect() as conn:
                row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_email(self, email: str) -> User | None:
        """Look up a user by email. Emails are stored lowercased by UserService."""
        with _translate_errors("find_user_by_email"):
            with self.engine.connect() as conn:
                row = conn.execute(users.select().where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_username(self, username: str) -> User | None:
        with _translate_errors("find_user_by_username"):
            with self.engine.connect() as conn:
                row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user_subscription(self, user_id: str, subscription: SubscriptionTier) -> bool:
        """Returns True if a row was updated, False if user_id was not found."""
        with _translate_errors("update_user_subscription"):
            with self.engine.begin() as conn:
                result = conn.execute(
                    users.update()
                    .where(users.c.id == user_id)
                    .values(subscription=SubscriptionTier(subscription).value, updated_at=_now_iso())
                )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def insert_api_key(self, api_key: ApiKey) -> ApiKey:
        """Insert a key record and return it with id and created_at assigned.

        Raises sqlalchemy.exc.IntegrityError when key_hash collides with an
        existing key. The raw key (api_key.key) is never written.
        """
        key_id = uuid.uuid4().hex
        now = _now_iso()
        with _translate_errors("insert_api_key"):
            with self.engine.begin() as conn:
                conn.execute(
                    api_keys.insert().values(
                        id=key_id,
                        user_id=api_key.user_id,
                        key_hash=api_key.key_hash,
                        key_prefix=api_key.key_prefix,
                        name=api_key.name,
                        permissions=json.dumps([p.to_dict() for p in api_key.permissions]),
                        rate_limit=json.dumps(api_key.rate_limit.to_dict()),
                        created_at=now,
                        expires_at=_to_iso(api_key.expires_at),
                    )
                )
        return ApiKey(
            id=key_id,
            user_id=api_key.user_id,
            name=api_key.name,
            key_hash=api_key.key_hash,
            key_prefix=api_key.key_prefix,
            permissions=list(api_key.permissions),
            rate_limit=api_key.rate_limit,
            created_at=parse_timestamp(now),
            expires_at=parse_timestamp(_to_iso(api_key.expires_at)),
        )

    def find_api_key_by_value(self, key_hash: str) -> ApiKey | None:
        """Look up a key by its stored value (the HMAC digest). O(1) via UNIQUE index."""
        with _translate_errors("find_api_key_by_value"):
            with self.engine.connect() as conn:
                row = conn.execute(api_keys.select().where(api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def find_api_key_by_id(self, key_id: str) -> ApiKey | None:
        with _translate_errors("find_api_key_by_id"):
            with self.engine.connect() as conn:
                row = conn.execute(api_keys.select().where(api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys_for_user(self, user_id: str) -> list[ApiKey]:
        """Return all keys for a user, newest first."""
        with _translate_errors("list_api_keys_for_user"):
            with self.engine.connect() as conn:
                rows = conn.execute(
                    api_keys.select()
                    .where(api_keys.c.user_id == user_id)
                    .order_by(api_keys.c.created_at.desc(), api_keys.c.id)
                ).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def api_key_name_exists(self, user_id: str, name: str) -> bool:
        with _translate_errors("api_key_name_exists"):
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(api_keys.c.id).where((api_keys.c.user_id == user_id) & (api_keys.c.name == name)).limit(1)
                ).fetchone()
        return row is not None

    def delete_api_key(self, key_id: str) -> bool:
        """Hard-delete a key. Returns True if a row was removed."""
        with _translate_errors("delete_api_key"):
            with self.engine.begin() as conn:
                result = conn.execute(api_keys.delete().where(api_keys.c.id == key_id))
        return result.rowcount > 0

    def update_last_used_at(self, key_id: str, when: datetime | None = None) -> None:
        """Stamp last_used_at. Last write wins; no ordering is enforced."""
        stamp = _to_iso(when) if when is not None else _now_iso()
        with _translate_errors("update_last_used_at"):
            with self.engine.begin() as conn:
                conn.execute(api_keys.update().where(api_keys.c.id == key_id).values(last_used_at=stamp))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        subscription=SubscriptionTier(row.subscription),
        created_at=parse_timestamp(row.created_at),
        updated_at=parse_timestamp(row.updated_at),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        permissions=[Permission.from_dict(p) for p in json.loads(row.permissions or "[]")],
        rate_limit=RateLimit.from_dict(json.loads(row.rate_limit)),
        created_at=parse_timestamp(row.created_at),
        expires_at=parse_timestamp(row.expires_at),
        last_used_at=parse_timestamp(row.last_used_at),
    )
