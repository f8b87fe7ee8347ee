"""Tests for auth/migrations.py against a named shared-memory SQLite store.

Covers:
- run_migrations applies each migration exactly once across runs
- get_migration_status is read-only and reports applied/pending in order
- rollback_last_migration undoes only the newest migration
- A failing migration halts the run with SchemaError and leaves no DDL behind
- Rollback with an empty or drifted ledger raises MigrationNotFound
"""

import pytest
from sqlalchemy import text

from auth.migrations import MIGRATIONS, Migration, MigrationRunner
from auth.models import User
from core.errors import MigrationNotFound, SchemaError

NAMES = [m.name for m in MIGRATIONS]


def _ledger_names(store) -> list[str]:
    return [r.name for r in store.execute("SELECT name FROM schema_migrations ORDER BY id")]


def _index_names(store) -> set[str]:
    return {r.name for r in store.execute("SELECT name FROM sqlite_master WHERE type = 'index'")}


def test_run_migrations_applies_all_in_order(memory_store):
    applied = MigrationRunner(memory_store).run_migrations()
    assert applied == NAMES
    assert _ledger_names(memory_store) == NAMES
    assert memory_store.has_table("users")
    assert memory_store.has_table("api_keys")


def test_run_migrations_twice_is_idempotent(memory_store):
    runner = MigrationRunner(memory_store)
    runner.run_migrations()
    assert runner.run_migrations() == []
    assert _ledger_names(memory_store) == NAMES


def test_status_after_migrate_reports_all_applied(memory_store):
    runner = MigrationRunner(memory_store)
    runner.run_migrations()
    status = runner.get_migration_status()
    assert [s.name for s in status] == NAMES
    assert all(s.applied for s in status)
    assert all(s.applied_at is not None for s in status)


def test_status_on_fresh_database_is_pending_and_creates_nothing(memory_store):
    status = MigrationRunner(memory_store).get_migration_status()
    assert [s.applied for s in status] == [False] * len(NAMES)
    assert not memory_store.has_table("schema_migrations")


def test_rollback_leaves_newest_pending(memory_store):
    runner = MigrationRunner(memory_store)
    runner.run_migrations()
    assert runner.rollback_last_migration() == NAMES[-1]

    status = {s.name: s.applied for s in runner.get_migration_status()}
    assert status[NAMES[-1]] is False
    assert all(status[n] for n in NAMES[:-1])


def test_rollback_then_migrate_reapplies_only_rolled_back(memory_store):
    runner = MigrationRunner(memory_store)
    runner.run_migrations()
    runner.rollback_last_migration()
    assert runner.run_migrations() == [NAMES[-1]]


def test_rollback_everything_drops_tables(memory_store):
    runner = MigrationRunner(memory_store)
    runner.run_migrations()
    for _ in NAMES:
        runner.rollback_last_migration()
    assert not memory_store.has_table("users")
    assert _ledger_names(memory_store) == []


def test_rollback_with_no_ledger_raises(memory_store):
    with pytest.raises(MigrationNotFound):
        MigrationRunner(memory_store).rollback_last_migration()


def test_rollback_with_empty_ledger_raises(memory_store):
    runner = MigrationRunner(memory_store)
    runner.run_migrations()
    for _ in NAMES:
        runner.rollback_last_migration()
    with pytest.raises(MigrationNotFound):
        runner.rollback_last_migration()


def test_rollback_of_unknown_ledger_entry_raises(memory_store):
    MigrationRunner(memory_store).run_migrations()
    with pytest.raises(MigrationNotFound):
        MigrationRunner(memory_store, migrations=MIGRATIONS[:1]).rollback_last_migration()


def test_failing_migration_halts_run(memory_store):
    def boom(conn):
        raise RuntimeError("boom")

    def never(conn):
        raise AssertionError("later migrations must not run")

    migrations = (
        MIGRATIONS[0],
        Migration("002_broken", boom, lambda conn: None),
        Migration("003_after_broken", never, lambda conn: None),
    )
    runner = MigrationRunner(memory_store, migrations=migrations)
    with pytest.raises(SchemaError) as exc_info:
        runner.run_migrations()
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert _ledger_names(memory_store) == [MIGRATIONS[0].name]


def test_failing_migration_records_no_ledger_row(memory_store):
    insert_sql = text(
        "INSERT INTO users (id, email, username, password_hash, subscription, created_at, updated_at) "
        "VALUES ('x', 'x@example.com', 'xx', 'h', 'free', '2024-01-01', '2024-01-01')"
    )

    def insert_then_fail(conn):
        conn.execute(insert_sql)
        raise RuntimeError("fail after write")

    migrations = (MIGRATIONS[0], Migration("002_bad", insert_then_fail, lambda conn: None))
    runner = MigrationRunner(memory_store, migrations=migrations)
    with pytest.raises(SchemaError):
        runner.run_migrations()
    assert "002_bad" not in _ledger_names(memory_store)
    # DML in the failed migration is rolled back with its transaction
    assert memory_store.find_user_by_id("x") is None


def test_duplicate_migration_names_rejected(memory_store):
    with pytest.raises(ValueError):
        MigrationRunner(memory_store, migrations=(MIGRATIONS[0], MIGRATIONS[0]))


def test_store_usable_after_migrations(memory_store):
    MigrationRunner(memory_store).run_migrations()
    user = memory_store.insert_user(User(email="a@example.com", username="alice", password_hash="h"))
    assert memory_store.find_user_by_id(user.id).email == "a@example.com"


def test_failing_migration_rolls_back_its_ddl(memory_store):
    def create_then_fail(conn):
        conn.execute(text("CREATE TABLE half_applied (id INTEGER PRIMARY KEY)"))
        raise RuntimeError("fail after DDL")

    migrations = (MIGRATIONS[0], Migration("002_half_applied", create_then_fail, lambda conn: None))
    runner = MigrationRunner(memory_store, migrations=migrations)
    with pytest.raises(SchemaError):
        runner.run_migrations()
    assert not memory_store.has_table("half_applied")
    assert _ledger_names(memory_store) == [MIGRATIONS[0].name]

    # The schema is back at the last good migration, so a fixed version applies cleanly.
    def create(conn):
        conn.execute(text("CREATE TABLE half_applied (id INTEGER PRIMARY KEY)"))

    fixed = (MIGRATIONS[0], Migration("002_half_applied", create, lambda conn: None))
    assert MigrationRunner(memory_store, migrations=fixed).run_migrations() == ["002_half_applied"]
    assert memory_store.has_table("half_applied")


def test_rollback_of_ddl_migration_restores_previous_schema(memory_store):
    runner = MigrationRunner(memory_store)
    runner.run_migrations()
    assert "uq_api_keys_user_id_name" in _index_names(memory_store)
    runner.rollback_last_migration()
    assert "uq_api_keys_user_id_name" not in _index_names(memory_store)
