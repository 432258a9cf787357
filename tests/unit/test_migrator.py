from __future__ import annotations

from pathlib import Path

import pytest
import sqlalchemy as sa

from db.connection import create_database, create_engine
from db.errors import MigrationFailure
from db.migrator import MigrationState, Migrator, checksum, load_migrations


INIT_SQL = "CREATE TABLE tasks (id INTEGER PRIMARY KEY, description TEXT NOT NULL);\n"
INDEX_SQL = "CREATE INDEX tasks_description_idx ON tasks (description);\n"


@pytest.fixture()
def engine(sqlite_url: str):
    create_database(sqlite_url)
    engine = create_engine(sqlite_url)
    yield engine
    engine.dispose()


def _migrator(engine, project: Path) -> Migrator:
    return Migrator(engine, load_migrations(project / "db" / "migrations"))


def _versions(migrator: Migrator) -> list[int]:
    return [a.version for a in migrator.applied()]


def test_load_migrations_orders_by_version(project: Path, write_migration) -> None:
    write_migration("10_later.sql", "SELECT 1;")
    write_migration("0002_add_index.sql", INDEX_SQL)
    write_migration("0001_init.sql", INIT_SQL)
    (project / "db" / "migrations" / "README.md").write_text("not a migration")

    migrations = load_migrations(project / "db" / "migrations")

    assert [m.version for m in migrations] == [1, 2, 10]
    assert migrations[1].description == "add index"
    assert migrations[0].checksum == checksum(INIT_SQL.encode("utf-8"))


def test_load_migrations_missing_dir(tmp_path: Path) -> None:
    assert load_migrations(tmp_path / "nope") == []


def test_load_migrations_rejects_unversioned_file(write_migration, project: Path) -> None:
    write_migration("init.sql", INIT_SQL)

    with pytest.raises(MigrationFailure, match="numeric version"):
        load_migrations(project / "db" / "migrations")


def test_load_migrations_rejects_duplicate_version(write_migration, project: Path) -> None:
    write_migration("1_a.sql", INIT_SQL)
    write_migration("001_b.sql", INDEX_SQL)

    with pytest.raises(MigrationFailure, match="duplicate migration version 1") as excinfo:
        load_migrations(project / "db" / "migrations")
    assert excinfo.value.version == 1


def test_run_applies_in_order_then_is_a_no_op(engine, project: Path, write_migration) -> None:
    write_migration("0002_add_index.sql", INDEX_SQL)
    write_migration("0001_init.sql", INIT_SQL)
    migrator = _migrator(engine, project)

    first = migrator.run()
    second = migrator.run()

    assert [m.version for m in first] == [1, 2]
    assert second == []
    assert _versions(migrator) == [1, 2]
    assert sa.inspect(engine).has_table("tasks")


def test_applied_is_empty_before_table_exists(engine, project: Path) -> None:
    migrator = _migrator(engine, project)

    assert migrator.applied() == []
    assert migrator.pending() == []


def test_failed_file_rolls_back_and_keeps_earlier_files(engine, project: Path, write_migration) -> None:
    write_migration("0001_init.sql", INIT_SQL)
    write_migration("0002_broken.sql", "CREATE TABLE half_done (id INTEGER);\nINSERT INTO no_such_table VALUES (1);\n")
    write_migration("0003_after.sql", "CREATE TABLE after_broken (id INTEGER);\n")
    migrator = _migrator(engine, project)

    with pytest.raises(MigrationFailure, match="migration 2") as excinfo:
        migrator.run()

    assert excinfo.value.version == 2
    assert _versions(migrator) == [1]
    inspector = sa.inspect(engine)
    assert inspector.has_table("tasks")
    assert not inspector.has_table("half_done")
    assert not inspector.has_table("after_broken")


def test_fixed_file_applies_on_next_run(engine, project: Path, write_migration) -> None:
    write_migration("0001_init.sql", INIT_SQL)
    broken = write_migration("0002_add_index.sql", "CREATE INDEX oops ON missing_table (x);\n")
    with pytest.raises(MigrationFailure):
        _migrator(engine, project).run()

    broken.write_text(INDEX_SQL, encoding="utf-8")
    applied = _migrator(engine, project).run()

    assert [m.version for m in applied] == [2]


def test_changed_file_is_drifted_not_reapplied(engine, project: Path, write_migration) -> None:
    path = write_migration("0001_init.sql", INIT_SQL)
    _migrator(engine, project).run()

    path.write_text(INIT_SQL + "-- edited afterwards\n", encoding="utf-8")
    migrator = _migrator(engine, project)

    assert [m.version for m in migrator.drifted()] == [1]
    assert migrator.run() == []
    assert [s.state for s in migrator.status()] == [MigrationState.DRIFTED]


def test_older_unapplied_file_is_skipped(engine, project: Path, write_migration) -> None:
    write_migration("0002_init.sql", INIT_SQL)
    _migrator(engine, project).run()

    write_migration("0001_late_arrival.sql", "CREATE TABLE late (id INTEGER);\n")
    write_migration("0003_next.sql", "CREATE TABLE next_one (id INTEGER);\n")
    migrator = _migrator(engine, project)

    assert [m.version for m in migrator.run()] == [3]
    assert not sa.inspect(engine).has_table("late")
    states = {s.version: s.state for s in migrator.status()}
    assert states == {1: MigrationState.SKIPPED, 2: MigrationState.APPLIED, 3: MigrationState.APPLIED}


def test_status_reports_pending_and_missing(engine, project: Path, write_migration) -> None:
    gone = write_migration("0001_init.sql", INIT_SQL)
    _migrator(engine, project).run()
    gone.unlink()
    write_migration("0002_add_index.sql", INDEX_SQL)

    statuses = _migrator(engine, project).status()

    assert [(s.version, s.state) for s in statuses] == [
        (1, MigrationState.MISSING),
        (2, MigrationState.PENDING),
    ]
    assert statuses[0].applied_at is not None
    assert statuses[0].description == "init"


def test_sqlite_trigger_migration(engine, project: Path, write_migration) -> None:
    write_migration(
        "0001_init.sql",
        "CREATE TABLE tasks (id INTEGER PRIMARY KEY, description TEXT NOT NULL, edits INTEGER NOT NULL DEFAULT 0);\n"
        "CREATE TRIGGER tasks_count_edits AFTER UPDATE OF description ON tasks\n"
        "BEGIN\n"
        "    UPDATE tasks SET edits = edits + 1 WHERE id = NEW.id;\n"
        "END;\n",
    )
    _migrator(engine, project).run()

    with engine.begin() as conn:
        conn.execute(sa.text("INSERT INTO tasks (id, description) VALUES (1, 'draft')"))
        conn.execute(sa.text("UPDATE tasks SET description = 'final' WHERE id = 1"))
        edits = conn.execute(sa.text("SELECT edits FROM tasks WHERE id = 1")).scalar_one()

    assert edits == 1


def test_unreadable_database_is_a_migration_failure(sqlite_url: str, project: Path, write_migration) -> None:
    from db.connection import database_name

    write_migration("0001_init.sql", INIT_SQL)
    path = Path(database_name(sqlite_url))
    path.parent.mkdir(parents=True)
    path.write_bytes(b"not a database " * 100)
    engine = create_engine(sqlite_url)

    try:
        with pytest.raises(MigrationFailure, match="_migrations"):
            _migrator(engine, project).run()
    finally:
        engine.dispose()
