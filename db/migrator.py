"""
Versioned SQL migrations.

Migration files live in one directory and are named `<version>_<description>.sql`,
where the version is an integer (typically a timestamp such as 20250101120000).
They are applied in ascending version order, each inside its own transaction
together with its row in the `_migrations` tracking table. A file is only ever
applied if its version is greater than the highest version already recorded;
recorded rows are never updated, so a file edited after it was applied shows up
as drifted rather than being run again.
"""

from __future__ import annotations

import enum
import hashlib
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import cached_property
from pathlib import Path

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from db.connection import connect
from db.errors import MigrationFailure
from db.logging import logger
from db.sql import split_statements


MIGRATIONS_TABLE_NAME = "_migrations"

_FILENAME_RE = re.compile(r"^(\d+)_(.+)\.sql$")

_metadata = sa.MetaData()

migrations_table = sa.Table(
    MIGRATIONS_TABLE_NAME,
    _metadata,
    sa.Column("version", sa.BigInteger(), primary_key=True, autoincrement=False),
    sa.Column("description", sa.Text(), nullable=False),
    sa.Column("checksum", sa.String(96), nullable=False),
    sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
)


def _now() -> datetime:
    return datetime.now(tz=UTC)


def checksum(content: bytes) -> str:
    return hashlib.sha384(content).hexdigest()


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    path: Path

    @cached_property
    def content(self) -> bytes:
        return self.path.read_bytes()

    @property
    def sql(self) -> str:
        return self.content.decode("utf-8")

    @property
    def checksum(self) -> str:
        return checksum(self.content)


@dataclass(frozen=True)
class AppliedMigration:
    version: int
    description: str
    checksum: str
    applied_at: datetime


class MigrationState(str, enum.Enum):
    APPLIED = "applied"
    PENDING = "pending"
    DRIFTED = "drifted"
    MISSING = "missing"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class MigrationStatus:
    version: int
    description: str
    state: MigrationState
    applied_at: datetime | None = None


def load_migrations(directory: Path) -> list[Migration]:
    if not directory.is_dir():
        logger.warning("migrations_dir_missing", path=str(directory))
        return []

    by_version: dict[int, Migration] = {}
    for path in directory.glob("*.sql"):
        m = _FILENAME_RE.match(path.name)
        if not m:
            raise MigrationFailure(f"migration file {path.name} does not start with a numeric version")
        version = int(m.group(1))
        if version in by_version:
            raise MigrationFailure(
                f"duplicate migration version {version}: {by_version[version].path.name}, {path.name}",
                version=version,
            )
        by_version[version] = Migration(version=version, description=m.group(2).replace("_", " "), path=path)
    return [by_version[v] for v in sorted(by_version)]


class Migrator:
    def __init__(self, engine: Engine, migrations: list[Migration]) -> None:
        self.engine = engine
        self.migrations = sorted(migrations, key=lambda m: m.version)

    def ensure_table(self) -> None:
        with connect(self.engine) as conn:
            try:
                with conn.begin():
                    _metadata.create_all(conn, tables=[migrations_table], checkfirst=True)
            except DBAPIError as exc:
                raise MigrationFailure(f"cannot create {MIGRATIONS_TABLE_NAME} table: {exc.orig}") from exc

    def applied(self) -> list[AppliedMigration]:
        q = sa.select(migrations_table).order_by(migrations_table.c.version)
        with connect(self.engine) as conn:
            try:
                if not sa.inspect(conn).has_table(MIGRATIONS_TABLE_NAME):
                    return []
                rows = conn.execute(q).mappings().all()
            except DBAPIError as exc:
                raise MigrationFailure(f"cannot read {MIGRATIONS_TABLE_NAME} table: {exc.orig}") from exc
        return [AppliedMigration(**row) for row in rows]

    def pending(self, applied: list[AppliedMigration] | None = None) -> list[Migration]:
        if applied is None:
            applied = self.applied()
        latest = max((a.version for a in applied), default=None)
        return [m for m in self.migrations if latest is None or m.version > latest]

    def drifted(self, applied: list[AppliedMigration] | None = None) -> list[Migration]:
        if applied is None:
            applied = self.applied()
        recorded = {a.version: a.checksum for a in applied}
        return [m for m in self.migrations if m.version in recorded and recorded[m.version] != m.checksum]

    def status(self) -> list[MigrationStatus]:
        applied = self.applied()
        recorded = {a.version: a for a in applied}
        files = {m.version: m for m in self.migrations}
        pending = {m.version for m in self.pending(applied)}

        out: list[MigrationStatus] = []
        for version in sorted(recorded.keys() | files.keys()):
            record = recorded.get(version)
            migration = files.get(version)
            if record is None:
                state = MigrationState.PENDING if version in pending else MigrationState.SKIPPED
                out.append(MigrationStatus(version, migration.description, state))
                continue
            if migration is None:
                state = MigrationState.MISSING
            elif migration.checksum != record.checksum:
                state = MigrationState.DRIFTED
            else:
                state = MigrationState.APPLIED
            out.append(MigrationStatus(version, record.description, state, record.applied_at))
        return out

    def _apply(self, migration: Migration) -> None:
        try:
            statements = split_statements(migration.sql)
        except (UnicodeDecodeError, ValueError) as exc:
            raise MigrationFailure(f"cannot parse migration {migration.path.name}: {exc}", version=migration.version) from exc

        with connect(self.engine) as conn:
            conn = conn.execution_options(no_parameters=True)
            try:
                with conn.begin():
                    for stmt in statements:
                        conn.exec_driver_sql(stmt)
                    conn.execute(
                        migrations_table.insert(),
                        {
                            "version": migration.version,
                            "description": migration.description,
                            "checksum": migration.checksum,
                            "applied_at": _now(),
                        },
                    )
            except DBAPIError as exc:
                raise MigrationFailure(
                    f"migration {migration.version} ({migration.path.name}) failed: {exc.orig}",
                    version=migration.version,
                ) from exc

    def run(self) -> list[Migration]:
        """Apply every pending migration; returns the ones applied by this call."""
        self.ensure_table()
        applied = self.applied()

        for m in self.drifted(applied):
            logger.warning("migration_drifted", version=m.version, file=m.path.name)

        done: list[Migration] = []
        for migration in self.pending(applied):
            logger.info("migration_applying", version=migration.version, description=migration.description)
            self._apply(migration)
            done.append(migration)

        logger.info("migrations_complete", applied=len(done), total=len(applied) + len(done))
        return done
