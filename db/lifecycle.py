from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from db import connection
from db.errors import AlreadyExists, NotFound
from db.logging import logger
from db.migrator import Migration, MigrationStatus, Migrator, load_migrations
from db.seed import run_seed
from db.settings import AppConfig, Environment


@dataclass(frozen=True)
class CommandContext:
    environment: Environment
    config: AppConfig
    root: Path
    # Treat create/drop conflicts as errors rather than warnings.
    strict: bool = True

    @property
    def database_url(self) -> str:
        return connection.resolve_url(self.config.database.url, self.root)

    @property
    def migrations_dir(self) -> Path:
        return self.root / self.config.database.migrations_dir

    @property
    def seed_file(self) -> Path:
        return self.root / self.config.database.seed_file

    def migrator(self) -> Migrator:
        return Migrator(connection.create_engine(self.database_url), load_migrations(self.migrations_dir))


def _log(ctx: CommandContext, event: str, **kw: Any) -> None:
    logger.info(event, environment=str(ctx.environment), database=connection.safe_url(ctx.database_url), **kw)


def create(ctx: CommandContext) -> None:
    try:
        connection.create_database(ctx.database_url)
    except AlreadyExists as exc:
        if ctx.strict:
            raise
        logger.warning("database_exists", message=str(exc))
        return
    _log(ctx, "create_complete")


def drop(ctx: CommandContext) -> None:
    try:
        connection.drop_database(ctx.database_url)
    except NotFound as exc:
        if ctx.strict:
            raise
        logger.warning("database_missing", message=str(exc))
        return
    _log(ctx, "drop_complete")


def migrate(ctx: CommandContext) -> list[Migration]:
    migrator = ctx.migrator()
    try:
        applied = migrator.run()
    finally:
        migrator.engine.dispose()
    _log(ctx, "migrate_complete", applied=[m.version for m in applied])
    return applied


def reset(ctx: CommandContext) -> list[Migration]:
    drop(ctx)
    create(ctx)
    return migrate(ctx)


def seed(ctx: CommandContext) -> int:
    engine = connection.create_engine(ctx.database_url)
    try:
        count = run_seed(engine, ctx.seed_file)
    finally:
        engine.dispose()
    _log(ctx, "seed_complete", statements=count)
    return count


def status(ctx: CommandContext) -> list[MigrationStatus]:
    migrator = ctx.migrator()
    try:
        entries = migrator.status()
    finally:
        migrator.engine.dispose()
    for entry in entries:
        logger.info(
            "migration_status",
            version=entry.version,
            description=entry.description,
            state=entry.state.value,
            applied_at=entry.applied_at.isoformat() if entry.applied_at else None,
        )
    return entries


COMMANDS: dict[str, Callable[[CommandContext], Any]] = {
    "create": create,
    "drop": drop,
    "migrate": migrate,
    "reset": reset,
    "seed": seed,
    "status": status,
}
