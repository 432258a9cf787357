from __future__ import annotations

import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import URL, Connection, Engine, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError
from sqlalchemy.pool import NullPool

from db.errors import AlreadyExists, ConnectionFailure, InvalidConfiguration, NotFound
from db.logging import logger


SERVER_DATABASE = "postgres"


def normalize_url(url: str) -> URL:
    # psycopg 3 is the only PostgreSQL driver we ship; rewrite the common variants.
    url = url.replace("postgresql+psycopg2://", "postgresql+psycopg://")
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    try:
        return make_url(url)
    except ArgumentError as exc:
        raise InvalidConfiguration(f"invalid database url: {exc}") from exc


def safe_url(url: URL | str) -> str:
    if isinstance(url, str):
        url = normalize_url(url)
    return url.render_as_string(hide_password=True)


def resolve_url(url: str, root: Path) -> str:
    """Anchor a relative SQLite database path at `root`; other URLs are returned unchanged."""
    parsed = normalize_url(url)
    if parsed.get_backend_name() != "sqlite" or not parsed.database or parsed.database == ":memory:":
        return url
    path = Path(parsed.database)
    if path.is_absolute():
        return url
    return parsed.set(database=str(root / path)).render_as_string(hide_password=False)


def _enable_sqlite_transactions(engine: Engine) -> None:
    # pysqlite commits implicitly before DDL; take over BEGIN so a migration file is atomic.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Connection) -> None:
        conn.exec_driver_sql("BEGIN")


def create_engine(url: str | URL) -> Engine:
    if isinstance(url, str):
        url = normalize_url(url)
    try:
        engine = sa.create_engine(url, poolclass=NullPool)
    except (ArgumentError, ImportError) as exc:
        raise InvalidConfiguration(f"cannot use database url {safe_url(url)}: {exc}") from exc
    if engine.dialect.name == "sqlite":
        _enable_sqlite_transactions(engine)
    return engine


@contextmanager
def connect(engine: Engine, *, autocommit: bool = False) -> Iterator[Connection]:
    # pysqlite would create a missing file on connect.
    if engine.dialect.name == "sqlite" and not _sqlite_path(engine.url).is_file():
        raise ConnectionFailure(f"could not connect to {safe_url(engine.url)}: database file does not exist")
    try:
        conn = engine.connect()
    except DBAPIError as exc:
        raise ConnectionFailure(f"could not connect to {safe_url(engine.url)}: {exc.orig}") from exc
    with conn:
        if autocommit:
            conn = conn.execution_options(isolation_level="AUTOCOMMIT")
        yield conn


def database_name(url: str | URL) -> str:
    if isinstance(url, str):
        url = normalize_url(url)
    if not url.database or url.database == ":memory:":
        raise InvalidConfiguration(f"database url {safe_url(url)} does not name a database")
    return url.database


def _sqlite_path(url: URL) -> Path:
    return Path(database_name(url))


@contextmanager
def _server_connection(url: URL) -> Iterator[Connection]:
    engine = create_engine(url.set(database=SERVER_DATABASE))
    try:
        with connect(engine, autocommit=True) as conn:
            yield conn
    finally:
        engine.dispose()


def _pg_exists(conn: Connection, name: str) -> bool:
    q = sa.text("SELECT 1 FROM pg_database WHERE datname = :name")
    try:
        return conn.execute(q, {"name": name}).scalar() is not None
    except DBAPIError as exc:
        raise ConnectionFailure(f'could not look up database "{name}": {exc.orig}') from exc


def _backend(url: URL) -> str:
    backend = url.get_backend_name()
    if backend not in ("postgresql", "sqlite"):
        raise InvalidConfiguration(f"unsupported database backend: {backend}")
    return backend


def database_exists(url: str | URL) -> bool:
    if isinstance(url, str):
        url = normalize_url(url)
    name = database_name(url)
    if _backend(url) == "sqlite":
        return _sqlite_path(url).is_file()
    with _server_connection(url) as conn:
        return _pg_exists(conn, name)


def create_database(url: str | URL, template: str | None = None) -> None:
    """Create the database named by `url`, optionally as a copy of `template`.

    For PostgreSQL this runs against the server-level `postgres` database; for
    SQLite the database is the file itself.
    """
    if isinstance(url, str):
        url = normalize_url(url)
    name = database_name(url)

    if _backend(url) == "sqlite":
        path = _sqlite_path(url)
        if path.exists():
            raise AlreadyExists(f'database "{name}" already exists')
        path.parent.mkdir(parents=True, exist_ok=True)
        if template is not None:
            shutil.copyfile(template, path)
        else:
            path.touch()
        logger.info("database_created", database=name, template=template)
        return

    with _server_connection(url) as conn:
        if _pg_exists(conn, name):
            raise AlreadyExists(f'database "{name}" already exists')
        preparer = conn.dialect.identifier_preparer
        stmt = f"CREATE DATABASE {preparer.quote(name)}"
        if template is not None:
            stmt += f" TEMPLATE {preparer.quote(template)}"
        try:
            conn.exec_driver_sql(stmt)
        except DBAPIError as exc:
            raise ConnectionFailure(f'could not create database "{name}": {exc.orig}') from exc
    logger.info("database_created", database=name, template=template)


def drop_database(url: str | URL) -> None:
    if isinstance(url, str):
        url = normalize_url(url)
    name = database_name(url)

    if _backend(url) == "sqlite":
        path = _sqlite_path(url)
        if not path.exists():
            raise NotFound(f'database "{name}" does not exist')
        path.unlink()
        logger.info("database_dropped", database=name)
        return

    with _server_connection(url) as conn:
        if not _pg_exists(conn, name):
            raise NotFound(f'database "{name}" does not exist')
        try:
            terminated = conn.execute(
                sa.text(
                    "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                    "WHERE datname = :name AND pid <> pg_backend_pid()"
                ),
                {"name": name},
            ).fetchall()
        except DBAPIError as exc:
            raise ConnectionFailure(f'could not disconnect sessions from "{name}": {exc.orig}') from exc
        if terminated:
            logger.info("connections_terminated", database=name, count=len(terminated))
        try:
            conn.exec_driver_sql(f"DROP DATABASE {conn.dialect.identifier_preparer.quote(name)}")
        except DBAPIError as exc:
            raise ConnectionFailure(f'could not drop database "{name}": {exc.orig}') from exc
    logger.info("database_dropped", database=name)
