from __future__ import annotations

import secrets
import string
from pathlib import Path

from db import connection
from db.errors import NotFound
from db.settings import DatabaseConfig


_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def fork_name(base_name: str) -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(30))
    return f"{base_name}_{suffix}".lower()


def fork_database(config: DatabaseConfig) -> DatabaseConfig:
    """
    Create a dedicated copy of the configured (already migrated) database for one test.

    PostgreSQL forks use `CREATE DATABASE ... TEMPLATE`, so nothing else may be
    connected to the source database while this runs. SQLite forks copy the file.
    """
    url = connection.normalize_url(config.url)
    source = connection.database_name(url)
    if url.get_backend_name() == "sqlite":
        path = Path(source)
        name = str(path.with_name(fork_name(path.stem) + path.suffix))
    else:
        name = fork_name(source)

    fork_url = url.set(database=name)
    connection.create_database(fork_url, template=source)
    return config.model_copy(update={"url": fork_url.render_as_string(hide_password=False)})


def drop_fork(config: DatabaseConfig) -> None:
    try:
        connection.drop_database(config.url)
    except NotFound:
        pass
