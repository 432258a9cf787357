from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from db.connection import connect
from db.errors import ScriptFailure
from db.sql import split_statements


def run_seed(engine: Engine, path: Path) -> int:
    """
    Run the seed script at `path` as-is and return the number of statements executed.

    Nothing is recorded about the run; making the script safe to repeat (e.g. with
    `ON CONFLICT DO NOTHING`) is up to whoever writes it.
    """
    try:
        script = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ScriptFailure(f"cannot read seed script {path}: {exc}") from exc
    try:
        statements = split_statements(script)
    except ValueError as exc:
        raise ScriptFailure(f"cannot parse seed script {path}: {exc}") from exc

    with connect(engine) as conn:
        conn = conn.execution_options(no_parameters=True)
        try:
            with conn.begin():
                for stmt in statements:
                    conn.exec_driver_sql(stmt)
        except DBAPIError as exc:
            raise ScriptFailure(f"seed script {path.name} failed: {exc.orig}") from exc

    return len(statements)
