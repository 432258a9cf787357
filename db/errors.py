from __future__ import annotations


class DbCommandError(Exception):
    """Base for every failure that ends a `db` invocation with a non-zero exit."""

    exit_code = 1


class MissingConfiguration(DbCommandError):
    def __init__(self, variable: str) -> None:
        super().__init__(f"missing required configuration: {variable}")
        self.variable = variable


class InvalidConfiguration(DbCommandError, ValueError):
    pass


class ConnectionFailure(DbCommandError):
    pass


class AlreadyExists(DbCommandError):
    pass


class NotFound(DbCommandError):
    pass


class MigrationFailure(DbCommandError):
    def __init__(self, message: str, version: int | None = None) -> None:
        super().__init__(message)
        self.version = version


class ScriptFailure(DbCommandError):
    pass
