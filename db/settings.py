from __future__ import annotations

import enum
import tomllib
from collections.abc import Mapping, Sequence
from ipaddress import IPv4Address, IPv6Address
from pathlib import Path
from typing import ClassVar

from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import (
    BaseSettings,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from db.errors import InvalidConfiguration, MissingConfiguration
from db.logging import logger


ENV_PREFIX = "APP_"
NESTED_DELIMITER = "__"
DATABASE_URL_VAR = "APP_DATABASE__URL"
DOTENV_DIR_VAR = "APP_DOTENV_CONFIG_DIR"
ENVIRONMENT_VAR = "APP_ENVIRONMENT"


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"

    def __str__(self) -> str:
        return self.value

    @property
    def dotenv_file(self) -> str | None:
        return _DOTENV_FILES.get(self)


_DOTENV_FILES = {
    Environment.DEVELOPMENT: ".env",
    Environment.TEST: ".env.test",
}

_ALIASES = {
    "dev": Environment.DEVELOPMENT,
    "development": Environment.DEVELOPMENT,
    "test": Environment.TEST,
    "prod": Environment.PRODUCTION,
    "production": Environment.PRODUCTION,
}


def parse_env(value: str) -> Environment:
    try:
        return _ALIASES[value.strip().lower()]
    except KeyError:
        raise InvalidConfiguration(f'unknown environment: "{value}"') from None


def get_env(environ: Mapping[str, str]) -> Environment:
    value = environ.get(ENVIRONMENT_VAR)
    if value:
        logger.info("environment_from_env", variable=ENVIRONMENT_VAR, value=value)
        return parse_env(value)
    logger.info("environment_default", environment=str(Environment.DEVELOPMENT))
    return Environment.DEVELOPMENT


class ServerConfig(BaseModel):
    ip: IPv4Address | IPv6Address = IPv4Address("127.0.0.1")
    port: int = Field(3000, ge=0, le=65535)

    @property
    def addr(self) -> str:
        host = f"[{self.ip}]" if self.ip.version == 6 else str(self.ip)
        return f"{host}:{self.port}"


class DatabaseConfig(BaseModel):
    url: str
    migrations_dir: str = "db/migrations"
    seed_file: str = "db/seeds.sql"


class MappingEnvSettingsSource(EnvSettingsSource):
    """`EnvSettingsSource` over an explicit mapping instead of `os.environ`."""

    def __init__(self, settings_cls: type[BaseSettings], environ: Mapping[str, str]) -> None:
        self._environ = environ
        super().__init__(settings_cls)

    def _load_env_vars(self) -> Mapping[str, str | None]:
        return {
            (k if self.case_sensitive else k.lower()): v
            for k, v in self._environ.items()
            if not (self.env_ignore_empty and v == "")
        }


class AppConfig(BaseSettings):
    """Configuration for one `db` invocation.

    Sources, highest priority first: init kwargs, `APP_` variables from
    `environ`, then each file of `toml_files` from last to first. Use
    `AppConfig.bound_to(...)` to get a class reading a given environ and file
    list; the base class reads no environment and no files.
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        env_prefix=ENV_PREFIX,
        env_nested_delimiter=NESTED_DELIMITER,
        env_ignore_empty=True,
    )

    environ: ClassVar[Mapping[str, str]] = {}
    toml_files: ClassVar[tuple[Path, ...]] = ()

    server: ServerConfig = ServerConfig()
    database: DatabaseConfig

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            MappingEnvSettingsSource(settings_cls, cls.environ),
            *(TomlConfigSettingsSource(settings_cls, toml_file=path) for path in reversed(cls.toml_files)),
        )

    @classmethod
    def bound_to(cls, environ: Mapping[str, str], toml_files: Sequence[Path]) -> type[AppConfig]:
        bound_environ = dict(environ)
        bound_files = tuple(toml_files)

        class BoundAppConfig(cls):
            environ: ClassVar[Mapping[str, str]] = bound_environ
            toml_files: ClassVar[tuple[Path, ...]] = bound_files

        return BoundAppConfig


def read_dotenv(environment: Environment, environ: Mapping[str, str], root: Path) -> dict[str, str]:
    """Return the variables of the environment's dotfile, or nothing for production."""
    if environment.dotenv_file is None:
        return {}
    directory = Path(environ[DOTENV_DIR_VAR]) if environ.get(DOTENV_DIR_VAR) else root
    path = directory / environment.dotenv_file
    if not path.is_file():
        logger.debug("dotenv_missing", path=str(path))
        return {}
    logger.debug("dotenv_loaded", path=str(path))
    # Keys declared without a value come back as None.
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def resolve_environ(environment: Environment, environ: Mapping[str, str], root: Path) -> dict[str, str]:
    merged = read_dotenv(environment, environ, root)
    merged.update(environ)
    return merged


def load_config(environment: Environment, environ: Mapping[str, str], root: Path) -> AppConfig:
    """Resolve the configuration for `environment`.

    Later sources win:
    * `config/app.toml`
    * `config/environments/<environment>.toml`
    * `APP_`-prefixed variables, `__` separating nested keys
      (e.g. `APP_DATABASE__URL`), taken from `environ` on top of the
      environment's dotfile (`.env` for development, `.env.test` for test,
      none for production)
    """
    config_cls = AppConfig.bound_to(
        resolve_environ(environment, environ, root),
        [root / "config" / "app.toml", root / "config" / "environments" / f"{environment}.toml"],
    )
    try:
        config = config_cls()
    except tomllib.TOMLDecodeError as exc:
        raise InvalidConfiguration(f"invalid TOML under {root / 'config'}: {exc}") from exc
    except ValidationError as exc:
        if any(e["type"] == "missing" and e["loc"][:1] == ("database",) for e in exc.errors()):
            raise MissingConfiguration(DATABASE_URL_VAR) from exc
        raise InvalidConfiguration(f"invalid configuration for {environment}: {exc}") from exc
    if not config.database.url:
        raise MissingConfiguration(DATABASE_URL_VAR)
    return config
