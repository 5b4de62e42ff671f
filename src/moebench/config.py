# src/moebench/config.py
from __future__ import annotations

import pickle
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast
import contextvars

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource

from moebench.exceptions import MoebenchError


class ConfigError(MoebenchError, RuntimeError):
    """Configuration-related error."""
    pass


# ---------------------------------------------------------------------------
# Config file support (context + loader)
# ---------------------------------------------------------------------------

_CONFIG_FILE_CTX: contextvars.ContextVar[Path | None] = contextvars.ContextVar(
    "MOEBENCH_CONFIG_FILE_CTX",
    default=None,
)


def _find_default_config_file() -> Path | None:
    """Look for config file in current working directory."""
    cwd = Path.cwd()
    for name in ("config.toml", "config.yaml", "config.yml"):
        p = cwd / name
        if p.is_file():
            return p
    return None


def _load_toml(path: Path) -> dict[str, Any]:
    import tomllib

    data = tomllib.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_yaml(path: Path) -> dict[str, Any]:
    import yaml

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} did not parse into a dict")
    return cast(dict[str, Any], data)


def _load_config_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        return _load_toml(path)
    if suffix in {".yaml", ".yml"}:
        return _load_yaml(path)
    raise ConfigError(f"Unsupported config file type: {path} (expected .toml/.yaml/.yml)")


class _ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source that loads from an optional config file.

    This source is inserted BELOW secrets and ABOVE defaults.
    """

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Not used; we provide a full dict in __call__.
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        path = _CONFIG_FILE_CTX.get()
        if path is None:
            return {}

        if not path.is_file():
            raise ConfigError(f"Config file not found: {path}")

        return _load_config_file(path)


@contextmanager
def _config_file_context(path: Path | None) -> Any:
    token = _CONFIG_FILE_CTX.set(path)
    try:
        yield
    finally:
        _CONFIG_FILE_CTX.reset(token)


# ─────────────────────────────────────────────────────────────
# Section configs
# ─────────────────────────────────────────────────────────────


class LoggingSettings(BaseModel):
    level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    format: str = "%(asctime)-20s %(name)-40s %(levelname)-8s: %(message)s"


class ZookeeperSettings(BaseModel):
    hosts: str = Field("localhost:2181", description="Comma-separated host:port pairs for Zookeeper ensemble.")
    chroot: str | None = Field(default=None, description="Optional chroot path, e.g. /moebench.")
    default_group: str = Field("moebench", description="Default logical group / namespace used in the app.")
    session_timeout_s: float = Field(10.0, description="Zookeeper session timeout in seconds.")
    connection_timeout_s: float = Field(5.0, description="Initial connection timeout in seconds.")
    max_retries: int = Field(5, description="Maximum number of retry attempts for failed operations.")
    retry_delay_s: float = Field(1.0, description="Delay between retries in seconds.")
    auth_scheme: str | None = Field(default=None, description="Optional auth scheme, e.g. 'digest'.")
    auth_credentials: str | None = Field(default=None, description="Optional auth credentials, e.g. 'user:password'.")
    use_tls: bool = Field(False, description="Enable TLS/SSL for Zookeeper connection.")
    ca_cert: str | None = Field(default=None, description="Path to CA certificate file for TLS, if applicable.")
    client_cert: str | None = Field(default=None, description="Path to client certificate file for mutual TLS.")
    client_key: str | None = Field(default=None, description="Path to client private key for mutual TLS.")


class SerializationSettings(BaseModel):
    format: Literal["pickle", "json"] = Field("pickle", description="Document encoding in the metastore.")
    protocol: int = Field(
        pickle.HIGHEST_PROTOCOL,
        description="Pickle protocol version.",
    )

    def validate_protocol(self) -> None:
        if not (0 <= self.protocol <= pickle.HIGHEST_PROTOCOL):
            raise ConfigError(
                f"Unsupported pickle protocol={self.protocol}. "
                f"This interpreter supports up to protocol={pickle.HIGHEST_PROTOCOL}."
            )


class StoreSettings(BaseModel):
    max_retries: int = Field(20, description="Compare-and-set attempts before giving up on a contended document.", gt=0)
    backoff_base_s: float = Field(0.005, description="Initial backoff between compare-and-set attempts.", ge=0)
    backoff_max_s: float = Field(0.200, description="Upper bound for the backoff between attempts.", ge=0)


# ─────────────────────────────────────────────────────────────
# Top-level settings
# ─────────────────────────────────────────────────────────────


class AppSettings(BaseSettings):
    """
    Canonical application configuration for moebench.

    Precedence (highest → lowest):

    1. Init kwargs (tests/overrides)
    2. Environment variables
    3. .env and .env.local
    4. Secret files in /run/secrets/moebench
    5. Config file
    6. Defaults in this class
    """

    model_config = SettingsConfigDict(
        env_prefix="MOEBENCH_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        secrets_dir="/run/secrets/moebench",
        extra="ignore",
        validate_default=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Earlier sources override later sources.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            _ConfigFileSettingsSource(settings_cls),
        )

    app_name: str = "moebench"
    debug: bool = False

    logging: LoggingSettings = LoggingSettings()
    zookeeper: ZookeeperSettings = ZookeeperSettings()
    serialization: SerializationSettings = SerializationSettings()
    store: StoreSettings = StoreSettings()


@lru_cache(maxsize=16)
def _get_settings_cached(config_file_str: str | None, overrides_blob: bytes) -> AppSettings:
    overrides = pickle.loads(overrides_blob)
    config_path = Path(config_file_str) if config_file_str is not None else None
    with _config_file_context(config_path):
        try:
            settings = AppSettings(**overrides)
        except PydanticValidationError as e:
            raise ConfigError(str(e)) from e
    settings.serialization.validate_protocol()
    return settings


def get_settings(*, config_file: str | Path | None = None, **overrides: Any) -> AppSettings:
    """
    Cached accessor for process-wide settings.

    `overrides` are init kwargs → highest precedence (handy in tests).

    If `config_file` is None, we look in CWD for: config.toml, config.yaml, config.yml.
    If none found, config-file source is disabled and defaults apply.
    """
    resolved: Path | None
    if config_file is None:
        resolved = _find_default_config_file()
    else:
        resolved = Path(config_file)

    overrides_blob = pickle.dumps(overrides, protocol=pickle.HIGHEST_PROTOCOL)
    return _get_settings_cached(str(resolved) if resolved is not None else None, overrides_blob)


def clear_settings_cache() -> None:
    _get_settings_cached.cache_clear()
