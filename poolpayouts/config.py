"""Settings loader for the pool payout engine."""
from __future__ import annotations

import json
import os
import re
from contextvars import ContextVar
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple, Type

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, NoDecode, PydanticBaseSettingsSource, SettingsConfigDict

MIN_PAYOUT_INTERVAL_MINUTES = 5
MAX_PAYOUT_INTERVAL_MINUTES = 1440

DEFAULT_CONFIG_PATH = Path("config.json")

# config.json keys -> settings field
_CONFIG_FILE_KEYS: Dict[str, str] = {
    "network": "network",
    "node": "node_urls",
    "paymentIntervalMinutes": "payout_interval_minutes",
    "minimumPayout": "minimum_payout",
}
# legacy cadence key, in hours
_CONFIG_FILE_HOURS_KEY = "paymentInterval"

_config_file_values: ContextVar[Optional[Dict[str, Any]]] = ContextVar("config_file_values", default=None)


class ConfigError(ValueError):
    pass


class ConfigFileSettingsSource(PydanticBaseSettingsSource):
    """Values read from config.json, ranked below the environment and ``.env``."""

    def __init__(self, settings_cls: Type[BaseSettings], values: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(settings_cls)
        self._values = dict(values if values is not None else (_config_file_values.get() or {}))

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            if field_name not in self._values:
                continue
            # keyed like the env sources so the higher-ranked value replaces this one
            alias = field.validation_alias
            data[alias if isinstance(alias, str) else field_name] = self._values[field_name]
        return data


def _split_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        parts = re.split(r"[\s,]+", value.strip())
        return [part for part in parts if part]
    return value


class PayoutSettings(BaseSettings):
    network: str = Field(min_length=1, validation_alias="POOL_NETWORK")
    node_urls: Annotated[List[str], NoDecode] = Field(validation_alias="POOL_NODE_URLS")

    payout_interval_minutes: int = Field(default=30, validation_alias="POOL_PAYOUT_INTERVAL_MINUTES")
    progress_interval_minutes: int = Field(default=10, validation_alias="POOL_PROGRESS_INTERVAL_MINUTES")
    minimum_payout: int = Field(default=0, ge=0, validation_alias="POOL_MINIMUM_PAYOUT")

    settling_delay_seconds: float = Field(default=5.0, ge=0, validation_alias="POOL_SETTLING_DELAY_SECONDS")
    connect_timeout_seconds: float = Field(default=10.0, gt=0, validation_alias="POOL_CONNECT_TIMEOUT_SECONDS")

    pool_addresses: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["pool"],
        validation_alias="POOL_EXCLUDED_ADDRESSES",
    )
    dry_run: bool = Field(default=False, validation_alias="POOL_DRY_RUN")

    treasury_private_key: SecretStr = Field(validation_alias="TREASURY_PRIVATE_KEY")
    database_url: SecretStr = Field(validation_alias="DATABASE_URL")
    debug: bool = Field(default=False, validation_alias="DEBUG")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            ConfigFileSettingsSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("network", mode="before")
    @classmethod
    def strip_network(cls, value: Any) -> str:
        # config.json may carry the chain id as a number
        candidate = str(value).strip() if value is not None else ""
        if not candidate:
            raise ValueError("network must not be blank")
        return candidate

    @field_validator("node_urls", "pool_addresses", mode="before")
    @classmethod
    def parse_list(cls, value):  # type: ignore[override]
        return _split_list(value)

    @field_validator("node_urls")
    @classmethod
    def require_nodes(cls, value: List[str]) -> List[str]:
        normalized: List[str] = []
        for item in value:
            candidate = str(item).strip()
            if candidate and candidate not in normalized:
                normalized.append(candidate)
        if not normalized:
            raise ValueError("at least one ledger node endpoint is required")
        return normalized

    @field_validator("payout_interval_minutes")
    @classmethod
    def validate_interval(cls, value: int) -> int:
        if value < MIN_PAYOUT_INTERVAL_MINUTES or value > MAX_PAYOUT_INTERVAL_MINUTES:
            raise ValueError(
                f"payout interval must be between {MIN_PAYOUT_INTERVAL_MINUTES} "
                f"and {MAX_PAYOUT_INTERVAL_MINUTES} minutes"
            )
        return value

    @field_validator("progress_interval_minutes")
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("treasury_private_key", "database_url")
    @classmethod
    def require_secret(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("must not be empty")
        return value

    @property
    def async_database_url(self) -> str:
        return to_async_database_url(self.database_url.get_secret_value())


def to_async_database_url(url: str) -> str:
    """Rewrite a bare postgres URL to use the asyncpg driver."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    values: Dict[str, Any] = {}
    for key, field_name in _CONFIG_FILE_KEYS.items():
        if key in raw:
            values[field_name] = raw[key]

    if _CONFIG_FILE_HOURS_KEY in raw and "payout_interval_minutes" not in values:
        hours = raw[_CONFIG_FILE_HOURS_KEY]
        if isinstance(hours, bool) or not isinstance(hours, (int, float)):
            raise ConfigError(f"{_CONFIG_FILE_HOURS_KEY} in {path} must be a number of hours")
        if hours < 1 or hours > 24:
            raise ConfigError(f"{_CONFIG_FILE_HOURS_KEY} in {path} must be between 1 and 24 hours")
        values["payout_interval_minutes"] = int(hours * 60)
    return values


def load_settings(config_path: Optional[Path] = None, **overrides: Any) -> PayoutSettings:
    """Build settings from explicit overrides, the environment, ``.env`` and a JSON config file.

    Sources rank in that order. The config file accepts ``network``,
    ``node``, ``paymentIntervalMinutes``, ``minimumPayout`` and the older
    ``paymentInterval`` in hours. Any validation problem is raised as
    :class:`ConfigError`.
    """
    if config_path is None:
        env_path = os.environ.get("POOL_PAYOUTS_CONFIG_PATH")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
        required = bool(env_path)
    else:
        required = True

    file_values: Dict[str, Any] = {}
    resolved = Path(config_path).expanduser()
    if resolved.exists():
        file_values = _read_config_file(resolved)
    elif required:
        raise ConfigError(f"Config file {resolved} does not exist")

    aliased: Dict[str, Any] = {}
    for name, value in overrides.items():
        field = PayoutSettings.model_fields.get(name)
        alias = field.validation_alias if field is not None else None
        aliased[alias if isinstance(alias, str) else name] = value

    token = _config_file_values.set(file_values)
    try:
        return PayoutSettings(**aliased)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc
    finally:
        _config_file_values.reset(token)
