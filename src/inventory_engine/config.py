"""Configuration loading for the inventory engine.

Variables are declared in the bundled ``config_vars.yaml``::

    variables:
      UPSTREAM_PAGE_SIZE:
        source: UPSTREAM_PAGE_SIZE
        type: int
        default: 100
    validation:
      strict: false
      required: [UPSTREAM_API_KEY]

Values are resolved from the process environment first and then from a
``.env`` file (read with python-dotenv, without touching ``os.environ``).
The resolved values are turned into immutable settings objects by
:func:`load_settings`; nothing else in the package reads the environment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog
import yaml
from dotenv import dotenv_values, find_dotenv

from inventory_engine.errors import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config_vars.yaml"
DEFAULT_BASE_URL = "https://app.finaleinventory.com"
SUPPORTED_TYPES = {"str", "int", "float", "bool"}
SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")


MASK_MIN_LENGTH = 10
BOOLEAN_TOKENS = {"true": True, "1": True, "false": False, "0": False}
_NUMBER_PARSERS = {"int": int, "float": float}


def mask_secret(value: str) -> str:
    """Show only the first two and last four characters of a long secret."""

    if len(value) < MASK_MIN_LENGTH:
        return "*" * MASK_MIN_LENGTH
    return f"{value[:2]}****{value[-4:]}"


def coerce_type(raw_value: Any, target_type: str, variable_name: str) -> Any:
    """Convert a raw environment or YAML value to the declared variable type."""

    if target_type not in SUPPORTED_TYPES:
        raise ConfigurationError(f"{variable_name}: unsupported type '{target_type}'")
    if raw_value is None:
        return None

    if target_type == "str":
        # YAML booleans come back as the lower-case strings an env file would hold.
        return str(raw_value).lower() if isinstance(raw_value, bool) else str(raw_value)

    text = str(raw_value).strip()
    if target_type == "bool":
        try:
            return BOOLEAN_TOKENS[text.lower()]
        except KeyError:
            raise ConfigurationError(
                f"Invalid boolean value for {variable_name}: '{text}' (use true/false or 1/0)"
            ) from None

    try:
        return _NUMBER_PARSERS[target_type](text)
    except ValueError as exc:
        raise ConfigurationError(f"{variable_name}: '{text}' is not a valid {target_type}") from exc


def load_yaml(path: str | Path) -> dict[str, Any]:
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")
    with config_path.open(encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return data


def _is_secret(name: str) -> bool:
    return any(marker in name.upper() for marker in SECRET_MARKERS)


class ConfigManager:
    """Load and validate configuration variables declared in a YAML file."""

    def __init__(
        self,
        config_path: str | Path = DEFAULT_CONFIG_PATH,
        *,
        dotenv_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
        strict: Optional[bool] = None,
    ) -> None:
        self._config_path = Path(config_path).expanduser().resolve()
        self._raw_config = load_yaml(self._config_path)
        self._variables = self._extract_variables()
        self._validation = self._extract_validation()
        self._environ = os.environ if environ is None else environ
        self._dotenv_values = self._read_dotenv_values(dotenv_path)
        self.strict = (
            strict if strict is not None else bool(self._validation.get("strict", False))
        )
        self._values: dict[str, Any] = {}
        self._missing: list[str] = []
        self.load()

    def _extract_variables(self) -> dict[str, dict[str, Any]]:
        variables = self._raw_config.get("variables", {})
        if not isinstance(variables, dict):
            raise ConfigurationError(
                "'variables' section in config must be a mapping of variable definitions."
            )
        return variables

    def _extract_validation(self) -> dict[str, Any]:
        validation = self._raw_config.get("validation") or {}
        if not isinstance(validation, dict):
            raise ConfigurationError("'validation' section must be a mapping if provided.")
        for key in ("required", "optional"):
            collection = validation.get(key)
            if collection is not None and not isinstance(collection, list):
                raise ConfigurationError(f"Validation '{key}' entry must be a list if provided.")
        return validation

    def _read_dotenv_values(self, provided: Optional[str]) -> dict[str, str]:
        if provided:
            candidate = Path(provided).expanduser()
            path = str(candidate.resolve()) if candidate.exists() else None
        else:
            path = find_dotenv(usecwd=True) or None
        if not path:
            return {}
        values = dotenv_values(path)
        return {key: value for key, value in values.items() if value is not None}

    def _lookup(self, source: str) -> Optional[str]:
        value = self._environ.get(source)
        if value is None or value == "":
            value = self._dotenv_values.get(source)
        if value == "":
            return None
        return value

    def load(self) -> None:
        required = set(self._validation.get("required") or [])
        missing: list[str] = []

        for name, definition in self._variables.items():
            definition = definition or {}
            source = definition.get("source", name)
            target_type = definition.get("type", "str")
            raw = self._lookup(source)
            if raw is None:
                raw = definition.get("default")

            if raw is None:
                if name in required:
                    missing.append(name)
                self._values[name] = None
                continue

            value = coerce_type(raw, target_type, name)
            self._values[name] = value
            shown = mask_secret(str(value)) if _is_secret(name) else value
            logger.debug("config_variable_loaded", variable=name, value=shown)

        if missing:
            message = ", ".join(f"Required variable '{name}' not found" for name in missing)
            if self.strict:
                raise ConfigurationError(message, payload={"missing": missing})
            logger.warning("config_required_missing", missing=missing)
        self._missing = missing

    @property
    def missing(self) -> list[str]:
        return list(self._missing)

    def get(self, name: str, default: Any = None) -> Any:
        value = self._values.get(name)
        return default if value is None else value

    def require(self, name: str) -> Any:
        value = self._values.get(name)
        if value is None:
            raise ConfigurationError(f"Required variable '{name}' not found")
        return value

    def as_dict(self, *, masked: bool = True) -> dict[str, Any]:
        if not masked:
            return dict(self._values)
        return {
            name: mask_secret(str(value)) if value is not None and _is_secret(name) else value
            for name, value in self._values.items()
        }


def clean_account_path(account_path: str) -> str:
    """Reduce whatever the operator pasted (full URL, path, slug) to the account slug."""

    value = account_path.strip()
    match = re.search(r"finaleinventory\.com/([^/]+)", value)
    if match:
        return match.group(1)
    value = re.sub(r"^https?://", "", value)
    value = value.strip("/")
    if value.endswith("/api"):
        value = value[: -len("/api")]
    return value.split("/")[0].strip()


@dataclass(frozen=True)
class UpstreamConfig:
    """Immutable connection settings for the upstream system."""

    account_path: str
    api_key: str = field(repr=False)
    api_secret: str = field(repr=False)
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    page_size: int = 100
    max_attempts: int = 3
    retry_base_delay: float = 1.0

    def __post_init__(self) -> None:
        if not self.account_path:
            raise ConfigurationError("Upstream account path must be provided")
        if not self.api_key or not self.api_secret:
            raise ConfigurationError("Upstream API key and secret must be provided")
        if self.page_size <= 0:
            raise ConfigurationError("Upstream page size must be positive")
        if self.max_attempts < 1:
            raise ConfigurationError("Upstream max attempts must be at least 1")

    @property
    def api_root(self) -> str:
        return f"{self.base_url.rstrip('/')}/{clean_account_path(self.account_path)}/api"


@dataclass(frozen=True)
class EngineSettings:
    """Everything a sync run needs besides the session factory."""

    upstream: UpstreamConfig
    database_url: str = "sqlite+aiosqlite:///./inventory_engine.db"
    batch_size: int = 100
    stale_after_minutes: int = 30
    priority_threshold: int = 5
    environment: str = "local"
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ConfigurationError("Sync batch size must be positive")
        if self.stale_after_minutes <= 0:
            raise ConfigurationError("Stale threshold must be positive")


def load_settings(
    config_path: str | Path = DEFAULT_CONFIG_PATH,
    *,
    dotenv_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineSettings:
    """Resolve configuration once and return immutable settings."""

    manager = ConfigManager(config_path, dotenv_path=dotenv_path, environ=environ, strict=True)
    upstream = UpstreamConfig(
        account_path=manager.require("UPSTREAM_ACCOUNT_PATH"),
        api_key=manager.require("UPSTREAM_API_KEY"),
        api_secret=manager.require("UPSTREAM_API_SECRET"),
        base_url=manager.get("UPSTREAM_BASE_URL", DEFAULT_BASE_URL),
        timeout=manager.get("UPSTREAM_TIMEOUT", 30.0),
        page_size=manager.get("UPSTREAM_PAGE_SIZE", 100),
        max_attempts=manager.get("UPSTREAM_MAX_RETRIES", 3),
        retry_base_delay=manager.get("UPSTREAM_RETRY_BASE_DELAY", 1.0),
    )
    settings = EngineSettings(
        upstream=upstream,
        database_url=manager.get("DATABASE_URL", "sqlite+aiosqlite:///./inventory_engine.db"),
        batch_size=manager.get("SYNC_BATCH_SIZE", 100),
        stale_after_minutes=manager.get("SYNC_STALE_MINUTES", 30),
        priority_threshold=manager.get("SYNC_PRIORITY_THRESHOLD", 5),
        environment=manager.get("ENVIRONMENT", "local"),
        log_level=manager.get("LOG_LEVEL", "INFO"),
        log_json=manager.get("LOG_JSON", False),
    )
    logger.info(
        "settings_loaded",
        api_root=upstream.api_root,
        api_key=mask_secret(upstream.api_key),
        batch_size=settings.batch_size,
    )
    return settings


__all__ = [
    "ConfigManager",
    "EngineSettings",
    "UpstreamConfig",
    "clean_account_path",
    "coerce_type",
    "load_settings",
    "load_yaml",
    "mask_secret",
]
