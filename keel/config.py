"""
Stack configuration.

A StackConfig is the immutable set of named values a stack is built from
(database name, credentials, instance class, allowed CIDR, ...). It is read
once, before planning, and passed explicitly to the stack's build function.

Sources, lowest to highest priority:
1. ``stack.json`` -> ``{"config": {...}, "secrets": {...}}``
2. ``KEEL_CONFIG_<KEY>`` environment variables (plain values)
3. ``KEEL_SECRET_<KEY>`` environment variables (secret values)

Keys are matched case-insensitively with camelCase, kebab-case and
snake_case treated alike, so ``dbPassword`` in code finds
``KEEL_SECRET_DB_PASSWORD`` in the environment.
"""

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_ENV_PREFIX = "KEEL_CONFIG_"
SECRET_ENV_PREFIX = "KEEL_SECRET_"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")
_MISSING = object()


def normalize_key(key: str) -> str:
    """Normalize a config key: ``dbName``, ``db-name`` and ``DB_NAME`` -> ``db_name``."""
    return _CAMEL_BOUNDARY.sub(r"_\1", key).replace("-", "_").lower()


class StackConfig(BaseModel):
    """Immutable named settings for a stack.

    Mirrors the require/require_secret style of declarative infrastructure
    tools: missing required keys raise ConfigurationError naming the key.

    Example:
        >>> config = StackConfig(values={"dbName": "app"})
        >>> config.require("dbName")
        'app'
        >>> config.require("db_user")
        Traceback (most recent call last):
        ...
        keel.errors.ConfigurationError: Missing required configuration value 'db_user'
    """

    model_config = ConfigDict(frozen=True)

    values: dict[str, Any] = Field(default_factory=dict)

    @field_validator("values", mode="before")
    @classmethod
    def _normalize_keys(cls, values: Mapping[str, Any]) -> dict[str, Any]:
        return {normalize_key(key): value for key, value in dict(values).items()}

    def _lookup(self, key: str) -> Any:
        return self.values.get(normalize_key(key), _MISSING)

    def get(self, key: str, default: Any = None) -> Any:
        """Return a value, or default if unset. Secret values stay wrapped."""
        value = self._lookup(key)
        return default if value is _MISSING else value

    def require(self, key: str) -> Any:
        """Return a required value.

        Raises:
            ConfigurationError: If the key is not set
        """
        value = self._lookup(key)
        if value is _MISSING or value is None or value == "":
            raise ConfigurationError(f"Missing required configuration value '{key}'")
        return value

    def require_secret(self, key: str) -> SecretStr:
        """Return a required value wrapped as a secret."""
        value = self.require(key)
        if isinstance(value, SecretStr):
            return value
        return SecretStr(str(value))

    def get_int(self, key: str, default: int | None = None) -> int | None:
        value = self.get(key, default)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Configuration value '{key}' must be an integer") from e

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        if str(value).lower() in ("1", "true", "yes", "on"):
            return True
        if str(value).lower() in ("0", "false", "no", "off"):
            return False
        raise ConfigurationError(f"Configuration value '{key}' must be a boolean")

    def keys(self) -> list[str]:
        return sorted(self.values)

    def is_secret(self, key: str) -> bool:
        return isinstance(self._lookup(key), SecretStr)

    def __repr__(self) -> str:
        shown = {
            key: "(sensitive)" if isinstance(value, SecretStr) else value
            for key, value in sorted(self.values.items())
        }
        return f"StackConfig({shown})"

    __str__ = __repr__


def load_stack_config(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> StackConfig:
    """Load stack configuration from a JSON file and the environment.

    Args:
        path: Optional path to stack.json. A missing file is treated as empty.
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Frozen StackConfig

    Raises:
        ConfigurationError: If the file is not valid JSON or has the wrong shape
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    if path is not None and path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")

        plain = data.get("config", {})
        secrets = data.get("secrets", {})
        if not isinstance(plain, dict) or not isinstance(secrets, dict):
            raise ConfigurationError(f"'config' and 'secrets' in {path} must be objects")

        for key, value in plain.items():
            values[normalize_key(key)] = value
        for key, value in secrets.items():
            values[normalize_key(key)] = SecretStr(str(value))
        logger.debug(f"Loaded {len(plain)} config and {len(secrets)} secret value(s) from {path}")
    elif path is not None:
        logger.debug(f"No stack configuration file at {path}")

    for name, value in environ.items():
        if name.startswith(CONFIG_ENV_PREFIX):
            values[normalize_key(name[len(CONFIG_ENV_PREFIX):])] = value
        elif name.startswith(SECRET_ENV_PREFIX):
            values[normalize_key(name[len(SECRET_ENV_PREFIX):])] = SecretStr(value)

    return StackConfig(values=values)
