import os
import re
from typing import Any

import yaml
from pydantic import ValidationError

from meter_sync.exception import ConfigError
from meter_sync.schema.sync_config_schema import SyncConfig

_ENV_PATTERN = re.compile(r"\$\{(\w+)(?::-([^\}]*))?\}")


class ConfigManager:

    @staticmethod
    def load_yaml_file(path: str) -> dict:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def parse_env_var_with_default(value: str) -> bool | int | float | str | None:
        match = _ENV_PATTERN.fullmatch(value.strip())  # ${VAR_NAME:-default} or ${VAR_NAME}
        if not match:
            return value

        var_name = match.group(1)
        default_value = match.group(2)

        resolved_value = os.getenv(var_name) or default_value
        if resolved_value is not None:
            return ConfigManager._parse_value_by_type(resolved_value)
        return None

    @staticmethod
    def resolve_env_placeholders(raw: Any) -> Any:
        """Walk a loaded YAML tree and replace every ${VAR:-default} string."""
        if isinstance(raw, dict):
            return {k: ConfigManager.resolve_env_placeholders(v) for k, v in raw.items()}
        if isinstance(raw, list):
            return [ConfigManager.resolve_env_placeholders(v) for v in raw]
        if isinstance(raw, str):
            return ConfigManager.parse_env_var_with_default(raw)
        return raw

    @staticmethod
    def load_sync_config(path: str) -> SyncConfig:
        """Load, resolve and validate the agent configuration."""
        try:
            raw_config = ConfigManager.load_yaml_file(path)
        except OSError as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e

        try:
            return SyncConfig.model_validate(ConfigManager.resolve_env_placeholders(raw_config))
        except ValidationError as e:
            raise ConfigError(f"invalid config {path}: {e}") from e

    @staticmethod
    def _parse_value_by_type(value: str) -> bool | int | float | str:
        if value.lower() in ["true", "false"]:
            return value.lower() == "true"
        if ConfigManager._is_int(value):
            return int(value)
        if ConfigManager._is_float(value):
            return float(value)
        return value

    @staticmethod
    def _is_int(value: str) -> bool:
        try:
            int(value)
            return True
        except ValueError:
            return False

    @staticmethod
    def _is_float(value: str) -> bool:
        try:
            float(value)
            return True
        except ValueError:
            return False
