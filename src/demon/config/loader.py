"""Read ``config.toml`` into a validated ``DemonConfig``."""

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from demon.config.models import ConfigError, DemonConfig
from demon.config.paths import get_config_path

# (section, key) -> environment variable used when the file leaves it empty
ENV_FALLBACKS: dict[tuple[str, str], str] = {
    ("gateway", "bot_token"): "TELEGRAM_BOT_TOKEN",
}


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e


def apply_env_fallbacks(raw: dict[str, Any]) -> dict[str, Any]:
    for (section, key), env_var in ENV_FALLBACKS.items():
        table = raw.setdefault(section, {})
        if not table.get(key) and (value := os.environ.get(env_var)):
            table[key] = value
    return raw


def load_config(path: Path | None = None) -> DemonConfig:
    """Load and validate the configuration.

    Without ``path`` the default location is used, and a missing file means
    built-in defaults (``demon config init`` writes one).

    Raises:
        FileNotFoundError: If an explicit ``path`` does not exist.
        ConfigError: If the file is not valid TOML or fails validation.
    """
    if path is None:
        config_path = get_config_path()
        raw = _read_toml(config_path) if config_path.exists() else {}
    else:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        raw = _read_toml(config_path)

    try:
        return DemonConfig.model_validate(apply_env_fallbacks(raw))
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid config {config_path}: {e}") from e
