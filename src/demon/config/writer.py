"""Configuration writer for modifying config.toml while preserving formatting.

Uses tomlkit to preserve comments, formatting, and ordering in TOML files.
"""

import logging
from pathlib import Path
from typing import Any

import tomlkit
from pydantic import ValidationError as PydanticValidationError
from tomlkit import TOMLDocument, table
from tomlkit.exceptions import ParseError

from demon.config.models import ConfigError, DemonConfig
from demon.config.paths import get_config_path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_TEMPLATE = """\
# demon configuration

[paths]
# base_dir = "~/.demon"

[defaults]
model = "sonnet"
max_turns = 10
max_budget_usd = 5.0
output_format = "json"

[gateway]
enabled = false
# bot_token = ""  # or set TELEGRAM_BOT_TOKEN
allowed_chat_ids = []
default_model = "sonnet"
max_turns = 10
max_budget_usd = 5.0

[executor]
command = ["claude"]
timeout_secs = 1800

[scheduler]
tick_secs = 1.0
"""


def _parse_value(raw: str) -> Any:
    """Interpret a CLI value as a TOML literal, falling back to a string."""
    try:
        return tomlkit.value(raw)
    except (ParseError, ValueError):
        return raw


class ConfigWriter:
    """Writer for modifying config.toml while preserving formatting."""

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path or get_config_path()
        self._doc: TOMLDocument | None = None

    def _load(self) -> TOMLDocument:
        """Load the config file, creating an empty document if it doesn't exist."""
        if self._doc is not None:
            return self._doc

        if self.config_path.exists():
            self._doc = tomlkit.parse(self.config_path.read_text())
        else:
            self._doc = tomlkit.document()

        return self._doc

    def _save(self) -> None:
        """Validate and save the config file."""
        if self._doc is None:
            return

        try:
            DemonConfig.model_validate(self._doc.unwrap())
        except PydanticValidationError as e:
            self._doc = None
            raise ConfigError(f"Refusing to write invalid config: {e}") from e

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(tomlkit.dumps(self._doc))
        logger.debug(f"Saved config to {self.config_path}")

    def init(self, *, force: bool = False) -> bool:
        """Write the default config template.

        Returns:
            True if written, False if a config already exists and force is off.
        """
        if self.config_path.exists() and not force:
            return False
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(DEFAULT_CONFIG_TEMPLATE)
        self._doc = None
        logger.info("config_initialized", extra={"file.path": str(self.config_path)})
        return True

    def get(self, key: str) -> Any:
        """Read a dotted key (e.g. ``gateway.max_turns``); None if unset."""
        node: Any = self._load()
        for part in key.split("."):
            if not hasattr(node, "get") or part not in node:
                return None
            node = node[part]
        return node.unwrap() if hasattr(node, "unwrap") else node

    def set(self, key: str, raw_value: str) -> Any:
        """Set a dotted key from its CLI string form.

        Values are parsed as TOML literals (``10``, ``true``, ``[1, -2]``),
        anything unparseable is stored as a string.

        Returns:
            The stored value.

        Raises:
            ConfigError: If the key is malformed or the result fails validation.
        """
        parts = key.split(".")
        if not all(parts):
            raise ConfigError(f"Invalid config key: {key!r}")

        doc = self._load()
        section: Any = doc
        for part in parts[:-1]:
            if part not in section:
                section[part] = table()
            section = section[part]
            if not hasattr(section, "get"):
                raise ConfigError(f"'{part}' in {key!r} is not a table")

        value = _parse_value(raw_value)
        section[parts[-1]] = value
        self._save()
        logger.info("config_value_set", extra={"config.key": key})
        return self.get(key)
