"""Configuration module."""

from demon.config.loader import load_config
from demon.config.models import (
    ConfigError,
    DemonConfig,
    ExecutorConfig,
    GatewayConfig,
    JobDefaults,
    LoggingConfig,
    PathsConfig,
    SchedulerConfig,
)
from demon.config.paths import (
    DemonPaths,
    get_config_path,
    get_demon_home,
    get_system_timezone,
)
from demon.config.writer import ConfigWriter

__all__ = [
    "ConfigError",
    "ConfigWriter",
    "DemonConfig",
    "DemonPaths",
    "ExecutorConfig",
    "GatewayConfig",
    "JobDefaults",
    "LoggingConfig",
    "PathsConfig",
    "SchedulerConfig",
    "get_config_path",
    "get_demon_home",
    "get_system_timezone",
    "load_config",
]
