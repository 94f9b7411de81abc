"""CLI command modules."""

from demon.cli.commands import config, daemon, gateway, job, logs

__all__ = [
    "config",
    "daemon",
    "gateway",
    "job",
    "logs",
]
