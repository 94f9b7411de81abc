"""Telegram gateway."""

from demon.gateway.listener import (
    BackoffConfig,
    GatewayListener,
    GatewayStatus,
    calculate_delay,
)

__all__ = [
    "BackoffConfig",
    "GatewayListener",
    "GatewayStatus",
    "calculate_delay",
]
