"""Configuration package."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .manager import CliSettings, ConfigError, ConfigManager
    from .paths import CliPaths

__all__ = ["CliPaths", "CliSettings", "ConfigError", "ConfigManager"]


def __getattr__(name: str) -> Any:
    if name in {"ConfigManager", "CliSettings", "ConfigError"}:
        from . import manager

        return getattr(manager, name)
    if name == "CliPaths":
        from .paths import CliPaths

        return CliPaths
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
