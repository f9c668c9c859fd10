from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console

from .paths import CliPaths

DEFAULT_MODEL = "sonar-pro"
DEFAULT_BASE_URL = "https://api.perplexity.ai"
DEFAULT_TIMEOUT_S = 60.0
DEFAULT_DEBOUNCE_MS = 10
PASTE_MODES = ("bracketed", "debounce")


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class CliSettings:
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    paste_mode: str = "bracketed"
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    markdown: bool = True
    debug: Any = None

    def require(self) -> None:
        """Raise if the API key is missing."""
        if not self.api_key:
            raise ConfigError(
                "No API key configured. Set the PERPLEXITY_API_KEY environment variable."
            )

    def with_overrides(self, **overrides: Any) -> "CliSettings":
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **cleaned)


class ConfigManager:
    """Merges defaults, ~/.perplexity-cli/config.json and environment variables."""

    def __init__(self, paths: Optional[CliPaths] = None, console: Optional[Console] = None) -> None:
        self.paths = paths or CliPaths()
        self.console = console or Console(stderr=True)

    def load_settings(self) -> CliSettings:
        file_cfg = self._normalize(self._read_json(self.paths.config_file))
        env_cfg = self._normalize(self._env_settings())
        merged: Dict[str, Any] = {}
        merged.update(file_cfg)
        merged.update({key: value for key, value in env_cfg.items() if value is not None})
        return CliSettings(**merged)

    def _env_settings(self) -> Dict[str, Any]:
        timeout_ms = self._to_int(os.getenv("PERPLEXITY_TIMEOUT_MS"))
        return {
            "api_key": os.getenv("PERPLEXITY_API_KEY"),
            "model": os.getenv("PERPLEXITY_MODEL"),
            "base_url": os.getenv("PERPLEXITY_BASE_URL"),
            "timeout_s": timeout_ms / 1000 if timeout_ms else None,
            "paste_mode": os.getenv("PERPLEXITY_PASTE_MODE"),
            "debug": os.getenv("PERPLEXITY_DEBUG"),
        }

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        normalized: Dict[str, Any] = {}
        for key in ("api_key", "model", "base_url", "debug"):
            value = data.get(key)
            if isinstance(value, str):
                value = value.strip() or None
            if value is not None:
                normalized[key] = value
        if "base_url" in normalized:
            normalized["base_url"] = str(normalized["base_url"]).rstrip("/")
        timeout = data.get("timeout_s")
        if isinstance(timeout, (int, float)) and timeout > 0:
            normalized["timeout_s"] = float(timeout)
        paste_mode = data.get("paste_mode")
        if isinstance(paste_mode, str) and paste_mode.strip():
            cleaned = paste_mode.strip().lower()
            if cleaned in PASTE_MODES:
                normalized["paste_mode"] = cleaned
            else:
                self.console.print(
                    f"[yellow]Unknown paste_mode '{paste_mode}'. Using bracketed.[/yellow]"
                )
        debounce = data.get("debounce_ms")
        if isinstance(debounce, int) and debounce > 0:
            normalized["debounce_ms"] = debounce
        markdown = data.get("markdown")
        if isinstance(markdown, bool):
            normalized["markdown"] = markdown
        return normalized

    def _read_json(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            self.console.print(
                f"[red]Failed to parse JSON config at {path}. Using defaults.[/red]"
            )
            return {}
        return data if isinstance(data, dict) else {}

    def _to_int(self, value: Optional[str]) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None
