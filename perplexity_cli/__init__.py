"""Perplexity CLI package initialization."""

from importlib.metadata import version

__all__ = [
    "api",
    "cli",
    "config",
    "core",
    "ui",
]

# Single source of truth comes from package metadata defined in pyproject.toml
__version__ = version("perplexity-cli")
