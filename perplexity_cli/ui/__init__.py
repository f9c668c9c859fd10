"""Terminal output: streaming renderer and markdown formatting."""

from .markdown import MarkdownRenderer
from .renderer import PROMPT, Renderer

__all__ = ["MarkdownRenderer", "PROMPT", "Renderer"]
