from __future__ import annotations

import io
import shutil
from typing import Optional

from rich.console import Console
from rich.markdown import Markdown


class MarkdownRenderer:
    """Format a finished response as ANSI text with rich's Markdown."""

    def __init__(self, width: Optional[int] = None) -> None:
        self.width = width

    def render(self, text: str, width: Optional[int] = None) -> str:
        columns = width or self.width or shutil.get_terminal_size((80, 24)).columns
        console = Console(
            file=io.StringIO(),
            width=columns,
            force_terminal=True,
            color_system="standard",
            highlight=False,
        )
        with console.capture() as capture:
            console.print(Markdown(text))
        return "\n".join(line.rstrip() for line in capture.get().splitlines()).rstrip()
