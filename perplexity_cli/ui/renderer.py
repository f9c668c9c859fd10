"""Streaming renderer for assistant responses, sources and notices."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

from rich.cells import cell_len
from rich.console import Console
from rich.control import Control
from rich.segment import ControlType
from rich.table import Table
from rich.text import Text

from ..core.models import ConversationSummary, IndexedSource
from .markdown import MarkdownRenderer

PROMPT = "❯ "
CITATION_PATTERN = r"\[\d+\]"


class Renderer:
    """Writes everything the REPL shows, on a single rich Console.

    ``plain`` drops styling and markdown formatting; rich already honours the
    ``NO_COLOR`` environment variable on its own.
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        markdown: Optional[MarkdownRenderer] = None,
        plain: bool = False,
    ) -> None:
        self.console = console or Console(no_color=plain, highlight=False)
        self.plain = plain
        self.markdown = None if plain else markdown
        self._streaming = False
        self._streamed = ""

    def user_message(self, text: str) -> None:
        line = Text()
        line.append(PROMPT, style=self._style("dim"))
        line.append(text)
        self.console.print(line, soft_wrap=True)

    def assistant_token(self, token: str) -> None:
        if not self._streaming:
            self.console.print()
            self._streaming = True
            self._streamed = ""
        self._streamed += token
        self.console.print(self._cited(token), end="", soft_wrap=True)

    def assistant_end(self, full_text: str) -> None:
        """Finish the response being streamed; a second call is a no-op."""
        if not self._streaming:
            return
        streamed = self._streamed
        self._streaming = False
        self._streamed = ""
        rows = self._rows(streamed)
        if (
            self.markdown is not None
            and full_text.strip()
            and self.console.is_terminal
            and not self.console.is_dumb_terminal
            and rows < self.console.height
        ):
            self.console.control(self._erase_rows(rows))
            self._print_markdown(full_text)
            return
        self.console.print()

    def assistant_complete(self, text: str) -> None:
        if self.markdown is not None and text.strip():
            self._print_markdown(text)
            return
        self.console.print(self._cited(text), soft_wrap=True)

    def sources(self, indexed: Sequence[IndexedSource]) -> None:
        if not indexed:
            return
        self.console.print()
        self.console.print(Text("Sources:", style=self._style("bold")))
        for item in indexed:
            line = Text("  ")
            line.append(f"[{item.index}]", style=self._style("cyan"))
            line.append(f" {item.title}")
            self.console.print(line, soft_wrap=True)
            self.console.print(Text(f"      {item.url}", style=self._style("dim")), soft_wrap=True)

    def error(self, message: str) -> None:
        self.console.print(Text(message, style=self._style("red")), soft_wrap=True)

    def info(self, message: str) -> None:
        self.console.print(Text(message, style=self._style("dim")), soft_wrap=True)

    def conversation_table(self, summaries: Iterable[ConversationSummary]) -> None:
        table = Table(
            show_header=True,
            header_style=self._style("bold"),
            box=None,
            pad_edge=False,
        )
        table.add_column("ID", no_wrap=True, style=self._style("cyan"))
        table.add_column("Title", overflow="fold")
        table.add_column("Last Updated", no_wrap=True, style=self._style("dim"))
        for summary in summaries:
            table.add_row(summary.id, summary.title, format_timestamp(summary.updated_at))
        self.console.print(table)

    def _print_markdown(self, text: str) -> None:
        assert self.markdown is not None
        rendered = self.markdown.render(text, width=self.console.width)
        self.console.print(Text.from_ansi(rendered), soft_wrap=True)

    def _cited(self, text: str) -> Text:
        content = Text(text)
        if not self.plain:
            content.highlight_regex(CITATION_PATTERN, "cyan")
        return content

    def _style(self, style: str) -> str:
        return "" if self.plain else style

    def _rows(self, text: str) -> int:
        width = max(self.console.width, 1)
        rows = 0
        for line in text.split("\n"):
            rows += max(1, -(-cell_len(line) // width))
        return rows

    @staticmethod
    def _erase_rows(rows: int) -> Control:
        # Same sequence rich's Live display uses to clear what it drew.
        return Control(
            ControlType.CARRIAGE_RETURN,
            (ControlType.ERASE_IN_LINE, 2),
            *(((ControlType.CURSOR_UP, 1), (ControlType.ERASE_IN_LINE, 2)) * (rows - 1)),
        )


def format_timestamp(value: str) -> str:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return parsed.astimezone().strftime("%Y-%m-%d %H:%M")
