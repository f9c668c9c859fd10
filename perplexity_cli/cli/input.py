"""Terminal input: raw line/paste events and the strategies that turn them into submissions."""

from __future__ import annotations

import asyncio
import sys
import threading
from collections import deque
from contextlib import aclosing, suppress
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterator, Deque, Iterable, List, Optional, TextIO, Union

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document
from prompt_toolkit.history import FileHistory, InMemoryHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys

from ..config.paths import CliPaths
from ..ui.renderer import PROMPT

BRACKETED_PASTE_ON = "\x1b[?2004h"
BRACKETED_PASTE_OFF = "\x1b[?2004l"
PASTE_START_MARKER = "\x1b[200~"
PASTE_END_MARKER = "\x1b[201~"


@dataclass(frozen=True)
class LineEvent:
    text: str


@dataclass(frozen=True)
class PasteStart:
    pass


@dataclass(frozen=True)
class PasteEnd:
    pass


TerminalEvent = Union[LineEvent, PasteStart, PasteEnd]


def is_command(submission: str) -> bool:
    return submission.startswith("/") and "\n" not in submission


class PasteAwareInput:
    """Join the lines of a bracketed paste into one submission.

    Lines typed outside a paste are submitted one by one. Lines that arrive
    during a paste are held, and stay held after the paste ends, so the line
    the user finishes with Enter is appended to them and the whole block is
    submitted at once.
    """

    def __init__(self) -> None:
        self.paste_mode = False
        self._buffer: List[str] = []

    @property
    def buffered(self) -> List[str]:
        return list(self._buffer)

    def paste_start(self) -> None:
        self.paste_mode = True

    def paste_end(self) -> None:
        self.paste_mode = False

    def feed(self, line: str) -> Optional[str]:
        """Return the submission completed by ``line``, or None while buffering."""
        if self.paste_mode:
            self._buffer.append(line)
            return None
        if self._buffer:
            lines, self._buffer = self._buffer + [line], []
            return "\n".join(lines).strip()
        return line.strip()

    def discard(self) -> None:
        self._buffer = []
        self.paste_mode = False

    async def submissions(self, events: AsyncGenerator[TerminalEvent, None]) -> AsyncIterator[str]:
        try:
            async with aclosing(events) as stream:
                async for event in stream:
                    if isinstance(event, PasteStart):
                        self.paste_start()
                    elif isinstance(event, PasteEnd):
                        self.paste_end()
                    else:
                        submission = self.feed(event.text)
                        if submission is not None:
                            yield submission
        finally:
            self.discard()


class DebouncedInput:
    """Submit the lines received before a short quiet period as one block.

    Used where the terminal cannot report paste boundaries: pasted lines
    arrive faster than anyone types, so they end up in the same submission.
    Paste events are ignored.
    """

    def __init__(self, interval: float) -> None:
        self.interval = interval

    async def submissions(self, events: AsyncGenerator[TerminalEvent, None]) -> AsyncIterator[str]:
        buffer: List[str] = []
        pending: Optional[asyncio.Task] = None
        try:
            while True:
                if pending is None:
                    pending = asyncio.create_task(_next_event(events))
                done, _ = await asyncio.wait({pending}, timeout=self.interval if buffer else None)
                if not done:
                    content, buffer = "\n".join(buffer).strip(), []
                    yield content
                    continue
                event, pending = pending.result(), None
                if event is None:
                    # Lines still waiting for the quiet period are dropped.
                    break
                if isinstance(event, LineEvent):
                    buffer.append(event.text)
        finally:
            if pending is not None:
                pending.cancel()
                # The source cannot be closed while a read is still running on it.
                with suppress(asyncio.CancelledError):
                    await pending
            await events.aclose()


async def _next_event(iterator: AsyncIterator[TerminalEvent]) -> Optional[TerminalEvent]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


def split_paste_markers(raw: str) -> List[TerminalEvent]:
    """Translate one raw input line carrying paste markers into events.

    The last marker on the line decides its place: after a start marker the
    line belongs to the paste, after an end marker it completes the paste.
    """
    text = raw.rstrip("\r\n")
    start = text.rfind(PASTE_START_MARKER)
    end = text.rfind(PASTE_END_MARKER)
    line = LineEvent(text.replace(PASTE_START_MARKER, "").replace(PASTE_END_MARKER, ""))
    if start == -1 and end == -1:
        return [line]
    if start > end:
        return [PasteStart(), line]
    return [PasteEnd(), line]


class Terminal:
    """Injected terminal I/O for the REPL.

    ``events()`` yields raw input events until end-of-input. Delivery waits
    while the terminal is paused.
    """

    def __init__(self, output: Optional[TextIO] = None) -> None:
        self.output = output or sys.stdout
        self._running = asyncio.Event()
        self._running.set()
        self.closed = False

    async def events(self) -> AsyncGenerator[TerminalEvent, None]:
        while not self.closed:
            await self._running.wait()
            event = await self._next_event()
            if event is None:
                return
            yield event

    async def _next_event(self) -> Optional[TerminalEvent]:
        raise NotImplementedError

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def show_prompt(self) -> None:
        raise NotImplementedError

    def write_raw(self, data: str) -> None:
        self.output.write(data)
        self.output.flush()

    def close(self) -> None:
        self.closed = True
        self._running.set()


class PastedText(str):
    """Prompt result produced by a multi-line bracketed paste."""


class SlashCommandCompleter(Completer):
    """Suggests slash command names while typing."""

    def __init__(self, commands: Iterable[str]) -> None:
        self.commands = list(commands)

    def get_completions(self, document: Document, complete_event):  # type: ignore[override]
        text = document.text_before_cursor
        if not text.startswith("/") or " " in text:
            return
        for command in self.commands:
            if command.startswith(text):
                yield Completion(command, start_position=-len(text))


def _paste_bindings() -> KeyBindings:
    bindings = KeyBindings()

    @bindings.add(Keys.BracketedPaste)
    def _(event) -> None:  # type: ignore[no-untyped-def]
        data = event.data.replace("\r\n", "\n").replace("\r", "\n")
        buffer = event.current_buffer
        if "\n" not in data:
            buffer.insert_text(data)
            return
        document = buffer.document
        combined = document.text_before_cursor + data + document.text_after_cursor
        head, _, _tail = combined.rpartition("\n")
        # Leave the complete lines on screen; the tail is typed on in the next prompt.
        buffer.text = head
        event.app.exit(result=PastedText(combined))

    return bindings


class PromptToolkitTerminal(Terminal):
    """Interactive terminal backed by a prompt_toolkit PromptSession."""

    def __init__(
        self,
        commands: Iterable[str] = (),
        paths: Optional[CliPaths] = None,
        session: Optional[PromptSession] = None,
        output: Optional[TextIO] = None,
    ) -> None:
        super().__init__(output)
        self.completer = SlashCommandCompleter(commands)
        self.session = session or PromptSession(
            history=self._history(paths),
            completer=self.completer,
            key_bindings=_paste_bindings(),
            complete_while_typing=True,
        )
        self._pending: Deque[TerminalEvent] = deque()
        self._default = ""

    def set_commands(self, commands: Iterable[str]) -> None:
        self.completer.commands = list(commands)

    @staticmethod
    def _history(paths: Optional[CliPaths]):  # type: ignore[no-untyped-def]
        if paths is None:
            return InMemoryHistory()
        try:
            paths.root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return InMemoryHistory()
        return FileHistory(str(paths.input_history_file))

    async def _next_event(self) -> Optional[TerminalEvent]:
        if self._pending:
            return self._pending.popleft()
        default, self._default = self._default, ""
        try:
            result = await self.session.prompt_async(PROMPT, default=default)
        except (EOFError, KeyboardInterrupt):
            return None
        if isinstance(result, PastedText):
            *lines, tail = result.split("\n")
            self._pending.extend([PasteStart(), *(LineEvent(line) for line in lines), PasteEnd()])
            self._default = tail
            return self._pending.popleft()
        return LineEvent(result)

    def show_prompt(self) -> None:
        # prompt_async draws the prompt itself; keep a blank line above it.
        self.write_raw("\n")


class StreamTerminal(Terminal):
    """Line-oriented terminal over plain text streams.

    A daemon thread reads the input stream so a blocked read never keeps the
    process alive at exit.
    """

    def __init__(self, stream: Optional[TextIO] = None, output: Optional[TextIO] = None) -> None:
        super().__init__(output)
        self.stream = stream or sys.stdin
        self._queue: Optional[asyncio.Queue] = None
        self._pending: Deque[TerminalEvent] = deque()
        self._eof = False

    def _start_reader(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stream = self.stream

        def push(item: Optional[str]) -> bool:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed.
                return False
            return True

        def read() -> None:
            try:
                for raw in iter(stream.readline, ""):
                    if not push(raw):
                        return
            except (OSError, ValueError):
                # A closed or broken stream counts as end-of-input.
                pass
            push(None)

        threading.Thread(target=read, name="perplexity-input", daemon=True).start()
        return queue

    async def _next_event(self) -> Optional[TerminalEvent]:
        if self._pending:
            return self._pending.popleft()
        if self._eof:
            return None
        if self._queue is None:
            self._queue = self._start_reader()
        raw = await self._queue.get()
        if raw is None:
            self._eof = True
            return None
        self._pending.extend(split_paste_markers(raw))
        return self._pending.popleft()

    def show_prompt(self) -> None:
        self.write_raw(f"\n{PROMPT}")
