"""Interactive chat session: input loop, slash commands and chat turns."""

from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

from .. import __version__
from ..api.perplexity import classify_api_error
from ..core.models import (
    Conversation,
    Source,
    SourcesEvent,
    TokenEvent,
    cited_sources,
    reindex_cited,
)
from ..core.session_log import SessionLogger, log_exception, log_info, log_warn
from ..core.store import ConversationStore
from ..ui.renderer import Renderer
from .clipboard import SystemClipboard
from .commands import CommandRegistry
from .input import (
    BRACKETED_PASTE_OFF,
    BRACKETED_PASTE_ON,
    PasteAwareInput,
    Terminal,
    is_command,
)

LIST_MAX_ITEMS = 20


class SessionStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    CLOSED = "closed"


@dataclass
class SessionState:
    conversation: Optional[Conversation] = None
    exit_requested: bool = False
    status: SessionStatus = SessionStatus.IDLE


class ReplSession:
    """One interactive session over an injected terminal.

    ``run()`` drives the session from start to close. Failures inside a
    command or a chat turn are reported through the renderer and the loop
    carries on; only end-of-input or ``/exit`` end it. Anything else that
    goes wrong is reported and closes the session, so ``run()`` returns
    normally once started.
    """

    def __init__(
        self,
        client: Any,
        store: ConversationStore,
        renderer: Renderer,
        terminal: Terminal,
        *,
        conversation: Optional[Conversation] = None,
        clipboard: Any = None,
        input_strategy: Any = None,
        classify_error: Callable[[object], str] = classify_api_error,
        model: Optional[str] = None,
        session_logger: Optional[SessionLogger] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.renderer = renderer
        self.terminal = terminal
        self.clipboard = clipboard or SystemClipboard()
        self.input = input_strategy or PasteAwareInput()
        self.classify_error = classify_error
        self.model = model or getattr(client, "model", None)
        self.session_logger = session_logger
        self.state = SessionState(conversation=conversation)
        self.registry = CommandRegistry()
        self._register_commands()

    @property
    def conversation(self) -> Optional[Conversation]:
        return self.state.conversation

    def _register_commands(self) -> None:
        self.registry.register("/help", self._cmd_help, "Show this help message")
        self.registry.register("/list", self._cmd_list, "List saved conversations")
        self.registry.register(
            "/resume", self._cmd_resume, "Resume a saved conversation", usage="<id>"
        )
        self.registry.register("/clear", self._cmd_clear, "Start a new conversation")
        self.registry.register(
            "/delete", self._cmd_delete, "Delete a saved conversation", usage="<id>"
        )
        self.registry.register("/copy", self._cmd_copy, "Copy the last response to the clipboard")
        self.registry.register("/exit", self._cmd_exit, "Exit the application")

    async def run(self) -> None:
        if self.state.status is not SessionStatus.IDLE:
            raise RuntimeError("Session has already been started")
        self.state.status = SessionStatus.RUNNING
        self.terminal.write_raw(BRACKETED_PASTE_ON)
        self._log_event("session.start", {"model": self.model})
        try:
            self._print_banner()
            conversation = self.state.conversation
            if conversation is not None and conversation.messages:
                self._replay(conversation)
            self.terminal.show_prompt()
            async with aclosing(self.input.submissions(self.terminal.events())) as submissions:
                async for submission in submissions:
                    if not await self._dispatch(submission):
                        break
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
            self._report_failure(exc)
        finally:
            self._close()

    def _report_failure(self, exc: Exception) -> None:
        try:
            self.renderer.error(f"Error: {exc}")
        except Exception as render_exc:  # noqa: BLE001
            log_exception("repl", render_exc)

    async def _dispatch(self, submission: str) -> bool:
        if not submission:
            self.terminal.show_prompt()
            return True
        if is_command(submission):
            return await self._handle_command(submission)
        await self._run_turn(submission)
        return True

    async def _handle_command(self, submission: str) -> bool:
        name, *args = submission.split()
        self._log_event("command", submission)
        cmd = self.registry.get(name)
        if cmd is None:
            log_warn("repl", "command.unknown", name)
            self.renderer.error(f"Unknown command: {name}")
            self.terminal.show_prompt()
            return True
        try:
            keep_running = await cmd.handler(args)
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
            self.renderer.error(f"Error: {exc}")
            keep_running = True
        if keep_running:
            self.terminal.show_prompt()
        return keep_running

    async def _run_turn(self, content: str) -> None:
        if self.session_logger:
            self.session_logger.log_user_prompt("repl", content)
        try:
            conversation = await self._ensure_conversation(content)
            self.store.add_message(conversation, "user", content)
            await self.store.save(conversation)

            self.terminal.pause()
            response = ""
            raw_sources: List[Source] = []
            async for event in self.client.stream_chat(conversation.messages):
                if isinstance(event, TokenEvent):
                    self.renderer.assistant_token(event.content)
                    response += event.content
                elif isinstance(event, SourcesEvent):
                    raw_sources = list(event.results)

            self.renderer.assistant_end(response)
            cited = cited_sources(raw_sources, response)
            if cited:
                self.renderer.sources(cited)
            reply = self.store.add_message(
                conversation,
                "assistant",
                response,
                [Source(title=item.title, url=item.url, index=item.index) for item in cited],
            )
            try:
                await self.store.save(conversation)
            except Exception:
                # An unsaved reply must not reach the next request.
                conversation.messages.remove(reply)
                raise
            if self.session_logger:
                self.session_logger.log_assistant_text("repl", response)
                self.session_logger.log_sources(
                    "repl", [{"index": item.index, "title": item.title, "url": item.url} for item in cited]
                )
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
            self.renderer.assistant_end("")
            self.renderer.error(self.classify_error(exc))
        finally:
            self.terminal.resume()
            self.terminal.show_prompt()

    async def _ensure_conversation(self, title_seed: str) -> Conversation:
        if self.state.conversation is None:
            self.state.conversation = await self.store.create(title_seed)
            log_info("repl", "conversation.created", {"id": self.state.conversation.id})
        return self.state.conversation

    def _replay(self, conversation: Conversation) -> None:
        for message in conversation.messages:
            if message.role == "user":
                self.renderer.user_message(message.content)
                continue
            self.renderer.assistant_complete(message.content)
            if message.sources:
                self.renderer.sources(reindex_cited(message.sources, message.content))

    def _print_banner(self) -> None:
        model = f" · {self.model}" if self.model else ""
        self.renderer.info(f"Perplexity CLI v{__version__}{model}")
        self.renderer.info("Type /help for commands, /exit to quit.")

    def _close(self) -> None:
        if self.state.status is SessionStatus.CLOSED:
            return
        self.state.status = SessionStatus.CLOSED
        goodbye = "Goodbye!" if self.state.exit_requested else "\n\nGoodbye!"
        try:
            self.renderer.info(goodbye)
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
        finally:
            self.terminal.write_raw(BRACKETED_PASTE_OFF)
            self.terminal.close()
            self._log_event("session.end", {"explicit": self.state.exit_requested})

    def _log_event(self, event: str, content: Any = None) -> None:
        if self.session_logger:
            self.session_logger.log_session_event("repl", event, content)

    async def _cmd_help(self, _: List[str]) -> bool:
        self.renderer.info(self.registry.help_text())
        return True

    async def _cmd_list(self, _: List[str]) -> bool:
        try:
            summaries = await self.store.list_summaries()
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
            self.renderer.error(f"Failed to list conversations: {exc}")
            return True
        if not summaries:
            self.renderer.info("No conversations yet.")
            return True
        ordered = sorted(summaries, key=lambda item: item.updated_at, reverse=True)
        self.renderer.conversation_table(ordered[:LIST_MAX_ITEMS])
        return True

    async def _cmd_resume(self, args: List[str]) -> bool:
        if not args:
            self.renderer.error("Usage: /resume <id>")
            return True
        conversation_id = args[0]
        try:
            conversation = await self.store.load(conversation_id)
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
            self.renderer.error(f"Conversation not found: {conversation_id}")
            return True
        self.state.conversation = conversation
        self._replay(conversation)
        return True

    async def _cmd_clear(self, _: List[str]) -> bool:
        self.state.conversation = None
        self.renderer.info("Started new conversation.")
        return True

    async def _cmd_delete(self, args: List[str]) -> bool:
        if not args:
            self.renderer.error("Usage: /delete <id>")
            return True
        conversation_id = args[0]
        try:
            await self.store.delete(conversation_id)
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
            self.renderer.error(f"Error: {exc}")
            return True
        active = self.state.conversation
        if active is not None and active.id == conversation_id:
            self.state.conversation = None
        self.renderer.info(f"Deleted conversation: {conversation_id}")
        return True

    async def _cmd_copy(self, _: List[str]) -> bool:
        conversation = self.state.conversation
        if conversation is None:
            self.renderer.error("No conversation yet.")
            return True
        message = conversation.last_assistant_message()
        if message is None:
            self.renderer.error("No assistant response to copy.")
            return True
        try:
            self.clipboard.write_sync(message.content)
        except Exception as exc:  # noqa: BLE001
            log_exception("repl", exc)
            self.renderer.error(f"Error: {exc}")
            return True
        self.renderer.info("Copied last response to clipboard.")
        return True

    async def _cmd_exit(self, _: List[str]) -> bool:
        self.state.exit_requested = True
        return False
