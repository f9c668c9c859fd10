from __future__ import annotations

import argparse
import asyncio
import errno
import os
import sys
from typing import Any, List, Optional, Sequence

from rich.console import Console

from .. import __version__
from ..api.perplexity import (
    VALID_MODELS,
    PerplexityClient,
    classify_api_error,
    is_valid_model,
)
from ..config.manager import CliSettings, ConfigError, ConfigManager
from ..config.paths import CliPaths
from ..core.models import Message, Source, SourcesEvent, TokenEvent, cited_sources, index_sources
from ..core.session_log import SessionLogger, log_error, log_exception, set_active_logger
from ..core.store import ConversationStore, StoreError
from ..ui.markdown import MarkdownRenderer
from ..ui.renderer import Renderer
from .input import (
    DebouncedInput,
    PasteAwareInput,
    PromptToolkitTerminal,
    StreamTerminal,
    Terminal,
)
from .session import LIST_MAX_ITEMS, ReplSession


def build_renderer(settings: CliSettings, plain: bool = False, console: Optional[Console] = None) -> Renderer:
    console = console or Console(no_color=plain, highlight=False)
    markdown = MarkdownRenderer() if settings.markdown and not plain else None
    return Renderer(console, markdown=markdown, plain=plain)


def build_client(settings: CliSettings) -> PerplexityClient:
    settings.require()
    return PerplexityClient(
        settings.api_key or "",
        model=settings.model,
        base_url=settings.base_url,
        timeout=settings.timeout_s,
    )


def build_terminal(settings: CliSettings, paths: CliPaths) -> Terminal:
    interactive = sys.stdin.isatty() and sys.stdout.isatty() and os.getenv("TERM") != "dumb"
    if settings.paste_mode == "bracketed" and interactive:
        return PromptToolkitTerminal(paths=paths)
    return StreamTerminal()


def build_input_strategy(settings: CliSettings) -> Any:
    if settings.paste_mode == "debounce":
        return DebouncedInput(settings.debounce_ms / 1000)
    return PasteAwareInput()


async def run_chat(
    settings: CliSettings,
    paths: CliPaths,
    *,
    resume_id: Optional[str] = None,
    continue_last: bool = False,
    plain: bool = False,
    console: Optional[Console] = None,
    client: Any = None,
    store: Optional[ConversationStore] = None,
    terminal: Optional[Terminal] = None,
    session_logger: Optional[SessionLogger] = None,
) -> int:
    """Start the interactive session, optionally on a saved conversation."""
    renderer = build_renderer(settings, plain, console)
    client = client or build_client(settings)
    store = store or ConversationStore(paths.conversations_dir)
    await store.ensure_directory()

    conversation = None
    try:
        if resume_id:
            conversation = await store.load(resume_id)
        elif continue_last:
            last = await store.get_last_updated()
            if last is None:
                renderer.info("No conversations yet.")
            else:
                conversation = await store.load(last.id)
    except StoreError as exc:
        log_exception("cli", exc)
        renderer.error(str(exc))
        return 1

    terminal = terminal or build_terminal(settings, paths)
    session = ReplSession(
        client,
        store,
        renderer,
        terminal,
        conversation=conversation,
        input_strategy=build_input_strategy(settings),
        model=settings.model,
        session_logger=session_logger,
    )
    if isinstance(terminal, PromptToolkitTerminal):
        terminal.set_commands(session.registry.names())
    await session.run()
    return 0


async def run_query(
    question: str,
    settings: CliSettings,
    paths: CliPaths,
    *,
    follow_up_id: Optional[str] = None,
    plain: bool = False,
    console: Optional[Console] = None,
    client: Any = None,
    store: Optional[ConversationStore] = None,
) -> int:
    """Answer one question, save it as a conversation and print a follow-up hint."""
    renderer = build_renderer(settings, plain, console)
    client = client or build_client(settings)
    store = store or ConversationStore(paths.conversations_dir)
    await store.ensure_directory()

    try:
        if follow_up_id:
            conversation = await store.load(follow_up_id)
        else:
            conversation = await store.create(question)
    except StoreError as exc:
        log_exception("cli", exc)
        renderer.error(str(exc))
        return 1
    store.add_message(conversation, "user", question)

    try:
        response, raw_sources = await _stream(client, conversation.messages, renderer)
        cited = cited_sources(raw_sources, response)
        store.add_message(
            conversation,
            "assistant",
            response,
            [Source(title=item.title, url=item.url, index=item.index) for item in cited],
        )
        await store.save(conversation)
        if cited:
            renderer.sources(cited)
    except Exception as exc:  # noqa: BLE001
        log_exception("cli", exc)
        renderer.assistant_end("")
        renderer.error(classify_api_error(exc))
        return 1
    renderer.info(f'\nFollow up: perplexity --follow-up {conversation.id} "your question"')
    return 0


async def run_direct_query(
    question: str,
    settings: CliSettings,
    *,
    plain: bool = False,
    console: Optional[Console] = None,
    client: Any = None,
) -> int:
    """Answer one question without touching the conversation store."""
    renderer = build_renderer(settings, plain, console)
    client = client or build_client(settings)
    message = Message(id="direct", role="user", content=question)
    try:
        _, raw_sources = await _stream(client, [message], renderer)
    except Exception as exc:  # noqa: BLE001
        log_exception("cli", exc)
        renderer.assistant_end("")
        renderer.error(classify_api_error(exc))
        return 1
    if raw_sources:
        renderer.sources(index_sources(raw_sources))
    return 0


async def run_list(
    paths: CliPaths,
    limit: int = LIST_MAX_ITEMS,
    *,
    console: Optional[Console] = None,
    store: Optional[ConversationStore] = None,
) -> int:
    renderer = Renderer(console or Console(highlight=False))
    store = store or ConversationStore(paths.conversations_dir)
    await store.ensure_directory()
    summaries = await store.list_summaries()
    if not summaries:
        renderer.info("No conversations yet.")
        return 0
    renderer.conversation_table(summaries[: max(limit, 0)])
    return 0


async def _stream(client: Any, messages: Sequence[Message], renderer: Renderer) -> tuple[str, List[Source]]:
    response = ""
    raw_sources: List[Source] = []
    async for event in client.stream_chat(messages):
        if isinstance(event, TokenEvent):
            renderer.assistant_token(event.content)
            response += event.content
        elif isinstance(event, SourcesEvent):
            raw_sources = list(event.results)
    renderer.assistant_end(response)
    return response, raw_sources


def read_piped_stdin() -> str:
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def combine_question(words: Sequence[str], piped: str) -> str:
    question = " ".join(words).strip()
    piped = piped.strip()
    if question and piped:
        return f"{question}\n\n{piped}"
    return question or piped


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perplexity",
        description="Terminal interface to Perplexity chat models",
    )
    parser.add_argument("question", nargs="*", help="Ask a single question and exit")
    parser.add_argument("-v", "--version", action="store_true", help="Show version and exit")
    parser.add_argument(
        "-f",
        "--follow-up",
        metavar="ID",
        help="Ask a follow-up question in a saved conversation",
    )
    parser.add_argument(
        "--no-save",
        action="store_true",
        help="Answer the question without saving a conversation",
    )
    parser.add_argument("-r", "--resume", metavar="ID", help="Resume a saved conversation")
    parser.add_argument(
        "-c",
        "--continue",
        dest="continue_last",
        action="store_true",
        help="Continue the most recently updated conversation",
    )
    parser.add_argument(
        "-l",
        "--list",
        nargs="?",
        const=LIST_MAX_ITEMS,
        type=int,
        metavar="N",
        help=f"List saved conversations (default {LIST_MAX_ITEMS}) and exit",
    )
    parser.add_argument(
        "-m",
        "--model",
        help=f"Model to use: {', '.join(VALID_MODELS)}",
    )
    parser.add_argument(
        "--plain",
        action="store_true",
        help="Plain output without colors or markdown formatting",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.version:
        print(f"perplexity-cli {__version__}")
        return
    if args.follow_up and args.no_save:
        parser.error("--follow-up cannot be combined with --no-save")
    if args.model and not is_valid_model(args.model):
        parser.error(f"unknown model '{args.model}' (choose from {', '.join(VALID_MODELS)})")

    paths = CliPaths()
    err_console = Console(stderr=True)
    settings = ConfigManager(paths, console=err_console).load_settings().with_overrides(
        model=args.model,
    )
    session_logger = SessionLogger(paths, settings.debug)
    set_active_logger(session_logger)
    try:
        code = _dispatch(args, parser, settings, paths, session_logger)
    except ConfigError as exc:
        log_error("cli", "config.error", str(exc))
        err_console.print(str(exc), style="red", highlight=False)
        code = 1
    except BrokenPipeError:
        return
    except KeyboardInterrupt:
        return
    except OSError as exc:
        if exc.errno == errno.EPIPE:
            return
        log_exception("cli", exc)
        raise
    finally:
        session_logger.close()
        set_active_logger(None)
    raise SystemExit(code)


def _dispatch(
    args: argparse.Namespace,
    parser: argparse.ArgumentParser,
    settings: CliSettings,
    paths: CliPaths,
    session_logger: SessionLogger,
) -> int:
    if args.list is not None:
        return asyncio.run(run_list(paths, args.list))
    if args.resume or args.continue_last:
        settings.require()
        return asyncio.run(
            run_chat(
                settings,
                paths,
                resume_id=args.resume,
                continue_last=args.continue_last,
                plain=args.plain,
                session_logger=session_logger,
            )
        )

    question = combine_question(args.question, read_piped_stdin())
    if args.follow_up and not question:
        parser.error("--follow-up requires a question")
    settings.require()
    if not question:
        return asyncio.run(
            run_chat(settings, paths, plain=args.plain, session_logger=session_logger)
        )
    if args.no_save:
        return asyncio.run(run_direct_query(question, settings, plain=args.plain))
    return asyncio.run(
        run_query(question, settings, paths, follow_up_id=args.follow_up, plain=args.plain)
    )


if __name__ == "__main__":
    main()
