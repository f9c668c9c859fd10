from __future__ import annotations

import asyncio
import json
import re
import secrets
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..config.paths import CliPaths
from .models import Conversation, ConversationSummary, Message, Role, Source, utc_now

INDEX_FILE = "index.json"
TITLE_MAX_LENGTH = 60
ID_LENGTH = 10
ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-"
_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class StoreError(Exception):
    """Base error for conversation persistence failures."""


class InvalidConversationIdError(StoreError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Invalid conversation id: {conversation_id}")
        self.conversation_id = conversation_id


class ConversationNotFoundError(StoreError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class CorruptConversationError(StoreError):
    def __init__(self, conversation_id: str, reason: str) -> None:
        super().__init__(f"Conversation {conversation_id} is unreadable: {reason}")
        self.conversation_id = conversation_id


def new_id(length: int = ID_LENGTH) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def truncate_title(text: str) -> str:
    if len(text) <= TITLE_MAX_LENGTH:
        return text
    return text[: TITLE_MAX_LENGTH - 1] + "…"


class ConversationStore:
    """Conversations as one JSON file each, plus an ``index.json`` of summaries.

    File access runs in worker threads. The index read-modify-write cycle is
    serialized by a lock so concurrent saves never drop each other's entries.
    """

    def __init__(self, base_path: Optional[Path] = None) -> None:
        self.base_path = Path(base_path) if base_path else CliPaths().conversations_dir
        self._index_lock = asyncio.Lock()

    @property
    def index_path(self) -> Path:
        return self.base_path / INDEX_FILE

    def conversation_path(self, conversation_id: str) -> Path:
        if not _ID_RE.match(conversation_id or ""):
            raise InvalidConversationIdError(conversation_id)
        return self.base_path / f"{conversation_id}.json"

    async def ensure_directory(self) -> None:
        await asyncio.to_thread(self._ensure_directory_sync)

    async def create(self, title_seed: str) -> Conversation:
        now = utc_now()
        conversation = Conversation(
            id=new_id(),
            title=truncate_title(title_seed),
            created_at=now,
            updated_at=now,
        )
        await asyncio.to_thread(self._write_conversation, conversation)
        await self._update_index(conversation)
        return conversation

    async def load(self, conversation_id: str) -> Conversation:
        path = self.conversation_path(conversation_id)
        return await asyncio.to_thread(self._read_conversation, conversation_id, path)

    async def save(self, conversation: Conversation) -> None:
        conversation.updated_at = utc_now()
        await asyncio.to_thread(self._write_conversation, conversation)
        await self._update_index(conversation)

    def add_message(
        self,
        conversation: Conversation,
        role: Role,
        content: str,
        sources: Optional[Sequence[Source]] = None,
    ) -> Message:
        message = Message(
            id=new_id(),
            role=role,
            content=content,
            sources=list(sources or []),
        )
        conversation.messages.append(message)
        return message

    async def list_summaries(self) -> List[ConversationSummary]:
        return await asyncio.to_thread(self._read_index)

    async def has_conversations(self) -> bool:
        return bool(await self.list_summaries())

    async def get_last_updated(self) -> Optional[ConversationSummary]:
        summaries = await self.list_summaries()
        return summaries[0] if summaries else None

    async def delete(self, conversation_id: str) -> None:
        path = self.conversation_path(conversation_id)
        async with self._index_lock:
            removed_file = await asyncio.to_thread(self._unlink, path)
            summaries = await asyncio.to_thread(self._read_index)
            remaining = [item for item in summaries if item.id != conversation_id]
            removed_entry = len(remaining) != len(summaries)
            if removed_entry:
                await asyncio.to_thread(self._write_index, remaining)
        if not removed_file and not removed_entry:
            raise ConversationNotFoundError(conversation_id)

    async def _update_index(self, conversation: Conversation) -> None:
        async with self._index_lock:
            summaries = await asyncio.to_thread(self._read_index)
            summary = conversation.summary()
            for position, item in enumerate(summaries):
                if item.id == conversation.id:
                    summaries[position] = summary
                    break
            else:
                summaries.append(summary)
            await asyncio.to_thread(self._write_index, summaries)

    def _ensure_directory_sync(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            self.index_path.write_text("[]", encoding="utf-8")

    def _read_index(self) -> List[ConversationSummary]:
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return []
        if not isinstance(data, list):
            return []
        summaries: List[ConversationSummary] = []
        for item in data:
            if isinstance(item, dict) and item.get("id"):
                summaries.append(ConversationSummary.from_dict(item))
        return _sorted_by_update(summaries)

    def _write_index(self, summaries: List[ConversationSummary]) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        payload = [item.to_dict() for item in _sorted_by_update(summaries)]
        self.index_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    def _write_conversation(self, conversation: Conversation) -> None:
        path = self.conversation_path(conversation.id)
        self.base_path.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(conversation.to_dict(), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

    def _read_conversation(self, conversation_id: str, path: Path) -> Conversation:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConversationNotFoundError(conversation_id) from exc
        except OSError as exc:
            raise CorruptConversationError(conversation_id, str(exc)) from exc
        try:
            data: Dict[str, Any] = json.loads(text)
            return Conversation.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            raise CorruptConversationError(conversation_id, str(exc)) from exc

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


def _sorted_by_update(summaries: List[ConversationSummary]) -> List[ConversationSummary]:
    # ISO-8601 UTC strings sort chronologically as plain text.
    return sorted(summaries, key=lambda item: item.updated_at, reverse=True)
