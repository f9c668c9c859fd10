"""Conversation data model shared by the store, the client and the REPL."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence, Union

Role = Literal["user", "assistant"]

_CITATION_RE = re.compile(r"\[(\d+)\]")


def utc_now() -> str:
    """Return the current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Source:
    title: str
    url: str
    index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"title": self.title, "url": self.url}
        if self.index is not None:
            data["index"] = self.index
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Source":
        url = str(data.get("url") or "")
        index = data.get("index")
        if isinstance(index, bool) or not isinstance(index, int) or index < 1:
            index = None
        return cls(title=str(data.get("title") or url), url=url, index=index)


@dataclass(frozen=True)
class IndexedSource:
    title: str
    url: str
    index: int


@dataclass
class Message:
    id: str
    role: Role
    content: str
    created_at: str = field(default_factory=utc_now)
    sources: List[Source] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
        }
        if self.sources:
            data["sources"] = [source.to_dict() for source in self.sources]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = data.get("role")
        if role not in ("user", "assistant"):
            raise ValueError(f"Unknown message role: {role!r}")
        raw_sources = data.get("sources") or []
        return cls(
            id=str(data["id"]),
            role=role,
            content=str(data.get("content") or ""),
            created_at=str(data.get("createdAt") or ""),
            sources=[Source.from_dict(item) for item in raw_sources if isinstance(item, dict)],
        )


@dataclass
class Conversation:
    id: str
    title: str
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    messages: List[Message] = field(default_factory=list)

    def last_assistant_message(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.role == "assistant":
                return message
        return None

    def summary(self) -> "ConversationSummary":
        return ConversationSummary(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        messages = data.get("messages")
        if not isinstance(messages, list):
            raise ValueError("Conversation has no message list")
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or ""),
            messages=[Message.from_dict(item) for item in messages],
        )


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    title: str
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSummary":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            created_at=str(data.get("createdAt") or ""),
            updated_at=str(data.get("updatedAt") or ""),
        )


@dataclass(frozen=True)
class TokenEvent:
    content: str


@dataclass(frozen=True)
class SourcesEvent:
    results: List[Source]


StreamEvent = Union[TokenEvent, SourcesEvent]


def index_sources(sources: Sequence[Source]) -> List[IndexedSource]:
    return [
        IndexedSource(title=source.title, url=source.url, index=position)
        for position, source in enumerate(sources, start=1)
    ]


def cited_sources(sources: Sequence[Source], text: str) -> List[IndexedSource]:
    """Keep the sources whose ``[index]`` marker appears in ``text``.

    Indexes are 1-based positions in the raw result list, so a response that
    cites ``[1]`` and ``[3]`` keeps exactly those two entries with their
    original numbers.
    """
    return [item for item in index_sources(sources) if f"[{item.index}]" in text]


def reindex_cited(sources: Sequence[Source], content: str) -> List[IndexedSource]:
    """Recover display numbers for sources stored on a replayed message.

    Sources saved with their citation number keep it. Older files hold only
    ``{title, url}`` pairs: when the distinct markers in the content line up
    one-to-one with them those numbers are used, otherwise they are numbered
    from 1.
    """
    if sources and all(source.index is not None for source in sources):
        return [
            IndexedSource(title=source.title, url=source.url, index=source.index)
            for source in sources
        ]
    markers = sorted({int(match) for match in _CITATION_RE.findall(content)})
    if len(markers) == len(sources):
        return [
            IndexedSource(title=source.title, url=source.url, index=marker)
            for source, marker in zip(sources, markers)
        ]
    return index_sources(sources)
