"""Streaming client for the Perplexity chat-completion endpoint."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

import httpx

from ..config.manager import DEFAULT_BASE_URL, DEFAULT_MODEL, DEFAULT_TIMEOUT_S
from ..core.models import Message, Source, SourcesEvent, StreamEvent, TokenEvent
from ..core.session_log import log_debug

VALID_MODELS = (
    "sonar",
    "sonar-pro",
    "sonar-reasoning-pro",
    "sonar-deep-research",
)

_DATA_PREFIX = "data:"
_DONE = "[DONE]"


def is_valid_model(name: str) -> bool:
    return name in VALID_MODELS


class PerplexityAPIError(Exception):
    """The API answered with an HTTP error status."""

    def __init__(self, status: int, message: str, headers: Optional[Mapping[str, str]] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.headers: Dict[str, str] = {key.lower(): value for key, value in (headers or {}).items()}


class PerplexityConnectionError(Exception):
    """The API could not be reached."""


class PerplexityClient:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def stream_chat(self, messages: Iterable[Message]) -> AsyncIterator[StreamEvent]:
        """Yield token events as they arrive, and the search results once."""
        payload = {
            "model": self.model,
            "stream": True,
            "messages": [{"role": message.role, "content": message.content} for message in messages],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        url = f"{self.base_url}/chat/completions"
        sources_sent = False
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise PerplexityAPIError(
                            resp.status_code,
                            _error_message(body, resp.reason_phrase),
                            dict(resp.headers),
                        )
                    async for line in resp.aiter_lines():
                        chunk = _parse_sse_line(line)
                        if chunk is None:
                            continue
                        if chunk == _DONE:
                            break
                        content = _delta_content(chunk)
                        if content:
                            yield TokenEvent(content)
                        if not sources_sent:
                            results = _chunk_sources(chunk)
                            if results:
                                sources_sent = True
                                log_debug("api", "stream.sources", {"count": len(results)})
                                yield SourcesEvent(results)
        except httpx.TransportError as exc:
            raise PerplexityConnectionError(str(exc) or type(exc).__name__) from exc


def _parse_sse_line(line: str) -> Any:
    line = line.strip()
    if not line.startswith(_DATA_PREFIX):
        return None
    data = line[len(_DATA_PREFIX):].strip()
    if not data:
        return None
    if data == _DONE:
        return _DONE
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        log_debug("api", "stream.skip", data)
        return None
    return chunk if isinstance(chunk, dict) else None


def _delta_content(chunk: Dict[str, Any]) -> str:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0] if isinstance(choices[0], dict) else {}
    delta = first.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


def _chunk_sources(chunk: Dict[str, Any]) -> List[Source]:
    results = chunk.get("search_results")
    if isinstance(results, list) and results:
        return [Source.from_dict(item) for item in results if isinstance(item, dict)]
    citations = chunk.get("citations")
    if isinstance(citations, list) and citations:
        return [Source(title=str(url), url=str(url)) for url in citations if url]
    return []


def _error_message(body: bytes, fallback: str) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text or fallback
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("detail"):
            return str(data["detail"])
    return text or fallback


def classify_api_error(error: object) -> str:
    """Turn any turn failure into the one-line message shown to the user."""
    if isinstance(error, PerplexityAPIError):
        if error.status == 401:
            return "Invalid API key. Check your PERPLEXITY_API_KEY."
        if error.status == 429:
            retry_after = error.headers.get("retry-after")
            suffix = f" Retry after {retry_after}s." if retry_after else ""
            return f"Rate limited.{suffix}"
        if error.status >= 500:
            return f"Perplexity server error ({error.status}). Try again later."
        return f"API error ({error.status}): {error.message}"
    if isinstance(error, PerplexityConnectionError):
        return "Could not reach api.perplexity.ai. Check your connection."
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return "An unknown error occurred."
