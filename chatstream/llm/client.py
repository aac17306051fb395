"""Streaming client for OpenAI-compatible chat completion APIs."""
import httpx
import json
import logging
from typing import AsyncIterator, Sequence

from chatstream.errors import FramingError, TransportError
from chatstream.models import EndOfStream, PromptMessage, StreamFragment, TextDelta

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_LITERAL = "[DONE]"


def decode_line(line: str) -> dict | None:
    """Decode one provider line.

    Returns ``None`` for the terminator, the parsed chunk otherwise.

    Raises:
        FramingError: If the line is not a JSON object.
    """
    payload = line.strip()
    if payload.startswith(DATA_PREFIX):
        payload = payload[len(DATA_PREFIX):].strip()
    if payload == DONE_LITERAL:
        return None
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FramingError(f"Could not parse stream line: {payload[:200]!r}") from e
    if not isinstance(chunk, dict):
        raise FramingError(f"Stream line is not an object: {payload[:200]!r}")
    return chunk


def delta_text(chunk: dict) -> str:
    """Text carried by one chunk; ``""`` for role-only, finish and usage chunks.

    Raises:
        FramingError: If the chunk does not have the chat-completion shape.
    """
    choices = chunk.get("choices")
    if choices is None or choices == []:
        return ""
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise FramingError(f"Unexpected choices in chunk: {str(choices)[:200]!r}")
    delta = choices[0].get("delta")
    if delta is None:
        return ""
    if not isinstance(delta, dict):
        raise FramingError(f"Unexpected delta in chunk: {str(delta)[:200]!r}")
    content = delta.get("content")
    if content is None:
        return ""
    if not isinstance(content, str):
        raise FramingError(f"Unexpected content in chunk: {str(content)[:200]!r}")
    return content


class CompletionClient:
    def __init__(self, config):
        self.config = config
        self._http = httpx.AsyncClient(timeout=config.provider.timeout)
        # Strip whitespace that leaks in from env vars or YAML
        if config.api_keys.openai:
            config.api_keys.openai = config.api_keys.openai.strip()

    async def close(self):
        await self._http.aclose()

    @property
    def url(self) -> str:
        return self.config.provider.base_url.rstrip("/") + "/chat/completions"

    async def stream(
        self, messages: Sequence[PromptMessage], max_tokens: int
    ) -> AsyncIterator[StreamFragment]:
        """Stream a completion. Yields TextDelta values, then one EndOfStream."""
        if not messages:
            raise ValueError("Cannot request a completion for an empty prompt")

        body = {
            "model": self.config.models.completion,
            "messages": [m.to_payload() for m in messages],
            "temperature": 0,
            "max_tokens": max_tokens,
            "stream": True,
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_keys.openai}",
            "Content-Type": "application/json",
        }
        provider_id = None
        try:
            async with self._http.stream("POST", self.url, headers=headers, json=body) as resp:
                if resp.status_code != 200:
                    detail = (await resp.aread()).decode("utf-8", "replace")
                    logger.error(f"[LLM] {resp.status_code}: {detail[:500]}")
                    raise TransportError(
                        f"Provider returned HTTP {resp.status_code}", status=resp.status_code
                    )
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = decode_line(line)
                        text = delta_text(chunk) if chunk is not None else ""
                    except FramingError as e:
                        logger.warning(f"[LLM] Skipping malformed chunk: {e}")
                        continue
                    if chunk is None:
                        yield EndOfStream(provider_id=provider_id)
                        return
                    chunk_id = chunk.get("id")
                    if provider_id is None and isinstance(chunk_id, str) and chunk_id:
                        provider_id = chunk_id
                        logger.debug(f"[LLM] Provider message id: {provider_id}")
                    if text:
                        yield TextDelta(text=text, provider_id=provider_id)
        except httpx.HTTPError as e:
            logger.error(f"[LLM] Transport failure: {e}")
            raise TransportError(f"Provider request failed: {e}") from e
        raise TransportError("Provider closed the stream without a terminator")
