"""Shared fixtures for the chatstream test suite."""
import json

import pytest
import pytest_asyncio

from chatstream.config import (
    ChatStreamConfig, ApiKeysConfig, ModelsConfig, ProviderConfig, LoggingConfig,
)
from chatstream.llm.client import CompletionClient
from chatstream.models import EndOfStream, TextDelta
from chatstream.storage.sqlite_db import SQLiteDB

PROVIDER_URL = "https://api.openai.com/v1/chat/completions"


@pytest.fixture
def mock_config():
    """Minimal config with a dummy API key for unit tests."""
    return ChatStreamConfig(
        api_keys=ApiKeysConfig(openai="sk-openai-test-key"),
        models=ModelsConfig(completion="gpt-3.5-turbo"),
        provider=ProviderConfig(base_url="https://api.openai.com/v1"),
        logging=LoggingConfig(file=None),
    )


@pytest.fixture
def completion_client(mock_config):
    return CompletionClient(mock_config)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite store in a temporary directory."""
    store = SQLiteDB(db_path=str(tmp_path / "chat.db"))
    await store.initialize()
    yield store
    await store.close()


def sse_body(*lines: str) -> bytes:
    """Provider response body: one ``data:`` record per line."""
    return "".join(f"{line}\n\n" for line in lines).encode("utf-8")


def delta_line(text: str, chunk_id: str = "chatcmpl-test") -> str:
    return "data: " + json.dumps({
        "id": chunk_id,
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
    })


class FakeCompletionClient:
    """Stands in for CompletionClient: replays fixed deltas, records each call."""

    def __init__(self, *texts: str, provider_id: str = "chatcmpl-fake"):
        self.texts = texts
        self.provider_id = provider_id
        self.calls = []

    async def stream(self, messages, max_tokens):
        self.calls.append((list(messages), max_tokens))
        for text in self.texts:
            yield TextDelta(text=text, provider_id=self.provider_id)
        yield EndOfStream(provider_id=self.provider_id)

    async def close(self):
        pass
