"""Shared pytest fixtures for all tests."""

import pytest
import shutil
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from context_cache.providers.types import ApiConfig, ChunkType, StreamChunk
from context_cache.api.services.context_cache_config_service import ContextCacheConfigService
from context_cache.api.services.context_compression_service import ContextCompressionService

DEFAULT_FAKE_SUMMARY = "- Entities: Alice 2024-05-01\n- Consensus: use postgres, ship on friday\n- Todo: write docs"


def _create_workspace_temp_dir(kind: str) -> Path:
    """Create a temporary directory under repository-local .pytest_work."""
    repo_root = Path(__file__).resolve().parents[1]
    root_dir = repo_root / ".pytest_work" / kind
    root_dir.mkdir(parents=True, exist_ok=True)
    temp_dir = root_dir / f"{kind}_{uuid.uuid4().hex[:8]}"
    temp_dir.mkdir(parents=True, exist_ok=True)
    return temp_dir


class FakeCompletionClient:
    """Records calls and streams canned content in small chunks."""

    def __init__(
        self,
        responses: Optional[List[Union[str, Exception, Callable[[Dict[str, Any]], str]]]] = None,
        *,
        default: str = DEFAULT_FAKE_SUMMARY,
        chunk_size: int = 16,
    ):
        self.responses = list(responses or [])
        self.default = default
        self.chunk_size = chunk_size
        self.calls: List[Dict[str, Any]] = []

    def _next_response(self, kwargs: Dict[str, Any]) -> str:
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(kwargs)
        return response

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        text = self._next_response(kwargs)
        yield StreamChunk(type=ChunkType.TOOL_CALLS, tool_calls=[{"name": "ignored"}])
        for start in range(0, len(text), self.chunk_size):
            yield StreamChunk(type=ChunkType.CONTENT, content=text[start:start + self.chunk_size])

    @property
    def system_prompts(self) -> List[str]:
        return [call["messages"][0]["content"] for call in self.calls]


def make_message(
    index: int,
    tokens: int,
    *,
    role: Optional[str] = None,
    ending: str = ".",
    **extra: Any,
) -> Dict[str, Any]:
    """Message whose default-estimator size is exactly ``tokens``."""
    role = role or ("user" if index % 2 == 0 else "assistant")
    body = "x" * (tokens * 4 - len(ending)) + ending
    return {"id": f"m{index}", "role": role, "content": body, **extra}


def make_conversation(count: int, tokens_each: int, *, ending: str = ".") -> List[Dict[str, Any]]:
    return [make_message(i, tokens_each, ending=ending) for i in range(count)]


@pytest.fixture
def tmp_path():
    """Workspace-local replacement for pytest's tmp_path fixture."""
    temp_dir = _create_workspace_temp_dir("tmp_path")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def temp_config_dir():
    """Create temporary directory for config files."""
    temp_dir = _create_workspace_temp_dir("config")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def fake_completion():
    return FakeCompletionClient()


@pytest.fixture
def config_service(temp_config_dir):
    return ContextCacheConfigService(str(temp_config_dir / "context_cache_config.yaml"))


@pytest.fixture
def cache_first_api_config():
    """deepseek-chat resolves to the CACHE_FIRST profile."""
    return ApiConfig(api_url="https://api.deepseek.com/v1", api_key="test-key", model="deepseek-chat")


@pytest.fixture
def general_api_config():
    return ApiConfig(api_url="https://api.example.com/v1", api_key="test-key", model="gpt-4o")


@pytest.fixture
def compression_service(config_service, fake_completion):
    return ContextCompressionService(complete=fake_completion, config_service=config_service)


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture
def conversation_factory():
    return make_conversation


@pytest.fixture
def fake_completion_factory():
    return FakeCompletionClient
