"""Global pytest fixtures for deterministic test environment."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from promptdoc.schema import Document, DocumentMetadata, Prompt, PromptMetadata


@pytest.fixture(autouse=True)
def _isolate_runtime_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear provider credentials that can leak into tests on developer machines."""
    for key in ("OPENAI_API_KEY", "GEMINI_API_KEY"):
        monkeypatch.delenv(key, raising=False)


class FakeCreate:
    """Stands in for ``client.<api>.create``; returns a response or an async chunk stream."""

    def __init__(self, response: Any = None, chunks: List[Any] = None):
        self.response = response
        self.chunks = list(chunks or [])
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if kwargs.get("stream"):
            return self._stream()
        return self.response

    async def _stream(self):
        for chunk in self.chunks:
            yield chunk


def fake_openai_client(response: Any = None, chunks: List[Any] = None) -> SimpleNamespace:
    api = FakeCreate(response=response, chunks=chunks)
    return SimpleNamespace(
        completions=api,
        chat=SimpleNamespace(completions=api),
        api=api,
    )


def install_openai_client(parser: Any, client: SimpleNamespace) -> None:
    parser._clients._client = client


def make_document(prompts: List[Prompt] = None, models: Dict[str, Dict[str, Any]] = None, **kwargs: Any) -> Document:
    return Document(
        name="test",
        metadata=DocumentMetadata(models=models or {}, **kwargs),
        prompts=list(prompts or []),
    )


def make_prompt(name: str, text: Any, model: Any = None, **metadata: Any) -> Prompt:
    return Prompt(name=name, input=text, metadata=PromptMetadata(model=model, **metadata))


@pytest.fixture
def recorded_callbacks():
    calls = []

    def _callback(delta_text: str, accumulated_text: str, index: int) -> None:
        calls.append((delta_text, accumulated_text, index))

    return calls, _callback
