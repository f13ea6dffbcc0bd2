"""Model parser protocol and the plumbing shared by every variant."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union

from ..callbacks import CallbackEvent
from ..schema import Document, Output, Prompt, project_output_text

logger = logging.getLogger(__name__)

StreamCallback = Callable[[str, str, int], Union[Awaitable[None], None]]


class ParserKind(str, Enum):
    TEXT_COMPLETION = "text_completion"
    CHAT_COMPLETION = "chat_completion"
    TEXT_GENERATION = "text_generation"


@dataclass
class InferenceOptions:
    """Per-call run options.

    ``stream_callback(delta_text, accumulated_text, choice_index)`` is called for
    every choice of every streamed fragment.
    """

    stream: Optional[bool] = None
    stream_callback: Optional[StreamCallback] = None


class ModelParser(Protocol):
    """Contract every provider adapter implements."""

    id: str
    kind: ParserKind

    async def serialize(
        self,
        prompt_name: str,
        request: Mapping[str, Any],
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Prompt]: ...

    async def deserialize(
        self,
        prompt: Prompt,
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]: ...

    async def run(
        self,
        prompt: Prompt,
        document: Document,
        options: Optional[InferenceOptions] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Output]: ...

    def get_output_text(
        self,
        document: Document,
        output: Optional[Output] = None,
        prompt: Optional[Prompt] = None,
    ) -> str: ...


async def notify(document: Document, name: str, data: Any) -> None:
    """Fire a lifecycle event on the document's callback manager, if any."""
    if document.callback_manager is None:
        return
    await document.callback_manager.run_callbacks(CallbackEvent(name=name, data=data))


def resolve_stream_flag(
    options: Optional[InferenceOptions],
    request_flag: Optional[bool],
    default: bool,
) -> bool:
    if options is not None and options.stream is not None:
        return options.stream
    if request_flag is not None:
        return bool(request_flag)
    return default


async def emit_stream_callback(
    options: Optional[InferenceOptions],
    delta_text: str,
    accumulated_text: str,
    index: int,
) -> None:
    if options is None or options.stream_callback is None:
        return
    result = options.stream_callback(delta_text, accumulated_text, index)
    if inspect.isawaitable(result):
        await result


def output_text(
    document: Document,
    output: Optional[Output] = None,
    prompt: Optional[Prompt] = None,
) -> str:
    """Shared ``get_output_text`` body: falls back to the prompt's latest output."""
    if output is None and prompt is not None:
        output = document.get_latest_output(prompt)
    return project_output_text(output)


def to_plain(obj: Any) -> Any:
    """Convert SDK response objects into plain dicts and lists, dropping ``None`` fields."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if hasattr(obj, "model_dump"):
        return to_plain(obj.model_dump(mode="json", exclude_none=True))
    if isinstance(obj, Mapping):
        return {key: to_plain(value) for key, value in obj.items() if value is not None}
    if isinstance(obj, (list, tuple)):
        return [to_plain(item) for item in obj]
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "__dict__"):
        return {key: to_plain(value) for key, value in vars(obj).items() if value is not None and not key.startswith("_")}
    return obj


def omit(mapping: Mapping[str, Any], *keys: str) -> Dict[str, Any]:
    return {key: value for key, value in mapping.items() if key not in keys}


def pick_settings(settings: Mapping[str, Any], keys: tuple) -> Dict[str, Any]:
    """Keep the provider-known keys of a settings object, skipping unset ones."""
    return {key: settings[key] for key in keys if settings.get(key) is not None}
