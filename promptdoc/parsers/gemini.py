"""Gemini single-turn text generation parser (google-genai SDK)."""

from __future__ import annotations

import copy
import json
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from google import genai
from google.genai import types

from ..config import PROVIDER_ENV_KEYS, resolve_api_key
from ..history import get_prompt_template
from ..schema import (
    Document,
    ExecuteResult,
    Output,
    OutputDataWithValue,
    Prompt,
    PromptMetadata,
)
from ..stream import StreamAccumulator, fold
from ..templates import PlaceholderResolver, TemplateResolver
from .base import (
    InferenceOptions,
    ParserKind,
    emit_stream_callback,
    notify,
    omit,
    output_text,
    pick_settings,
    resolve_stream_flag,
    to_plain,
)

# Every field GenerateContentConfig accepts (tools, safety settings, schemas...).
GENERATION_CONFIG_KEYS = tuple(types.GenerateContentConfig.model_fields)


class GeminiTextGenerationParser:
    """Single-turn generation: the prompt input is the whole request, no history.

    Request shape: ``{"model": str, "contents": str, "config": {...}, "stream": bool?}``.
    """

    kind = ParserKind.TEXT_GENERATION

    def __init__(
        self,
        api_key: str = "",
        resolver: Optional[TemplateResolver] = None,
        parser_id: str = "GeminiTextGenerationParser",
    ) -> None:
        self.id = parser_id
        self.api_key = api_key
        self.resolver = resolver or PlaceholderResolver()
        self._client: Optional[genai.Client] = None

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            api_key = resolve_api_key(PROVIDER_ENV_KEYS["gemini"], self.api_key)
            self._client = genai.Client(api_key=api_key)
        return self._client

    async def serialize(
        self,
        prompt_name: str,
        request: Mapping[str, Any],
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Prompt]:
        await notify(document, "on_serialize_start", {"prompt_name": prompt_name, "data": request, "params": params})

        contents = request.get("contents")
        prompt_input: Union[str, Dict[str, Any]]
        if isinstance(contents, str):
            prompt_input = contents
        else:
            prompt_input = {"data": copy.deepcopy(contents)}

        settings: Dict[str, Any] = dict(to_plain(request.get("config")) or {})
        if request.get("stream") is not None:
            settings["stream"] = request["stream"]

        model_name = request.get("model") or self.id
        prompts = [
            Prompt(
                name=prompt_name,
                input=prompt_input,
                metadata=PromptMetadata(
                    model=document.get_model_metadata(settings, model_name),
                    parameters=dict(params or {}),
                ),
            )
        ]

        await notify(document, "on_serialize_end", {"result": prompts})
        return prompts

    async def deserialize(
        self,
        prompt: Prompt,
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        await notify(document, "on_deserialize_start", {"prompt": prompt, "params": params})

        settings = document.get_model_settings(prompt)
        template = get_prompt_template(prompt)
        if template or isinstance(prompt.input, str):
            contents: Any = self.resolver.resolve(template, prompt, document, params)
        else:
            contents = copy.deepcopy(prompt.input.get("data"))

        request: Dict[str, Any] = {
            "model": settings.get("model") or document.get_model_name(prompt) or self.id,
            "contents": contents,
            "config": copy.deepcopy(pick_settings(settings, GENERATION_CONFIG_KEYS)),
        }
        if settings.get("stream") is not None:
            request["stream"] = bool(settings["stream"])

        await notify(document, "on_deserialize_end", {"result": request})
        return request

    async def run(
        self,
        prompt: Prompt,
        document: Document,
        options: Optional[InferenceOptions] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Output]:
        await notify(document, "on_run_start", {"prompt": prompt, "options": options, "params": params})

        request = await self.deserialize(prompt, document, params)
        # Streaming only pays off when the caller passed options to receive it.
        stream = resolve_stream_flag(options, request.get("stream"), default=options is not None)
        kwargs = {
            "model": request["model"],
            "contents": request["contents"],
            "config": types.GenerateContentConfig(**request["config"]) if request["config"] else None,
        }
        client = self.client

        if stream:
            outputs = await self._run_streaming(client, kwargs, options)
        else:
            response = to_plain(await client.aio.models.generate_content(**kwargs))
            outputs = self._outputs_from_response(response)

        prompt.outputs = outputs
        await notify(document, "on_run_end", {"result": outputs})
        return outputs

    def _outputs_from_response(self, response: Dict[str, Any]) -> List[Output]:
        outputs: List[Output] = []
        for position, candidate in enumerate(response.get("candidates") or []):
            text, calls = _candidate_parts(candidate)
            outputs.append(
                _build_output(
                    candidate.get("index", position),
                    text,
                    calls,
                    {
                        "finish_reason": candidate.get("finish_reason"),
                        "usage_metadata": response.get("usage_metadata"),
                        "raw_response": response,
                    },
                )
            )
        return outputs

    async def _run_streaming(
        self,
        client: genai.Client,
        kwargs: Dict[str, Any],
        options: Optional[InferenceOptions],
    ) -> List[Output]:
        accumulator: Optional[StreamAccumulator] = None
        calls_by_index: Dict[int, List[Dict[str, Any]]] = {}
        finish_reasons: Dict[int, Any] = {}
        chunk_meta: Dict[str, Any] = {}

        async for raw_chunk in await client.aio.models.generate_content_stream(**kwargs):
            chunk = to_plain(raw_chunk)
            chunk_meta.update(omit(chunk, "candidates"))
            candidates = chunk.get("candidates") or []
            if not candidates:
                continue

            choices = []
            for position, candidate in enumerate(candidates):
                index = candidate.get("index", position)
                text, calls = _candidate_parts(candidate)
                calls_by_index.setdefault(index, []).extend(calls)
                if candidate.get("finish_reason") is not None:
                    finish_reasons[index] = candidate["finish_reason"]
                choices.append({"index": index, "delta": {"text": text}})

            accumulator = fold(accumulator, {"choices": choices})
            for choice in choices:
                index = choice["index"]
                await emit_stream_callback(options, choice["delta"]["text"], accumulator[index].get("text", ""), index)

        outputs: List[Output] = []
        for index in sorted(accumulator or {}):
            message = accumulator[index]
            calls = calls_by_index.get(index, [])
            raw_response = {**chunk_meta, **message}
            if calls:
                raw_response["tool_calls"] = calls
            outputs.append(
                _build_output(
                    index,
                    message.get("text", ""),
                    calls,
                    {
                        "finish_reason": finish_reasons.get(index),
                        "usage_metadata": chunk_meta.get("usage_metadata"),
                        "raw_response": raw_response,
                    },
                )
            )
        return outputs

    def get_output_text(
        self,
        document: Document,
        output: Optional[Output] = None,
        prompt: Optional[Prompt] = None,
    ) -> str:
        return output_text(document, output, prompt)


def _candidate_parts(candidate: Mapping[str, Any]) -> Tuple[str, List[Dict[str, Any]]]:
    content = candidate.get("content") or {}
    text_parts: List[str] = []
    calls: List[Dict[str, Any]] = []
    for part in content.get("parts") or []:
        if part.get("function_call"):
            call = part["function_call"]
            calls.append(
                {
                    "type": "function",
                    "function": {"name": call.get("name", ""), "arguments": json.dumps(call.get("args") or {})},
                }
            )
        elif part.get("text"):
            text_parts.append(part["text"])
    return "".join(text_parts), calls


def _build_output(index: int, text: str, calls: List[Dict[str, Any]], metadata: Dict[str, Any]) -> ExecuteResult:
    """Function calls take the data slot; text sent alongside them is kept in ``metadata["text"]``."""
    if not calls:
        return ExecuteResult(execution_count=index, data=text, metadata=metadata)
    if text:
        metadata["text"] = text
    return ExecuteResult(
        execution_count=index,
        data=OutputDataWithValue(kind="tool_calls", value=calls),
        metadata=metadata,
    )
