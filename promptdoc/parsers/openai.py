"""OpenAI text-completion and chat-completion parsers."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from openai import AsyncOpenAI

from ..config import PROVIDER_ENV_KEYS, resolve_api_key
from ..history import ChatHistoryBuilder, get_prompt_template
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

logger = logging.getLogger(__name__)

COMPLETION_KEYS = (
    "model",
    "suffix",
    "max_tokens",
    "temperature",
    "top_p",
    "n",
    "stream",
    "logprobs",
    "echo",
    "stop",
    "presence_penalty",
    "frequency_penalty",
    "best_of",
    "logit_bias",
    "seed",
    "user",
)

CHAT_COMPLETION_KEYS = (
    "model",
    "messages",
    "tools",
    "tool_choice",
    "functions",
    "function_call",
    "temperature",
    "top_p",
    "n",
    "stream",
    "stop",
    "max_tokens",
    "presence_penalty",
    "frequency_penalty",
    "logit_bias",
    "response_format",
    "seed",
    "user",
)


class _OpenAIClientHolder:
    """Lazily built AsyncOpenAI client, owned by one parser instance."""

    def __init__(self, api_key: str = "", api_base: str = "", client_options: Optional[Dict[str, Any]] = None):
        self.api_key = api_key
        self.api_base = api_base
        self.client_options = dict(client_options or {})
        self._client: Optional[AsyncOpenAI] = None

    def get(self) -> AsyncOpenAI:
        # No await between check and assignment, so one client per instance.
        if self._client is None:
            api_key = resolve_api_key(PROVIDER_ENV_KEYS["openai"], self.api_key)
            self._client = AsyncOpenAI(api_key=api_key, base_url=self.api_base or None, **self.client_options)
        return self._client


class OpenAICompletionParser:
    """Text-completion parser (``client.completions``)."""

    kind = ParserKind.TEXT_COMPLETION

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "",
        client_options: Optional[Dict[str, Any]] = None,
        resolver: Optional[TemplateResolver] = None,
        parser_id: str = "OpenAICompletionParser",
    ) -> None:
        self.id = parser_id
        self.resolver = resolver or PlaceholderResolver()
        self._clients = _OpenAIClientHolder(api_key, api_base, client_options)

    @property
    def client(self) -> AsyncOpenAI:
        return self._clients.get()

    async def serialize(
        self,
        prompt_name: str,
        request: Mapping[str, Any],
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Prompt]:
        await notify(document, "on_serialize_start", {"prompt_name": prompt_name, "data": request, "params": params})

        raw_prompt = request.get("prompt")
        prompt_input: Union[str, Dict[str, Any]]
        if isinstance(raw_prompt, str):
            prompt_input = raw_prompt
        else:
            prompt_input = {"data": copy.deepcopy(raw_prompt)}

        settings = omit(request, "prompt")
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
        request = copy.deepcopy(pick_settings(settings, COMPLETION_KEYS))
        request.setdefault("model", document.get_model_name(prompt) or self.id)

        if isinstance(prompt.input, str):
            request["prompt"] = self.resolver.resolve(prompt.input, prompt, document, params)
        elif isinstance(prompt.input.get("data"), str):
            request["prompt"] = self.resolver.resolve(prompt.input["data"], prompt, document, params)
        else:
            # Token arrays and prompt lists are sent as stored.
            request["prompt"] = copy.deepcopy(prompt.input.get("data"))

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
        stream = resolve_stream_flag(options, request.get("stream"), default=True)
        request["stream"] = stream
        client = self.client

        outputs: List[Output] = []
        if not stream:
            response = to_plain(await client.completions.create(**request))
            for choice in response.get("choices") or []:
                outputs.append(
                    ExecuteResult(
                        execution_count=choice.get("index"),
                        data=choice.get("text", ""),
                        metadata={
                            "finish_reason": choice.get("finish_reason"),
                            "logprobs": choice.get("logprobs"),
                            "raw_response": response,
                        },
                    )
                )
        else:
            accumulator: Optional[StreamAccumulator] = None
            finish_reasons: Dict[int, Any] = {}
            logprobs: Dict[int, Any] = {}
            chunk_meta: Dict[str, Any] = {}

            response_stream = await client.completions.create(**request)
            async for raw_chunk in response_stream:
                chunk = to_plain(raw_chunk)
                chunk_meta.update(omit(chunk, "choices"))
                choices = chunk.get("choices") or []
                if not choices:
                    continue

                fragment = {
                    "choices": [
                        {"index": choice.get("index", position), "delta": {"text": choice.get("text") or ""}}
                        for position, choice in enumerate(choices)
                    ]
                }
                accumulator = fold(accumulator, fragment)

                for entry, choice in zip(fragment["choices"], choices):
                    index = entry["index"]
                    if choice.get("finish_reason") is not None:
                        finish_reasons[index] = choice["finish_reason"]
                    if choice.get("logprobs") is not None:
                        logprobs[index] = choice["logprobs"]
                    await emit_stream_callback(
                        options, entry["delta"]["text"], accumulator[index].get("text", ""), index
                    )

            for index in sorted(accumulator or {}):
                message = accumulator[index]
                outputs.append(
                    ExecuteResult(
                        execution_count=index,
                        data=message.get("text", ""),
                        metadata={
                            "finish_reason": finish_reasons.get(index),
                            "logprobs": logprobs.get(index),
                            "raw_response": {**chunk_meta, **message},
                        },
                    )
                )

        prompt.outputs = outputs
        await notify(document, "on_run_end", {"result": outputs})
        return outputs

    def get_output_text(
        self,
        document: Document,
        output: Optional[Output] = None,
        prompt: Optional[Prompt] = None,
    ) -> str:
        return output_text(document, output, prompt)


class OpenAIChatParser:
    """Chat-completion parser (``client.chat.completions``).

    Each user/function/tool message becomes a prompt; the assistant reply that
    follows it is recorded as that prompt's output.
    """

    kind = ParserKind.CHAT_COMPLETION

    def __init__(
        self,
        api_key: str = "",
        api_base: str = "",
        client_options: Optional[Dict[str, Any]] = None,
        resolver: Optional[TemplateResolver] = None,
        parser_id: str = "OpenAIChatParser",
    ) -> None:
        self.id = parser_id
        self.resolver = resolver or PlaceholderResolver()
        self.history = ChatHistoryBuilder(self.resolver)
        self._clients = _OpenAIClientHolder(api_key, api_base, client_options)

    @property
    def client(self) -> AsyncOpenAI:
        return self._clients.get()

    def get_prompt_template(self, prompt: Prompt) -> str:
        return get_prompt_template(prompt)

    async def serialize(
        self,
        prompt_name: str,
        request: Mapping[str, Any],
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[Prompt]:
        await notify(document, "on_serialize_start", {"prompt_name": prompt_name, "data": request, "params": params})

        messages: List[Dict[str, Any]] = list(request.get("messages") or [])
        settings = omit(request, "messages")
        system_messages = [m for m in messages if m.get("role") == "system"]
        if len(system_messages) > 1:
            logger.warning(
                "Chat request for '%s' has %d system messages; only the first is kept",
                prompt_name,
                len(system_messages),
            )
        system_prompt = system_messages[0] if system_messages else None
        if system_prompt is not None:
            settings["system_prompt"] = copy.deepcopy(system_prompt)

        model_name = request.get("model") or self.id
        model_metadata = document.get_model_metadata(settings, model_name)

        prompts: List[Prompt] = []
        for position, message in enumerate(messages):
            role = message.get("role")
            if role not in ("user", "function", "tool"):
                continue

            assistant_reply = None
            if position + 1 < len(messages) and messages[position + 1].get("role") == "assistant":
                assistant_reply = messages[position + 1]

            outputs: List[Output] = []
            if assistant_reply is not None:
                data = build_output_data(assistant_reply)
                if data is not None:
                    outputs.append(
                        ExecuteResult(
                            data=data,
                            metadata={
                                "raw_response": copy.deepcopy(assistant_reply),
                                **omit(assistant_reply, "content", "function_call", "tool_calls"),
                            },
                        )
                    )

            prompts.append(
                Prompt(
                    name=f"{prompt_name}_{len(prompts) + 1}",
                    input=_message_to_input(message),
                    metadata=PromptMetadata(
                        model=copy.deepcopy(model_metadata),
                        parameters=dict(params or {}),
                        remember_chat_context=True,
                    ),
                    outputs=outputs,
                )
            )

        if prompts:
            prompts[-1].name = prompt_name
        else:
            logger.warning("Chat request for '%s' has no user messages; nothing to serialize", prompt_name)

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
        request = copy.deepcopy(pick_settings(settings, CHAT_COMPLETION_KEYS))
        request.setdefault("model", document.get_model_name(prompt) or self.id)

        if isinstance(request.get("messages"), list):
            # Messages stored in the settings are resolved and the prompt appended.
            messages = request["messages"]
            for message in messages:
                if isinstance(message.get("content"), str):
                    message["content"] = self.resolver.resolve(message["content"], prompt, document, params)
            self.history.append_prompt(prompt, document, messages, params)
        else:
            request["messages"] = self.history.build(prompt, document, params, settings)

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
        stream = resolve_stream_flag(options, request.get("stream"), default=True)
        request["stream"] = stream
        client = self.client

        if stream:
            outputs = await self._run_streaming(client, request, options)
        else:
            response = to_plain(await client.chat.completions.create(**request))
            outputs = self._outputs_from_completion(response)

        prompt.outputs = outputs
        await notify(document, "on_run_end", {"result": outputs})
        return outputs

    def _outputs_from_completion(self, response: Dict[str, Any]) -> List[Output]:
        outputs: List[Output] = []
        response_meta = omit(response, "choices")
        for choice in response.get("choices") or []:
            message = choice.get("message") or {}
            data = build_output_data(message)
            if data is None:
                continue
            outputs.append(
                ExecuteResult(
                    execution_count=choice.get("index"),
                    data=data,
                    metadata={
                        "finish_reason": choice.get("finish_reason"),
                        **response_meta,
                        "raw_response": message,
                        **omit(message, "content", "function_call", "tool_calls"),
                    },
                )
            )
        return outputs

    async def _run_streaming(
        self,
        client: AsyncOpenAI,
        request: Dict[str, Any],
        options: Optional[InferenceOptions],
    ) -> List[Output]:
        accumulator: Optional[StreamAccumulator] = None
        finish_reasons: Dict[int, Any] = {}
        chunk_meta: Dict[str, Any] = {}

        response_stream = await client.chat.completions.create(**request)
        async for raw_chunk in response_stream:
            chunk = to_plain(raw_chunk)
            chunk_meta.update(omit(chunk, "choices"))
            choices = chunk.get("choices") or []
            if not choices:
                # Usage-only chunks carry no choices.
                continue

            fragment = {
                "choices": [
                    {"index": choice.get("index", position), "delta": _key_tool_calls(choice.get("delta") or {})}
                    for position, choice in enumerate(choices)
                ]
            }
            accumulator = fold(accumulator, fragment)

            for entry, choice in zip(fragment["choices"], choices):
                index = entry["index"]
                if choice.get("finish_reason") is not None:
                    finish_reasons[index] = choice["finish_reason"]
                delta_text = entry["delta"].get("content")
                accumulated = accumulator[index].get("content")
                await emit_stream_callback(
                    options,
                    delta_text if isinstance(delta_text, str) else "",
                    accumulated if isinstance(accumulated, str) else "",
                    index,
                )

        outputs: List[Output] = []
        for index in sorted(accumulator or {}):
            message = _finalize_message(accumulator[index])
            data = build_output_data(message)
            if data is None:
                continue
            outputs.append(
                ExecuteResult(
                    execution_count=index,
                    data=data,
                    metadata={
                        "finish_reason": finish_reasons.get(index),
                        **chunk_meta,
                        "raw_response": message,
                        **omit(message, "content", "function_call", "tool_calls"),
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


def build_output_data(message: Optional[Mapping[str, Any]]) -> Optional[Union[str, OutputDataWithValue]]:
    """Text content becomes a string; tool or function calls a ``tool_calls`` value."""
    if not message:
        return None

    content = message.get("content")
    if isinstance(content, str) and content:
        return content
    if message.get("tool_calls"):
        return OutputDataWithValue(kind="tool_calls", value=copy.deepcopy(list(message["tool_calls"])))
    if message.get("function_call"):
        return OutputDataWithValue(
            kind="tool_calls",
            value=[{"type": "function", "function": copy.deepcopy(message["function_call"])}],
        )
    if isinstance(content, str):
        return content
    if content is not None:
        return OutputDataWithValue(kind="string", value=copy.deepcopy(content))
    return None


def _message_to_input(message: Mapping[str, Any]) -> Union[str, Dict[str, Any]]:
    if message.get("role") == "user" and isinstance(message.get("content"), str) and set(message) <= {"role", "content"}:
        return message["content"]
    return copy.deepcopy(dict(message))


def _key_tool_calls(delta: Mapping[str, Any]) -> Dict[str, Any]:
    """Key streamed tool-call entries by their index so the reducer merges them per call."""
    tool_calls = delta.get("tool_calls")
    if not isinstance(tool_calls, list):
        return dict(delta)
    keyed = {}
    for position, call in enumerate(tool_calls):
        index = call.get("index", position)
        keyed[index] = omit(call, "index")
    return {**delta, "tool_calls": keyed}


def _finalize_message(partial: Mapping[str, Any]) -> Dict[str, Any]:
    message = dict(partial)
    tool_calls = message.get("tool_calls")
    if isinstance(tool_calls, Mapping):
        message["tool_calls"] = [tool_calls[index] for index in sorted(tool_calls)]
    return message
