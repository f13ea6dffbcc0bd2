"""Chat history reconstruction from a document's prompt chain."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

from .schema import (
    Document,
    ExecuteResult,
    OutputDataWithValue,
    Prompt,
    is_legacy_message,
)
from .templates import TemplateResolver

ChatMessage = Dict[str, Any]

# Keys a role-qualified prompt input may carry into the request message.
_PASSTHROUGH_INPUT_KEYS = ("name", "function_call", "tool_calls", "tool_call_id")


def get_prompt_template(prompt: Prompt) -> str:
    """Return the template text of a prompt input, whatever its shape."""
    if isinstance(prompt.input, str):
        return prompt.input
    if isinstance(prompt.input, Mapping):
        data = prompt.input.get("data")
        if isinstance(data, str):
            return data
        content = prompt.input.get("content")
        if isinstance(content, str):
            return content
    return ""


class ChatHistoryBuilder:
    """Builds the linear message list a chat provider expects for a target prompt.

    Messages are OpenAI-shaped mappings: ``{"role": ..., "content": ...}`` plus
    optional ``name`` / ``tool_calls`` / ``function_call`` / ``tool_call_id``.
    """

    def __init__(self, resolver: TemplateResolver):
        self.resolver = resolver

    def build(
        self,
        prompt: Prompt,
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> List[ChatMessage]:
        if settings is None:
            settings = document.get_model_settings(prompt)

        messages: List[ChatMessage] = []
        system_message = self.system_message(settings, prompt, document, params)
        if system_message is not None:
            messages.append(system_message)

        if not self.remembers_context(prompt, settings):
            self.append_prompt(prompt, document, messages, params)
            return messages

        for current in document.prompts:
            self.append_prompt(current, document, messages, params)
            if current.name == prompt.name:
                # Later prompts must not leak into this prompt's history.
                break

        return messages

    def system_message(
        self,
        settings: Mapping[str, Any],
        prompt: Prompt,
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Optional[ChatMessage]:
        system_prompt = settings.get("system_prompt")
        if system_prompt is None:
            return None

        if isinstance(system_prompt, str):
            message: ChatMessage = {"role": "system", "content": system_prompt}
        elif isinstance(system_prompt, Mapping):
            message = copy.deepcopy(dict(system_prompt))
            message.setdefault("role", "system")
        else:
            return None

        message["content"] = self.resolver.resolve(message.get("content") or "", prompt, document, params)
        return message

    @staticmethod
    def remembers_context(prompt: Prompt, settings: Mapping[str, Any]) -> bool:
        flag = prompt.metadata.remember_chat_context
        if flag is None:
            flag = settings.get("remember_chat_context")
        return flag is not False

    def append_prompt(
        self,
        prompt: Prompt,
        document: Document,
        messages: List[ChatMessage],
        params: Optional[Mapping[str, Any]] = None,
    ) -> List[ChatMessage]:
        """Append the prompt's user turn and, if recorded, its assistant reply."""
        resolved = self.resolver.resolve(get_prompt_template(prompt), prompt, document, params)

        if isinstance(prompt.input, str):
            messages.append({"role": "user", "content": resolved})
        else:
            message: ChatMessage = {"role": prompt.input.get("role") or "user", "content": resolved}
            for key in _PASSTHROUGH_INPUT_KEYS:
                if prompt.input.get(key) is not None:
                    message[key] = copy.deepcopy(prompt.input[key])
            messages.append(message)

        assistant = self.assistant_message(document, prompt)
        if assistant is not None:
            messages.append(assistant)
        return messages

    @staticmethod
    def assistant_message(document: Document, prompt: Prompt) -> Optional[ChatMessage]:
        """Turn the prompt's latest output into an assistant message, if it is one."""
        output = document.get_latest_output(prompt)
        if not isinstance(output, ExecuteResult):
            return None

        metadata = output.metadata or {}
        raw_response = metadata.get("raw_response")
        raw_role = raw_response.get("role") if isinstance(raw_response, Mapping) else None
        role = metadata.get("role") or raw_role

        if role == "assistant":
            message: ChatMessage = {"role": "assistant", "content": None}
            data = output.data
            if isinstance(data, str):
                message["content"] = data
            elif isinstance(data, OutputDataWithValue):
                if isinstance(data.value, str):
                    message["content"] = data.value
                elif data.kind == "tool_calls" and data.value:
                    calls = list(data.value)
                    if all(isinstance(call, Mapping) and call.get("id") for call in calls):
                        message["tool_calls"] = copy.deepcopy(calls)
                    elif isinstance(calls[-1], Mapping) and calls[-1].get("function"):
                        # Calls recorded without ids predate tool_calls; replay as a function call.
                        message["function_call"] = copy.deepcopy(calls[-1]["function"])
            elif is_legacy_message(data):
                return copy.deepcopy(dict(data))

            name = metadata.get("name")
            if name is None and isinstance(raw_response, Mapping):
                name = raw_response.get("name")
            if name is not None:
                message["name"] = name
            return message

        # Older documents stored the raw chat message itself as output data.
        if is_legacy_message(output.data) and output.data.get("role") == "assistant":
            return copy.deepcopy(dict(output.data))
        return None
