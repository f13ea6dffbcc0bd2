"""Document, prompt and output records."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from .errors import ConfigurationError
from .settings import diff_settings, merge_settings

if TYPE_CHECKING:
    from .callbacks import CallbackManager


@dataclass
class ModelMetadata:
    """A model reference carrying per-prompt overrides of the global settings."""

    name: str
    settings: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "settings": copy.deepcopy(self.settings)}


ModelRef = Union[str, ModelMetadata]


def parse_model_ref(value: Any) -> Optional[ModelRef]:
    """Build a ModelRef from its serialized form."""
    if value is None or isinstance(value, (str, ModelMetadata)):
        return value
    if isinstance(value, Mapping):
        name = value.get("name")
        settings = value.get("settings") or {}
        if not isinstance(name, str) or not name or not isinstance(settings, Mapping):
            raise ConfigurationError(f"Malformed model reference: {value!r}")
        return ModelMetadata(name=name, settings=dict(settings))
    raise ConfigurationError(f"Malformed model reference: {value!r}")


@dataclass
class PromptMetadata:
    model: Optional[ModelRef] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    remember_chat_context: Optional[bool] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = copy.deepcopy(self.extra)
        if isinstance(self.model, ModelMetadata):
            data["model"] = self.model.to_dict()
        elif self.model is not None:
            data["model"] = self.model
        data["parameters"] = copy.deepcopy(self.parameters)
        if self.remember_chat_context is not None:
            data["remember_chat_context"] = self.remember_chat_context
        return data

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "PromptMetadata":
        data = dict(data or {})
        model = parse_model_ref(data.pop("model", None))
        parameters = data.pop("parameters", None) or {}
        remember = data.pop("remember_chat_context", None)
        return cls(
            model=model,
            parameters=dict(parameters),
            remember_chat_context=remember,
            extra=data,
        )


@dataclass
class OutputDataWithValue:
    """Structured output payload, e.g. ``kind="tool_calls"`` with a list of calls."""

    kind: str  # "string" | "tool_calls" | "base64_string"
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "value": copy.deepcopy(self.value)}


@dataclass
class ExecuteResult:
    execution_count: Optional[int] = None
    data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    mime_type: Optional[str] = None
    output_type: str = "execute_result"

    def to_dict(self) -> Dict[str, Any]:
        data = self.data.to_dict() if isinstance(self.data, OutputDataWithValue) else copy.deepcopy(self.data)
        result: Dict[str, Any] = {
            "output_type": self.output_type,
            "execution_count": self.execution_count,
            "data": data,
            "metadata": copy.deepcopy(self.metadata),
        }
        if self.mime_type is not None:
            result["mime_type"] = self.mime_type
        return result


@dataclass
class ErrorOutput:
    ename: str
    evalue: str
    traceback: List[str] = field(default_factory=list)
    output_type: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_type": self.output_type,
            "ename": self.ename,
            "evalue": self.evalue,
            "traceback": list(self.traceback),
        }


Output = Union[ExecuteResult, ErrorOutput]


def output_from_dict(data: Mapping[str, Any]) -> Output:
    if data.get("output_type") == "error":
        return ErrorOutput(
            ename=str(data.get("ename", "")),
            evalue=str(data.get("evalue", "")),
            traceback=list(data.get("traceback") or []),
        )

    payload = data.get("data")
    # {"kind", "value"} is the structured shape; anything else (plain strings,
    # legacy raw chat messages) is stored as-is.
    if isinstance(payload, Mapping) and set(payload.keys()) == {"kind", "value"}:
        payload = OutputDataWithValue(kind=str(payload["kind"]), value=copy.deepcopy(payload["value"]))
    else:
        payload = copy.deepcopy(payload)
    return ExecuteResult(
        execution_count=data.get("execution_count"),
        data=payload,
        metadata=dict(data.get("metadata") or {}),
        mime_type=data.get("mime_type"),
    )


def is_legacy_message(data: Any) -> bool:
    """Old documents stored the provider's raw chat message as output data."""
    return isinstance(data, Mapping) and "content" in data and "role" in data


def project_output_text(output: Optional[Output]) -> str:
    """Project any output variant to display text. Never raises."""
    if output is None or not isinstance(output, ExecuteResult):
        return ""

    data = output.data
    try:
        if isinstance(data, str):
            return data
        if isinstance(data, OutputDataWithValue):
            if isinstance(data.value, str):
                return data.value
            return json.dumps(data.value)
        if is_legacy_message(data):
            if data.get("content") is not None:
                content = data["content"]
                return content if isinstance(content, str) else json.dumps(content)
            if data.get("function_call"):
                return json.dumps(data["function_call"])
            if data.get("tool_calls"):
                return json.dumps(data["tool_calls"])
        # Text-generation outputs once stored the whole response object.
        if isinstance(data, Mapping) and isinstance(data.get("generated_text"), str):
            return data["generated_text"]
    except (TypeError, ValueError):
        return ""
    return ""


@dataclass
class Prompt:
    name: str
    input: Union[str, Dict[str, Any]] = ""
    metadata: PromptMetadata = field(default_factory=PromptMetadata)
    outputs: List[Output] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "input": copy.deepcopy(self.input),
            "metadata": self.metadata.to_dict(),
        }
        if self.outputs:
            result["outputs"] = [output.to_dict() for output in self.outputs]
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Prompt":
        return cls(
            name=str(data["name"]),
            input=copy.deepcopy(data.get("input", "")),
            metadata=PromptMetadata.from_dict(data.get("metadata")),
            outputs=[output_from_dict(o) for o in data.get("outputs") or []],
        )


@dataclass
class DocumentMetadata:
    models: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    default_model: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "parameters": copy.deepcopy(self.parameters),
            "models": copy.deepcopy(self.models),
        }
        if self.default_model is not None:
            result["default_model"] = self.default_model
        return result

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "DocumentMetadata":
        data = data or {}
        return cls(
            models={name: dict(settings or {}) for name, settings in (data.get("models") or {}).items()},
            default_model=data.get("default_model"),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass
class Document:
    """An ordered chain of prompts plus global model settings.

    Prompt names are unique; list order is conversation order.
    """

    name: str = ""
    description: str = ""
    schema_version: str = "latest"
    metadata: DocumentMetadata = field(default_factory=DocumentMetadata)
    prompts: List[Prompt] = field(default_factory=list)
    callback_manager: Optional["CallbackManager"] = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        seen = set()
        for prompt in self.prompts:
            if prompt.name in seen:
                raise ValueError(f"Duplicate prompt name: {prompt.name}")
            seen.add(prompt.name)

    # --- prompts ---

    def get_prompt(self, name: str) -> Prompt:
        for prompt in self.prompts:
            if prompt.name == name:
                return prompt
        raise KeyError(f"Prompt '{name}' not found in document")

    def has_prompt(self, name: str) -> bool:
        return any(prompt.name == name for prompt in self.prompts)

    def add_prompt(self, prompt: Prompt, index: Optional[int] = None) -> None:
        if self.has_prompt(prompt.name):
            raise ValueError(f"Duplicate prompt name: {prompt.name}")
        if index is None:
            self.prompts.append(prompt)
        else:
            self.prompts.insert(index, prompt)

    def get_latest_output(self, prompt: Union[str, Prompt]) -> Optional[Output]:
        if isinstance(prompt, str):
            prompt = self.get_prompt(prompt)
        if not prompt.outputs:
            return None
        return prompt.outputs[-1]

    # --- model settings ---

    def get_global_settings(self, model_name: str) -> Dict[str, Any]:
        return copy.deepcopy(self.metadata.models.get(model_name) or {})

    def get_model_name(self, prompt: Prompt) -> Optional[str]:
        model = prompt.metadata.model
        if model is None:
            return self.metadata.default_model
        if isinstance(model, str):
            return model
        if isinstance(model, ModelMetadata):
            return model.name
        raise ConfigurationError(f"Malformed model reference on prompt '{prompt.name}': {model!r}")

    def get_model_metadata(self, settings: Optional[Mapping[str, Any]], model_name: str) -> ModelRef:
        """Reference ``model_name`` with the smallest override set reproducing ``settings``."""
        settings = dict(settings or {})
        if model_name not in self.metadata.models:
            return ModelMetadata(name=model_name, settings=copy.deepcopy(settings))

        overrides = diff_settings(self.metadata.models[model_name], settings)
        if overrides:
            return ModelMetadata(name=model_name, settings=overrides)
        return model_name

    def get_model_settings(self, prompt: Prompt) -> Dict[str, Any]:
        """Global settings for the prompt's model with its override layered on top."""
        model = prompt.metadata.model
        if model is None:
            if not self.metadata.default_model:
                return {}
            return self.get_global_settings(self.metadata.default_model)
        if isinstance(model, str):
            return self.get_global_settings(model)
        if isinstance(model, ModelMetadata):
            return merge_settings(self.metadata.models.get(model.name), model.settings)
        raise ConfigurationError(f"Malformed model reference on prompt '{prompt.name}': {model!r}")

    # --- serialization ---

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "schema_version": self.schema_version,
            "metadata": self.metadata.to_dict(),
            "prompts": [prompt.to_dict() for prompt in self.prompts],
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        callback_manager: Optional["CallbackManager"] = None,
    ) -> "Document":
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description", "") or ""),
            schema_version=str(data.get("schema_version", "latest")),
            metadata=DocumentMetadata.from_dict(data.get("metadata")),
            prompts=[Prompt.from_dict(p) for p in data.get("prompts") or []],
            callback_manager=callback_manager,
        )
