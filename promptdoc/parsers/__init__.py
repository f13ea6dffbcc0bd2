"""Parser factory and model-name registry."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from ..config import RuntimeConfig
from ..errors import ConfigurationError
from .base import InferenceOptions, ModelParser, ParserKind
from .gemini import GeminiTextGenerationParser
from .openai import OpenAIChatParser, OpenAICompletionParser

OPENAI_CHAT_MODELS = (
    "gpt-3.5-turbo",
    "gpt-4",
    "gpt-4-turbo",
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4.1",
    "gpt-4.1-mini",
)
OPENAI_COMPLETION_MODELS = (
    "gpt-3.5-turbo-instruct",
    "davinci-002",
    "babbage-002",
)
GEMINI_MODELS = (
    "gemini-2.0-flash",
    "gemini-2.5-flash",
    "gemini-2.5-pro",
)


def create_parser(kind: str, **kwargs: Any) -> ModelParser:
    """Build a parser for a ParserKind value; kwargs go to its constructor."""
    try:
        parser_kind = ParserKind(kind)
    except ValueError as e:
        raise ConfigurationError(f"Unknown parser kind: {kind}") from e

    if parser_kind is ParserKind.CHAT_COMPLETION:
        return OpenAIChatParser(**kwargs)
    if parser_kind is ParserKind.TEXT_COMPLETION:
        return OpenAICompletionParser(**kwargs)
    return GeminiTextGenerationParser(**kwargs)


class ParserRegistry:
    """Static association of model names to parser instances."""

    def __init__(self) -> None:
        self._parsers: Dict[str, ModelParser] = {}

    def register(self, parser: ModelParser, model_names: Optional[Iterable[str]] = None) -> None:
        names = list(model_names) if model_names is not None else [parser.id]
        for name in names:
            self._parsers[name] = parser

    def get(self, model_name: str) -> ModelParser:
        parser = self._parsers.get(model_name)
        if parser is None:
            raise ConfigurationError(f"No model parser registered for model '{model_name}'")
        return parser

    def remove(self, model_name: str) -> None:
        self._parsers.pop(model_name, None)

    def model_names(self) -> List[str]:
        return list(self._parsers)

    def __contains__(self, model_name: object) -> bool:
        return model_name in self._parsers


def default_registry(config: Optional[RuntimeConfig] = None) -> ParserRegistry:
    """Registry wired with the known OpenAI and Gemini models.

    Clients are created on first run, so missing keys only fail when used.
    """
    config = config or RuntimeConfig()
    openai_config = config.provider("openai")
    gemini_config = config.provider("gemini")

    registry = ParserRegistry()
    registry.register(
        OpenAIChatParser(api_key=openai_config.api_key, api_base=openai_config.api_base),
        OPENAI_CHAT_MODELS,
    )
    registry.register(
        OpenAICompletionParser(api_key=openai_config.api_key, api_base=openai_config.api_base),
        OPENAI_COMPLETION_MODELS,
    )
    registry.register(GeminiTextGenerationParser(api_key=gemini_config.api_key), GEMINI_MODELS)
    return registry


__all__ = [
    "GEMINI_MODELS",
    "GeminiTextGenerationParser",
    "InferenceOptions",
    "ModelParser",
    "OPENAI_CHAT_MODELS",
    "OPENAI_COMPLETION_MODELS",
    "OpenAIChatParser",
    "OpenAICompletionParser",
    "ParserKind",
    "ParserRegistry",
    "create_parser",
    "default_registry",
]
