"""Document-level helpers: run, serialize into, and read prompts by name."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

from .callbacks import CallbackManager
from .config import RuntimeConfig
from .errors import ConfigurationError
from .observability import setup_logging
from .parsers import ParserRegistry, default_registry
from .parsers.base import InferenceOptions, ModelParser
from .schema import Document, Output, Prompt

logger = logging.getLogger(__name__)


def parser_for(document: Document, prompt: Prompt, registry: ParserRegistry) -> ModelParser:
    model_name = document.get_model_name(prompt)
    if not model_name:
        raise ConfigurationError(f"Prompt '{prompt.name}' has no model and the document has no default_model")
    return registry.get(model_name)


async def run_prompt(
    document: Document,
    prompt_name: str,
    registry: Optional[ParserRegistry] = None,
    options: Optional[InferenceOptions] = None,
    params: Optional[Mapping[str, Any]] = None,
) -> List[Output]:
    """Run one prompt with the parser registered for its model."""
    registry = registry or default_registry()
    prompt = document.get_prompt(prompt_name)
    parser = parser_for(document, prompt, registry)
    logger.debug("Running prompt '%s' with %s", prompt_name, parser.id)
    return await parser.run(prompt, document, options, params)


async def serialize_request(
    document: Document,
    model_name: str,
    prompt_name: str,
    request: Mapping[str, Any],
    registry: Optional[ParserRegistry] = None,
    params: Optional[Mapping[str, Any]] = None,
) -> List[Prompt]:
    """Serialize a provider request and append the resulting prompts to the document."""
    registry = registry or default_registry()
    parser = registry.get(model_name)
    prompts = await parser.serialize(prompt_name, request, document, params)

    taken = [prompt.name for prompt in prompts if document.has_prompt(prompt.name)]
    if taken:
        raise ValueError(f"Prompt names already exist in document: {', '.join(taken)}")
    for prompt in prompts:
        document.add_prompt(prompt)
    return prompts


def get_output_text(
    document: Document,
    prompt_name: str,
    registry: Optional[ParserRegistry] = None,
    output: Optional[Output] = None,
) -> str:
    registry = registry or default_registry()
    prompt = document.get_prompt(prompt_name)
    parser = parser_for(document, prompt, registry)
    return parser.get_output_text(document, output, prompt)


def attach_callbacks(document: Document, config: Optional[RuntimeConfig] = None, callbacks=None) -> CallbackManager:
    """Give the document a callback manager using the configured timeout and log level."""
    config = config or RuntimeConfig()
    setup_logging(config.log_level, config.verbose)
    manager = CallbackManager(callbacks, timeout=config.callback_timeout_seconds)
    document.callback_manager = manager
    return manager
