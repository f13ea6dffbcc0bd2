"""promptdoc: portable prompt-chain documents run against interchangeable model parsers."""

from .callbacks import CallbackEvent, CallbackManager
from .config import RuntimeConfig, load_config, load_raw_config, resolve_api_key
from .errors import ConfigurationError, PromptDocError, ProtocolError
from .history import ChatHistoryBuilder
from .observability import RunObserver, setup_logging
from .parsers import (
    GeminiTextGenerationParser,
    InferenceOptions,
    ModelParser,
    OpenAIChatParser,
    OpenAICompletionParser,
    ParserKind,
    ParserRegistry,
    create_parser,
    default_registry,
)
from .runtime import attach_callbacks, get_output_text, run_prompt, serialize_request
from .schema import (
    Document,
    DocumentMetadata,
    ErrorOutput,
    ExecuteResult,
    ModelMetadata,
    Output,
    OutputDataWithValue,
    Prompt,
    PromptMetadata,
)
from .settings import deep_equal, diff_settings, merge_settings
from .stream import fold, merge_delta
from .templates import PlaceholderResolver, TemplateResolver

__all__ = [
    "CallbackEvent",
    "CallbackManager",
    "ChatHistoryBuilder",
    "ConfigurationError",
    "Document",
    "DocumentMetadata",
    "ErrorOutput",
    "ExecuteResult",
    "GeminiTextGenerationParser",
    "InferenceOptions",
    "ModelMetadata",
    "ModelParser",
    "OpenAIChatParser",
    "OpenAICompletionParser",
    "Output",
    "OutputDataWithValue",
    "ParserKind",
    "ParserRegistry",
    "PlaceholderResolver",
    "Prompt",
    "PromptDocError",
    "PromptMetadata",
    "ProtocolError",
    "RunObserver",
    "RuntimeConfig",
    "TemplateResolver",
    "attach_callbacks",
    "create_parser",
    "deep_equal",
    "default_registry",
    "diff_settings",
    "fold",
    "get_output_text",
    "load_config",
    "load_raw_config",
    "merge_delta",
    "merge_settings",
    "resolve_api_key",
    "run_prompt",
    "serialize_request",
    "setup_logging",
]
