"""Error taxonomy for document parsing and execution."""

from __future__ import annotations


class PromptDocError(Exception):
    """Base class for all promptdoc errors."""
    pass


class ConfigurationError(PromptDocError):
    """Missing credential, malformed model reference or invalid config. Not retried."""
    pass


class ProtocolError(PromptDocError):
    """Provider response violated the expected schema (e.g. choice count changed mid-stream)."""
    pass
