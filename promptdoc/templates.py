"""Prompt template resolution.

Parsers only depend on the :class:`TemplateResolver` protocol. The shipped
:class:`PlaceholderResolver` handles ``{{name}}`` placeholders, which is
enough for most documents; applications can plug in a richer engine.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Mapping, Optional, Protocol

from .schema import Document, Prompt, project_output_text

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"{{\s*([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\s*}}")


class TemplateResolver(Protocol):
    """Resolves a template string. Must not mutate the document."""

    def resolve(
        self,
        template: str,
        prompt: Prompt,
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> str: ...


class PlaceholderResolver:
    """Replace ``{{name}}`` and ``{{prompt_name.input|output}}`` placeholders.

    Lookup order: call params, prompt parameters, document parameters, then
    references to prompts declared before ``prompt``. Unknown names render as
    an empty string.
    """

    def resolve(
        self,
        template: str,
        prompt: Prompt,
        document: Document,
        params: Optional[Mapping[str, Any]] = None,
    ) -> str:
        if not template or "{{" not in template:
            return template or ""

        scope: Dict[str, Any] = {}
        scope.update(document.metadata.parameters)
        scope.update(prompt.metadata.parameters)
        scope.update(params or {})

        def _substitute(match: re.Match) -> str:
            key = match.group(1)
            if key in scope:
                return self._stringify(scope[key])
            value = self._lookup_prompt_reference(key, prompt, document)
            if value is None:
                logger.debug("Unresolved template placeholder '%s' in prompt '%s'", key, prompt.name)
                return ""
            return value

        return _PLACEHOLDER.sub(_substitute, template)

    def _lookup_prompt_reference(self, key: str, prompt: Prompt, document: Document) -> Optional[str]:
        name, _, attribute = key.rpartition(".")
        if not name or attribute not in ("input", "output"):
            return None

        for candidate in document.prompts:
            if candidate.name == prompt.name:
                # Only earlier prompts can be referenced.
                return None
            if candidate.name != name:
                continue
            if attribute == "output":
                return project_output_text(document.get_latest_output(candidate))
            if isinstance(candidate.input, str):
                return candidate.input
            data = candidate.input.get("data", candidate.input.get("content"))
            return self._stringify(data)
        return None

    @staticmethod
    def _stringify(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        try:
            return json.dumps(value)
        except (TypeError, ValueError):
            return str(value)
