"""Sandboxed Jinja2 rendering of the per-item user message."""

import hashlib
from collections.abc import Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment

# Prompts are plain text: no autoescape; a missing variable is an error
_ENV = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


class TemplateError(Exception):
    """A prompt template failed to compile or render.

    Not a ClassifierError: a template that cannot render is a configuration
    bug, so the run fails instead of recording the item as an error.
    """


class PromptTemplate:
    """User-message template.

    Templates see the item text as ``text`` and item metadata under ``item``:
        - {{ text }} - the text being classified
        - {{ item.source_id }}, {{ item.item_type }}
        - {{ item.attributes.column_name }} - passthrough source columns

    Example:
        template = PromptTemplate("Narrative ({{ item.item_type }}):\\n{{ text }}")
        prompt = template.render("He hit her.", {"item_type": "le"})
    """

    def __init__(self, source: str) -> None:
        try:
            self._compiled = _ENV.from_string(source)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Invalid template syntax: {e}") from e
        self._hash = hashlib.sha256(source.encode("utf-8")).hexdigest()

    @property
    def template_hash(self) -> str:
        return self._hash

    def render(self, text: str, item: Mapping[str, Any] | None = None) -> str:
        """Render the user message for one item.

        Raises:
            TemplateError: On an undefined variable or a sandbox violation
        """
        try:
            return self._compiled.render(text=text, item={} if item is None else dict(item))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}") from e
        except SecurityError as e:
            raise TemplateError(f"Sandbox violation: {e}") from e
