"""
Call script rendering.

The engine treats the rendered script as opaque payload; rendering happens
once, at submission time.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from calldispatch.shared.exceptions import NotFoundError, ValidationError
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass(frozen=True)
class CallTemplate:
    """A stored call script."""

    template_id: str
    script: str
    assistant_id: str | None = None
    voice: str | None = None
    defaults: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RenderedTemplate:
    script: str
    assistant_id: str | None = None
    voice: str | None = None


class TemplateRenderer(Protocol):
    """Protocol for the template collaborator."""

    def render(self, template_id: str, variables: Mapping[str, Any]) -> RenderedTemplate:
        """Render ``template_id`` with ``variables``.

        Raises:
            NotFoundError: Unknown template.
            ValidationError: A placeholder has no value.
        """
        ...


class StaticTemplateRenderer:
    """In-process template catalog with ``{{name}}`` substitution."""

    def __init__(self, templates: list[CallTemplate] | None = None) -> None:
        self._templates: dict[str, CallTemplate] = {}
        for template in templates or []:
            self.register(template)

    def register(self, template: CallTemplate) -> None:
        self._templates[template.template_id] = template

    def render(self, template_id: str, variables: Mapping[str, Any]) -> RenderedTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")

        values = {**template.defaults, **{k: str(v) for k, v in variables.items()}}
        missing = sorted(
            {name for name in _PLACEHOLDER.findall(template.script) if name not in values}
        )
        if missing:
            raise ValidationError(
                "Missing template variables",
                details={"template_id": template_id, "missing": missing},
            )

        script = _PLACEHOLDER.sub(lambda m: values[m.group(1)], template.script)
        logger.debug("Template rendered", extra={"template_id": template_id})
        return RenderedTemplate(script=script, assistant_id=template.assistant_id, voice=template.voice)


def default_templates() -> list[CallTemplate]:
    return [
        CallTemplate(
            template_id="default",
            script=(
                "Hello {{name}}, this is an automated call. "
                "{{message}}"
            ),
            defaults={"name": "there", "message": ""},
        ),
    ]


_renderer: StaticTemplateRenderer | None = None


def get_template_renderer() -> TemplateRenderer:
    """Process-wide renderer; FastAPI dependency."""
    global _renderer
    if _renderer is None:
        _renderer = StaticTemplateRenderer(default_templates())
    return _renderer
