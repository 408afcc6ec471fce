from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

from langchain_core.prompts import PromptTemplate

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.identity import Identity, Tenant

logger = get_logger(name=__name__)

UNSET_TENANT_NAME = "Not set"
FALLBACK_TEMPLATE = "general"


class PromptRenderer(Protocol):
    def render(
        self,
        template: str,
        identity: Identity,
        tenant: Tenant | None,
        tools: Sequence[Mapping[str, str]],
    ) -> str:
        ...


def format_tools(tools: Sequence[Mapping[str, str]]) -> str:
    if not tools:
        return "- none"
    lines = []
    for tool in tools:
        description = tool.get("description")
        lines.append(f"- {tool['name']}: {description}" if description else f"- {tool['name']}")
    return "\n".join(lines)


class TemplatePromptRenderer:
    """Render system prompts from named templates with ``{placeholder}`` fields.

    Available fields: ``user_name``, ``user_id``, ``tenant_id``, ``tenant_name``,
    ``tools`` and ``timestamp``. Unknown template names fall back to ``general``.
    """

    def __init__(
        self,
        templates: Mapping[str, str],
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._templates = {name: PromptTemplate.from_template(text) for name, text in templates.items()}
        self._now = now or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings: Settings) -> "TemplatePromptRenderer":
        return cls(settings.chat.prompt_templates)

    def render(
        self,
        template: str,
        identity: Identity,
        tenant: Tenant | None,
        tools: Sequence[Mapping[str, str]],
    ) -> str:
        started = time.perf_counter()
        prompt_template = self._templates.get(template)
        if prompt_template is None:
            prompt_template = self._templates.get(FALLBACK_TEMPLATE)
            if prompt_template is None:
                raise KeyError(f"Unknown prompt template: {template}")
            logger.warning("prompt_template_fallback", template=template, fallback=FALLBACK_TEMPLATE)

        values: dict[str, Any] = {
            "user_name": identity.label,
            "user_id": identity.id,
            "tenant_id": tenant.id if tenant is not None else "",
            "tenant_name": tenant.name if tenant is not None else UNSET_TENANT_NAME,
            "tools": format_tools(tools),
            "timestamp": self._now().isoformat(timespec="seconds"),
        }
        prompt = prompt_template.format(
            **{key: value for key, value in values.items() if key in prompt_template.input_variables}
        )
        logger.info(
            "prompt_rendered",
            template=template,
            user_id=identity.id,
            tenant_id=values["tenant_id"] or None,
            duration_ms=int((time.perf_counter() - started) * 1000),
            prompt_length=len(prompt),
        )
        return prompt


__all__ = ["PromptRenderer", "TemplatePromptRenderer", "format_tools", "UNSET_TENANT_NAME"]
