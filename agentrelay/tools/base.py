from __future__ import annotations

import re
import time
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

from pydantic import BaseModel, ValidationError

from ..core.execution_context import IdentityResolver
from ..core.logging import get_logger
from ..schemas.identity import Identity, Tenant
from ..services.collectors import TurnCollectors

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..services.ai_logger import AiLogService

logger = get_logger(name=__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

__all__ = ["BoundCapability", "Capability", "tool_name_from_class"]


def tool_name_from_class(class_name: str) -> str:
    """``GetStockAlertsTool`` -> ``get_stock_alerts``."""
    stem = re.sub(r"Tool$", "", class_name) or class_name
    return _CAMEL_BOUNDARY.sub("_", stem).lower()


def error_response(message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


class Capability:
    """A function the agent can call mid-turn on behalf of the current user and tenant.

    Subclasses implement :meth:`execute`. ``args_model`` describes the keyword
    arguments the model may pass; it is validated before ``execute`` runs.
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    args_model: ClassVar[type[BaseModel] | None] = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if not cls.__dict__.get("name"):
            cls.name = tool_name_from_class(cls.__name__)
        if not cls.__dict__.get("description"):
            cls.description = f"Tool: {cls.__name__}"

    async def execute(self, identity: Identity, tenant: Tenant, **kwargs: Any) -> Mapping[str, Any]:
        raise NotImplementedError

    def as_tool_schema(self) -> dict[str, Any]:
        parameters: dict[str, Any] = {"type": "object", "properties": {}}
        if self.args_model is not None:
            parameters = self.args_model.model_json_schema()
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def bind(
        self,
        resolver: IdentityResolver,
        collectors: TurnCollectors,
        *,
        ai_log: "AiLogService | None" = None,
    ) -> "BoundCapability":
        return BoundCapability(self, resolver, collectors, ai_log=ai_log)


class BoundCapability:
    """A capability tied to one turn's identity resolver and collectors."""

    def __init__(
        self,
        capability: Capability,
        resolver: IdentityResolver,
        collectors: TurnCollectors,
        *,
        ai_log: "AiLogService | None" = None,
    ) -> None:
        self._capability = capability
        self._resolver = resolver
        self._collectors = collectors
        self._ai_log = ai_log

    @property
    def name(self) -> str:
        return self._capability.name

    @property
    def description(self) -> str:
        return self._capability.description

    def as_tool_schema(self) -> dict[str, Any]:
        return self._capability.as_tool_schema()

    async def __call__(self, **kwargs: Any) -> dict[str, Any]:
        started = time.perf_counter()
        resolved = self._resolver.resolve()
        if resolved is None:
            logger.warning("capability_context_missing", tool=self.name)
            result = error_response("User or tenant context is unavailable")
            self._collectors.record(self.name, result)
            return result

        try:
            arguments = kwargs
            if self._capability.args_model is not None:
                arguments = self._capability.args_model.model_validate(kwargs).model_dump()
            result = dict(await self._capability.execute(resolved.user, resolved.tenant, **arguments))
        except ValidationError as exc:
            logger.warning("capability_arguments_invalid", tool=self.name, error=str(exc))
            result = error_response(f"Invalid arguments: {exc.error_count()} error(s)")
        except Exception as exc:
            logger.error("capability_failed", tool=self.name, error=str(exc), error_type=type(exc).__name__)
            result = error_response(str(exc))

        duration_ms = int((time.perf_counter() - started) * 1000)
        self._collectors.record(self.name, result)
        logger.info(
            "capability_invoked",
            tool=self.name,
            user_id=resolved.user.id,
            tenant_id=resolved.tenant.id,
            success=result.get("success", True),
            duration_ms=duration_ms,
        )
        if self._ai_log is not None:
            await self._ai_log.log_tool_call(resolved.user.id, self.name, kwargs, result, duration_ms)
        return result
