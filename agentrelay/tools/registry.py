from __future__ import annotations

from typing import Dict, Iterable, List

from .base import Capability

__all__ = ["CapabilityRegistry"]


class CapabilityRegistry:
    """Capabilities registered per chat context, in registration order."""

    def __init__(self) -> None:
        self._by_context: Dict[str, Dict[str, Capability]] = {}

    def register(self, capability: Capability, *contexts: str) -> None:
        if not contexts:
            raise ValueError("at least one chat context is required")
        for context in contexts:
            self._by_context.setdefault(context, {})[capability.name] = capability

    def register_all(self, capabilities: Iterable[Capability], *contexts: str) -> None:
        for capability in capabilities:
            self.register(capability, *contexts)

    def for_context(self, context: str) -> List[Capability]:
        return list(self._by_context.get(context, {}).values())

    def contexts(self) -> List[str]:
        return list(self._by_context)
