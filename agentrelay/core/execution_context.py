"""Identity and tenant handoff between the web request and background workers.

The web layer reads identity and tenant from its session. A background worker
has no session, so whoever enqueues the job copies both values into the job and
the worker installs them on an :class:`ExecutionContextCarrier` for the duration
of the job. Consumers never consult both sources themselves: the entry point picks
one :class:`IdentityResolver` and hands it down.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Protocol

from ..schemas.identity import Identity, Tenant
from .exceptions import PayloadValidationError


@dataclass(frozen=True, slots=True)
class ResolvedContext:
    user: Identity
    tenant: Tenant


class ExecutionContextCarrier:
    def __init__(self) -> None:
        self._state: ContextVar[ResolvedContext | None] = ContextVar(
            f"execution_context_{id(self)}", default=None
        )

    def set_context(self, identity: Identity, tenant: Tenant) -> None:
        self._state.set(self._build(identity, tenant))

    def get_user(self) -> Identity | None:
        state = self._state.get()
        return state.user if state is not None else None

    def get_tenant(self) -> Tenant | None:
        state = self._state.get()
        return state.tenant if state is not None else None

    def has_context(self) -> bool:
        return self._state.get() is not None

    def clear(self) -> None:
        self._state.set(None)

    @contextmanager
    def scope(self, identity: Identity, tenant: Tenant) -> Iterator[ResolvedContext]:
        """Install identity and tenant for a block; the previous state is restored on exit."""
        state = self._build(identity, tenant)
        token = self._state.set(state)
        try:
            yield state
        finally:
            self._state.reset(token)

    @staticmethod
    def _build(identity: Identity | None, tenant: Tenant | None) -> ResolvedContext:
        if identity is None or tenant is None:
            raise PayloadValidationError("execution context requires both an identity and a tenant")
        return ResolvedContext(user=identity, tenant=tenant)


class AmbientSession(Protocol):
    """Request-bound source of identity (the web session)."""

    def get_user(self) -> Identity | None:
        ...

    def get_tenant(self) -> Tenant | None:
        ...


class StaticSession:
    """Session snapshot; useful for the synchronous path and for tests."""

    def __init__(self, user: Identity | None = None, tenant: Tenant | None = None) -> None:
        self._user = user
        self._tenant = tenant

    def get_user(self) -> Identity | None:
        return self._user

    def get_tenant(self) -> Tenant | None:
        return self._tenant


class IdentityResolver(ABC):
    @abstractmethod
    def resolve_user(self) -> Identity | None:
        ...

    @abstractmethod
    def resolve_tenant(self) -> Tenant | None:
        ...

    def resolve(self) -> ResolvedContext | None:
        user = self.resolve_user()
        tenant = self.resolve_tenant()
        if user is None or tenant is None:
            return None
        return ResolvedContext(user=user, tenant=tenant)


class SessionIdentityResolver(IdentityResolver):
    def __init__(self, session: AmbientSession) -> None:
        self._session = session

    def resolve_user(self) -> Identity | None:
        return self._session.get_user()

    def resolve_tenant(self) -> Tenant | None:
        return self._session.get_tenant()


class CarrierIdentityResolver(IdentityResolver):
    def __init__(self, carrier: ExecutionContextCarrier) -> None:
        self._carrier = carrier

    def resolve_user(self) -> Identity | None:
        return self._carrier.get_user()

    def resolve_tenant(self) -> Tenant | None:
        return self._carrier.get_tenant()


def select_identity_resolver(
    *,
    session: AmbientSession | None = None,
    carrier: ExecutionContextCarrier | None = None,
) -> IdentityResolver:
    """Pick the resolver once, at the request or task entry point."""
    if session is not None:
        return SessionIdentityResolver(session)
    if carrier is not None:
        return CarrierIdentityResolver(carrier)
    raise ValueError("either a session or an execution context carrier is required")


__all__ = [
    "AmbientSession",
    "CarrierIdentityResolver",
    "ExecutionContextCarrier",
    "IdentityResolver",
    "ResolvedContext",
    "SessionIdentityResolver",
    "StaticSession",
    "select_identity_resolver",
]
