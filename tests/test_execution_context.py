from __future__ import annotations

import asyncio

import pytest

from agentrelay.core.exceptions import PayloadValidationError
from agentrelay.core.execution_context import (
    CarrierIdentityResolver,
    ExecutionContextCarrier,
    SessionIdentityResolver,
    StaticSession,
    select_identity_resolver,
)
from agentrelay.schemas.identity import Identity, Tenant


def test_has_context_only_after_both_values_set(identity: Identity, tenant: Tenant) -> None:
    carrier = ExecutionContextCarrier()
    assert carrier.has_context() is False

    carrier.set_context(identity, tenant)
    assert carrier.has_context() is True
    assert carrier.get_user() == identity
    assert carrier.get_tenant() == tenant

    carrier.clear()
    carrier.clear()
    assert carrier.has_context() is False
    assert carrier.get_user() is None


def test_set_context_requires_both_values(identity: Identity) -> None:
    carrier = ExecutionContextCarrier()
    with pytest.raises(PayloadValidationError):
        carrier.set_context(identity, None)  # type: ignore[arg-type]
    assert carrier.has_context() is False


def test_scope_restores_previous_state(identity: Identity, tenant: Tenant) -> None:
    carrier = ExecutionContextCarrier()
    other_tenant = Tenant(id=8, name="South Division")

    with carrier.scope(identity, tenant):
        with carrier.scope(identity, other_tenant):
            assert carrier.get_tenant() == other_tenant
        assert carrier.get_tenant() == tenant
    assert carrier.has_context() is False


def test_scope_exits_on_error(identity: Identity, tenant: Tenant) -> None:
    carrier = ExecutionContextCarrier()
    with pytest.raises(RuntimeError):
        with carrier.scope(identity, tenant):
            raise RuntimeError("boom")
    assert carrier.has_context() is False


@pytest.mark.asyncio
async def test_concurrent_jobs_see_their_own_context() -> None:
    carrier = ExecutionContextCarrier()
    observed: dict[int, object] = {}

    async def job(tenant_id: int) -> None:
        with carrier.scope(Identity(id=tenant_id), Tenant(id=tenant_id, name=f"t{tenant_id}")):
            await asyncio.sleep(0)
            tenant = carrier.get_tenant()
            observed[tenant_id] = tenant.id if tenant else None

    await asyncio.gather(*(job(index) for index in range(5)))

    assert observed == {index: index for index in range(5)}


def test_select_resolver_prefers_session(identity: Identity, tenant: Tenant) -> None:
    carrier = ExecutionContextCarrier()
    session = StaticSession(identity, tenant)

    assert isinstance(select_identity_resolver(session=session, carrier=carrier), SessionIdentityResolver)
    assert isinstance(select_identity_resolver(carrier=carrier), CarrierIdentityResolver)
    with pytest.raises(ValueError):
        select_identity_resolver()


def test_carrier_resolver_returns_none_without_context() -> None:
    resolver = CarrierIdentityResolver(ExecutionContextCarrier())
    assert resolver.resolve() is None


def test_selected_session_resolver_ignores_carrier_context(identity: Identity, tenant: Tenant) -> None:
    carrier = ExecutionContextCarrier()
    resolver = select_identity_resolver(session=StaticSession(identity, None), carrier=carrier)

    with carrier.scope(Identity(id=99), tenant):
        assert carrier.has_context() is True
        assert resolver.resolve_user() == identity
        assert resolver.resolve_tenant() is None
        assert resolver.resolve() is None
