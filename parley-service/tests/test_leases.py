from __future__ import annotations

import pytest

from parley_service.app.errors import TurnConflictError
from parley_service.app.leases import ChatLeaseRegistry


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_second_turn_on_same_chat_conflicts() -> None:
    registry = ChatLeaseRegistry(ttl_seconds=60.0)
    await registry.acquire("c1", "t1")

    with pytest.raises(TurnConflictError) as exc_info:
        await registry.acquire("c1", "t2")

    assert exc_info.value.details == {"chat_id": "c1", "active_turn_id": "t1"}
    await registry.acquire("c2", "t3")


@pytest.mark.asyncio
async def test_release_only_by_owner() -> None:
    registry = ChatLeaseRegistry(ttl_seconds=60.0)
    await registry.acquire("c1", "t1")

    assert await registry.release("c1", "t2") is False
    assert await registry.release("c1", "t1") is True
    assert await registry.get("c1") is None
    await registry.acquire("c1", "t2")


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_over() -> None:
    clock = _FakeClock()
    registry = ChatLeaseRegistry(ttl_seconds=5.0, clock=clock)
    await registry.acquire("c1", "t1")

    clock.now = 6.0
    lease = await registry.acquire("c1", "t2")

    assert lease.owner_turn_id == "t2"
    assert await registry.release("c1", "t1") is False


@pytest.mark.asyncio
async def test_renew_extends_only_owner_lease() -> None:
    clock = _FakeClock()
    registry = ChatLeaseRegistry(ttl_seconds=5.0, clock=clock)
    await registry.acquire("c1", "t1")

    clock.now = 4.0
    assert await registry.renew("c1", "t1") is True
    assert await registry.renew("c1", "t2") is False
    assert await registry.renew("c2", "t1") is False

    clock.now = 8.0
    with pytest.raises(TurnConflictError):
        await registry.acquire("c1", "t2")

    await registry.release("c1", "t1")
    assert await registry.renew("c1", "t1") is False
