import asyncio

import pytest

from portal_notify.services.network_state import NetworkStateSignal


def test_only_changes_are_reported():
    signal = NetworkStateSignal()

    assert signal.set_online(True) is False
    assert signal.set_online(False) is True
    assert signal.is_online() is False


@pytest.mark.asyncio
async def test_each_subscriber_sees_every_transition():
    signal = NetworkStateSignal()
    seen = {"a": [], "b": []}

    async def consume(name):
        async for online in signal.transitions():
            seen[name].append(online)
            if len(seen[name]) == 2:
                return

    consumers = [asyncio.create_task(consume("a")), asyncio.create_task(consume("b"))]
    await asyncio.sleep(0)

    signal.set_online(False, source="test")
    signal.set_online(True, source="test")
    await asyncio.wait_for(asyncio.gather(*consumers), timeout=1)

    assert seen == {"a": [False, True], "b": [False, True]}
