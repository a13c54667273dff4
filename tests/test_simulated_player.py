"""
tests.test_simulated_player
~~~~~~~~~~~~~~~~~~~~~~~~~~~

SimulatedPlayer 测试：时钟推算位置、异步事件、错误路径。
"""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from peerwatch.core.errors import PlayerError
from peerwatch.player.simulated import SimulatedPlayer

MEDIA_ID = "abc123XYZ90"


@pytest.mark.asyncio
async def test_load_before_ready_raises(clock) -> None:
    player = SimulatedPlayer(clock=clock)
    with pytest.raises(PlayerError):
        player.load(MEDIA_ID)


@pytest.mark.asyncio
async def test_ready_events(clock, flush) -> None:
    player = SimulatedPlayer(clock=clock)
    ready = AsyncMock()
    player.on("ready", ready)

    player.start()
    player.load(MEDIA_ID)
    await flush()

    assert [c.args for c in ready.await_args_list] == [(None,), (MEDIA_ID,)]
    assert player.media_id == MEDIA_ID
    await player.close()


@pytest.mark.asyncio
async def test_invalid_media_id_emits_error(clock, flush) -> None:
    player = SimulatedPlayer(clock=clock)
    errors = AsyncMock()
    player.on("error", errors)
    player.start()

    player.load("not-a-valid-id")
    await flush()

    errors.assert_awaited_once()
    assert isinstance(errors.await_args.args[0], PlayerError)
    assert player.media_id is None
    await player.close()


@pytest.mark.asyncio
async def test_position_follows_clock_and_rate(clock, flush) -> None:
    player = SimulatedPlayer(clock=clock)
    player.start()
    player.load(MEDIA_ID)
    await flush()

    player.play()
    clock.advance(10)
    assert player.get_position() == pytest.approx(10.0)

    player.set_rate(2.0)
    clock.advance(5)
    assert player.get_position() == pytest.approx(20.0)

    player.pause()
    clock.advance(100)
    assert player.get_position() == pytest.approx(20.0)
    await player.close()


@pytest.mark.asyncio
async def test_events_only_on_change(clock, flush) -> None:
    player = SimulatedPlayer(clock=clock)
    state_changed = AsyncMock()
    rate_changed = AsyncMock()
    player.on("state_changed", state_changed)
    player.on("rate_changed", rate_changed)
    player.start()
    player.load(MEDIA_ID)
    await flush()

    player.play()
    player.play()
    player.set_rate(1.0)
    player.set_rate(1.5)
    await flush()

    state_changed.assert_awaited_once_with(True)
    rate_changed.assert_awaited_once_with(1.5)
    await player.close()


@pytest.mark.asyncio
async def test_seek_out_of_range(clock, flush) -> None:
    player = SimulatedPlayer(clock=clock, duration=60.0)
    player.start()
    with pytest.raises(PlayerError):
        player.seek(5.0)

    player.load(MEDIA_ID)
    await flush()
    player.seek(30.0)
    assert player.get_position() == 30.0
    with pytest.raises(PlayerError):
        player.seek(61.0)
    await player.close()
