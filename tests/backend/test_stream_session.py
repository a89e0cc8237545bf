"""
Unit tests for the Live Stream Session Controller

Tests StreamSessionController state transitions, polling, teardown and
the process-wide stream registry.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from errors import CommandRejectedError, GatewayConnectionError, SessionConflictError, SessionStateError
from models.device import FeedStatus, StreamKey, StreamState
from services.stream_session import StreamSessionController, StreamSessionRegistry


SERIAL = "MVR-0042"


def make_controller(gateway, **kwargs):
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("max_attempts", 10)
    return StreamSessionController(gateway, **kwargs)


async def finish_polling(controller):
    task = controller._poll_task
    if task is not None:
        await task


class TestStartAndPoll:
    """Tests for the Starting -> Active | Error path"""

    @pytest.mark.asyncio
    async def test_start_reaches_active(self, fake_gateway):
        player = MagicMock()
        factory = MagicMock(return_value=player)
        controller = make_controller(fake_gateway, player_factory=factory)

        session = await controller.start(SERIAL, 1, 1)
        assert session.state == StreamState.STARTING
        assert session.stream_endpoint.endswith("/stream.m3u8")

        await finish_polling(controller)

        assert controller.state == StreamState.ACTIVE
        assert controller.player is player
        factory.assert_called_once_with(session.stream_endpoint)
        fake_gateway.start_stream.assert_awaited_once_with(SERIAL, 1, 1, period=0)
        assert controller.is_polling is False

    @pytest.mark.asyncio
    async def test_polls_until_active(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(
            side_effect=[FeedStatus.PENDING, FeedStatus.PENDING, FeedStatus.ACTIVE]
        )
        controller = make_controller(fake_gateway)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)

        assert controller.state == StreamState.ACTIVE
        assert fake_gateway.stream_status.await_count == 3
        assert controller.current_state().attempts == 3

    @pytest.mark.asyncio
    async def test_poll_budget_exhausted(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(return_value=FeedStatus.PENDING)
        controller = make_controller(fake_gateway, max_attempts=10)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)

        session = controller.current_state()
        assert session.state == StreamState.ERROR
        assert session.last_error == "Stream failed to start"
        assert fake_gateway.stream_status.await_count == 10
        assert controller.player is None
        assert controller.is_polling is False

    @pytest.mark.asyncio
    async def test_device_reports_stopped(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(return_value=FeedStatus.STOPPED)
        controller = make_controller(fake_gateway)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)

        session = controller.current_state()
        assert session.state == StreamState.ERROR
        assert "failed to start" in session.last_error
        assert fake_gateway.stream_status.await_count == 1

    @pytest.mark.asyncio
    async def test_status_errors_until_budget(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(
            side_effect=GatewayConnectionError("stream_status", SERIAL)
        )
        controller = make_controller(fake_gateway, max_attempts=3)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)

        assert controller.state == StreamState.ERROR
        assert controller.current_state().last_error == "Stream failed to start: status checks failed"
        assert fake_gateway.stream_status.await_count == 3

    @pytest.mark.asyncio
    async def test_transient_status_error_recovers(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(
            side_effect=[GatewayConnectionError("stream_status", SERIAL), FeedStatus.ACTIVE]
        )
        controller = make_controller(fake_gateway)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)

        assert controller.state == StreamState.ACTIVE

    @pytest.mark.asyncio
    async def test_start_command_failure(self, fake_gateway):
        fake_gateway.start_stream = AsyncMock(
            side_effect=CommandRejectedError("start_stream", SERIAL, reason="Unit offline")
        )
        controller = make_controller(fake_gateway)

        session = await controller.start(SERIAL, 0, 0)

        assert session.state == StreamState.ERROR
        assert session.last_error == "Unit offline"
        assert controller.is_polling is False
        fake_gateway.stream_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_player_factory_failure(self, fake_gateway):
        factory = MagicMock(side_effect=RuntimeError("no codec"))
        controller = make_controller(fake_gateway, player_factory=factory)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)

        session = controller.current_state()
        assert session.state == StreamState.ACTIVE
        assert session.last_error == "Failed to initialize video player"
        assert controller.player is None

    @pytest.mark.asyncio
    async def test_start_while_streaming_rejected(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(return_value=FeedStatus.PENDING)
        controller = make_controller(fake_gateway, poll_interval=10)

        await controller.start(SERIAL, 0, 0)
        with pytest.raises(SessionStateError):
            await controller.start(SERIAL, 1, 1)

        await controller.stop()

    @pytest.mark.asyncio
    async def test_restart_after_error_stops_first(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(side_effect=[FeedStatus.STOPPED, FeedStatus.ACTIVE])
        controller = make_controller(fake_gateway)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)
        assert controller.state == StreamState.ERROR

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)

        assert controller.state == StreamState.ACTIVE
        fake_gateway.stop_stream.assert_awaited_once_with(SERIAL, 0, 0)


class TestStop:
    """Tests for stop from every state"""

    @pytest.mark.asyncio
    async def test_stop_active_releases_player(self, fake_gateway):
        player = MagicMock()
        controller = make_controller(fake_gateway, player_factory=lambda url: player)

        await controller.start(SERIAL, 1, 0)
        await finish_polling(controller)
        session = await controller.stop()

        player.dispose.assert_called_once()
        assert session.state == StreamState.STOPPED
        assert session.key is None
        assert controller.player is None
        fake_gateway.stop_stream.assert_awaited_once_with(SERIAL, 1, 0)

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, fake_gateway):
        controller = make_controller(fake_gateway)
        session = await controller.stop()

        assert session.state == StreamState.STOPPED
        fake_gateway.stop_stream.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_failure_still_stopped(self, fake_gateway):
        fake_gateway.stop_stream = AsyncMock(
            side_effect=CommandRejectedError("stop_stream", SERIAL, reason="Unit offline")
        )
        controller = make_controller(fake_gateway)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)
        session = await controller.stop()

        assert session.state == StreamState.STOPPED
        assert session.last_error == "Unit offline"

    @pytest.mark.asyncio
    async def test_stop_during_start_discards_late_response(self, fake_gateway):
        release = asyncio.Event()
        result = fake_gateway.start_stream.return_value

        async def slow_start(*args, **kwargs):
            await release.wait()
            return result

        fake_gateway.start_stream = AsyncMock(side_effect=slow_start)
        controller = make_controller(fake_gateway)

        start_task = asyncio.create_task(controller.start(SERIAL, 0, 0))
        await asyncio.sleep(0)
        assert controller.state == StreamState.STARTING

        await controller.stop()
        release.set()
        await start_task

        assert controller.state == StreamState.STOPPED
        assert controller.is_polling is False
        fake_gateway.stream_status.assert_not_called()
        fake_gateway.stop_stream.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_while_polling_ends_poll(self, fake_gateway):
        fake_gateway.stream_status = AsyncMock(return_value=FeedStatus.PENDING)
        controller = make_controller(fake_gateway, poll_interval=0.01)

        await controller.start(SERIAL, 0, 0)
        await asyncio.sleep(0.03)
        await controller.stop()
        calls = fake_gateway.stream_status.await_count
        await asyncio.sleep(0.05)

        assert fake_gateway.stream_status.await_count == calls
        assert controller.state == StreamState.STOPPED


class TestDispose:
    """Tests for the fire-and-forget teardown"""

    @pytest.mark.asyncio
    async def test_dispose_is_synchronous(self, fake_gateway):
        player = MagicMock()
        controller = make_controller(fake_gateway, player_factory=lambda url: player)

        await controller.start(SERIAL, 0, 1)
        await finish_polling(controller)

        controller.dispose()

        # Local state is gone before the stop command has run
        assert controller.state == StreamState.STOPPED
        player.dispose.assert_called_once()
        fake_gateway.stop_stream.assert_not_awaited()

        await controller.wait_closed()
        fake_gateway.stop_stream.assert_awaited_once_with(SERIAL, 0, 1)

    @pytest.mark.asyncio
    async def test_dispose_swallows_stop_failure(self, fake_gateway):
        fake_gateway.stop_stream = AsyncMock(side_effect=RuntimeError("socket closed"))
        controller = make_controller(fake_gateway)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)
        controller.dispose()
        await controller.wait_closed()

        assert controller.state == StreamState.STOPPED

    @pytest.mark.asyncio
    async def test_dispose_player_error_logged(self, fake_gateway):
        player = MagicMock()
        player.dispose.side_effect = RuntimeError("already gone")
        controller = make_controller(fake_gateway, player_factory=lambda url: player)

        await controller.start(SERIAL, 0, 0)
        await finish_polling(controller)
        controller.dispose()
        await controller.wait_closed()

        assert controller.player is None

    @pytest.mark.asyncio
    async def test_start_after_dispose_rejected(self, fake_gateway):
        controller = make_controller(fake_gateway)
        controller.dispose()

        assert controller.disposed is True
        with pytest.raises(SessionStateError):
            await controller.start(SERIAL, 0, 0)


class TestRegistry:
    """Tests for at-most-one live session per key"""

    @pytest.mark.asyncio
    async def test_second_controller_conflicts(self, fake_gateway):
        registry = StreamSessionRegistry()
        first = make_controller(fake_gateway, registry=registry)
        second = make_controller(fake_gateway, registry=registry)

        await first.start(SERIAL, 0, 0)
        await finish_polling(first)

        with pytest.raises(SessionConflictError):
            await second.start(SERIAL, 0, 0)
        assert second.state == StreamState.STOPPED

        # A different camera is a different key
        await second.start(SERIAL, 1, 0)
        await finish_polling(second)
        assert len(registry) == 2

        await first.stop()
        assert registry.owner_of(StreamKey(SERIAL, 0, 0)) is None
        await second.stop()
        assert len(registry) == 0

    def test_release_by_non_owner_ignored(self):
        registry = StreamSessionRegistry()
        key = StreamKey(SERIAL, 0, 0)
        owner = object()

        registry.claim(key, owner)
        registry.release(key, object())

        assert registry.owner_of(key) is owner

    def test_reclaim_by_owner_allowed(self):
        registry = StreamSessionRegistry()
        key = StreamKey(SERIAL, 0, 0)
        owner = object()

        registry.claim(key, owner)
        registry.claim(key, owner)
        assert len(registry) == 1


def gated(result):
    """AsyncMock side effect that blocks until released; returns (side_effect, entered, release)"""
    entered = asyncio.Event()
    release = asyncio.Event()

    async def side_effect(*args, **kwargs):
        entered.set()
        await release.wait()
        return result

    return side_effect, entered, release


async def controller_in_error(gateway, **kwargs):
    gateway.stream_status = AsyncMock(return_value=FeedStatus.STOPPED)
    controller = make_controller(gateway, **kwargs)
    await controller.start(SERIAL, 0, 0)
    await finish_polling(controller)
    assert controller.state == StreamState.ERROR
    return controller


class TestTeardownRaces:
    """Tests for stop/dispose racing in-flight commands"""

    @pytest.mark.asyncio
    async def test_stop_while_status_in_flight(self, fake_gateway):
        side_effect, entered, release = gated(FeedStatus.ACTIVE)
        fake_gateway.stream_status = AsyncMock(side_effect=side_effect)
        factory = MagicMock()
        controller = make_controller(fake_gateway, player_factory=factory)

        await controller.start(SERIAL, 0, 0)
        await entered.wait()
        await controller.stop()
        release.set()
        await asyncio.sleep(0.01)

        assert controller.state == StreamState.STOPPED
        assert controller.player is None
        assert controller.is_polling is False
        factory.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", [StreamState.STARTING, StreamState.ERROR])
    async def test_repeated_stop_and_dispose(self, fake_gateway, state):
        if state == StreamState.ERROR:
            fake_gateway.start_stream = AsyncMock(
                side_effect=CommandRejectedError("start_stream", SERIAL, reason="Unit offline")
            )
        registry = StreamSessionRegistry()
        factory = MagicMock()
        controller = make_controller(fake_gateway, poll_interval=10, registry=registry, player_factory=factory)

        await controller.start(SERIAL, 0, 0)
        assert controller.state == state

        await controller.stop()
        await controller.stop()
        controller.dispose()
        controller.dispose()
        await controller.wait_closed()

        assert controller.state == StreamState.STOPPED
        assert controller.player is None
        assert controller.is_polling is False
        assert len(registry) == 0
        factory.assert_not_called()
        fake_gateway.stop_stream.assert_awaited_once_with(SERIAL, 0, 0)

    @pytest.mark.asyncio
    async def test_dispose_while_clearing_error_abandons_start(self, fake_gateway):
        registry = StreamSessionRegistry()
        factory = MagicMock()
        controller = await controller_in_error(fake_gateway, registry=registry, player_factory=factory)

        side_effect, entered, release = gated(True)
        fake_gateway.stop_stream = AsyncMock(side_effect=side_effect)
        fake_gateway.stream_status = AsyncMock(return_value=FeedStatus.ACTIVE)

        restart = asyncio.create_task(controller.start(SERIAL, 0, 0))
        await entered.wait()
        controller.dispose()
        release.set()

        with pytest.raises(SessionStateError):
            await restart
        await controller.wait_closed()

        assert fake_gateway.start_stream.await_count == 1
        assert controller.state == StreamState.STOPPED
        assert controller.is_polling is False
        assert len(registry) == 0
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_while_clearing_error_abandons_start(self, fake_gateway):
        registry = StreamSessionRegistry()
        controller = await controller_in_error(fake_gateway, registry=registry)

        side_effect, entered, release = gated(True)
        fake_gateway.stop_stream = AsyncMock(side_effect=side_effect)

        restart = asyncio.create_task(controller.start(SERIAL, 0, 0))
        await entered.wait()
        await controller.stop()
        release.set()
        session = await restart

        assert session.state == StreamState.STOPPED
        assert fake_gateway.start_stream.await_count == 1
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_concurrent_start_from_error_rejected(self, fake_gateway):
        registry = StreamSessionRegistry()
        controller = await controller_in_error(fake_gateway, registry=registry)

        side_effect, entered, release = gated(True)
        fake_gateway.stop_stream = AsyncMock(side_effect=side_effect)
        fake_gateway.stream_status = AsyncMock(return_value=FeedStatus.ACTIVE)

        first = asyncio.create_task(controller.start(SERIAL, 0, 0))
        await entered.wait()
        with pytest.raises(SessionStateError):
            await controller.start(SERIAL, 1, 0)

        release.set()
        await first
        await finish_polling(controller)
        assert controller.state == StreamState.ACTIVE
        assert registry.owner_of(StreamKey(SERIAL, 1, 0)) is None

        await controller.stop()
        assert len(registry) == 0
        assert fake_gateway.start_stream.await_count == 2
