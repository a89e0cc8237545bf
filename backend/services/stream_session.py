# backend/services/stream_session.py
"""
Live Stream Session Controller

Drives one live HLS feed through Stopped -> Starting -> Active | Error.

Every exit route (operator stop, dialog close, host teardown) goes through
_teardown(), which cancels polling, releases the player and forgets the
session before any network call is made. stop() then awaits the remote stop
command; dispose() fires it in the background and returns immediately.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Protocol, Set

from config import get_settings
from errors import CommandError, SessionConflictError, SessionStateError, StreamStartTimeoutError
from models.device import FeedStatus, StreamKey, StreamSession, StreamState
from services.session_logger import SessionLogger

logger = logging.getLogger(__name__)


class PlaybackResource(Protocol):
    """Player bound to an active stream; owned by exactly one controller"""

    def dispose(self) -> None:
        ...


PlayerFactory = Callable[[str], PlaybackResource]


class StreamSessionRegistry:
    """
    Process-wide claims on live stream keys.

    A key can be owned by one controller at a time. This does not coordinate
    with other processes or with the device itself.
    """

    def __init__(self):
        self._owners: Dict[StreamKey, Any] = {}

    def claim(self, key: StreamKey, owner: Any) -> None:
        current = self._owners.get(key)
        if current is not None and current is not owner:
            raise SessionConflictError(key.serial, key.camera, key.profile)
        self._owners[key] = owner

    def release(self, key: StreamKey, owner: Any) -> None:
        if self._owners.get(key) is owner:
            del self._owners[key]

    def owner_of(self, key: StreamKey) -> Optional[Any]:
        return self._owners.get(key)

    def __len__(self) -> int:
        return len(self._owners)


class StreamSessionController:
    """
    Owns one StreamSession and the player attached to it.

    Usage:
        controller = StreamSessionController(gateway)
        await controller.start("SN123", camera=1, profile=1)
        ...
        await controller.stop()      # or controller.dispose() on teardown
    """

    def __init__(
        self,
        gateway,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        period: Optional[int] = None,
        player_factory: Optional[PlayerFactory] = None,
        registry: Optional[StreamSessionRegistry] = None,
    ):
        settings = get_settings()
        self.gateway = gateway
        self.poll_interval = settings.stream_poll_interval_seconds if poll_interval is None else poll_interval
        self.max_attempts = settings.stream_poll_max_attempts if max_attempts is None else max_attempts
        self.period = settings.stream_period_seconds if period is None else period
        self.player_factory = player_factory
        self.registry = registry

        self._session = StreamSession()
        self._poll_task: Optional[asyncio.Task] = None
        self._player: Optional[PlaybackResource] = None
        # Bumped on every start and teardown; late responses from an older
        # generation are discarded.
        self._generation = 0
        self._feed_requested = False
        # Set for the whole of start(), including the await on a stale stop
        self._starting = False
        self._disposed = False
        self._background: Set[asyncio.Task] = set()
        self.log = SessionLogger(__name__)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def current_state(self) -> StreamSession:
        """Copy of the session for rendering"""
        return replace(self._session)

    @property
    def state(self) -> StreamState:
        return self._session.state

    @property
    def player(self) -> Optional[PlaybackResource]:
        return self._player

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ------------------------------------------------------------------
    # Start / poll
    # ------------------------------------------------------------------

    async def start(self, serial: str, camera: int, profile: int) -> StreamSession:
        """
        Request a live feed and begin polling for it.

        Command failures land in the Error state; they are not raised.

        Raises:
            SessionStateError: controller disposed, or a stream is already running
            SessionConflictError: another controller owns this key
        """
        if self._disposed:
            raise SessionStateError("Stream controller has been disposed", self.state.value)
        if self._session.is_streaming or self._starting:
            raise SessionStateError("A stream is already running; stop it first", self.state.value)

        self._starting = True
        try:
            if self.state == StreamState.ERROR:
                # Clear the failed attempt (and its remote feed, if any) first
                stale = self._teardown()
                generation = self._generation
                await self._remote_stop(stale, generation)

                if self._disposed:
                    raise SessionStateError("Stream controller has been disposed", self.state.value)
                if generation != self._generation:
                    self.log.debug("Stopped while clearing the failed attempt; start abandoned")
                    return self.current_state()

            return await self._begin(serial, camera, profile)
        finally:
            self._starting = False

    async def _begin(self, serial: str, camera: int, profile: int) -> StreamSession:
        key = StreamKey(serial, camera, profile)
        if self.registry is not None:
            self.registry.claim(key, self)

        self._generation += 1
        generation = self._generation
        self._session = StreamSession(key=key, state=StreamState.STARTING)
        self._feed_requested = True
        self.log.bind(key)
        self.log.info("Starting stream")

        try:
            result = await self.gateway.start_stream(serial, camera, profile, period=self.period)
        except CommandError as e:
            if generation == self._generation:
                self._fail(e.message)
            return self.current_state()

        if generation != self._generation:
            self.log.debug("Start response arrived after stop; discarded")
            return self.current_state()

        self._session.stream_endpoint = result.stream_url
        self._poll_task = asyncio.create_task(self._poll_until_active(generation))
        return self.current_state()

    async def _poll_until_active(self, generation: int) -> None:
        """Bounded status loop: one query per interval, max_attempts queries."""
        key = self._session.key
        try:
            for attempt in range(1, self.max_attempts + 1):
                await asyncio.sleep(self.poll_interval)
                if generation != self._generation:
                    return

                self._session.attempts = attempt
                try:
                    status = await self.gateway.stream_status(key.serial, key.camera, key.profile)
                except CommandError as e:
                    if generation != self._generation:
                        return
                    self.log.warning(f"Status check {attempt}/{self.max_attempts} failed: {e.message}")
                    if attempt >= self.max_attempts:
                        self._fail("Stream failed to start: status checks failed")
                        return
                    continue

                if generation != self._generation:
                    return

                if status == FeedStatus.ACTIVE:
                    self._activate()
                    return
                if status == FeedStatus.STOPPED:
                    self._fail("Stream failed to start: device reported the feed stopped")
                    return

            timeout = StreamStartTimeoutError(self.max_attempts, self.poll_interval)
            self._fail(timeout.message)
        finally:
            if self._poll_task is asyncio.current_task():
                self._poll_task = None

    def _activate(self) -> None:
        self._session.state = StreamState.ACTIVE
        self._session.last_error = None
        self.log.info(f"Stream active at {self._session.stream_endpoint}")

        if self.player_factory is None:
            return
        try:
            self._player = self.player_factory(self._session.stream_endpoint)
        except Exception as e:
            self.log.error(f"Failed to initialize video player: {e}")
            self._session.last_error = "Failed to initialize video player"

    def _fail(self, message: str) -> None:
        self._session.state = StreamState.ERROR
        self._session.last_error = message
        self.log.warning(f"Stream error: {message}")

    # ------------------------------------------------------------------
    # Stop / dispose
    # ------------------------------------------------------------------

    def _release_player(self) -> None:
        player, self._player = self._player, None
        if player is None:
            return
        try:
            player.dispose()
        except Exception as e:
            self.log.warning(f"Error disposing player: {e}")

    def _teardown(self) -> Optional[StreamKey]:
        """
        Synchronous part of every stop path.

        Returns the key whose remote feed still needs a stop command, if any.
        """
        self._generation += 1

        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        # Player goes before the session is cleared so the host never
        # unmounts a container that still has a live player in it.
        self._release_player()

        key = self._session.key
        pending_stop = key if self._feed_requested else None
        self._feed_requested = False

        if key is not None and self.registry is not None:
            self.registry.release(key, self)

        self._session = StreamSession()
        return pending_stop

    async def stop(self) -> StreamSession:
        """
        Stop the stream from any state. Idempotent.

        A failed stop command leaves the session Stopped with last_error set.
        """
        key = self._teardown()
        await self._remote_stop(key, self._generation)
        return self.current_state()

    async def _remote_stop(self, key: Optional[StreamKey], generation: int) -> None:
        if key is None:
            return
        try:
            await self.gateway.stop_stream(key.serial, key.camera, key.profile)
            self.log.info("Stream stopped")
        except CommandError as e:
            self.log.warning(f"Error stopping stream: {e.message}")
            if generation == self._generation:
                self._session.last_error = e.message

    def dispose(self) -> None:
        """
        Teardown hook for the session host. Never blocks, never raises.

        The remote stop command is scheduled on the running loop and its
        outcome is only logged.
        """
        self._disposed = True
        key = self._teardown()
        if key is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.log.warning("No running event loop; remote stop skipped")
            return

        task = loop.create_task(self._stop_quietly(key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _stop_quietly(self, key: StreamKey) -> None:
        try:
            await self.gateway.stop_stream(key.serial, key.camera, key.profile)
            logger.info(f"[{key}] Stream stopped on dispose")
        except Exception as e:
            logger.warning(f"[{key}] Stop on dispose failed: {e}")

    async def wait_closed(self) -> None:
        """Wait for background stop commands issued by dispose()"""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
