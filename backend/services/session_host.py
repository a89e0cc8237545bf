# backend/services/session_host.py
"""
Session Host

Owns everything one operator view of one device needs: the live stream
controller, the clip request negotiator, the clip tracker and its change
feed. Closing the view calls dispose() exactly once, which tears all of
them down without waiting on the network.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from errors import ValidationError
from models.device import Clip, ClipRequestDraft, ClipRequestResult, RecordingRegion, StreamSession
from services.clip_playback import ClipPlaybackResolver, PlaybackLink
from services.clip_tracker import ClipIngestionTracker
from services.recording_negotiator import RecordingNegotiator
from services.stream_session import PlayerFactory, StreamSessionController, StreamSessionRegistry

logger = logging.getLogger(__name__)

# serial, on_connect -> object with events() and close()
FeedFactory = Callable[[str, Callable], Any]


class SessionHost:
    """
    Per-device session container.

    Usage:
        async with SessionHost("SN123", gateway, clip_source=store) as host:
            await host.start_stream(camera=1, profile=1)
            regions = await host.fetch_regions(camera=0, profile=0)
    """

    def __init__(
        self,
        serial: str,
        gateway,
        clip_source=None,
        storage=None,
        registry: Optional[StreamSessionRegistry] = None,
        player_factory: Optional[PlayerFactory] = None,
        feed_factory: Optional[FeedFactory] = None,
    ):
        self.host_id = uuid.uuid4().hex
        self.serial = serial
        self.gateway = gateway
        self.clip_source = clip_source
        self.storage = storage

        self.stream = StreamSessionController(gateway, player_factory=player_factory, registry=registry)
        self.negotiator = RecordingNegotiator(gateway)
        self.tracker = ClipIngestionTracker(clip_source)
        self.playback = ClipPlaybackResolver(storage) if storage is not None else None

        self.feed_factory = feed_factory
        self._feed = None
        self._feed_task: Optional[asyncio.Task] = None
        self._opened = False
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def open(self) -> "SessionHost":
        """Seed the clip list and start following the change feed"""
        if self._disposed:
            raise ValidationError("Session host has been disposed", field="host", value=self.host_id)
        if self._opened:
            return self
        self._opened = True

        await self.tracker.attach(self.serial)

        if self.feed_factory is not None:
            self._feed = self.feed_factory(self.serial, self.tracker.reseed)
            self._feed_task = asyncio.create_task(self._follow_feed())

        logger.info(f"Session host {self.host_id} opened for {self.serial}")
        return self

    async def _follow_feed(self) -> None:
        try:
            count = await self.tracker.consume(self._feed.events())
            logger.info(f"Clip feed for {self.serial} ended after {count} events")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Clip feed for {self.serial} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Live stream
    # ------------------------------------------------------------------

    async def start_stream(self, camera: int, profile: int) -> StreamSession:
        return await self.stream.start(self.serial, camera, profile)

    async def stop_stream(self) -> StreamSession:
        return await self.stream.stop()

    def stream_state(self) -> StreamSession:
        return self.stream.current_state()

    # ------------------------------------------------------------------
    # Clip requests
    # ------------------------------------------------------------------

    async def fetch_regions(self, camera: int, profile: int) -> List[RecordingRegion]:
        return await self.negotiator.fetch_regions(self.serial, camera, profile)

    def select_region(self, index: int) -> ClipRequestDraft:
        """Select a region by its position in the last fetched list"""
        regions = self.negotiator.regions
        if not 0 <= index < len(regions):
            raise ValidationError("Unknown recording region", field="region", value=index)
        return self.negotiator.select_region(regions[index])

    def adjust(self, start_delta: int = 0, end_delta: int = 0) -> Dict[str, bool]:
        """Apply start then end adjustments; reports which were accepted"""
        result = {"start": False, "end": False}
        if start_delta:
            result["start"] = self.negotiator.adjust_start(start_delta)
        if end_delta:
            result["end"] = self.negotiator.adjust_end(end_delta)
        return result

    async def submit_clip(self) -> ClipRequestResult:
        return await self.negotiator.submit()

    # ------------------------------------------------------------------
    # Clips
    # ------------------------------------------------------------------

    def clips(self) -> List[Clip]:
        return self.tracker.clips

    def _require_clip(self, clip_id: int) -> Clip:
        clip = self.tracker.get(clip_id)
        if clip is None:
            raise ValidationError("Clip not found", field="clip_id", value=clip_id)
        return clip

    async def playback_link(self, clip_id: int) -> PlaybackLink:
        if self.playback is None:
            raise ValidationError("Clip storage is not configured", field="storage")
        return await self.playback.resolve(self._require_clip(clip_id))

    async def delete_clip(self, clip_id: int) -> Optional[Clip]:
        """
        Remove the stored file (best effort), then the clip row.

        The local list drops the clip right away; the change feed echo is a
        no-op afterwards.
        """
        clip = self.tracker.get(clip_id)

        if clip is not None and clip.storage_path and self.storage is not None:
            try:
                await self.storage.remove_objects([clip.storage_path])
            except Exception as e:
                logger.warning(f"Storage delete failed for clip {clip_id}: {e}")

        deleted = None
        if self.clip_source is not None:
            loop = asyncio.get_running_loop()
            deleted = await loop.run_in_executor(None, self.clip_source.delete_clip, clip_id)

        self.tracker.remove_local(clip_id)
        return deleted or clip

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Tear everything down. Safe to call more than once; only the first call acts."""
        if self._disposed:
            return
        self._disposed = True

        self.stream.dispose()
        self.negotiator.cancel()

        if self._feed is not None:
            self._feed.close()
        if self._feed_task is not None and not self._feed_task.done():
            self._feed_task.cancel()

        self.tracker.detach()
        logger.info(f"Session host {self.host_id} disposed")

    async def aclose(self) -> None:
        """dispose() and wait for the background stop command and feed task"""
        self.dispose()
        await self.stream.wait_closed()
        if self._feed_task is not None:
            await asyncio.gather(self._feed_task, return_exceptions=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostId": self.host_id,
            "serial": self.serial,
            "stream": self.stream.current_state().to_dict(),
            "clipCount": len(self.tracker.clips),
            "disposed": self._disposed,
        }

    async def __aenter__(self) -> "SessionHost":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
