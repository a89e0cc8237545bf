# backend/services/clip_tracker.py
"""
Clip Ingestion Tracker

Keeps a local, most-recent-first projection of one device's clip records and
folds change feed events into it. The storage service is the only writer of
clip state; pushed status and progress values are taken verbatim.
"""

import asyncio
import logging
from typing import AsyncIterable, Callable, List, Optional, Protocol, Sequence

from models.device import ChangeEventType, Clip, ClipChangeEvent

logger = logging.getLogger(__name__)


class ClipSource(Protocol):
    """Point query used to (re)seed the projection"""

    def list_clips(self, serial: str) -> List[Clip]:
        ...


ClipListener = Callable[[List[Clip]], None]


def reconcile(clips: Sequence[Clip], event: ClipChangeEvent) -> List[Clip]:
    """
    Apply one change event to a projection and return the new projection.

    - INSERT of an unknown id prepends; of a known id replaces in place
    - UPDATE replaces in place; unknown id is a no-op
    - DELETE removes; unknown id is a no-op
    """
    index = next((i for i, clip in enumerate(clips) if clip.id == event.clip_id), None)

    if event.event_type == ChangeEventType.DELETE:
        if index is None:
            return list(clips)
        return [clip for clip in clips if clip.id != event.clip_id]

    if event.record is None:
        logger.warning(f"{event.event_type.value} for clip {event.clip_id} carried no record")
        return list(clips)

    if index is None:
        if event.event_type == ChangeEventType.INSERT:
            return [event.record, *clips]
        return list(clips)

    updated = list(clips)
    updated[index] = event.record
    return updated


def _created_sort_key(clip: Clip):
    return (clip.created_at is not None, clip.created_at.timestamp() if clip.created_at else 0)


class ClipIngestionTracker:
    """
    Live clip list for one serial.

    Usage:
        tracker = ClipIngestionTracker(store)
        await tracker.attach("SN123")
        await tracker.consume(feed.events())
    """

    def __init__(self, source: Optional[ClipSource] = None):
        self.source = source
        self.serial: Optional[str] = None
        self._clips: List[Clip] = []
        self._listeners: List[ClipListener] = []
        self._seeding = False
        self._pending: List[ClipChangeEvent] = []

    @property
    def clips(self) -> List[Clip]:
        return list(self._clips)

    def get(self, clip_id: int) -> Optional[Clip]:
        return next((clip for clip in self._clips if clip.id == clip_id), None)

    def subscribe(self, listener: ClipListener) -> Callable[[], None]:
        """Register a callback fired with the new projection after each change"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.clips
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Clip listener failed: {e}", exc_info=True)

    async def attach(self, serial: str) -> List[Clip]:
        """Bind to a serial and seed from the point query"""
        self.serial = serial
        await self.reseed()
        return self.clips

    async def reseed(self) -> None:
        """
        Reload the projection from the source.

        Events that arrive while the query is in flight are replayed on top
        of the fresh rows.
        """
        if self.serial is None or self.source is None:
            return

        serial = self.serial
        self._seeding = True
        self._pending = []
        try:
            loop = asyncio.get_running_loop()
            records = await loop.run_in_executor(None, self.source.list_clips, serial)
        finally:
            self._seeding = False

        if serial != self.serial:
            return

        clips = sorted(records, key=_created_sort_key, reverse=True)
        pending, self._pending = self._pending, []
        for event in pending:
            clips = reconcile(clips, event)

        self._clips = clips
        logger.info(f"Seeded {len(clips)} clips for {serial}")
        self._notify()

    def apply(self, event: ClipChangeEvent) -> None:
        """Fold one change event into the projection"""
        if self.serial is None:
            return
        if event.record is not None and event.record.serial and event.record.serial != self.serial:
            logger.debug(f"Ignoring clip {event.clip_id} for serial {event.record.serial}")
            return

        if self._seeding:
            self._pending.append(event)
            return

        self._clips = reconcile(self._clips, event)
        logger.debug(f"Applied {event.event_type.value} for clip {event.clip_id}")
        self._notify()

    def remove_local(self, clip_id: int) -> None:
        """Drop a clip right after the operator deleted it; the feed echo is a no-op"""
        self.apply(ClipChangeEvent.delete(clip_id))

    async def consume(self, events: AsyncIterable[ClipChangeEvent]) -> int:
        """Apply events until the stream ends; returns how many were seen"""
        count = 0
        async for event in events:
            self.apply(event)
            count += 1
        return count

    def detach(self) -> None:
        self.serial = None
        self._clips = []
        self._pending = []
        self._listeners.clear()
