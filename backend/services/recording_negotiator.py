# backend/services/recording_negotiator.py
"""
Recording Availability Negotiator

Turns a device ring summary into recording regions, lets the operator carve a
clip out of one region, and submits the clip request.

Draft invariants (held after every accepted adjustment):
    region.start_utc <= start_utc < end_utc <= region.end_utc
    min_seconds <= end_utc - start_utc <= max_seconds
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from config import get_settings
from errors import ClipDurationError, CommandError, RegionBoundsError, SessionStateError
from models.device import ClipRequestDraft, ClipRequestResult, RecordingRegion

logger = logging.getLogger(__name__)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def parse_ring_summary(summary: Dict[str, Any], profile: int) -> List[RecordingRegion]:
    """
    Extract the regions for one profile from a ring summary payload.

    Missing profile or missing regions yield an empty list. Malformed regions
    are dropped.
    """
    ring = summary.get("ring") if isinstance(summary, dict) else None
    profiles = ring.get("profiles") if isinstance(ring, dict) else None
    if not isinstance(profiles, list):
        return []

    entry = next(
        (p for p in profiles if isinstance(p, dict) and p.get("profile") == profile),
        None
    )
    if entry is None:
        return []

    regions = []
    for raw in entry.get("regions") or []:
        try:
            regions.append(RecordingRegion(int(raw["start_utc"]), int(raw["end_utc"])))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed region {raw!r}: {e}")
    return regions


class RecordingNegotiator:
    """
    Clip request builder for one device.

    Usage:
        negotiator = RecordingNegotiator(gateway)
        regions = await negotiator.fetch_regions("SN123", camera=0, profile=0)
        negotiator.select_region(regions[0])
        negotiator.adjust_end(-30)
        result = await negotiator.submit()
    """

    def __init__(
        self,
        gateway,
        min_seconds: Optional[int] = None,
        max_seconds: Optional[int] = None,
    ):
        settings = get_settings()
        self.gateway = gateway
        self.min_seconds = settings.clip_min_seconds if min_seconds is None else min_seconds
        self.max_seconds = settings.clip_max_seconds if max_seconds is None else max_seconds

        self.serial: Optional[str] = None
        self.camera: Optional[int] = None
        self.profile: Optional[int] = None
        self.regions: List[RecordingRegion] = []
        self.draft: Optional[ClipRequestDraft] = None
        self.last_error: Optional[str] = None

    async def fetch_regions(self, serial: str, camera: int, profile: int) -> List[RecordingRegion]:
        """
        Ask the device which footage it still holds.

        An empty list means no footage is available; it is not an error.

        Raises:
            CommandError: the ring summary could not be fetched
        """
        self.serial, self.camera, self.profile = serial, camera, profile
        self.regions = []
        self.draft = None
        self.last_error = None

        try:
            summary = await self.gateway.ring_summary(serial, camera, profile)
        except CommandError as e:
            self.last_error = e.message
            logger.warning(f"Ring summary failed for {serial}: {e.message}")
            raise

        self.regions = parse_ring_summary(summary, profile)
        logger.info(f"Found {len(self.regions)} regions for {serial} camera={camera} profile={profile}")
        return list(self.regions)

    def select_region(self, region: RecordingRegion) -> ClipRequestDraft:
        """Start a draft at the region start, as long as allowed or to region end"""
        if self.serial is None:
            raise SessionStateError("Fetch available footage before selecting a region")
        if region.duration < self.min_seconds:
            raise ClipDurationError(region.duration, self.min_seconds, self.max_seconds)

        self.draft = ClipRequestDraft(
            serial=self.serial,
            camera=self.camera,
            profile=self.profile,
            selected_region=region,
            start_utc=region.start_utc,
            end_utc=min(region.start_utc + self.max_seconds, region.end_utc),
        )
        self.last_error = None
        return self.draft

    def _require_draft(self) -> ClipRequestDraft:
        if self.draft is None:
            raise SessionStateError("No region selected")
        return self.draft

    # ------------------------------------------------------------------
    # Bounded adjustment
    # ------------------------------------------------------------------

    def _start_bounds(self, draft: ClipRequestDraft) -> Tuple[int, int]:
        low = max(draft.selected_region.start_utc, draft.end_utc - self.max_seconds)
        return low, draft.end_utc - self.min_seconds

    def _end_bounds(self, draft: ClipRequestDraft) -> Tuple[int, int]:
        high = min(draft.selected_region.end_utc, draft.start_utc + self.max_seconds)
        return draft.start_utc + self.min_seconds, high

    def _proposed_start(self, delta: int) -> Optional[int]:
        draft = self._require_draft()
        low, high = self._start_bounds(draft)
        if low > high:
            return None
        proposed = _clamp(draft.start_utc + delta, low, high)
        return None if proposed == draft.start_utc else proposed

    def _proposed_end(self, delta: int) -> Optional[int]:
        draft = self._require_draft()
        low, high = self._end_bounds(draft)
        if low > high:
            return None
        proposed = _clamp(draft.end_utc + delta, low, high)
        return None if proposed == draft.end_utc else proposed

    def can_adjust_start(self, delta: int) -> bool:
        """False when the start is pinned at the bound delta pushes against"""
        return self._proposed_start(delta) is not None

    def can_adjust_end(self, delta: int) -> bool:
        return self._proposed_end(delta) is not None

    def adjust_start(self, delta: int) -> bool:
        """
        Move the draft start by delta seconds, clamped to the bounds.

        Returns:
            False (draft untouched) if the start cannot move in that direction
        """
        proposed = self._proposed_start(delta)
        if proposed is None:
            return False
        self.draft.start_utc = proposed
        return True

    def adjust_end(self, delta: int) -> bool:
        """Move the draft end by delta seconds; see adjust_start"""
        proposed = self._proposed_end(delta)
        if proposed is None:
            return False
        self.draft.end_utc = proposed
        return True

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def validate(self, draft: ClipRequestDraft) -> None:
        """
        Raises:
            ClipDurationError: span outside [min_seconds, max_seconds]
            RegionBoundsError: range not inside the selected region
        """
        if not self.min_seconds <= draft.duration <= self.max_seconds:
            raise ClipDurationError(draft.duration, self.min_seconds, self.max_seconds)
        if not draft.within_region():
            region = draft.selected_region
            raise RegionBoundsError(draft.start_utc, draft.end_utc, region.start_utc, region.end_utc)

    async def submit(self, draft: Optional[ClipRequestDraft] = None) -> ClipRequestResult:
        """
        Send the clip request. Only confirms the device accepted it; the clip
        itself shows up later through the change feed.

        Raises:
            ValidationError: the draft is invalid (nothing is sent)
        """
        draft = draft or self._require_draft()
        self.validate(draft)

        try:
            response = await self.gateway.request_clip(
                draft.serial, draft.camera, draft.profile, draft.start_utc, draft.end_utc
            )
        except CommandError as e:
            self.last_error = e.message
            logger.warning(f"Clip request rejected for {draft.serial}: {e.message}")
            return ClipRequestResult(
                accepted=False,
                start_utc=draft.start_utc,
                end_utc=draft.end_utc,
                error=e.message,
            )

        logger.info(f"Clip request accepted for {draft.serial} {draft.start_utc}-{draft.end_utc}")
        if draft is self.draft:
            self.draft = None
        self.last_error = None
        return ClipRequestResult(
            accepted=True,
            start_utc=draft.start_utc,
            end_utc=draft.end_utc,
            response=response,
        )

    def cancel(self) -> None:
        """Drop the current draft"""
        self.draft = None
