# backend/services/clip_playback.py
"""
Clip playback links and download names.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from config import get_settings
from errors import ValidationError
from models.device import Clip, camera_name

logger = logging.getLogger(__name__)


@dataclass
class PlaybackLink:
    url: str
    expires_at: Optional[datetime]
    reused: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "reused": self.reused,
        }


def download_filename(clip: Clip) -> str:
    """<serial>_<camera>_<YYYY-MM-DDTHH-MM-SS>.mp4, timestamp taken from start_utc in UTC"""
    started = datetime.fromtimestamp(clip.start_utc, tz=timezone.utc)
    return f"{clip.serial}_{camera_name(clip.camera).lower()}_{started.strftime('%Y-%m-%dT%H-%M-%S')}.mp4"


class ClipPlaybackResolver:
    """
    Picks the URL to play or download a clip from.

    A stored signed URL is reused while it has more than refresh_margin
    seconds left; otherwise a fresh one is requested.
    """

    def __init__(
        self,
        storage,
        expiry_seconds: Optional[int] = None,
        refresh_margin_seconds: Optional[int] = None,
    ):
        settings = get_settings()
        self.storage = storage
        self.expiry_seconds = settings.signed_url_expiry_seconds if expiry_seconds is None else expiry_seconds
        self.refresh_margin = timedelta(
            seconds=settings.signed_url_refresh_margin_seconds if refresh_margin_seconds is None else refresh_margin_seconds
        )

    async def resolve(self, clip: Clip, now: Optional[datetime] = None) -> PlaybackLink:
        now = now or datetime.now(timezone.utc)

        if clip.signed_url and clip.signed_url_expires_at:
            if clip.signed_url_expires_at - now > self.refresh_margin:
                logger.debug(f"Using existing signed URL for clip {clip.id}")
                return PlaybackLink(clip.signed_url, clip.signed_url_expires_at, reused=True)

        if not clip.storage_path:
            raise ValidationError("Clip has no stored file yet", field="storage_path", value=clip.id)

        logger.info(f"Generating new signed URL for clip {clip.id}")
        url = await self.storage.create_signed_url(clip.storage_path, self.expiry_seconds)
        return PlaybackLink(url, now + timedelta(seconds=self.expiry_seconds), reused=False)
