# backend/services/clip_store.py
"""
Clip store.

Point queries against the clips table, used to seed the tracker, plus the
operator-initiated delete.
"""

import logging
from typing import Callable, List, Optional

from database import SessionLocal, session_scope
from models.device import Clip
from models.orm import ClipRecord

logger = logging.getLogger(__name__)


class SqlClipStore:
    """Clip queries over SQLAlchemy"""

    def __init__(self, session_factory: Optional[Callable] = None):
        self.session_factory = session_factory or SessionLocal

    def list_clips(self, serial: str) -> List[Clip]:
        """All clips for a serial, most recent first"""
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(ClipRecord)
                .filter(ClipRecord.serial == serial)
                .order_by(ClipRecord.created_at.desc(), ClipRecord.id.desc())
                .all()
            )
            clips = [Clip.from_record(row.to_dict()) for row in rows]

        logger.debug(f"Loaded {len(clips)} clips for {serial}")
        return clips

    def delete_clip(self, clip_id: int) -> Optional[Clip]:
        """
        Delete a clip row.

        Returns:
            The deleted clip, or None if it did not exist
        """
        with session_scope(self.session_factory) as session:
            row = session.get(ClipRecord, clip_id)
            if row is None:
                return None
            clip = Clip.from_record(row.to_dict())
            session.delete(row)

        logger.info(f"Deleted clip {clip_id}")
        return clip
