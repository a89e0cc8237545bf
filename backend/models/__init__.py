"""
Dashlink Data Models

Plain dataclasses for streams, recording regions and clips, plus the
SQLAlchemy table for clip persistence.
"""

from .device import (
    # Enums
    StreamState,
    FeedStatus,
    ClipStatus,
    ChangeEventType,

    # Labels
    CAMERA_NAMES,
    PROFILE_NAMES,
    camera_name,
    profile_name,

    # Stream models
    StreamKey,
    StreamSession,
    StartStreamResult,

    # Recording models
    RecordingRegion,
    ClipRequestDraft,
    ClipRequestResult,

    # Clip models
    Clip,
    ClipChangeEvent,
)

__all__ = [
    # Enums
    "StreamState",
    "FeedStatus",
    "ClipStatus",
    "ChangeEventType",

    # Labels
    "CAMERA_NAMES",
    "PROFILE_NAMES",
    "camera_name",
    "profile_name",

    # Stream models
    "StreamKey",
    "StreamSession",
    "StartStreamResult",

    # Recording models
    "RecordingRegion",
    "ClipRequestDraft",
    "ClipRequestResult",

    # Clip models
    "Clip",
    "ClipChangeEvent",

    # ORM Models
    "ClipRecord",
]

# Import ORM models (deferred to avoid circular imports)
try:
    from .orm import ClipRecord
except ImportError:
    # ORM models may not be available if database is not initialized
    pass
