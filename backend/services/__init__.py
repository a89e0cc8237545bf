# backend/services/__init__.py
"""
Dashlink Device Session Services

Stream control, clip request negotiation and clip tracking for one device.
"""

from .session_logger import (
    SessionLogger,
    timed_command,
    configure_logging,
)
from .stream_session import StreamSessionController, StreamSessionRegistry
from .recording_negotiator import RecordingNegotiator, parse_ring_summary
from .clip_tracker import ClipIngestionTracker, reconcile
from .session_host import SessionHost

__all__ = [
    # Logging
    "SessionLogger",
    "timed_command",
    "configure_logging",
    # Live stream
    "StreamSessionController",
    "StreamSessionRegistry",
    # Clip requests
    "RecordingNegotiator",
    "parse_ring_summary",
    # Clips
    "ClipIngestionTracker",
    "reconcile",
    "SessionHost",
]
