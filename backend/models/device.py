# backend/models/device.py
"""
Device Data Models for Dashlink

Defines the data structures shared by the stream controller, the recording
negotiator and the clip tracker.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# ENUMS
# =============================================================================

class StreamState(str, Enum):
    """Live stream session state"""
    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    ERROR = "error"


class FeedStatus(str, Enum):
    """Stream status as reported by the device gateway"""
    ACTIVE = "active"
    STOPPED = "stopped"
    PENDING = "pending"         # Anything else; keep polling


class ClipStatus(str, Enum):
    """Transfer lifecycle of a clip record"""
    RECEIVING = "receiving"     # Device is uploading
    READY = "ready"             # Upload finished, file stored
    COMPLETED = "completed"     # Post-processing finished
    FAILED = "failed"           # Transfer failed, see error_message


class ChangeEventType(str, Enum):
    """Change feed event kinds"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


CAMERA_NAMES = {
    0: "Road",
    1: "Cab",
}

PROFILE_NAMES = {
    0: "High Res",
    1: "Low Res",
}


def camera_name(camera: int) -> str:
    return CAMERA_NAMES.get(camera, f"Camera {camera}")


def profile_name(profile: int) -> str:
    return PROFILE_NAMES.get(profile, f"Profile {profile}")


# =============================================================================
# STREAM MODELS
# =============================================================================

@dataclass(frozen=True)
class StreamKey:
    """Identifies one live feed on one device"""
    serial: str
    camera: int
    profile: int

    def __str__(self) -> str:
        return f"{self.serial}/{self.camera}/{self.profile}"


@dataclass
class StreamSession:
    """Snapshot of a controller's live stream session"""
    key: Optional[StreamKey] = None
    state: StreamState = StreamState.STOPPED
    stream_endpoint: Optional[str] = None
    last_error: Optional[str] = None
    attempts: int = 0

    @property
    def is_streaming(self) -> bool:
        return self.state in (StreamState.STARTING, StreamState.ACTIVE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serial": self.key.serial if self.key else None,
            "camera": self.key.camera if self.key else None,
            "profile": self.key.profile if self.key else None,
            "state": self.state.value,
            "streamEndpoint": self.stream_endpoint,
            "lastError": self.last_error,
            "attempts": self.attempts,
        }


@dataclass
class StartStreamResult:
    """Gateway answer to a start_stream command"""
    ok: bool
    stream_url: str
    raw: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# RECORDING MODELS
# =============================================================================

@dataclass(frozen=True)
class RecordingRegion:
    """Contiguous span of footage the device still holds"""
    start_utc: int
    end_utc: int

    def __post_init__(self):
        if self.end_utc <= self.start_utc:
            raise ValueError(f"Region end {self.end_utc} must be after start {self.start_utc}")

    @property
    def duration(self) -> int:
        return self.end_utc - self.start_utc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_utc": self.start_utc,
            "end_utc": self.end_utc,
            "duration": self.duration,
        }


@dataclass
class ClipRequestDraft:
    """Operator's clip selection carved out of one recording region"""
    serial: str
    camera: int
    profile: int
    selected_region: RecordingRegion
    start_utc: int
    end_utc: int

    @property
    def duration(self) -> int:
        return self.end_utc - self.start_utc

    def within_region(self) -> bool:
        region = self.selected_region
        return region.start_utc <= self.start_utc < self.end_utc <= region.end_utc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serial": self.serial,
            "camera": self.camera,
            "profile": self.profile,
            "selectedRegion": self.selected_region.to_dict(),
            "start_utc": self.start_utc,
            "end_utc": self.end_utc,
            "duration": self.duration,
        }


@dataclass
class ClipRequestResult:
    """Outcome of submitting a draft to the device"""
    accepted: bool
    start_utc: int
    end_utc: int
    error: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "start_utc": self.start_utc,
            "end_utc": self.end_utc,
            "error": self.error,
        }


# =============================================================================
# CLIP MODELS
# =============================================================================

def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _status_value(value: Any) -> str:
    """Map to ClipStatus when known, otherwise keep the pushed string as-is"""
    try:
        return ClipStatus(value)
    except ValueError:
        return str(value)


@dataclass
class Clip:
    """Client-side copy of a clip record owned by the storage service"""
    id: int
    serial: str
    camera: int
    profile: int
    start_utc: int
    end_utc: int
    duration_seconds: int = 0
    file_size: int = 0
    storage_path: str = ""
    status: str = ClipStatus.RECEIVING
    progress_percent: float = 0
    bytes_received: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    signed_url: Optional[str] = None
    signed_url_expires_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Clip":
        """Build from a row as delivered by the query service or change feed"""
        return cls(
            id=int(record["id"]),
            serial=record.get("serial") or "",
            camera=int(record.get("camera") or 0),
            profile=int(record.get("profile") or 0),
            start_utc=int(record.get("start_utc") or 0),
            end_utc=int(record.get("end_utc") or 0),
            duration_seconds=int(record.get("duration_seconds") or 0),
            file_size=int(record.get("file_size") or 0),
            storage_path=record.get("storage_path") or "",
            status=_status_value(record.get("status") or ClipStatus.RECEIVING.value),
            progress_percent=record.get("progress_percent") or 0,
            bytes_received=int(record.get("bytes_received") or 0),
            error_message=record.get("error_message"),
            created_at=_parse_timestamp(record.get("created_at")),
            signed_url=record.get("signed_url"),
            signed_url_expires_at=_parse_timestamp(record.get("signed_url_expires_at")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "serial": self.serial,
            "camera": self.camera,
            "cameraName": camera_name(self.camera),
            "profile": self.profile,
            "profileName": profile_name(self.profile),
            "start_utc": self.start_utc,
            "end_utc": self.end_utc,
            "duration_seconds": self.duration_seconds,
            "file_size": self.file_size,
            "storage_path": self.storage_path,
            "status": self.status.value if isinstance(self.status, ClipStatus) else self.status,
            "progress_percent": self.progress_percent,
            "bytes_received": self.bytes_received,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class ClipChangeEvent:
    """One insert/update/delete notification from the change feed"""
    event_type: ChangeEventType
    clip_id: int
    record: Optional[Clip] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def insert(cls, clip: Clip) -> "ClipChangeEvent":
        return cls(ChangeEventType.INSERT, clip.id, clip)

    @classmethod
    def update(cls, clip: Clip) -> "ClipChangeEvent":
        return cls(ChangeEventType.UPDATE, clip.id, clip)

    @classmethod
    def delete(cls, clip_id: int) -> "ClipChangeEvent":
        return cls(ChangeEventType.DELETE, clip_id)
