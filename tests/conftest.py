"""
Pytest configuration and fixtures for Dashlink tests.
"""

import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

# Add backend to path for imports
backend_path = Path(__file__).parent.parent / "backend"
sys.path.insert(0, str(backend_path))

from models.device import FeedStatus, StartStreamResult  # noqa: E402


SERIAL = "MVR-0042"


@pytest.fixture
def serial():
    return SERIAL


@pytest.fixture
def sample_ring_summary():
    """Ring summary as returned in the `data` field of request_ring_summary."""
    return {
        "ring": {
            "profiles": [
                {
                    "profile": 0,
                    "regions": [
                        {"start_utc": 1_700_000_000, "end_utc": 1_700_003_600},
                        {"start_utc": 1_700_010_000, "end_utc": 1_700_010_003},
                    ],
                },
                {
                    "profile": 1,
                    "regions": [
                        {"start_utc": 1_700_000_000, "end_utc": 1_700_000_120},
                    ],
                },
            ]
        }
    }


@pytest.fixture
def fake_gateway(sample_ring_summary):
    """Gateway double whose commands all succeed; feed goes active on first poll."""
    gateway = MagicMock()
    gateway.start_stream = AsyncMock(
        return_value=StartStreamResult(
            ok=True,
            stream_url=f"http://gateway.test/hls/{SERIAL}/1/1/stream.m3u8",
        )
    )
    gateway.stream_status = AsyncMock(return_value=FeedStatus.ACTIVE)
    gateway.stop_stream = AsyncMock(return_value=True)
    gateway.ring_summary = AsyncMock(return_value=sample_ring_summary)
    gateway.request_clip = AsyncMock(return_value={"ok": True})
    return gateway


def make_clip_record(clip_id, status="receiving", created_at="2024-01-01T00:00:00+00:00", **overrides):
    record = {
        "id": clip_id,
        "serial": SERIAL,
        "camera": 0,
        "profile": 0,
        "start_utc": 1_700_000_000,
        "end_utc": 1_700_000_030,
        "duration_seconds": 30,
        "file_size": 0,
        "storage_path": f"{SERIAL}/clip_{clip_id}.mp4",
        "status": status,
        "progress_percent": 0,
        "bytes_received": 0,
        "error_message": None,
        "created_at": created_at,
    }
    record.update(overrides)
    return record


@pytest.fixture
def clip_record():
    """Factory for clip rows as delivered by the query service."""
    return make_clip_record


@pytest.fixture
def session_factory():
    """In-memory SQLite session factory with the clips table created."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from database import init_db

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()
