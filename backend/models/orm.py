"""
SQLAlchemy ORM models for the clip storage database.
These mirror the rows the storage/query service owns; Dashlink only reads them
and deletes on operator request.
"""

from typing import Any, Dict

from sqlalchemy import (
    Column,
    Integer,
    BigInteger,
    String,
    Text,
    Float,
    DateTime,
    Index,
)
from sqlalchemy.sql import func

from database import Base


class ClipRecord(Base):
    """A clip transferred (or being transferred) from a device."""

    __tablename__ = "clips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    serial = Column(String(64), nullable=False, index=True)
    camera = Column(Integer, nullable=False)
    profile = Column(Integer, nullable=False)
    start_utc = Column(BigInteger, nullable=False)
    end_utc = Column(BigInteger, nullable=False)
    duration_seconds = Column(Integer, default=0)
    file_size = Column(BigInteger, default=0)
    storage_path = Column(Text, nullable=True)
    signed_url = Column(Text, nullable=True)
    signed_url_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Transfer lifecycle (written by the ingestion pipeline)
    status = Column(String(20), default="receiving")  # receiving, ready, completed, failed
    progress_percent = Column(Float, default=0)
    bytes_received = Column(BigInteger, default=0)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_clips_serial_created", "serial", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ClipRecord({self.id} {self.serial} cam={self.camera} {self.status})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "serial": self.serial,
            "camera": self.camera,
            "profile": self.profile,
            "start_utc": self.start_utc,
            "end_utc": self.end_utc,
            "duration_seconds": self.duration_seconds,
            "file_size": self.file_size,
            "storage_path": self.storage_path,
            "signed_url": self.signed_url,
            "signed_url_expires_at": self.signed_url_expires_at.isoformat() if self.signed_url_expires_at else None,
            "status": self.status,
            "progress_percent": self.progress_percent,
            "bytes_received": self.bytes_received,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
