# backend/utils/__init__.py
"""
Utility modules for the Dashlink backend.
"""

from .formatting import format_duration, format_file_size

__all__ = [
    "format_duration",
    "format_file_size",
]
