# backend/utils/formatting.py
"""
Display formatting for clip listings.
"""


def format_duration(seconds: int) -> str:
    """
    Human-readable duration.

    Examples:
        3723 -> "1h 2m 3s"
        125  -> "2m 5s"
        9    -> "9s"
    """
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


_SIZE_UNITS = ["Bytes", "KB", "MB", "GB"]


def format_file_size(size: int) -> str:
    """
    Human-readable size in powers of 1024, at most two decimals.

    Examples:
        0       -> "0 Bytes"
        1536    -> "1.5 KB"
        1048576 -> "1 MB"
    """
    if not size or size <= 0:
        return "0 Bytes"

    exponent = 0
    while size >= 1024 ** (exponent + 1) and exponent < len(_SIZE_UNITS) - 1:
        exponent += 1
    value = round(size / (1024 ** exponent), 2)
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[exponent]}"
