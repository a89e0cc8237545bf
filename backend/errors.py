# backend/errors.py
"""
Dashlink Exception Hierarchy

Custom exceptions for device sessions and clip retrieval, with recovery hints.
"""

from typing import Any, Dict, Optional


class DashlinkError(Exception):
    """Base exception for all Dashlink errors"""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.recovery_hint = recovery_hint

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.details:
            result["details"] = self.details
        if self.recovery_hint:
            result["recoveryHint"] = self.recovery_hint
        return result


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(DashlinkError):
    """Configuration error"""

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"setting": setting, **(details or {})},
            recoverable=False,
            recovery_hint="Check .env configuration file"
        )


class MissingGatewayConfigError(ConfigurationError):
    """Gateway URL or API key not configured"""

    def __init__(self, has_url: bool, has_api_key: bool):
        missing = [
            name for name, present in (
                ("CWE_MVR_API_URL", has_url),
                ("CWE_MVR_API_KEY", has_api_key),
            )
            if not present
        ]
        super().__init__(
            message="API configuration not configured",
            setting=",".join(missing),
            details={"hasApiUrl": has_url, "hasApiKey": has_api_key},
        )
        self.recovery_hint = f"Add {' and '.join(missing)} to .env file"


# =============================================================================
# COMMAND ERRORS
# =============================================================================

class CommandError(DashlinkError):
    """Remote device command failed"""

    def __init__(
        self,
        message: str,
        command: str,
        serial: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        recovery_hint: str = "Check that the device is online and retry"
    ):
        super().__init__(
            message=message,
            details={"command": command, "serial": serial, "statusCode": status_code, **(details or {})},
            recoverable=True,
            recovery_hint=recovery_hint
        )
        self.command = command
        self.serial = serial
        self.status_code = status_code


class GatewayConnectionError(CommandError):
    """Could not reach the device gateway"""

    def __init__(self, command: str, serial: Optional[str] = None, reason: str = "connection failed"):
        super().__init__(
            message=f"Cannot reach device gateway: {reason}",
            command=command,
            serial=serial,
            recovery_hint="Verify the gateway URL and network connectivity"
        )


class GatewayAuthError(CommandError):
    """Gateway rejected our credentials"""

    def __init__(self, command: str, serial: Optional[str] = None, status_code: int = 401):
        super().__init__(
            message="Gateway authentication failed",
            command=command,
            serial=serial,
            status_code=status_code,
            recovery_hint="Check CWE_MVR_API_KEY"
        )
        self.recoverable = False


class CommandRejectedError(CommandError):
    """Gateway or device answered with an error"""

    def __init__(
        self,
        command: str,
        serial: Optional[str] = None,
        reason: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(
            message=reason or f"Device rejected {command}",
            command=command,
            serial=serial,
            status_code=status_code,
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================

class StorageError(DashlinkError):
    """Clip storage service request failed"""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(
            message=message,
            details={"path": path, "statusCode": status_code},
            recoverable=True,
            recovery_hint="Check STORAGE_URL / STORAGE_API_KEY and retry"
        )
        self.status_code = status_code


# =============================================================================
# TIMEOUT ERRORS
# =============================================================================

class TimeoutError(DashlinkError):
    """Operation timed out"""

    def __init__(
        self,
        message: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"operation": operation, **(details or {})},
            recoverable=True,
            recovery_hint="Start the stream again; the device may be slow to respond"
        )


class StreamStartTimeoutError(TimeoutError):
    """Stream never reported active within the poll budget"""

    def __init__(self, attempts: int, interval_seconds: float):
        super().__init__(
            message="Stream failed to start",
            operation="stream_status",
            details={"attempts": attempts, "intervalSeconds": interval_seconds},
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class ValidationError(DashlinkError):
    """Input validation failed"""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"field": field, "value": value, **(details or {})},
            recoverable=True,
            recovery_hint="Check input values and try again"
        )


class ClipDurationError(ValidationError):
    """Clip span outside the allowed duration window"""

    def __init__(self, duration: int, min_seconds: int, max_seconds: int):
        if duration < min_seconds:
            message = f"Clip duration must be at least {min_seconds} seconds"
        else:
            message = f"Clip duration cannot exceed {max_seconds} seconds"
        super().__init__(
            message=message,
            field="duration",
            value=duration,
            details={"minSeconds": min_seconds, "maxSeconds": max_seconds},
        )
        self.duration = duration


class RegionBoundsError(ValidationError):
    """Clip range falls outside the selected recording region"""

    def __init__(self, start_utc: int, end_utc: int, region_start: int, region_end: int):
        super().__init__(
            message="Clip range is outside the available footage",
            field="range",
            value=[start_utc, end_utc],
            details={"regionStart": region_start, "regionEnd": region_end},
        )


class SessionStateError(ValidationError):
    """Operation not allowed in the current session state"""

    def __init__(self, message: str, state: Optional[str] = None):
        super().__init__(message=message, field="state", value=state)


class SessionConflictError(ValidationError):
    """Another controller already owns this stream"""

    def __init__(self, serial: str, camera: int, profile: int):
        super().__init__(
            message=f"Stream {serial}/{camera}/{profile} is already owned by another session",
            field="stream",
            value={"serial": serial, "camera": camera, "profile": profile},
        )
        self.recovery_hint = "Stop the other live view first"
