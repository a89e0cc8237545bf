# backend/main.py

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from typing import Optional, Dict, Any
import datetime
import logging
import traceback

from config import get_settings
from database import init_db
from errors import (
    CommandError,
    ConfigurationError,
    DashlinkError,
    SessionConflictError,
    SessionStateError,
    StorageError,
)
from integrations.change_feed import RealtimeChangeFeed
from integrations.gateway_client import CommandGatewayClient
from integrations.storage_client import StorageClient
from services.clip_playback import download_filename
from services.clip_store import SqlClipStore
from services.session_host import SessionHost
from services.session_logger import configure_logging
from services.stream_session import StreamSessionRegistry
from utils.formatting import format_duration, format_file_size

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Load settings
settings = get_settings()

# Gateway command timings go to the dashlink logger tree
configure_logging(level=settings.log_level.upper())

# Initialize FastAPI app
app = FastAPI(
    title="Dashlink Backend",
    version="0.1.0",
    description="Live view and clip retrieval for MVR dashcam units"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _status_for(exc: DashlinkError) -> int:
    if isinstance(exc, (SessionConflictError, SessionStateError)):
        return 409
    if isinstance(exc, (CommandError, StorageError)):
        return 502
    if isinstance(exc, ConfigurationError):
        return 500
    return 400


@app.exception_handler(DashlinkError)
async def dashlink_exception_handler(request: Request, exc: DashlinkError):
    """Typed errors become JSON with their recovery hint"""
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Global exception handler to ensure errors return proper JSON with CORS headers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions and return proper JSON response"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "traceback": traceback.format_exc() if settings.debug else None
        }
    )


# ---- Shared state ----

# Open session hosts by host id
hosts: Dict[str, SessionHost] = {}

# One registry per process: a live stream key has at most one owner
stream_registry = StreamSessionRegistry()

_gateway: Optional[CommandGatewayClient] = None
_storage: Optional[StorageClient] = None
_storage_checked = False


def get_gateway() -> CommandGatewayClient:
    """Shared gateway client; raises MissingGatewayConfigError when unset"""
    global _gateway
    if _gateway is None:
        _gateway = CommandGatewayClient.from_settings()
    return _gateway


def get_storage() -> Optional[StorageClient]:
    global _storage, _storage_checked
    if not _storage_checked:
        _storage = StorageClient.from_settings()
        _storage_checked = True
    return _storage


def get_clip_store() -> SqlClipStore:
    return SqlClipStore()


def get_feed_factory():
    """Realtime feed factory, or None when no realtime URL is configured"""
    if not settings.realtime_url:
        return None
    return lambda serial, on_connect: RealtimeChangeFeed.from_settings(serial, on_connect=on_connect)


def get_host(host_id: str) -> SessionHost:
    host = hosts.get(host_id)
    if host is None:
        raise HTTPException(status_code=404, detail=f"Session host {host_id} not found")
    return host


# ---- Startup event ----

@app.on_event("startup")
async def startup_event():
    """Application startup"""
    logger.info("=" * 60)
    logger.info("Dashlink Backend Starting")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Gateway URL: {settings.cwe_mvr_api_url or 'not configured'}")
    logger.info(f"Gateway API Key: {'Yes' if settings.cwe_mvr_api_key else 'No'}")
    logger.info(f"Storage: {'Yes' if settings.storage_url else 'No'}")
    logger.info(f"Realtime feed: {'Yes' if settings.realtime_url else 'No'}")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")

    logger.info("=" * 60)

    if not settings.cwe_mvr_api_url or not settings.cwe_mvr_api_key:
        logger.warning("Gateway not configured! Live view and clip requests will fail.")
        logger.warning("Set CWE_MVR_API_URL and CWE_MVR_API_KEY in .env file.")


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown - dispose every open session host"""
    global _gateway, _storage, _storage_checked
    logger.info("Dashlink Backend Shutting Down")

    for host_id in list(hosts):
        host = hosts.pop(host_id)
        try:
            await host.aclose()
        except Exception as e:
            logger.error(f"Error closing session host {host_id}: {e}")

    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
    if _storage is not None:
        await _storage.aclose()
    _storage = None
    _storage_checked = False

    logger.info("Shutdown complete")


# ---- Pydantic models ----

class CreateHostRequest(BaseModel):
    serial: str

    @field_validator("serial")
    @classmethod
    def serial_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("serial is required")
        return v


class StreamStartRequest(BaseModel):
    camera: int = 0
    profile: int = 0

    @field_validator("camera", "profile")
    @classmethod
    def non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v


class SelectRegionRequest(BaseModel):
    regionIndex: int


class AdjustDraftRequest(BaseModel):
    startDelta: int = 0
    endDelta: int = 0


def _draft_payload(host: SessionHost) -> Dict[str, Any]:
    negotiator = host.negotiator
    if negotiator.draft is None:
        return {"draft": None}
    return {
        "draft": negotiator.draft.to_dict(),
        "canAdjust": {
            "startBack": negotiator.can_adjust_start(-5),
            "startForward": negotiator.can_adjust_start(5),
            "endBack": negotiator.can_adjust_end(-5),
            "endForward": negotiator.can_adjust_end(5),
        },
    }


def _clip_payload(clip) -> Dict[str, Any]:
    payload = clip.to_dict()
    payload["durationLabel"] = format_duration(clip.duration_seconds or clip.end_utc - clip.start_utc)
    payload["fileSizeLabel"] = format_file_size(clip.file_size)
    return payload


# ---- Health ----

@app.get("/api/health")
async def health_check():
    """Health check endpoint to verify backend is running"""
    return {
        "status": "ok",
        "version": app.version,
        "timestamp": datetime.datetime.utcnow().isoformat() + "Z",
        "gatewayConfigured": bool(settings.cwe_mvr_api_url and settings.cwe_mvr_api_key),
        "openHosts": len(hosts),
        "liveStreams": len(stream_registry),
    }


@app.get("/api/gateway/health")
async def gateway_health(gateway: CommandGatewayClient = Depends(get_gateway)):
    """Probe the device gateway"""
    healthy = await gateway.health()
    return {"gateway": "ok" if healthy else "unreachable"}


# ---- Session hosts ----

@app.post("/api/hosts")
async def create_host(
    request: CreateHostRequest,
    gateway: CommandGatewayClient = Depends(get_gateway),
    storage: Optional[StorageClient] = Depends(get_storage),
    clip_store: SqlClipStore = Depends(get_clip_store),
    feed_factory=Depends(get_feed_factory),
):
    """Open a device view: seeds the clip list and follows clip changes"""
    host = SessionHost(
        request.serial,
        gateway,
        clip_source=clip_store,
        storage=storage,
        registry=stream_registry,
        feed_factory=feed_factory,
    )
    await host.open()
    hosts[host.host_id] = host
    logger.info(f"Opened session host {host.host_id} for {request.serial}")
    return host.to_dict()


@app.get("/api/hosts/{host_id}")
async def get_host_state(host: SessionHost = Depends(get_host)):
    return host.to_dict()


@app.delete("/api/hosts/{host_id}")
async def dispose_host(host: SessionHost = Depends(get_host)):
    """Close a device view; the remote stop runs in the background"""
    hosts.pop(host.host_id, None)
    host.dispose()
    return {"hostId": host.host_id, "disposed": True}


# ---- Live stream ----

@app.post("/api/hosts/{host_id}/stream/start")
async def start_stream(request: StreamStartRequest, host: SessionHost = Depends(get_host)):
    session = await host.start_stream(request.camera, request.profile)
    return session.to_dict()


@app.post("/api/hosts/{host_id}/stream/stop")
async def stop_stream(host: SessionHost = Depends(get_host)):
    session = await host.stop_stream()
    return session.to_dict()


@app.get("/api/hosts/{host_id}/stream")
async def get_stream_state(host: SessionHost = Depends(get_host)):
    return host.stream_state().to_dict()


# ---- Clip requests ----

@app.get("/api/hosts/{host_id}/regions")
async def get_regions(camera: int = 0, profile: int = 0, host: SessionHost = Depends(get_host)):
    """Footage the device still holds for one camera/profile"""
    regions = await host.fetch_regions(camera, profile)
    return {
        "serial": host.serial,
        "camera": camera,
        "profile": profile,
        "regions": [region.to_dict() for region in regions],
    }


@app.post("/api/hosts/{host_id}/draft")
async def select_region(request: SelectRegionRequest, host: SessionHost = Depends(get_host)):
    host.select_region(request.regionIndex)
    return _draft_payload(host)


@app.post("/api/hosts/{host_id}/draft/adjust")
async def adjust_draft(request: AdjustDraftRequest, host: SessionHost = Depends(get_host)):
    accepted = host.adjust(request.startDelta, request.endDelta)
    return {"accepted": accepted, **_draft_payload(host)}


@app.post("/api/hosts/{host_id}/draft/submit")
async def submit_draft(host: SessionHost = Depends(get_host)):
    result = await host.submit_clip()
    return result.to_dict()


@app.delete("/api/hosts/{host_id}/draft")
async def cancel_draft(host: SessionHost = Depends(get_host)):
    host.negotiator.cancel()
    return {"draft": None}


# ---- Clips ----

@app.get("/api/hosts/{host_id}/clips")
async def list_clips(host: SessionHost = Depends(get_host)):
    clips = host.clips()
    return {
        "serial": host.serial,
        "total": len(clips),
        "clips": [_clip_payload(clip) for clip in clips],
    }


@app.get("/api/hosts/{host_id}/clips/{clip_id}/playback")
async def clip_playback(clip_id: int, host: SessionHost = Depends(get_host)):
    link = await host.playback_link(clip_id)
    clip = host.tracker.get(clip_id)
    return {**link.to_dict(), "filename": download_filename(clip)}


@app.delete("/api/hosts/{host_id}/clips/{clip_id}")
async def delete_clip(clip_id: int, host: SessionHost = Depends(get_host)):
    deleted = await host.delete_clip(clip_id)
    if deleted is None:
        raise HTTPException(status_code=404, detail=f"Clip {clip_id} not found")
    return {"deleted": clip_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
    )
