# backend/integrations/change_feed.py
"""
Realtime Clip Change Feed

Subscribes to row changes on the `clips` table for one device serial and
yields them as ClipChangeEvent objects.

Architecture:
    Storage DB ---WAL---> Realtime server ---WebSocket---> ChangeFeed ---> Tracker

Protocol (Phoenix channels, JSON frames):
    -> {"topic": "realtime:clips:<serial>", "event": "phx_join", "payload": {...}, "ref": "1"}
    <- {"event": "phx_reply", "payload": {"status": "ok"}, ...}
    <- {"event": "postgres_changes", "payload": {"data": {"type": "UPDATE", "record": {...}, "old_record": {...}}}}
    -> {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": "n"}   (every heartbeat_interval)

Delivery is at-least-once and unordered across reconnects; the consumer
re-seeds through `on_connect` after every reconnect.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from config import get_settings
from models.device import ChangeEventType, Clip, ClipChangeEvent

logger = logging.getLogger(__name__)


def parse_change_message(message: Dict[str, Any]) -> Optional[ClipChangeEvent]:
    """
    Turn one realtime frame into a ClipChangeEvent.

    Returns None for frames that are not row changes (replies, heartbeats,
    presence) and for change frames without a usable id.
    """
    if message.get("event") != "postgres_changes":
        return None

    data = (message.get("payload") or {}).get("data") or {}
    try:
        event_type = ChangeEventType(str(data.get("type", "")).upper())
    except ValueError:
        logger.warning(f"Unknown change type: {data.get('type')!r}")
        return None

    if event_type == ChangeEventType.DELETE:
        old = data.get("old_record") or {}
        if old.get("id") is None:
            logger.warning("DELETE without old_record.id; replica identity may be missing")
            return None
        return ClipChangeEvent.delete(int(old["id"]))

    record = data.get("record") or {}
    if record.get("id") is None:
        logger.warning(f"{event_type.value} without record id")
        return None

    clip = Clip.from_record(record)
    return ClipChangeEvent(event_type, clip.id, clip)


class RealtimeChangeFeed:
    """
    WebSocket subscription to clip changes for one serial.

    Usage:
        feed = RealtimeChangeFeed.from_settings("SN123", on_connect=tracker.reseed)
        await tracker.consume(feed.events())
        ...
        feed.close()
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        serial: str,
        on_connect: Optional[Callable[[], Awaitable[None]]] = None,
        heartbeat_interval: float = 25.0,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        self.url = url
        self.api_key = api_key
        self.serial = serial
        self.on_connect = on_connect
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

        self.topic = f"realtime:clips:{serial}"
        self.connected = False
        self._closed = False
        self._ref = 0

        self.stats = {
            "connections": 0,
            "events_received": 0,
            "events_dropped": 0,
            "last_event_time": None,
        }

    @classmethod
    def from_settings(
        cls,
        serial: str,
        on_connect: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> "RealtimeChangeFeed":
        settings = get_settings()
        return cls(
            url=settings.realtime_url,
            api_key=settings.storage_api_key,
            serial=serial,
            on_connect=on_connect,
        )

    def _next_ref(self) -> str:
        self._ref += 1
        return str(self._ref)

    def join_message(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": {
                "config": {
                    "postgres_changes": [{
                        "event": "*",
                        "schema": "public",
                        "table": "clips",
                        "filter": f"serial=eq.{self.serial}",
                    }],
                },
                "access_token": self.api_key,
            },
            "ref": self._next_ref(),
        }

    def _socket_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}apikey={self.api_key}&vsn=1.0.0"

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await ws.send(json.dumps({
                    "topic": "phoenix",
                    "event": "heartbeat",
                    "payload": {},
                    "ref": self._next_ref(),
                }))
            except ConnectionClosed:
                # The receive loop sees the close and reconnects
                return

    async def _session(self, ws) -> AsyncIterator[ClipChangeEvent]:
        """Join, then yield events until the socket closes"""
        await ws.send(json.dumps(self.join_message()))
        self.connected = True
        self.stats["connections"] += 1
        logger.info(f"Subscribed to clip changes for {self.serial}")

        if self.on_connect is not None:
            try:
                await self.on_connect()
            except Exception as e:
                logger.error(f"Clip feed reseed failed for {self.serial}: {e}", exc_info=True)

        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON from realtime server: {raw[:100]}")
                    self.stats["events_dropped"] += 1
                    continue

                if message.get("event") == "phx_error":
                    logger.error(f"Realtime channel error: {message.get('payload')}")
                    return

                event = parse_change_message(message)
                if event is None:
                    continue

                self.stats["events_received"] += 1
                self.stats["last_event_time"] = datetime.utcnow().isoformat()
                yield event
        finally:
            heartbeat.cancel()
            self.connected = False

    async def events(self) -> AsyncIterator[ClipChangeEvent]:
        """Yield clip changes, reconnecting with backoff until close() is called"""
        delay = self.reconnect_delay

        while not self._closed:
            try:
                async with websockets.connect(
                    self._socket_url(),
                    close_timeout=5,
                    ping_interval=20,
                    ping_timeout=10,
                ) as ws:
                    delay = self.reconnect_delay
                    async for event in self._session(ws):
                        yield event
            except ConnectionClosed:
                logger.info(f"Realtime connection closed for {self.serial}")
            except (WebSocketException, OSError) as e:
                logger.warning(f"Realtime connection failed for {self.serial}: {e}")

            if self._closed:
                break
            logger.info(f"Reconnecting clip feed in {delay:.1f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    def close(self) -> None:
        self._closed = True
