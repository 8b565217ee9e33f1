"""
Realtime row-insert notifications over a Phoenix-protocol WebSocket
(Supabase realtime), with heartbeat and reconnection.

Notifications are best-effort: consumers must still work from plain queries
when the channel is down.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union
from urllib.parse import urlencode

import aiohttp


logger = logging.getLogger(__name__)

InsertHandler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


def realtime_url(project_url: str, anon_key: str) -> str:
    """``https://x.supabase.co`` -> ``wss://x.supabase.co/realtime/v1/websocket?...``"""
    base = project_url.rstrip("/").replace("https://", "wss://", 1).replace("http://", "ws://", 1)
    return f"{base}/realtime/v1/websocket?{urlencode({'apikey': anon_key, 'vsn': '1.0.0'})}"


class RealtimeClient:
    """Subscribes to INSERTs on a set of tables and reports each new record."""

    def __init__(
        self,
        url: str,
        tables: Sequence[str],
        heartbeat_interval: float = 30.0,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 10,
        schema: str = "public",
    ):
        self.url = url
        self.tables = list(tables)
        self.schema = schema
        self.heartbeat_interval = heartbeat_interval
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connected = False
        self._closing = False
        self._reconnect_count = 0
        self._refs = itertools.count(1)
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._listen_task: Optional[asyncio.Task] = None

        # Event handlers
        self.on_insert: Optional[InsertHandler] = None
        self.on_connect: Optional[Callable[[], None]] = None
        self.on_disconnect: Optional[Callable[[], None]] = None

    @property
    def connected(self) -> bool:
        return self._connected

    def topic(self, table: str) -> str:
        return f"realtime:{self.schema}:{table}"

    def join_message(self, table: str) -> Dict[str, Any]:
        return {
            "topic": self.topic(table),
            "event": "phx_join",
            "payload": {
                "config": {
                    "postgres_changes": [{"event": "INSERT", "schema": self.schema, "table": table}]
                }
            },
            "ref": str(next(self._refs)),
        }

    def heartbeat_message(self) -> Dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}

    async def connect(self) -> None:
        """Connect and join one channel per table; reconnects on failure."""
        while not self._connected and not self._closing:
            try:
                if not self._session:
                    self._session = aiohttp.ClientSession()
                self._ws = await self._session.ws_connect(self.url)
                for table in self.tables:
                    await self.send_json(self.join_message(table))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error("Failed to connect to realtime channel: %s", e)
                if not await self._wait_before_retry():
                    return
                continue

            self._connected = True
            self._reconnect_count = 0
            logger.info("Realtime channel joined for %s", ", ".join(self.tables))
            if self.on_connect:
                self.on_connect()
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            self._listen_task = asyncio.create_task(self._listen_loop())

    async def disconnect(self) -> None:
        """Disconnect from the WebSocket."""
        self._closing = True
        self._connected = False

        for task in (self._heartbeat_task, self._listen_task):
            if task and task is not asyncio.current_task():
                task.cancel()

        if self._ws and not self._ws.closed:
            await self._ws.close()
        if self._session:
            await self._session.close()
            self._session = None

        logger.info("Disconnected from realtime channel")
        if self.on_disconnect:
            self.on_disconnect()

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self._ws and not self._ws.closed:
            await self._ws.send_str(json.dumps(data))
        else:
            logger.warning("Cannot send message: WebSocket not connected")

    async def handle_message(self, raw: str) -> None:
        """Dispatch one text frame; anything but an INSERT notification is ignored."""
        try:
            message = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON frame")
            return
        if message.get("event") != "postgres_changes":
            if message.get("event") == "phx_reply" and message.get("payload", {}).get("status") == "error":
                logger.warning("Channel %s rejected join: %s", message.get("topic"), message.get("payload"))
            return

        data = (message.get("payload") or {}).get("data") or {}
        if data.get("type") != "INSERT" or not isinstance(data.get("record"), dict):
            return
        table = data.get("table") or str(message.get("topic", "")).rsplit(":", 1)[-1]
        if self.on_insert:
            result = self.on_insert(table, data["record"])
            if asyncio.iscoroutine(result):
                await result

    async def _heartbeat_loop(self) -> None:
        while self._connected:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                await self.send_json(self.heartbeat_message())
            except asyncio.CancelledError:
                break
            except (aiohttp.ClientError, ConnectionResetError) as e:
                logger.error("Heartbeat error: %s", e)
                break

    async def _listen_loop(self) -> None:
        while self._connected and self._ws:
            try:
                msg = await self._ws.receive()
            except asyncio.CancelledError:
                return
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    await self.handle_message(msg.data)
                except Exception as e:
                    logger.error("Insert handler failed: %s", e, exc_info=True)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.error("WebSocket error: %s", self._ws.exception())
                break
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                logger.info("WebSocket connection closed")
                break

        self._connected = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        if not self._closing and await self._wait_before_retry():
            await self.connect()

    async def _wait_before_retry(self) -> bool:
        if self._reconnect_count >= self.max_reconnect_attempts:
            logger.error("Max reconnect attempts (%d) reached", self.max_reconnect_attempts)
            return False

        self._reconnect_count += 1
        delay = self.reconnect_delay * (2 ** (self._reconnect_count - 1))
        logger.info("Scheduling reconnect attempt %d in %.0fs", self._reconnect_count, delay)
        await asyncio.sleep(delay)
        return True
