"""
Websocket pass-through relay.

Every client message is sent verbatim to one shared upstream connection and
every upstream message is sent verbatim to every connected client. There is
no caching, retry or transformation on this path.
"""

import asyncio
import itertools
from typing import Any, Callable, Dict, Optional, Union

import websockets
from fastapi import WebSocket, WebSocketDisconnect

from shared.logging import get_logger
from shared.errors import RelayError
from shared.metrics import MetricsCollector


Message = Union[str, bytes]


class WebSocketRelay:
    """Relays messages between client websockets and a single upstream socket."""

    def __init__(
        self,
        upstream_url: str,
        *,
        metrics: Optional[MetricsCollector] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.upstream_url = upstream_url
        self.metrics = metrics
        self.logger = get_logger("rpc_proxy.ws.relay")
        self._connect = connect
        self._upstream: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connection_ids = itertools.count()
        self.clients: Dict[int, WebSocket] = {}

    async def start(self):
        """Open the upstream connection and start relaying its messages."""
        self.logger.info("Opening upstream websocket connection", url=self.upstream_url)
        try:
            self._upstream = await self._connect(self.upstream_url)
        except Exception as e:
            self.logger.error("Upstream websocket connection failed", error=str(e))
            raise RelayError("Upstream websocket connection failed", details={"error": str(e)})

        self._reader_task = asyncio.create_task(self._read_upstream())
        self.logger.info("Upstream websocket connected")

    async def stop(self):
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._upstream is not None:
            await self._upstream.close()
            self._upstream = None

    @property
    def connected(self) -> bool:
        return self._upstream is not None

    async def forward(self, data: Message) -> bool:
        """Send a client message upstream. Returns False if it was not delivered."""
        if self._upstream is None:
            self.logger.error("Forward failed, upstream not connected")
            return False
        try:
            await self._upstream.send(data)
        except Exception as e:
            self.logger.error("Upstream websocket send error", error=str(e))
            return False

        self._count("forward")
        return True

    async def _read_upstream(self):
        try:
            async for message in self._upstream:
                await self.broadcast(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("Upstream websocket read error", error=str(e))
        else:
            self.logger.warning("Upstream websocket closed")

    async def broadcast(self, message: Message):
        """Send an upstream message to every connected client."""
        for connection_id, websocket in list(self.clients.items()):
            self.logger.debug("Backwarding message", connection_id=connection_id)
            try:
                if isinstance(message, bytes):
                    await websocket.send_bytes(message)
                else:
                    await websocket.send_text(message)
                self._count("backward")
            except Exception as e:
                self.logger.error("Client websocket send error", connection_id=connection_id, error=str(e))
                self.clients.pop(connection_id, None)

    async def serve(self, websocket: WebSocket):
        """Handle one client connection until it disconnects."""
        await websocket.accept()
        connection_id = next(self._connection_ids)
        self.clients[connection_id] = websocket
        self.logger.info("Client websocket connection established", connection_id=connection_id)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                if data is None:
                    continue

                self.logger.debug("Forwarding message", connection_id=connection_id)
                if not await self.forward(data):
                    self.logger.error("Message not delivered upstream", connection_id=connection_id)
        except WebSocketDisconnect:
            pass
        finally:
            self.clients.pop(connection_id, None)
            self.logger.info("Client websocket connection closed", connection_id=connection_id)

    def _count(self, direction: str):
        if self.metrics:
            self.metrics.increment_counter("rpc_relay_messages_total", direction=direction)
