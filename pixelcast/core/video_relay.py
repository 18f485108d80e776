# Copyright 2026 Firefly Software Solutions Inc
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Video relay for Pixelcast.

The in-page MediaRecorder connects back to this WebSocket listener and sends
one binary message per compressed WebM chunk. The relay is a dumb ordered
pipe: it never parses the container, it forwards every chunk in arrival order
into a bounded ChunkPipe that the transcoder drains.

Routes:
    GET /        WebSocket endpoint for the single producer
    GET /status  JSON relay statistics

Example:
    >>> relay = VideoRelay(config, ready_probe=browser.is_content_ready)
    >>> await relay.listen()
    >>> await relay.wait_for_producer(timeout=30)
    >>> async for chunk in relay.chunks():
    ...     ...
    >>> await relay.close()
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import aiohttp
from aiohttp import web

from pixelcast.config import StreamConfig
from pixelcast.core.pipes import ChunkPipe
from pixelcast.exceptions import BindError, RelayError, RelayTimeoutError
from pixelcast.utils.logger import logger

ReadyProbe = Callable[[], Awaitable[bool]]
FatalCallback = Callable[[Exception], None]

MAX_MESSAGE_SIZE = 10 * 1024 * 1024
PROGRESS_EVERY = 100


class VideoRelay:
    """WebSocket listener forwarding compressed video chunks in order.

    Only one producer is served at a time; a concurrent second connection is
    refused with HTTP 409. When the producer disconnects the output stream is
    kept open so the transcoder's input is not closed while the browser side
    reconnects. A producer that stays away longer than ``producer_timeout``
    is reported through ``on_fatal`` as a RelayError.
    """

    def __init__(
        self,
        config: StreamConfig,
        ready_probe: Optional[ReadyProbe] = None,
        on_fatal: Optional[FatalCallback] = None,
        ready_poll_interval: float = 0.5,
    ) -> None:
        self.config = config
        self.host = config.relay_host
        self.port = config.relay_port
        self.ready_probe = ready_probe
        self.on_fatal = on_fatal
        self.ready_poll_interval = ready_poll_interval

        self._pipe = ChunkPipe("video", maxsize=config.queue_size)
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._producer: Optional[web.WebSocketResponse] = None
        self._producer_seen = asyncio.Event()
        self._reconnect_watch: Optional[asyncio.Task] = None
        self._closed = False

        self.connections = 0
        self.rejected_connections = 0
        self.last_chunk_at: Optional[float] = None

    @property
    def producer_connected(self) -> bool:
        return self._producer is not None

    @property
    def listening(self) -> bool:
        return self._site is not None

    async def listen(self, port: Optional[int] = None) -> None:
        """
        Bind the listener.

        Raises:
            BindError: If the port cannot be bound
        """
        if self._closed:
            raise BindError("Relay already closed")
        if port is not None:
            self.port = port

        self._app = web.Application()
        self._app.router.add_get("/", self._handle_producer)
        self._app.router.add_get("/status", self._handle_status)

        self._runner = web.AppRunner(self._app, handle_signals=False)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            raise BindError(f"Could not bind video relay on {self.host}:{self.port}: {e}") from e
        self._site = site

        logger.info(f"[RELAY] Video relay listening on ws://{self.host}:{self.port}/")

    async def wait_for_producer(self, timeout: float) -> None:
        """
        Wait until a producer has connected at least once.

        Raises:
            RelayTimeoutError: If no producer connects within timeout
        """
        try:
            await asyncio.wait_for(self._producer_seen.wait(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RelayTimeoutError(
                f"Browser failed to connect to the video relay within {timeout:g} seconds"
            ) from e

    async def forward(self, chunk: bytes) -> None:
        """Forward one chunk to the transcoder side, waiting for room."""
        if await self._pipe.put(chunk):
            self.last_chunk_at = time.time()
            count = self._pipe.stats.chunks_in
            if count % PROGRESS_EVERY == 0:
                mb = self._pipe.stats.bytes_in / (1024 * 1024)
                logger.info(f"[RELAY] Received {count} video chunks ({mb:.2f} MB)")

    def chunks(self) -> AsyncIterator[bytes]:
        """Ordered chunk stream for the transcoder; ends when the relay closes."""
        return self._pipe.__aiter__()

    @property
    def stream(self) -> ChunkPipe:
        return self._pipe

    async def _wait_for_content(self) -> None:
        if self.ready_probe is None:
            return
        deadline = time.monotonic() + self.config.ready_timeout
        while not await self.ready_probe():
            if time.monotonic() >= deadline:
                logger.warning("[RELAY] Surface content not confirmed, accepting video anyway")
                return
            await asyncio.sleep(self.ready_poll_interval)

    async def _handle_producer(self, request: web.Request) -> web.StreamResponse:
        if self._closed:
            return web.Response(status=503, text="Relay closing")
        if self._producer is not None:
            self.rejected_connections += 1
            logger.warning(
                f"[RELAY] Rejected concurrent producer from {request.remote}; "
                f"one producer is already connected"
            )
            return web.Response(status=409, text="Producer already connected")

        ws = web.WebSocketResponse(max_msg_size=MAX_MESSAGE_SIZE)
        await ws.prepare(request)
        self._producer = ws
        self.connections += 1
        self._cancel_reconnect_watch()
        self._producer_seen.set()
        logger.info(f"[RELAY] Browser connected to video relay (connection #{self.connections})")

        try:
            # Do not consume frames until the surface shows real content, so
            # the first keyframe is never a loading screen.
            await self._wait_for_content()

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.BINARY:
                    await self.forward(msg.data)
                elif msg.type == aiohttp.WSMsgType.TEXT:
                    logger.debug(f"[RELAY] Ignoring text message ({len(msg.data)} chars)")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"[RELAY] WebSocket connection error: {ws.exception()}")
        finally:
            if self._producer is ws:
                self._producer = None
            if not self._closed:
                logger.warning("[RELAY] Browser disconnected from video relay, waiting for reconnection...")
                self._start_reconnect_watch()

        return ws

    def _start_reconnect_watch(self) -> None:
        self._cancel_reconnect_watch()
        self._reconnect_watch = asyncio.create_task(self._watch_reconnect())

    def _cancel_reconnect_watch(self) -> None:
        watch, self._reconnect_watch = self._reconnect_watch, None
        if watch is not None and not watch.done():
            watch.cancel()

    async def _watch_reconnect(self) -> None:
        timeout = self.config.producer_timeout
        await asyncio.sleep(timeout)
        if self._closed or self._producer is not None:
            return
        error = RelayError(
            f"Browser did not reconnect to the video relay within {timeout:g} seconds"
        )
        logger.error(f"[RELAY] {error}")
        if self.on_fatal is not None:
            self.on_fatal(error)

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        """Relay statistics."""
        return {
            "listening": self.listening,
            "producer_connected": self.producer_connected,
            "connections": self.connections,
            "rejected_connections": self.rejected_connections,
            "chunks": self._pipe.stats.chunks_in,
            "bytes": self._pipe.stats.bytes_in,
            "queued": self._pipe.qsize(),
            "last_chunk_at": self.last_chunk_at,
        }

    async def close(self) -> None:
        """Close the producer, stop the listener and end the chunk stream.

        Idempotent and safe before ``listen``.
        """
        if self._closed:
            return
        self._closed = True
        self._cancel_reconnect_watch()
        self._pipe.close()

        producer, self._producer = self._producer, None
        if producer is not None:
            try:
                await producer.close()
            except Exception as e:
                logger.warning(f"[RELAY] Error closing producer connection: {e}")

        if self._site is not None:
            try:
                await self._site.stop()
            except Exception as e:
                logger.warning(f"[RELAY] Error stopping listener: {e}")
        if self._runner is not None:
            try:
                await self._runner.cleanup()
            except Exception as e:
                logger.warning(f"[RELAY] Error cleaning up relay: {e}")

        self._site = None
        self._runner = None
        self._app = None
        logger.info("[RELAY] Video relay closed")
