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

"""Bounded, ordered chunk channels between media producers and the transcoder."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

_EOF = object()


@dataclass
class PipeStats:
    """Counters for a chunk pipe."""

    chunks_in: int = 0
    bytes_in: int = 0
    chunks_out: int = 0
    chunks_rejected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "chunks_in": self.chunks_in,
            "bytes_in": self.bytes_in,
            "chunks_out": self.chunks_out,
            "chunks_rejected": self.chunks_rejected,
        }


class ChunkPipe:
    """Single-consumer FIFO of byte chunks with a hard capacity.

    ``put`` suspends while the pipe is full, so a slow consumer pushes back on
    the producer instead of letting chunks pile up in memory. Waiting
    producers resume in the order they started waiting, so chunk order is the
    order in which ``put`` was called.
    ``offer`` is the non-waiting variant for producers that must not block.

    After ``close`` further puts are discarded and the consumer drains what
    is left, then stops.
    """

    def __init__(self, name: str, maxsize: int = 256) -> None:
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._eof_sent = False
        self.stats = PipeStats()

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, chunk: bytes) -> bool:
        """Enqueue a chunk, waiting for room. Returns False once closed."""
        if self._closed:
            return False
        await self._queue.put(chunk)
        self._count(chunk)
        return True

    def offer(self, chunk: bytes) -> bool:
        """Enqueue a chunk without waiting.

        Returns:
            False if the pipe is closed or full; the chunk is not kept
        """
        if self._closed:
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.stats.chunks_rejected += 1
            return False
        self._count(chunk)
        return True

    def _count(self, chunk: bytes) -> None:
        self.stats.chunks_in += 1
        self.stats.bytes_in += len(chunk)

    def close(self) -> None:
        """Stop accepting chunks and wake the consumer. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._send_eof()

    def _send_eof(self) -> None:
        if self._eof_sent:
            return
        try:
            self._queue.put_nowait(_EOF)
            self._eof_sent = True
        except asyncio.QueueFull:
            # Consumer is behind; it sees the closed flag once the queue drains.
            pass

    async def get(self) -> Optional[bytes]:
        """Return the next chunk, or None once closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _EOF:
            return None
        self.stats.chunks_out += 1
        if self._closed and not self._eof_sent:
            self._send_eof()
        return item

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.get()
            if chunk is None:
                return
            yield chunk
