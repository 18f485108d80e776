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

"""Audio tap: raw PCM out of the page's Web Audio graph.

The tap is a degrade-not-fail component. Whatever goes wrong while installing
it, ``install`` returns a disabled result and the pipeline publishes
synthesized silence instead.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, Optional

from playwright.async_api import Page

from pixelcast.config import StreamConfig
from pixelcast.core.page_scripts import AUDIO_PUSH_BINDING, AUDIO_TAP_SCRIPT
from pixelcast.core.pipes import ChunkPipe
from pixelcast.utils.logger import logger

BYTES_PER_SAMPLE = 2  # s16le
OVERFLOW_LOG_EVERY = 100


@dataclass
class AudioTapResult:
    """Outcome of installing the tap."""

    enabled: bool
    stream: Optional[ChunkPipe] = None
    reason: str = ""
    sample_rate: Optional[int] = None


class AudioTap:
    """Duplicates the page's audio output into a PCM byte stream.

    PCM blocks arrive through an exposed host function as base64 strings and
    are pushed, in arrival order, into a bounded ChunkPipe that the transcoder
    drains. Every binding call runs as its own task, so a full pipe drops the
    block instead of parking the call.
    """

    def __init__(self, config: StreamConfig) -> None:
        self.config = config
        self.frame_bytes = BYTES_PER_SAMPLE * config.audio_channels
        self._pipe: Optional[ChunkPipe] = None
        self._closed = False
        self.dropped_frames = 0
        self.overflow_frames = 0

    @property
    def stream(self) -> Optional[ChunkPipe]:
        return self._pipe

    async def install(self, page: Page) -> AudioTapResult:
        """Install the tap. Never raises; failure degrades to silent audio."""
        try:
            return await self._install(page)
        except Exception as e:
            logger.warning(f"[AUDIO] Audio tap installation failed, using silent audio: {e}")
            self._discard_pipe()
            return AudioTapResult(enabled=False, reason=str(e))

    async def _install(self, page: Page) -> AudioTapResult:
        logger.info(
            f"[AUDIO] Installing audio tap (mode={self.config.audio_tap_mode.value}, "
            f"timeout={self.config.audio_graph_timeout:.0f}s)"
        )
        self._pipe = ChunkPipe("audio", maxsize=self.config.queue_size)
        await page.expose_function(AUDIO_PUSH_BINDING, self.push)

        evaluation = page.evaluate(
            AUDIO_TAP_SCRIPT,
            {
                "graphGlobal": self.config.audio_graph_global,
                "timeoutMs": int(self.config.audio_graph_timeout * 1000),
                "bufferSize": self.config.audio_buffer_size,
                "channels": self.config.audio_channels,
                "mode": self.config.audio_tap_mode.value,
                "binding": AUDIO_PUSH_BINDING,
            },
        )
        # In-page polling is bounded; the margin covers a hung page.
        result: Dict[str, Any] = await asyncio.wait_for(
            evaluation, timeout=self.config.audio_graph_timeout + 5.0
        ) or {}

        if not result.get("enabled"):
            reason = result.get("reason", "unknown")
            logger.warning(f"[AUDIO] Audio tap not available ({reason}), using silent audio")
            self._discard_pipe()
            return AudioTapResult(enabled=False, reason=reason)

        sample_rate = result.get("sampleRate")
        if sample_rate and int(sample_rate) != self.config.audio_sample_rate:
            logger.warning(
                f"[AUDIO] Page audio runs at {sample_rate} Hz, "
                f"transcoder expects {self.config.audio_sample_rate} Hz"
            )
        logger.info(f"[AUDIO] Audio tap enabled (sample rate: {sample_rate})")
        return AudioTapResult(enabled=True, stream=self._pipe, sample_rate=sample_rate)

    async def push(self, payload: str) -> None:
        """Host side of the exposed function: decode one PCM block."""
        if self._pipe is None or self._pipe.closed or not payload:
            return
        try:
            frame = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            self.dropped_frames += 1
            logger.warning(f"[AUDIO] Discarding undecodable PCM block: {e}")
            return
        if len(frame) % self.frame_bytes:
            self.dropped_frames += 1
            logger.warning(
                f"[AUDIO] Discarding misaligned PCM block ({len(frame)} bytes, "
                f"frame size {self.frame_bytes})"
            )
            return
        if not self._pipe.offer(frame):
            self.overflow_frames += 1
            if self.overflow_frames % OVERFLOW_LOG_EVERY == 1:
                logger.warning(
                    f"[AUDIO] Transcoder is not draining audio, dropped "
                    f"{self.overflow_frames} PCM block(s)"
                )

    def _discard_pipe(self) -> None:
        if self._pipe is not None:
            self._pipe.close()
        self._pipe = None

    def close(self) -> None:
        """End the PCM stream. The in-page tap dies with the browser."""
        if self._closed:
            return
        self._closed = True
        if self._pipe is not None:
            self._pipe.close()
