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
One attempt at running the broadcast pipeline.

A Session owns a fresh BrowserSession, AudioTap, VideoRelay and
TranscodeSupervisor. It is built by the RecoveryManager for every attempt and
thrown away afterwards; nothing is reset and reused across restarts.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pixelcast.config import StreamConfig
from pixelcast.core.audio_tap import AudioTap, AudioTapResult
from pixelcast.core.browser import BrowserSession
from pixelcast.core.transcoder import TranscodeSupervisor
from pixelcast.core.video_relay import VideoRelay
from pixelcast.exceptions import CaptureError
from pixelcast.utils.logger import logger

FatalCallback = Callable[[Exception], None]


class SessionState(str, Enum):
    """Lifecycle state of the broadcast pipeline."""

    INIT = "init"
    BROWSER_READY = "browser_ready"
    CAPTURE_ARMED = "capture_armed"
    STREAMING = "streaming"
    ERROR = "error"
    RESTARTING = "restarting"
    STOPPED = "stopped"


StateCallback = Callable[[SessionState], None]


class Session:
    """Owns every resource of one pipeline attempt.

    Startup order is browser, audio tap, relay, transcoder, then the in-page
    recorder. Teardown runs in reverse dependency order and tolerates
    failures in individual steps.

    Attributes:
        session_id: Unique id for log correlation
        attempt: Attempt number (1 for the first run)
    """

    def __init__(
        self,
        config: StreamConfig,
        on_fatal: FatalCallback,
        attempt: int = 1,
    ) -> None:
        self.config = config
        self.on_fatal = on_fatal
        self.attempt = attempt
        self.session_id = str(uuid.uuid4())[:8]
        self.created_at = time.time()

        self.browser = BrowserSession(config, on_fatal=on_fatal)
        self.audio_tap = AudioTap(config)
        self.relay = VideoRelay(
            config, ready_probe=self.browser.is_content_ready, on_fatal=on_fatal
        )
        self.transcoder = TranscodeSupervisor(config, on_fatal=on_fatal)
        self.audio: Optional[AudioTapResult] = None

        self._torn_down = False

    async def start(self, on_state: StateCallback) -> None:
        """Bring the pipeline up to STREAMING, reporting each state reached.

        Raises:
            PixelcastError: Any component failure; the caller decides whether
                to retry
        """
        cfg = self.config
        logger.info(f"[SESSION] Starting session {self.session_id} (attempt {self.attempt})")

        await self.browser.launch()
        await self.browser.navigate(cfg.surface_url)
        await self.browser.wait_for_signal(selector=cfg.canvas_selector, timeout=10.0)
        if not await self.browser.wait_until_ready():
            # Fallback already taken; the relay streams whatever the page shows.
            self.relay.ready_probe = None
        on_state(SessionState.BROWSER_READY)

        self.audio = await self.audio_tap.install(self.browser.page)
        await self.relay.listen()
        await self.transcoder.start(
            self.relay.chunks(),
            self.audio.stream if self.audio.enabled else None,
            cfg.publish_url,
        )
        on_state(SessionState.CAPTURE_ARMED)

        if not await self.browser.start_surface_recorder(cfg.relay_url):
            raise CaptureError("Failed to set up video capture in browser")
        await self.relay.wait_for_producer(cfg.producer_timeout)

        logger.info(
            f"[SESSION] Streaming at {cfg.frame_rate}fps to {cfg.masked_publish_url} "
            f"(audio: {'tap' if self.audio.enabled else 'silent'})"
        )
        on_state(SessionState.STREAMING)

    async def teardown(self) -> None:
        """Stop every owned resource in reverse dependency order.

        Idempotent; safe on partially-started sessions. A failure in one
        step is logged and the remaining steps still run.
        """
        if self._torn_down:
            return
        self._torn_down = True
        logger.info(f"[SESSION] Tearing down session {self.session_id}")

        steps = [
            ("transcoder", self.transcoder.stop),
            ("relay", self.relay.close),
            ("audio tap", self._close_audio_tap),
            ("browser", self.browser.close),
        ]
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error(f"[SESSION] Error stopping {name}: {e}")

        logger.info("[SESSION] Cleanup complete")

    async def _close_audio_tap(self) -> None:
        self.audio_tap.close()

    def status(self) -> Dict[str, Any]:
        """Snapshot of the session for periodic status logging."""
        return {
            "session_id": self.session_id,
            "attempt": self.attempt,
            "uptime_seconds": time.time() - self.created_at,
            "audio": "tap" if self.audio and self.audio.enabled else "silent",
            "relay": self.relay.to_dict(),
            "transcoder": self.transcoder.stats.to_dict(),
        }
