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
Pixelcast - Broadcast a browser-rendered surface to a live RTMP ingest server.

A headless Chromium renders the surface, its canvas is recorded in-page and
relayed over a local WebSocket, its Web Audio output is tapped as raw PCM,
and ffmpeg turns both into an H.264/AAC stream. A supervisor restarts the
whole pipeline with bounded backoff when any part fails.
"""

__version__ = "0.3.0"
__author__ = "Firefly Software Solutions Inc"
__license__ = "Apache-2.0"

from pixelcast.config import AudioTapMode, RestartPolicy, StreamConfig
from pixelcast.core.audio_tap import AudioTap, AudioTapResult
from pixelcast.core.browser import BrowserSession
from pixelcast.core.pipes import ChunkPipe
from pixelcast.core.recovery import RecoveryManager
from pixelcast.core.session import Session, SessionState
from pixelcast.core.transcoder import DiagnosticLevel, TranscodeSupervisor
from pixelcast.core.video_relay import VideoRelay

__all__ = [
    # Config
    "AudioTapMode",
    "RestartPolicy",
    "StreamConfig",
    # Pipeline
    "AudioTap",
    "AudioTapResult",
    "BrowserSession",
    "ChunkPipe",
    "DiagnosticLevel",
    "TranscodeSupervisor",
    "VideoRelay",
    # Supervision
    "RecoveryManager",
    "Session",
    "SessionState",
]
