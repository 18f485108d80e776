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

"""Configuration for the Pixelcast broadcast pipeline.

Two dataclasses live here:

- StreamConfig: everything the pipeline needs to know about the rendering
  surface, the capture and publish formats, and the publish endpoint.
- RestartPolicy: the bounded exponential backoff the recovery supervisor
  applies between pipeline restarts.

Values are read from the environment (a .env file is honoured by the CLI)
and may be overridden by command-line flags.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pixelcast.exceptions import ConfigurationError
from pixelcast.utils.logger import mask_secret


ENV_PREFIX = "PIXELCAST_"


class AudioTapMode(str, Enum):
    """How audio-producing nodes are attached to the capture node."""

    REGISTER = "register"    # Surface calls window.pixelcastAudio.registerAudioSource(node)
    INTERCEPT = "intercept"  # Patch AudioNode.prototype.connect (legacy surfaces)


@dataclass
class RestartPolicy:
    """Bounded exponential backoff between pipeline restarts.

    The delay handed out for the n-th restart (0-based) is
    ``min(initial_delay_ms * backoff_multiplier ** n, max_delay_ms)``.
    A run that reaches STREAMING resets the policy.

    Attributes:
        max_count: Restarts allowed before the supervisor gives up
        initial_delay_ms: Delay before the first restart
        max_delay_ms: Upper bound on any delay
        backoff_multiplier: Growth factor applied after each restart
        count: Restarts performed since the last stable run
        delay_ms: Delay that the next restart will wait
    """

    max_count: int = 10
    initial_delay_ms: float = 5000.0
    max_delay_ms: float = 60000.0
    backoff_multiplier: float = 1.5
    count: int = 0
    delay_ms: float = field(default=-1.0)

    def __post_init__(self) -> None:
        if self.delay_ms < 0:
            self.delay_ms = min(self.initial_delay_ms, self.max_delay_ms)

    @property
    def exhausted(self) -> bool:
        """Whether the restart bound has been reached."""
        return self.count >= self.max_count

    def next_delay_ms(self) -> float:
        """Consume one restart and return the delay to wait before it."""
        delay = self.delay_ms
        self.count += 1
        self.delay_ms = min(self.delay_ms * self.backoff_multiplier, self.max_delay_ms)
        return delay

    def delay_for(self, n: int) -> float:
        """Delay for the n-th restart (0-based) counted from a reset policy."""
        return min(self.initial_delay_ms * (self.backoff_multiplier ** n), self.max_delay_ms)

    def reset(self) -> None:
        """Clear accumulated backoff after a stable run."""
        self.count = 0
        self.delay_ms = min(self.initial_delay_ms, self.max_delay_ms)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "count": self.count,
            "delay_ms": self.delay_ms,
            "max_count": self.max_count,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
        }


@dataclass
class StreamConfig:
    """Configuration for a broadcast pipeline.

    Attributes:
        stream_key: Pre-shared publish key, appended to rtmp_server
        rtmp_server: Ingest server base URL
        surface_url: URL of the rendering surface to open in the browser
        ready_selector: JS predicate that is true once real content is visible
        canvas_selector: CSS selector of the canvas to record
        audio_graph_global: Name of the page global holding the AudioContext
        audio_tap_mode: How sources are attached to the audio tap
        relay_host: Interface the video relay binds to
        relay_port: Port the video relay listens on
        capture_width: Browser viewport width
        capture_height: Browser viewport height
        output_width: Published video width
        output_height: Published video height
        frame_rate: Constant output frame rate
        capture_frame_rate: Rate requested from canvas.captureStream()
        recorder_bitrate: MediaRecorder target bits per second
        recorder_timeslice_ms: MediaRecorder chunk interval
        video_bitrate: Average publish video bitrate
        max_bitrate: Peak publish video bitrate
        buffer_size: Encoder rate-control buffer
        audio_sample_rate: PCM and AAC sample rate
        audio_channels: PCM and AAC channel count
        audio_bitrate: AAC bitrate
        audio_buffer_size: ScriptProcessor block size, in frames
        ffmpeg_path: Path to ffmpeg binary (auto-detected if None)
        navigation_timeout: Seconds allowed for surface navigation
        ready_timeout: Seconds before readiness polling falls back
        audio_graph_timeout: Seconds to wait for the page audio graph
        producer_timeout: Seconds to wait for the recorder to connect
        stop_grace_period: Seconds the transcoder gets to exit on SIGTERM
        status_interval: Seconds between status log lines while streaming
        progress_sample_rate: Fraction of transcoder progress lines logged
        queue_size: Max chunks buffered between producer and transcoder
    """

    stream_key: str = ""
    rtmp_server: str = "rtmp://live.twitch.tv/app"
    surface_url: str = "http://localhost:3000/script.html?autoplay=true"

    # Surface contract
    ready_selector: str = (
        "(() => { const el = document.getElementById('dialogue-lines');"
        " return !!el && el.querySelectorAll('.dialogue-line').length > 0; })()"
    )
    canvas_selector: str = "#canvas"
    audio_graph_global: str = "audioContext"
    audio_tap_mode: AudioTapMode = AudioTapMode.REGISTER

    # Relay
    relay_host: str = "127.0.0.1"
    relay_port: int = 3001

    # Video (960x960 matches the surface layout)
    capture_width: int = 960
    capture_height: int = 960
    output_width: int = 960
    output_height: int = 960
    frame_rate: int = 30
    capture_frame_rate: int = 60
    recorder_bitrate: int = 4_000_000
    recorder_timeslice_ms: int = 100
    video_bitrate: str = "2500k"
    max_bitrate: str = "3000k"
    buffer_size: str = "6000k"

    # Audio
    audio_sample_rate: int = 48000
    audio_channels: int = 2
    audio_bitrate: str = "128k"
    audio_buffer_size: int = 2048

    ffmpeg_path: Optional[str] = None

    # Timeouts (seconds)
    navigation_timeout: float = 30.0
    ready_timeout: float = 30.0
    audio_graph_timeout: float = 10.0
    producer_timeout: float = 30.0
    stop_grace_period: float = 5.0
    status_interval: float = 60.0

    progress_sample_rate: float = 0.02
    queue_size: int = 256

    restart_policy: RestartPolicy = field(default_factory=RestartPolicy)

    def __post_init__(self) -> None:
        if isinstance(self.audio_tap_mode, str):
            try:
                self.audio_tap_mode = AudioTapMode(self.audio_tap_mode.lower())
            except ValueError as e:
                raise ConfigurationError(
                    f"Unknown audio tap mode: {self.audio_tap_mode}"
                ) from e

    @property
    def keyframe_interval(self) -> int:
        """GOP length in frames, so keyframes land every two seconds."""
        return self.frame_rate * 2

    @property
    def publish_url(self) -> str:
        """Full ingest URL with the stream key embedded."""
        return f"{self.rtmp_server.rstrip('/')}/{self.stream_key}"

    @property
    def masked_publish_url(self) -> str:
        """Ingest URL safe to write to logs."""
        return f"{self.rtmp_server.rstrip('/')}/{mask_secret(self.stream_key)}"

    @property
    def relay_url(self) -> str:
        """WebSocket URL the in-page recorder connects back to."""
        host = "localhost" if self.relay_host in ("0.0.0.0", "127.0.0.1") else self.relay_host
        return f"ws://{host}:{self.relay_port}/"

    def validate(self) -> None:
        """Check the configuration and resolve the ffmpeg binary.

        Raises:
            ConfigurationError: If a required value is missing or invalid
        """
        if not self.stream_key:
            raise ConfigurationError(
                "Stream key not configured. Set PIXELCAST_STREAM_KEY "
                "(or TWITCH_STREAM_KEY) in the environment or .env file."
            )

        positive = {
            "relay_port": self.relay_port,
            "capture_width": self.capture_width,
            "capture_height": self.capture_height,
            "output_width": self.output_width,
            "output_height": self.output_height,
            "frame_rate": self.frame_rate,
            "audio_sample_rate": self.audio_sample_rate,
            "audio_channels": self.audio_channels,
            "queue_size": self.queue_size,
            "producer_timeout": self.producer_timeout,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        policy = self.restart_policy
        if policy.max_count < 0:
            raise ConfigurationError("max restarts must not be negative")
        if policy.backoff_multiplier < 1.0:
            raise ConfigurationError("backoff multiplier must be >= 1.0")

        if not self.ffmpeg_path:
            self.ffmpeg_path = self._find_ffmpeg()

    @staticmethod
    def _find_ffmpeg() -> str:
        """Find ffmpeg binary in system PATH."""
        ffmpeg_path = shutil.which("ffmpeg")
        if not ffmpeg_path:
            raise ConfigurationError(
                "ffmpeg not found in PATH. Please install ffmpeg or set PIXELCAST_FFMPEG_PATH."
            )
        return ffmpeg_path

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "StreamConfig":
        """Build a configuration from environment variables.

        Both PIXELCAST_* names and the legacy TWITCH_STREAM_KEY / TWITCH_SERVER
        names are accepted.

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            return env.get(ENV_PREFIX + name, default)

        def number(name: str, default: Any, kind: type = int) -> Any:
            raw = get(name)
            if raw is None or raw == "":
                return default
            try:
                return kind(raw)
            except ValueError as e:
                raise ConfigurationError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e

        defaults = cls()
        policy = RestartPolicy(
            max_count=number("MAX_RESTARTS", 10),
            initial_delay_ms=number("RESTART_DELAY_MS", 5000.0, float),
            max_delay_ms=number("MAX_RESTART_DELAY_MS", 60000.0, float),
            backoff_multiplier=number("BACKOFF_MULTIPLIER", 1.5, float),
        )

        return cls(
            stream_key=get("STREAM_KEY") or env.get("TWITCH_STREAM_KEY", ""),
            rtmp_server=get("RTMP_SERVER") or env.get("TWITCH_SERVER", defaults.rtmp_server),
            surface_url=get("SURFACE_URL", defaults.surface_url),
            audio_tap_mode=get("AUDIO_TAP_MODE", defaults.audio_tap_mode.value),
            relay_host=get("RELAY_HOST", defaults.relay_host),
            relay_port=number("RELAY_PORT", defaults.relay_port),
            capture_width=number("CAPTURE_WIDTH", defaults.capture_width),
            capture_height=number("CAPTURE_HEIGHT", defaults.capture_height),
            output_width=number("OUTPUT_WIDTH", defaults.output_width),
            output_height=number("OUTPUT_HEIGHT", defaults.output_height),
            frame_rate=number("FPS", defaults.frame_rate),
            video_bitrate=get("VIDEO_BITRATE", defaults.video_bitrate),
            max_bitrate=get("MAX_BITRATE", defaults.max_bitrate),
            buffer_size=get("BUFFER_SIZE", defaults.buffer_size),
            audio_bitrate=get("AUDIO_BITRATE", defaults.audio_bitrate),
            ffmpeg_path=get("FFMPEG_PATH"),
            producer_timeout=number("PRODUCER_TIMEOUT", defaults.producer_timeout, float),
            restart_policy=policy,
        )
