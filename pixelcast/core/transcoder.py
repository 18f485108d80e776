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

"""FFmpeg transcode supervisor for Pixelcast.

This module owns the external ffmpeg process that turns the relayed WebM
video and the tapped PCM audio into an H.264/AAC FLV stream published over
RTMP:

- WebM (VP8/VP9) video on stdin, raw s16le PCM on an extra inherited pipe
- Synthesized silence (anullsrc) when no audio was tapped
- Nearest-neighbour scaling to keep pixel art sharp
- Capped-bitrate x264 with a keyframe every two seconds, constant frame rate
- Transport-level reconnection to the ingest server

The supervisor classifies ffmpeg's diagnostic output into info, warning and
fatal events. A fatal event or any exit that was not requested is reported to
the owner; the process is never restarted in place.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import random
import re
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterable, Callable, Dict, List, Optional, Tuple

from pixelcast.config import StreamConfig
from pixelcast.exceptions import SpawnError, TranscoderCrashError
from pixelcast.utils.logger import logger

FatalCallback = Callable[[Exception], None]

SILENT_AUDIO_SOURCE = "anullsrc=channel_layout=stereo:sample_rate={rate}"


class DiagnosticLevel(str, Enum):
    """Severity of one line of transcoder output."""

    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"


# Explicit markers that mean the output can no longer be produced.
FATAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"conversion failed",
        r"connection (refused|reset|timed out)",
        r"broken pipe",
        r"invalid data found when processing input",
        r"i/o error",
        r"error opening (input|output)",
        r"error writing trailer",
        r"error (while opening|initializing)",
        r"unknown encoder",
        r"could not (open|find)",
        r"could not write header",
        r"failed to (resolve|connect|open)",
        r"server returned \d{3}",
        r"end of file",
        r"\[fatal\]",
    )
]

# Codec and sync complaints that do not stop the output.
WARNING_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"warning",
        r"past duration",
        r"non-monoton",
        r"queue input is backward",
        r"dropping",
        r"error",
    )
]

PROGRESS_PATTERN = re.compile(r"frame=\s*(\d+)")
FPS_PATTERN = re.compile(r"fps=\s*([\d.]+)")
BITRATE_PATTERN = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
LINE_SPLIT = re.compile(r"[\r\n]+")


def classify_diagnostic(line: str) -> DiagnosticLevel:
    """Classify one line of ffmpeg stderr output.

    Fatal markers win over warnings; a generic "error" that matches no fatal
    marker (for example "error while decoding MB") is only a warning.
    """
    for pattern in FATAL_PATTERNS:
        if pattern.search(line):
            return DiagnosticLevel.FATAL
    for pattern in WARNING_PATTERNS:
        if pattern.search(line):
            return DiagnosticLevel.WARNING
    return DiagnosticLevel.INFO


def parse_progress(line: str) -> Optional[Dict[str, str]]:
    """Extract frame, fps and bitrate from a progress line, if it is one."""
    frame = PROGRESS_PATTERN.search(line)
    if not frame:
        return None
    fps = FPS_PATTERN.search(line)
    bitrate = BITRATE_PATTERN.search(line)
    return {
        "frame": frame.group(1),
        "fps": fps.group(1) if fps else "?",
        "bitrate": bitrate.group(1) if bitrate else "?",
    }


@dataclass
class TranscoderStats:
    """Counters for one transcoder process."""

    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    exit_code: Optional[int] = None
    video_bytes: int = 0
    audio_bytes: int = 0
    info_lines: int = 0
    warning_lines: int = 0
    fatal_lines: int = 0
    last_progress: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "exit_code": self.exit_code,
            "video_bytes": self.video_bytes,
            "audio_bytes": self.audio_bytes,
            "info_lines": self.info_lines,
            "warning_lines": self.warning_lines,
            "fatal_lines": self.fatal_lines,
            "last_progress": self.last_progress,
        }


class TranscodeSupervisor:
    """Spawns and owns one ffmpeg process for a pipeline attempt.

    Input channels are written only by this supervisor's pump tasks: the
    video pump drains the relay's chunk stream into stdin and the audio pump
    drains the tap's PCM stream into the extra audio pipe.

    Example:
        >>> supervisor = TranscodeSupervisor(config, on_fatal=manager.report_fatal)
        >>> await supervisor.start(relay.chunks(), tap.stream, config.publish_url)
        >>> ...
        >>> await supervisor.stop()
    """

    def __init__(
        self,
        config: StreamConfig,
        on_fatal: Optional[FatalCallback] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.on_fatal = on_fatal
        self._rng = rng or random.Random()

        self._process: Optional[asyncio.subprocess.Process] = None
        self._audio_writer: Optional[asyncio.StreamWriter] = None
        self._audio_fd: Optional[int] = None
        self._pumps: List[asyncio.Task] = []
        self._watchers: List[asyncio.Task] = []
        self._stopping = False
        self._stopped = False
        self._fatal_reported = False
        self.stats = TranscoderStats()
        self.diagnostics: List[Tuple[DiagnosticLevel, str]] = []

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def build_command(self, audio_input: Optional[str], output_url: str) -> List[str]:
        """Build the ffmpeg command line.

        Args:
            audio_input: ffmpeg input URL for PCM (e.g. "pipe:5"), or None
                to synthesize silence
            output_url: RTMP publish URL
        """
        cfg = self.config
        cmd = [cfg.ffmpeg_path or "ffmpeg", "-hide_banner"]

        # Video input: WebM chunks from the relay
        cmd.extend(["-f", "webm", "-i", "pipe:0"])

        if audio_input:
            cmd.extend([
                "-f", "s16le",
                "-ar", str(cfg.audio_sample_rate),
                "-ac", str(cfg.audio_channels),
                "-i", audio_input,
            ])
        else:
            cmd.extend([
                "-f", "lavfi",
                "-i", SILENT_AUDIO_SOURCE.format(rate=cfg.audio_sample_rate),
            ])

        # Nearest-neighbour scaling keeps pixel art crisp
        cmd.extend([
            "-vf", f"scale={cfg.output_width}:{cfg.output_height}:flags=neighbor",
            "-sws_flags", "neighbor+full_chroma_int+accurate_rnd",
        ])

        gop = str(cfg.keyframe_interval)
        cmd.extend([
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-tune", "zerolatency",
            "-b:v", cfg.video_bitrate,
            "-maxrate", cfg.max_bitrate,
            "-bufsize", cfg.buffer_size,
            "-g", gop,
            "-keyint_min", gop,
            "-pix_fmt", "yuv420p",
            "-r", str(cfg.frame_rate),
            "-profile:v", "main",
            "-level", "4.1",
        ])

        cmd.extend([
            "-c:a", "aac",
            "-b:a", cfg.audio_bitrate,
            "-ar", str(cfg.audio_sample_rate),
            "-ac", str(cfg.audio_channels),
        ])

        # A/V sync and constant output rate
        cmd.extend([
            "-af", "aresample=async=1:min_hard_comp=0.100000:first_pts=0",
            "-vsync", "cfr",
            "-max_muxing_queue_size", "1024",
            "-fflags", "+genpts",
        ])

        # FLV over RTMP with transport reconnection
        cmd.extend([
            "-f", "flv",
            "-flvflags", "no_duration_filesize",
            "-reconnect", "1",
            "-reconnect_streamed", "1",
            "-reconnect_delay_max", "10",
            output_url,
        ])
        return cmd

    async def start(
        self,
        video_input: AsyncIterable[bytes],
        audio_input: Optional[AsyncIterable[bytes]],
        output_url: str,
    ) -> None:
        """Spawn ffmpeg and start pumping both media streams into it.

        Raises:
            SpawnError: If the process cannot be started
        """
        if self._process is not None or self._stopping:
            raise SpawnError("Transcoder already started")

        read_fd: Optional[int] = None
        write_fd: Optional[int] = None
        if audio_input is not None:
            read_fd, write_fd = os.pipe()
            self._audio_fd = read_fd

        cmd = self.build_command(f"pipe:{read_fd}" if read_fd is not None else None, output_url)
        logged = [self.config.masked_publish_url if part == output_url else part for part in cmd]
        logger.info(f"[TRANSCODER] FFmpeg command: {' '.join(logged)}")
        logger.info(
            "[TRANSCODER] Using real audio from tap" if audio_input is not None
            else "[TRANSCODER] Using silent audio (no audio tap)"
        )

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                pass_fds=(read_fd,) if read_fd is not None else (),
            )
        except FileNotFoundError as e:
            self._close_fds(read_fd, write_fd)
            raise SpawnError("FFmpeg not found. Please install FFmpeg.") from e
        except PermissionError as e:
            self._close_fds(read_fd, write_fd)
            raise SpawnError(f"Permission denied starting FFmpeg: {e}") from e
        except OSError as e:
            self._close_fds(read_fd, write_fd)
            raise SpawnError(f"Failed to start FFmpeg: {e}") from e

        # The child holds its own copy of the read end.
        self._close_fds(read_fd)
        self._audio_fd = None

        if write_fd is not None:
            self._audio_writer = await self._open_audio_writer(write_fd)

        self.stats = TranscoderStats()
        self._pumps.append(asyncio.create_task(self._pump_video(video_input)))
        if audio_input is not None and self._audio_writer is not None:
            self._pumps.append(asyncio.create_task(self._pump_audio(audio_input)))
        self._watchers.append(asyncio.create_task(self._read_diagnostics()))
        self._watchers.append(asyncio.create_task(self._watch_exit()))

        logger.info(f"[TRANSCODER] FFmpeg started (pid {self._process.pid}): WebM -> H.264 -> RTMP")

    async def _open_audio_writer(self, write_fd: int) -> asyncio.StreamWriter:
        loop = asyncio.get_running_loop()
        pipe = os.fdopen(write_fd, "wb", buffering=0)
        transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, pipe)
        return asyncio.StreamWriter(transport, protocol, None, loop)

    @staticmethod
    def _close_fds(*fds: Optional[int]) -> None:
        for fd in fds:
            if fd is None:
                continue
            try:
                os.close(fd)
            except OSError:
                pass

    async def _pump_video(self, chunks: AsyncIterable[bytes]) -> None:
        stdin = self._process.stdin
        try:
            async for chunk in chunks:
                stdin.write(chunk)
                await stdin.drain()
                self.stats.video_bytes += len(chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            self._report_fatal(TranscoderCrashError(f"Video input pipe closed: {e}"))

    async def _pump_audio(self, frames: AsyncIterable[bytes]) -> None:
        writer = self._audio_writer
        try:
            async for frame in frames:
                writer.write(frame)
                await writer.drain()
                self.stats.audio_bytes += len(frame)
        except (BrokenPipeError, ConnectionResetError) as e:
            self._report_fatal(TranscoderCrashError(f"Audio input pipe closed: {e}"))

    async def _read_diagnostics(self) -> None:
        stderr = self._process.stderr
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            data = await stderr.read(4096)
            if not data:
                pending += decoder.decode(b"", final=True)
                break
            pending += decoder.decode(data)
            parts = LINE_SPLIT.split(pending)
            pending = parts.pop()
            for line in parts:
                self.handle_diagnostic(line)
        if pending:
            self.handle_diagnostic(pending)

    def handle_diagnostic(self, line: str) -> DiagnosticLevel:
        """Classify, log and act on one diagnostic line."""
        line = line.strip()
        if not line:
            return DiagnosticLevel.INFO
        level = classify_diagnostic(line)

        if level == DiagnosticLevel.FATAL:
            self.stats.fatal_lines += 1
            self._remember(level, line)
            logger.error(f"[TRANSCODER] FFmpeg error: {line}")
            self._report_fatal(TranscoderCrashError(f"FFmpeg reported a fatal error: {line}"))
        elif level == DiagnosticLevel.WARNING:
            self.stats.warning_lines += 1
            self._remember(level, line)
            logger.warning(f"[TRANSCODER] FFmpeg warning: {line}")
        else:
            self.stats.info_lines += 1
            progress = parse_progress(line)
            if progress is not None:
                self.stats.last_progress = progress
                if self._rng.random() < self.config.progress_sample_rate:
                    logger.info(
                        f"[TRANSCODER] Streaming: frame {progress['frame']}, "
                        f"fps {progress['fps']}, bitrate {progress['bitrate']}kbps"
                    )
            else:
                logger.debug(f"[TRANSCODER] {line}")
        return level

    def _remember(self, level: DiagnosticLevel, line: str) -> None:
        self.diagnostics.append((level, line))
        del self.diagnostics[:-50]

    async def _watch_exit(self) -> None:
        code = await self._process.wait()
        self.stats.exit_code = code
        self.stats.ended_at = time.time()
        if self._stopping:
            logger.info(f"[TRANSCODER] FFmpeg exited with code {code}")
            return
        logger.error(f"[TRANSCODER] FFmpeg process exited unexpectedly with code {code}")
        self._report_fatal(
            TranscoderCrashError(f"FFmpeg exited unexpectedly with code {code}", exit_code=code)
        )

    def _report_fatal(self, error: Exception) -> None:
        if self._stopping or self._fatal_reported:
            return
        self._fatal_reported = True
        if self.on_fatal:
            self.on_fatal(error)

    async def stop(self, grace_period: Optional[float] = None) -> None:
        """Ordered shutdown.

        Close video input, close audio input, SIGTERM, wait up to the grace
        period, then SIGKILL. Idempotent and safe before ``start``.
        """
        if self._stopped:
            return
        self._stopped = True
        self._stopping = True
        grace = self.config.stop_grace_period if grace_period is None else grace_period

        await self._cancel(self._pumps)
        self._pumps = []

        process = self._process
        if process is not None and process.stdin is not None:
            try:
                process.stdin.close()
            except Exception as e:
                logger.debug(f"[TRANSCODER] Error closing video input: {e}")

        if self._audio_writer is not None:
            try:
                self._audio_writer.close()
            except Exception as e:
                logger.debug(f"[TRANSCODER] Error closing audio input: {e}")
            self._audio_writer = None
        self._close_fds(self._audio_fd)
        self._audio_fd = None

        if process is not None and process.returncode is None:
            try:
                process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("[TRANSCODER] FFmpeg did not exit gracefully, killing...")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        await self._cancel(self._watchers)
        self._watchers = []
        if process is not None:
            logger.info(
                f"[TRANSCODER] FFmpeg stopped (exit code {process.returncode}, "
                f"video {self.stats.video_bytes} bytes, audio {self.stats.audio_bytes} bytes)"
            )

    @staticmethod
    async def _cancel(tasks: List[asyncio.Task]) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"[TRANSCODER] Task ended with error: {e}")
