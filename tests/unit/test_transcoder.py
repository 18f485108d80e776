# Copyright 2026 Firefly Software Solutions Inc
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for the ffmpeg transcode supervisor."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pixelcast.core.pipes import ChunkPipe
from pixelcast.core.transcoder import (
    DiagnosticLevel,
    TranscodeSupervisor,
    TranscoderStats,
    classify_diagnostic,
    parse_progress,
)
from pixelcast.exceptions import SpawnError, TranscoderCrashError

PUBLISH_URL = "rtmp://ingest.example.test/app/live_123456789_abcdef"


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestBuildCommand:
    """Tests for the ffmpeg command line."""

    def test_silent_audio(self, stream_config):
        """Test silence is synthesized when no audio was tapped."""
        cmd = TranscodeSupervisor(stream_config).build_command(None, PUBLISH_URL)

        assert cmd[0] == "/usr/bin/ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "pipe:0"
        assert "anullsrc=channel_layout=stereo:sample_rate=48000" in cmd
        assert "s16le" not in cmd
        assert cmd[-1] == PUBLISH_URL

    def test_tapped_audio(self, stream_config):
        """Test raw PCM is read from the given pipe."""
        cmd = TranscodeSupervisor(stream_config).build_command("pipe:7", PUBLISH_URL)

        idx = cmd.index("s16le")
        assert cmd[idx:idx + 7] == ["s16le", "-ar", "48000", "-ac", "2", "-i", "pipe:7"]
        assert not any("anullsrc" in part for part in cmd)

    def test_video_encoding(self, stream_config):
        cmd = TranscodeSupervisor(stream_config).build_command(None, PUBLISH_URL)

        def value(flag):
            return cmd[cmd.index(flag) + 1]

        assert value("-c:v") == "libx264"
        assert value("-preset") == "veryfast"
        assert value("-tune") == "zerolatency"
        assert value("-b:v") == "2500k"
        assert value("-maxrate") == "3000k"
        assert value("-bufsize") == "6000k"
        assert value("-g") == "60"
        assert value("-keyint_min") == "60"
        assert value("-pix_fmt") == "yuv420p"
        assert value("-r") == "30"
        assert value("-vf") == "scale=960:960:flags=neighbor"
        assert value("-vsync") == "cfr"

    def test_output(self, stream_config):
        cmd = TranscodeSupervisor(stream_config).build_command(None, PUBLISH_URL)

        def value(flag):
            return cmd[cmd.index(flag) + 1]

        assert value("-c:a") == "aac"
        assert value("-b:a") == "128k"
        assert value("-flvflags") == "no_duration_filesize"
        assert value("-reconnect") == "1"
        assert value("-reconnect_streamed") == "1"
        assert value("-reconnect_delay_max") == "10"
        assert cmd[cmd.index("-f", cmd.index("-c:a")) + 1] == "flv"


class TestClassifyDiagnostic:
    """Tests for diagnostic classification."""

    @pytest.mark.parametrize("line", [
        "Conversion failed!",
        "rtmp://live.twitch.tv/app/xxx: Connection refused",
        "av_interleaved_write_frame(): Broken pipe",
        "pipe:0: Invalid data found when processing input",
        "rtmp://live.twitch.tv/app/xxx: I/O error",
        "Error writing trailer of rtmp://...: Broken pipe",
        "Unknown encoder 'libx264'",
        "[tcp @ 0x5581] Failed to resolve hostname live.twitch.tv",
        "Server returned 404 Not Found",
    ])
    def test_fatal(self, line):
        assert classify_diagnostic(line) == DiagnosticLevel.FATAL

    @pytest.mark.parametrize("line", [
        "Past duration 0.999992 too large",
        "[flv @ 0x55] Non-monotonous DTS in output stream 0:1",
        "Queue input is backward in time",
        "*** dropping frame 1200 from stream 0 at ts 1199",
        "[vp8 @ 0x55] error while decoding MB 12 4",
        "Warning: data is not aligned",
    ])
    def test_warning(self, line):
        assert classify_diagnostic(line) == DiagnosticLevel.WARNING

    @pytest.mark.parametrize("line", [
        "frame=  300 fps= 30 q=23.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s speed=1x",
        "Input #0, matroska,webm, from 'pipe:0':",
        "Stream mapping:",
    ])
    def test_info(self, line):
        assert classify_diagnostic(line) == DiagnosticLevel.INFO


class TestParseProgress:
    """Tests for progress extraction."""

    def test_progress_line(self):
        line = "frame= 1500 fps= 30 q=23.0 size=   10240kB time=00:00:50.00 bitrate=2499.1kbits/s"
        assert parse_progress(line) == {"frame": "1500", "fps": "30", "bitrate": "2499.1"}

    def test_not_progress(self):
        assert parse_progress("Stream mapping:") is None


class TestHandleDiagnostic:
    """Tests for acting on diagnostic lines."""

    def test_fatal_reported_once(self, stream_config):
        """Test only the first fatal line reaches the owner."""
        on_fatal = MagicMock()
        supervisor = TranscodeSupervisor(stream_config, on_fatal=on_fatal)

        supervisor.handle_diagnostic("Connection refused")
        supervisor.handle_diagnostic("Conversion failed!")

        on_fatal.assert_called_once()
        assert isinstance(on_fatal.call_args.args[0], TranscoderCrashError)
        assert supervisor.stats.fatal_lines == 2

    def test_warning_not_reported(self, stream_config):
        on_fatal = MagicMock()
        supervisor = TranscodeSupervisor(stream_config, on_fatal=on_fatal)
        assert supervisor.handle_diagnostic("Past duration 0.99 too large") == DiagnosticLevel.WARNING
        on_fatal.assert_not_called()
        assert supervisor.diagnostics == [(DiagnosticLevel.WARNING, "Past duration 0.99 too large")]

    def test_progress_sampled(self, stream_config):
        """Test progress is recorded always but only logged when sampled."""
        rng = MagicMock()
        rng.random.side_effect = [0.5, 0.0]
        supervisor = TranscodeSupervisor(stream_config, rng=rng)
        line = "frame=  10 fps= 30 q=23.0 size= 1kB time=00:00:00.33 bitrate= 2000.0kbits/s"

        with patch("pixelcast.core.transcoder.logger") as mock_logger:
            supervisor.handle_diagnostic(line)
            supervisor.handle_diagnostic(line)

        assert supervisor.stats.last_progress["frame"] == "10"
        assert mock_logger.info.call_count == 1

    def test_blank_line_ignored(self, stream_config):
        supervisor = TranscodeSupervisor(stream_config)
        assert supervisor.handle_diagnostic("   ") == DiagnosticLevel.INFO
        assert supervisor.stats.info_lines == 0

    def test_diagnostics_bounded(self, stream_config):
        supervisor = TranscodeSupervisor(stream_config)
        for i in range(80):
            supervisor.handle_diagnostic(f"Past duration {i} too large")
        assert len(supervisor.diagnostics) == 50
        assert supervisor.diagnostics[-1][1] == "Past duration 79 too large"


class TestTranscoderStats:
    def test_to_dict(self):
        stats = TranscoderStats(video_bytes=10, audio_bytes=4)
        data = stats.to_dict()
        assert data["video_bytes"] == 10
        assert data["audio_bytes"] == 4
        assert data["exit_code"] is None


class TestTranscoderLifecycle:
    """Tests for start, pumps and stop with a fake process."""

    @pytest.mark.asyncio
    async def test_start_pumps_video_in_order(self, stream_config, make_process):
        process = make_process()
        supervisor = TranscodeSupervisor(stream_config)
        video = ChunkPipe("video")

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ) as spawn:
            await supervisor.start(video, None, PUBLISH_URL)

        assert supervisor.running
        assert supervisor.pid == 4242
        assert spawn.call_args.kwargs["pass_fds"] == ()

        for chunk in (b"a", b"bb", b"ccc"):
            await video.put(chunk)
        await wait_until(lambda: supervisor.stats.video_bytes == 6)
        assert process.written == [b"a", b"bb", b"ccc"]

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_start_with_audio_passes_pipe(self, stream_config, make_process):
        """Test the audio read end is handed to ffmpeg as pipe:<fd>."""
        process = make_process()
        supervisor = TranscodeSupervisor(stream_config)
        writer = MagicMock()
        writer.drain = AsyncMock()
        audio = ChunkPipe("audio")

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ) as spawn, patch(
            "pixelcast.core.transcoder.os.pipe", return_value=(9917, 9918)
        ), patch.object(
            TranscodeSupervisor, "_open_audio_writer", AsyncMock(return_value=writer)
        ):
            await supervisor.start(ChunkPipe("video"), audio, PUBLISH_URL)

        assert "pipe:9917" in spawn.call_args.args
        assert spawn.call_args.kwargs["pass_fds"] == (9917,)

        await audio.put(b"\x00\x01\x00\x01")
        await wait_until(lambda: supervisor.stats.audio_bytes == 4)
        writer.write.assert_called_once_with(b"\x00\x01\x00\x01")

        await supervisor.stop()
        writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_spawn_failure(self, stream_config):
        supervisor = TranscodeSupervisor(stream_config)
        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("ffmpeg")),
        ):
            with pytest.raises(SpawnError, match="FFmpeg not found"):
                await supervisor.start(ChunkPipe("video"), None, PUBLISH_URL)

    @pytest.mark.asyncio
    async def test_unexpected_exit_reported(self, stream_config, make_process):
        """Test an exit that was not requested is fatal and carries the code."""
        process = make_process()
        errors = []
        supervisor = TranscodeSupervisor(stream_config, on_fatal=errors.append)

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await supervisor.start(ChunkPipe("video"), None, PUBLISH_URL)

        process.exit(1)
        await wait_until(lambda: errors)

        assert isinstance(errors[0], TranscoderCrashError)
        assert errors[0].exit_code == 1
        assert supervisor.stats.exit_code == 1
        await supervisor.stop()
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_fatal_stderr_reported(self, stream_config, make_process):
        """Test stderr is split on carriage returns and classified per line."""
        process = make_process()
        errors = []
        supervisor = TranscodeSupervisor(stream_config, on_fatal=errors.append)

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await supervisor.start(ChunkPipe("video"), None, PUBLISH_URL)

        process.stderr.feed_data(
            b"frame=  30 fps= 30 q=23.0 size= 1kB time=00:00:01.00 bitrate=2400.0kbits/s\r"
            b"frame=  60 fps= 30 q=23.0 size= 2kB time=00:00:02.00 bitrate=2400.0kbits/s\r"
            b"rtmp://ingest.example.test/app/xxx: Connection reset by peer\n"
        )
        await wait_until(lambda: errors)

        assert supervisor.stats.last_progress["frame"] == "60"
        assert "Connection reset" in str(errors[0])
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_reads(self, stream_config, make_process):
        """Test a UTF-8 sequence cut between two reads is decoded intact."""
        process = make_process()
        supervisor = TranscodeSupervisor(stream_config, on_fatal=MagicMock())

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await supervisor.start(ChunkPipe("video"), None, PUBLISH_URL)

        process.stderr.feed_data(b"[vp9 @ 0x55] warning: caf\xc3")
        await asyncio.sleep(0.05)
        process.stderr.feed_data(b"\xa9 frame skipped\n")
        await wait_until(lambda: supervisor.diagnostics)

        assert supervisor.diagnostics[-1] == (
            DiagnosticLevel.WARNING, "[vp9 @ 0x55] warning: caf\u00e9 frame skipped",
        )
        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_stop_terminates_gracefully(self, stream_config, make_process):
        process = make_process()
        errors = []
        supervisor = TranscodeSupervisor(stream_config, on_fatal=errors.append)

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await supervisor.start(ChunkPipe("video"), None, PUBLISH_URL)

        await supervisor.stop()

        process.stdin.close.assert_called_once()
        assert process.signals == [signal.SIGTERM]
        assert not supervisor.running
        assert errors == []

    @pytest.mark.asyncio
    async def test_stop_kills_after_grace(self, stream_config, make_process):
        """Test a process ignoring SIGTERM is killed after the grace period."""
        process = make_process(exit_on_terminate=False)
        supervisor = TranscodeSupervisor(stream_config)

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await supervisor.start(ChunkPipe("video"), None, PUBLISH_URL)

        await supervisor.stop(grace_period=0.05)

        assert process.signals == [signal.SIGTERM, signal.SIGKILL]
        assert process.returncode == -9

    @pytest.mark.asyncio
    async def test_stop_idempotent(self, stream_config, make_process):
        process = make_process()
        supervisor = TranscodeSupervisor(stream_config)

        with patch(
            "pixelcast.core.transcoder.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            await supervisor.start(ChunkPipe("video"), None, PUBLISH_URL)

        await supervisor.stop()
        await supervisor.stop()
        assert process.signals == [signal.SIGTERM]

    @pytest.mark.asyncio
    async def test_stop_before_start(self, stream_config):
        supervisor = TranscodeSupervisor(stream_config)
        await supervisor.stop()
        assert not supervisor.running
