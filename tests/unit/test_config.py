# Copyright 2026 Firefly Software Solutions Inc
# SPDX-License-Identifier: Apache-2.0

"""Unit tests for StreamConfig and RestartPolicy."""

from unittest.mock import patch

import pytest

from pixelcast.config import AudioTapMode, RestartPolicy, StreamConfig
from pixelcast.exceptions import ConfigurationError


class TestRestartPolicy:
    """Tests for bounded exponential backoff."""

    def test_defaults(self):
        """Test default bounds."""
        policy = RestartPolicy()
        assert policy.max_count == 10
        assert policy.delay_ms == 5000.0
        assert policy.count == 0
        assert not policy.exhausted

    def test_backoff_sequence(self):
        """Test each delay grows by the multiplier."""
        policy = RestartPolicy()
        delays = [policy.next_delay_ms() for _ in range(3)]
        assert delays == [5000.0, 7500.0, 11250.0]
        assert policy.count == 3

    def test_delay_capped_at_max(self):
        """Test delays never exceed max_delay_ms."""
        policy = RestartPolicy(max_count=20)
        delays = [policy.next_delay_ms() for _ in range(12)]
        assert max(delays) == 60000.0
        assert delays[-1] == 60000.0

    def test_delay_for_matches_sequence(self):
        """Test delay_for(n) equals the n-th delay handed out."""
        policy = RestartPolicy(max_count=15)
        expected = [policy.delay_for(n) for n in range(10)]
        actual = [policy.next_delay_ms() for _ in range(10)]
        assert actual == pytest.approx(expected)

    def test_exhausted_at_bound(self):
        """Test exhaustion once count reaches max_count."""
        policy = RestartPolicy(max_count=2)
        policy.next_delay_ms()
        assert not policy.exhausted
        policy.next_delay_ms()
        assert policy.exhausted

    def test_reset(self):
        """Test reset clears count and delay."""
        policy = RestartPolicy()
        policy.next_delay_ms()
        policy.next_delay_ms()
        policy.reset()
        assert policy.count == 0
        assert policy.delay_ms == 5000.0

    def test_zero_restarts_exhausted_immediately(self):
        policy = RestartPolicy(max_count=0)
        assert policy.exhausted


class TestStreamConfig:
    """Tests for StreamConfig."""

    def test_defaults(self):
        """Test default capture and publish settings."""
        config = StreamConfig()
        assert (config.capture_width, config.capture_height) == (960, 960)
        assert config.frame_rate == 30
        assert config.keyframe_interval == 60
        assert config.audio_sample_rate == 48000
        assert config.audio_channels == 2
        assert config.relay_port == 3001
        assert config.audio_tap_mode == AudioTapMode.REGISTER

    def test_publish_url(self):
        """Test the key is appended to the server."""
        config = StreamConfig(stream_key="live_abc", rtmp_server="rtmp://live.twitch.tv/app/")
        assert config.publish_url == "rtmp://live.twitch.tv/app/live_abc"

    def test_masked_publish_url_hides_key(self):
        config = StreamConfig(stream_key="live_123456789_secret")
        assert "live_123456789" not in config.masked_publish_url
        assert config.masked_publish_url.endswith("cret")

    def test_relay_url(self):
        config = StreamConfig(relay_port=4001)
        assert config.relay_url == "ws://localhost:4001/"

    def test_audio_tap_mode_from_string(self):
        config = StreamConfig(audio_tap_mode="INTERCEPT")
        assert config.audio_tap_mode == AudioTapMode.INTERCEPT

    def test_unknown_audio_tap_mode(self):
        with pytest.raises(ConfigurationError, match="Unknown audio tap mode"):
            StreamConfig(audio_tap_mode="loopback")


class TestStreamConfigValidate:
    """Tests for StreamConfig.validate()."""

    def test_missing_stream_key(self):
        """Test a missing key is a configuration error."""
        config = StreamConfig(ffmpeg_path="/usr/bin/ffmpeg")
        with pytest.raises(ConfigurationError, match="Stream key not configured"):
            config.validate()

    def test_non_positive_value(self):
        config = StreamConfig(stream_key="k", ffmpeg_path="/usr/bin/ffmpeg", frame_rate=0)
        with pytest.raises(ConfigurationError, match="frame_rate"):
            config.validate()

    def test_bad_multiplier(self):
        config = StreamConfig(
            stream_key="k",
            ffmpeg_path="/usr/bin/ffmpeg",
            restart_policy=RestartPolicy(backoff_multiplier=0.5),
        )
        with pytest.raises(ConfigurationError, match="backoff multiplier"):
            config.validate()

    def test_ffmpeg_resolved_from_path(self):
        """Test ffmpeg is looked up when not configured."""
        config = StreamConfig(stream_key="k")
        with patch("pixelcast.config.shutil.which", return_value="/opt/bin/ffmpeg"):
            config.validate()
        assert config.ffmpeg_path == "/opt/bin/ffmpeg"

    def test_ffmpeg_missing(self):
        config = StreamConfig(stream_key="k")
        with patch("pixelcast.config.shutil.which", return_value=None):
            with pytest.raises(ConfigurationError, match="ffmpeg not found"):
                config.validate()

    def test_explicit_ffmpeg_skips_lookup(self):
        config = StreamConfig(stream_key="k", ffmpeg_path="/custom/ffmpeg")
        with patch("pixelcast.config.shutil.which") as mock_which:
            config.validate()
        mock_which.assert_not_called()


class TestStreamConfigFromEnv:
    """Tests for StreamConfig.from_env()."""

    def test_prefixed_variables(self):
        """Test PIXELCAST_* variables are read."""
        config = StreamConfig.from_env({
            "PIXELCAST_STREAM_KEY": "live_key",
            "PIXELCAST_RTMP_SERVER": "rtmp://example.test/live",
            "PIXELCAST_RELAY_PORT": "4100",
            "PIXELCAST_MAX_RESTARTS": "3",
            "PIXELCAST_RESTART_DELAY_MS": "1000",
            "PIXELCAST_AUDIO_TAP_MODE": "intercept",
        })
        assert config.stream_key == "live_key"
        assert config.rtmp_server == "rtmp://example.test/live"
        assert config.relay_port == 4100
        assert config.restart_policy.max_count == 3
        assert config.restart_policy.delay_ms == 1000.0
        assert config.audio_tap_mode == AudioTapMode.INTERCEPT

    def test_twitch_aliases(self):
        """Test legacy TWITCH_* names are honoured."""
        config = StreamConfig.from_env({
            "TWITCH_STREAM_KEY": "live_twitch",
            "TWITCH_SERVER": "rtmp://live-cdg.twitch.tv/app",
        })
        assert config.stream_key == "live_twitch"
        assert config.rtmp_server == "rtmp://live-cdg.twitch.tv/app"

    def test_prefixed_wins_over_alias(self):
        config = StreamConfig.from_env({
            "PIXELCAST_STREAM_KEY": "primary",
            "TWITCH_STREAM_KEY": "legacy",
        })
        assert config.stream_key == "primary"

    def test_empty_environment_uses_defaults(self):
        config = StreamConfig.from_env({})
        assert config.stream_key == ""
        assert config.rtmp_server == "rtmp://live.twitch.tv/app"
        assert config.restart_policy.max_count == 10

    def test_invalid_number(self):
        with pytest.raises(ConfigurationError, match="PIXELCAST_RELAY_PORT"):
            StreamConfig.from_env({"PIXELCAST_RELAY_PORT": "abc"})
