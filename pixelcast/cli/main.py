#!/usr/bin/env python3
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

"""Pixelcast CLI.

Command-line interface for running the broadcast pipeline.

Usage:
    pixelcast [--surface-url URL] [--relay-port PORT] [--max-restarts N]

    Or with Python:
    python -m pixelcast

Environment Variables:
    PIXELCAST_STREAM_KEY=live_xxx       (or TWITCH_STREAM_KEY)
    PIXELCAST_RTMP_SERVER=rtmp://...    (or TWITCH_SERVER)
    PIXELCAST_SURFACE_URL=http://localhost:3000/script.html?autoplay=true
    PIXELCAST_LOG_LEVEL=info

A .env file in the working directory is loaded first.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import List, Optional

from dotenv import load_dotenv

from pixelcast import __version__
from pixelcast.config import AudioTapMode, StreamConfig
from pixelcast.core.recovery import EXIT_CONFIG_ERROR, RecoveryManager
from pixelcast.core.session import Session
from pixelcast.exceptions import ConfigurationError
from pixelcast.utils.logger import setup_logger


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser. Flag defaults come from the environment."""
    parser = argparse.ArgumentParser(
        prog="pixelcast",
        description="Broadcast a browser-rendered surface to an RTMP ingest server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pixelcast                                   # Use settings from .env
  pixelcast --surface-url http://localhost:3000/script.html
  pixelcast --audio-tap-mode intercept        # Surfaces without registerAudioSource
  PIXELCAST_LOG_LEVEL=debug pixelcast
        """,
    )
    parser.add_argument("--version", action="version", version=f"pixelcast {__version__}")
    parser.add_argument(
        "--surface-url",
        default=None,
        help="URL of the rendering surface (default: $PIXELCAST_SURFACE_URL)",
    )
    parser.add_argument(
        "--rtmp-server",
        default=None,
        help="Ingest server base URL (default: $PIXELCAST_RTMP_SERVER)",
    )
    parser.add_argument(
        "--relay-port",
        type=int,
        default=None,
        help="Port for the in-page recorder to connect back to (default: 3001)",
    )
    parser.add_argument(
        "--audio-tap-mode",
        default=None,
        choices=[mode.value for mode in AudioTapMode],
        help="How page audio sources are attached to the tap (default: register)",
    )
    parser.add_argument(
        "--max-restarts",
        type=int,
        default=None,
        help="Restarts allowed before giving up (default: 10)",
    )
    parser.add_argument(
        "--ffmpeg",
        default=None,
        help="Path to the ffmpeg binary (default: found on PATH)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("PIXELCAST_LOG_LEVEL", "info"),
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: info)",
    )
    return parser


def load_config(args: argparse.Namespace) -> StreamConfig:
    """Read the environment, then apply command-line overrides.

    Raises:
        ConfigurationError: If the resulting configuration is invalid
    """
    config = StreamConfig.from_env()
    if args.surface_url:
        config.surface_url = args.surface_url
    if args.rtmp_server:
        config.rtmp_server = args.rtmp_server
    if args.relay_port is not None:
        config.relay_port = args.relay_port
    if args.audio_tap_mode:
        config.audio_tap_mode = AudioTapMode(args.audio_tap_mode)
    if args.max_restarts is not None:
        config.restart_policy.max_count = args.max_restarts
    if args.ffmpeg:
        config.ffmpeg_path = args.ffmpeg
    config.validate()
    return config


async def run_pipeline(config: StreamConfig) -> int:
    """Supervise the pipeline until it is stopped or gives up."""
    manager = RecoveryManager(
        lambda on_fatal, attempt: Session(config, on_fatal, attempt),
        config.restart_policy,
        status_interval=config.status_interval,
    )
    manager.install_signal_handlers(asyncio.get_running_loop())
    return await manager.run()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the pixelcast command."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    logger = setup_logger(level=args.log_level)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        logger.error(f"[CLI] {e}")
        sys.exit(EXIT_CONFIG_ERROR)

    logger.info(f"[CLI] Pixelcast {__version__}")
    logger.info(f"[CLI] Surface:  {config.surface_url}")
    logger.info(f"[CLI] Publish:  {config.masked_publish_url}")
    logger.info(
        f"[CLI] Output:   {config.output_width}x{config.output_height} @ {config.frame_rate}fps, "
        f"{config.video_bitrate} video / {config.audio_bitrate} audio"
    )

    sys.exit(asyncio.run(run_pipeline(config)))


if __name__ == "__main__":
    main()
