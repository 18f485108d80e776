# Copyright 2026 Firefly Software Solutions Inc
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures for Pixelcast tests."""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest

from pixelcast.config import RestartPolicy, StreamConfig


@pytest.fixture
def stream_config():
    """A valid configuration that never touches PATH or the network."""
    return StreamConfig(
        stream_key="live_123456789_abcdef",
        rtmp_server="rtmp://ingest.example.test/app",
        surface_url="http://localhost:3000/script.html?autoplay=true",
        ffmpeg_path="/usr/bin/ffmpeg",
        ready_timeout=0.05,
        producer_timeout=0.1,
        stop_grace_period=0.1,
        restart_policy=RestartPolicy(),
    )


@pytest.fixture
def mock_page():
    """Playwright page with async methods stubbed."""
    page = MagicMock()
    page.goto = AsyncMock()
    page.evaluate = AsyncMock(return_value=None)
    page.wait_for_selector = AsyncMock()
    page.wait_for_function = AsyncMock()
    page.expose_function = AsyncMock()
    page.close = AsyncMock()
    return page


@pytest.fixture
def mock_context(mock_page):
    context = MagicMock()
    context.new_page = AsyncMock(return_value=mock_page)
    context.add_init_script = AsyncMock()
    context.close = AsyncMock()
    return context


@pytest.fixture
def mock_chromium(mock_context):
    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=mock_context)
    browser.close = AsyncMock()
    return browser


@pytest.fixture
def mock_playwright(mock_chromium):
    """Started Playwright object whose chromium.launch returns mock_chromium."""
    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(return_value=mock_chromium)
    playwright.stop = AsyncMock()
    return playwright


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process running ffmpeg.

    Must be created inside a running event loop.
    """

    def __init__(self, pid=4242, exit_on_terminate=True):
        self.pid = pid
        self.returncode = None
        self.exit_on_terminate = exit_on_terminate
        self.signals = []
        self.written = []
        self.stdin = MagicMock()
        self.stdin.write.side_effect = self.written.append
        self.stdin.drain = AsyncMock()
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def exit(self, code):
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    def send_signal(self, sig):
        self.signals.append(sig)
        if self.exit_on_terminate:
            self.exit(-int(sig))

    def kill(self):
        self.signals.append(signal.SIGKILL)
        self.exit(-int(signal.SIGKILL))


@pytest.fixture
def make_process():
    """Factory for FakeProcess instances."""
    return FakeProcess
