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
Headless browser session for Pixelcast.

This module provides the BrowserSession class which owns the Playwright
Chromium instance that renders the animated surface. It handles launching
with a capture-friendly configuration, navigating to the surface, waiting for
real content to appear, and wiring the in-page canvas recorder.

Crash signals (page crash, browser disconnect) are reported to the owner
through the ``on_fatal`` callback; the session never tries to recover itself.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from pixelcast.config import StreamConfig
from pixelcast.core.page_scripts import AUDIO_REGISTRY_INIT_SCRIPT, SURFACE_RECORDER_SCRIPT
from pixelcast.exceptions import (
    BrowserCrashError,
    BrowserError,
    LaunchError,
    NavigationError,
    TimeoutError,
)
from pixelcast.utils.logger import logger

FatalCallback = Callable[[Exception], None]

# Chromium flags for deterministic, speaker-less capture.
CHROMIUM_ARGS: List[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--autoplay-policy=no-user-gesture-required",
    "--disable-audio-output",
    "--force-device-scale-factor=1",
    "--disable-lcd-text",
]


class BrowserSession:
    """
    Owns one headless Chromium process and one page pointed at the surface.

    The page handle is only valid between a successful ``launch`` and the
    first crash or ``close``. ``close`` is idempotent and safe to call on an
    instance that was never launched.

    Attributes:
        config: Stream configuration (viewport, surface contract, timeouts)
        on_fatal: Callback invoked once with a BrowserCrashError on crash

    Example:
        >>> session = BrowserSession(config, on_fatal=manager.report_fatal)
        >>> await session.launch()
        >>> await session.navigate(config.surface_url)
        >>> await session.wait_until_ready()
        >>> await session.close()
    """

    def __init__(
        self,
        config: StreamConfig,
        on_fatal: Optional[FatalCallback] = None,
        poll_interval: float = 0.5,
    ) -> None:
        self.config = config
        self.on_fatal = on_fatal
        self.poll_interval = poll_interval
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._closed = False
        self._crashed = False
        self._navigation_lock = asyncio.Lock()

    @property
    def launch_options(self) -> Dict[str, Any]:
        """Playwright launch options for the capture browser."""
        return {
            "headless": True,
            "args": CHROMIUM_ARGS + [
                f"--window-size={self.config.capture_width},{self.config.capture_height}",
            ],
        }

    async def launch(self) -> None:
        """
        Start Chromium and open the capture page.

        This method:
        1. Initializes Playwright
        2. Launches Chromium with the capture flags
        3. Creates a context whose viewport matches the capture resolution
        4. Installs the audio-source registry shim and crash listeners

        Raises:
            LaunchError: If the browser fails to start
        """
        if self._closed:
            raise LaunchError("Browser session already closed")
        try:
            logger.info(
                f"[BROWSER] Launching headless Chromium "
                f"({self.config.capture_width}x{self.config.capture_height})"
            )
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(**self.launch_options)
            self._browser.on("disconnected", self._on_disconnected)

            self._context = await self._browser.new_context(
                viewport={
                    "width": self.config.capture_width,
                    "height": self.config.capture_height,
                },
                device_scale_factor=1,
            )
            await self._context.add_init_script(AUDIO_REGISTRY_INIT_SCRIPT)

            self._page = await self._context.new_page()
            self._page.on("crash", self._on_crash)
            self._page.on("console", self._on_console)

            logger.info("[BROWSER] Browser launched")
        except Exception as e:
            logger.error(f"[BROWSER] Failed to launch browser: {e}")
            raise LaunchError(f"Failed to launch browser: {e}") from e

    async def navigate(self, url: str, timeout: Optional[float] = None) -> None:
        """
        Navigate the page to the rendering surface.

        Args:
            url: Surface URL
            timeout: Seconds allowed (default: config.navigation_timeout)

        Raises:
            TimeoutError: If the page does not settle in time
            NavigationError: If navigation fails for any other reason
        """
        timeout = self.config.navigation_timeout if timeout is None else timeout
        page = self.page
        async with self._navigation_lock:
            logger.info(f"[BROWSER] Navigating to {url}")
            try:
                await page.goto(url, wait_until="networkidle", timeout=timeout * 1000)
            except PlaywrightTimeoutError as e:
                raise TimeoutError(f"Navigation to {url} timed out after {timeout}s") from e
            except PlaywrightError as e:
                raise NavigationError(f"Navigation to {url} failed: {e}") from e

    async def wait_for_signal(
        self,
        selector: Optional[str] = None,
        predicate: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        """
        Wait for a CSS selector to attach or a JS predicate to become truthy.

        Raises:
            ValueError: If neither selector nor predicate is given
            TimeoutError: If the signal is not observed within timeout
        """
        if selector is None and predicate is None:
            raise ValueError("wait_for_signal needs a selector or a predicate")
        page = self.page
        try:
            if selector is not None:
                await page.wait_for_selector(selector, timeout=timeout * 1000)
            else:
                await page.wait_for_function(
                    predicate, timeout=timeout * 1000, polling=int(self.poll_interval * 1000)
                )
        except PlaywrightTimeoutError as e:
            raise TimeoutError(
                f"Signal {selector or predicate!r} not observed within {timeout}s"
            ) from e

    async def is_content_ready(self) -> bool:
        """Evaluate the readiness predicate once."""
        if self._page is None or self._crashed:
            return False
        try:
            return bool(await self._page.evaluate(self.config.ready_selector))
        except PlaywrightError as e:
            logger.debug(f"[BROWSER] Readiness probe failed: {e}")
            return False

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Poll until the surface shows real content rather than a placeholder.

        The timeout is a safety fallback: when it expires a warning is logged
        and startup continues.

        Returns:
            True if the predicate was satisfied, False if the fallback fired
        """
        timeout = self.config.ready_timeout if timeout is None else timeout
        started = time.monotonic()
        last_report = started
        logger.info("[BROWSER] Waiting for surface content...")

        while True:
            if await self.is_content_ready():
                elapsed = time.monotonic() - started
                logger.info(f"[BROWSER] Surface content detected after {elapsed:.1f}s")
                return True

            now = time.monotonic()
            if now - started >= timeout:
                logger.warning(
                    f"[BROWSER] Surface content not detected after {timeout:.0f}s, continuing anyway"
                )
                return False
            if now - last_report >= 4.0:
                logger.info(f"[BROWSER] Still waiting for surface content ({now - started:.0f}s)")
                last_report = now

            await asyncio.sleep(self.poll_interval)

    async def start_surface_recorder(self, relay_url: str) -> bool:
        """
        Start the in-page canvas recorder and connect it to the video relay.

        Returns:
            True if MediaRecorder started and the relay connection opened
        """
        options = {
            "canvasSelector": self.config.canvas_selector,
            "captureFps": self.config.capture_frame_rate,
            "bitrate": self.config.recorder_bitrate,
            "timesliceMs": self.config.recorder_timeslice_ms,
            "relayUrl": relay_url,
        }
        try:
            result = await self.page.evaluate(SURFACE_RECORDER_SCRIPT, options)
        except PlaywrightError as e:
            logger.error(f"[BROWSER] Surface recorder injection failed: {e}")
            return False

        if not result or not result.get("ok"):
            reason = (result or {}).get("reason", "unknown")
            logger.error(f"[BROWSER] Surface recorder not started: {reason}")
            return False

        logger.info(
            f"[BROWSER] Surface recorder started ({result.get('mimeType')}, "
            f"{self.config.recorder_timeslice_ms}ms chunks)"
        )
        return True

    def _on_crash(self, *args: Any) -> None:
        self._report_fatal(BrowserCrashError("Page crashed"))

    def _on_disconnected(self, *args: Any) -> None:
        if self._closed:
            return
        self._report_fatal(BrowserCrashError("Browser disconnected"))

    def _on_console(self, message: Any) -> None:
        if message.type == "error":
            logger.warning(f"[BROWSER] Page console error: {message.text}")

    def _report_fatal(self, error: Exception) -> None:
        if self._crashed or self._closed:
            return
        self._crashed = True
        logger.error(f"[BROWSER] {error}")
        if self.on_fatal:
            self.on_fatal(error)

    async def close(self) -> None:
        """
        Close the page, context, browser and Playwright.

        Each step is attempted independently; failures are logged and do not
        stop the remaining steps. Safe to call repeatedly.
        """
        if self._closed:
            return
        self._closed = True
        logger.info("[BROWSER] Closing browser")

        steps = [
            ("page", self._page, "close"),
            ("context", self._context, "close"),
            ("browser", self._browser, "close"),
            ("playwright", self._playwright, "stop"),
        ]
        for name, resource, method in steps:
            if resource is None:
                continue
            try:
                await getattr(resource, method)()
            except Exception as e:
                logger.warning(f"[BROWSER] Error closing {name}: {e}")

        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None

    @property
    def page(self) -> Page:
        """Get the capture page."""
        if not self._page:
            raise BrowserError("No active page. Call launch() first.")
        return self._page

    @property
    def closed(self) -> bool:
        return self._closed
