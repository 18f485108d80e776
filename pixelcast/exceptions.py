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

"""Custom exceptions for Pixelcast.

This module defines the exception hierarchy used throughout the broadcast
pipeline. All exceptions inherit from PixelcastError so the recovery
supervisor can treat any component failure uniformly.

Exception Hierarchy:
    PixelcastError (base)
    ├── ConfigurationError - Invalid or missing configuration (no restart)
    ├── BrowserError - Headless browser errors
    │   ├── LaunchError - Browser failed to launch
    │   ├── NavigationError - Surface navigation failed
    │   └── BrowserCrashError - Page crashed or browser disconnected
    ├── TimeoutError - A bounded wait expired
    ├── CaptureError - In-page capture wiring failed
    ├── RelayError - Video relay errors
    │   ├── BindError - Relay listener could not bind
    │   └── RelayTimeoutError - No producer connected in time
    ├── TranscoderError - Transcoder process errors
    │   ├── SpawnError - Process could not be started
    │   └── TranscoderCrashError - Fatal diagnostic or abnormal exit
    ├── StateTransitionError - Illegal session state transition
    └── RestartsExhaustedError - Restart bound reached

Example:
    try:
        await session.start(on_state)
    except ConfigurationError:
        # Fatal, never retried
        raise
    except PixelcastError as e:
        manager.report_fatal(e)
"""


class PixelcastError(Exception):
    """Base exception for all Pixelcast errors.

    All custom exceptions in Pixelcast inherit from this class, allowing
    the recovery supervisor to catch every component failure with a
    single except clause.
    """
    pass


class ConfigurationError(PixelcastError):
    """Exception raised for configuration errors.

    Raised at startup when required configuration is missing or invalid.
    Configuration errors are never retried.

    Examples:
        - Missing publish stream key
        - Non-positive bitrate or frame rate
        - Unknown audio tap mode
    """
    pass


class BrowserError(PixelcastError):
    """Exception raised for browser-related errors.

    Raised when the headless browser cannot be driven as expected.
    """
    pass


class LaunchError(BrowserError):
    """Exception raised when the browser fails to launch."""
    pass


class NavigationError(BrowserError):
    """Exception raised when navigating to the rendering surface fails.

    Examples:
        - Surface server is unreachable
        - Navigation aborted by the page
    """
    pass


class BrowserCrashError(BrowserError):
    """Exception raised when the page crashes or the browser disconnects."""
    pass


class TimeoutError(PixelcastError):
    """Exception raised when a bounded wait expires.

    Examples:
        - Navigation timeout
        - Readiness signal never observed
    """
    pass


class CaptureError(PixelcastError):
    """Exception raised when the in-page recorder cannot be wired up.

    Examples:
        - Canvas element not found
        - No supported WebM codec in MediaRecorder
        - Recorder could not connect back to the relay
    """
    pass


class RelayError(PixelcastError):
    """Base exception for video relay failures."""
    pass


class BindError(RelayError):
    """Exception raised when the relay listener cannot bind its port."""
    pass


class RelayTimeoutError(RelayError):
    """Exception raised when no producer connects within the armed window."""
    pass


class TranscoderError(PixelcastError):
    """Base exception for transcoder process failures."""
    pass


class SpawnError(TranscoderError):
    """Exception raised when the transcoder process cannot be started."""
    pass


class TranscoderCrashError(TranscoderError):
    """Exception raised on a fatal diagnostic or an unexpected process exit.

    Attributes:
        exit_code: Process exit code, if the process has exited
    """

    def __init__(self, message: str, exit_code=None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class StateTransitionError(PixelcastError):
    """Exception raised for an illegal session state transition."""
    pass


class RestartsExhaustedError(PixelcastError):
    """Exception raised when the restart bound has been reached."""
    pass
