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

"""Recovery supervisor for the Pixelcast pipeline.

The RecoveryManager is a finite-state supervisor over whole pipeline
attempts:

    INIT -> BROWSER_READY -> CAPTURE_ARMED -> STREAMING
      any state -> ERROR -> RESTARTING -> INIT (after backoff)
                                       -> STOPPED (restart bound reached)
      any state -> STOPPED (explicit stop request)

Components never recover locally. They report fatal errors through
``report_fatal``; the manager tears the attempt down and decides whether to
build a new one. Reaching STREAMING resets the restart policy, so only a
stable run clears accumulated backoff.
"""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from pixelcast.config import RestartPolicy
from pixelcast.core.session import SessionState
from pixelcast.exceptions import ConfigurationError, RestartsExhaustedError, StateTransitionError
from pixelcast.utils.logger import logger

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.INIT: {SessionState.BROWSER_READY, SessionState.ERROR, SessionState.STOPPED},
    SessionState.BROWSER_READY: {SessionState.CAPTURE_ARMED, SessionState.ERROR, SessionState.STOPPED},
    SessionState.CAPTURE_ARMED: {SessionState.STREAMING, SessionState.ERROR, SessionState.STOPPED},
    SessionState.STREAMING: {SessionState.ERROR, SessionState.STOPPED},
    SessionState.ERROR: {SessionState.RESTARTING, SessionState.STOPPED},
    SessionState.RESTARTING: {SessionState.INIT, SessionState.STOPPED},
    SessionState.STOPPED: set(),
}


class PipelineSession(Protocol):
    """What the manager needs from one pipeline attempt."""

    async def start(self, on_state: Callable[[SessionState], None]) -> None: ...

    async def teardown(self) -> None: ...

    def status(self) -> Dict[str, Any]: ...


SessionFactory = Callable[[Callable[[Exception], None], int], PipelineSession]
Sleep = Callable[[float], Awaitable[Any]]


class RecoveryManager:
    """Drives pipeline attempts and restarts them with bounded backoff.

    Args:
        session_factory: Builds a fresh session given the fatal callback and
            the attempt number
        policy: Restart bounds and backoff parameters
        status_interval: Seconds between status log lines while streaming
        sleep: Awaitable sleep used for backoff (injectable for tests)

    Example:
        >>> manager = RecoveryManager(
        ...     lambda on_fatal, attempt: Session(config, on_fatal, attempt),
        ...     config.restart_policy,
        ... )
        >>> manager.install_signal_handlers(asyncio.get_running_loop())
        >>> exit_code = await manager.run()
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        policy: Optional[RestartPolicy] = None,
        status_interval: float = 60.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.policy = policy or RestartPolicy()
        self.status_interval = status_interval
        self._sleep = sleep

        self._state = SessionState.INIT
        self.history: List[SessionState] = [SessionState.INIT]
        self._session: Optional[PipelineSession] = None
        self._attempts = 0
        self._failure: Optional[BaseException] = None
        self._failure_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self.exit_code: Optional[int] = None
        self.exhausted: Optional[RestartsExhaustedError] = None
        self.delays_ms: List[float] = []
        self.streaming_since: Optional[float] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def restart_count(self) -> int:
        return self.policy.count

    @property
    def current_backoff_ms(self) -> float:
        return self.policy.delay_ms

    @property
    def session(self) -> Optional[PipelineSession]:
        return self._session

    @property
    def last_failure(self) -> Optional[BaseException]:
        return self._failure

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in TRANSITIONS[self._state]:
            raise StateTransitionError(
                f"Illegal transition {self._state.value} -> {new_state.value}"
            )
        logger.info(f"[RECOVERY] State: {self._state.value} -> {new_state.value}")
        self._state = new_state
        self.history.append(new_state)

    def _on_session_state(self, state: SessionState) -> None:
        self._transition(state)
        if state == SessionState.STREAMING:
            self.streaming_since = time.time()
            if self.policy.count:
                logger.info(f"[RECOVERY] Stable run reached, clearing {self.policy.count} restart(s)")
            self.policy.reset()

    def report_fatal(self, error: BaseException) -> None:
        """Route a component failure into the restart path.

        Safe to call from synchronous callbacks and from any state. Only the
        first failure of an attempt is acted on.
        """
        if self._state in (SessionState.STOPPED, SessionState.ERROR, SessionState.RESTARTING):
            logger.debug(f"[RECOVERY] Ignoring failure in {self._state.value}: {error}")
            return
        if self._failure_event.is_set():
            logger.debug(f"[RECOVERY] Additional failure ignored: {error}")
            return
        logger.error(f"[RECOVERY] Fatal error: {error}")
        self._failure = error
        self._failure_event.set()

    def request_stop(self) -> None:
        """Ask for a graceful shutdown without restart. Idempotent."""
        if self._stop_event.is_set():
            return
        logger.info("[RECOVERY] Stop requested")
        self._stop_event.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Stop on SIGINT/SIGTERM and send uncaught loop errors to report_fatal."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"[RECOVERY] Signal handler for {sig.name} not supported")
        loop.set_exception_handler(self._on_loop_exception)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"[RECOVERY] Received {sig.name} signal")
        self.request_stop()

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        if error is None:
            error = RuntimeError(context.get("message", "Unhandled event loop error"))
        logger.error(f"[RECOVERY] Uncaught error: {context.get('message', error)}")
        self.report_fatal(error)

    async def run(self) -> int:
        """Supervise attempts until stopped or exhausted.

        Returns:
            Process exit status: 0 on requested stop, 1 when the restart
            bound was reached, 2 on a configuration error
        """
        while True:
            self._failure = None
            self._failure_event.clear()
            self._attempts += 1
            session = self._session_factory(self.report_fatal, self._attempts)
            self._session = session

            outcome = await self._supervise(session)

            if outcome == "stop":
                await self._teardown(session)
                return self._finish(EXIT_OK)

            self._transition(SessionState.ERROR)
            await self._teardown(session)

            if isinstance(self._failure, ConfigurationError):
                logger.error("[RECOVERY] Configuration error, not restarting")
                return self._finish(EXIT_CONFIG_ERROR)
            if self._stop_event.is_set():
                return self._finish(EXIT_OK)

            self._transition(SessionState.RESTARTING)
            if self.policy.exhausted:
                self.exhausted = RestartsExhaustedError(
                    f"Maximum restart attempts ({self.policy.max_count}) reached, "
                    f"last failure: {self._failure}"
                )
                self.exhausted.__cause__ = self._failure
                logger.error(f"[RECOVERY] {self.exhausted}. Exiting.")
                return self._finish(EXIT_FAILURE)

            delay_ms = self.policy.next_delay_ms()
            self.delays_ms.append(delay_ms)
            logger.info(
                f"[RECOVERY] Attempting restart {self.policy.count}/{self.policy.max_count} "
                f"in {delay_ms:.0f}ms..."
            )
            if await self._backoff(delay_ms / 1000.0):
                return self._finish(EXIT_OK)
            self._transition(SessionState.INIT)

    async def _supervise(self, session: PipelineSession) -> str:
        """Run one attempt; return "stop" or "failure"."""
        startup = asyncio.create_task(session.start(self._on_session_state))
        stop_wait = asyncio.create_task(self._stop_event.wait())
        fail_wait = asyncio.create_task(self._failure_event.wait())
        status_task: Optional[asyncio.Task] = None
        try:
            done, _ = await asyncio.wait(
                {startup, stop_wait, fail_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if stop_wait in done:
                return "stop"
            if fail_wait in done:
                return "failure"

            error = startup.exception()
            if error is not None:
                self.report_fatal(error)
                return "stop" if self._stop_event.is_set() else "failure"

            status_task = asyncio.create_task(self._status_loop(session))
            done, _ = await asyncio.wait({stop_wait, fail_wait}, return_when=asyncio.FIRST_COMPLETED)
            return "stop" if stop_wait in done else "failure"
        finally:
            for task in (startup, stop_wait, fail_wait, status_task):
                if task is not None and not task.done():
                    task.cancel()
            for task in (startup, stop_wait, fail_wait, status_task):
                if task is None:
                    continue
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    # Startup errors are already routed through report_fatal.
                    pass

    async def _status_loop(self, session: PipelineSession) -> None:
        while True:
            await asyncio.sleep(self.status_interval)
            status = session.status()
            relay = status.get("relay", {})
            if relay.get("producer_connected", True):
                logger.info(
                    f"[RECOVERY] Stream active - relay connected, "
                    f"{relay.get('chunks', 0)} chunks / {relay.get('bytes', 0)} bytes relayed"
                )
            else:
                logger.warning("[RECOVERY] Relay disconnected - waiting for reconnection...")

    async def _teardown(self, session: PipelineSession) -> None:
        try:
            await session.teardown()
        except Exception as e:
            logger.error(f"[RECOVERY] Teardown error: {e}")
        self.streaming_since = None

    async def _backoff(self, seconds: float) -> bool:
        """Sleep before the next attempt. Returns True if a stop cut it short."""
        sleeper = asyncio.create_task(self._sleep(seconds))
        stop_wait = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({sleeper, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            return self._stop_event.is_set()
        finally:
            for task in (sleeper, stop_wait):
                if not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

    def _finish(self, code: int) -> int:
        self._transition(SessionState.STOPPED)
        self.exit_code = code
        logger.info(f"[RECOVERY] Stopped (exit code {code})")
        return code

    def to_dict(self) -> Dict[str, Any]:
        """Supervisor state for status output."""
        return {
            "state": self._state.value,
            "attempts": self._attempts,
            "restart_policy": self.policy.to_dict(),
            "streaming_since": self.streaming_since,
            "last_failure": str(self._failure) if self._failure else None,
            "exhausted": self.exhausted is not None,
        }
