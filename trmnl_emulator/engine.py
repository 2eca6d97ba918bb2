"""Device emulation engine.

``DeviceEngine`` reproduces the firmware lifecycle as a strictly sequential
state machine:

    BOOTING -> REGISTERING -> IDLE <-> POLLING <-> RENDERING -> SLEEPING -> IDLE

with an ERROR phase reachable from registration, polling and rendering, and
a terminal SHUTTING_DOWN phase reachable from anywhere once shutdown is
requested. Each call to ``step`` performs exactly one transition on the
``DeviceState`` it is given; ``run`` loops until the terminal phase.

The loop only suspends while waiting for the next wake time and while a
single network request is in flight. Both waits end as soon as
``request_shutdown`` is called.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import replace
from typing import Any, Optional, TypeVar

from .api_client import ContentClient
from .config import DeviceConfig
from .exceptions import (
    ClientError,
    ConfigurationError,
    DimensionMismatchError,
    EmulatorError,
    ImageError,
    RenderError,
    UnauthorizedError,
)
from .image_pipeline import decode_and_normalize
from .models import DeviceIdentity, DisplaySpec, Frame, LogEntry, PollResult, RawImagePayload
from .render_sink import RenderSink
from .state import BackoffPolicy, DevicePhase, DeviceState, ErrorKind

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]
Decoder = Callable[[RawImagePayload, DisplaySpec], Frame]

T = TypeVar("T")


class _ShutdownRequested(Exception):
    """Raised inside a transition when shutdown interrupts a network call."""


class DeviceEngine:
    """Drives the emulated device through its lifecycle.

    The engine is the only component that interprets errors: configuration
    and authorization failures halt the device, everything else is retried
    with backoff or on the next cycle.
    """

    def __init__(
        self,
        config: DeviceConfig,
        client: ContentClient,
        sink: RenderSink,
        *,
        decoder: Decoder = decode_and_normalize,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Optional[Sleeper] = None,
        on_registered: Optional[Callable[[DeviceIdentity], None]] = None,
    ):
        """Initialize the engine.

        Args:
            config: Configuration instance
            client: Content service client
            sink: Surface that receives finished frames
            decoder: Image pipeline entry point
            clock: Monotonic clock used for wake scheduling
            sleeper: Coroutine used to wait in IDLE (defaults to an
                interruptible asyncio sleep)
            on_registered: Called with the new identity after registration,
                so the configuration layer can persist it
        """
        self.config = config
        self.client = client
        self.sink = sink
        self.decoder = decoder
        self.clock = clock
        self.sleeper = sleeper or self._interruptible_sleep
        self.on_registered = on_registered
        self.backoff = BackoffPolicy(
            base_delay=config.error_retry_interval,
            factor=config.backoff_factor,
            max_delay=config.max_backoff,
        )
        self._shutdown = asyncio.Event()

        self._handlers: dict[DevicePhase, Callable[[DeviceState], Awaitable[None]]] = {
            DevicePhase.BOOTING: self._boot,
            DevicePhase.REGISTERING: self._register,
            DevicePhase.IDLE: self._idle,
            DevicePhase.POLLING: self._poll,
            DevicePhase.RENDERING: self._render,
            DevicePhase.SLEEPING: self._sleep,
            DevicePhase.ERROR: self._handle_error,
            DevicePhase.SHUTTING_DOWN: self._shutting_down,
        }

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        """Ask the engine to stop; safe to call from signal handlers."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
        self._shutdown.set()

    async def run(self, state: Optional[DeviceState] = None) -> DeviceState:
        """Run the lifecycle until the device shuts down.

        Args:
            state: State to resume from (a fresh BOOTING state by default)

        Returns:
            The final state; ``state.fatal_reason`` is set if the device halted
        """
        state = state or DeviceState()
        logger.info("Device engine starting in phase %s", state.phase.value)

        try:
            while not state.is_terminal:
                if self.shutdown_requested:
                    self._enter_shutdown(state)
                    break
                await self.step(state)
        except asyncio.CancelledError:
            self._enter_shutdown(state)
            raise

        logger.info("Device engine stopped: %s", state.summary())
        return state

    async def step(self, state: DeviceState) -> DeviceState:
        """Perform exactly one transition."""
        previous = state.phase
        try:
            await self._handlers[state.phase](state)
        except _ShutdownRequested:
            self._enter_shutdown(state)

        if state.phase is not previous:
            logger.debug("Transition %s -> %s", previous.value, state.phase.value)
        return state

    async def _interruptible_sleep(self, duration: float) -> None:
        """Sleep for ``duration`` seconds or until shutdown is requested."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._shutdown.wait(), timeout=duration)

    async def _call(self, coro: Coroutine[Any, Any, T]) -> T:
        """Await one network call, abandoning it if shutdown is requested."""
        if self.shutdown_requested:
            coro.close()
            raise _ShutdownRequested

        request = asyncio.ensure_future(coro)
        shutdown = asyncio.ensure_future(self._shutdown.wait())
        try:
            await asyncio.wait({request, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown.cancel()
            if not request.done():
                request.cancel()

        if request.cancelled() or not request.done():
            with contextlib.suppress(asyncio.CancelledError):
                await request
            raise _ShutdownRequested
        return request.result()

    # Transitions

    async def _boot(self, state: DeviceState) -> None:
        try:
            self.config.validate()
            identity = self.config.build_identity()
        except ConfigurationError as e:
            self._fail(state, ErrorKind.CONFIGURATION, e)
            return

        state.identity = identity
        state.next_wake_at = self.clock()
        logger.info("Booted %r", identity)

        if identity.is_registered:
            state.phase = DevicePhase.IDLE
        else:
            state.phase = DevicePhase.REGISTERING

    async def _register(self, state: DeviceState) -> None:
        identity = self._identity(state)
        logger.info("Registering device %s", identity.mac_address)

        try:
            registration = await self._call(self.client.register(identity))
        except UnauthorizedError as e:
            self._fail(state, ErrorKind.UNAUTHORIZED, e)
            return
        except ConfigurationError as e:
            self._fail(state, ErrorKind.CONFIGURATION, e)
            return
        except ClientError as e:
            await self._retry_later(state, "Registration", e)
            return

        identity = replace(
            identity,
            device_id=registration.device_id,
            api_key=registration.api_key or identity.api_key,
        )
        state.identity = identity
        state.consecutive_failures = 0
        state.last_error = None

        if self.on_registered is not None:
            try:
                self.on_registered(identity)
            except OSError as e:
                logger.warning("Could not persist device identity: %s", e)

        state.next_wake_at = self.clock()
        state.phase = DevicePhase.IDLE

    async def _idle(self, state: DeviceState) -> None:
        delay = max(0.0, state.next_wake_at - self.clock())
        if delay > 0:
            logger.debug("Idle for %.1fs", delay)
            await self.sleeper(delay)

        if self.shutdown_requested:
            raise _ShutdownRequested

        if self._identity(state).is_registered:
            state.phase = DevicePhase.POLLING
        else:
            state.phase = DevicePhase.REGISTERING

    async def _poll(self, state: DeviceState) -> None:
        identity = self._identity(state)
        state.cycles += 1

        try:
            result = await self._call(self.client.poll(identity, self._current_interval(state)))
        except UnauthorizedError as e:
            self._fail(state, ErrorKind.UNAUTHORIZED, e)
            return
        except ConfigurationError as e:
            self._fail(state, ErrorKind.CONFIGURATION, e)
            return
        except ClientError as e:
            await self._retry_later(state, "Poll", e)
            return

        state.last_error = None
        state.last_poll = result
        self._log_firmware_hints(result)

        if not result.has_content:
            logger.debug("No update, next poll in %ds", result.refresh_interval_seconds)
            self._cycle_succeeded(state)
            self._schedule_sleep(state, result.refresh_interval_seconds)
            return

        if (
            self.config.skip_unchanged_filename
            and result.filename
            and result.filename == state.last_filename
            and state.frame is not None
        ):
            logger.info("Content %s already shown, skipping download", result.filename)
            state.skipped_renders += 1
            self._cycle_succeeded(state)
            self._schedule_sleep(state, result.refresh_interval_seconds)
            return

        state.phase = DevicePhase.RENDERING

    async def _render(self, state: DeviceState) -> None:
        identity = self._identity(state)
        poll = state.last_poll
        if poll is None or not poll.image_url:
            # RENDERING is only entered from a poll with content
            state.phase = DevicePhase.IDLE
            return

        spec = identity.display_spec(self.config.pad_undersized)
        try:
            payload = await self._call(self.client.fetch_image(identity, poll.image_url))
        except UnauthorizedError as e:
            self._fail(state, ErrorKind.UNAUTHORIZED, e)
            return
        except ClientError as e:
            await self._retry_later(state, "Image fetch", e)
            return

        try:
            frame = self.decoder(payload, spec)
            if not frame.matches(spec):
                raise DimensionMismatchError(
                    f"Decoded frame is {frame.width}x{frame.height}x{frame.depth}, "
                    f"display is {spec.width}x{spec.height}x{spec.depth}"
                )
        except ImageError as e:
            await self._skip_cycle(state, "Image decode", e)
            return

        if state.frame is not None and frame.checksum == state.frame.checksum:
            logger.info("Frame unchanged (%s), skipping paint", frame.checksum[:12])
            state.skipped_renders += 1
        else:
            try:
                self.sink.paint(frame)
            except RenderError as e:
                await self._skip_cycle(state, "Paint", e)
                return
            state.frame = frame
            state.renders += 1
            logger.info(
                "Painted %s (%s), next refresh in %ds",
                poll.filename or "frame",
                frame.checksum[:12],
                poll.refresh_interval_seconds,
            )

        state.last_filename = poll.filename
        self._cycle_succeeded(state)
        self._schedule_sleep(state, poll.refresh_interval_seconds)

    async def _sleep(self, state: DeviceState) -> None:
        state.next_wake_at = self.clock() + state.sleep_interval
        logger.debug("Sleeping, next wake in %.1fs", state.sleep_interval)
        state.phase = DevicePhase.IDLE

    async def _handle_error(self, state: DeviceState) -> None:
        kind = state.error_kind or ErrorKind.RETRYABLE

        if kind.is_fatal:
            state.fatal_reason = f"{kind.value}: {state.last_error}"
            logger.error("Fatal %s error, halting device: %s", kind.value, state.last_error)
            state.phase = DevicePhase.SHUTTING_DOWN
            return

        delay = self.backoff.delay_for(state.consecutive_failures)
        state.next_wake_at = self.clock() + delay
        state.error_kind = None
        logger.warning(
            "Retrying in %.1fs after %d consecutive failure(s)",
            delay,
            state.consecutive_failures,
        )
        state.phase = DevicePhase.IDLE

    async def _shutting_down(self, state: DeviceState) -> None:
        pass

    # Helpers

    @staticmethod
    def _identity(state: DeviceState) -> DeviceIdentity:
        if state.identity is None:
            raise RuntimeError(f"Device identity missing in phase {state.phase.value}")
        return state.identity

    def _current_interval(self, state: DeviceState) -> int:
        if state.last_poll is not None:
            return state.last_poll.refresh_interval_seconds
        return self.config.default_refresh_interval

    def _cycle_succeeded(self, state: DeviceState) -> None:
        if state.consecutive_failures:
            logger.info("Recovered after %d failure(s)", state.consecutive_failures)
        state.consecutive_failures = 0

    def _schedule_sleep(self, state: DeviceState, interval: float) -> None:
        state.sleep_interval = interval
        state.phase = DevicePhase.SLEEPING

    def _fail(self, state: DeviceState, kind: ErrorKind, error: EmulatorError) -> None:
        logger.error("%s error: %s", kind.value.capitalize(), error)
        state.error_kind = kind
        state.last_error = str(error)
        state.phase = DevicePhase.ERROR

    async def _retry_later(self, state: DeviceState, action: str, error: ClientError) -> None:
        """Enter the retryable error phase; backoff is applied on the way out."""
        state.consecutive_failures += 1
        state.error_kind = ErrorKind.RETRYABLE
        state.last_error = str(error)
        logger.warning(
            "%s failed (%s, failure %d): %s",
            action,
            type(error).__name__,
            state.consecutive_failures,
            error,
        )
        await self._report(state, "warn", f"{action} failed: {error}")
        state.phase = DevicePhase.ERROR

    async def _skip_cycle(self, state: DeviceState, action: str, error: EmulatorError) -> None:
        """Keep the current frame and try again after the error retry interval."""
        state.last_error = str(error)
        logger.warning(
            "%s failed (%s), keeping previous frame: %s", action, type(error).__name__, error
        )
        await self._report(state, "warn", f"{action} failed: {error}")
        self._schedule_sleep(state, self.config.error_retry_interval)

    async def _report(self, state: DeviceState, level: str, message: str) -> None:
        """Forward an error to the service log endpoint when enabled."""
        identity = state.identity
        if not self.config.report_errors or identity is None or not identity.has_credential:
            return

        entry = LogEntry(level=level, message=message, device_id=identity.device_id)
        try:
            await self._call(self.client.report_log(identity, entry))
        except ClientError as e:
            logger.warning("Could not report log entry: %s", e)

    def _log_firmware_hints(self, result: PollResult) -> None:
        if result.update_firmware:
            logger.info(
                "Service offered firmware %s (updates are not emulated)", result.firmware_url
            )
        if result.reset_firmware:
            logger.warning("Service requested a firmware reset (not emulated)")
        if result.special_function:
            logger.info("Service requested special function %r", result.special_function)

    def _enter_shutdown(self, state: DeviceState) -> None:
        if state.phase is not DevicePhase.SHUTTING_DOWN:
            logger.info("Shutting down from phase %s", state.phase.value)
            state.phase = DevicePhase.SHUTTING_DOWN
