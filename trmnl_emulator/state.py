"""Device lifecycle state for the emulation engine.

``DeviceState`` is the single mutable aggregate the engine threads through
its loop. It is created by the engine, passed by reference to each
transition and never shared with another task.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import DeviceIdentity, Frame, PollResult


class DevicePhase(str, Enum):
    """Lifecycle phases of the emulated firmware."""

    BOOTING = "booting"
    REGISTERING = "registering"
    IDLE = "idle"
    POLLING = "polling"
    RENDERING = "rendering"
    SLEEPING = "sleeping"
    ERROR = "error"
    SHUTTING_DOWN = "shutting_down"


class ErrorKind(str, Enum):
    """How an error phase is resolved."""

    CONFIGURATION = "configuration"
    UNAUTHORIZED = "unauthorized"
    RETRYABLE = "retryable"

    @property
    def is_fatal(self) -> bool:
        return self is not ErrorKind.RETRYABLE


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff between consecutive failed cycles.

    The n-th consecutive failure waits ``base_delay * factor ** (n - 1)``
    seconds, capped at ``max_delay``.
    """

    base_delay: float = 30.0
    factor: float = 2.0
    max_delay: float = 600.0

    def delay_for(self, failures: int) -> float:
        if failures <= 1:
            return min(self.base_delay, self.max_delay)
        # Stop growing once the cap is reached to avoid float overflow
        delay = self.base_delay
        for _ in range(failures - 1):
            delay *= self.factor
            if delay >= self.max_delay:
                return self.max_delay
        return delay


@dataclass
class DeviceState:
    """Everything the engine knows about the running device.

    Attributes:
        phase: Current lifecycle phase
        identity: Device identity, None until booted
        frame: Frame currently shown on the display
        next_wake_at: Clock time at which the device leaves IDLE
        sleep_interval: Seconds SLEEPING schedules before the next wake
        consecutive_failures: Retryable failures since the last good poll
        error_kind: Kind of the pending error when phase is ERROR
        last_error: Message of the most recent error
        last_poll: Most recent successful poll result, consumed by RENDERING
        last_filename: Filename of the content currently on screen
        fatal_reason: Why the device halted, None after a clean shutdown
    """

    phase: DevicePhase = DevicePhase.BOOTING
    identity: DeviceIdentity | None = None
    frame: Frame | None = None
    next_wake_at: float = 0.0
    sleep_interval: float = 0.0
    consecutive_failures: int = 0
    error_kind: ErrorKind | None = None
    last_error: str | None = None
    last_poll: PollResult | None = None
    last_filename: str | None = None
    fatal_reason: str | None = None

    # Counters for status reporting and tests
    cycles: int = 0
    renders: int = 0
    skipped_renders: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.phase is DevicePhase.SHUTTING_DOWN

    @property
    def is_fatal(self) -> bool:
        return self.fatal_reason is not None

    def summary(self) -> dict[str, object]:
        """Snapshot suitable for logging."""
        return {
            "phase": self.phase.value,
            "device_id": self.identity.device_id if self.identity else None,
            "frame": self.frame.checksum[:12] if self.frame else None,
            "consecutive_failures": self.consecutive_failures,
            "cycles": self.cycles,
            "renders": self.renders,
            "skipped_renders": self.skipped_renders,
            "last_error": self.last_error,
            "fatal_reason": self.fatal_reason,
        }
