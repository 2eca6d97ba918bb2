"""Shared fixtures for the TRMNL emulator test suite."""

import asyncio
import io
import os
from collections.abc import Iterator
from typing import Any, Callable, Optional

import pytest
from PIL import Image

from trmnl_emulator.config import DeviceConfig
from trmnl_emulator.models import (
    DeviceIdentity,
    LogEntry,
    PollResult,
    PollStatus,
    RawImagePayload,
    Registration,
)
from trmnl_emulator.render_sink import MemoryRenderSink


def make_image_bytes(
    width: int = 800,
    height: int = 480,
    fmt: str = "PNG",
    mode: str = "L",
    color: Any = 255,
    draw: Optional[Callable[[Image.Image], None]] = None,
) -> bytes:
    """Encode a solid (optionally decorated) image with Pillow."""
    image = Image.new(mode, (width, height), color)
    if draw is not None:
        draw(image)
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def checkerboard(image: Image.Image) -> None:
    """Paint a coarse black/white checkerboard."""
    for y in range(0, image.height, 40):
        for x in range(0, image.width, 40):
            if (x // 40 + y // 40) % 2 == 0:
                image.paste(0, (x, y, x + 40, y + 40))


def png_payload(**kwargs: Any) -> RawImagePayload:
    return RawImagePayload(
        data=make_image_bytes(**kwargs),
        content_type="image/png",
        source_url="https://example.com/image.png",
    )


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleeper:
    """Sleeper that records requested delays and advances a fake clock."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, duration: float) -> None:
        self.delays.append(duration)
        self.clock.advance(duration)


class ScriptedClient:
    """Content client double that replays scripted outcomes.

    Each scripted entry is either a value to return or an exception to
    raise. ``max_in_flight`` records how many calls overlapped.
    """

    def __init__(
        self,
        polls: Optional[list[Any]] = None,
        images: Optional[list[Any]] = None,
        registrations: Optional[list[Any]] = None,
    ) -> None:
        self.polls = list(polls or [])
        self.images = list(images or [])
        self.registrations = list(registrations or [])
        self.logs: list[LogEntry] = []
        self.poll_calls = 0
        self.fetch_calls = 0
        self.register_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False
        self.on_exhausted: Optional[Callable[[], None]] = None

    async def _track(self, script: list[Any]) -> Any:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if not script:
                if self.on_exhausted is None:
                    raise AssertionError("Client script exhausted")
                # Stop the engine and hang like a stalled request
                self.on_exhausted()
                await asyncio.Event().wait()
            outcome = script.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    async def register(self, identity: DeviceIdentity) -> Registration:
        self.register_calls += 1
        return await self._track(self.registrations)

    async def poll(
        self, identity: DeviceIdentity, refresh_rate: Optional[int] = None
    ) -> PollResult:
        self.poll_calls += 1
        return await self._track(self.polls)

    async def fetch_image(self, identity: DeviceIdentity, url: str) -> RawImagePayload:
        self.fetch_calls += 1
        return await self._track(self.images)

    async def report_log(self, identity: DeviceIdentity, entry: LogEntry) -> None:
        self.logs.append(entry)

    async def close(self) -> None:
        self.closed = True


def ok_poll(
    refresh: int = 300,
    filename: Optional[str] = "screen.png",
    url: str = "https://example.com/a.png",
) -> PollResult:
    return PollResult(
        status=PollStatus.OK, refresh_interval_seconds=refresh, image_url=url, filename=filename
    )


def no_update_poll(refresh: int = 60) -> PollResult:
    return PollResult(status=PollStatus.NO_UPDATE, refresh_interval_seconds=refresh)


@pytest.fixture
def device_config(tmp_path) -> DeviceConfig:
    """Configuration for a registered headless device."""
    return DeviceConfig(
        api_key="test-api-key",
        device_id="ABC123",
        mac_address="AA:BB:CC:DD:EE:FF",
        firmware_version="1.5.2",
        base_url="https://trmnl.test",
        sink="none",
        output_dir=tmp_path / "frames",
        show_splash=False,
        state_file=None,
    )


@pytest.fixture
def identity(device_config: DeviceConfig) -> DeviceIdentity:
    return device_config.build_identity()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> RecordingSleeper:
    return RecordingSleeper(clock)


@pytest.fixture
def memory_sink() -> MemoryRenderSink:
    return MemoryRenderSink(800, 480)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[pytest.MonkeyPatch]:
    """Remove TRMNL_* variables for the duration of a test."""
    for key in list(os.environ):
        if key.startswith("TRMNL_"):
            monkeypatch.delenv(key)
    yield monkeypatch
    # Keys loaded from .env files bypass monkeypatch
    for key in list(os.environ):
        if key.startswith("TRMNL_"):
            del os.environ[key]
