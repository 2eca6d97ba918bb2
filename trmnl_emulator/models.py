"""Data models for the TRMNL device emulator.

Plain frozen dataclasses describe the values the engine threads through a
poll cycle. Pydantic models describe the JSON the content service returns,
so malformed bodies are rejected at the edge of the client.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from PIL import Image
from pydantic import BaseModel, ConfigDict

SUPPORTED_DEPTHS = (1, 2, 4, 8)


@dataclass(frozen=True)
class DisplaySpec:
    """Target geometry and colour depth for the image pipeline.

    Attributes:
        width: Display width in pixels
        height: Display height in pixels
        depth: Bits per pixel (1 = monochrome, 2/4/8 = grayscale)
        pad_undersized: Center images smaller than the display on white
            instead of rejecting them
    """

    width: int
    height: int
    depth: int = 1
    pad_undersized: bool = False


@dataclass(frozen=True)
class DeviceIdentity:
    """Who the emulated device is and what its panel looks like.

    Created once at boot from configuration and replaced, never mutated,
    when registration assigns a device ID or API key.
    """

    api_key: str | None
    device_id: str | None = None
    mac_address: str = "00:00:00:00:00:00"
    firmware_version: str = "1.0.0"
    display_width: int = 800
    display_height: int = 480
    color_depth: int = 1

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key) or bool(self.device_id)

    @property
    def is_registered(self) -> bool:
        return bool(self.device_id)

    def display_spec(self, pad_undersized: bool = False) -> DisplaySpec:
        return DisplaySpec(
            width=self.display_width,
            height=self.display_height,
            depth=self.color_depth,
            pad_undersized=pad_undersized,
        )

    def __repr__(self) -> str:
        # Never leak the API key into logs
        masked = f"{self.api_key[:4]}..." if self.api_key else None
        return (
            f"DeviceIdentity(api_key={masked!r}, device_id={self.device_id!r}, "
            f"mac_address={self.mac_address!r}, firmware_version={self.firmware_version!r}, "
            f"display={self.display_width}x{self.display_height}x{self.color_depth})"
        )


class PollStatus(str, Enum):
    """Outcome of a successful poll."""

    OK = "ok"
    NO_UPDATE = "no_update"


@dataclass(frozen=True)
class PollResult:
    """Typed result of one poll of the display endpoint."""

    status: PollStatus
    refresh_interval_seconds: int
    image_url: str | None = None
    filename: str | None = None
    checksum: str | None = None
    reset_firmware: bool = False
    update_firmware: bool = False
    firmware_url: str | None = None
    special_function: str | None = None

    @property
    def has_content(self) -> bool:
        return self.status is PollStatus.OK and bool(self.image_url)


@dataclass(frozen=True)
class Registration:
    """Values assigned to the device by the setup endpoint."""

    device_id: str
    api_key: str | None = None
    image_url: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class RawImagePayload:
    """Image bytes exactly as fetched, with the declared content type."""

    data: bytes
    content_type: str = "application/octet-stream"
    source_url: str | None = None

    def __repr__(self) -> str:
        return (
            f"RawImagePayload({len(self.data)} bytes, content_type={self.content_type!r}, "
            f"source_url={self.source_url!r})"
        )


def compute_checksum(width: int, height: int, depth: int, pixels: bytes) -> str:
    """Hash a packed pixel buffer together with its geometry."""
    digest = hashlib.sha256()
    digest.update(f"{width}x{height}x{depth}:".encode("ascii"))
    digest.update(pixels)
    return digest.hexdigest()


@dataclass(frozen=True)
class Frame:
    """One decoded, depth-normalized image ready for the display surface.

    Pixels are packed row-major, most significant bits first, and every row
    is padded to a whole byte. Level 0 is black and the highest level is
    white, which matches Pillow's packing of mode "1" images.
    """

    width: int
    height: int
    depth: int
    pixels: bytes = field(repr=False)
    checksum: str = ""

    @classmethod
    def from_packed(cls, width: int, height: int, depth: int, pixels: bytes) -> Frame:
        expected = ((width * depth + 7) // 8) * height
        if len(pixels) != expected:
            raise ValueError(
                f"Pixel buffer is {len(pixels)} bytes, expected {expected} "
                f"for {width}x{height}x{depth}"
            )
        return cls(
            width=width,
            height=height,
            depth=depth,
            pixels=pixels,
            checksum=compute_checksum(width, height, depth, pixels),
        )

    @property
    def stride(self) -> int:
        """Bytes per packed row."""
        return (self.width * self.depth + 7) // 8

    @property
    def max_level(self) -> int:
        return (1 << self.depth) - 1

    def matches(self, spec: DisplaySpec) -> bool:
        return (self.width, self.height, self.depth) == (spec.width, spec.height, spec.depth)

    def pixel(self, x: int, y: int) -> int:
        """Return the gray level at (x, y)."""
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} frame")
        bit_offset = x * self.depth
        byte = self.pixels[y * self.stride + bit_offset // 8]
        shift = 8 - self.depth - (bit_offset % 8)
        return (byte >> shift) & self.max_level

    def to_image(self) -> Image.Image:
        """Expand the packed buffer into an 8-bit grayscale PIL image."""
        size = (self.width, self.height)
        if self.depth == 8:
            return Image.frombytes("L", size, self.pixels)
        if self.depth == 1:
            return Image.frombytes("1", size, self.pixels).convert("L")
        # Pillow spreads 2 and 4 bit levels evenly over 0..255
        return Image.frombytes("L", size, self.pixels, "raw", f"L;{self.depth}")


@dataclass(frozen=True)
class LogEntry:
    """A device log line forwarded to the content service."""

    level: str
    message: str
    device_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class DisplayResponse(BaseModel):
    """JSON body returned by the display endpoint.

    The service answers HTTP 200 for most outcomes and reports the real
    result in ``status``; 0 means success.
    """

    status: Union[int, str] = 0
    error: Optional[str] = None
    image_url: Optional[str] = None
    filename: Optional[str] = None
    checksum: Optional[str] = None
    refresh_rate: Optional[int] = None
    reset_firmware: bool = False
    update_firmware: Optional[bool] = None
    firmware_url: Optional[str] = None
    special_function: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class SetupResponse(BaseModel):
    """JSON body returned by the setup (registration) endpoint."""

    status: Union[int, str] = 200
    api_key: Optional[str] = None
    friendly_id: Optional[str] = None
    image_url: Optional[str] = None
    filename: Optional[str] = None
    message: Optional[str] = None

    model_config = ConfigDict(extra="ignore")
