"""Render sinks: where finished frames are painted.

The engine calls ``paint`` synchronously and treats a ``RenderError`` as a
retryable failure. Sinks never call back into the engine.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from .exceptions import RenderError
from .models import Frame

logger = logging.getLogger(__name__)


@runtime_checkable
class RenderSink(Protocol):
    """Protocol defining the interface for display surfaces."""

    def paint(self, frame: Frame) -> None:
        """Show a frame on the display surface.

        Args:
            frame: Frame matching the display geometry

        Raises:
            RenderError: If the frame could not be shown
        """
        ...

    def close(self) -> None:
        """Release any resources held by the sink."""
        ...


class MemoryRenderSink:
    """Sink that keeps frames in memory.

    Used for headless runs and as a test double: it records every painted
    frame so callers can inspect what the device would have shown.
    """

    def __init__(self, width: int = 800, height: int = 480) -> None:
        self.width = width
        self.height = height
        self.frames: list[Frame] = []
        self.closed = False

    @property
    def paint_count(self) -> int:
        return len(self.frames)

    @property
    def last_frame(self) -> Optional[Frame]:
        return self.frames[-1] if self.frames else None

    def paint(self, frame: Frame) -> None:
        if self.closed:
            raise RenderError("Sink is closed")
        if (frame.width, frame.height) != (self.width, self.height):
            raise RenderError(
                f"Frame {frame.width}x{frame.height} does not fit "
                f"{self.width}x{self.height} surface"
            )
        self.frames.append(frame)
        logger.debug("MemoryRenderSink stored frame %s", frame.checksum[:12])

    def close(self) -> None:
        self.closed = True


class ImageFileSink:
    """Sink that writes every painted frame to disk as PNG.

    Files are numbered (``frame_0001.png``) and ``latest.png`` always holds
    the frame currently "on screen".
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)
        self.frame_count = 0
        self.output_dir.mkdir(parents=True, exist_ok=True)
        logger.info("ImageFileSink writing frames to %s", self.output_dir)

    def paint(self, frame: Frame) -> None:
        self.frame_count += 1
        image = frame.to_image()
        path = self.output_dir / f"frame_{self.frame_count:04d}.png"
        try:
            image.save(path, format="PNG")
            image.save(self.output_dir / "latest.png", format="PNG")
        except OSError as e:
            raise RenderError(f"Failed to write frame to {path}: {e}") from e
        logger.info("Wrote frame %s", path)

    def close(self) -> None:
        logger.debug("ImageFileSink closed after %d frames", self.frame_count)


class NullRenderSink:
    """Sink that discards frames, for running the engine without a display."""

    def paint(self, frame: Frame) -> None:
        logger.info("Frame %s ready (no display attached)", frame.checksum[:12])

    def close(self) -> None:
        pass
