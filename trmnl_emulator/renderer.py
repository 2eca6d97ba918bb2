"""Pygame-based window sink for the emulated e-ink panel.

This module paints frames into a desktop window so the emulator can be
watched without hardware. Window event handling stays outside the engine:
the application pumps events and asks the engine to shut down on close.
"""

from __future__ import annotations

import logging
import os
import platform

import pygame
from PIL import Image, ImageOps

from .exceptions import RenderError
from .models import Frame

logger = logging.getLogger(__name__)

# Ink and paper colours for each theme
THEMES: dict[str, tuple[tuple[int, int, int], tuple[int, int, int]]] = {
    "white": ((0, 0, 0), (255, 255, 255)),
    "inverted": ((255, 255, 255), (0, 0, 0)),
    "paper": ((34, 34, 34), (232, 228, 216)),
}


def apply_theme(image: Image.Image, theme: str) -> Image.Image:
    """Colour a grayscale frame image with the theme's ink and paper.

    Args:
        image: Grayscale ("L") image where 0 is ink and 255 is paper
        theme: One of THEMES

    Returns:
        RGB image
    """
    try:
        ink, paper = THEMES[theme]
    except KeyError:
        raise ValueError(f"Unknown theme: {theme}") from None
    return ImageOps.colorize(image.convert("L"), black=ink, white=paper)


class PygameRenderSink:
    """Render sink that shows frames in a pygame window.

    The window is ``scale`` times the panel size; every panel pixel becomes
    a ``scale`` x ``scale`` block so dithering stays visible.
    """

    def __init__(
        self,
        width: int,
        height: int,
        scale: int = 1,
        theme: str = "white",
        title: str = "TRMNL",
    ):
        """Initialize pygame window.

        Args:
            width: Panel width in pixels
            height: Panel height in pixels
            scale: Integer magnification of the window
            theme: Colour theme name (see THEMES)
            title: Window caption
        """
        if theme not in THEMES:
            raise ValueError(f"Unknown theme: {theme}")

        self.width = width
        self.height = height
        self.scale = max(1, scale)
        self.theme = theme
        self.title = title
        self.frames_painted = 0

        self._init_pygame()

        logger.info(
            "Window sink initialized: %dx%d panel, scale=%d, theme=%s",
            width,
            height,
            self.scale,
            theme,
        )

    def _init_pygame(self) -> None:
        """Initialize pygame and open the window."""
        if not os.environ.get("SDL_VIDEODRIVER") and platform.system() == "Linux":
            if not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")):
                # No desktop session: keep running, frames are just invisible
                logger.warning("No display server found, using SDL dummy video driver")
                os.environ["SDL_VIDEODRIVER"] = "dummy"

        try:
            pygame.display.init()
            self.screen = pygame.display.set_mode(
                (self.width * self.scale, self.height * self.scale)
            )
        except pygame.error as e:
            raise RenderError(f"Failed to open display window: {e}") from e

        pygame.display.set_caption(self.title)
        self.screen.fill(THEMES[self.theme][1])
        pygame.display.flip()

    def paint(self, frame: Frame) -> None:
        """Blit a frame into the window.

        Raises:
            RenderError: If the frame does not fit or pygame fails
        """
        if (frame.width, frame.height) != (self.width, self.height):
            raise RenderError(
                f"Frame {frame.width}x{frame.height} does not fit "
                f"{self.width}x{self.height} window"
            )

        image = apply_theme(frame.to_image(), self.theme)
        if self.scale != 1:
            image = image.resize(
                (self.width * self.scale, self.height * self.scale), Image.Resampling.NEAREST
            )

        try:
            surface = pygame.image.frombuffer(image.tobytes(), image.size, "RGB")
            self.screen.blit(surface, (0, 0))
            pygame.display.flip()
        except pygame.error as e:
            raise RenderError(f"Failed to paint frame: {e}") from e

        self.frames_painted += 1
        pygame.display.set_caption(f"{self.title} - {frame.checksum[:8]}")
        logger.debug("Painted frame %s", frame.checksum[:12])

    def pump_events(self) -> bool:
        """Process pending window events.

        Returns:
            True if the user asked to close the window
        """
        quit_requested = False
        for event in pygame.event.get():
            if event.type == pygame.QUIT:
                logger.info("Received QUIT event")
                quit_requested = True
            elif event.type == pygame.KEYDOWN and event.key in (pygame.K_ESCAPE, pygame.K_q):
                logger.info("Received quit key")
                quit_requested = True
        return quit_requested

    def close(self) -> None:
        """Clean up pygame resources."""
        pygame.quit()
        logger.debug("Window sink closed")
