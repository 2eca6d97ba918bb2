"""Built-in status screens (boot splash and error screen).

The firmware shows its own screens while it has nothing from the service;
these are drawn with Pillow and normalized through the image pipeline so
they match the display geometry and depth like any downloaded image.
"""

from __future__ import annotations

import logging
from typing import Sequence, Union

from PIL import Image, ImageDraw, ImageFont
from PIL.ImageFont import FreeTypeFont
from PIL.ImageFont import ImageFont as BuiltinFont

from .image_pipeline import normalize_image
from .models import DisplaySpec, Frame

logger = logging.getLogger(__name__)

LINE_SPACING = 12


def _load_font(size: int) -> Union[FreeTypeFont, BuiltinFont]:
    try:
        return ImageFont.load_default(size=size)
    except TypeError:
        # Pillow < 10.1 has no sized default font
        return ImageFont.load_default()


def render_text_screen(
    lines: Sequence[str],
    spec: DisplaySpec,
    title_size: int = 40,
    body_size: int = 20,
) -> Image.Image:
    """Render centered lines of text on a white canvas.

    The first line is drawn as a title in a larger font.

    Args:
        lines: Text lines, title first
        spec: Display geometry
        title_size: Font size of the first line
        body_size: Font size of the remaining lines

    Returns:
        Grayscale PIL Image of the display size
    """
    image = Image.new("L", (spec.width, spec.height), 255)
    draw = ImageDraw.Draw(image)

    fonts = [_load_font(title_size if index == 0 else body_size) for index in range(len(lines))]
    boxes = [draw.textbbox((0, 0), line, font=font) for line, font in zip(lines, fonts)]
    heights = [int(box[3] - box[1]) for box in boxes]
    total_height = sum(heights) + LINE_SPACING * max(0, len(lines) - 1)

    y = (spec.height - total_height) // 2
    for line, font, box, height in zip(lines, fonts, boxes, heights):
        width = int(box[2] - box[0])
        x = (spec.width - width) // 2
        draw.text((x - box[0], y - box[1]), line, font=font, fill=0)
        y += height + LINE_SPACING

    return image


def splash_frame(spec: DisplaySpec, firmware_version: str) -> Frame:
    """Frame shown while the emulated device boots."""
    image = render_text_screen(["TRMNL", f"Emulator - firmware {firmware_version}"], spec)
    return normalize_image(image, spec)


def error_frame(spec: DisplaySpec, message: str) -> Frame:
    """Frame shown when the device halts on a fatal error."""
    # One line on an 800px panel
    text = message if len(message) <= 60 else message[:57] + "..."
    image = render_text_screen(["Device halted", text], spec)
    logger.debug("Rendered error screen: %s", text)
    return normalize_image(image, spec)
