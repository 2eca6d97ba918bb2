"""Image pipeline: turn a fetched payload into a display-ready frame.

The pipeline is a pure function of (payload, target spec):

1. Detect the encoding from the payload's magic bytes
2. Decode to an 8-bit grayscale matrix with Pillow
3. Fit to the display (aspect-preserving scale-down, then center-crop)
4. Quantize to the target depth (Floyd-Steinberg for 1-bit)
5. Pack rows and checksum the buffer

Every step is deterministic, so identical bytes always produce a frame with
the same checksum and the engine can skip redundant paints.
"""

from __future__ import annotations

import io
import logging

from PIL import Image, UnidentifiedImageError

from .exceptions import DecodeFailureError, DimensionMismatchError, UnsupportedFormatError
from .models import SUPPORTED_DEPTHS, DisplaySpec, Frame, RawImagePayload

logger = logging.getLogger(__name__)

# Magic bytes of the encodings the firmware understands
FORMAT_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"BM", "BMP"),
    (b"\x89PNG\r\n\x1a\n", "PNG"),
    (b"\xff\xd8\xff", "JPEG"),
    (b"GIF87a", "GIF"),
    (b"GIF89a", "GIF"),
)

SUPPORTED_CONTENT_TYPES = frozenset(
    {
        "image/bmp",
        "image/x-bmp",
        "image/x-ms-bmp",
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/gif",
    }
)

# Content types that say nothing about the encoding
GENERIC_CONTENT_TYPES = frozenset({"", "application/octet-stream", "binary/octet-stream"})

WHITE = 255


def _base_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def detect_format(payload: RawImagePayload) -> str:
    """Detect the image encoding of a payload.

    Args:
        payload: Raw payload as fetched

    Returns:
        Pillow format name ("BMP", "PNG", "JPEG" or "GIF")

    Raises:
        UnsupportedFormatError: If the payload declares a type we cannot decode
        DecodeFailureError: If the payload claims to be an image but is not
    """
    data = payload.data
    for signature, fmt in FORMAT_SIGNATURES:
        if data.startswith(signature):
            return fmt

    content_type = _base_content_type(payload.content_type)
    if not data:
        raise DecodeFailureError("Image payload is empty")
    if content_type in SUPPORTED_CONTENT_TYPES or content_type in GENERIC_CONTENT_TYPES:
        raise DecodeFailureError(
            f"Payload declared as {content_type or 'unknown'} is not a recognisable image"
        )
    raise UnsupportedFormatError(f"Unsupported content type: {content_type}")


def _flatten_to_gray(image: Image.Image) -> Image.Image:
    """Convert any Pillow mode to "L", compositing transparency onto white."""
    has_alpha = image.mode in ("RGBA", "LA", "PA") or (
        image.mode == "P" and "transparency" in image.info
    )
    if has_alpha:
        rgba = image.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (WHITE, WHITE, WHITE, 255))
        background.alpha_composite(rgba)
        return background.convert("L")
    if image.mode == "L":
        return image.copy()
    return image.convert("L")


def decode_image(payload: RawImagePayload) -> Image.Image:
    """Decode a payload into an 8-bit grayscale image.

    Raises:
        UnsupportedFormatError: If the encoding is not supported
        DecodeFailureError: If the bytes are corrupt
    """
    fmt = detect_format(payload)

    try:
        with Image.open(io.BytesIO(payload.data), formats=[fmt]) as image:
            # Multi-frame GIFs show their first frame, like the firmware
            image.seek(0)
            image.load()
            gray = _flatten_to_gray(image)
    except Image.DecompressionBombError as e:
        raise DecodeFailureError(f"Image too large to decode safely: {e}") from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError) as e:
        raise DecodeFailureError(f"Failed to decode {fmt} payload: {e}") from e

    logger.debug("Decoded %s payload: %dx%d", fmt, gray.width, gray.height)
    return gray


def fit_to_display(image: Image.Image, spec: DisplaySpec) -> Image.Image:
    """Resize and crop an image to exactly the display geometry.

    Images are scaled down preserving aspect ratio until they just cover the
    display, then center-cropped. Images are never upscaled; an image smaller
    than the display is either padded with white (``spec.pad_undersized``) or
    rejected.

    Raises:
        DimensionMismatchError: If the policy cannot produce the target size
    """
    target_width, target_height = spec.width, spec.height
    source_width, source_height = image.size

    if (source_width, source_height) == (target_width, target_height):
        return image

    if source_width <= 0 or source_height <= 0:
        raise DimensionMismatchError(f"Image has no pixels: {source_width}x{source_height}")

    if source_width < target_width or source_height < target_height:
        if not spec.pad_undersized:
            raise DimensionMismatchError(
                f"Image {source_width}x{source_height} is smaller than display "
                f"{target_width}x{target_height} and would need upscaling"
            )
        ratio = min(target_width / source_width, target_height / source_height, 1.0)
        new_size = (max(1, round(source_width * ratio)), max(1, round(source_height * ratio)))
        if new_size != image.size:
            image = image.resize(new_size, Image.Resampling.LANCZOS)
        canvas = Image.new("L", (target_width, target_height), WHITE)
        canvas.paste(
            image,
            ((target_width - new_size[0]) // 2, (target_height - new_size[1]) // 2),
        )
        logger.debug(
            "Padded %dx%d image onto %dx%d canvas",
            source_width,
            source_height,
            target_width,
            target_height,
        )
        return canvas

    ratio = max(target_width / source_width, target_height / source_height)
    new_width = max(target_width, round(source_width * ratio))
    new_height = max(target_height, round(source_height * ratio))
    if (new_width, new_height) != image.size:
        image = image.resize((new_width, new_height), Image.Resampling.LANCZOS)

    left = (new_width - target_width) // 2
    top = (new_height - target_height) // 2
    logger.debug(
        "Scaled %dx%d to %dx%d and cropped at (%d, %d)",
        source_width,
        source_height,
        new_width,
        new_height,
        left,
        top,
    )
    return image.crop((left, top, left + target_width, top + target_height))


def _pack_levels(levels: bytes, width: int, height: int, depth: int) -> bytes:
    """Pack one level per byte into ``depth`` bits per pixel, MSB first."""
    # Palette images have raw packers for 2 and 4 bits per pixel
    return Image.frombytes("P", (width, height), levels).tobytes("raw", f"P;{depth}")


def quantize(image: Image.Image, depth: int) -> bytes:
    """Quantize a grayscale image to ``depth`` bits per pixel.

    1-bit output uses Pillow's Floyd-Steinberg error diffusion, deeper
    output maps each pixel to the nearest gray level.

    Returns:
        Packed pixel buffer
    """
    if depth not in SUPPORTED_DEPTHS:
        raise ValueError(f"Unsupported colour depth: {depth}")

    if image.mode != "L":
        image = image.convert("L")

    if depth == 8:
        return image.tobytes()
    if depth == 1:
        return image.convert("1", dither=Image.Dither.FLOYDSTEINBERG).tobytes()

    max_level = (1 << depth) - 1
    lut = [round(value * max_level / 255) for value in range(256)]
    levels = image.point(lut).tobytes()
    return _pack_levels(levels, image.width, image.height, depth)


def normalize_image(image: Image.Image, target_spec: DisplaySpec) -> Frame:
    """Fit, quantize and pack an already decoded image."""
    if target_spec.width <= 0 or target_spec.height <= 0:
        raise DimensionMismatchError(
            f"Invalid display geometry {target_spec.width}x{target_spec.height}"
        )
    fitted = fit_to_display(_flatten_to_gray(image), target_spec)
    pixels = quantize(fitted, target_spec.depth)
    return Frame.from_packed(target_spec.width, target_spec.height, target_spec.depth, pixels)


def decode_and_normalize(payload: RawImagePayload, target_spec: DisplaySpec) -> Frame:
    """Decode a raw payload into a frame matching the display.

    Args:
        payload: Raw image bytes and declared content type
        target_spec: Display width, height and colour depth

    Returns:
        Frame whose geometry equals the target spec

    Raises:
        UnsupportedFormatError: Payload is not a supported image encoding
        DimensionMismatchError: Image cannot be fitted by the crop/scale policy
        DecodeFailureError: Payload bytes are corrupt
    """
    frame = normalize_image(decode_image(payload), target_spec)
    logger.debug(
        "Normalized frame %dx%dx%d checksum=%s",
        frame.width,
        frame.height,
        frame.depth,
        frame.checksum[:12],
    )
    return frame
