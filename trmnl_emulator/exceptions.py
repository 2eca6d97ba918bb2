"""Exception hierarchy for the TRMNL device emulator.

Components raise these typed errors instead of letting transport, decoder or
windowing failures escape unstructured. The device engine is the single place
that inspects them and decides between retrying and shutting down.
"""

from __future__ import annotations


class EmulatorError(Exception):
    """Base exception for all emulator errors.

    Attributes:
        retryable: Whether the engine may try again on a later cycle
    """

    retryable: bool = True


class ConfigurationError(EmulatorError):
    """Configuration is missing or invalid.

    Raised when:
    - Neither an API key nor a device ID is available
    - Display geometry or colour depth is not supported
    - A numeric setting is out of range

    Fatal: the emulated device halts.
    """

    retryable = False


class ClientError(EmulatorError):
    """Base class for content service exchange failures."""


class UnauthorizedError(ClientError):
    """The content service rejected the device credential.

    Fatal to the current identity; retrying with the same key cannot succeed.
    """

    retryable = False


class UnreachableError(ClientError):
    """The content service could not be reached.

    Covers DNS failures, refused connections and request timeouts.
    """


class MalformedResponseError(ClientError):
    """The content service answered with something that did not parse."""


class ServerError(ClientError):
    """The content service reported a failure.

    Attributes:
        status_code: HTTP status or the ``status`` field of the response body
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ImageError(EmulatorError):
    """Base class for image pipeline failures.

    The engine skips the current render, keeps the previous frame on screen
    and tries again on the next poll.
    """


class UnsupportedFormatError(ImageError):
    """The payload is not an image encoding the pipeline can decode."""


class DimensionMismatchError(ImageError):
    """The image cannot be fitted to the display by scaling and cropping."""


class DecodeFailureError(ImageError):
    """The payload looked like an image but could not be decoded."""


class RenderError(EmulatorError):
    """The render sink failed to paint a frame."""
