"""Configuration management for the TRMNL device emulator.

Loads configuration from environment variables (optionally seeded from a
.env file) into a ``DeviceConfig`` value object. The engine only ever sees
that object; it never reads the environment itself.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from .exceptions import ConfigurationError
from .models import SUPPORTED_DEPTHS, DeviceIdentity, DisplaySpec

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://usetrmnl.com"
DEFAULT_FIRMWARE_VERSION = "1.5.2"
DEFAULT_STATE_FILE = Path.home() / ".config" / "trmnl-emulator" / "device.json"

SINK_CHOICES = ("window", "file", "none")
THEME_CHOICES = ("white", "inverted", "paper")

_TRUE_VALUES = ("1", "true", "yes", "on")


def default_mac_address() -> str:
    """Format this host's hardware address the way the firmware sends it."""
    node = uuid.getnode()
    return ":".join(f"{(node >> shift) & 0xFF:02X}" for shift in range(40, -1, -8))


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a .env file and return key-value pairs.

    Skips blank lines and comments, accepts an optional ``export`` prefix and
    strips matching quotes from values.

    Args:
        path: Path to .env file

    Returns:
        Dictionary of key-value pairs, empty if the file does not exist
    """
    if not path.exists():
        return {}

    result: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, val = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        val = val.strip().strip('"').strip("'")

        if key:
            result[key] = val

    return result


def load_env_file(path: Path) -> list[str]:
    """Load a .env file into ``os.environ`` without overriding existing keys.

    Returns:
        Keys that were set from the file
    """
    set_keys = []
    for key, val in parse_env_file(path).items():
        if key not in os.environ:
            os.environ[key] = val
            set_keys.append(key)

    if set_keys:
        logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))
    return set_keys


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class DeviceConfig:
    """Emulator configuration.

    All settings can be loaded from ``TRMNL_*`` environment variables.
    """

    # Identity
    api_key: str | None = None
    device_id: str | None = None
    mac_address: str = field(default_factory=default_mac_address)
    firmware_version: str = DEFAULT_FIRMWARE_VERSION

    # Display geometry
    display_width: int = 800
    display_height: int = 480
    color_depth: int = 1
    pad_undersized: bool = False

    # Content service
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = 10.0  # seconds
    max_image_bytes: int = 5 * 1024 * 1024

    # Refresh and backoff (seconds)
    default_refresh_interval: int = 900
    min_refresh_interval: int = 5
    max_refresh_interval: int = 86400
    error_retry_interval: float = 30.0
    backoff_factor: float = 2.0
    max_backoff: float = 600.0

    # Behaviour
    skip_unchanged_filename: bool = True
    report_errors: bool = False

    # Render sink
    sink: str = "window"
    output_dir: Path = Path("frames")
    window_scale: int = 1
    window_theme: str = "white"
    show_splash: bool = True

    # Persistence and logging
    state_file: Path | None = DEFAULT_STATE_FILE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> DeviceConfig:
        """Load configuration from environment variables.

        Environment Variables:
            TRMNL_API_KEY - Device API key (access token)
            TRMNL_DEVICE_ID - Previously assigned device ID
            TRMNL_MAC_ADDRESS - Hardware ID sent to the service
            TRMNL_FIRMWARE_VERSION - Reported firmware version
            TRMNL_BASE_URL - Content service URL
            TRMNL_DISPLAY_WIDTH / TRMNL_DISPLAY_HEIGHT - Display geometry
            TRMNL_COLOR_DEPTH - Bits per pixel (1, 2, 4 or 8)
            TRMNL_REQUEST_TIMEOUT - HTTP timeout in seconds
            TRMNL_REFRESH_INTERVAL - Refresh interval when the service sends none
            TRMNL_ERROR_RETRY_INTERVAL - Base delay after a failed cycle
            TRMNL_BACKOFF_FACTOR / TRMNL_MAX_BACKOFF - Exponential backoff shape
            TRMNL_REPORT_ERRORS - Forward errors to the service log endpoint
            TRMNL_SINK - window, file or none
            TRMNL_OUTPUT_DIR - Directory for the file sink
            TRMNL_WINDOW_SCALE / TRMNL_WINDOW_THEME - Window appearance
            TRMNL_STATE_FILE - Where the assigned device ID is persisted
            TRMNL_LOG_LEVEL - Logging level (DEBUG, INFO, WARNING, ERROR)

        Returns:
            DeviceConfig instance with values from environment
        """
        defaults = cls()

        base_url = os.getenv("TRMNL_BASE_URL", DEFAULT_BASE_URL).rstrip("/")

        state_file_str = os.getenv("TRMNL_STATE_FILE")
        if state_file_str is None:
            state_file: Path | None = defaults.state_file
        elif state_file_str.strip() == "":
            state_file = None
        else:
            state_file = Path(state_file_str).expanduser()

        return cls(
            api_key=os.getenv("TRMNL_API_KEY") or None,
            device_id=os.getenv("TRMNL_DEVICE_ID") or None,
            mac_address=os.getenv("TRMNL_MAC_ADDRESS") or defaults.mac_address,
            firmware_version=os.getenv("TRMNL_FIRMWARE_VERSION", DEFAULT_FIRMWARE_VERSION),
            display_width=_env_int("TRMNL_DISPLAY_WIDTH", defaults.display_width),
            display_height=_env_int("TRMNL_DISPLAY_HEIGHT", defaults.display_height),
            color_depth=_env_int("TRMNL_COLOR_DEPTH", defaults.color_depth),
            pad_undersized=_env_bool("TRMNL_PAD_UNDERSIZED", defaults.pad_undersized),
            base_url=base_url,
            request_timeout=_env_float("TRMNL_REQUEST_TIMEOUT", defaults.request_timeout),
            max_image_bytes=_env_int("TRMNL_MAX_IMAGE_BYTES", defaults.max_image_bytes),
            default_refresh_interval=_env_int(
                "TRMNL_REFRESH_INTERVAL", defaults.default_refresh_interval
            ),
            error_retry_interval=_env_float(
                "TRMNL_ERROR_RETRY_INTERVAL", defaults.error_retry_interval
            ),
            backoff_factor=_env_float("TRMNL_BACKOFF_FACTOR", defaults.backoff_factor),
            max_backoff=_env_float("TRMNL_MAX_BACKOFF", defaults.max_backoff),
            skip_unchanged_filename=_env_bool(
                "TRMNL_SKIP_UNCHANGED_FILENAME", defaults.skip_unchanged_filename
            ),
            report_errors=_env_bool("TRMNL_REPORT_ERRORS", defaults.report_errors),
            sink=os.getenv("TRMNL_SINK", defaults.sink).lower(),
            output_dir=Path(os.getenv("TRMNL_OUTPUT_DIR", str(defaults.output_dir))),
            window_scale=_env_int("TRMNL_WINDOW_SCALE", defaults.window_scale),
            window_theme=os.getenv("TRMNL_WINDOW_THEME", defaults.window_theme).lower(),
            show_splash=_env_bool("TRMNL_SHOW_SPLASH", defaults.show_splash),
            state_file=state_file,
            log_level=os.getenv("TRMNL_LOG_LEVEL", defaults.log_level).upper(),
        )

    def with_overrides(self, **overrides: Any) -> DeviceConfig:
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

        changes = {key: value for key, value in overrides.items() if value is not None}
        if isinstance(changes.get("base_url"), str):
            changes["base_url"] = changes["base_url"].rstrip("/")
        return replace(self, **changes)

    def validate(self) -> None:
        """Check values the engine relies on.

        Raises:
            ConfigurationError: If a setting is out of range
        """
        if self.display_width <= 0 or self.display_height <= 0:
            raise ConfigurationError(
                f"Display geometry must be positive, got {self.display_width}x{self.display_height}"
            )
        if self.color_depth not in SUPPORTED_DEPTHS:
            raise ConfigurationError(
                f"Colour depth must be one of {SUPPORTED_DEPTHS}, got {self.color_depth}"
            )
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"Base URL must be http(s), got {self.base_url!r}")
        if self.request_timeout <= 0:
            raise ConfigurationError("Request timeout must be positive")
        if self.error_retry_interval <= 0 or self.max_backoff < self.error_retry_interval:
            raise ConfigurationError(
                "Error retry interval must be positive and not exceed the maximum backoff"
            )
        if self.backoff_factor < 1:
            raise ConfigurationError("Backoff factor must be at least 1")
        if not 0 < self.min_refresh_interval <= self.max_refresh_interval:
            raise ConfigurationError("Refresh interval bounds are inconsistent")
        if self.default_refresh_interval <= 0:
            raise ConfigurationError("Default refresh interval must be positive")
        if self.max_image_bytes <= 0:
            raise ConfigurationError("Maximum image size must be positive")
        if self.sink not in SINK_CHOICES:
            raise ConfigurationError(f"Sink must be one of {SINK_CHOICES}, got {self.sink!r}")
        if self.window_theme not in THEME_CHOICES:
            raise ConfigurationError(
                f"Window theme must be one of {THEME_CHOICES}, got {self.window_theme!r}"
            )
        if self.window_scale < 1:
            raise ConfigurationError("Window scale must be at least 1")

    def build_identity(self) -> DeviceIdentity:
        """Create the device identity described by this configuration.

        Raises:
            ConfigurationError: If no credential is configured
        """
        identity = DeviceIdentity(
            api_key=self.api_key or None,
            device_id=self.device_id or None,
            mac_address=self.mac_address,
            firmware_version=self.firmware_version,
            display_width=self.display_width,
            display_height=self.display_height,
            color_depth=self.color_depth,
        )
        if not identity.has_credential:
            raise ConfigurationError(
                "No API key or device ID configured (set TRMNL_API_KEY or pass --api-key)"
            )
        return identity

    def display_spec(self) -> DisplaySpec:
        return DisplaySpec(
            width=self.display_width,
            height=self.display_height,
            depth=self.color_depth,
            pad_undersized=self.pad_undersized,
        )

    def get_api_endpoint(self, path: str) -> str:
        """Get full API endpoint URL.

        Args:
            path: API path (e.g., "/api/display")

        Returns:
            Full URL (e.g., "https://usetrmnl.com/api/display")
        """
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"


class IdentityStore:
    """Persists the values registration assigns so later runs skip it."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> dict[str, str]:
        """Return persisted ``device_id``/``api_key`` values, if any."""
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable device state file %s", self.path, exc_info=True)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring device state file %s: not a JSON object", self.path)
            return {}
        return {key: str(data[key]) for key in ("device_id", "api_key") if data.get(key)}

    def save(self, identity: DeviceIdentity) -> None:
        """Write the identity's assigned values to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"device_id": identity.device_id, "api_key": identity.api_key}
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        if hasattr(os, "chmod"):
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(self.path)
        logger.info("Saved device identity to %s", self.path)

    def apply(self, config: DeviceConfig) -> DeviceConfig:
        """Fill missing credentials in ``config`` from the persisted state."""
        stored = self.load()
        if not stored:
            return config
        return replace(
            config,
            device_id=config.device_id or stored.get("device_id"),
            api_key=config.api_key or stored.get("api_key"),
        )
