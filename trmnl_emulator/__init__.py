"""TRMNL Device Emulator - an e-ink display client on the desktop.

This package emulates a TRMNL-class e-ink appliance without hardware: it
authenticates to the display-content service, polls for the next screen,
decodes the image into a frame matching the panel and paints it, following
the firmware's boot, refresh, sleep and backoff behaviour.

Architecture:
- api_client.py: Async HTTP client for the content service
- image_pipeline.py: Decode, fit and dither payloads into frames
- engine.py: Device lifecycle state machine
- state.py: Device state, phases and backoff policy
- render_sink.py / renderer.py: Memory, file and pygame window sinks
- config.py: Configuration loading from environment and .env
- main.py: Application wiring and command line entry point

Usage:
    trmnl-emulator --api-key YOUR_KEY
    python -m trmnl_emulator --sink file --output-dir frames

Environment Variables:
    TRMNL_API_KEY - Device API key
    TRMNL_BASE_URL - Content service URL (default: https://usetrmnl.com)
    TRMNL_SINK - window, file or none
"""

__version__ = "0.1.0"
__author__ = "TRMNL Emulator Team"

from trmnl_emulator.config import DeviceConfig
from trmnl_emulator.engine import DeviceEngine
from trmnl_emulator.state import DevicePhase, DeviceState

__all__ = ["DeviceConfig", "DeviceEngine", "DevicePhase", "DeviceState"]
