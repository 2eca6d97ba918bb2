"""Main entry point for the TRMNL device emulator.

This module builds the configuration, wires the content client, render sink
and device engine together and maps the engine's final state onto a process
exit code.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from .api_client import ContentClient
from .config import SINK_CHOICES, THEME_CHOICES, DeviceConfig, IdentityStore, load_env_file
from .emulator_logging import configure_logging
from .engine import DeviceEngine
from .exceptions import ConfigurationError, RenderError
from .render_sink import ImageFileSink, NullRenderSink, RenderSink
from .screens import error_frame, splash_frame
from .state import DeviceState, ErrorKind

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

WINDOW_EVENT_INTERVAL = 0.1  # seconds between window event pumps
FATAL_SCREEN_SECONDS = 5.0  # how long the window shows the halt screen


def create_sink(config: DeviceConfig) -> RenderSink:
    """Create the render sink selected by the configuration."""
    if config.sink == "window":
        # pygame is only imported when a window is requested
        from .renderer import PygameRenderSink

        return PygameRenderSink(
            config.display_width,
            config.display_height,
            scale=config.window_scale,
            theme=config.window_theme,
        )
    if config.sink == "file":
        return ImageFileSink(config.output_dir)
    return NullRenderSink()


class EmulatorApp:
    """Main application coordinator.

    Owns the content client, the render sink and the device engine. The
    engine runs as the single task that talks to the service; a window
    event pump may run beside it but only ever requests shutdown.
    """

    def __init__(
        self,
        config: DeviceConfig,
        sink: Optional[RenderSink] = None,
        client: Optional[ContentClient] = None,
        identity_store: Optional[IdentityStore] = None,
    ):
        """Initialize the application.

        Args:
            config: Configuration instance
            sink: Render sink (created from config if omitted)
            client: Content client (created from config if omitted)
            identity_store: Where to persist a newly assigned device ID
        """
        self.config = config
        self.client = client or ContentClient(config)
        self.sink = sink or create_sink(config)
        self.identity_store = identity_store
        self.engine = DeviceEngine(
            config,
            self.client,
            self.sink,
            on_registered=identity_store.save if identity_store else None,
        )

        logger.info("TRMNL emulator initialized")
        logger.info("Content service: %s", config.base_url)
        logger.info(
            "Display: %dx%d, %d-bit",
            config.display_width,
            config.display_height,
            config.color_depth,
        )

    async def run(self) -> DeviceState:
        """Run the device until it shuts down.

        Returns:
            Final device state
        """
        self._show_splash()

        pump_task = None
        if hasattr(self.sink, "pump_events"):
            pump_task = asyncio.create_task(self._window_event_loop())

        try:
            state = await self.engine.run()
        finally:
            if pump_task is not None and not pump_task.done():
                pump_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pump_task

        if state.fatal_reason:
            await self._show_error_screen(state.fatal_reason)
        return state

    def request_shutdown(self) -> None:
        self.engine.request_shutdown()

    async def _window_event_loop(self) -> None:
        """Pump window events so the window stays responsive."""
        while not self.engine.shutdown_requested:
            if self.sink.pump_events():  # type: ignore[attr-defined]
                self.engine.request_shutdown()
            await asyncio.sleep(WINDOW_EVENT_INTERVAL)

    def _show_splash(self) -> None:
        if not self.config.show_splash:
            return
        spec = self.config.display_spec()
        try:
            self.sink.paint(splash_frame(spec, self.config.firmware_version))
            logger.debug("Splash screen painted")
        except RenderError as e:
            logger.warning("Failed to paint splash screen: %s", e)

    async def _show_error_screen(self, reason: str) -> None:
        spec = self.config.display_spec()
        try:
            self.sink.paint(error_frame(spec, reason))
        except RenderError as e:
            logger.warning("Failed to paint error screen: %s", e)
            return

        if hasattr(self.sink, "pump_events"):
            # Keep the halt screen visible for a moment before the window closes
            remaining = FATAL_SCREEN_SECONDS
            while remaining > 0 and not self.sink.pump_events():  # type: ignore[attr-defined]
                await asyncio.sleep(WINDOW_EVENT_INTERVAL)
                remaining -= WINDOW_EVENT_INTERVAL

    async def shutdown(self) -> None:
        """Graceful shutdown.

        Cleanup order:
        1. Stop the engine (request_shutdown)
        2. Close the content client
        3. Close the render sink
        """
        logger.info("Shutting down...")
        self.engine.request_shutdown()
        await self.client.close()
        self.sink.close()
        logger.info("Shutdown complete")


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command line parser.

    Every option overrides the matching ``TRMNL_*`` environment variable.
    """
    parser = argparse.ArgumentParser(
        prog="trmnl-emulator",
        description="Emulate a TRMNL e-ink display on the desktop.",
    )
    parser.add_argument("--api-key", help="device API key (TRMNL_API_KEY)")
    parser.add_argument("--base-url", help="content service URL (TRMNL_BASE_URL)")
    parser.add_argument("--mac", dest="mac_address", help="hardware ID sent to the service")
    parser.add_argument("--width", dest="display_width", type=int, help="display width in pixels")
    parser.add_argument(
        "--height", dest="display_height", type=int, help="display height in pixels"
    )
    parser.add_argument(
        "--depth", dest="color_depth", type=int, choices=(1, 2, 4, 8), help="bits per pixel"
    )
    parser.add_argument("--sink", choices=SINK_CHOICES, help="where frames are painted")
    parser.add_argument("--output-dir", type=Path, help="directory for the file sink")
    parser.add_argument("--scale", dest="window_scale", type=int, help="window magnification")
    parser.add_argument(
        "--theme", dest="window_theme", choices=THEME_CHOICES, help="window colours"
    )
    parser.add_argument("--env-file", type=Path, help="load defaults from this .env file")
    parser.add_argument("--state-file", type=Path, help="where the assigned device ID is kept")
    parser.add_argument(
        "--no-persist", action="store_true", help="do not read or write the state file"
    )
    parser.add_argument(
        "--no-splash", action="store_true", help="skip the boot splash screen"
    )
    parser.add_argument(
        "--log-level", choices=("DEBUG", "INFO", "WARNING", "ERROR"), help="logging level"
    )
    return parser


def load_config(args: argparse.Namespace) -> tuple[DeviceConfig, Optional[IdentityStore]]:
    """Combine .env, environment, persisted state and command line options.

    Raises:
        ConfigurationError: If the resulting configuration is invalid
    """
    load_env_file(args.env_file or Path.cwd() / ".env")

    config = DeviceConfig.from_env().with_overrides(
        api_key=args.api_key,
        base_url=args.base_url,
        mac_address=args.mac_address,
        display_width=args.display_width,
        display_height=args.display_height,
        color_depth=args.color_depth,
        sink=args.sink,
        output_dir=args.output_dir,
        window_scale=args.window_scale,
        window_theme=args.window_theme,
        state_file=args.state_file,
        log_level=args.log_level,
    )
    if args.no_splash:
        config = config.with_overrides(show_splash=False)
    config.validate()

    store = None
    if config.state_file is not None and not args.no_persist:
        store = IdentityStore(config.state_file)
        config = store.apply(config)
    return config, store


def exit_code_for(state: DeviceState) -> int:
    """Fatal halt exits non-zero; a requested shutdown exits cleanly."""
    if state.fatal_reason and state.error_kind is ErrorKind.CONFIGURATION:
        return EXIT_CONFIG
    if state.fatal_reason:
        return EXIT_FATAL
    return EXIT_OK


async def run_emulator(
    config: DeviceConfig, identity_store: Optional[IdentityStore] = None
) -> DeviceState:
    """Run the emulator with signal handling until it shuts down."""
    app = EmulatorApp(config, identity_store=identity_store)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: Any) -> None:
        logger.info("Received signal: %s", sig)
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))  # type: ignore[misc]

    try:
        return await app.run()
    finally:
        await app.shutdown()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line entry point.

    Returns:
        Process exit code
    """
    args = build_arg_parser().parse_args(argv)

    try:
        config, store = load_config(args)
    except ConfigurationError as e:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG

    configure_logging(config.log_level)

    try:
        state = asyncio.run(run_emulator(config, store))
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt")
        return EXIT_OK
    except RenderError as e:
        logger.error("Could not open the display: %s", e)
        return EXIT_FATAL

    if state.fatal_reason:
        logger.error("Device halted: %s", state.fatal_reason)
    return exit_code_for(state)


if __name__ == "__main__":
    sys.exit(main())
