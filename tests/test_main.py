"""Unit tests for trmnl_emulator.main (CLI and application wiring)."""

from dataclasses import replace
from pathlib import Path

import pytest

from conftest import ScriptedClient
from trmnl_emulator.config import DeviceConfig, IdentityStore
from trmnl_emulator.exceptions import ConfigurationError, UnauthorizedError
from trmnl_emulator.main import (
    EXIT_CONFIG,
    EXIT_FATAL,
    EXIT_OK,
    EmulatorApp,
    build_arg_parser,
    create_sink,
    exit_code_for,
    load_config,
    main,
)
from trmnl_emulator.models import DeviceIdentity, Registration
from trmnl_emulator.render_sink import ImageFileSink, MemoryRenderSink, NullRenderSink
from trmnl_emulator.state import DeviceState, ErrorKind

pytestmark = pytest.mark.unit


def parse(*argv: str):
    return build_arg_parser().parse_args(list(argv))


class TestArgParser:
    """Tests for command line parsing."""

    def test_parse_when_options_given_then_mapped_to_config_fields(self) -> None:
        """Test options use the configuration's field names."""
        args = parse("--api-key", "k", "--width", "400", "--depth", "4", "--sink", "file")

        assert args.api_key == "k"
        assert args.display_width == 400
        assert args.color_depth == 4
        assert args.sink == "file"
        assert args.no_splash is False

    def test_parse_when_depth_unsupported_then_exits(self) -> None:
        """Test argparse rejects depths the pipeline cannot produce."""
        with pytest.raises(SystemExit):
            parse("--depth", "3")


class TestLoadConfig:
    """Tests for combining .env, environment and command line."""

    def test_load_config_when_env_file_and_flags_then_flags_win(
        self, tmp_path: Path, clean_env: pytest.MonkeyPatch
    ) -> None:
        """Test command line options override .env values."""
        env_file = tmp_path / "device.env"
        env_file.write_text("TRMNL_API_KEY=file-key\nTRMNL_BASE_URL=http://byos.local\n")

        config, store = load_config(
            parse(
                "--env-file",
                str(env_file),
                "--api-key",
                "cli-key",
                "--no-persist",
                "--no-splash",
            )
        )

        assert config.api_key == "cli-key"
        assert config.base_url == "http://byos.local"
        assert config.show_splash is False
        assert store is None

    def test_load_config_when_state_file_exists_then_device_id_restored(
        self, tmp_path: Path, clean_env: pytest.MonkeyPatch
    ) -> None:
        """Test a previously registered device skips registration."""
        state_file = tmp_path / "device.json"
        IdentityStore(state_file).save(DeviceIdentity(api_key="stored-key", device_id="STORED"))

        config, store = load_config(
            parse("--env-file", str(tmp_path / "none.env"), "--state-file", str(state_file))
        )

        assert store is not None
        assert config.device_id == "STORED"
        assert config.api_key == "stored-key"

    def test_load_config_when_invalid_then_configuration_error(
        self, tmp_path: Path, clean_env: pytest.MonkeyPatch
    ) -> None:
        """Test invalid combinations are rejected before anything starts."""
        with pytest.raises(ConfigurationError):
            load_config(
                parse("--env-file", str(tmp_path / "none.env"), "--width", "0", "--no-persist")
            )


class TestExitCodes:
    """Tests for mapping final states to exit codes."""

    def test_exit_code_when_clean_shutdown_then_zero(self) -> None:
        """Test a requested shutdown exits cleanly."""
        assert exit_code_for(DeviceState()) == EXIT_OK

    def test_exit_code_when_unauthorized_then_fatal(self) -> None:
        """Test a rejected credential exits with the fatal code."""
        state = DeviceState(
            fatal_reason="unauthorized: bad key", error_kind=ErrorKind.UNAUTHORIZED
        )
        assert exit_code_for(state) == EXIT_FATAL

    def test_exit_code_when_configuration_then_config_code(self) -> None:
        """Test configuration halts exit with the configuration code."""
        state = DeviceState(
            fatal_reason="configuration: no key", error_kind=ErrorKind.CONFIGURATION
        )
        assert exit_code_for(state) == EXIT_CONFIG

    def test_main_when_invalid_geometry_then_config_exit(
        self, tmp_path: Path, clean_env: pytest.MonkeyPatch
    ) -> None:
        """Test main reports invalid configuration without starting the device."""
        code = main(["--env-file", str(tmp_path / "none.env"), "--height", "-1", "--no-persist"])
        assert code == EXIT_CONFIG

    def test_main_when_no_credential_then_config_exit(
        self, tmp_path: Path, clean_env: pytest.MonkeyPatch
    ) -> None:
        """Test a device without credentials halts at boot with the configuration code."""
        code = main(
            [
                "--env-file",
                str(tmp_path / "none.env"),
                "--sink",
                "none",
                "--no-splash",
                "--no-persist",
                "--log-level",
                "ERROR",
            ]
        )
        assert code == EXIT_CONFIG


class TestEmulatorApp:
    """Tests for the application coordinator."""

    def test_create_sink_when_file_then_image_file_sink(self, device_config: DeviceConfig) -> None:
        """Test the configured sink type is created."""
        assert isinstance(create_sink(replace(device_config, sink="file")), ImageFileSink)
        assert isinstance(create_sink(replace(device_config, sink="none")), NullRenderSink)

    async def test_run_when_fatal_then_splash_and_error_screen_painted(
        self, device_config: DeviceConfig
    ) -> None:
        """Test the app paints the splash at boot and the halt screen on fatal errors."""
        config = replace(device_config, show_splash=True)
        sink = MemoryRenderSink(800, 480)
        client = ScriptedClient(polls=[UnauthorizedError("revoked")])
        app = EmulatorApp(config, sink=sink, client=client)

        state = await app.run()
        await app.shutdown()

        assert state.fatal_reason == "unauthorized: revoked"
        assert sink.paint_count == 2
        assert sink.frames[0].checksum != sink.frames[1].checksum
        assert client.closed
        assert sink.closed

    async def test_run_when_registered_then_identity_saved(
        self, device_config: DeviceConfig, tmp_path: Path
    ) -> None:
        """Test a newly assigned device ID is persisted through the identity store."""
        store = IdentityStore(tmp_path / "device.json")
        client = ScriptedClient(
            registrations=[Registration(device_id="NEW1", api_key="new-key")],
            polls=[UnauthorizedError("stop here")],
        )
        app = EmulatorApp(
            replace(device_config, device_id=None),
            sink=MemoryRenderSink(800, 480),
            client=client,
            identity_store=store,
        )

        await app.run()
        await app.shutdown()

        assert store.load() == {"device_id": "NEW1", "api_key": "new-key"}
