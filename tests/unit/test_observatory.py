"""
AlpacaDeck Unit Tests - Observatory Wiring and CLI

Unit tests for alpacadeck/observatory.py and alpacadeck/main.py using mock
Alpaca clients and an injected discovery.

Run:
    pytest tests/unit/test_observatory.py -v
"""

import argparse
import asyncio
import signal
import sys
from unittest.mock import MagicMock

import pytest

from alpacadeck.config import AlpacaDeckConfig
from alpacadeck.events import EventType
from alpacadeck.exceptions import DeviceNotFoundError
from alpacadeck.main import GracefulShutdown, async_main, create_parser
from alpacadeck.observatory import Observatory, create_observatory
from alpacadeck.types import DeviceStatus, DeviceType
from services.alpaca.devices import AlpacaCamera, AlpacaFocuser
from services.alpaca.discovery import AlpacaDiscovery
from tests.mocks import MockAlpacaClient

FOCUSER_ID = "127.0.0.1:11111:focuser:0"


@pytest.fixture
def clients():
    return {}


@pytest.fixture
def observatory(clients):
    def factory(device):
        return clients.setdefault(device.id, MockAlpacaClient({"position": 100, "ismoving": False}))

    discovery = AlpacaDiscovery(
        search=lambda numquery, timeout: ["127.0.0.1:11111"],
        configured_devices=lambda server: [
            {"DeviceName": "Sim Focuser", "DeviceType": "Focuser", "DeviceNumber": 0, "UniqueID": "f0"},
        ],
    )
    return Observatory(AlpacaDeckConfig(), client_factory=factory, discovery=discovery)


def cli_args(*argv: str) -> argparse.Namespace:
    return create_parser().parse_args(list(argv))


# =============================================================================
# Observatory
# =============================================================================

class TestObservatory:
    """Component wiring."""

    def test_poller_per_device_type(self, observatory):
        assert set(observatory.pollers) == set(DeviceType)
        for device_type, poller in observatory.pollers.items():
            assert observatory.registry.get_poller(device_type) is poller

    def test_exposure_settings_from_config(self):
        config = AlpacaDeckConfig(exposure={"poll_interval": 1.0, "max_wait_time": 60})
        observatory = create_observatory(config)
        assert observatory.exposure_tracker.poll_interval == 1.0
        assert observatory.exposure_tracker.max_wait_time == 60.0

    def test_polling_overrides_from_config(self):
        config = AlpacaDeckConfig(polling={"intervals": {"focuser": 0.3}})
        observatory = create_observatory(config)
        assert observatory.pollers[DeviceType.FOCUSER].interval == 0.3

    @pytest.mark.asyncio
    async def test_connect_starts_polling_and_shutdown_stops(self, observatory):
        observatory.registry.add_device({"id": FOCUSER_ID, "type": "focuser"})
        await observatory.registry.connect(FOCUSER_ID)

        poller = observatory.pollers[DeviceType.FOCUSER]
        assert poller.is_polling(FOCUSER_ID)

        await observatory.shutdown()
        assert not poller.is_polling(FOCUSER_ID)

    @pytest.mark.asyncio
    async def test_adapter_cached_per_device(self, observatory):
        observatory.registry.add_device({"id": FOCUSER_ID, "type": "focuser"})

        adapter = observatory.adapter(FOCUSER_ID)
        assert isinstance(adapter, AlpacaFocuser)
        assert observatory.adapter(FOCUSER_ID) is adapter

        await observatory.registry.remove_device(FOCUSER_ID)
        with pytest.raises(DeviceNotFoundError):
            observatory.adapter(FOCUSER_ID)

    def test_camera_adapter_uses_tracker(self, observatory):
        observatory.registry.add_device({"id": "cam", "type": "camera"})
        adapter = observatory.adapter("cam")
        assert isinstance(adapter, AlpacaCamera)
        assert adapter.exposure_tracker is observatory.exposure_tracker


# =============================================================================
# Command Line
# =============================================================================

class TestCommandLine:
    """Argument parsing and the async entry point."""

    def test_parser_defaults(self):
        args = cli_args()
        assert args.devices == []
        assert args.discover is False
        assert args.log_level is None

    def test_parser_devices_and_options(self):
        args = cli_args("-l", "DEBUG", "--config", "deck.yaml", FOCUSER_ID)
        assert args.devices == [FOCUSER_ID]
        assert args.log_level == "DEBUG"
        assert args.config == "deck.yaml"

    @pytest.mark.asyncio
    async def test_discover_prints_devices(self, observatory, capsys):
        code = await async_main(cli_args("--discover"), AlpacaDeckConfig(), observatory=observatory)

        assert code == 0
        output = capsys.readouterr().out
        assert FOCUSER_ID in output
        assert "1 device(s) found" in output

    @pytest.mark.asyncio
    async def test_no_devices_is_an_error(self, observatory):
        assert await async_main(cli_args(), AlpacaDeckConfig(), observatory=observatory) == 2

    @pytest.mark.asyncio
    async def test_bad_device_id(self, observatory):
        code = await async_main(cli_args("not-a-device"), AlpacaDeckConfig(), observatory=observatory)
        assert code == 1

    @pytest.mark.asyncio
    async def test_monitor_until_shutdown(self, observatory, clients):
        shutdown = GracefulShutdown()
        shutdown._handle_signal(signal.SIGTERM, None)

        code = await async_main(
            cli_args(FOCUSER_ID), AlpacaDeckConfig(), shutdown=shutdown, observatory=observatory
        )

        assert code == 0
        client = clients[FOCUSER_ID]
        assert ("connected", {"Connected": True}) in client.puts
        assert client.puts[-1] == ("connected", {"Connected": False})
        assert observatory.registry.get_device(FOCUSER_ID).status == DeviceStatus.IDLE

    @pytest.mark.asyncio
    async def test_monitor_logs_events(self, observatory):
        shutdown = GracefulShutdown()
        event = shutdown.get_shutdown_event()
        seen = []
        observatory.event_bus.on(EventType.DEVICE_CONNECTED, seen.append)
        observatory.event_bus.on(EventType.DEVICE_CONNECTED, lambda e: event.set())

        code = await asyncio.wait_for(
            async_main(cli_args(FOCUSER_ID), AlpacaDeckConfig(), shutdown=shutdown, observatory=observatory),
            timeout=5.0,
        )

        assert code == 0
        assert [e.device_id for e in seen] == [FOCUSER_ID]


class SignalOnInstall(GracefulShutdown):
    """Raises SIGTERM on the loop as soon as the handlers are in place."""

    def install_handlers(self, loop):
        super().install_handlers(loop)
        loop.call_soon(signal.raise_signal, signal.SIGTERM)


class TestGracefulShutdown:
    """Signal handling for the monitor loop."""

    def test_handlers_registered_on_event_loop(self):
        loop = MagicMock()
        shutdown = GracefulShutdown()

        shutdown.install_handlers(loop)

        registered = [c.args[0] for c in loop.add_signal_handler.call_args_list]
        assert registered == [signal.SIGINT, signal.SIGTERM]

        shutdown.restore_handlers()

        removed = [c.args[0] for c in loop.remove_signal_handler.call_args_list]
        assert removed == [signal.SIGINT, signal.SIGTERM]

    def test_signal_sets_event_through_loop(self):
        loop = MagicMock()
        shutdown = GracefulShutdown()
        event = shutdown.get_shutdown_event()
        shutdown.install_handlers(loop)

        shutdown._handle_signal(signal.SIGINT, None)

        assert shutdown.shutdown_requested
        loop.call_soon_threadsafe.assert_called_once_with(event.set)

    def test_second_signal_forces_exit(self):
        shutdown = GracefulShutdown()
        shutdown._handle_signal(signal.SIGINT, None)

        with pytest.raises(SystemExit):
            shutdown._handle_signal(signal.SIGINT, None)

    @pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers need a Unix event loop")
    @pytest.mark.asyncio
    async def test_signal_wakes_monitor_loop(self, observatory, clients):
        shutdown = SignalOnInstall()

        code = await asyncio.wait_for(
            async_main(cli_args(FOCUSER_ID), AlpacaDeckConfig(), shutdown=shutdown, observatory=observatory),
            timeout=5.0,
        )

        assert code == 0
        assert shutdown.shutdown_requested
        assert clients[FOCUSER_ID].puts[-1] == ("connected", {"Connected": False})
