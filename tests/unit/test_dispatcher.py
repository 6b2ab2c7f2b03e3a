"""
AlpacaDeck Unit Tests - Action Dispatcher

Run:
    pytest tests/unit/test_dispatcher.py -v
"""

from unittest.mock import AsyncMock

import pytest

from alpacadeck.events import EventType
from alpacadeck.exceptions import DeviceNotFoundError, DeviceTypeMismatchError
from services.actions.dispatcher import ActionDispatcher, describe_error
from tests.mocks import add_connected, network_error, not_implemented


@pytest.fixture
def refresh(registry):
    """Replace the post-command refresh with an AsyncMock."""
    mock = AsyncMock(return_value=True)
    registry.refresh = mock
    return mock


# =============================================================================
# Successful Dispatch
# =============================================================================

class TestDispatchSuccess:
    """Commands the device accepts."""

    @pytest.mark.asyncio
    async def test_put_with_exact_parameters(self, dispatcher, registry, clients, refresh, recorder):
        add_connected(registry, "foc", "focuser")

        ok = await dispatcher.dispatch("foc", "focuser", "Move", {"Position": 5000})

        assert ok is True
        assert clients["foc"].puts == [("move", {"Position": 5000})]
        called = recorder.of(EventType.DEVICE_METHOD_CALLED)
        assert len(called) == 1
        assert called[0].data["method"] == "Move"
        assert called[0].data["args"] == {"Position": 5000}
        refresh.assert_awaited_once_with("foc")

    @pytest.mark.asyncio
    async def test_optimistic_values_applied_and_tagged(self, dispatcher, registry, refresh):
        device = add_connected(registry, "foc", "focuser")

        await dispatcher.dispatch("foc", "focuser", "move", {"Position": 10}, optimistic={"ismoving": True})

        assert device.properties["ismoving"] is True
        assert device.is_optimistic("ismoving")

    @pytest.mark.asyncio
    async def test_refresh_can_be_skipped(self, dispatcher, registry, refresh):
        add_connected(registry, "cam", "camera")

        assert await dispatcher.dispatch("cam", "camera", "binx", {"BinX": 2}, refresh=False)
        refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_returns_value(self, dispatcher, registry, clients):
        add_connected(registry, "sw", "switch")
        clients["sw"].parameterized[("getswitchname", 3)] = "Dew heater"

        assert await dispatcher.get("sw", "switch", "getswitchname", {"Id": 3}) == "Dew heater"


# =============================================================================
# Failed Dispatch
# =============================================================================

class TestDispatchFailure:
    """Every failure produces exactly one deviceApiError."""

    @pytest.mark.asyncio
    async def test_device_error_reports_and_refreshes(self, dispatcher, registry, clients, refresh, recorder):
        add_connected(registry, "foc", "focuser")
        clients["foc"].fail("move", not_implemented("move"))

        ok = await dispatcher.dispatch("foc", "focuser", "move", {"Position": 1}, optimistic={"ismoving": True})

        assert ok is False
        errors = recorder.of(EventType.DEVICE_API_ERROR)
        assert len(errors) == 1
        assert errors[0].data["action"] == "move"
        assert errors[0].data["params"] == {"Position": 1}
        assert errors[0].data["error"]["error_number"] == 0x400
        refresh.assert_awaited_once_with("foc")
        assert "ismoving" not in registry.get_device("foc").properties
        assert recorder.of(EventType.DEVICE_METHOD_CALLED) == []

    @pytest.mark.asyncio
    async def test_missing_device(self, dispatcher, refresh, recorder):
        ok = await dispatcher.dispatch("ghost", "focuser", "halt")

        assert ok is False
        errors = recorder.of(EventType.DEVICE_API_ERROR)
        assert len(errors) == 1
        assert isinstance(errors[0].data["exception"], DeviceNotFoundError)
        refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_type_mismatch(self, dispatcher, registry, clients, refresh, recorder):
        add_connected(registry, "cam", "camera")

        ok = await dispatcher.dispatch("cam", "telescope", "park")

        assert ok is False
        assert clients["cam"].puts == []
        errors = recorder.of(EventType.DEVICE_API_ERROR)
        assert len(errors) == 1
        assert isinstance(errors[0].data["exception"], DeviceTypeMismatchError)

    @pytest.mark.asyncio
    async def test_get_failure_returns_none(self, dispatcher, registry, clients, recorder):
        add_connected(registry, "oc", "observingconditions")
        clients["oc"].fail("sensordescription", network_error())

        value = await dispatcher.get("oc", "observingconditions", "sensordescription", {"SensorName": "Humidity"})

        assert value is None
        assert len(recorder.of(EventType.DEVICE_API_ERROR)) == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_is_contained(self, registry, clients):
        add_connected(registry, "foc", "focuser")
        registry.refresh = AsyncMock(side_effect=RuntimeError("poll blew up"))
        dispatcher = ActionDispatcher(registry)

        assert await dispatcher.dispatch("foc", "focuser", "halt") is True


class TestDescribeError:

    def test_alpaca_error_payload(self):
        payload = describe_error(not_implemented("move"))
        assert payload["type"] == "device"
        assert payload["error_number"] == 0x400

    def test_plain_exception_payload(self):
        assert describe_error(ValueError("bad")) == {"message": "bad", "type": "ValueError"}
