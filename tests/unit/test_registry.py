"""
AlpacaDeck Unit Tests - Device Registry

Covers device records, the property merge, capability derivation and the
connection state machine.

Run:
    pytest tests/unit/test_registry.py -v
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from alpacadeck.events import EventType
from alpacadeck.exceptions import (
    DeviceConnectionError,
    DeviceNotFoundError,
    InvalidStateTransitionError,
    PropertyValidationError,
)
from alpacadeck.types import DeviceStatus, DeviceType, VALID_TRANSITIONS, is_valid_transition
from tests.mocks import MockAlpacaClient, add_connected, network_error


# =============================================================================
# Add / Remove
# =============================================================================

class TestAddRemove:
    """Device registration and removal."""

    def test_add_device_emits_device_added(self, registry, recorder):
        device = registry.add_device({"id": "cam", "type": "Camera", "api_base_url": "http://h:1"})

        assert device.type is DeviceType.CAMERA
        assert device.status is DeviceStatus.IDLE
        assert device.name == "cam"
        assert registry.get_client("cam") is not None
        assert recorder.types == [EventType.DEVICE_ADDED]

    def test_add_device_without_id_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.add_device({"type": "camera"})

    def test_add_duplicate_rejected(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})
        with pytest.raises(ValueError, match="already registered"):
            registry.add_device({"id": "cam", "type": "camera"})

    def test_unknown_type_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.add_device({"id": "x", "type": "toaster"})

    def test_discovered_id_fills_endpoint(self, registry):
        """``host:port:type:number`` ids provide the URL and device number."""
        device = registry.add_device({"id": "10.0.0.5:11111:focuser:2", "type": "focuser"})

        assert device.api_base_url == "http://10.0.0.5:11111"
        assert device.device_num == 2

    def test_silent_add_emits_nothing(self, registry, recorder):
        registry.add_device({"id": "cam", "type": "camera"}, silent=True)
        assert recorder.events == []

    def test_simulated_device_ids_are_unique(self, registry):
        first = registry.create_simulated_device("camera")
        second = registry.create_simulated_device("camera")

        assert first.id.startswith("sim-camera-")
        assert first.id != second.id
        assert first.is_simulation

    @pytest.mark.asyncio
    async def test_remove_device_closes_client(self, registry, clients, recorder):
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://h:1"})
        registry.select_device("cam")

        assert await registry.remove_device("cam") is True

        assert "cam" not in registry
        assert clients["cam"].closed
        assert registry.selected_device is None
        assert recorder.types[-1] == EventType.DEVICE_REMOVED

    @pytest.mark.asyncio
    async def test_remove_unknown_device_returns_false(self, registry):
        assert await registry.remove_device("ghost") is False

    @pytest.mark.asyncio
    async def test_remove_runs_teardown_hooks(self, registry):
        hook = MagicMock()
        registry.add_teardown_hook(hook)
        registry.add_device({"id": "cam", "type": "camera"})

        await registry.remove_device("cam")

        hook.assert_called_once_with("cam")

    @pytest.mark.asyncio
    async def test_update_device_replaces_client_on_new_url(self, registry, clients):
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://old:1"})
        old_client = clients.pop("cam")

        await registry.update_device("cam", api_base_url="http://new:2")

        assert old_client.closed
        assert registry.get_client("cam") is clients["cam"]
        assert registry.get_device("cam").api_base_url == "http://new:2"

    @pytest.mark.asyncio
    async def test_update_device_rejects_unknown_fields(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})
        with pytest.raises(ValueError):
            await registry.update_device("cam", status=DeviceStatus.CONNECTED)

    @pytest.mark.asyncio
    async def test_update_device_keeps_client_of_connected_device(self, registry, clients, recorder):
        """A connected device cannot lose or swap its client."""
        add_connected(registry, "cam", "camera")
        client = clients["cam"]

        with pytest.raises(ValueError, match="disconnect first"):
            await registry.update_device("cam", api_base_url=None)
        with pytest.raises(ValueError, match="disconnect first"):
            await registry.update_device("cam", api_base_url="http://new:2")
        with pytest.raises(ValueError, match="disconnect first"):
            await registry.update_device("cam", device_num=3)

        device = registry.get_device("cam")
        assert device.status is DeviceStatus.CONNECTED
        assert device.api_base_url == "http://localhost:11111"
        assert device.device_num == 0
        assert registry.get_client("cam") is client
        assert not client.closed
        assert EventType.DEVICE_UPDATED not in recorder.types

    @pytest.mark.asyncio
    async def test_update_device_renames_connected_device(self, registry, clients):
        add_connected(registry, "cam", "camera")

        await registry.update_device("cam", name="Main imager", api_base_url="http://localhost:11111")

        assert registry.get_device("cam").name == "Main imager"
        assert registry.get_client("cam") is clients["cam"]

    @pytest.mark.asyncio
    async def test_update_device_num_replaces_client_when_idle(self, registry, clients):
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://h:1"})
        old_client = clients.pop("cam")

        await registry.update_device("cam", device_num=1)

        assert old_client.closed
        assert registry.get_client("cam") is clients["cam"]

    @pytest.mark.asyncio
    async def test_update_device_clears_url_when_idle(self, registry, clients):
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://h:1"})

        await registry.update_device("cam", api_base_url=None)

        assert clients["cam"].closed
        assert registry.get_client("cam") is None

    def test_get_devices_by_type(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})
        registry.add_device({"id": "scope", "type": "telescope"})

        assert [d.id for d in registry.get_devices_by_type("telescope")] == ["scope"]
        assert len(registry) == 2


# =============================================================================
# Property Merge
# =============================================================================

class TestUpdateProperties:
    """Shallow merge with per-key change events."""

    def test_merge_keeps_untouched_keys(self, registry):
        """{a:1,b:2} then {a:1,c:3} leaves {a:1,b:2,c:3}."""
        registry.add_device({"id": "dev", "type": "switch"})

        registry.update_properties("dev", {"a": 1, "b": 2})
        changes = registry.update_properties("dev", {"a": 1, "c": 3})

        assert registry.get_device("dev").properties == {"a": 1, "b": 2, "c": 3}
        assert changes == {"c": 3}

    def test_change_event_per_changed_key(self, registry, recorder):
        registry.add_device({"id": "dev", "type": "switch"}, silent=True)
        registry.update_properties("dev", {"a": 1})
        recorder.clear()

        registry.update_properties("dev", {"a": 1, "b": 2})

        events = recorder.of(EventType.DEVICE_PROPERTY_CHANGED)
        assert len(events) == 1
        assert events[0].data["property"] == "b"
        assert events[0].data["previous"] is None

    def test_schema_rejects_wrong_kind(self, registry):
        """A string where the camera schema wants a number is dropped."""
        registry.add_device({"id": "cam", "type": "camera"})

        changes = registry.update_properties("cam", {"ccdtemperature": "cold", "gain": 100})

        assert changes == {"gain": 100}
        assert "ccdtemperature" not in registry.get_device("cam").properties

    def test_strict_merge_raises_and_merges_nothing(self, registry, recorder):
        registry.add_device({"id": "cam", "type": "camera"}, silent=True)

        with pytest.raises(PropertyValidationError) as exc_info:
            registry.update_properties("cam", {"gain": 100, "ccdtemperature": "cold"}, strict=True)

        assert exc_info.value.property_name == "ccdtemperature"
        assert exc_info.value.value == "cold"
        assert registry.get_device("cam").properties == {}
        assert recorder.events == []

    def test_validate_property(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})

        registry.validate_property("cam", "ccdtemperature", -10.5)
        registry.validate_property("cam", "somethingunlisted", "anything")
        with pytest.raises(PropertyValidationError):
            registry.validate_property("cam", "binx", True)
        with pytest.raises(DeviceNotFoundError):
            registry.validate_property("ghost", "binx", 1)

    def test_bool_is_not_an_int(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})
        assert registry.update_properties("cam", {"binx": True}) == {}

    def test_optimistic_values_are_tagged_until_confirmed(self, registry):
        registry.add_device({"id": "foc", "type": "focuser"})

        registry.update_properties("foc", {"ismoving": True}, optimistic=True)
        assert registry.get_device("foc").is_optimistic("ismoving")

        registry.update_properties("foc", {"ismoving": True})
        assert not registry.get_device("foc").is_optimistic("ismoving")

    def test_unknown_device_raises(self, registry):
        with pytest.raises(DeviceNotFoundError):
            registry.update_properties("ghost", {"a": 1})

    def test_capabilities_derived_from_can_and_has(self, registry, recorder):
        registry.add_device({"id": "cam", "type": "camera"})

        registry.update_properties("cam", {"canabortexposure": True, "canstopexposure": False, "hasGain": True})

        assert registry.device_supports("cam", "canAbortExposure")
        assert registry.device_supports("cam", "abortexposure")
        assert not registry.device_supports("cam", "stopexposure")
        assert registry.device_has("cam", "gain")
        updated = [e for e in recorder.of(EventType.DEVICE_UPDATED) if "capabilities" in e.data]
        assert updated[-1].data["capabilities"] == ["abortexposure"]


# =============================================================================
# State Machine
# =============================================================================

class TestStateMachine:
    """Connection status transitions."""

    @pytest.mark.parametrize("from_status,to_status", sorted(VALID_TRANSITIONS))
    def test_valid_transitions(self, from_status, to_status):
        assert is_valid_transition(from_status, to_status)

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            (DeviceStatus.IDLE, DeviceStatus.CONNECTED),
            (DeviceStatus.IDLE, DeviceStatus.DISCONNECTING),
            (DeviceStatus.CONNECTED, DeviceStatus.IDLE),
            (DeviceStatus.CONNECTED, DeviceStatus.CONNECTING),
            (DeviceStatus.ERROR, DeviceStatus.CONNECTED),
            (DeviceStatus.DISCONNECTING, DeviceStatus.CONNECTED),
        ],
    )
    def test_invalid_transitions(self, from_status, to_status):
        assert not is_valid_transition(from_status, to_status)

    def test_set_status_rejects_invalid_transition(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})
        with pytest.raises(InvalidStateTransitionError):
            registry.set_status("cam", DeviceStatus.CONNECTED)
        assert registry.get_device("cam").status is DeviceStatus.IDLE

    def test_set_status_records_history(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})
        registry.set_status("cam", DeviceStatus.CONNECTING)

        history = registry.get_device("cam").state_history
        assert [(h.from_status, h.to_status) for h in history] == [
            (DeviceStatus.IDLE, DeviceStatus.CONNECTING)
        ]

    def test_reset_only_from_error(self, registry):
        registry.add_device({"id": "cam", "type": "camera"})
        assert registry.reset("cam") is False

        registry.set_status("cam", DeviceStatus.CONNECTING)
        registry.set_status("cam", DeviceStatus.ERROR)
        assert registry.reset("cam") is True
        assert registry.get_device("cam").status is DeviceStatus.IDLE


# =============================================================================
# Connect / Disconnect
# =============================================================================

class TestConnection:
    """connect() and disconnect() against a mock client."""

    @pytest.mark.asyncio
    async def test_connect_sets_connected_and_starts_poller(self, registry, clients, recorder):
        clients["cam"] = MockAlpacaClient()
        poller = MagicMock()
        poller.device_type = DeviceType.CAMERA
        poller.fetch_capabilities = AsyncMock(return_value={})
        registry.register_poller(poller)
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://h:1"})

        assert await registry.connect("cam") is True

        assert registry.get_device("cam").status is DeviceStatus.CONNECTED
        assert clients["cam"].puts == [("connected", {"Connected": True})]
        poller.fetch_capabilities.assert_awaited_once_with("cam")
        poller.start.assert_called_once_with("cam")
        assert EventType.DEVICE_CONNECTED in recorder.types

    @pytest.mark.asyncio
    async def test_connect_when_connected_is_noop(self, registry, clients):
        add_connected(registry, "cam", "camera")
        assert await registry.connect("cam") is True
        assert clients["cam"].calls == []

    @pytest.mark.asyncio
    async def test_connect_failure_enters_error(self, registry, clients, recorder):
        clients["cam"] = MockAlpacaClient()
        clients["cam"].fail("connected", network_error("connected"))
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://h:1"})

        with pytest.raises(DeviceConnectionError):
            await registry.connect("cam")

        assert registry.get_device("cam").status is DeviceStatus.ERROR
        errors = recorder.of(EventType.DEVICE_CONNECTION_ERROR)
        assert len(errors) == 1
        assert errors[0].data["operation"] == "connect"

    @pytest.mark.asyncio
    async def test_connect_without_endpoint_fails(self, registry):
        registry.add_device({"id": "local", "type": "camera"})
        with pytest.raises(DeviceConnectionError, match="no Alpaca endpoint"):
            await registry.connect("local")

    @pytest.mark.asyncio
    async def test_connect_from_error_requires_reset(self, registry, clients):
        clients["cam"] = MockAlpacaClient()
        clients["cam"].fail("connected")
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://h:1"})
        with pytest.raises(DeviceConnectionError):
            await registry.connect("cam")

        clients["cam"].recover()
        with pytest.raises(InvalidStateTransitionError):
            await registry.connect("cam")

        registry.reset("cam")
        assert await registry.connect("cam") is True

    @pytest.mark.asyncio
    async def test_disconnect_idle_returns_false(self, registry, clients):
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://h:1"})

        assert await registry.disconnect("cam") is False
        assert clients["cam"].calls == []

    @pytest.mark.asyncio
    async def test_disconnect_clears_state(self, registry, clients, recorder):
        device = add_connected(registry, "cam", "camera", {"gain": 100})
        registry.update_properties("cam", {"canabortexposure": True})
        poller = MagicMock()
        poller.device_type = DeviceType.CAMERA
        registry.register_poller(poller)

        assert await registry.disconnect("cam") is True

        assert device.status is DeviceStatus.IDLE
        assert device.properties == {}
        assert device.capabilities == set()
        poller.stop.assert_called_once_with("cam")
        assert clients["cam"].puts == [("connected", {"Connected": False})]
        assert recorder.types[-1] == EventType.DEVICE_DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_failure_enters_error(self, registry, clients):
        add_connected(registry, "cam", "camera")
        clients["cam"].fail("connected")

        with pytest.raises(DeviceConnectionError):
            await registry.disconnect("cam")

        assert registry.get_device("cam").status is DeviceStatus.ERROR
