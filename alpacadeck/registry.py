"""
AlpacaDeck Device Registry

In-memory map from device id to Device record. The registry owns each
device's Alpaca client, runs the connection state machine, merges
property updates (emitting one change event per changed key) and starts
or stops the device-type pollers on connect and disconnect.

Pollers are registered per device type; any other per-device teardown
(the camera exposure tracker) registers a teardown hook that runs when a
device is disconnected or removed.

Usage:
    bus = EventBus()
    registry = DeviceRegistry(bus)
    registry.add_device(Device(id="cam-1", type="camera",
                               api_base_url="http://localhost:11111"))
    await registry.connect("cam-1")
"""

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from alpacadeck.config import AlpacaConfig
from alpacadeck.events import EventBus, EventType
from alpacadeck.exceptions import (
    DeviceConnectionError,
    DeviceNotFoundError,
    InvalidStateTransitionError,
    PropertyValidationError,
)
from alpacadeck.types import (
    Device,
    DeviceStatus,
    DeviceType,
    PropertyBag,
    StateChange,
    is_valid_transition,
)
from services.alpaca.alpaca_client import AlpacaClient
from services.polling.profiles import PROFILES, DeviceProfile, matches_kind

logger = logging.getLogger(__name__)

# host:port:type:number, the id format used for discovered devices
DISCOVERED_ID_PATTERN = re.compile(r"^(?P<host>.+):(?P<port>\d+):(?P<type>[a-z]+):(?P<num>\d+)$")

UPDATABLE_FIELDS = ("name", "api_base_url", "device_num", "unique_id", "is_simulation")
ADDRESS_FIELDS = ("api_base_url", "device_num")


class DevicePoller(Protocol):
    """Interface the registry needs from a device-type poller."""

    device_type: DeviceType

    async def fetch_capabilities(self, device_id: str) -> PropertyBag:
        ...

    def start(self, device_id: str) -> None:
        ...

    def stop(self, device_id: str) -> None:
        ...

    async def poll_once(self, device_id: str) -> bool:
        ...


ClientFactory = Callable[[Device], AlpacaClient]
TeardownHook = Callable[[str], None]


class DeviceRegistry:
    """Device records, clients and connection lifecycle.

    Args:
        event_bus: Bus receiving registry and property events
        alpaca_config: Transport settings for clients created by the
                       default factory
        client_factory: Builds a client for a device with an api_base_url
        profiles: Device-type profiles providing property schemas
    """

    def __init__(
        self,
        event_bus: EventBus,
        alpaca_config: Optional[AlpacaConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        profiles: Optional[Dict[DeviceType, DeviceProfile]] = None,
    ):
        self.event_bus = event_bus
        self.alpaca_config = alpaca_config or AlpacaConfig()
        self._client_factory = client_factory or self._default_client_factory
        self._profiles = profiles or PROFILES
        self._devices: Dict[str, Device] = {}
        self._clients: Dict[str, AlpacaClient] = {}
        self._pollers: Dict[DeviceType, DevicePoller] = {}
        self._teardown_hooks: List[TeardownHook] = []
        self.selected_device_id: Optional[str] = None

    def _default_client_factory(self, device: Device) -> AlpacaClient:
        return AlpacaClient(
            device.api_base_url,
            device.type.value,
            device.device_num,
            timeout=self.alpaca_config.request_timeout,
            retries=self.alpaca_config.retries,
            retry_delay=self.alpaca_config.retry_delay,
        )

    # =========================================================================
    # Poller Registration
    # =========================================================================

    def register_poller(self, poller: DevicePoller) -> None:
        """Register the poller responsible for one device type."""
        self._pollers[poller.device_type] = poller

    def get_poller(self, device_type: Union[str, DeviceType]) -> Optional[DevicePoller]:
        return self._pollers.get(DeviceType.parse(device_type))

    def add_teardown_hook(self, hook: TeardownHook) -> None:
        """Register a callback run with the device id on disconnect/removal."""
        self._teardown_hooks.append(hook)

    def _stop_polling(self, device_id: str) -> None:
        device = self._devices.get(device_id)
        if device is not None:
            poller = self._pollers.get(device.type)
            if poller is not None:
                poller.stop(device_id)
        for hook in self._teardown_hooks:
            try:
                hook(device_id)
            except Exception as e:
                logger.error(f"Teardown hook failed for {device_id}: {e}")

    # =========================================================================
    # Lookup
    # =========================================================================

    def get_device(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def require_device(self, device_id: str) -> Device:
        """Return a device or raise DeviceNotFoundError."""
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def get_devices(self) -> List[Device]:
        return list(self._devices.values())

    def get_devices_by_type(self, device_type: Union[str, DeviceType]) -> List[Device]:
        wanted = DeviceType.parse(device_type)
        return [d for d in self._devices.values() if d.type == wanted]

    def has_device(self, device_id: str) -> bool:
        return device_id in self._devices

    def get_client(self, device_id: str) -> Optional[AlpacaClient]:
        return self._clients.get(device_id)

    def select_device(self, device_id: str) -> Device:
        device = self.require_device(device_id)
        self.selected_device_id = device_id
        return device

    @property
    def selected_device(self) -> Optional[Device]:
        if self.selected_device_id is None:
            return None
        return self._devices.get(self.selected_device_id)

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    # =========================================================================
    # Add / Update / Remove
    # =========================================================================

    def add_device(self, device: Union[Device, Dict[str, Any]], silent: bool = False) -> Device:
        """Register a device and create its client.

        Accepts a Device or a dict of Device fields. A device without an
        ``api_base_url`` whose id has the ``host:port:type:number`` form
        gets its URL and number from the id.

        Raises:
            ValueError: Missing id, unknown type or duplicate id
        """
        if isinstance(device, dict):
            if not device.get("id"):
                raise ValueError("Device id is required")
            device = Device(**device)
        if not device.id:
            raise ValueError("Device id is required")
        if device.id in self._devices:
            raise ValueError(f"Device already registered: {device.id}")

        if not device.api_base_url:
            match = DISCOVERED_ID_PATTERN.match(device.id)
            if match:
                device.api_base_url = f"http://{match.group('host')}:{match.group('port')}"
                device.device_num = int(match.group("num"))

        self._devices[device.id] = device
        if device.api_base_url:
            self._clients[device.id] = self._client_factory(device)

        logger.info(f"Added {device.type.value} device {device.id}")
        if not silent:
            self.event_bus.emit(EventType.DEVICE_ADDED, device.id, device=device.to_dict())
        return device

    def create_simulated_device(
        self,
        device_type: Union[str, DeviceType],
        name: Optional[str] = None,
        api_base_url: Optional[str] = None,
        properties: Optional[PropertyBag] = None,
    ) -> Device:
        """Add a simulated device with a generated ``sim-{type}-{ms}`` id."""
        kind = DeviceType.parse(device_type)
        base_id = f"sim-{kind.value}-{int(time.time() * 1000)}"
        device_id = base_id
        suffix = 1
        while device_id in self._devices:
            device_id = f"{base_id}-{suffix}"
            suffix += 1
        device = Device(
            id=device_id,
            type=kind,
            name=name or f"Simulated {kind.value}",
            api_base_url=api_base_url,
            properties=dict(properties or {}),
            is_simulation=True,
        )
        return self.add_device(device)

    async def update_device(self, device_id: str, **changes: Any) -> Device:
        """Update identity fields; a new address replaces the client.

        The address (``api_base_url`` or ``device_num``) can only change
        while the device is idle or in error, so a connected device always
        keeps the client it connected through.

        Raises:
            DeviceNotFoundError: Unknown device
            ValueError: Field cannot be updated this way, or the address
                        changed while the device is not idle
        """
        device = self.require_device(device_id)
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        address_changed = any(
            key in changes and changes[key] != getattr(device, key)
            for key in ADDRESS_FIELDS
        )
        if address_changed and device.status not in (DeviceStatus.IDLE, DeviceStatus.ERROR):
            raise ValueError(
                f"Cannot change the address of {device_id} while {device.status.value}; "
                "disconnect first"
            )

        for key, value in changes.items():
            setattr(device, key, value)

        if address_changed:
            old_client = self._clients.pop(device_id, None)
            if old_client is not None:
                await old_client.close()
            if device.api_base_url:
                self._clients[device_id] = self._client_factory(device)

        self.event_bus.emit(EventType.DEVICE_UPDATED, device_id, changes=dict(changes))
        return device

    async def remove_device(self, device_id: str) -> bool:
        """Stop polling, close the client and delete the record."""
        if device_id not in self._devices:
            return False

        self._stop_polling(device_id)
        client = self._clients.pop(device_id, None)
        if client is not None:
            await client.close()
        del self._devices[device_id]
        if self.selected_device_id == device_id:
            self.selected_device_id = None

        logger.info(f"Removed device {device_id}")
        self.event_bus.emit(EventType.DEVICE_REMOVED, device_id)
        return True

    async def clear_devices(self) -> None:
        for device_id in list(self._devices):
            await self.remove_device(device_id)

    async def close(self) -> None:
        """Stop all polling and close every client."""
        for device_id in list(self._devices):
            self._stop_polling(device_id)
        for client in self._clients.values():
            await client.close()

    # =========================================================================
    # Properties
    # =========================================================================

    def validate_property(self, device_id: str, name: str, value: Any) -> None:
        """Check one value against the device-type schema.

        Raises:
            DeviceNotFoundError: Unknown device
            PropertyValidationError: Value has the wrong kind
        """
        device = self.require_device(device_id)
        profile = self._profiles.get(device.type)
        kind = profile.expected_kind(name) if profile else None
        if kind is not None and not matches_kind(kind, value):
            raise PropertyValidationError(name, kind, value)

    def update_properties(
        self,
        device_id: str,
        partial: PropertyBag,
        optimistic: bool = False,
        strict: bool = False,
    ) -> PropertyBag:
        """Shallow-merge values into a device's property bag.

        Values that fail the device-type schema are dropped with a warning,
        or raise when ``strict`` is set (nothing is merged in that case).
        Each key whose value changed produces one devicePropertyChanged
        event. A confirmed (non-optimistic) value clears the key's
        optimistic tag.

        Returns:
            The keys and values that actually changed

        Raises:
            DeviceNotFoundError: Unknown device
            PropertyValidationError: Schema mismatch with ``strict`` set
        """
        device = self.require_device(device_id)
        changes: PropertyBag = {}

        accepted: PropertyBag = {}
        for key, value in partial.items():
            try:
                self.validate_property(device_id, key, value)
            except PropertyValidationError as e:
                if strict:
                    raise
                logger.warning(f"Rejected {key}={value!r} for {device_id}: expected {e.expected}")
                continue
            accepted[key] = value

        for key, value in accepted.items():
            if optimistic:
                device.optimistic_keys.add(key)
            else:
                device.optimistic_keys.discard(key)

            missing = key not in device.properties
            previous = device.properties.get(key)
            if not missing and previous == value and type(previous) is type(value):
                continue

            device.properties[key] = value
            changes[key] = value
            self.event_bus.emit(
                EventType.DEVICE_PROPERTY_CHANGED,
                device_id,
                property=key,
                value=value,
                previous=previous,
                optimistic=optimistic,
            )

        if any(key.lower().startswith(("can", "has")) for key in changes):
            self.update_device_capabilities(device_id)
        return changes

    def update_device_capabilities(self, device_id: str) -> None:
        """Derive ``capabilities`` from can* and ``attributes`` from has*."""
        device = self.require_device(device_id)
        capabilities = set()
        attributes = set()
        for key, value in device.properties.items():
            lowered = key.lower()
            if value is not True:
                continue
            if lowered.startswith("can"):
                capabilities.add(lowered[3:])
            elif lowered.startswith("has"):
                attributes.add(lowered[3:])
        if capabilities == device.capabilities and attributes == device.attributes:
            return
        device.capabilities = capabilities
        device.attributes = attributes
        self.event_bus.emit(
            EventType.DEVICE_UPDATED,
            device_id,
            capabilities=sorted(capabilities),
            attributes=sorted(attributes),
        )

    def device_supports(self, device_id: str, capability: str) -> bool:
        """Check a can* capability, with or without the prefix."""
        device = self._devices.get(device_id)
        if device is None:
            return False
        name = capability.lower()
        if name.startswith("can"):
            name = name[3:]
        return name in device.capabilities

    def device_has(self, device_id: str, attribute: str) -> bool:
        """Check a has* attribute, with or without the prefix."""
        device = self._devices.get(device_id)
        if device is None:
            return False
        name = attribute.lower()
        if name.startswith("has"):
            name = name[3:]
        return name in device.attributes

    async def refresh(self, device_id: str) -> bool:
        """Run one poll of the device's type poller, if one is registered."""
        device = self._devices.get(device_id)
        if device is None:
            return False
        poller = self._pollers.get(device.type)
        if poller is None:
            return False
        return await poller.poll_once(device_id)

    # =========================================================================
    # Connection State Machine
    # =========================================================================

    def set_status(self, device_id: str, status: DeviceStatus) -> None:
        """Apply a validated status transition.

        Raises:
            DeviceNotFoundError: Unknown device
            InvalidStateTransitionError: Transition not allowed
        """
        device = self.require_device(device_id)
        current = device.status
        if not is_valid_transition(current, status):
            raise InvalidStateTransitionError(device_id, current.value, status.value)
        self._record_status(device, status)

    def _record_status(self, device: Device, status: DeviceStatus) -> None:
        change = StateChange(device.status, status)
        device.state_history.append(change)
        device.status = status
        logger.debug(f"{device.id}: {change.from_status.value} -> {status.value}")
        self.event_bus.emit(EventType.DEVICE_UPDATED, device.id, status=status.value)

    def reset(self, device_id: str) -> bool:
        """Return a device from ``error`` to ``idle`` so it can reconnect."""
        device = self.require_device(device_id)
        if device.status != DeviceStatus.ERROR:
            return False
        self._record_status(device, DeviceStatus.IDLE)
        return True

    async def connect(self, device_id: str) -> bool:
        """Connect a device and start its poller.

        Returns:
            True once connected (also when already connected)

        Raises:
            DeviceNotFoundError: Unknown device
            InvalidStateTransitionError: Device is not idle
            DeviceConnectionError: The device refused or could not be reached
        """
        device = self.require_device(device_id)
        if device.status == DeviceStatus.CONNECTED:
            return True

        self.set_status(device_id, DeviceStatus.CONNECTING)
        client = self._clients.get(device_id)
        try:
            if client is None:
                raise DeviceConnectionError(
                    "Device has no Alpaca endpoint", device_id, device.type.value
                )
            await client.set_property("connected", True)
        except Exception as e:
            self.set_status(device_id, DeviceStatus.ERROR)
            logger.error(f"Failed to connect {device_id}: {e}")
            self.event_bus.emit(
                EventType.DEVICE_CONNECTION_ERROR,
                device_id,
                operation="connect",
                error=str(e),
            )
            if isinstance(e, DeviceConnectionError):
                raise
            raise DeviceConnectionError(
                f"Failed to connect {device_id}: {e}", device_id, device.type.value, cause=e
            ) from e

        self.set_status(device_id, DeviceStatus.CONNECTED)
        logger.info(f"Connected {device.type.value} {device_id}")
        self.event_bus.emit(EventType.DEVICE_CONNECTED, device_id)

        poller = self._pollers.get(device.type)
        if poller is not None:
            await poller.fetch_capabilities(device_id)
            poller.start(device_id)
        return True

    async def disconnect(self, device_id: str) -> bool:
        """Stop polling and disconnect a device.

        Returns:
            True if disconnected, False if the device was already idle

        Raises:
            DeviceNotFoundError: Unknown device
            InvalidStateTransitionError: Device is connecting or in error
            DeviceConnectionError: The device failed to disconnect
        """
        device = self.require_device(device_id)
        if device.status == DeviceStatus.IDLE:
            logger.info(f"Device {device_id} is already disconnected")
            return False

        self.set_status(device_id, DeviceStatus.DISCONNECTING)
        self._stop_polling(device_id)
        client = self._clients.get(device_id)
        try:
            if client is not None:
                await client.set_property("connected", False)
        except Exception as e:
            self.set_status(device_id, DeviceStatus.ERROR)
            logger.error(f"Failed to disconnect {device_id}: {e}")
            self.event_bus.emit(
                EventType.DEVICE_CONNECTION_ERROR,
                device_id,
                operation="disconnect",
                error=str(e),
            )
            raise DeviceConnectionError(
                f"Failed to disconnect {device_id}: {e}", device_id, device.type.value, cause=e
            ) from e

        self.set_status(device_id, DeviceStatus.IDLE)
        device.properties.clear()
        device.optimistic_keys.clear()
        device.capabilities.clear()
        device.attributes.clear()
        logger.info(f"Disconnected {device.type.value} {device_id}")
        self.event_bus.emit(EventType.DEVICE_DISCONNECTED, device_id)
        return True
