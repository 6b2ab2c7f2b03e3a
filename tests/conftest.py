"""
Shared fixtures for AlpacaDeck tests.

Usage:
    # In test files, fixtures are automatically available:
    async def test_connect(registry, clients, recorder):
        clients["cam"] = MockAlpacaClient({"camerastate": 0})
        registry.add_device({"id": "cam", "type": "camera", "api_base_url": "http://sim"})
        await registry.connect("cam")
"""

from typing import Dict, List

import pytest

from alpacadeck.config import PollingConfig
from alpacadeck.events import DeviceEvent, EventBus, EventType
from alpacadeck.registry import DeviceRegistry
from alpacadeck.types import Device
from services.actions.dispatcher import ActionDispatcher
from tests.mocks import FakeClock, MockAlpacaClient


class EventRecorder:
    """Bus listener that keeps every event it receives."""

    def __init__(self):
        self.events: List[DeviceEvent] = []

    def __call__(self, event: DeviceEvent) -> None:
        self.events.append(event)

    def of(self, event_type: EventType) -> List[DeviceEvent]:
        return [e for e in self.events if e.type == event_type]

    @property
    def types(self) -> List[EventType]:
        return [e.type for e in self.events]

    def property_changes(self, name: str) -> List[object]:
        return [
            e.data["value"]
            for e in self.of(EventType.DEVICE_PROPERTY_CHANGED)
            if e.data["property"] == name
        ]

    def clear(self) -> None:
        self.events.clear()


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    """Record every event published on ``event_bus``."""
    events = EventRecorder()
    event_bus.add_listener(events)
    return events


@pytest.fixture
def clients() -> Dict[str, MockAlpacaClient]:
    """Mock clients by device id; preload one before adding the device."""
    return {}


@pytest.fixture
def registry(event_bus: EventBus, clients: Dict[str, MockAlpacaClient]) -> DeviceRegistry:
    def factory(device: Device) -> MockAlpacaClient:
        return clients.setdefault(device.id, MockAlpacaClient())

    return DeviceRegistry(event_bus, client_factory=factory)


@pytest.fixture
def dispatcher(registry: DeviceRegistry) -> ActionDispatcher:
    return ActionDispatcher(registry)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def polling_config() -> PollingConfig:
    return PollingConfig(use_device_state=False)
