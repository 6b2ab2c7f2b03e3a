"""
AlpacaDeck - ASCOM Alpaca device polling and state reconciliation

Keeps an in-memory model of Alpaca devices (telescopes, cameras,
focusers, domes and the rest) synchronised with the hardware by polling
their properties, dispatching commands, tracking camera exposures and
broadcasting every change as an event.

Architecture:
    - Device Registry: device records, clients, connection lifecycle
    - Property Poller: one polling manager per device type
    - Action Dispatcher: one template for every command
    - Exposure Tracker: camera exposure lifecycle and image download
    - Event Bus: typed events with batching
"""

__version__ = "0.1.0"

VERSION_INFO = (0, 1, 0)

from alpacadeck.exceptions import AlpacaDeckError

from alpacadeck.types import (
    Device,
    DeviceStatus,
    DeviceType,
)

from alpacadeck.events import (
    DeviceEvent,
    EventBus,
    EventType,
)
