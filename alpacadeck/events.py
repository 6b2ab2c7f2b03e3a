"""
AlpacaDeck Event Bus

Synchronous fan-out of device lifecycle, property and command events to
listeners, with an optional batching mode that buffers events and
flushes them in arrival order.

Usage:
    bus = EventBus()
    bus.add_listener(lambda event: print(event.type, event.data))

    with bus.batch():
        bus.emit(EventType.DEVICE_PROPERTY_CHANGED, "cam-1", property="gain", value=100)
        bus.emit(EventType.DEVICE_PROPERTY_CHANGED, "cam-1", property="offset", value=10)
    # both events are delivered here, in order
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event kinds delivered on the bus."""
    # Registry lifecycle
    DEVICE_ADDED = "deviceAdded"
    DEVICE_REMOVED = "deviceRemoved"
    DEVICE_UPDATED = "deviceUpdated"
    DEVICE_CONNECTED = "deviceConnected"
    DEVICE_DISCONNECTED = "deviceDisconnected"
    DEVICE_CONNECTION_ERROR = "deviceConnectionError"

    # Properties and commands
    DEVICE_PROPERTY_CHANGED = "devicePropertyChanged"
    DEVICE_METHOD_CALLED = "deviceMethodCalled"
    DEVICE_API_ERROR = "deviceApiError"

    # Camera
    CAMERA_EXPOSURE_STARTED = "cameraExposureStarted"
    CAMERA_EXPOSURE_CHANGED = "cameraExposureChanged"
    CAMERA_EXPOSURE_COMPLETE = "cameraExposureComplete"
    CAMERA_EXPOSURE_ABORTED = "cameraExposureAborted"
    CAMERA_EXPOSURE_FAILED = "cameraExposureFailed"
    CAMERA_IMAGE_READY = "cameraImageReady"
    CAMERA_COOLER_CHANGED = "cameraCoolerChanged"
    CAMERA_BINNING_CHANGED = "cameraBinningChanged"

    # Telescope
    TELESCOPE_SLEW_STARTED = "telescopeSlewStarted"
    TELESCOPE_SLEW_COMPLETE = "telescopeSlewComplete"
    TELESCOPE_SLEW_ABORTED = "telescopeSlewAborted"
    TELESCOPE_SLEW_ERROR = "telescopeSlewError"
    TELESCOPE_TRACKING_CHANGED = "telescopeTrackingChanged"
    TELESCOPE_PARKED = "telescopeParked"
    TELESCOPE_UNPARKED = "telescopeUnparked"

    # Discovery
    DISCOVERY_STARTED = "discoveryStarted"
    DISCOVERY_STOPPED = "discoveryStopped"
    DISCOVERY_DEVICE_FOUND = "discoveryDeviceFound"


@dataclass
class DeviceEvent:
    """Event delivered to bus listeners."""
    type: EventType
    device_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


Listener = Callable[[DeviceEvent], None]


class EventBus:
    """Fan-out of DeviceEvents to registered listeners.

    Listeners receive every event; ``on`` registers a handler for a single
    event type. A listener that raises is logged and skipped so the
    remaining listeners still receive the event.

    ``start``/``end`` may be nested; events are flushed when the outermost
    batch ends.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self._handlers: Dict[EventType, List[Listener]] = {}
        self._buffer: List[DeviceEvent] = []
        self._batch_depth = 0

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def on(self, event_type: EventType, handler: Listener) -> None:
        """Register a handler for one event type."""
        handlers = self._handlers.setdefault(EventType(event_type), [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event_type: EventType, handler: Listener) -> None:
        handlers = self._handlers.get(EventType(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    @property
    def listener_count(self) -> int:
        return len(self._listeners) + sum(len(h) for h in self._handlers.values())

    # -------------------------------------------------------------------------
    # Emission
    # -------------------------------------------------------------------------

    def emit(
        self,
        event_type: EventType,
        device_id: Optional[str] = None,
        **data: Any,
    ) -> DeviceEvent:
        """Build and publish an event.

        Returns:
            The event, whether delivered now or buffered by a batch
        """
        event = DeviceEvent(type=EventType(event_type), device_id=device_id, data=data)
        self.publish(event)
        return event

    def publish(self, event: DeviceEvent) -> None:
        if self._batch_depth > 0:
            self._buffer.append(event)
            return
        self._deliver(event)

    def _deliver(self, event: DeviceEvent) -> None:
        recipients = list(self._listeners) + list(self._handlers.get(event.type, []))
        for listener in recipients:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for {event.type.value}: {e}")

    # -------------------------------------------------------------------------
    # Batching
    # -------------------------------------------------------------------------

    @property
    def is_batching(self) -> bool:
        return self._batch_depth > 0

    def start(self) -> None:
        """Begin buffering events."""
        self._batch_depth += 1

    def end(self) -> None:
        """Finish a batch, flushing buffered events when the outermost ends."""
        if self._batch_depth == 0:
            logger.warning("EventBus.end() called without matching start()")
            return
        self._batch_depth -= 1
        if self._batch_depth > 0:
            return
        pending, self._buffer = self._buffer, []
        for event in pending:
            self._deliver(event)

    @contextmanager
    def batch(self) -> Iterator["EventBus"]:
        """Context manager wrapping ``start``/``end``."""
        self.start()
        try:
            yield self
        finally:
            self.end()
