"""
AlpacaDeck wiring.

Builds the event bus, device registry, one property poller per device
type, the action dispatcher, the exposure tracker and discovery from a
single AlpacaDeckConfig, and hands out per-device command adapters.

Usage:
    observatory = create_observatory()
    device = observatory.registry.add_device({
        "id": "scope", "type": "telescope",
        "api_base_url": "http://localhost:11111",
    })
    await observatory.registry.connect("scope")
    await observatory.adapter("scope").set_tracking(True)
    await observatory.shutdown()
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from alpacadeck.config import AlpacaDeckConfig
from alpacadeck.events import DeviceEvent, EventBus, EventType
from alpacadeck.registry import ClientFactory, DeviceRegistry
from alpacadeck.types import DeviceType
from services.actions.dispatcher import ActionDispatcher
from services.alpaca.devices import AlpacaDeviceBase, create_device_adapter
from services.alpaca.discovery import AlpacaDiscovery, DiscoveryService
from services.camera.exposure_tracker import ExposureTracker
from services.polling.profiles import PROFILES
from services.polling.property_poller import PropertyPoller

logger = logging.getLogger(__name__)


class Observatory:
    """
    All device-core components for one set of devices.

    Args:
        config: Configuration; defaults apply when omitted
        client_factory: Overrides how Alpaca clients are built
        discovery: Overrides network discovery
        sleep: Coroutine used by pollers and the exposure tracker
    """

    def __init__(
        self,
        config: Optional[AlpacaDeckConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        discovery: Optional[AlpacaDiscovery] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or AlpacaDeckConfig()
        self.event_bus = EventBus()
        self.registry = DeviceRegistry(self.event_bus, self.config.alpaca, client_factory)

        self.pollers: Dict[DeviceType, PropertyPoller] = {}
        for device_type, profile in PROFILES.items():
            poller = PropertyPoller(self.registry, profile, self.config.polling, sleep=sleep)
            self.registry.register_poller(poller)
            self.pollers[device_type] = poller

        self.dispatcher = ActionDispatcher(self.registry)
        self.exposure_tracker = ExposureTracker(
            self.dispatcher,
            poll_interval=self.config.exposure.poll_interval,
            max_wait_time=self.config.exposure.max_wait_time,
            sleep=sleep,
        )
        self.discovery = DiscoveryService(
            self.registry,
            self.event_bus,
            discovery or AlpacaDiscovery(self.config.discovery),
            auto_add=self.config.discovery.auto_add,
        )

        self._adapters: Dict[str, AlpacaDeviceBase] = {}
        self.event_bus.on(EventType.DEVICE_REMOVED, self._forget_adapter)

    def _forget_adapter(self, event: DeviceEvent) -> None:
        self._adapters.pop(event.device_id, None)

    def adapter(self, device_id: str) -> AlpacaDeviceBase:
        """
        Command adapter for a registered device.

        Raises:
            DeviceNotFoundError: Unknown device id
        """
        adapter = self._adapters.get(device_id)
        if adapter is None:
            device = self.registry.require_device(device_id)
            adapter = create_device_adapter(
                device.type, self.dispatcher, device_id, self.exposure_tracker
            )
            self._adapters[device_id] = adapter
        return adapter

    async def shutdown(self) -> None:
        """Stop polling and exposure tracking, then close every client."""
        logger.info("Shutting down device core")
        await self.registry.close()
        self._adapters.clear()


def create_observatory(config: Optional[AlpacaDeckConfig] = None, **kwargs: Any) -> Observatory:
    """Build an Observatory from ``config`` (or defaults)."""
    return Observatory(config, **kwargs)
