"""
Alpaca device discovery.

Finds Alpaca servers on the local network with the UDP discovery
protocol (``alpacadiscovery1`` broadcast to port 32227) and lists the
devices each server exposes through the management API. Both steps use
the blocking ``alpyca`` helpers and run in the default executor.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from alpaca import discovery as alpaca_discovery
from alpaca import management as alpaca_management

from alpacadeck.config import DiscoveryConfig
from alpacadeck.events import EventBus, EventType
from alpacadeck.types import DeviceType

logger = logging.getLogger(__name__)


@dataclass
class AlpacaDevice:
    """A device advertised by an Alpaca server."""
    name: str
    device_type: DeviceType
    address: str
    port: int
    device_number: int = 0
    unique_id: str = ""
    discovered_at: datetime = field(default_factory=datetime.now)

    @property
    def endpoint(self) -> str:
        return f"http://{self.address}:{self.port}"

    @property
    def device_id(self) -> str:
        return f"{self.address}:{self.port}:{self.device_type.value}:{self.device_number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.device_id,
            "name": self.name,
            "type": self.device_type.value,
            "address": self.address,
            "port": self.port,
            "deviceNumber": self.device_number,
            "uniqueId": self.unique_id,
            "endpoint": self.endpoint,
        }


def split_server(server: str) -> Tuple[str, int]:
    """Split a ``host:port`` discovery answer."""
    host, _, port = server.rpartition(":")
    return host, int(port)


class AlpacaDiscovery:
    """
    Alpaca UDP discovery plus management API listing.

    Args:
        config: Discovery timing
        search: Blocking ``(numquery, timeout) -> ["host:port", ...]``
        configured_devices: Blocking ``("host:port") -> [dict, ...]``
    """

    def __init__(
        self,
        config: Optional[DiscoveryConfig] = None,
        search: Optional[Callable[[int, float], List[str]]] = None,
        configured_devices: Optional[Callable[[str], List[Dict[str, Any]]]] = None,
    ):
        self.config = config or DiscoveryConfig()
        self._search = search or alpaca_discovery.search_ipv4
        self._configured_devices = configured_devices or alpaca_management.configureddevices

    async def find_servers(self) -> List[str]:
        loop = asyncio.get_running_loop()
        servers = await loop.run_in_executor(
            None, self._search, self.config.num_queries, self.config.timeout
        )
        logger.info(f"Discovery found {len(servers)} Alpaca server(s)")
        return list(servers)

    async def list_devices(self, server: str) -> List[AlpacaDevice]:
        """List the devices configured on one ``host:port`` server."""
        loop = asyncio.get_running_loop()
        entries = await loop.run_in_executor(None, self._configured_devices, server)
        address, port = split_server(server)

        devices = []
        for entry in entries:
            try:
                device_type = DeviceType.parse(entry["DeviceType"])
            except (KeyError, ValueError):
                logger.debug(f"Skipping unsupported device on {server}: {entry}")
                continue
            devices.append(
                AlpacaDevice(
                    name=entry.get("DeviceName", device_type.value),
                    device_type=device_type,
                    address=address,
                    port=port,
                    device_number=int(entry.get("DeviceNumber", 0)),
                    unique_id=entry.get("UniqueID", ""),
                )
            )
        return devices

    async def discover(self) -> List[AlpacaDevice]:
        """Find every device on every responding server."""
        devices: List[AlpacaDevice] = []
        for server in await self.find_servers():
            try:
                devices.extend(await self.list_devices(server))
            except Exception as e:
                logger.warning(f"Could not list devices on {server}: {e}")
        return devices


class DiscoveryService:
    """
    Runs discovery and publishes the results on the event bus.

    Emits ``discoveryStarted``, one ``discoveryDeviceFound`` per device
    and ``discoveryStopped``. With ``auto_add`` the found devices are also
    registered, keyed ``{address}:{port}:{type}:{number}``.
    """

    def __init__(self, registry, event_bus: EventBus, discovery: AlpacaDiscovery, auto_add: bool = False):
        self.registry = registry
        self.event_bus = event_bus
        self.discovery = discovery
        self.auto_add = auto_add
        self.is_discovering = False
        self.devices: Dict[str, AlpacaDevice] = {}

    async def discover(self) -> List[AlpacaDevice]:
        if self.is_discovering:
            logger.warning("Discovery already in progress")
            return []

        self.is_discovering = True
        self.event_bus.emit(EventType.DISCOVERY_STARTED)
        found: List[AlpacaDevice] = []
        try:
            found = await self.discovery.discover()
        except Exception as e:
            logger.error(f"Discovery failed: {e}")
        finally:
            self.is_discovering = False

        for device in found:
            self.devices[device.device_id] = device
            self.event_bus.emit(EventType.DISCOVERY_DEVICE_FOUND, device.device_id, device=device.to_dict())
            if self.auto_add and not self.registry.has_device(device.device_id):
                self.registry.add_device({
                    "id": device.device_id,
                    "type": device.device_type,
                    "name": device.name,
                    "api_base_url": device.endpoint,
                    "device_num": device.device_number,
                    "unique_id": device.unique_id,
                })

        self.event_bus.emit(EventType.DISCOVERY_STOPPED, count=len(found))
        return found
