"""
AlpacaDeck Shared Type Definitions

Device model and connection state machine shared by the registry, the
pollers, the action dispatcher and the exposure tracker.

Types are organized by category:
    - Device identity (DeviceType)
    - Connection state machine (DeviceStatus, VALID_TRANSITIONS)
    - Alpaca enumerations (CameraState, CoverState, CalibratorState, ShutterState)
    - Device record (Device, StateChange)

Usage:
    from alpacadeck.types import Device, DeviceStatus, DeviceType
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple, TypeAlias

# JSON-compatible property values as returned by Alpaca servers
PropertyValue: TypeAlias = Any
PropertyBag: TypeAlias = Dict[str, PropertyValue]


# =============================================================================
# Device Identity
# =============================================================================

class DeviceType(str, Enum):
    """ASCOM Alpaca device types (lowercase, as used in URLs)."""
    CAMERA = "camera"
    TELESCOPE = "telescope"
    FOCUSER = "focuser"
    FILTERWHEEL = "filterwheel"
    DOME = "dome"
    ROTATOR = "rotator"
    OBSERVINGCONDITIONS = "observingconditions"
    SAFETYMONITOR = "safetymonitor"
    SWITCH = "switch"
    COVERCALIBRATOR = "covercalibrator"

    @classmethod
    def parse(cls, value: "str | DeviceType") -> "DeviceType":
        """Parse a device type name case-insensitively.

        Raises:
            ValueError: Unknown device type
        """
        if isinstance(value, DeviceType):
            return value
        return cls(str(value).strip().lower())


# =============================================================================
# Connection State Machine
# =============================================================================

class DeviceStatus(str, Enum):
    """Connection status of a device record."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    ERROR = "error"


VALID_TRANSITIONS: FrozenSet[Tuple[DeviceStatus, DeviceStatus]] = frozenset({
    (DeviceStatus.IDLE, DeviceStatus.CONNECTING),
    (DeviceStatus.CONNECTING, DeviceStatus.CONNECTED),
    (DeviceStatus.CONNECTING, DeviceStatus.ERROR),
    (DeviceStatus.CONNECTED, DeviceStatus.DISCONNECTING),
    (DeviceStatus.DISCONNECTING, DeviceStatus.IDLE),
    (DeviceStatus.DISCONNECTING, DeviceStatus.ERROR),
})


def is_valid_transition(from_status: DeviceStatus, to_status: DeviceStatus) -> bool:
    """Check whether a status change is allowed by the state machine."""
    return (from_status, to_status) in VALID_TRANSITIONS


# =============================================================================
# Alpaca Enumerations
# =============================================================================

class CameraState(IntEnum):
    """Alpaca ``camerastate`` values."""
    IDLE = 0
    WAITING = 1
    EXPOSING = 2
    READING = 3
    DOWNLOAD = 4
    ERROR = 5


class CoverState(IntEnum):
    """Alpaca ``coverstate`` values."""
    NOT_PRESENT = 0
    CLOSED = 1
    MOVING = 2
    OPEN = 3
    UNKNOWN = 4
    ERROR = 5


class CalibratorState(IntEnum):
    """Alpaca ``calibratorstate`` values."""
    NOT_PRESENT = 0
    OFF = 1
    NOT_READY = 2
    READY = 3
    UNKNOWN = 4
    ERROR = 5


class ShutterState(IntEnum):
    """Alpaca dome ``shutterstatus`` values."""
    OPEN = 0
    CLOSED = 1
    OPENING = 2
    CLOSING = 3
    ERROR = 4


# =============================================================================
# Device Record
# =============================================================================

@dataclass
class StateChange:
    """One entry of a device's connection history."""
    from_status: DeviceStatus
    to_status: DeviceStatus
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Device:
    """In-memory record of one physical or simulated instrument.

    ``properties`` holds the last-known values keyed by lowercase Alpaca
    property name, plus friendly aliases and tracker-derived values.
    ``optimistic_keys`` names the properties whose current value was set
    locally after a command and not yet confirmed by a poll.
    """
    id: str
    type: DeviceType
    name: str = ""
    device_num: int = 0
    api_base_url: Optional[str] = None
    status: DeviceStatus = DeviceStatus.IDLE
    properties: PropertyBag = field(default_factory=dict)
    capabilities: Set[str] = field(default_factory=set)
    attributes: Set[str] = field(default_factory=set)
    optimistic_keys: Set[str] = field(default_factory=set)
    state_history: List[StateChange] = field(default_factory=list)
    unique_id: str = ""
    is_simulation: bool = False

    def __post_init__(self):
        """Validate identity fields."""
        if not self.id:
            raise ValueError("Device id is required")
        self.type = DeviceType.parse(self.type)
        if self.device_num < 0:
            raise ValueError("device_num must be non-negative")
        if not self.name:
            self.name = self.id

    @property
    def is_connected(self) -> bool:
        return self.status == DeviceStatus.CONNECTED

    def is_optimistic(self, key: str) -> bool:
        """True if ``key`` holds an unconfirmed locally-assumed value."""
        return key in self.optimistic_keys

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "device_num": self.device_num,
            "api_base_url": self.api_base_url,
            "status": self.status.value,
            "properties": dict(self.properties),
            "capabilities": sorted(self.capabilities),
            "attributes": sorted(self.attributes),
            "optimistic": sorted(self.optimistic_keys),
            "state_history": [change.to_dict() for change in self.state_history],
            "unique_id": self.unique_id,
            "is_simulation": self.is_simulation,
        }
