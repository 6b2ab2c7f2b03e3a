"""
Per-device-type polling profiles.

A DeviceProfile tells the generic PropertyPoller what to fetch for one
Alpaca device type and how to interpret it:

    properties      dynamic properties fetched every tick
    capabilities    static properties fetched once, concurrently, on connect
    interval        default tick interval in seconds
    aliases         Alpaca name -> friendly name copies
    schema          Alpaca name -> expected value kind (validated on merge)
    select          conditional property list based on current properties
    parameterized   reads that need parameters (switch ids)
    derive          extra values computed from a merged snapshot
    on_change       emits device-type lifecycle events from changes

Profiles are plain data; PROFILES holds the defaults and
``get_profile(device_type)`` looks one up.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from alpacadeck.events import EventBus, EventType
from alpacadeck.types import DeviceType, PropertyBag

# (property key, Alpaca method, GET parameters)
ParameterizedRead = Tuple[str, str, Dict[str, Any]]


# ============================================================================
# Schema
# ============================================================================

BOOL = "bool"
INT = "int"
NUMBER = "number"
STRING = "string"
LIST = "list"


def matches_kind(kind: str, value: Any) -> bool:
    """Check a value against a schema kind."""
    if value is None:
        return False
    if kind == BOOL:
        return isinstance(value, bool)
    if kind == INT:
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == STRING:
        return isinstance(value, str)
    if kind == LIST:
        return isinstance(value, list)
    return True


# Logged at WARNING instead of DEBUG when a poll fails
IMPORTANT_PROPERTIES: FrozenSet[str] = frozenset({
    "camerastate",
    "imageready",
    "ccdtemperature",
    "rightascension",
    "declination",
    "tracking",
})


@dataclass(frozen=True)
class DeviceProfile:
    """Polling configuration for one device type."""
    device_type: DeviceType
    interval: float
    properties: Tuple[str, ...] = ()
    capabilities: Tuple[str, ...] = ()
    aliases: Dict[str, str] = field(default_factory=dict)
    schema: Dict[str, str] = field(default_factory=dict)
    select: Optional[Callable[[PropertyBag], List[str]]] = None
    parameterized: Optional[Callable[[PropertyBag], List[ParameterizedRead]]] = None
    capability_parameterized: Optional[Callable[[PropertyBag], List[ParameterizedRead]]] = None
    derive: Optional[Callable[[PropertyBag], PropertyBag]] = None
    on_change: Optional[Callable[[EventBus, str, PropertyBag, PropertyBag], None]] = None

    def poll_properties(self, properties: PropertyBag) -> List[str]:
        """Dynamic property names to fetch on the next tick."""
        if self.select is not None:
            return self.select(properties)
        return list(self.properties)

    def expected_kind(self, name: str) -> Optional[str]:
        """Schema kind for a property; ``can*`` capabilities are always bool."""
        if name in self.schema:
            return self.schema[name]
        if name.startswith("can"):
            return BOOL
        return None


def expand_values(profile: DeviceProfile, values: PropertyBag, current: PropertyBag) -> PropertyBag:
    """Return ``values`` plus friendly-name copies and derived values.

    ``current`` is the device's existing property bag; derived values are
    computed from it overlaid with ``values``.
    """
    result = dict(values)
    for name, alias in profile.aliases.items():
        if name in values:
            result[alias] = values[name]
    if profile.derive is not None:
        result.update(profile.derive({**current, **result}))
    return result


# ============================================================================
# Camera
# ============================================================================

CAMERA_PROPERTIES = (
    "camerastate",
    "ccdtemperature",
    "binx",
    "biny",
    "gain",
    "offset",
    "readoutmode",
    "startx",
    "starty",
    "numx",
    "numy",
)

CAMERA_CAPABILITIES = (
    "canabortexposure",
    "canasymmetricbin",
    "canfastreadout",
    "cangetcoolerpower",
    "canpulseguide",
    "cansetccdtemperature",
    "canstopexposure",
    "cameraxsize",
    "cameraysize",
    "maxbinx",
    "maxbiny",
    "pixelsizex",
    "pixelsizey",
    "sensortype",
    "bayeroffsetx",
    "bayeroffsety",
    "exposuremin",
    "exposuremax",
    "exposureresolution",
    "gainmin",
    "gainmax",
    "gains",
    "offsetmin",
    "offsetmax",
    "offsets",
    "readoutmodes",
    "maxadu",
)


def _camera_select(props: PropertyBag) -> List[str]:
    names = [
        name for name in CAMERA_PROPERTIES
        if not (name == "gain" and props.get("hasGain") is False)
        and not (name == "offset" and props.get("hasOffset") is False)
    ]
    if props.get("canfastreadout"):
        names.append("fastreadout")
    if props.get("cansetccdtemperature"):
        names += ["cooleron", "setccdtemperature"]
    if props.get("cangetcoolerpower"):
        names.append("coolerpower")
    if props.get("isExposing"):
        names += ["imageready", "percentcompleted"]
    return names


def _camera_derive(props: PropertyBag) -> PropertyBag:
    derived: PropertyBag = {}
    if "gains" in props or "gainmin" in props:
        derived["hasGain"] = True
        derived["gainMode"] = "index" if isinstance(props.get("gains"), list) else "value"
    if "offsets" in props or "offsetmin" in props:
        derived["hasOffset"] = True
        derived["offsetMode"] = "index" if isinstance(props.get("offsets"), list) else "value"
    if "cansetccdtemperature" in props:
        derived["hasCooler"] = bool(props["cansetccdtemperature"])
    return derived


def _camera_on_change(bus: EventBus, device_id: str, previous: PropertyBag, changed: PropertyBag) -> None:
    if "cooleron" in changed and "cooleron" in previous:
        bus.emit(EventType.CAMERA_COOLER_CHANGED, device_id, enabled=changed["cooleron"])
    if ("binx" in changed and "binx" in previous) or ("biny" in changed and "biny" in previous):
        bus.emit(
            EventType.CAMERA_BINNING_CHANGED,
            device_id,
            binX=changed.get("binx", previous.get("binx")),
            binY=changed.get("biny", previous.get("biny")),
        )


CAMERA_SCHEMA = {
    "camerastate": INT,
    "imageready": BOOL,
    "percentcompleted": INT,
    "ccdtemperature": NUMBER,
    "setccdtemperature": NUMBER,
    "cooleron": BOOL,
    "coolerpower": NUMBER,
    "binx": INT,
    "biny": INT,
    "gain": INT,
    "offset": INT,
    "readoutmode": INT,
    "startx": INT,
    "starty": INT,
    "numx": INT,
    "numy": INT,
    "fastreadout": BOOL,
    "cameraxsize": INT,
    "cameraysize": INT,
    "maxbinx": INT,
    "maxbiny": INT,
    "pixelsizex": NUMBER,
    "pixelsizey": NUMBER,
    "sensortype": INT,
    "bayeroffsetx": INT,
    "bayeroffsety": INT,
    "exposuremin": NUMBER,
    "exposuremax": NUMBER,
    "exposureresolution": NUMBER,
    "gainmin": INT,
    "gainmax": INT,
    "gains": LIST,
    "offsetmin": INT,
    "offsetmax": INT,
    "offsets": LIST,
    "readoutmodes": LIST,
    "maxadu": INT,
}


# ============================================================================
# Telescope
# ============================================================================

def format_hours(hours: float) -> str:
    """Format decimal hours as HH:MM:SS."""
    total = int(round((hours % 24) * 3600))
    h, remainder = divmod(total, 3600)
    m, s = divmod(remainder, 60)
    return f"{h % 24:02d}:{m:02d}:{s:02d}"


def _telescope_derive(props: PropertyBag) -> PropertyBag:
    if isinstance(props.get("siderealtime"), (int, float)):
        return {"lst": format_hours(props["siderealtime"])}
    return {}


def _telescope_on_change(bus: EventBus, device_id: str, previous: PropertyBag, changed: PropertyBag) -> None:
    if "tracking" in changed and "tracking" in previous:
        bus.emit(EventType.TELESCOPE_TRACKING_CHANGED, device_id, tracking=changed["tracking"])
    if "slewing" in changed and previous.get("slewing") is True and changed["slewing"] is False:
        bus.emit(
            EventType.TELESCOPE_SLEW_COMPLETE,
            device_id,
            rightAscension=changed.get("rightascension", previous.get("rightascension")),
            declination=changed.get("declination", previous.get("declination")),
        )


TELESCOPE_SCHEMA = {
    "rightascension": NUMBER,
    "declination": NUMBER,
    "altitude": NUMBER,
    "azimuth": NUMBER,
    "siderealtime": NUMBER,
    "slewing": BOOL,
    "tracking": BOOL,
    "trackingrate": INT,
    "atpark": BOOL,
    "athome": BOOL,
    "utcdate": STRING,
    "sideofpier": INT,
    "alignmentmode": INT,
    "equatorialsystem": INT,
    "aperturediameter": NUMBER,
    "focallength": NUMBER,
    "sitelatitude": NUMBER,
    "sitelongitude": NUMBER,
    "siteelevation": NUMBER,
    "trackingrates": LIST,
}


# ============================================================================
# Switch
# ============================================================================

def _switch_count(props: PropertyBag) -> int:
    count = props.get("maxswitch")
    if isinstance(count, int) and not isinstance(count, bool) and count > 0:
        return count
    return 0


def _switch_reads(props: PropertyBag) -> List[ParameterizedRead]:
    reads: List[ParameterizedRead] = []
    for switch_id in range(_switch_count(props)):
        reads.append((f"switch{switch_id}value", "getswitchvalue", {"Id": switch_id}))
        reads.append((f"switch{switch_id}state", "getswitch", {"Id": switch_id}))
    return reads


def _switch_capability_reads(props: PropertyBag) -> List[ParameterizedRead]:
    reads: List[ParameterizedRead] = []
    for switch_id in range(_switch_count(props)):
        reads += [
            (f"switch{switch_id}name", "getswitchname", {"Id": switch_id}),
            (f"switch{switch_id}description", "getswitchdescription", {"Id": switch_id}),
            (f"switch{switch_id}canwrite", "canwrite", {"Id": switch_id}),
            (f"switch{switch_id}min", "minswitchvalue", {"Id": switch_id}),
            (f"switch{switch_id}max", "maxswitchvalue", {"Id": switch_id}),
            (f"switch{switch_id}step", "switchstep", {"Id": switch_id}),
        ]
    return reads


# ============================================================================
# Filter wheel
# ============================================================================

def _filterwheel_derive(props: PropertyBag) -> PropertyBag:
    names = props.get("names")
    position = props.get("position")
    if isinstance(names, list) and isinstance(position, int) and 0 <= position < len(names):
        return {"currentFilter": names[position]}
    return {}


# ============================================================================
# Profiles
# ============================================================================

OBSERVINGCONDITIONS_PROPERTIES = (
    "averageperiod",
    "cloudcover",
    "dewpoint",
    "humidity",
    "pressure",
    "rainrate",
    "skybrightness",
    "skyquality",
    "skytemperature",
    "starfwhm",
    "temperature",
    "winddirection",
    "windgust",
    "windspeed",
)

PROFILES: Dict[DeviceType, DeviceProfile] = {
    DeviceType.CAMERA: DeviceProfile(
        device_type=DeviceType.CAMERA,
        interval=2.0,
        properties=CAMERA_PROPERTIES,
        capabilities=CAMERA_CAPABILITIES,
        aliases={
            "binx": "binningX",
            "biny": "binningY",
            "cooleron": "coolerEnabled",
            "ccdtemperature": "temperature",
            "setccdtemperature": "targetTemperature",
            "coolerpower": "coolerPower",
        },
        schema=CAMERA_SCHEMA,
        select=_camera_select,
        derive=_camera_derive,
        on_change=_camera_on_change,
    ),
    DeviceType.TELESCOPE: DeviceProfile(
        device_type=DeviceType.TELESCOPE,
        interval=1.0,
        properties=(
            "rightascension",
            "declination",
            "altitude",
            "azimuth",
            "siderealtime",
            "slewing",
            "tracking",
            "trackingrate",
            "atpark",
            "athome",
            "utcdate",
            "sideofpier",
        ),
        capabilities=(
            "canfindhome",
            "canpark",
            "canpulseguide",
            "cansetdeclinationrate",
            "cansetguiderates",
            "cansetpark",
            "cansetpierside",
            "cansetrightascensionrate",
            "cansettracking",
            "canslew",
            "canslewaltaz",
            "canslewaltazasync",
            "canslewasync",
            "cansync",
            "cansyncaltaz",
            "canunpark",
            "alignmentmode",
            "equatorialsystem",
            "aperturediameter",
            "focallength",
            "sitelatitude",
            "sitelongitude",
            "siteelevation",
            "trackingrates",
        ),
        aliases={"rightascension": "ra", "declination": "dec"},
        schema=TELESCOPE_SCHEMA,
        derive=_telescope_derive,
        on_change=_telescope_on_change,
    ),
    DeviceType.FOCUSER: DeviceProfile(
        device_type=DeviceType.FOCUSER,
        interval=1.0,
        properties=("position", "ismoving", "temperature", "tempcomp"),
        capabilities=("absolute", "maxstep", "maxincrement", "stepsize", "tempcompavailable"),
        aliases={"ismoving": "isMoving"},
        schema={
            "position": INT,
            "ismoving": BOOL,
            "temperature": NUMBER,
            "tempcomp": BOOL,
            "absolute": BOOL,
            "maxstep": INT,
            "maxincrement": INT,
            "stepsize": NUMBER,
            "tempcompavailable": BOOL,
        },
    ),
    DeviceType.FILTERWHEEL: DeviceProfile(
        device_type=DeviceType.FILTERWHEEL,
        interval=3.0,
        properties=("position",),
        capabilities=("names", "focusoffsets"),
        schema={"position": INT, "names": LIST, "focusoffsets": LIST},
        derive=_filterwheel_derive,
    ),
    DeviceType.DOME: DeviceProfile(
        device_type=DeviceType.DOME,
        interval=5.0,
        properties=("altitude", "azimuth", "athome", "atpark", "shutterstatus", "slaved", "slewing"),
        capabilities=(
            "canfindhome",
            "canpark",
            "cansetaltitude",
            "cansetazimuth",
            "cansetpark",
            "cansetshutter",
            "canslave",
            "cansyncazimuth",
        ),
        schema={
            "altitude": NUMBER,
            "azimuth": NUMBER,
            "athome": BOOL,
            "atpark": BOOL,
            "shutterstatus": INT,
            "slaved": BOOL,
            "slewing": BOOL,
        },
    ),
    DeviceType.ROTATOR: DeviceProfile(
        device_type=DeviceType.ROTATOR,
        interval=0.5,
        properties=("position", "mechanicalposition", "ismoving", "targetposition", "reverse"),
        capabilities=("canreverse", "stepsize"),
        aliases={"ismoving": "isMoving"},
        schema={
            "position": NUMBER,
            "mechanicalposition": NUMBER,
            "ismoving": BOOL,
            "targetposition": NUMBER,
            "reverse": BOOL,
            "stepsize": NUMBER,
        },
    ),
    DeviceType.OBSERVINGCONDITIONS: DeviceProfile(
        device_type=DeviceType.OBSERVINGCONDITIONS,
        interval=30.0,
        properties=OBSERVINGCONDITIONS_PROPERTIES,
        schema={name: NUMBER for name in OBSERVINGCONDITIONS_PROPERTIES},
    ),
    DeviceType.SAFETYMONITOR: DeviceProfile(
        device_type=DeviceType.SAFETYMONITOR,
        interval=5.0,
        properties=("issafe",),
        schema={"issafe": BOOL},
    ),
    DeviceType.SWITCH: DeviceProfile(
        device_type=DeviceType.SWITCH,
        interval=5.0,
        capabilities=("maxswitch",),
        schema={"maxswitch": INT},
        parameterized=_switch_reads,
        capability_parameterized=_switch_capability_reads,
    ),
    DeviceType.COVERCALIBRATOR: DeviceProfile(
        device_type=DeviceType.COVERCALIBRATOR,
        interval=1.0,
        properties=("coverstate", "calibratorstate", "brightness"),
        capabilities=("maxbrightness",),
        schema={
            "coverstate": INT,
            "calibratorstate": INT,
            "brightness": INT,
            "maxbrightness": INT,
        },
    ),
}


def get_profile(device_type: "str | DeviceType") -> DeviceProfile:
    """Look up the default profile for a device type.

    Raises:
        ValueError: Unknown device type
    """
    return PROFILES[DeviceType.parse(device_type)]
