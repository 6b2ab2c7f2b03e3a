"""
Device panel definitions.

Declarative description of what a control surface shows for each device
type: read-outs bound to polled Alpaca properties and actions bound to
Alpaca methods, ordered by priority and filtered by visibility rules
evaluated against a device's current properties.

Example:
    >>> panel = get_panel("focuser")
    >>> [f.id for f in visible_features(panel, device.properties)]
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from alpacadeck.types import DeviceType


class FeatureSource(str, Enum):
    CORE = "core"
    EXTENDED = "extended"


class InteractionType(str, Enum):
    ACTION = "action"
    DYNAMIC_DATA = "dynamic"
    SETTING = "setting"
    MODE = "mode"


class PriorityLevel(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"


CONDITIONS = ("equals", "notEquals", "greaterThan", "lessThan", "contains")


@dataclass(frozen=True)
class VisibilityRule:
    """Show a feature only while ``property`` satisfies ``condition``."""
    property: str
    condition: str = "equals"
    value: Any = True

    def __post_init__(self):
        if self.condition not in CONDITIONS:
            raise ValueError(f"Unknown visibility condition: {self.condition}")

    def matches(self, properties: Mapping[str, Any]) -> bool:
        actual = properties.get(self.property)
        if self.condition == "equals":
            return actual == self.value
        if self.condition == "notEquals":
            return actual != self.value
        if self.condition == "contains":
            try:
                return self.value in actual
            except TypeError:
                return False
        # Ordering comparisons need numbers on both sides
        if isinstance(actual, bool) or not isinstance(actual, (int, float)):
            return False
        if self.condition == "greaterThan":
            return actual > self.value
        return actual < self.value


@dataclass(frozen=True)
class Feature:
    id: str
    label: str
    interaction: InteractionType
    priority: PriorityLevel = PriorityLevel.PRIMARY
    component: str = "DynamicValue"
    source: FeatureSource = FeatureSource.CORE
    props: Dict[str, Any] = field(default_factory=dict)
    visibility_rules: Tuple[VisibilityRule, ...] = ()

    @property
    def bound_property(self) -> Optional[str]:
        return self.props.get("property")

    @property
    def bound_method(self) -> Optional[str]:
        return self.props.get("method")


@dataclass(frozen=True)
class Panel:
    device_type: DeviceType
    name: str
    features: Tuple[Feature, ...]

    def get_feature(self, feature_id: str) -> Optional[Feature]:
        for feature in self.features:
            if feature.id == feature_id:
                return feature
        return None

    def by_priority(self, priority: PriorityLevel) -> List[Feature]:
        return [f for f in self.features if f.priority == priority]


def is_feature_visible(feature: Feature, properties: Mapping[str, Any]) -> bool:
    """All of a feature's rules must hold; no rules means always visible."""
    return all(rule.matches(properties) for rule in feature.visibility_rules)


def visible_features(panel: Panel, properties: Mapping[str, Any]) -> List[Feature]:
    return [f for f in panel.features if is_feature_visible(f, properties)]


# =============================================================================
# Definition Helpers
# =============================================================================

def _value(id: str, label: str, prop: str, priority=PriorityLevel.PRIMARY,
           component: str = "DynamicValue", rules: Tuple[VisibilityRule, ...] = (), **props) -> Feature:
    return Feature(
        id=id,
        label=label,
        interaction=InteractionType.DYNAMIC_DATA,
        priority=priority,
        component=component,
        props={"property": prop, **props},
        visibility_rules=rules,
    )


def _action(id: str, label: str, method: str, priority=PriorityLevel.PRIMARY,
            component: str = "ActionButton", rules: Tuple[VisibilityRule, ...] = (), **props) -> Feature:
    return Feature(
        id=id,
        label=label,
        interaction=InteractionType.ACTION,
        priority=priority,
        component=component,
        props={"method": method, **props},
        visibility_rules=rules,
    )


def _setting(id: str, label: str, prop: str, method: str, priority=PriorityLevel.SECONDARY,
             component: str = "SettingControl", rules: Tuple[VisibilityRule, ...] = (), **props) -> Feature:
    return Feature(
        id=id,
        label=label,
        interaction=InteractionType.SETTING,
        priority=priority,
        component=component,
        props={"property": prop, "method": method, **props},
        visibility_rules=rules,
    )


def _when(prop: str, condition: str = "equals", value: Any = True) -> Tuple[VisibilityRule, ...]:
    return (VisibilityRule(prop, condition, value),)


# =============================================================================
# Panels
# =============================================================================

CAMERA_PANEL = Panel(DeviceType.CAMERA, "Camera", (
    _value("camera-state", "Camera State", "camerastate"),
    _action("start-exposure", "Start Exposure", "startexposure", component="ExposureControl"),
    _action("abort-exposure", "Abort", "abortexposure", rules=_when("canabortexposure")),
    _action("stop-exposure", "Stop", "stopexposure", PriorityLevel.SECONDARY, rules=_when("canstopexposure")),
    _value("ccd-temperature", "Sensor Temperature", "ccdtemperature", unit="°C"),
    _setting("cooler", "Cooler", "cooleron", "cooleron", component="Toggle",
             rules=_when("cansetccdtemperature")),
    _setting("target-temperature", "Target Temperature", "setccdtemperature", "setccdtemperature",
             rules=_when("cansetccdtemperature")),
    _value("cooler-power", "Cooler Power", "coolerpower", PriorityLevel.SECONDARY,
           rules=_when("cangetcoolerpower"), unit="%"),
    _setting("bin-x", "Binning X", "binx", "binx", maxProperty="maxbinx"),
    _setting("bin-y", "Binning Y", "biny", "biny", maxProperty="maxbiny"),
    _setting("gain", "Gain", "gain", "gain", rules=_when("gainmax", "greaterThan", 0),
             minProperty="gainmin", maxProperty="gainmax"),
    _setting("offset", "Offset", "offset", "offset", rules=_when("offsetmax", "greaterThan", 0),
             minProperty="offsetmin", maxProperty="offsetmax"),
    _setting("readout-mode", "Readout Mode", "readoutmode", "readoutmode", PriorityLevel.TERTIARY,
             component="Select", optionsProperty="readoutmodes"),
    _value("sensor-size-x", "Width", "cameraxsize", PriorityLevel.TERTIARY, unit="px"),
    _value("sensor-size-y", "Height", "cameraysize", PriorityLevel.TERTIARY, unit="px"),
    _value("pixel-size", "Pixel Size", "pixelsizex", PriorityLevel.TERTIARY, unit="µm"),
))

TELESCOPE_PANEL = Panel(DeviceType.TELESCOPE, "Telescope", (
    _value("ra", "Right Ascension", "rightascension", format="hours"),
    _value("dec", "Declination", "declination", format="degrees"),
    _value("altitude", "Altitude", "altitude", PriorityLevel.SECONDARY, format="degrees"),
    _value("azimuth", "Azimuth", "azimuth", PriorityLevel.SECONDARY, format="degrees"),
    _value("sidereal-time", "Sidereal Time", "siderealtime", PriorityLevel.TERTIARY, format="hours"),
    _action("slew", "Slew", "slewtocoordinatesasync", component="SlewControl",
            rules=_when("canslewasync")),
    _action("abort-slew", "Abort Slew", "abortslew"),
    _setting("tracking", "Tracking", "tracking", "tracking", PriorityLevel.PRIMARY,
             component="Toggle", rules=_when("cansettracking")),
    _action("park", "Park", "park", PriorityLevel.SECONDARY, rules=_when("canpark")),
    _action("unpark", "Unpark", "unpark", PriorityLevel.SECONDARY, rules=_when("canunpark")),
    _action("find-home", "Find Home", "findhome", PriorityLevel.TERTIARY, rules=_when("canfindhome")),
    _action("sync", "Sync", "synctocoordinates", PriorityLevel.TERTIARY, component="SlewControl",
            rules=_when("cansync")),
    _value("pier-side", "Pier Side", "sideofpier", PriorityLevel.TERTIARY),
))

FOCUSER_PANEL = Panel(DeviceType.FOCUSER, "Focuser", (
    _value("position", "Current Position", "position"),
    _value("is-moving", "Movement Status", "ismoving"),
    _action("move-absolute", "Move To Position", "move", component="FocuserMove",
            rules=_when("absolute"), maxProperty="maxstep"),
    _action("move-relative", "Move Relative", "move", component="RelativeMove",
            stepSizes=[10, 50, 100, 500, 1000]),
    _action("halt-move", "Stop", "halt"),
    _value("temperature", "Temperature", "temperature", PriorityLevel.SECONDARY, unit="°C"),
    _setting("temp-comp", "Temperature Compensation", "tempcomp", "tempcomp",
             component="Toggle", rules=_when("tempcompavailable")),
    _value("max-step", "Maximum Position", "maxstep", PriorityLevel.TERTIARY),
))

FILTERWHEEL_PANEL = Panel(DeviceType.FILTERWHEEL, "Filter Wheel", (
    _value("position", "Current Slot", "position"),
    _setting("filter", "Filter", "position", "position", PriorityLevel.PRIMARY,
             component="Select", optionsProperty="names"),
    _value("focus-offsets", "Focus Offsets", "focusoffsets", PriorityLevel.TERTIARY),
))

DOME_PANEL = Panel(DeviceType.DOME, "Dome", (
    _value("shutter-status", "Shutter", "shutterstatus"),
    _action("open-shutter", "Open Shutter", "openshutter", rules=_when("cansetshutter")),
    _action("close-shutter", "Close Shutter", "closeshutter", rules=_when("cansetshutter")),
    _value("azimuth", "Azimuth", "azimuth", format="degrees"),
    _action("slew-azimuth", "Slew To Azimuth", "slewtoazimuth", PriorityLevel.SECONDARY,
            component="AngleInput", rules=_when("cansetazimuth")),
    _value("altitude", "Altitude", "altitude", PriorityLevel.SECONDARY, format="degrees"),
    _action("abort-slew", "Abort", "abortslew"),
    _action("park", "Park", "park", PriorityLevel.SECONDARY, rules=_when("canpark")),
    _action("find-home", "Find Home", "findhome", PriorityLevel.SECONDARY, rules=_when("canfindhome")),
    _setting("slaved", "Slaved", "slaved", "slaved", PriorityLevel.TERTIARY,
             component="Toggle", rules=_when("canslave")),
))

ROTATOR_PANEL = Panel(DeviceType.ROTATOR, "Rotator", (
    _value("position", "Position", "position", format="degrees"),
    _value("is-moving", "Movement Status", "ismoving"),
    _action("move-absolute", "Move To", "moveabsolute", component="AngleInput"),
    _action("move", "Move Relative", "move", PriorityLevel.SECONDARY, component="AngleInput"),
    _action("halt", "Stop", "halt"),
    _value("mechanical-position", "Mechanical Position", "mechanicalposition",
           PriorityLevel.TERTIARY, format="degrees"),
    _setting("reverse", "Reverse", "reverse", "reverse", PriorityLevel.TERTIARY,
             component="Toggle", rules=_when("canreverse")),
))

COVERCALIBRATOR_PANEL = Panel(DeviceType.COVERCALIBRATOR, "Cover Calibrator", (
    _value("cover-state", "Cover", "coverstate"),
    _action("open-cover", "Open", "opencover", rules=_when("coverstate", "greaterThan", 0)),
    _action("close-cover", "Close", "closecover", rules=_when("coverstate", "greaterThan", 0)),
    _action("halt-cover", "Halt", "haltcover", PriorityLevel.SECONDARY,
            rules=_when("coverstate", "equals", 2)),
    _value("calibrator-state", "Calibrator", "calibratorstate"),
    _setting("brightness", "Brightness", "brightness", "calibratoron", PriorityLevel.PRIMARY,
             component="Slider", rules=_when("calibratorstate", "greaterThan", 0),
             maxProperty="maxbrightness"),
    _action("calibrator-off", "Light Off", "calibratoroff", PriorityLevel.SECONDARY,
            rules=_when("calibratorstate", "greaterThan", 0)),
))

SWITCH_PANEL = Panel(DeviceType.SWITCH, "Switch", (
    Feature(
        id="switches",
        label="Switches",
        interaction=InteractionType.SETTING,
        component="SwitchArray",
        props={"property": "maxswitch", "method": "setswitch"},
        visibility_rules=_when("maxswitch", "greaterThan", 0),
    ),
    Feature(
        id="switch-values",
        label="Variable Switches",
        interaction=InteractionType.SETTING,
        priority=PriorityLevel.SECONDARY,
        component="VariableSwitchArray",
        props={"property": "maxswitch", "method": "setswitchvalue"},
        visibility_rules=_when("maxswitch", "greaterThan", 0),
    ),
))

_SENSORS = (
    ("temperature", "Temperature", "°C"),
    ("humidity", "Humidity", "%"),
    ("dewpoint", "Dew Point", "°C"),
    ("pressure", "Pressure", "hPa"),
    ("cloudcover", "Cloud Cover", "%"),
    ("skyquality", "Sky Quality", "mag/arcsec²"),
    ("skytemperature", "Sky Temperature", "°C"),
    ("windspeed", "Wind Speed", "m/s"),
    ("winddirection", "Wind Direction", "°"),
    ("rainrate", "Rain Rate", "mm/h"),
)

OBSERVINGCONDITIONS_PANEL = Panel(DeviceType.OBSERVINGCONDITIONS, "Observing Conditions", tuple(
    Feature(
        id=name,
        label=label,
        interaction=InteractionType.DYNAMIC_DATA,
        priority=PriorityLevel.PRIMARY if i < 4 else PriorityLevel.SECONDARY,
        props={"property": name, "unit": unit},
        visibility_rules=_when(name, "notEquals", None),
    )
    for i, (name, label, unit) in enumerate(_SENSORS)
) + (
    _setting("average-period", "Average Period", "averageperiod", "averageperiod",
             PriorityLevel.TERTIARY, unit="h"),
))

SAFETYMONITOR_PANEL = Panel(DeviceType.SAFETYMONITOR, "Safety Monitor", (
    _value("is-safe", "Safe", "issafe", component="StatusIndicator"),
))

PANELS: Dict[DeviceType, Panel] = {
    panel.device_type: panel
    for panel in (
        CAMERA_PANEL,
        TELESCOPE_PANEL,
        FOCUSER_PANEL,
        FILTERWHEEL_PANEL,
        DOME_PANEL,
        ROTATOR_PANEL,
        COVERCALIBRATOR_PANEL,
        SWITCH_PANEL,
        OBSERVINGCONDITIONS_PANEL,
        SAFETYMONITOR_PANEL,
    )
}


def get_panel(device_type: Union[str, DeviceType]) -> Panel:
    """
    Raises:
        ValueError: Unknown device type
    """
    return PANELS[DeviceType.parse(device_type)]
