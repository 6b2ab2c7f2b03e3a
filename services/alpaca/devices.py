"""
Alpaca device command adapters.

One adapter class per Alpaca device type, each a thin, named front for
ActionDispatcher commands addressed to one registered device. Adapters
read state from the registry's last-known properties; they never poll.

Example:
    >>> telescope = AlpacaTelescope(dispatcher, "scope-1")
    >>> await telescope.slew_to_coordinates(12.5, 45.0)
    >>> telescope.is_slewing
    True
"""

import logging
from typing import Any, Dict, List, Optional, Type

from alpacadeck.events import EventType
from alpacadeck.types import CoverState, DeviceType, PropertyBag
from services.actions.dispatcher import ActionDispatcher

logger = logging.getLogger(__name__)


# ============================================================================
# Base Adapter
# ============================================================================

class AlpacaDeviceBase:
    """
    Base class for Alpaca device adapters.

    Args:
        dispatcher: Shared action dispatcher
        device_id: Registered device id
    """

    device_type: DeviceType

    def __init__(self, dispatcher: ActionDispatcher, device_id: str):
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.event_bus = dispatcher.event_bus
        self.device_id = device_id

    @property
    def properties(self) -> PropertyBag:
        device = self.registry.get_device(self.device_id)
        return dict(device.properties) if device else {}

    @property
    def is_connected(self) -> bool:
        device = self.registry.get_device(self.device_id)
        return device is not None and device.is_connected

    def _value(self, name: str, default: Any = None) -> Any:
        return self.properties.get(name, default)

    async def _send(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        optimistic: Optional[PropertyBag] = None,
        refresh: bool = True,
    ) -> bool:
        return await self.dispatcher.dispatch(
            self.device_id,
            self.device_type,
            method,
            params,
            optimistic=optimistic,
            refresh=refresh,
        )

    def _reject(self, method: str, message: str, params: Optional[Dict[str, Any]] = None) -> bool:
        self.dispatcher.report_error(self.device_id, method, ValueError(message), params)
        return False

    def get_status(self) -> Dict[str, Any]:
        """Connection state plus last-known properties."""
        return {"connected": self.is_connected, **self.properties}


# ============================================================================
# Telescope Adapter
# ============================================================================

class AlpacaTelescope(AlpacaDeviceBase):
    """
    Mount control: slewing, syncing, tracking, parking and guiding.
    """

    device_type = DeviceType.TELESCOPE

    @property
    def ra(self) -> Optional[float]:
        """Right Ascension in decimal hours."""
        return self._value("rightascension")

    @property
    def dec(self) -> Optional[float]:
        """Declination in decimal degrees."""
        return self._value("declination")

    @property
    def is_tracking(self) -> bool:
        return bool(self._value("tracking", False))

    @property
    def is_slewing(self) -> bool:
        return bool(self._value("slewing", False))

    @property
    def is_parked(self) -> bool:
        return bool(self._value("atpark", False))

    async def set_tracking(self, enabled: bool) -> bool:
        """
        Enable or disable tracking.

        Args:
            enabled: True to enable tracking

        Returns:
            True if successful
        """
        return await self._send("tracking", {"Tracking": enabled}, optimistic={"tracking": enabled})

    async def set_tracking_rate(self, rate: int) -> bool:
        return await self._send("trackingrate", {"TrackingRate": rate})

    async def _slew(self, method: str, params: Dict[str, Any]) -> bool:
        ok = await self._send(method, params, optimistic={"slewing": True})
        if ok:
            logger.info(f"Telescope {self.device_id} slewing ({method})")
            self.event_bus.emit(EventType.TELESCOPE_SLEW_STARTED, self.device_id, method=method, **params)
        else:
            self.event_bus.emit(EventType.TELESCOPE_SLEW_ERROR, self.device_id, method=method, **params)
        return ok

    async def slew_to_coordinates(self, ra: float, dec: float) -> bool:
        """
        Slew to RA/Dec coordinates (asynchronous slew).

        Args:
            ra: Right Ascension in decimal hours (0-24)
            dec: Declination in decimal degrees (-90 to +90)

        Returns:
            True if slew initiated successfully
        """
        params = {"RightAscension": ra, "Declination": dec}
        if not 0.0 <= ra < 24.0 or not -90.0 <= dec <= 90.0:
            return self._reject("slewtocoordinatesasync", f"Coordinates out of range: RA={ra}, Dec={dec}", params)
        return await self._slew("slewtocoordinatesasync", params)

    async def slew_to_altaz(self, alt: float, az: float) -> bool:
        """
        Slew to Alt/Az coordinates (asynchronous slew).

        Args:
            alt: Altitude in degrees (0-90)
            az: Azimuth in degrees (0-360)
        """
        params = {"Azimuth": az, "Altitude": alt}
        if not -90.0 <= alt <= 90.0 or not 0.0 <= az < 360.0:
            return self._reject("slewtoaltazasync", f"Coordinates out of range: Alt={alt}, Az={az}", params)
        return await self._slew("slewtoaltazasync", params)

    async def set_target(self, ra: float, dec: float) -> bool:
        """Set the target coordinates used by slew_to_target/sync_to_target."""
        if not await self._send("targetrightascension", {"TargetRightAscension": ra}, refresh=False):
            return False
        return await self._send("targetdeclination", {"TargetDeclination": dec})

    async def slew_to_target(self) -> bool:
        return await self._slew("slewtotargetasync", {})

    async def sync(self, ra: float, dec: float) -> bool:
        """Sync the mount position to RA/Dec."""
        return await self._send("synctocoordinates", {"RightAscension": ra, "Declination": dec})

    async def sync_to_altaz(self, alt: float, az: float) -> bool:
        return await self._send("synctoaltaz", {"Azimuth": az, "Altitude": alt})

    async def abort_slew(self) -> bool:
        ok = await self._send("abortslew", optimistic={"slewing": False})
        if ok:
            self.event_bus.emit(EventType.TELESCOPE_SLEW_ABORTED, self.device_id)
        return ok

    async def park(self) -> bool:
        ok = await self._send("park", optimistic={"slewing": True})
        if ok:
            self.event_bus.emit(EventType.TELESCOPE_PARKED, self.device_id)
        return ok

    async def unpark(self) -> bool:
        ok = await self._send("unpark", optimistic={"atpark": False})
        if ok:
            self.event_bus.emit(EventType.TELESCOPE_UNPARKED, self.device_id)
        return ok

    async def set_park(self) -> bool:
        return await self._send("setpark")

    async def find_home(self) -> bool:
        return await self._send("findhome", optimistic={"slewing": True})

    async def move_axis(self, axis: int, rate: float) -> bool:
        """
        Move a mount axis at a given rate (0 stops).

        Args:
            axis: 0=primary (RA/Az), 1=secondary (Dec/Alt), 2=tertiary
            rate: Rate in degrees/second
        """
        if axis not in (0, 1, 2):
            return self._reject("moveaxis", f"Invalid axis {axis}", {"Axis": axis, "Rate": rate})
        return await self._send("moveaxis", {"Axis": axis, "Rate": rate})

    async def pulse_guide(self, direction: int, duration_ms: int) -> bool:
        """Pulse guide; direction 0=N, 1=S, 2=E, 3=W."""
        return await self._send("pulseguide", {"Direction": direction, "Duration": duration_ms})


# ============================================================================
# Camera Adapter
# ============================================================================

class AlpacaCamera(AlpacaDeviceBase):
    """
    Camera control. Exposures are started and aborted through the
    exposure tracker so that progress and image download are followed.
    """

    device_type = DeviceType.CAMERA

    def __init__(self, dispatcher: ActionDispatcher, device_id: str, exposure_tracker=None):
        super().__init__(dispatcher, device_id)
        self.exposure_tracker = exposure_tracker

    @property
    def temperature(self) -> Optional[float]:
        return self._value("ccdtemperature")

    @property
    def is_exposing(self) -> bool:
        return bool(self._value("isExposing", False))

    async def start_exposure(self, duration: float, light: bool = True) -> bool:
        """
        Start an exposure.

        Args:
            duration: Exposure time in seconds
            light: True for light frame, False for dark

        Returns:
            True if exposure started
        """
        if self.exposure_tracker is None:
            return await self._send("startexposure", {"Duration": duration, "Light": light})
        return await self.exposure_tracker.start_exposure(self.device_id, duration, light)

    async def abort_exposure(self) -> bool:
        if self.exposure_tracker is None:
            return await self._send("abortexposure", {})
        return await self.exposure_tracker.abort_exposure(self.device_id)

    async def stop_exposure(self) -> bool:
        """Stop the exposure early; the image is still read out."""
        return await self._send("stopexposure", {})

    async def set_binning(self, bin_x: int, bin_y: int) -> bool:
        """
        Set camera binning.

        Args:
            bin_x: Horizontal binning
            bin_y: Vertical binning
        """
        if bin_x < 1 or bin_y < 1:
            return self._reject("binx", f"Invalid binning {bin_x}x{bin_y}", {"BinX": bin_x, "BinY": bin_y})
        if not await self._send("binx", {"BinX": bin_x}, optimistic={"binx": bin_x}, refresh=False):
            return False
        return await self._send("biny", {"BinY": bin_y}, optimistic={"biny": bin_y})

    async def set_cooler(self, enabled: bool) -> bool:
        return await self._send("cooleron", {"CoolerOn": enabled}, optimistic={"cooleron": enabled})

    async def set_temperature(self, target: float) -> bool:
        """Set the cooler target temperature in Celsius."""
        return await self._send(
            "setccdtemperature",
            {"SetCCDTemperature": target},
            optimistic={"setccdtemperature": float(target)},
        )

    async def set_gain(self, gain: int) -> bool:
        return await self._send("gain", {"Gain": gain}, optimistic={"gain": gain})

    async def set_offset(self, offset: int) -> bool:
        return await self._send("offset", {"Offset": offset}, optimistic={"offset": offset})

    async def set_readout_mode(self, mode: int) -> bool:
        return await self._send("readoutmode", {"ReadoutMode": mode}, optimistic={"readoutmode": mode})

    async def set_subframe(self, start_x: int, start_y: int, num_x: int, num_y: int) -> bool:
        """Set the subframe origin and size in binned pixels."""
        for method, param, value in (
            ("startx", "StartX", start_x),
            ("starty", "StartY", start_y),
            ("numx", "NumX", num_x),
        ):
            if not await self._send(method, {param: value}, optimistic={method: value}, refresh=False):
                return False
        return await self._send("numy", {"NumY": num_y}, optimistic={"numy": num_y})


# ============================================================================
# Focuser Adapter
# ============================================================================

class AlpacaFocuser(AlpacaDeviceBase):
    """Focuser motion and temperature compensation."""

    device_type = DeviceType.FOCUSER

    @property
    def position(self) -> Optional[int]:
        return self._value("position")

    @property
    def is_moving(self) -> bool:
        return bool(self._value("ismoving", False))

    async def move_absolute(self, position: int) -> bool:
        """
        Move focuser to absolute position.

        Args:
            position: Target position in steps
        """
        max_step = self._value("maxstep")
        if position < 0 or (isinstance(max_step, int) and position > max_step):
            return self._reject("move", f"Position {position} out of range", {"Position": position})
        return await self._send("move", {"Position": position}, optimistic={"ismoving": True})

    async def move_relative(self, steps: int) -> bool:
        """
        Move focuser by relative steps (positive=out, negative=in).

        Absolute focusers move to the last-known position plus ``steps``;
        relative focusers receive ``steps`` directly.
        """
        if self._value("absolute", True) is False:
            return await self._send("move", {"Position": steps}, optimistic={"ismoving": True})
        current = self.position
        if current is None:
            return self._reject("move", "Focuser position unknown", {"Steps": steps})
        return await self.move_absolute(current + steps)

    async def halt(self) -> bool:
        return await self._send("halt", optimistic={"ismoving": False})

    async def set_temp_comp(self, enabled: bool) -> bool:
        return await self._send("tempcomp", {"TempComp": enabled}, optimistic={"tempcomp": enabled})


# ============================================================================
# Filter Wheel Adapter
# ============================================================================

class AlpacaFilterWheel(AlpacaDeviceBase):
    """Filter selection by slot or name."""

    device_type = DeviceType.FILTERWHEEL

    @property
    def filter_names(self) -> List[str]:
        names = self._value("names")
        return list(names) if isinstance(names, list) else []

    @property
    def current_filter(self) -> str:
        return self._value("currentFilter", "")

    async def set_position(self, position: int) -> bool:
        names = self.filter_names
        if position < 0 or (names and position >= len(names)):
            return self._reject("position", f"Invalid filter position {position}", {"Position": position})
        return await self._send("position", {"Position": position})

    async def set_filter_by_name(self, name: str) -> bool:
        """
        Set filter by name.

        Args:
            name: Filter name (case-insensitive)
        """
        names = self.filter_names
        name_lower = name.lower()
        for i, filter_name in enumerate(names):
            if filter_name.lower() == name_lower:
                return await self.set_position(i)
        return self._reject("position", f"Filter '{name}' not found. Available: {names}")


# ============================================================================
# Dome Adapter
# ============================================================================

class AlpacaDome(AlpacaDeviceBase):
    """Dome shutter, rotation and slaving."""

    device_type = DeviceType.DOME

    async def open_shutter(self) -> bool:
        return await self._send("openshutter")

    async def close_shutter(self) -> bool:
        return await self._send("closeshutter")

    async def park(self) -> bool:
        return await self._send("park", optimistic={"slewing": True})

    async def find_home(self) -> bool:
        return await self._send("findhome", optimistic={"slewing": True})

    async def abort_slew(self) -> bool:
        return await self._send("abortslew", optimistic={"slewing": False})

    async def set_park(self) -> bool:
        return await self._send("setpark")

    async def slew_to_altitude(self, altitude: float) -> bool:
        return await self._send("slewtoaltitude", {"Altitude": altitude}, optimistic={"slewing": True})

    async def slew_to_azimuth(self, azimuth: float) -> bool:
        if not 0.0 <= azimuth < 360.0:
            return self._reject("slewtoazimuth", f"Azimuth {azimuth} out of range", {"Azimuth": azimuth})
        return await self._send("slewtoazimuth", {"Azimuth": azimuth}, optimistic={"slewing": True})

    async def sync_to_azimuth(self, azimuth: float) -> bool:
        return await self._send("synctoazimuth", {"Azimuth": azimuth})

    async def set_slaved(self, slaved: bool) -> bool:
        return await self._send("slaved", {"Slaved": slaved}, optimistic={"slaved": slaved})


# ============================================================================
# Rotator Adapter
# ============================================================================

class AlpacaRotator(AlpacaDeviceBase):
    """Rotator moves (relative, absolute, mechanical), sync and reverse."""

    device_type = DeviceType.ROTATOR

    async def move(self, offset: float) -> bool:
        """Rotate by ``offset`` degrees relative to the current position."""
        return await self._send("move", {"Position": offset}, optimistic={"ismoving": True})

    async def move_absolute(self, position: float) -> bool:
        return await self._send("moveabsolute", {"Position": position}, optimistic={"ismoving": True})

    async def move_mechanical(self, position: float) -> bool:
        return await self._send("movemechanical", {"Position": position}, optimistic={"ismoving": True})

    async def sync(self, position: float) -> bool:
        return await self._send("sync", {"Position": position})

    async def halt(self) -> bool:
        return await self._send("halt", optimistic={"ismoving": False})

    async def set_reverse(self, enabled: bool) -> bool:
        return await self._send("reverse", {"Reverse": enabled}, optimistic={"reverse": enabled})


# ============================================================================
# Cover Calibrator Adapter
# ============================================================================

class AlpacaCoverCalibrator(AlpacaDeviceBase):
    """Dust cover and flat-field light source."""

    device_type = DeviceType.COVERCALIBRATOR

    async def open_cover(self) -> bool:
        return await self._send("opencover", optimistic={"coverstate": int(CoverState.MOVING)})

    async def close_cover(self) -> bool:
        return await self._send("closecover", optimistic={"coverstate": int(CoverState.MOVING)})

    async def halt_cover(self) -> bool:
        return await self._send("haltcover")

    async def calibrator_on(self, brightness: int) -> bool:
        max_brightness = self._value("maxbrightness")
        if brightness < 0 or (isinstance(max_brightness, int) and brightness > max_brightness):
            return self._reject("calibratoron", f"Brightness {brightness} out of range", {"Brightness": brightness})
        return await self._send("calibratoron", {"Brightness": brightness}, optimistic={"brightness": brightness})

    async def calibrator_off(self) -> bool:
        return await self._send("calibratoroff", optimistic={"brightness": 0})


# ============================================================================
# Switch Adapter
# ============================================================================

class AlpacaSwitch(AlpacaDeviceBase):
    """Switch bank: per-id names, boolean states and analogue values."""

    device_type = DeviceType.SWITCH

    async def get_switch_name(self, switch_id: int) -> Optional[str]:
        return await self.dispatcher.get(self.device_id, self.device_type, "getswitchname", {"Id": switch_id})

    async def get_switch_value(self, switch_id: int) -> Optional[float]:
        return await self.dispatcher.get(self.device_id, self.device_type, "getswitchvalue", {"Id": switch_id})

    async def set_switch(self, switch_id: int, state: bool) -> bool:
        return await self._send(
            "setswitch",
            {"Id": switch_id, "State": state},
            optimistic={f"switch{switch_id}state": state},
        )

    async def set_switch_value(self, switch_id: int, value: float) -> bool:
        return await self._send(
            "setswitchvalue",
            {"Id": switch_id, "Value": value},
            optimistic={f"switch{switch_id}value": value},
        )

    async def set_switch_name(self, switch_id: int, name: str) -> bool:
        return await self._send(
            "setswitchname",
            {"Id": switch_id, "Name": name},
            optimistic={f"switch{switch_id}name": name},
        )


# ============================================================================
# Observing Conditions Adapter
# ============================================================================

class AlpacaObservingConditions(AlpacaDeviceBase):
    """Weather sensors; mostly read-only."""

    device_type = DeviceType.OBSERVINGCONDITIONS

    async def set_average_period(self, hours: float) -> bool:
        return await self._send("averageperiod", {"AveragePeriod": hours}, optimistic={"averageperiod": float(hours)})

    async def refresh(self) -> bool:
        """Ask the driver to refresh its sensor readings."""
        return await self._send("refresh")

    async def sensor_description(self, sensor: str) -> Optional[str]:
        return await self.dispatcher.get(
            self.device_id, self.device_type, "sensordescription", {"SensorName": sensor}
        )

    async def time_since_last_update(self, sensor: str = "") -> Optional[float]:
        return await self.dispatcher.get(
            self.device_id, self.device_type, "timesincelastupdate", {"SensorName": sensor}
        )


# ============================================================================
# Safety Monitor Adapter
# ============================================================================

class AlpacaSafetyMonitor(AlpacaDeviceBase):
    """Read-only safe/unsafe flag."""

    device_type = DeviceType.SAFETYMONITOR

    @property
    def is_safe(self) -> bool:
        return self._value("issafe") is True


# ============================================================================
# Factory Functions
# ============================================================================

ADAPTERS: Dict[DeviceType, Type[AlpacaDeviceBase]] = {
    DeviceType.TELESCOPE: AlpacaTelescope,
    DeviceType.CAMERA: AlpacaCamera,
    DeviceType.FOCUSER: AlpacaFocuser,
    DeviceType.FILTERWHEEL: AlpacaFilterWheel,
    DeviceType.DOME: AlpacaDome,
    DeviceType.ROTATOR: AlpacaRotator,
    DeviceType.COVERCALIBRATOR: AlpacaCoverCalibrator,
    DeviceType.SWITCH: AlpacaSwitch,
    DeviceType.OBSERVINGCONDITIONS: AlpacaObservingConditions,
    DeviceType.SAFETYMONITOR: AlpacaSafetyMonitor,
}


def create_device_adapter(
    device_type: str,
    dispatcher: ActionDispatcher,
    device_id: str,
    exposure_tracker=None,
) -> AlpacaDeviceBase:
    """
    Create the command adapter for a device.

    Args:
        device_type: Alpaca device type
        dispatcher: Shared action dispatcher
        device_id: Registered device id
        exposure_tracker: Tracker used by camera adapters

    Returns:
        Configured device adapter

    Raises:
        ValueError: Unknown device type
    """
    try:
        kind = DeviceType.parse(device_type)
    except ValueError:
        raise ValueError(f"Unknown device type: {device_type}") from None

    adapter_class = ADAPTERS[kind]
    if adapter_class is AlpacaCamera:
        return AlpacaCamera(dispatcher, device_id, exposure_tracker)
    return adapter_class(dispatcher, device_id)
