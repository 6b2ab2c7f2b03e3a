"""
AlpacaDeck Custom Exceptions

Provides the domain-specific exception hierarchy for the AlpacaDeck device
core. Errors raised by the Alpaca transport itself live next to the client
(services.alpaca.alpaca_client.AlpacaError); everything above the wire uses
these classes.

Exception Hierarchy:
    AlpacaDeckError (base)
    ├── ConfigurationError
    ├── DeviceError
    │   ├── DeviceNotFoundError
    │   ├── DeviceTypeMismatchError
    │   ├── DeviceNotConnectedError
    │   ├── DeviceBusyError
    │   ├── InvalidStateTransitionError
    │   └── DeviceConnectionError
    └── PropertyValidationError
"""

from typing import Any, Optional


class AlpacaDeckError(Exception):
    """Base exception for all AlpacaDeck errors.

    Attributes:
        message: Human-readable error description
        details: Optional dict with additional error context
    """

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(AlpacaDeckError):
    """Error in configuration file or settings.

    Raised when configuration validation fails, the configuration file is
    missing, or it cannot be parsed.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_file: Optional[str] = None,
    ) -> None:
        details = {}
        if config_key:
            details["config_key"] = config_key
        if config_file:
            details["config_file"] = config_file
        super().__init__(message, details)
        self.config_key = config_key
        self.config_file = config_file


# =============================================================================
# Device Errors
# =============================================================================

class DeviceError(AlpacaDeckError):
    """Base class for device registry and device operation errors."""

    def __init__(
        self,
        message: str,
        device_id: Optional[str] = None,
        device_type: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs
        if device_id:
            details["device_id"] = device_id
        if device_type:
            details["device_type"] = device_type
        super().__init__(message, details)
        self.device_id = device_id
        self.device_type = device_type


class DeviceNotFoundError(DeviceError):
    """No device with the given id is registered."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device not found: {device_id}", device_id=device_id)


class DeviceTypeMismatchError(DeviceError):
    """A command was addressed to a device of the wrong type."""

    def __init__(
        self,
        device_id: str,
        device_type: Optional[str],
        expected_type: str,
    ) -> None:
        super().__init__(
            f"Device {device_id} is not a {expected_type}",
            device_id=device_id,
            device_type=device_type,
            expected_type=expected_type,
        )
        self.expected_type = expected_type


class DeviceNotConnectedError(DeviceError):
    """Device has no live client or is not in the connected state."""
    pass


class DeviceBusyError(DeviceError):
    """Device is busy with another operation.

    Raised when starting an exposure while one is already being tracked
    for the same camera.
    """

    def __init__(
        self,
        message: str,
        device_id: Optional[str] = None,
        device_type: Optional[str] = None,
        current_operation: Optional[str] = None,
    ) -> None:
        super().__init__(message, device_id, device_type)
        if current_operation:
            self.details["current_operation"] = current_operation
        self.current_operation = current_operation


class InvalidStateTransitionError(DeviceError):
    """A connection state change not allowed by the state machine."""

    def __init__(
        self,
        device_id: str,
        from_status: str,
        to_status: str,
    ) -> None:
        super().__init__(
            f"Invalid state transition from {from_status} to {to_status}",
            device_id=device_id,
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class DeviceConnectionError(DeviceError):
    """Connecting to or disconnecting from a device failed.

    Wraps the underlying transport error, which is kept as ``cause``.
    """

    def __init__(
        self,
        message: str,
        device_id: Optional[str] = None,
        device_type: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, device_id, device_type)
        self.cause = cause


# =============================================================================
# Property Errors
# =============================================================================

class PropertyValidationError(AlpacaDeckError):
    """A device property value does not match the device-type schema."""

    def __init__(
        self,
        property_name: str,
        expected: str,
        value: Any,
    ) -> None:
        super().__init__(
            f"Invalid value for {property_name}",
            {"property": property_name, "expected": expected, "value": repr(value)},
        )
        self.property_name = property_name
        self.expected = expected
        self.value = value
