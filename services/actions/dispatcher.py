"""
Action dispatcher for Alpaca device commands.

Every command goes through the same template:

    1. Look up the device and check its type; a missing device, a type
       mismatch or a missing client emits deviceApiError and fails.
    2. PUT the command with its case-sensitive Alpaca parameters.
    3. On success apply any optimistic property values (tagged as
       optimistic in the registry), emit deviceMethodCalled and refresh.
    4. On failure emit deviceApiError and still refresh, so partially
       applied state is reconciled.

Dispatch never raises into the caller: it returns True or False, and
every failure produces exactly one deviceApiError event.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from alpacadeck.events import EventType
from alpacadeck.exceptions import DeviceNotConnectedError, DeviceNotFoundError, DeviceTypeMismatchError
from alpacadeck.types import DeviceType, PropertyBag
from services.alpaca.alpaca_client import AlpacaError

if TYPE_CHECKING:
    from alpacadeck.registry import DeviceRegistry

logger = logging.getLogger(__name__)


def describe_error(error: Exception) -> Dict[str, Any]:
    """Event payload fields for an error."""
    if isinstance(error, AlpacaError):
        return error.to_dict()
    return {"message": str(error), "type": type(error).__name__}


class ActionDispatcher:
    """Issues device commands and reconciles state afterwards.

    Args:
        registry: Device registry (devices, clients and refresh)
    """

    def __init__(self, registry: "DeviceRegistry"):
        self.registry = registry
        self.event_bus = registry.event_bus

    def report_error(
        self,
        device_id: str,
        action: str,
        error: Exception,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Emit the deviceApiError event for a failed action."""
        logger.error(f"{action} failed on {device_id}: {error}")
        self.event_bus.emit(
            EventType.DEVICE_API_ERROR,
            device_id,
            action=action,
            params=dict(params or {}),
            error=describe_error(error),
            exception=error,
        )

    def check_device(self, device_id: str, device_type: Union[str, DeviceType]):
        """Return the device and client for a command.

        Raises:
            DeviceNotFoundError: Unknown device
            DeviceTypeMismatchError: Device is of another type
            DeviceNotConnectedError: Device has no client
        """
        expected = DeviceType.parse(device_type)
        device = self.registry.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        if device.type != expected:
            raise DeviceTypeMismatchError(device_id, device.type.value, expected.value)
        client = self.registry.get_client(device_id)
        if client is None:
            raise DeviceNotConnectedError(
                "Device has no Alpaca client", device_id, device.type.value
            )
        return device, client

    async def dispatch(
        self,
        device_id: str,
        device_type: Union[str, DeviceType],
        method: str,
        params: Optional[Dict[str, Any]] = None,
        optimistic: Optional[PropertyBag] = None,
        refresh: bool = True,
    ) -> bool:
        """Send one command to a device.

        Args:
            device_id: Target device
            device_type: Type the command belongs to
            method: Alpaca method name (sent lowercase)
            params: PUT parameters with exact Alpaca casing
            optimistic: Property values known to follow from the command
            refresh: Poll the device after the command

        Returns:
            True if the device accepted the command
        """
        try:
            _, client = self.check_device(device_id, device_type)
        except (DeviceNotFoundError, DeviceTypeMismatchError, DeviceNotConnectedError) as e:
            self.report_error(device_id, method, e, params)
            return False

        try:
            result = await client.put(method, params or {})
        except Exception as e:
            self.report_error(device_id, method, e, params)
            await self._refresh(device_id)
            return False

        if optimistic:
            self.registry.update_properties(device_id, optimistic, optimistic=True)
        logger.debug(f"{method} sent to {device_id} with {params or {}}")
        self.event_bus.emit(
            EventType.DEVICE_METHOD_CALLED,
            device_id,
            method=method,
            args=dict(params or {}),
            result=result,
        )
        if refresh:
            await self._refresh(device_id)
        return True

    async def get(
        self,
        device_id: str,
        device_type: Union[str, DeviceType],
        method: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Read a parameterized value (switch name, sensor description).

        Returns:
            The value, or None after emitting deviceApiError
        """
        try:
            _, client = self.check_device(device_id, device_type)
            return await client.get(method, params or {})
        except Exception as e:
            self.report_error(device_id, method, e, params)
            return None

    async def _refresh(self, device_id: str) -> None:
        try:
            await self.registry.refresh(device_id)
        except Exception as e:
            logger.warning(f"Status refresh failed for {device_id}: {e}")
