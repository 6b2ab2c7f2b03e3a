"""
Generic property poller.

One PropertyPoller manages every connected device of a single device
type. Each device gets a PollingHandle owning an asyncio task that runs
``poll_once`` then sleeps for the handle's interval, until the handle is
stopped or the device is no longer connected.

A tick fetches the profile's properties one after another (optionally
starting with one ``devicestate`` batch request), tolerates individual
failures, and merges whatever succeeded into the registry inside one
event batch so listeners see the property-changed burst together.

Failure policy:
    - A failing property is logged (WARNING for important properties,
      DEBUG otherwise) and skipped; the tick continues.
    - A property the device reports as not implemented (Alpaca error
      0x400) is not requested again for that device until restart.
    - After ``stale_after_failures`` consecutive ticks with no successful
      read the device is flagged stale and a warning is logged once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from alpacadeck.config import PollingConfig
from alpacadeck.types import PropertyBag
from services.alpaca.alpaca_client import AlpacaClient, AlpacaError
from services.polling.profiles import (
    IMPORTANT_PROPERTIES,
    DeviceProfile,
    ParameterizedRead,
    expand_values,
)

if TYPE_CHECKING:
    from alpacadeck.registry import DeviceRegistry

logger = logging.getLogger(__name__)

# Alpaca "not implemented" error number
NOT_IMPLEMENTED = 0x400


@dataclass
class PollingHandle:
    """Polling state for one device."""
    device_id: str
    interval: float
    active: bool = True
    task: Optional[asyncio.Task] = None
    unsupported: Set[str] = field(default_factory=set)
    ticks: int = 0


def _is_not_implemented(error: Exception) -> bool:
    return (
        isinstance(error, AlpacaError)
        and error.device_error is not None
        and error.device_error.error_number == NOT_IMPLEMENTED
    )


class PropertyPoller:
    """Polling manager for all devices of one type.

    Args:
        registry: Device registry the results are merged into
        profile: Device-type profile (property list, interval, hooks)
        config: Polling configuration (interval overrides, stale limit)
        sleep: Coroutine used between ticks (injectable for tests)
    """

    def __init__(
        self,
        registry: "DeviceRegistry",
        profile: DeviceProfile,
        config: Optional[PollingConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        config = config or PollingConfig()
        self.registry = registry
        self.profile = profile
        self.device_type = profile.device_type
        self.min_interval = config.min_interval
        self.interval = max(
            self.min_interval,
            config.intervals.get(profile.device_type.value, profile.interval),
        )
        self.use_device_state = config.use_device_state
        self.stale_after_failures = config.stale_after_failures
        self._sleep = sleep
        self._handles: Dict[str, PollingHandle] = {}
        self._failure_counts: Dict[str, int] = {}
        self._device_state_unsupported: Set[str] = set()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self, device_id: str, interval: Optional[float] = None) -> PollingHandle:
        """Start (or restart) the polling loop for a device."""
        self.stop(device_id)
        handle = PollingHandle(
            device_id=device_id,
            interval=max(self.min_interval, interval or self.interval),
        )
        self._handles[device_id] = handle
        handle.task = asyncio.create_task(self._run(handle))
        logger.debug(
            f"Started {self.device_type.value} polling for {device_id} "
            f"every {handle.interval}s"
        )
        return handle

    def stop(self, device_id: str) -> bool:
        """Stop polling a device. Results still in flight are discarded."""
        handle = self._handles.pop(device_id, None)
        self._failure_counts.pop(device_id, None)
        self._device_state_unsupported.discard(device_id)
        if handle is None:
            return False
        handle.active = False
        if handle.task is not None and not handle.task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if handle.task is not current:
                handle.task.cancel()
        logger.debug(f"Stopped {self.device_type.value} polling for {device_id}")
        return True

    def stop_all(self) -> None:
        for device_id in list(self._handles):
            self.stop(device_id)

    def is_polling(self, device_id: str) -> bool:
        handle = self._handles.get(device_id)
        return handle is not None and handle.active

    def get_handle(self, device_id: str) -> Optional[PollingHandle]:
        return self._handles.get(device_id)

    @property
    def active_devices(self) -> List[str]:
        return [d for d, h in self._handles.items() if h.active]

    def set_interval(self, device_id: str, interval: float) -> float:
        """Change a device's poll interval, restarting its loop if running.

        Returns:
            The effective interval (never below ``min_interval``)
        """
        effective = max(self.min_interval, interval)
        if self.is_polling(device_id):
            self.start(device_id, effective)
        return effective

    def is_stale(self, device_id: str) -> bool:
        """True after ``stale_after_failures`` consecutive failed ticks."""
        if self.stale_after_failures <= 0:
            return False
        return self._failure_counts.get(device_id, 0) >= self.stale_after_failures

    async def _run(self, handle: PollingHandle) -> None:
        try:
            while handle.active:
                try:
                    await self.poll_once(handle.device_id)
                except Exception as e:
                    logger.error(f"Polling tick failed for {handle.device_id}: {e}")
                handle.ticks += 1
                if not handle.active:
                    break
                await self._sleep(handle.interval)
        except asyncio.CancelledError:
            logger.debug(f"Polling task cancelled for {handle.device_id}")

    # ========================================================================
    # Fetching
    # ========================================================================

    def _still_wanted(self, device_id: str, handle: Optional[PollingHandle]) -> bool:
        device = self.registry.get_device(device_id)
        if device is None or not device.is_connected:
            return False
        if handle is not None:
            return handle.active and self._handles.get(device_id) is handle
        return True

    def _log_failure(self, device_id: str, name: str, error: Exception) -> None:
        level = logging.WARNING if name in IMPORTANT_PROPERTIES else logging.DEBUG
        logger.log(level, f"Failed to poll {name} on {device_id}: {error}")

    async def _fetch_properties(
        self,
        device_id: str,
        client: AlpacaClient,
        names: List[str],
        handle: Optional[PollingHandle],
    ) -> Tuple[PropertyBag, int]:
        values: PropertyBag = {}
        failures = 0
        remaining = list(names)

        if self.use_device_state and remaining and device_id not in self._device_state_unsupported:
            try:
                state = await client.get_device_state()
            except Exception as e:
                logger.debug(f"devicestate unavailable for {device_id}, polling individually: {e}")
                self._device_state_unsupported.add(device_id)
            else:
                for name in remaining:
                    if name in state:
                        values[name] = state[name]
                remaining = [name for name in remaining if name not in state]

        for name in remaining:
            try:
                values[name] = await client.get_property(name)
            except Exception as e:
                failures += 1
                if handle is not None and _is_not_implemented(e):
                    handle.unsupported.add(name)
                    logger.info(f"{device_id} does not implement {name}; no longer polling it")
                self._log_failure(device_id, name, e)

        return values, failures

    async def _fetch_parameterized(
        self,
        device_id: str,
        client: AlpacaClient,
        reads: List[ParameterizedRead],
    ) -> Tuple[PropertyBag, int]:
        values: PropertyBag = {}
        failures = 0
        for key, method, params in reads:
            try:
                values[key] = await client.get(method, params)
            except Exception as e:
                failures += 1
                self._log_failure(device_id, key, e)
        return values, failures

    def _record_outcome(self, device_id: str, succeeded: bool) -> None:
        if succeeded:
            if self.is_stale(device_id):
                logger.info(f"{device_id} is responding again")
            self._failure_counts[device_id] = 0
            return
        count = self._failure_counts.get(device_id, 0) + 1
        self._failure_counts[device_id] = count
        if self.stale_after_failures > 0 and count == self.stale_after_failures:
            logger.warning(
                f"{device_id} returned no properties in {count} consecutive polls; "
                f"showing stale data"
            )

    def _apply(self, device_id: str, values: PropertyBag) -> PropertyBag:
        device = self.registry.get_device(device_id)
        if device is None:
            return {}
        previous = dict(device.properties)
        expanded = expand_values(self.profile, values, previous)
        bus = self.registry.event_bus
        with bus.batch():
            changes = self.registry.update_properties(device_id, expanded)
            if changes and self.profile.on_change is not None:
                self.profile.on_change(bus, device_id, previous, changes)
        return changes

    async def poll_once(self, device_id: str) -> bool:
        """Fetch and merge one round of properties.

        Stops the device's loop if it is gone or no longer connected.

        Returns:
            True if any values were merged
        """
        device = self.registry.get_device(device_id)
        client = self.registry.get_client(device_id)
        if device is None or not device.is_connected or client is None:
            self.stop(device_id)
            return False

        handle = self._handles.get(device_id)
        names = self.profile.poll_properties(device.properties)
        if handle is not None:
            names = [name for name in names if name not in handle.unsupported]

        values, failures = await self._fetch_properties(device_id, client, names, handle)
        if self.profile.parameterized is not None:
            reads = self.profile.parameterized(device.properties)
            extra, extra_failures = await self._fetch_parameterized(device_id, client, reads)
            values.update(extra)
            failures += extra_failures

        if not self._still_wanted(device_id, handle):
            logger.debug(f"Discarding poll results for {device_id}")
            return False

        self._record_outcome(device_id, bool(values) or failures == 0)
        if not values:
            return False
        self._apply(device_id, values)
        return True

    async def fetch_capabilities(self, device_id: str) -> PropertyBag:
        """Fetch static capability properties concurrently and merge them."""
        device = self.registry.get_device(device_id)
        client = self.registry.get_client(device_id)
        if device is None or client is None:
            return {}

        names = list(self.profile.capabilities)
        values: PropertyBag = {}
        results = await asyncio.gather(
            *(client.get_property(name) for name in names), return_exceptions=True
        )
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.debug(f"Capability {name} unavailable on {device_id}: {result}")
            else:
                values[name] = result

        if self.profile.capability_parameterized is not None:
            reads = self.profile.capability_parameterized({**device.properties, **values})
            results = await asyncio.gather(
                *(client.get(method, params) for _, method, params in reads),
                return_exceptions=True,
            )
            for (key, _, _), result in zip(reads, results):
                if isinstance(result, BaseException):
                    logger.debug(f"Capability {key} unavailable on {device_id}: {result}")
                else:
                    values[key] = result

        if not self._still_wanted(device_id, None):
            return {}
        if values:
            self._apply(device_id, values)
        logger.debug(f"Fetched {len(values)} capabilities for {device_id}")
        return values
