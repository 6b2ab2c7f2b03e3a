"""
Camera exposure tracker.

Follows one exposure per camera through the Alpaca ``camerastate``
lifecycle (Idle -> Exposing -> Reading -> Download -> Idle) and downloads
the image when ``imageready`` becomes true.

Tick rules (every ``poll_interval`` seconds):
    - Past ``max_wait_time`` since start: fail with a timeout, whatever the
      camera reports.
    - Exposing: progress = min(100, round(elapsed / duration * 100)).
    - Reading / Download, or Idle after exposing (or after the nominal
      duration): poll ``imageready``; Idle-but-not-ready keeps polling.
    - Error: fail immediately.
    - Waiting: ignored.
    - ``camerastate`` unreadable: time-based progress until the nominal
      duration has passed, then poll ``imageready``.

Progress events never decrease and end at 100 on completion. Image
download tries ImageBytes first, then the JSON array; a failed download
still completes the exposure, without image data.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from alpacadeck.events import EventType
from alpacadeck.exceptions import DeviceBusyError, DeviceError
from alpacadeck.types import CameraState, DeviceType, PropertyBag
from services.actions.dispatcher import ActionDispatcher
from services.alpaca.alpaca_client import AlpacaClient
from services.alpaca.image_bytes import ImageData, decode_image_array, decode_image_bytes

logger = logging.getLogger(__name__)

POLLING_INTERVAL = 0.5
MAX_WAIT_TIME = 300.0

TIMEOUT_REASON = "Exposure timed out waiting for image"
CAMERA_ERROR_REASON = "Camera reported error state"


@dataclass
class ExposureSession:
    """State of one tracked exposure."""
    device_id: str
    start_time: float
    duration: float
    light: bool = True
    last_known_progress: int = 0
    is_polling_for_image: bool = False
    seen_active: bool = False
    active: bool = True
    started_at: datetime = field(default_factory=datetime.now)
    task: Optional[asyncio.Task] = None

    @property
    def duration_ms(self) -> int:
        return int(self.duration * 1000)


class ExposureTracker:
    """Starts, follows and aborts camera exposures.

    Args:
        dispatcher: Action dispatcher (device checks, error events)
        poll_interval: Seconds between state checks
        max_wait_time: Hard ceiling in seconds for one exposure
        clock: Monotonic time source in seconds
        sleep: Coroutine used between ticks
    """

    device_type = DeviceType.CAMERA

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        poll_interval: float = POLLING_INTERVAL,
        max_wait_time: float = MAX_WAIT_TIME,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.dispatcher = dispatcher
        self.registry = dispatcher.registry
        self.event_bus = dispatcher.event_bus
        self.poll_interval = poll_interval
        self.max_wait_time = max_wait_time
        self._clock = clock
        self._sleep = sleep
        self._sessions: Dict[str, ExposureSession] = {}
        self._images: Dict[str, ImageData] = {}
        self.registry.add_teardown_hook(self.stop)

    # ========================================================================
    # Queries
    # ========================================================================

    def is_tracking(self, device_id: str) -> bool:
        return device_id in self._sessions

    def get_session(self, device_id: str) -> Optional[ExposureSession]:
        return self._sessions.get(device_id)

    def last_image(self, device_id: str) -> Optional[ImageData]:
        return self._images.get(device_id)

    async def wait(self, device_id: str) -> None:
        """Wait until the device's tracking loop has finished."""
        session = self._sessions.get(device_id)
        if session is not None and session.task is not None:
            await asyncio.gather(session.task, return_exceptions=True)

    # ========================================================================
    # Commands
    # ========================================================================

    async def start_exposure(self, device_id: str, duration: float, light: bool = True) -> bool:
        """Start an exposure and begin tracking it.

        Args:
            device_id: Camera id
            duration: Exposure time in seconds
            light: False for dark frames (shutter closed)

        Returns:
            True if the camera accepted the exposure
        """
        params = {"Duration": duration, "Light": light}
        try:
            _, client = self.dispatcher.check_device(device_id, DeviceType.CAMERA)
            if duration < 0:
                raise ValueError(f"Exposure duration must be non-negative, got {duration}")
            if device_id in self._sessions:
                raise DeviceBusyError(
                    "Exposure already in progress",
                    device_id,
                    DeviceType.CAMERA.value,
                    current_operation="exposure",
                )
        except (DeviceError, ValueError) as e:
            self.dispatcher.report_error(device_id, "startexposure", e, params)
            return False

        session = ExposureSession(
            device_id=device_id,
            start_time=self._clock(),
            duration=float(duration),
            light=light,
        )
        self._sessions[device_id] = session
        self._update(device_id, {
            "isExposing": True,
            "exposureProgress": 0,
            "exposureTime": float(duration),
            "imageReady": False,
        })

        try:
            await client.put("startexposure", params)
        except Exception as e:
            self._end(session)
            self._update(device_id, {"isExposing": False, "exposureProgress": 0})
            self.dispatcher.report_error(device_id, "startexposure", e, params)
            return False

        logger.info(f"Started {duration}s {'light' if light else 'dark'} exposure on {device_id}")
        self.event_bus.emit(
            EventType.CAMERA_EXPOSURE_STARTED,
            device_id,
            duration=float(duration),
            isLight=light,
        )
        self.event_bus.emit(EventType.DEVICE_METHOD_CALLED, device_id, method="startexposure", args=params)
        session.task = asyncio.create_task(self._run(session))
        return True

    async def abort_exposure(self, device_id: str) -> bool:
        """Abort the current exposure; state becomes idle either way.

        Returns:
            True if the camera accepted the abort
        """
        try:
            _, client = self.dispatcher.check_device(device_id, DeviceType.CAMERA)
        except DeviceError as e:
            self.dispatcher.report_error(device_id, "abortexposure", e)
            return False

        self.stop(device_id)
        try:
            await client.put("abortexposure", {})
        except Exception as e:
            self._update(device_id, {"isExposing": False, "exposureProgress": 0})
            self.dispatcher.report_error(device_id, "abortexposure", e)
            return False

        self._update(device_id, {"isExposing": False, "exposureProgress": 0})
        logger.info(f"Aborted exposure on {device_id}")
        self.event_bus.emit(EventType.CAMERA_EXPOSURE_ABORTED, device_id)
        self.event_bus.emit(EventType.DEVICE_METHOD_CALLED, device_id, method="abortexposure", args={})
        return True

    def stop(self, device_id: str) -> None:
        """Stop tracking without emitting events (disconnect/removal)."""
        session = self._sessions.get(device_id)
        if session is None:
            return
        self._end(session)
        if session.task is not None and not session.task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if session.task is not current:
                session.task.cancel()

    # ========================================================================
    # Tracking loop
    # ========================================================================

    def _end(self, session: ExposureSession) -> None:
        session.active = False
        if self._sessions.get(session.device_id) is session:
            del self._sessions[session.device_id]

    def _is_current(self, session: ExposureSession) -> bool:
        return session.active and self._sessions.get(session.device_id) is session

    def _update(self, device_id: str, values: PropertyBag) -> None:
        if self.registry.has_device(device_id):
            self.registry.update_properties(device_id, values)

    def _time_progress(self, session: ExposureSession, elapsed: float) -> int:
        if session.duration <= 0:
            return 100
        return min(100, math.floor(elapsed / session.duration * 100 + 0.5))

    def _report_progress(self, session: ExposureSession, percent: int) -> None:
        if percent <= session.last_known_progress:
            return
        session.last_known_progress = percent
        self._update(session.device_id, {"exposureProgress": percent})
        self.event_bus.emit(EventType.CAMERA_EXPOSURE_CHANGED, session.device_id, progress=percent)

    async def _run(self, session: ExposureSession) -> None:
        try:
            while session.active:
                await self._sleep(self.poll_interval)
                if not self._is_current(session):
                    break
                await self._tick(session)
        except asyncio.CancelledError:
            logger.debug(f"Exposure tracking cancelled for {session.device_id}")
        except Exception as e:
            logger.error(f"Exposure tracking failed for {session.device_id}: {e}")
            if self._is_current(session):
                self._fail(session, f"Exposure tracking error: {e}")

    async def _tick(self, session: ExposureSession) -> None:
        device_id = session.device_id
        elapsed = self._clock() - session.start_time
        if elapsed > self.max_wait_time:
            self._fail(session, TIMEOUT_REASON)
            return

        client = self.registry.get_client(device_id)
        if client is None:
            self._fail(session, "Camera client unavailable")
            return

        try:
            state: Optional[int] = int(await client.get_property("camerastate"))
        except Exception as e:
            logger.warning(f"Could not read camerastate on {device_id}, estimating progress: {e}")
            state = None
        if not self._is_current(session):
            return

        if state is None:
            if elapsed >= session.duration:
                session.is_polling_for_image = True
            else:
                self._report_progress(session, self._time_progress(session, elapsed))
                return
        else:
            self._update(device_id, {"camerastate": state})
            if state == CameraState.ERROR:
                self._fail(session, CAMERA_ERROR_REASON)
                return
            if state == CameraState.EXPOSING:
                session.seen_active = True
                self._report_progress(session, self._time_progress(session, elapsed))
            elif state in (CameraState.READING, CameraState.DOWNLOAD):
                session.seen_active = True
                session.is_polling_for_image = True
            elif state == CameraState.IDLE:
                if session.seen_active or elapsed >= session.duration:
                    session.is_polling_for_image = True

        if not session.is_polling_for_image:
            return

        try:
            ready = await client.get_property("imageready")
        except Exception as e:
            logger.warning(f"Could not read imageready on {device_id}: {e}")
            return
        if not self._is_current(session):
            return

        if ready is True:
            await self._complete(session, client)
        else:
            logger.debug(f"{device_id} image not ready yet, still waiting")

    def _fail(self, session: ExposureSession, reason: str) -> None:
        self._end(session)
        self._update(session.device_id, {"isExposing": False, "exposureProgress": 0})
        logger.warning(f"Exposure failed on {session.device_id}: {reason}")
        self.event_bus.emit(EventType.CAMERA_EXPOSURE_FAILED, session.device_id, reason=reason)

    async def _complete(self, session: ExposureSession, client: AlpacaClient) -> None:
        device_id = session.device_id
        self._report_progress(session, 100)
        self._end(session)
        self._update(device_id, {"isExposing": False, "exposureProgress": 100, "imageReady": True})

        image = await self._download(session, client)
        if image is not None:
            self._images[device_id] = image
        logger.info(
            f"Exposure complete on {device_id}"
            + (f" ({image.width}x{image.height} via {image.source})" if image else " (no image data)")
        )
        self.event_bus.emit(
            EventType.CAMERA_EXPOSURE_COMPLETE,
            device_id,
            duration=session.duration,
            image=image,
        )
        if image is not None:
            self.event_bus.emit(EventType.CAMERA_IMAGE_READY, device_id, image=image)

    async def _download(self, session: ExposureSession, client: AlpacaClient) -> Optional[ImageData]:
        start_time = session.started_at.isoformat()
        try:
            raw = await client.get_image_bytes()
            pixels, metadata = decode_image_bytes(raw)
            return ImageData(
                data=pixels,
                width=metadata.dimension1,
                height=metadata.dimension2,
                planes=metadata.dimension3 if metadata.rank == 3 else 1,
                exposure_duration=session.duration,
                start_time=start_time,
                source="imagebytes",
                raw=raw,
                metadata=metadata,
            )
        except Exception as e:
            logger.info(f"ImageBytes download failed on {session.device_id}, trying JSON: {e}")

        try:
            pixels = decode_image_array(await client.get_image_array())
            return ImageData(
                data=pixels,
                width=pixels.shape[0],
                height=pixels.shape[1],
                planes=pixels.shape[2] if pixels.ndim == 3 else 1,
                exposure_duration=session.duration,
                start_time=start_time,
                source="json",
            )
        except Exception as e:
            logger.warning(f"Image download failed on {session.device_id}: {e}")
            return None
