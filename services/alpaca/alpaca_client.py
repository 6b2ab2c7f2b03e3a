"""
ASCOM Alpaca HTTP client for AlpacaDeck device communication.

This module provides the asynchronous transport used by the device core:
GET/PUT against ``/api/v1/{devicetype}/{devicenumber}/{method}`` with the
ClientID / ClientTransactionID bookkeeping, Alpaca error decoding, request
timeouts and retries.

Requirements:
    - aiohttp>=3.9

Example:
    >>> async with AlpacaClient("http://192.168.1.100:11111", "camera", 0) as client:
    ...     await client.set_property("connected", True)
    ...     state = await client.get_property("camerastate")
    ...     await client.put("startexposure", {"Duration": 2.0, "Light": True})
"""

import asyncio
import itertools
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/"
IMAGEBYTES_MIME = "application/imagebytes"

# Alpaca PUT parameter names are case-sensitive; anything not listed here
# is the property name with its first letter upper-cased.
PARAMETER_NAMES: Dict[str, str] = {
    "connected": "Connected",
    "binx": "BinX",
    "biny": "BinY",
    "cooleron": "CoolerOn",
    "setccdtemperature": "SetCCDTemperature",
    "readoutmode": "ReadoutMode",
    "startx": "StartX",
    "starty": "StartY",
    "numx": "NumX",
    "numy": "NumY",
    "fastreadout": "FastReadout",
    "subexposureduration": "SubExposureDuration",
    "tempcomp": "TempComp",
    "trackingrate": "TrackingRate",
    "targetrightascension": "TargetRightAscension",
    "targetdeclination": "TargetDeclination",
    "rightascensionrate": "RightAscensionRate",
    "declinationrate": "DeclinationRate",
    "guideraterightascension": "GuideRateRightAscension",
    "guideratedeclination": "GuideRateDeclination",
    "sideofpier": "SideOfPier",
    "doesrefraction": "DoesRefraction",
    "sitelatitude": "SiteLatitude",
    "sitelongitude": "SiteLongitude",
    "siteelevation": "SiteElevation",
    "slewsettletime": "SlewSettleTime",
    "utcdate": "UTCDate",
    "averageperiod": "AveragePeriod",
}


def parameter_name(property_name: str) -> str:
    """Return the Alpaca PUT parameter name for a settable property."""
    key = property_name.lower()
    return PARAMETER_NAMES.get(key, key[:1].upper() + key[1:])


# ============================================================================
# Errors
# ============================================================================

class ErrorType(Enum):
    """Classification of Alpaca request failures."""
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"
    DEVICE = "device"
    UNKNOWN = "unknown"


@dataclass
class DeviceErrorInfo:
    """Alpaca ErrorNumber / ErrorMessage pair from a response body."""
    error_number: int
    error_message: str = ""


class AlpacaError(Exception):
    """A failed Alpaca request.

    Attributes:
        error_type: ErrorType classification
        url: Request URL
        status_code: HTTP status, if a response was received
        device_error: Alpaca error details for DEVICE errors
        retry: Whether repeating the request may succeed
    """

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        url: str = "",
        status_code: Optional[int] = None,
        device_error: Optional[DeviceErrorInfo] = None,
        retry: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.url = url
        self.status_code = status_code
        self.device_error = device_error
        self.retry = retry

    def __str__(self) -> str:
        parts = [self.message]
        if self.device_error:
            parts.append(f"(ErrorNumber={self.device_error.error_number})")
        if self.status_code:
            parts.append(f"[HTTP {self.status_code}]")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for event payloads."""
        return {
            "message": self.message,
            "type": self.error_type.value,
            "url": self.url,
            "status_code": self.status_code,
            "error_number": self.device_error.error_number if self.device_error else None,
        }


# ============================================================================
# Client
# ============================================================================

class AlpacaClient:
    """
    Asynchronous client for one Alpaca device.

    Every request carries the client's random ClientID (0-65535) and a
    ClientTransactionID that increases by one per request. GET parameters
    are sent in the query string; PUT parameters are sent form-encoded in
    the body, never in the URL.

    Args:
        base_url: Server root such as ``http://host:11111``. A URL that
                  already contains ``/api/v1/`` is truncated before it.
        device_type: Alpaca device type (case-insensitive)
        device_number: Device index on the server
        timeout: Per-request timeout in seconds
        retries: Extra attempts for retryable failures (timeouts, network
                 errors, HTTP 5xx)
        retry_delay: Seconds between attempts
        session: Optional shared aiohttp session; owned session otherwise
    """

    def __init__(
        self,
        base_url: str,
        device_type: str,
        device_number: int = 0,
        timeout: float = 10.0,
        retries: int = 2,
        retry_delay: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        base = base_url.rstrip("/")
        index = base.lower().find(API_PREFIX.rstrip("/"))
        if index != -1:
            base = base[:index]
        self.base_url = base
        self.device_type = device_type.lower()
        self.device_number = device_number
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.client_id = random.randint(0, 65535)
        self._transaction_ids = itertools.count(1)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "AlpacaClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def device_url(self, method: str) -> str:
        """Build the endpoint URL for a method (always lowercase)."""
        return (
            f"{self.base_url}{API_PREFIX}{self.device_type}/"
            f"{self.device_number}/{method.lower()}"
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the owned HTTP session."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _common_params(self) -> Dict[str, str]:
        return {
            "ClientID": str(self.client_id),
            "ClientTransactionID": str(next(self._transaction_ids)),
        }

    @staticmethod
    def _encode(value: Any) -> str:
        if isinstance(value, bool):
            return "True" if value else "False"
        return str(value)

    # ------------------------------------------------------------------------
    # Request execution
    # ------------------------------------------------------------------------

    async def _handle_response(self, response: aiohttp.ClientResponse, url: str) -> Any:
        if response.status >= 400:
            retry = response.status >= 500
            error_type = ErrorType.SERVER if retry else ErrorType.DEVICE
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
            if isinstance(body, dict) and body.get("ErrorNumber") is not None:
                number = int(body["ErrorNumber"])
                message = body.get("ErrorMessage") or f"Error {number}"
                raise AlpacaError(
                    message,
                    ErrorType.DEVICE,
                    url,
                    response.status,
                    DeviceErrorInfo(number, body.get("ErrorMessage") or ""),
                    retry,
                )
            raise AlpacaError(
                f"HTTP error {response.status}: {response.reason}",
                error_type,
                url,
                response.status,
                retry=retry,
            )

        try:
            body = await response.json(content_type=None)
        except ValueError as e:
            raise AlpacaError(
                "Failed to parse response as JSON", ErrorType.UNKNOWN, url, response.status
            ) from e

        if isinstance(body, dict):
            number = body.get("ErrorNumber") or 0
            if number != 0:
                message = body.get("ErrorMessage") or f"Error {number}"
                raise AlpacaError(
                    message,
                    ErrorType.DEVICE,
                    url,
                    response.status,
                    DeviceErrorInfo(int(number), body.get("ErrorMessage") or ""),
                )
            if "Value" in body:
                return body["Value"]
        return body

    async def _request_once(
        self,
        http_method: str,
        url: str,
        params: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        raw: bool = False,
    ) -> Any:
        session = self._get_session()
        request_params = self._common_params()
        request_params.update({k: self._encode(v) for k, v in params.items() if v is not None})

        kwargs: Dict[str, Any] = {"headers": {"Accept": "application/json", **(headers or {})}}
        if http_method == "PUT":
            kwargs["data"] = request_params
        else:
            kwargs["params"] = request_params

        logger.debug(f"Alpaca {http_method} {url} {params}")
        try:
            async with session.request(http_method, url, **kwargs) as response:
                if raw:
                    return await self._handle_raw_response(response, url)
                return await self._handle_response(response, url)
        except asyncio.TimeoutError as e:
            raise AlpacaError(
                f"Request timed out after {self.timeout}s",
                ErrorType.TIMEOUT,
                url,
                retry=True,
            ) from e
        except aiohttp.ClientError as e:
            raise AlpacaError(
                f"Network error: {e}", ErrorType.NETWORK, url, retry=True
            ) from e

    async def _handle_raw_response(self, response: aiohttp.ClientResponse, url: str) -> bytes:
        content_type = response.headers.get("Content-Type", "")
        if response.status >= 400 or IMAGEBYTES_MIME not in content_type.lower():
            # Errors and servers without ImageBytes support answer with JSON
            await self._handle_response(response, url)
            raise AlpacaError(
                "Server did not return ImageBytes data",
                ErrorType.UNKNOWN,
                url,
                response.status,
            )
        return await response.read()

    async def _request(
        self,
        http_method: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        raw: bool = False,
    ) -> Any:
        url = self.device_url(method)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._request_once(http_method, url, params or {}, headers, raw)
            except AlpacaError as e:
                if not e.retry or attempt > self.retries:
                    raise
                logger.debug(
                    f"Retrying {http_method} {url} ({attempt}/{self.retries}): {e}"
                )
                await asyncio.sleep(self.retry_delay)

    # ------------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------------

    async def get(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a device property or parameterized value."""
        return await self._request("GET", method, params)

    async def put(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """PUT a device command or property with case-sensitive parameters."""
        return await self._request("PUT", method, params)

    async def get_property(self, name: str) -> Any:
        return await self.get(name)

    async def set_property(self, name: str, value: Any) -> Any:
        return await self.put(name, {parameter_name(name): value})

    async def call_method(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke a device method (PUT)."""
        return await self.put(method, params)

    async def get_device_state(self) -> Dict[str, Any]:
        """Fetch the ``devicestate`` batch as a dict keyed by lowercase name.

        Raises:
            AlpacaError: Request failed or the server returned a malformed list
        """
        value = await self.get("devicestate")
        if not isinstance(value, list):
            raise AlpacaError(
                "Malformed devicestate response",
                ErrorType.UNKNOWN,
                self.device_url("devicestate"),
            )
        state = {}
        for item in value:
            if isinstance(item, dict) and "Name" in item:
                state[str(item["Name"]).lower()] = item.get("Value")
        return state

    async def get_image_bytes(self) -> bytes:
        """Download the last image in ImageBytes binary form."""
        return await self._request(
            "GET", "imagearray", headers={"Accept": IMAGEBYTES_MIME}, raw=True
        )

    async def get_image_array(self) -> List[Any]:
        """Download the last image as a JSON nested number array."""
        value = await self.get("imagearray")
        if not isinstance(value, list):
            raise AlpacaError(
                "Malformed imagearray response",
                ErrorType.UNKNOWN,
                self.device_url("imagearray"),
            )
        return value
