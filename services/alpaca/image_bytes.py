"""
ASCOM ImageBytes decoding.

Alpaca cameras can return ``imagearray`` either as a JSON nested array or,
when the request carries ``Accept: application/imagebytes``, as a binary
buffer: a 44-byte little-endian int32 header followed by the pixel data
in the transmission element type.

Header layout (byte offset):
    0  MetadataVersion        24 TransmissionElementType
    4  ErrorNumber            28 Rank
    8  ClientTransactionID    32 Dimension1 (width)
    12 ServerTransactionID    36 Dimension2 (height)
    16 DataStart              40 Dimension3 (planes, rank 3 only)
    20 ImageElementType

Pixel data is ordered with Dimension1 varying slowest, so a C-order
reshape to ``(width, height[, planes])`` yields the same indexing as the
JSON ImageArray (``image[x][y]``).
"""

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

HEADER_SIZE = 44
HEADER_FORMAT = "<11i"

# ImageArrayElementTypes -> numpy dtype
ELEMENT_TYPES: Dict[int, np.dtype] = {
    1: np.dtype("<i2"),   # Int16
    2: np.dtype("<i4"),   # Int32
    3: np.dtype("<f8"),   # Double
    4: np.dtype("<f4"),   # Single
    5: np.dtype("<u8"),   # UInt64
    6: np.dtype("u1"),    # Byte
    7: np.dtype("<i8"),   # Int64
    8: np.dtype("<u2"),   # UInt16
    9: np.dtype("<u4"),   # UInt32
}


class ImageBytesError(ValueError):
    """Malformed ImageBytes buffer or an error reported inside it."""

    def __init__(self, message: str, error_number: int = 0):
        super().__init__(message)
        self.error_number = error_number


@dataclass
class ImageBytesMetadata:
    """Decoded ImageBytes header."""
    metadata_version: int
    error_number: int
    client_transaction_id: int
    server_transaction_id: int
    data_start: int
    image_element_type: int
    transmission_element_type: int
    rank: int
    dimension1: int
    dimension2: int
    dimension3: int

    @property
    def shape(self) -> tuple:
        if self.rank == 3:
            return (self.dimension1, self.dimension2, self.dimension3)
        return (self.dimension1, self.dimension2)


@dataclass
class ImageData:
    """Container for downloaded camera image data."""
    data: Optional[np.ndarray]
    width: int
    height: int
    exposure_duration: float
    start_time: str
    source: str = "imagebytes"
    planes: int = 1
    raw: Optional[bytes] = None
    metadata: Optional[ImageBytesMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        """Summary without pixel data, for event payloads and logs."""
        return {
            "width": self.width,
            "height": self.height,
            "planes": self.planes,
            "exposure_duration": self.exposure_duration,
            "start_time": self.start_time,
            "source": self.source,
            "dtype": str(self.data.dtype) if self.data is not None else None,
        }


def parse_metadata(buffer: bytes) -> ImageBytesMetadata:
    """Decode the ImageBytes header.

    Raises:
        ImageBytesError: Buffer shorter than the header
    """
    if len(buffer) < HEADER_SIZE:
        raise ImageBytesError(f"ImageBytes buffer too short ({len(buffer)} bytes)")
    return ImageBytesMetadata(*struct.unpack_from(HEADER_FORMAT, buffer, 0))


def decode_image_bytes(buffer: bytes) -> Tuple[np.ndarray, ImageBytesMetadata]:
    """Decode an ImageBytes buffer into a numpy array.

    The array has the image element type and shape ``(width, height)`` or
    ``(width, height, planes)``.

    Raises:
        ImageBytesError: Malformed buffer or device-reported error
    """
    metadata = parse_metadata(buffer)

    if metadata.error_number != 0:
        message = buffer[metadata.data_start:].decode("utf-8", errors="replace")
        raise ImageBytesError(
            message or f"Device error {metadata.error_number}",
            metadata.error_number,
        )
    if metadata.rank not in (2, 3):
        raise ImageBytesError(f"Unsupported image rank {metadata.rank}")
    if metadata.data_start < HEADER_SIZE or metadata.data_start > len(buffer):
        raise ImageBytesError(f"Invalid data start offset {metadata.data_start}")

    wire_dtype = ELEMENT_TYPES.get(metadata.transmission_element_type)
    image_dtype = ELEMENT_TYPES.get(metadata.image_element_type, wire_dtype)
    if wire_dtype is None:
        raise ImageBytesError(
            f"Unknown transmission element type {metadata.transmission_element_type}"
        )

    count = int(np.prod(metadata.shape))
    payload = memoryview(buffer)[metadata.data_start:]
    if len(payload) < count * wire_dtype.itemsize:
        raise ImageBytesError(
            f"ImageBytes payload truncated: expected {count * wire_dtype.itemsize} bytes, "
            f"got {len(payload)}"
        )

    pixels = np.frombuffer(payload, dtype=wire_dtype, count=count).reshape(metadata.shape)
    if image_dtype is not None and image_dtype != wire_dtype:
        pixels = pixels.astype(image_dtype)
    return pixels, metadata


def decode_image_array(value: List[Any]) -> np.ndarray:
    """Convert a JSON ImageArray ``Value`` into a numpy array.

    Raises:
        ImageBytesError: Not a rank 2 or rank 3 rectangular array
    """
    try:
        pixels = np.asarray(value)
    except ValueError as e:
        raise ImageBytesError(f"Ragged image array: {e}") from e
    if pixels.ndim not in (2, 3) or pixels.dtype == object:
        raise ImageBytesError(f"Unsupported image array with shape {pixels.shape}")
    return pixels
