"""
ASCOM Alpaca device integration.

Network device control via the ASCOM Alpaca REST protocol. Command
adapters live in ``services.alpaca.devices`` and discovery in
``services.alpaca.discovery``.
"""

from .alpaca_client import (
    AlpacaClient,
    AlpacaError,
    DeviceErrorInfo,
    ErrorType,
)
from .image_bytes import (
    ImageBytesError,
    ImageBytesMetadata,
    ImageData,
    decode_image_array,
    decode_image_bytes,
)

__all__ = [
    "AlpacaClient",
    "AlpacaError",
    "DeviceErrorInfo",
    "ErrorType",
    "ImageBytesError",
    "ImageBytesMetadata",
    "ImageData",
    "decode_image_array",
    "decode_image_bytes",
]
