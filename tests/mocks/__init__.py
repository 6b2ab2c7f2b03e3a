"""
In-memory stand-ins for Alpaca servers used by the unit tests.
"""

from tests.mocks.mock_alpaca import (
    FakeClock,
    MockAlpacaCamera,
    MockAlpacaClient,
    add_connected,
    build_image_bytes,
    not_implemented,
    network_error,
)

__all__ = [
    "FakeClock",
    "MockAlpacaCamera",
    "MockAlpacaClient",
    "add_connected",
    "build_image_bytes",
    "not_implemented",
    "network_error",
]
