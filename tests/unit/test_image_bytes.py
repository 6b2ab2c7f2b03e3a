"""
AlpacaDeck Unit Tests - ImageBytes Decoding

Unit tests for services/alpaca/image_bytes.py.

Run:
    pytest tests/unit/test_image_bytes.py -v
"""

import struct

import numpy as np
import pytest

from services.alpaca.image_bytes import (
    HEADER_SIZE,
    ImageBytesError,
    ImageData,
    decode_image_array,
    decode_image_bytes,
    parse_metadata,
)
from tests.mocks import build_image_bytes


class TestParseMetadata:
    """Header decoding."""

    def test_header_fields(self):
        buffer = build_image_bytes(np.zeros((4, 3)), element_type=2, transmission_type=6)
        metadata = parse_metadata(buffer)

        assert metadata.metadata_version == 1
        assert metadata.data_start == HEADER_SIZE
        assert metadata.image_element_type == 2
        assert metadata.transmission_element_type == 6
        assert metadata.rank == 2
        assert metadata.shape == (4, 3)

    def test_short_buffer(self):
        with pytest.raises(ImageBytesError):
            parse_metadata(b"\x01\x00\x00\x00")


class TestDecodeImageBytes:
    """Pixel decoding and error handling."""

    def test_uint16_transmission_widened_to_int32(self):
        pixels = np.arange(12).reshape(4, 3)
        data, metadata = decode_image_bytes(build_image_bytes(pixels))

        assert data.shape == (4, 3)
        assert data.dtype == np.dtype("<i4")
        assert data[3, 2] == 11
        assert np.array_equal(data, pixels)

    def test_byte_transmission(self):
        pixels = np.array([[0, 255], [128, 7]])
        data, _ = decode_image_bytes(build_image_bytes(pixels, element_type=6, transmission_type=6))
        assert data.dtype == np.uint8
        assert data.tolist() == [[0, 255], [128, 7]]

    def test_colour_image(self):
        pixels = np.arange(24).reshape(4, 2, 3)
        data, metadata = decode_image_bytes(build_image_bytes(pixels))

        assert metadata.rank == 3
        assert data.shape == (4, 2, 3)
        assert data[1, 1, 2] == pixels[1, 1, 2]

    def test_device_error_in_buffer(self):
        message = b"Camera not ready"
        header = struct.pack("<11i", 1, 0x40C, 1, 1, 44, 0, 0, 0, 0, 0, 0)

        with pytest.raises(ImageBytesError) as exc_info:
            decode_image_bytes(header + message)

        assert exc_info.value.error_number == 0x40C
        assert "Camera not ready" in str(exc_info.value)

    def test_truncated_payload(self):
        buffer = build_image_bytes(np.arange(12).reshape(4, 3))
        with pytest.raises(ImageBytesError, match="truncated"):
            decode_image_bytes(buffer[:-2])

    def test_unknown_transmission_type(self):
        header = struct.pack("<11i", 1, 0, 1, 1, 44, 2, 99, 2, 1, 1, 0)
        with pytest.raises(ImageBytesError):
            decode_image_bytes(header + b"\x00" * 8)

    def test_unsupported_rank(self):
        header = struct.pack("<11i", 1, 0, 1, 1, 44, 2, 2, 1, 4, 0, 0)
        with pytest.raises(ImageBytesError, match="rank"):
            decode_image_bytes(header + b"\x00" * 16)


class TestDecodeImageArray:
    """JSON ImageArray conversion."""

    def test_rank_two(self):
        data = decode_image_array([[1, 2, 3], [4, 5, 6]])
        assert data.shape == (2, 3)

    @pytest.mark.parametrize("value", [[1, 2, 3], [[1, 2], [3]], "pixels"])
    def test_rejects_non_images(self, value):
        with pytest.raises(ImageBytesError):
            decode_image_array(value)


class TestImageData:
    """Image summary."""

    def test_to_dict_omits_pixels(self):
        image = ImageData(
            data=np.zeros((2, 2), dtype=np.uint16),
            width=2,
            height=2,
            exposure_duration=1.5,
            start_time="2024-01-01T00:00:00",
        )
        summary = image.to_dict()
        assert summary["dtype"] == "uint16"
        assert summary["source"] == "imagebytes"
        assert "data" not in summary
