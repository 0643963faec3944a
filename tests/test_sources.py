"""
Unit tests for load_volume() and its three source branches.

Remote loads use an in-memory fake instead of HTTP; local files are written
to temporary directories with tifffile and pynrrd.
"""

import json
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import numpy as np
import pytest
import requests
from numcodecs import Zlib

from volstream_light.errors import ErrorKind, LocalDecodeError
from volstream_light.normalize import FLAT_VOLUME_VALUE, ElementType
from volstream_light.sources import (
    BUILTIN_VOLUME_SIZE,
    BuiltinVolume,
    LoadRequest,
    create_builtin_volume,
    decode_local_volume,
    element_type_from_zarr_dtype,
    fetch_resource_blocking,
    load_volume,
    local_focus_point,
    read_local_volume,
)
from volstream_light.zarr_storage import ChunkRemainder, FocusPoint

BASE_URL = "http://host/vol"
CHUNKS = (4, 8, 16)  # z, y, x


class FakeStore:
    """Serves a zarr array from memory and records requested URLs."""

    def __init__(self, dtype="|u1", compressor=None, order="C", chunk=None, metadata=None):
        self.urls = []
        self.codec = Zlib(level=1)
        self.metadata = metadata
        if self.metadata is None:
            doc = {
                "zarr_format": 2,
                "shape": [64, 64, 64],
                "chunks": list(CHUNKS),
                "dtype": dtype,
                "order": order,
                "compressor": compressor if compressor is not None else self.codec.get_config(),
            }
            self.metadata = json.dumps(doc).encode()
        if chunk is None:
            chunk = np.arange(int(np.prod(CHUNKS)), dtype=np.uint8).tobytes()
        self.chunk = chunk

    def __call__(self, url):
        self.urls.append(url)
        if url.endswith(".zarray"):
            return self.metadata
        return self.codec.encode(self.chunk)


class TestBuiltinVolumes:
    """Tests for create_builtin_volume() and builtin dispatch."""

    @pytest.mark.parametrize("example", list(BuiltinVolume))
    def test_shape_and_dtype(self, example):
        volume = create_builtin_volume(example, 32)
        assert volume.shape == (32, 32, 32)
        assert volume.dtype == np.uint8

    def test_colormap_is_x_ramp(self):
        volume = create_builtin_volume(BuiltinVolume.COLORMAP, 16)
        assert volume[3, 5].tolist() == list(range(16))
        assert np.array_equal(volume[0], volume[15])

    def test_box_faces(self):
        volume = create_builtin_volume(BuiltinVolume.BOX, 64)
        assert volume[32, 32, 0] == 50
        assert volume[32, 32, 63] == 100
        assert volume[32, 0, 32] == 255
        assert volume[32, 63, 32] == 200
        assert volume[0, 32, 32] == 150
        assert volume[63, 32, 32] == 10
        assert volume[32, 32, 32] == 0

    def test_helix_is_deterministic(self):
        a = create_builtin_volume(BuiltinVolume.HELIX)
        b = create_builtin_volume(BuiltinVolume.HELIX)
        assert np.array_equal(a, b)
        assert {200, 150, 100} <= set(np.unique(a).tolist())

    def test_load_builtin(self):
        result = load_volume(LoadRequest(source="file:///default_box", width=1, height=1, depth=1))

        assert result.success
        assert result.error is None
        assert (result.width, result.height, result.depth) == (BUILTIN_VOLUME_SIZE,) * 3
        assert result.data.size == BUILTIN_VOLUME_SIZE**3
        assert result.element_type is ElementType.UINT8

    def test_builtin_ignores_fetch_and_files(self):
        fetch = MagicMock()
        read_file = MagicMock()
        result = load_volume(LoadRequest(source="file:///default_helix"), fetch, read_file)

        assert result.success
        fetch.assert_not_called()
        read_file.assert_not_called()


class TestRemoteLoad:
    """Tests for the remote zarr branch of load_volume()."""

    def test_success(self):
        store = FakeStore()
        request = LoadRequest(source=BASE_URL, global_focus=FocusPoint(6, 20, 40), level=0)

        result = load_volume(request, fetch=store)

        assert result.success, result.error
        assert store.urls == [
            "http://host/vol/0/.zarray",
            "http://host/vol/0/1.2.2",
        ]
        assert (result.depth, result.height, result.width) == CHUNKS
        assert result.data.size == int(np.prod(CHUNKS))
        assert result.data.tobytes() == store.chunk
        assert result.element_type is ElementType.UINT8
        assert result.global_focus == FocusPoint(6, 20, 40)

    def test_local_focus_from_remainder(self):
        store = FakeStore()
        request = LoadRequest(source=BASE_URL, global_focus=FocusPoint(2, 4, 8))

        result = load_volume(request, fetch=store)

        # Focus sits at the middle of chunk (0, 0, 0) on every axis.
        assert result.local_focus == FocusPoint(0.0, 0.0, 0.0)

    def test_order_and_separator_overrides(self):
        store = FakeStore()
        request = LoadRequest(
            source=BASE_URL,
            global_focus=FocusPoint(6, 20, 40),
            order="yxz",
            dimension_separator="/",
        )

        assert load_volume(request, fetch=store).success
        assert store.urls[-1] == "http://host/vol/2/2/1"

    def test_uint16_chunk_is_normalized(self):
        samples = np.linspace(0, 4000, int(np.prod(CHUNKS))).astype("<u2")
        store = FakeStore(dtype="<u2", chunk=samples.tobytes())

        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert result.success
        assert result.element_type is ElementType.UINT16
        assert result.data.size == int(np.prod(CHUNKS))
        assert result.data[0] == 0
        assert result.data[-1] == 255

    def test_big_endian_chunk(self):
        samples = np.array([0, 256, 512], dtype=">u2")
        store = FakeStore(dtype=">u2", chunk=samples.tobytes())

        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert result.success
        assert result.data[:3].tolist() == [0, 128, 255]

    def test_flat_float_chunk(self):
        chunk = np.full(int(np.prod(CHUNKS)), 7.0, dtype="<f4").tobytes()
        store = FakeStore(dtype="|f4", chunk=chunk)

        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert result.success
        assert set(result.data.tolist()) == {FLAT_VOLUME_VALUE}

    def test_unsupported_dtype_is_a_warning(self):
        store = FakeStore(dtype="<i8")

        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert result.success
        assert result.element_type is None
        assert [w.kind for w in result.warnings] == [ErrorKind.UNSUPPORTED_ELEMENT_TYPE]

    def test_missing_metadata(self):
        result = load_volume(LoadRequest(source=BASE_URL), fetch=lambda url: b"")

        assert not result.success
        assert result.error.kind is ErrorKind.FETCH_FAILURE
        assert result.data.size == 0

    def test_zero_chunk_shape(self):
        metadata = json.dumps({"zarr_format": 2, "chunks": [0, 64, 64], "order": "C"}).encode()
        store = FakeStore(metadata=metadata)

        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert not result.success
        assert result.error.kind is ErrorKind.METADATA_INVALID
        assert len(store.urls) == 1

    def test_unknown_order(self):
        store = FakeStore(order="F")
        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert result.error.kind is ErrorKind.METADATA_INVALID

    def test_zstd_compressor(self):
        store = FakeStore(compressor={"id": "zstd", "level": 1})

        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert not result.success
        assert result.error.kind is ErrorKind.UNSUPPORTED_COMPRESSOR
        assert result.data.size == 0

    def test_corrupt_chunk(self):
        store = FakeStore()
        store.codec = MagicMock()
        store.codec.encode.return_value = b"garbage"

        result = load_volume(LoadRequest(source=BASE_URL), fetch=store)

        assert result.error.kind is ErrorKind.DECOMPRESSION_FAILURE

    def test_missing_chunk(self):
        store = FakeStore()

        def fetch(url):
            return store(url) if url.endswith(".zarray") else b""

        result = load_volume(LoadRequest(source=BASE_URL), fetch=fetch)

        assert result.error.kind is ErrorKind.FETCH_FAILURE

    def test_failed_result_keeps_request_fields(self):
        request = LoadRequest(source=BASE_URL, width=3, height=4, depth=5, data_type="uint16")
        result = load_volume(request, fetch=lambda url: b"")

        assert (result.width, result.height, result.depth) == (3, 4, 5)
        assert result.element_type is ElementType.UINT16
        assert result.source == BASE_URL
        assert result.request is request


class TestLocalLoad:
    """Tests for local NRRD and TIFF files."""

    def test_tiff_volume(self):
        import tifffile

        volume = np.arange(2 * 5 * 6, dtype=np.uint16).reshape(2, 5, 6)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "vol.tif"
            tifffile.imwrite(str(path), volume, photometric="minisblack")

            result = load_volume(LoadRequest(source=str(path)))

        assert result.success, result.error
        assert (result.depth, result.height, result.width) == (2, 5, 6)
        assert result.element_type is ElementType.UINT16
        assert result.data[0] == 0
        assert result.data[59] == 255

    def test_single_page_tiff(self):
        import tifffile

        image = np.full((5, 6), 9, dtype=np.uint8)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "plane.tif"
            tifffile.imwrite(str(path), image, photometric="minisblack")

            decoded = read_local_volume(path)

        assert decoded.shape == (1, 5, 6)
        assert decoded.element_size == 1

    def test_nrrd_volume_via_file_url(self):
        import nrrd

        volume = np.linspace(-1.0, 1.0, 4 * 5 * 6, dtype=np.float32).reshape(4, 5, 6)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "vol.nrrd"
            nrrd.write(str(path), volume, index_order="C")

            result = load_volume(LoadRequest(source=path.as_uri()))

        assert result.success, result.error
        assert (result.depth, result.height, result.width) == (4, 5, 6)
        assert result.element_type is ElementType.FLOAT32
        assert result.data[0] == 0
        assert result.data[-1] == 255

    def test_missing_file(self):
        result = load_volume(LoadRequest(source="/nonexistent/path/vol.nrrd"))

        assert not result.success
        assert result.error.kind is ErrorKind.LOCAL_DECODE_FAILURE

    def test_unrecognized_bytes(self):
        with pytest.raises(LocalDecodeError):
            decode_local_volume(b"\x00\x01\x02\x03 not a volume")

    def test_truncated_tiff(self):
        with pytest.raises(LocalDecodeError):
            decode_local_volume(b"II*\x00\xff\xff")

    def test_unsupported_local_dtype_uses_hint(self):
        decoded = MagicMock()
        decoded.dtype = np.dtype(np.int32)
        decoded.shape = (1, 1, 2)
        decoded.data = np.array([0, 5], dtype=np.int32).tobytes()

        result = load_volume(
            LoadRequest(source="/some/file", data_type="uint8"),
            read_file=lambda path: decoded,
        )

        assert result.success
        assert result.element_type is ElementType.UINT8
        assert result.data.size == 8


class TestHelpers:
    @pytest.mark.parametrize(
        "code,expected",
        [
            ("|u1", ElementType.UINT8),
            ("<u2", ElementType.UINT16),
            (">i2", ElementType.INT16),
            ("<f4", ElementType.FLOAT32),
            ("=f8", ElementType.FLOAT64),
            ("f4", ElementType.FLOAT32),
            ("<i8", None),
            ("", None),
        ],
    )
    def test_element_type_from_zarr_dtype(self, code, expected):
        assert element_type_from_zarr_dtype(code) is expected

    def test_local_focus_point(self):
        focus = local_focus_point(ChunkRemainder(0.0, 0.5, 0.75))
        assert focus == FocusPoint(-50.0, 0.0, 25.0)

    def test_fetch_returns_content(self):
        session = MagicMock()
        session.get.return_value.content = b"payload"

        assert fetch_resource_blocking("http://host/x", session=session) == b"payload"
        session.get.assert_called_once_with("http://host/x", timeout=None)

    def test_fetch_error_returns_empty(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")

        assert fetch_resource_blocking("http://host/x", session=session) == b""

    def test_fetch_http_error_returns_empty(self):
        with patch("volstream_light.sources.requests.get") as get:
            get.return_value.raise_for_status.side_effect = requests.HTTPError("404")
            assert fetch_resource_blocking("http://host/missing") == b""
