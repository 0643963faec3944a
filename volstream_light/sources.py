"""
Volume sources: built-in procedural volumes, local volume files and remote
Zarr chunks.

``load_volume()`` resolves a ``LoadRequest`` to one of the three sources and
returns a normalized single-byte ``LoadResult``. It is a blocking call meant
to run on a worker thread (see ``volstream_light.loader``).
"""

import io
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit
from urllib.request import url2pathname

import numpy as np
import requests

from .errors import (
    ErrorKind,
    FetchError,
    LoadError,
    LocalDecodeError,
    MetadataInvalidError,
    VolumeLoadError,
)
from .normalize import ElementType, normalize_volume
from .zarr_storage import FocusPoint, ZarrStorage

logger = logging.getLogger(__name__)

BUILTIN_VOLUME_SIZE = 256

# Half extent of the display box the local cursor is placed in.
LOCAL_BOX_HALF_EXTENT = 50.0

# None means block until the server answers.
FETCH_TIMEOUT_S: Optional[float] = None

# Zarr dtype codes without their byte-order character.
ZARR_DTYPE_TABLE: Dict[str, ElementType] = {
    "u1": ElementType.UINT8,
    "u2": ElementType.UINT16,
    "i2": ElementType.INT16,
    "f4": ElementType.FLOAT32,
    "f8": ElementType.FLOAT64,
}

_BYTE_ORDER_CHARS = "<>|="


class BuiltinVolume(Enum):
    HELIX = "helix"
    BOX = "box"
    COLORMAP = "colormap"


BUILTIN_SOURCES: Dict[str, BuiltinVolume] = {
    "file:///default_helix": BuiltinVolume.HELIX,
    "file:///default_box": BuiltinVolume.BOX,
    "file:///default_colormap": BuiltinVolume.COLORMAP,
}

# Loaded at startup so there is always something to render.
DEFAULT_SOURCE = "file:///default_colormap"


@dataclass(frozen=True)
class LoadRequest:
    """Everything needed to produce one volume. Never mutated once created."""

    source: str
    width: int = BUILTIN_VOLUME_SIZE
    height: int = BUILTIN_VOLUME_SIZE
    depth: int = BUILTIN_VOLUME_SIZE
    data_type: str = ElementType.UINT8.value
    global_focus: FocusPoint = FocusPoint()
    level: int = -1
    order: str = ""  # overrides the array metadata when set
    dimension_separator: str = ""  # overrides the array metadata when set
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8], compare=False)


@dataclass(frozen=True)
class LoadResult:
    """Outcome of a load; ``data`` is a flat uint8 buffer."""

    request: LoadRequest
    success: bool
    data: np.ndarray
    width: int
    height: int
    depth: int
    element_type: Optional[ElementType]
    local_focus: FocusPoint
    global_focus: FocusPoint
    source: str
    error: Optional[LoadError] = None
    warnings: Tuple[LoadError, ...] = ()

    @classmethod
    def failed(cls, request: LoadRequest, error: LoadError) -> "LoadResult":
        return cls(
            request=request,
            success=False,
            data=np.zeros(0, dtype=np.uint8),
            width=request.width,
            height=request.height,
            depth=request.depth,
            element_type=ElementType.from_name(request.data_type),
            local_focus=FocusPoint(),
            global_focus=request.global_focus,
            source=request.source,
            error=error,
        )


@dataclass
class RawVolume:
    """Un-normalized output shared by all three source branches."""

    data: object
    element_type: Optional[ElementType]
    width: int
    height: int
    depth: int
    local_focus: FocusPoint = FocusPoint()
    warnings: Tuple[LoadError, ...] = ()


@dataclass(frozen=True)
class DecodedVolume:
    """Raw samples of a local volume file, in native byte order."""

    data: bytes
    element_size: int
    dtype: np.dtype
    shape: Tuple[int, ...]


# ─────────────────────────────────────────────────────────────────────────────
# Built-in volumes
# ─────────────────────────────────────────────────────────────────────────────


def _stamp_helix(volume: np.ndarray, z_offset: float, color: int) -> None:
    """Draw a helical tube climbing along z.

    x = radius * cos(t), y = radius * sin(t), z = climb * t; t advances until
    z leaves the box.
    """
    size = volume.shape[0]
    radius = 70.0
    climb = 15.0
    center = size // 2
    thick = 6  # tube radius

    offsets = np.arange(-thick, thick)
    oz, oy, ox = np.meshgrid(offsets, offsets, offsets, indexing="ij")
    ball = np.sqrt(oz**2 + oy**2 + ox**2) < thick

    last_cell = None
    i = -1
    while True:
        i += 1
        t = i * 0.005
        cell_x = int(center + radius * np.cos(t))
        cell_y = int(center + radius * np.sin(t))
        cell_z = int(climb * t - z_offset)
        if cell_z < 0:
            continue
        if cell_z > size - 1:
            break
        cell = (cell_z, cell_y, cell_x)
        if cell == last_cell:
            continue
        last_cell = cell

        lo = [c - thick for c in cell]
        clipped_lo = [max(v, 0) for v in lo]
        clipped_hi = [min(c + thick, size) for c in cell]
        mask = ball[
            clipped_lo[0] - lo[0] : clipped_hi[0] - lo[0],
            clipped_lo[1] - lo[1] : clipped_hi[1] - lo[1],
            clipped_lo[2] - lo[2] : clipped_hi[2] - lo[2],
        ]
        region = volume[
            clipped_lo[0] : clipped_hi[0],
            clipped_lo[1] : clipped_hi[1],
            clipped_lo[2] : clipped_hi[2],
        ]
        region[mask] = color


def create_builtin_volume(example: BuiltinVolume, size: int = BUILTIN_VOLUME_SIZE) -> np.ndarray:
    """Return a deterministic ``(size, size, size)`` uint8 volume in z, y, x order."""
    volume = np.zeros((size, size, size), dtype=np.uint8)

    if example is BuiltinVolume.HELIX:
        # Ball with a soft shell, then three tubes winding around it
        z, y, x = np.ogrid[:size, :size, :size]
        half = size // 2
        dist = np.sqrt((x - half) ** 2 + (y - half) ** 2 + (z - half) ** 2)
        value = dist * 0.5 - 40.0  # negative inside the sphere
        volume[:] = np.where(value >= 0, np.clip(value, 0, 80), 80).astype(np.uint8)
        _stamp_helix(volume, 0, 200)
        _stamp_helix(volume, 30, 150)
        _stamp_helix(volume, 60, 100)

    elif example is BuiltinVolume.COLORMAP:
        volume[:] = np.arange(size, dtype=np.uint16).astype(np.uint8)[None, None, :]

    elif example is BuiltinVolume.BOX:
        colors = (50, 100, 255, 200, 150, 10)
        width = 10
        volume[:, :, :width] = colors[0]
        volume[:, :, size - width :] = colors[1]
        volume[:, :width, :] = colors[2]
        volume[:, size - width :, :] = colors[3]
        volume[:width, :, :] = colors[4]
        volume[size - width :, :, :] = colors[5]

    return volume


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators: local files and HTTP
# ─────────────────────────────────────────────────────────────────────────────


def _native(array: np.ndarray) -> np.ndarray:
    if array.dtype.byteorder not in ("=", "|"):
        array = array.astype(array.dtype.newbyteorder("="))
    return np.ascontiguousarray(array)


def _decode_nrrd(data: bytes, path: Optional[Path]) -> np.ndarray:
    import nrrd

    stream = io.BytesIO(data)
    header = nrrd.read_header(stream)
    filename = str(path) if path is not None else None
    return nrrd.read_data(header, stream, filename, index_order="C")


def _decode_tiff(data: bytes) -> np.ndarray:
    import tifffile

    array = tifffile.imread(io.BytesIO(data))
    if array.ndim == 2:
        return array[np.newaxis, ...]
    if array.ndim > 3:
        logger.warning("Collapsing extra TIFF axes into z: shape=%s", array.shape)
        return array.reshape((-1,) + array.shape[-2:])
    return array


def decode_local_volume(data: bytes, path: Optional[Path] = None) -> DecodedVolume:
    """Decode the bytes of a self-describing volume file (NRRD or TIFF).

    Raises:
        LocalDecodeError: the bytes are not a readable volume.
    """
    try:
        if data.startswith(b"NRRD"):
            array = _decode_nrrd(data, path)
        elif data[:4] in (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+"):
            array = _decode_tiff(data)
        else:
            raise LocalDecodeError("unrecognized volume file format")
    except LocalDecodeError:
        raise
    except Exception as e:
        raise LocalDecodeError(f"error decoding volume file: {e}") from e

    array = _native(np.asarray(array))
    logger.debug("Decoded local volume: shape=%s dtype=%s", array.shape, array.dtype)
    return DecodedVolume(
        data=array.tobytes(),
        element_size=array.dtype.itemsize,
        dtype=array.dtype,
        shape=tuple(array.shape),
    )


def read_local_volume(path: Path) -> DecodedVolume:
    """Read ``path`` fully into memory and decode it."""
    try:
        data = path.read_bytes()
    except OSError as e:
        raise LocalDecodeError(f"could not open file {path}: {e}") from e
    return decode_local_volume(data, path)


def fetch_resource_blocking(
    url: str,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = FETCH_TIMEOUT_S,
) -> bytes:
    """GET ``url`` and return the body, or empty bytes on any error."""
    logger.debug("Fetch: %s", url)
    try:
        response = (session or requests).get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Fetch failed for %s: %s", url, e)
        return b""
    logger.debug("Reply data: %d bytes", len(response.content))
    return response.content


def element_type_from_zarr_dtype(code: str) -> Optional[ElementType]:
    """Map a Zarr dtype code such as ``"<u2"`` to an ``ElementType``."""
    if code and code[0] in _BYTE_ORDER_CHARS:
        code = code[1:]
    return ZARR_DTYPE_TABLE.get(code)


def local_focus_point(remainder, half_extent: float = LOCAL_BOX_HALF_EXTENT) -> FocusPoint:
    """Map a chunk remainder in [0, 1) to a box of ``±half_extent`` per axis."""
    rz, ry, rx = remainder
    return FocusPoint(
        2 * half_extent * rz - half_extent,
        2 * half_extent * ry - half_extent,
        2 * half_extent * rx - half_extent,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Dispatch
# ─────────────────────────────────────────────────────────────────────────────

Fetcher = Callable[[str], bytes]
FileReader = Callable[[Path], DecodedVolume]


def _load_builtin(example: BuiltinVolume) -> RawVolume:
    size = BUILTIN_VOLUME_SIZE
    return RawVolume(
        data=create_builtin_volume(example, size),
        element_type=ElementType.UINT8,
        width=size,
        height=size,
        depth=size,
    )


def _load_remote(request: LoadRequest, fetch: Fetcher) -> RawVolume:
    storage = ZarrStorage(request.source)

    metadata_url = storage.metadata_url(request.level)
    metadata_bytes = fetch(metadata_url)
    if not metadata_bytes:
        raise FetchError(f"no metadata at {metadata_url}")
    meta = storage.set_metadata(metadata_bytes)
    if request.order:
        storage.set_order(request.order)
    if request.dimension_separator:
        storage.set_dimension_separator(request.dimension_separator)
    if not meta.is_valid:
        raise MetadataInvalidError(f"chunk shape {meta.chunks} in {metadata_url} is unusable")

    warnings: Tuple[LoadError, ...] = ()
    element_type = element_type_from_zarr_dtype(meta.dtype)
    if element_type is None:
        logger.warning("Unsupported zarr dtype %r, samples treated as uint8", meta.dtype)
        warnings = (LoadError(ErrorKind.UNSUPPORTED_ELEMENT_TYPE, f"unsupported dtype {meta.dtype!r}"),)

    focus = request.global_focus
    chunk = storage.nearest_chunk(focus)
    remainder = storage.nearest_chunk_remainder(focus)
    chunk_url = storage.chunk_url(request.level, *chunk)

    data = fetch(chunk_url)
    if not data:
        raise FetchError(f"no chunk data at {chunk_url}")
    decoded = storage.decode_chunk(data)

    if element_type is not None and meta.dtype[:1] == ">" and element_type.itemsize > 1:
        usable = len(decoded) - len(decoded) % element_type.itemsize
        big_endian = np.frombuffer(decoded[:usable], dtype=element_type.dtype.newbyteorder(">"))
        decoded = _native(big_endian).tobytes()

    depth, height, width = meta.chunks
    return RawVolume(
        data=decoded,
        element_type=element_type,
        width=width,
        height=height,
        depth=depth,
        local_focus=local_focus_point(remainder),
        warnings=warnings,
    )


def _local_path(source: str) -> Path:
    parts = urlsplit(source)
    if parts.scheme == "file":
        return Path(url2pathname(parts.path))
    return Path(source)


def _load_local(request: LoadRequest, read_file: FileReader) -> RawVolume:
    decoded = read_file(_local_path(request.source))

    element_type = ElementType.from_dtype(decoded.dtype)
    if element_type is None:
        element_type = ElementType.from_name(request.data_type)
        logger.debug(
            "Local volume dtype %s not supported, using hint %s",
            decoded.dtype,
            request.data_type,
        )

    if len(decoded.shape) == 3:
        depth, height, width = decoded.shape
    else:
        depth, height, width = request.depth, request.height, request.width
    return RawVolume(
        data=decoded.data,
        element_type=element_type,
        width=width,
        height=height,
        depth=depth,
    )


def _dispatch(request: LoadRequest, fetch: Fetcher, read_file: FileReader) -> RawVolume:
    example = BUILTIN_SOURCES.get(request.source)
    if example is not None:
        return _load_builtin(example)
    if urlsplit(request.source).scheme in ("http", "https"):
        return _load_remote(request, fetch)
    return _load_local(request, read_file)


def load_volume(
    request: LoadRequest,
    fetch: Fetcher = fetch_resource_blocking,
    read_file: FileReader = read_local_volume,
) -> LoadResult:
    """Resolve ``request`` to its source and return a normalized result.

    Failures never raise; they come back as ``success=False`` with an
    empty buffer and a ``LoadError``.
    """
    logger.debug("Loading %s (request %s)", request.source, request.request_id)
    try:
        raw = _dispatch(request, fetch, read_file)
    except VolumeLoadError as e:
        logger.warning("Load of %s failed: %s", request.source, e)
        return LoadResult.failed(request, e.to_load_error())

    data = normalize_volume(raw.data, raw.element_type, raw.width, raw.height, raw.depth)
    return LoadResult(
        request=request,
        success=True,
        data=data,
        width=raw.width,
        height=raw.height,
        depth=raw.depth,
        element_type=raw.element_type,
        local_focus=raw.local_focus,
        global_focus=request.global_focus,
        source=request.source,
        warnings=raw.warnings,
    )
