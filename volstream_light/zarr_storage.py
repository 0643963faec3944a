"""
Access to large N-dimensional typed arrays stored in Zarr format.

Covers the three pieces needed to pull a single chunk out of a remote store:
parsing the ``.zarray`` metadata document, addressing the metadata and chunk
resources (optionally below a pyramid level), and decompressing a fetched
chunk with the codec named in the metadata.

See: https://zarr-specs.readthedocs.io/en/latest/specs.html
"""

import dataclasses
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

import numcodecs
from numcodecs.compat import ensure_bytes

from .errors import (
    DecompressionError,
    MetadataInvalidError,
    UnsupportedCompressorError,
)

logger = logging.getLogger(__name__)

METADATA_FILENAME = ".zarray"

# Codec ids that are decoded through numcodecs; anything else is reported as
# unsupported, even when numcodecs happens to ship it.
SUPPORTED_COMPRESSORS = frozenset({"blosc", "zlib", "gzip"})

ORDER_C = "C"
# Not part of the Zarr spec, but produced by some of our converters.
ORDER_YXZ = "yxz"
SUPPORTED_ORDERS = (ORDER_C, ORDER_YXZ)

Triplet = Tuple[int, int, int]


class ChunkCoordinate(NamedTuple):
    z: int
    y: int
    x: int


class ChunkRemainder(NamedTuple):
    z: float
    y: float
    x: float


@dataclass(frozen=True)
class FocusPoint:
    """Continuous dataset coordinate, stored in (z, y, x) order."""

    z: float = 0.0
    y: float = 0.0
    x: float = 0.0

    def as_zyx(self) -> Tuple[float, float, float]:
        return (self.z, self.y, self.x)

    def as_xyz(self) -> Tuple[float, float, float]:
        """Return (x, y, z), the order used by renderers."""
        return (self.x, self.y, self.z)


def _default_separator(version: int) -> str:
    # v3 switched to "/" to keep the number of entries per directory small
    # in hierarchical stores such as filesystems.
    return "/" if version == 3 else "."


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _as_triplet(value: Any) -> Optional[Triplet]:
    if not isinstance(value, list) or len(value) != 3:
        return None
    items = [_as_int(v) for v in value]
    if any(v is None for v in items):
        return None
    return (items[0], items[1], items[2])


@dataclass(frozen=True)
class ArrayMetadata:
    """Descriptive attributes of a chunked array (the ``.zarray`` document).

    Every field is optional in the source document. A field that is absent or
    malformed keeps its default, so parsing degrades field by field and never
    raises. Callers check ``is_valid`` before doing any addressing math.
    """

    format_version: int = -1  # -1 means the document was not usable
    shape: Triplet = (0, 0, 0)  # z, y, x
    chunks: Triplet = (0, 0, 0)  # z, y, x
    dtype: str = ""
    order: str = ""
    dimension_separator: str = "."
    compression: str = ""
    compressor: Dict[str, Any] = field(default_factory=dict)

    @property
    def compressor_id(self) -> str:
        value = self.compressor.get("id", "")
        return value if isinstance(value, str) else ""

    @property
    def is_valid(self) -> bool:
        return all(c > 0 for c in self.chunks)

    @classmethod
    def from_json(cls, obj: Any) -> "ArrayMetadata":
        if not isinstance(obj, dict):
            logger.debug("Zarr metadata is not a JSON object: %r", type(obj))
            return cls()

        version = _as_int(obj.get("zarr_format"))
        if version is None:
            version = -1
        kwargs: Dict[str, Any] = {
            "format_version": version,
            "dimension_separator": _default_separator(version),
        }

        separator = obj.get("dimension_separator")
        if isinstance(separator, str):
            kwargs["dimension_separator"] = separator

        for name in ("shape", "chunks"):
            triplet = _as_triplet(obj.get(name))
            if triplet is not None:
                kwargs[name] = triplet
            elif name in obj:
                logger.debug("Ignoring malformed %r in zarr metadata: %r", name, obj[name])

        for name in ("dtype", "order", "compression"):
            value = obj.get(name)
            if isinstance(value, str):
                kwargs[name] = value

        compressor = obj.get("compressor")
        if isinstance(compressor, dict):
            kwargs["compressor"] = dict(compressor)

        return cls(**kwargs)

    @classmethod
    def from_bytes(cls, data: Union[bytes, bytearray, str]) -> "ArrayMetadata":
        try:
            obj = json.loads(data)
        except (TypeError, ValueError) as e:
            logger.debug("Failed to parse zarr metadata: %s", e)
            return cls()
        return cls.from_json(obj)


class ZarrStorage:
    """Addressing and decoding for one chunked array rooted at ``base_url``.

    The metadata is usually fetched from ``metadata_url()`` and handed to
    ``set_metadata()``; order and separator can be overridden per request.
    """

    def __init__(self, base_url: str, metadata: Optional[ArrayMetadata] = None):
        self._base_url = base_url
        self._meta = metadata if metadata is not None else ArrayMetadata()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def metadata(self) -> ArrayMetadata:
        return self._meta

    def set_metadata(self, data: Union[bytes, bytearray, str]) -> ArrayMetadata:
        self._meta = ArrayMetadata.from_bytes(data)
        return self._meta

    @property
    def order(self) -> str:
        return self._meta.order

    def set_order(self, value: str) -> None:
        self._meta = dataclasses.replace(self._meta, order=value)

    @property
    def dimension_separator(self) -> str:
        return self._meta.dimension_separator

    def set_dimension_separator(self, value: str) -> None:
        self._meta = dataclasses.replace(self._meta, dimension_separator=value)

    # ─────────────────────────────────────────────────────────────────────
    # Addressing
    # ─────────────────────────────────────────────────────────────────────

    def _resolve(self, level: int, resource: str) -> str:
        parts = urlsplit(self._base_url)
        path = parts.path.rstrip("/")
        if level >= 0:
            path += f"/{level}"
        path += "/" + resource
        return urlunsplit((parts.scheme, parts.netloc, path, "", ""))

    def metadata_url(self, level: int = -1) -> str:
        """URL of the metadata resource, below ``level`` when it is >= 0."""
        return self._resolve(level, METADATA_FILENAME)

    def _ordered(self, z: int, y: int, x: int) -> Triplet:
        if self._meta.order == ORDER_C:
            return (z, y, x)
        if self._meta.order == ORDER_YXZ:
            return (y, x, z)
        raise MetadataInvalidError(
            f"unsupported dimension order {self._meta.order!r}"
        )

    def chunk_url(self, level: int, z: int, y: int, x: int) -> str:
        """URL of the chunk resource at chunk coordinate (z, y, x)."""
        coordinates = self._ordered(z, y, x)
        key = self._meta.dimension_separator.join(str(c) for c in coordinates)
        return self._resolve(level, key)

    def chunk_coordinate_from_url(self, url: str, level: int = -1) -> ChunkCoordinate:
        """Recover the (z, y, x) chunk coordinate encoded by ``chunk_url``."""
        prefix = urlsplit(self._resolve(level, "")).path
        path = urlsplit(url).path
        if not path.startswith(prefix):
            raise ValueError(f"{url!r} is not below {prefix!r}")
        key = path[len(prefix):]
        parts = key.split(self._meta.dimension_separator) if self._meta.dimension_separator else [key]
        if len(parts) != 3:
            raise ValueError(f"chunk key {key!r} does not hold three coordinates")
        a, b, c = (int(p) for p in parts)
        if self._meta.order == ORDER_C:
            return ChunkCoordinate(a, b, c)
        if self._meta.order == ORDER_YXZ:
            return ChunkCoordinate(c, a, b)
        raise MetadataInvalidError(
            f"unsupported dimension order {self._meta.order!r}"
        )

    def _require_chunks(self) -> Triplet:
        if not self._meta.is_valid:
            raise MetadataInvalidError(
                f"chunk shape {self._meta.chunks} is unusable for addressing"
            )
        return self._meta.chunks

    def nearest_chunk(self, focus: FocusPoint) -> ChunkCoordinate:
        """Chunk containing ``focus``: floor(focus / chunks) per axis."""
        cz, cy, cx = self._require_chunks()
        return ChunkCoordinate(
            math.floor(focus.z / cz),
            math.floor(focus.y / cy),
            math.floor(focus.x / cx),
        )

    def nearest_chunk_remainder(self, focus: FocusPoint) -> ChunkRemainder:
        """Position of ``focus`` inside its chunk as fractions in [0, 1)."""
        cz, cy, cx = self._require_chunks()
        z = focus.z / cz
        y = focus.y / cy
        x = focus.x / cx
        return ChunkRemainder(z - math.floor(z), y - math.floor(y), x - math.floor(x))

    def chunk_byte_size(self) -> int:
        """Decoded chunk size in bytes.

        Assumes one byte per element; wider dtypes are not accounted for.
        """
        cz, cy, cx = self._require_chunks()
        return cz * cy * cx

    # ─────────────────────────────────────────────────────────────────────
    # Decoding
    # ─────────────────────────────────────────────────────────────────────

    def decode_chunk(self, data: bytes) -> bytes:
        """Decompress a fetched chunk according to the metadata's compressor.

        Raises:
            UnsupportedCompressorError: the compressor id is not handled.
            DecompressionError: the codec rejected the payload.
        """
        codec_id = self._meta.compressor_id
        if not codec_id:
            return bytes(data)
        if codec_id not in SUPPORTED_COMPRESSORS:
            raise UnsupportedCompressorError(f"compressor not available: {codec_id!r}")

        try:
            codec = numcodecs.get_codec(dict(self._meta.compressor))
            decoded = ensure_bytes(codec.decode(data))
        except Exception as e:
            raise DecompressionError(f"{codec_id} decompression error: {e}") from e

        expected = self.chunk_byte_size() if self._meta.is_valid else None
        if expected is not None and len(decoded) < expected:
            logger.debug(
                "Decoded chunk is %d bytes, smaller than the %d expected",
                len(decoded),
                expected,
            )
        return decoded

    def read_chunk(self, data: bytes) -> bytes:
        """Decode ``data``; an empty result means no data for this chunk."""
        try:
            return self.decode_chunk(data)
        except (UnsupportedCompressorError, DecompressionError) as e:
            logger.warning("Could not decode zarr chunk: %s", e)
            return b""
