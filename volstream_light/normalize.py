"""Rescale raw volume samples to single-byte intensities for display."""

import logging
import warnings
from enum import Enum
from typing import Optional, Tuple, Union

import dask
import dask.array as da
import numpy as np

logger = logging.getLogger(__name__)

# Value emitted for every sample of a flat (constant-valued) wide-type volume,
# where the min/max rescale has no range to work with.
FLAT_VOLUME_VALUE = 128

# Block size for the min/max scan; large volumes are reduced block-wise by dask.
NORMALIZE_BLOCK_ELEMENTS = 1 << 22


class ElementType(str, Enum):
    """Closed set of per-sample encodings the pipeline understands."""

    UINT8 = "uint8"
    UINT16 = "uint16"
    INT16 = "int16"
    FLOAT32 = "float32"
    FLOAT64 = "float64"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @property
    def itemsize(self) -> int:
        return self.dtype.itemsize

    @classmethod
    def from_name(cls, name: Optional[str]) -> Optional["ElementType"]:
        """Look up a type by its name (``"uint16"``); None when unknown."""
        if not name:
            return None
        try:
            return cls(name.lower())
        except ValueError:
            return None

    @classmethod
    def from_dtype(cls, dtype) -> Optional["ElementType"]:
        return cls.from_name(np.dtype(dtype).name)


RawBuffer = Union[bytes, bytearray, memoryview, np.ndarray]


def _as_bytes_view(raw: RawBuffer) -> np.ndarray:
    if isinstance(raw, np.ndarray):
        return np.ascontiguousarray(raw).reshape(-1).view(np.uint8)
    return np.frombuffer(raw, dtype=np.uint8)


def _finite_range(samples: np.ndarray) -> Optional[Tuple[float, float]]:
    """Fused min/max scan over finite samples; None if there are none."""
    darr = da.from_array(samples, chunks=NORMALIZE_BLOCK_ELEMENTS)
    if np.issubdtype(samples.dtype, np.floating):
        darr = da.where(da.isfinite(darr), darr, np.nan)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            lo, hi = dask.compute(da.nanmin(darr), da.nanmax(darr))
        if np.isnan(lo) or np.isnan(hi):
            return None
    else:
        lo, hi = dask.compute(darr.min(), darr.max())
    return float(lo), float(hi)


def _rescale(samples: np.ndarray) -> np.ndarray:
    if samples.size == 0:
        return np.zeros(0, dtype=np.uint8)

    value_range = _finite_range(samples)
    if value_range is None or value_range[0] == value_range[1]:
        logger.debug("Flat volume (range=%s), filling with %d", value_range, FLAT_VOLUME_VALUE)
        return np.full(samples.size, FLAT_VOLUME_VALUE, dtype=np.uint8)

    # Halved so that hi - lo stays finite for ranges near the float64 limits
    lo, hi = value_range[0] / 2, value_range[1] / 2
    span = hi - lo  # double precision for the whole remap
    with np.errstate(invalid="ignore"):
        scaled = np.rint((samples.astype(np.float64) / 2 - lo) / span * 255.0)
    scaled = np.nan_to_num(scaled, nan=0.0, posinf=0.0, neginf=0.0)
    return np.clip(scaled, 0, 255).astype(np.uint8)


def normalize(raw: RawBuffer, element_type: Optional[ElementType]) -> np.ndarray:
    """Convert ``raw`` samples of ``element_type`` to a flat uint8 buffer.

    Single-byte data and unknown types pass through as bytes. Wider types are
    remapped linearly so that the smallest sample becomes 0 and the largest
    255; non-finite floats are ignored by the scan and written as 0.
    """
    data = _as_bytes_view(raw)
    if element_type is ElementType.UINT8:
        return data
    if element_type is None or not isinstance(element_type, ElementType):
        logger.warning("Unknown data type %r, assuming uint8", element_type)
        return data

    itemsize = element_type.itemsize
    usable = data.size - data.size % itemsize
    if usable != data.size:
        logger.warning(
            "Dropping %d trailing bytes that do not form a whole %s sample",
            data.size - usable,
            element_type.value,
        )
    samples = data[:usable].view(element_type.dtype)
    return _rescale(samples)


def pad_to_size(buffer: np.ndarray, expected: int) -> np.ndarray:
    """Zero-extend ``buffer`` to ``expected`` bytes; longer buffers pass through."""
    if buffer.size >= expected:
        return buffer
    padded = np.zeros(expected, dtype=np.uint8)
    padded[: buffer.size] = buffer
    return padded


def normalize_volume(
    raw: RawBuffer,
    element_type: Optional[ElementType],
    width: int,
    height: int,
    depth: int,
) -> np.ndarray:
    """Normalize ``raw`` and pad it to ``width * height * depth`` samples."""
    normalized = normalize(raw, element_type)
    return pad_to_size(normalized, max(0, width * height * depth))
