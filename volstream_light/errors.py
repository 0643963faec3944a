"""Failure taxonomy for the volume loading pipeline.

Components raise the exceptions defined here; the dispatch boundary converts
them into ``LoadError`` values so a failed load is reported as data.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    METADATA_INVALID = "metadata_invalid"
    UNSUPPORTED_COMPRESSOR = "unsupported_compressor"
    DECOMPRESSION_FAILURE = "decompression_failure"
    UNSUPPORTED_ELEMENT_TYPE = "unsupported_element_type"
    FETCH_FAILURE = "fetch_failure"
    LOCAL_DECODE_FAILURE = "local_decode_failure"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class LoadError:
    """Diagnostic attached to a failed ``LoadResult``."""

    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class VolumeLoadError(Exception):
    kind = ErrorKind.UNEXPECTED

    def to_load_error(self) -> LoadError:
        return LoadError(self.kind, str(self))


class MetadataInvalidError(VolumeLoadError):
    """Chunk shape missing or zero, or an unknown dimension order."""

    kind = ErrorKind.METADATA_INVALID


class UnsupportedCompressorError(VolumeLoadError):
    kind = ErrorKind.UNSUPPORTED_COMPRESSOR


class DecompressionError(VolumeLoadError):
    kind = ErrorKind.DECOMPRESSION_FAILURE


class FetchError(VolumeLoadError):
    kind = ErrorKind.FETCH_FAILURE


class LocalDecodeError(VolumeLoadError):
    kind = ErrorKind.LOCAL_DECODE_FAILURE
