"""volstream_light - Lightweight streaming of large 3D volumes for visualization."""

try:
    from importlib.metadata import version

    __version__ = version("volstream_light")
except Exception:
    __version__ = "unknown"

from .errors import (
    DecompressionError,
    ErrorKind,
    FetchError,
    LoadError,
    LocalDecodeError,
    MetadataInvalidError,
    UnsupportedCompressorError,
    VolumeLoadError,
)
from .loader import (
    AsyncVolumeLoader,
    LoadEvent,
    LoadEventKind,
    LoaderState,
    PublishedVolume,
)
from .normalize import (
    FLAT_VOLUME_VALUE,
    ElementType,
    normalize,
    normalize_volume,
    pad_to_size,
)
from .sources import (
    BUILTIN_SOURCES,
    BUILTIN_VOLUME_SIZE,
    BuiltinVolume,
    DecodedVolume,
    LoadRequest,
    LoadResult,
    create_builtin_volume,
    decode_local_volume,
    element_type_from_zarr_dtype,
    fetch_resource_blocking,
    load_volume,
    read_local_volume,
)
from .zarr_storage import (
    ArrayMetadata,
    ChunkCoordinate,
    ChunkRemainder,
    FocusPoint,
    ZarrStorage,
)

__all__ = [
    "__version__",
    "ArrayMetadata",
    "AsyncVolumeLoader",
    "BUILTIN_SOURCES",
    "BUILTIN_VOLUME_SIZE",
    "BuiltinVolume",
    "ChunkCoordinate",
    "ChunkRemainder",
    "DecodedVolume",
    "DecompressionError",
    "ElementType",
    "ErrorKind",
    "FLAT_VOLUME_VALUE",
    "FetchError",
    "FocusPoint",
    "LoadError",
    "LoadEvent",
    "LoadEventKind",
    "LoadRequest",
    "LoadResult",
    "LoaderState",
    "LocalDecodeError",
    "MetadataInvalidError",
    "PublishedVolume",
    "UnsupportedCompressorError",
    "VolumeLoadError",
    "ZarrStorage",
    "create_builtin_volume",
    "decode_local_volume",
    "element_type_from_zarr_dtype",
    "fetch_resource_blocking",
    "load_volume",
    "normalize",
    "normalize_volume",
    "pad_to_size",
    "read_local_volume",
]
