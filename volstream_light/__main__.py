"""Entry point for running volstream_light as a module: python -m volstream_light"""

import argparse
import logging
import queue
import sys

from .loader import AsyncVolumeLoader
from .sources import BUILTIN_VOLUME_SIZE, DEFAULT_SOURCE, LoadRequest
from .zarr_storage import FocusPoint


def _parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        prog="python -m volstream_light",
        description="Stream a 3D volume from a built-in pattern, a local file or a remote zarr array",
    )
    ap.add_argument(
        "source",
        nargs="?",
        default=DEFAULT_SOURCE,
        help=f"Volume locator: file:///default_helix|box|colormap, a local file or an http(s) zarr URL (default: {DEFAULT_SOURCE}).",
    )
    ap.add_argument(
        "--size",
        type=int,
        nargs=3,
        metavar=("W", "H", "D"),
        default=(BUILTIN_VOLUME_SIZE,) * 3,
        help="Expected width, height and depth (default: 256 256 256).",
    )
    ap.add_argument("--dtype", default="uint8", help="Element type hint (default: uint8).")
    ap.add_argument(
        "--focus",
        type=float,
        nargs=3,
        metavar=("Z", "Y", "X"),
        default=(0.0, 0.0, 0.0),
        help="Global focus point in dataset coordinates (default: 0 0 0).",
    )
    ap.add_argument(
        "--extent",
        type=int,
        nargs=3,
        metavar=("Z", "Y", "X"),
        default=None,
        help="Dataset extent used for the focus sliders.",
    )
    ap.add_argument("--level", type=int, default=-1, help="Pyramid level (default: none).")
    ap.add_argument("--order", default="", help="Override the array's dimension order (C or yxz).")
    ap.add_argument("--separator", default="", help="Override the array's dimension separator.")
    ap.add_argument("--headless", action="store_true", help="Load once and print a summary instead of opening a window.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return ap.parse_args(argv)


def _run_headless(request: LoadRequest) -> int:
    events = queue.Queue()
    with AsyncVolumeLoader(events=events) as loader:
        loader.request_load(request)
        event = events.get()

    result = event.result
    if not result.success:
        print(f"Load failed: {result.error}", file=sys.stderr)
        return 1

    element_type = result.element_type.value if result.element_type else "unknown"
    print(f"source:       {result.source}")
    print(f"size (WxHxD): {result.width}x{result.height}x{result.depth}")
    print(f"element type: {element_type}")
    print(f"bytes:        {result.data.size}")
    print(f"local focus:  {result.local_focus.as_zyx()}")
    for warning in result.warnings:
        print(f"warning:      {warning}")
    return 0


def main(argv=None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    width, height, depth = args.size
    request = LoadRequest(
        source=args.source,
        width=width,
        height=height,
        depth=depth,
        data_type=args.dtype,
        global_focus=FocusPoint(*args.focus),
        level=args.level,
        order=args.order,
        dimension_separator=args.separator,
    )

    if args.headless:
        return _run_headless(request)

    from .core import main as run_viewer

    run_viewer(args.source, template=request, focus_extent=args.extent)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
