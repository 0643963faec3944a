"""
Simulate a remote chunked volume served over HTTP.

This script exercises the remote streaming path end to end:
- Writes a synthetic zarr v2 array (.zarray plus compressed chunks) to disk
- Serves it with a local HTTP server on a background thread
- Opens the viewer on the served URL
- Sweeps the focus point across chunks on a timer, faster than a chunk can
  be fetched, so superseded loads are discarded

Every chunk has its (z, y, x) chunk coordinate drawn into its middle plane,
which makes it easy to check that the chunk on screen is the one around the
focus point.
"""

from __future__ import annotations

import argparse
import functools
import itertools
import json
import sys
import tempfile
import threading
import time
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import numcodecs
import numpy as np
from PyQt5.QtCore import QTimer
from PyQt5.QtWidgets import QApplication

from volstream_light.core import VolumeViewer
from volstream_light.sources import LoadRequest
from volstream_light.zarr_storage import FocusPoint


_FONT_5X7: dict[str, list[str]] = {
    "0": ["#####", "#...#", "#...#", "#...#", "#...#", "#...#", "#####"],
    "1": ["..#..", ".##..", "..#..", "..#..", "..#..", "..#..", ".###."],
    "2": ["#####", "....#", "....#", "#####", "#....", "#....", "#####"],
    "3": ["#####", "....#", "....#", "#####", "....#", "....#", "#####"],
    "4": ["#...#", "#...#", "#...#", "#####", "....#", "....#", "....#"],
    "5": ["#####", "#....", "#....", "#####", "....#", "....#", "#####"],
    "6": ["#####", "#....", "#....", "#####", "#...#", "#...#", "#####"],
    "7": ["#####", "....#", "...#.", "..#..", ".#...", ".#...", ".#..."],
    "8": ["#####", "#...#", "#...#", "#####", "#...#", "#...#", "#####"],
    "9": ["#####", "#...#", "#...#", "#####", "....#", "....#", "#####"],
    "X": ["#...#", "#...#", ".#.#.", "..#..", ".#.#.", "#...#", "#...#"],
    "Y": ["#...#", "#...#", ".#.#.", "..#..", "..#..", "..#..", "..#.."],
    "Z": ["#####", "....#", "...#.", "..#..", ".#...", "#....", "#####"],
    " ": [".....", ".....", ".....", ".....", ".....", ".....", "....."],
}


def _draw_text(plane: np.ndarray, text: str, x: int, y: int, scale: int, value: int) -> None:
    """Draw text into a 2D plane in-place using the bitmap font."""
    h, w = plane.shape
    cursor_x = x

    for ch in text:
        glyph = _FONT_5X7.get(ch.upper(), _FONT_5X7[" "])
        if cursor_x >= w:
            break
        for gy, row in enumerate(glyph):
            for gx, cell in enumerate(row):
                if cell != "#":
                    continue
                px0 = cursor_x + gx * scale
                py0 = y + gy * scale
                if px0 >= w or py0 >= h:
                    continue
                plane[py0 : min(h, py0 + scale), px0 : min(w, px0 + scale)] = value
        cursor_x += 6 * scale


def write_synthetic_array(
    root: Path,
    shape: tuple[int, int, int],
    chunks: tuple[int, int, int],
    dtype: str = "<u2",
    compressor: str = "blosc",
) -> None:
    """Write a chunked zarr v2 array under ``root`` without any zarr dependency."""
    root.mkdir(parents=True, exist_ok=True)
    if compressor == "blosc":
        codec = numcodecs.Blosc(cname="lz4", clevel=5, shuffle=numcodecs.Blosc.SHUFFLE)
    else:
        codec = numcodecs.get_codec({"id": compressor})

    meta = {
        "zarr_format": 2,
        "shape": list(shape),
        "chunks": list(chunks),
        "dtype": dtype,
        "order": "C",
        "compressor": codec.get_config(),
        "fill_value": 0,
        "filters": None,
        "dimension_separator": ".",
    }
    (root / ".zarray").write_text(json.dumps(meta, indent=2))

    grid = [-(-s // c) for s, c in zip(shape, chunks)]
    cz, cy, cx = chunks
    z = np.arange(cz)[:, None, None]
    y = np.arange(cy)[None, :, None]
    x = np.arange(cx)[None, None, :]
    base = (x + y + z).astype(np.float64)
    top = np.iinfo(dtype).max if np.dtype(dtype).kind in "iu" else 1.0

    for iz, iy, ix in itertools.product(*(range(g) for g in grid)):
        offset = (iz * 97 + iy * 31 + ix * 11) % 200
        block = ((base + offset) / (base.max() + 400) * top).astype(dtype)
        label = f"Z{iz} Y{iy} X{ix}"
        _draw_text(block[cz // 2], label, x=2, y=2, scale=max(1, cx // 48), value=top)
        key = ".".join(str(i) for i in (iz, iy, ix))
        (root / key).write_bytes(codec.encode(np.ascontiguousarray(block)))

    print(f"Wrote {np.prod(grid)} chunks to {root}")
    print(f"  Shape: {shape}  Chunks: {chunks}  Dtype: {dtype}  Compressor: {compressor}")


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format, *args):
        pass


def serve_directory(root: Path, port: int = 0) -> ThreadingHTTPServer:
    """Serve ``root`` over HTTP on a daemon thread; port 0 picks a free one."""
    handler = functools.partial(_QuietHandler, directory=str(root))
    server = ThreadingHTTPServer(("127.0.0.1", port), handler)
    thread = threading.Thread(target=server.serve_forever, name="zarr-http", daemon=True)
    thread.start()
    return server


class FocusSweeper:
    """Steps the viewer's focus point through every chunk on a timer."""

    def __init__(
        self,
        viewer: VolumeViewer,
        shape: tuple[int, int, int],
        chunks: tuple[int, int, int],
        interval_ms: int,
        loops: int,
    ):
        self.viewer = viewer
        self.interval_ms = interval_ms
        centers = [
            [c * i + c / 2 for i in range(-(-s // c))] for s, c in zip(shape, chunks)
        ]
        self.points = [FocusPoint(*p) for p in itertools.product(*centers)] * loops
        self.index = 0

        self.timer = QTimer()
        self.timer.timeout.connect(self._step)

    def start(self):
        print(f"Sweeping focus over {len(self.points)} points every {self.interval_ms} ms")
        self.timer.start(self.interval_ms)

    def _step(self):
        if self.index >= len(self.points):
            self.timer.stop()
            print("Sweep complete. Use the sliders to browse the volume.")
            return
        focus = self.points[self.index]
        self.viewer.set_focus(focus)
        self.index += 1


def main() -> int:
    ap = argparse.ArgumentParser(description="Serve a synthetic zarr volume and stream it")
    ap.add_argument(
        "dataset_root",
        nargs="?",
        default=None,
        help="Output directory (default: a temporary directory).",
    )
    ap.add_argument("--shape", type=int, nargs=3, default=(256, 256, 256), metavar=("Z", "Y", "X"))
    ap.add_argument("--chunks", type=int, nargs=3, default=(64, 64, 64), metavar=("Z", "Y", "X"))
    ap.add_argument("--dtype", default="<u2", help="Zarr dtype code (default: <u2).")
    ap.add_argument(
        "--compressor",
        default="blosc",
        choices=["blosc", "zlib", "gzip"],
        help="Chunk compressor (default: blosc).",
    )
    ap.add_argument("--port", type=int, default=0, help="HTTP port (default: any free port).")
    ap.add_argument(
        "--interval",
        type=float,
        default=0.1,
        help="Seconds between focus steps (default: 0.1).",
    )
    ap.add_argument("--loops", type=int, default=1, help="Number of sweeps (default: 1).")
    args = ap.parse_args()

    shape = tuple(args.shape)
    chunks = tuple(args.chunks)
    if any(c <= 0 for c in chunks):
        print("Error: --chunks must be positive.", file=sys.stderr)
        return 2

    if args.dataset_root is None:
        tmp = tempfile.TemporaryDirectory(prefix="volstream_")
        root = Path(tmp.name) / f"volume_{time.strftime('%Y%m%d_%H%M%S')}.zarr"
    else:
        tmp = None
        root = Path(args.dataset_root).expanduser().resolve()

    write_synthetic_array(root, shape, chunks, args.dtype, args.compressor)
    server = serve_directory(root, args.port)
    url = f"http://127.0.0.1:{server.server_address[1]}"
    print(f"Serving {root} at {url}")

    app = QApplication(sys.argv)
    template = LoadRequest(source=url, global_focus=FocusPoint(*(c / 2 for c in chunks)))
    viewer = VolumeViewer(url, template=template, focus_extent=shape)
    viewer.setWindowTitle("Volume Streamer - HTTP Simulation")
    viewer.resize(900, 800)
    viewer.show()

    sweeper = FocusSweeper(
        viewer,
        shape,
        chunks,
        interval_ms=int(args.interval * 1000),
        loops=args.loops,
    )

    # Start after the event loop is running
    QTimer.singleShot(500, sweeper.start)

    try:
        return app.exec_()
    finally:
        server.shutdown()
        if tmp is not None:
            tmp.cleanup()


if __name__ == "__main__":
    raise SystemExit(main())
