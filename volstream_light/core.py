"""
Lightweight NDV-based volume viewer

Shows the volume published by an ``AsyncVolumeLoader``. Focus sliders pick the
point the viewer is centered on; slider changes are debounced and turned into
fresh ``LoadRequest`` objects, so remote chunks are fetched in the background
while the GUI thread stays responsive.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np
from PyQt5.QtCore import Qt, QTimer, pyqtSignal
from PyQt5.QtGui import QColor, QPalette
from PyQt5.QtWidgets import (
    QApplication,
    QHBoxLayout,
    QLabel,
    QMainWindow,
    QStyleFactory,
    QVBoxLayout,
    QWidget,
)

# Try to import QLabeledSlider from superqt (same as NDV uses)
try:
    from superqt import QLabeledSlider

    SUPERQT_AVAILABLE = True
except ImportError:
    from PyQt5.QtWidgets import QSlider

    SUPERQT_AVAILABLE = False

try:
    import ndv

    NDV_AVAILABLE = True
except ImportError:
    NDV_AVAILABLE = False

import xarray as xr
from scipy.ndimage import zoom as ndimage_zoom

from .loader import AsyncVolumeLoader, LoadEvent, PublishedVolume
from .sources import BUILTIN_VOLUME_SIZE, DEFAULT_SOURCE, LoadRequest
from .zarr_storage import FocusPoint

# NDV slider style (matches NDV's internal sliders)
NDV_SLIDER_STYLE = """
QSlider::groove:horizontal {
    height: 15px;
    background: qlineargradient(
        x1:0, y1:0, x2:0, y2:1,
        stop:0 rgba(128, 128, 128, 0.25),
        stop:1 rgba(128, 128, 128, 0.1)
    );
    border-radius: 3px;
}
QSlider::handle:horizontal {
    width: 38px;
    background: #999999;
    border-radius: 3px;
}
QLabel { font-size: 12px; }
"""

# Constants
LOAD_DEBOUNCE_MS = 200
# OpenGL 3D texture size limit (conservative estimate for most GPUs)
MAX_3D_TEXTURE_SIZE = 2048

logger = logging.getLogger(__name__)


def downsample_for_texture(volume: np.ndarray, max_size: int = MAX_3D_TEXTURE_SIZE) -> np.ndarray:
    """Shrink a (z, y, x) volume so no axis exceeds ``max_size``.

    XY are scaled uniformly to keep their aspect ratio; z is scaled on its
    own and only when it is over the limit.
    """
    depth, height, width = volume.shape
    xy_max = max(height, width)
    xy_scale = max_size / xy_max if xy_max > max_size else 1.0
    z_scale = max_size / depth if depth > max_size else 1.0
    if xy_scale == 1.0 and z_scale == 1.0:
        return volume

    zoom_factors = (z_scale, xy_scale, xy_scale)
    logger.info(
        "Downsampling volume from %s (factors=%s) for OpenGL rendering",
        volume.shape,
        [f"{z:.3f}" for z in zoom_factors],
    )
    # order=0 (nearest neighbor) keeps this fast
    return ndimage_zoom(volume, zoom_factors, order=0).astype(volume.dtype)


def volume_to_xarray(volume: PublishedVolume) -> xr.DataArray:
    """Wrap a published volume for display, with its provenance in attrs."""
    data = downsample_for_texture(volume.as_array())
    xarr = xr.DataArray(data, dims=["z", "y", "x"])
    xarr.attrs["source"] = volume.source
    xarr.attrs["element_type"] = volume.element_type.value if volume.element_type else "unknown"
    xarr.attrs["local_focus"] = volume.local_focus.as_zyx()
    xarr.attrs["global_focus"] = volume.global_focus.as_zyx()
    return xarr


def _apply_dark_theme(widget: QWidget) -> None:
    """Apply dark Fusion theme to a widget."""
    widget.setStyle(QStyleFactory.create("Fusion"))

    p = widget.palette()
    p.setColor(QPalette.Window, QColor(53, 53, 53))
    p.setColor(QPalette.WindowText, QColor(255, 255, 255))
    p.setColor(QPalette.Base, QColor(35, 35, 35))
    p.setColor(QPalette.AlternateBase, QColor(53, 53, 53))
    p.setColor(QPalette.Text, QColor(255, 255, 255))
    p.setColor(QPalette.Button, QColor(53, 53, 53))
    p.setColor(QPalette.ButtonText, QColor(255, 255, 255))
    p.setColor(QPalette.Highlight, QColor(42, 130, 218))
    p.setColor(QPalette.HighlightedText, QColor(35, 35, 35))
    widget.setPalette(p)


class VolumeViewer(QWidget):
    """NDV display of a streamed volume with z/y/x focus navigation.

    Use ``set_source()`` / ``set_focus()`` to drive it programmatically;
    ``volume_changed`` and ``load_failed`` report outcomes on the GUI thread.
    """

    volume_changed = pyqtSignal(object)  # PublishedVolume
    load_failed = pyqtSignal(object)  # LoadResult

    # Re-emits loader events (worker thread) on the GUI thread
    _load_finished = pyqtSignal(object)

    def __init__(
        self,
        source: str = DEFAULT_SOURCE,
        template: Optional[LoadRequest] = None,
        focus_extent: Tuple[int, int, int] = (
            BUILTIN_VOLUME_SIZE,
            BUILTIN_VOLUME_SIZE,
            BUILTIN_VOLUME_SIZE,
        ),
        loader: Optional[AsyncVolumeLoader] = None,
    ):
        super().__init__()
        self._template = template or LoadRequest(source=source)
        self._source = source
        self._focus = self._template.global_focus
        self._focus_extent = focus_extent
        self._xarray_data: Optional[xr.DataArray] = None
        self.ndv_viewer = None
        self._updating_sliders = False
        self._load_debounce_timer: Optional[QTimer] = None
        self._load_pending = False

        self._loader = loader or AsyncVolumeLoader()
        self._load_finished.connect(self._on_load_finished)
        self._listener = self._load_finished.emit
        self._loader.add_listener(self._listener)

        self._setup_ui()
        self._request_current()

    @property
    def loader(self) -> AsyncVolumeLoader:
        return self._loader

    @property
    def source(self) -> str:
        return self._source

    @property
    def focus(self) -> FocusPoint:
        return self._focus

    def _setup_ui(self):
        layout = QVBoxLayout()
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(2)

        self.status_label = QLabel("Loading volume...")
        self.status_label.setStyleSheet("color: #888; padding: 5px;")
        layout.addWidget(self.status_label)

        # NDV placeholder
        if NDV_AVAILABLE:
            dummy = np.zeros((1, 100, 100), dtype=np.uint8)
            self.ndv_viewer = ndv.ArrayViewer(dummy, visible_axes=(-2, -1))
            layout.addWidget(self.ndv_viewer.widget(), 1)
        else:
            placeholder = QLabel("NDV not available.\npip install ndv[vispy,pyqt]")
            placeholder.setAlignment(Qt.AlignCenter)
            layout.addWidget(placeholder, 1)

        slider_container = QWidget()
        slider_container.setStyleSheet(NDV_SLIDER_STYLE)
        slider_layout = QVBoxLayout(slider_container)
        slider_layout.setContentsMargins(5, 2, 5, 2)
        slider_layout.setSpacing(2)

        self._focus_sliders = {}
        for axis, extent, value in zip("zyx", self._focus_extent, self._focus.as_zyx()):
            row = QWidget()
            row_layout = QHBoxLayout(row)
            row_layout.setContentsMargins(0, 0, 0, 0)
            row_layout.setSpacing(5)
            label = QLabel(axis.upper())
            label.setFixedWidth(30)
            if SUPERQT_AVAILABLE:
                slider = QLabeledSlider(Qt.Horizontal)
            else:
                slider = QSlider(Qt.Horizontal)
            slider.setMinimum(0)
            slider.setMaximum(max(0, extent - 1))
            slider.setValue(int(value))
            slider.valueChanged.connect(self._on_focus_slider_changed)
            row_layout.addWidget(label)
            row_layout.addWidget(slider)
            slider_layout.addWidget(row)
            self._focus_sliders[axis] = slider

        layout.addWidget(slider_container)
        self.setLayout(layout)

    # ─────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────

    def _on_focus_slider_changed(self, _value: int):
        if self._updating_sliders:
            return
        self._focus = FocusPoint(
            float(self._focus_sliders["z"].value()),
            float(self._focus_sliders["y"].value()),
            float(self._focus_sliders["x"].value()),
        )
        self._schedule_debounced_load()

    def set_focus(self, focus: FocusPoint) -> None:
        """Center the view on ``focus`` and load the chunk around it."""
        self._focus = focus
        self._updating_sliders = True
        try:
            for axis, value in zip("zyx", focus.as_zyx()):
                self._focus_sliders[axis].setValue(int(value))
        finally:
            self._updating_sliders = False
        self._schedule_debounced_load()

    def set_source(self, source: str) -> None:
        if source == self._source:
            return
        self._source = source
        self._request_current()

    def _schedule_debounced_load(self):
        """Coalesce rapid slider moves into a single request every 200ms."""
        self._load_pending = True

        if self._load_debounce_timer is None:
            self._load_debounce_timer = QTimer(self)
            self._load_debounce_timer.setSingleShot(True)
            self._load_debounce_timer.timeout.connect(self._execute_debounced_load)

        if not self._load_debounce_timer.isActive():
            self._load_debounce_timer.start(LOAD_DEBOUNCE_MS)

    def _execute_debounced_load(self):
        if self._load_pending:
            self._load_pending = False
            self._request_current()

    def _build_request(self) -> LoadRequest:
        t = self._template
        return LoadRequest(
            source=self._source,
            width=t.width,
            height=t.height,
            depth=t.depth,
            data_type=t.data_type,
            global_focus=self._focus,
            level=t.level,
            order=t.order,
            dimension_separator=t.dimension_separator,
        )

    def _request_current(self):
        request = self._build_request()
        self.status_label.setText(f"Loading {Path(request.source).name}...")
        self._loader.request_load(request)

    # ─────────────────────────────────────────────────────────────────────
    # Results (GUI thread)
    # ─────────────────────────────────────────────────────────────────────

    def _on_load_finished(self, event: LoadEvent):
        result = event.result
        if not event.succeeded:
            self.status_label.setText(f"Load failed: {result.error}")
            self.load_failed.emit(result)
            return

        volume = self._loader.published
        if volume is None or volume.request_id != result.request.request_id:
            return
        self.status_label.setText(
            f"{Path(volume.source).name}  {volume.width}x{volume.height}x{volume.depth}"
        )
        self._update_ndv_data(volume_to_xarray(volume))
        self.volume_changed.emit(volume)

    def _update_ndv_data(self, xarr: xr.DataArray):
        self._xarray_data = xarr
        if not NDV_AVAILABLE or not self.ndv_viewer:
            return
        if not self._try_inplace_ndv_update(xarr):
            self._set_ndv_data(xarr)

    def _try_inplace_ndv_update(self, data: xr.DataArray) -> bool:
        """Update ndv data in-place to avoid leaking GPU handles (ndv#209).

        Returns False if the caller should rebuild the viewer instead.

        Note:
            Relies on ndv internal APIs (_data_model.data_wrapper._data).
        """
        v = self.ndv_viewer
        if v is None:
            return False

        try:
            wrapper = v._data_model.data_wrapper
            if wrapper._data is None:
                return False

            shape_changed = wrapper._data.shape != data.shape
            wrapper._data = data

            if shape_changed:
                wrapper.dims_changed.emit()
            else:
                v._request_data()

            return True
        except AttributeError as e:
            logger.debug("In-place update unavailable (ndv API mismatch): %s", e)
            return False
        except Exception as e:
            logger.warning("In-place ndv update failed unexpectedly: %s", e, exc_info=True)
            return False

    def _set_ndv_data(self, data: xr.DataArray):
        """Recreate the NDV viewer around ``data``."""
        old_widget = self.ndv_viewer.widget()
        layout = self.layout()

        self.ndv_viewer = ndv.ArrayViewer(data, visible_axes=(-2, -1))

        idx = layout.indexOf(old_widget)
        layout.removeWidget(old_widget)
        old_widget.deleteLater()
        layout.insertWidget(idx, self.ndv_viewer.widget(), 1)

    def closeEvent(self, event):
        """Stop timers and the loader thread when the widget is closed."""
        if self._load_debounce_timer:
            self._load_debounce_timer.stop()
        self._loader.remove_listener(self._listener)
        self._loader.shutdown(wait=False)
        super().closeEvent(event)


class VolumeMainWindow(QMainWindow):
    """Main window with dark theme."""

    viewer: VolumeViewer

    def __init__(self, source: str = DEFAULT_SOURCE, **viewer_kwargs):
        super().__init__()
        self.setWindowTitle(f"Volume Streamer - {Path(source).name}")
        self.setGeometry(100, 100, 720, 620)
        _apply_dark_theme(self)

        self.viewer = VolumeViewer(source, **viewer_kwargs)
        self.setCentralWidget(self.viewer)

    def closeEvent(self, event):
        """Ensure viewer cleanup when window closes."""
        self.viewer.close()
        super().closeEvent(event)


def main(
    source: str = DEFAULT_SOURCE,
    template: Optional[LoadRequest] = None,
    focus_extent: Optional[Sequence[int]] = None,
):
    """Launch the volume viewer."""
    app = QApplication(sys.argv)

    kwargs = {"template": template}
    if focus_extent is not None:
        kwargs["focus_extent"] = tuple(focus_extent)
    window = VolumeMainWindow(source, **kwargs)
    window.show()

    sys.exit(app.exec_())
