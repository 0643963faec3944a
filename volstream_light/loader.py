"""Single-flight background loading with supersede semantics.

``AsyncVolumeLoader`` owns one worker thread. While a load runs, newer
requests are coalesced into a single pending slot; when the running task
finishes its result is discarded and the pending request runs instead. Only
the outcome of the most recently issued request is ever published.

Outcomes are delivered as ``LoadEvent`` objects to listeners registered with
``add_listener()``, and to the ``events`` queue when one is passed in. Listeners
run on the worker thread; GUI front ends should re-emit them onto their own
thread. Queued events hold their volume data until they are read.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from .errors import ErrorKind, LoadError
from .normalize import ElementType
from .sources import LoadRequest, LoadResult, load_volume
from .zarr_storage import FocusPoint

logger = logging.getLogger(__name__)


class LoaderState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOADING_WITH_PENDING_SUPERSEDE = "loading_with_pending_supersede"


class LoadEventKind(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class LoadEvent:
    kind: LoadEventKind
    result: LoadResult

    @property
    def succeeded(self) -> bool:
        return self.kind is LoadEventKind.SUCCEEDED


@dataclass(frozen=True)
class PublishedVolume:
    """Externally visible volume state, replaced only by successful loads."""

    data: np.ndarray
    width: int
    height: int
    depth: int
    element_type: Optional[ElementType]
    local_focus: FocusPoint
    global_focus: FocusPoint
    source: str
    request_id: str

    @classmethod
    def from_result(cls, result: LoadResult) -> "PublishedVolume":
        return cls(
            data=result.data,
            width=result.width,
            height=result.height,
            depth=result.depth,
            element_type=result.element_type,
            local_focus=result.local_focus,
            global_focus=result.global_focus,
            source=result.source,
            request_id=result.request.request_id,
        )

    def as_array(self) -> np.ndarray:
        """View the samples as a (depth, height, width) array."""
        expected = self.width * self.height * self.depth
        return self.data[:expected].reshape(self.depth, self.height, self.width)


Pipeline = Callable[[LoadRequest], LoadResult]
Listener = Callable[[LoadEvent], None]


class AsyncVolumeLoader:
    """Run ``pipeline`` off the calling thread, one request at a time.

    Invariants
    ----------
    - At most one task is in flight.
    - A running task is never interrupted; supersession is checked only when
      it completes.
    - Published state is always derived from the most recently issued request.
    - A failed load leaves the published volume untouched.
    """

    def __init__(
        self,
        pipeline: Pipeline = load_volume,
        events: Optional["queue.Queue[LoadEvent]"] = None,
    ) -> None:
        self._pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="volume-loader")
        self._cond = threading.Condition()
        self._state = LoaderState.IDLE
        self._pending: Optional[LoadRequest] = None
        self._published: Optional[PublishedVolume] = None
        self._listeners: List[Listener] = []
        self._closed = False
        self.events = events

    # ─────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> LoaderState:
        with self._cond:
            return self._state

    @property
    def published(self) -> Optional[PublishedVolume]:
        with self._cond:
            return self._published

    def add_listener(self, listener: Listener) -> None:
        with self._cond:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._cond:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def request_load(self, request: LoadRequest) -> None:
        """Start loading ``request``, or queue it behind the running load.

        Returns immediately. A request queued behind a running load replaces
        any request that was already waiting.
        """
        with self._cond:
            if self._closed:
                raise RuntimeError("AsyncVolumeLoader has been shut down")
            if self._state is LoaderState.IDLE:
                self._state = LoaderState.LOADING
                self._launch(request)
            else:
                if self._pending is not None:
                    logger.debug("Dropping pending request %s", self._pending.request_id)
                self._pending = request
                self._state = LoaderState.LOADING_WITH_PENDING_SUPERSEDE
                logger.debug("Request %s will supersede the running load", request.request_id)

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no load is running; False if ``timeout`` expired."""
        with self._cond:
            return self._cond.wait_for(lambda: self._state is LoaderState.IDLE, timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._closed = True
            self._pending = None
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "AsyncVolumeLoader":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # ─────────────────────────────────────────────────────────────────────
    # Worker side
    # ─────────────────────────────────────────────────────────────────────

    def _launch(self, request: LoadRequest) -> None:
        # Caller holds self._cond
        logger.info("Loading %s (request %s)", request.source, request.request_id)
        self._executor.submit(self._run, request)

    def _run(self, request: LoadRequest) -> None:
        try:
            result = self._pipeline(request)
        except Exception as e:
            logger.error("Unexpected error loading %s: %s", request.source, e, exc_info=True)
            result = LoadResult.failed(request, LoadError(ErrorKind.UNEXPECTED, str(e)))
        self._on_task_complete(result)

    def _on_task_complete(self, result: LoadResult) -> None:
        """Completion message from the worker: rerun, or publish and go idle."""
        with self._cond:
            if self._state is LoaderState.LOADING_WITH_PENDING_SUPERSEDE:
                pending = self._pending
                self._pending = None
                logger.debug(
                    "Discarding superseded result of request %s", result.request.request_id
                )
                if self._closed or pending is None:
                    # The superseding request was dropped by shutdown()
                    self._state = LoaderState.IDLE
                    self._cond.notify_all()
                    return
                self._state = LoaderState.LOADING
                self._launch(pending)
                return

            self._pending = None
            if result.success:
                self._published = PublishedVolume.from_result(result)
                event = LoadEvent(LoadEventKind.SUCCEEDED, result)
                logger.info(
                    "Loaded %s: %dx%dx%d %s",
                    result.source,
                    result.width,
                    result.height,
                    result.depth,
                    result.element_type.value if result.element_type else "unknown",
                )
            else:
                event = LoadEvent(LoadEventKind.FAILED, result)
                logger.warning("Load of %s failed: %s", result.source, result.error)
            self._state = LoaderState.IDLE
            listeners = list(self._listeners)
            if self.events is not None:
                self.events.put(event)
            self._cond.notify_all()

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error("Load listener failed: %s", e, exc_info=True)
