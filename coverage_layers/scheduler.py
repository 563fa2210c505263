from __future__ import annotations

"""
Viewport-driven refresh scheduler, one per coverage kind.

State machine:
    INACTIVE --enable--> ACTIVE_WAITING --stationary & zoom ok (debounced)--> ACTIVE_LOADED
    any active state --zoom below threshold--> ACTIVE_WAITING (layer removed, warning shown)
    any state --disable--> INACTIVE (in-flight cycle cancelled, layer removed)

Later triggers supersede earlier ones: a pending debounce is dropped and the
previous cycle's token is invalidated. In-flight fetches are never aborted;
their results are discarded by the last-second check before apply.
Must be driven from inside a running event loop.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from coverage_layers.filters import CoverageResult
from coverage_layers.session import (
    CancellationToken,
    CoverageSession,
    LayerSink,
    LayerState,
    Notifier,
    ViewState,
)


log = logging.getLogger(__name__)

Loader = Callable[[ViewState, CancellationToken], Awaitable[CoverageResult]]


class RefreshScheduler:
    def __init__(
        self,
        session: CoverageSession,
        loader: Loader,
        sink: Optional[LayerSink] = None,
        notifier: Optional[Notifier] = None,
        min_zoom: float = 16,
        debounce_s: float = 0.6,
    ):
        self.session = session
        self.loader = loader
        self.sink = sink or LayerSink()
        self.notifier = notifier or Notifier()
        self.min_zoom = float(min_zoom)
        self.debounce_s = float(debounce_s)
        self._view: Optional[ViewState] = None
        self._pending: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def kind(self):
        return self.session.kind

    @property
    def view(self) -> Optional[ViewState]:
        return self._view

    # ----------------------------
    # Triggers
    # ----------------------------
    def enable(self, view: ViewState) -> None:
        """User turned the layer on; loads right away when the zoom allows it."""
        self.session.active = True
        if self.session.state == LayerState.INACTIVE:
            self.session.state = LayerState.ACTIVE_WAITING
        self._view = view
        self._consider(view, delay=0.0)

    def disable(self) -> None:
        """User turned the layer off. The sequence cache is left alone."""
        self.session.active = False
        self._cancel_pending()
        self.session.cancel_cycle()
        self._remove_layer()
        self.session.state = LayerState.INACTIVE
        self._set_warning(None)

    def on_view_stationary(self, view: ViewState) -> None:
        """Map settled on a new view; the cycle in flight belongs to the old one."""
        self._view = view
        if not self.session.active:
            return
        self.session.cancel_cycle()
        self._consider(view, delay=self.debounce_s)

    async def refresh(self, view: Optional[ViewState] = None) -> bool:
        """
        Run one refresh cycle now. Returns True when its results were applied,
        False when they were discarded as stale or the layer is not active.
        """
        view = view or self._view
        if not self.session.active or view is None:
            return False

        token = self.session.begin_cycle()
        try:
            result = await self.loader(view, token)
        except Exception as e:
            log.exception("Coverage load failed (%s): %s", self.kind.value, e)
            result = CoverageResult()

        # last-second check
        if not self._still_wanted(token):
            log.debug(
                "Discarded stale coverage results",
                extra={"extra": {"kind": self.kind.value, "cycle": token.cycle}},
            )
            return False
        self._apply(result)
        return True

    async def load(self, view: ViewState) -> bool:
        """Activate (if needed) and load `view` without debounce; used by request/response callers."""
        self.session.active = True
        self._view = view
        if view.zoom < self.min_zoom:
            self._consider(view, delay=0.0)
            return False
        self._cancel_pending()
        self._set_warning(None)
        return await self.refresh(view)

    async def wait_idle(self) -> None:
        """Wait until no debounce or refresh task is outstanding."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ----------------------------
    # Internals
    # ----------------------------
    def _consider(self, view: ViewState, delay: float) -> None:
        if view.zoom < self.min_zoom:
            self._cancel_pending()
            self.session.cancel_cycle()
            if self.session.state == LayerState.ACTIVE_LOADED or self.session.rendered:
                self._remove_layer()
            self.session.state = LayerState.ACTIVE_WAITING
            self._set_warning(f"Zoom in to level {self.min_zoom:g} or closer to load {self.kind.value} coverage.")
            return
        self._set_warning(None)
        self._schedule(view, delay)

    def _schedule(self, view: ViewState, delay: float) -> None:
        self._cancel_pending()
        task = asyncio.get_running_loop().create_task(self._debounced(view, delay))
        self._pending = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _debounced(self, view: ViewState, delay: float) -> None:
        await asyncio.sleep(delay)
        # past the debounce window: no longer cancellable, only supersedable
        if self._pending is asyncio.current_task():
            self._pending = None
        await self.refresh(view)

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def _still_wanted(self, token: CancellationToken) -> bool:
        return (
            self.session.is_current(token)
            and self.session.active
            and self._view is not None
            and self._view.zoom >= self.min_zoom
        )

    def _apply(self, result: CoverageResult) -> None:
        s = self.session
        s.state = LayerState.ACTIVE_LOADED
        if result.is_empty:
            self._remove_layer()
            self.notifier.info(f"No {self.kind.value} coverage found in this area.")
            return
        s.rendered = {f.id: f for f in result.features}
        s.legend = list(result.legend)
        s.popups_enabled = result.popups_enabled
        self.sink.apply(self.kind, result)

    def _remove_layer(self) -> None:
        self.session.clear_results()
        self.sink.clear(self.kind)

    def _set_warning(self, message: Optional[str]) -> None:
        s = self.session
        if message is None:
            if s.warning is not None:
                s.warning = None
                self.notifier.clear_warning(self.kind)
            return
        if s.warning != message:
            s.warning = message
            self.notifier.warn(self.kind, message)
