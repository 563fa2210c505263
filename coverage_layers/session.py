from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple


log = logging.getLogger(__name__)


class CoverageKind(str, Enum):
    TURBO = "turbo"
    SIGNS = "signs"
    OBJECTS = "objects"


class LayerState(str, Enum):
    INACTIVE = "inactive"
    ACTIVE_WAITING = "active_waiting"
    ACTIVE_LOADED = "active_loaded"


@dataclass(frozen=True, slots=True)
class ViewState:
    """Snapshot of the host map view: geographic bbox + zoom."""
    bbox: Tuple[float, float, float, float]
    zoom: float


class CancellationToken:
    """Owned by one refresh cycle; invalidated when a newer cycle starts or the layer stops."""

    __slots__ = ("cycle", "_cancelled")

    def __init__(self, cycle: int = 0):
        self.cycle = cycle
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:
        return f"CancellationToken(cycle={self.cycle}, cancelled={self._cancelled})"


@dataclass
class CoverageSession:
    """
    Per-kind mutable state shared by the scheduler, the loaders and the click
    dispatcher. Built once per kind and passed around by reference.
    """
    kind: CoverageKind
    active: bool = False
    state: LayerState = LayerState.INACTIVE
    token: Optional[CancellationToken] = None
    rendered: Dict[str, Any] = field(default_factory=dict)
    legend: List[Tuple[str, str]] = field(default_factory=list)
    popups_enabled: bool = True
    warning: Optional[str] = None
    cycles: int = 0

    def begin_cycle(self) -> CancellationToken:
        """Invalidate the previous cycle and hand out a fresh token."""
        self.cancel_cycle()
        self.cycles += 1
        self.token = CancellationToken(self.cycles)
        return self.token

    def cancel_cycle(self) -> None:
        if self.token is not None and not self.token.cancelled:
            self.token.cancel()
            log.debug("Cancelled refresh cycle", extra={"extra": {"kind": self.kind.value, "cycle": self.token.cycle}})

    def is_current(self, token: CancellationToken) -> bool:
        return token is self.token and not token.cancelled

    def clear_results(self) -> None:
        self.rendered = {}
        self.legend = []
        self.popups_enabled = True

    def feature(self, feature_id: str) -> Optional[Any]:
        return self.rendered.get(feature_id)


class Notifier:
    """User feedback collaborator; the default implementation only logs."""

    def info(self, message: str) -> None:
        """Transient, auto-dismissing message."""
        log.info(message)

    def warn(self, kind: CoverageKind, message: str) -> None:
        """Persistent warning for one coverage kind, shown until cleared."""
        log.warning(message, extra={"extra": {"kind": kind.value}})

    def clear_warning(self, kind: CoverageKind) -> None:
        log.debug("Warning cleared", extra={"extra": {"kind": kind.value}})


class LayerSink:
    """Rendering collaborator; receives filtered feature sets. Default only logs."""

    def apply(self, kind: CoverageKind, result: Any) -> None:
        log.info("Layer updated", extra={"extra": {"kind": kind.value, "features": len(getattr(result, "features", []))}})

    def clear(self, kind: CoverageKind) -> None:
        log.info("Layer removed", extra={"extra": {"kind": kind.value}})


def sessions_for(kinds: Sequence[CoverageKind] = tuple(CoverageKind)) -> Dict[CoverageKind, CoverageSession]:
    return {k: CoverageSession(kind=k) for k in kinds}
