"""
Coverage — live coverage layers (turbo imagery points, traffic signs, map objects)

This package provides:
- CoverageFilter / CoverageFilterPipeline: fast vs detail path, creator/date/
  panorama predicates, colour-by-date legend
- CoverageSession + CancellationToken: per-kind state passed by reference
- RefreshScheduler: debounced, zoom-gated, cancellable refresh cycles
- TurboCoverageLoader / PointFeatureLoader: tiles -> features per kind
"""
from .filters import CoverageFilter, CoverageFilterPipeline, CoverageResult
from .session import CancellationToken, CoverageKind, CoverageSession, LayerState, ViewState
from .scheduler import RefreshScheduler

__all__ = [
    "CoverageFilter",
    "CoverageFilterPipeline",
    "CoverageResult",
    "CancellationToken",
    "CoverageKind",
    "CoverageSession",
    "LayerState",
    "ViewState",
    "RefreshScheduler",
]
