"""Scene acquisition and vegetation-index processing."""

from phenoflow.processing.load import SourceLoadTracker
from phenoflow.processing.vi import compute_vi, compute_vi_frame, recompute_vi
from phenoflow.processing.orchestrator import (
    ProbeResult,
    ScenePlan,
    SessionResult,
    SessionState,
    SourceOrchestrator,
)

__all__ = [
    "SourceLoadTracker",
    "compute_vi",
    "compute_vi_frame",
    "recompute_vi",
    "ProbeResult",
    "ScenePlan",
    "SessionResult",
    "SessionState",
    "SourceOrchestrator",
]
