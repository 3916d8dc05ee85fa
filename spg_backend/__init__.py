"""spg_backend: concurrent sparse pose-graph backend for 3D SLAM.

This package provides:
- A pose-graph store that ingests scans and submaps from a local SLAM frontend
- Asynchronous loop-closure search behind a pluggable scan matcher
- A deferred task queue that holds new work while an optimization finishes
- Batch pose-graph optimization on GTSAM (Levenberg-Marquardt)
- Trajectory connectivity tracking for multi-trajectory mapping
- A JSON scan-log loader used by the replay CLI (see main.py)

The store owns all graph state; matcher and solver are collaborators that can
be swapped without touching the scheduling logic.
"""
__all__ = [
    "connectivity", "constraint_builder", "errors", "models", "optimization",
    "options", "pose_graph", "replay", "robust", "sampler", "transform", "work_queue",
]
__version__ = "0.1.0"
