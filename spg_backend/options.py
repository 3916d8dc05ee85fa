"""Configuration dataclasses for the pose graph and its collaborators.

Defaults mirror a typical 3D lidar setup. ``load_options`` reads the same
structure from JSON:

    {
      "optimize_every_n_scans": 90,
      "global_sampling_ratio": 0.003,
      "max_num_final_iterations": 200,
      "constraint_builder": {"sampling_ratio": 0.3, ...},
      "optimization_problem": {"max_num_iterations": 50, ...}
    }
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

logger = logging.getLogger("spg.options")


@dataclass
class ConstraintBuilderOptions:
    sampling_ratio: float = 0.3
    max_constraint_distance: float = 15.0
    min_score: float = 0.55
    global_localization_min_score: float = 0.6
    lower_covariance_eigenvalue_bound: float = 1e-11
    loop_closure_translation_weight: float = 1.1e4
    loop_closure_rotation_weight: float = 1e5
    log_matches: bool = True
    # Only used when the builder creates its own executor.
    num_threads: int = 4


@dataclass
class OptimizationProblemOptions:
    max_num_iterations: int = 50
    lambda_initial: float = 1e-3
    robust_kind: Optional[str] = "huber"   # applied to INTER_SUBMAP constraints
    huber_scale: float = 5.0
    # Sigmas of the priors that fix the gauge of each trajectory's first submap.
    anchor_sigma: float = 1e-6
    free_trajectory_sigma: float = 1e2


@dataclass
class PoseGraphOptions:
    optimize_every_n_scans: int = 90
    global_sampling_ratio: float = 0.003
    max_num_final_iterations: int = 200
    constraint_builder: ConstraintBuilderOptions = field(default_factory=ConstraintBuilderOptions)
    optimization_problem: OptimizationProblemOptions = field(default_factory=OptimizationProblemOptions)


def _fill(cls, data: Dict[str, Any], where: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown option(s) in {where}: {', '.join(unknown)}")
    return cls(**data)


def options_from_dict(data: Dict[str, Any]) -> PoseGraphOptions:
    data = dict(data or {})
    cb = _fill(ConstraintBuilderOptions, data.pop("constraint_builder", {}) or {}, "constraint_builder")
    op = _fill(OptimizationProblemOptions, data.pop("optimization_problem", {}) or {}, "optimization_problem")
    opts = _fill(PoseGraphOptions, data, "pose_graph")
    opts.constraint_builder = cb
    opts.optimization_problem = op
    validate_options(opts)
    return opts


def load_options(path: str) -> PoseGraphOptions:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Options file {path} must contain a JSON object, got {type(data).__name__}")
    opts = options_from_dict(data)
    logger.debug("Loaded options from %s: %s", path, opts)
    return opts


def validate_options(opts: PoseGraphOptions) -> None:
    for name, ratio in (("global_sampling_ratio", opts.global_sampling_ratio),
                        ("constraint_builder.sampling_ratio", opts.constraint_builder.sampling_ratio)):
        if not 0.0 <= ratio <= 1.0:
            raise ValueError(f"{name} must be within [0, 1], got {ratio}")
    if opts.constraint_builder.lower_covariance_eigenvalue_bound <= 0.0:
        raise ValueError("constraint_builder.lower_covariance_eigenvalue_bound must be positive")
    if opts.optimization_problem.max_num_iterations <= 0 or opts.max_num_final_iterations <= 0:
        raise ValueError("Iteration counts must be positive")
