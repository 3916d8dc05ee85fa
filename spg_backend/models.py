from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional, Set, Union

import numpy as np

from .errors import check
from .transform import Rigid3


@dataclass(frozen=True, order=True)
class NodeId:
    """Logical id of a scan node: dense per-trajectory index."""
    trajectory_id: int
    node_index: int


@dataclass(frozen=True, order=True)
class SubmapId:
    trajectory_id: int
    submap_index: int


@dataclass(frozen=True, eq=False)
class ConstantData:
    """Immutable part of a trajectory node.

    point_cloud is a read-only float32 (N, 3) array; compression happens
    upstream of the graph.
    """
    time: float
    point_cloud: np.ndarray
    trajectory_id: int
    gravity_alignment: Rigid3 = field(default_factory=Rigid3.identity)


@dataclass
class TrajectoryNode:
    constant_data: ConstantData
    pose: Rigid3


class ConstraintTag(enum.Enum):
    INTRA_SUBMAP = "intra_submap"
    INTER_SUBMAP = "inter_submap"


@dataclass(frozen=True, eq=False)
class ConstraintPose:
    """Measured submap -> node transform and its 6x6 sqrt-information.

    Matrix ordering follows gtsam's Pose3 tangent: rotation, then translation.
    """
    zbar_ij: Rigid3
    sqrt_lambda_ij: np.ndarray


@dataclass(frozen=True, eq=False)
class Constraint:
    submap_id: SubmapId
    node_id: NodeId
    pose: ConstraintPose
    tag: ConstraintTag


class Submap:
    """A locally consistent partial map owned by the host.

    The graph only reads ``local_pose`` and ``finished``. ``finish()`` may be
    called once; finishing twice is a contract violation.
    """

    def __init__(self, local_pose: Rigid3, finished: bool = False):
        self._local_pose = local_pose
        self._finished = finished

    @property
    def local_pose(self) -> Rigid3:
        return self._local_pose

    @property
    def finished(self) -> bool:
        return self._finished

    def finish(self) -> None:
        check(not self._finished, "Submap is already finished")
        self._finished = True

    def __repr__(self) -> str:
        return f"Submap(local_pose={self._local_pose!r}, finished={self._finished})"


class Trajectory:
    """Host-side container of the submaps built for one sensor run.

    Compared by identity; the pose graph maps each instance to a dense id.
    """

    def __init__(self, submaps: Optional[List[Submap]] = None, name: Optional[str] = None):
        self._submaps: List[Submap] = list(submaps or [])
        self.name = name

    def add_submap(self, submap: Submap) -> Submap:
        self._submaps.append(submap)
        return submap

    def get(self, index: int) -> Submap:
        return self._submaps[index]

    def __len__(self) -> int:
        return len(self._submaps)

    def __repr__(self) -> str:
        return f"Trajectory(name={self.name!r}, submaps={len(self._submaps)})"


@dataclass
class SubmapState:
    """Pose-graph bookkeeping for one submap."""
    submap: Submap
    # Nodes already constrained against this submap as INTRA_SUBMAP.
    node_ids: Set[NodeId] = field(default_factory=set)
    finished: bool = False


def is_6x6_cov(mat: np.ndarray) -> bool:
    return isinstance(mat, np.ndarray) and mat.shape == (6, 6)


def to_covariance(cov: Union[List[float], np.ndarray, None]) -> np.ndarray:
    """Convert a flat list (36) or nested list (6x6) to a 6x6 ndarray.

    ``None`` maps to the identity so hosts without a pose covariance can still
    insert scans.
    """
    if cov is None:
        return np.eye(6)
    arr = np.asarray(cov, dtype=float)
    if arr.size == 36 and arr.ndim == 1:
        return arr.reshape(6, 6)
    if is_6x6_cov(arr):
        return arr
    raise ValueError(f"Expected 36 elements for a 6x6 covariance, got shape {arr.shape} size {arr.size}")
