from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple, TYPE_CHECKING
import logging
import time
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .models import Constraint, ConstraintTag
from .options import OptimizationProblemOptions
from .robust import robustify, sqrt_information_model
from .transform import Rigid3

if TYPE_CHECKING:
    from spg_common.kpi_logging import KPILogger

logger = logging.getLogger("spg.optimization")


@dataclass(frozen=True)
class SubmapData:
    pose: Rigid3


@dataclass(frozen=True)
class NodeData:
    time: float
    point_cloud_pose: Rigid3


@dataclass(frozen=True, eq=False)
class ImuData:
    time: float
    linear_acceleration: np.ndarray
    angular_velocity: np.ndarray


def submap_key(trajectory_id: int, submap_index: int) -> int:
    return gtsam.symbol("s", (trajectory_id << 32) | submap_index)


def node_key(trajectory_id: int, node_index: int) -> int:
    return gtsam.symbol("n", (trajectory_id << 32) | node_index)


def to_gtsam_pose(pose: Rigid3) -> "gtsam.Pose3":
    return gtsam.Pose3(pose.to_matrix())


def from_gtsam_pose(pose: "gtsam.Pose3") -> Rigid3:
    return Rigid3.from_matrix(np.asarray(pose.matrix(), dtype=float))


class OptimizationProblem:
    """Batch Levenberg–Marquardt solve over submap and node poses.

    Per-trajectory tables of submap and node poses are grown by the pose graph
    and rewritten by ``solve``. Every constraint becomes a
    ``BetweenFactorPose3`` from the submap to the node; loop closures
    (INTER_SUBMAP) get a robust kernel. The first submap of the first
    trajectory is pinned, the first submap of every other trajectory gets a
    loose prior so disconnected trajectories stay well-posed.
    """

    def __init__(self, options: OptimizationProblemOptions, kpi: Optional["KPILogger"] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run pose graph optimization")
        self.options = options
        self._max_num_iterations = options.max_num_iterations
        self._kpi = kpi
        self._batch_id = 0
        self._submap_data: List[List[SubmapData]] = []
        self._node_data: List[List[NodeData]] = []
        self._imu_data: List[List[ImuData]] = []

    @staticmethod
    def _grow(table: list, trajectory_id: int) -> list:
        while len(table) <= trajectory_id:
            table.append([])
        return table[trajectory_id]

    def add_submap(self, trajectory_id: int, pose: Rigid3) -> None:
        self._grow(self._submap_data, trajectory_id).append(SubmapData(pose))

    def add_trajectory_node(self, trajectory_id: int, time_s: float, pose: Rigid3) -> None:
        self._grow(self._node_data, trajectory_id).append(NodeData(time_s, pose))

    def add_imu_data(self, trajectory_id: int, time_s: float,
                     linear_acceleration, angular_velocity) -> None:
        self._grow(self._imu_data, trajectory_id).append(ImuData(
            time_s,
            np.asarray(linear_acceleration, dtype=float).reshape(3),
            np.asarray(angular_velocity, dtype=float).reshape(3),
        ))

    @property
    def submap_data(self) -> List[List[SubmapData]]:
        return self._submap_data

    @property
    def node_data(self) -> List[List[NodeData]]:
        return self._node_data

    @property
    def imu_data(self) -> List[List[ImuData]]:
        return self._imu_data

    @property
    def max_num_iterations(self) -> int:
        return self._max_num_iterations

    def set_max_num_iterations(self, max_num_iterations: int) -> None:
        self._max_num_iterations = int(max_num_iterations)

    def _build_graph(self, constraints: Sequence[Constraint]):
        graph = gtsam.NonlinearFactorGraph()
        initial = gtsam.Values()
        used_submaps: Set[Tuple[int, int]] = set()
        used_nodes: Set[Tuple[int, int]] = set()

        for c in constraints:
            sid, nid = c.submap_id, c.node_id
            s_key = submap_key(sid.trajectory_id, sid.submap_index)
            n_key = node_key(nid.trajectory_id, nid.node_index)
            if (sid.trajectory_id, sid.submap_index) not in used_submaps:
                used_submaps.add((sid.trajectory_id, sid.submap_index))
                pose = self._submap_data[sid.trajectory_id][sid.submap_index].pose
                initial.insert(s_key, to_gtsam_pose(pose))
            if (nid.trajectory_id, nid.node_index) not in used_nodes:
                used_nodes.add((nid.trajectory_id, nid.node_index))
                pose = self._node_data[nid.trajectory_id][nid.node_index].point_cloud_pose
                initial.insert(n_key, to_gtsam_pose(pose))
            noise = sqrt_information_model(c.pose.sqrt_lambda_ij)
            if c.tag is ConstraintTag.INTER_SUBMAP:
                noise = robustify(noise, self.options.robust_kind, self.options.huber_scale)
            graph.add(gtsam.BetweenFactorPose3(s_key, n_key, to_gtsam_pose(c.pose.zbar_ij), noise))

        anchored = False
        for trajectory_id, submaps in enumerate(self._submap_data):
            if not submaps or (trajectory_id, 0) not in used_submaps:
                continue
            sigma = self.options.free_trajectory_sigma if anchored else self.options.anchor_sigma
            anchored = True
            graph.add(gtsam.PriorFactorPose3(
                submap_key(trajectory_id, 0),
                to_gtsam_pose(submaps[0].pose),
                gtsam.noiseModel.Isotropic.Sigma(6, sigma),
            ))
        return graph, initial, used_submaps, used_nodes

    def solve(self, constraints: Sequence[Constraint]) -> None:
        """Refine every submap and node pose referenced by ``constraints``."""
        if not constraints or not any(self._submap_data):
            return
        self._batch_id += 1
        graph, initial, used_submaps, used_nodes = self._build_graph(constraints)

        params = gtsam.LevenbergMarquardtParams()
        params.setlambdaInitial(self.options.lambda_initial)
        params.setMaxIterations(self._max_num_iterations)
        if self._kpi:
            self._kpi.optimization_start(self._batch_id, graph.size(), len(constraints))
        start = time.perf_counter()
        estimate = gtsam.LevenbergMarquardtOptimizer(graph, initial, params).optimize()
        duration = time.perf_counter() - start

        max_delta = 0.0
        for trajectory_id, submap_index in used_submaps:
            pose = from_gtsam_pose(estimate.atPose3(submap_key(trajectory_id, submap_index)))
            self._submap_data[trajectory_id][submap_index] = SubmapData(pose)
        for trajectory_id, node_index in used_nodes:
            old = self._node_data[trajectory_id][node_index]
            pose = from_gtsam_pose(estimate.atPose3(node_key(trajectory_id, node_index)))
            delta = float(np.linalg.norm(pose.translation - old.point_cloud_pose.translation))
            max_delta = max(max_delta, delta)
            self._node_data[trajectory_id][node_index] = NodeData(old.time, pose)

        logger.info("Solved %d factors over %d submaps / %d nodes in %.3f s (error %.4g -> %.4g)",
                    graph.size(), len(used_submaps), len(used_nodes), duration,
                    graph.error(initial), graph.error(estimate))
        if self._kpi:
            self._kpi.optimization_end(
                self._batch_id,
                duration,
                updated_keys=len(used_submaps) + len(used_nodes),
                max_translation_delta=max_delta,
            )
