"""Concurrent sparse pose graph.

The graph stores one node per inserted scan and one state per submap, and
keeps a list of submap -> node constraints:

* INTRA_SUBMAP constraints are recorded synchronously for every submap a scan
  was inserted into.
* INTER_SUBMAP constraints (loop closures) come back asynchronously from the
  constraint builder, which searches finished submaps for each new scan.

Every ``optimize_every_n_scans`` scans a loop-closure pass is scheduled. While
it is being finalized, constraint work for new scans is queued instead of run;
once the builder has drained and the solver has run, the queue is replayed in
order. At most one optimization is in flight at any time.

All state is guarded by a single lock, which is never held across a solver
call or a scan-matching search.
"""
from __future__ import annotations

import logging
import threading
import time
from functools import partial
from itertools import combinations
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

import numpy as np

from .connectivity import TrajectoryConnectivity
from .constraint_builder import ConstraintBuilder, Result, ScanMatcher
from .errors import check
from .models import (
    ConstantData,
    Constraint,
    ConstraintPose,
    ConstraintTag,
    NodeId,
    Submap,
    SubmapId,
    SubmapState,
    Trajectory,
    TrajectoryNode,
    to_covariance,
)
from .optimization import OptimizationProblem, SubmapData
from .options import PoseGraphOptions
from .robust import spd_sqrt_inverse
from .sampler import FixedRatioSampler
from .transform import Rigid3
from .work_queue import QueueMode, WorkQueue

if TYPE_CHECKING:
    from concurrent.futures import Executor
    from spg_common.kpi_logging import KPILogger

logger = logging.getLogger("spg.pose_graph")

# Only controls how often wait_for_all_computations logs progress.
PROGRESS_TIMEOUT_S = 1.0


class SparsePoseGraph:

    def __init__(
        self,
        options: PoseGraphOptions,
        constraint_builder: ConstraintBuilder,
        optimization_problem: OptimizationProblem,
        *,
        kpi: Optional["KPILogger"] = None,
    ):
        self.options = options
        self._cond = threading.Condition(threading.RLock())
        self._constraint_builder = constraint_builder
        self._constraint_builder.set_progress_callback(self._notify_progress)
        self._optimization_problem = optimization_problem
        self._kpi = kpi

        self._trajectory_ids: Dict[Trajectory, int] = {}
        self._trajectory_nodes: List[TrajectoryNode] = []
        self._submap_ids: Dict[Submap, SubmapId] = {}
        self._submap_states: List[List[SubmapState]] = []
        self._constraints: List[Constraint] = []
        self._scan_index_to_node_id: List[NodeId] = []
        self._num_nodes_in_trajectory: Dict[int, int] = {}
        self._global_localization_samplers: Dict[int, FixedRatioSampler] = {}

        self._trajectory_connectivity = TrajectoryConnectivity()
        self._connected_components: List[List[int]] = []
        self._reverse_connected_components: Dict[int, int] = {}
        # Submap poses as of the last optimization, used for extrapolation.
        self._optimized_submap_transforms: List[List[SubmapData]] = []

        self._work_queue = WorkQueue()
        self._num_scans_since_last_loop_closure = 0
        self._run_loop_closure = False
        self._failure: Optional[BaseException] = None
        self._closed = False

    @classmethod
    def create(
        cls,
        options: PoseGraphOptions,
        scan_matcher: ScanMatcher,
        executor: Optional["Executor"] = None,
        kpi: Optional["KPILogger"] = None,
    ) -> "SparsePoseGraph":
        """Build a graph wired to the default constraint builder and gtsam solver."""
        builder = ConstraintBuilder(options.constraint_builder, scan_matcher, executor, kpi=kpi)
        problem = OptimizationProblem(options.optimization_problem, kpi=kpi)
        return cls(options, builder, problem, kpi=kpi)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------
    def add_scan(
        self,
        stamp: float,
        point_cloud,
        pose: Rigid3,
        covariance,
        trajectory: Trajectory,
        matching_submap: Submap,
        insertion_submaps: Sequence[Submap],
    ) -> int:
        """Insert a scan and schedule its constraint computation.

        ``pose`` is the scan pose in the trajectory's local frame. The node is
        visible to readers immediately, with a provisional global pose; its
        constraints are computed now or, while an optimization is being
        finalized, once that finishes. Returns the flat scan index.
        """
        insertion_submaps = tuple(insertion_submaps)
        check(len(insertion_submaps) > 0, "A scan needs at least one insertion submap")
        covariance = to_covariance(covariance)
        cloud = np.array(point_cloud if point_cloud is not None else np.zeros((0, 3)),
                         dtype=np.float32).reshape(-1, 3)
        cloud.setflags(write=False)
        optimized_pose = self.get_local_to_global_transform(trajectory) * pose

        with self._cond:
            self._raise_if_failed()
            check(not self._closed, "Pose graph is closed")
            trajectory_id = self._trajectory_ids.setdefault(trajectory, len(self._trajectory_ids))
            flat_scan_index = len(self._trajectory_nodes)
            self._trajectory_nodes.append(TrajectoryNode(
                constant_data=ConstantData(stamp, cloud, trajectory_id),
                pose=optimized_pose,
            ))
            self._trajectory_connectivity.add(trajectory_id)

            newest = insertion_submaps[-1]
            if newest not in self._submap_ids:
                while len(self._submap_states) <= trajectory_id:
                    self._submap_states.append([])
                states = self._submap_states[trajectory_id]
                self._submap_ids[newest] = SubmapId(trajectory_id, len(states))
                states.append(SubmapState(submap=newest))
            finished_submap = insertion_submaps[0] if insertion_submaps[0].finished else None

            if trajectory_id not in self._global_localization_samplers:
                self._global_localization_samplers[trajectory_id] = FixedRatioSampler(
                    self.options.global_sampling_ratio)

            if self._kpi:
                self._kpi.scan_insert(trajectory_id, flat_scan_index, stamp,
                                      queued=self._work_queue.mode is QueueMode.QUEUING)
            self._submit(partial(
                self._compute_constraints_for_scan, flat_scan_index, matching_submap,
                insertion_submaps, finished_submap, pose, covariance))
        return flat_scan_index

    def add_imu_data(self, trajectory: Trajectory, stamp: float,
                     linear_acceleration, angular_velocity) -> None:
        with self._cond:
            self._raise_if_failed()
            check(not self._closed, "Pose graph is closed")
            trajectory_id = self._trajectory_ids.setdefault(trajectory, len(self._trajectory_ids))
            self._submit(partial(
                self._optimization_problem.add_imu_data, trajectory_id, stamp,
                linear_acceleration, angular_velocity))

    def _submit(self, task) -> None:
        # A task failing in DIRECT mode leaves its scan unfinished; the failure
        # is recorded so waiters re-raise it.
        try:
            self._work_queue.submit(task)
        except Exception as exc:
            logger.critical("Scan processing failed; the pose graph is unusable.", exc_info=True)
            if self._failure is None:
                self._failure = exc
            self._cond.notify_all()
            raise

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    def get_next_trajectory_node_index(self) -> int:
        with self._cond:
            return len(self._trajectory_nodes)

    def get_trajectory_nodes(self) -> List[List[TrajectoryNode]]:
        with self._cond:
            result: List[List[TrajectoryNode]] = [[] for _ in range(len(self._trajectory_ids))]
            for node in self._trajectory_nodes:
                result[node.constant_data.trajectory_id].append(
                    TrajectoryNode(node.constant_data, node.pose))
            return result

    def constraints(self) -> List[Constraint]:
        with self._cond:
            return list(self._constraints)

    def get_scan_index_to_node_id(self) -> List[NodeId]:
        with self._cond:
            return list(self._scan_index_to_node_id)

    def get_connected_trajectories(self) -> List[List[int]]:
        with self._cond:
            return [list(component) for component in self._connected_components]

    def get_submap_transforms(self, trajectory: Trajectory) -> List[Rigid3]:
        with self._cond:
            if trajectory not in self._trajectory_ids:
                return [Rigid3.identity()]
            return self.extrapolate_submap_transforms(
                self._optimized_submap_transforms, self._trajectory_ids[trajectory])

    def get_submap_transforms_by_id(self, trajectory_id: int) -> List[Rigid3]:
        with self._cond:
            return self.extrapolate_submap_transforms(self._optimized_submap_transforms, trajectory_id)

    def get_local_to_global_transform(self, trajectory: Trajectory) -> Rigid3:
        """Transform from the trajectory's local frame into the optimized global frame."""
        transforms = self.get_submap_transforms(trajectory)
        check(len(trajectory) >= len(transforms),
              "Trajectory has %d submaps but the graph knows %d", len(trajectory), len(transforms))
        return transforms[-1] * trajectory.get(len(transforms) - 1).local_pose.inverse()

    @property
    def work_queue_mode(self) -> QueueMode:
        with self._cond:
            return self._work_queue.mode

    # ------------------------------------------------------------------
    # Constraint orchestration (always runs under the lock)
    # ------------------------------------------------------------------
    def _get_submap_id(self, submap: Submap) -> SubmapId:
        check(submap in self._submap_ids, "Submap %r was never registered", submap)
        return self._submap_ids[submap]

    def _submap_state(self, submap_id: SubmapId) -> SubmapState:
        check(0 <= submap_id.trajectory_id < len(self._submap_states)
              and 0 <= submap_id.submap_index < len(self._submap_states[submap_id.trajectory_id]),
              "Unknown submap %s", submap_id)
        return self._submap_states[submap_id.trajectory_id][submap_id.submap_index]

    def _grow_submap_transforms_as_needed(self, insertion_submaps: Sequence[Submap]) -> None:
        check(len(insertion_submaps) in (1, 2),
              "Expected one or two insertion submaps, got %d", len(insertion_submaps))
        first_id = self._get_submap_id(insertion_submaps[0])
        trajectory_id = first_id.trajectory_id
        submap_data = self._optimization_problem.submap_data
        if len(insertion_submaps) == 1:
            check(first_id.submap_index == 0,
                  "A lone insertion submap must be the first of its trajectory, got %s", first_id)
            if trajectory_id >= len(submap_data) or not submap_data[trajectory_id]:
                self._optimization_problem.add_submap(trajectory_id, Rigid3.identity())
            return

        check(trajectory_id < len(submap_data), "Trajectory %d has no submap poses yet", trajectory_id)
        next_submap_index = len(submap_data[trajectory_id])
        second_id = self._get_submap_id(insertion_submaps[1])
        check(second_id.trajectory_id == trajectory_id,
              "Insertion submaps belong to different trajectories: %s, %s", first_id, second_id)
        check(second_id.submap_index <= next_submap_index,
              "Submap %s skips ahead of %d known submap poses", second_id, next_submap_index)
        if second_id.submap_index == next_submap_index:
            first_submap_pose = submap_data[trajectory_id][first_id.submap_index].pose
            self._optimization_problem.add_submap(
                trajectory_id,
                first_submap_pose
                * insertion_submaps[0].local_pose.inverse()
                * insertion_submaps[1].local_pose)

    def _compute_constraints_for_scan(
        self,
        scan_index: int,
        matching_submap: Submap,
        insertion_submaps: Sequence[Submap],
        finished_submap: Optional[Submap],
        pose: Rigid3,
        covariance: np.ndarray,
    ) -> None:
        self._grow_submap_transforms_as_needed(insertion_submaps)
        problem = self._optimization_problem
        matching_id = self._get_submap_id(matching_submap)
        optimized_pose = (problem.submap_data[matching_id.trajectory_id][matching_id.submap_index].pose
                          * matching_submap.local_pose.inverse() * pose)

        check(scan_index == len(self._scan_index_to_node_id),
              "Scan %d computed out of order (expected %d)", scan_index, len(self._scan_index_to_node_id))
        trajectory_id = matching_id.trajectory_id
        node_id = NodeId(trajectory_id, self._num_nodes_in_trajectory.get(trajectory_id, 0))
        constant_data = self._trajectory_nodes[scan_index].constant_data
        check(constant_data.trajectory_id == trajectory_id,
              "Scan %d of trajectory %d matched against submap %s",
              scan_index, constant_data.trajectory_id, matching_id)
        self._scan_index_to_node_id.append(node_id)
        self._num_nodes_in_trajectory[trajectory_id] = node_id.node_index + 1
        problem.add_trajectory_node(trajectory_id, constant_data.time, optimized_pose)

        sqrt_lambda = spd_sqrt_inverse(
            covariance, self.options.constraint_builder.lower_covariance_eigenvalue_bound)
        for submap in insertion_submaps:
            submap_id = self._get_submap_id(submap)
            state = self._submap_state(submap_id)
            check(not state.finished, "Scan %d inserted into finished submap %s", scan_index, submap_id)
            state.node_ids.add(node_id)
            self._constraints.append(Constraint(
                submap_id=submap_id,
                node_id=node_id,
                pose=ConstraintPose(zbar_ij=submap.local_pose.inverse() * pose, sqrt_lambda_ij=sqrt_lambda),
                tag=ConstraintTag.INTRA_SUBMAP,
            ))

        for submap_trajectory_id, states in enumerate(self._submap_states):
            for submap_index, state in enumerate(states):
                if state.finished:
                    check(node_id not in state.node_ids,
                          "Node %s already constrained to finished submap", node_id)
                    self._compute_constraint(scan_index, SubmapId(submap_trajectory_id, submap_index))

        if finished_submap is not None:
            finished_id = self._get_submap_id(finished_submap)
            finished_state = self._submap_state(finished_id)
            check(not finished_state.finished, "Submap %s is already finished", finished_id)
            # A newly finished submap is matched against every older scan.
            self._compute_constraints_for_old_scans(finished_id)
            finished_state.finished = True

        self._constraint_builder.notify_end_of_scan(scan_index)
        self._num_scans_since_last_loop_closure += 1
        every_n = self.options.optimize_every_n_scans
        if every_n > 0 and self._num_scans_since_last_loop_closure > every_n:
            check(not self._run_loop_closure, "Loop closure triggered while one is already pending")
            self._run_loop_closure = True
            # In QUEUING mode the drain loop notices the flag and starts the next pass.
            if self._work_queue.mode is QueueMode.DIRECT:
                logger.info("Scheduling loop closure after %d scans; queuing new work.",
                            self._num_scans_since_last_loop_closure)
                self._work_queue.start_queuing()
                self._handle_scan_queue()

    def _compute_constraints_for_old_scans(self, submap_id: SubmapId) -> None:
        state = self._submap_state(submap_id)
        for scan_index, node_id in enumerate(self._scan_index_to_node_id):
            if node_id not in state.node_ids:
                self._compute_constraint(scan_index, submap_id)

    def _compute_constraint(self, scan_index: int, submap_id: SubmapId) -> None:
        node_id = self._scan_index_to_node_id[scan_index]
        problem = self._optimization_problem
        relative_pose = (
            problem.submap_data[submap_id.trajectory_id][submap_id.submap_index].pose.inverse()
            * problem.node_data[node_id.trajectory_id][node_id.node_index].point_cloud_pose)
        constant_data = self._trajectory_nodes[scan_index].constant_data
        scan_trajectory_id = constant_data.trajectory_id
        submap = self._submap_state(submap_id).submap

        # Only globally match against submaps of other trajectories.
        if (scan_trajectory_id != submap_id.trajectory_id
                and self._global_localization_samplers[scan_trajectory_id].pulse()):
            self._constraint_builder.maybe_add_global_constraint(
                submap_id, submap, node_id, constant_data, self._trajectory_connectivity)
            return

        reverse = self._reverse_connected_components
        connected = (scan_trajectory_id in reverse
                     and submap_id.trajectory_id in reverse
                     and reverse[scan_trajectory_id] == reverse[submap_id.trajectory_id])
        if scan_trajectory_id == submap_id.trajectory_id or connected:
            self._constraint_builder.maybe_add_constraint(
                submap_id, submap, node_id, constant_data, relative_pose)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _handle_scan_queue(self) -> None:
        self._constraint_builder.when_done(self._on_loop_closure_constraints)

    def _on_loop_closure_constraints(self, result: Result) -> None:
        try:
            self._drain_scan_queue(result)
        except Exception as exc:
            logger.critical("Deferred scan processing failed; the pose graph is unusable.", exc_info=True)
            with self._cond:
                if self._failure is None:
                    self._failure = exc
                self._cond.notify_all()

    def _drain_scan_queue(self, result: Result) -> None:
        with self._cond:
            self._constraints.extend(result)
        self._run_optimization()

        start = time.perf_counter()
        replayed = 0
        with self._cond:
            self._num_scans_since_last_loop_closure = 0
            self._run_loop_closure = False
            while not self._run_loop_closure:
                task = self._work_queue.pop()
                if task is None:
                    self._work_queue.stop_queuing()
                    logger.info("Caught up after replaying %d queued tasks.", replayed)
                    if self._kpi:
                        self._kpi.queue_drained(replayed, time.perf_counter() - start)
                    self._cond.notify_all()
                    return
                task()
                replayed += 1
            logger.info("Replayed %d queued tasks; %d still queued. Optimizing again.",
                        replayed, len(self._work_queue))
            self._handle_scan_queue()

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------
    def _run_optimization(self) -> None:
        with self._cond:
            if not any(self._optimization_problem.submap_data):
                return
            constraints = list(self._constraints)
        self._optimization_problem.solve(constraints)

        with self._cond:
            problem = self._optimization_problem
            node_data = problem.node_data
            num_optimized_poses = len(self._scan_index_to_node_id)
            for i in range(num_optimized_poses):
                node_id = self._scan_index_to_node_id[i]
                self._trajectory_nodes[i].pose = \
                    node_data[node_id.trajectory_id][node_id.node_index].point_cloud_pose

            # Scans added after the snapshot follow their trajectory's last submap.
            extrapolation_transforms: Dict[int, Rigid3] = {}
            for i in range(num_optimized_poses, len(self._trajectory_nodes)):
                node = self._trajectory_nodes[i]
                trajectory_id = node.constant_data.trajectory_id
                if trajectory_id not in extrapolation_transforms:
                    new_transforms = self.extrapolate_submap_transforms(problem.submap_data, trajectory_id)
                    old_transforms = self.extrapolate_submap_transforms(
                        self._optimized_submap_transforms, trajectory_id)
                    check(len(new_transforms) == len(old_transforms),
                          "Submap count changed during optimization of trajectory %d", trajectory_id)
                    extrapolation_transforms[trajectory_id] = \
                        new_transforms[-1] * old_transforms[-1].inverse()
                node.pose = extrapolation_transforms[trajectory_id] * node.pose

            self._optimized_submap_transforms = [list(submaps) for submaps in problem.submap_data]
            self._connected_components = self._trajectory_connectivity.connected_components()
            self._reverse_connected_components = {
                trajectory_id: index
                for index, component in enumerate(self._connected_components)
                for trajectory_id in component
            }
            for component in self._connected_components:
                if len(component) > 1:
                    links = {pair: self._trajectory_connectivity.connection_count(*pair)
                             for pair in combinations(component, 2)}
                    logger.info("Connected trajectories %s; global matches per pair: %s", component, links)
            self._cond.notify_all()

    def extrapolate_submap_transforms(self, submap_transforms: Sequence[Sequence[SubmapData]],
                                      trajectory_id: int) -> List[Rigid3]:
        """One global pose per registered submap of ``trajectory_id``.

        Solved submaps use ``submap_transforms``; the rest are chained from the
        last one through the submaps' local poses.
        """
        with self._cond:
            if trajectory_id >= len(self._submap_states):
                return [Rigid3.identity()]
            states = self._submap_states[trajectory_id]
            solved = submap_transforms[trajectory_id] if trajectory_id < len(submap_transforms) else []
            result: List[Rigid3] = []
            for state in states:
                if len(result) < len(solved):
                    result.append(solved[len(result)].pose)
                elif not result:
                    result.append(Rigid3.identity())
                else:
                    previous = states[len(result) - 1].submap
                    result.append(result[-1] * previous.local_pose.inverse() * state.submap.local_pose)
            if not result:
                result.append(Rigid3.identity())
            return result

    def wait_for_all_computations(self) -> None:
        """Block until every inserted scan has its constraints and merge the last batch."""
        builder = self._constraint_builder
        with self._cond:
            num_finished_at_start = builder.get_num_finished_scans()

            def caught_up() -> bool:
                return self._failure is not None or (
                    self._work_queue.mode is QueueMode.DIRECT
                    and builder.get_num_finished_scans() == len(self._trajectory_nodes))

            while not self._cond.wait_for(caught_up, timeout=PROGRESS_TIMEOUT_S):
                total = len(self._trajectory_nodes) - num_finished_at_start
                done = builder.get_num_finished_scans() - num_finished_at_start
                logger.info("Optimizing: %.1f%%...", 100.0 * done / max(total, 1))
            self._raise_if_failed()
            logger.info("Optimizing: Done.")

            merged = threading.Event()

            def merge(result: Result) -> None:
                with self._cond:
                    self._constraints.extend(result)
                    merged.set()
                    self._cond.notify_all()

            builder.when_done(merge)
            self._cond.wait_for(lambda: merged.is_set() or self._failure is not None)
            self._raise_if_failed()
        builder.raise_if_failed()

    def run_final_optimization(self) -> None:
        """Wait for all work, then run one longer optimization pass."""
        self.wait_for_all_computations()
        self._optimization_problem.set_max_num_iterations(self.options.max_num_final_iterations)
        try:
            self._run_optimization()
        finally:
            self._optimization_problem.set_max_num_iterations(
                self.options.optimization_problem.max_num_iterations)

    def close(self) -> None:
        """Drain all asynchronous work and release the constraint builder."""
        if self._closed:
            return
        try:
            self.wait_for_all_computations()
            with self._cond:
                check(self._work_queue.mode is QueueMode.DIRECT,
                      "Pose graph closed while %d tasks are still queued", len(self._work_queue))
        finally:
            self._closed = True
            self._constraint_builder.shutdown()

    # ------------------------------------------------------------------
    def _notify_progress(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def _raise_if_failed(self) -> None:
        if self._failure is not None:
            raise self._failure
