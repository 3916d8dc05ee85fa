from __future__ import annotations

from collections import deque
from concurrent.futures import Executor, Future
from typing import Callable, List, Optional

import pytest

from spg_backend.constraint_builder import ConstraintBuilder, MatchResult, PriorPoseMatcher
from spg_backend.models import Submap, Trajectory
from spg_backend.optimization import ImuData, NodeData, SubmapData
from spg_backend.options import PoseGraphOptions
from spg_backend.pose_graph import SparsePoseGraph
from spg_backend.transform import Rigid3


class InlineExecutor(Executor):
    """Runs every submitted call immediately on the submitting thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as exc:
            future.set_exception(exc)
        return future


class ManualExecutor(Executor):
    """Holds submitted calls until the test runs them."""

    def __init__(self):
        self.tasks = deque()

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        self.tasks.append((future, fn, args, kwargs))
        return future

    def run_all(self) -> int:
        n = 0
        while self.tasks:
            future, fn, args, kwargs = self.tasks.popleft()
            future.set_result(fn(*args, **kwargs))
            n += 1
        return n


class FakeOptimizationProblem:
    """Same surface as OptimizationProblem, without gtsam.

    ``solve`` records the call and moves every submap by ``submap_correction``
    and every node by ``node_correction``. ``on_solve`` runs inside ``solve``.
    """

    def __init__(self, submap_correction: Optional[Rigid3] = None,
                 node_correction: Optional[Rigid3] = None):
        self.submap_correction = submap_correction or Rigid3.identity()
        self.node_correction = node_correction or Rigid3.identity()
        self.submap_data: List[List[SubmapData]] = []
        self.node_data: List[List[NodeData]] = []
        self.imu_data: List[List[ImuData]] = []
        self.max_num_iterations = 50
        self.solves = []
        self.on_solve: Optional[Callable[[], None]] = None
        self.gate = None
        self.error: Optional[BaseException] = None

    @staticmethod
    def _grow(table, trajectory_id):
        while len(table) <= trajectory_id:
            table.append([])
        return table[trajectory_id]

    def add_submap(self, trajectory_id, pose):
        self._grow(self.submap_data, trajectory_id).append(SubmapData(pose))

    def add_trajectory_node(self, trajectory_id, time_s, pose):
        self._grow(self.node_data, trajectory_id).append(NodeData(time_s, pose))

    def add_imu_data(self, trajectory_id, time_s, linear_acceleration, angular_velocity):
        self._grow(self.imu_data, trajectory_id).append(
            ImuData(time_s, linear_acceleration, angular_velocity))

    def set_max_num_iterations(self, max_num_iterations):
        self.max_num_iterations = max_num_iterations

    def solve(self, constraints):
        self.solves.append((len(constraints), self.max_num_iterations))
        if self.error is not None:
            raise self.error
        if self.gate is not None:
            assert self.gate.wait(timeout=10.0), "solve gate never opened"
        if self.on_solve is not None:
            hook, self.on_solve = self.on_solve, None
            hook()
        for submaps in self.submap_data:
            for i, data in enumerate(submaps):
                submaps[i] = SubmapData(self.submap_correction * data.pose)
        for nodes in self.node_data:
            for i, data in enumerate(nodes):
                nodes[i] = NodeData(data.time, self.node_correction * data.point_cloud_pose)


class GlobalMatcher(PriorPoseMatcher):
    """Confirms local priors and localizes globally at the submap origin."""

    def match_full_submap(self, submap, constant_data, min_score):
        return MatchResult(score=self.score, pose=submap.local_pose)


class FailingMatcher:
    def match(self, submap, constant_data, initial_pose, min_score):
        raise RuntimeError("matcher exploded")

    def match_full_submap(self, submap, constant_data, min_score):
        raise RuntimeError("matcher exploded")


def make_options(optimize_every_n_scans=0, global_sampling_ratio=0.0, sampling_ratio=1.0) -> PoseGraphOptions:
    opts = PoseGraphOptions(optimize_every_n_scans=optimize_every_n_scans,
                            global_sampling_ratio=global_sampling_ratio)
    opts.constraint_builder.sampling_ratio = sampling_ratio
    opts.constraint_builder.log_matches = False
    return opts


def make_graph(options=None, matcher=None, executor=None, problem=None):
    options = options or make_options()
    problem = problem or FakeOptimizationProblem()
    builder = ConstraintBuilder(options.constraint_builder, matcher or PriorPoseMatcher(),
                                executor or InlineExecutor())
    return SparsePoseGraph(options, builder, problem), problem


def scan_pose(i: int) -> Rigid3:
    return Rigid3.from_translation(0.5 * i, 0.0, 0.0)


def add_chain_scan(graph: SparsePoseGraph, trajectory: Trajectory, i: int) -> int:
    """Insert scan ``i`` of a chain where every submap receives four scans.

    Scans 0-1 go into submap 0 alone; scan i >= 2 goes into submaps
    (i // 2 - 1, i // 2) and odd scans finish the older one. Submap k sits at
    x = 2k in the trajectory's local frame.
    """
    k = i // 2
    while len(trajectory) <= k:
        trajectory.add_submap(Submap(Rigid3.from_translation(2.0 * len(trajectory), 0.0, 0.0)))
    if i < 2:
        insertion = [trajectory.get(0)]
    else:
        insertion = [trajectory.get(k - 1), trajectory.get(k)]
        if i % 2 == 1:
            insertion[0].finish()
    return graph.add_scan(float(i), None, scan_pose(i), None, trajectory, insertion[0], insertion)


@pytest.fixture
def trajectory():
    return Trajectory(name="a")
