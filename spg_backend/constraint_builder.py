"""Asynchronous constraint search between scans and finished submaps.

The builder owns the bookkeeping around scan matching, not the matching
itself: it gates candidate pairs (distance and sampling), runs the matcher on
an executor, turns accepted matches into INTER_SUBMAP constraints and hands
them back in batches through ``when_done``. The matching algorithm is
supplied by the host as a :class:`ScanMatcher`.

Accounting works per scan: every search is charged to the scan that was
current when it was submitted, and ``get_num_finished_scans`` reports how
many leading scans have no search left in flight.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Protocol

import numpy as np

from .errors import ConstraintBuilderError, check
from .models import ConstantData, Constraint, ConstraintPose, ConstraintTag, NodeId, Submap, SubmapId
from .options import ConstraintBuilderOptions
from .sampler import FixedRatioSampler
from .transform import Rigid3

if TYPE_CHECKING:
    from spg_common.kpi_logging import KPILogger
    from .connectivity import TrajectoryConnectivity

logger = logging.getLogger("spg.constraint_builder")

Result = List[Constraint]


@dataclass
class MatchResult:
    score: float
    pose: Rigid3  # node pose in the same local frame as submap.local_pose


class ScanMatcher(Protocol):
    """What the builder needs from a scan matcher. Called from worker threads."""

    def match(self, submap: Submap, constant_data: ConstantData,
              initial_pose: Rigid3, min_score: float) -> Optional[MatchResult]:
        ...

    def match_full_submap(self, submap: Submap, constant_data: ConstantData,
                          min_score: float) -> Optional[MatchResult]:
        ...


class PriorPoseMatcher:
    """Accepts the prior as the match with a fixed score; never localizes globally.

    Useful to replay logs through the backend when no real matcher is wired in:
    every local search confirms the current relative pose estimate.
    """

    def __init__(self, score: float = 1.0):
        self.score = score

    def match(self, submap, constant_data, initial_pose, min_score):
        if self.score < min_score:
            return None
        return MatchResult(score=self.score, pose=initial_pose)

    def match_full_submap(self, submap, constant_data, min_score):
        return None


class _Slot:
    __slots__ = ("constraint",)

    def __init__(self):
        self.constraint: Optional[Constraint] = None


class ConstraintBuilder:

    def __init__(
        self,
        options: ConstraintBuilderOptions,
        scan_matcher: ScanMatcher,
        executor: Optional[Executor] = None,
        *,
        progress_callback: Optional[Callable[[], None]] = None,
        kpi: Optional["KPILogger"] = None,
    ):
        self.options = options
        self._matcher = scan_matcher
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, options.num_threads), thread_name_prefix="spg-constraints")
        self._progress_callback = progress_callback
        self._kpi = kpi

        self._lock = threading.Lock()
        self._sampler = FixedRatioSampler(options.sampling_ratio)
        self._slots: List[_Slot] = []
        self._pending: Dict[int, int] = {}
        self._current_computation = 0
        self._when_done: Optional[Callable[[Result], None]] = None
        self._scores: List[float] = []
        self._errors: List[BaseException] = []

    def set_progress_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._progress_callback = callback

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def maybe_add_constraint(self, submap_id: SubmapId, submap: Submap, node_id: NodeId,
                             constant_data: ConstantData, initial_relative_pose: Rigid3) -> None:
        """Schedule a local search around ``initial_relative_pose`` (submap -> node)."""
        if float(np.linalg.norm(initial_relative_pose.translation)) > self.options.max_constraint_distance:
            return
        if not self._sampler.pulse():
            return
        slot, computation = self._reserve()
        self._executor.submit(self._compute_constraint, slot, computation, submap_id, submap,
                              node_id, constant_data, initial_relative_pose, None)

    def maybe_add_global_constraint(self, submap_id: SubmapId, submap: Submap, node_id: NodeId,
                                    constant_data: ConstantData,
                                    connectivity: "TrajectoryConnectivity") -> None:
        """Schedule a prior-free search of the whole submap.

        A match links the node's and the submap's trajectories in ``connectivity``.
        """
        slot, computation = self._reserve()
        self._executor.submit(self._compute_constraint, slot, computation, submap_id, submap,
                              node_id, constant_data, None, connectivity)

    def notify_end_of_scan(self, scan_index: int) -> None:
        with self._lock:
            check(scan_index == self._current_computation,
                  "End of scan %d notified while scan %d is current", scan_index, self._current_computation)
            self._current_computation += 1

    def when_done(self, callback: Callable[[Result], None]) -> None:
        """Call ``callback(batch)`` once every search submitted so far has resolved.

        Runs exactly once, on an executor thread. Only one registration may be
        outstanding at a time.
        """
        with self._lock:
            check(self._when_done is None, "A when_done callback is already registered")
            self._when_done = callback
            computation = self._current_computation
            self._pending[computation] = self._pending.get(computation, 0) + 1
        self._executor.submit(self._finish_computation, computation)

    # ------------------------------------------------------------------
    # Progress / errors
    # ------------------------------------------------------------------
    def get_num_finished_scans(self) -> int:
        with self._lock:
            if not self._pending:
                return self._current_computation
            return min(self._pending)

    def raise_if_failed(self) -> None:
        with self._lock:
            if not self._errors:
                return
            first = self._errors[0]
        raise ConstraintBuilderError(f"Scan matching failed: {first!r}") from first

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _reserve(self):
        with self._lock:
            slot = _Slot()
            self._slots.append(slot)
            computation = self._current_computation
            self._pending[computation] = self._pending.get(computation, 0) + 1
        return slot, computation

    def _compute_constraint(self, slot: _Slot, computation: int, submap_id: SubmapId, submap: Submap,
                            node_id: NodeId, constant_data: ConstantData,
                            initial_relative_pose: Optional[Rigid3],
                            connectivity: Optional["TrajectoryConnectivity"]) -> None:
        try:
            if initial_relative_pose is None:
                min_score = self.options.global_localization_min_score
                match = self._matcher.match_full_submap(submap, constant_data, min_score)
            else:
                min_score = self.options.min_score
                initial_pose = submap.local_pose * initial_relative_pose
                match = self._matcher.match(submap, constant_data, initial_pose, min_score)
            if match is None or match.score < min_score:
                return
            if connectivity is not None:
                if not connectivity.transitively_connected(node_id.trajectory_id, submap_id.trajectory_id):
                    logger.info("Global localization linked trajectory %d to trajectory %d.",
                                node_id.trajectory_id, submap_id.trajectory_id)
                connectivity.connect(node_id.trajectory_id, submap_id.trajectory_id)

            constraint_transform = submap.local_pose.inverse() * match.pose
            w_rot = self.options.loop_closure_rotation_weight
            w_trans = self.options.loop_closure_translation_weight
            sqrt_lambda = np.diag([w_rot] * 3 + [w_trans] * 3).astype(float)
            slot.constraint = Constraint(
                submap_id=submap_id,
                node_id=node_id,
                pose=ConstraintPose(zbar_ij=constraint_transform, sqrt_lambda_ij=sqrt_lambda),
                tag=ConstraintTag.INTER_SUBMAP,
            )
            with self._lock:
                self._scores.append(float(match.score))
            if self.options.log_matches:
                if initial_relative_pose is None:
                    logger.info("Global match: node %s <-> submap %s, score %.3f",
                                node_id, submap_id, match.score)
                else:
                    diff = initial_relative_pose.inverse() * constraint_transform
                    logger.debug("Local match: node %s <-> submap %s, score %.3f, correction %.3f m",
                                 node_id, submap_id, match.score, float(np.linalg.norm(diff.translation)))
        except Exception as exc:
            logger.exception("Scan matching failed for node %s against submap %s", node_id, submap_id)
            with self._lock:
                self._errors.append(exc)
        finally:
            self._finish_computation(computation)

    def _finish_computation(self, computation: int) -> None:
        callback = None
        result: Result = []
        scores: List[float] = []
        with self._lock:
            self._pending[computation] -= 1
            if self._pending[computation] == 0:
                del self._pending[computation]
            if not self._pending and self._when_done is not None:
                result = [slot.constraint for slot in self._slots if slot.constraint is not None]
                self._slots.clear()
                callback, self._when_done = self._when_done, None
                scores, self._scores = self._scores, []
        if callback is not None:
            self._log_batch(result, scores)
        if self._progress_callback is not None:
            self._progress_callback()
        if callback is not None:
            callback(result)

    def _log_batch(self, result: Result, scores: List[float]) -> None:
        logger.info("Constraint batch ready: %d new constraints. Local search sampler: %s",
                    len(result), self._sampler.debug_string())
        if scores:
            counts, edges = np.histogram(np.asarray(scores), bins=5, range=(0.0, 1.0))
            logger.debug("Score histogram: %s", ", ".join(
                f"[{lo:.1f},{hi:.1f}):{c}" for lo, hi, c in zip(edges[:-1], edges[1:], counts)))
        if self._kpi:
            self._kpi.constraint_batch(
                constraint_count=len(result),
                mean_score=float(np.mean(scores)) if scores else None,
            )
