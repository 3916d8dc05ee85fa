import numpy as np
import pytest

from spg_backend import optimization
from spg_backend.models import Constraint, ConstraintPose, ConstraintTag, NodeId, SubmapId
from spg_backend.optimization import OptimizationProblem
from spg_backend.options import OptimizationProblemOptions
from spg_backend.transform import Rigid3


def _constraint(submap, node, pose, tag=ConstraintTag.INTRA_SUBMAP, weight=1.0):
    return Constraint(SubmapId(*submap), NodeId(*node), ConstraintPose(pose, np.eye(6) * weight), tag)


def test_requires_gtsam(monkeypatch):
    monkeypatch.setattr(optimization, "gtsam", None)
    with pytest.raises(RuntimeError, match="GTSAM"):
        OptimizationProblem(OptimizationProblemOptions())


def test_tables_grow_per_trajectory():
    pytest.importorskip("gtsam")
    problem = OptimizationProblem(OptimizationProblemOptions())
    problem.add_submap(1, Rigid3.identity())
    problem.add_trajectory_node(1, 0.5, Rigid3.from_translation(1.0, 0.0, 0.0))
    problem.add_imu_data(0, 0.1, [0.0, 0.0, 9.8], [0.0, 0.0, 0.0])
    assert [len(s) for s in problem.submap_data] == [0, 1]
    assert problem.node_data[1][0].time == 0.5
    assert problem.imu_data[0][0].angular_velocity.shape == (3,)
    problem.set_max_num_iterations(200)
    assert problem.max_num_iterations == 200


def test_keys_do_not_collide():
    pytest.importorskip("gtsam")
    keys = {optimization.submap_key(0, 1), optimization.node_key(0, 1),
            optimization.submap_key(1, 0), optimization.node_key(1, 0)}
    assert len(keys) == 4


def test_solve_pulls_nodes_onto_measurements():
    """A noisy node initial guess converges to the submap->node measurement."""
    pytest.importorskip("gtsam")
    problem = OptimizationProblem(OptimizationProblemOptions())
    problem.add_submap(0, Rigid3.identity())
    problem.add_submap(0, Rigid3.from_translation(2.2, 0.1, 0.0))
    problem.add_trajectory_node(0, 0.0, Rigid3.from_translation(1.3, -0.2, 0.1))

    constraints = [
        _constraint((0, 0), (0, 0), Rigid3.from_translation(1.0, 0.0, 0.0)),
        _constraint((0, 1), (0, 0), Rigid3.from_translation(-1.0, 0.0, 0.0)),
    ]
    problem.solve(constraints)

    assert problem.submap_data[0][0].pose.isclose(Rigid3.identity(), atol=1e-4)
    assert np.allclose(problem.node_data[0][0].point_cloud_pose.translation, [1.0, 0.0, 0.0], atol=1e-4)
    assert np.allclose(problem.submap_data[0][1].pose.translation, [2.0, 0.0, 0.0], atol=1e-4)
    assert problem.node_data[0][0].time == 0.0


def test_solve_without_constraints_is_a_no_op():
    pytest.importorskip("gtsam")
    problem = OptimizationProblem(OptimizationProblemOptions())
    problem.add_submap(0, Rigid3.from_translation(3.0, 0.0, 0.0))
    problem.solve([])
    assert problem.submap_data[0][0].pose.isclose(Rigid3.from_translation(3.0, 0.0, 0.0))


def test_unknown_robust_kernel_fails_on_loop_closures():
    pytest.importorskip("gtsam")
    problem = OptimizationProblem(OptimizationProblemOptions(robust_kind="tukey-ish"))
    problem.add_submap(0, Rigid3.identity())
    problem.add_trajectory_node(0, 0.0, Rigid3.identity())
    with pytest.raises(ValueError):
        problem.solve([_constraint((0, 0), (0, 0), Rigid3.identity(), ConstraintTag.INTER_SUBMAP)])
