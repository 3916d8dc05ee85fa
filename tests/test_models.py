import numpy as np
import pytest

from spg_backend.errors import ContractViolation
from spg_backend.models import NodeId, Submap, SubmapId, Trajectory, to_covariance
from spg_backend.transform import Rigid3


def test_submap_finishes_once():
    submap = Submap(Rigid3.identity())
    assert not submap.finished
    submap.finish()
    assert submap.finished
    with pytest.raises(ContractViolation):
        submap.finish()


def test_ids_order_by_trajectory_then_index():
    assert sorted([NodeId(1, 0), NodeId(0, 2), NodeId(0, 1)]) == [NodeId(0, 1), NodeId(0, 2), NodeId(1, 0)]
    assert SubmapId(0, 1) == SubmapId(0, 1)
    assert len({SubmapId(0, 1), SubmapId(0, 1), SubmapId(1, 1)}) == 2


def test_trajectories_are_distinct_by_identity():
    a, b = Trajectory(name="x"), Trajectory(name="x")
    assert a != b
    assert len({a: 0, b: 1}) == 2


def test_to_covariance_shapes():
    assert np.array_equal(to_covariance(None), np.eye(6))
    flat = list(range(36))
    assert to_covariance(flat).shape == (6, 6)
    assert to_covariance(np.eye(6)).shape == (6, 6)
    with pytest.raises(ValueError):
        to_covariance([1.0, 2.0, 3.0])
