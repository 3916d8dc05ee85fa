import math

import numpy as np
import pytest

from spg_backend.transform import Quaternion, Rigid3, Translation


def _yaw(angle, x=0.0, y=0.0, z=0.0):
    half = 0.5 * angle
    return Rigid3.from_quaternion(Quaternion(math.cos(half), 0.0, 0.0, math.sin(half)), Translation(x, y, z))


def test_composition_applies_right_operand_first():
    """yaw(90) * translate(1,0,0) moves the origin to (0,1,0)."""
    pose = _yaw(math.pi / 2) * Rigid3.from_translation(1.0, 0.0, 0.0)
    assert np.allclose(pose.translation, [0.0, 1.0, 0.0])


def test_inverse_cancels():
    pose = _yaw(0.3, 1.0, -2.0, 0.5)
    assert (pose * pose.inverse()).isclose(Rigid3.identity())
    assert (pose.inverse() * pose).isclose(Rigid3.identity())


def test_quaternion_round_trip_keeps_rotation():
    pose = _yaw(-1.2, 0.0, 0.0, 3.0)
    q = pose.quaternion()
    assert math.sqrt(q.w ** 2 + q.x ** 2 + q.y ** 2 + q.z ** 2) == pytest.approx(1.0)
    again = Rigid3.from_quaternion(q, Translation(*pose.translation))
    assert again.isclose(pose)


def test_matrix_conversion():
    pose = _yaw(0.7, 1.0, 2.0, 3.0)
    m = pose.to_matrix()
    assert m.shape == (4, 4)
    assert np.allclose(m[3], [0.0, 0.0, 0.0, 1.0])
    assert Rigid3.from_matrix(m).isclose(pose)
    with pytest.raises(ValueError):
        Rigid3.from_matrix(np.eye(3))


def test_poses_are_read_only():
    pose = Rigid3.from_translation(1.0, 2.0, 3.0)
    with pytest.raises(ValueError):
        pose.translation[0] = 5.0
    with pytest.raises(ValueError):
        pose.rotation[0, 0] = 2.0


def test_zero_quaternion_is_rejected():
    with pytest.raises(ValueError):
        Rigid3.from_quaternion(Quaternion(0.0, 0.0, 0.0, 0.0), Translation(0.0, 0.0, 0.0))
