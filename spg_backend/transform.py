"""Rigid 3D transforms used for every pose in the graph.

Poses are stored as a 3x3 rotation matrix plus a translation vector (numpy,
float64). Instances are treated as immutable: composition and inversion
always return new objects, so a pose handed out in a snapshot can never be
changed behind the caller's back.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Tuple

import numpy as np


@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order.

    Replay logs may store [x, y, z, w]; convert at the loader.
    """
    w: float
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.w, self.x, self.y, self.z], dtype=float)


@dataclass
class Translation:
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


def _rot_to_quat_wxyz(M: np.ndarray) -> Tuple[float, float, float, float]:
    m00, m01, m02 = float(M[0, 0]), float(M[0, 1]), float(M[0, 2])
    m10, m11, m12 = float(M[1, 0]), float(M[1, 1]), float(M[1, 2])
    m20, m21, m22 = float(M[2, 0]), float(M[2, 1]), float(M[2, 2])

    tr = m00 + m11 + m22
    if tr > 0.0:
        S = math.sqrt(tr + 1.0) * 2.0
        qw = 0.25 * S
        qx = (m21 - m12) / S
        qy = (m02 - m20) / S
        qz = (m10 - m01) / S
    elif (m00 > m11) and (m00 > m22):
        S = math.sqrt(1.0 + m00 - m11 - m22) * 2.0
        qw = (m21 - m12) / S
        qx = 0.25 * S
        qy = (m01 + m10) / S
        qz = (m02 + m20) / S
    elif m11 > m22:
        S = math.sqrt(1.0 + m11 - m00 - m22) * 2.0
        qw = (m02 - m20) / S
        qx = (m01 + m10) / S
        qy = 0.25 * S
        qz = (m12 + m21) / S
    else:
        S = math.sqrt(1.0 + m22 - m00 - m11) * 2.0
        qw = (m10 - m01) / S
        qx = (m02 + m20) / S
        qy = (m12 + m21) / S
        qz = 0.25 * S

    n = math.sqrt(qw * qw + qx * qx + qy * qy + qz * qz) or 1.0
    return qw / n, qx / n, qy / n, qz / n


def _quat_to_rot(w: float, x: float, y: float, z: float) -> np.ndarray:
    n = math.sqrt(w * w + x * x + y * y + z * z)
    if n == 0.0:
        raise ValueError("Zero-norm quaternion")
    w, x, y, z = w / n, x / n, y / n, z / n
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ], dtype=float)


class Rigid3:
    """Rigid transform ``T = [R | t]`` composed with ``a * b``."""

    __slots__ = ("_rotation", "_translation")

    def __init__(self, rotation: np.ndarray, translation: Iterable[float]):
        rot = np.array(rotation, dtype=float).reshape(3, 3)
        trans = np.array(translation, dtype=float).reshape(3)
        rot.setflags(write=False)
        trans.setflags(write=False)
        self._rotation = rot
        self._translation = trans

    @classmethod
    def identity(cls) -> "Rigid3":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_translation(cls, x: float, y: float, z: float) -> "Rigid3":
        return cls(np.eye(3), (x, y, z))

    @classmethod
    def from_quaternion(cls, rotation: Quaternion, translation: Translation) -> "Rigid3":
        return cls(_quat_to_rot(rotation.w, rotation.x, rotation.y, rotation.z),
                   translation.to_numpy())

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "Rigid3":
        m = np.asarray(matrix, dtype=float)
        if m.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 homogeneous matrix, got shape {m.shape}")
        return cls(m[:3, :3], m[:3, 3])

    @property
    def rotation(self) -> np.ndarray:
        return self._rotation

    @property
    def translation(self) -> np.ndarray:
        return self._translation

    def quaternion(self) -> Quaternion:
        return Quaternion(*_rot_to_quat_wxyz(self._rotation))

    def inverse(self) -> "Rigid3":
        rot_t = self._rotation.T
        return Rigid3(rot_t, -(rot_t @ self._translation))

    def to_matrix(self) -> np.ndarray:
        m = np.eye(4)
        m[:3, :3] = self._rotation
        m[:3, 3] = self._translation
        return m

    def isclose(self, other: "Rigid3", atol: float = 1e-9) -> bool:
        return (np.allclose(self._rotation, other._rotation, atol=atol)
                and np.allclose(self._translation, other._translation, atol=atol))

    def __mul__(self, other: "Rigid3") -> "Rigid3":
        if not isinstance(other, Rigid3):
            return NotImplemented
        return Rigid3(self._rotation @ other._rotation,
                      self._rotation @ other._translation + self._translation)

    def __repr__(self) -> str:
        q = self.quaternion()
        t = self._translation
        return (f"Rigid3(t=[{t[0]:.4f}, {t[1]:.4f}, {t[2]:.4f}], "
                f"q=[{q.w:.4f}, {q.x:.4f}, {q.y:.4f}, {q.z:.4f}])")
