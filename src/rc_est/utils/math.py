from dataclasses import dataclass
from typing import Sequence, Tuple
import numpy as np
from scipy.spatial.transform import Rotation

SMALL_ANGLE = 1e-10


def skew(v) -> np.ndarray:
    x, y, z = np.asarray(v, dtype=float).reshape(3)
    return np.array([[0.0, -z, y],
                     [z, 0.0, -x],
                     [-y, x, 0.0]])


def so3_exp(phi) -> np.ndarray:
    return Rotation.from_rotvec(np.asarray(phi, dtype=float)).as_matrix()


def so3_log(R: np.ndarray) -> np.ndarray:
    return Rotation.from_matrix(R).as_rotvec()


def right_jacobian(phi) -> np.ndarray:
    """Right Jacobian of SO(3) evaluated at the rotation vector phi."""
    phi = np.asarray(phi, dtype=float)
    theta = np.linalg.norm(phi)
    W = skew(phi)
    if theta < SMALL_ANGLE:
        return np.eye(3) - 0.5 * W
    t2 = theta * theta
    return (np.eye(3)
            - (1.0 - np.cos(theta)) / t2 * W
            + (theta - np.sin(theta)) / (t2 * theta) * W @ W)


def rot_from_rpy(roll: float, pitch: float, yaw: float) -> np.ndarray:
    # Rz(yaw) * Ry(pitch) * Rx(roll)
    return Rotation.from_euler("xyz", [roll, pitch, yaw]).as_matrix()


def valid_quaternion(q: Sequence[float]) -> bool:
    q = np.asarray(q, dtype=float)
    return q.shape == (4,) and bool(np.all(np.isfinite(q))) and np.linalg.norm(q) > 1e-9


def quat_wxyz_to_matrix(q: Sequence[float]) -> np.ndarray:
    w, x, y, z = q
    return Rotation.from_quat([x, y, z, w]).as_matrix()


def matrix_to_quat_wxyz(R: np.ndarray) -> Tuple[float, float, float, float]:
    x, y, z, w = Rotation.from_matrix(R).as_quat()
    return float(w), float(x), float(y), float(z)


@dataclass
class Pose:
    """Rigid transform: rotation matrix plus translation, world_T_body."""
    rotation: np.ndarray
    position: np.ndarray

    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_quaternion(cls, q_wxyz, position) -> "Pose":
        return cls(quat_wxyz_to_matrix(q_wxyz), np.asarray(position, dtype=float).copy())

    def copy(self) -> "Pose":
        return Pose(np.array(self.rotation, dtype=float), np.array(self.position, dtype=float))

    def compose(self, other: "Pose") -> "Pose":
        return Pose(self.rotation @ other.rotation,
                    self.position + self.rotation @ other.position)

    def inverse(self) -> "Pose":
        Rt = self.rotation.T
        return Pose(Rt, -Rt @ self.position)

    def between(self, other: "Pose") -> "Pose":
        return self.inverse().compose(other)

    def quaternion(self) -> Tuple[float, float, float, float]:
        return matrix_to_quat_wxyz(self.rotation)
