from dataclasses import dataclass, field
from typing import Tuple
import numpy as np

from rc_est.utils.math import Pose

TimeS = float

Vec3 = Tuple[float, float, float]
QuatWXYZ = Tuple[float, float, float, float]


@dataclass
class RawImuSample:
    t: TimeS
    accel: Vec3
    gyro: Vec3


@dataclass
class RawGpsFix:
    t: TimeS
    latitude: float
    longitude: float
    altitude: float


@dataclass
class RawOdomSample:
    t: TimeS
    orientation: QuatWXYZ
    position: Vec3

    def pose(self) -> Pose:
        return Pose.from_quaternion(self.orientation, self.position)


@dataclass
class ImuBias:
    accel: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyro: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def copy(self) -> "ImuBias":
        return ImuBias(np.array(self.accel, dtype=float), np.array(self.gyro, dtype=float))


@dataclass
class EstimatedState:
    t: TimeS
    pose: Pose
    velocity: np.ndarray
    bias: ImuBias

    def copy(self) -> "EstimatedState":
        return EstimatedState(self.t, self.pose.copy(), np.array(self.velocity, dtype=float), self.bias.copy())


@dataclass
class NormalizedImu:
    t: TimeS
    accel: np.ndarray
    gyro: np.ndarray


@dataclass
class InitialPose:
    orientation: QuatWXYZ
    gyro_bias: Vec3 = (0.0, 0.0, 0.0)


@dataclass
class FusedOdometry:
    t: TimeS
    orientation: QuatWXYZ
    position: np.ndarray
    velocity: np.ndarray
    angular_velocity: np.ndarray


@dataclass
class LatencyDiagnostics:
    t: TimeS
    ingest_delay: float
    correction_age: float

