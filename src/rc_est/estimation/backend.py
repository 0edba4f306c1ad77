"""
Call contract for the incremental smoother that sits behind the Smoother.

Variables are addressed by (index, kind); indices are stable small integers
and the backend owns the graph they refer to. Constraints are plain data so
that any implementation (ISAM2, a test recorder, ...) can translate them.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Sequence, Union
import math

import numpy as np

from rc_est.estimation.preintegration import PreintegratedDelta
from rc_est.utils.math import Pose
from rc_est.utils.messages import ImuBias


class BackendError(RuntimeError):
    """The backend produced a degenerate or non-finite update."""


class VariableKind(Enum):
    POSE = "x"
    VELOCITY = "v"
    BIAS = "b"
    GPS_POSE = "g"


# -------------------- Constraints --------------------
# Pose sigmas are ordered (rx, ry, rz, tx, ty, tz).

@dataclass
class PriorPose:
    index: int
    pose: Pose
    sigmas: np.ndarray


@dataclass
class PriorVelocity:
    index: int
    velocity: np.ndarray
    sigmas: np.ndarray


@dataclass
class PriorBias:
    index: int
    bias: ImuBias
    sigmas: np.ndarray


@dataclass
class ImuMotion:
    """Links pose/velocity at index to index + 1 through a preintegrated delta."""
    index: int
    delta: PreintegratedDelta


@dataclass
class BiasRandomWalk:
    """Zero-mean link between the bias at index and index + 1."""
    index: int
    sigmas: np.ndarray


@dataclass
class GpsPosition:
    index: int
    position: np.ndarray      # ENU, metres
    sigmas: np.ndarray


@dataclass
class AntennaOffset:
    """Rigid body -> antenna transform between the body pose and the antenna pose."""
    index: int
    offset: Pose
    sigmas: np.ndarray


@dataclass
class OdometryBetween:
    from_index: int
    to_index: int
    relative_pose: Pose
    sigmas: np.ndarray


Constraint = Union[PriorPose, PriorVelocity, PriorBias, ImuMotion, BiasRandomWalk,
                   GpsPosition, AntennaOffset, OdometryBetween]


def bias_walk_sigmas(dt: float, accel_bias_sigma: float, gyro_bias_sigma: float) -> np.ndarray:
    """Random-walk sigmas over a window of dt seconds: sigma_c * sqrt(dt)."""
    base = np.array([accel_bias_sigma] * 3 + [gyro_bias_sigma] * 3, dtype=float)
    return math.sqrt(max(dt, 0.0)) * base


class IncrementalEstimationBackend(ABC):
    @abstractmethod
    def add_variables(self, index: int, initial_pose: Pose, initial_velocity: np.ndarray,
                      initial_bias: ImuBias, initial_gps_pose: Pose) -> None:
        """Queue initial values for every variable of a new index."""

    @abstractmethod
    def add_factors(self, constraints: Sequence[Constraint]) -> None:
        """Queue constraints for the next update()."""

    @abstractmethod
    def update(self) -> None:
        """Fold all pending variables/constraints into the estimate.

        Raises BackendError when the update is degenerate.
        """

    @abstractmethod
    def query(self, index: int, kind: VariableKind):
        """Current estimate: Pose for POSE/GPS_POSE, ndarray for VELOCITY, ImuBias for BIAS."""
