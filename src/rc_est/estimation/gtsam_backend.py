"""
ISAM2 implementation of IncrementalEstimationBackend.

Keys: X(k) body pose, V(k) velocity, B(k) IMU bias, G(k) antenna pose.
The IMU factor is rebuilt from the measurements folded into the delta so
gtsam carries its own preintegration covariance.
"""
import logging
from typing import Optional, Sequence

import gtsam
import numpy as np
from gtsam.symbol_shorthand import B, G, V, X

from rc_est.estimation.backend import (
    AntennaOffset, BackendError, BiasRandomWalk, Constraint, GpsPosition, ImuMotion,
    IncrementalEstimationBackend, OdometryBetween, PriorBias, PriorPose, PriorVelocity,
    VariableKind,
)
from rc_est.estimation.preintegration import PreintegratedDelta
from rc_est.utils.config import EstimatorConfig
from rc_est.utils.math import Pose
from rc_est.utils.messages import ImuBias

logger = logging.getLogger(__name__)

_KEYS = {
    VariableKind.POSE: X,
    VariableKind.VELOCITY: V,
    VariableKind.BIAS: B,
    VariableKind.GPS_POSE: G,
}


def to_pose3(pose: Pose) -> gtsam.Pose3:
    return gtsam.Pose3(gtsam.Rot3(np.asarray(pose.rotation, dtype=float)),
                       np.asarray(pose.position, dtype=float))


def from_pose3(pose: gtsam.Pose3) -> Pose:
    return Pose(np.array(pose.rotation().matrix()), np.array(pose.translation(), dtype=float))


def to_bias(bias: ImuBias) -> gtsam.imuBias.ConstantBias:
    return gtsam.imuBias.ConstantBias(np.asarray(bias.accel, dtype=float),
                                      np.asarray(bias.gyro, dtype=float))


def from_bias(bias: gtsam.imuBias.ConstantBias) -> ImuBias:
    return ImuBias(np.array(bias.accelerometer(), dtype=float), np.array(bias.gyroscope(), dtype=float))


def _sigmas(s) -> gtsam.noiseModel.Diagonal:
    return gtsam.noiseModel.Diagonal.Sigmas(np.asarray(s, dtype=float))


class GtsamBackend(IncrementalEstimationBackend):
    def __init__(self, config: Optional[EstimatorConfig] = None):
        cfg = config or EstimatorConfig()
        noise = cfg.noise

        params = gtsam.ISAM2Params()
        params.setFactorization("QR")
        self._isam = gtsam.ISAM2(params)

        # ENU navigation frame, gravity along -Up
        self._pim_params = gtsam.PreintegrationParams.MakeSharedU(cfg.imu.gravity)
        self._pim_params.setAccelerometerCovariance(np.eye(3) * noise.accel_sigma ** 2)
        self._pim_params.setGyroscopeCovariance(np.eye(3) * noise.gyro_sigma ** 2)
        self._pim_params.setIntegrationCovariance(np.eye(3) * noise.integration_sigma ** 2)

        self._new_factors = gtsam.NonlinearFactorGraph()
        self._new_values = gtsam.Values()
        self._pending_indices = []
        self._estimate: Optional[gtsam.Values] = None

    # ---- Variables / factors
    def add_variables(self, index, initial_pose, initial_velocity, initial_bias, initial_gps_pose):
        self._new_values.insert(X(index), to_pose3(initial_pose))
        self._new_values.insert(V(index), np.asarray(initial_velocity, dtype=float))
        self._new_values.insert(B(index), to_bias(initial_bias))
        self._new_values.insert(G(index), to_pose3(initial_gps_pose))
        self._pending_indices.append(index)

    def add_factors(self, constraints: Sequence[Constraint]) -> None:
        for c in constraints:
            self._new_factors.add(self._to_factor(c))

    def _preintegrated(self, delta: PreintegratedDelta) -> gtsam.PreintegratedImuMeasurements:
        pim = gtsam.PreintegratedImuMeasurements(self._pim_params, to_bias(delta.bias_hat))
        for acc, gyro, dt in delta.measurements:
            pim.integrateMeasurement(acc, gyro, dt)
        return pim

    def _to_factor(self, c: Constraint):
        if isinstance(c, PriorPose):
            return gtsam.PriorFactorPose3(X(c.index), to_pose3(c.pose), _sigmas(c.sigmas))
        if isinstance(c, PriorVelocity):
            return gtsam.PriorFactorVector(V(c.index), np.asarray(c.velocity, dtype=float), _sigmas(c.sigmas))
        if isinstance(c, PriorBias):
            return gtsam.PriorFactorConstantBias(B(c.index), to_bias(c.bias), _sigmas(c.sigmas))
        if isinstance(c, ImuMotion):
            k = c.index
            return gtsam.ImuFactor(X(k), V(k), X(k + 1), V(k + 1), B(k), self._preintegrated(c.delta))
        if isinstance(c, BiasRandomWalk):
            return gtsam.BetweenFactorConstantBias(B(c.index), B(c.index + 1),
                                                   gtsam.imuBias.ConstantBias(), _sigmas(c.sigmas))
        if isinstance(c, GpsPosition):
            return gtsam.GPSFactor(G(c.index), np.asarray(c.position, dtype=float), _sigmas(c.sigmas))
        if isinstance(c, AntennaOffset):
            return gtsam.BetweenFactorPose3(X(c.index), G(c.index), to_pose3(c.offset), _sigmas(c.sigmas))
        if isinstance(c, OdometryBetween):
            return gtsam.BetweenFactorPose3(X(c.from_index), X(c.to_index),
                                            to_pose3(c.relative_pose), _sigmas(c.sigmas))
        raise TypeError(f"unsupported constraint type {type(c).__name__}")

    # ---- Solve / read back
    def update(self) -> None:
        factors, values = self._new_factors, self._new_values
        indices = self._pending_indices
        self._new_factors = gtsam.NonlinearFactorGraph()
        self._new_values = gtsam.Values()
        self._pending_indices = []
        try:
            self._isam.update(factors, values)
            estimate = self._isam.calculateEstimate()
        except RuntimeError as exc:
            raise BackendError(f"ISAM2 update failed: {exc}") from exc

        for k in indices:
            pose = estimate.atPose3(X(k))
            checks = (pose.rotation().matrix(), pose.translation(), estimate.atVector(V(k)),
                      estimate.atConstantBias(B(k)).vector())
            if not all(np.all(np.isfinite(np.asarray(a))) for a in checks):
                raise BackendError(f"non-finite estimate for state index {k}")
        self._estimate = estimate
        logger.debug("ISAM2 updated: %d factors, %d new states", factors.size(), len(indices))

    def query(self, index: int, kind: VariableKind):
        if self._estimate is None:
            raise BackendError("query before any successful update")
        key = _KEYS[kind](index)
        if kind is VariableKind.VELOCITY:
            return np.array(self._estimate.atVector(key), dtype=float)
        if kind is VariableKind.BIAS:
            return from_bias(self._estimate.atConstantBias(key))
        return from_pose3(self._estimate.atPose3(key))
