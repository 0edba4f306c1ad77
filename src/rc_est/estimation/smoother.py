"""
Slow path: turns buffered GPS / odometry / IMU samples into one new factor-graph
state per cycle and publishes the corrected state to the broker.

Lifecycle:
  - Uninitialized: waits for the first GPS fix, commits priors for index 0
  - SteadyState: each step() adds index k+1 from the IMU window ending at the
    selected correction (latest GPS fix, else newest odometry sample)
"""
from enum import Enum
import logging
from typing import Callable, List, Optional

import numpy as np

from rc_est.estimation.backend import (
    AntennaOffset, BiasRandomWalk, Constraint, GpsPosition, ImuMotion,
    IncrementalEstimationBackend, OdometryBetween, PriorBias, PriorPose, PriorVelocity,
    VariableKind, bias_walk_sigmas,
)
from rc_est.estimation.broker import SharedStateBroker
from rc_est.estimation.preintegration import Preintegrator
from rc_est.sensors.geodetic import GeodeticProjector
from rc_est.sensors.normalizer import AxisInversion, SensorNormalizer
from rc_est.utils.bounded_queue import BoundedQueue
from rc_est.utils.config import EstimatorConfig
from rc_est.utils.math import Pose, quat_wxyz_to_matrix, rot_from_rpy, valid_quaternion
from rc_est.utils.messages import (
    EstimatedState, ImuBias, InitialPose, RawGpsFix, RawImuSample, RawOdomSample,
)

logger = logging.getLogger(__name__)

# (rx, ry, rz, tx, ty, tz)
ANTENNA_OFFSET_SIGMAS = np.array([0.001, 0.001, 0.001, 0.03, 0.03, 0.03])
ODOMETRY_SIGMAS = np.array([0.1, 0.1, 100.0, 100.0, 100.0, 0.3])


class Source(Enum):
    GPS = "gps"
    ODOMETRY = "odometry"


class Smoother:
    def __init__(
        self,
        config: EstimatorConfig,
        backend: IncrementalEstimationBackend,
        broker: SharedStateBroker,
        imu_queue: BoundedQueue[RawImuSample],
        gps_queue: BoundedQueue[RawGpsFix],
        odom_queue: BoundedQueue[RawOdomSample],
        initial_pose: Callable[[], InitialPose],
        on_bias: Optional[Callable[[ImuBias], None]] = None,
    ):
        self.cfg = config
        self.backend = backend
        self.broker = broker
        self.imu_q = imu_queue
        self.gps_q = gps_queue
        self.odom_q = odom_queue
        self._initial_pose = initial_pose
        self.on_bias = on_bias

        imu = config.imu
        self.normalize = SensorNormalizer(AxisInversion(imu.invert_x, imu.invert_y, imu.invert_z))
        origin = config.origin
        self.projector = GeodeticProjector(
            (origin.latitude, origin.longitude, origin.altitude) if origin.fixed else None)
        self._window = Preintegrator(gravity=imu.gravity)

        ext = config.extrinsics
        self.body_P_sensor = Pose(
            rot_from_rpy(ext.sensor_x_angle, ext.sensor_y_angle, ext.sensor_z_angle),
            np.array([ext.sensor_x, ext.sensor_y, ext.sensor_z], dtype=float))
        self.car_rotation = rot_from_rpy(ext.car_x_angle, ext.car_y_angle, ext.car_z_angle)
        self.imu_P_gps = Pose(np.eye(3), np.array([ext.gps_x, ext.gps_y, ext.gps_z], dtype=float))

        n = config.noise
        r, g = n.initial_rotation_noise, n.gps_sigma
        self.prior_pose_sigmas = np.array([r, r, 3 * r, g, g, g])
        self.prior_velocity_sigmas = np.full(3, n.initial_velocity_noise)
        self.prior_bias_sigmas = np.array([n.initial_bias_noise_acc] * 3 + [n.initial_bias_noise_gyro] * 3)
        self.gps_sigmas = np.array([g, g, 3 * g])

        self.index = 0
        self.initialized = False
        self.cycles = 0
        self._prev_time = 0.0
        self._prev_state: Optional[EstimatedState] = None
        self._prev_bias = ImuBias()
        self._pending_imu: Optional[RawImuSample] = None
        self._last_imu_t = 0.0

    # ---- Source selection
    def select_source(self) -> Optional[Source]:
        if not self.initialized or self.gps_q.size() > 0:
            return Source.GPS
        if self.odom_q.size() > 0:
            return Source.ODOMETRY
        return None

    def _latest_fix(self) -> RawGpsFix:
        fix = self.gps_q.blocking_pop()
        while True:
            newer = self.gps_q.try_pop()
            if newer is None:
                return fix
            fix = newer

    def step(self) -> bool:
        """Run one cycle. Returns True when a new state was committed."""
        source = self.select_source()
        if source is None:
            return False

        fix: Optional[RawGpsFix] = None
        if source is Source.GPS:
            fix = self._latest_fix()
            cur_t = fix.t
        else:
            newest = self.odom_q.peek_back()
            if newest is None:
                logger.warning("odometry selected but queue drained; skipping cycle")
                return False
            cur_t = newest.t

        if not self.initialized:
            self._initialize(fix)
            return True
        return self._steady_cycle(source, fix, cur_t)

    # ---- Uninitialized -> SteadyState
    def _initialize(self, fix: RawGpsFix) -> None:
        if not self.projector.has_origin:
            self.projector.reset(fix.latitude, fix.longitude, fix.altitude)
        enu = np.array(self.projector.forward(fix.latitude, fix.longitude, fix.altitude))

        init = self._initial_pose()
        R0 = self.body_P_sensor.rotation @ quat_wxyz_to_matrix(init.orientation) @ self.car_rotation
        x0 = Pose(R0, enu)
        v0 = np.zeros(3)
        bias0 = ImuBias(np.zeros(3), np.asarray(init.gyro_bias, dtype=float))

        factors: List[Constraint] = [
            PriorPose(0, x0, self.prior_pose_sigmas),
            PriorVelocity(0, v0, self.prior_velocity_sigmas),
            PriorBias(0, bias0, self.prior_bias_sigmas),
            AntennaOffset(0, self.imu_P_gps, ANTENNA_OFFSET_SIGMAS),
        ]
        self.backend.add_variables(0, x0, v0, bias0, x0.compose(self.imu_P_gps))
        self.backend.add_factors(factors)
        self.backend.update()

        self._prev_state = EstimatedState(fix.t, x0, v0, bias0)
        self._prev_bias = bias0
        self._prev_time = fix.t
        self.index = 0
        self.initialized = True
        logger.info("initialized at t=%.3f origin=%s (gps_skip=%d is not used for selection)",
                    fix.t, self.projector.origin, self.cfg.gps_skip)

        # Align the IMU cursor with the first fix
        imu = self.imu_q.blocking_pop()
        self._last_imu_t = imu.t - self.cfg.imu.imu_dt
        while imu.t < fix.t:
            self._last_imu_t = imu.t
            imu = self.imu_q.blocking_pop()
        self._pending_imu = imu

    # ---- SteadyState
    def _pop_odom(self) -> Optional[RawOdomSample]:
        while True:
            sample = self.odom_q.try_pop()
            if sample is None or valid_quaternion(sample.orientation):
                return sample
            logger.warning("skipping odometry sample at %.3f with invalid orientation %s",
                           sample.t, sample.orientation)

    def _odometry_window(self, using_gps: bool, cur_t: float):
        while self.odom_q.size() > 0 and self.odom_q.peek_front().t < self._prev_time:
            self.odom_q.try_pop()

        first = self._pop_odom()
        if first is None:
            return None
        last = self._pop_odom() or first
        if using_gps and last.t >= cur_t:
            # GPS correction is older than the odometry; it takes precedence
            return None
        while self.odom_q.size() > 0 and self.odom_q.peek_front().t < cur_t:
            sample = self.odom_q.try_pop()
            if valid_quaternion(sample.orientation):
                last = sample
        return first, last

    def _integrate_window(self, cur_t: float) -> None:
        self._window.reset(self._prev_bias)
        while self._pending_imu.t < cur_t:
            s = self.normalize(self._pending_imu)
            dt = s.t - self._last_imu_t
            self._last_imu_t = s.t
            if dt > 0.0:
                self._window.integrate(s.accel, s.gyro, dt)
            else:
                logger.debug("skipping IMU sample at %.4f with dt=%.4f", s.t, dt)
            self._pending_imu = self.imu_q.blocking_pop()

    def _steady_cycle(self, source: Source, fix: Optional[RawGpsFix], cur_t: float) -> bool:
        using_gps = source is Source.GPS
        if cur_t <= self._prev_time:
            if using_gps:
                logger.warning("GPS fix at %.3f is not newer than last correction %.3f; dropped",
                               cur_t, self._prev_time)
            return False

        k = self.index
        factors: List[Constraint] = []

        window = self._odometry_window(using_gps, cur_t)
        if window is not None:
            first, last = window
            factors.append(OdometryBetween(k, k + 1, first.pose().between(last.pose()), ODOMETRY_SIGMAS))
        elif not using_gps:
            logger.warning("odometry correction selected with no usable sample; skipping cycle")
            return False

        self._integrate_window(cur_t)
        if self._window.count == 0:
            logger.warning("no IMU samples between %.3f and %.3f; skipping cycle", self._prev_time, cur_t)
            return False

        delta = self._window.delta()
        n = self.cfg.noise
        factors.append(ImuMotion(k, delta))
        factors.append(BiasRandomWalk(k, bias_walk_sigmas(delta.dt, n.accel_bias_sigma, n.gyro_bias_sigma)))
        predicted = self._window.predict(self._prev_state, self._prev_bias)

        if using_gps:
            enu = np.array(self.projector.forward(fix.latitude, fix.longitude, fix.altitude))
            factors.append(GpsPosition(k + 1, enu, self.gps_sigmas))
        factors.append(AntennaOffset(k + 1, self.imu_P_gps, ANTENNA_OFFSET_SIGMAS))

        self.backend.add_variables(k + 1, predicted.pose, predicted.velocity, self._prev_bias,
                                   predicted.pose.compose(self.imu_P_gps))
        self.backend.add_factors(factors)
        self.backend.update()

        pose = self.backend.query(k + 1, VariableKind.POSE)
        velocity = self.backend.query(k + 1, VariableKind.VELOCITY)
        bias = self.backend.query(k + 1, VariableKind.BIAS)

        state = EstimatedState(cur_t, pose, velocity, bias)
        self._prev_state = state
        self._prev_bias = bias.copy()
        if self.on_bias:
            self.on_bias(bias.copy())
        self.broker.write(state)

        self.index = k + 1
        self.cycles += 1
        self._prev_time = cur_t
        return True
