"""
StateEstimatorService: owns the queues, the broker, both estimation paths and
the smoother thread.

Threading:
  - on_gps / on_odom / on_imu are called from the sensor threads; they only
    try_push (never block). on_imu also runs the FastPredictor inline.
  - start() spins one daemon thread that loops Smoother.step() at the
    configured rate; it is the only thread that blocks on the queues.
  - stop() closes the queues, which wakes and ends the smoother thread.

Outputs go to the callbacks given at construction.
"""
import logging
import threading
from typing import Callable, Optional

import numpy as np

from rc_est.estimation.backend import BackendError, IncrementalEstimationBackend
from rc_est.estimation.broker import SharedStateBroker
from rc_est.estimation.predictor import FastPredictor
from rc_est.estimation.smoother import Smoother
from rc_est.utils.bounded_queue import BoundedQueue, QueueClosed
from rc_est.utils.config import EstimatorConfig
from rc_est.utils.math import matrix_to_quat_wxyz, rot_from_rpy, valid_quaternion
from rc_est.utils.messages import (
    FusedOdometry, ImuBias, InitialPose, LatencyDiagnostics, RawGpsFix, RawImuSample,
    RawOdomSample,
)
from rc_est.utils.time_sync import Rate, wall_time

logger = logging.getLogger(__name__)

INITIAL_POSE_WARN_S = 15.0
IMU_QUEUE_WARN_SIZE = 20


class StateEstimatorService:
    def __init__(
        self,
        config: Optional[EstimatorConfig] = None,
        backend: Optional[IncrementalEstimationBackend] = None,
        on_odometry: Optional[Callable[[FusedOdometry], None]] = None,
        on_bias: Optional[Callable[[ImuBias], None]] = None,
        on_latency: Optional[Callable[[LatencyDiagnostics], None]] = None,
        clock: Callable[[], float] = wall_time,
    ):
        self.cfg = config or EstimatorConfig()
        q = self.cfg.queues
        self.imu_q: BoundedQueue[RawImuSample] = BoundedQueue(q.imu)
        self.gps_q: BoundedQueue[RawGpsFix] = BoundedQueue(q.gps)
        self.odom_q: BoundedQueue[RawOdomSample] = BoundedQueue(q.odom)
        self.broker = SharedStateBroker()
        self.clock = clock

        if backend is None:
            from rc_est.estimation.gtsam_backend import GtsamBackend
            backend = GtsamBackend(self.cfg)

        self._initial_pose: Optional[InitialPose] = None
        self._initial_pose_evt = threading.Event()
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._max_imu_q = 0
        self.error: Optional[BaseException] = None

        self.smoother = Smoother(
            self.cfg, backend, self.broker, self.imu_q, self.gps_q, self.odom_q,
            initial_pose=self._wait_for_initial_pose, on_bias=on_bias,
        )
        self.predictor = FastPredictor(self.cfg, self.broker, on_odometry=on_odometry,
                                       on_latency=on_latency, clock=clock)

        ip = self.cfg.initial_pose
        if ip.fixed:
            logger.warning("Using fixed initial pose (roll=%.3f pitch=%.3f yaw=%.3f)", ip.roll, ip.pitch, ip.yaw)
            self.set_initial_pose(matrix_to_quat_wxyz(rot_from_rpy(ip.roll, ip.pitch, ip.yaw)))

    # ---- Ingestion (sensor threads, never block)
    def on_gps(self, fix: RawGpsFix) -> bool:
        ok = self.gps_q.try_push(fix)
        if not ok:
            logger.warning("Dropping a GPS measurement due to full queue")
        return ok

    def on_odom(self, odom: RawOdomSample) -> bool:
        if not valid_quaternion(odom.orientation):
            logger.warning("Dropping a wheel odometry measurement with invalid orientation %s", odom.orientation)
            return False
        ok = self.odom_q.try_push(odom)
        if not ok:
            logger.warning("Dropping a wheel odometry measurement due to full queue")
        return ok

    def on_imu(self, sample: RawImuSample) -> Optional[FusedOdometry]:
        received_at = self.clock()
        q_size = self.imu_q.size()
        if q_size > self._max_imu_q:
            self._max_imu_q = q_size
            if q_size > IMU_QUEUE_WARN_SIZE:
                logger.warning("IMU queue high-water mark %d", q_size)
        if not self.imu_q.try_push(sample):
            logger.warning("Dropping an IMU measurement due to full queue")
        return self.predictor.on_imu(sample, received_at)

    # ---- Initial reference orientation
    def set_initial_pose(self, orientation, gyro_bias=(0.0, 0.0, 0.0)) -> None:
        """Reference orientation (w, x, y, z) and gyro bias for the first state.

        The gyro bias is used as given, so it must already be expressed in the
        normalized body frame (ENU convention, after axis inversion). A bias
        taken from an NED-style reference needs its y and z signs flipped first.
        """
        if not valid_quaternion(orientation):
            raise ValueError(f"invalid initial orientation {tuple(orientation)}")
        self._initial_pose = InitialPose(tuple(float(c) for c in orientation),
                                         tuple(float(b) for b in np.asarray(gyro_bias).reshape(3)))
        self._initial_pose_evt.set()

    def _wait_for_initial_pose(self) -> InitialPose:
        while not self._initial_pose_evt.wait(INITIAL_POSE_WARN_S):
            logger.warning("Waiting for valid initial pose")
        if self._stop_evt.is_set() or self._initial_pose is None:
            raise QueueClosed("stopped while waiting for the initial pose")
        return self._initial_pose

    # ---- Smoother thread
    def start(self) -> None:
        """Start the smoother thread. A stopped service cannot be restarted."""
        if self.imu_q.closed:
            raise RuntimeError("service was stopped; create a new StateEstimatorService")
        if self._thread and self._thread.is_alive():
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._run, name="smoother", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        rate = Rate(self.cfg.smoother_rate_hz)
        try:
            while not self._stop_evt.is_set():
                self.smoother.step()
                rate.sleep()
        except QueueClosed:
            logger.debug("smoother thread stopped")
        except BackendError as exc:
            self.error = exc
            logger.exception("Smoother backend failed; no further corrections will be published")
        except Exception as exc:
            self.error = exc
            logger.exception("Smoother thread crashed; no further corrections will be published")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_evt.set()
        self._initial_pose_evt.set()
        for q in (self.imu_q, self.gps_q, self.odom_q):
            q.close()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def failed(self) -> bool:
        return self.error is not None
