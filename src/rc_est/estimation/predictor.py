"""
Fast path: runs inline with IMU ingestion and extrapolates the latest corrected
state with every sample.

Per tick:
  - normalize and buffer the sample, snapshot the broker
  - new correction -> drop samples it already covers, rebind the bias and
    re-integrate everything left in the buffer
  - otherwise    -> fold in just the newest sample
Nothing is emitted until the first correction exists.
"""
import logging
from typing import Callable, Optional

from rc_est.estimation.broker import SharedStateBroker
from rc_est.estimation.preintegration import Preintegrator
from rc_est.sensors.normalizer import AxisInversion, SensorNormalizer
from rc_est.utils.config import EstimatorConfig
from rc_est.utils.messages import (
    EstimatedState, FusedOdometry, LatencyDiagnostics, NormalizedImu, RawImuSample,
)
from rc_est.utils.ring_buffer import RingBuffer
from rc_est.utils.time_sync import wall_time

logger = logging.getLogger(__name__)


class FastPredictor:
    def __init__(
        self,
        config: EstimatorConfig,
        broker: SharedStateBroker,
        on_odometry: Optional[Callable[[FusedOdometry], None]] = None,
        on_latency: Optional[Callable[[LatencyDiagnostics], None]] = None,
        clock: Callable[[], float] = wall_time,
    ):
        imu = config.imu
        self.normalize = SensorNormalizer(AxisInversion(imu.invert_x, imu.invert_y, imu.invert_z))
        self.broker = broker
        self.imu_dt = imu.imu_dt
        self.on_odometry = on_odometry
        self.on_latency = on_latency
        self.clock = clock

        self._integrator = Preintegrator(gravity=imu.gravity)
        self._buffer: RingBuffer[NormalizedImu] = RingBuffer(config.queues.fast_buffer)
        self._anchor: Optional[EstimatedState] = None
        self._last_t: Optional[float] = None     # newest sample seen
        self._cursor_t: Optional[float] = None   # newest sample removed from the buffer

    @property
    def anchor_time(self) -> float:
        return self._anchor.t if self._anchor is not None else 0.0

    def _fold(self, s: NormalizedImu, dt: float) -> None:
        if dt > 0.0:
            self._integrator.integrate(s.accel, s.gyro, dt)
        else:
            logger.debug("skipping IMU sample at %.4f with dt=%.4f", s.t, dt)

    def reintegrate(self) -> None:
        """Reset to the anchor's bias and replay every buffered sample."""
        self._integrator.reset(self._anchor.bias)
        prev = self._cursor_t
        for s in self._buffer:
            dt = s.t - prev if prev is not None else self.imu_dt
            prev = s.t
            self._fold(s, dt)

    def predict(self) -> Optional[EstimatedState]:
        if self._anchor is None:
            return None
        return self._integrator.predict(self._anchor, self._anchor.bias)

    def on_imu(self, sample: RawImuSample, received_at: Optional[float] = None) -> Optional[FusedOdometry]:
        if received_at is None:
            received_at = self.clock()
        s = self.normalize(sample)
        dt = s.t - self._last_t if self._last_t is not None else self.imu_dt
        self._last_t = s.t
        evicted = self._buffer.push(s)
        if evicted is not None:
            self._cursor_t = evicted.t

        snap = self.broker.snapshot()
        if snap is None or snap.t == 0.0:
            return None

        if snap.t != self.anchor_time:
            dropped = self._buffer.pop_older_than(snap.t)
            if dropped is not None:
                self._cursor_t = dropped.t
            self._anchor = snap
            self.reintegrate()
        else:
            self._fold(s, dt)

        current = self.predict()
        anchor = self._anchor
        out = FusedOdometry(
            t=s.t,
            orientation=current.pose.quaternion(),
            position=current.pose.position,
            velocity=current.velocity,
            angular_velocity=s.gyro - anchor.bias.gyro,
        )
        if self.on_odometry:
            self.on_odometry(out)
        if self.on_latency:
            self.on_latency(LatencyDiagnostics(t=s.t, ingest_delay=received_at - s.t,
                                               correction_age=s.t - anchor.t))
        return out
