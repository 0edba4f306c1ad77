from typing import Dict, List

import numpy as np
import pytest

from rc_est.estimation.backend import BackendError, IncrementalEstimationBackend, VariableKind
from rc_est.estimation.broker import SharedStateBroker
from rc_est.estimation.smoother import Smoother
from rc_est.utils.bounded_queue import BoundedQueue
from rc_est.utils.config import EstimatorConfig
from rc_est.utils.messages import InitialPose, RawGpsFix, RawImuSample, RawOdomSample

ORIGIN = (33.7756, -84.3963, 280.0)
GRAVITY = 9.8


class RecordingBackend(IncrementalEstimationBackend):
    """Keeps every call; the estimate after update() is simply the initial values."""
    def __init__(self, fail_on_update: int = 0):
        self.fail_on_update = fail_on_update
        self.updates = 0
        self.factors: List = []
        self.variables: Dict[int, Dict[VariableKind, object]] = {}
        self._pending_factors: List = []
        self._pending_vars: Dict[int, Dict[VariableKind, object]] = {}
        self.committed: Dict[int, Dict[VariableKind, object]] = {}

    def add_variables(self, index, initial_pose, initial_velocity, initial_bias, initial_gps_pose):
        vals = {
            VariableKind.POSE: initial_pose.copy(),
            VariableKind.VELOCITY: np.array(initial_velocity, dtype=float),
            VariableKind.BIAS: initial_bias.copy(),
            VariableKind.GPS_POSE: initial_gps_pose.copy(),
        }
        self._pending_vars[index] = vals
        self.variables[index] = vals

    def add_factors(self, constraints):
        self._pending_factors.extend(constraints)

    def update(self):
        self.updates += 1
        if self.fail_on_update and self.updates == self.fail_on_update:
            self._pending_factors, self._pending_vars = [], {}
            raise BackendError("indeterminant linear system")
        self.factors.extend(self._pending_factors)
        self.committed.update(self._pending_vars)
        self._pending_factors, self._pending_vars = [], {}

    def query(self, index, kind):
        value = self.committed[index][kind]
        return value.copy()

    def factors_of(self, cls):
        return [f for f in self.factors if isinstance(f, cls)]


def imu_stream(t0: float, t1: float, rate: float = 200.0, accel=(0.0, 0.0, GRAVITY), gyro=(0.0, 0.0, 0.0)):
    """Samples stamped i/rate for every i with t0 < t <= t1."""
    i0 = int(round(t0 * rate)) + 1
    i1 = int(round(t1 * rate))
    return [RawImuSample(i / rate, tuple(accel), tuple(gyro)) for i in range(i0, i1 + 1)]


def gps_fix(t: float, north_m: float = 0.0) -> RawGpsFix:
    lat, lon, alt = ORIGIN
    return RawGpsFix(t, lat + north_m / 111_000.0, lon, alt)


def odom(t: float, x: float = 0.0, y: float = 0.0) -> RawOdomSample:
    return RawOdomSample(t, (1.0, 0.0, 0.0, 0.0), (x, y, 0.0))


@pytest.fixture
def config() -> EstimatorConfig:
    return EstimatorConfig()


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def queues(config):
    q = config.queues
    return BoundedQueue(q.imu), BoundedQueue(q.gps), BoundedQueue(q.odom)


@pytest.fixture
def broker() -> SharedStateBroker:
    return SharedStateBroker()


@pytest.fixture
def smoother(config, backend, broker, queues) -> Smoother:
    imu_q, gps_q, odom_q = queues
    return Smoother(config, backend, broker, imu_q, gps_q, odom_q,
                    initial_pose=lambda: InitialPose((1.0, 0.0, 0.0, 0.0)))


def push_all(queue, items):
    for it in items:
        assert queue.try_push(it)
