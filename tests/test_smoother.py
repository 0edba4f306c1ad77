import numpy as np
import pytest

from conftest import ORIGIN, RecordingBackend, gps_fix, imu_stream, odom, push_all
from rc_est.estimation.backend import (
    AntennaOffset, BackendError, BiasRandomWalk, GpsPosition, ImuMotion, OdometryBetween,
    PriorBias, PriorPose, PriorVelocity, VariableKind,
)
from rc_est.estimation.broker import SharedStateBroker
from rc_est.estimation.smoother import Smoother, Source
from rc_est.utils.bounded_queue import BoundedQueue
from rc_est.utils.config import EstimatorConfig
from rc_est.sensors.geodetic import GeodeticProjector
from rc_est.utils.messages import InitialPose, RawOdomSample


def test_first_fix_initializes_exactly_once(smoother, backend, queues):
    imu_q, gps_q, _ = queues
    gps_q.try_push(gps_fix(0.0))
    push_all(imu_q, imu_stream(0.0, 0.250))

    assert smoother.select_source() is Source.GPS
    assert smoother.step()
    assert smoother.initialized
    assert smoother.index == 0
    assert backend.updates == 1

    assert len(backend.factors_of(PriorPose)) == 1
    vel_prior = backend.factors_of(PriorVelocity)
    assert len(vel_prior) == 1 and vel_prior[0].index == 0
    assert not vel_prior[0].velocity.any()
    assert len(backend.factors_of(PriorBias)) == 1
    assert [f.index for f in backend.factors_of(AntennaOffset)] == [0]
    assert not backend.variables[0][VariableKind.VELOCITY].any()
    np.testing.assert_allclose(backend.variables[0][VariableKind.POSE].position, 0.0, atol=1e-9)

    # nothing else to correct with: no second transition, no new state
    assert smoother.select_source() is None
    assert not smoother.step()
    assert backend.updates == 1
    assert len(backend.factors_of(PriorPose)) == 1
    # first IMU sample is kept as the start of the next window
    assert imu_q.size() == 49


def test_initialization_discards_imu_older_than_fix(smoother, queues):
    imu_q, gps_q, _ = queues
    push_all(imu_q, imu_stream(0.9, 1.2))
    gps_q.try_push(gps_fix(1.0))
    smoother.step()
    # 0.905 .. 0.995 consumed, 1.0 is held for the next window
    assert smoother._pending_imu.t == 1.0
    assert smoother._last_imu_t == pytest.approx(0.995)


def test_initialization_uses_latest_fix_and_extrinsics():
    cfg = EstimatorConfig()
    cfg.extrinsics.sensor_z_angle = np.pi / 2
    backend = RecordingBackend()
    imu_q, gps_q, odom_q = BoundedQueue(400), BoundedQueue(40), BoundedQueue(100)
    sm = Smoother(cfg, backend, SharedStateBroker(), imu_q, gps_q, odom_q,
                  initial_pose=lambda: InitialPose((1.0, 0.0, 0.0, 0.0), (0.01, 0.02, 0.03)))
    for t in (0.0, 0.1, 0.2):
        gps_q.try_push(gps_fix(t))
    push_all(imu_q, imu_stream(0.0, 0.5))
    sm.step()
    assert gps_q.size() == 0
    assert sm._prev_time == 0.2
    R = backend.variables[0][VariableKind.POSE].rotation
    np.testing.assert_allclose(R @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0], atol=1e-12)
    np.testing.assert_allclose(backend.factors_of(PriorBias)[0].bias.gyro, [0.01, 0.02, 0.03])


def test_index_advances_by_one_per_cycle(smoother, backend, broker, queues):
    imu_q, gps_q, _ = queues
    push_all(imu_q, imu_stream(0.0, 0.6))
    gps_q.try_push(gps_fix(0.0))
    smoother.step()
    seen = [smoother.index]
    for k in range(1, 5):
        gps_q.try_push(gps_fix(k / 10.0, north_m=0.1 * k))
        assert smoother.step()
        seen.append(smoother.index)
        assert broker.timestamp == k / 10.0
    assert seen == [0, 1, 2, 3, 4]
    assert smoother.cycles == 4
    assert [f.index for f in backend.factors_of(ImuMotion)] == [0, 1, 2, 3]
    assert [f.index for f in backend.factors_of(GpsPosition)] == [1, 2, 3, 4]
    assert sorted(backend.variables) == [0, 1, 2, 3, 4]


def test_steady_cycle_builds_window_constraints(smoother, backend, queues):
    imu_q, gps_q, _ = queues
    push_all(imu_q, imu_stream(0.0, 0.3))
    gps_q.try_push(gps_fix(0.0))
    smoother.step()
    gps_q.try_push(gps_fix(0.1, north_m=1.0))
    smoother.step()

    motion = backend.factors_of(ImuMotion)[0]
    # samples 0.005 .. 0.095, the first one spanning the nominal period
    assert len(motion.delta.measurements) == 19
    assert motion.delta.dt == pytest.approx(0.095)
    walk = backend.factors_of(BiasRandomWalk)[0]
    n = smoother.cfg.noise
    np.testing.assert_allclose(walk.sigmas[:3], n.accel_bias_sigma * np.sqrt(motion.delta.dt))
    gps = backend.factors_of(GpsPosition)[0]
    assert gps.index == 1
    assert gps.position[1] == pytest.approx(1.0, abs=0.02)
    assert [f.index for f in backend.factors_of(AntennaOffset)] == [0, 1]


def test_odometry_only_cycle_when_gps_queue_empty(smoother, backend, queues):
    imu_q, gps_q, odom_q = queues
    push_all(imu_q, imu_stream(0.0, 0.3))
    gps_q.try_push(gps_fix(0.0))
    smoother.step()

    odom_q.try_push(odom(0.05, x=0.0))
    odom_q.try_push(odom(0.1, x=0.4))
    assert smoother.select_source() is Source.ODOMETRY
    assert smoother.step()
    assert smoother.index == 1
    assert backend.factors_of(GpsPosition) == []
    between = backend.factors_of(OdometryBetween)
    assert len(between) == 1
    assert (between[0].from_index, between[0].to_index) == (0, 1)
    np.testing.assert_allclose(between[0].relative_pose.position, [0.4, 0.0, 0.0])
    assert odom_q.size() == 0


def test_stale_odometry_is_discarded(smoother, backend, queues):
    imu_q, gps_q, odom_q = queues
    push_all(imu_q, imu_stream(0.0, 0.5))
    gps_q.try_push(gps_fix(0.0))
    smoother.step()
    gps_q.try_push(gps_fix(0.2))
    smoother.step()

    for t, x in ((0.05, 9.0), (0.1, 9.0), (0.25, 1.0), (0.3, 1.5)):
        odom_q.try_push(odom(t, x=x))
    assert smoother.step()
    between = backend.factors_of(OdometryBetween)[-1]
    np.testing.assert_allclose(between.relative_pose.position, [0.5, 0.0, 0.0])
    assert smoother._prev_time == 0.3


def test_gps_newer_than_odometry_skips_odometry_constraint(smoother, backend, queues):
    imu_q, gps_q, odom_q = queues
    push_all(imu_q, imu_stream(0.0, 0.5))
    gps_q.try_push(gps_fix(0.0))
    smoother.step()
    odom_q.try_push(odom(0.15))
    odom_q.try_push(odom(0.25))
    gps_q.try_push(gps_fix(0.2))
    assert smoother.step()
    assert backend.factors_of(OdometryBetween) == []
    assert backend.factors_of(GpsPosition)[-1].index == 1


def test_backend_failure_aborts_cycle_without_publishing():
    backend = RecordingBackend(fail_on_update=2)
    broker = SharedStateBroker()
    imu_q, gps_q, odom_q = BoundedQueue(400), BoundedQueue(40), BoundedQueue(100)
    sm = Smoother(EstimatorConfig(), backend, broker, imu_q, gps_q, odom_q,
                  initial_pose=lambda: InitialPose((1.0, 0.0, 0.0, 0.0)))
    push_all(imu_q, imu_stream(0.0, 0.3))
    gps_q.try_push(gps_fix(0.0))
    sm.step()
    gps_q.try_push(gps_fix(0.1))
    with pytest.raises(BackendError):
        sm.step()
    assert broker.snapshot() is None
    assert sm.index == 0


def test_stale_gps_fix_is_ignored(smoother, backend, queues):
    imu_q, gps_q, _ = queues
    push_all(imu_q, imu_stream(0.0, 0.3))
    gps_q.try_push(gps_fix(0.1))
    smoother.step()
    gps_q.try_push(gps_fix(0.05))
    assert not smoother.step()
    assert smoother.index == 0
    assert backend.updates == 1


def test_bias_callback_receives_corrected_bias(config, backend, broker, queues):
    imu_q, gps_q, odom_q = queues
    seen = []
    sm = Smoother(config, backend, broker, imu_q, gps_q, odom_q,
                  initial_pose=lambda: InitialPose((1.0, 0.0, 0.0, 0.0), (0.0, 0.0, 0.004)),
                  on_bias=seen.append)
    push_all(imu_q, imu_stream(0.0, 0.3))
    gps_q.try_push(gps_fix(0.0))
    sm.step()
    gps_q.try_push(gps_fix(0.1))
    sm.step()
    assert len(seen) == 1
    np.testing.assert_allclose(seen[0].gyro, [0.0, 0.0, 0.004])
    np.testing.assert_allclose(broker.snapshot().bias.gyro, [0.0, 0.0, 0.004])


def test_fixed_origin_gives_non_zero_first_position():
    cfg = EstimatorConfig()
    cfg.origin.fixed = True
    cfg.origin.latitude, cfg.origin.longitude, cfg.origin.altitude = ORIGIN
    backend = RecordingBackend()
    imu_q, gps_q, odom_q = BoundedQueue(400), BoundedQueue(40), BoundedQueue(100)
    sm = Smoother(cfg, backend, SharedStateBroker(), imu_q, gps_q, odom_q,
                  initial_pose=lambda: InitialPose((1.0, 0.0, 0.0, 0.0)))
    fix = gps_fix(0.0, north_m=3.0)
    gps_q.try_push(fix)
    push_all(imu_q, imu_stream(0.0, 0.1))
    sm.step()

    assert sm.projector.origin == ORIGIN
    expected = GeodeticProjector(ORIGIN).forward(fix.latitude, fix.longitude, fix.altitude)
    prior = backend.factors_of(PriorPose)[0]
    np.testing.assert_allclose(prior.pose.position, expected, atol=1e-9)
    assert prior.pose.position[1] == pytest.approx(3.0, abs=0.05)


def test_odometry_with_invalid_orientation_is_skipped(smoother, backend, queues):
    imu_q, gps_q, odom_q = queues
    push_all(imu_q, imu_stream(0.0, 0.3))
    gps_q.try_push(gps_fix(0.0))
    smoother.step()

    odom_q.try_push(odom(0.05, x=0.0))
    odom_q.try_push(RawOdomSample(0.07, (0.0, 0.0, 0.0, 0.0), (9.0, 0.0, 0.0)))
    odom_q.try_push(odom(0.1, x=0.4))
    assert smoother.step()
    between = backend.factors_of(OdometryBetween)
    np.testing.assert_allclose(between[0].relative_pose.position, [0.4, 0.0, 0.0])


def test_only_invalid_odometry_skips_the_cycle(smoother, backend, queues):
    imu_q, gps_q, odom_q = queues
    push_all(imu_q, imu_stream(0.0, 0.3))
    gps_q.try_push(gps_fix(0.0))
    smoother.step()

    odom_q.try_push(RawOdomSample(0.05, (0.0, 0.0, 0.0, 0.0), (0.0, 0.0, 0.0)))
    odom_q.try_push(RawOdomSample(0.1, (float("nan"), 0.0, 0.0, 0.0), (0.0, 0.0, 0.0)))
    assert not smoother.step()
    assert smoother.index == 0
    assert backend.updates == 1
