import csv

import numpy as np

from conftest import RecordingBackend
from rc_est.apps.run_estimator import dispatch, read_log
from rc_est.estimation.service import StateEstimatorService
from rc_est.utils.config import EstimatorConfig
from rc_est.utils.logging import CsvLogger, flatten, vector_fields


def test_read_log_skips_comments_and_blank_rows(tmp_path):
    log = tmp_path / "run.csv"
    log.write_text("# recorded on the lot\n"
                   "imu,0.005,0,0,9.8,0,0,0.1\n"
                   "\n"
                   "gps,0.1,33.7756,-84.3963,280\n")
    rows = list(read_log(str(log)))
    assert [k for k, _ in rows] == ["imu", "gps"]
    assert rows[0][1] == [0.005, 0.0, 0.0, 9.8, 0.0, 0.0, 0.1]


def test_dispatch_routes_rows_to_queues():
    svc = StateEstimatorService(EstimatorConfig(), backend=RecordingBackend())
    dispatch(svc, "imu", [0.005, 0, 0, 9.8, 0, 0, 0.1])
    dispatch(svc, "gps", [0.1, 33.7756, -84.3963, 280.0])
    dispatch(svc, "odom", [0.1, 1, 0, 0, 0, 2.0, 0.0, 0.0])
    dispatch(svc, "init", [0.0, 1, 0, 0, 0, 0.0, 0.0, 0.002])
    dispatch(svc, "lidar", [0.0])
    assert (svc.imu_q.size(), svc.gps_q.size(), svc.odom_q.size()) == (1, 1, 1)
    assert svc.odom_q.peek_back().position == (2.0, 0.0, 0.0)
    assert svc._initial_pose.gyro_bias == (0.0, 0.0, 0.002)


def test_csv_logger_flattens_vectors(tmp_path):
    path = tmp_path / "out" / "odometry.csv"
    with CsvLogger(str(path), ["t"] + vector_fields("velocity", 3)) as lg:
        lg.write({"t": 1.5, "velocity": np.array([1.0, -2.0, 0.5])})
    with open(path, newline="") as f:
        rows = list(csv.DictReader(f))
    assert rows == [{"t": "1.5", "velocity_0": "1.0", "velocity_1": "-2.0", "velocity_2": "0.5"}]


def test_flatten_keeps_scalars():
    assert flatten({"a": 1, "q": (1.0, 0.0)}) == {"a": 1, "q_0": 1.0, "q_1": 0.0}
