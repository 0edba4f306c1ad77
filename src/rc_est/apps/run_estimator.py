"""Replay a recorded sensor log through the state estimator.

Log format (CSV, one sample per row, no header):
  imu,t,ax,ay,az,gx,gy,gz
  gps,t,lat,lon,alt
  odom,t,qw,qx,qy,qz,x,y,z
  init,t,qw,qx,qy,qz,bgx,bgy,bgz     (reference orientation when not fixed)

Rows are delivered at their recorded pace (scaled by --speed). Fused odometry,
bias and latency streams are written as CSV into --out.
"""
import argparse
import csv
import logging
import time
from pathlib import Path

from rc_est.estimation.service import StateEstimatorService
from rc_est.utils.config import load_config
from rc_est.utils.logging import CsvLogger, vector_fields
from rc_est.utils.messages import RawGpsFix, RawImuSample, RawOdomSample


def read_log(path: str):
    with open(path, 'r', newline='') as f:
        for row in csv.reader(f):
            if not row or row[0].startswith("#"):
                continue
            kind, vals = row[0].strip(), [float(v) for v in row[1:]]
            yield kind, vals


def dispatch(svc: StateEstimatorService, kind: str, v) -> None:
    if kind == "imu":
        svc.on_imu(RawImuSample(v[0], tuple(v[1:4]), tuple(v[4:7])))
    elif kind == "gps":
        svc.on_gps(RawGpsFix(v[0], v[1], v[2], v[3]))
    elif kind == "odom":
        svc.on_odom(RawOdomSample(v[0], tuple(v[1:5]), tuple(v[5:8])))
    elif kind == "init":
        svc.set_initial_pose(v[1:5], v[5:8] if len(v) >= 8 else (0.0, 0.0, 0.0))
    else:
        print(f"[replay] unknown row kind '{kind}', skipped")


def main():
    ap = argparse.ArgumentParser()
    # Go up to project root (run this as a module from project root)
    root = Path(__file__).resolve().parents[3]
    ap.add_argument("--config", default=str(root / "config" / "estimator.yaml"))
    ap.add_argument("--log", required=True, help="Sensor CSV to replay.")
    ap.add_argument("--out", default=str(root / "out"), help="Directory for output CSVs.")
    ap.add_argument("--speed", type=float, default=1.0,
                    help="Replay speed factor (1.0 = recorded pace).")
    ap.add_argument("--settle", type=float, default=1.0,
                    help="Seconds to let the smoother drain after the log ends.")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if args.speed <= 0:
        ap.error("--speed must be positive")

    cfg = load_config(args.config)
    out = Path(args.out)
    odo_log = CsvLogger(str(out / "odometry.csv"),
                        ["t"] + vector_fields("orientation", 4) + vector_fields("position", 3)
                        + vector_fields("velocity", 3) + vector_fields("angular_velocity", 3))
    bias_log = CsvLogger(str(out / "bias.csv"), vector_fields("accel", 3) + vector_fields("gyro", 3))
    lat_log = CsvLogger(str(out / "latency.csv"), ["t", "ingest_delay", "correction_age"])

    svc = StateEstimatorService(
        cfg,
        on_odometry=lambda o: odo_log.write(vars(o)),
        on_bias=lambda b: bias_log.write(vars(b)),
        on_latency=lambda d: lat_log.write(vars(d)),
        # log clock, scaled by --speed
        clock=lambda: t_log0 + (time.perf_counter() - t_wall0) * args.speed,
    )

    t_log0 = None
    t_wall0 = time.perf_counter()
    n = 0
    print(f"[main] replaying {args.log} at x{args.speed:.2f}")
    svc.start()
    try:
        for kind, vals in read_log(args.log):
            if t_log0 is None:
                t_log0 = vals[0]
                t_wall0 = time.perf_counter()
            wait = (vals[0] - t_log0) / args.speed - (time.perf_counter() - t_wall0)
            if wait > 0:
                time.sleep(wait)
            dispatch(svc, kind, vals)
            n += 1
        time.sleep(args.settle)
    except KeyboardInterrupt:
        print("\n[main] Stopping.")
    finally:
        svc.stop()
        for lg in (odo_log, bias_log, lat_log):
            lg.close()

    status = "FAILED" if svc.failed else "ok"
    print(f"[main] {n} rows replayed, {svc.smoother.index} states, status {status}")
    print(f"[main] drops imu={svc.imu_q.dropped} gps={svc.gps_q.dropped} odom={svc.odom_q.dropped}")


if __name__ == "__main__":
    main()
