"""
IMU preintegration between two estimator states.

Samples are folded into a single relative-motion summary (delta_R, delta_v,
delta_p, dt) expressed in the body frame at the start of the window and
corrected with the bias bound at reset(). The navigation frame is ENU with
gravity along -Up.

First-order Jacobians of the deltas with respect to the bias are carried along,
so predict() can re-bias the summary without integrating again:

    delta_R(b) = delta_R · Exp(dR_dbg · δbg)
    delta_v(b) = delta_v + dv_dba · δba + dv_dbg · δbg
    delta_p(b) = delta_p + dp_dba · δba + dp_dbg · δbg

Two long-lived instances exist at runtime: the smoother's window integrator
(reset every cycle) and the fast predictor's continuous integrator (reset
whenever a new correction arrives).
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

from rc_est.utils.math import Pose, skew, so3_exp, right_jacobian
from rc_est.utils.messages import EstimatedState, ImuBias


@dataclass
class PreintegratedDelta:
    delta_rotation: np.ndarray
    delta_velocity: np.ndarray
    delta_position: np.ndarray
    dt: float
    bias_hat: ImuBias
    # (accel, gyro, dt) triples in integration order
    measurements: List[Tuple[np.ndarray, np.ndarray, float]] = field(default_factory=list)


class Preintegrator:
    def __init__(self, gravity: float = 9.8, bias: Optional[ImuBias] = None):
        self.gravity = np.array([0.0, 0.0, -float(gravity)])
        self.reset(bias or ImuBias())

    def reset(self, bias: ImuBias) -> None:
        """Clear the accumulator and bind a new bias estimate."""
        self.bias_hat = bias.copy()
        self._dR = np.eye(3)
        self._dv = np.zeros(3)
        self._dp = np.zeros(3)
        self._dt = 0.0
        self._dR_dbg = np.zeros((3, 3))
        self._dv_dba = np.zeros((3, 3))
        self._dv_dbg = np.zeros((3, 3))
        self._dp_dba = np.zeros((3, 3))
        self._dp_dbg = np.zeros((3, 3))
        self._measurements: List[Tuple[np.ndarray, np.ndarray, float]] = []

    @property
    def dt(self) -> float:
        return self._dt

    @property
    def count(self) -> int:
        return len(self._measurements)

    def integrate(self, accel, gyro, dt: float) -> None:
        if not dt > 0.0:
            raise ValueError(f"integration step must be positive, got dt={dt}")
        accel = np.asarray(accel, dtype=float)
        gyro = np.asarray(gyro, dtype=float)
        a = accel - self.bias_hat.accel
        w = gyro - self.bias_hat.gyro
        dt2 = dt * dt

        phi = w * dt
        dR_inc = so3_exp(phi)
        Jr = right_jacobian(phi)
        R = self._dR
        R_aX = R @ skew(a)

        # bias Jacobians use the values from before this step
        self._dp_dba += self._dv_dba * dt - 0.5 * R * dt2
        self._dp_dbg += self._dv_dbg * dt - 0.5 * R_aX @ self._dR_dbg * dt2
        self._dv_dba -= R * dt
        self._dv_dbg -= R_aX @ self._dR_dbg * dt
        self._dR_dbg = dR_inc.T @ self._dR_dbg - Jr * dt

        acc_start = R @ a
        self._dp = self._dp + self._dv * dt + 0.5 * acc_start * dt2
        self._dv = self._dv + acc_start * dt
        self._dR = R @ dR_inc
        self._dt += dt
        self._measurements.append((accel.copy(), gyro.copy(), float(dt)))

    def delta(self) -> PreintegratedDelta:
        return PreintegratedDelta(
            delta_rotation=self._dR.copy(),
            delta_velocity=self._dv.copy(),
            delta_position=self._dp.copy(),
            dt=self._dt,
            bias_hat=self.bias_hat.copy(),
            measurements=list(self._measurements),
        )

    def _corrected(self, bias: ImuBias) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        dba = np.asarray(bias.accel, dtype=float) - self.bias_hat.accel
        dbg = np.asarray(bias.gyro, dtype=float) - self.bias_hat.gyro
        if not (dba.any() or dbg.any()):
            return self._dR, self._dv, self._dp
        dR = self._dR @ so3_exp(self._dR_dbg @ dbg)
        dv = self._dv + self._dv_dba @ dba + self._dv_dbg @ dbg
        dp = self._dp + self._dp_dba @ dba + self._dp_dbg @ dbg
        return dR, dv, dp

    def predict(self, base: EstimatedState, bias: ImuBias) -> EstimatedState:
        """Compose the accumulated delta onto base (pose, velocity)."""
        dR, dv, dp = self._corrected(bias)
        Ri = base.pose.rotation
        vi = np.asarray(base.velocity, dtype=float)
        T = self._dt
        rotation = Ri @ dR
        velocity = vi + self.gravity * T + Ri @ dv
        position = base.pose.position + vi * T + 0.5 * self.gravity * T * T + Ri @ dp
        return EstimatedState(t=base.t + T, pose=Pose(rotation, position),
                              velocity=velocity, bias=bias.copy())
