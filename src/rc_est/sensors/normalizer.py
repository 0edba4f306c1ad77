from dataclasses import dataclass
from typing import Tuple
import numpy as np

from rc_est.utils.messages import RawImuSample, NormalizedImu


@dataclass(frozen=True)
class AxisInversion:
    x: bool = False
    y: bool = False
    z: bool = False

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=bool)


def normalize(accel, gyro, invert: AxisInversion) -> Tuple[np.ndarray, np.ndarray]:
    """Negate the flagged axes of both triples; others are copied unchanged."""
    flags = invert.as_array()
    acc = np.array(accel, dtype=float)
    gyr = np.array(gyro, dtype=float)
    acc[flags] = -acc[flags]
    gyr[flags] = -gyr[flags]
    return acc, gyr


class SensorNormalizer:
    """Applies the configured per-axis sign correction to raw inertial samples."""
    def __init__(self, invert: AxisInversion = AxisInversion()):
        self.invert = invert

    def __call__(self, sample: RawImuSample) -> NormalizedImu:
        acc, gyr = normalize(sample.accel, sample.gyro, self.invert)
        return NormalizedImu(t=sample.t, accel=acc, gyro=gyr)
