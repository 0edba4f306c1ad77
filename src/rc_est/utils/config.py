from dataclasses import dataclass, field, fields
from typing import Any, Dict
import yaml


def load_yaml(path: str) -> Dict[str, Any]:
    with open(path, 'r') as f: return yaml.safe_load(f) or {}


# -------------------- Sections --------------------

@dataclass
class NoiseConfig:
    # Priors on the first state
    initial_rotation_noise: float = 1.0
    initial_velocity_noise: float = 0.1
    initial_bias_noise_acc: float = 1e-1
    initial_bias_noise_gyro: float = 1e-2
    # IMU white noise and bias random walk (continuous time)
    accel_sigma: float = 6.0e-2
    gyro_sigma: float = 2.0e-2
    accel_bias_sigma: float = 2.0e-4
    gyro_bias_sigma: float = 3.0e-5
    integration_sigma: float = 3.16e-3
    gps_sigma: float = 0.07


@dataclass
class ImuConfig:
    # Sign inversion per axis, applied to accel and gyro alike
    invert_x: bool = False
    invert_y: bool = False
    invert_z: bool = False
    imu_dt: float = 1.0 / 200.0     # only used when a first dt cannot be computed
    gravity: float = 9.8


@dataclass
class ExtrinsicsConfig:
    # body_P_sensor
    sensor_x: float = 0.0
    sensor_y: float = 0.0
    sensor_z: float = 0.0
    sensor_x_angle: float = 0.0
    sensor_y_angle: float = 0.0
    sensor_z_angle: float = 0.0
    # vehicle body frame rotation offset
    car_x_angle: float = 0.0
    car_y_angle: float = 0.0
    car_z_angle: float = 0.0
    # IMU -> GPS antenna lever arm
    gps_x: float = 0.0
    gps_y: float = 0.0
    gps_z: float = 0.0


@dataclass
class OriginConfig:
    fixed: bool = False
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0


@dataclass
class InitialPoseConfig:
    fixed: bool = False
    roll: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0


@dataclass
class QueueConfig:
    imu: int = 400
    gps: int = 40
    odom: int = 100
    fast_buffer: int = 2000


@dataclass
class EstimatorConfig:
    noise: NoiseConfig = field(default_factory=NoiseConfig)
    imu: ImuConfig = field(default_factory=ImuConfig)
    extrinsics: ExtrinsicsConfig = field(default_factory=ExtrinsicsConfig)
    origin: OriginConfig = field(default_factory=OriginConfig)
    initial_pose: InitialPoseConfig = field(default_factory=InitialPoseConfig)
    queues: QueueConfig = field(default_factory=QueueConfig)
    gps_skip: int = 5
    smoother_rate_hz: float = 10.0

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "EstimatorConfig":
        sections = {
            "noise": NoiseConfig, "imu": ImuConfig, "extrinsics": ExtrinsicsConfig,
            "origin": OriginConfig, "initial_pose": InitialPoseConfig, "queues": QueueConfig,
        }
        known = {f.name for f in fields(cls)}
        unknown = set(cfg) - known
        if unknown:
            raise ValueError(f"unknown config keys: {sorted(unknown)}")
        kwargs: Dict[str, Any] = {name: sec(**(cfg.get(name) or {})) for name, sec in sections.items()}
        if "gps_skip" in cfg:
            kwargs["gps_skip"] = int(cfg["gps_skip"])
        if "smoother_rate_hz" in cfg:
            kwargs["smoother_rate_hz"] = float(cfg["smoother_rate_hz"])
        return cls(**kwargs)


def load_config(path: str) -> EstimatorConfig:
    return EstimatorConfig.from_dict(load_yaml(path))
