"""
Local East-North-Up projection of geodetic fixes.

The origin is either fixed at construction or taken from the first fix that is
projected (or explicitly reset once). It never moves afterwards.
"""
from typing import Optional, Tuple

import pymap3d as pm

Geodetic = Tuple[float, float, float]


class OriginAlreadySetError(RuntimeError):
    pass


class GeodeticProjector:
    def __init__(self, origin: Optional[Geodetic] = None):
        self._origin: Optional[Geodetic] = None
        if origin is not None:
            self.reset(*origin)

    @property
    def has_origin(self) -> bool:
        return self._origin is not None

    @property
    def origin(self) -> Optional[Geodetic]:
        return self._origin

    def reset(self, latitude: float, longitude: float, altitude: float) -> None:
        if self._origin is not None:
            raise OriginAlreadySetError(f"tangent-plane origin already set to {self._origin}")
        self._origin = (float(latitude), float(longitude), float(altitude))

    def forward(self, latitude: float, longitude: float, altitude: float) -> Tuple[float, float, float]:
        """WGS-84 geodetic -> (E, N, U) metres about the origin."""
        if self._origin is None:
            self.reset(latitude, longitude, altitude)
        lat0, lon0, alt0 = self._origin
        e, n, u = pm.geodetic2enu(latitude, longitude, altitude, lat0, lon0, alt0)
        return float(e), float(n), float(u)
