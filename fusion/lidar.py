"""
LiDAR Frame Builder

This module turns one rotation worth of raw laser returns into a Cartesian
point buffer in the LiDAR's local frame. The conversion covers degree to
radian handling, the spherical to Cartesian mapping used by rotating
Velodyne sensors (azimuth measured from +Y towards +X), substitution of
non-returns with a NaN sentinel, and the fixed mounting correction.

The primary entry point is:
    LidarFrameBuilder.build()    Raw returns -> (N, 3) float32 frame buffer.
"""

import logging
from dataclasses import dataclass

import numpy as np

from .Config import FrameBuilderConfig
from .math_utils import rotate_euler_angles

logger = logging.getLogger(__name__)

# Structured layout of one decoded laser return. Batches of returns travel
# between the capture boundary and the frame builder in this layout.
LASER_RETURN_DTYPE = np.dtype(
    [
        ("distance", np.float64),  # [scene units] radial distance
        ("azimuth", np.float64),  # [deg] rotation angle, [0, 360)
        ("vertical", np.float64),  # [deg] channel elevation
        ("intensity", np.uint8),  # [arb] calibrated reflectivity
        ("laser_id", np.uint8),  # channel index within the firing sequence
    ]
)


@dataclass(frozen=True)
class LaserReturn:
    """
    One polar detection from a rotating LiDAR channel.

    :param distance:  Radial distance [scene units]; 0 means no return.
    :param azimuth:   Rotation angle [deg], in [0, 360).
    :param vertical:  Channel elevation angle [deg].
    :param intensity: Calibrated reflectivity [arb].
    :param laser_id:  Channel index within the firing sequence.
    """
    distance: float
    azimuth: float
    vertical: float
    intensity: int = 0
    laser_id: int = 0


def as_laser_returns(returns):
    """
    Coerce a batch of returns into a LASER_RETURN_DTYPE structured array.

    Accepts an existing structured array (returned as is when the dtype
    already matches), a sequence of LaserReturn, or a sequence of
    (distance, azimuth, vertical[, intensity[, laser_id]]) tuples.

    :param returns: Batch of returns, possibly empty or None.
    :return: 1D structured numpy array.
    """
    if returns is None:
        return np.empty(0, dtype=LASER_RETURN_DTYPE)

    if isinstance(returns, np.ndarray) and returns.dtype.names is not None:
        if returns.dtype == LASER_RETURN_DTYPE:
            return returns.reshape(-1)
        batch = np.zeros(returns.size, dtype=LASER_RETURN_DTYPE)
        for field in LASER_RETURN_DTYPE.names:
            if field in returns.dtype.names:
                batch[field] = returns[field].reshape(-1)
        return batch

    rows = []
    for item in returns:
        if isinstance(item, LaserReturn):
            rows.append((item.distance, item.azimuth, item.vertical, item.intensity, item.laser_id))
        else:
            values = tuple(item)
            if len(values) < 3:
                raise ValueError("each laser return needs at least distance, azimuth and vertical.")
            rows.append(values + (0, 0)[: 5 - len(values)])
    return np.array(rows, dtype=LASER_RETURN_DTYPE)


def valid_point_mask(points):
    """
    Flag the rows of a point buffer that carry a real detection.

    A row is valid when all three components are finite, so both the NaN
    non-return sentinel and any overflow are excluded.

    :param points: (N, 3) point buffer.
    :return: Boolean array of shape (N,).
    """
    points = np.asarray(points)
    if points.size == 0:
        return np.zeros(0, dtype=bool)
    return np.all(np.isfinite(points), axis=1)


class LidarFrameBuilder:
    """
    Spherical to Cartesian converter for one LiDAR rotation.

    Built from a FrameBuilderConfig (or any object exposing the same
    attributes). Stateless between frames: every call to build() allocates
    a fresh buffer.
    """
    def __init__(self, config=FrameBuilderConfig):
        """
        Initialize the builder from a configuration object.

        :param config: Class or instance with FrameBuilderConfig-compatible attributes.
        """
        # ---------- mounting correction ----------
        self.mount_yaw = float(getattr(config, "mount_yaw", 0.0))  # [rad]
        self.mount_pitch = float(getattr(config, "mount_pitch", 0.0))  # [rad]
        self.mount_roll = float(getattr(config, "mount_roll", 0.0))  # [rad]
        for label, angle in (("mount_yaw", self.mount_yaw), ("mount_pitch", self.mount_pitch), ("mount_roll", self.mount_roll)):
            if not np.isfinite(angle):
                raise ValueError(f"{label} must be finite.")

    def to_cartesian(self, returns):
        """
        Convert raw returns to Cartesian points without the mounting correction.

        Spherical mapping (angles converted from degrees):
            x = distance * cos(vertical) * sin(azimuth)
            y = distance * cos(vertical) * cos(azimuth)
            z = distance * sin(vertical)

        Rows that come out as exactly (0, 0, 0) are replaced by NaN in all
        three components.

        :param returns: Batch of returns (see as_laser_returns).
        :return: (N, 3) float32 array.
        """
        batch = as_laser_returns(returns)
        if batch.size == 0:
            return np.empty((0, 3), dtype=np.float32)

        distance = batch["distance"].astype(np.float64)
        azimuth = np.deg2rad(batch["azimuth"].astype(np.float64))  # [rad]
        vertical = np.deg2rad(batch["vertical"].astype(np.float64))  # [rad]

        horizontal = distance * np.cos(vertical)  # projection onto the x-y plane
        points = np.empty((batch.size, 3), dtype=np.float32)
        points[:, 0] = horizontal * np.sin(azimuth)
        points[:, 1] = horizontal * np.cos(azimuth)
        points[:, 2] = distance * np.sin(vertical)

        # A return at the sensor origin is indistinguishable from no return.
        degenerate = np.all(points == 0.0, axis=1)
        points[degenerate] = np.nan
        return points

    def build(self, returns):
        """
        Produce the LiDAR frame buffer for one rotation.

        The output keeps one row per input return, in input order, so its
        length always equals the batch length. An empty batch yields an
        empty (0, 3) buffer, which callers treat as "no data this tick".

        :param returns: Batch of returns (see as_laser_returns).
        :return: (N, 3) float32 array in the LiDAR frame.
        """
        points = self.to_cartesian(returns)
        if points.shape[0] == 0:
            return points

        corrected = rotate_euler_angles(points, self.mount_yaw, self.mount_pitch, self.mount_roll)
        frame = corrected.astype(np.float32)
        logger.debug("Built LiDAR frame with %d points (%d valid)", frame.shape[0], int(valid_point_mask(frame).sum()))
        return frame
