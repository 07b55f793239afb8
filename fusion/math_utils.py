"""
Math Utilities Module

This module provides the input validation helpers and rotation primitives
shared across the fusion pipeline. It covers vector and point-batch
coercion, vector normalization, and the elemental yaw, pitch and roll
rotations together with their fixed-order Euler composition.

Every rotation accepts either a single point of shape (3,) or a batch of
points of shape (N, 3) and returns a float64 array of the same shape, so the
same call serves one laser return or a whole rotation worth of them.
Non-finite components (the NaN sentinel of a non-return) propagate through
the rotations untouched.
"""

import numpy as np

# Small numerical tolerance to prevent division by zero and handle
# degenerate edge cases like near-zero vector norms.
eps = 1e-12  # [dimensionless]


def _as_vector3(value, name):
    """
    Validate and convert an input into a flat 3-element float vector.

    :param value: Array-like input to convert into a 3D vector.
    :param name:  Human-readable parameter name, shown in error messages.

    :return: numpy array of shape (3,) with dtype float64.
    :raises ValueError: If the input does not contain exactly 3 elements.
    """
    # Convert the input to a numpy float array and flatten it to 1D
    vec = np.asarray(value, dtype=float).reshape(-1)

    # Check that the flattened array has exactly 3 elements
    if vec.size != 3:
        raise ValueError(f"{name} must be a 3D vector.")

    return vec


def _as_points(value, name, dtype=np.float32):
    """
    Validate and convert an input into an (N, 3) point buffer.

    Accepts an (N, 3) array-like, an empty sequence, or None. Empty inputs
    become a (0, 3) array so callers never need a special case for a frame
    without points.

    :param value: Array-like of points, or None.
    :param name:  Human-readable parameter name, shown in error messages.
    :param dtype: Output dtype, float32 for frame buffers.

    :return: numpy array of shape (N, 3).
    :raises ValueError: If the input cannot be viewed as rows of 3 components.
    """
    if value is None:
        return np.empty((0, 3), dtype=dtype)

    points = np.asarray(value, dtype=dtype)
    if points.size == 0:
        return np.empty((0, 3), dtype=dtype)

    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"{name} must be an (N, 3) point buffer.")
    return points


def _normalize(vec, fallback=(1.0, 0.0, 0.0)):
    """
    Normalize a vector to unit length, with a safe fallback for zero-length vectors.

    :param vec:      Input vector (array-like, any dimension).
    :param fallback: Direction to return when the input has near-zero norm.

    :return: Unit-length numpy vector in the same direction as the input.
    :raises ValueError: If both the input and fallback vectors have near-zero norm.
    """
    vec = np.asarray(vec, dtype=float)
    norm = np.linalg.norm(vec)

    if norm < eps:
        # The input vector is effectively zero, so switch to the fallback direction
        fallback = np.asarray(fallback, dtype=float)
        fallback_norm = np.linalg.norm(fallback)
        if fallback_norm < eps:
            raise ValueError("Fallback vector must be non-zero.")
        return fallback / fallback_norm

    return vec / norm


def _as_rotatable(point):
    """Return a float64 copy of a (3,) point or (N, 3) batch."""
    arr = np.array(point, dtype=float)
    if arr.shape[-1:] != (3,):
        raise ValueError("point must have 3 components along its last axis.")
    return arr


def yaw(point, a):
    """
    Rotate a point (or batch) by angle a in the x-y plane.

        x' = cos(a) * x - sin(a) * y
        y' = sin(a) * x + cos(a) * y
        z' = z

    :param point: Point of shape (3,) or batch of shape (N, 3).
    :param a:     Yaw angle [rad].
    :return: Rotated float64 array with the input shape.
    """
    src = _as_rotatable(point)
    out = src.copy()
    cos_a, sin_a = np.cos(a), np.sin(a)
    out[..., 0] = cos_a * src[..., 0] - sin_a * src[..., 1]
    out[..., 1] = sin_a * src[..., 0] + cos_a * src[..., 1]
    return out


def pitch(point, b):
    """
    Rotate a point (or batch) by angle b in the x-z plane.

        x' =  cos(b) * x + sin(b) * z
        z' = -sin(b) * x + cos(b) * z
        y' = y

    :param point: Point of shape (3,) or batch of shape (N, 3).
    :param b:     Pitch angle [rad].
    :return: Rotated float64 array with the input shape.
    """
    src = _as_rotatable(point)
    out = src.copy()
    cos_b, sin_b = np.cos(b), np.sin(b)
    out[..., 0] = cos_b * src[..., 0] + sin_b * src[..., 2]
    out[..., 2] = -sin_b * src[..., 0] + cos_b * src[..., 2]
    return out


def roll(point, c):
    """
    Rotate a point (or batch) by angle c in the y-z plane.

        y' = cos(c) * y - sin(c) * z
        z' = sin(c) * y + cos(c) * z
        x' = x

    :param point: Point of shape (3,) or batch of shape (N, 3).
    :param c:     Roll angle [rad].
    :return: Rotated float64 array with the input shape.
    """
    src = _as_rotatable(point)
    out = src.copy()
    cos_c, sin_c = np.cos(c), np.sin(c)
    out[..., 1] = cos_c * src[..., 1] - sin_c * src[..., 2]
    out[..., 2] = sin_c * src[..., 1] + cos_c * src[..., 2]
    return out


def rotate_euler_angles(point, a, b, c):
    """
    Apply yaw a, then pitch b, then roll c.

    The order is fixed; the elemental rotations do not commute.

    :param point: Point of shape (3,) or batch of shape (N, 3).
    :param a:     Yaw angle [rad].
    :param b:     Pitch angle [rad].
    :param c:     Roll angle [rad].
    :return: Rotated float64 array with the input shape.
    """
    return roll(pitch(yaw(point, a), b), c)
