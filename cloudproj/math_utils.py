"""
Math Utilities Module

This module provides the elementwise geometry used by the range image
projection: the point validity classifier, the spherical transform
(azimuth and elevation angles), the Euclidean range of a point, and small
helpers for coercing optional scalar configuration values.

All functions accept either numpy arrays or plain scalars and follow numpy
broadcasting, so the same code classifies a single point or a whole cloud.
Angles keep the floating-point type of the input coordinates.
"""

import numpy as np


def is_point_valid(x, y, z):
    """
    Classify a point (or arrays of points) as a real sensor return.

    A point is valid when all three coordinates are finite (no NaN, no
    infinity) and at least one of them is non-zero. The all-zero point is
    the "no return" marker; zero-initialized output cells are therefore
    invalid without any extra occupancy flag.

    :param x: X coordinate(s).
    :param y: Y coordinate(s).
    :param z: Z coordinate(s).
    :return: Boolean (or boolean array with the broadcast shape of the inputs).
    """
    # Every coordinate must be a finite number
    finite = np.isfinite(x) & np.isfinite(y) & np.isfinite(z)

    # At least one coordinate must differ from exact zero
    non_zero = (x != 0) | (y != 0) | (z != 0)

    return finite & non_zero


def azimuth(x, y, z):
    """
    Horizontal angle around the sensor's vertical axis, atan2(y, x) in (-pi, pi].

    :param x: X coordinate(s).
    :param y: Y coordinate(s).
    :param z: Z coordinate(s), unused; kept so all transforms share one signature.
    :return: Azimuth angle(s) [rad].
    """
    return np.arctan2(y, x)


def elevation(x, y, z):
    """
    Vertical angle above the sensor's horizontal plane, atan2(z, hypot(x, y)).

    :param x: X coordinate(s).
    :param y: Y coordinate(s).
    :param z: Z coordinate(s).
    :return: Elevation angle(s) [rad] in [-pi/2, pi/2].
    """
    return np.arctan2(z, np.hypot(x, y))


def point_range(x, y, z):
    """Euclidean distance of the point(s) from the sensor origin [m]."""
    # Nested hypot avoids overflow of the intermediate squares
    return np.hypot(np.hypot(x, y), z)


def _optional_float(value, name):
    """
    Coerce an optional scalar configuration value to float.

    None stays None ("unset"). Anything else must convert to a float.

    :param value: Raw configuration value.
    :param name:  Human-readable parameter name, shown in error messages.
    :return: float or None.
    :raises ValueError: If the value cannot be interpreted as a number.
    """
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number or None, got {value!r}.") from exc


def _image_size(value, name):
    """
    Coerce an image size configuration value to a non-negative int.

    :param value: Raw configuration value, 0 meaning "same as input".
    :param name:  Parameter name, shown in error messages.
    :return: int >= 0.
    :raises ValueError: If the value is not a whole number or is negative.
    """
    try:
        size = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}.") from exc
    if isinstance(value, (float, np.floating)) and size != value:
        raise ValueError(f"{name} must be a whole number of pixels, got {value!r}.")
    if size < 0:
        raise ValueError(f"{name} must be >= 0.")
    return size


def _resolve_scale(configured, default):
    """
    Pick an angle-to-pixel scale: the configured one if finite and non-zero, else the default.

    :param configured: Configured scale or None.
    :param default:    Geometry-derived default scale.
    :return: Effective scale [px/rad].
    """
    if configured is not None and np.isfinite(configured) and configured != 0.0:
        return float(configured)
    return float(default)


def _resolve_offset(configured, default):
    """
    Pick a pixel offset: the configured one if finite, else the default.

    :param configured: Configured offset or None.
    :param default:    Geometry-derived default offset.
    :return: Effective offset [px].
    """
    if configured is not None and np.isfinite(configured):
        return float(configured)
    return float(default)
