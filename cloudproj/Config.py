from enum import IntEnum

import numpy as np


class KeepPolicy(IntEnum):
    """Which point survives when several points fall into the same output pixel."""
    KEEP_FIRST = 0     # first valid point in scan order
    KEEP_LAST = 1      # last point in scan order
    KEEP_CLOSEST = 2   # smallest range, earlier point on ties
    KEEP_FARTHEST = 3  # largest range, earlier point on ties

    @classmethod
    def parse(cls, value):
        """
        Interpret a keep policy given as enum member, integer, or name.

        Names are case-insensitive and may omit the "keep_" prefix, so
        "KEEP_CLOSEST", "keep_closest" and "closest" are all accepted.

        :param value: KeepPolicy, int, or str.
        :return: KeepPolicy member.
        :raises ValueError: If the value does not name a policy.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip().upper()
            if not key.startswith("KEEP_"):
                key = "KEEP_" + key
            try:
                return cls[key]
            except KeyError:
                raise ValueError(f"Unknown keep policy {value!r}.") from None
        if isinstance(value, (bool, np.bool_)):
            raise ValueError(f"Unknown keep policy {value!r}.")
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Unknown keep policy {value!r}.") from None
        # Non-integral numbers are rejected, not truncated
        if number != value or number not in [member.value for member in cls]:
            raise ValueError(f"Unknown keep policy {value!r}.")
        return cls(number)

    @property
    def needs_range(self):
        return self in (KeepPolicy.KEEP_CLOSEST, KeepPolicy.KEEP_FARTHEST)

    def replaces(self, existing_valid, existing_range, candidate_range):
        """
        Per-pixel decision of the sequential rasterizer.

        :param existing_valid:  Whether the target pixel already holds a valid point.
        :param existing_range:  Range of the point in the pixel [m] (ignored if invalid).
        :param candidate_range: Range of the incoming point [m].
        :return: True if the incoming point overwrites the pixel.
        """
        if self is KeepPolicy.KEEP_LAST or not existing_valid:
            return True
        if self is KeepPolicy.KEEP_FIRST:
            return False
        if self is KeepPolicy.KEEP_CLOSEST:
            return candidate_range < existing_range
        return candidate_range > existing_range

    def sort_keys(self, scan_index, ranges=None):
        """
        Keys for np.lexsort that put each pixel's winner first among its candidates.

        np.lexsort treats the last key as primary; the caller appends the
        pixel index as the outermost key. Scan index is always the final
        tie-breaker so that equal ranges keep the earlier point.

        :param scan_index: Flat row-major input index of each candidate.
        :param ranges:     Range of each candidate [m], required for closest/farthest.
        :return: Tuple of key arrays, least significant first.
        """
        if self is KeepPolicy.KEEP_FIRST:
            return (scan_index,)
        if self is KeepPolicy.KEEP_LAST:
            return (-scan_index,)
        if ranges is None:
            raise ValueError(f"{self.name} needs candidate ranges.")
        if self is KeepPolicy.KEEP_CLOSEST:
            return (scan_index, ranges)
        return (scan_index, -ranges)


class ProjectionConfig:
    # Output geometry, 0 derives the size from the input cloud
    height = 0  # [px] rows, ignored in azimuth-only mode
    width = 0  # [px] columns

    # Angle to pixel mapping:
    # u = f_azimuth * azimuth + c_azimuth + 0.5
    # v = f_elevation * elevation + c_elevation + 0.5
    f_azimuth = None  # [px/rad], if None uses -width / (2 pi)
    f_elevation = None  # [px/rad], if None uses -height / (pi / 2)
    c_azimuth = None  # [px], if None uses width / 2 - 0.5
    c_elevation = None  # [px], if None uses height / 2 - 0.5

    # Pixel collision policy
    keep = KeepPolicy.KEEP_LAST

    # Keep the input row as output row, project only the azimuth
    azimuth_only = False

    # Floating-point type for the geometry, None uses the x/y/z field type
    coordinate_dtype = None
