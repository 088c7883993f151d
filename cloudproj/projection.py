"""
Spherical Range Image Projection

This module turns a structured point cloud into a range image: every point
is mapped to spherical coordinates (azimuth, elevation), the angles are
mapped affinely onto continuous pixel coordinates, and the point's complete
record is copied into the pixel it falls into. Degenerate points, points
outside the image, and points losing a pixel collision are dropped silently.
Pixels that receive no point keep all-zero bytes, which reads back as an
invalid ("no return") point.

The primary entry points are:
    Projection.resolve()    Output size and angle-to-pixel constants for a cloud.
    Projection.project()    Full projection of one cloud into a new cloud.
    project()               One-shot helper building a Projection from a config.
"""

import logging
from dataclasses import dataclass

import numpy as np

from .Config import KeepPolicy, ProjectionConfig
from .cloud import InvalidGeometryError, PointCloud
from .math_utils import (
    _image_size,
    _optional_float,
    _resolve_offset,
    _resolve_scale,
    azimuth,
    elevation,
    is_point_valid,
    point_range,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectionParameters:
    """
    Effective output geometry and angle-to-pixel mapping for one projection call.

    Continuous pixel coordinates follow
        u = f_azimuth * azimuth + c_azimuth + 0.5
        v = f_elevation * elevation + c_elevation + 0.5
    where the + 0.5 moves the [-0.5, 0.5) pixel footprint onto [0, 1), so that
    floor(u) and floor(v) are the column and row indices.

    :param height:      Output rows [px].
    :param width:       Output columns [px].
    :param f_azimuth:   Azimuth scale [px/rad].
    :param f_elevation: Elevation scale [px/rad].
    :param c_azimuth:   Azimuth offset [px].
    :param c_elevation: Elevation offset [px].
    """
    height: int
    width: int
    f_azimuth: float
    f_elevation: float
    c_azimuth: float
    c_elevation: float

    def column_coordinate(self, azimuth_angle):
        """Continuous column coordinate u for azimuth angle(s), in the angle's float type."""
        angle = np.asarray(azimuth_angle)
        scalar = angle.dtype.type if angle.dtype.kind == "f" else np.float64
        return angle * scalar(self.f_azimuth) + scalar(self.c_azimuth) + scalar(0.5)

    def row_coordinate(self, elevation_angle):
        """Continuous row coordinate v for elevation angle(s), in the angle's float type."""
        angle = np.asarray(elevation_angle)
        scalar = angle.dtype.type if angle.dtype.kind == "f" else np.float64
        return angle * scalar(self.f_elevation) + scalar(self.c_elevation) + scalar(0.5)

    def pixel_coordinates(self, azimuth_angle, elevation_angle):
        """
        Continuous (u, v) pixel coordinates of the given angles.

        :param azimuth_angle:   Azimuth angle(s) [rad].
        :param elevation_angle: Elevation angle(s) [rad].
        :return: Tuple (u, v).
        """
        return self.column_coordinate(azimuth_angle), self.row_coordinate(elevation_angle)


class Projection:
    """
    Configurable point cloud to range image projection.

    Built from a ProjectionConfig (or any object exposing the same
    attributes). Holds no state between calls; every call to project()
    allocates and returns a fresh output cloud.
    """
    def __init__(self, config=ProjectionConfig):
        """
        Initialize the projection from a configuration object.

        :param config: Class or instance with ProjectionConfig-compatible attributes.
        """
        # ---------- output geometry ----------
        self.height = _image_size(getattr(config, "height", 0), "height")  # [px] 0 = input height
        self.width = _image_size(getattr(config, "width", 0), "width")     # [px] 0 = input width

        # ---------- angle to pixel mapping (None = derive from geometry) ----------
        self.f_azimuth = _optional_float(getattr(config, "f_azimuth", None), "f_azimuth")        # [px/rad]
        self.f_elevation = _optional_float(getattr(config, "f_elevation", None), "f_elevation")  # [px/rad]
        self.c_azimuth = _optional_float(getattr(config, "c_azimuth", None), "c_azimuth")        # [px]
        self.c_elevation = _optional_float(getattr(config, "c_elevation", None), "c_elevation")  # [px]
        for name in ("f_azimuth", "f_elevation"):
            value = getattr(self, name)
            if value is not None and not (np.isfinite(value) and value != 0.0):
                logger.warning(f"{name}={value} is not a usable scale, falling back to the default.")
        for name in ("c_azimuth", "c_elevation"):
            value = getattr(self, name)
            if value is not None and not np.isfinite(value):
                logger.warning(f"{name}={value} is not finite, falling back to the default.")

        # ---------- point selection ----------
        self.keep = KeepPolicy.parse(getattr(config, "keep", KeepPolicy.KEEP_LAST))
        self.azimuth_only = bool(getattr(config, "azimuth_only", False))
        if self.azimuth_only and self.height != 0:
            logger.warning(
                f"height={self.height} is ignored in azimuth-only mode; "
                f"the output keeps the input rows."
            )

        # ---------- geometry float type ----------
        raw_dtype = getattr(config, "coordinate_dtype", None)
        self.coordinate_dtype = None if raw_dtype is None else np.dtype(raw_dtype)
        if self.coordinate_dtype is not None and self.coordinate_dtype.kind != "f":
            raise ValueError(f"coordinate_dtype must be a floating-point type, got {self.coordinate_dtype}.")

    def resolve(self, cloud):
        """
        Resolve output size and mapping constants for an input cloud.

        :param cloud: Input PointCloud.
        :return: ProjectionParameters.
        :raises InvalidGeometryError: If the resolved output would be empty.
        """
        height = cloud.height if (self.azimuth_only or self.height == 0) else self.height
        width = cloud.width if self.width == 0 else self.width
        if height < 1:
            raise InvalidGeometryError(f"Output height must be >= 1, got {height}.")
        if width < 1:
            raise InvalidGeometryError(f"Output width must be >= 1, got {width}.")

        return ProjectionParameters(
            height=height,
            width=width,
            f_azimuth=_resolve_scale(self.f_azimuth, -width / (2.0 * np.pi)),
            f_elevation=_resolve_scale(self.f_elevation, -height / (np.pi / 2.0)),
            c_azimuth=_resolve_offset(self.c_azimuth, width / 2.0 - 0.5),
            c_elevation=_resolve_offset(self.c_elevation, height / 2.0 - 0.5),
        )

    def _select_winners(self, cells, scan_index, ranges):
        """
        Pick one candidate per output pixel according to the keep policy.

        Candidates are sorted by pixel, then by the policy key, then by scan
        order; the first candidate of every pixel run is the winner. This
        reproduces the pixel contents of visiting the points one by one in
        scan order and applying KeepPolicy.replaces() against each pixel.

        :param cells:      Flat output pixel index of each candidate.
        :param scan_index: Flat input point index of each candidate (ascending).
        :param ranges:     Range of each candidate [m], or None if the policy ignores range.
        :return: Positions (into the candidate arrays) of the winners.
        """
        if cells.size == 0:
            return np.empty(0, dtype=np.intp)

        order = np.lexsort(self.keep.sort_keys(scan_index, ranges) + (cells,))
        sorted_cells = cells[order]

        # A run of equal pixel indices starts wherever the index changes.
        run_start = np.empty(order.size, dtype=bool)
        run_start[0] = True
        np.not_equal(sorted_cells[1:], sorted_cells[:-1], out=run_start[1:])
        return order[run_start]

    def project(self, cloud):
        """
        Project a structured point cloud into a range image.

        Steps, per input point in row-major scan order:
        1. Drop points that are non-finite or exactly (0, 0, 0).
        2. Map azimuth to column u, drop if u is not in [0, width).
        3. Map elevation to row v and drop if v is not in [0, height), or in
           azimuth-only mode keep the input row.
        4. Resolve pixel collisions with the keep policy.
        5. Copy the winning point's full record into its pixel.

        :param cloud: Input PointCloud, left unmodified.
        :return: New PointCloud with the resolved height and width and the
                 same record layout as the input.
        :raises InvalidGeometryError: If the input geometry or the resolved
                 output geometry is unusable. Nothing is written in that case.
        """
        if not hasattr(cloud, "records") or not hasattr(cloud, "xyz"):
            raise TypeError("cloud must provide the PointCloud interface (xyz(), records()).")

        cloud.validate()
        declared_dtype = cloud.coordinate_dtype()
        dtype = declared_dtype if self.coordinate_dtype is None else self.coordinate_dtype
        params = self.resolve(cloud)
        logger.debug(
            f"Projecting {cloud.height}x{cloud.width} cloud onto {params.height}x{params.width} "
            f"(f_az={params.f_azimuth:.6g}, f_el={params.f_elevation:.6g}, "
            f"c_az={params.c_azimuth:.6g}, c_el={params.c_elevation:.6g}, "
            f"keep={self.keep.name}, azimuth_only={self.azimuth_only}, dtype={dtype})"
        )

        output = PointCloud.empty_like(cloud, params.height, params.width)

        x, y, z = (values.reshape(-1) for values in cloud.xyz(dtype))
        valid = is_point_valid(x, y, z)

        # NaN coordinates only ever reach the comparisons below, which reject them.
        with np.errstate(invalid="ignore"):
            u = params.column_coordinate(azimuth(x, y, z))
            in_frame = valid & (u >= 0) & (u < params.width)

            if self.azimuth_only:
                rows_in = np.arange(x.size) // cloud.width
                in_frame &= rows_in < params.height
            else:
                v = params.row_coordinate(elevation(x, y, z))
                in_frame &= (v >= 0) & (v < params.height)

        scan_index = np.flatnonzero(in_frame)
        cols = np.floor(u[scan_index]).astype(np.int64)
        if self.azimuth_only:
            rows = rows_in[scan_index].astype(np.int64)
        else:
            rows = np.floor(v[scan_index]).astype(np.int64)
        cells = rows * params.width + cols

        ranges = None
        if self.keep.needs_range:
            ranges = point_range(x[scan_index], y[scan_index], z[scan_index])

        winners = self._select_winners(cells, scan_index, ranges)
        output.copy_records(cloud, scan_index[winners], cells[winners])

        logger.debug(
            f"Projection done: {int(valid.sum())}/{x.size} valid, {scan_index.size} in frame, "
            f"{winners.size} pixels written."
        )
        return output


def project(cloud, config=ProjectionConfig):
    """
    Project a cloud with a one-off Projection built from ``config``.

    :param cloud:  Input PointCloud.
    :param config: Class or instance with ProjectionConfig-compatible attributes.
    :return: Projected PointCloud.
    """
    return Projection(config=config).project(cloud)
