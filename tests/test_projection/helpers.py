"""
Shared test helpers for the projection test suite.

Provides plot embedding for the HTML report, a builder for clouds whose
points carry identifying non-coordinate fields, and a point-by-point
reference rasterizer that the vectorized implementation is checked against.
"""

import base64
import io

import numpy as np

from cloudproj.cloud import FLOAT32, UINT16, UINT32, CloudHeader, PointCloud, create_cloud, make_fields
from cloudproj.math_utils import azimuth, elevation, is_point_valid, point_range

# Record size of tagged clouds: float64 fields end at byte 34, so float32 and
# float64 records both carry padding
TAGGED_POINT_STEP = 40


def attach_plot_to_html_report(request, fig, name):
    """
    Embed a matplotlib figure into the pytest HTML report as an inline PNG.

    Does nothing when the pytest-html plugin is not active.

    :param request: the pytest ``request`` fixture
    :param fig:     a ``matplotlib.figure.Figure`` to embed
    :param name:    short label shown beside the image in the report
    """
    buf = io.BytesIO()
    fig.savefig(buf, format="png", dpi=160)

    html_plugin = request.config.pluginmanager.getplugin("html")
    if html_plugin is not None and hasattr(html_plugin, "extras"):
        png_b64 = base64.b64encode(buf.getvalue()).decode("ascii")
        extra = getattr(request.node, "extra", [])
        extra.append(html_plugin.extras.png(png_b64, name=name))
        request.node.extra = extra


def tagged_fields(datatype=FLOAT32):
    """x, y, z of the given float type followed by intensity, ring and a unique tag."""
    return make_fields(
        ("x", datatype),
        ("y", datatype),
        ("z", datatype),
        ("intensity", FLOAT32),
        ("ring", UINT16),
        ("tag", UINT32),
    )


def make_tagged_cloud(xyz, height=1, datatype=FLOAT32, is_bigendian=False, header=None, is_dense=False):
    """
    Build a cloud from (N, 3) coordinates where every point is identifiable.

    Point k (row-major) gets tag = k + 1, intensity = 0.5 * k and
    ring = its input row, so the origin of every output record can be
    traced back.

    :param xyz:          Array-like of shape (N, 3).
    :param height:       Input rows; N must be divisible by it.
    :param datatype:     FLOAT32 or FLOAT64 for the coordinate fields.
    :param is_bigendian: Byte order of the buffer.
    :param header:       Optional CloudHeader.
    :param is_dense:     Density flag.
    :return: PointCloud with TAGGED_POINT_STEP-byte records.
    """
    xyz = np.asarray(xyz, dtype=float).reshape(-1, 3)
    n = xyz.shape[0]
    width = n // height
    points = [
        (x, y, z, 0.5 * k, k // width, k + 1)
        for k, (x, y, z) in enumerate(xyz)
    ]
    return create_cloud(
        header if header is not None else CloudHeader(frame_id="lidar", stamp=0.0),
        tagged_fields(datatype),
        points,
        height=height,
        point_step=TAGGED_POINT_STEP,
        is_bigendian=is_bigendian,
        is_dense=is_dense,
    )


def point_at(azimuth_angle, elevation_angle, distance):
    """Cartesian coordinates of a point at the given spherical position."""
    cos_el = np.cos(elevation_angle)
    return (
        distance * cos_el * np.cos(azimuth_angle),
        distance * cos_el * np.sin(azimuth_angle),
        distance * np.sin(elevation_angle),
    )


def random_cloud(rng, height, width, datatype=FLOAT32, invalid_fraction=0.1, duplicate_fraction=0.2):
    """
    Random tagged cloud with invalid returns and exact duplicate coordinates.

    Duplicates produce equal ranges in the same pixel, which exercises the
    tie rules of the keep policies.
    """
    n = height * width
    xyz = rng.uniform(-20.0, 20.0, size=(n, 3))

    # Knock out some returns: zeros, NaNs and infinities
    bad = rng.random(n) < invalid_fraction
    kinds = rng.integers(0, 3, size=n)
    xyz[bad & (kinds == 0)] = 0.0
    xyz[bad & (kinds == 1), 0] = np.nan
    xyz[bad & (kinds == 2), 2] = np.inf

    # Copy coordinates of earlier points onto later ones
    dup = np.flatnonzero(rng.random(n) < duplicate_fraction)
    for k in dup:
        if k > 0:
            xyz[k] = xyz[rng.integers(0, k)]

    return make_tagged_cloud(xyz, height=height, datatype=datatype)


def reference_project(cloud, projection):
    """
    Point-by-point rasterizer used as ground truth.

    Visits input points in row-major order, reads the current content of
    the target pixel back from the output buffer, and lets
    KeepPolicy.replaces() decide whether to overwrite it.

    :param cloud:      Input PointCloud.
    :param projection: Configured cloudproj.projection.Projection.
    :return: Output PointCloud.
    """
    params = projection.resolve(cloud)
    output = PointCloud.empty_like(cloud, params.height, params.width)
    dtype = cloud.coordinate_dtype() if projection.coordinate_dtype is None else projection.coordinate_dtype
    scalar = dtype.type

    x, y, z = cloud.xyz(dtype)
    source_records = cloud.records()
    target_records = output.records()
    target_view = output.as_array()

    for i_in in range(cloud.height):
        for j_in in range(cloud.width):
            px, py, pz = x[i_in, j_in], y[i_in, j_in], z[i_in, j_in]
            if not is_point_valid(px, py, pz):
                continue

            u = float(params.column_coordinate(azimuth(px, py, pz)))
            if np.isnan(u) or u < 0 or u >= params.width:
                continue
            j_out = int(np.floor(u))

            if projection.azimuth_only:
                i_out = i_in
                if i_out >= params.height:
                    continue
            else:
                v = float(params.row_coordinate(elevation(px, py, pz)))
                if np.isnan(v) or v < 0 or v >= params.height:
                    continue
                i_out = int(np.floor(v))

            existing = target_view[i_out, j_out]
            ex, ey, ez = scalar(existing["x"]), scalar(existing["y"]), scalar(existing["z"])
            if not projection.keep.replaces(
                bool(is_point_valid(ex, ey, ez)),
                point_range(ex, ey, ez),
                point_range(px, py, pz),
            ):
                continue

            target_records[i_out * params.width + j_out] = source_records[i_in * cloud.width + j_in]

    return output


def tags_of(cloud):
    """(height, width) array of tags, 0 for empty pixels."""
    return cloud.field_values("tag")
