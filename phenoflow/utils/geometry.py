"""Geometry utilities for AOI processing."""
import math
from functools import lru_cache

import geopandas as gpd
import numpy as np
import shapely
from pyproj import Transformer
from shapely.geometry import MultiPolygon, Polygon, box, shape


def load_geojson(geojson_path):
    """
    Load an AOI file and return geometry and area.

    Args:
        geojson_path: Path to GeoJSON (or any format geopandas can read)

    Returns:
        tuple: (geometry_object, geojson_dict, area_sqkm)
    """
    gdf = gpd.read_file(geojson_path)
    gdf = gdf.to_crs(epsg=4326)
    aoi_geom = gdf.geometry.union_all()
    aoi_geojson = aoi_geom.__geo_interface__

    # Calculate area in sq km using equal-area CRS
    gdf_equal_area = gdf.to_crs(epsg=6933)  # World Cylindrical Equal Area
    area_sqkm = gdf_equal_area.area.sum() / 1e6

    return aoi_geom, aoi_geojson, area_sqkm


def as_polygon(geometry):
    """
    Coerce a GeoJSON dict or shapely geometry into a single Polygon.

    MultiPolygons collapse to their largest part.
    """
    geom = geometry if hasattr(geometry, "geom_type") else shape(geometry)
    if isinstance(geom, MultiPolygon):
        geom = max(geom.geoms, key=lambda g: g.area)
    if not isinstance(geom, Polygon):
        raise ValueError(f"AOI must be a Polygon, got {geom.geom_type}")
    return geom


def utm_epsg_for(lon, lat):
    """EPSG code of the UTM zone containing (lon, lat), with the Norway/Svalbard exceptions."""
    zone = int((lon + 180) / 6) + 1
    if 56 <= lat < 64 and 3 <= lon < 12:
        zone = 32
    if 72 <= lat < 84:
        if 0 <= lon < 9:
            zone = 31
        elif 9 <= lon < 21:
            zone = 33
        elif 21 <= lon < 33:
            zone = 35
        elif 33 <= lon < 42:
            zone = 37
    return (32600 if lat >= 0 else 32700) + zone


@lru_cache(maxsize=32)
def _transformer(epsg):
    return Transformer.from_crs("EPSG:4326", f"EPSG:{epsg}", always_xy=True)


def project_points(lonlats, epsg):
    """Project (lon, lat) pairs into the given CRS; returns an (N, 2) array."""
    pts = np.asarray(lonlats, dtype=float)
    xs, ys = _transformer(epsg).transform(pts[:, 0], pts[:, 1])
    return np.column_stack([xs, ys])


def bbox_to_pixels(polygon, epsg, transform):
    """
    Pixel window covering an AOI's bounding box in a scene grid.

    Args:
        polygon: AOI polygon in EPSG:4326
        epsg: Scene CRS
        transform: [scaleX, shearX, originX, shearY, scaleY, originY]

    Returns:
        tuple: (min_col, min_row, max_col, max_row)
    """
    min_lon, min_lat, max_lon, max_lat = polygon.bounds
    corners = project_points(
        [(min_lon, min_lat), (max_lon, min_lat), (min_lon, max_lat), (max_lon, max_lat)], epsg
    )
    min_e, max_e = corners[:, 0].min(), corners[:, 0].max()
    min_n, max_n = corners[:, 1].min(), corners[:, 1].max()

    scale_x, _, origin_x, _, scale_y, origin_y = transform[:6]
    col1 = math.floor((min_e - origin_x) / scale_x)
    col2 = math.ceil((max_e - origin_x) / scale_x)
    # scale_y is negative for north-up grids, so max northing maps to the min row
    row1 = math.floor((max_n - origin_y) / scale_y)
    row2 = math.ceil((min_n - origin_y) / scale_y)
    return min(col1, col2), min(row1, row2), max(col1, col2), max(row1, row2)


def polygon_to_pixels(polygon, epsg, transform, pixel_bounds):
    """AOI ring as (col, row) coordinates local to a pixel window."""
    scale_x, _, origin_x, _, scale_y, origin_y = transform[:6]
    min_col, min_row = pixel_bounds[0], pixel_bounds[1]
    ring = project_points(list(polygon.exterior.coords), epsg)
    cols = (ring[:, 0] - origin_x) / scale_x - min_col
    rows = (ring[:, 1] - origin_y) / scale_y - min_row
    return list(zip(cols.tolist(), rows.tolist()))


def pixel_centers_inside(ring, width, height):
    """
    Boolean (height, width) mask of pixel centres inside a pixel-space ring.

    Args:
        ring: Sequence of (col, row) vertices
        width: Grid width
        height: Grid height
    """
    if len(ring) < 3 or width <= 0 or height <= 0:
        return np.zeros((max(height, 0), max(width, 0)), dtype=bool)
    poly = Polygon(ring)
    cols, rows = np.meshgrid(np.arange(width) + 0.5, np.arange(height) + 0.5)
    return shapely.contains_xy(poly, cols, rows)


def calculate_coverage(pixel_geom, aoi_geom):
    """
    Calculate how much of a pixel is covered by the AOI.

    Args:
        pixel_geom: Pixel footprint (shapely)
        aoi_geom: AOI geometry (shapely)

    Returns:
        Coverage fraction (0-1)
    """
    if pixel_geom.area == 0:
        return 0.0
    return pixel_geom.intersection(aoi_geom).area / pixel_geom.area


def coverage_mask(polygon_norm, width, height, min_coverage):
    """
    Pixels whose footprint is covered by the AOI for at least ``min_coverage``.

    Args:
        polygon_norm: AOI ring in normalized (0-1) image coordinates
        width: Grid width
        height: Grid height
        min_coverage: Minimum covered fraction of a pixel

    Returns:
        Boolean (height, width) array
    """
    mask = np.zeros((height, width), dtype=bool)
    if len(polygon_norm) < 3:
        return mask
    aoi = Polygon([(x * width, y * height) for x, y in polygon_norm])
    if not aoi.is_valid:
        aoi = aoi.buffer(0)

    # Only test pixels intersecting the AOI bounds
    min_x, min_y, max_x, max_y = aoi.bounds
    c0, c1 = max(0, int(math.floor(min_x))), min(width, int(math.ceil(max_x)))
    r0, r1 = max(0, int(math.floor(min_y))), min(height, int(math.ceil(max_y)))
    for row in range(r0, r1):
        for col in range(c0, c1):
            pixel = box(col, row, col + 1, row + 1)
            if calculate_coverage(pixel, aoi) >= min_coverage:
                mask[row, col] = True
    return mask
