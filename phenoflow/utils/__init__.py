"""Utility functions."""

from phenoflow.utils.geometry import (
    load_geojson,
    as_polygon,
    utm_epsg_for,
    bbox_to_pixels,
    polygon_to_pixels,
    pixel_centers_inside,
    calculate_coverage,
    coverage_mask,
)
from phenoflow.utils.dates import (
    parse_date,
    parse_stac_datetime,
    stac_datetime_range,
    day_of_year,
    missing_date_ranges,
)

__all__ = [
    "load_geojson",
    "as_polygon",
    "utm_epsg_for",
    "bbox_to_pixels",
    "polygon_to_pixels",
    "pixel_centers_inside",
    "calculate_coverage",
    "coverage_mask",
    "parse_date",
    "parse_stac_datetime",
    "stac_datetime_range",
    "day_of_year",
    "missing_date_ranges",
]
