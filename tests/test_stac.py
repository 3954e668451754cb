"""Tests for catalog search, pagination and scene normalization."""
from datetime import datetime, timezone

import pytest

from phenoflow.api.sources import AWS, EARTHDATA, PLANETARY, enabled_sources, get_source
from phenoflow.api.stac import CatalogSearchClient, dn_offset_for, extract_mgrs_tile, filter_to_single_tile
from phenoflow.errors import HttpError
from phenoflow.models.scene import SceneItem

from conftest import FakeSession

GEOMETRY = {
    "type": "Polygon",
    "coordinates": [[[27.0, -26.0], [27.01, -26.0], [27.01, -26.01], [27.0, -26.01], [27.0, -26.0]]],
}


def aws_feature(item_id="S2B_35JPM_20220801_0_L2A", when="2022-08-01T08:51:20.123Z", cloud=3.2):
    return {
        "id": item_id,
        "properties": {
            "datetime": when,
            "eo:cloud_cover": cloud,
            "earthsearch:boa_offset_applied": True,
            "s2:processing_baseline": "04.00",
            "proj:epsg": 32735,
        },
        "assets": {
            "red": {"href": "https://aws.example/red.tif", "proj:transform": [10, 0, 600000, 0, -10, 7100000, 0, 0, 1]},
            "nir": {"href": "https://aws.example/nir.tif"},
            "scl": {"href": "https://aws.example/scl.tif"},
        },
    }


def pc_feature():
    return {
        "id": "S2B_MSIL2A_20220801T083559_R064_T35JPM_20220801T120000",
        "properties": {
            "datetime": "2022-08-01T08:35:59Z",
            "eo:cloud_cover": 12.0,
            "s2:processing_baseline": "04.00",
            "proj:code": "EPSG:32735",
        },
        "assets": {
            "B04": {"href": "https://pc.example/B04.tif"},
            "B08": {"href": "https://pc.example/B08.tif"},
            "SCL": {"href": "https://pc.example/SCL.tif"},
        },
    }


@pytest.mark.parametrize("item_id, tile", [
    ("S2B_35JPM_20220801_0_L2A", "35JPM"),
    ("S2B_MSIL2A_20220801T083559_R064_T35JPM_20220801T120000", "35JPM"),
    ("HLS.S30.T35JPM.2022213T083559.v2.0", "35JPM"),
    ("something-else", None),
])
def test_extract_mgrs_tile(item_id, tile):
    assert extract_mgrs_tile(item_id) == tile


def test_dn_offset_rules():
    assert dn_offset_for({"s2:processing_baseline": "04.00"}) == -1000.0
    assert dn_offset_for({"s2:processing_baseline": "05.09"}) == -1000.0
    assert dn_offset_for({"s2:processing_baseline": "03.01"}) == 0.0
    assert dn_offset_for({"s2:processing_baseline": "04.00", "earthsearch:boa_offset_applied": True}) == 0.0
    assert dn_offset_for({"s2:processing_baseline": "n/a"}) == 0.0
    assert dn_offset_for({}) == 0.0


def test_normalize_earth_search_feature():
    client = CatalogSearchClient(AWS, session=FakeSession())
    scene = client.normalize(aws_feature())
    assert scene.source_id == "aws"
    assert scene.tile == "35JPM"
    assert scene.epsg == 32735
    assert scene.dn_offset == 0.0
    assert scene.transform == (10.0, 0.0, 600000.0, 0.0, -10.0, 7100000.0)
    assert scene.acquired == datetime(2022, 8, 1, 8, 51, 20, 123000, tzinfo=timezone.utc)
    assert scene.href("red") == "https://aws.example/red.tif"
    assert scene.href("scl") == "https://aws.example/scl.tif"
    assert scene.key == "2022-08-01_35JPM"


def test_normalize_planetary_feature():
    client = CatalogSearchClient(PLANETARY, session=FakeSession())
    scene = client.normalize(pc_feature())
    assert scene.dn_offset == -1000.0
    assert scene.transform is None
    assert scene.epsg == 32735
    assert scene.href("nir") == "https://pc.example/B08.tif"
    assert scene.key == "2022-08-01_35JPM"


def test_normalize_without_datetime_is_skipped():
    client = CatalogSearchClient(AWS, session=FakeSession())
    feature = aws_feature()
    del feature["properties"]["datetime"]
    assert client.normalize(feature) is None


def test_search_follows_post_next_links():
    session = FakeSession()
    page1 = {
        "features": [aws_feature("S2B_35JPM_20220810_0_L2A", "2022-08-10T08:50:00Z")],
        "context": {"matched": 2, "returned": 1},
        "links": [{"rel": "next", "href": AWS.search_url, "method": "POST",
                   "body": {"next": "token-2"}, "merge": True}],
    }
    page2 = {
        "features": [aws_feature("S2B_35JPM_20220801_0_L2A")],
        "context": {"matched": 2, "returned": 2},
        "links": [],
    }
    session.add_json(AWS.search_url, page1, page2)

    scenes = CatalogSearchClient(AWS, session=session).search(GEOMETRY, "2022-08-01", "2022-08-31")

    assert [s.date_str for s in scenes] == ["2022-08-01", "2022-08-10"]
    posts = [kwargs["json"] for method, _, kwargs in session.requests if method == "POST"]
    assert len(posts) == 2
    assert posts[0]["datetime"] == "2022-08-01T00:00:00Z/2022-08-31T23:59:59Z"
    assert posts[0]["collections"] == ["sentinel-2-l2a"]
    assert posts[1]["next"] == "token-2"
    assert posts[1]["collections"] == ["sentinel-2-l2a"]


def test_search_stops_when_all_results_returned():
    session = FakeSession()
    page = {
        "features": [aws_feature()],
        "context": {"matched": 1, "returned": 1},
        "links": [{"rel": "next", "href": "https://aws.example/next", "method": "GET"}],
    }
    session.add_json(AWS.search_url, page)
    scenes = CatalogSearchClient(AWS, session=session).search(GEOMETRY, "2022-08-01", "2022-08-31")
    assert len(scenes) == 1
    assert len(session.requests) == 1


def test_search_http_error():
    session = FakeSession()
    session.fail(AWS.search_url, 502)
    with pytest.raises(HttpError) as excinfo:
        CatalogSearchClient(AWS, session=session).search(GEOMETRY, "2022-08-01", "2022-08-31")
    assert excinfo.value.code == 502


def test_search_keeps_most_frequent_tile():
    session = FakeSession()
    page = {
        "features": [
            aws_feature("S2B_35JPM_20220801_0_L2A", "2022-08-01T08:50:00Z"),
            aws_feature("S2B_35JPM_20220806_0_L2A", "2022-08-06T08:50:00Z"),
            aws_feature("S2B_35JQM_20220806_0_L2A", "2022-08-06T08:50:05Z"),
        ],
        "links": [],
    }
    session.add_json(AWS.search_url, page)
    scenes = CatalogSearchClient(AWS, session=session).search(GEOMETRY, "2022-08-01", "2022-08-31")
    assert {s.tile for s in scenes} == {"35JPM"}
    assert len(scenes) == 2


def test_filter_to_single_tile_without_tiles_is_identity():
    scene = SceneItem("x", "aws", datetime(2022, 1, 1, tzinfo=timezone.utc), {}, None, 0.0)
    assert filter_to_single_tile([scene]) == [scene]


def test_source_registry():
    assert get_source("earthdata") is EARTHDATA
    assert EARTHDATA.mask_scale == 1
    with pytest.raises(ValueError):
        get_source("gee")
    assert [s.source_id for s in enabled_sources(["aws", "planetary"])] == ["aws", "planetary"]
