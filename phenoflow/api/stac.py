"""STAC catalog search client with pagination and scene normalization."""
import logging
import time
from collections import Counter

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from phenoflow.api.auth import NoAuth, rewrite_s3_href
from phenoflow.config import config
from phenoflow.errors import CatalogError, HttpError
from phenoflow.models.scene import SceneItem
from phenoflow.utils.dates import parse_stac_datetime, stac_datetime_range

logger = logging.getLogger(__name__)


def extract_mgrs_tile(item_id):
    """
    MGRS tile from a scene id.

    AWS ``S2B_35JPM_20220801_0_L2A``, Planetary Computer
    ``S2B_MSIL2A_20220801T093559_R136_T35JPM_...`` and HLS
    ``HLS.S30.T35JPM.2022201T093559.v2.0`` all yield ``35JPM``.
    """
    for part in item_id.split("."):
        if len(part) == 6 and part.startswith("T"):
            return part[1:]
    for part in item_id.split("_"):
        if len(part) == 5 and part[0].isdigit():
            return part
        if len(part) == 6 and part.startswith("T"):
            return part[1:]
    return None


def dn_offset_for(properties):
    """
    DN offset added before dividing by the quantification value.

    Earth Search applies the BOA offset itself; raw ESA products from
    processing baseline 04.00 on carry +1000.
    """
    if properties.get("earthsearch:boa_offset_applied") is True:
        return 0.0
    baseline = properties.get("s2:processing_baseline")
    if baseline is not None:
        try:
            if float(baseline) >= 4.0:
                return -1000.0
        except (TypeError, ValueError):
            pass
    return 0.0


def _epsg_from(properties, asset):
    for holder in (asset or {}, properties):
        epsg = holder.get("proj:epsg")
        if epsg is not None:
            return int(epsg)
        code = holder.get("proj:code")
        if isinstance(code, str) and code.upper().startswith("EPSG:"):
            return int(code.split(":", 1)[1])
    return None


def filter_to_single_tile(scenes):
    """Keep only scenes from the most frequent MGRS tile."""
    counts = Counter(s.tile for s in scenes if s.tile)
    if not counts:
        return scenes
    best_tile = counts.most_common(1)[0][0]
    return [s for s in scenes if s.tile == best_tile]


class CatalogSearchClient:
    """Client for one STAC catalog."""

    def __init__(self, source, auth=None, session=None):
        self.source = source
        self.auth = auth or NoAuth(source.source_id)
        self.session = session or requests.Session()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        reraise=True,
    )
    def _send(self, method, url, **kwargs):
        kwargs.setdefault("timeout", config.api_timeout)
        return self.session.request(method, url, **kwargs)

    def _request(self, method, url, **kwargs):
        """Make HTTP request with retry logic; non-2xx becomes HttpError."""
        headers = dict(self.source.search_headers)
        headers.update(self.auth.search_headers())
        try:
            response = self._send(method, url, headers=headers, **kwargs)
        except requests.RequestException as e:
            raise HttpError(0, url=url, reason=str(e)) from e
        if not 200 <= response.status_code < 300:
            raise HttpError(response.status_code, url=url)
        try:
            return response.json()
        except ValueError as e:
            raise CatalogError(f"{self.source.source_id}: invalid search response") from e

    def search(self, geometry, start_date, end_date, max_cloud_cover=None, limit=None,
               max_pages=None, single_tile=True):
        """
        Search for scenes overlapping a geometry within a date range.

        Args:
            geometry: AOI as a GeoJSON geometry dict
            start_date: YYYY-MM-DD
            end_date: YYYY-MM-DD
            max_cloud_cover: Cloud-cover ceiling in percent (default from config)
            limit: Page size (default from config)
            max_pages: Stop after this many pages (None = all)
            single_tile: Keep only the most frequent MGRS tile

        Returns:
            List of SceneItem sorted by acquisition time
        """
        if max_cloud_cover is None:
            max_cloud_cover = config.cloud_threshold
        body = {
            "collections": [self.source.collection],
            "intersects": geometry,
            "datetime": stac_datetime_range(start_date, end_date),
            "query": {"eo:cloud_cover": {"lt": max_cloud_cover}},
            "limit": limit or config.page_limit,
        }

        features = self._fetch_all_pages(body, max_pages)
        scenes = []
        for feature in features:
            scene = self.normalize(feature)
            if scene is not None:
                scenes.append(scene)

        if single_tile:
            scenes = filter_to_single_tile(scenes)
        scenes.sort(key=lambda s: s.acquired)
        logger.info(
            "%s: %d scenes (%d features) for %s..%s",
            self.source.short_name, len(scenes), len(features), start_date, end_date,
        )
        return scenes

    def _fetch_all_pages(self, body, max_pages=None):
        """
        Follow ``rel=next`` links until the catalog reports all results returned.
        """
        all_features = []
        url = self.source.search_url
        method = "POST"
        payload = body
        pages = 0

        while url:
            if method == "POST":
                data = self._request("POST", url, json=payload)
            else:
                data = self._request("GET", url)
            pages += 1

            all_features.extend(data.get("features", []))
            if max_pages is not None and pages >= max_pages:
                break

            context = data.get("context") or {}
            matched = context.get("matched", data.get("numberMatched"))
            returned = context.get("returned", data.get("numberReturned"))
            if matched is not None and returned is not None and returned >= matched:
                break

            next_link = next((link for link in data.get("links", []) if link.get("rel") == "next"), None)
            if next_link is None:
                break

            next_method = next_link.get("method", "GET").upper()
            if next_method == "POST":
                next_body = next_link.get("body") or {}
                if next_link.get("merge"):
                    next_body = {**payload, **next_body}
                if next_link["href"] == url and next_body == payload:
                    break
                payload = next_body
            elif next_link["href"] == url:
                break
            url, method = next_link["href"], next_method
            time.sleep(config.pagination_delay)

        return all_features

    def normalize(self, feature):
        """
        Build a SceneItem from a STAC feature; None when it lacks a usable date.
        """
        item_id = feature.get("id", "")
        properties = feature.get("properties") or {}
        assets = feature.get("assets") or {}

        try:
            acquired = parse_stac_datetime(properties["datetime"])
        except (KeyError, TypeError, ValueError):
            logger.warning("%s: skipping item %s without a valid datetime", self.source.short_name, item_id)
            return None

        hrefs = {}
        for band, key in self.source.bands.asset_keys().items():
            asset = assets.get(key)
            if asset and asset.get("href"):
                hrefs[band] = rewrite_s3_href(asset["href"])

        transform_asset = assets.get(self.source.bands.transform_key) or {}
        transform = transform_asset.get("proj:transform")
        if transform is not None and len(transform) >= 6:
            transform = tuple(float(v) for v in transform[:6])
        else:
            transform = None

        return SceneItem(
            scene_id=item_id,
            source_id=self.source.source_id,
            acquired=acquired,
            assets=hrefs,
            transform=transform,
            cloud_cover=float(properties.get("eo:cloud_cover") or 0.0),
            dn_offset=dn_offset_for(properties),
            tile=extract_mgrs_tile(item_id) or properties.get("s2:mgrs_tile"),
            epsg=_epsg_from(properties, transform_asset),
            properties=properties,
        )

    def probe(self, geometry, start_date, end_date):
        """Minimal one-item query used to measure catalog reachability."""
        return self.search(geometry, start_date, end_date, limit=1, max_pages=1, single_tile=False)
