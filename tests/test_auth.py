"""Tests for per-source asset authorization."""
import pytest

from phenoflow.api.auth import (
    CDSE_TOKEN_URL,
    SAS_TOKEN_URL,
    BearerTokenAuth,
    NoAuth,
    S3SignerAuth,
    SasTokenAuth,
    build_asset_auth,
    rewrite_s3_href,
)
from phenoflow.api.sources import AWS, PLANETARY
from phenoflow.config import config
from phenoflow.errors import AuthError

from conftest import FakeSession


def test_sas_token_appended_and_cached():
    session = FakeSession()
    session.add_json(
        SAS_TOKEN_URL.format(collection="sentinel-2-l2a"),
        {"token": "se=2030-01-01&sig=abc%3D", "msft:expiry": "2030-01-01T00:00:00Z"},
    )
    auth = SasTokenAuth(session=session, subscription_key="key-1")

    url, headers = auth.authorize("https://pc.example/B04.tif", {"Range": "bytes=0-9"})
    assert url == "https://pc.example/B04.tif?se=2030-01-01&sig=abc%3D"
    assert headers == {"Range": "bytes=0-9"}

    # Second call is served from the cache; another fetch would hit an empty route
    url, _ = auth.authorize("https://pc.example/B08.tif?x=1", {})
    assert url == "https://pc.example/B08.tif?x=1&se=2030-01-01&sig=abc%3D"
    assert auth.search_headers() == {"Ocp-Apim-Subscription-Key": "key-1"}


def test_sas_token_refetched_inside_expiry_buffer():
    session = FakeSession()
    url = SAS_TOKEN_URL.format(collection="sentinel-2-l2a")
    session.add_json(
        url,
        {"token": "old", "msft:expiry": "2000-01-01T00:00:00Z"},
        {"token": "new", "msft:expiry": "2030-01-01T00:00:00Z"},
    )
    auth = SasTokenAuth(session=session)
    assert auth.token() == "old"
    assert auth.token() == "new"


def test_sas_token_failure_is_auth_error():
    session = FakeSession()
    session.fail(SAS_TOKEN_URL.format(collection="sentinel-2-l2a"), 401)
    with pytest.raises(AuthError):
        SasTokenAuth(session=session).probe()


def test_cdse_bearer_token():
    session = FakeSession()
    session.add_json(CDSE_TOKEN_URL, {"access_token": "tok", "expires_in": 600})
    auth = BearerTokenAuth("cdse", username="user", password="pw", session=session)
    _, headers = auth.authorize("https://eodata.example/x.jp2", {"Range": "bytes=0-1"})
    assert headers["Authorization"] == "Bearer tok"
    assert headers["Range"] == "bytes=0-1"
    method, _, kwargs = session.requests[0]
    assert method == "POST"
    assert kwargs["data"]["grant_type"] == "password"
    assert kwargs["data"]["client_id"] == "cdse-public"


def test_bearer_without_credentials(monkeypatch):
    monkeypatch.setattr(config, "earthdata_username", None)
    monkeypatch.setattr(config, "earthdata_password", None)
    auth = BearerTokenAuth("earthdata", session=FakeSession())
    with pytest.raises(AuthError):
        auth.probe()


def test_bearer_rejects_unknown_source():
    with pytest.raises(ValueError):
        BearerTokenAuth("aws")


def test_s3_signer_adds_sigv4_headers():
    auth = S3SignerAuth(access_key="AKIDEXAMPLE", secret_key="secret")
    url, headers = auth.authorize(
        "https://eodata.dataspace.copernicus.eu/eodata/Sentinel-2/x.jp2", {"Range": "bytes=0-99"}
    )
    assert url.endswith("x.jp2")
    assert headers["Authorization"].startswith("AWS4-HMAC-SHA256")
    assert "X-Amz-Date" in headers
    assert headers["Range"] == "bytes=0-99"


def test_s3_signer_requires_keys(monkeypatch):
    monkeypatch.setattr(config, "cdse_access_key", None)
    monkeypatch.setattr(config, "cdse_secret_key", None)
    with pytest.raises(AuthError):
        S3SignerAuth()


def test_rewrite_s3_href():
    assert rewrite_s3_href("s3://eodata/Sentinel-2/a.jp2") == (
        "https://eodata.dataspace.copernicus.eu/eodata/Sentinel-2/a.jp2"
    )
    assert rewrite_s3_href("https://x.example/a.tif") == "https://x.example/a.tif"


def test_build_asset_auth_by_kind():
    assert isinstance(build_asset_auth(AWS), NoAuth)
    assert isinstance(build_asset_auth(PLANETARY, session=FakeSession()), SasTokenAuth)
