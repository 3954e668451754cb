"""Per-source asset authorization: SAS URL signing, bearer tokens and SigV4."""
import logging
import threading
import time

import requests
from botocore.auth import S3SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from phenoflow.api.sources import AuthKind
from phenoflow.config import config
from phenoflow.errors import AuthError
from phenoflow.utils.dates import parse_stac_datetime

logger = logging.getLogger(__name__)

SAS_TOKEN_URL = "https://planetarycomputer.microsoft.com/api/sas/v1/token/{collection}"
CDSE_TOKEN_URL = (
    "https://identity.dataspace.copernicus.eu/auth/realms/CDSE/protocol/openid-connect/token"
)
EARTHDATA_TOKEN_URL = "https://urs.earthdata.nasa.gov/api/users/token"
CDSE_S3_ENDPOINT = "https://eodata.dataspace.copernicus.eu"

TOKEN_TIMEOUT = 15


class AssetAuth:
    """Authorizes asset requests for one source; opaque to the orchestrator."""

    source_id = None

    def authorize(self, url, headers):
        """Return the (url, headers) pair to use for a request."""
        return url, headers

    def search_headers(self):
        """Extra headers for catalog search requests."""
        return {}

    def probe(self):
        """Acquire credentials once, raising AuthError when that fails."""

    def invalidate(self):
        """Drop cached credentials."""


class NoAuth(AssetAuth):
    def __init__(self, source_id=None):
        self.source_id = source_id


class _TokenCache:
    """Thread-safe single-value cache with an expiry buffer."""

    def __init__(self, buffer_seconds):
        self.buffer_seconds = buffer_seconds
        self._lock = threading.Lock()
        self._token = None
        self._expiry = 0.0

    def get(self, fetch):
        with self._lock:
            if self._token is None or time.time() >= self._expiry - self.buffer_seconds:
                self._token, self._expiry = fetch()
            return self._token

    def clear(self):
        with self._lock:
            self._token = None
            self._expiry = 0.0


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    reraise=True,
)
def _token_request(session, method, url, **kwargs):
    kwargs.setdefault("timeout", TOKEN_TIMEOUT)
    return session.request(method, url, **kwargs)


def _fetch_json(session, source_id, method, url, **kwargs):
    """Token endpoint call; every failure becomes AuthError."""
    try:
        response = _token_request(session, method, url, **kwargs)
    except requests.RequestException as e:
        raise AuthError(source_id, str(e)) from e
    if not 200 <= response.status_code < 300:
        raise AuthError(source_id, f"HTTP {response.status_code}")
    try:
        return response.json()
    except ValueError:
        return {"_text": response.text.strip()}


class SasTokenAuth(AssetAuth):
    """
    Planetary Computer: append a per-collection SAS token to asset URLs.

    The token is already percent-encoded and is appended verbatim.
    """

    def __init__(self, source_id="planetary", collection="sentinel-2-l2a",
                 subscription_key=None, session=None):
        self.source_id = source_id
        self.collection = collection
        self.subscription_key = subscription_key or config.pc_subscription_key
        self.session = session or requests.Session()
        self._cache = _TokenCache(buffer_seconds=120)

    def _headers(self):
        if self.subscription_key:
            return {"Ocp-Apim-Subscription-Key": self.subscription_key}
        return {}

    def _fetch(self):
        url = SAS_TOKEN_URL.format(collection=self.collection)
        data = _fetch_json(self.session, self.source_id, "GET", url, headers=self._headers())
        token = data.get("token")
        if not token:
            raise AuthError(self.source_id, f"invalid SAS token response for {self.collection}")
        expiry = data.get("msft:expiry")
        try:
            expires_at = parse_stac_datetime(expiry).timestamp() if expiry else time.time() + 3600
        except ValueError:
            expires_at = time.time() + 3600
        logger.debug("SAS token for %s valid until %s", self.collection, expiry)
        return token, expires_at

    def token(self):
        return self._cache.get(self._fetch)

    def authorize(self, url, headers):
        token = self.token()
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{token}", headers

    def search_headers(self):
        return self._headers()

    def probe(self):
        self.token()

    def invalidate(self):
        self._cache.clear()


class BearerTokenAuth(AssetAuth):
    """CDSE (OAuth2 password grant) or NASA Earthdata (basic-auth token endpoint)."""

    def __init__(self, source_id, username=None, password=None, session=None):
        if source_id not in ("cdse", "earthdata"):
            raise ValueError(f"Bearer tokens not supported for {source_id}")
        self.source_id = source_id
        if source_id == "cdse":
            self.username = username or config.cdse_username
            self.password = password or config.cdse_password
        else:
            self.username = username or config.earthdata_username
            self.password = password or config.earthdata_password
        self.session = session or requests.Session()
        self._cache = _TokenCache(buffer_seconds=60)

    def _fetch(self):
        if not self.username or not self.password:
            raise AuthError(self.source_id, "credentials not configured")

        if self.source_id == "cdse":
            data = _fetch_json(
                self.session, self.source_id, "POST", CDSE_TOKEN_URL,
                data={
                    "grant_type": "password",
                    "username": self.username,
                    "password": self.password,
                    "client_id": "cdse-public",
                },
            )
            token = data.get("access_token")
            expires_in = data.get("expires_in")
            if not token or expires_in is None:
                raise AuthError(self.source_id, "invalid token response")
            return token, time.time() + float(expires_in)

        data = _fetch_json(
            self.session, self.source_id, "POST", EARTHDATA_TOKEN_URL,
            auth=(self.username, self.password),
        )
        # Some Earthdata endpoints answer with the bare token
        token = data.get("access_token") or data.get("_text")
        if not token or len(token) >= 500:
            raise AuthError(self.source_id, "invalid token response")
        return token, time.time() + 86400

    def token(self):
        return self._cache.get(self._fetch)

    def authorize(self, url, headers):
        headers = dict(headers)
        headers["Authorization"] = f"Bearer {self.token()}"
        return url, headers

    def probe(self):
        self.token()

    def invalidate(self):
        self._cache.clear()


class S3SignerAuth(AssetAuth):
    """Sign CDSE eodata requests with AWS SigV4 using S3 access keys."""

    def __init__(self, source_id="cdse", access_key=None, secret_key=None, region="default"):
        self.source_id = source_id
        access_key = access_key or config.cdse_access_key
        secret_key = secret_key or config.cdse_secret_key
        if not access_key or not secret_key:
            raise AuthError(source_id, "S3 keys not configured")
        self.credentials = Credentials(access_key, secret_key)
        self.region = region

    def authorize(self, url, headers):
        request = AWSRequest(method="GET", url=url, headers=dict(headers))
        S3SigV4Auth(self.credentials, "s3", self.region).add_auth(request)
        return url, dict(request.headers.items())


def rewrite_s3_href(href):
    """``s3://eodata/...`` -> HTTPS on the CDSE S3 endpoint."""
    if href.startswith("s3://eodata/"):
        return f"{CDSE_S3_ENDPOINT}/eodata/{href[len('s3://eodata/'):]}"
    return href


def build_asset_auth(source, session=None):
    """
    Build the auth collaborator for a source.

    Args:
        source: SourceConfig
        session: Optional requests session for token endpoints

    Returns:
        AssetAuth
    """
    if source.auth_kind is AuthKind.SAS_TOKEN:
        return SasTokenAuth(source.source_id, collection=source.collection, session=session)
    if source.auth_kind is AuthKind.BEARER_TOKEN:
        if source.source_id == "cdse" and config.cdse_access_key and config.cdse_secret_key:
            return S3SignerAuth(source.source_id)
        return BearerTokenAuth(source.source_id, session=session)
    return NoAuth(source.source_id)
