"""
Synchronous Microsoft Graph client with pagination, throttling retry and
$batch support. Tokens come from any azure-identity credential.
"""

from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from sahl_setup.errors import TransientProviderError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = 'https://graph.microsoft.com'
GRAPH_API_VERSION = 'v1.0'
GRAPH_SCOPE = 'https://graph.microsoft.com/.default'

MAX_RETRIES = 4
INITIAL_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0
THROTTLE_STATUSES = (429, 503, 504)
MAX_PAGES = 200
BATCH_SIZE = 20
REQUEST_TIMEOUT = (30, 60)
TOKEN_REFRESH_MARGIN = 60
CONNECTION_ERROR_CODE = 'ConnectionError'


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str, code: str = ''):
        self.status_code = status_code
        self.url = url
        self.code = code
        self.message = message
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_forbidden(self) -> bool:
        return self.status_code in (401, 403)

    @property
    def is_connection_error(self) -> bool:
        return self.status_code == 0 and self.code == CONNECTION_ERROR_CODE

    @property
    def is_already_exists(self) -> bool:
        text = self.message.lower()
        return (
            self.status_code == 409
            or 'already exists' in text
            or 'permission being assigned already exists' in text
        )


def as_transient(error: GraphAPIError) -> Exception:
    """
    Map a Graph error to TransientProviderError when it smells like
    directory propagation (fresh objects not yet visible) or an outage,
    else return it.
    """
    text = error.message.lower()
    if error.is_not_found or 'does not exist' in text or 'not found' in text:
        return TransientProviderError(str(error))
    if error.is_connection_error or error.status_code >= 500:
        return TransientProviderError(str(error))
    return error


class GraphClient:
    """
    Microsoft Graph API client.
    Features:
      - Bearer token from an azure-identity credential, refreshed before expiry
      - Automatic pagination with @odata.nextLink
      - Backoff on 429/503/504 honouring Retry-After, and on dropped connections
      - $batch requests in chunks of 20
    """

    def __init__(
        self,
        credential: Any,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.credential = credential
        self.session = session or requests.Session()
        self._sleep = sleep
        self._token: Optional[str] = None
        self._token_expires_on = 0
        self.request_count = 0
        self.throttle_count = 0

    def _build_url(self, endpoint: str) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith('http'):
            return endpoint
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/{endpoint.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        if self._token is None or time.time() > self._token_expires_on - TOKEN_REFRESH_MARGIN:
            access_token = self.credential.get_token(GRAPH_SCOPE)
            self._token = access_token.token
            self._token_expires_on = access_token.expires_on
        return {
            'Authorization': f"Bearer {self._token}",
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'ConsistencyLevel': 'eventual',
        }

    # ─── Verbs ───────────────────────────────────────────────────────────────

    def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        return self.request('GET', endpoint, params=params)

    def post(self, endpoint: str, body: dict) -> dict:
        return self.request('POST', endpoint, json_body=body)

    def patch(self, endpoint: str, body: dict) -> dict:
        return self.request('PATCH', endpoint, json_body=body)

    def iter_pages(self, endpoint: str, params: Optional[dict] = None) -> Iterator[dict]:
        """Yield every item across @odata.nextLink pages."""
        url: Optional[str] = self._build_url(endpoint)
        pages = 0
        while url and pages < MAX_PAGES:
            data = self.request('GET', url, params=params)
            for item in data.get('value', []):
                yield item
            url = data.get('@odata.nextLink')
            params = None  # nextLink carries the query
            pages += 1

    def get_all(self, endpoint: str, params: Optional[dict] = None) -> List[dict]:
        return list(self.iter_pages(endpoint, params))

    def batch(self, requests_: List[dict]) -> List[dict]:
        """
        Send sub-requests through /$batch, 20 at a time.

        Returns:
            The per-request responses ({id, status, body}) in id order
        """
        responses: List[dict] = []
        for i in range(0, len(requests_), BATCH_SIZE):
            chunk = requests_[i:i + BATCH_SIZE]
            data = self.post('$batch', {'requests': chunk})
            responses.extend(data.get('responses', []))
        return sorted(responses, key=lambda r: int(r.get('id', 0)))

    # ─── Transport ───────────────────────────────────────────────────────────

    def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with backoff on throttling and dropped connections."""
        url = self._build_url(endpoint)
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = self.session.request(
                    method, url, params=params, json=json_body,
                    headers=self._headers(), timeout=REQUEST_TIMEOUT,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                self.request_count += 1
                if attempt >= MAX_RETRIES:
                    raise GraphAPIError(0, f"connection failed: {e}", url, CONNECTION_ERROR_CODE) from e
                logger.warning(
                    "Connection error on %s. Retry %d/%d in %.1fs: %s",
                    url, attempt + 1, MAX_RETRIES, backoff, e,
                )
                self._sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue
            self.request_count += 1

            if response.status_code in THROTTLE_STATUSES and attempt < MAX_RETRIES:
                self.throttle_count += 1
                wait_time = _retry_after(response, backoff)
                logger.warning(
                    "Throttled (%d) on %s. Retry %d/%d in %.1fs",
                    response.status_code, url, attempt + 1, MAX_RETRIES, wait_time,
                )
                self._sleep(wait_time)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            if response.status_code == 204 or not response.content:
                if response.ok:
                    return {}

            if response.ok:
                return response.json()

            error_body = _json_or_empty(response)
            error = error_body.get('error', {}) if isinstance(error_body, dict) else {}
            message = error.get('message') or response.text[:200]
            logger.debug("%s %s -> %d %s", method, url, response.status_code, message)
            raise GraphAPIError(response.status_code, message, url, error.get('code', ''))

        raise GraphAPIError(429, 'throttling retries exhausted', url)


def _retry_after(response: requests.Response, backoff: float) -> float:
    """
    Seconds to wait before retrying a throttled response.

    Retry-After may be delta-seconds or an HTTP date; anything unparseable
    falls back to the current backoff. Clamped to [backoff, MAX_BACKOFF_SECONDS].
    """
    header = response.headers.get('Retry-After')
    if not header:
        return backoff
    try:
        seconds = float(header)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            return backoff
        return min(max(seconds, backoff), MAX_BACKOFF_SECONDS)
    try:
        when = parsedate_to_datetime(header)
    except (TypeError, ValueError, IndexError):
        logger.debug("Ignoring unparseable Retry-After %r", header)
        return backoff
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delay = (when - datetime.now(timezone.utc)).total_seconds()
    return min(max(delay, backoff), MAX_BACKOFF_SECONDS)


def _json_or_empty(response: requests.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}
