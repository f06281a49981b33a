"""
REST Client Base
=================

Shared plumbing for the Close, Calendly, Typeform and Notion connectors:
- requests.Session with auth headers set once
- sliding-window rate limiting
- 429 handling that waits out Retry-After
- tenacity retries (3 attempts, exponential 2-10s) on timeouts,
  connection failures and 5xx responses
- 401/403 raise APIAuthError immediately

Subclasses set NAME, BASE_URL, ENV_KEY and FEATURES and add endpoint methods.
"""

import os
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import requests
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from scripts.lib.errors import (
    APIAuthError,
    APIError,
    APIRateLimitError,
    APITimeoutError,
    ConfigError,
)
from scripts.lib.logger import setup_logger

logger = setup_logger("integrations")

MAX_RATE_LIMIT_WAITS = 3
DEFAULT_RETRY_AFTER = 10


def is_transient(exc: BaseException) -> bool:
    """Timeouts, dropped connections, rate limits and 5xx are worth retrying."""
    if isinstance(exc, APIAuthError):
        return False
    if isinstance(exc, (APITimeoutError, APIRateLimitError)):
        return True
    if isinstance(exc, APIError):
        return exc.status_code is None or exc.status_code >= 500
    return False


def retry_after_seconds(value: Optional[str]) -> float:
    """Seconds to wait from a Retry-After header: delta-seconds or an HTTP date."""
    if not value:
        return DEFAULT_RETRY_AFTER
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class RestClient:
    """Rate-limited, retrying JSON client for one SaaS API."""

    NAME = "REST"
    BASE_URL = ""
    ENV_KEY = ""
    FEATURES: List[str] = []
    HEALTH_ENDPOINT = "/"

    RATE_LIMIT = 100
    RATE_WINDOW = 10  # seconds
    TIMEOUT = 30
    MAX_ATTEMPTS = 3

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key if api_key is not None else os.getenv(self.ENV_KEY, "")
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        self.retry_wait = wait_exponential(multiplier=1, min=2, max=10)
        self._request_timestamps: List[float] = []
        # Last pagination token seen; lives only as long as this client
        self.resume_token: Optional[str] = None
        if self.api_key:
            self._setup_auth()

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _setup_auth(self):
        self.session.headers["Authorization"] = f"Bearer {self.api_key}"

    def require_configured(self):
        if not self.is_configured:
            raise ConfigError(
                f"{self.NAME} is not configured: set {self.ENV_KEY} in .env",
                setting=self.ENV_KEY,
            )

    def _rate_limit_wait(self):
        now = time.time()
        self._request_timestamps = [
            t for t in self._request_timestamps if now - t < self.RATE_WINDOW
        ]
        if len(self._request_timestamps) >= self.RATE_LIMIT:
            sleep_time = self.RATE_WINDOW - (now - self._request_timestamps[0]) + 0.1
            logger.debug("%s rate limit approaching, sleeping %.1fs", self.NAME, sleep_time)
            time.sleep(sleep_time)
        self._request_timestamps.append(time.time())

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _send(self, method: str, endpoint: str, params: Optional[dict] = None,
              json_body: Optional[dict] = None) -> Any:
        url = self._url(endpoint)
        for _ in range(MAX_RATE_LIMIT_WAITS + 1):
            self._rate_limit_wait()
            try:
                resp = self.session.request(
                    method, url, params=params, json=json_body, timeout=self.TIMEOUT,
                )
            except requests.Timeout:
                raise APITimeoutError(url, self.TIMEOUT)
            except requests.RequestException as e:
                raise APIError(f"{self.NAME} request failed: {e}", url=url)

            if resp.status_code == 429:
                retry_after = retry_after_seconds(resp.headers.get("Retry-After"))
                logger.warning("%s rate limited (429). Waiting %.1fs", self.NAME, retry_after)
                time.sleep(retry_after)
                continue
            if resp.status_code in (401, 403):
                raise APIAuthError(url, status_code=resp.status_code)
            if resp.status_code >= 400:
                raise APIError(
                    f"{self.NAME} {method} {endpoint} returned {resp.status_code}: {resp.text[:200]}",
                    status_code=resp.status_code, url=url,
                )
            if resp.status_code == 204 or not resp.content:
                return {}
            return resp.json()

        raise APIRateLimitError(url, retry_after=DEFAULT_RETRY_AFTER)

    def request(self, method: str, endpoint: str, params: Optional[dict] = None,
                json_body: Optional[dict] = None) -> Any:
        """Make an authenticated request, retrying transient failures."""
        self.require_configured()
        retryer = Retrying(
            stop=stop_after_attempt(self.MAX_ATTEMPTS),
            wait=self.retry_wait,
            retry=retry_if_exception(is_transient),
            reraise=True,
        )
        return retryer(self._send, method, endpoint, params, json_body)

    def get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        return self.request("GET", endpoint, params=params)

    def post(self, endpoint: str, body: Optional[dict] = None) -> Any:
        return self.request("POST", endpoint, json_body=body)

    def test_connection(self) -> bool:
        """Cheap authenticated call; False (and a log line) on any API error."""
        if not self.is_configured:
            return False
        try:
            self.get(self.HEALTH_ENDPOINT)
            return True
        except APIError as e:
            logger.error("%s connection test failed: %s", self.NAME, e)
            return False

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.NAME,
            "configured": self.is_configured,
            "features": list(self.FEATURES),
        }
