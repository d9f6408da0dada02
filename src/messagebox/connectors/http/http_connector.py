"""
HTTP/JSON connector for web APIs.

Sources are GET endpoints returning a JSON array of objects (bare, or
wrapped in a ``value``/``records``/``data`` property). Destinations are
POST endpoints accepting a JSON array of records.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

try:
    import requests
except ImportError:
    requests = None

from ...core.connector import Connector
from ...core.exceptions import ConnectorError
from ...core.models import Headers, Record


logger = logging.getLogger(__name__)

ENVELOPE_KEYS = ("value", "records", "data", "items")


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


class HttpJsonConnector(Connector):
    """
    Connector for JSON web APIs.

    Supports:
    - GET for sources, POST for destinations
    - Custom headers (e.g., API keys)
    - Rate limiting
    - Retries with exponential backoff on transport errors and 5xx responses
    """

    def __init__(
        self,
        name: str = "http",
        base_url: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        rate_limit_delay: float = 0.0,
        timeout: int = 30,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        user_agent: Optional[str] = None,
        session: Any = None,
    ):
        """
        Initialize the HTTP connector.

        Args:
            name: Connector name
            base_url: Prefix for relative locations
            headers: Headers sent with every request
            rate_limit_delay: Minimum seconds between requests
            timeout: Request timeout in seconds
            max_retries: Maximum attempts per request
            backoff_base: First retry delay in seconds, doubled per attempt
            user_agent: Custom User-Agent header
            session: Existing requests.Session to use
        """
        if requests is None and session is None:
            raise ImportError(
                "requests library is required for HttpJsonConnector. "
                "Install with: pip install requests"
            )

        self.name = name
        self.base_url = base_url.rstrip("/") if base_url else None
        self.headers = dict(headers or {})
        self.rate_limit_delay = rate_limit_delay
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.user_agent = user_agent or "MessageBox/0.1"
        self.last_request_time = 0.0
        self.session = session or requests.Session()

    def _url(self, location: str) -> str:
        if self.base_url and not location.startswith(("http://", "https://")):
            return f"{self.base_url}/{location.lstrip('/')}"
        return location

    def _request(self, method: str, url: str, body: Optional[Any] = None):
        """Send one request with retries; return the final 2xx response."""
        headers = {"User-Agent": self.user_agent, "Accept": "application/json", **self.headers}

        last_error = None
        for attempt in range(self.max_retries):
            self._wait_for_rate_limit()
            try:
                if method == "GET":
                    response = self.session.get(url, headers=headers, timeout=self.timeout)
                else:
                    response = self.session.post(url, headers=headers, json=body, timeout=self.timeout)

                if response.status_code < 500:
                    if response.status_code >= 400:
                        raise ConnectorError(
                            f"{method} {url} returned {response.status_code}: {response.text[:200]}",
                            connector=self.name,
                        )
                    return response
                last_error = f"HTTP {response.status_code}"

            except requests.exceptions.RequestException as e:
                last_error = str(e)

            logger.warning(
                f"{method} {url} failed (attempt {attempt + 1}/{self.max_retries}): {last_error}"
            )
            if attempt < self.max_retries - 1:
                time.sleep(self.backoff_base * (2 ** attempt))

        raise ConnectorError(
            f"{method} {url} failed after {self.max_retries} attempts: {last_error}",
            connector=self.name,
        )

    def read(self, source: str) -> Tuple[Headers, List[Record]]:
        url = self._url(source)
        response = self._request("GET", url)

        try:
            payload = response.json()
        except ValueError as e:
            raise ConnectorError(f"GET {url} did not return JSON: {e}", connector=self.name) from e

        if isinstance(payload, dict):
            for key in ENVELOPE_KEYS:
                if isinstance(payload.get(key), list):
                    payload = payload[key]
                    break
        if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
            raise ConnectorError(f"GET {url} did not return a list of objects", connector=self.name)

        headers: List[str] = []
        for item in payload:
            for key in item:
                if key not in headers:
                    headers.append(key)

        records = [{h: _to_text(item.get(h)) for h in headers} for item in payload]
        logger.info(f"Read {len(records)} records from {url}")
        return headers, records

    def write(self, destination: str, headers: Headers, records: List[Record]) -> int:
        if not records:
            return 0
        url = self._url(destination)
        body = [{h: record.get(h, "") for h in headers} for record in records]
        self._request("POST", url, body=body)
        logger.debug(f"Posted {len(body)} records to {url}")
        return len(body)

    def _wait_for_rate_limit(self) -> None:
        """Enforce rate limiting between requests."""
        if self.rate_limit_delay > 0:
            elapsed = time.time() - self.last_request_time
            if elapsed < self.rate_limit_delay:
                time.sleep(self.rate_limit_delay - elapsed)
        self.last_request_time = time.time()

    def get_name(self) -> str:
        """Return the connector name."""
        return self.name

    def close(self) -> None:
        """Close the session."""
        if self.session:
            self.session.close()
