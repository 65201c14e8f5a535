"""Request Tracker REST 2.0 API client."""

import logging
import os
from dataclasses import dataclass
from typing import Any

import requests  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0  # seconds


class RTConfigError(ValueError):
    """Raised when the RT connection settings are missing or invalid."""


@dataclass(frozen=True)
class RTResult:
    """Outcome of a single RT API call.

    Either ``error`` is set (the call failed) or ``data`` holds the parsed
    payload. A successful call may still carry ``data=None``.
    """

    data: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RTClient:
    """Thin wrapper around the RT REST 2.0 API.

    Every call is authenticated, bounded by a timeout and never raises for
    network or HTTP failures: those come back as a failed :class:`RTResult`.
    """

    def __init__(self, url: str | None = None, token: str | None = None, timeout: float | None = None) -> None:
        """Initialize the client.

        Args:
            url: RT REST 2.0 base URL (default: ``RT_URL`` environment variable)
            token: RT auth token (default: ``RT_TOKEN`` environment variable)
            timeout: Request timeout in seconds (default: ``RT_TIMEOUT`` or 20)

        Raises:
            RTConfigError: If the URL or token is missing, or the timeout is not a number
        """
        self.url = (url or os.getenv("RT_URL", "")).rstrip("/")
        if not self.url:
            raise RTConfigError("RT_URL is not set")

        token = token or os.getenv("RT_TOKEN")
        if not token:
            raise RTConfigError("No authentication method provided: set RT_TOKEN")

        if timeout is None:
            raw_timeout = os.getenv("RT_TIMEOUT", str(DEFAULT_TIMEOUT))
            try:
                timeout = float(raw_timeout)
            except ValueError as e:
                raise RTConfigError(f"Invalid RT_TIMEOUT '{raw_timeout}'") from e
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"token {token}",
                "Accept": "application/json",
            }
        )

    def _send(self, endpoint: str, method: str, payload: dict[str, Any] | None) -> requests.Response:
        response = self.session.request(
            method,
            self.url + endpoint,
            json=payload,
            timeout=self.timeout,
        )
        if not response.ok:
            raise requests.HTTPError(
                f"HTTP error! status {response.status_code} : {response.text or response.reason}",
                response=response,
            )
        return response

    def request(self, endpoint: str, method: str = "GET", payload: dict[str, Any] | None = None) -> RTResult:
        """Call an RT endpoint and parse the JSON body.

        Args:
            endpoint: Path relative to the base URL, including any query string
            method: HTTP method (GET, POST, PUT, DELETE)
            payload: JSON body for POST/PUT requests

        Returns:
            RTResult with the parsed body, or the failure reason
        """
        try:
            response = self._send(endpoint, method, payload)
            return RTResult(data=response.json())
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error("Error making RT request %s %s: %s", method, endpoint, e)
            return RTResult(error=str(e))

    def request_bytes(self, endpoint: str) -> RTResult:
        """Fetch an RT endpoint as raw bytes (attachment content)."""
        try:
            response = self._send(endpoint, "GET", None)
            return RTResult(data=response.content)
        except requests.exceptions.RequestException as e:
            logger.error("Error making RT binary request %s: %s", endpoint, e)
            return RTResult(error=str(e))

    def get_system_info(self) -> RTResult:
        """Return RT version information, used as a connectivity check."""
        return self.request("/rt")
