"""HTTP plumbing shared by the Rally and Azure DevOps connectors.

``ApiSession`` wraps a ``requests.Session`` with a per-call timeout, the
shared ``RequestThrottle`` and ``RetryPolicy``, and maps HTTP outcomes onto
the migration exception taxonomy.
"""

from __future__ import annotations

import logging
from typing import Any, Final

import requests

from .exceptions import (
    AuthenticationError,
    MigrationError,
    NotFoundError,
    TransientNetworkError,
    ValidationError,
)
from .retry import RequestThrottle, RetryPolicy

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Final[float] = 60.0
_TRANSIENT_STATUSES: Final[frozenset[int]] = frozenset({408, 429, 500, 502, 503, 504})
_THROTTLE_STATUSES: Final[frozenset[int]] = frozenset({429, 503})


def _retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:400]
    if isinstance(payload, dict) and "message" in payload:
        return str(payload["message"])[:400]
    return str(payload)[:400]


class ApiSession:
    """A requests session with timeouts, throttling, retries and error mapping."""

    def __init__(
        self,
        session: requests.Session,
        *,
        name: str,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        throttle: RequestThrottle | None = None,
    ) -> None:
        self.session: requests.Session = session
        self.name: str = name
        self.timeout: float = timeout
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self.throttle: RequestThrottle = throttle or RequestThrottle()

    def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,  # noqa: ANN401 - arbitrary JSON payload
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:  # noqa: ANN401 - decoded JSON
        """Send a request and return the decoded JSON body (None when empty)."""
        description = f"{self.name} {method} {url}"
        return self.retry_policy.call(
            lambda: self._send(method, url, params=params, json_body=json_body, data=data, headers=headers),
            description=description,
        )

    def get_bytes(self, url: str) -> bytes:
        """Download raw content."""
        response = self.retry_policy.call(lambda: self._raw("GET", url), description=f"{self.name} GET {url}")
        return response.content

    def _raw(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,  # noqa: ANN401
        data: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        with self.throttle.slot():
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    data=data,
                    headers=headers,
                    timeout=self.timeout,
                )
            except requests.exceptions.Timeout as e:
                msg = f"{self.name} request timed out: {method} {url}"
                raise TransientNetworkError(msg) from e
            except requests.exceptions.ConnectionError as e:
                msg = f"{self.name} connection error: {method} {url}"
                raise TransientNetworkError(msg) from e

        status = response.status_code
        if status in _THROTTLE_STATUSES:
            retry_after = _retry_after(response)
            self.throttle.backoff(retry_after or self.retry_policy.base_delay)
            msg = f"{self.name} throttled ({status}): {method} {url}"
            raise TransientNetworkError(msg, retry_after=retry_after)
        if status in _TRANSIENT_STATUSES:
            msg = f"{self.name} server error {status}: {method} {url}: {error_text(response)}"
            raise TransientNetworkError(msg)
        if status in (401, 403):
            msg = f"{self.name} authentication failed ({status}): {method} {url}"
            raise AuthenticationError(msg)
        if status == 404:
            msg = f"{self.name} resource not found: {method} {url}"
            raise NotFoundError(msg)
        if 400 <= status < 500:
            self.raise_client_error(response, method, url)
        if status >= 400:
            msg = f"{self.name} {status} {method} {url}: {error_text(response)}"
            raise MigrationError(msg)
        return response

    def raise_client_error(self, response: requests.Response, method: str, url: str) -> None:
        """Map a 4xx response (other than auth/404/throttling) onto an exception.

        Connectors override this to recognize API-specific rule violations.
        """
        msg = f"{self.name} rejected {method} {url} ({response.status_code}): {error_text(response)}"
        raise ValidationError(msg)

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: Any,  # noqa: ANN401
        data: bytes | None,
        headers: dict[str, str] | None,
    ) -> Any:  # noqa: ANN401
        response = self._raw(method, url, params=params, json_body=json_body, data=data, headers=headers)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            msg = f"{self.name} returned invalid JSON for {method} {url}"
            raise MigrationError(msg) from e
