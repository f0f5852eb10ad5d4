"""Request executor: one authenticated HTTP call, classified.

Every call passes through SessionManager.ensure_valid_session() first. The
response status is mapped to a RequestOutcome that callers use to decide
whether to retry, skip or abort:

    200/201/204        -> success (body returned verbatim)
    401                -> AUTH_EXPIRED, session forced stale
    403                -> FORBIDDEN
    404                -> NOT_FOUND
    other              -> SERVER_ERROR
    transport failure  -> NETWORK

Retry Strategy (transient errors only, inside one execute() call):
- Exponential backoff with ±50% jitter
- Max retries: 2 (configurable)
- Retryable: ConnectError, TimeoutException, 502, 503, 504
"""

import logging
import time
from typing import Any

import httpx

from stationsearch.session.manager import SessionManager
from stationsearch.session.retry import REQUEST_BACKOFF
from stationsearch.session.types import FailureKind, RequestOutcome

logger = logging.getLogger(__name__)

SUCCESS_STATUS_CODES = {200, 201, 204}

# Retryable HTTP status codes (server-side transient errors)
RETRYABLE_STATUS_CODES = {502, 503, 504}


def classify_response(response: httpx.Response) -> RequestOutcome:
    """Map an HTTP response onto a RequestOutcome."""
    code = response.status_code
    if code in SUCCESS_STATUS_CODES:
        return RequestOutcome.ok(code, response.text)
    if code == 401:
        return RequestOutcome.failure(
            FailureKind.AUTH_EXPIRED,
            "Authentication failed (HTTP 401) - token may be expired",
            status_code=code,
            body=response.text,
        )
    if code == 403:
        return RequestOutcome.failure(
            FailureKind.FORBIDDEN, "Access forbidden (HTTP 403)", status_code=code, body=response.text
        )
    if code == 404:
        return RequestOutcome.failure(
            FailureKind.NOT_FOUND, "Not found (HTTP 404)", status_code=code, body=response.text
        )
    return RequestOutcome.failure(
        FailureKind.SERVER_ERROR, f"HTTP error {code}", status_code=code, body=response.text
    )


class RequestExecutor:
    """Authenticated HTTP client for one service.

    Usage:
        with RequestExecutor(session) as api:
            outcome = api.patch("/api/channels/channels/12/", {"tvc_guide_stationid": "10021"})
            if outcome.success:
                channel = outcome.json()
    """

    def __init__(
        self,
        session: SessionManager,
        connect_timeout: float = 10.0,
        timeout: float = 30.0,
        max_retries: int = 2,
        http: httpx.Client | None = None,
    ):
        """Initialize the executor.

        Args:
            session: Session manager for the target service
            connect_timeout: Connect timeout in seconds (default: 10.0)
            timeout: Read/write timeout in seconds (default: 30.0)
            max_retries: Retry attempts for transient errors (default: 2)
            http: Optional shared httpx.Client; the session's client otherwise
        """
        self._session = session
        self._connect_timeout = connect_timeout
        self._timeout = timeout
        self._max_retries = max_retries
        self._http = http

    @property
    def session(self) -> SessionManager:
        return self._session

    def _get_client(self) -> httpx.Client:
        if self._http is None:
            self._http = self._session.http
        return self._http

    def execute(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: dict | None = None,
    ) -> RequestOutcome:
        """Make one authenticated request.

        Args:
            method: HTTP method (GET, POST, PATCH, PUT, DELETE)
            path: Path relative to the service base URL
            body: JSON body for POST/PATCH/PUT
            params: Optional query parameters

        Returns:
            Classified RequestOutcome
        """
        service = self._session.service
        method = method.upper()

        session_result = self._session.ensure_valid_session()
        if not session_result.ok:
            logger.error(
                "[%s] Failed to obtain valid authentication: %s",
                service.upper(),
                session_result.message,
            )
            return RequestOutcome.failure(
                FailureKind.AUTH_EXPIRED,
                session_result.message or "Authentication unavailable",
            )

        headers = {"Accept": "application/json", **self._session.current_headers()}
        if body is not None:
            headers["Content-Type"] = "application/json"

        url = f"{self._session.descriptor.url}{path}"
        timeout = httpx.Timeout(self._timeout, connect=self._connect_timeout)
        client = self._get_client()
        last_error: str | None = None

        logger.debug("[%s] %s %s", service.upper(), method, path)

        for attempt in range(self._max_retries + 1):
            try:
                response = client.request(
                    method,
                    url,
                    headers=headers,
                    json=body,
                    params=params,
                    timeout=timeout,
                )
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_error = f"{type(e).__name__}: {e}"
                if attempt < self._max_retries:
                    delay = REQUEST_BACKOFF.delay(attempt)
                    logger.warning(
                        "[%s] Retryable error for %s %s: %s, retry %d/%d after %.1fs",
                        service.upper(),
                        method,
                        path,
                        type(e).__name__,
                        attempt + 1,
                        self._max_retries,
                        delay,
                    )
                    time.sleep(delay)
                    continue
                break
            except httpx.HTTPError as e:
                # Non-retryable transport problem (bad URL, protocol error)
                last_error = f"{type(e).__name__}: {e}"
                break

            if response.status_code in RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                delay = REQUEST_BACKOFF.delay(attempt)
                logger.warning(
                    "[%s] Retryable HTTP %d for %s %s, retry %d/%d after %.1fs",
                    service.upper(),
                    response.status_code,
                    method,
                    path,
                    attempt + 1,
                    self._max_retries,
                    delay,
                )
                time.sleep(delay)
                continue

            outcome = classify_response(response)
            if outcome.kind == FailureKind.AUTH_EXPIRED:
                logger.warning("[%s] %s for %s %s", service.upper(), outcome.error, method, path)
                # Server contradicted the cached "fresh" flag
                self._session.mark_stale()
            elif not outcome.success:
                logger.error("[%s] %s for %s %s", service.upper(), outcome.error, method, path)
            else:
                logger.debug(
                    "[%s] Successful %s request to %s (HTTP %d)",
                    service.upper(),
                    method,
                    path,
                    response.status_code,
                )
            return outcome

        logger.error("[%s] Network error for %s %s: %s", service.upper(), method, path, last_error)
        return RequestOutcome.failure(FailureKind.NETWORK, f"Network error: {last_error}")

    def get(self, path: str, params: dict | None = None) -> RequestOutcome:
        """Make authenticated GET request."""
        return self.execute("GET", path, params=params)

    def post(self, path: str, data: Any = None) -> RequestOutcome:
        """Make authenticated POST request."""
        return self.execute("POST", path, data)

    def patch(self, path: str, data: Any) -> RequestOutcome:
        """Make authenticated PATCH request."""
        return self.execute("PATCH", path, data)

    def delete(self, path: str) -> RequestOutcome:
        """Make authenticated DELETE request."""
        return self.execute("DELETE", path)

    @staticmethod
    def parse_api_error(outcome: RequestOutcome) -> str:
        """Human-readable error message for a failed outcome.

        Handles Django REST field errors ({"name": ["This field is required"]}),
        {"detail": ...} bodies and plain text.
        """
        if outcome.success:
            return ""

        data = outcome.json()
        if isinstance(data, dict) and data:
            if "detail" in data:
                return str(data["detail"])
            errors = []
            for field, msgs in data.items():
                if isinstance(msgs, list):
                    errors.append(f"{field}: {', '.join(str(m) for m in msgs)}")
                else:
                    errors.append(f"{field}: {msgs}")
            return "; ".join(errors)

        return outcome.error or "Request failed"

    def close(self) -> None:
        """Close the session's HTTP client."""
        self._session.close()
        self._http = None

    def __enter__(self) -> "RequestExecutor":
        return self

    def __exit__(self, *args) -> None:
        self.close()
