"""HTTP client for the platform's admin REST API."""

from __future__ import annotations

import json
from typing import Any

import httpx

from mqtt_dashboard.config import ApiConfig
from mqtt_dashboard.errors import ConflictError, RequestError, StaleDataError

# Statuses meaning "the server understood and refused": surfaced as conflicts
_CONFLICT_STATUSES = {400, 409, 422}


def _error_message(response: httpx.Response) -> str:
    """Extract the error text from a failed response.

    The API answers {"error": "...", "details"?: "..."} but proxies in front
    of it may return plain text or nothing at all.
    """
    text = response.text
    try:
        body = json.loads(text)
    except ValueError:
        return text.strip() or response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        message = body.get("error") or body.get("message") or response.reason_phrase
        details = body.get("details")
        if details:
            return f"{message} ({details})"
        return str(message)
    return text.strip() or response.reason_phrase


def raise_for_response(response: httpx.Response) -> None:
    """Map a non-2xx response onto the error taxonomy.

    Raises:
        StaleDataError: 404, the entity is gone
        ConflictError: 400/409/422, a server-side invariant refused the request
        RequestError: anything else (401/403, 5xx, unexpected statuses)
    """
    if response.is_success:
        return
    status = response.status_code
    message = _error_message(response)
    if status == 404:
        raise StaleDataError(message, status=status)
    if status in _CONFLICT_STATUSES:
        raise ConflictError(message, status=status)
    raise RequestError(message, status=status)


class ApiClient:
    """Async client for the admin REST API.

    Simple and stateless: every call either returns decoded JSON or raises
    from mqtt_dashboard.errors. Retry policy belongs to callers (the poll
    scheduler retries on its next tick; mutations never retry).
    """

    def __init__(
        self,
        config: ApiConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        """Root URL of the API."""
        return self.config.base_url

    def _build_client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        cookies = {}
        if self.config.session_cookie:
            cookies["connect.sid"] = self.config.session_cookie
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=headers,
            cookies=cookies,
            timeout=httpx.Timeout(self.config.timeout, connect=min(5.0, self.config.timeout)),
            transport=self._transport,
        )

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and return the decoded JSON body (None when empty).

        Raises:
            RequestError: On transport failure, timeout or non-JSON success body
            ConflictError / StaleDataError: See raise_for_response
        """
        if self._client is None:
            self._client = self._build_client()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise RequestError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise RequestError(f"{method} {path} failed: {e}") from e

        raise_for_response(response)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RequestError(
                f"{method} {path} returned invalid JSON", status=response.status_code
            ) from e

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a resource."""
        return await self.request("GET", path, params=params)

    async def post(self, path: str, body: dict[str, Any] | None = None) -> Any:
        """POST with an optional JSON body."""
        if body is None:
            return await self.request("POST", path)
        return await self.request("POST", path, json=body)

    async def patch(self, path: str, body: dict[str, Any]) -> Any:
        """PATCH with a JSON body."""
        return await self.request("PATCH", path, json=body)

    async def delete(self, path: str) -> Any:
        """DELETE a resource."""
        return await self.request("DELETE", path)
