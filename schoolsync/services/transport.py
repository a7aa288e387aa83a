"""
Transport - single chokepoint for outbound HTTP calls.

Responsibilities:
- Attach the correlation id, actor identity and bearer token headers
- Enforce a fixed per-call timeout
- Classify every failure into one of the SyncError kinds

One attempt per call; retries and refresh live above this layer.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from schoolsync.services.errors import (
    AuthError,
    ConflictError,
    NetworkError,
    NotFoundError,
    ProblemDetail,
    ServerError,
    SyncError,
    UnknownError,
    ValidationError,
)

CORRELATION_ID_HEADER = "X-Correlation-ID"
USER_ID_HEADER = "X-User-ID"


@dataclass
class ApiRequest:
    """An outbound call, independent of credentials."""

    method: str
    url: str
    params: dict[str, Any] | None = None
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    authenticated: bool = True


@dataclass
class ApiResponse:
    """A successful (2xx) response."""

    status: int
    data: Any
    correlation_id: str
    headers: dict[str, str] = field(default_factory=dict)


class Transport:
    """
    Async HTTP transport with failure classification.

    Usage:
        transport = Transport(timeout=15.0, user_id="admin")
        response = await transport.send(
            ApiRequest("GET", "http://localhost:8082/api/v1/configurations/settings"),
            access_token="...",
        )
    """

    def __init__(
        self,
        timeout: float = 30.0,
        user_id: str = "SYSTEM",
        http_client: httpx.AsyncClient | None = None,
        debug: bool = False,
    ):
        self._timeout = timeout
        self._user_id = user_id
        self._debug = debug
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def timeout(self) -> float:
        return self._timeout

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers={"Accept": "application/json"},
            )
        return self._http_client

    def _build_headers(
        self,
        request: ApiRequest,
        access_token: str | None,
        correlation_id: str,
    ) -> dict[str, str]:
        headers = {
            USER_ID_HEADER: self._user_id,
            CORRELATION_ID_HEADER: correlation_id,
        }
        headers.update(request.headers)
        if request.authenticated and access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def send(
        self,
        request: ApiRequest,
        access_token: str | None = None,
    ) -> ApiResponse:
        """
        Execute a single HTTP attempt.

        Returns:
            ApiResponse for any 2xx status

        Raises:
            SyncError subclass for every failure; never a raw httpx exception
        """
        correlation_id = str(uuid.uuid4())
        headers = self._build_headers(request, access_token, correlation_id)
        client = await self._get_http_client()

        self._log(f"[{correlation_id}] {request.method} {request.url}")

        try:
            response = await client.request(
                method=request.method,
                url=request.url,
                params=request.params,
                json=request.json,
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            error = NetworkError(
                f"{request.method} {request.url} timed out after {self._timeout}s",
                correlation_id=correlation_id,
                timed_out=True,
            )
            self._warn(error)
            raise error from e
        except httpx.HTTPError as e:
            error = NetworkError(
                f"{request.method} {request.url} failed: {e}",
                correlation_id=correlation_id,
            )
            self._warn(error)
            raise error from e

        if response.is_success:
            return ApiResponse(
                status=response.status_code,
                data=self._decode_success(response, correlation_id),
                correlation_id=correlation_id,
                headers=dict(response.headers),
            )

        error = self._classify(response, correlation_id)
        self._warn(error)
        raise error

    def _decode_success(self, response: httpx.Response, correlation_id: str) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UnknownError(
                f"Response body is not valid JSON (HTTP {response.status_code})",
                status=response.status_code,
                correlation_id=correlation_id,
            ) from e

    def _classify(self, response: httpx.Response, correlation_id: str) -> SyncError:
        """Map an error response to its SyncError kind."""
        status = response.status_code
        try:
            body: Any = response.json() if response.content else None
        except ValueError:
            body = response.text

        echoed = response.headers.get(CORRELATION_ID_HEADER) or correlation_id
        problem = ProblemDetail.from_body(body, status, correlation_id=echoed)
        message = problem.detail or problem.title or f"HTTP {status}"

        if status in (401, 403):
            error_cls: type[SyncError] = AuthError
        elif status == 404:
            error_cls = NotFoundError
        elif status == 409:
            error_cls = ConflictError
        elif status in (400, 422):
            error_cls = ValidationError
        elif status >= 500:
            error_cls = ServerError
        else:
            error_cls = UnknownError

        return error_cls(message, status=status, problem=problem, correlation_id=echoed)

    async def close(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    def _warn(self, error: SyncError) -> None:
        logger.warning(
            f"[{error.correlation_id}] {error.kind.value} "
            f"(HTTP {error.status}): {error}"
        )

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Transport] {message}")
