"""
AuthRefreshCoordinator - owns the token pair and recovers from expired credentials.

States:
- IDLE: Tokens (if any) are considered usable
- REFRESHING: One refresh call is in flight; other callers wait on it
- FAILED: Refresh was rejected; tokens discarded until the next sign-in

Transitions:
- IDLE → REFRESHING: A request gets 401, or the access token is past its expiry
- REFRESHING → IDLE: Refresh succeeded, new token pair stored
- REFRESHING → FAILED: Refresh failed, session collaborator notified
- FAILED → IDLE: sign_in() / login()
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from schoolsync.services.errors import AuthError, SyncError
from schoolsync.services.transport import ApiRequest, ApiResponse, Transport

SessionExpiredHandler = Callable[[AuthError], Awaitable[None] | None]


class AuthState(str, Enum):
    """Refresh coordinator states."""

    IDLE = "IDLE"
    REFRESHING = "REFRESHING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh token pair with the client's estimate of access expiry."""

    access_token: str
    refresh_token: str
    estimated_expiry: datetime | None = None

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        now: datetime | None = None,
    ) -> "TokenPair":
        """Build from a login/refresh response body."""
        if not isinstance(data, dict):
            raise ValueError(f"Token response must be an object, got {type(data).__name__}")
        expires_in = data.get("expiresIn")
        expiry = None
        if expires_in is not None:
            expiry = (now or datetime.now()) + timedelta(seconds=float(expires_in))
        return cls(
            access_token=data["accessToken"],
            refresh_token=data["refreshToken"],
            estimated_expiry=expiry,
        )

    def is_expired(self, now: datetime, skew: timedelta = timedelta(0)) -> bool:
        if self.estimated_expiry is None:
            return False
        return now >= self.estimated_expiry - skew


class AuthRefreshCoordinator:
    """
    Sends requests with the current access token and transparently refreshes it.

    Only this class writes the token pair. Concurrent 401s share one refresh
    call; each original request is replayed at most once.

    Usage:
        auth = AuthRefreshCoordinator(transport, auth_base_url="http://localhost:8080")
        auth.sign_in(TokenPair("access", "refresh"))
        response = await auth.send(ApiRequest("GET", url))
    """

    def __init__(
        self,
        transport: Transport,
        auth_base_url: str,
        on_session_expired: SessionExpiredHandler | None = None,
        expiry_skew: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = datetime.now,
        debug: bool = False,
    ):
        self._transport = transport
        self._auth_base_url = auth_base_url.rstrip("/")
        self._on_session_expired = on_session_expired
        self._expiry_skew = expiry_skew
        self._clock = clock
        self._debug = debug

        self._state = AuthState.IDLE
        self._tokens: TokenPair | None = None
        self._refresh_task: asyncio.Task[TokenPair] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._stats = AuthStats()

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def tokens(self) -> TokenPair | None:
        return self._tokens

    @property
    def is_authenticated(self) -> bool:
        return self._tokens is not None

    def sign_in(self, tokens: TokenPair) -> None:
        """Install a new token pair (start of a session)."""
        self._tokens = tokens
        self._state = AuthState.IDLE
        logger.info("Signed in, token pair installed")

    def sign_out(self) -> None:
        """Discard the token pair."""
        self._tokens = None
        self._state = AuthState.IDLE
        logger.info("Signed out, token pair discarded")

    async def login(self, username: str, password: str) -> TokenPair:
        """Exchange credentials for a token pair and sign in with it."""
        response = await self._transport.send(
            ApiRequest(
                "POST",
                f"{self._auth_base_url}/auth/login",
                json={"username": username, "password": password},
                authenticated=False,
            )
        )
        tokens = self._parse_tokens(response)
        self.sign_in(tokens)
        return tokens

    async def logout(self) -> None:
        """Tell the server the session ended, then discard tokens."""
        try:
            if self._tokens is not None:
                await self.send(ApiRequest("POST", f"{self._auth_base_url}/auth/logout"))
        finally:
            self.sign_out()

    async def send(self, request: ApiRequest) -> ApiResponse:
        """
        Send a request with the current access token.

        A 401 triggers (or joins) a single refresh, after which the request is
        replayed once. A second 401 is surfaced as AuthError without another
        refresh. All other errors pass through unchanged.
        """
        if not request.authenticated:
            return await self._transport.send(request)

        tokens = self._tokens
        if tokens is not None and tokens.is_expired(self._clock(), self._expiry_skew):
            self._log("Access token past estimated expiry, refreshing first")
            tokens = await self._ensure_refreshed(tokens.access_token)

        sent_with = tokens.access_token if tokens else None
        try:
            return await self._transport.send(request, access_token=sent_with)
        except AuthError as e:
            if not e.is_expired_credentials:
                raise
            self._log(f"[{e.correlation_id}] 401 on {request.method} {request.url}")

        fresh = await self._ensure_refreshed(sent_with)
        self._stats.replays += 1
        try:
            return await self._transport.send(request, access_token=fresh.access_token)
        except AuthError as e:
            if not e.is_expired_credentials:
                raise
            raise AuthError(
                "Request rejected again after token refresh",
                status=e.status,
                problem=e.problem,
                correlation_id=e.correlation_id,
            ) from e

    async def _ensure_refreshed(self, stale_access_token: str | None) -> TokenPair:
        """Return a token pair newer than ``stale_access_token``, refreshing once."""
        if self._state == AuthState.REFRESHING and self._refresh_task is not None:
            self._stats.joined += 1
            self._log("Refresh in flight, waiting for its outcome")
            return await asyncio.shield(self._refresh_task)

        current = self._tokens
        if current is None:
            raise AuthError("No active session; sign in required", status=401)

        if current.access_token != stale_access_token and not current.is_expired(
            self._clock(), self._expiry_skew
        ):
            # Another caller already refreshed after this request was sent
            return current

        self._state = AuthState.REFRESHING
        self._stats.refreshes += 1
        logger.info("Refreshing access token (IDLE -> REFRESHING)")
        task = asyncio.create_task(self._do_refresh(current))
        task.add_done_callback(_consume_exception)
        self._refresh_task = task
        return await asyncio.shield(task)

    async def _do_refresh(self, current: TokenPair) -> TokenPair:
        try:
            response = await self._transport.send(
                ApiRequest(
                    "POST",
                    f"{self._auth_base_url}/auth/refresh",
                    json={"refreshToken": current.refresh_token},
                    authenticated=False,
                )
            )
            tokens = self._parse_tokens(response)
        except SyncError as e:
            error = AuthError(
                "Session expired; re-authentication required",
                status=401,
                problem=e.problem,
                correlation_id=e.correlation_id,
            )
            self._fail(error)
            raise error from e
        except asyncio.CancelledError:
            # Tokens untouched; the next 401 starts a new refresh
            self._state = AuthState.IDLE
            raise
        finally:
            self._refresh_task = None

        self._tokens = tokens
        self._state = AuthState.IDLE
        logger.info("Access token refreshed (REFRESHING -> IDLE)")
        return tokens

    def _parse_tokens(self, response: ApiResponse) -> TokenPair:
        try:
            return TokenPair.from_response(response.data, now=self._clock())
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise AuthError(
                "Token response is missing accessToken/refreshToken",
                status=response.status,
                correlation_id=response.correlation_id,
            ) from e

    def _fail(self, error: AuthError) -> None:
        """Transition to FAILED and notify the session collaborator."""
        self._tokens = None
        self._state = AuthState.FAILED
        self._stats.failures += 1
        logger.warning("Token refresh failed (REFRESHING -> FAILED), session expired")

        if self._on_session_expired is not None:
            # In-flight requests are left to complete; the handler decides when to re-auth
            asyncio.get_running_loop().call_soon(self._notify_session_expired, error)

    def _notify_session_expired(self, error: AuthError) -> None:
        result = self._on_session_expired(error)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        expiry = self._tokens.estimated_expiry if self._tokens else None
        return {
            "state": self._state.value,
            "authenticated": self.is_authenticated,
            "estimated_expiry": expiry.isoformat() if expiry else None,
            **self._stats.to_dict(),
        }

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[AuthRefresh] {message}")


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Waiters may all have been cancelled; keep asyncio from reporting it
    if not task.cancelled():
        task.exception()


class AuthStats:
    """Refresh statistics."""

    def __init__(self):
        self.refreshes: int = 0  # Refresh calls issued
        self.joined: int = 0  # Callers that waited on an in-flight refresh
        self.replays: int = 0  # Requests replayed after a refresh
        self.failures: int = 0  # Refreshes that failed

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "refreshes": self.refreshes,
            "joined": self.joined,
            "replays": self.replays,
            "failures": self.failures,
        }
