"""Tests for AuthRefreshCoordinator: single-flight refresh, replay and session expiry."""

import asyncio
from datetime import timedelta
from typing import Any

import pytest
import respx
from httpx import Response

from schoolsync import SyncClient
from schoolsync.services.auth import AuthRefreshCoordinator, AuthState, TokenPair
from schoolsync.services.errors import AuthError, ServerError
from schoolsync.services.transport import ApiRequest, ApiResponse, Transport
from tests.conftest import AUTH_URL, STUDENTS_PATH, FakeClock, student_record


class ScriptedTransport:
    """
    Transport stand-in that accepts only ``valid_token``.

    Refresh calls wait on ``refresh_gate`` (when set) and then return
    ``refresh_response`` (or raise it).
    """

    def __init__(self) -> None:
        self.calls: list[tuple[ApiRequest, str | None]] = []
        self.valid_token = "access-1"
        self.forbidden_urls: set[str] = set()
        self.refresh_gate: asyncio.Event | None = None
        self.refresh_response: Any = {"accessToken": "access-2", "refreshToken": "refresh-2"}

    @property
    def refresh_calls(self) -> list[ApiRequest]:
        return [r for r, _ in self.calls if r.url.endswith("/auth/refresh")]

    @property
    def data_calls(self) -> list[tuple[ApiRequest, str | None]]:
        return [(r, t) for r, t in self.calls if "/auth/" not in r.url]

    async def send(self, request: ApiRequest, access_token: str | None = None) -> ApiResponse:
        self.calls.append((request, access_token))
        await asyncio.sleep(0)

        if request.url.endswith("/auth/refresh"):
            if self.refresh_gate is not None:
                await self.refresh_gate.wait()
            if isinstance(self.refresh_response, Exception):
                raise self.refresh_response
            return ApiResponse(200, self.refresh_response, "refresh-correlation")

        if request.url.endswith("/auth/login"):
            return ApiResponse(
                200,
                {"accessToken": "access-9", "refreshToken": "refresh-9", "expiresIn": 900},
                "login-correlation",
            )

        if request.url in self.forbidden_urls:
            raise AuthError("Access denied", status=403, correlation_id="forbidden")
        if access_token != self.valid_token:
            raise AuthError("Token expired", status=401, correlation_id="expired")
        return ApiResponse(200, {"url": request.url, "token": access_token}, "ok")


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def auth(transport: ScriptedTransport, clock: FakeClock, expired_sessions: list) -> AuthRefreshCoordinator:
    coordinator = AuthRefreshCoordinator(
        transport,
        auth_base_url=AUTH_URL,
        on_session_expired=expired_sessions.append,
        clock=clock,
    )
    coordinator.sign_in(TokenPair("access-1", "refresh-1"))
    return coordinator


def _get(pk: int) -> ApiRequest:
    return ApiRequest("GET", f"{STUDENTS_PATH}/{pk}")


@pytest.mark.asyncio
async def test__send__valid_token_passes_through(
    auth: AuthRefreshCoordinator, transport: ScriptedTransport
) -> None:
    response = await auth.send(_get(1))

    assert response.data["token"] == "access-1"
    assert transport.refresh_calls == []
    assert auth.state == AuthState.IDLE


@pytest.mark.asyncio
async def test__send__concurrent_401s_share_one_refresh(
    auth: AuthRefreshCoordinator, transport: ScriptedTransport
) -> None:
    transport.valid_token = "access-2"
    transport.refresh_gate = asyncio.Event()

    first = asyncio.create_task(auth.send(_get(1)))
    second = asyncio.create_task(auth.send(_get(2)))
    for _ in range(10):
        await asyncio.sleep(0)

    assert auth.state == AuthState.REFRESHING
    transport.refresh_gate.set()
    responses = await asyncio.gather(first, second)

    assert [r.data["token"] for r in responses] == ["access-2", "access-2"]
    assert len(transport.refresh_calls) == 1
    assert len(transport.data_calls) == 4
    assert auth.tokens.access_token == "access-2"
    assert auth.tokens.refresh_token == "refresh-2"
    assert auth.state == AuthState.IDLE

    status = auth.get_status()
    assert status["refreshes"] == 1
    assert status["joined"] == 1
    assert status["replays"] == 2


@pytest.mark.asyncio
async def test__send__refresh_body_carries_refresh_token(
    auth: AuthRefreshCoordinator, transport: ScriptedTransport
) -> None:
    transport.valid_token = "access-2"

    await auth.send(_get(1))

    refresh = transport.refresh_calls[0]
    assert refresh.json == {"refreshToken": "refresh-1"}
    assert refresh.authenticated is False


@pytest.mark.asyncio
async def test__send__second_401_after_refresh_is_auth_error(
    auth: AuthRefreshCoordinator, transport: ScriptedTransport
) -> None:
    transport.valid_token = "never-valid"

    with pytest.raises(AuthError, match="rejected again"):
        await auth.send(_get(1))

    assert len(transport.refresh_calls) == 1
    assert len(transport.data_calls) == 2
    assert auth.is_authenticated


@pytest.mark.asyncio
async def test__send__refresh_failure_expires_session_for_all_waiters(
    auth: AuthRefreshCoordinator,
    transport: ScriptedTransport,
    expired_sessions: list,
) -> None:
    transport.valid_token = "access-2"
    transport.refresh_gate = asyncio.Event()
    transport.refresh_response = AuthError("Refresh token revoked", status=401)

    first = asyncio.create_task(auth.send(_get(1)))
    second = asyncio.create_task(auth.send(_get(2)))
    for _ in range(10):
        await asyncio.sleep(0)
    transport.refresh_gate.set()
    results = await asyncio.gather(first, second, return_exceptions=True)
    await asyncio.sleep(0)

    assert all(isinstance(r, AuthError) for r in results)
    assert auth.state == AuthState.FAILED
    assert auth.tokens is None
    assert len(transport.refresh_calls) == 1
    assert len(expired_sessions) == 1
    assert expired_sessions[0].presentation == "session"


@pytest.mark.asyncio
async def test__send__refresh_server_error_surfaces_as_session_expiry(
    auth: AuthRefreshCoordinator,
    transport: ScriptedTransport,
    expired_sessions: list,
) -> None:
    transport.valid_token = "access-2"
    transport.refresh_response = ServerError("Auth service down", status=503)

    with pytest.raises(AuthError) as exc_info:
        await auth.send(_get(1))
    await asyncio.sleep(0)

    assert exc_info.value.status == 401
    assert isinstance(exc_info.value.__cause__, ServerError)
    assert auth.state == AuthState.FAILED
    assert len(expired_sessions) == 1


@pytest.mark.asyncio
async def test__send__async_session_expired_handler_is_awaited(
    transport: ScriptedTransport,
) -> None:
    notified = asyncio.Event()

    async def handler(error: AuthError) -> None:
        notified.set()

    auth = AuthRefreshCoordinator(transport, auth_base_url=AUTH_URL, on_session_expired=handler)
    auth.sign_in(TokenPair("access-1", "refresh-1"))
    transport.valid_token = "access-2"
    transport.refresh_response = AuthError("revoked", status=401)

    with pytest.raises(AuthError):
        await auth.send(_get(1))

    await asyncio.wait_for(notified.wait(), timeout=1)


@pytest.mark.asyncio
async def test__send__403_is_not_refreshed(
    auth: AuthRefreshCoordinator, transport: ScriptedTransport
) -> None:
    transport.forbidden_urls.add(f"{STUDENTS_PATH}/1")

    with pytest.raises(AuthError) as exc_info:
        await auth.send(_get(1))

    assert exc_info.value.status == 403
    assert not exc_info.value.is_expired_credentials
    assert transport.refresh_calls == []


@pytest.mark.asyncio
async def test__send__without_session_raises_without_refresh(
    transport: ScriptedTransport,
) -> None:
    auth = AuthRefreshCoordinator(transport, auth_base_url=AUTH_URL)

    with pytest.raises(AuthError, match="No active session"):
        await auth.send(_get(1))

    assert transport.refresh_calls == []


@pytest.mark.asyncio
async def test__send__refreshes_proactively_past_estimated_expiry(
    auth: AuthRefreshCoordinator, transport: ScriptedTransport, clock: FakeClock
) -> None:
    auth.sign_in(TokenPair("access-1", "refresh-1", clock.now + timedelta(seconds=60)))
    transport.valid_token = "access-2"
    clock.advance(45)

    response = await auth.send(_get(1))

    assert response.data["token"] == "access-2"
    assert len(transport.refresh_calls) == 1
    assert len(transport.data_calls) == 1


@pytest.mark.asyncio
async def test__login__installs_token_pair_with_expiry(
    transport: ScriptedTransport, clock: FakeClock
) -> None:
    auth = AuthRefreshCoordinator(transport, auth_base_url=AUTH_URL, clock=clock)

    tokens = await auth.login("registrar", "secret")

    assert tokens.access_token == "access-9"
    assert tokens.estimated_expiry == clock.now + timedelta(seconds=900)
    assert auth.tokens == tokens
    assert auth.state == AuthState.IDLE
    login_request = transport.calls[0][0]
    assert login_request.json == {"username": "registrar", "password": "secret"}
    assert login_request.authenticated is False


@pytest.mark.asyncio
async def test__sign_in__recovers_from_failed_state(
    auth: AuthRefreshCoordinator, transport: ScriptedTransport
) -> None:
    transport.valid_token = "access-3"
    transport.refresh_response = AuthError("revoked", status=401)
    with pytest.raises(AuthError):
        await auth.send(_get(1))
    assert auth.state == AuthState.FAILED

    auth.sign_in(TokenPair("access-3", "refresh-3"))
    response = await auth.send(_get(1))

    assert auth.state == AuthState.IDLE
    assert response.data["token"] == "access-3"


@pytest.mark.asyncio
async def test__client__replays_read_after_refresh_over_http(
    client: SyncClient, mock_api: respx.MockRouter
) -> None:
    def student_route(request):
        if request.headers["authorization"] != "Bearer access-2":
            return Response(401, json={"title": "Unauthorized", "status": 401})
        return Response(200, json=student_record(42))

    mock_api.get(f"{STUDENTS_PATH}/42").mock(side_effect=student_route)
    refresh = mock_api.post(f"{AUTH_URL}/auth/refresh").mock(
        return_value=Response(200, json={"accessToken": "access-2", "refreshToken": "refresh-2"})
    )

    student = await client.students.get(42)

    assert student.id == 42
    assert refresh.call_count == 1
    assert client.auth.tokens.access_token == "access-2"


@pytest.mark.asyncio
async def test__client__sign_out_clears_cache(
    client: SyncClient, mock_api: respx.MockRouter
) -> None:
    mock_api.get(f"{STUDENTS_PATH}/42").mock(return_value=Response(200, json=student_record(42)))
    await client.students.get(42)
    assert client.cache.get_entry("student:42") is not None

    await client.sign_out()

    assert client.cache.get_entry("student:42") is None
    assert not client.auth.is_authenticated


@pytest.mark.asyncio
async def test__client__empty_refresh_response_fails_session(
    client: SyncClient, mock_api: respx.MockRouter, expired_sessions: list
) -> None:
    mock_api.get(f"{STUDENTS_PATH}/42").mock(
        return_value=Response(401, json={"title": "Unauthorized", "status": 401})
    )
    mock_api.post(f"{AUTH_URL}/auth/refresh").mock(return_value=Response(204))

    with pytest.raises(AuthError):
        await client.students.get(42)
    await asyncio.sleep(0)

    assert client.auth.state == AuthState.FAILED
    assert client.auth.tokens is None
    assert len(expired_sessions) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [None, ["access-2", "refresh-2"], {"accessToken": "access-2"}])
async def test__send__malformed_refresh_body_fails_session(
    auth: AuthRefreshCoordinator,
    transport: ScriptedTransport,
    expired_sessions: list,
    body: Any,
) -> None:
    transport.valid_token = "access-2"
    transport.refresh_response = body

    with pytest.raises(AuthError, match="Session expired"):
        await auth.send(_get(1))
    await asyncio.sleep(0)

    assert auth.state == AuthState.FAILED
    assert len(expired_sessions) == 1


@pytest.mark.asyncio
async def test__login__non_object_response_is_auth_error(mock_api: respx.MockRouter) -> None:
    mock_api.post(f"{AUTH_URL}/auth/login").mock(return_value=Response(200, json=["not", "tokens"]))
    http_transport = Transport()
    auth = AuthRefreshCoordinator(http_transport, auth_base_url=AUTH_URL)

    with pytest.raises(AuthError, match="missing accessToken"):
        await auth.login("registrar", "secret")

    assert not auth.is_authenticated
    await http_transport.close()
