"""Test fixtures for the schoolsync client."""

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
import respx

from schoolsync import SyncClient
from schoolsync.services.auth import TokenPair
from schoolsync.services.errors import AuthError
from schoolsync.services.registry import ResourceConfig, ResourceRegistry
from schoolsync.services.transport import ApiRequest, ApiResponse
from schoolsync.settings import Settings

STUDENTS_URL = "http://students.test"
CONFIG_URL = "http://config.test"
AUTH_URL = "http://auth.test"

STUDENTS_PATH = f"{STUDENTS_URL}/api/v1/students"
SETTINGS_PATH = f"{CONFIG_URL}/api/v1/configurations/settings"


class FakeClock:
    """Manually advanced clock for freshness tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSender:
    """
    Stand-in for the auth coordinator in cache tests.

    ``handler`` maps a request to response data (or an exception to raise).
    While ``gate`` is set, sends wait on it, so tests control when in-flight
    requests resolve.
    """

    def __init__(self, handler: Callable[[ApiRequest], Any] | None = None) -> None:
        self.requests: list[ApiRequest] = []
        self.handler = handler or (lambda request: {"url": request.url})
        self.gate: asyncio.Event | None = None

    async def send(self, request: ApiRequest) -> ApiResponse:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        result = self.handler(request)
        if isinstance(result, Exception):
            raise result
        return ApiResponse(status=200, data=result, correlation_id="test-correlation")


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at the mocked hosts."""
    return Settings(
        student_api_base_url=STUDENTS_URL,
        config_api_base_url=CONFIG_URL,
        auth_api_base_url=AUTH_URL,
        request_timeout=10,
        user_id="registrar",
        search_debounce_ms=50,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> ResourceRegistry:
    return ResourceRegistry(
        [
            ResourceConfig(
                resource_type="student",
                base_url=STUDENTS_URL,
                path="/api/v1/students",
                stale_after=timedelta(minutes=5),
                item_stale_after=timedelta(seconds=30),
            ),
            ResourceConfig(
                resource_type="config_setting",
                base_url=CONFIG_URL,
                path="/api/v1/configurations/settings",
                id_field="settingId",
                stale_after=timedelta(hours=1),
            ),
        ]
    )


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def mock_api() -> respx.MockRouter:
    """Mock every outbound httpx call."""
    with respx.mock(assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture
def expired_sessions() -> list[AuthError]:
    """Collects session-expired notifications."""
    return []


@pytest.fixture
async def client(
    settings: Settings,
    mock_api: respx.MockRouter,
    clock: FakeClock,
    expired_sessions: list[AuthError],
) -> AsyncGenerator[SyncClient]:
    """A signed-in client whose HTTP calls all go to ``mock_api``."""
    sync_client = SyncClient(
        settings=settings,
        on_session_expired=expired_sessions.append,
        clock=clock,
    )
    sync_client.sign_in(TokenPair("access-1", "refresh-1"))
    yield sync_client
    await sync_client.close()


def student_record(pk: int = 42, version: int = 0, **overrides: Any) -> dict[str, Any]:
    """Sample student response data."""
    record = {
        "id": pk,
        "studentId": f"STU-2024-{pk:05d}",
        "firstName": "Asha",
        "lastName": "Rao",
        "dateOfBirth": "2012-04-18",
        "currentAge": 12,
        "mobile": "9876543210",
        "address": "12 Lake Road, Pune",
        "fatherName": "Vikram Rao",
        "status": "ACTIVE",
        "createdAt": "2024-06-01",
        "updatedAt": "2024-06-01",
        "version": version,
    }
    record.update(overrides)
    return record


def student_page(*records: dict[str, Any], page: int = 0, size: int = 20) -> dict[str, Any]:
    """Sample paged student response."""
    return {
        "content": list(records),
        "page": page,
        "size": size,
        "totalElements": len(records),
        "totalPages": 1 if records else 0,
        "first": page == 0,
        "last": True,
    }
