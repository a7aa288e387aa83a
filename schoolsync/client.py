"""
SyncClient - Wires the sync layer together for one signed-in session.

Combines:
- Transport for single-attempt HTTP with failure classification
- AuthRefreshCoordinator for token ownership and 401 recovery
- QueryCache for canonical-key reads with coalescing and tag invalidation
- MutationCoordinator for optimistic-concurrency writes
- SearchDebouncer factory for list views
"""

from datetime import datetime
from typing import Any, Callable

import httpx
from loguru import logger

from schoolsync.resources.configuration import (
    CONFIG_SETTING,
    SCHOOL_PROFILE,
    ConfigurationApi,
    CreateSettingRequest,
    UpdateSchoolProfileRequest,
    UpdateSettingRequest,
)
from schoolsync.resources.students import (
    STUDENT,
    CreateStudentRequest,
    StudentApi,
    UpdateStudentRequest,
)
from schoolsync.services.auth import (
    AuthRefreshCoordinator,
    SessionExpiredHandler,
    TokenPair,
)
from schoolsync.services.cache import QueryCache
from schoolsync.services.mutations import MutationCoordinator
from schoolsync.services.registry import ResourceConfig, ResourceRegistry
from schoolsync.services.search import SearchDebouncer, SearchParamModel
from schoolsync.services.transport import Transport
from schoolsync.settings import Settings, global_settings


def default_resources(settings: Settings) -> list[ResourceConfig]:
    """Resource types synced by default: students, settings, school profile."""
    return [
        ResourceConfig(
            resource_type=STUDENT,
            base_url=settings.student_api_base_url,
            path="/api/v1/students",
            id_field="id",
            stale_after=settings.student_stale_after,
            item_stale_after=settings.student_item_stale_after,
            create_schema=CreateStudentRequest,
            update_schema=UpdateStudentRequest,
        ),
        ResourceConfig(
            resource_type=CONFIG_SETTING,
            base_url=settings.config_api_base_url,
            path="/api/v1/configurations/settings",
            id_field="settingId",
            stale_after=settings.config_stale_after,
            create_schema=CreateSettingRequest,
            update_schema=UpdateSettingRequest,
        ),
        ResourceConfig(
            resource_type=SCHOOL_PROFILE,
            base_url=settings.config_api_base_url,
            path="/api/v1/configurations/school-profile",
            stale_after=settings.config_stale_after,
            singleton=True,
            update_schema=UpdateSchoolProfileRequest,
        ),
    ]


class SyncClient:
    """
    Client-side resource synchronization for the school management API.

    Every instance owns its own cache and token pair; nothing is global.

    Usage:
        async with SyncClient() as client:
            await client.login("admin", "secret")

            page = await client.students.search({"lastName": "Rao"})
            setting = await client.configuration.get_setting(7)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        resources: list[ResourceConfig] | None = None,
        on_session_expired: SessionExpiredHandler | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._settings = settings or global_settings
        debug = self._settings.debug

        self._registry = ResourceRegistry(
            resources if resources is not None else default_resources(self._settings)
        )
        self._transport = Transport(
            timeout=self._settings.request_timeout,
            user_id=self._settings.user_id,
            http_client=http_client,
            debug=debug,
        )
        self._auth = AuthRefreshCoordinator(
            self._transport,
            auth_base_url=self._settings.auth_api_base_url,
            on_session_expired=on_session_expired,
            expiry_skew=self._settings.token_expiry_skew,
            clock=clock,
            debug=debug,
        )
        self._cache = QueryCache(
            self._auth,
            self._registry,
            max_size=self._settings.cache_max_size,
            clock=clock,
            debug=debug,
        )
        self._mutations = MutationCoordinator(self._auth, self._cache, self._registry)

        self.students = StudentApi(self._cache, self._mutations)
        self.configuration = ConfigurationApi(self._cache, self._mutations)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def auth(self) -> AuthRefreshCoordinator:
        return self._auth

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def mutations(self) -> MutationCoordinator:
        return self._mutations

    @property
    def registry(self) -> ResourceRegistry:
        return self._registry

    def register_resource(self, config: ResourceConfig) -> None:
        """Sync an additional resource type."""
        self._registry.register(config)

    # Session

    async def login(self, username: str, password: str) -> TokenPair:
        return await self._auth.login(username, password)

    def sign_in(self, tokens: TokenPair) -> None:
        self._auth.sign_in(tokens)

    async def sign_out(self) -> None:
        """Discard tokens and every cached record."""
        self._auth.sign_out()
        await self._cache.clear()

    # Reads / writes

    async def read(self, resource_type: str, params: dict[str, Any] | None = None, **kwargs: Any) -> Any:
        return await self._cache.read(resource_type, params, **kwargs)

    async def invalidate(self, tag: str) -> int:
        return await self._cache.invalidate(tag)

    def search_debouncer(self, initial: dict[str, Any] | None = None) -> SearchDebouncer:
        """Create a debouncer for one list view using the configured defaults."""
        model = SearchParamModel(
            initial,
            default_size=self._settings.default_page_size,
            default_sort=self._settings.default_sort,
        )
        return SearchDebouncer(
            model,
            window=self._settings.search_debounce_window,
            debug=self._settings.debug,
        )

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        await self._cache.coalescer.cancel_all()
        await self._transport.close()
        logger.debug("SyncClient closed")

    async def __aenter__(self) -> "SyncClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    # Health and status methods

    def get_health_status(self) -> dict[str, Any]:
        """Get health status of the sync layer."""
        return {
            "auth": self._auth.get_status(),
            "cache": self._cache.get_stats().to_dict(),
            "coalescer": self._cache.coalescer.get_stats().to_dict(),
            "resources": self._registry.resource_types(),
        }
