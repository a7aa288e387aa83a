import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # API endpoints
    student_api_base_url: str = Field(
        default="http://localhost:8081", alias="STUDENT_API_BASE_URL"
    )
    config_api_base_url: str = Field(
        default="http://localhost:8082", alias="CONFIG_API_BASE_URL"
    )
    auth_api_base_url: str = Field(
        default="http://localhost:8080", alias="AUTH_API_BASE_URL"
    )

    # Transport
    request_timeout: float = Field(default=30.0, ge=1, le=120, alias="API_REQUEST_TIMEOUT")
    user_id: str = Field(default="SYSTEM", alias="API_USER_ID")

    # Cache staleness windows (seconds)
    student_stale_seconds: int = Field(default=300, ge=0, alias="STUDENT_STALE_SECONDS")
    student_item_stale_seconds: int = Field(
        default=30, ge=0, alias="STUDENT_ITEM_STALE_SECONDS"
    )
    config_stale_seconds: int = Field(default=3600, ge=0, alias="CONFIG_STALE_SECONDS")
    cache_max_size: int = Field(default=500, ge=1, alias="CACHE_MAX_SIZE")

    # Search / pagination
    search_debounce_ms: int = Field(default=400, ge=0, alias="SEARCH_DEBOUNCE_MS")
    default_page_size: int = Field(default=20, ge=1, alias="DEFAULT_PAGE_SIZE")
    default_sort: str = Field(default="createdAt,desc", alias="DEFAULT_SORT")

    # Auth
    token_expiry_skew_seconds: int = Field(
        default=30, ge=0, alias="TOKEN_EXPIRY_SKEW_SECONDS"
    )

    debug: bool = Field(default=False, alias="SYNC_DEBUG")

    @property
    def student_stale_after(self) -> timedelta:
        return timedelta(seconds=self.student_stale_seconds)

    @property
    def student_item_stale_after(self) -> timedelta:
        return timedelta(seconds=self.student_item_stale_seconds)

    @property
    def config_stale_after(self) -> timedelta:
        return timedelta(seconds=self.config_stale_seconds)

    @property
    def token_expiry_skew(self) -> timedelta:
        return timedelta(seconds=self.token_expiry_skew_seconds)

    @property
    def search_debounce_window(self) -> float:
        return self.search_debounce_ms / 1000


def load_settings() -> Settings:
    """Read settings from the environment (after .env has been loaded)."""
    aliases = {field.alias for field in Settings.model_fields.values()}
    return Settings.model_validate(
        {name: value for name, value in os.environ.items() if name in aliases}
    )


global_settings = load_settings()
