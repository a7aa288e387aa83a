"""
Configuration settings and school profile API.

Endpoints (configuration service):
- /api/v1/configurations/settings        settings CRUD, grouped listing
- /api/v1/configurations/settings/category/{category}
- /api/v1/configurations/school-profile  singleton profile
"""

from enum import Enum
from typing import Any, Mapping

from pydantic import Field

from schoolsync.resources.base import ApiModel, BaseResourceApi

CONFIG_SETTING = "config_setting"
SCHOOL_PROFILE = "school_profile"


class SettingCategory(str, Enum):
    GENERAL = "GENERAL"
    ACADEMIC = "ACADEMIC"
    FINANCIAL = "FINANCIAL"


class ConfigSetting(ApiModel):
    """A configuration setting as returned by the server."""

    setting_id: int
    category: SettingCategory
    key: str
    value: str
    description: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    updated_by: str | None = None
    version: int = 0


class CategorySettings(ApiModel):
    category: SettingCategory
    settings: list[ConfigSetting] = Field(default_factory=list)


class CreateSettingRequest(ApiModel):
    category: SettingCategory
    key: str = Field(min_length=1, max_length=100, pattern=r"^[A-Z][A-Z0-9_]*$")
    value: str = Field(min_length=1, max_length=1000)
    description: str | None = Field(default=None, max_length=500)


class UpdateSettingRequest(ApiModel):
    """Value/description change; ``version`` is supplied separately."""

    value: str = Field(min_length=1, max_length=1000)
    description: str | None = Field(default=None, max_length=500)


class SchoolProfile(ApiModel):
    id: int
    school_name: str
    school_code: str
    logo_path: str | None = None
    address: str | None = None
    phone: str | None = None
    email: str | None = None
    updated_at: str | None = None
    updated_by: str | None = None


class UpdateSchoolProfileRequest(ApiModel):
    school_name: str = Field(min_length=1, max_length=200)
    school_code: str = Field(pattern=r"^[A-Z0-9]{3,20}$")
    logo_path: str | None = Field(default=None, max_length=500)
    address: str | None = Field(default=None, max_length=500)
    phone: str | None = Field(default=None, pattern=r"^[0-9+()-]{10,15}$")
    email: str | None = Field(
        default=None, max_length=100, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
    )


class ConfigurationApi(BaseResourceApi[ConfigSetting]):
    """
    Typed access to configuration settings and the school profile.

    Usage:
        config = ConfigurationApi(cache, mutations)
        setting = await config.create_setting(
            {"category": "GENERAL", "key": "SCHOOL_NAME", "value": "Example School"}
        )
        setting = await config.update_setting(
            setting.setting_id, {"value": "Renamed School"}, version=setting.version
        )
    """

    resource_type = CONFIG_SETTING
    model = ConfigSetting

    async def get_setting(self, setting_id: int, force_refresh: bool = False) -> ConfigSetting:
        data = await self.cache.read(
            CONFIG_SETTING, item_id=setting_id, force_refresh=force_refresh
        )
        return self._to_model(data)

    async def all_settings(self) -> dict[SettingCategory, list[ConfigSetting]]:
        """All settings grouped by category."""
        data = await self.cache.read(CONFIG_SETTING)
        return {
            SettingCategory(category): [self._to_model(s) for s in settings]
            for category, settings in (data or {}).items()
        }

    async def settings_by_category(self, category: SettingCategory | str) -> CategorySettings:
        category = SettingCategory(category)
        data = await self.cache.read(CONFIG_SETTING, subpath=f"category/{category.value}")
        return CategorySettings.model_validate(data)

    async def create_setting(
        self, payload: CreateSettingRequest | Mapping[str, Any]
    ) -> ConfigSetting:
        return self._to_model(await self.mutations.create(CONFIG_SETTING, payload))

    async def update_setting(
        self,
        setting_id: int,
        payload: UpdateSettingRequest | Mapping[str, Any],
        version: int,
    ) -> ConfigSetting:
        data = await self.mutations.update(CONFIG_SETTING, setting_id, payload, version)
        return self._to_model(data)

    async def delete_setting(self, setting_id: int) -> None:
        await self.mutations.remove(CONFIG_SETTING, setting_id)

    async def school_profile(self) -> SchoolProfile:
        return SchoolProfile.model_validate(await self.cache.read(SCHOOL_PROFILE))

    async def update_school_profile(
        self, payload: UpdateSchoolProfileRequest | Mapping[str, Any]
    ) -> SchoolProfile:
        return SchoolProfile.model_validate(
            await self.mutations.replace(SCHOOL_PROFILE, payload)
        )
