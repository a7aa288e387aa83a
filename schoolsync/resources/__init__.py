from schoolsync.resources.base import ApiModel, BaseResourceApi, Page
from schoolsync.resources.configuration import (
    CategorySettings,
    ConfigSetting,
    ConfigurationApi,
    SchoolProfile,
    SettingCategory,
)
from schoolsync.resources.students import (
    Student,
    StudentApi,
    StudentStatistics,
    StudentStatus,
)

__all__ = [
    "ApiModel",
    "BaseResourceApi",
    "Page",
    "CategorySettings",
    "ConfigSetting",
    "ConfigurationApi",
    "SchoolProfile",
    "SettingCategory",
    "Student",
    "StudentApi",
    "StudentStatistics",
    "StudentStatus",
]
