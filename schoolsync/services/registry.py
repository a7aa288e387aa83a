"""
Resource registry - which server-owned resource types the client syncs.

The resource-type list is configuration: students, configuration settings
and future resources are all just ResourceConfig entries.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from loguru import logger
from pydantic import BaseModel


def item_tag(resource_type: str, item_id: Any) -> str:
    """Tag naming one record of a resource type, e.g. ``student:42``."""
    return f"{resource_type}:{item_id}"


@dataclass
class ResourceConfig:
    """Configuration for one resource type."""

    resource_type: str
    base_url: str
    path: str
    id_field: str = "id"
    stale_after: timedelta = timedelta(minutes=5)
    item_stale_after: timedelta | None = None
    singleton: bool = False
    create_schema: type[BaseModel] | None = None
    update_schema: type[BaseModel] | None = None

    def url(self, item_id: Any = None, subpath: str | None = None) -> str:
        url = f"{self.base_url.rstrip('/')}/{self.path.strip('/')}"
        if item_id is not None:
            url = f"{url}/{item_id}"
        if subpath:
            url = f"{url}/{subpath.strip('/')}"
        return url

    def staleness(self, item_level: bool) -> timedelta:
        if item_level and self.item_stale_after is not None:
            return self.item_stale_after
        return self.stale_after


class ResourceRegistry:
    """
    Registry of resource configurations.

    Usage:
        registry = ResourceRegistry()
        registry.register(ResourceConfig(
            resource_type="student",
            base_url="http://localhost:8081",
            path="/api/v1/students",
            item_stale_after=timedelta(seconds=30),
        ))
    """

    def __init__(self, configs: list[ResourceConfig] | None = None):
        self._configs: dict[str, ResourceConfig] = {}
        for config in configs or []:
            self.register(config)

    def register(self, config: ResourceConfig) -> None:
        """Register (or replace) a resource configuration."""
        self._configs[config.resource_type] = config
        logger.debug(f"Registered resource: {config.resource_type}")

    def get(self, resource_type: str) -> ResourceConfig:
        try:
            return self._configs[resource_type]
        except KeyError:
            raise KeyError(f"Unknown resource type: {resource_type!r}") from None

    def __contains__(self, resource_type: str) -> bool:
        return resource_type in self._configs

    def resource_types(self) -> list[str]:
        return list(self._configs)
