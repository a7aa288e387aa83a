"""
MutationCoordinator - create/update/delete with optimistic concurrency.

Rules:
- update() always sends the caller's last-known version; the server decides
- A 409 surfaces as ConflictError and is never retried here
- Nothing is retried automatically (mutations are not assumed idempotent)
- Cache tags are invalidated only after the server accepted the write
"""

from typing import Any, Mapping

import pydantic
from loguru import logger
from pydantic import BaseModel

from schoolsync.services.auth import AuthRefreshCoordinator
from schoolsync.services.cache import QueryCache
from schoolsync.services.errors import (
    ConflictError,
    FieldError,
    ProblemDetail,
    ValidationError,
)
from schoolsync.services.registry import ResourceConfig, ResourceRegistry, item_tag
from schoolsync.services.transport import ApiRequest

Payload = Mapping[str, Any] | BaseModel


def validate_payload(
    schema: type[BaseModel] | None,
    payload: Payload,
    exclude: set[str] | None = None,
) -> dict[str, Any]:
    """
    Run the client-side schema (if any) and return the JSON body.

    Raises:
        ValidationError: with one FieldError per failing field
    """
    if schema is not None:
        if isinstance(payload, BaseModel):
            data = payload.model_dump(by_alias=True)
        else:
            data = dict(payload)
        try:
            payload = schema.model_validate(data)
        except pydantic.ValidationError as e:
            field_errors = [
                FieldError(
                    field=".".join(str(part) for part in err["loc"]),
                    message=err["msg"],
                )
                for err in e.errors()
            ]
            raise ValidationError(
                "Validation failed for one or more fields",
                problem=ProblemDetail(
                    title="Validation Failed",
                    detail="Validation failed for one or more fields",
                    field_errors=field_errors,
                ),
            ) from e

    if isinstance(payload, BaseModel):
        body = payload.model_dump(by_alias=True, exclude_none=True, mode="json")
    else:
        body = {k: v for k, v in payload.items() if v is not None}
    for name in exclude or ():
        body.pop(name, None)
    return body


class MutationCoordinator:
    """
    Write path: sends mutations and invalidates the affected cache tags.

    Usage:
        mutations = MutationCoordinator(auth, cache, registry)

        setting = await mutations.create("config_setting", {...})
        setting = await mutations.update(
            "config_setting", setting["settingId"], {"value": "New"}, version=setting["version"]
        )
    """

    def __init__(
        self,
        sender: AuthRefreshCoordinator,
        cache: QueryCache,
        registry: ResourceRegistry,
    ):
        self._sender = sender
        self._cache = cache
        self._registry = registry

    async def create(self, resource_type: str, payload: Payload) -> Any:
        """Create a record; invalidates the type-level listing tag only."""
        config = self._registry.get(resource_type)
        body = validate_payload(config.create_schema, payload)

        response = await self._sender.send(ApiRequest("POST", config.url(), json=body))

        await self._cache.invalidate_tags([resource_type])
        logger.info(f"Created {self._describe(config, response.data)}")
        return response.data

    async def update(
        self,
        resource_type: str,
        item_id: Any,
        payload: Payload,
        version: int,
    ) -> Any:
        """
        Update a record, submitting the caller's last-known version.

        Raises:
            ConflictError: The server's version moved on; re-read and resubmit
        """
        config = self._registry.get(resource_type)
        body = validate_payload(config.update_schema, payload, exclude={"version"})
        body["version"] = version

        try:
            response = await self._sender.send(
                ApiRequest("PUT", config.url(item_id), json=body)
            )
        except ConflictError:
            logger.warning(
                f"Version conflict updating {item_tag(resource_type, item_id)} "
                f"(submitted version {version})"
            )
            raise

        await self._settle(config, item_id, response.data)
        logger.info(
            f"Updated {item_tag(resource_type, item_id)} -> "
            f"version {self._version_of(response.data)}"
        )
        return response.data

    async def patch(
        self,
        resource_type: str,
        item_id: Any,
        payload: Payload,
        subpath: str | None = None,
    ) -> Any:
        """Apply a partial/action update such as ``PATCH /students/{id}/status``."""
        config = self._registry.get(resource_type)
        body = validate_payload(None, payload)

        response = await self._sender.send(
            ApiRequest("PATCH", config.url(item_id, subpath), json=body)
        )

        await self._settle(config, item_id, response.data)
        logger.info(f"Patched {item_tag(resource_type, item_id)}")
        return response.data

    async def remove(self, resource_type: str, item_id: Any) -> None:
        """Delete a record; invalidates both type and item tags."""
        config = self._registry.get(resource_type)

        await self._sender.send(ApiRequest("DELETE", config.url(item_id)))

        await self._cache.invalidate_tags([resource_type, item_tag(resource_type, item_id)])
        logger.info(f"Deleted {item_tag(resource_type, item_id)}")

    async def replace(self, resource_type: str, payload: Payload) -> Any:
        """Replace a singleton resource (e.g. the school profile)."""
        config = self._registry.get(resource_type)
        body = validate_payload(config.update_schema, payload)

        response = await self._sender.send(ApiRequest("PUT", config.url(), json=body))

        await self._cache.invalidate_tags([resource_type])
        logger.info(f"Replaced {resource_type}")
        return response.data

    async def _settle(self, config: ResourceConfig, item_id: Any, record: Any) -> None:
        """Invalidate type + item tags, then store the returned record."""
        resource_type = config.resource_type
        await self._cache.invalidate_tags([resource_type, item_tag(resource_type, item_id)])
        if isinstance(record, dict):
            await self._cache.prime(resource_type, item_id, record)

    def _describe(self, config: ResourceConfig, record: Any) -> str:
        if isinstance(record, dict) and record.get(config.id_field) is not None:
            return item_tag(config.resource_type, record[config.id_field])
        return config.resource_type

    def _version_of(self, record: Any) -> Any:
        return record.get("version") if isinstance(record, dict) else None
