"""
Base resource API interface.
"""

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from schoolsync.services.cache import QueryCache
from schoolsync.services.mutations import MutationCoordinator

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class ApiModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Page(ApiModel, Generic[T]):
    """One page of a list endpoint (zero-based page index)."""

    content: list[T] = Field(default_factory=list)
    page: int = 0
    size: int = 0
    total_elements: int = 0
    total_pages: int = 0
    first: bool = True
    last: bool = True

    @property
    def has_next(self) -> bool:
        return not self.last


class BaseResourceApi(Generic[M]):
    """
    Base class for typed resource APIs.

    All resource APIs should:
    - Read through the QueryCache (never straight to the transport)
    - Write through the MutationCoordinator
    - Return Pydantic models
    """

    resource_type: str = ""
    model: type[M]

    def __init__(self, cache: QueryCache, mutations: MutationCoordinator):
        self.cache = cache
        self.mutations = mutations

    def _to_model(self, data: Any) -> M:
        return self.model.model_validate(data)
