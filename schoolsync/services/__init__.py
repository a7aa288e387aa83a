"""
Sync layer infrastructure - keeps local views consistent with the remote API.

Provides:
- Transport: Single-attempt HTTP with failure classification
- AuthRefreshCoordinator: Token ownership and single-flight refresh
- QueryCache: Canonical-key read cache with tag invalidation
- RequestCoalescer: Shares one in-flight request between concurrent readers
- MutationCoordinator: Optimistic-concurrency writes
- SearchParamModel / SearchDebouncer: Canonical, debounced list parameters
"""

from schoolsync.services.errors import (
    ErrorKind,
    FieldError,
    ProblemDetail,
    SyncError,
    NetworkError,
    AuthError,
    ValidationError,
    ConflictError,
    NotFoundError,
    ServerError,
    UnknownError,
)
from schoolsync.services.transport import ApiRequest, ApiResponse, Transport
from schoolsync.services.auth import AuthRefreshCoordinator, AuthState, TokenPair
from schoolsync.services.registry import ResourceConfig, ResourceRegistry, item_tag
from schoolsync.services.deduplicator import RequestCoalescer
from schoolsync.services.cache import CacheEntry, QueryCache, canonical_key
from schoolsync.services.mutations import MutationCoordinator
from schoolsync.services.search import (
    SearchDebouncer,
    SearchParamModel,
    SearchParams,
    canonicalize,
)

__all__ = [
    # Errors
    "ErrorKind",
    "FieldError",
    "ProblemDetail",
    "SyncError",
    "NetworkError",
    "AuthError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ServerError",
    "UnknownError",
    # Transport
    "ApiRequest",
    "ApiResponse",
    "Transport",
    # Auth
    "AuthRefreshCoordinator",
    "AuthState",
    "TokenPair",
    # Registry
    "ResourceConfig",
    "ResourceRegistry",
    "item_tag",
    # Cache
    "RequestCoalescer",
    "CacheEntry",
    "QueryCache",
    "canonical_key",
    # Mutations
    "MutationCoordinator",
    # Search
    "SearchDebouncer",
    "SearchParamModel",
    "SearchParams",
    "canonicalize",
]
