"""
Sync layer exceptions.

Every failure that leaves the transport is one of the kinds below. Callers
catch ``SyncError`` (or a specific subclass) and never see raw httpx errors.
"""

from enum import Enum
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Normalized failure kinds."""

    NETWORK = "NETWORK"
    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    SERVER = "SERVER"
    UNKNOWN = "UNKNOWN"


class FieldError(BaseModel):
    """A single field-level validation message."""

    field: str
    message: str


class ProblemDetail(BaseModel):
    """RFC 7807 problem document as returned by the services."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = "about:blank"
    title: str = ""
    status: int = 0
    detail: str = ""
    timestamp: str | None = None
    correlation_id: str | None = Field(default=None, alias="correlationId")
    field_errors: list[FieldError] = Field(default_factory=list, alias="fieldErrors")

    @classmethod
    def from_body(
        cls,
        body: Any,
        status: int,
        correlation_id: str | None = None,
    ) -> "ProblemDetail":
        """
        Build a problem detail from whatever the server sent.

        The student service sends ``errors`` as a list of ``{field, message}``,
        the configuration service as a ``{field: message}`` map, and newer
        builds use ``fieldErrors``. The older monolith sends ``error`` and
        ``message`` in place of ``title`` and ``detail``. Non-JSON bodies, and
        bodies whose fields have the wrong types, produce a minimal document
        carrying just the status.
        """
        if not isinstance(body, dict):
            return cls._minimal(status, str(body)[:200] if body else "", correlation_id)

        data = {k: v for k, v in body.items() if v is not None}
        raw_errors = data.pop("errors", None)
        if raw_errors is None:
            raw_errors = data.pop("fieldErrors", None)
        else:
            data.pop("fieldErrors", None)

        if "title" not in data and isinstance(data.get("error"), str):
            data["title"] = data["error"]
        if "detail" not in data and isinstance(data.get("message"), str):
            data["detail"] = data["message"]

        data.setdefault("status", status)
        if not data.get("correlationId") and correlation_id:
            data["correlationId"] = correlation_id
        if "timestamp" in data:
            data["timestamp"] = str(data["timestamp"])

        try:
            problem = cls.model_validate(data)
        except pydantic.ValidationError:
            detail = data.get("detail") if isinstance(data.get("detail"), str) else ""
            return cls._minimal(status, detail, correlation_id)
        problem.field_errors = _parse_field_errors(raw_errors)
        return problem

    @classmethod
    def _minimal(cls, status: int, detail: str, correlation_id: str | None) -> "ProblemDetail":
        return cls(
            status=status,
            title=f"HTTP {status}",
            detail=detail,
            correlation_id=correlation_id,
        )


def _parse_field_errors(raw: Any) -> list[FieldError]:
    if isinstance(raw, dict):
        return [FieldError(field=str(k), message=str(v)) for k, v in raw.items()]
    if isinstance(raw, list):
        errors = []
        for item in raw:
            if isinstance(item, dict):
                errors.append(
                    FieldError(
                        field=str(item.get("field", "")),
                        message=str(
                            item.get("message") or item.get("defaultMessage") or ""
                        ),
                    )
                )
            else:
                errors.append(FieldError(field="", message=str(item)))
        return errors
    return []


class SyncError(Exception):
    """Base exception for sync layer errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    presentation: str = "notice"  # 'inline' | 'notice' | 'session'

    def __init__(
        self,
        message: str,
        status: int = 0,
        problem: ProblemDetail | None = None,
        correlation_id: str | None = None,
    ):
        self.status = status
        self.problem = problem
        self.correlation_id = correlation_id or (
            problem.correlation_id if problem else None
        )
        super().__init__(message)


class NetworkError(SyncError):
    """No response was received (connection failure or timeout)."""

    kind = ErrorKind.NETWORK

    def __init__(
        self,
        message: str,
        correlation_id: str | None = None,
        timed_out: bool = False,
    ):
        self.timed_out = timed_out
        super().__init__(message, status=0, correlation_id=correlation_id)


class AuthError(SyncError):
    """Credentials rejected: 403, or 401 that a refresh could not fix."""

    kind = ErrorKind.AUTH
    presentation = "session"

    @property
    def is_expired_credentials(self) -> bool:
        return self.status == 401


class ValidationError(SyncError):
    """Request rejected with field-level messages (400/422 or local schema)."""

    kind = ErrorKind.VALIDATION
    presentation = "inline"

    @property
    def field_errors(self) -> dict[str, str]:
        if not self.problem:
            return {}
        return {e.field: e.message for e in self.problem.field_errors}


class ConflictError(SyncError):
    """Submitted version no longer matches the server's current version."""

    kind = ErrorKind.CONFLICT
    presentation = "inline"


class NotFoundError(SyncError):
    """Resource does not exist."""

    kind = ErrorKind.NOT_FOUND


class ServerError(SyncError):
    """5xx response."""

    kind = ErrorKind.SERVER


class UnknownError(SyncError):
    """Anything that matches none of the other kinds."""

    kind = ErrorKind.UNKNOWN
