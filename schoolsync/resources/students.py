"""
Student records API.

Endpoints (student service): /api/v1/students
- GET    /                      paged search
- GET    /{id}                  by database id
- GET    /student-id/{studentId} by STU-YYYY-XXXXX id
- GET    /statistics            aggregate counts
- POST   /                      register
- PUT    /{id}                  update (optimistic locking on ``version``)
- PATCH  /{id}/status           change status
- DELETE /{id}                  soft delete
"""

from datetime import date
from enum import Enum
from typing import Any, Mapping

from pydantic import Field, field_validator

from schoolsync.resources.base import ApiModel, BaseResourceApi, Page
from schoolsync.services.search import SearchParams, canonicalize

STUDENT = "student"

MOBILE_PATTERN = r"^[0-9]{10,15}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class StudentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    GRADUATED = "GRADUATED"
    TRANSFERRED = "TRANSFERRED"


class Student(ApiModel):
    """Student record as returned by the server."""

    id: int
    student_id: str | None = None
    first_name: str
    last_name: str
    date_of_birth: date | None = None
    current_age: int | None = None
    mobile: str | None = None
    address: str | None = None
    father_name: str | None = None
    mother_name: str | None = None
    identification_mark: str | None = None
    aadhaar_number: str | None = None
    email: str | None = None
    status: StudentStatus = StudentStatus.ACTIVE
    created_at: str | None = None
    updated_at: str | None = None
    updated_by: str | None = None
    version: int = 0

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class StudentStatistics(ApiModel):
    total_students: int = 0
    active_students: int = 0
    inactive_students: int = 0
    average_age: float = 0.0
    age_distribution: dict[str, int] = Field(default_factory=dict)


class CreateStudentRequest(ApiModel):
    """Client-side schema for registration."""

    first_name: str = Field(min_length=2, max_length=50)
    last_name: str = Field(min_length=2, max_length=50)
    date_of_birth: date
    mobile: str = Field(pattern=MOBILE_PATTERN)
    address: str = Field(min_length=1, max_length=255)
    father_name: str = Field(min_length=2, max_length=100)
    mother_name: str | None = Field(default=None, max_length=100)
    identification_mark: str | None = Field(default=None, max_length=100)
    aadhaar_number: str | None = Field(default=None, pattern=r"^[0-9]{12}$|^$")
    email: str | None = Field(default=None, max_length=100, pattern=EMAIL_PATTERN)

    @field_validator("date_of_birth")
    @classmethod
    def _in_the_past(cls, value: date) -> date:
        if value >= date.today():
            raise ValueError("Date of birth must be in the past")
        return value


class UpdateStudentRequest(ApiModel):
    """Editable profile fields; ``version`` is supplied separately."""

    first_name: str = Field(min_length=2, max_length=50)
    last_name: str = Field(min_length=2, max_length=50)
    mobile: str = Field(pattern=MOBILE_PATTERN)


class StudentApi(BaseResourceApi[Student]):
    """
    Typed access to student records.

    Usage:
        students = StudentApi(cache, mutations)
        page = await students.search({"lastName": "Rao", "page": 0})
        student = await students.get(42)
        student = await students.update(42, {...}, version=student.version)
    """

    resource_type = STUDENT
    model = Student

    async def search(self, params: SearchParams | Mapping[str, Any] | None = None) -> Page[Student]:
        """Paged search; raw filters are canonicalized first."""
        if not isinstance(params, SearchParams):
            params = canonicalize(params)
        data = await self.cache.read(STUDENT, params.to_query())
        return Page[Student].model_validate(data)

    async def get(self, student_pk: int, force_refresh: bool = False) -> Student:
        data = await self.cache.read(STUDENT, item_id=student_pk, force_refresh=force_refresh)
        return self._to_model(data)

    async def get_by_student_id(self, student_id: str) -> Student:
        data = await self.cache.read(STUDENT, subpath=f"student-id/{student_id}")
        return self._to_model(data)

    async def statistics(self) -> StudentStatistics:
        data = await self.cache.read(STUDENT, subpath="statistics")
        return StudentStatistics.model_validate(data)

    async def create(self, payload: CreateStudentRequest | Mapping[str, Any]) -> Student:
        return self._to_model(await self.mutations.create(STUDENT, payload))

    async def update(
        self,
        student_pk: int,
        payload: UpdateStudentRequest | Mapping[str, Any],
        version: int,
    ) -> Student:
        data = await self.mutations.update(STUDENT, student_pk, payload, version)
        return self._to_model(data)

    async def update_status(self, student_pk: int, status: StudentStatus | str) -> Student:
        status = StudentStatus(status)
        data = await self.mutations.patch(
            STUDENT, student_pk, {"status": status.value}, subpath="status"
        )
        return self._to_model(data)

    async def delete(self, student_pk: int) -> None:
        await self.mutations.remove(STUDENT, student_pk)
