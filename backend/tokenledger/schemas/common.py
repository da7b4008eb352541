from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int
    pages: int


class JobResponse(BaseModel):
    id: str
    job_type: str
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    parameters: dict | None = None
    result_summary: dict | None = None
    error_message: str | None = None
    celery_task_id: str | None = None


class JobTriggerResponse(BaseModel):
    task_id: str
    job_type: str


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
