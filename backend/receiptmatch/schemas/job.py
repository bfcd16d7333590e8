from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any, Literal
from datetime import datetime, date
from uuid import UUID


JobKind = Literal["single", "bulk", "reprocess"]
JobStatus = Literal["pending", "running", "completed", "failed", "cancelled"]


class JobScope(BaseModel):
    """What a job should process; unused fields are ignored per kind"""
    transaction_id: Optional[str] = None  # single
    date_from: Optional[date] = None  # bulk / reprocess
    date_to: Optional[date] = None
    batch_size: Optional[int] = Field(default=None, ge=1)


class JobCreate(BaseModel):
    organization_id: str
    kind: JobKind = "bulk"
    scope: JobScope = JobScope()
    priority: int = 100  # Higher runs first
    deadline_seconds: Optional[int] = Field(default=None, ge=1)


class JobResponse(BaseModel):
    id: UUID
    organization_id: str
    kind: JobKind
    status: JobStatus
    priority: int
    scope: Optional[Dict[str, Any]] = None
    attempts: int
    max_attempts: int
    deadline: Optional[datetime] = None
    cancel_requested: bool
    progress_total: int
    progress_completed: int
    current_operation: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    warnings: Optional[List[str]] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class JobCreatedResponse(BaseModel):
    job_id: UUID
    status: JobStatus


class JobStats(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    queued: int = 0  # Waiting in the in-memory queue
    workers: int = 0
