"""Job record data model for bulk text processing."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class JobConfig(BaseModel):
    """Provider selection and prompt settings, stored as the job's `config` JSON."""
    model: str
    specific_model: str = Field(default="", alias="specificModel")
    encrypted_api_key: str = Field(alias="encryptedApiKey")
    task_type: Optional[str] = Field(default=None, alias="taskType")
    prompt: Optional[str] = None

    model_config = {"populate_by_name": True}


class InputRow(BaseModel):
    index: int
    input: str


class ResultRow(BaseModel):
    index: int
    input: str
    output: str = ""
    tokens: int = 0
    cached: bool = False
    error: Optional[str] = None


class JobRecord(BaseModel):
    """A bulk job row as held by the job store."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    priority: int = 0
    config: JobConfig
    input_data: List[InputRow] = Field(default_factory=list)
    results: List[ResultRow] = Field(default_factory=list)
    progress: int = 0
    processed_rows: int = 0
    total_rows: int = 0
    retry_count: int = 0
    credits_estimated: int = 0
    credits_used: int = 0
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        """Serialize to the JSON shape of the `jobs` table."""
        row = self.model_dump(mode="json", exclude_none=False)
        row["config"] = self.config.model_dump(by_alias=True, exclude_none=True)
        for r in row["results"]:
            if r.get("error") is None:
                r.pop("error", None)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        data = dict(row)
        data["results"] = data.get("results") or []
        data["input_data"] = data.get("input_data") or []
        for key in ("progress", "processed_rows", "retry_count", "credits_used",
                    "credits_estimated", "priority"):
            if data.get(key) is None:
                data.pop(key, None)
        return cls.model_validate(data)


def compute_progress(processed_rows: int, total_rows: int) -> int:
    """Percentage complete, rounded half up and clamped to 0-100."""
    if total_rows <= 0:
        return 100
    pct = int(processed_rows * 100 / total_rows + 0.5)
    return max(0, min(100, pct))


class JobSnapshot(BaseModel):
    """The subset of a job pushed to status subscribers."""
    id: str
    status: JobStatus
    progress: int
    processed_rows: int
    total_rows: int
    error_message: Optional[str] = None
    results: List[ResultRow] = Field(default_factory=list)
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: JobRecord) -> "JobSnapshot":
        return cls(
            id=job.id,
            status=job.status,
            progress=job.progress,
            processed_rows=job.processed_rows,
            total_rows=job.total_rows,
            error_message=job.error_message,
            results=job.results,
            completed_at=job.completed_at,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "processedRows": self.processed_rows,
            "totalRows": self.total_rows,
            "errorMessage": self.error_message,
            "results": [
                r.model_dump(include={"index", "output", "error"}, exclude_none=True)
                for r in self.results
            ],
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


class JobOutcome(BaseModel):
    """What one executor run did to one job."""
    job_id: str
    status: JobStatus
    processed_rows: int = 0
    total_tokens: int = 0
    elapsed_ms: int = 0
    error: Optional[str] = None


class TickSummary(BaseModel):
    """Aggregate of a single scheduler invocation."""
    jobs_processed: int = 0
    completed: int = 0
    failed: int = 0
    total_rows_processed: int = 0
    total_tokens: int = 0
    stale_jobs_reset: int = 0
    elapsed_ms: int = 0
    already_running: bool = False
    jobs: List[JobOutcome] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "jobsProcessed": self.jobs_processed,
            "completed": self.completed,
            "failed": self.failed,
            "totalRowsProcessed": self.total_rows_processed,
            "totalTokens": self.total_tokens,
            "staleJobsReset": self.stale_jobs_reset,
            "elapsedMs": self.elapsed_ms,
            "alreadyRunning": self.already_running,
            "jobs": [j.model_dump(mode="json") for j in self.jobs],
        }
