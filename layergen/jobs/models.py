"""Generation request and job record data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from layergen.engine.rarity import RarityMode
from layergen.errors import ErrorReport

MAX_COLLECTION_SIZE = 10000


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class LayerSettings(BaseModel):
    active: bool = True
    selection_probability: int = Field(default=100, ge=0, le=100)


class GenerationRequest(BaseModel):
    """Everything a caller can choose about one collection."""
    collection_name: str = Field(min_length=1)
    collection_size: int = Field(ge=1, le=MAX_COLLECTION_SIZE)
    collection_description: str = ""
    cid: Optional[str] = None
    rarity_mode: RarityMode = RarityMode.UNIFORM
    ranked_tiers: Dict[str, List[str]] = Field(default_factory=dict)
    layers: Dict[str, LayerSettings] = Field(default_factory=dict)
    allow_duplicates: bool = False
    low_memory: bool = True
    seed: Optional[int] = None
    canvas_width: Optional[int] = Field(default=None, ge=1)
    canvas_height: Optional[int] = Field(default=None, ge=1)
    pre_resize: bool = True

    @field_validator("collection_name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("collection_name must not be blank")
        return value

    @field_validator("cid")
    @classmethod
    def _empty_cid_is_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class ProgressSample(BaseModel):
    """One progress report handed to the host."""
    progress_percent: float = 0.0
    message: str = ""
    detail: str = ""
    produced_count: int = 0


class JobRecord(BaseModel):
    """Tracks the lifecycle of one generation job."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request: GenerationRequest
    layers_dir: str
    output_dir: Optional[str] = None
    package: bool = True
    status: JobStatus = JobStatus.PENDING
    progress_percent: float = 0.0
    produced_count: int = 0
    message: str = "Queued for generation"
    detail: str = ""
    output_location: Optional[str] = None
    error: Optional[ErrorReport] = None
    result: Optional[Dict[str, Any]] = None
    download_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_touched: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cleanup_after: Optional[datetime] = None

    def sample(self) -> ProgressSample:
        return ProgressSample(
            progress_percent=self.progress_percent,
            message=self.message,
            detail=self.detail,
            produced_count=self.produced_count,
        )
