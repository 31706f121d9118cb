"""
Pydantic models for the CareFlow handoff pipeline.
Defines note states, the structured extraction payload and API bodies.
"""

from datetime import datetime
from typing import Optional, List, Any
from enum import Enum

from pydantic import BaseModel, Field, ConfigDict, field_validator


class NoteState(str, Enum):
    """Processing state of a recorded note."""
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    TRANSLATING = "translating"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    PROCESSED = "processed"
    FAILED_TRANSCRIPTION = "failed:transcription"
    FAILED_EXTRACTION = "failed:extraction"

    @property
    def is_failed(self) -> bool:
        return self.value.startswith("failed:")

    @property
    def is_terminal(self) -> bool:
        return self is NoteState.PROCESSED or self.is_failed


ACTIVE_STATES = (
    NoteState.UPLOADED,
    NoteState.TRANSCRIBING,
    NoteState.TRANSLATING,
    NoteState.EXTRACTING,
    NoteState.EMBEDDING,
)

FAILED_STATES = (NoteState.FAILED_TRANSCRIPTION, NoteState.FAILED_EXTRACTION)

# Forward edges; any active state may also move to a failed state.
_FORWARD = {
    NoteState.UPLOADED: {NoteState.TRANSCRIBING},
    NoteState.TRANSCRIBING: {NoteState.TRANSLATING, NoteState.EXTRACTING},
    NoteState.TRANSLATING: {NoteState.EXTRACTING},
    NoteState.EXTRACTING: {NoteState.EMBEDDING},
    NoteState.EMBEDDING: {NoteState.PROCESSED},
    NoteState.FAILED_TRANSCRIPTION: {NoteState.TRANSCRIBING},
    NoteState.FAILED_EXTRACTION: {NoteState.EXTRACTING},
    NoteState.PROCESSED: set(),
}

# Where an explicit retry resumes work.
RESUME_STATE = {
    NoteState.FAILED_TRANSCRIPTION: NoteState.TRANSCRIBING,
    NoteState.FAILED_EXTRACTION: NoteState.EXTRACTING,
}


def is_valid_transition(current: NoteState, new: NoteState) -> bool:
    """Check a state change against the pipeline graph."""
    if new in _FORWARD[current]:
        return True
    return current in ACTIVE_STATES and new in FAILED_STATES


class ShiftType(str, Enum):
    """Nursing shift."""
    DAY = "day"
    NIGHT = "night"


class Consciousness(str, Enum):
    """Level of consciousness recorded in a report."""
    ALERT = "Alert"
    DROWSY = "Drowsy"
    CONFUSED = "Confused"
    SEDATED = "Sedated"
    UNRESPONSIVE = "Unresponsive"


class TaskPriority(str, Enum):
    """Task priority."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class EmbeddingMode(str, Enum):
    """Which side of a similarity search a text is embedded for."""
    DOCUMENT = "document"
    QUERY = "query"


class ExtractionMode(str, Enum):
    """What the extraction stage produces."""
    REPORT = "report"
    TASKS_ONLY = "tasks_only"


TASK_CATEGORIES = (
    "Medication",
    "Vitals",
    "Lab Work",
    "Imaging",
    "Consultation",
    "Nursing Care",
    "Discharge Planning",
    "Other",
)


def _clean_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if isinstance(value, list):
        return [item.strip() if isinstance(item, str) else item for item in value
                if not (isinstance(item, str) and not item.strip())]
    return value


# ============================================================================
# Extraction Models
# ============================================================================

class ExtractedTask(BaseModel):
    """A task as returned by the extraction model."""
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    category: str = "Other"

    @field_validator("description", mode="before")
    @classmethod
    def _none_description(cls, value):
        return value or ""

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value):
        if isinstance(value, str) and value.strip().lower() in {p.value for p in TaskPriority}:
            return value.strip().lower()
        return TaskPriority.MEDIUM

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, value):
        if not isinstance(value, str) or not value.strip():
            return "Other"
        return value.strip()


REPORT_FIELDS = (
    "summary", "pain_level", "consciousness", "risk_factors",
    "access_lines", "pending_labs", "action_items",
)


class ExtractedReport(BaseModel):
    """Structured shift report fields as returned by the extraction model."""
    summary: str = Field(..., min_length=1)
    pain_level: Optional[int] = Field(default=None, ge=0, le=10)
    consciousness: Optional[Consciousness] = None
    risk_factors: List[str] = Field(default_factory=list)
    access_lines: List[str] = Field(default_factory=list)
    pending_labs: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)

    @field_validator("summary", mode="before")
    @classmethod
    def _none_summary(cls, value):
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("consciousness", mode="before")
    @classmethod
    def _match_consciousness(cls, value):
        if not isinstance(value, str):
            return None
        for level in Consciousness:
            if level.value.lower() == value.strip().lower():
                return level
        return None

    @field_validator("risk_factors", "access_lines", "pending_labs", "action_items", mode="before")
    @classmethod
    def _lists(cls, value):
        return _clean_list(value)


class ExtractionResult(BaseModel):
    """Everything the extraction stage derives from one transcript."""
    report: Optional[ExtractedReport] = None
    tasks: List[ExtractedTask] = Field(default_factory=list)

    @field_validator("tasks", mode="before")
    @classmethod
    def _tasks(cls, value):
        return [] if value is None else value


# ============================================================================
# Auth Models
# ============================================================================

class TokenData(BaseModel):
    """Claims carried by an access token."""
    user_id: str
    role: Optional[str] = None


# ============================================================================
# Note Models
# ============================================================================

class NoteSubmitResponse(BaseModel):
    """Acknowledgement returned after an upload."""
    note_id: str
    state: NoteState


class NoteResponse(BaseModel):
    """Note status for polling clients."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    author_id: str
    shift_type: ShiftType
    state: NoteState
    duration_seconds: Optional[float] = None
    language: Optional[str] = None
    transcript: Optional[str] = None
    translated_transcript: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_recoverable: bool = True
    attempts: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskResponse(BaseModel):
    """Task response model."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str
    priority: TaskPriority
    status: TaskStatus
    category: str
    note_id: str
    patient_id: str
    created_by: str
    created_at: Optional[datetime] = None


class ReportResponse(BaseModel):
    """Handoff report response model."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    note_id: str
    author_id: str
    shift_type: ShiftType
    summary: str
    pain_level: Optional[int] = None
    consciousness: Optional[Consciousness] = None
    risk_factors: List[str] = Field(default_factory=list)
    access_lines: List[str] = Field(default_factory=list)
    pending_labs: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    transcript_excerpt: Optional[str] = None
    embedded: bool = False
    created_at: Optional[datetime] = None


class NoteReportResponse(BaseModel):
    """Report and tasks produced from a note."""
    note: NoteResponse
    report: Optional[ReportResponse] = None
    tasks: List[TaskResponse] = Field(default_factory=list)


# ============================================================================
# Chat Models
# ============================================================================

class AskRequest(BaseModel):
    """Question about a patient's charted history."""
    question: str = Field(..., min_length=1, max_length=2000)


class SourceResponse(BaseModel):
    """Report that contributed context to an answer."""
    id: str
    shift_type: str
    created_at: Optional[datetime] = None
    similarity: float


class AskResponse(BaseModel):
    """Answer with provenance."""
    answer: str
    sources: List[SourceResponse] = Field(default_factory=list)


class EmbedRequest(BaseModel):
    """Embed one report, or every report missing a vector."""
    report_id: Optional[str] = None
    batch: bool = False


class EmbedResponse(BaseModel):
    """Number of reports embedded."""
    embedded: int
