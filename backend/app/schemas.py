"""Pydantic schemas for API. Wire format is camelCase; Python attributes are snake_case."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# =============================================================================
# Sync
# =============================================================================


class SyncStatus(CamelModel):
    """Per-user progress of the current / last sync run, kept in the cache with a TTL."""
    is_processing: bool = False
    progress: int = Field(0, ge=0, le=100)
    current_step: str = ""
    total_emails: int = Field(0, ge=0)
    processed_emails: int = Field(0, ge=0)
    emails_failed: int = Field(0, ge=0)
    tasks_created: int = Field(0, ge=0)
    last_sync: Optional[datetime] = None
    error: Optional[str] = None


class SyncStartRequest(CamelModel):
    max_emails: Optional[int] = Field(None, ge=1, le=50)
    only_unread: Optional[bool] = None


class SyncStartResponse(CamelModel):
    success: bool = True
    status: str = "processing"
    message: str = "Email sync started."


# =============================================================================
# Tasks
# =============================================================================

TaskType = Literal["interview", "meeting", "assignment", "general"]
TaskStatus = Literal["todo", "in_progress", "done"]


class TaskResponse(CamelModel):
    id: int
    user_id: int
    title: str
    details: str = ""
    priority: int
    deadline: Optional[datetime] = None
    task_type: TaskType = "general"
    company: Optional[str] = None
    role: Optional[str] = None
    links: List[str] = []
    status: TaskStatus = "todo"
    created_at: datetime


class TaskListResponse(CamelModel):
    success: bool = True
    tasks: List[TaskResponse]
    count: int


class TaskUpdateRequest(CamelModel):
    status: TaskStatus
    priority: Optional[int] = Field(None, ge=1, le=4)
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    details: Optional[str] = Field(None, max_length=1000)


class TaskUpdateResponse(CamelModel):
    success: bool = True
    data: TaskResponse


# =============================================================================
# Interview prep
# =============================================================================


class Question(CamelModel):
    type: Literal["behavioral", "technical", "company-specific"]
    question: str


class InterviewPrepRequest(CamelModel):
    task_id: int
    interview_type: Optional[Literal["technical", "behavioral", "mixed"]] = None


class InterviewPrepData(CamelModel):
    questions: List[Question]


class InterviewPrepResponse(CamelModel):
    success: bool = True
    data: InterviewPrepData


class InterviewResponse(CamelModel):
    id: int
    task_id: int
    questions: List[Question] = []
    prep_scheduled: bool = False
    completed: bool = False
    updated_at: Optional[datetime] = None


class InterviewListResponse(CamelModel):
    success: bool = True
    interviews: List[InterviewResponse]
    count: int


# =============================================================================
# Task extraction (LLM output after normalization)
# =============================================================================


class TaskCandidate(BaseModel):
    """One task proposed by the extractor for a single email."""
    title: str
    priority: Optional[float] = None
    deadline: Optional[str] = None
    task_type: TaskType = "general"
    company: Optional[str] = None
    role: Optional[str] = None
    details: str = ""
    links: List[str] = []


class EmailAnalysis(BaseModel):
    is_actionable: bool = False
    tasks: List[TaskCandidate] = []
