"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import JSON

Base = declarative_base()

TASK_TYPES = ("interview", "meeting", "assignment", "general")
TASK_STATUSES = ("todo", "in_progress", "done")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)  # null for Google-only users
    google_id = Column(String, nullable=True, index=True)  # Google OAuth sub
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MailAccount(Base):
    """Google OAuth tokens used to read the user's mailbox (one per user)."""
    __tablename__ = "mail_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    provider = Column(String(32), nullable=False, default="google")
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)  # naive UTC
    scope = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    details = Column(Text, nullable=False, default="")
    priority = Column(Integer, nullable=False, default=2)  # 1=Low .. 4=Urgent
    deadline = Column(DateTime, nullable=True)
    task_type = Column(String(32), nullable=False, default="general")  # interview, meeting, assignment, general
    company = Column(String(255), nullable=True)
    role = Column(String(255), nullable=True)
    links = Column(JSON, nullable=False, default=list)
    status = Column(String(32), nullable=False, default="todo")  # todo, in_progress, done
    # Hash of the source email id; null for tasks not created by sync
    source_fingerprint = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    interview = relationship("InterviewPrep", back_populates="task", uselist=False, passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("user_id", "source_fingerprint", "title", name="uq_tasks_user_fingerprint_title"),
    )


class InterviewPrep(Base):
    """Generated interview questions for an interview task (1:1 by task_id)."""
    __tablename__ = "interviews"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    questions = Column(JSON, nullable=False, default=list)  # [{type, question}]
    prep_scheduled = Column(Boolean, default=False, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    task = relationship("Task", back_populates="interview")


class OAuthState(Base):
    """OAuth CSRF state for Google Sign-in."""
    __tablename__ = "oauth_state"

    state_token = Column(String(64), primary_key=True)
    kind = Column(String(32), nullable=False, index=True)
    redirect_url = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False)


# Dashboard ordering and dedup lookups
Index("ix_tasks_user_priority_created", Task.user_id, Task.priority, Task.created_at)
Index("ix_tasks_user_fingerprint_created", Task.user_id, Task.source_fingerprint, Task.created_at)
