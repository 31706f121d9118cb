"""
Database models for the CareFlow handoff pipeline using SQLAlchemy.
Defines the ORM models for recorded notes, handoff reports and tasks.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, Float,
    ForeignKey, JSON, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship, declarative_base

from careflow.models.schemas import NoteState, ShiftType, Consciousness, TaskPriority, TaskStatus

Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls, length: int = 32):
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=length,
    )


class Note(Base):
    """A recorded audio note about a patient."""
    __tablename__ = "notes"

    id = Column(String(36), primary_key=True, default=_new_id)
    patient_id = Column(String(64), nullable=False, index=True)
    author_id = Column(String(64), nullable=False)
    blob_path = Column(String(512), nullable=False)
    duration_seconds = Column(Float, nullable=True)
    shift_type = Column(_enum(ShiftType), default=ShiftType.DAY, nullable=False)

    transcript = Column(Text, nullable=True)
    language = Column(String(16), nullable=True)
    language_confidence = Column(Float, nullable=True)
    translated_transcript = Column(Text, nullable=True)

    state = Column(_enum(NoteState), default=NoteState.UPLOADED, nullable=False, index=True)
    failure_reason = Column(Text, nullable=True)
    failure_recoverable = Column(Boolean, default=True, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    report = relationship("HandoffReport", back_populates="note", uselist=False)


class HandoffReport(Base):
    """Structured shift handoff derived from one note."""
    __tablename__ = "handoff_reports"

    id = Column(String(36), primary_key=True, default=_new_id)
    patient_id = Column(String(64), nullable=False, index=True)
    note_id = Column(String(36), ForeignKey("notes.id"), nullable=False, unique=True)
    author_id = Column(String(64), nullable=False)
    shift_type = Column(_enum(ShiftType), default=ShiftType.DAY, nullable=False)

    summary = Column(Text, nullable=False, default="")
    pain_level = Column(Integer, nullable=True)
    consciousness = Column(_enum(Consciousness), nullable=True)
    risk_factors = Column(JSON, default=list)
    access_lines = Column(JSON, default=list)
    pending_labs = Column(JSON, default=list)
    action_items = Column(JSON, default=list)
    transcript_excerpt = Column(Text, nullable=True)

    # NULL until the embedding stage or the sweep stores a vector
    embedding = Column(JSON(none_as_null=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    note = relationship("Note", back_populates="report")

    __table_args__ = (
        Index("ix_handoff_reports_patient_created", "patient_id", "created_at"),
    )

    @property
    def embedded(self) -> bool:
        return self.embedding is not None


class Task(Base):
    """Discrete action item derived from a note."""
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    priority = Column(_enum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    status = Column(_enum(TaskStatus), default=TaskStatus.PENDING, nullable=False)
    category = Column(String(64), default="Other", nullable=False)

    note_id = Column(String(36), ForeignKey("notes.id"), nullable=False, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    created_by = Column(String(64), nullable=False)
    transcript_excerpt = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
