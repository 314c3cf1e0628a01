"""
Workflow Run Model
==================

Durable record of one orchestrator run. The host persists the state and
checkpoint after every step, so a run interrupted by a crash can be driven
again from its last completed step.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text


class WorkflowKind(str, Enum):
    SYNC = "sync"
    SUGGESTIONS = "suggestions"


class WorkflowRun(SQLModel, table=True):
    __tablename__ = "workflow_runs"

    id: str = Field(primary_key=True, max_length=64)
    kind: str = Field(max_length=16, index=True)
    connection_id: str = Field(index=True, max_length=36)
    state: str = Field(max_length=16, index=True)
    checkpoint: str = Field(default="{}", sa_column=Column(Text, nullable=False, default="{}"))
    result: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    error_code: Optional[str] = Field(default=None, max_length=32, nullable=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = Field(default=None, nullable=True)
