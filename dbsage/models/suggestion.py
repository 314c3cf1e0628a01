"""
Optimization Suggestion Model
=============================

Suggestions produced by a generation run. Every run inserts fresh rows with
status NEW; advice is never merged with earlier runs.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Column, Field, SQLModel, Text


class SuggestionType(str, Enum):
    INDEX_OPTIMIZATION = "INDEX_OPTIMIZATION"
    QUERY_OPTIMIZATION = "QUERY_OPTIMIZATION"
    SCHEMA_OPTIMIZATION = "SCHEMA_OPTIMIZATION"
    CONNECTION_OPTIMIZATION = "CONNECTION_OPTIMIZATION"


class SuggestionPriority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class SuggestionStatus(str, Enum):
    """Review lifecycle; only tenants move a suggestion past NEW."""
    NEW = "NEW"
    REVIEWED = "REVIEWED"
    APPLIED = "APPLIED"
    DISMISSED = "DISMISSED"


class Suggestion(SQLModel, table=True):
    __tablename__ = "optimization_suggestions"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    connection_id: str = Field(foreign_key="connections.id", index=True, max_length=36)
    run_id: str = Field(index=True, max_length=64)
    query_id: Optional[int] = Field(default=None, foreign_key="queries.id", nullable=True)
    suggestion_type: str = Field(max_length=32)
    priority: str = Field(max_length=8)
    suggestion_text: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default=SuggestionStatus.NEW.value, max_length=16, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
