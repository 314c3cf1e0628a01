"""
Pydantic Schemas
================

Canonical (normalized) telemetry, generator I/O, and tenant-facing
connection payloads. All of these are JSON-serialisable so they can be
stored as workflow checkpoints.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dbsage.config import settings
from dbsage.models.connection import DbType
from dbsage.models.suggestion import SuggestionPriority, SuggestionType


# =============================================================================
# Canonical telemetry
# =============================================================================

class QueryStatRecord(BaseModel):
    query_hash: str
    query_text: str
    execution_count: int = 0
    avg_execution_time_ms: float = 0.0
    total_execution_time_ms: float = 0.0
    first_seen_at: datetime
    last_seen_at: datetime


class TableAccessRecord(BaseModel):
    table_name: str
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None


class IndexUsageRecord(BaseModel):
    table_name: str
    index_name: str
    scans: int = 0
    tuples_read: int = 0
    tuples_fetched: int = 0


class ColumnInfo(BaseModel):
    name: str
    type: str
    nullable: bool = True


class TableSchema(BaseModel):
    name: str
    columns: List[ColumnInfo] = Field(default_factory=list)


class SchemaInfo(BaseModel):
    tables: List[TableSchema] = Field(default_factory=list)


class NormalizedBatch(BaseModel):
    """Everything one collection pass produced, in canonical form."""

    batch_id: str
    collected_at: datetime
    query_stats: List[QueryStatRecord] = Field(default_factory=list)
    schema_info: SchemaInfo = Field(default_factory=SchemaInfo)
    index_usage: List[IndexUsageRecord] = Field(default_factory=list)
    table_access: List[TableAccessRecord] = Field(default_factory=list)


class QueryPlan(BaseModel):
    plan: Any
    cost_estimate: Optional[float] = None


# =============================================================================
# Suggestion generation
# =============================================================================

class SlowQueryContext(BaseModel):
    query_id: int
    query_text: str
    avg_execution_time_ms: float
    execution_count: int


class IndexUsageContext(BaseModel):
    table_name: str
    index_name: str
    scans: int


class TableAccessContext(BaseModel):
    table_name: str
    access_count: int


class SuggestionContext(BaseModel):
    db_type: str
    slow_queries: List[SlowQueryContext] = Field(default_factory=list)
    index_usage: List[IndexUsageContext] = Field(default_factory=list)
    table_access: List[TableAccessContext] = Field(default_factory=list)


class GeneratedSuggestion(BaseModel):
    """One element of the generator's JSON array (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    suggestion_type: SuggestionType = Field(alias="suggestionType")
    priority: SuggestionPriority
    suggestion_text: str = Field(alias="suggestionText", min_length=1)
    query_id: Optional[int] = Field(default=None, alias="queryId")

    @field_validator("query_id", mode="before")
    @classmethod
    def _coerce_query_id(cls, value: Any) -> Optional[int]:
        # Models echo ids back as strings, sometimes as free text
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None


# =============================================================================
# Tenant-facing connection payloads
# =============================================================================

class ConnectionCreate(BaseModel):
    name: str = Field(min_length=1)
    db_type: DbType
    host: str = Field(min_length=1)
    port: int = Field(gt=0, lt=65536)
    database: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    polling_interval_minutes: int = Field(default_factory=lambda: settings.default_polling_interval_minutes, gt=0)


class ConnectionUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    host: Optional[str] = Field(default=None, min_length=1)
    port: Optional[int] = Field(default=None, gt=0, lt=65536)
    database: Optional[str] = Field(default=None, min_length=1)
    username: Optional[str] = Field(default=None, min_length=1)
    password: Optional[str] = Field(default=None, min_length=1)
    polling_interval_minutes: Optional[int] = Field(default=None, gt=0)
