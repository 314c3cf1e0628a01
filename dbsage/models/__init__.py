from .connection import Connection, ConnectionStatus, DbType
from .suggestion import Suggestion, SuggestionPriority, SuggestionStatus, SuggestionType
from .telemetry import (
    IndexUsage,
    Query,
    QueryStatSample,
    SchemaColumn,
    SchemaSnapshot,
    SchemaTable,
    TableAccessPattern,
)
from .workflow import WorkflowKind, WorkflowRun

__all__ = [
    "Connection",
    "ConnectionStatus",
    "DbType",
    "IndexUsage",
    "Query",
    "QueryStatSample",
    "SchemaColumn",
    "SchemaSnapshot",
    "SchemaTable",
    "Suggestion",
    "SuggestionPriority",
    "SuggestionStatus",
    "SuggestionType",
    "TableAccessPattern",
    "WorkflowKind",
    "WorkflowRun",
]
