"""
Suggestion Orchestrator
=======================

PENDING -> GATHERING -> GENERATING -> PERSISTING -> COMPLETED | FAILED

Works only from telemetry already reconciled into the local store; the
monitored database is never contacted. A connection with no slow queries
completes with zero suggestions and no generator call.

Suggestions from one run are saved once (keyed by run id) and are never
merged with earlier runs.
"""

import asyncio
import logging
from typing import Dict, Optional

from dbsage.config import settings
from dbsage.core.async_utils import run_sync
from dbsage.core.errors import ConnectionNotFoundError, GenerationError
from dbsage.models.schemas import (
    GeneratedSuggestion,
    IndexUsageContext,
    SlowQueryContext,
    SuggestionContext,
    TableAccessContext,
)
from dbsage.models.workflow import WorkflowKind
from dbsage.services.suggestion_generator import SuggestionGenerator, get_suggestion_generator
from dbsage.services.telemetry_store import TelemetryStore, get_telemetry_store
from dbsage.services.workflow_engine import (
    COMPLETED,
    RunOutcome,
    StepHandler,
    Workflow,
    WorkflowRunStore,
)

logger = logging.getLogger(__name__)

PENDING = "PENDING"
GATHERING = "GATHERING"
GENERATING = "GENERATING"
PERSISTING = "PERSISTING"


class SuggestionOrchestrator(Workflow):
    kind = WorkflowKind.SUGGESTIONS
    initial_state = PENDING

    def __init__(
        self,
        run_id: str,
        connection_id: str,
        runs: WorkflowRunStore,
        store: Optional[TelemetryStore] = None,
        generator: Optional[SuggestionGenerator] = None,
        state: Optional[str] = None,
        checkpoint: Optional[dict] = None,
    ):
        super().__init__(run_id, connection_id, runs, state=state, checkpoint=checkpoint)
        self.store = store or get_telemetry_store()
        self._generator = generator

    @property
    def generator(self) -> SuggestionGenerator:
        if self._generator is None:
            self._generator = get_suggestion_generator()
        return self._generator

    def steps(self) -> Dict[str, StepHandler]:
        return {
            PENDING: self._check_connection,
            GATHERING: self._gather,
            GENERATING: self._generate,
            PERSISTING: self._persist,
        }

    async def _check_connection(self) -> str:
        connection = await run_sync(self.store.get_connection, self.connection_id)
        if connection is None:
            raise ConnectionNotFoundError(
                detail=f"connection {self.connection_id} not found",
                context={"connection_id": self.connection_id},
            )
        self.checkpoint["db_type"] = connection.db_type
        return GATHERING

    async def _gather(self) -> str:
        limit = settings.suggestion_context_limit
        slow_queries = await run_sync(
            self.store.fetch_slow_queries,
            self.connection_id,
            settings.slow_query_threshold_ms,
            limit,
        )
        if not slow_queries:
            logger.info("No slow queries for %s, skipping generation", self.connection_id)
            self.outcome = RunOutcome(success=True, suggestions=0)
            return COMPLETED

        index_usage = await run_sync(self.store.fetch_index_usage, self.connection_id, limit)
        table_access = await run_sync(self.store.fetch_table_access, self.connection_id, limit)

        context = SuggestionContext(
            db_type=self.checkpoint.get("db_type", ""),
            slow_queries=[
                SlowQueryContext(
                    query_id=q.id,
                    query_text=q.query_text,
                    avg_execution_time_ms=q.avg_execution_time_ms,
                    execution_count=q.execution_count,
                )
                for q in slow_queries
            ],
            index_usage=[
                IndexUsageContext(table_name=i.table_name, index_name=i.index_name, scans=i.scans)
                for i in index_usage
            ],
            table_access=[
                TableAccessContext(table_name=t.table_name, access_count=t.access_count)
                for t in table_access
            ],
        )
        self.checkpoint["context"] = context.model_dump(mode="json")
        return GENERATING

    async def _generate(self) -> str:
        context = SuggestionContext.model_validate(self.checkpoint["context"])
        timeout = settings.suggestion_timeout_s
        try:
            suggestions = await asyncio.wait_for(self.generator.generate(context), timeout=timeout)
        except asyncio.TimeoutError:
            raise GenerationError(detail=f"generator did not answer within {timeout}s")

        # A queryId the model made up must not link to another tenant's query
        claimed = {s.query_id for s in suggestions if s.query_id is not None}
        owned = await run_sync(self.store.query_ids_for, self.connection_id, claimed) if claimed else set()
        for suggestion in suggestions:
            if suggestion.query_id is not None and suggestion.query_id not in owned:
                logger.warning("Dropping unknown queryId %s from suggestion", suggestion.query_id)
                suggestion.query_id = None

        self.checkpoint["suggestions"] = [s.model_dump(mode="json", by_alias=True) for s in suggestions]
        return PERSISTING

    async def _persist(self) -> str:
        suggestions = [GeneratedSuggestion.model_validate(s) for s in self.checkpoint.get("suggestions", [])]
        rows = await run_sync(self.store.save_suggestions, self.connection_id, self.run_id, suggestions)
        self.outcome = RunOutcome(success=True, suggestions=len(rows))
        return COMPLETED
