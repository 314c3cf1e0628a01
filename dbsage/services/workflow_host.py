"""
Workflow Host
=============

Trigger surface and in-process host for the sync and suggestion workflows.

Each accepted trigger gets a WorkflowRun row and an asyncio task. The caller
gets the run id back immediately; it can poll get_run() or await wait_for(),
and walking away does not cancel the run. Runs left unfinished by a restart
are picked up again by resume_incomplete().

Only one sync per connection is in flight at a time; a second start_sync
while one is running is refused.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from dbsage.core.async_utils import run_sync
from dbsage.models.workflow import WorkflowKind, WorkflowRun
from dbsage.services.credential_vault import CredentialVault
from dbsage.services.db_connectors import build_connector
from dbsage.services.suggestion_generator import SuggestionGenerator
from dbsage.services.suggestion_orchestrator import SuggestionOrchestrator
from dbsage.services.sync_orchestrator import ConnectorFactory, SyncOrchestrator
from dbsage.services.telemetry_store import TelemetryStore, get_telemetry_store
from dbsage.services.workflow_engine import (
    FAILED,
    TERMINAL_STATES,
    RunOutcome,
    Workflow,
    WorkflowRunStore,
    outcome_of,
)

logger = logging.getLogger(__name__)

_STORE_TIMEOUT_S = 60


@dataclass
class TriggerResult:
    accepted: bool
    run_id: Optional[str] = None
    reason: Optional[str] = None


class WorkflowHost:
    """Starts, tracks and resumes orchestrator runs."""

    def __init__(
        self,
        store: Optional[TelemetryStore] = None,
        runs: Optional[WorkflowRunStore] = None,
        vault: Optional[CredentialVault] = None,
        generator: Optional[SuggestionGenerator] = None,
        connector_factory: ConnectorFactory = build_connector,
    ):
        self.store = store or get_telemetry_store()
        self.runs = runs or WorkflowRunStore()
        self.vault = vault
        self.generator = generator
        self.connector_factory = connector_factory
        self._tasks: Dict[str, asyncio.Task] = {}
        self._trigger_lock = asyncio.Lock()
        self._scheduler_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Trigger surface
    # ------------------------------------------------------------------

    async def start_sync(self, connection_id: str) -> TriggerResult:
        async with self._trigger_lock:
            connection = await run_sync(self.store.get_connection, connection_id, timeout=_STORE_TIMEOUT_S)
            if connection is None:
                return TriggerResult(accepted=False, reason="connection not found")

            active = await run_sync(
                self.runs.active_run_for, connection_id, WorkflowKind.SYNC, timeout=_STORE_TIMEOUT_S
            )
            if active is not None:
                logger.info("Sync for %s already in flight (run %s)", connection_id, active.id)
                return TriggerResult(accepted=False, run_id=active.id, reason="sync already in progress")

            workflow = await self._create_run(WorkflowKind.SYNC, connection_id)
        self._launch(workflow)
        return TriggerResult(accepted=True, run_id=workflow.run_id)

    async def start_suggestion_generation(self, connection_id: str) -> TriggerResult:
        async with self._trigger_lock:
            connection = await run_sync(self.store.get_connection, connection_id, timeout=_STORE_TIMEOUT_S)
            if connection is None:
                return TriggerResult(accepted=False, reason="connection not found")
            workflow = await self._create_run(WorkflowKind.SUGGESTIONS, connection_id)
        self._launch(workflow)
        return TriggerResult(accepted=True, run_id=workflow.run_id)

    async def get_run(self, run_id: str) -> Optional[WorkflowRun]:
        return await run_sync(self.runs.get, run_id, timeout=_STORE_TIMEOUT_S)

    async def wait_for(self, run_id: str, timeout: Optional[float] = None) -> Optional[RunOutcome]:
        """Wait for a run to finish and return its outcome.

        A timeout stops the wait only; the run keeps going.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

        run = await self.get_run(run_id)
        return outcome_of(run) if run is not None else None

    # ------------------------------------------------------------------
    # Scheduling and recovery
    # ------------------------------------------------------------------

    async def schedule_due_syncs(self) -> List[str]:
        """Start a sync for every ACTIVE connection whose polling interval has elapsed."""
        due = await run_sync(self.store.connections_due_for_sync, timeout=_STORE_TIMEOUT_S)
        started = []
        for connection in due:
            result = await self.start_sync(connection.id)
            if result.accepted:
                started.append(result.run_id)
        if started:
            logger.info("Scheduled %d due syncs", len(started))
        return started

    async def resume_incomplete(self) -> List[str]:
        """Drive runs a previous process left unfinished from their last saved state."""
        runs = await run_sync(self.runs.list_incomplete, timeout=_STORE_TIMEOUT_S)
        resumed = []
        for run in runs:
            if run.id in self._tasks:
                continue
            try:
                checkpoint = json.loads(run.checkpoint or "{}")
            except json.JSONDecodeError:
                logger.error("Run %s has an unreadable checkpoint, restarting it from the beginning", run.id)
                checkpoint, state = {}, None
            else:
                state = run.state
            workflow = self._build(WorkflowKind(run.kind), run.id, run.connection_id, state, checkpoint)
            self._launch(workflow)
            resumed.append(run.id)
        if resumed:
            logger.info("Resumed %d incomplete runs", len(resumed))
        return resumed

    async def scheduler_loop(self, interval_s: float = 60.0) -> None:
        """Check for due syncs every interval_s, forever."""
        logger.info("Sync scheduler started (interval=%ss)", interval_s)
        while True:
            try:
                await self.schedule_due_syncs()
            except Exception:
                logger.exception("Scheduling pass failed")
            await asyncio.sleep(interval_s)

    def start_scheduler(self, interval_s: float = 60.0) -> asyncio.Task:
        if self._scheduler_task is None or self._scheduler_task.done():
            self._scheduler_task = asyncio.create_task(self.scheduler_loop(interval_s))
        return self._scheduler_task

    async def shutdown(self) -> None:
        """Cancel the scheduler and all running workflow tasks."""
        tasks = list(self._tasks.values())
        if self._scheduler_task is not None:
            tasks.append(self._scheduler_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        self._scheduler_task = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _create_run(self, kind: WorkflowKind, connection_id: str) -> Workflow:
        run_id = f"{kind.value}-{uuid.uuid4().hex}"
        workflow = self._build(kind, run_id, connection_id)
        await run_sync(
            self.runs.create, run_id, kind, connection_id, workflow.initial_state,
            timeout=_STORE_TIMEOUT_S,
        )
        logger.info("Accepted %s run %s for connection %s", kind.value, run_id, connection_id)
        return workflow

    def _build(
        self,
        kind: WorkflowKind,
        run_id: str,
        connection_id: str,
        state: Optional[str] = None,
        checkpoint: Optional[dict] = None,
    ) -> Workflow:
        if kind == WorkflowKind.SYNC:
            return SyncOrchestrator(
                run_id,
                connection_id,
                self.runs,
                store=self.store,
                vault=self.vault,
                connector_factory=self.connector_factory,
                state=state,
                checkpoint=checkpoint,
            )
        return SuggestionOrchestrator(
            run_id,
            connection_id,
            self.runs,
            store=self.store,
            generator=self.generator,
            state=state,
            checkpoint=checkpoint,
        )

    async def _run(self, workflow: Workflow) -> RunOutcome:
        try:
            outcome = await workflow.run()
        except Exception as e:
            outcome = RunOutcome(success=False, error=str(e))
            await self._settle(workflow, outcome)
            raise
        await self._settle(workflow, outcome)
        return outcome

    async def _settle(self, workflow: Workflow, outcome: RunOutcome) -> None:
        """Mark a run FAILED when the workflow could not record a terminal state.

        Otherwise the row keeps counting as in flight and later syncs for the
        connection are refused.
        """
        try:
            run = await run_sync(self.runs.get, workflow.run_id, timeout=_STORE_TIMEOUT_S)
            if run is None or run.state in TERMINAL_STATES:
                return
            failed = outcome
            if outcome.success:
                failed = RunOutcome(success=False, error="run did not record its result")
            await run_sync(
                self.runs.finish, workflow.run_id, FAILED, workflow.checkpoint, failed,
                timeout=_STORE_TIMEOUT_S,
            )
            logger.warning("Run %s was left in %s, marked FAILED", workflow.run_id, run.state)
        except Exception:
            logger.exception("Could not settle run %s", workflow.run_id)

    def _launch(self, workflow: Workflow) -> asyncio.Task:
        task = asyncio.create_task(self._run(workflow), name=workflow.run_id)
        self._tasks[workflow.run_id] = task
        task.add_done_callback(lambda t, run_id=workflow.run_id: self._on_done(run_id, t))
        return task

    def _on_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            logger.warning("Run %s was cancelled before finishing", run_id)
            return
        error = task.exception()
        if error is not None:
            logger.error("Run %s crashed: %s", run_id, error, exc_info=error)


_host: Optional[WorkflowHost] = None


def get_workflow_host() -> WorkflowHost:
    """Get the singleton WorkflowHost."""
    global _host
    if _host is None:
        _host = WorkflowHost()
    return _host
