"""
Workflow Engine
===============

Durable step runner shared by the sync and suggestion orchestrators.

A workflow is a small state machine. Each non-terminal state has one step
handler that does the work and returns the next state. After every step the
engine writes the new state and the JSON checkpoint to the run's
WorkflowRun row, so a run interrupted by a restart is driven again from the
last state it reached. Step handlers are written to be safe to re-run.

``Workflow.run()`` never raises to its caller (cancellation aside): any
failure, including a failure to save progress, moves the run to FAILED and
comes back as a RunOutcome. If even the FAILED row cannot be written the
run stays non-terminal in the store; the host retries that write.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, ContextManager, Dict, List, Optional

import structlog
from sqlmodel import Session as DBSession, select

from dbsage.core.async_utils import run_sync
from dbsage.core.database import get_session_context
from dbsage.core.errors import DbSageError
from dbsage.models.workflow import WorkflowKind, WorkflowRun

logger = logging.getLogger(__name__)

COMPLETED = "COMPLETED"
FAILED = "FAILED"
TERMINAL_STATES = (COMPLETED, FAILED)

# Store bookkeeping is local and quick; this only guards against a wedged disk
_STORE_TIMEOUT_S = 60


@dataclass
class RunOutcome:
    """What a finished run reports back to whoever triggered it."""

    success: bool
    suggestions: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunOutcome":
        return cls(
            success=bool(data.get("success")),
            suggestions=data.get("suggestions"),
            error=data.get("error"),
            error_code=data.get("error_code"),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRunStore:
    """Persistence for WorkflowRun rows."""

    def __init__(self, session_factory: Callable[[], ContextManager[DBSession]] = get_session_context):
        self._session_factory = session_factory

    def create(self, run_id: str, kind: WorkflowKind, connection_id: str, state: str) -> WorkflowRun:
        with self._session_factory() as session:
            run = WorkflowRun(
                id=run_id,
                kind=WorkflowKind(kind).value,
                connection_id=connection_id,
                state=state,
            )
            session.add(run)
            session.commit()
            session.refresh(run)
            return run

    def get(self, run_id: str) -> Optional[WorkflowRun]:
        with self._session_factory() as session:
            return session.get(WorkflowRun, run_id)

    def save_progress(self, run_id: str, state: str, checkpoint: Dict[str, Any]) -> None:
        with self._session_factory() as session:
            run = session.get(WorkflowRun, run_id)
            if run is None:
                raise KeyError(run_id)
            run.state = state
            run.checkpoint = json.dumps(checkpoint)
            run.updated_at = _utcnow()
            session.add(run)
            session.commit()

    def finish(self, run_id: str, state: str, checkpoint: Dict[str, Any], outcome: RunOutcome) -> None:
        with self._session_factory() as session:
            run = session.get(WorkflowRun, run_id)
            if run is None:
                raise KeyError(run_id)
            now = _utcnow()
            run.state = state
            run.checkpoint = json.dumps(checkpoint)
            run.result = json.dumps(outcome.to_dict())
            run.error = outcome.error
            run.error_code = outcome.error_code
            run.updated_at = now
            run.finished_at = now
            session.add(run)
            session.commit()

    def active_run_for(self, connection_id: str, kind: WorkflowKind) -> Optional[WorkflowRun]:
        """A non-terminal run of this kind for the connection, if any."""
        with self._session_factory() as session:
            return session.exec(
                select(WorkflowRun).where(
                    WorkflowRun.connection_id == connection_id,
                    WorkflowRun.kind == WorkflowKind(kind).value,
                    WorkflowRun.state.not_in(TERMINAL_STATES),
                )
            ).first()

    def list_incomplete(self) -> List[WorkflowRun]:
        with self._session_factory() as session:
            return list(
                session.exec(
                    select(WorkflowRun)
                    .where(WorkflowRun.state.not_in(TERMINAL_STATES))
                    .order_by(WorkflowRun.created_at)
                ).all()
            )


def outcome_of(run: WorkflowRun) -> Optional[RunOutcome]:
    """The recorded outcome of a finished run, None while it is still going."""
    if run.state not in TERMINAL_STATES or not run.result:
        return None
    return RunOutcome.from_dict(json.loads(run.result))


StepHandler = Callable[[], Awaitable[str]]


class Workflow(ABC):
    """Base class for durable orchestrators."""

    kind: WorkflowKind
    initial_state: str = "PENDING"

    def __init__(
        self,
        run_id: str,
        connection_id: str,
        runs: WorkflowRunStore,
        state: Optional[str] = None,
        checkpoint: Optional[Dict[str, Any]] = None,
    ):
        self.run_id = run_id
        self.connection_id = connection_id
        self.runs = runs
        self.state = state or self.initial_state
        self.checkpoint: Dict[str, Any] = dict(checkpoint or {})
        self.outcome: Optional[RunOutcome] = None

    @abstractmethod
    def steps(self) -> Dict[str, StepHandler]:
        """Map of non-terminal state -> handler returning the next state."""

    async def on_failure(self, failed_state: str, error: Exception) -> None:
        """Side effects of moving to FAILED (status updates and the like)."""

    async def run(self) -> RunOutcome:
        with structlog.contextvars.bound_contextvars(
            run_id=self.run_id,
            connection_id=self.connection_id,
            workflow=self.kind.value,
        ):
            return await self._drive()

    async def _drive(self) -> RunOutcome:
        handlers = self.steps()
        logger.info("Workflow %s starting in state %s", self.kind.value, self.state)

        while self.state not in TERMINAL_STATES:
            handler = handlers.get(self.state)
            if handler is None:
                return await self._fail(self.state, RuntimeError(f"no step for state {self.state!r}"))
            try:
                next_state = await handler()
            except Exception as e:
                return await self._fail(self.state, e)

            logger.info("Workflow %s: %s -> %s", self.kind.value, self.state, next_state)
            self.state = next_state
            if next_state not in TERMINAL_STATES:
                try:
                    await run_sync(
                        self.runs.save_progress, self.run_id, self.state, self.checkpoint,
                        timeout=_STORE_TIMEOUT_S,
                    )
                except Exception as e:
                    return await self._fail(self.state, e)

        outcome = self.outcome or RunOutcome(success=self.state == COMPLETED)
        try:
            await run_sync(
                self.runs.finish, self.run_id, self.state, self.checkpoint, outcome,
                timeout=_STORE_TIMEOUT_S,
            )
        except Exception as e:
            return await self._fail(self.state, e)
        logger.info("Workflow %s finished: %s", self.kind.value, outcome.to_dict())
        return outcome

    async def _fail(self, failed_state: str, error: Exception) -> RunOutcome:
        code = error.code if isinstance(error, DbSageError) else None
        logger.error(
            "Workflow %s failed in state %s: %s",
            self.kind.value, failed_state, error,
            exc_info=not isinstance(error, DbSageError),
        )
        try:
            await self.on_failure(failed_state, error)
        except Exception:
            logger.exception("Failure handling for run %s did not complete", self.run_id)

        self.state = FAILED
        self.checkpoint["failed_state"] = failed_state
        self.outcome = RunOutcome(success=False, error=str(error), error_code=code)
        try:
            await run_sync(
                self.runs.finish, self.run_id, FAILED, self.checkpoint, self.outcome,
                timeout=_STORE_TIMEOUT_S,
            )
        except Exception:
            logger.exception("Could not record failure of run %s", self.run_id)
        return self.outcome
