"""Job records, persistent job store and background job manager."""

import asyncio
import logging
import random
import string
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Coroutine, Dict, List, Optional, Set, Tuple, Type

from sqlalchemy import func, select, update

from pulse_engine.core.database import Database

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    """Job kind enumeration."""
    ANALYSIS = "analysis"
    AUTONOMOUS_FIX = "autofix"


class AnalysisStatus(str, Enum):
    """Analysis job status enumeration."""
    PENDING = "pending"
    CLONING = "cloning"
    ANALYZING = "analyzing"
    AI_ANALYZING = "ai_analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class FixStatus(str, Enum):
    """Autonomous fix job status enumeration."""
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    CLONING = "cloning"
    FIXING = "fixing"
    COMMITTING = "committing"
    PUSHING = "pushing"
    CREATING_PR = "creating_pr"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({"completed", "failed"})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def generate_job_id(kind: JobKind) -> str:
    """Build an id like ``analysis-1700000000000-k3j9x0a1b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{kind.value}-{int(time.time() * 1000)}-{suffix}"


class JobNotFound(LookupError):
    """Raised when a job id does not exist in the store."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobConflict(Exception):
    """Raised when a referenced job is not in the state an operation requires."""


class JobStore:
    """Row store for one job table, keyed by job id.

    Updates are issued as single UPDATE statements touching only the given
    columns, so workflow stages writing disjoint fields never clobber each
    other and pollers never see half of a field group.
    """

    # Public sort names -> column attribute names
    SORT_FIELDS = {
        "created_at": "created_at",
        "createdAt": "created_at",
        "completed_at": "completed_at",
        "completedAt": "completed_at",
        "name": "repo_name",
        "repo_name": "repo_name",
        "repoName": "repo_name",
        "status": "status",
    }

    def __init__(self, database: Database, model: Type[Any]):
        self.database = database
        self.model = model

    async def create(self, **fields) -> Any:
        """Insert a new record."""
        now = datetime.utcnow()
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)

        async with self.database.session_maker() as db:
            record = self.model(**fields)
            db.add(record)
            await db.commit()
            await db.refresh(record)

        logger.info("Created %s record %s", self.model.__tablename__, record.id)
        return record

    async def get(self, job_id: str) -> Any:
        """Fetch a record; raises JobNotFound."""
        async with self.database.session_maker() as db:
            result = await db.execute(select(self.model).where(self.model.id == job_id))
            record = result.scalar_one_or_none()

        if record is None:
            raise JobNotFound(job_id)
        return record

    async def update(self, job_id: str, allow_terminal: bool = False, **fields) -> None:
        """Merge the given fields into a record.

        A completed or failed record is final: writing to it raises
        JobConflict unless ``allow_terminal`` is set, so a job failed by the
        stale sweep cannot be completed by a late workflow.
        """
        fields.setdefault("updated_at", datetime.utcnow())

        statement = update(self.model).where(self.model.id == job_id).values(**fields)
        if not allow_terminal:
            statement = statement.where(self.model.status.notin_(TERMINAL_STATUSES))

        async with self.database.session_maker() as db:
            result = await db.execute(statement)
            await db.commit()

            if result.rowcount == 0:
                status = await db.scalar(select(self.model.status).where(self.model.id == job_id))
                if status is None:
                    raise JobNotFound(job_id)
                raise JobConflict(f"Job {job_id} is already {status}")

    async def list(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        sort: str = "created_at",
        order: str = "desc",
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[Any], int]:
        """List records with filtering and pagination; returns (records, total)."""
        column_name = self.SORT_FIELDS.get(sort)
        if column_name is None:
            raise ValueError(f"Unsupported sort field: {sort}")
        if order not in ("asc", "desc"):
            raise ValueError(f"Unsupported sort order: {order}")

        column = getattr(self.model, column_name)

        query = select(self.model)
        count_query = select(func.count()).select_from(self.model)
        if user_id:
            query = query.where(self.model.user_id == user_id)
            count_query = count_query.where(self.model.user_id == user_id)
        if status:
            query = query.where(self.model.status == status)
            count_query = count_query.where(self.model.status == status)

        query = query.order_by(column.desc() if order == "desc" else column.asc())
        query = query.offset(offset).limit(limit)

        async with self.database.session_maker() as db:
            total_result = await db.execute(count_query)
            total = total_result.scalar() or 0

            result = await db.execute(query)
            records = list(result.scalars().all())

        return records, total

    async def fail_unfinished(self, error: str, older_than: Optional[datetime] = None) -> int:
        """Mark non-terminal records as failed; returns how many were touched."""
        now = datetime.utcnow()
        statement = (
            update(self.model)
            .where(self.model.status.notin_(TERMINAL_STATUSES))
            .values(status="failed", error=error, message=error, updated_at=now)
        )
        if older_than is not None:
            statement = statement.where(self.model.updated_at < older_than)

        async with self.database.session_maker() as db:
            result = await db.execute(statement)
            await db.commit()

        return result.rowcount or 0


class JobManager:
    """Runs workflows as detached asyncio tasks and reconciles orphaned jobs.

    Each job runs as its own task; the request that created it returns at
    once. A crash leaves records in a non-terminal state, so on startup all
    of them are failed, and a periodic sweep fails records that have not
    been touched for longer than the stale threshold.
    """

    INTERRUPTED_ERROR = "Job interrupted: the server restarted before it finished"
    STALE_ERROR = "Job timed out: no progress for {minutes} minutes"

    def __init__(
        self,
        stores: List[JobStore],
        stale_minutes: int = 45,
        sweep_interval: int = 60,
    ):
        self.stores = stores
        self.stale_minutes = stale_minutes
        self.sweep_interval = sweep_interval
        self._tasks: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._running = False

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        """Schedule a workflow coroutine detached from the caller."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        logger.info("Spawned background job %s", name)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background job %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background job %s raised an unhandled error: %s",
                task.get_name(), exc, exc_info=exc,
            )

    async def start(self) -> None:
        """Fail jobs orphaned by a previous process and start the sweeper."""
        if self._running:
            return

        self._running = True
        for store in self.stores:
            failed = await store.fail_unfinished(self.INTERRUPTED_ERROR)
            if failed:
                logger.warning(
                    "Failed %d interrupted %s job(s)", failed, store.model.__tablename__
                )

        if self.sweep_interval > 0:
            self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("Job manager started")

    async def stop(self) -> None:
        """Cancel the sweeper and any in-flight jobs."""
        self._running = False
        pending = list(self._tasks)
        if self._sweeper:
            pending.append(self._sweeper)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._sweeper = None
        logger.info("Job manager stopped")

    async def sweep_stale_jobs(self) -> int:
        """Fail non-terminal jobs with no update within the stale threshold."""
        cutoff = datetime.utcnow() - timedelta(minutes=self.stale_minutes)
        error = self.STALE_ERROR.format(minutes=self.stale_minutes)

        total = 0
        for store in self.stores:
            total += await store.fail_unfinished(error, older_than=cutoff)

        if total:
            logger.warning("Stale job sweep failed %d job(s)", total)
        return total

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_stale_jobs()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Stale job sweep error: %s", e)

    def stats(self) -> Dict[str, Any]:
        return {"active": self.active_count, "running": self._running}
