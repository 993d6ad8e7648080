"""Persistent state: run, job instance, cache and artifact records."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import RunNotFoundError
from .model import JobInstance, Run, Status, Trigger, WorkflowDefinition, now_utc

log = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    source: Mapped[Optional[str]] = mapped_column(sa.Text)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    event: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    actor: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    parent_run_id: Mapped[Optional[int]] = mapped_column(sa.Integer, sa.ForeignKey("runs.id"))
    inputs: Mapped[Dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    outputs: Mapped[Dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    cancel_requested: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    jobs: Mapped[List["JobRecord"]] = relationship(
        back_populates="run", lazy="selectin", order_by="JobRecord.id", cascade="all, delete-orphan"
    )


class JobRecord(Base):
    __tablename__ = "job_instances"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(sa.Integer, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    job_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    matrix: Mapped[Dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    log: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    outputs: Mapped[Dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))

    run: Mapped[RunRecord] = relationship(back_populates="jobs")


class CacheRecord(Base):
    __tablename__ = "cache_entries"
    __table_args__ = {"sqlite_autoincrement": True}

    # id doubles as the write sequence: higher id == written later
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    digest: Mapped[str] = mapped_column(sa.Text, nullable=False)
    size: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    last_accessed_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)


class ArtifactRecord(Base):
    __tablename__ = "artifacts"
    __table_args__ = (sa.UniqueConstraint("run_id", "name", "version"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    digest: Mapped[str] = mapped_column(sa.Text, nullable=False)
    size: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    expires_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True))


class StateStore:
    """
    Explicit store object for everything that outlives a process.

    Lifecycle: `open()` creates the schema (an empty store on first use),
    `close()` flushes pending work and disposes the engine. The scheduler,
    cache and artifact stores receive the same instance by reference.
    """

    def __init__(self, url: str = "sqlite://"):
        self.url = url
        self._engine: Optional[sa.Engine] = None
        self._sessions: Optional[sessionmaker[Session]] = None
        # SQLite connections are not safe for concurrent use
        self._lock = threading.RLock()

    # ---- lifecycle ----

    def open(self) -> "StateStore":
        if self._engine is not None:
            return self
        kwargs: Dict[str, Any] = {}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self._engine = sa.create_engine(self.url, **kwargs)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)
        log.debug("state store opened at %s", self.url)
        return self

    def close(self) -> None:
        if self._engine is None:
            return
        with self._lock:
            self._engine.dispose()
        self._engine = None
        self._sessions = None
        log.debug("state store closed")

    def __enter__(self) -> "StateStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session; commits on success, rolls back on error."""
        if self._sessions is None:
            self.open()
        with self._lock:
            with self._sessions() as s:
                with s.begin():
                    yield s

    # ---- runs ----

    def create_run(
        self,
        definition: WorkflowDefinition,
        trigger: Trigger,
        *,
        inputs: Optional[Dict[str, Any]] = None,
        parent_run_id: Optional[int] = None,
    ) -> int:
        with self.session() as s:
            rec = RunRecord(
                workflow=definition.name,
                source=str(definition.source) if definition.source else None,
                status=Status.PENDING.value,
                event=trigger.event,
                ref=trigger.ref,
                sha=trigger.sha,
                actor=trigger.actor,
                parent_run_id=parent_run_id,
                inputs=dict(inputs or {}),
            )
            s.add(rec)
            s.flush()
            return rec.id

    def add_instances(self, run_id: int, instances: List[JobInstance]) -> None:
        with self.session() as s:
            for inst in instances:
                rec = JobRecord(
                    run_id=run_id,
                    name=inst.name,
                    job_id=inst.job_id,
                    matrix=dict(inst.matrix),
                    status=inst.status.value,
                )
                s.add(rec)
                s.flush()
                inst.record_id = rec.id

    def save_instance(self, inst: JobInstance) -> None:
        if inst.record_id is None:
            return
        with self.session() as s:
            rec = s.get(JobRecord, inst.record_id)
            if rec is None:
                return
            rec.status = inst.status.value
            rec.reason = inst.reason
            rec.log = "\n".join(inst.log)
            rec.outputs = dict(inst.outputs)
            rec.started_at = inst.started_at
            rec.finished_at = inst.finished_at

    def save_run(self, run: Run) -> None:
        with self.session() as s:
            rec = s.get(RunRecord, run.id)
            if rec is None:
                raise RunNotFoundError(run.id)
            rec.status = run.status.value
            rec.reason = run.reason
            rec.outputs = dict(run.outputs)
            rec.finished_at = run.finished_at

    def flush_run(self, run: Run) -> None:
        """Write the run and every instance (teardown of a run)."""
        for inst in run.instances.values():
            self.save_instance(inst)
        self.save_run(run)

    def get_run(self, run_id: int) -> RunRecord:
        with self.session() as s:
            rec = s.get(RunRecord, run_id)
            if rec is None:
                raise RunNotFoundError(run_id)
            # touch the relationship so it is loaded before the session closes
            _ = list(rec.jobs)
            return rec

    def list_runs(self, limit: int = 20) -> List[RunRecord]:
        with self.session() as s:
            q = sa.select(RunRecord).order_by(RunRecord.id.desc()).limit(limit)
            return list(s.scalars(q))

    def request_cancel(self, run_id: int) -> None:
        with self.session() as s:
            rec = s.get(RunRecord, run_id)
            if rec is None:
                raise RunNotFoundError(run_id)
            rec.cancel_requested = True

    def cancel_requested(self, run_id: int) -> bool:
        with self.session() as s:
            flag = s.scalar(sa.select(RunRecord.cancel_requested).where(RunRecord.id == run_id))
            return bool(flag)
