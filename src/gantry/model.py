# model.py
from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------

class Status(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (Status.SUCCEEDED, Status.FAILED, Status.SKIPPED, Status.CANCELLED)


# allowed lifecycle moves for a JobInstance
_TRANSITIONS = {
    Status.PENDING: {Status.READY, Status.SKIPPED, Status.CANCELLED, Status.FAILED},
    Status.READY: {Status.RUNNING, Status.CANCELLED, Status.FAILED},
    Status.RUNNING: {Status.SUCCEEDED, Status.FAILED, Status.CANCELLED},
}


class Access(str, enum.Enum):
    """Permission level for a scope. Ordered: none < read < write."""
    NONE = "none"
    READ = "read"
    WRITE = "write"

    @property
    def rank(self) -> int:
        return {"none": 0, "read": 1, "write": 2}[self.value]

    def allows(self, wanted: "Access") -> bool:
        return self.rank >= wanted.rank


# ---------------------------------------------------------------------
# Definition model (immutable once loaded)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single step inside a job: an inline command or a built-in action."""
    name: str
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)
    if_: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None


@dataclass(frozen=True)
class Strategy:
    """Matrix strategy. `axes` keeps declaration order."""
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    include: Tuple[Dict[str, Any], ...] = ()
    exclude: Tuple[Dict[str, Any], ...] = ()
    fail_fast: bool = True
    max_parallel: Optional[int] = None


@dataclass(frozen=True)
class Job:
    """
    A job template: steps + dependencies + gating metadata.

    Either `steps` or `uses` (reusable workflow reference) is set, never both.
    """
    id: str
    name: Optional[str] = None
    runs_on: str = "local"
    steps: Tuple[Step, ...] = ()
    needs: Tuple[str, ...] = ()
    strategy: Optional[Strategy] = None
    if_: Optional[str] = None

    # reusable workflow call
    uses: Optional[str] = None
    with_: Dict[str, Any] = field(default_factory=dict)

    # secrets the job may read (plain jobs) or passes on (reusable calls)
    secrets: Tuple[str, ...] = ()
    secret_bindings: Dict[str, str] = field(default_factory=dict)
    secrets_inherit: bool = False

    environment: Optional[str] = None
    permissions: Optional[Dict[str, Access]] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout_minutes: Optional[float] = None
    continue_on_error: bool = False
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class InputSpec:
    name: str
    type: str = "string"  # string | number | boolean
    required: bool = False
    default: Any = None
    description: Optional[str] = None


@dataclass(frozen=True)
class WorkflowCall:
    """Interface of a workflow that can be invoked from another job via `uses`."""
    inputs: Dict[str, InputSpec] = field(default_factory=dict)
    secrets: Dict[str, bool] = field(default_factory=dict)  # name -> required
    outputs: Dict[str, str] = field(default_factory=dict)   # name -> expression


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    triggers: Tuple[str, ...]
    jobs: Dict[str, Job]
    permissions: Dict[str, Access] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    workflow_call: Optional[WorkflowCall] = None
    source: Optional[Path] = None

    def job(self, job_id: str) -> Job:
        return self.jobs[job_id]


# ---------------------------------------------------------------------
# Runtime model
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Trigger:
    """What started a run: event type plus git metadata."""
    event: str = "push"
    ref: str = "refs/heads/main"
    sha: str = ""
    actor: str = ""

    @property
    def branch(self) -> str:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        if self.ref.startswith("refs/tags/"):
            return ""
        return self.ref

    @property
    def tag(self) -> str:
        if self.ref.startswith("refs/tags/"):
            return self.ref[len("refs/tags/"):]
        return ""


@dataclass
class JobInstance:
    """One concrete, matrix-expanded execution unit of a job."""
    name: str
    job_id: str
    matrix: Dict[str, Any] = field(default_factory=dict)
    status: Status = Status.PENDING
    reason: str = ""
    log: List[str] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    # skipped because an upstream job failed (propagates as a failure)
    blocked: bool = False
    record_id: Optional[int] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def transition(self, status: Status, reason: str = "") -> None:
        allowed = _TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise ValueError(f"Illegal transition for {self.name!r}: {self.status.value} -> {status.value}")
        self.status = status
        if reason:
            self.reason = reason
        if status is Status.RUNNING:
            self.started_at = now_utc()
        if status.terminal:
            self.finished_at = now_utc()


@dataclass
class Run:
    """One execution of a WorkflowDefinition."""
    id: int
    definition: WorkflowDefinition
    trigger: Trigger
    instances: Dict[str, JobInstance] = field(default_factory=dict)
    status: Status = Status.PENDING
    reason: str = ""
    inputs: Dict[str, Any] = field(default_factory=dict)
    parent_run_id: Optional[int] = None
    depth: int = 0
    outputs: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def instances_of(self, job_id: str) -> List[JobInstance]:
        return [i for i in self.instances.values() if i.job_id == job_id]

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()
