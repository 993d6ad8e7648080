# actions/base.py
from __future__ import annotations

import abc
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from ..artifacts import ArtifactStore
from ..cache import CacheStore
from ..config import Settings
from ..model import Step
from ..secrets import Grant
from ..store import StateStore


@dataclass
class StepContext:
    """Everything a step action may touch. `env` is a read-only mapping."""
    run_id: int
    job: str
    step: Step
    inputs: Mapping[str, Any]
    env: Mapping[str, str]
    workspace: Path
    grant: Grant
    state: StateStore
    cache: CacheStore
    artifacts: ArtifactStore
    settings: Settings
    log: Callable[[str], None]
    cancel_event: threading.Event = field(default_factory=threading.Event)
    deadline: Optional[float] = None  # time.monotonic() value
    timeout_s: Optional[float] = None
    output_file: Optional[Path] = None

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def input(self, name: str, default: Any = None) -> Any:
        value = self.inputs.get(name, default)
        return default if value is None or value == "" else value


@dataclass
class ActionResult:
    outputs: Dict[str, str] = field(default_factory=dict)


class Action(abc.ABC):
    """
    Capability interface for a step. Implementations raise
    StepExecutionError (or a subclass) to fail the step.
    """
    name: str = ""

    @abc.abstractmethod
    def execute(self, ctx: StepContext) -> ActionResult:
        raise NotImplementedError


def as_list(value: Any) -> list[str]:
    """`with` values may be a YAML list or a newline-separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [line.strip() for line in str(value).splitlines() if line.strip()]
