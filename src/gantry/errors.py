# errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class GantryError(Exception):
    """Base class for every error raised by gantry."""


# ----------------------------------------------------------------------
# Structural errors (raised before a run exists)
# ----------------------------------------------------------------------

class DefinitionError(GantryError):
    """Malformed workflow document, unknown field or bad reference."""

    def __init__(self, message: str, *, source: Optional[str] = None):
        self.message = message
        self.source = source
        super().__init__(message)

    def __str__(self) -> str:
        if self.source:
            return f"{self.message} (source: {self.source})"
        return self.message


class CycleError(DefinitionError):
    """The `needs` graph contains a cycle."""

    def __init__(self, cycle: List[str], *, source: Optional[str] = None):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}", source=source)


# ----------------------------------------------------------------------
# Runtime errors (contained in the job that raised them)
# ----------------------------------------------------------------------

class ConditionEvalError(GantryError):
    """An `if` expression (or `${{ }}` placeholder) could not be parsed or evaluated."""

    def __init__(self, expression: str, message: str):
        self.expression = expression
        self.message = message
        super().__init__(f"{message} in expression {expression!r}")


class StepExecutionError(GantryError):
    """
    A step failed. Structured so the console can render it without a traceback.
    """

    def __init__(
        self,
        job: str,
        step: str,
        message: str,
        *,
        exit_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.job = job
        self.step = step
        self.message = message
        self.exit_code = exit_code
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        text = f"[{self.job}] step '{self.step}' failed: {self.message}"
        if self.exit_code is not None:
            text += f" (exit={self.exit_code})"
        return text


class StepTimeoutError(StepExecutionError):
    """The job's wall-clock timeout expired while a step was running."""

    def __init__(self, job: str, step: str, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(job, step, f"timed out after {timeout_s:g}s")


class CacheMissError(GantryError):
    """No cache entry matched the key or any restore key. Never fatal."""

    def __init__(self, key: str, restore_keys: Optional[List[str]] = None):
        self.key = key
        self.restore_keys = list(restore_keys or [])
        super().__init__(f"cache miss for key {key!r}")


class NoMatchError(GantryError):
    """A hashFiles() placeholder matched zero files (strict mode only)."""

    def __init__(self, patterns: List[str]):
        self.patterns = list(patterns)
        super().__init__(f"hashFiles matched no files: {self.patterns}")


class WorkspacePathError(GantryError):
    """A cache/artifact path resolves outside the workspace."""

    def __init__(self, path: str, root: str):
        self.path = path
        self.root = root
        super().__init__(f"path {path!r} is outside the workspace {root}")


class SecretDeniedError(GantryError):
    """A job asked for a secret or permission it is not entitled to."""


class ApprovalDeniedError(GantryError):
    """An environment approval gate rejected the job."""

    def __init__(self, job: str, environment: str):
        self.job = job
        self.environment = environment
        super().__init__(f"deployment of '{job}' to environment '{environment}' was not approved")


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------

class NotFoundError(GantryError):
    """A persisted record does not exist."""


class ArtifactNotFoundError(NotFoundError):
    def __init__(self, run_id: int, name: str):
        self.run_id = run_id
        self.name = name
        super().__init__(f"artifact {name!r} not found in run {run_id}")


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: int):
        self.run_id = run_id
        super().__init__(f"run {run_id} not found")


class CancelledError(GantryError):
    """A running step was interrupted because its run or job was cancelled."""
