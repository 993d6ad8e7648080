"""Console output formatting utilities for gantry."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and live step output
            quiet: If True, suppress progress lines (errors are still printed)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, text: str, *, err: bool = False) -> None:
        with self._lock:
            print(text, file=sys.stderr if err else sys.stdout, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        if self.quiet:
            return
        self._out(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(self, run_id: int, workflow: str, job_count: int, *, parent_run_id: Optional[int] = None) -> None:
        """Print run start information."""
        if self.quiet:
            return
        lines = ["", "RUN STARTED", f"Run: {run_id}", f"Workflow: {workflow}", f"Jobs: {job_count}"]
        if parent_run_id is not None:
            lines.append(f"Called from run: {parent_run_id}")
        self._out("\n".join(lines) + "\n")

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._out(f"JOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] STEP: {name}")

    def print_step_output(self, job: str, line: str) -> None:
        """Live step output, only in debug mode."""
        if self.debug:
            self._out(f"[{job}] | {line}")

    def print_job_finished(self, name: str, status: str, reason: str = "") -> None:
        if self.quiet:
            return
        text = f"JOB {status.upper()}: {name}"
        if reason and status != "succeeded":
            text += f" ({reason})"
        self._out(text)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output_tail: Iterable[str] = (),
    ) -> None:
        """
        Print a job failure with the last lines of its output.

        Args:
            name: Job instance name
            reason: Failure reason
            exit_code: Optional exit code of the failing step
            hint: Optional hint for the user
            output_tail: Last captured (already masked) output lines
        """
        lines = [f"JOB FAILED: {name}", f"Reason: {reason}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        tail = list(output_tail)
        if tail:
            lines.append("Output (last lines):")
            lines.extend(f"  {line}" for line in tail)
        self._out("\n".join(lines), err=True)

    def print_results(self, run_id: int, status: str, reason: str, jobs: Iterable[tuple[str, str, str]]) -> None:
        """Print final results summary: (name, status, reason) per job instance."""
        lines = ["", "=" * 40, f"RUN {run_id}: {status.upper()}", "=" * 40]
        for name, job_status, job_reason in jobs:
            line = f"  {name}: {job_status.upper()}"
            if job_reason and job_status != "succeeded":
                line += f" - {job_reason}"
            lines.append(line)
        if reason and status != "succeeded":
            lines.append(f"\nReason: {reason}")
        self._out("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
