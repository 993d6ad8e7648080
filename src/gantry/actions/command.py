# actions/command.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Dict, List

from ..errors import CancelledError, StepExecutionError, StepTimeoutError
from .base import Action, ActionResult, StepContext

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

_POLL_S = 0.05


def parse_output_file(path: Path) -> Dict[str, str]:
    """
    Parse `name=value` lines and `name<<DELIM ... DELIM` blocks written by a step.
    """
    if not path.exists():
        return {}
    outputs: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            block: List[str] = []
            while i < len(lines) and lines[i] != delim:
                block.append(lines[i])
                i += 1
            i += 1  # closing delimiter
            outputs[name.strip()] = "\n".join(block)
        elif "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
    return outputs


def _kill(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def _missing_tool_hint(output: str) -> str | None:
    for tool, hint in TOOL_HINTS.items():
        if f"{tool}: command not found" in output or f"{tool}: not found" in output:
            return hint
    return None


class RunCommand(Action):
    """Inline `run:` step: a shell command in the workspace."""
    name = "run"

    def execute(self, ctx: StepContext) -> ActionResult:
        cmd = str(ctx.inputs.get("run", ""))
        cwd = (ctx.workspace / (ctx.step.cwd or ".")).resolve()
        if not cwd.exists():
            raise StepExecutionError(ctx.job, ctx.step.name, f"working directory not found: {cwd}")

        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=dict(ctx.env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            start_new_session=(os.name == "posix"),
        )

        tail: List[str] = []

        def _pump() -> None:
            assert proc.stdout is not None
            for line in proc.stdout:
                line = line.rstrip("\n")
                ctx.log(line)
                tail.append(line)
                if len(tail) > 50:
                    del tail[0]

        reader = threading.Thread(target=_pump, name=f"gantry-output-{ctx.job}", daemon=True)
        reader.start()

        try:
            while True:
                try:
                    proc.wait(timeout=_POLL_S)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if ctx.cancel_event.is_set():
                    _kill(proc)
                    raise CancelledError(f"step '{ctx.step.name}' interrupted")
                remaining = ctx.remaining()
                if remaining is not None and remaining <= 0:
                    _kill(proc)
                    raise StepTimeoutError(ctx.job, ctx.step.name, ctx.timeout_s or 0.0)
        finally:
            if proc.poll() is None:
                _kill(proc)
                proc.wait()
            reader.join(timeout=5)

        if proc.returncode != 0:
            hint = _missing_tool_hint("\n".join(tail))
            details = {"hint": hint} if hint else {}
            raise StepExecutionError(
                ctx.job,
                ctx.step.name,
                f"command exited with status {proc.returncode}",
                exit_code=proc.returncode,
                details=details,
            )

        outputs = parse_output_file(ctx.output_file) if ctx.output_file else {}
        return ActionResult(outputs=outputs)
