# actions/artifact.py
from __future__ import annotations

from ..blobs import inside, pack_paths, unpack
from ..errors import ArtifactNotFoundError, RunNotFoundError, StepExecutionError, WorkspacePathError
from ..model import Access, Status
from .base import Action, ActionResult, StepContext, as_list

_NO_FILES = ("error", "warn", "ignore")


class ArtifactUpload(Action):
    """
    uses: artifact/upload
    with:
      name: dist
      path: dist/
      retention-days: 30
      if-no-files-found: warn   # error | warn | ignore
    """
    name = "artifact/upload"

    def execute(self, ctx: StepContext) -> ActionResult:
        ctx.grant.require("artifacts", Access.WRITE)
        name = str(ctx.input("name", "artifact"))
        paths = as_list(ctx.inputs.get("path"))
        on_empty = str(ctx.input("if-no-files-found", "warn"))
        if not paths:
            raise StepExecutionError(ctx.job, ctx.step.name, "artifact/upload needs a 'path'")
        if on_empty not in _NO_FILES:
            raise StepExecutionError(ctx.job, ctx.step.name, f"if-no-files-found must be one of {list(_NO_FILES)}")

        try:
            data, count = pack_paths(ctx.workspace, paths)
        except WorkspacePathError as e:
            raise StepExecutionError(ctx.job, ctx.step.name, str(e)) from None
        if count == 0:
            if on_empty == "error":
                raise StepExecutionError(ctx.job, ctx.step.name, f"no files found for {paths}")
            if on_empty == "warn":
                ctx.log(f"warning: no files found for {paths}, nothing uploaded")
            return ActionResult(outputs={"artifact-uploaded": "false"})

        retention = ctx.input("retention-days")
        ref = ctx.artifacts.put(
            ctx.run_id,
            name,
            data,
            retention_days=int(retention) if retention is not None else None,
        )
        ctx.log(f"artifact: uploaded {name} v{ref.version} ({count} files, {ref.size} bytes)")
        return ActionResult(
            outputs={
                "artifact-uploaded": "true",
                "artifact-version": str(ref.version),
                "artifact-digest": ref.digest,
            }
        )


class ArtifactDownload(Action):
    """
    uses: artifact/download
    with:
      name: dist
      path: .             # destination, relative to the workspace
      run-id: 42          # optional: a completed upstream run
    """
    name = "artifact/download"

    def execute(self, ctx: StepContext) -> ActionResult:
        ctx.grant.require("artifacts", Access.READ)
        name = str(ctx.input("name", "artifact"))
        try:
            dest = inside(ctx.workspace, str(ctx.input("path", ".")))
        except WorkspacePathError as e:
            raise StepExecutionError(ctx.job, ctx.step.name, str(e)) from None
        raw = ctx.input("run-id", ctx.run_id)
        try:
            run_id = int(raw)
        except (TypeError, ValueError):
            raise StepExecutionError(ctx.job, ctx.step.name, f"run-id must be a run number, got {raw!r}") from None

        if run_id != ctx.run_id:
            try:
                upstream = ctx.state.get_run(run_id)
            except RunNotFoundError as e:
                raise StepExecutionError(ctx.job, ctx.step.name, str(e)) from None
            if upstream.status != Status.SUCCEEDED.value:
                raise StepExecutionError(
                    ctx.job,
                    ctx.step.name,
                    f"upstream run {run_id} has not succeeded (status: {upstream.status})",
                )

        try:
            data = ctx.artifacts.get(run_id, name)
        except ArtifactNotFoundError as e:
            raise StepExecutionError(ctx.job, ctx.step.name, str(e)) from None

        names = unpack(data, dest)
        ctx.log(f"artifact: downloaded {name} from run {run_id} ({len(names)} files)")
        return ActionResult(outputs={"download-path": str(dest)})
