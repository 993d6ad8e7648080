# actions/cache.py
from __future__ import annotations

from ..errors import StepExecutionError
from ..model import Access
from .base import Action, ActionResult, StepContext, as_list


class CacheRestore(Action):
    """
    uses: cache/restore
    with:
      key: deps-${{ hashFiles('requirements.txt') }}
      restore-keys: [deps-]

    A miss is never an error: the job continues with a cold build.
    """
    name = "cache/restore"

    def execute(self, ctx: StepContext) -> ActionResult:
        ctx.grant.require("cache", Access.READ)
        key = str(ctx.input("key", ""))
        if not key:
            raise StepExecutionError(ctx.job, ctx.step.name, "cache/restore needs a 'key'")
        restore_keys = as_list(ctx.inputs.get("restore-keys"))

        hit = ctx.cache.restore(key, restore_keys, ctx.workspace)
        ctx.log(f"cache: {hit.reason}")
        return ActionResult(
            outputs={
                "cache-hit": "true" if hit.exact else "false",
                "cache-matched-key": hit.matched_key or "",
                "cache-primary-key": key,
            }
        )


class CacheSave(Action):
    """
    uses: cache/save
    with:
      key: deps-${{ hashFiles('requirements.txt') }}
      path: .venv
    """
    name = "cache/save"

    def execute(self, ctx: StepContext) -> ActionResult:
        ctx.grant.require("cache", Access.WRITE)
        key = str(ctx.input("key", ""))
        paths = as_list(ctx.inputs.get("path"))
        if not key or not paths:
            raise StepExecutionError(ctx.job, ctx.step.name, "cache/save needs 'key' and 'path'")

        saved, entry = ctx.cache.save(key, ctx.workspace, paths)
        if saved:
            ctx.log(f"cache: saved ({key[:40]})")
        elif entry is not None:
            ctx.log(f"cache: key {key!r} already exists, not overwritten")
        else:
            ctx.log(f"cache: nothing to save for {paths}")
        return ActionResult(outputs={"cache-saved": "true" if saved else "false"})
