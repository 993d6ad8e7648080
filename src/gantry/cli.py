# cli.py
from __future__ import annotations

import logging
import signal
import subprocess
import sys
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional, Tuple

import click
import yaml

from gantry.artifacts import ArtifactStore
from gantry.blobs import BlobStore
from gantry.cache import CacheStore
from gantry.config import Settings
from gantry.definition import load_definition
from gantry.errors import CycleError, DefinitionError, GantryError, NotFoundError
from gantry.git_facts import git
from gantry.model import JobInstance, Run, Status, Trigger
from gantry.runner import Scheduler
from gantry.secrets import SecretMasker, SecretStore
from gantry.store import StateStore, as_utc
from gantry.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEFINITION = 2
EXIT_CANCELLED = 3
EXIT_INTERRUPTED = 130

DEFAULT_WORKFLOW = "gantry.yml"


def setup_logging(debug: bool, masker: SecretMasker) -> None:
    """stderr handler for the `gantry` logger namespace, with secrets masked."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(masker)
    root = logging.getLogger("gantry")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.WARNING)
    root.propagate = False


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the definition file from the argument or the default names.

    Raises:
        SystemExit: If the workflow file cannot be found
    """
    console = get_console()
    if workflow_arg:
        path = Path(workflow_arg)
        if not path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify an existing definition:\n  gantry run path/to/workflow.yml",
            )
            sys.exit(EXIT_DEFINITION)
        return path

    for name in (DEFAULT_WORKFLOW, "gantry.yaml"):
        if Path(name).exists():
            return Path(name)
    console.print_error(
        "No workflow file found",
        "Could not find a workflow definition.",
        details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  gantry.yaml"],
        suggestion="Create a workflow file or pass one explicitly:\n  gantry run my_workflow.yml",
    )
    sys.exit(EXIT_DEFINITION)


def parse_pairs(values: Tuple[str, ...], what: str) -> Dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    out: Dict[str, str] = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=what)
        k, v = item.split("=", 1)
        out[k.strip()] = v
    return out


def parse_inputs(values: Tuple[str, ...]) -> Dict[str, object]:
    # YAML scalars, so --input count=3 arrives as a number
    return {k: yaml.safe_load(v) if v else "" for k, v in parse_pairs(values, "--input").items()}


def _git_or(fn, default: str) -> str:
    try:
        return fn()
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default


def make_approver(approve: Tuple[str, ...], deny: Tuple[str, ...], auto_approve: bool):
    """
    Environment gate for the CLI: explicit --approve/--deny first, then an
    interactive prompt on a terminal, then the configured default.
    """
    approved, denied = set(approve), set(deny)

    def approver(run: Run, instance: JobInstance, environment: str) -> bool:
        if environment in denied:
            return False
        if environment in approved:
            return True
        if sys.stdin.isatty():
            return click.confirm(f"Approve deployment of '{instance.name}' to '{environment}'?", default=False)
        return auto_approve

    return approver


def open_stores(settings: Settings) -> Tuple[StateStore, BlobStore]:
    settings.home.mkdir(parents=True, exist_ok=True)
    state = StateStore(settings.db_url).open()
    return state, BlobStore(settings.blob_root)


def _exit_code(run: Run, interrupted: bool) -> int:
    if interrupted:
        return EXIT_INTERRUPTED
    if run.status is Status.SUCCEEDED:
        return EXIT_OK
    if run.status is Status.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_FAILED


def _fmt_time(value) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, live step output and diagnostics)",
)
@click.option("--home", default=None, type=click.Path(file_okay=False), help="State directory (default: $GANTRY_HOME or .gantry)")
@click.pass_context
def cli(ctx, debug, home):
    """gantry: a minimal self-hosted workflow runner."""
    console = Console(debug=debug)
    set_console(console)
    masker = SecretMasker()
    setup_logging(debug, masker)

    settings = Settings.from_env()
    if home:
        settings = settings.override(home=Path(home))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings
    ctx.obj["masker"] = masker


@cli.command()
@click.argument("workflow", required=False)
@click.option("--event", default="push", show_default=True, help="Triggering event name")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--actor", default=None, help="Who triggered the run (defaults to git user.name)")
@click.option("--input", "inputs", multiple=True, metavar="KEY=VALUE", help="Workflow input (repeatable)")
@click.option("--secret", "secrets", multiple=True, metavar="KEY=VALUE", help="Secret value (repeatable)")
@click.option("--secrets-file", default=None, type=click.Path(exists=True, dir_okay=False), help="YAML file of secrets")
@click.option("--approve", multiple=True, metavar="ENV", help="Approve deployments to ENV (repeatable)")
@click.option("--deny", multiple=True, metavar="ENV", help="Deny deployments to ENV (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of parallel job instances")
@click.option("--workspace", default=".", type=click.Path(file_okay=False, exists=True), help="Workspace directory")
@click.pass_context
def run(ctx, workflow, event, ref, sha, actor, inputs, secrets, secrets_file, approve, deny, workers, workspace):
    """Run a workflow definition."""
    console = get_console()
    settings: Settings = ctx.obj["settings"].override(max_parallel=workers)
    masker: SecretMasker = ctx.obj["masker"]
    workflow_path = discover_workflow(workflow)

    try:
        definition = load_definition(workflow_path)
    except CycleError as e:
        console.print_error("Dependency cycle", str(e), details=[" -> ".join(e.cycle)])
        sys.exit(EXIT_DEFINITION)
    except DefinitionError as e:
        console.print_error("Invalid workflow definition", str(e))
        sys.exit(EXIT_DEFINITION)

    secret_store = SecretStore.from_env(settings.secret_prefix)
    if secrets_file:
        try:
            secret_store = secret_store.merged(SecretStore.from_file(secrets_file))
        except DefinitionError as e:
            console.print_error("Invalid secrets file", str(e))
            sys.exit(EXIT_DEFINITION)
    secret_store = secret_store.merged(SecretStore(parse_pairs(secrets, "--secret")))
    masker.add(*secret_store.values())

    trigger = Trigger(
        event=event,
        ref=ref or _git_or(lambda: git.current_ref(workspace), "refs/heads/main"),
        sha=sha or _git_or(lambda: git.head_sha(workspace), ""),
        actor=actor or _git_or(lambda: git.actor(workspace), ""),
    )

    state, blobs = open_stores(settings)
    try:
        scheduler = Scheduler(
            state,
            settings=settings,
            blobs=blobs,
            secrets=secret_store,
            approver=make_approver(approve, deny, settings.auto_approve),
            masker=masker,
            workspace=workspace,
            console=console,
        )
        try:
            run_ = scheduler.create_run(definition, trigger, inputs=parse_inputs(inputs))
        except CycleError as e:
            console.print_error("Dependency cycle", str(e), details=[" -> ".join(e.cycle)])
            sys.exit(EXIT_DEFINITION)
        except DefinitionError as e:
            console.print_error("Invalid workflow definition", str(e))
            sys.exit(EXIT_DEFINITION)

        interrupted = False

        def _on_sigint(signum, frame):
            nonlocal interrupted
            if interrupted:
                raise KeyboardInterrupt
            interrupted = True
            console.print_info("\nInterrupted, cancelling run (press Ctrl-C again to abort)")
            scheduler.cancel(run_.id)

        previous = signal.signal(signal.SIGINT, _on_sigint)
        try:
            scheduler.execute(run_)
        finally:
            signal.signal(signal.SIGINT, previous)
        sys.exit(_exit_code(run_, interrupted))

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except GantryError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        state.close()


@cli.command()
@click.argument("run_id", type=int, required=False)
@click.option("--limit", default=20, show_default=True, help="Number of runs to list")
@click.option("--logs/--no-logs", default=False, help="Show captured job output")
@click.pass_context
def status(ctx, run_id, limit, logs):
    """Show one run (with its jobs) or list recent runs."""
    console = get_console()
    state, _ = open_stores(ctx.obj["settings"])
    try:
        if run_id is None:
            runs = state.list_runs(limit)
            if not runs:
                console.print_info("No runs yet.")
            for r in runs:
                parent = f" (called from {r.parent_run_id})" if r.parent_run_id else ""
                console.print_info(f"{r.id:>5}  {r.status:<10} {r.workflow}  {r.event} {r.ref}  {_fmt_time(r.created_at)}{parent}")
            return

        try:
            r = state.get_run(run_id)
        except NotFoundError as e:
            console.print_error("Run not found", str(e))
            sys.exit(EXIT_FAILED)

        console.print_header(f"Run {r.id}: {r.workflow}")
        console.print_info(f"Status:   {r.status}")
        if r.reason:
            console.print_info(f"Reason:   {r.reason}")
        console.print_info(f"Trigger:  {r.event} {r.ref} {r.sha[:12]}")
        console.print_info(f"Started:  {_fmt_time(r.created_at)}")
        console.print_info(f"Finished: {_fmt_time(r.finished_at)}")
        if r.outputs:
            console.print_info(f"Outputs:  {r.outputs}")
        console.print_header("Jobs")
        for j in r.jobs:
            line = f"  {j.name}: {j.status.upper()}"
            if j.reason and j.status != Status.SUCCEEDED.value:
                line += f" - {j.reason}"
            console.print_info(line)
            if logs and j.log:
                for out in j.log.splitlines():
                    console.print_info(f"    | {out}")
    finally:
        state.close()


@cli.command()
@click.argument("run_id", type=int)
@click.pass_context
def cancel(ctx, run_id):
    """Request cancellation of a run (picked up by the process running it)."""
    console = get_console()
    state, _ = open_stores(ctx.obj["settings"])
    try:
        r = state.get_run(run_id)
        if Status(r.status).terminal:
            console.print_info(f"Run {run_id} already finished ({r.status}).")
            return
        state.request_cancel(run_id)
        console.print_info(f"Cancellation requested for run {run_id}.")
    except NotFoundError as e:
        console.print_error("Run not found", str(e))
        sys.exit(EXIT_FAILED)
    finally:
        state.close()


@cli.command()
@click.argument("run_id", type=int)
@click.pass_context
def artifacts(ctx, run_id):
    """List the artifacts of a run (latest version of each name)."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    state, blobs = open_stores(settings)
    try:
        refs = ArtifactStore(state, blobs, retention_days=settings.artifact_retention_days).list(run_id)
        if not refs:
            console.print_info(f"Run {run_id} has no artifacts.")
        for ref in refs:
            console.print_info(
                f"{ref.name}  v{ref.version}  {ref.size} bytes  {ref.digest[:12]}  expires {_fmt_time(ref.expires_at)}"
            )
    finally:
        state.close()


@cli.group()
def cache():
    """Manage the dependency cache."""


@cache.command("prune")
@click.option("--max-bytes", default=None, type=int, help="Maximum total cache size in bytes (default: $GANTRY_CACHE_MAX_BYTES)")
@click.option("--max-age-days", default=None, type=int, help="Evict entries unused for this long")
@click.option("--artifacts/--no-artifacts", "purge_artifacts", default=True, show_default=True, help="Also purge expired artifacts")
@click.pass_context
def cache_prune(ctx, max_bytes, max_age_days, purge_artifacts):
    """Evict least-recently-used cache entries and expired artifacts."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    max_bytes = max_bytes if max_bytes is not None else settings.cache_max_bytes
    days: Optional[int] = max_age_days if max_age_days is not None else settings.cache_max_age_days

    state, blobs = open_stores(settings)
    try:
        evicted = CacheStore(state, blobs).prune(
            max_bytes=max_bytes,
            max_age=timedelta(days=days) if days is not None else None,
        )
        console.print_info(f"Evicted {len(evicted)} cache entr{'y' if len(evicted) == 1 else 'ies'}.")
        for key in evicted:
            console.print_debug(f"evicted {key}")
        if purge_artifacts:
            purged = ArtifactStore(state, blobs).purge_expired()
            console.print_info(f"Purged {purged} expired artifact(s).")
    finally:
        state.close()


if __name__ == "__main__":
    cli()
