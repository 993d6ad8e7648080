# runner.py
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from .actions.base import Action, StepContext
from .actions.registry import builtin_actions
from .artifacts import ArtifactStore
from .blobs import BlobStore
from .cache import CacheStore, hash_files
from .config import Settings
from .dag import JobGraph, build_graph
from .definition import bind_inputs, resolve_reusable
from .errors import (
    ApprovalDeniedError,
    CancelledError,
    ConditionEvalError,
    DefinitionError,
    GantryError,
    SecretDeniedError,
    StepExecutionError,
    StepTimeoutError,
)
from .expressions import (
    ExpressionContext,
    NeedResult,
    evaluate_condition,
    interpolate,
    interpolate_mapping,
    to_str,
)
from .matrix import expand, instance_name
from .model import Access, Job, JobInstance, Run, Status, Step, Trigger, WorkflowDefinition, now_utc
from .secrets import Grant, PermissionGate, SecretMasker, SecretStore
from .store import StateStore
from .ui.console import Console, get_console

log = logging.getLogger(__name__)

MAX_NESTING = 4

# approver(run, instance, environment) -> approved?
Approver = Callable[[Run, JobInstance, str], bool]


def static_approver(decisions: Optional[Mapping[str, bool]] = None, default: bool = True) -> Approver:
    """Approve/deny environments from a fixed table; unknown environments get `default`."""
    table = dict(decisions or {})

    def approve(run: Run, instance: JobInstance, environment: str) -> bool:
        return table.get(environment, default)

    return approve


@dataclass
class _RunState:
    """Per-run bookkeeping the scheduler keeps next to the Run."""
    run: Run
    graph: JobGraph
    reusables: Dict[str, WorkflowDefinition]
    secrets: SecretStore
    gate: PermissionGate
    output_dir: Path
    first_failure: Optional[str] = None
    # why a running instance was asked to stop
    cancel_reasons: Dict[str, str] = field(default_factory=dict)
    # instances whose environment was approved
    approved: Set[str] = field(default_factory=set)


@dataclass
class _StepRecord:
    result: str
    outputs: Dict[str, str] = field(default_factory=dict)


class Scheduler:
    """
    Drives the job instances of a run from Pending to a terminal state.

    Everything stateful is passed in explicitly: the state store (persisted
    run/job records), cache and artifact stores, the run's secrets and the
    environment approver. Live runs are tracked only for cancellation.
    """

    def __init__(
        self,
        state: StateStore,
        *,
        settings: Optional[Settings] = None,
        blobs: Optional[BlobStore] = None,
        cache: Optional[CacheStore] = None,
        artifacts: Optional[ArtifactStore] = None,
        secrets: Optional[SecretStore] = None,
        approver: Optional[Approver] = None,
        actions: Optional[Dict[str, Action]] = None,
        masker: Optional[SecretMasker] = None,
        workspace: str | Path = ".",
        console: Optional[Console] = None,
    ):
        self.state = state
        self.settings = settings or Settings()
        blobs = blobs or BlobStore(self.settings.blob_root)
        self.cache = cache or CacheStore(state, blobs)
        self.artifacts = artifacts or ArtifactStore(state, blobs, retention_days=self.settings.artifact_retention_days)
        self.secrets = secrets or SecretStore()
        self.approver = approver or static_approver(default=self.settings.auto_approve)
        self.actions = actions if actions is not None else builtin_actions()
        self.masker = masker or SecretMasker()
        self.workspace = Path(workspace).resolve()
        self.console = console or get_console()
        self._live: Dict[int, _RunState] = {}
        self._live_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def prepare(self, definition: WorkflowDefinition, depth: int = 0) -> Tuple[JobGraph, Dict[str, WorkflowDefinition]]:
        """
        Structural checks that must pass before a run exists.

        Raises:
            DefinitionError: unknown action, bad reusable reference, nesting too deep
            CycleError: cycle in `needs`
        """
        if depth > MAX_NESTING:
            raise DefinitionError(f"reusable workflows nested deeper than {MAX_NESTING} levels")

        graph = build_graph(definition)
        source = str(definition.source) if definition.source else None
        reusables: Dict[str, WorkflowDefinition] = {}
        for job in definition.jobs.values():
            for step in job.steps:
                if step.uses is not None and step.uses not in self.actions:
                    raise DefinitionError(
                        f"job '{job.id}' step '{step.name}' uses unknown action {step.uses!r}. "
                        f"Built-in actions: {sorted(a for a in self.actions if a != 'run')}",
                        source=source,
                    )
            if job.uses is not None:
                sub = resolve_reusable(definition, job.uses)
                self.prepare(sub, depth + 1)
                reusables[job.id] = sub
        return graph, reusables

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_run(
        self,
        definition: WorkflowDefinition,
        trigger: Trigger,
        *,
        inputs: Optional[Dict[str, Any]] = None,
        secrets: Optional[SecretStore] = None,
        parent: Optional[Run] = None,
        ceiling: Optional[Mapping[str, Access]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Run:
        """Validate, persist and register a run with all instances Pending."""
        depth = parent.depth + 1 if parent else 0
        graph, reusables = self.prepare(definition, depth)

        store = secrets if secrets is not None else self.secrets
        self.masker.add(*store.values())
        # the record keeps masked inputs; the live run keeps the real ones
        run_id = self.state.create_run(
            definition,
            trigger,
            inputs={k: self.masker.mask(v) if isinstance(v, str) else v for k, v in (inputs or {}).items()},
            parent_run_id=parent.id if parent else None,
        )
        run = Run(
            id=run_id,
            definition=definition,
            trigger=trigger,
            inputs=dict(inputs or {}),
            parent_run_id=parent.id if parent else None,
            depth=depth,
        )
        if cancel_event is not None:
            run.cancel_event = cancel_event

        for job in definition.jobs.values():
            for point in expand(job):
                name = instance_name(job, point)
                unique, n = name, 2
                while unique in run.instances:
                    unique = f"{name} #{n}"
                    n += 1
                run.instances[unique] = JobInstance(name=unique, job_id=job.id, matrix=point)
        self.state.add_instances(run.id, list(run.instances.values()))

        rs = _RunState(
            run=run,
            graph=graph,
            reusables=reusables,
            secrets=store,
            gate=PermissionGate(definition.permissions, ceiling=ceiling),
            output_dir=Path(tempfile.mkdtemp(prefix=f"gantry-run-{run.id}-")),
        )
        with self._live_lock:
            self._live[run.id] = rs
        log.debug("created run %d (%s) with %d instances", run.id, definition.name, len(run.instances))
        return run

    def run(self, definition: WorkflowDefinition, trigger: Optional[Trigger] = None, **kwargs) -> Run:
        return self.execute(self.create_run(definition, trigger or Trigger(), **kwargs))

    def cancel(self, run_id: int) -> None:
        """Cancel a live run in this process, and flag it for other processes."""
        with self._live_lock:
            rs = self._live.get(run_id)
        if rs is not None:
            rs.run.cancel()
        self.state.request_cancel(run_id)

    def execute(self, run: Run) -> Run:
        """Run every instance to a terminal state. Returns the concluded run."""
        with self._live_lock:
            rs = self._live.get(run.id)
        if rs is None:
            raise ValueError(f"run {run.id} was not created by this scheduler")

        run.status = Status.RUNNING
        self.state.save_run(run)
        self.console.print_run_started(run.id, run.definition.name, len(run.instances), parent_run_id=run.parent_run_id)

        workers = self.settings.workers
        in_flight: Dict[Future, JobInstance] = {}
        # approvals are Ready instances held back from the pool; they do not use a worker
        awaiting: Dict[Future, JobInstance] = {}
        gates = ThreadPoolExecutor(max_workers=max(1, len(run.instances)), thread_name_prefix=f"gantry-approve-{run.id}")
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"gantry-run-{run.id}") as pool:
                while True:
                    if not run.cancel_requested and self.state.cancel_requested(run.id):
                        run.cancel()
                    if run.cancel_requested:
                        self._cancel_open(rs, "run cancelled")

                    self._promote(rs)

                    # cancelled while waiting: stop listening for the answer
                    for fut in [f for f, i in awaiting.items() if i.terminal]:
                        del awaiting[fut]
                    for inst in self._needs_approval(rs, awaiting):
                        environment = run.definition.job(inst.job_id).environment
                        self._log(inst, f"waiting for approval to deploy to '{environment}'")
                        awaiting[gates.submit(self.approver, run, inst, environment)] = inst

                    for inst in self._schedulable(rs, in_flight, workers):
                        inst.transition(Status.RUNNING)
                        self.state.save_instance(inst)
                        in_flight[pool.submit(self._run_instance, rs, inst)] = inst

                    if not in_flight and not awaiting:
                        if all(i.terminal for i in run.instances.values()):
                            break
                        if not any(i.status is Status.READY for i in run.instances.values()):
                            # nothing running and nothing can start
                            for i in run.instances.values():
                                if not i.terminal:
                                    self._finish(rs, i, Status.CANCELLED, "dependencies never resolved")
                            break
                        continue

                    done, _ = wait(
                        [*in_flight, *awaiting], timeout=self.settings.poll_interval, return_when=FIRST_COMPLETED
                    )
                    for fut in done:
                        if fut in awaiting:
                            self._approved(rs, awaiting.pop(fut), fut)
                        else:
                            self._complete(rs, in_flight.pop(fut), fut)
        finally:
            # approvers may still be blocked on a prompt
            gates.shutdown(wait=False, cancel_futures=True)
            self._conclude(rs)
            self.state.flush_run(run)
            shutil.rmtree(rs.output_dir, ignore_errors=True)
            with self._live_lock:
                self._live.pop(run.id, None)

        self.console.print_results(
            run.id,
            run.status.value,
            run.reason,
            [(i.name, i.status.value, i.reason) for i in run.instances.values()],
        )
        return run

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _need_result(self, run: Run, job_id: str) -> NeedResult:
        job = run.definition.job(job_id)
        insts = run.instances_of(job_id)
        outputs: Dict[str, str] = {}
        for i in insts:
            outputs.update(i.outputs)

        if any(i.blocked for i in insts) or (
            any(i.status is Status.FAILED for i in insts) and not job.continue_on_error
        ):
            result = "failure"
        elif any(i.status is Status.CANCELLED for i in insts):
            result = "cancelled"
        elif insts and all(i.status is Status.SKIPPED for i in insts):
            result = "skipped"
        else:
            result = "success"
        return NeedResult(result=result, outputs=outputs)

    def _context(self, rs: _RunState, inst: JobInstance, **extra: Any) -> ExpressionContext:
        run = rs.run
        t = run.trigger
        strict = self.settings.strict_hash_files
        return ExpressionContext(
            event=t.event,
            ref=t.ref,
            branch=t.branch,
            tag=t.tag,
            sha=t.sha,
            actor=t.actor,
            run_id=run.id,
            workflow=run.definition.name,
            needs={n: self._need_result(run, n) for n in rs.graph.needs[inst.job_id]},
            matrix=dict(inst.matrix),
            inputs=dict(run.inputs),
            env=dict(run.definition.env),
            functions={"hashFiles": lambda *patterns: hash_files(self.workspace, patterns, strict=strict)},
            **extra,
        )

    def _promote(self, rs: _RunState) -> None:
        """Decide every Pending instance whose needed jobs are all terminal."""
        run = rs.run
        for inst in run.instances.values():
            if inst.status is not Status.PENDING:
                continue
            needs = rs.graph.needs[inst.job_id]
            if not all(i.terminal for n in needs for i in run.instances_of(n)):
                continue

            job = run.definition.job(inst.job_id)
            results = {n: self._need_result(run, n) for n in needs}
            failed = [n for n, r in results.items() if r.result == "failure"]
            cancelled = [n for n, r in results.items() if r.result == "cancelled"]
            skipped = [n for n, r in results.items() if r.result == "skipped"]
            is_success = not failed and not cancelled and not (self.settings.needs_success_only and skipped)

            ctx = self._context(
                rs,
                inst,
                is_success=is_success,
                is_failure=bool(failed),
                is_cancelled=bool(cancelled) or run.cancel_requested,
            )
            try:
                go = evaluate_condition(job.if_, ctx)
            except GantryError as e:
                self._finish(rs, inst, Status.FAILED, f"invalid condition: {e}")
                continue

            if go:
                inst.transition(Status.READY)
                self.state.save_instance(inst)
            elif cancelled:
                self._finish(rs, inst, Status.CANCELLED, f"dependency '{cancelled[0]}' was cancelled")
            elif failed:
                inst.blocked = True
                self._finish(rs, inst, Status.SKIPPED, f"dependency '{failed[0]}' failed")
            elif not is_success:
                self._finish(rs, inst, Status.SKIPPED, f"dependency '{skipped[0]}' was skipped")
            else:
                self._finish(rs, inst, Status.SKIPPED, "condition evaluated to false")

    def _gated(self, rs: _RunState, inst: JobInstance) -> bool:
        """Ready but still waiting for an environment approval."""
        return bool(rs.run.definition.job(inst.job_id).environment) and inst.name not in rs.approved

    def _needs_approval(self, rs: _RunState, awaiting: Dict[Future, JobInstance]) -> List[JobInstance]:
        asked = {i.name for i in awaiting.values()}
        return [
            inst
            for inst in rs.run.instances.values()
            if inst.status is Status.READY and self._gated(rs, inst) and inst.name not in asked
        ]

    def _approved(self, rs: _RunState, inst: JobInstance, fut: Future) -> None:
        """Apply an approver's answer (main thread only)."""
        if inst.terminal:
            # cancelled while waiting
            return
        environment = rs.run.definition.job(inst.job_id).environment
        try:
            ok = fut.result()
        except Exception as e:
            log.exception("approver failed for %s", inst.name)
            self._finish(rs, inst, Status.FAILED, f"approval for environment '{environment}' failed: {e}")
            return
        if not ok:
            err = ApprovalDeniedError(inst.name, environment)
            self._finish(rs, inst, Status.FAILED, str(err))
            self.console.print_failure(inst.name, str(err))
            return
        self._log(inst, f"deployment to '{environment}' approved")
        rs.approved.add(inst.name)

    def _schedulable(self, rs: _RunState, in_flight: Dict[Future, JobInstance], workers: int) -> List[JobInstance]:
        picked: List[JobInstance] = []
        running: Dict[str, int] = {}
        for i in in_flight.values():
            running[i.job_id] = running.get(i.job_id, 0) + 1

        for inst in rs.run.instances.values():
            if len(in_flight) + len(picked) >= workers:
                break
            if inst.status is not Status.READY or self._gated(rs, inst):
                continue
            strategy = rs.run.definition.job(inst.job_id).strategy
            limit = strategy.max_parallel if strategy else None
            if limit is not None and running.get(inst.job_id, 0) >= limit:
                continue
            running[inst.job_id] = running.get(inst.job_id, 0) + 1
            picked.append(inst)
        return picked

    def _cancel_open(self, rs: _RunState, reason: str, job_id: Optional[str] = None) -> None:
        """Cancel non-terminal instances (optionally of one job). Running ones are interrupted."""
        for inst in rs.run.instances.values():
            if job_id is not None and inst.job_id != job_id:
                continue
            if inst.status in (Status.PENDING, Status.READY):
                self._finish(rs, inst, Status.CANCELLED, reason)
            elif inst.status is Status.RUNNING:
                rs.cancel_reasons.setdefault(inst.name, reason)
                inst.cancel_event.set()

    def _finish(self, rs: _RunState, inst: JobInstance, status: Status, reason: str) -> None:
        inst.transition(status, reason)
        if status is Status.FAILED and rs.first_failure is None:
            job = rs.run.definition.job(inst.job_id)
            if not job.continue_on_error:
                rs.first_failure = f"{inst.name}: {reason}"
        self.state.save_instance(inst)
        self.console.print_job_finished(inst.name, status.value, reason)

    def _complete(self, rs: _RunState, inst: JobInstance, fut: Future) -> None:
        """Apply a worker's outcome (main thread only)."""
        job = rs.run.definition.job(inst.job_id)
        try:
            fut.result()
        except CancelledError as e:
            self._finish(rs, inst, Status.CANCELLED, rs.cancel_reasons.get(inst.name) or str(e) or "cancelled")
            return
        except StepExecutionError as e:
            self._finish(rs, inst, Status.FAILED, str(e))
            self.console.print_failure(
                inst.name,
                str(e),
                exit_code=e.exit_code,
                hint=e.details.get("hint"),
                output_tail=inst.log[-10:],
            )
        except GantryError as e:
            self._finish(rs, inst, Status.FAILED, str(e))
            self.console.print_failure(inst.name, str(e))
        except Exception as e:
            log.exception("job %s crashed", inst.name)
            self._finish(rs, inst, Status.FAILED, f"internal error: {e}")
        else:
            self._finish(rs, inst, Status.SUCCEEDED, "")
            return

        strategy = job.strategy
        if strategy is not None and strategy.fail_fast and not job.continue_on_error:
            self._cancel_open(rs, f"cancelled by fail-fast ({inst.name} failed)", job_id=inst.job_id)

    def _conclude(self, rs: _RunState) -> None:
        run = rs.run
        # anything still open (e.g. the loop raised) is cancelled
        for inst in run.instances.values():
            if inst.status in (Status.PENDING, Status.READY):
                inst.transition(Status.CANCELLED, "run ended")

        if run.cancel_requested:
            run.status, run.reason = Status.CANCELLED, "run cancelled"
        elif rs.first_failure is not None:
            run.status, run.reason = Status.FAILED, rs.first_failure
        elif any(i.status is Status.CANCELLED for i in run.instances.values()):
            run.status, run.reason = Status.CANCELLED, "one or more jobs were cancelled"
        else:
            run.status, run.reason = Status.SUCCEEDED, ""

        call = run.definition.workflow_call
        if call is not None and call.outputs and run.status is Status.SUCCEEDED:
            ctx = ExpressionContext(
                event=run.trigger.event,
                ref=run.trigger.ref,
                run_id=run.id,
                inputs=dict(run.inputs),
                jobs={j: self._need_result(run, j) for j in run.definition.jobs},
            )
            try:
                run.outputs = {name: to_str(interpolate(expr, ctx)) for name, expr in call.outputs.items()}
            except ConditionEvalError as e:
                run.status, run.reason = Status.FAILED, f"invalid workflow output: {e}"

        run.finished_at = now_utc()
        log.info("run %d concluded: %s %s", run.id, run.status.value, run.reason)

    # ------------------------------------------------------------------
    # Execution (worker threads)
    # ------------------------------------------------------------------

    def _log(self, inst: JobInstance, line: str) -> None:
        masked = self.masker.mask(line)
        inst.log.append(masked)
        self.console.print_step_output(inst.name, masked)

    def _run_instance(self, rs: _RunState, inst: JobInstance) -> None:
        run = rs.run
        job = run.definition.job(inst.job_id)
        self.console.print_job_start(inst.name)
        # the clock starts once Running; approval waits do not count
        deadline = time.monotonic() + job.timeout_minutes * 60 if job.timeout_minutes else None

        if job.uses is not None:
            self._run_reusable(rs, inst, job, deadline)
            return

        grant = rs.gate.grant(job, rs.secrets)
        self.masker.add(*grant.secrets.values())
        env = self._job_env(rs, inst, job, grant)

        steps: Dict[str, _StepRecord] = {}
        failure: Optional[StepExecutionError] = None
        for index, step in enumerate(job.steps):
            if inst.cancel_event.is_set():
                raise CancelledError(f"step '{step.name}' interrupted")
            if deadline is not None and time.monotonic() >= deadline:
                raise StepTimeoutError(inst.name, step.name, job.timeout_minutes * 60)

            step_key = step.id or f"__step_{index}"
            ctx = self._context(
                rs,
                inst,
                steps={k: NeedResult(v.result, v.outputs) for k, v in steps.items()},
                is_success=failure is None,
                is_failure=failure is not None,
                is_cancelled=inst.cancel_event.is_set(),
                secret_resolver=grant.secret,
            )
            try:
                if not evaluate_condition(step.if_, ctx):
                    self._log(inst, f"skipping step '{step.name}'")
                    steps[step_key] = _StepRecord("skipped")
                    continue
                self.console.print_step(inst.name, step.name)
                outputs = self._run_step(rs, inst, job, step, index, env, ctx, grant, deadline)
                steps[step_key] = _StepRecord("success", outputs)
            except (CancelledError, StepTimeoutError):
                raise
            except StepExecutionError as e:
                failure = failure or e
                steps[step_key] = _StepRecord("failure")
            except (GantryError, OSError) as e:
                err = StepExecutionError(inst.name, step.name, str(e))
                err.__cause__ = e
                failure = failure or err
                steps[step_key] = _StepRecord("failure")

        if failure is not None:
            raise failure

        if job.outputs:
            ctx = self._context(
                rs,
                inst,
                steps={k: NeedResult(v.result, v.outputs) for k, v in steps.items()},
                secret_resolver=grant.secret,
            )
            inst.outputs = {k: self.masker.mask(to_str(interpolate(v, ctx))) for k, v in job.outputs.items()}

    def _job_env(self, rs: _RunState, inst: JobInstance, job: Job, grant: Grant) -> Dict[str, str]:
        run = rs.run
        t = run.trigger
        prefix = self.settings.secret_prefix
        env = {k: v for k, v in os.environ.items() if not k.startswith(prefix)}
        env.update(
            {
                "GANTRY": "true",
                "GANTRY_RUN_ID": str(run.id),
                "GANTRY_WORKFLOW": run.definition.name,
                "GANTRY_JOB": job.id,
                "GANTRY_JOB_NAME": inst.name,
                "GANTRY_EVENT": t.event,
                "GANTRY_REF": t.ref,
                "GANTRY_REF_NAME": t.branch or t.tag,
                "GANTRY_SHA": t.sha,
                "GANTRY_ACTOR": t.actor,
                "GANTRY_WORKSPACE": str(self.workspace),
            }
        )
        ctx = self._context(rs, inst, secret_resolver=grant.secret)
        env.update({k: to_str(v) for k, v in interpolate_mapping(run.definition.env, ctx).items()})
        env.update({k: to_str(v) for k, v in interpolate_mapping(job.env, ctx).items()})
        env.update(grant.secrets)
        return env

    def _run_step(
        self,
        rs: _RunState,
        inst: JobInstance,
        job: Job,
        step: Step,
        index: int,
        env: Dict[str, str],
        ctx: ExpressionContext,
        grant: Grant,
        deadline: Optional[float],
    ) -> Dict[str, str]:
        step_env = dict(env)
        step_env.update({k: to_str(v) for k, v in interpolate_mapping(step.env, ctx).items()})
        output_file = rs.output_dir / f"{inst.record_id or id(inst)}-{index}.out"
        output_file.touch()
        step_env["GANTRY_OUTPUT"] = str(output_file)

        if step.run is not None:
            action = self.actions["run"]
            inputs: Dict[str, Any] = {"run": interpolate(step.run, ctx)}
        else:
            action = self.actions[step.uses]
            inputs = interpolate_mapping(step.with_, ctx)

        step_ctx = StepContext(
            run_id=rs.run.id,
            job=inst.name,
            step=step,
            inputs=MappingProxyType(inputs),
            env=MappingProxyType(step_env),
            workspace=self.workspace,
            grant=grant,
            state=self.state,
            cache=self.cache,
            artifacts=self.artifacts,
            settings=self.settings,
            log=lambda line: self._log(inst, line),
            cancel_event=inst.cancel_event,
            deadline=deadline,
            timeout_s=job.timeout_minutes * 60 if job.timeout_minutes else None,
            output_file=output_file,
        )
        result = action.execute(step_ctx)
        return {k: self.masker.mask(v) for k, v in result.outputs.items()}

    def _run_reusable(self, rs: _RunState, inst: JobInstance, job: Job, deadline: Optional[float]) -> None:
        """Run the referenced workflow as a sub-run and block until it ends."""
        run = rs.run
        sub_def = rs.reusables[job.id]
        call = sub_def.workflow_call
        available = rs.secrets.view(job.environment)

        def read_secret(name: str) -> str:
            # naming a secret in the binding is the declaration
            if name not in available:
                raise SecretDeniedError(f"job '{job.id}' binds undefined secret {name!r}")
            return available[name]

        ctx = self._context(rs, inst, secret_resolver=read_secret)
        inputs = bind_inputs(call, interpolate_mapping(job.with_, ctx))

        if job.secrets_inherit:
            sub_secrets = SecretStore(available)
        else:
            sub_secrets = SecretStore({k: to_str(interpolate(v, ctx)) for k, v in job.secret_bindings.items()})
        for name, required in (call.secrets if call else {}).items():
            if required and name not in sub_secrets:
                raise SecretDeniedError(f"reusable workflow {job.uses!r} requires secret {name!r}")

        sub_run = self.create_run(
            sub_def,
            run.trigger,
            inputs=inputs,
            secrets=sub_secrets,
            parent=run,
            ceiling=rs.gate.effective_permissions(job),
            cancel_event=inst.cancel_event,
        )
        self._log(inst, f"started sub-run {sub_run.id} ({job.uses})")

        timed_out = threading.Event()
        timer: Optional[threading.Timer] = None
        if deadline is not None:
            def _expire() -> None:
                timed_out.set()
                inst.cancel_event.set()

            timer = threading.Timer(max(0.0, deadline - time.monotonic()), _expire)
            timer.daemon = True
            timer.start()
        try:
            self.execute(sub_run)
        finally:
            if timer is not None:
                timer.cancel()

        if timed_out.is_set():
            raise StepTimeoutError(inst.name, job.uses or "", (job.timeout_minutes or 0) * 60)
        if sub_run.status is Status.SUCCEEDED:
            inst.outputs = dict(sub_run.outputs)
            return
        if sub_run.status is Status.CANCELLED:
            raise CancelledError(f"sub-run {sub_run.id} was cancelled")
        raise StepExecutionError(inst.name, job.uses or "", f"sub-run {sub_run.id} failed: {sub_run.reason}")
