"""
Definition loader - read workflow documents from YAML files.

Supports:
- A workflow file (ci.yml)
- Inline dict definitions (tests, embedding)
- Reusable workflow references (`uses: ./deploy.yml`) resolved relative to the caller
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import DefinitionError
from .model import Access, InputSpec, Job, Step, Strategy, WorkflowCall, WorkflowDefinition

_JOB_ID = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_INPUT_TYPES = ("string", "number", "boolean")


# ----------------------------------------------------------------------
# Document schema (validation only; converted to the frozen model below)
# ----------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepDoc(_Doc):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")

    @model_validator(mode="after")
    def _run_xor_uses(self) -> "StepDoc":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class StrategyDoc(_Doc):
    matrix: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(default=True, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", ge=1)


class JobDoc(_Doc):
    name: Optional[str] = None
    runs_on: str = Field(default="local", alias="runs-on")
    needs: Union[str, List[str]] = Field(default_factory=list)
    strategy: Optional[StrategyDoc] = None
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    secrets: Union[str, List[str], Dict[str, str]] = Field(default_factory=list)
    environment: Optional[str] = None
    permissions: Optional[Dict[str, str]] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    outputs: Dict[str, str] = Field(default_factory=dict)
    steps: List[StepDoc] = Field(default_factory=list)

    @field_validator("secrets")
    @classmethod
    def _secrets_shape(cls, v):
        if isinstance(v, str) and v != "inherit":
            raise ValueError("secrets must be a list of names, a mapping, or 'inherit'")
        return v

    @model_validator(mode="after")
    def _steps_xor_uses(self) -> "JobDoc":
        if self.uses is None and not self.steps:
            raise ValueError("a job needs 'steps' or a reusable workflow in 'uses'")
        if self.uses is not None and self.steps:
            raise ValueError("a job calling a reusable workflow cannot also define 'steps'")
        if self.uses is None and self.with_:
            raise ValueError("'with' is only allowed on jobs that call a reusable workflow")
        if self.uses is None and isinstance(self.secrets, (str, dict)):
            raise ValueError("secret bindings ('inherit' or a mapping) need a reusable workflow in 'uses'")
        return self


class InputDoc(_Doc):
    type: str = "string"
    required: bool = False
    default: Any = None
    description: Optional[str] = None

    @field_validator("type")
    @classmethod
    def _known_type(cls, v: str) -> str:
        if v not in _INPUT_TYPES:
            raise ValueError(f"input type must be one of {list(_INPUT_TYPES)}")
        return v


class SecretDoc(_Doc):
    required: bool = False
    description: Optional[str] = None


class OutputDoc(_Doc):
    value: str
    description: Optional[str] = None


class WorkflowCallDoc(_Doc):
    inputs: Dict[str, InputDoc] = Field(default_factory=dict)
    secrets: Dict[str, SecretDoc] = Field(default_factory=dict)
    outputs: Dict[str, OutputDoc] = Field(default_factory=dict)


class WorkflowDoc(_Doc):
    name: Optional[str] = None
    on: Union[str, List[str], Dict[str, Any]] = Field(default_factory=list)
    permissions: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc]

    @field_validator("jobs")
    @classmethod
    def _job_ids(cls, v: Dict[str, JobDoc]) -> Dict[str, JobDoc]:
        if not v:
            raise ValueError("a workflow needs at least one job")
        for job_id in v:
            if not _JOB_ID.match(str(job_id)):
                raise ValueError(f"invalid job id {job_id!r}")
        return v


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _access_map(raw: Dict[str, str], where: str, source: str) -> Dict[str, Access]:
    out: Dict[str, Access] = {}
    for scope, level in raw.items():
        try:
            out[str(scope)] = Access(str(level))
        except ValueError:
            raise DefinitionError(
                f"{where}: permission {scope!r} must be read, write or none (got {level!r})",
                source=source,
            ) from None
    return out


def _condition(raw: Optional[Union[bool, str]]) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return raw


def _str_env(raw: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): "" if v is None else str(v) for k, v in raw.items()}


def _strategy(doc: StrategyDoc, job_id: str, source: str) -> Strategy:
    axes = []
    include: List[Dict[str, Any]] = []
    exclude: List[Dict[str, Any]] = []
    for key, values in doc.matrix.items():
        if key in ("include", "exclude"):
            if not isinstance(values, list) or not all(isinstance(e, dict) for e in values):
                raise DefinitionError(f"job '{job_id}': matrix.{key} must be a list of mappings", source=source)
            (include if key == "include" else exclude).extend(dict(e) for e in values)
            continue
        if not isinstance(values, list):
            raise DefinitionError(f"job '{job_id}': matrix axis {key!r} must be a list", source=source)
        axes.append((str(key), tuple(values)))

    axis_names = {name for name, _ in axes}
    for entry in exclude:
        unknown = set(entry) - axis_names
        if unknown:
            raise DefinitionError(
                f"job '{job_id}': matrix.exclude references unknown axes {sorted(unknown)}",
                source=source,
            )

    return Strategy(
        axes=tuple(axes),
        include=tuple(include),
        exclude=tuple(exclude),
        fail_fast=doc.fail_fast,
        max_parallel=doc.max_parallel,
    )


def _step(doc: StepDoc, index: int) -> Step:
    first_line = (doc.run or "").strip().splitlines()[:1]
    name = doc.name or doc.id or (first_line[0][:40] if first_line else doc.uses) or f"step-{index + 1}"
    return Step(
        name=name,
        id=doc.id,
        run=doc.run,
        uses=doc.uses,
        with_=dict(doc.with_),
        if_=_condition(doc.if_),
        env=_str_env(doc.env),
        cwd=doc.working_directory,
    )


def _job(job_id: str, doc: JobDoc, source: str) -> Job:
    needs = [doc.needs] if isinstance(doc.needs, str) else list(doc.needs)

    secrets: List[str] = []
    bindings: Dict[str, str] = {}
    inherit = False
    if doc.secrets == "inherit":
        inherit = True
    elif isinstance(doc.secrets, dict):
        bindings = {str(k): str(v) for k, v in doc.secrets.items()}
    else:
        secrets = [str(s) for s in doc.secrets]

    step_ids = [s.id for s in doc.steps if s.id]
    if len(step_ids) != len(set(step_ids)):
        raise DefinitionError(f"job '{job_id}': duplicate step ids", source=source)

    return Job(
        id=job_id,
        name=doc.name,
        runs_on=doc.runs_on,
        steps=tuple(_step(s, i) for i, s in enumerate(doc.steps)),
        needs=tuple(needs),
        strategy=_strategy(doc.strategy, job_id, source) if doc.strategy else None,
        if_=_condition(doc.if_),
        uses=doc.uses,
        with_=dict(doc.with_),
        secrets=tuple(secrets),
        secret_bindings=bindings,
        secrets_inherit=inherit,
        environment=doc.environment,
        permissions=_access_map(doc.permissions, f"job '{job_id}'", source) if doc.permissions is not None else None,
        env=_str_env(doc.env),
        timeout_minutes=doc.timeout_minutes,
        continue_on_error=doc.continue_on_error,
        outputs=dict(doc.outputs),
    )


def _triggers(raw: Union[str, List[str], Dict[str, Any]], source: str) -> tuple[list[str], Optional[WorkflowCall]]:
    if isinstance(raw, str):
        return [raw], None
    if isinstance(raw, list):
        return [str(t) for t in raw], None

    call: Optional[WorkflowCall] = None
    if "workflow_call" in raw:
        try:
            doc = WorkflowCallDoc.model_validate(raw["workflow_call"] or {})
        except ValidationError as e:
            raise DefinitionError(f"invalid workflow_call: {_first_error(e)}", source=source) from None
        call = WorkflowCall(
            inputs={
                name: InputSpec(
                    name=name,
                    type=i.type,
                    required=i.required,
                    default=i.default,
                    description=i.description,
                )
                for name, i in doc.inputs.items()
            },
            secrets={name: s.required for name, s in doc.secrets.items()},
            outputs={name: o.value for name, o in doc.outputs.items()},
        )
    return [str(t) for t in raw], call


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


def load_definition_from_dict(
    data: Dict[str, Any],
    *,
    source: str = "dict",
    path: Optional[Path] = None,
    default_name: str = "workflow",
) -> WorkflowDefinition:
    """
    Validate a workflow document and convert it to a WorkflowDefinition.

    Raises:
        DefinitionError: malformed document or unknown field
    """
    if not isinstance(data, dict):
        raise DefinitionError(f"Workflow must be a mapping, got {type(data).__name__}", source=source)

    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(f"Invalid workflow: {_first_error(e)}", source=source) from None

    triggers, call = _triggers(doc.on, source)
    jobs = {str(job_id): _job(str(job_id), job_doc, source) for job_id, job_doc in doc.jobs.items()}

    return WorkflowDefinition(
        name=doc.name or default_name,
        triggers=tuple(triggers),
        jobs=jobs,
        permissions=_access_map(doc.permissions, "workflow", source),
        env=_str_env(doc.env),
        workflow_call=call,
        source=path,
    )


def load_definition(path: str | Path) -> WorkflowDefinition:
    """
    Load a workflow definition from a YAML file.

    Raises:
        DefinitionError: if the file is missing, not YAML, or invalid
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise DefinitionError(f"Workflow file not found: {wf_path}")

    try:
        data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}", source=str(wf_path)) from None

    return load_definition_from_dict(data, source=str(wf_path), path=wf_path, default_name=wf_path.stem)


# ----------------------------------------------------------------------
# Reusable workflows
# ----------------------------------------------------------------------

def resolve_reusable(caller: WorkflowDefinition, ref: str) -> WorkflowDefinition:
    """Load the workflow a job references in `uses`, relative to the calling file."""
    base = caller.source.parent if caller.source else Path.cwd()
    target = (base / ref).resolve()
    definition = load_definition(target)
    if definition.workflow_call is None and "workflow_call" not in definition.triggers:
        raise DefinitionError(f"{ref!r} is not a reusable workflow (missing 'workflow_call' trigger)", source=str(target))
    return definition


def _coerce_input(spec: InputSpec, value: Any) -> Any:
    if spec.type == "boolean":
        if isinstance(value, bool):
            return value
        if str(value).lower() in ("true", "false"):
            return str(value).lower() == "true"
    elif spec.type == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            f = float(str(value))
            return int(f) if f.is_integer() else f
        except ValueError:
            pass
    else:
        if isinstance(value, bool):
            return "true" if value else "false"
        return "" if value is None else str(value)
    raise DefinitionError(f"input {spec.name!r} expects a {spec.type}, got {value!r}")


def bind_inputs(call: Optional[WorkflowCall], provided: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bind caller-provided `with` values to a reusable workflow's typed inputs.

    Unknown inputs, missing required inputs and type mismatches are DefinitionErrors.
    """
    specs = call.inputs if call else {}
    unknown = sorted(set(provided) - set(specs))
    if unknown:
        raise DefinitionError(f"unknown inputs {unknown}")

    bound: Dict[str, Any] = {}
    for name, spec in specs.items():
        if name in provided:
            bound[name] = _coerce_input(spec, provided[name])
        elif spec.default is not None:
            bound[name] = _coerce_input(spec, spec.default)
        elif spec.required:
            raise DefinitionError(f"missing required input {name!r}")
    return bound
