"""Secrets and permissions gate.

A job only ever sees the secrets it names and the permission scopes the
workflow grants. Anything not declared is denied (fail closed).
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

import yaml

from .config import SECRET_PREFIX
from .errors import DefinitionError, SecretDeniedError
from .model import Access, Job

MASK = "***"


class SecretStore:
    """Secret values of a run, with optional per-environment overlays."""

    def __init__(
        self,
        values: Optional[Mapping[str, str]] = None,
        environments: Optional[Mapping[str, Mapping[str, str]]] = None,
    ):
        self._values: Dict[str, str] = {str(k): str(v) for k, v in (values or {}).items()}
        self._environments: Dict[str, Dict[str, str]] = {
            str(env): {str(k): str(v) for k, v in vals.items()} for env, vals in (environments or {}).items()
        }

    @classmethod
    def from_env(cls, prefix: str = SECRET_PREFIX, environ: Optional[Mapping[str, str]] = None) -> "SecretStore":
        env = os.environ if environ is None else environ
        return cls({k[len(prefix):]: v for k, v in env.items() if k.startswith(prefix) and len(k) > len(prefix)})

    @classmethod
    def from_file(cls, path: str | Path) -> "SecretStore":
        """
        YAML file, either a flat NAME: value mapping or
        {secrets: {...}, environments: {production: {...}}}.

        Raises:
            DefinitionError: unreadable YAML or not a mapping of names to values
        """
        try:
            data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise DefinitionError(f"Invalid YAML in secrets file: {e}", source=str(path)) from None
        if not isinstance(data, dict):
            raise DefinitionError("secrets file must contain a mapping", source=str(path))
        if "secrets" not in data and "environments" not in data:
            data = {"secrets": data}

        values = data.get("secrets") or {}
        environments = data.get("environments") or {}
        if not isinstance(values, dict):
            raise DefinitionError("'secrets' must be a mapping of NAME: value", source=str(path))
        if not isinstance(environments, dict) or not all(isinstance(v, dict) for v in environments.values()):
            raise DefinitionError("'environments' must map environment names to NAME: value mappings", source=str(path))
        return cls(values, environments)

    def merged(self, other: "SecretStore") -> "SecretStore":
        envs = {k: dict(v) for k, v in self._environments.items()}
        for env, vals in other._environments.items():
            envs.setdefault(env, {}).update(vals)
        return SecretStore({**self._values, **other._values}, envs)

    def view(self, environment: Optional[str] = None) -> Dict[str, str]:
        out = dict(self._values)
        if environment:
            out.update(self._environments.get(environment, {}))
        return out

    def get(self, name: str, environment: Optional[str] = None) -> Optional[str]:
        return self.view(environment).get(name)

    def values(self) -> List[str]:
        vals = list(self._values.values())
        for env in self._environments.values():
            vals.extend(env.values())
        return vals

    def __contains__(self, name: str) -> bool:
        return name in self._values


@dataclass(frozen=True)
class Grant:
    """What one executing job may read: its secrets and effective permissions."""
    job: str
    secrets: Mapping[str, str] = field(default_factory=dict)
    permissions: Mapping[str, Access] = field(default_factory=dict)

    def secret(self, name: str) -> str:
        if name not in self.secrets:
            raise SecretDeniedError(f"job '{self.job}' did not declare access to secret {name!r}")
        return self.secrets[name]

    def allows(self, scope: str, level: Access) -> bool:
        return self.permissions.get(scope, Access.NONE).allows(level)

    def require(self, scope: str, level: Access) -> None:
        if not self.allows(scope, level):
            have = self.permissions.get(scope, Access.NONE).value
            raise SecretDeniedError(
                f"job '{self.job}' needs '{scope}: {level.value}' but has '{scope}: {have}'"
            )


class PermissionGate:
    """
    Resolves the minimal grant for a job.

    `ceiling` caps a sub-run's permissions at the calling job's own grant.
    """

    def __init__(self, workflow_permissions: Mapping[str, Access], *, ceiling: Optional[Mapping[str, Access]] = None):
        self.workflow_permissions = dict(workflow_permissions)
        if ceiling is not None:
            self.workflow_permissions = {
                scope: min(level, ceiling.get(scope, Access.NONE), key=lambda a: a.rank)
                for scope, level in self.workflow_permissions.items()
            }

    def effective_permissions(self, job: Job) -> Dict[str, Access]:
        if job.permissions is None:
            return {s: a for s, a in self.workflow_permissions.items() if a is not Access.NONE}

        out: Dict[str, Access] = {}
        for scope, wanted in job.permissions.items():
            allowed = self.workflow_permissions.get(scope, Access.NONE)
            if not allowed.allows(wanted):
                raise SecretDeniedError(
                    f"job '{job.id}' requests '{scope}: {wanted.value}' but the workflow only grants "
                    f"'{scope}: {allowed.value}'"
                )
            if wanted is not Access.NONE:
                out[scope] = wanted
        return out

    def grant(
        self,
        job: Job,
        store: SecretStore,
        *,
        environment: Optional[str] = None,
        names: Optional[Iterable[str]] = None,
    ) -> Grant:
        """
        Raises:
            SecretDeniedError: undeclared scope requested or a named secret does not exist
        """
        permissions = self.effective_permissions(job)
        available = store.view(environment or job.environment)
        secrets: Dict[str, str] = {}
        for name in (job.secrets if names is None else names):
            if name not in available:
                raise SecretDeniedError(f"job '{job.id}' declares secret {name!r} which is not defined")
            secrets[name] = available[name]
        return Grant(job=job.id, secrets=MappingProxyType(secrets), permissions=MappingProxyType(permissions))


class SecretMasker(logging.Filter):
    """
    Replaces registered secret values with *** in text and log records.
    Installed on the CLI log handler and applied to captured step output.
    """

    def __init__(self, values: Iterable[str] = ()):
        super().__init__()
        self._lock = threading.Lock()
        self._values: set[str] = set()
        self.add(*values)

    def add(self, *values: str) -> None:
        with self._lock:
            for v in values:
                if v is None:
                    continue
                v = str(v)
                if v.strip():
                    self._values.add(v)
                    # multi-line secrets leak line by line too
                    self._values.update(line for line in v.splitlines() if line.strip())

    def mask(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            values = sorted(self._values, key=len, reverse=True)
        for v in values:
            if v in text:
                text = text.replace(v, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self.mask(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True
