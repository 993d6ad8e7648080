# actions/registry.py
from __future__ import annotations

from typing import Dict

from .artifact import ArtifactDownload, ArtifactUpload
from .base import Action
from .cache import CacheRestore, CacheSave
from .command import RunCommand


def builtin_actions() -> Dict[str, Action]:
    """Built-in `uses:` actions by name. `run` backs inline commands."""
    actions = [RunCommand(), CacheRestore(), CacheSave(), ArtifactUpload(), ArtifactDownload()]
    return {a.name: a for a in actions}
