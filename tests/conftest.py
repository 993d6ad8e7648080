"""Shared fixtures: an in-memory state store, blob stores under tmp_path
and a scheduler wired to both."""

import textwrap

import pytest
import yaml

from gantry.artifacts import ArtifactStore
from gantry.blobs import BlobStore
from gantry.cache import CacheStore
from gantry.config import Settings
from gantry.definition import load_definition_from_dict
from gantry.runner import Scheduler
from gantry.store import StateStore
from gantry.ui.console import Console


@pytest.fixture
def state():
    store = StateStore("sqlite://").open()
    yield store
    store.close()


@pytest.fixture
def blobs(tmp_path):
    return BlobStore(tmp_path / "blobs")


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def cache(state, blobs):
    return CacheStore(state, blobs)


@pytest.fixture
def artifacts(state, blobs):
    return ArtifactStore(state, blobs)


@pytest.fixture
def settings(tmp_path):
    return Settings(home=tmp_path / "home", max_parallel=4, poll_interval=0.02)


@pytest.fixture
def make_scheduler(state, blobs, workspace, settings):
    def make(**kwargs):
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("blobs", blobs)
        kwargs.setdefault("workspace", workspace)
        kwargs.setdefault("console", Console(quiet=True))
        return Scheduler(state, **kwargs)

    return make


def workflow(text, **kwargs):
    """Definition from an inline YAML snippet."""
    return load_definition_from_dict(yaml.safe_load(textwrap.dedent(text)), **kwargs)
