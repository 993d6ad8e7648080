"""Tests for environment-driven settings."""

from pathlib import Path

from gantry.config import SECRET_PREFIX, Settings


class TestSettings:
    def test_defaults(self):
        s = Settings.from_env({})
        assert s.home == Path(".gantry")
        assert s.needs_success_only is False
        assert s.auto_approve is True
        assert s.artifact_retention_days == 90
        assert s.secret_prefix == SECRET_PREFIX
        assert s.workers >= 1

    def test_from_env(self):
        s = Settings.from_env(
            {
                "GANTRY_HOME": "/var/lib/gantry",
                "GANTRY_MAX_PARALLEL": "3",
                "GANTRY_NEEDS_SUCCESS_ONLY": "yes",
                "GANTRY_AUTO_APPROVE": "0",
                "GANTRY_STRICT_HASH_FILES": "true",
                "GANTRY_CACHE_MAX_BYTES": "1024",
                "GANTRY_POLL_INTERVAL": "0.5",
            }
        )
        assert s.home == Path("/var/lib/gantry")
        assert s.workers == 3
        assert s.needs_success_only is True
        assert s.auto_approve is False
        assert s.strict_hash_files is True
        assert s.cache_max_bytes == 1024
        assert s.poll_interval == 0.5

    def test_db_url(self, tmp_path):
        assert Settings(home=tmp_path).db_url == f"sqlite:///{(tmp_path / 'state.db').resolve()}"
        assert Settings(database_url="postgresql://db/gantry").db_url == "postgresql://db/gantry"

    def test_blob_root(self, tmp_path):
        assert Settings(home=tmp_path).blob_root == tmp_path / "blobs"

    def test_override_ignores_none(self):
        s = Settings(max_parallel=2).override(max_parallel=None, needs_success_only=True)
        assert s.max_parallel == 2
        assert s.needs_success_only is True
