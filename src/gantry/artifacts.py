# artifacts.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import sqlalchemy as sa

from .blobs import BlobStore
from .errors import ArtifactNotFoundError
from .model import now_utc
from .store import ArtifactRecord, CacheRecord, StateStore, as_utc

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactRef:
    """Reference to one stored version of a run's artifact."""
    run_id: int
    name: str
    version: int
    digest: str
    size: int
    created_at: datetime
    expires_at: Optional[datetime]


def _ref(rec: ArtifactRecord) -> ArtifactRef:
    return ArtifactRef(
        run_id=rec.run_id,
        name=rec.name,
        version=rec.version,
        digest=rec.digest,
        size=rec.size,
        created_at=as_utc(rec.created_at),
        expires_at=as_utc(rec.expires_at),
    )


class ArtifactStore:
    """
    Build outputs keyed by (run id, name). Putting an existing name again
    creates a new version; `get` returns the latest. Runs never share names,
    so producers in different runs need no coordination.
    """

    def __init__(self, state: StateStore, blobs: BlobStore, *, retention_days: Optional[int] = 90):
        self.state = state
        self.blobs = blobs
        self.retention_days = retention_days

    def put(self, run_id: int, name: str, blob: bytes, *, retention_days: Optional[int] = None) -> ArtifactRef:
        if not name:
            raise ValueError("artifact name cannot be empty")
        digest = self.blobs.put(blob)
        days = retention_days if retention_days is not None else self.retention_days
        now = now_utc()
        with self.state.session() as s:
            latest = s.scalar(
                sa.select(sa.func.max(ArtifactRecord.version)).where(
                    ArtifactRecord.run_id == run_id, ArtifactRecord.name == name
                )
            )
            rec = ArtifactRecord(
                run_id=run_id,
                name=name,
                version=(latest or 0) + 1,
                digest=digest,
                size=len(blob),
                created_at=now,
                expires_at=now + timedelta(days=days) if days else None,
            )
            s.add(rec)
            s.flush()
            ref = _ref(rec)
        log.debug("artifact %s v%d stored for run %d (%d bytes)", name, ref.version, run_id, ref.size)
        return ref

    def latest(self, run_id: int, name: str) -> ArtifactRef:
        with self.state.session() as s:
            rec = s.scalar(
                sa.select(ArtifactRecord)
                .where(ArtifactRecord.run_id == run_id, ArtifactRecord.name == name)
                .order_by(ArtifactRecord.version.desc())
                .limit(1)
            )
            if rec is None:
                raise ArtifactNotFoundError(run_id, name)
            return _ref(rec)

    def get(self, run_id: int, name: str) -> bytes:
        """
        Latest version's bytes.

        Raises:
            ArtifactNotFoundError: no such artifact (or its blob was purged)
        """
        ref = self.latest(run_id, name)
        try:
            return self.blobs.get(ref.digest)
        except FileNotFoundError:
            raise ArtifactNotFoundError(run_id, name) from None

    def list(self, run_id: int) -> List[ArtifactRef]:
        """Latest version of every artifact in a run, by name."""
        with self.state.session() as s:
            recs = s.scalars(
                sa.select(ArtifactRecord)
                .where(ArtifactRecord.run_id == run_id)
                .order_by(ArtifactRecord.name, ArtifactRecord.version)
            )
            latest = {r.name: _ref(r) for r in recs}
        return [latest[k] for k in sorted(latest)]

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete artifacts past their retention. Returns how many records went."""
        now = now or now_utc()
        with self.state.session() as s:
            expired = [
                r for r in s.scalars(sa.select(ArtifactRecord).where(ArtifactRecord.expires_at.is_not(None)))
                if as_utc(r.expires_at) <= now
            ]
            digests = {r.digest for r in expired}
            for r in expired:
                s.delete(r)
            s.flush()
            still_used = set(s.scalars(sa.select(ArtifactRecord.digest))) | set(s.scalars(sa.select(CacheRecord.digest)))
        for digest in digests - still_used:
            self.blobs.delete(digest)
        return len(expired)
