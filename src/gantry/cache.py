# cache.py
from __future__ import annotations

import dataclasses
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from .blobs import BlobStore, pack_paths, resolve_paths, unpack
from .errors import CacheMissError, NoMatchError
from .expressions import ExpressionContext, interpolate
from .model import now_utc
from .store import ArtifactRecord, CacheRecord, StateStore, as_utc

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Cache keys are user templates such as
#
#   deps-${{ matrix.os }}-${{ hashFiles('requirements*.txt', 'setup.cfg') }}
#
# hashFiles() hashes the relative paths and contents of the matched file
# set, so the key is byte-identical for identical inputs and changes when
# any matched file changes.
#
# Entries are append-only: saving under an existing key is a no-op.
# Lookup is exact key first, then each restore key (a prefix) in order,
# picking the most recently written entry for that prefix.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    key: str
    digest: str
    size: int
    seq: int
    created_at: datetime
    last_accessed_at: datetime


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    matched_key: Optional[str]
    reason: str  # human readable

    @property
    def exact(self) -> bool:
        return self.hit and self.matched_key == self.key


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def hash_files(root: str | Path, patterns: Iterable[str], *, strict: bool = False) -> str:
    """
    Deterministic SHA-256 over the matched files (sorted by relative path).

    Zero matches returns "" unless strict, which raises NoMatchError.
    """
    root_p = Path(root).resolve()
    patterns = [str(p) for p in patterns]
    files = resolve_paths(root_p, patterns)
    if not files:
        if strict:
            raise NoMatchError(patterns)
        log.debug("hashFiles%s matched nothing; using empty hash", tuple(patterns))
        return ""

    h = hashlib.sha256()
    for f in files:
        rel = str(f.resolve().relative_to(root_p)).replace("\\", "/")
        h.update(rel.encode("utf-8"))
        h.update(b"\0")
        h.update(_hash_file_contents(f).encode("ascii"))
        h.update(b"\n")
    return h.hexdigest()


def compute_key(
    template: str,
    workspace: str | Path,
    *,
    strict: bool = False,
    context: Optional[ExpressionContext] = None,
) -> str:
    """Expand `${{ ... }}` placeholders (including hashFiles) in a key template."""
    base = context or ExpressionContext()
    functions = dict(base.functions)
    functions["hashFiles"] = lambda *patterns: hash_files(workspace, patterns, strict=strict)
    return str(interpolate(template, dataclasses.replace(base, functions=functions)))


def _entry(rec: CacheRecord) -> CacheEntry:
    return CacheEntry(
        key=rec.key,
        digest=rec.digest,
        size=rec.size,
        seq=rec.id,
        created_at=as_utc(rec.created_at),
        last_accessed_at=as_utc(rec.last_accessed_at),
    )


class CacheStore:
    """
    Cache index (in the state store) over content-addressed blobs.
    Safe for concurrent jobs: index writes are serialized by the state store,
    blob writes are atomic renames.
    """

    def __init__(self, state: StateStore, blobs: BlobStore):
        self.state = state
        self.blobs = blobs

    def lookup(self, key: str, restore_keys: Sequence[str] = ()) -> CacheEntry:
        """
        Exact match on key, else the newest entry for each restore-key prefix in order.

        Raises:
            CacheMissError: nothing matched
        """
        with self.state.session() as s:
            rec = s.scalar(sa.select(CacheRecord).where(CacheRecord.key == key))
            if rec is None:
                for prefix in restore_keys:
                    if not prefix:
                        continue
                    q = (
                        sa.select(CacheRecord)
                        .where(CacheRecord.key.startswith(prefix, autoescape=True))
                        .order_by(CacheRecord.id.desc())
                        .limit(1)
                    )
                    rec = s.scalar(q)
                    if rec is not None:
                        break
            if rec is None:
                raise CacheMissError(key, list(restore_keys))
            rec.last_accessed_at = now_utc()
            return _entry(rec)

    def restore(self, key: str, restore_keys: Sequence[str], workspace: str | Path) -> CacheHit:
        try:
            entry = self.lookup(key, restore_keys)
        except CacheMissError:
            return CacheHit(hit=False, key=key, matched_key=None, reason="cache miss")

        try:
            unpack(self.blobs.get(entry.digest), workspace)
        except (OSError, EOFError) as e:
            log.warning("cache entry %s exists but restore failed: %s", entry.key, e)
            return CacheHit(hit=False, key=key, matched_key=entry.key, reason=f"restore failed: {e}")

        how = "exact key" if entry.key == key else f"restore key match {entry.key!r}"
        return CacheHit(hit=True, key=key, matched_key=entry.key, reason=f"cache hit ({how})")

    def save(self, key: str, workspace: str | Path, paths: Iterable[str]) -> Tuple[bool, Optional[CacheEntry]]:
        """
        Pack `paths` and store them under `key`.

        Returns (saved, entry). An existing key is never overwritten: (False, existing).
        Nothing to pack returns (False, None).
        """
        existing = self._get(key)
        if existing is not None:
            return False, existing

        data, count = pack_paths(workspace, paths)
        if count == 0:
            return False, None
        digest = self.blobs.put(data)

        try:
            with self.state.session() as s:
                rec = CacheRecord(key=key, digest=digest, size=len(data))
                s.add(rec)
                s.flush()
                entry = _entry(rec)
        except IntegrityError:
            # another job wrote the same key first
            return False, self._get(key)
        return True, entry

    def _get(self, key: str) -> Optional[CacheEntry]:
        with self.state.session() as s:
            rec = s.scalar(sa.select(CacheRecord).where(CacheRecord.key == key))
            return _entry(rec) if rec else None

    def entries(self) -> List[CacheEntry]:
        with self.state.session() as s:
            return [_entry(r) for r in s.scalars(sa.select(CacheRecord).order_by(CacheRecord.id))]

    def prune(
        self,
        *,
        max_bytes: Optional[int] = None,
        max_age: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        LRU eviction: first entries not accessed within max_age, then the least
        recently accessed until the total size fits max_bytes.

        Returns evicted keys.
        """
        now = now or now_utc()
        evicted: List[str] = []
        with self.state.session() as s:
            recs = list(s.scalars(sa.select(CacheRecord).order_by(CacheRecord.last_accessed_at, CacheRecord.id)))
            keep: List[CacheRecord] = []
            for rec in recs:
                if max_age is not None and now - as_utc(rec.last_accessed_at) > max_age:
                    evicted.append(rec.key)
                    s.delete(rec)
                else:
                    keep.append(rec)

            if max_bytes is not None:
                total = sum(r.size for r in keep)
                for rec in keep:
                    if total <= max_bytes:
                        break
                    total -= rec.size
                    evicted.append(rec.key)
                    s.delete(rec)
            s.flush()

            digests = {r.digest for r in recs if r.key in set(evicted)}
            still_used = set(s.scalars(sa.select(CacheRecord.digest))) | set(s.scalars(sa.select(ArtifactRecord.digest)))

        for digest in digests - still_used:
            self.blobs.delete(digest)
        if evicted:
            log.info("evicted %d cache entries", len(evicted))
        return evicted
