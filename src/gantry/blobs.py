# blobs.py
from __future__ import annotations

import gzip
import hashlib
import io
import os
import tarfile
import time
from pathlib import Path
from typing import Iterable, List

from .errors import WorkspacePathError

# ---------------------------------------------------------------------
# Content-addressed blob storage shared by the cache and artifact stores:
#   root/
#     <digest[:2]>/<digest>
# Writes go to a temp file and are renamed into place, so concurrent
# writers of the same content are harmless and readers never see a
# partial blob.
# ---------------------------------------------------------------------

DEFAULT_EXCLUDES = [
    ".git/**",
    ".gantry/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class BlobStore:
    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, digest: str) -> Path:
        return self.root / digest[:2] / digest

    def put(self, data: bytes) -> str:
        digest = sha256_bytes(data)
        dest = self.path(digest)
        if dest.exists():
            return digest
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(f"{digest}.{os.getpid()}.{time.monotonic_ns()}.tmp")
        try:
            tmp.write_bytes(data)
            tmp.replace(dest)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return digest

    def get(self, digest: str) -> bytes:
        return self.path(digest).read_bytes()

    def exists(self, digest: str) -> bool:
        return self.path(digest).exists()

    def delete(self, digest: str) -> None:
        self.path(digest).unlink(missing_ok=True)


# ---------------------------------------------------------------------
# Packing workspace paths into a tar.gz blob and back
# ---------------------------------------------------------------------

def _relpath(p: Path, root: Path) -> str:
    try:
        rel = p.resolve().relative_to(root.resolve())
    except ValueError:
        raise WorkspacePathError(str(p), str(root)) from None
    return str(rel).replace("\\", "/")


def inside(root: str | Path, path: str | Path) -> Path:
    """Resolve path against root, refusing anything that escapes it."""
    root_p = Path(root).resolve()
    target = (root_p / path).resolve()
    _relpath(target, root_p)
    return target


def _normalized(info: tarfile.TarInfo) -> tarfile.TarInfo:
    # only content and mode reach the digest
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _excluded(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def resolve_paths(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand path patterns (files, directories, globs) relative to root into
    a de-duplicated, sorted list of files.
    """
    root = root.resolve()
    files: dict[str, Path] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        if Path(pat).is_absolute() or ".." in Path(pat).parts:
            p = inside(root, pat)
            candidates = [p] if p.exists() else []
        else:
            p = root / pat
            candidates = [p] if p.exists() else sorted(root.glob(pat))
        for c in candidates:
            if c.is_file():
                files[_relpath(c, root)] = c
            elif c.is_dir():
                for f in sorted(c.rglob("*")):
                    if f.is_file():
                        files[_relpath(f, root)] = f
    return [files[k] for k in sorted(files)]


def pack_paths(root: str | Path, patterns: Iterable[str], *, excludes: List[str] | None = None) -> tuple[bytes, int]:
    """
    Tar+gzip the files matched by `patterns`, stored by path relative to root.

    Returns:
        (blob bytes, number of files packed)
    """
    root_p = Path(root).resolve()
    globs = list(DEFAULT_EXCLUDES) + list(excludes or [])
    buf = io.BytesIO()
    count = 0
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for f in resolve_paths(root_p, patterns):
            rel = _relpath(f, root_p)
            if _excluded(rel, globs):
                continue
            tar.add(str(f), arcname=rel, recursive=False, filter=_normalized)
            count += 1
    # fixed gzip mtime: identical trees give identical blobs
    return gzip.compress(buf.getvalue(), mtime=0), count


def unpack(data: bytes, dest: str | Path) -> List[str]:
    """Extract a blob produced by pack_paths into dest. Returns extracted names."""
    dest_p = Path(dest).resolve()
    dest_p.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        names = tar.getnames()
        tar.extractall(path=str(dest_p), filter="data")
    return names
