"""Dependency cache stores & directory tree packing.

A cache entry maps a key to an opaque blob: a gzip'd tar of one directory
tree. Entries are restored before the stages run and written back after the
run whatever its outcome. The pipeline never deletes entries.

Two stores are provided:

* ``InMemoryCacheStore`` lives for one process (tests, single CLI invocation).
* ``DirectoryCacheStore`` keeps one file per key under a root directory so
  entries survive across runs. Writes go to a temporary file that is renamed
  into place; concurrent writers to one key resolve last-write-wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol
import hashlib
import io
import logging
import os
import shutil
import tarfile
import tempfile
import threading

from .config import CacheSpec


class CacheError(Exception):
    pass


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        ...

    def put(self, key: str, blob: bytes) -> None:  # pragma: no cover - interface
        ...


class InMemoryCacheStore:
    def __init__(self) -> None:
        self._entries: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, blob: bytes) -> None:
        with self._lock:
            self._entries[key] = bytes(blob)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)


class DirectoryCacheStore:
    """Filesystem-backed store, one ``<digest>.tgz`` file per key."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _entry_path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.root / f"{digest}.tgz"

    def get(self, key: str) -> Optional[bytes]:
        path = self._entry_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"Cannot read cache entry '{key}': {e}") from e

    def put(self, key: str, blob: bytes) -> None:
        path = self._entry_path(key)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".put-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(blob)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CacheError(f"Cannot write cache entry '{key}': {e}") from e


def pack_tree(path: Path) -> bytes:
    """Archive the directory at ``path`` into a gzip'd tar blob.

    A missing directory packs to an empty archive.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if path.is_dir():
            for child in sorted(path.iterdir()):
                tar.add(child, arcname=child.name)
    return buf.getvalue()


def unpack_tree(blob: bytes, path: Path) -> None:
    """Replace the contents of ``path`` with the tree stored in ``blob``."""
    try:
        tar = tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz")
    except (tarfile.TarError, OSError) as e:
        raise CacheError(f"Corrupt cache blob: {e}") from e
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(dir=path.parent, prefix=f".{path.name}-restore-"))
    try:
        with tar:
            tar.extractall(staging, filter="data")
    except tarfile.FilterError as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise CacheError(f"Cache blob member '{e.tarinfo.name}' rejected on restore into {path}: {e}") from e
    except (tarfile.TarError, OSError) as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise CacheError(f"Cannot unpack cache blob into {path}: {e}") from e
    if path.exists():
        shutil.rmtree(path)
    os.replace(staging, path)


@dataclass(slots=True)
class CacheReport:
    """Non-fatal cache outcomes of a run."""

    restored: List[str] = field(default_factory=list)
    misses: List[str] = field(default_factory=list)
    saved: List[str] = field(default_factory=list)
    persist_failures: Dict[str, str] = field(default_factory=dict)


def restore_caches(specs: Iterable[CacheSpec], cache: CacheStore, report: CacheReport,
                   log: Optional[logging.Logger] = None) -> None:
    """Restore each cache path from ``cache``; a miss leaves an empty directory."""
    if log is None:
        log = logging.getLogger("gatecheck")
    for spec in specs:
        try:
            blob = cache.get(spec.key)
            if blob is not None:
                unpack_tree(blob, spec.path)
        except (CacheError, OSError) as e:
            log.warning("[cache] restore of '%s' failed, treating as miss: %s", spec.key, e)
            blob = None
        if blob is None:
            spec.path.mkdir(parents=True, exist_ok=True)
            report.misses.append(spec.key)
            log.info("[cache] miss for key '%s' (%s)", spec.key, spec.path)
        else:
            report.restored.append(spec.key)
            log.info("[cache] restored key '%s' into %s", spec.key, spec.path)


def persist_caches(specs: Iterable[CacheSpec], cache: CacheStore, report: CacheReport,
                   log: Optional[logging.Logger] = None) -> None:
    """Write each cache path back to ``cache``. Failures are logged & recorded only."""
    if log is None:
        log = logging.getLogger("gatecheck")
    for spec in specs:
        try:
            cache.put(spec.key, pack_tree(spec.path))
        except (CacheError, OSError, tarfile.TarError) as e:
            report.persist_failures[spec.key] = str(e)
            log.warning("[cache] could not save key '%s': %s", spec.key, e)
            continue
        report.saved.append(spec.key)
        log.debug("[cache] saved key '%s' from %s", spec.key, spec.path)


__all__ = [
    "CacheError",
    "CacheStore",
    "InMemoryCacheStore",
    "DirectoryCacheStore",
    "CacheReport",
    "pack_tree",
    "unpack_tree",
    "restore_caches",
    "persist_caches",
]
