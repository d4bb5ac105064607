"""
Asset Store

Boundary between the render worker and durable storage. References are
slash-separated keys relative to the store root, e.g.
``{project_id}/movie.mp4`` or ``cache/render/{fingerprint}.mp4``.

LocalAssetStore keeps assets on a filesystem (the shared /data volume in
the worker deployment). Writes go through a temp file followed by a rename
so readers never observe partial files.
"""

import hashlib
import logging
import os
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


class AssetNotFound(FileNotFoundError):
    """Raised when a reference does not exist in the store."""

    def __init__(self, ref: str):
        super().__init__(f"Asset not found: {ref}")
        self.ref = ref


class AssetStore(ABC):
    """Storage operations the render worker depends on."""

    @abstractmethod
    def exists(self, ref: str) -> bool:
        ...

    @abstractmethod
    def fingerprint(self, ref: str) -> str:
        """Content checksum of ``ref`` (hex sha256)."""

    @abstractmethod
    def resolve(self, ref: str) -> Tuple[str, str]:
        """Return ``(local_path, fingerprint)`` for a readable asset."""

    @abstractmethod
    def write(self, ref: str, data: bytes) -> str:
        ...

    @abstractmethod
    def put_file(self, ref: str, source_path: str) -> str:
        """Upload a local file under ``ref``."""

    @abstractmethod
    def copy(self, src_ref: str, dst_ref: str) -> str:
        ...

    @abstractmethod
    def delete(self, ref: str) -> bool:
        ...

    @abstractmethod
    def list_prefix(self, prefix: str) -> List[str]:
        """References under ``prefix``, sorted."""

    @abstractmethod
    def size(self, ref: str) -> int:
        ...

    @abstractmethod
    def mtime(self, ref: str) -> float:
        ...


class LocalAssetStore(AssetStore):
    """
    Filesystem-backed asset store.

    Fingerprints are full-content SHA-256 digests memoized per
    (size, mtime) so repeated renders of the same project only hash
    changed files.

    Usage:
        store = LocalAssetStore("/data")
        path, fp = store.resolve("proj-1/scene-0-abc.png")
        store.put_file("proj-1/movie.mp4", "/tmp/render/final.mp4")
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._fingerprints: Dict[str, Tuple[int, float, str]] = {}
        self._lock = threading.Lock()

    def path_for(self, ref: str) -> Path:
        """
        Map a reference to a path under the store root.

        Raises:
            ValueError: If the reference escapes the root
        """
        cleaned = ref.strip().lstrip("/")
        if not cleaned:
            raise ValueError("Empty asset reference")
        path = (self.root / cleaned).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Asset reference escapes store root: {ref}")
        return path

    def exists(self, ref: str) -> bool:
        try:
            path = self.path_for(ref)
        except ValueError:
            return False
        return path.is_file() and path.stat().st_size > 0

    def fingerprint(self, ref: str) -> str:
        path = self.path_for(ref)
        try:
            stat = path.stat()
        except FileNotFoundError:
            raise AssetNotFound(ref) from None

        key = str(path)
        with self._lock:
            memo = self._fingerprints.get(key)
        if memo and memo[0] == stat.st_size and memo[1] == stat.st_mtime:
            return memo[2]

        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                digest.update(chunk)
        value = digest.hexdigest()

        with self._lock:
            self._fingerprints[key] = (stat.st_size, stat.st_mtime, value)
        return value

    def resolve(self, ref: str) -> Tuple[str, str]:
        if not self.exists(ref):
            raise AssetNotFound(ref)
        return str(self.path_for(ref)), self.fingerprint(ref)

    def write(self, ref: str, data: bytes) -> str:
        target = self.path_for(ref)
        temp_path = self._temp_path(target)
        try:
            temp_path.write_bytes(data)
            os.replace(temp_path, target)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
        logger.debug(f"Stored {ref} ({len(data)} bytes)")
        return ref

    def put_file(self, ref: str, source_path: str) -> str:
        target = self.path_for(ref)
        temp_path = self._temp_path(target)
        try:
            shutil.copyfile(source_path, temp_path)
            os.replace(temp_path, target)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
        logger.debug(f"Stored {ref} ({target.stat().st_size} bytes)")
        return ref

    def copy(self, src_ref: str, dst_ref: str) -> str:
        if not self.exists(src_ref):
            raise AssetNotFound(src_ref)
        return self.put_file(dst_ref, str(self.path_for(src_ref)))

    def delete(self, ref: str) -> bool:
        path = self.path_for(ref)
        if path.is_file():
            path.unlink()
            with self._lock:
                self._fingerprints.pop(str(path), None)
            return True
        return False

    def list_prefix(self, prefix: str) -> List[str]:
        """
        List references starting with ``prefix``.

        ``prefix`` may end in a partial file name, e.g. ``proj/scene-0-``.
        """
        cleaned = prefix.strip().lstrip("/")
        directory, _, name_prefix = cleaned.rpartition("/")
        base = self.path_for(directory) if directory else self.root
        if not base.is_dir():
            return []

        refs = []
        for entry in base.iterdir():
            if not entry.is_file() or not entry.name.startswith(name_prefix):
                continue
            if entry.name.startswith(".") and entry.name.endswith(".tmp"):
                continue
            refs.append(entry.relative_to(self.root).as_posix())
        return sorted(refs)

    def size(self, ref: str) -> int:
        path = self.path_for(ref)
        if not path.is_file():
            raise AssetNotFound(ref)
        return path.stat().st_size

    def mtime(self, ref: str) -> float:
        path = self.path_for(ref)
        if not path.is_file():
            raise AssetNotFound(ref)
        return path.stat().st_mtime

    @staticmethod
    def _temp_path(target: Path) -> Path:
        target.parent.mkdir(parents=True, exist_ok=True)
        return target.parent / f".{target.name}.{uuid.uuid4().hex[:8]}.tmp"

