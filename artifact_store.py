from __future__ import annotations

from concurrent.futures import Future
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Mapping, TypeVar

LOGGER = logging.getLogger("gfs_textures.store")
T = TypeVar("T")


class DiskArtifactStore:
    """Write-once artifact files under an explicit base directory.

    Files never expire: a file that exists is a valid cache entry. Writes go
    through ``<name>.tmp`` and ``os.replace`` so a failed build never leaves a
    file that a later cache check would accept.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, name: str) -> Path:
        if not name or Path(name).name != name:
            raise ValueError(f"Invalid artifact name: {name!r}")
        return self._base_dir / name

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def read(self, name: str) -> bytes:
        return self.path_for(name).read_bytes()

    def ensure_dir(self) -> None:
        self._base_dir.mkdir(parents=True, exist_ok=True)

    def write_many(self, files: Mapping[str, bytes]) -> None:
        staged: List[tuple[Path, Path]] = []
        replaced: List[Path] = []
        try:
            for name, payload in files.items():
                path = self.path_for(name)
                tmp_path = path.with_suffix(path.suffix + ".tmp")
                staged.append((tmp_path, path))
                with tmp_path.open("wb") as tmp_file:
                    tmp_file.write(payload)
            for tmp_path, path in staged:
                os.replace(tmp_path, path)
                replaced.append(path)
        except BaseException:
            # Artifacts of one build are published together or not at all.
            for tmp_path, _path in staged:
                self._safe_unlink(tmp_path)
            for path in replaced:
                self._safe_unlink(path)
            raise
        for _tmp_path, path in staged:
            LOGGER.debug("Saved artifact path=%s bytes=%s", path, path.stat().st_size if path.exists() else -1)

    @staticmethod
    def _safe_unlink(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            LOGGER.warning("Failed to remove staged artifact path=%s", path)


class InFlightRequestRegistry:
    """Single-flight guard: concurrent loads of one key share a single build."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._inflight: Dict[str, Future] = {}
        self._callers: Dict[str, int] = {}

    def __contains__(self, key: str) -> bool:
        with self._guard:
            return key in self._inflight

    def __len__(self) -> int:
        with self._guard:
            return len(self._inflight)

    def callers(self, key: str) -> int:
        """Number of loads currently attached to the in-flight build of ``key``."""
        with self._guard:
            return self._callers.get(key, 0)

    def load(self, key: str, build: Callable[[], T]) -> T:
        if not isinstance(key, str):
            raise TypeError(f"In-flight keys must be strings, got {type(key).__name__}")
        with self._guard:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                future.set_running_or_notify_cancel()
                self._inflight[key] = future
            self._callers[key] = self._callers.get(key, 0) + 1

        if not owner:
            LOGGER.debug("Joining in-flight build key=%s", key)
            return future.result()

        try:
            result = build()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._guard:
                self._inflight.pop(key, None)
                self._callers.pop(key, None)
