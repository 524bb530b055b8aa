from __future__ import annotations

import contextlib
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from .errors import DirsnapError, InternalError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TempFile:
    path: str

    def cleanup(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def __str__(self) -> str:
        return f"temp file: {self.path}"


@dataclass(frozen=True)
class TempDir:
    path: str

    def cleanup(self) -> None:
        if os.path.lexists(self.path):
            shutil.rmtree(self.path)

    def __str__(self) -> str:
        return f"temp dir: {self.path}"


Resource = Union[TempFile, TempDir]


class ResourceManager:
    """Thread-safe registry of temporary filesystem objects.

    One manager belongs to one in-flight operation. The lock guards the
    manager's own bookkeeping only, not the filesystem.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._resources: List[Resource] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()

    def register(self, resource: Resource) -> Resource:
        with self._lock:
            for r in self._resources:
                if r.path == resource.path:
                    return r
            self._resources.append(resource)
        logger.debug("tracking %s", resource)
        return resource

    def add_temp_file(self, path: Union[str, os.PathLike]) -> Resource:
        return self.register(TempFile(os.fspath(path)))

    def add_temp_dir(self, path: Union[str, os.PathLike]) -> Resource:
        return self.register(TempDir(os.fspath(path)))

    def release(self, resource: Union[Resource, str, os.PathLike]) -> bool:
        """Stop tracking a resource without deleting it.

        Returns True when the path was tracked.
        """
        path = resource.path if isinstance(resource, (TempFile, TempDir)) else os.fspath(resource)
        with self._lock:
            for i, r in enumerate(self._resources):
                if r.path == path:
                    del self._resources[i]
                    logger.debug("released %s", r)
                    return True
        return False

    def tracked(self) -> List[str]:
        with self._lock:
            return [r.path for r in self._resources]

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def cleanup(self) -> List[Tuple[Resource, BaseException]]:
        """Delete every tracked resource and return the failures.

        Never raises; each failure is logged and collected. The tracked set is
        emptied before deletion starts, so a second call is a no-op.
        """
        with self._lock:
            pending = list(reversed(self._resources))
            self._resources.clear()
        failures: List[Tuple[Resource, BaseException]] = []
        for resource in pending:
            try:
                resource.cleanup()
            except Exception as exc:
                logger.warning("failed to clean up %s: %s", resource, exc)
                failures.append((resource, exc))
            else:
                logger.debug("cleaned up %s", resource)
        return failures


@contextlib.contextmanager
def operation_boundary(operation: str, path: Optional[str] = None, rm: Optional[ResourceManager] = None) -> Iterator[ResourceManager]:
    """Outermost guard for an engine operation.

    Yields a resource manager (a fresh one unless ``rm`` is given). Classified
    errors propagate unchanged; anything else is logged with its traceback and
    re-raised as :class:`InternalError`. Cleanup runs in every case and its
    failures never replace the primary result.
    """
    manager = rm if rm is not None else ResourceManager()
    try:
        yield manager
    except DirsnapError:
        raise
    except Exception as exc:
        logger.exception("unexpected failure during %s", operation)
        raise InternalError(f"unexpected {exc.__class__.__name__}: {exc}", operation=operation, path=path) from exc
    finally:
        failures = manager.cleanup()
        if failures:
            logger.warning("%s: %d resource(s) could not be removed", operation, len(failures))
