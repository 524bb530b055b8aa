from __future__ import annotations

import contextlib
import errno
import logging
import os
import shutil
from typing import BinaryIO, Iterator, Optional, Union

from .constants import COPY_BUFFER_SIZE, TEMP_SUFFIX
from .context import OperationContext, ensure_context
from .errors import AtomicRenameError, classify_os_error
from .resources import ResourceManager


logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def temp_path_for(path: PathLike) -> str:
    return os.fspath(path) + TEMP_SUFFIX


def commit(temp_path: str, final_path: str, rm: ResourceManager, operation: str = "commit") -> None:
    """Rename ``temp_path`` onto ``final_path`` and hand ownership to the filesystem.

    Cross-device renames are reported, not retried with a copy.
    """
    try:
        os.replace(temp_path, final_path)
    except OSError as exc:
        cross = exc.errno == errno.EXDEV
        err = AtomicRenameError(
            "cross-device rename" if cross else "failed to finalize file",
            operation=operation,
            path=final_path,
            cross_device=cross,
        )
        raise err from exc
    rm.release(temp_path)
    logger.debug("committed %s", final_path)


@contextlib.contextmanager
def atomic_output(path: PathLike, rm: ResourceManager, *, operation: str = "write") -> Iterator[BinaryIO]:
    """Yield a binary handle on ``path + ".tmp"``; rename into place on clean exit.

    On any exception the temp file is left registered with ``rm`` so the
    caller's cleanup removes it.
    """
    final_path = os.fspath(path)
    tmp = temp_path_for(final_path)
    rm.add_temp_file(tmp)
    try:
        fh = open(tmp, "wb")
    except OSError as exc:
        raise classify_os_error(exc, operation, tmp, message="failed to create temporary file") from exc
    try:
        yield fh
        fh.flush()
        os.fsync(fh.fileno())
    except OSError as exc:
        raise classify_os_error(exc, operation, tmp, message="failed to write temporary file") from exc
    finally:
        fh.close()
    commit(tmp, final_path, rm, operation)


def atomic_write_bytes(path: PathLike, data: bytes, rm: ResourceManager, *, operation: str = "write") -> None:
    with atomic_output(path, rm, operation=operation) as fh:
        fh.write(data)


def copy_stream(src: BinaryIO, dst: BinaryIO, ctx: Optional[OperationContext] = None, *, operation: str = "copy", path: Optional[str] = None) -> int:
    ctx = ensure_context(ctx)
    total = 0
    while True:
        ctx.check(operation, path)
        buf = src.read(COPY_BUFFER_SIZE)
        if not buf:
            return total
        dst.write(buf)
        total += len(buf)


def atomic_copy_file(
    src: PathLike,
    dst: PathLike,
    rm: ResourceManager,
    ctx: Optional[OperationContext] = None,
    *,
    operation: str = "copy",
) -> None:
    """Copy ``src`` to ``dst`` through a temp file, keeping mtime and mode bits."""
    src = os.fspath(src)
    dst = os.fspath(dst)
    try:
        rf = open(src, "rb")
    except OSError as exc:
        raise classify_os_error(exc, operation, src, message="failed to open source") from exc
    with rf:
        with atomic_output(dst, rm, operation=operation) as wf:
            copy_stream(rf, wf, ctx, operation=operation, path=src)
            wf.flush()
            # Metadata goes on the temp file so the committed copy is complete on arrival.
            shutil.copystat(src, wf.name)
