from __future__ import annotations

import datetime as _dt
import logging
import os
import stat
import time
import zipfile
from typing import BinaryIO, Callable, Dict, List, Optional

from .atomic import atomic_output
from .compare import FILE, Leaf, is_directory_identical_to_archive, walk_leaves
from .config import Config
from .constants import CHECKSUM_MANIFEST, COPY_BUFFER_SIZE
from .context import OperationContext, ensure_context
from .errors import (
    InvalidTypeError,
    NotFoundError,
    VerificationFailedError,
    classify_os_error,
)
from .exclude import PatternMatcher
from .naming import NamingInfo, format_timestamp, full_archive_name, incremental_archive_name
from .resources import operation_boundary
from .snapshot import Outcome, Snapshot, Status, ensure_directory, ensure_new_snapshot, find_latest_full_archive
from .verify import build_manifest, new_hasher, store_verification_status, verify_archive


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class ArchiveWriter:
    """Streams leaves into a deflate ZIP and records a digest per entry.

    The digests are written as the ``.checksums`` manifest by
    :meth:`finalize`, which also closes the container.
    """

    def __init__(self, out: BinaryIO, algorithm: str = "sha256", ctx: Optional[OperationContext] = None):
        self.out = out
        self.algorithm = algorithm
        self.ctx = ensure_context(ctx)
        self.checksums: Dict[str, str] = {}
        self.zf: Optional[zipfile.ZipFile] = None
        new_hasher(algorithm)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.finalize()
        else:
            self.close()

    def open(self):
        if self.zf is None:
            self.zf = zipfile.ZipFile(self.out, "w", compression=zipfile.ZIP_DEFLATED, strict_timestamps=False)

    def close(self):
        if self.zf is not None:
            zf, self.zf = self.zf, None
            zf.close()

    def add_file(self, arc_path: str, fs_path: str) -> str:
        assert self.zf is not None, "writer not open"
        info = zipfile.ZipInfo.from_file(fs_path, arc_path, strict_timestamps=False)
        info.compress_type = zipfile.ZIP_DEFLATED
        h = new_hasher(self.algorithm)
        with open(fs_path, "rb") as src, self.zf.open(info, "w") as dst:
            while True:
                self.ctx.check("create archive", fs_path)
                buf = src.read(COPY_BUFFER_SIZE)
                if not buf:
                    break
                h.update(buf)
                dst.write(buf)
        digest = h.hexdigest()
        self.checksums[arc_path] = digest
        return digest

    def add_symlink(self, arc_path: str, target: str, mtime: Optional[float] = None) -> str:
        assert self.zf is not None, "writer not open"
        when = time.localtime(mtime if mtime is not None else time.time())
        info = zipfile.ZipInfo(arc_path, date_time=tuple(max(v, lo) for v, lo in zip(when[:6], (1980, 1, 1, 0, 0, 0))))
        info.external_attr = (stat.S_IFLNK | 0o777) << 16
        info.create_system = 3
        info.compress_type = zipfile.ZIP_STORED
        data = target.encode("utf-8", "surrogateescape")
        self.zf.writestr(info, data)
        h = new_hasher(self.algorithm)
        h.update(data)
        digest = h.hexdigest()
        self.checksums[arc_path] = digest
        return digest

    def add_leaf(self, leaf: Leaf) -> str:
        if leaf.kind == FILE:
            return self.add_file(leaf.relpath, leaf.source)
        mtime = os.lstat(leaf.source).st_mtime
        return self.add_symlink(leaf.relpath, leaf.link_target, mtime)

    def finalize(self):
        assert self.zf is not None, "writer not open"
        self.zf.writestr(CHECKSUM_MANIFEST, build_manifest(self.checksums, self.algorithm))
        self.close()


def validate_source_dir(path: str, operation: str = "create archive") -> None:
    try:
        st = os.stat(path)
    except OSError as exc:
        raise classify_os_error(exc, operation, path, default=NotFoundError, message="directory not found") from exc
    if not stat.S_ISDIR(st.st_mode):
        raise InvalidTypeError("not a directory", operation=operation, path=path)
    if not os.access(path, os.R_OK | os.X_OK):
        raise classify_os_error(PermissionError(13, "permission denied", path), operation, path)


def resolve_archive_dir(source_dir: str, config: Config) -> str:
    base = os.path.expanduser(config.archive_dir_path)
    if not os.path.isabs(base):
        base = os.path.join(source_dir, base)
    if config.use_current_dir_name:
        base = os.path.join(base, os.path.basename(source_dir))
    return os.path.normpath(base)


def _leaf_mtime(leaf: Leaf) -> float:
    return os.lstat(leaf.source).st_mtime


def collect_leaves(source_dir: str, archive_dir: str, matcher: PatternMatcher, ctx: OperationContext) -> List[Leaf]:
    return list(walk_leaves(source_dir, matcher, ctx, skip=[archive_dir], operation="create archive"))


def write_archive(
    path: str,
    leaves: List[Leaf],
    rm,
    ctx: OperationContext,
    *,
    algorithm: str,
    progress: Optional[ProgressCallback] = None,
) -> Dict[str, str]:
    """Write ``leaves`` to ``path`` through a temp file; returns the recorded digests."""
    with atomic_output(path, rm, operation="create archive") as fh:
        with ArchiveWriter(fh, algorithm, ctx) as writer:
            for leaf in leaves:
                ctx.check("create archive", leaf.source)
                try:
                    writer.add_leaf(leaf)
                except OSError as exc:
                    raise classify_os_error(exc, "create archive", leaf.source, message="failed to add file to archive") from exc
                if progress is not None:
                    progress(leaf.relpath)
        checksums = writer.checksums
    logger.info("created archive %s (%d entries)", path, len(leaves))
    return checksums


def _verify_created(path: str, config: Config, ctx: OperationContext):
    status = verify_archive(path, with_checksums=True, algorithm=config.checksum_algorithm, ctx=ctx)
    store_verification_status(path, status)
    if not status.is_verified:
        raise VerificationFailedError("archive verification failed", operation="verify", path=path, errors=status.errors)
    return status


def create_archive(
    source_dir: str,
    note: str = "",
    incremental: bool = False,
    verify: bool = False,
    ctx: Optional[OperationContext] = None,
    *,
    config: Optional[Config] = None,
    naming: Optional[NamingInfo] = None,
    dry_run: bool = False,
    progress: Optional[ProgressCallback] = None,
    now: Optional[_dt.datetime] = None,
) -> Outcome:
    """Snapshot ``source_dir`` into a full or incremental archive.

    Returns an :class:`Outcome`; an unchanged directory yields
    ``Status.IDENTICAL`` with the existing archive's path and nothing is
    written. Every failure surfaces as a :class:`DirsnapError` subclass and
    leaves no temp file or partial archive behind.
    """
    config = config if config is not None else Config()
    ctx = ensure_context(ctx)
    source_dir = os.path.abspath(os.fspath(source_dir))
    operation = "create incremental archive" if incremental else "create archive"
    with operation_boundary(operation, source_dir) as rm:
        ctx.check(operation, source_dir)
        validate_source_dir(source_dir, operation)
        archive_dir = resolve_archive_dir(source_dir, config)
        if not dry_run:
            ensure_directory(archive_dir, operation)
        matcher = PatternMatcher(config.exclude_patterns)
        if naming is None:
            naming = NamingInfo()
        if not naming.prefix and config.use_current_dir_name:
            naming = NamingInfo(os.path.basename(source_dir), naming.branch, naming.commit)
        timestamp = format_timestamp(now)

        base: Optional[Snapshot] = find_latest_full_archive(archive_dir)
        if incremental:
            if base is None:
                raise NotFoundError("no full archive found to base an incremental archive on", operation=operation, path=archive_dir)
            base_mtime = os.stat(base.path).st_mtime
            leaves = [leaf for leaf in collect_leaves(source_dir, archive_dir, matcher, ctx) if _leaf_mtime(leaf) > base_mtime]
            if not leaves:
                logger.info("no files modified since %s", base.name)
                return Outcome(Status.NO_CHANGES, base.path)
            name = incremental_archive_name(base.name, timestamp, naming, note)
        else:
            if base is not None and is_directory_identical_to_archive(source_dir, base.path, matcher, ctx, skip=[archive_dir]):
                logger.info("%s is identical to %s", source_dir, base.path)
                return Outcome(Status.IDENTICAL, base.path)
            leaves = collect_leaves(source_dir, archive_dir, matcher, ctx)
            name = full_archive_name(timestamp, naming, note)

        path = os.path.join(archive_dir, name)
        files = [leaf.relpath for leaf in leaves]
        if dry_run:
            return Outcome(Status.DRY_RUN, path, files=files)

        ensure_new_snapshot(path, operation)
        write_archive(path, leaves, rm, ctx, algorithm=config.checksum_algorithm, progress=progress)

        status = None
        if verify or config.verify_on_create:
            status = _verify_created(path, config, ctx)
        return Outcome(Status.CREATED, path, verification=status, files=files)


def check_for_identical_archive(source_dir: str, config: Optional[Config] = None, ctx: Optional[OperationContext] = None) -> Optional[str]:
    """Path of the latest full archive when ``source_dir`` matches it, else None."""
    config = config if config is not None else Config()
    source_dir = os.path.abspath(os.fspath(source_dir))
    archive_dir = resolve_archive_dir(source_dir, config)
    base = find_latest_full_archive(archive_dir)
    if base is None:
        return None
    if is_directory_identical_to_archive(source_dir, base.path, config.exclude_patterns, ctx, skip=[archive_dir]):
        return base.path
    return None
