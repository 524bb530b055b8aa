from __future__ import annotations

import datetime as _dt
import logging
import os
import stat
from typing import Optional

from .atomic import atomic_copy_file
from .compare import are_files_identical
from .config import Config
from .context import OperationContext, ensure_context
from .errors import InvalidTypeError, NotFoundError, classify_os_error
from .naming import backup_name, format_timestamp
from .resources import operation_boundary
from .snapshot import Outcome, Status, ensure_directory, ensure_new_snapshot, find_most_recent_backup


logger = logging.getLogger(__name__)


def validate_source_file(path: str, operation: str = "create backup") -> None:
    try:
        st = os.stat(path)
    except OSError as exc:
        raise classify_os_error(exc, operation, path, default=NotFoundError, message="file not found") from exc
    if not stat.S_ISREG(st.st_mode):
        raise InvalidTypeError("not a regular file", operation=operation, path=path)
    if not os.access(path, os.R_OK):
        raise classify_os_error(PermissionError(13, "permission denied", path), operation, path)


def resolve_backup_dir(source_file: str, config: Config, cwd: Optional[str] = None) -> str:
    """Directory the backups of ``source_file`` live in.

    With ``use_current_dir_name_for_files`` the file's directory relative to
    ``cwd`` is mirrored below the backup root. A file outside ``cwd`` mirrors
    its absolute directory instead.
    """
    cwd = os.path.abspath(cwd if cwd is not None else os.getcwd())
    root = os.path.expanduser(config.backup_dir_path)
    if not os.path.isabs(root):
        root = os.path.join(cwd, root)
    if config.use_current_dir_name_for_files:
        rel_dir = os.path.dirname(os.path.relpath(source_file, cwd))
        if rel_dir == os.pardir or rel_dir.startswith(os.pardir + os.sep):
            rel_dir = os.path.dirname(source_file).lstrip(os.sep)
        root = os.path.join(root, rel_dir)
    return os.path.normpath(root)


def create_backup(
    source_file: str,
    note: str = "",
    ctx: Optional[OperationContext] = None,
    *,
    config: Optional[Config] = None,
    cwd: Optional[str] = None,
    dry_run: bool = False,
    now: Optional[_dt.datetime] = None,
) -> Outcome:
    """Copy ``source_file`` to a timestamped backup unless the latest backup already matches it."""
    config = config if config is not None else Config()
    ctx = ensure_context(ctx)
    source_file = os.path.abspath(os.fspath(source_file))
    operation = "create backup"
    with operation_boundary(operation, source_file) as rm:
        ctx.check(operation, source_file)
        validate_source_file(source_file, operation)
        backup_dir = resolve_backup_dir(source_file, config, cwd)

        latest = find_most_recent_backup(backup_dir, source_file)
        if latest is not None and are_files_identical(source_file, latest.path, ctx):
            logger.info("%s is identical to %s", source_file, latest.path)
            return Outcome(Status.IDENTICAL, latest.path)

        path = os.path.join(backup_dir, backup_name(source_file, format_timestamp(now), note))
        if dry_run:
            return Outcome(Status.DRY_RUN, path, files=[os.path.basename(source_file)])

        ensure_directory(backup_dir, operation)
        ensure_new_snapshot(path, operation)
        atomic_copy_file(source_file, path, rm, ctx, operation=operation)
        logger.info("created backup %s", path)
        return Outcome(Status.CREATED, path, files=[os.path.basename(source_file)])
