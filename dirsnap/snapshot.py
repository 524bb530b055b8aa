from __future__ import annotations

import datetime as _dt
import enum
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .constants import ARCHIVE_SUFFIX, DEFAULT_CHECKSUM_ALGORITHM, TIMESTAMP_FORMAT
from .context import OperationContext
from .errors import DirectoryCreationError, SnapshotExistsError, classify_os_error
from .naming import is_incremental_name, parse_archive_name, parse_backup_name
from .verify import VerificationStatus, load_verification_status, store_verification_status, verify_archive


logger = logging.getLogger(__name__)


class Status(enum.Enum):
    CREATED = "created"
    IDENTICAL = "identical"
    NO_CHANGES = "no_changes"
    DRY_RUN = "dry_run"


@dataclass
class Outcome:
    """What a builder did. IDENTICAL and NO_CHANGES are successes, not errors."""

    status: Status
    path: Optional[str] = None
    verification: Optional[VerificationStatus] = None
    files: List[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.status is Status.CREATED


@dataclass
class Snapshot:
    name: str
    path: str
    created_at: _dt.datetime
    is_incremental: bool = False
    base_snapshot: Optional[str] = None
    branch: str = ""
    commit: str = ""
    note: str = ""
    size: int = 0
    verification: Optional[VerificationStatus] = None


def _mtime(st: os.stat_result) -> _dt.datetime:
    return _dt.datetime.fromtimestamp(st.st_mtime_ns / 1_000_000_000)


def _archive_from_entry(entry: os.DirEntry) -> Snapshot:
    st = entry.stat(follow_symlinks=False)
    parsed = parse_archive_name(entry.name)
    snap = Snapshot(
        name=entry.name,
        path=entry.path,
        created_at=_mtime(st),
        is_incremental=is_incremental_name(entry.name),
        size=st.st_size,
    )
    if parsed is not None:
        snap.base_snapshot = parsed.base_name or None
        snap.branch = parsed.branch
        snap.commit = parsed.commit
        snap.note = parsed.note
    snap.verification = load_verification_status(entry.path)
    return snap


def _newest_first(snaps: List[Snapshot]) -> List[Snapshot]:
    return sorted(snaps, key=lambda s: (s.created_at, s.name), reverse=True)


def list_archives(archive_dir: str) -> List[Snapshot]:
    """Archives in ``archive_dir``, newest first. A missing directory lists as empty."""
    archive_dir = os.fspath(archive_dir)
    snaps: List[Snapshot] = []
    try:
        it = os.scandir(archive_dir)
    except FileNotFoundError:
        return snaps
    except OSError as exc:
        raise classify_os_error(exc, "list archives", archive_dir) from exc
    with it:
        for entry in it:
            if not entry.name.endswith(ARCHIVE_SUFFIX) or not entry.is_file(follow_symlinks=False):
                continue
            try:
                snaps.append(_archive_from_entry(entry))
            except OSError as exc:
                logger.debug("skipping %s: %s", entry.path, exc)
    return _newest_first(snaps)


def list_snapshots(directory: str) -> List[Snapshot]:
    return list_archives(directory)


def find_latest_full_archive(archive_dir: str) -> Optional[Snapshot]:
    for snap in list_archives(archive_dir):
        if not snap.is_incremental:
            return snap
    return None


def list_backups(backup_dir: str, source_file: str) -> List[Snapshot]:
    """Backups of ``source_file`` found in ``backup_dir``, newest first."""
    backup_dir = os.fspath(backup_dir)
    base = os.path.basename(os.fspath(source_file))
    found: List[Tuple[str, int, Snapshot]] = []
    try:
        it = os.scandir(backup_dir)
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise classify_os_error(exc, "list backups", backup_dir) from exc
    with it:
        for entry in it:
            parsed = parse_backup_name(entry.name, base)
            if parsed is None or not entry.is_file(follow_symlinks=False):
                continue
            try:
                st = entry.stat(follow_symlinks=False)
                created = _dt.datetime.strptime(parsed.timestamp, TIMESTAMP_FORMAT)
            except (OSError, ValueError) as exc:
                logger.debug("skipping %s: %s", entry.path, exc)
                continue
            snap = Snapshot(name=entry.name, path=entry.path, created_at=created, note=parsed.note, size=st.st_size)
            found.append((parsed.timestamp, st.st_mtime_ns, snap))
    # Backups keep the source mtime, so the name timestamp decides the order.
    found.sort(key=lambda t: (t[0], t[1], t[2].name), reverse=True)
    return [snap for _ts, _mtime_ns, snap in found]


def find_most_recent_backup(backup_dir: str, source_file: str) -> Optional[Snapshot]:
    backups = list_backups(backup_dir, source_file)
    return backups[0] if backups else None


def ensure_new_snapshot(path: str, operation: str) -> None:
    if os.path.lexists(path):
        raise SnapshotExistsError("snapshot already exists", operation=operation, path=path)


def ensure_directory(path: str, operation: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as exc:
        raise classify_os_error(exc, operation, path, default=DirectoryCreationError, message="failed to create directory") from exc


def verify_snapshot(
    snapshot: Snapshot,
    with_checksums: bool = True,
    *,
    algorithm: str = DEFAULT_CHECKSUM_ALGORITHM,
    ctx: Optional[OperationContext] = None,
) -> VerificationStatus:
    """Verify an archive snapshot, persist the result beside it and attach it."""
    status = verify_archive(snapshot.path, with_checksums, algorithm=algorithm, ctx=ctx)
    store_verification_status(snapshot.path, status)
    snapshot.verification = status
    return status
