from __future__ import annotations

import datetime as _dt
import os
import re
from dataclasses import dataclass
from typing import Optional

from .constants import ARCHIVE_SUFFIX, INCREMENTAL_MARKER, NAME_SEPARATOR, TIMESTAMP_FORMAT


@dataclass(frozen=True)
class NamingInfo:
    """Strings supplied by the caller for embedding in snapshot names.

    The engine never inspects version control itself; ``branch`` and
    ``commit`` are only used when both are non-empty.
    """

    prefix: str = ""
    branch: str = ""
    commit: str = ""

    @property
    def has_vcs(self) -> bool:
        return bool(self.branch and self.commit)


@dataclass(frozen=True)
class ParsedName:
    prefix: str
    timestamp: str
    branch: str = ""
    commit: str = ""
    note: str = ""
    base_name: str = ""

    @property
    def is_incremental(self) -> bool:
        return bool(self.base_name)


_TS_RE = re.compile(r"\d{4}-\d{2}-\d{2}-\d{2}-\d{2}")


def format_timestamp(when: Optional[_dt.datetime] = None) -> str:
    return (when or _dt.datetime.now()).strftime(TIMESTAMP_FORMAT)


def _tail(info: Optional[NamingInfo], note: str) -> str:
    tail = ""
    if info is not None and info.has_vcs:
        tail += NAME_SEPARATOR + info.branch + NAME_SEPARATOR + info.commit
    if note:
        tail += NAME_SEPARATOR + note
    return tail


def full_archive_name(timestamp: str, info: Optional[NamingInfo] = None, note: str = "") -> str:
    prefix = info.prefix if info is not None else ""
    name = f"{prefix}-{timestamp}" if prefix else timestamp
    return name + _tail(info, note) + ARCHIVE_SUFFIX


def incremental_archive_name(base_name: str, timestamp: str, info: Optional[NamingInfo] = None, note: str = "") -> str:
    base = base_name[: -len(ARCHIVE_SUFFIX)] if base_name.endswith(ARCHIVE_SUFFIX) else base_name
    return base + INCREMENTAL_MARKER + timestamp + _tail(info, note) + ARCHIVE_SUFFIX


def backup_name(source_path: str, timestamp: str, note: str = "") -> str:
    name = f"{os.path.basename(source_path)}-{timestamp}"
    if note:
        name += NAME_SEPARATOR + note
    return name


def is_incremental_name(name: str) -> bool:
    return INCREMENTAL_MARKER in name


def _split_fields(rest: str):
    # rest is whatever follows the timestamp: "", "=note", "=branch=hash", "=branch=hash=note"
    if not rest:
        return "", "", ""
    fields = rest[1:].split(NAME_SEPARATOR)
    if len(fields) == 1:
        return "", "", fields[0]
    if len(fields) == 2:
        return fields[0], fields[1], ""
    return fields[0], fields[1], NAME_SEPARATOR.join(fields[2:])


def parse_archive_name(name: str) -> Optional[ParsedName]:
    """Recover the pieces of an archive name, or None if it is not one of ours.

    A two-field tail is read as branch/hash. A note containing ``=`` is
    therefore ambiguous when no VCS info was embedded.
    """
    if not name.endswith(ARCHIVE_SUFFIX):
        return None
    stem = name[: -len(ARCHIVE_SUFFIX)]
    base_name = ""
    if INCREMENTAL_MARKER in stem:
        base, stem = stem.split(INCREMENTAL_MARKER, 1)
        base_name = base + ARCHIVE_SUFFIX
        m = _TS_RE.match(stem)
        if not m:
            return None
        prefix = ""
    else:
        m = _TS_RE.search(stem)
        if not m:
            return None
        head = stem[: m.start()]
        if head and not head.endswith("-"):
            return None
        prefix = head[:-1] if head else ""
    timestamp = m.group(0)
    rest = stem[m.end():]
    if rest and not rest.startswith(NAME_SEPARATOR):
        return None
    branch, commit, note = _split_fields(rest)
    return ParsedName(prefix=prefix, timestamp=timestamp, branch=branch, commit=commit, note=note, base_name=base_name)


def parse_backup_name(name: str, source_basename: str) -> Optional[ParsedName]:
    prefix = source_basename + "-"
    if not name.startswith(prefix):
        return None
    rest = name[len(prefix):]
    m = _TS_RE.match(rest)
    if not m:
        return None
    tail = rest[m.end():]
    if tail and not tail.startswith(NAME_SEPARATOR):
        return None
    return ParsedName(prefix=source_basename, timestamp=m.group(0), note=tail[1:] if tail else "")
