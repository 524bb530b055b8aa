"""Content identity between a directory and an archive, two directories, or two files.

Both sides are reduced to a sorted stream of *leaves* (regular files and
symlinks; directories are structure only) and walked in lockstep, so the
first divergence ends the comparison without reading the rest.
"""

from __future__ import annotations

import itertools
import logging
import os
import stat
import zipfile
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, Iterator, List, Optional, Sequence

from .constants import CHECKSUM_MANIFEST, COMPARE_BUFFER_SIZE
from .context import OperationContext, ensure_context
from .errors import classify_os_error
from .exclude import PatternMatcher


logger = logging.getLogger(__name__)

FILE = "file"
SYMLINK = "symlink"


@dataclass
class Leaf:
    relpath: str
    kind: str
    size: int
    # Filesystem path for directory leaves, ZipInfo for archive leaves
    source: object
    link_target: Optional[str] = None

    def sort_key(self):
        return self.relpath.split("/")


def _as_matcher(patterns) -> PatternMatcher:
    return patterns if isinstance(patterns, PatternMatcher) else PatternMatcher(patterns)


def _excluded(matcher: PatternMatcher, relpath: str) -> bool:
    """True if ``relpath`` or any of its parent directories is excluded."""
    if not matcher:
        return False
    parts = relpath.split("/")
    for i in range(1, len(parts) + 1):
        if matcher.should_exclude("/".join(parts[:i])):
            return True
    return False


def walk_leaves(
    root: str,
    patterns: Sequence[str] = (),
    ctx: Optional[OperationContext] = None,
    *,
    skip: Iterable[str] = (),
    operation: str = "walk",
) -> Iterator[Leaf]:
    """Yield the leaves under ``root`` in sorted depth-first order.

    Symlinks are reported with their target and never followed. Directories
    whose real path is in ``skip`` are not entered.
    """
    ctx = ensure_context(ctx)
    matcher = _as_matcher(patterns)
    skip_real = {os.path.realpath(p) for p in skip}
    root = os.fspath(root)

    def walk(directory: str, prefix: str) -> Iterator[Leaf]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            raise classify_os_error(exc, operation, directory) from exc
        for entry in entries:
            ctx.check(operation, entry.path)
            rel = prefix + entry.name
            if matcher and matcher.should_exclude(rel):
                continue
            try:
                if entry.is_symlink():
                    target = os.readlink(entry.path)
                    yield Leaf(rel, SYMLINK, len(target), entry.path, target)
                elif entry.is_dir(follow_symlinks=False):
                    if skip_real and os.path.realpath(entry.path) in skip_real:
                        logger.debug("skipping %s", entry.path)
                        continue
                    yield from walk(entry.path, rel + "/")
                elif entry.is_file(follow_symlinks=False):
                    yield Leaf(rel, FILE, entry.stat(follow_symlinks=False).st_size, entry.path)
            except OSError as exc:
                raise classify_os_error(exc, operation, entry.path) from exc

    return walk(root, "")


def _is_symlink_info(info: zipfile.ZipInfo) -> bool:
    return stat.S_ISLNK(info.external_attr >> 16)


def archive_leaves(zf: zipfile.ZipFile, patterns: Sequence[str] = ()) -> List[Leaf]:
    matcher = _as_matcher(patterns)
    leaves = []
    for info in zf.infolist():
        if info.is_dir() or info.filename == CHECKSUM_MANIFEST:
            continue
        if _excluded(matcher, info.filename):
            continue
        if _is_symlink_info(info):
            target = zf.read(info).decode("utf-8", "surrogateescape")
            leaves.append(Leaf(info.filename, SYMLINK, len(target), info, target))
        else:
            leaves.append(Leaf(info.filename, FILE, info.file_size, info))
    leaves.sort(key=Leaf.sort_key)
    return leaves


def streams_equal(a: BinaryIO, b: BinaryIO, ctx: Optional[OperationContext] = None, *, operation: str = "compare") -> bool:
    ctx = ensure_context(ctx)
    while True:
        ctx.check(operation)
        ba = a.read(COMPARE_BUFFER_SIZE)
        bb = b.read(COMPARE_BUFFER_SIZE)
        if ba != bb:
            return False
        if not ba:
            return True


def _leaves_match(a: Leaf, b: Leaf, open_a: Callable[[Leaf], BinaryIO], open_b: Callable[[Leaf], BinaryIO], ctx: OperationContext) -> bool:
    if a.relpath != b.relpath or a.kind != b.kind or a.size != b.size:
        return False
    if a.kind == SYMLINK:
        return a.link_target == b.link_target
    with open_a(a) as fa, open_b(b) as fb:
        return streams_equal(fa, fb, ctx)


def _lockstep(left: Iterable[Leaf], right: Iterable[Leaf], open_left, open_right, ctx: OperationContext) -> bool:
    missing = object()
    for a, b in itertools.zip_longest(left, right, fillvalue=missing):
        if a is missing or b is missing:
            return False
        ctx.check("compare", a.relpath)
        if not _leaves_match(a, b, open_left, open_right, ctx):
            logger.debug("divergence at %s", a.relpath)
            return False
    return True


def _open_path(leaf: Leaf) -> BinaryIO:
    return open(leaf.source, "rb")


def is_directory_identical_to_archive(
    directory: str,
    archive_path: str,
    patterns: Sequence[str] = (),
    ctx: Optional[OperationContext] = None,
    *,
    skip: Iterable[str] = (),
) -> bool:
    """True when ``directory`` holds exactly the leaves stored in ``archive_path``.

    A missing or unreadable archive is simply not identical.
    """
    ctx = ensure_context(ctx)
    if not os.path.isfile(archive_path):
        return False
    matcher = _as_matcher(patterns)
    try:
        with zipfile.ZipFile(archive_path) as zf:
            stored = archive_leaves(zf, matcher)
            return _lockstep(
                walk_leaves(directory, matcher, ctx, skip=skip, operation="compare"),
                stored,
                _open_path,
                lambda leaf: zf.open(leaf.source),
                ctx,
            )
    except (zipfile.BadZipFile, zlib.error, EOFError) as exc:
        logger.debug("cannot compare against %s: %s", archive_path, exc)
        return False


def are_directories_identical(
    a: str,
    b: str,
    patterns: Sequence[str] = (),
    ctx: Optional[OperationContext] = None,
) -> bool:
    ctx = ensure_context(ctx)
    if not os.path.isdir(a) or not os.path.isdir(b):
        return False
    matcher = _as_matcher(patterns)
    return _lockstep(
        walk_leaves(a, matcher, ctx, operation="compare"),
        walk_leaves(b, matcher, ctx, operation="compare"),
        _open_path,
        _open_path,
        ctx,
    )


def are_files_identical(a: str, b: str, ctx: Optional[OperationContext] = None) -> bool:
    """Byte-for-byte equality of two regular files; sizes are compared first."""
    ctx = ensure_context(ctx)
    try:
        sa = os.stat(a)
        sb = os.stat(b)
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise classify_os_error(exc, "compare", a) from exc
    if sa.st_size != sb.st_size:
        return False
    try:
        with open(a, "rb") as fa, open(b, "rb") as fb:
            return streams_equal(fa, fb, ctx)
    except OSError as exc:
        raise classify_os_error(exc, "compare", a) from exc
