"""Deterministic fault injection for ZIP archives, and the matching detector.

Every corruption type mutates its own region of the container so that the
detector can tell them apart:

============  =============================================  ===========
type          region                                         class
============  =============================================  ===========
SIGNATURE     first four bytes of the file                   fatal
HEADER        signature of the first central header          fatal
CENTRAL_DIR   central directory offset in the end record     fatal
TRUNCATE      tail of the file, through the end record       fatal
LOCAL_HEADER  version-needed field of a local header         recoverable
CRC           CRC-32 field of a local header                 recoverable
DATA          compressed payload of the first non-empty      recoverable
              entry
COMMENT       trailing bytes plus a wrong comment length     recoverable
============  =============================================  ===========

Mutated bytes come from :class:`DeterministicPRNG` seeded with the type,
the configured offset and the seed, so a given archive and configuration
always produce the same damage. Every change is recorded as a patch so it
can be undone exactly.
"""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import logging
import mmap
import os
import shutil
import struct
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .constants import (
    CHECKSUM_MANIFEST,
    CORRUPTION_BACKUP_SUFFIX,
    EOCD_CD_OFFSET_OFFSET,
    EOCD_COMMENT_LEN_OFFSET,
    EOCD_SIZE,
    LOCAL_CRC_OFFSET,
    LOCAL_VERSION_OFFSET,
    VALID_LEADING_SIGNATURES,
)
from .errors import CorruptionInjectionError, classify_os_error
from .prng import DeterministicPRNG
from .verify import build_manifest, new_hasher
from .zipformat import (
    CentralHeader,
    ZipStructureError,
    find_eocd,
    parse_central_directory,
    parse_eocd,
    parse_local_header,
    u32,
)


logger = logging.getLogger(__name__)

# Trailing bytes never contain this value so no false signature appears.
_SIGNATURE_LEAD = 0x50
_DATA_DESCRIPTOR_FLAG = 0x08
_DEFAULT_COMMENT_BYTES = 16


class CorruptionType(enum.Enum):
    CRC = "crc"
    HEADER = "header"
    TRUNCATE = "truncate"
    CENTRAL_DIR = "central_dir"
    LOCAL_HEADER = "local_header"
    DATA = "data"
    SIGNATURE = "signature"
    COMMENT = "comment"

    @property
    def recoverable(self) -> bool:
        return self in RECOVERABLE_TYPES


RECOVERABLE_TYPES = frozenset({CorruptionType.CRC, CorruptionType.LOCAL_HEADER, CorruptionType.DATA, CorruptionType.COMMENT})
FATAL_TYPES = frozenset({CorruptionType.HEADER, CorruptionType.TRUNCATE, CorruptionType.CENTRAL_DIR, CorruptionType.SIGNATURE})


@dataclass
class CorruptionConfig:
    """What to break.

    ``size`` is the number of bytes to affect for TRUNCATE, DATA and COMMENT
    (0 picks a default from ``severity``); the header-field types always
    touch the whole field. ``offset`` is an absolute file offset that places
    DATA corruption; for the other types it only varies the byte stream.
    """

    type: CorruptionType
    seed: int = 0
    size: int = 0
    offset: Optional[int] = None
    severity: float = 0.1


@dataclass
class CorruptionRecord:
    type: CorruptionType
    seed: int
    offsets: List[int]
    size: int
    severity: float
    original_bytes: bytes
    corrupted_bytes: bytes
    original_size: int
    description: str
    recoverable: bool
    backup_path: Optional[str] = None
    # (offset, original bytes) pairs written back by restore
    patches: List[Tuple[int, bytes]] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "type": self.type.value,
            "seed": self.seed,
            "offsets": list(self.offsets),
            "size": self.size,
            "severity": self.severity,
            "original_bytes": self.original_bytes.hex(),
            "corrupted_bytes": self.corrupted_bytes.hex(),
            "original_size": self.original_size,
            "description": self.description,
            "recoverable": self.recoverable,
            "backup_path": self.backup_path,
            "patches": [[off, data.hex()] for off, data in self.patches],
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "CorruptionRecord":
        return cls(
            type=CorruptionType(d["type"]),
            seed=int(d["seed"]),
            offsets=[int(o) for o in d["offsets"]],
            size=int(d["size"]),
            severity=float(d["severity"]),
            original_bytes=bytes.fromhex(d["original_bytes"]),
            corrupted_bytes=bytes.fromhex(d["corrupted_bytes"]),
            original_size=int(d["original_size"]),
            description=d.get("description", ""),
            recoverable=bool(d.get("recoverable", False)),
            backup_path=d.get("backup_path"),
            patches=[(int(off), bytes.fromhex(h)) for off, h in d.get("patches", [])],
        )


@dataclass
class DetectionReport:
    types: List[CorruptionType] = field(default_factory=list)

    @property
    def fatal(self) -> bool:
        return any(t in FATAL_TYPES for t in self.types)

    @property
    def recoverable(self) -> bool:
        return bool(self.types) and not self.fatal

    @property
    def clean(self) -> bool:
        return not self.types


@dataclass
class _Mutation:
    patches: List[Tuple[int, bytes]] = field(default_factory=list)
    replacements: List[Tuple[int, bytes]] = field(default_factory=list)
    truncate_to: Optional[int] = None
    append: bytes = b""
    description: str = ""


class ArchiveCorruptor:
    """Applies one :class:`CorruptionConfig` to an archive and can undo it.

    A byte-for-byte copy of the archive is kept next to it until
    :meth:`restore` or :meth:`cleanup` runs.
    """

    def __init__(self, path: str, config: CorruptionConfig):
        self.path = os.fspath(path)
        self.config = config
        self.backup_path = self.path + CORRUPTION_BACKUP_SUFFIX

    def _prng(self) -> DeterministicPRNG:
        offset = b"auto" if self.config.offset is None else str(self.config.offset).encode("ascii")
        return DeterministicPRNG(b"dirsnap-corrupt" + self.config.type.value.encode("ascii") + offset, self.config.seed)

    def _read(self) -> bytes:
        try:
            with open(self.path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            raise self._fail(f"failed to read archive: {exc}") from exc

    def _fail(self, message: str) -> CorruptionInjectionError:
        return CorruptionInjectionError(message, operation=f"corrupt archive ({self.config.type.value})", path=self.path)

    def apply(self) -> CorruptionRecord:
        cfg = self.config
        if not 0.0 < cfg.severity <= 1.0:
            raise self._fail(f"severity must be in (0, 1], got {cfg.severity}")
        if cfg.size < 0:
            raise self._fail("size must not be negative")
        data = self._read()
        if not data:
            raise self._fail("archive is empty")
        mutation = self._plan(data, self._prng())
        self._backup()
        try:
            self._write(mutation)
        except OSError as exc:
            self._restore_from_backup()
            raise self._fail(f"failed to write corruption: {exc}") from exc
        original = b"".join(b for _, b in mutation.patches)
        corrupted = b"".join(b for _, b in mutation.replacements) + mutation.append
        record = CorruptionRecord(
            type=cfg.type,
            seed=cfg.seed,
            offsets=[off for off, _ in mutation.patches],
            size=len(original) if cfg.type is not CorruptionType.COMMENT else len(mutation.append),
            severity=cfg.severity,
            original_bytes=original,
            corrupted_bytes=corrupted,
            original_size=len(data),
            description=mutation.description,
            recoverable=cfg.type.recoverable,
            backup_path=self.backup_path,
            patches=list(mutation.patches),
        )
        logger.debug("applied %s", record.description)
        return record

    def restore(self, record: CorruptionRecord) -> None:
        """Undo ``record``: write back the original bytes, then the original length."""
        try:
            with open(self.path, "r+b") as fh:
                for off, original in record.patches:
                    fh.seek(off)
                    fh.write(original)
                fh.truncate(record.original_size)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as exc:
            raise self._fail(f"failed to restore archive: {exc}") from exc
        self.cleanup()
        logger.debug("restored %s", self.path)

    def cleanup(self) -> None:
        try:
            os.remove(self.backup_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise self._fail(f"failed to remove backup copy: {exc}") from exc

    def _backup(self) -> None:
        # A leftover copy may be the only pristine one.
        if os.path.lexists(self.backup_path):
            raise self._fail(f"backup copy already exists: {self.backup_path}")
        try:
            shutil.copy2(self.path, self.backup_path)
        except OSError as exc:
            raise self._fail(f"failed to back up archive: {exc}") from exc

    def _restore_from_backup(self) -> None:
        try:
            shutil.copy2(self.backup_path, self.path)
        except OSError as exc:
            logger.warning("could not restore %s from %s: %s", self.path, self.backup_path, exc)

    def _write(self, m: _Mutation) -> None:
        with open(self.path, "r+b") as fh:
            for off, new in m.replacements:
                fh.seek(off)
                fh.write(new)
            if m.truncate_to is not None:
                fh.truncate(m.truncate_to)
            if m.append:
                fh.seek(0, os.SEEK_END)
                fh.write(m.append)
            fh.flush()
            os.fsync(fh.fileno())

    # Planning: each returns the patches for one corruption type

    def _plan(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        planner = {
            CorruptionType.SIGNATURE: self._plan_signature,
            CorruptionType.HEADER: self._plan_header,
            CorruptionType.CENTRAL_DIR: self._plan_central_dir,
            CorruptionType.TRUNCATE: self._plan_truncate,
            CorruptionType.LOCAL_HEADER: self._plan_local_header,
            CorruptionType.CRC: self._plan_crc,
            CorruptionType.DATA: self._plan_data,
            CorruptionType.COMMENT: self._plan_comment,
        }[self.config.type]
        return planner(data, prng)

    def _layout(self, data: bytes):
        try:
            eocd = parse_eocd(data)
            return eocd, parse_central_directory(data, eocd)
        except ZipStructureError as exc:
            raise self._fail(f"archive is not a readable ZIP: {exc}") from exc

    @staticmethod
    def _replace(m: _Mutation, data: bytes, off: int, new: bytes) -> None:
        m.patches.append((off, data[off : off + len(new)]))
        m.replacements.append((off, new))

    def _plan_signature(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        if len(data) < 4:
            raise self._fail("archive too short for a signature")
        original = data[:4]
        new = prng.mutate(original)
        while u32(new, 0) in VALID_LEADING_SIGNATURES:
            new = prng.mutate(original)
        m = _Mutation(description="signature: 4 bytes at offset 0")
        self._replace(m, data, 0, new)
        return m

    def _plan_header(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        eocd, headers = self._layout(data)
        if not headers:
            raise self._fail("archive has no central directory entries")
        off = headers[0].offset
        m = _Mutation(description=f"header: central header signature at offset {off}")
        self._replace(m, data, off, prng.mutate(data[off : off + 4]))
        return m

    def _plan_central_dir(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        eocd, _ = self._layout(data)
        if eocd.zip64:
            raise self._fail("zip64 archives are not supported for central directory corruption")
        off = eocd.offset + EOCD_CD_OFFSET_OFFSET
        m = _Mutation(description=f"central_dir: directory offset field at offset {off}")
        self._replace(m, data, off, prng.mutate(data[off : off + 4]))
        return m

    def _plan_truncate(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        cut = self.config.size or max(1, int(len(data) * self.config.severity))
        eocd_off = find_eocd(data)
        if eocd_off is not None:
            # The end record must not survive, or the cut goes unnoticed.
            cut = max(cut, len(data) - eocd_off - EOCD_SIZE + 1)
        cut = min(cut, len(data) - 1)
        if cut <= 0:
            raise self._fail("archive too short to truncate")
        keep = len(data) - cut
        m = _Mutation(truncate_to=keep, description=f"truncate: removed {cut} bytes from offset {keep}")
        m.patches.append((keep, data[keep:]))
        return m

    def _target_entry(self, data: bytes, headers: List[CentralHeader], want) -> CentralHeader:
        for h in headers:
            try:
                local = parse_local_header(data, h.local_header_offset)
            except ZipStructureError:
                continue
            if want(h, local):
                return h
        raise self._fail("no suitable entry in archive")

    def _plan_local_header(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        _, headers = self._layout(data)
        h = self._target_entry(data, headers, lambda h, local: True)
        off = h.local_header_offset + LOCAL_VERSION_OFFSET
        m = _Mutation(description=f"local_header: version field of {h.name} at offset {off}")
        self._replace(m, data, off, prng.mutate(data[off : off + 2]))
        return m

    def _plan_crc(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        _, headers = self._layout(data)
        h = self._target_entry(data, headers, lambda h, local: not local.flags & _DATA_DESCRIPTOR_FLAG)
        off = h.local_header_offset + LOCAL_CRC_OFFSET
        m = _Mutation(description=f"crc: local CRC-32 of {h.name} at offset {off}")
        self._replace(m, data, off, prng.mutate(data[off : off + 4]))
        return m

    def _plan_data(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        _, headers = self._layout(data)
        spans = []
        for h in headers:
            if h.compressed_size <= 0:
                continue
            try:
                local = parse_local_header(data, h.local_header_offset)
            except ZipStructureError:
                continue
            spans.append((h, local.data_offset, h.compressed_size))
        if not spans:
            raise self._fail("archive has no entry with payload data")
        want = self.config.offset
        if want is None:
            h, start, length = spans[0]
            n = min(length, self.config.size or max(1, int(length * self.config.severity)))
            off = start + prng.next_uint(length - n + 1)
        else:
            for h, start, length in spans:
                if start <= want < start + length:
                    break
            else:
                raise self._fail(f"offset {want} is not inside any entry payload")
            off = want
            n = min(start + length - off, self.config.size or max(1, int(length * self.config.severity)))
        m = _Mutation(description=f"data: {n} byte(s) of {h.name} at offset {off}")
        self._replace(m, data, off, prng.mutate(data[off : off + n]))
        return m

    def _plan_comment(self, data: bytes, prng: DeterministicPRNG) -> _Mutation:
        eocd, _ = self._layout(data)
        n = self.config.size or _DEFAULT_COMMENT_BYTES
        trailing = len(data) - eocd.offset - EOCD_SIZE + n
        junk = bytes(b if b != _SIGNATURE_LEAD else b ^ 0xFF for b in prng.next_bytes(n))
        declared = (trailing + 1 + prng.next_uint(255)) & 0xFFFF
        if declared == trailing:
            declared = (declared + 1) & 0xFFFF
        off = eocd.offset + EOCD_COMMENT_LEN_OFFSET
        m = _Mutation(append=junk, description=f"comment: appended {n} bytes, declared length {declared}")
        self._replace(m, data, off, struct.pack("<H", declared))
        return m


def apply_corruption(path: str, config: CorruptionConfig) -> CorruptionRecord:
    return ArchiveCorruptor(path, config).apply()


def restore_corruption(path: str, record: CorruptionRecord) -> None:
    ArchiveCorruptor(path, CorruptionConfig(record.type, record.seed)).restore(record)


@contextlib.contextmanager
def corrupted(path: str, config: CorruptionConfig) -> Iterator[CorruptionRecord]:
    """Corrupt ``path`` for the duration of the block; restored even if the block raises."""
    corruptor = ArchiveCorruptor(path, config)
    record = corruptor.apply()
    try:
        yield record
    finally:
        corruptor.restore(record)


def _payload_intact(data, local_data_offset: int, h: CentralHeader) -> bool:
    end = local_data_offset + h.compressed_size
    if end > len(data):
        return False
    payload = data[local_data_offset:end]
    if h.method == zipfile.ZIP_STORED:
        raw = payload
    elif h.method == zipfile.ZIP_DEFLATED:
        try:
            d = zlib.decompressobj(-zlib.MAX_WBITS)
            raw = d.decompress(payload) + d.flush()
        except zlib.error:
            return False
    else:
        # Other methods are not decoded here
        return True
    return len(raw) == h.uncompressed_size and (zlib.crc32(raw) & 0xFFFFFFFF) == h.crc32


def _detect(data) -> List[CorruptionType]:
    found = set()
    if len(data) < 4:
        return [CorruptionType.TRUNCATE]
    if u32(data, 0) not in VALID_LEADING_SIGNATURES:
        found.add(CorruptionType.SIGNATURE)
    eocd_off = find_eocd(data)
    if eocd_off is None:
        found.add(CorruptionType.TRUNCATE)
        return _ordered(found)
    try:
        eocd = parse_eocd(data, eocd_off)
    except ZipStructureError:
        found.add(CorruptionType.CENTRAL_DIR)
        return _ordered(found)
    if eocd.comment_length != len(data) - eocd.offset - EOCD_SIZE:
        found.add(CorruptionType.COMMENT)
    if not eocd.zip64 and eocd.cd_offset + eocd.cd_size != eocd.offset:
        found.add(CorruptionType.CENTRAL_DIR)
        # Read the directory where it actually sits, just before the end record.
        eocd = dataclasses.replace(eocd, cd_offset=eocd.offset - eocd.cd_size)
    try:
        if eocd.cd_offset < 0:
            raise ZipStructureError("central directory larger than the data before it")
        headers = parse_central_directory(data, eocd)
    except ZipStructureError:
        found.add(CorruptionType.HEADER)
        return _ordered(found)
    for h in headers:
        try:
            local = parse_local_header(data, h.local_header_offset)
        except ZipStructureError:
            # A bad signature at offset 0 is already reported as SIGNATURE.
            if h.local_header_offset != 0:
                found.add(CorruptionType.LOCAL_HEADER)
            continue
        if local.version_needed != h.version_needed:
            found.add(CorruptionType.LOCAL_HEADER)
        if not h.flags & _DATA_DESCRIPTOR_FLAG and local.crc32 != h.crc32:
            found.add(CorruptionType.CRC)
        if h.compressed_size > 0 and not _payload_intact(data, local.data_offset, h):
            found.add(CorruptionType.DATA)
    return _ordered(found)


def _ordered(found) -> List[CorruptionType]:
    return [t for t in CorruptionType if t in found]


def detect_corruption(path: str) -> List[CorruptionType]:
    """Corruption types present in ``path``; empty for a sound archive."""
    path = os.fspath(path)
    try:
        with open(path, "rb") as fh:
            if os.fstat(fh.fileno()).st_size == 0:
                return [CorruptionType.TRUNCATE]
            with mmap.mmap(fh.fileno(), 0, access=mmap.ACCESS_READ) as data:
                return _detect(data)
    except OSError as exc:
        raise classify_os_error(exc, "detect corruption", path) from exc


def classify_corruption(path: str) -> DetectionReport:
    return DetectionReport(detect_corruption(path))


def create_test_archive(path: str, files: Dict[str, bytes], *, algorithm: str = "sha256") -> str:
    """Write a small deflate archive with ``files`` and a checksums manifest."""
    path = os.fspath(path)
    checksums = {}
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in files.items():
            zf.writestr(name, content)
            h = new_hasher(algorithm)
            h.update(content)
            checksums[name] = h.hexdigest()
        zf.writestr(CHECKSUM_MANIFEST, build_manifest(checksums, algorithm))
    return path
