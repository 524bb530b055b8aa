from __future__ import annotations

import datetime as _dt
import hashlib
import json
import logging
import mmap
import os
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .atomic import atomic_write_bytes
from .constants import (
    CHECKSUM_MANIFEST,
    COPY_BUFFER_SIZE,
    DEFAULT_CHECKSUM_ALGORITHM,
    METADATA_DIR,
    SUPPORTED_CHECKSUM_ALGORITHMS,
)
from .context import OperationContext, ensure_context
from .errors import ConfigError, classify_os_error
from .resources import operation_boundary
from .zipformat import ZipStructureError, parse_central_directory, parse_eocd, parse_local_header


logger = logging.getLogger(__name__)

_SHA2_SPELLINGS = {"sha_1", "sha_224", "sha_256", "sha_384", "sha_512"}


@dataclass
class VerificationStatus:
    verified_at: _dt.datetime = field(default_factory=lambda: _dt.datetime.now(_dt.timezone.utc))
    is_verified: bool = True
    checksums_verified: bool = False
    errors: List[str] = field(default_factory=list)

    def fail(self, message: str) -> None:
        self.is_verified = False
        self.errors.append(message)

    def to_dict(self) -> Dict:
        d = {
            "verified_at": self.verified_at.isoformat(),
            "is_verified": self.is_verified,
            "checksums_verified": self.checksums_verified,
        }
        if self.errors:
            d["errors"] = list(self.errors)
        return d

    @classmethod
    def from_dict(cls, d: Dict) -> "VerificationStatus":
        return cls(
            verified_at=_dt.datetime.fromisoformat(d["verified_at"]),
            is_verified=bool(d.get("is_verified", False)),
            checksums_verified=bool(d.get("checksums_verified", False)),
            errors=list(d.get("errors") or []),
        )


def normalize_algorithm(algorithm: Optional[str]) -> str:
    """Canonical hashlib name: ``SHA-256`` becomes ``sha256``, ``sha3-256`` becomes ``sha3_256``."""
    name = (algorithm or DEFAULT_CHECKSUM_ALGORITHM).strip().lower().replace("-", "_")
    if name in _SHA2_SPELLINGS:
        name = name.replace("_", "")
    return name


def new_hasher(algorithm: str = DEFAULT_CHECKSUM_ALGORITHM):
    name = normalize_algorithm(algorithm)
    if name not in SUPPORTED_CHECKSUM_ALGORITHMS:
        raise ConfigError(f"unsupported checksum algorithm: {algorithm}", operation="checksum")
    return hashlib.new(name)


def file_checksum(path: str, algorithm: str = DEFAULT_CHECKSUM_ALGORITHM) -> str:
    h = new_hasher(algorithm)
    with open(path, "rb") as fh:
        for buf in iter(lambda: fh.read(COPY_BUFFER_SIZE), b""):
            h.update(buf)
    return h.hexdigest()


def build_manifest(checksums: Dict[str, str], algorithm: str) -> bytes:
    doc = {
        "algorithm": algorithm,
        "created_at": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "checksums": dict(sorted(checksums.items())),
    }
    return json.dumps(doc, indent=2).encode("utf-8")


def read_manifest(zf: zipfile.ZipFile):
    """Return (algorithm, checksums) from the embedded manifest, or None if absent."""
    try:
        raw = zf.read(CHECKSUM_MANIFEST)
    except KeyError:
        return None
    doc = json.loads(raw.decode("utf-8"))
    if isinstance(doc, dict) and "checksums" in doc:
        return doc.get("algorithm") or DEFAULT_CHECKSUM_ALGORITHM, dict(doc["checksums"])
    # Flat name -> digest map
    return DEFAULT_CHECKSUM_ALGORITHM, dict(doc)


def check_structure(path: str) -> List[str]:
    """Structural problems found in the container, empty when sound.

    Reads only the end record, the central directory and each local header;
    payloads are never touched.
    """
    problems: List[str] = []
    try:
        size = os.path.getsize(path)
    except OSError as exc:
        return [f"failed to stat archive: {exc}"]
    if size == 0:
        return ["archive is empty"]
    with open(path, "rb") as fh, mmap.mmap(fh.fileno(), 0, access=mmap.ACCESS_READ) as data:
        try:
            eocd = parse_eocd(data)
            headers = parse_central_directory(data, eocd)
        except (ZipStructureError, ValueError) as exc:
            return [f"unreadable central directory: {exc}"]
        for h in headers:
            if h.local_header_offset >= eocd.cd_offset and not eocd.zip64:
                problems.append(f"entry {h.name}: local header offset beyond data region")
                continue
            try:
                local = parse_local_header(data, h.local_header_offset)
            except ZipStructureError as exc:
                problems.append(f"entry {h.name}: {exc}")
                continue
            if local.name != h.name:
                problems.append(f"entry {h.name}: local header names {local.name!r}")
            elif local.data_offset + h.compressed_size > eocd.cd_offset and not eocd.zip64:
                problems.append(f"entry {h.name}: payload overruns central directory")
    return problems


def _verify_checksums(path: str, status: VerificationStatus, algorithm: str, ctx: OperationContext) -> None:
    try:
        zf = zipfile.ZipFile(path)
    except (zipfile.BadZipFile, OSError) as exc:
        status.fail(f"failed to open archive: {exc}")
        return
    with zf:
        try:
            manifest = read_manifest(zf)
        except (ValueError, TypeError, zipfile.BadZipFile, zlib.error, OSError) as exc:
            status.fail(f"failed to read checksums: {exc}")
            return
        if manifest is None:
            # Not a structural failure; checksums simply cannot be confirmed.
            status.errors.append("checksums manifest not found in archive")
            return
        manifest_algorithm, stored = manifest
        algo = manifest_algorithm or algorithm
        try:
            new_hasher(algo)
        except ConfigError:
            status.fail(f"unsupported checksum algorithm in manifest: {algo}")
            return
        failed = False
        for info in zf.infolist():
            if info.is_dir() or info.filename == CHECKSUM_MANIFEST:
                continue
            ctx.check("verify", path)
            expected = stored.get(info.filename)
            if expected is None:
                status.fail(f"no stored checksum for {info.filename}")
                failed = True
                continue
            h = new_hasher(algo)
            try:
                with zf.open(info) as fh:
                    for buf in iter(lambda: fh.read(COPY_BUFFER_SIZE), b""):
                        h.update(buf)
            except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as exc:
                status.fail(f"failed to read {info.filename}: {exc}")
                failed = True
                continue
            if h.hexdigest() != expected:
                status.fail(f"checksum mismatch for {info.filename}")
                failed = True
        status.checksums_verified = not failed


def verify_archive(
    path: str,
    with_checksums: bool = False,
    *,
    algorithm: str = DEFAULT_CHECKSUM_ALGORITHM,
    ctx: Optional[OperationContext] = None,
) -> VerificationStatus:
    """Assess an archive's integrity.

    A structural failure marks the archive unverified and skips checksum
    checking. Problems are reported in the returned status rather than
    raised; only cancellation and unexpected faults raise.
    """
    ctx = ensure_context(ctx)
    path = os.fspath(path)
    new_hasher(algorithm)
    with operation_boundary("verify", path):
        ctx.check("verify", path)
        status = VerificationStatus()
        for problem in check_structure(path):
            status.fail(problem)
        if not status.is_verified:
            logger.info("archive %s failed structural verification", path)
            return status
        if with_checksums:
            _verify_checksums(path, status, algorithm, ctx)
        logger.debug("verified %s: ok=%s checksums=%s", path, status.is_verified, status.checksums_verified)
        return status


def metadata_path(archive_path: str) -> str:
    archive_path = os.fspath(archive_path)
    return os.path.join(os.path.dirname(archive_path), METADATA_DIR, os.path.basename(archive_path) + ".json")


def store_verification_status(archive_path: str, status: VerificationStatus) -> str:
    target = metadata_path(archive_path)
    with operation_boundary("store verification status", target) as rm:
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
        except OSError as exc:
            raise classify_os_error(exc, "store verification status", target) from exc
        atomic_write_bytes(target, json.dumps(status.to_dict(), indent=2).encode("utf-8"), rm, operation="store verification status")
    return target


def load_verification_status(archive_path: str) -> Optional[VerificationStatus]:
    target = metadata_path(archive_path)
    if not os.path.exists(target):
        return None
    try:
        with open(target, "r", encoding="utf-8") as fh:
            return VerificationStatus.from_dict(json.load(fh))
    except (OSError, ValueError, KeyError) as exc:
        logger.warning("ignoring unreadable verification metadata %s: %s", target, exc)
        return None
