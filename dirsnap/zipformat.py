"""Minimal read-only parser for the ZIP container layout.

Used by the verifier for structural checks and by the corruption tooling to
locate the regions it mutates. Only what those callers need is parsed:
end-of-central-directory (plus the ZIP64 variant), central directory
headers and local file headers.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import List, Optional

from .constants import (
    CENTRAL_HEADER_SIZE,
    EOCD_SIZE,
    LOCAL_HEADER_SIZE,
    MAX_COMMENT_SIZE,
    SIG_CENTRAL_HEADER,
    SIG_END_OF_CENTRAL_DIR,
    SIG_LOCAL_HEADER,
    SIG_ZIP64_END_OF_CENTRAL_DIR,
    SIG_ZIP64_LOCATOR,
)


_EOCD_STRUCT = struct.Struct("<IHHHHIIH")
_ZIP64_LOCATOR_STRUCT = struct.Struct("<IIQI")
_ZIP64_EOCD_STRUCT = struct.Struct("<IQHHIIQQQQ")
_CENTRAL_STRUCT = struct.Struct("<IHHHHHHIIIHHHHHII")
_LOCAL_STRUCT = struct.Struct("<IHHHHHIIIHH")


class ZipStructureError(ValueError):
    pass


@dataclass
class EndOfCentralDir:
    offset: int
    entries_total: int
    cd_size: int
    cd_offset: int
    comment_length: int
    zip64: bool = False


@dataclass
class CentralHeader:
    offset: int
    version_made_by: int
    version_needed: int
    flags: int
    method: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    local_header_offset: int
    external_attr: int
    name: str

    @property
    def is_dir(self) -> bool:
        return self.name.endswith("/")


@dataclass
class LocalHeader:
    offset: int
    version_needed: int
    flags: int
    method: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    name: str
    data_offset: int


def u32(data: bytes, offset: int) -> int:
    return struct.unpack_from("<I", data, offset)[0]


def find_eocd(data: bytes) -> Optional[int]:
    """Offset of the end-of-central-directory record, searching backwards."""
    if len(data) < EOCD_SIZE:
        return None
    lowest = max(0, len(data) - EOCD_SIZE - MAX_COMMENT_SIZE)
    for i in range(len(data) - EOCD_SIZE, lowest - 1, -1):
        if u32(data, i) == SIG_END_OF_CENTRAL_DIR:
            return i
    return None


def find_signature_offsets(data: bytes, signature: int) -> List[int]:
    needle = struct.pack("<I", signature)
    offsets = []
    pos = data.find(needle)
    while pos != -1:
        offsets.append(pos)
        pos = data.find(needle, pos + 1)
    return offsets


def find_local_header_offsets(data: bytes) -> List[int]:
    return find_signature_offsets(data, SIG_LOCAL_HEADER)


def parse_eocd(data: bytes, offset: Optional[int] = None) -> EndOfCentralDir:
    if offset is None:
        offset = find_eocd(data)
    if offset is None:
        raise ZipStructureError("end of central directory not found")
    if offset + EOCD_SIZE > len(data):
        raise ZipStructureError("end of central directory truncated")
    (_sig, _disk, _cd_disk, _n_disk, n_total, cd_size, cd_offset, comment_len) = _EOCD_STRUCT.unpack_from(data, offset)
    eocd = EndOfCentralDir(offset=offset, entries_total=n_total, cd_size=cd_size, cd_offset=cd_offset, comment_length=comment_len)
    if n_total == 0xFFFF or cd_size == 0xFFFFFFFF or cd_offset == 0xFFFFFFFF:
        _apply_zip64(data, eocd)
    return eocd


def _apply_zip64(data: bytes, eocd: EndOfCentralDir) -> None:
    loc_off = eocd.offset - _ZIP64_LOCATOR_STRUCT.size
    if loc_off < 0 or u32(data, loc_off) != SIG_ZIP64_LOCATOR:
        raise ZipStructureError("zip64 locator missing")
    _sig, _disk, rec_off, _ndisks = _ZIP64_LOCATOR_STRUCT.unpack_from(data, loc_off)
    if rec_off + _ZIP64_EOCD_STRUCT.size > len(data) or u32(data, rec_off) != SIG_ZIP64_END_OF_CENTRAL_DIR:
        raise ZipStructureError("zip64 end of central directory missing")
    fields = _ZIP64_EOCD_STRUCT.unpack_from(data, rec_off)
    eocd.entries_total = fields[7]
    eocd.cd_size = fields[8]
    eocd.cd_offset = fields[9]
    eocd.zip64 = True


def _zip64_extra(extra: bytes, usize: int, csize: int, loff: int):
    pos = 0
    while pos + 4 <= len(extra):
        tag, size = struct.unpack_from("<HH", extra, pos)
        body = extra[pos + 4 : pos + 4 + size]
        if tag == 0x0001:
            vals = [struct.unpack_from("<Q", body, i)[0] for i in range(0, len(body) - 7, 8)]
            it = iter(vals)
            if usize == 0xFFFFFFFF:
                usize = next(it, usize)
            if csize == 0xFFFFFFFF:
                csize = next(it, csize)
            if loff == 0xFFFFFFFF:
                loff = next(it, loff)
            break
        pos += 4 + size
    return usize, csize, loff


def _decode_name(raw: bytes, flags: int) -> str:
    if flags & 0x800:
        return raw.decode("utf-8", errors="replace")
    return raw.decode("cp437", errors="replace")


def parse_central_directory(data: bytes, eocd: Optional[EndOfCentralDir] = None) -> List[CentralHeader]:
    if eocd is None:
        eocd = parse_eocd(data)
    if eocd.cd_offset + eocd.cd_size > eocd.offset and not eocd.zip64:
        raise ZipStructureError("central directory overlaps end record")
    pos = eocd.cd_offset
    headers: List[CentralHeader] = []
    for _ in range(eocd.entries_total):
        if pos + CENTRAL_HEADER_SIZE > len(data):
            raise ZipStructureError("central directory truncated")
        fields = _CENTRAL_STRUCT.unpack_from(data, pos)
        if fields[0] != SIG_CENTRAL_HEADER:
            raise ZipStructureError(f"bad central directory signature at offset {pos}")
        (_sig, made_by, needed, flags, method, _mtime, _mdate, crc, csize, usize, name_len, extra_len, comment_len, _disk, _iattr, eattr, loff) = fields
        name_start = pos + CENTRAL_HEADER_SIZE
        name_raw = data[name_start : name_start + name_len]
        extra = data[name_start + name_len : name_start + name_len + extra_len]
        if len(name_raw) != name_len:
            raise ZipStructureError("central directory name truncated")
        usize, csize, loff = _zip64_extra(extra, usize, csize, loff)
        headers.append(
            CentralHeader(
                offset=pos,
                version_made_by=made_by,
                version_needed=needed,
                flags=flags,
                method=method,
                crc32=crc,
                compressed_size=csize,
                uncompressed_size=usize,
                local_header_offset=loff,
                external_attr=eattr,
                name=_decode_name(name_raw, flags),
            )
        )
        pos = name_start + name_len + extra_len + comment_len
    return headers


def parse_local_header(data: bytes, offset: int) -> LocalHeader:
    if offset < 0 or offset + LOCAL_HEADER_SIZE > len(data):
        raise ZipStructureError(f"local header at offset {offset} out of bounds")
    fields = _LOCAL_STRUCT.unpack_from(data, offset)
    if fields[0] != SIG_LOCAL_HEADER:
        raise ZipStructureError(f"bad local header signature at offset {offset}")
    (_sig, needed, flags, method, _mtime, _mdate, crc, csize, usize, name_len, extra_len) = fields
    name_start = offset + LOCAL_HEADER_SIZE
    name_raw = data[name_start : name_start + name_len]
    return LocalHeader(
        offset=offset,
        version_needed=needed,
        flags=flags,
        method=method,
        crc32=crc,
        compressed_size=csize,
        uncompressed_size=usize,
        name=_decode_name(name_raw, flags),
        data_offset=name_start + name_len + extra_len,
    )


def payload_span(data: bytes, header: CentralHeader):
    """(start, length) of an entry's stored payload."""
    local = parse_local_header(data, header.local_header_offset)
    return local.data_offset, header.compressed_size
