#!/usr/bin/env python3
"""
PAC archive metadata for FF4 (PSP).

PAC0.BIN describes the tree stored in PAC1.BIN:
- header: record/info counts, name table size, payload size
- records: one per directory, in preorder
- infos: one per child (file or directory)
- name table: raw names addressed by (offset, length)

Decompressed .lzs entries may in turn be small flat packs with a 64-byte
entry per file; read_pack_entries() reads those.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import pathlib
import struct
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple, Union

from ff4_errors import InvalidFileNum, InvalidMetadata, PayloadTruncated

log = logging.getLogger(__name__)

HEADER = struct.Struct("<IIII16x")
RECORD = struct.Struct("<IIII4xI8x")
INFO = struct.Struct("<2xHIIII4xII32s")

PACK_COUNT = struct.Struct("<H2x")
PACK_ENTRY = struct.Struct("<III48s")
PACK_STRIDE = 0x40  # entry + 4 bytes padding before the next one

KIND_FILE = 1
CHECKSUM_SIZE = 32
DEFAULT_ROOT_NAME = "data"


@dataclasses.dataclass(frozen=True)
class ArchiveHeader:
    record_count: int
    file_count: int
    name_table_size: int
    archive_total_size: int


@dataclasses.dataclass(frozen=True)
class Record:
    id: int
    parent_id: int
    info_offset: int
    info_count: int
    directory_info_offset: int


@dataclasses.dataclass(frozen=True)
class Info:
    is_file: bool
    filename_offset: int
    filename_length: int
    file_offset: int
    file_real_size: int
    record_id: int
    file_full_size: int
    checksum: bytes


@dataclasses.dataclass(frozen=True)
class FileNode:
    name: str
    offset: int
    size: int
    full_size: int = 0
    checksum: bytes = b""


@dataclasses.dataclass(frozen=True)
class DirectoryNode:
    name: str
    children: Tuple["Node", ...]


Node = Union[DirectoryNode, FileNode]


@dataclasses.dataclass
class Metadata:
    header: ArchiveHeader
    records: List[Record]
    infos: List[Info]
    names: Dict[int, str]
    root: DirectoryNode
    records_consumed: int


def _unpack(st: struct.Struct, buf: bytes, off: int, what: str) -> tuple:
    if off + st.size > len(buf):
        raise InvalidMetadata(f"{what} at 0x{off:X} runs past end of metadata (0x{len(buf):X})")
    return st.unpack_from(buf, off)


def read_header(buf: bytes, off: int = 0) -> Tuple[ArchiveHeader, int]:
    vals = _unpack(HEADER, buf, off, "header")
    return ArchiveHeader(*vals), off + HEADER.size


def read_records(buf: bytes, off: int, count: int) -> Tuple[List[Record], int]:
    records: List[Record] = []
    for i in range(count):
        records.append(Record(*_unpack(RECORD, buf, off, f"record {i}")))
        off += RECORD.size
    return records, off


def read_infos(buf: bytes, off: int, count: int) -> Tuple[List[Info], int]:
    infos: List[Info] = []
    for i in range(count):
        kind, name_off, name_len, file_off, real_size, record_id, full_size, checksum = _unpack(INFO, buf, off, f"info {i}")
        infos.append(
            Info(
                is_file=(kind == KIND_FILE),
                filename_offset=name_off,
                filename_length=name_len,
                file_offset=file_off,
                file_real_size=real_size,
                record_id=record_id,
                file_full_size=full_size,
                checksum=checksum,
            )
        )
        off += INFO.size
    return infos, off


def build_names(buf: bytes, off: int, size: int, infos: Iterable[Info]) -> Tuple[Dict[int, str], int]:
    """Resolve names keyed by name-table offset (offsets may be shared)."""
    if off + size > len(buf):
        raise InvalidMetadata(f"name table (0x{size:X} bytes at 0x{off:X}) runs past end of metadata")
    table = buf[off : off + size]
    names: Dict[int, str] = {}
    for info in infos:
        end = info.filename_offset + info.filename_length
        if end > size:
            raise InvalidMetadata(f"name 0x{info.filename_offset:X}+{info.filename_length} outside name table")
        names[info.filename_offset] = safe_name(table[info.filename_offset : end].decode("utf-8", errors="replace").strip())
    return names, off + size


def safe_name(name: str) -> str:
    """Keep an archive name to a single path component."""
    name = name.replace("/", "_").replace("\\", "_")
    if name in (".", ".."):
        return name.replace(".", "_")
    return name


def build_directory(
    name: str,
    index: int,
    records: List[Record],
    infos: List[Info],
    names: Dict[int, str],
) -> Tuple[DirectoryNode, int]:
    """Build one directory from records[index]; returns the node and the next unconsumed record."""
    if index >= len(records):
        raise InvalidMetadata(f"directory '{name}' needs record {index}, only {len(records)} present")
    record = records[index]
    index += 1
    if record.info_offset + record.info_count > len(infos):
        raise InvalidMetadata(f"record {record.id} children {record.info_offset}+{record.info_count} past info table")

    children: List[Node] = []
    for i in range(record.info_count):
        info = infos[record.info_offset + i]
        child_name = names[info.filename_offset]
        if info.is_file:
            children.append(
                FileNode(
                    name=child_name,
                    offset=info.file_offset,
                    size=info.file_real_size,
                    full_size=info.file_full_size,
                    checksum=info.checksum,
                )
            )
        else:
            child, index = build_directory(child_name, index, records, infos, names)
            children.append(child)
    return DirectoryNode(name=name, children=tuple(children)), index


def load(buf: bytes, root_name: str = DEFAULT_ROOT_NAME) -> Metadata:
    header, off = read_header(buf)
    records, off = read_records(buf, off, header.record_count)
    infos, off = read_infos(buf, off, header.file_count)
    names, off = build_names(buf, off, header.name_table_size, infos)

    total_children = sum(r.info_count for r in records)
    if total_children != header.file_count:
        raise InvalidMetadata(f"records list {total_children} children, header says {header.file_count}")
    for info in infos:
        if info.is_file and info.file_offset + info.file_real_size > header.archive_total_size:
            raise InvalidMetadata(
                f"'{names[info.filename_offset]}' 0x{info.file_offset:X}+0x{info.file_real_size:X} "
                f"past payload size 0x{header.archive_total_size:X}"
            )

    root, consumed = build_directory(root_name, 0, records, infos, names)
    return Metadata(
        header=header,
        records=records,
        infos=infos,
        names=names,
        root=root,
        records_consumed=consumed,
    )


def load_file(path: pathlib.Path, root_name: str = DEFAULT_ROOT_NAME) -> Metadata:
    meta = load(pathlib.Path(path).read_bytes(), root_name=root_name)
    log.info(
        "Loaded %s: %d directories, %d entries, payload 0x%X bytes",
        path,
        meta.header.record_count,
        meta.header.file_count,
        meta.header.archive_total_size,
    )
    return meta


def iter_files(node: Node, prefix: str = "") -> Iterable[Tuple[str, FileNode]]:
    path = f"{prefix}/{node.name}" if prefix else node.name
    if isinstance(node, FileNode):
        yield path, node
        return
    for child in node.children:
        yield from iter_files(child, path)


def read_payload(payload: BinaryIO, offset: int, size: int) -> bytes:
    payload.seek(offset)
    data = payload.read(size)
    if len(data) != size:
        raise PayloadTruncated(getattr(payload, "name", "<payload>"), offset, size, len(data))
    return data


def verify_checksums(root: DirectoryNode, payload: BinaryIO) -> Dict[str, object]:
    checked = 0
    unset = 0
    mismatches: List[Dict[str, str]] = []
    for path, node in iter_files(root):
        if not node.checksum or not any(node.checksum):
            unset += 1
            continue
        digest = hashlib.sha256(read_payload(payload, node.offset, node.size)).digest()
        checked += 1
        if digest != node.checksum:
            mismatches.append({"path": path, "stored": node.checksum.hex(), "computed": digest.hex()})
    return {
        "checked": checked,
        "unset": unset,
        "matched": checked - len(mismatches),
        "mismatched": len(mismatches),
        "mismatches": mismatches,
    }


@dataclasses.dataclass(frozen=True)
class PackEntry:
    index: int
    offset: int
    size: int
    name: str


def _pack_name(raw: bytes) -> str:
    return safe_name("".join(chr(b) if 32 <= b < 127 else " " for b in raw).strip())


def _pack_count(buf: bytes) -> Optional[int]:
    if len(buf) < PACK_COUNT.size:
        return None
    (count,) = PACK_COUNT.unpack_from(buf, 0)
    if count == 0 or _pack_entry_offset(count - 1) + PACK_ENTRY.size > len(buf):
        return None
    return count


def _pack_entry_offset(index: int) -> int:
    return PACK_COUNT.size + index * PACK_STRIDE


def looks_like_pack(buf: bytes) -> bool:
    """Every entry must point past the entry table and end inside the buffer."""
    count = _pack_count(buf)
    if count is None:
        return False
    table_end = _pack_entry_offset(count)
    for i in range(count):
        off, size, _, _ = PACK_ENTRY.unpack_from(buf, _pack_entry_offset(i))
        if off < table_end or off + size > len(buf):
            return False
    return True


def read_pack_entries(buf: bytes) -> Tuple[List[PackEntry], List[InvalidFileNum]]:
    count = _pack_count(buf)
    if count is None:
        raise InvalidMetadata("buffer is not a nested pack")
    entries: List[PackEntry] = []
    warnings: List[InvalidFileNum] = []
    for i in range(count):
        off, size, file_num, raw_name = PACK_ENTRY.unpack_from(buf, _pack_entry_offset(i))
        if file_num != i:
            warnings.append(InvalidFileNum(file_num, i))
            continue
        entries.append(PackEntry(index=i, offset=off, size=size, name=_pack_name(raw_name)))
    return entries, warnings
