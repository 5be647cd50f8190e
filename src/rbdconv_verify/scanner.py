from __future__ import annotations

import hashlib
import lzma
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

from rbdconv_core.protocol import (
    BANNER_DIFF_V2,
    BANNER_IMAGE_DIFFS_V2,
    BANNER_IMAGE_V2,
    DIFFS_VERSION,
    TAG_END,
    TAG_FEATURES,
    TAG_IMAGE_END,
    TAG_ORDER,
    TAG_SIZE,
    TAG_STRIPE_COUNT,
    TAG_STRIPE_UNIT,
    TAG_WRITE,
    U64_FMT,
    U64_LEN,
    WRITE_FIELDS_LEN,
    XZ_MAGIC,
)

_HEADER_TAGS = {
    TAG_ORDER: "order",
    TAG_FEATURES: "features",
    TAG_STRIPE_UNIT: "stripe_unit",
    TAG_STRIPE_COUNT: "stripe_count",
}

_WRITE_FIELDS_FMT = "<QQQ"  # record length, offset, payload length
_READ_CHUNK = 1024 * 1024


class ContainerError(ValueError):
    """Structural defect found while scanning a container."""

    def __init__(self, code: str, detail: str, **extra):
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail
        self.extra = extra


@dataclass
class ContainerRecord:
    index: int
    file_offset: int  # position of the tag byte in the (decompressed) container
    offset: int
    length: int
    content_hash: str


def open_container(path: str | Path) -> BinaryIO:
    """Open a container for reading, transparently decompressing xz."""
    with open(path, "rb") as f:
        magic = f.read(len(XZ_MAGIC))
    if magic == XZ_MAGIC:
        return lzma.open(path, "rb")
    return open(path, "rb")


class ContainerScanner:
    """Sequential scanner over an export-diff container.

    Validates banners and header records, then yields one ContainerRecord
    per write record. Payloads are hashed and discarded.
    """

    def __init__(self, handle: BinaryIO):
        self.f = handle
        self.pos = 0
        self.header: dict[str, int] = {}
        self.scan_stats = {
            "records": 0,
            "payload_bytes": 0,
        }
        self._header_read = False

    def _read_exact(self, n: int, what: str) -> bytes:
        data = self.f.read(n)
        if len(data) != n:
            raise ContainerError("E_TRUNCATED", f"Truncated {what} at offset {self.pos}", offset=self.pos)
        self.pos += n
        return data

    def _expect_banner(self, banner: bytes) -> None:
        start = self.pos
        data = self._read_exact(len(banner), "banner")
        if data != banner:
            raise ContainerError("E_BANNER", f"Expected {banner!r} at offset {start}, found {data!r}", offset=start)

    def _read_u64_record(self, tag: bytes) -> int:
        start = self.pos - 1
        (length,) = struct.unpack(U64_FMT, self._read_exact(U64_LEN, "record length"))
        if length != U64_LEN:
            raise ContainerError(
                "E_HEADER_RECORD",
                f"Record {tag!r} at offset {start} has length {length}, expected {U64_LEN}",
                offset=start,
            )
        (value,) = struct.unpack(U64_FMT, self._read_exact(U64_LEN, "record value"))
        return int(value)

    def read_header(self) -> dict[str, int]:
        if self._header_read:
            return self.header

        self._expect_banner(BANNER_IMAGE_V2)
        while True:
            start = self.pos
            tag = self._read_exact(1, "image header tag")
            if tag == TAG_IMAGE_END:
                break
            if tag not in _HEADER_TAGS:
                raise ContainerError("E_UNKNOWN_TAG", f"Tag {tag!r} at offset {start} in image header", offset=start)
            self.header[_HEADER_TAGS[tag]] = self._read_u64_record(tag)

        self._expect_banner(BANNER_IMAGE_DIFFS_V2)
        (version,) = struct.unpack(U64_FMT, self._read_exact(U64_LEN, "diffs version"))
        if version != DIFFS_VERSION:
            raise ContainerError("E_HEADER_RECORD", f"Unsupported diffs version {int(version)}")
        self.header["diffs_version"] = int(version)

        self._expect_banner(BANNER_DIFF_V2)
        start = self.pos
        tag = self._read_exact(1, "size tag")
        if tag != TAG_SIZE:
            raise ContainerError("E_HEADER_RECORD", f"Expected size record at offset {start}, found {tag!r}", offset=start)
        self.header["size"] = self._read_u64_record(tag)

        self._header_read = True
        return self.header

    def _hash_payload(self, length: int) -> str:
        h = hashlib.sha256()
        remaining = length
        while remaining > 0:
            piece = self._read_exact(min(remaining, _READ_CHUNK), "write payload")
            h.update(piece)
            remaining -= len(piece)
        return h.hexdigest()

    def records(self) -> Iterator[ContainerRecord]:
        self.read_header()

        while True:
            start = self.pos
            tag = self.f.read(1)
            if not tag:
                raise ContainerError("E_TERMINATOR", f"Missing end tag at offset {start}", offset=start)
            self.pos += 1

            if tag == TAG_END:
                trailing = self.f.read(1)
                if trailing:
                    raise ContainerError("E_TERMINATOR", f"Trailing bytes after end tag at offset {start}", offset=start)
                return

            if tag != TAG_WRITE:
                raise ContainerError("E_UNKNOWN_TAG", f"Tag {tag!r} at offset {start}", offset=start)

            rec_len, offset, length = struct.unpack(
                _WRITE_FIELDS_FMT, self._read_exact(3 * U64_LEN, "write record header")
            )
            if rec_len != length + WRITE_FIELDS_LEN:
                raise ContainerError(
                    "E_RECORD_LENGTH",
                    f"Record at offset {start} declares length {int(rec_len)} for payload of {int(length)}",
                    offset=start,
                )

            content_hash = self._hash_payload(int(length))
            record = ContainerRecord(
                index=self.scan_stats["records"],
                file_offset=start,
                offset=int(offset),
                length=int(length),
                content_hash=content_hash,
            )
            self.scan_stats["records"] += 1
            self.scan_stats["payload_bytes"] += int(length)
            yield record

    def get_scan_stats(self) -> dict:
        return dict(self.scan_stats)
