"""Record framing for the export-diff stream."""
from __future__ import annotations

import struct
from typing import BinaryIO

from rbdconv_core.protocol import (
    REC_HEADER_FMT,
    TAG_WRITE,
    U64_FMT,
    WRITE_FIELDS_LEN,
    WRITE_HEADER_FMT,
)


class RecordWriter:
    """Writes tag-prefixed, length-prefixed records to a sink.

    Nothing is buffered here. Errors raised by the sink propagate unchanged:
    the format has no resync marker, so a failed write ends the run.
    """

    def __init__(self, sink: BinaryIO):
        self.sink = sink
        self.bytes_written = 0

    def write_raw(self, data: bytes) -> None:
        self.sink.write(data)
        self.bytes_written += len(data)

    def write_u64(self, value: int) -> None:
        self.write_raw(struct.pack(U64_FMT, value))

    def write_record(self, tag: bytes, payload: bytes) -> None:
        if len(tag) != 1:
            raise ValueError(f"Record tag must be a single byte, got {tag!r}")
        self.write_raw(struct.pack(REC_HEADER_FMT, tag, len(payload)))
        self.write_raw(payload)

    def write_u64_record(self, tag: bytes, value: int) -> None:
        self.write_record(tag, struct.pack(U64_FMT, value))

    def write_data(self, offset: int, payload: bytes) -> None:
        # Record length covers the offset and length fields as well as the payload.
        header = struct.pack(
            WRITE_HEADER_FMT,
            TAG_WRITE,
            len(payload) + WRITE_FIELDS_LEN,
            offset,
            len(payload),
        )
        self.write_raw(header)
        self.write_raw(payload)
