"""Streaming raw image to RBD export-diff encoder.

Layout written by one run:
    rbd image v2\\n                 <- image banner
    O/T/U/C records               <- order, features, stripe unit, stripe count
    E                             <- end of image header
    rbd image diffs v2\\n + u64 1   <- diffs banner and version
    rbd diff v2\\n                  <- diff banner
    s record                      <- declared image size
    w records                     <- sparse, stripe-aligned data
    e                             <- end
"""
from __future__ import annotations

import io
import lzma
from dataclasses import dataclass
from typing import BinaryIO
from warnings import warn

from rbdconv_core.protocol import (
    BANNER_DIFF_V2,
    BANNER_IMAGE_DIFFS_V2,
    BANNER_IMAGE_V2,
    DEFAULT_BLOCK_SIZE,
    DEFAULT_FEATURES,
    DEFAULT_ORDER,
    DEFAULT_STRIPE_COUNT,
    DIFFS_VERSION,
    FALLBACK_IMAGE_SIZE,
    MAX_ORDER,
    MIN_ORDER,
    TAG_END,
    TAG_FEATURES,
    TAG_IMAGE_END,
    TAG_ORDER,
    TAG_SIZE,
    TAG_STRIPE_COUNT,
    TAG_STRIPE_UNIT,
    U64_LIMIT,
)
from rbdconv_core.records import RecordWriter
from rbdconv_export.streams import SparseChunkEmitter, StripeBuffer, padded_length


class EncoderStateError(RuntimeError):
    """Raised when the encoder is driven out of its header/stream/flush/finalize order."""


@dataclass
class EncodeStats:
    bytes_consumed: int
    records: int
    payload_bytes: int
    holes: int
    declared_size: int


class DiffEncoder:
    """Encodes one raw image stream into an export-diff container.

    The header is written on construction. Feed the image with `push_data`
    (any chunk sizes) or `push_block`, then call `finalize` exactly once.
    The sink belongs to the encoder until then.
    """

    def __init__(
        self,
        sink: BinaryIO,
        size: int,
        *,
        order: int = DEFAULT_ORDER,
        block_size: int = DEFAULT_BLOCK_SIZE,
        features: int = DEFAULT_FEATURES,
        stripe_count: int = DEFAULT_STRIPE_COUNT,
    ):
        if not MIN_ORDER <= order <= MAX_ORDER:
            raise ValueError(f"Object order {order} outside supported range {MIN_ORDER}..{MAX_ORDER}")
        if block_size <= 0 or block_size & (block_size - 1):
            raise ValueError(f"Block size {block_size} is not a power of two")
        stripe_unit = 1 << order
        if stripe_unit % block_size:
            raise ValueError(f"Stripe unit {stripe_unit} is not a multiple of block size {block_size}")
        if not 0 <= size < U64_LIMIT:
            raise ValueError(f"Image size {size} does not fit in an unsigned 64-bit field")
        if size % block_size:
            raise ValueError(f"Image size {size} is not block size aligned (block size={block_size})")
        if not 0 <= features < U64_LIMIT:
            raise ValueError(f"Feature bitmask {features} does not fit in an unsigned 64-bit field")
        if not 1 <= stripe_count < U64_LIMIT:
            raise ValueError(f"Stripe count {stripe_count} must be between 1 and 2**64 - 1")

        self.order = order
        self.block_size = block_size
        self.features = features
        self.stripe_unit = stripe_unit
        self.stripe_count = stripe_count
        self.size = size

        self.writer = RecordWriter(sink)
        self.emitter = SparseChunkEmitter(self.writer, block_size)
        self.buffer = StripeBuffer(self.emitter.emit, stripe_unit, block_size)
        self.consumed = 0

        self._write_header()
        self.state = "streaming"

    def _write_header(self) -> None:
        w = self.writer
        w.write_raw(BANNER_IMAGE_V2)
        w.write_u64_record(TAG_ORDER, self.order)
        w.write_u64_record(TAG_FEATURES, self.features)
        w.write_u64_record(TAG_STRIPE_UNIT, self.stripe_unit)
        w.write_u64_record(TAG_STRIPE_COUNT, self.stripe_count)
        w.write_raw(TAG_IMAGE_END)

        w.write_raw(BANNER_IMAGE_DIFFS_V2)
        w.write_u64(DIFFS_VERSION)

        w.write_raw(BANNER_DIFF_V2)
        w.write_u64_record(TAG_SIZE, self.size)

    def _require(self, *states: str) -> None:
        if self.state not in states:
            raise EncoderStateError(f"Encoder is {self.state}, expected {' or '.join(states)}")

    @property
    def offset(self) -> int:
        """Logical image offset of the first byte not yet emitted."""
        return self.buffer.offset

    def push_data(self, chunk: bytes) -> None:
        self._require("streaming")
        self.buffer.push_data(chunk)
        self.consumed += len(chunk)

    def push_block(self, block: bytes) -> None:
        self._require("streaming")
        self.buffer.push_block(block)
        self.consumed += len(block)

    def flush(self) -> None:
        self._require("streaming")
        self.buffer.flush()
        self.state = "flushed"

    def finalize(self) -> EncodeStats:
        self._require("streaming", "flushed")
        if self.state == "streaming":
            self.flush()

        if self.offset > self.size:
            warn(
                f"Image data ({self.offset} bytes) extends past declared size {self.size}; "
                f"declared size is advisory"
            )

        self.writer.write_raw(TAG_END)
        self.state = "finalized"
        return self.stats()

    def stats(self) -> EncodeStats:
        return EncodeStats(
            bytes_consumed=self.consumed,
            records=self.emitter.stats["records"],
            payload_bytes=self.emitter.stats["payload_bytes"],
            holes=self.emitter.stats["holes"],
            declared_size=self.size,
        )

    def __enter__(self) -> DiffEncoder:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        # A partial container is not valid; only terminate on a clean exit.
        if exc_type is None and self.state != "finalized":
            self.finalize()


def image_size(handle: BinaryIO) -> int | None:
    """Size of a seekable input, or None for pipes and other streams."""
    try:
        if not handle.seekable():
            return None
        pos = handle.tell()
        end = handle.seek(0, io.SEEK_END)
        handle.seek(pos, io.SEEK_SET)
    except (AttributeError, OSError):
        return None
    return int(end - pos)


def resolve_size(src: BinaryIO, size: int | None, block_size: int) -> int:
    """Pick the declared image size: explicit, measured, or the fallback placeholder."""
    if size is not None:
        return int(size)

    measured = image_size(src)
    if measured is None:
        warn(
            f"Input size cannot be determined; declaring {FALLBACK_IMAGE_SIZE} bytes. "
            f"Pass an explicit size for an accurate header."
        )
        return FALLBACK_IMAGE_SIZE

    aligned = padded_length(measured, block_size)
    if aligned != measured:
        warn(f"Input size {measured} is not block aligned; declaring {aligned} bytes")
    return aligned


def raw_to_rbd(
    out: BinaryIO,
    src: BinaryIO,
    size: int | None = None,
    *,
    order: int = DEFAULT_ORDER,
    block_size: int = DEFAULT_BLOCK_SIZE,
    features: int = DEFAULT_FEATURES,
    stripe_count: int = DEFAULT_STRIPE_COUNT,
    compress: bool = False,
) -> EncodeStats:
    """Convert a raw image read from `src` into a container written to `out`.

    The source is read one stripe at a time. With `compress` the container is
    wrapped in an xz stream.
    """
    declared = resolve_size(src, size, block_size)

    sink = lzma.LZMAFile(out, "wb", format=lzma.FORMAT_XZ) if compress else out
    try:
        encoder = DiffEncoder(
            sink,
            declared,
            order=order,
            block_size=block_size,
            features=features,
            stripe_count=stripe_count,
        )
        read_size = encoder.stripe_unit
        while True:
            data = src.read(read_size)
            if not data:
                break
            encoder.push_data(data)
        stats = encoder.finalize()
    finally:
        if compress:
            sink.close()
    return stats
