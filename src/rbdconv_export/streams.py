from __future__ import annotations

from typing import Callable

from rbdconv_core.protocol import DEFAULT_BLOCK_SIZE, DEFAULT_ORDER
from rbdconv_core.records import RecordWriter


def padded_length(length: int, block_size: int) -> int:
    """Round length up to the next multiple of block_size."""
    return -(-length // block_size) * block_size


class SparseChunkEmitter:
    """Turns candidate chunks into write records, skipping holes.

    Only trailing zeros are trimmed. A chunk with zeros in the middle is
    written whole.
    """

    def __init__(self, writer: RecordWriter, block_size: int = DEFAULT_BLOCK_SIZE):
        self.writer = writer
        self.block_size = block_size
        self.stats = {
            "records": 0,
            "payload_bytes": 0,
            "holes": 0,
        }

    def emit(self, chunk: bytes, offset: int) -> None:
        data = bytes(chunk).rstrip(b"\x00")
        if not data:
            self.stats["holes"] += 1
            return

        length = len(data)
        padded = padded_length(length, self.block_size)
        if padded > length:
            data += bytes(padded - length)

        self.writer.write_data(offset, data)
        self.stats["records"] += 1
        self.stats["payload_bytes"] += padded


class StripeBuffer:
    """Accumulates streamed bytes into stripe-sized candidate chunks.

    `offset` is the logical image offset of the first pending byte. It only
    ever moves forward, by exactly the number of bytes handed to `emit`.
    """

    def __init__(
        self,
        emit: Callable[[bytes, int], None],
        stripe_size: int = 1 << DEFAULT_ORDER,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ):
        self.emit = emit
        self.stripe_size = stripe_size
        self.block_size = block_size
        self.offset = 0
        self._pending = bytearray()
        self._final_block = False

    def __len__(self) -> int:
        return len(self._pending)

    def _check_open(self) -> None:
        if self._final_block:
            raise ValueError("Stream already ended with a short final block")

    def push_block(self, block: bytes) -> None:
        """Append one block; a short block is the zero-padded final block.

        Blocks must land on a block boundary, so pending data from
        `push_data` has to be block aligned first.
        """
        self._check_open()
        if len(block) > self.block_size:
            raise ValueError(f"Block of {len(block)} bytes exceeds block size {self.block_size}")
        if len(self._pending) % self.block_size:
            raise ValueError(
                f"Block pushed at unaligned offset {self.offset + len(self._pending)} "
                f"(block size={self.block_size})"
            )
        self._pending.extend(block)
        if len(block) < self.block_size:
            self._pending.extend(bytes(self.block_size - len(block)))
            self._final_block = True
        self._slice_stripes(self.stripe_size - 1)

    def push_data(self, chunk: bytes) -> None:
        """Append an arbitrary-length chunk, emitting every stripe that overflows."""
        self._check_open()
        self._pending.extend(chunk)
        self._slice_stripes(self.stripe_size)

    def _slice_stripes(self, keep: int) -> None:
        """Emit full stripes until at most `keep` bytes are pending."""
        stripe = self.stripe_size
        while len(self._pending) > keep:
            data = bytes(self._pending[:stripe])
            del self._pending[:stripe]

            offset = self.offset
            self.offset += stripe

            self.emit(data, offset)

    def flush(self) -> None:
        """Emit whatever is pending as one final chunk. No-op when empty."""
        if not self._pending:
            return

        data = bytes(self._pending)
        self._pending = bytearray()

        offset = self.offset
        self.offset += len(data)

        self.emit(data, offset)
