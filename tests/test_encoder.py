import io
import lzma
import random
import struct

import pytest

from rbdconv_core.protocol import FALLBACK_IMAGE_SIZE, HEADER_LEN, XZ_MAGIC
from rbdconv_export.encoder import DiffEncoder, EncoderStateError, image_size, raw_to_rbd

BLOCK = 4096


def expected_header(size, order=22, features=61, stripe_count=1):
    def rec(tag, value):
        return tag + struct.pack("<Q", 8) + struct.pack("<Q", value)

    return (
        b"rbd image v2\n"
        + rec(b"O", order)
        + rec(b"T", features)
        + rec(b"U", 1 << order)
        + rec(b"C", stripe_count)
        + b"E"
        + b"rbd image diffs v2\n"
        + struct.pack("<Q", 1)
        + b"rbd diff v2\n"
        + rec(b"s", size)
    )


def parse_writes(out: bytes):
    """Return [(offset, payload)] for every write record and assert the terminator is last."""
    pos = HEADER_LEN
    writes = []
    while out[pos:pos + 1] == b"w":
        rec_len, offset, length = struct.unpack_from("<QQQ", out, pos + 1)
        assert rec_len == length + 16
        payload = out[pos + 25:pos + 25 + length]
        assert len(payload) == length
        writes.append((offset, payload))
        pos += 25 + length
    assert out[pos:] == b"e"
    return writes


def replay(writes, size):
    image = bytearray(size)
    for offset, payload in writes:
        end = min(offset + len(payload), size)
        image[offset:end] = payload[:end - offset]
    return bytes(image)


def encode(data, order=22, chunk=None, size=None):
    buf = io.BytesIO()
    if size is None:
        size = -(-len(data) // BLOCK) * BLOCK
    enc = DiffEncoder(buf, size, order=order)
    step = chunk or max(len(data), 1)
    for i in range(0, len(data), step):
        enc.push_data(data[i:i + step])
    stats = enc.finalize()
    return buf.getvalue(), stats


def test_header_written_on_construction():
    buf = io.BytesIO()
    DiffEncoder(buf, 8192)
    assert buf.getvalue() == expected_header(8192)
    assert len(buf.getvalue()) == HEADER_LEN


def test_header_uses_configured_values():
    buf = io.BytesIO()
    DiffEncoder(buf, 1 << 20, order=16, features=1, stripe_count=4)
    assert buf.getvalue() == expected_header(1 << 20, order=16, features=1, stripe_count=4)


def test_single_block_of_data():
    data = bytes(range(256)) * 16
    out, stats = encode(data)
    assert parse_writes(out) == [(0, data)]
    assert stats.records == 1


def test_trailing_zero_block_is_trimmed():
    data = b"\x41" * BLOCK + bytes(BLOCK)
    out, _ = encode(data)
    assert parse_writes(out) == [(0, b"\x41" * BLOCK)]


@pytest.mark.parametrize("stripes", [1, 3])
def test_all_zero_input_emits_no_writes(stripes):
    data = bytes(stripes * (1 << 13))
    out, stats = encode(data, order=13, chunk=5000)
    assert out == expected_header(len(data), order=13) + b"e"
    assert stats.records == 0
    assert stats.holes == stripes


def test_empty_input():
    out, stats = encode(b"")
    assert out == expected_header(0) + b"e"
    assert stats.bytes_consumed == 0


@pytest.mark.parametrize("seed", range(6))
def test_round_trip_and_record_invariants(seed):
    rng = random.Random(seed)
    order = 13
    stripe = 1 << order
    size = rng.randint(0, 40) * BLOCK + rng.randint(0, BLOCK - 1)
    data = bytearray(size)
    for _ in range(rng.randint(0, 12)):
        start = rng.randrange(0, max(size, 1))
        run = rng.randint(1, 3 * BLOCK)
        data[start:start + run] = rng.randbytes(len(data[start:start + run]))
    data = bytes(data)

    out, stats = encode(data, order=order, chunk=rng.randint(1, 3 * stripe))
    writes = parse_writes(out)
    declared = -(-size // BLOCK) * BLOCK

    assert replay(writes, declared)[:size] == data
    assert stats.bytes_consumed == size
    assert stats.records == len(writes)

    prev_end = 0
    for offset, payload in writes:
        assert len(payload) > 0
        assert len(payload) % BLOCK == 0
        assert offset % stripe == 0
        assert offset >= prev_end
        prev_end = offset + len(payload)


def test_interior_hole_is_not_split():
    data = b"\x01" + bytes(2 * BLOCK) + b"\x01" * BLOCK
    out, _ = encode(data)
    writes = parse_writes(out)
    assert len(writes) == 1
    assert writes[0][1][:len(data)] == data


def test_push_block_stream():
    buf = io.BytesIO()
    enc = DiffEncoder(buf, 3 * BLOCK, order=13)
    enc.push_block(b"\x07" * BLOCK)
    enc.push_block(bytes(BLOCK))
    enc.push_block(b"\x09" * 100)
    enc.finalize()
    writes = parse_writes(buf.getvalue())
    assert writes == [(0, b"\x07" * BLOCK), (2 * BLOCK, b"\x09" * 100 + bytes(BLOCK - 100))]


def test_lifecycle_is_enforced():
    enc = DiffEncoder(io.BytesIO(), 0)
    enc.flush()
    with pytest.raises(EncoderStateError):
        enc.push_data(b"x")
    with pytest.raises(EncoderStateError):
        enc.flush()
    enc.finalize()
    with pytest.raises(EncoderStateError):
        enc.finalize()
    with pytest.raises(EncoderStateError):
        enc.push_block(b"x")


def test_terminator_written_once():
    buf = io.BytesIO()
    enc = DiffEncoder(buf, BLOCK)
    enc.push_data(b"\x01")
    enc.flush()
    enc.finalize()
    out = buf.getvalue()
    assert out.endswith(b"e")
    assert parse_writes(out) == [(0, b"\x01" + bytes(BLOCK - 1))]


def test_context_manager_finalizes_on_clean_exit():
    buf = io.BytesIO()
    with DiffEncoder(buf, BLOCK) as enc:
        enc.push_data(b"\x05" * 10)
    assert parse_writes(buf.getvalue()) == [(0, b"\x05" * 10 + bytes(BLOCK - 10))]


def test_context_manager_leaves_partial_output_unterminated():
    buf = io.BytesIO()
    with pytest.raises(KeyError):
        with DiffEncoder(buf, BLOCK) as enc:
            enc.push_data(b"\x05" * 10)
            raise KeyError("boom")
    assert buf.getvalue() == expected_header(BLOCK)


def test_encoders_are_independent():
    a_buf, b_buf = io.BytesIO(), io.BytesIO()
    a = DiffEncoder(a_buf, 2 * BLOCK, order=12)
    b = DiffEncoder(b_buf, 2 * BLOCK, order=12)
    a.push_data(b"\x0a" * BLOCK)
    b.push_data(bytes(BLOCK))
    a.push_data(bytes(BLOCK))
    b.push_data(b"\x0b" * BLOCK)
    a.finalize()
    b.finalize()
    assert parse_writes(a_buf.getvalue()) == [(0, b"\x0a" * BLOCK)]
    assert parse_writes(b_buf.getvalue()) == [(BLOCK, b"\x0b" * BLOCK)]


@pytest.mark.parametrize("kwargs", [
    {"size": 100},
    {"size": BLOCK, "order": 11},
    {"size": BLOCK, "order": 26},
    {"size": BLOCK, "block_size": 3000},
    {"size": 1 << 20, "order": 12, "block_size": 8192},
    {"size": -BLOCK},
    {"size": 1 << 64},
    {"size": BLOCK, "features": -1},
    {"size": BLOCK, "features": 1 << 64},
    {"size": BLOCK, "stripe_count": 0},
    {"size": BLOCK, "stripe_count": 1 << 64},
])
def test_invalid_configuration_rejected(kwargs):
    buf = io.BytesIO()
    size = kwargs.pop("size")
    with pytest.raises(ValueError):
        DiffEncoder(buf, size, **kwargs)
    assert buf.getvalue() == b""


def test_overrun_of_declared_size_warns():
    buf = io.BytesIO()
    enc = DiffEncoder(buf, BLOCK, order=12)
    enc.push_data(b"\x01" * (2 * BLOCK))
    with pytest.warns(UserWarning, match="past declared size"):
        enc.finalize()


class Pipe:
    def __init__(self, data):
        self._b = io.BytesIO(data)

    def read(self, n=-1):
        return self._b.read(n)

    def seekable(self):
        return False


def test_image_size():
    src = io.BytesIO(b"abcdef")
    src.read(2)
    assert image_size(src) == 4
    assert src.tell() == 2
    assert image_size(Pipe(b"abc")) is None


def test_raw_to_rbd_measures_seekable_input():
    data = b"\x03" * (2 * BLOCK)
    out = io.BytesIO()
    stats = raw_to_rbd(out, io.BytesIO(data), order=12)
    assert stats.declared_size == 2 * BLOCK
    assert out.getvalue().startswith(expected_header(2 * BLOCK, order=12))
    assert replay(parse_writes(out.getvalue()), 2 * BLOCK) == data


def test_raw_to_rbd_rounds_unaligned_size_up():
    out = io.BytesIO()
    with pytest.warns(UserWarning, match="not block aligned"):
        stats = raw_to_rbd(out, io.BytesIO(b"\x01" * 5000))
    assert stats.declared_size == 2 * BLOCK


def test_raw_to_rbd_falls_back_for_streams():
    out = io.BytesIO()
    with pytest.warns(UserWarning, match="cannot be determined"):
        stats = raw_to_rbd(out, Pipe(b"\x01" * 10))
    assert stats.declared_size == FALLBACK_IMAGE_SIZE
    assert out.getvalue().startswith(expected_header(FALLBACK_IMAGE_SIZE))


def test_raw_to_rbd_explicit_size_wins():
    out = io.BytesIO()
    stats = raw_to_rbd(out, Pipe(b"\x01" * 10), size=1 << 20)
    assert stats.declared_size == 1 << 20


def test_raw_to_rbd_xz():
    data = b"\x11" * BLOCK + bytes(BLOCK)
    plain, packed = io.BytesIO(), io.BytesIO()
    raw_to_rbd(plain, io.BytesIO(data))
    raw_to_rbd(packed, io.BytesIO(data), compress=True)
    assert packed.getvalue().startswith(XZ_MAGIC)
    assert lzma.decompress(packed.getvalue()) == plain.getvalue()


def test_sink_failure_is_fatal():
    class BrokenSink:
        def write(self, data):
            raise OSError("broken pipe")

    with pytest.raises(OSError):
        DiffEncoder(BrokenSink(), BLOCK)


def test_mixed_push_calls_keep_writes_disjoint_and_aligned():
    buf = io.BytesIO()
    enc = DiffEncoder(buf, 6 * BLOCK, order=13)
    enc.push_data(b"\x01" * 100)
    with pytest.raises(ValueError):
        enc.push_block(b"\x02" * BLOCK)
    assert enc.stats().bytes_consumed == 100

    enc.push_data(bytes(BLOCK - 100))
    for _ in range(4):
        enc.push_block(b"\x02" * BLOCK)
    enc.push_data(b"\x04" * 10)
    enc.finalize()

    writes = parse_writes(buf.getvalue())
    assert [(off, len(p)) for off, p in writes] == [(0, 2 * BLOCK), (2 * BLOCK, 2 * BLOCK), (4 * BLOCK, 2 * BLOCK)]
    image = replay(writes, 6 * BLOCK)
    assert image[:5 * BLOCK + 10] == b"\x01" * 100 + bytes(BLOCK - 100) + b"\x02" * (4 * BLOCK) + b"\x04" * 10
