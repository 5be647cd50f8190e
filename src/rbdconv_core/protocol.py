"""RBD export-diff protocol constants.

Single source of truth for banners, record tags and record layouts.
Keep this file stable. Encoder and verifier must remain synchronized.
"""
import struct

# Section banners
BANNER_IMAGE_V2 = b"rbd image v2\n"
BANNER_IMAGE_DIFFS_V2 = b"rbd image diffs v2\n"  # undocumented upstream
BANNER_DIFF_V2 = b"rbd diff v2\n"

DIFFS_VERSION = 1

# Image header record tags
TAG_ORDER = b"O"
TAG_FEATURES = b"T"
TAG_STRIPE_UNIT = b"U"
TAG_STRIPE_COUNT = b"C"
TAG_IMAGE_END = b"E"

# Diff record tags
TAG_SIZE = b"s"
TAG_WRITE = b"w"
TAG_END = b"e"

# Defaults
DEFAULT_ORDER = 22  # 4 MiB objects
DEFAULT_BLOCK_SIZE = 4096
DEFAULT_FEATURES = 61  # opaque feature bitmask, carried as-is
DEFAULT_STRIPE_COUNT = 1
MIN_ORDER = 12
MAX_ORDER = 25

# Declared size used when the input size cannot be determined (8 GiB)
FALLBACK_IMAGE_SIZE = 0x200000000

# u64 value: little endian
U64_FMT = "<Q"
U64_LEN = 8
U64_LIMIT = 1 << 64

# Record header: [Tag(1) | Length(8)] = 9 bytes
REC_HEADER_FMT = "<cQ"
REC_HEADER_LEN = struct.calcsize(REC_HEADER_FMT)

# Write record header: [Tag(1) | Length(8) | Offset(8) | PayloadLen(8)] = 25 bytes
WRITE_HEADER_FMT = "<cQQQ"
WRITE_HEADER_LEN = struct.calcsize(WRITE_HEADER_FMT)
WRITE_FIELDS_LEN = 16  # offset + payload length, counted in the record length

# Bytes preceding the first write record of a container
HEADER_LEN = (
    len(BANNER_IMAGE_V2)
    + 4 * (REC_HEADER_LEN + U64_LEN)
    + len(TAG_IMAGE_END)
    + len(BANNER_IMAGE_DIFFS_V2)
    + U64_LEN
    + len(BANNER_DIFF_V2)
    + REC_HEADER_LEN + U64_LEN
)

XZ_MAGIC = b"\xfd7zXZ\x00"
