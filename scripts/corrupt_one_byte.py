import sys
from pathlib import Path

from rbdconv_core.protocol import HEADER_LEN, TAG_WRITE, WRITE_HEADER_LEN


def main():
    if len(sys.argv) != 2:
        print("Usage: corrupt_one_byte.py <container>")
        raise SystemExit(2)

    p = Path(sys.argv[1])
    b = bytearray(p.read_bytes())
    if len(b) < HEADER_LEN + WRITE_HEADER_LEN or b[HEADER_LEN:HEADER_LEN + 1] != TAG_WRITE:
        print("Container has no write record to corrupt.")
        raise SystemExit(2)

    # First write record: tag(1) | length(8) | offset(8) | payload length(8).
    # Flip the low bit of the offset so it is no longer block aligned.
    idx = HEADER_LEN + 9
    b[idx] ^= 0x01
    p.write_bytes(bytes(b))
    print(f"Corrupted 1 byte at offset {idx} in {p}")

if __name__ == "__main__":
    main()
