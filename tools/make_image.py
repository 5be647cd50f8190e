import random
from pathlib import Path

BLOCK = 4096


def generate_image(out_path: str, size_mib: int = 16, seed: int = 7, tail: int = 0) -> Path:
    """Write a sparse raw image: random data runs separated by zero holes.

    `tail` appends that many extra non-block-aligned bytes of data.
    """
    rng = random.Random(seed)
    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    total_blocks = size_mib * 256
    written = 0
    with open(out, "wb") as f:
        block = 0
        while block < total_blocks:
            run = min(rng.randint(1, 64), total_blocks - block)
            if rng.random() < 0.4:
                data = rng.randbytes(run * BLOCK)
                written += run
            else:
                data = bytes(run * BLOCK)
            f.write(data)
            block += run
        if tail:
            f.write(rng.randbytes(tail))

    print(f"GENERATED: {out} ({written}/{total_blocks} data blocks)")
    return out


if __name__ == "__main__":
    import sys

    # Usage:
    #   python tools/make_image.py OUT [--size-mib N] [--seed N] [--tail N]

    args = [a for a in sys.argv[1:] if a]

    def pop_int(arg_list: list[str], flag: str, default: int) -> tuple[int, list[str]]:
        """Remove an integer option from an argv-style list."""
        if flag not in arg_list:
            return default, arg_list
        i = arg_list.index(flag)
        if i + 1 >= len(arg_list):
            raise SystemExit(f"{flag} requires a value")
        return int(arg_list[i + 1]), arg_list[:i] + arg_list[i + 2:]

    size_mib, args = pop_int(args, "--size-mib", 16)
    seed, args = pop_int(args, "--seed", 7)
    tail, args = pop_int(args, "--tail", 0)

    out = args[0] if len(args) > 0 else "image.raw"
    generate_image(out, size_mib=size_mib, seed=seed, tail=tail)
