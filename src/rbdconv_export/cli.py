"""rbdconv - raw block image to RBD export-diff converter."""
from __future__ import annotations

import sys
from contextlib import ExitStack
from pathlib import Path

import click

from rbdconv_core.protocol import (
    DEFAULT_BLOCK_SIZE,
    DEFAULT_FEATURES,
    DEFAULT_ORDER,
    DEFAULT_STRIPE_COUNT,
)
from rbdconv_export.encoder import raw_to_rbd


def convert_image(
    src_path: str | None,
    out_path: str | None,
    size: int | None = None,
    order: int = DEFAULT_ORDER,
    features: int = DEFAULT_FEATURES,
    stripe_count: int = DEFAULT_STRIPE_COUNT,
    compress: bool = False,
) -> None:
    """Convert one raw image. `None` or "-" selects stdin / stdout."""
    with ExitStack() as stack:
        # Open the input first so a bad path fails before any output exists.
        if src_path in (None, "-"):
            src = sys.stdin.buffer
            label = "<stdin>"
        else:
            src = stack.enter_context(open(src_path, "rb"))
            label = src_path

        if out_path in (None, "-"):
            out = sys.stdout.buffer
        else:
            out = stack.enter_context(open(out_path, "wb"))

        click.echo(f"Converting: {label}", err=True)
        stats = raw_to_rbd(
            out,
            src,
            size,
            order=order,
            block_size=DEFAULT_BLOCK_SIZE,
            features=features,
            stripe_count=stripe_count,
            compress=compress,
        )
        out.flush()

    click.echo(f"PASS: {stats.bytes_consumed} bytes converted", err=True)
    click.echo(f"  Declared size: {stats.declared_size}", err=True)
    click.echo(f"  Write records: {stats.records}", err=True)
    click.echo(f"  Payload bytes: {stats.payload_bytes}", err=True)
    click.echo(f"  Holes: {stats.holes}", err=True)


@click.command()
@click.argument("image", required=False, type=click.Path(dir_okay=False, allow_dash=True))
@click.option("-o", "--output", type=click.Path(dir_okay=False, allow_dash=True, path_type=Path),
              help="Output file (default: stdout)")
@click.option("--size", type=click.IntRange(min=0), help="Declared image size in bytes")
@click.option("--order", type=int, default=DEFAULT_ORDER, show_default=True, help="Object order")
@click.option("--features", type=click.IntRange(min=0), default=DEFAULT_FEATURES, show_default=True,
              help="Image feature bitmask")
@click.option("--stripe-count", type=click.IntRange(min=1), default=DEFAULT_STRIPE_COUNT, show_default=True)
@click.option("--xz", is_flag=True, help="Compress the container with xz")
def main(image, output, size, order, features, stripe_count, xz) -> None:
    """Convert a raw block image into an RBD export-diff stream."""
    try:
        convert_image(
            image,
            str(output) if output is not None else None,
            size=size,
            order=order,
            features=features,
            stripe_count=stripe_count,
            compress=xz,
        )
    except Exception as e:
        # Fail closed with a single-line reason; partial output is not a container.
        click.echo(f"FATAL: {e}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
