import json
from pathlib import Path
import click
from .index import compile_record_index
from .logic import verify_container

@click.group()
def main():
    pass

@main.command("container")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def container_cmd(path: Path):
    result = verify_container(path)
    click.echo(json.dumps(result, sort_keys=True, separators=(",", ":"), ensure_ascii=False))
    if result["status"] != "PASS":
        raise SystemExit(1)

@main.command("index")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("out", type=click.Path(file_okay=False, path_type=Path))
def index_cmd(path: Path, out: Path):
    try:
        count = compile_record_index(path, out)
    except Exception as e:
        click.echo(f"FATAL: {e}", err=True)
        raise SystemExit(1)
    click.echo(f"PASS: {count} write records indexed at {out}")

if __name__ == "__main__":
    main()
