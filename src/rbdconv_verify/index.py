from __future__ import annotations

from dataclasses import asdict
from pathlib import Path

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .scanner import ContainerScanner, open_container

RECORD_SCHEMA = pa.schema(
    [
        ("record", pa.int32()),
        ("file_offset", pa.int64()),
        ("offset", pa.int64()),
        ("length", pa.int64()),
        ("content_hash", pa.string()),
    ]
)


def compile_record_index(container_path: Path, out_path: Path) -> int:
    """Build index/records.parquet listing every write record of a container.

    Returns the number of records indexed. Nothing is written for a
    container without write records.
    """
    with open_container(container_path) as f:
        scanner = ContainerScanner(f)
        rows = [asdict(rec) for rec in scanner.records()]

    (Path(out_path) / "index").mkdir(parents=True, exist_ok=True)

    df = pd.DataFrame(rows)
    if df.empty:
        return 0

    df = df.rename(columns={"index": "record"})
    table = pa.Table.from_pandas(df, schema=RECORD_SCHEMA, preserve_index=False)
    pq.write_table(table, Path(out_path) / "index/records.parquet")
    return len(df)
