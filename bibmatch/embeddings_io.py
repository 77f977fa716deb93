"""
Parquet persistence for the local face collection.

The local face index keeps its embeddings in memory and appends every
enrolment batch to a new ``part-*.parquet`` file under the collection
directory, so the collection survives restarts.  Each row is one enrolled
face: ``face_id``, ``external_id``, ``confidence`` and ``embedding`` (a list
of floats).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

COLUMNS = ["face_id", "external_id", "confidence", "embedding"]


def next_part_index(collection_dir: Path) -> int:
    """Return the index of the next ``part-*.parquet`` file (0 when empty)."""
    max_idx = -1
    for f in collection_dir.glob("part-*.parquet"):
        try:
            idx = int(f.stem.split("-")[1])
        except (IndexError, ValueError):
            continue
        max_idx = max(max_idx, idx)
    return max_idx + 1


def write_face_part(collection_dir: Path, records: Iterable[Dict[str, Any]]) -> Path:
    """Write a batch of enrolled faces to a new Parquet part and return its path."""
    collection_dir.mkdir(parents=True, exist_ok=True)
    part_path = collection_dir / f"part-{next_part_index(collection_dir):05d}.parquet"
    df = pd.DataFrame(list(records), columns=COLUMNS)
    table = pa.Table.from_pandas(df, preserve_index=False)
    pq.write_table(table, part_path)
    return part_path


def read_collection(collection_dir: Path) -> pd.DataFrame:
    """Read all parts of a collection, in write order, into one DataFrame."""
    dfs: List[pd.DataFrame] = []
    if collection_dir.exists():
        for part in sorted(collection_dir.glob("part-*.parquet")):
            dfs.append(pq.read_table(part).to_pandas())
    if not dfs:
        return pd.DataFrame(columns=COLUMNS)
    return pd.concat(dfs, ignore_index=True)
