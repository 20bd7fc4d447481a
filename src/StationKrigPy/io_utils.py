# src/StationKrigPy/io_utils.py
# SPDX-License-Identifier: MIT
"""Small file-output helpers shared by the configuration and the pipeline."""

from __future__ import annotations

import json
import os
from typing import Optional

import pandas as pd

__all__ = ["ensure_parent_dir", "save_df", "save_json"]


def ensure_parent_dir(path: Optional[str]) -> None:
    """Create the parent directory for *path* if needed (no-op on None)."""
    if not path:
        return
    d = os.path.dirname(str(path)) or "."
    os.makedirs(d, exist_ok=True)


def save_df(
    df: pd.DataFrame,
    path: Optional[str],
    *,
    parquet_compression: str = "snappy",
) -> Optional[str]:
    """
    Save a DataFrame to CSV, Parquet or Feather depending on the file extension.

    Parameters
    ----------
    df:
        DataFrame to save.
    path:
        Output path (``.csv``, ``.parquet`` or ``.feather``). If ``None``,
        nothing is written and ``None`` is returned.
    parquet_compression:
        Compression codec when writing Parquet files.

    Returns
    -------
    str or None
        The output path, or ``None`` if no file was written.
    """
    if path is None:
        return None
    ensure_parent_dir(path)
    ext = os.path.splitext(path)[1].lower()
    if ext == ".csv":
        df.to_csv(path, index=False)
    elif ext == ".parquet":
        df.to_parquet(path, index=False, compression=parquet_compression)
    elif ext == ".feather":
        df.reset_index(drop=True).to_feather(path)
    else:
        raise ValueError(f"Unsupported extension: {ext}")
    return path


def save_json(obj: dict, path: Optional[str]) -> Optional[str]:
    """
    Save a Python dictionary as a pretty-printed JSON file.

    Parameters
    ----------
    obj:
        Object to serialise. Timestamps and other non-JSON scalars are
        written with ``str``.
    path:
        Output path. If ``None``, nothing is written.

    Returns
    -------
    str or None
        The output path, or ``None`` if no file was written.
    """
    if path is None:
        return None
    ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2, default=str)
    return path
