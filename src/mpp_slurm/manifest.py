from __future__ import annotations

__all__ = ["build_array_manifest", "array_spec_from_manifest", "manifest_path", "save_manifest", "load_manifest"]

from pathlib import Path

import pandas as pd

from mpp_slurm.subjects import build_array_spec

# Columns written to the manifest CSV; status is only present after polling.
_MANIFEST_COLUMNS = ["array_index", "subject", "job_id"]


def build_array_manifest(subjects: list[str]) -> pd.DataFrame:
    """Return the index → subject table for an already sorted subject list.

    Columns: ``array_index`` (1-based, contiguous), ``subject``.
    """
    return pd.DataFrame(
        {
            "array_index": list(range(1, len(subjects) + 1)),
            "subject": list(subjects),
        },
        columns=["array_index", "subject"],
    )


def array_spec_from_manifest(manifest: pd.DataFrame) -> str:
    """Return the ``--array`` value covering every row of *manifest*."""
    return build_array_spec(manifest["subject"].tolist())


def manifest_path(slurm_log_dir: Path, job_name: str, job_id: str) -> Path:
    return slurm_log_dir / f"{job_name}_{job_id}.manifest.csv"


def save_manifest(manifest: pd.DataFrame, path: Path) -> None:
    """Write *manifest* to CSV, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    manifest.to_csv(path, index=False)


def load_manifest(path: str | Path) -> pd.DataFrame:
    """Load a manifest CSV written by :func:`save_manifest`.

    Subject IDs and job IDs are kept as strings so zero-padded IDs survive.

    Raises
    ------
    ValueError
        If the CSV is missing any of the manifest columns.
    """
    df = pd.read_csv(path, dtype={"subject": str, "job_id": str})
    missing = set(_MANIFEST_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(
            f"Manifest {str(path)!r} is missing required column(s): "
            f"{sorted(missing)}. Found: {sorted(df.columns.tolist())}"
        )
    df["array_index"] = df["array_index"].astype(int)
    return df
