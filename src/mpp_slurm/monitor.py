"""monitor.py — Slurm array task state polling via sacct.

Queries ``sacct`` for the tasks of one job array and attaches a ``status``
column to a saved array manifest.

Typical usage::

    from mpp_slurm.manifest import load_manifest
    from mpp_slurm.monitor import update_manifest_from_sacct

    manifest = load_manifest("logs/slurm/ADNI_RPP_linear_3T_RFLab_12345.manifest.csv")
    print(update_manifest_from_sacct(manifest).to_string(index=False))
"""
from __future__ import annotations

__all__ = ["poll_array_tasks", "update_manifest_from_sacct"]

import logging
import re
import subprocess
from typing import TYPE_CHECKING

import pandas as pd

if TYPE_CHECKING:
    from mpp_slurm.audit import AuditLogger

logger = logging.getLogger(__name__)

# Mapping from sacct state strings to report status strings.
_SACCT_TO_STATUS: dict[str, str] = {
    "PENDING": "pending",
    "REQUEUED": "pending",
    "RUNNING": "running",
    "COMPLETING": "running",
    "COMPLETED": "complete",
    "FAILED": "failed",
    "TIMEOUT": "failed",
    "CANCELLED": "failed",
    "OUT_OF_MEMORY": "failed",
    "NODE_FAIL": "failed",
    "BOOT_FAIL": "failed",
    "DEADLINE": "failed",
    "PREEMPTED": "failed",
}

# "12345_7" or a pending range "12345_[3-5,8%2]"
_ARRAY_TASK_RE = re.compile(r"^(?P<job>\d+)_(?:(?P<index>\d+)|\[(?P<range>[^\]]+)\])$")


def _expand_range(spec: str) -> list[int]:
    """Expand a sacct index range like ``3-5,8%2`` to ``[3, 4, 5, 8]``."""
    spec = spec.split("%", 1)[0]
    indices: list[int] = []
    for part in spec.split(","):
        if "-" in part:
            start, end = part.split("-", 1)
            indices.extend(range(int(start), int(end) + 1))
        elif part:
            indices.append(int(part))
    return indices


def poll_array_tasks(array_job_id: str) -> dict[int, str]:
    """Query sacct and return a mapping of array index → status.

    Only allocation-level rows are read (``-X``). Unknown sacct states are
    ignored so new Slurm state strings don't break the report.

    Returns
    -------
    dict[int, str]
        Mapping ``{array_index: status}`` where *status* is one of
        ``pending``, ``running``, ``complete``, or ``failed``. Empty when
        sacct is unavailable.
    """
    try:
        result = subprocess.run(
            [
                "sacct",
                "-j", str(array_job_id),
                "-X",
                "--format=JobID,State",
                "--noheader",
                "--parsable2",
            ],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        logger.warning("sacct call failed: %s", exc)
        return {}

    statuses: dict[int, str] = {}
    for line in result.stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split("|")
        if len(parts) < 2:
            continue
        match = _ARRAY_TASK_RE.match(parts[0])
        if match is None or match.group("job") != str(array_job_id):
            continue
        # Strip trailing state qualifiers like "+", " by user"
        sacct_state = parts[1].split()[0].rstrip("+") if parts[1].strip() else ""
        status = _SACCT_TO_STATUS.get(sacct_state)
        if status is None:
            continue
        if match.group("index") is not None:
            statuses[int(match.group("index"))] = status
        else:
            for index in _expand_range(match.group("range")):
                statuses[index] = status

    return statuses


def update_manifest_from_sacct(
    manifest: pd.DataFrame,
    audit: AuditLogger | None = None,
) -> pd.DataFrame:
    """Return a copy of *manifest* with a refreshed ``status`` column.

    Tasks sacct does not report keep their previous status, or ``unknown``
    when none was recorded.

    Raises
    ------
    ValueError
        If the manifest does not hold exactly one job ID.
    """
    job_ids = manifest["job_id"].dropna().astype(str).unique().tolist()
    if len(job_ids) != 1:
        raise ValueError(f"Expected a single array job ID in manifest, found {job_ids}")
    array_job_id = job_ids[0]

    manifest = manifest.copy()
    if "status" not in manifest.columns:
        manifest["status"] = "unknown"

    polled = poll_array_tasks(array_job_id)
    for idx in manifest.index:
        index = int(manifest.at[idx, "array_index"])
        new_status = polled.get(index)
        old_status = manifest.at[idx, "status"]
        if new_status is None or new_status == old_status:
            continue
        logger.info(
            "task %s_%d (%s): %s → %s",
            array_job_id,
            index,
            manifest.at[idx, "subject"],
            old_status,
            new_status,
        )
        manifest.at[idx, "status"] = new_status
        if audit is not None:
            audit.log(
                "status_change",
                subject=manifest.at[idx, "subject"],
                job_id=array_job_id,
                array_task_id=index,
                old_status=old_status,
                new_status=new_status,
            )
    return manifest
