"""context.py — the Slurm job context of a single array task.

The scheduler describes each task through ``$SLURM_*`` environment
variables. They are read once, at the CLI boundary, into a
:class:`JobContext`; everything downstream receives that value object.

Typical usage::

    from mpp_slurm.context import JobContext

    ctx = JobContext.from_environ()
    ctx.array_task_id   # 1-based index into the sorted subject list
"""
from __future__ import annotations

__all__ = ["JobContext", "allocated_hosts"]

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

# Variables that must be present for a task to run at all.
_REQUIRED_VARS = ("SLURM_ARRAY_TASK_ID", "SLURM_JOB_ID", "SLURM_SUBMIT_DIR")


@dataclass(frozen=True)
class JobContext:
    """Scheduler-provided identity of one array task."""

    submit_host: str
    node_name: str
    submit_dir: Path
    job_name: str
    array_job_id: str
    array_task_id: int
    job_id: str
    node_list: str = ""

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "JobContext":
        """Build a context from ``$SLURM_*`` variables.

        Parameters
        ----------
        environ:
            Mapping to read from; defaults to :data:`os.environ`.

        Raises
        ------
        ValueError
            If a required variable is missing or ``SLURM_ARRAY_TASK_ID`` is
            not an integer (i.e. the task was not started as part of an array).
        """
        env = os.environ if environ is None else environ
        missing = [name for name in _REQUIRED_VARS if not env.get(name)]
        if missing:
            raise ValueError(
                f"Missing Slurm environment variable(s): {', '.join(missing)}. "
                "Is this running inside a Slurm array task?"
            )
        try:
            task_id = int(env["SLURM_ARRAY_TASK_ID"])
        except ValueError as exc:
            raise ValueError(
                f"SLURM_ARRAY_TASK_ID is not an integer: {env['SLURM_ARRAY_TASK_ID']!r}"
            ) from exc
        return cls(
            submit_host=env.get("SLURM_SUBMIT_HOST", ""),
            node_name=env.get("SLURMD_NODENAME", ""),
            submit_dir=Path(env["SLURM_SUBMIT_DIR"]),
            job_name=env.get("SLURM_JOB_NAME", ""),
            array_job_id=env.get("SLURM_ARRAY_JOB_ID", env["SLURM_JOB_ID"]),
            array_task_id=task_id,
            job_id=env["SLURM_JOB_ID"],
            node_list=env.get("SLURM_JOB_NODELIST", ""),
        )

    @property
    def capture_basename(self) -> str:
        """Basename of the scheduler's ``slurm-%A_%a`` capture files."""
        return f"slurm-{self.array_job_id}_{self.array_task_id}"


def allocated_hosts(context: JobContext) -> list[str]:
    """Return the hostnames in ``context.node_list``.

    Expands the compressed node list with ``scontrol show hostnames``. When
    ``scontrol`` is unavailable or fails, falls back to the task's own node.
    """
    fallback = [context.node_name] if context.node_name else []
    if not context.node_list:
        return fallback
    try:
        result = subprocess.run(
            ["scontrol", "show", "hostnames", context.node_list],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        logger.warning("scontrol call failed: %s", exc)
        return fallback
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]
