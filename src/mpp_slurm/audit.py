"""audit.py — JSONL audit logger for mpp_slurm.

Submissions, task stage transitions, and polled status changes are appended
as single JSON objects (one line each) to the audit log file. The file is
created (with parent directories) on the first write.

Every array task of a submission appends to the same file on the shared
filesystem, so each event is written with a single ``write`` call.

Typical usage::

    from mpp_slurm.audit import get_logger

    audit = get_logger(config, options.study_folder)
    audit.log("submitted", subject="2,5,10", job_id="12345")
"""
from __future__ import annotations

__all__ = ["AUDIT_EVENTS", "AuditLogger", "get_logger"]

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mpp_slurm.config import ClusterConfig

logger = logging.getLogger(__name__)

#: Valid event names for the audit log.
AUDIT_EVENTS = frozenset(
    {
        "submitted",
        "dry_run",
        "error",
        "staged",
        "pipeline_finished",
        "early_termination",
        "cleanup",
        "status_change",
    }
)


class AuditLogger:
    """Appends structured JSON Lines entries to an audit log file.

    Parameters
    ----------
    log_file:
        Path to the JSONL audit file. Parent directories are created
        automatically on the first write.
    """

    def __init__(self, log_file: Path) -> None:
        self.log_file = log_file

    def log(
        self,
        event: str,
        *,
        subject: str = "",
        job_id: str | None = None,
        array_task_id: int | None = None,
        detail: str = "",
        old_status: str = "",
        new_status: str = "",
        **extra: Any,
    ) -> None:
        """Append a single audit event as a JSON line.

        Parameters
        ----------
        event:
            One of :data:`AUDIT_EVENTS`.
        subject:
            Subject ID the event concerns; empty for array-wide events.
        job_id:
            Slurm job ID string, or ``None`` for dry runs.
        array_task_id:
            1-based array index for task-level events.
        detail:
            Free-text detail message.
        old_status / new_status:
            Used for ``status_change`` events.
        **extra:
            Any additional key-value pairs to include in the log entry.

        Raises
        ------
        ValueError
            If *event* is not a known audit event.
        """
        if event not in AUDIT_EVENTS:
            raise ValueError(f"Unknown audit event {event!r}")
        entry: dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "subject": subject,
            "job_id": job_id,
            "array_task_id": array_task_id,
            "detail": detail,
            "old_status": old_status,
            "new_status": new_status,
        }
        entry.update(extra)

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with self.log_file.open("a") as fh:
            fh.write(json.dumps(entry, default=str) + "\n")

        logger.debug("audit %s: subject=%s job_id=%s task=%s", event, subject, job_id, array_task_id)


def get_logger(config: ClusterConfig, study_folder: Path) -> AuditLogger:
    """Return an :class:`AuditLogger` for *config*.

    Uses ``config.log_file`` when set; otherwise defaults to
    ``<study_folder>/logs/mpp_audit.jsonl``.
    """
    if config.log_file is not None:
        log_file = config.log_file
    else:
        log_file = Path(study_folder) / "logs" / "mpp_audit.jsonl"
    return AuditLogger(log_file)
