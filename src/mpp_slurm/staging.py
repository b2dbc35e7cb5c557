"""staging.py — moving data between shared storage and node-local scratch.

Three storage tiers are involved:

- the shared study folder (``<studyFolder>/raw/<subject>`` in,
  ``<studyFolder>/preprocessed/...`` and ``<studyFolder>/logs/...`` out),
- the node-local scratch directory of one array task,
- the scheduler log directory holding the ``slurm-%A_%a`` capture files.

Stage-in copies are fatal on failure (:class:`StagingError`): nothing useful
can run on missing data. Stage-out steps never raise; each returns whether it
succeeded so cleanup can carry on and still remove the scratch directory.
"""
from __future__ import annotations

__all__ = [
    "StagingError",
    "Workspace",
    "scratch_dir_name",
    "copy_tree",
    "stage_in",
    "stage_out_results",
    "stage_out_logs",
    "relocate_scheduler_logs",
    "remove_scratch",
]

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from mpp_slurm.config import PipelineOptions
from mpp_slurm.context import JobContext

logger = logging.getLogger(__name__)


class StagingError(RuntimeError):
    """Raised when input data cannot be staged onto the node."""


def scratch_dir_name(options: PipelineOptions, subject: str, job_id: str) -> str:
    """Return the scratch directory name, unique per subject and job."""
    return (
        f"SLURM_{options.brain_extraction_method}_{options.mni_registration_method}"
        f"_{options.class_name}_{subject}_{job_id}"
    )


@dataclass(frozen=True)
class Workspace:
    """All paths one array task reads from and writes to."""

    options: PipelineOptions
    subject: str
    scratch: Path
    toolset_source: Path
    slurm_log_dir: Path

    @classmethod
    def create(
        cls,
        options: PipelineOptions,
        subject: str,
        context: JobContext,
        scratch_root: Path,
        toolset_source: Path,
        slurm_log_dir: Path,
    ) -> "Workspace":
        scratch = scratch_root / scratch_dir_name(options, subject, context.job_id)
        return cls(options, subject, scratch, toolset_source, slurm_log_dir)

    # -- shared storage -----------------------------------------------------

    @property
    def raw_subject_dir(self) -> Path:
        return self.options.study_folder / "raw" / self.subject

    @property
    def permanent_subpath(self) -> Path:
        """``preprocessed/<method>/<registration>/<class>/<subject>``."""
        return Path("preprocessed") / self.options.method_subpath / self.subject

    @property
    def permanent_dir(self) -> Path:
        return self.options.study_folder / self.permanent_subpath

    @property
    def study_log_dir(self) -> Path:
        return self.options.study_folder / "logs" / self.options.method_subpath

    @property
    def slurm_subject_log_dir(self) -> Path:
        return self.slurm_log_dir / self.options.method_subpath

    # -- scratch ------------------------------------------------------------

    @property
    def toolset_dir(self) -> Path:
        return self.scratch / self.toolset_source.name

    @property
    def subject_dir(self) -> Path:
        return self.scratch / self.subject

    @property
    def log_dir(self) -> Path:
        return self.scratch / "logs"

    @property
    def scratch_results_dir(self) -> Path:
        """Where the pipeline writes its permanent outputs, relative to its cwd."""
        return self.scratch / self.options.study_name / self.permanent_subpath


def copy_tree(source: Path, destination: Path, ignore_logs: bool = False) -> None:
    """Recursively copy *source* into *destination*, merging with existing content."""
    ignore = shutil.ignore_patterns("logs") if ignore_logs else None
    shutil.copytree(source, destination, ignore=ignore, dirs_exist_ok=True)


def stage_in(workspace: Workspace) -> None:
    """Create the scratch directory and copy the toolset and raw data into it.

    The toolset's own ``logs/`` subtree is skipped: it holds the scheduler
    capture files that Slurm is still writing.

    Raises
    ------
    StagingError
        If a source directory does not exist or a copy fails.
    """
    workspace.scratch.mkdir(parents=True, exist_ok=True)
    for label, source, destination, ignore_logs in (
        ("pipeline toolset", workspace.toolset_source, workspace.toolset_dir, True),
        ("raw data", workspace.raw_subject_dir, workspace.subject_dir, False),
    ):
        if not source.is_dir():
            raise StagingError(f"Cannot stage {label}: {source} is not a directory")
        logger.info("Staging %s %s -> %s", label, source, destination)
        try:
            copy_tree(source, destination, ignore_logs=ignore_logs)
        except (OSError, shutil.Error) as exc:
            raise StagingError(f"Failed to stage {label} from {source}: {exc}") from exc
    workspace.log_dir.mkdir(parents=True, exist_ok=True)


def _copy_contents(source: Path, destination: Path, label: str) -> bool:
    if not source.is_dir():
        logger.warning("No %s to transfer: %s does not exist", label, source)
        return True
    try:
        destination.mkdir(parents=True, exist_ok=True)
        copy_tree(source, destination)
    except (OSError, shutil.Error) as exc:
        logger.error("Failed to transfer %s from %s to %s: %s", label, source, destination, exc)
        return False
    logger.info("Transferred %s to %s", label, destination)
    return True


def stage_out_results(workspace: Workspace) -> bool:
    """Copy the pipeline's permanent outputs back to the study folder."""
    return _copy_contents(workspace.scratch_results_dir, workspace.permanent_dir, "results")


def stage_out_logs(workspace: Workspace) -> bool:
    """Copy the per-subject pipeline logs back to the study log directory."""
    return _copy_contents(workspace.log_dir, workspace.study_log_dir, "pipeline logs")


def relocate_scheduler_logs(workspace: Workspace, context: JobContext) -> bool:
    """Rename the task's ``slurm-%A_%a`` capture files after the subject.

    Each file is moved to ``<slurm_log_dir>/<method>/<registration>/<class>/
    slurm-<subject>.<ext>`` and a copy is placed in the study log directory.
    Slurm keeps writing to the moved file through its open descriptor.
    """
    ok = True
    for ext in ("out", "err"):
        source = workspace.slurm_log_dir / f"{context.capture_basename}.{ext}"
        if not source.is_file():
            logger.warning("Scheduler log %s not found", source)
            continue
        target = workspace.slurm_subject_log_dir / f"slurm-{workspace.subject}.{ext}"
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
            workspace.study_log_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(target, workspace.study_log_dir / target.name)
        except OSError as exc:
            logger.error("Failed to relocate scheduler log %s: %s", source, exc)
            ok = False
    return ok


def remove_scratch(workspace: Workspace) -> bool:
    """Delete the scratch directory. Missing directories are not an error."""
    if not workspace.scratch.exists():
        return True
    try:
        shutil.rmtree(workspace.scratch)
    except OSError as exc:
        logger.error("Failed to remove scratch directory %s: %s", workspace.scratch, exc)
        return False
    logger.info("Removed scratch directory %s", workspace.scratch)
    return True
