from __future__ import annotations

__all__ = ["build_job_name", "build_runner_command", "build_sbatch_command", "submit_array"]

import logging
import shlex
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

from mpp_slurm.config import ClusterConfig, PipelineOptions
from mpp_slurm.subjects import build_array_spec

if TYPE_CHECKING:
    from mpp_slurm.audit import AuditLogger

logger = logging.getLogger(__name__)


def build_job_name(options: PipelineOptions, config: ClusterConfig) -> str:
    """Return ``<study>_<method>_<registration>_<class>_<jobName>``."""
    return "_".join(
        [
            options.study_name,
            options.brain_extraction_method,
            options.mni_registration_method,
            options.class_name,
            config.job_name,
        ]
    )


def build_runner_command(
    options: PipelineOptions,
    config: ClusterConfig,
    config_path: str | Path | None = None,
) -> list[str]:
    """Return the per-task runner command line run inside each array task."""
    cmd = shlex.split(config.runner_command)
    if config_path is not None:
        cmd += ["--config", str(config_path)]
    cmd.append("task")
    cmd += options.to_cli_args()
    return cmd


def build_sbatch_command(
    options: PipelineOptions,
    config: ClusterConfig,
    subjects: list[str],
    config_path: str | Path | None = None,
) -> list[str]:
    """Build the single ``sbatch`` job-array command covering *subjects*.

    ``--exclude`` and ``--mail-user`` are included only when set, so sites
    without excluded nodes or mail notification can leave them blank. The
    runner command line is passed through ``--wrap``.

    Raises
    ------
    ValueError
        If *subjects* is empty.
    """
    array = build_array_spec(subjects)
    log_dir = config.resolve_slurm_log_dir()
    cmd = [
        "sbatch",
        f"--job-name={build_job_name(options, config)}",
        f"--partition={config.slurm_partition}",
    ]
    if config.slurm_exclude:
        cmd.append(f"--exclude={config.slurm_exclude}")
    cmd += [
        f"--nodes={config.slurm_nodes}",
        f"--time={config.slurm_time}",
        f"--ntasks={config.slurm_ntasks}",
        f"--export={config.slurm_export}",
        f"--mail-type={config.slurm_mail_type}",
    ]
    if config.slurm_mail_user:
        cmd.append(f"--mail-user={config.slurm_mail_user}")
    cmd += [
        f"--mem={config.slurm_mem}",
        f"--array={array}",
        f"--output={log_dir}/slurm-%A_%a.out",
        f"--error={log_dir}/slurm-%A_%a.err",
        "--wrap",
        shlex.join(build_runner_command(options, config, config_path)),
    ]
    return cmd


def submit_array(
    options: PipelineOptions,
    config: ClusterConfig,
    subjects: list[str],
    dry_run: bool = False,
    audit: AuditLogger | None = None,
    config_path: str | Path | None = None,
) -> str | None:
    """Submit one job array covering *subjects* via sbatch.

    The scheduler log directory is created before submission so Slurm can
    open the ``slurm-%A_%a`` capture files.

    Parameters
    ----------
    options:
        Pipeline options forwarded verbatim to every array task.
    config:
        Cluster configuration supplying Slurm settings and paths.
    subjects:
        Sorted subject list; array index *i* maps to ``subjects[i - 1]``.
    dry_run:
        When *True*, prints the command that would be run and returns *None*
        without calling sbatch.

    Returns
    -------
    str or None
        The Slurm job ID string on success, or *None* for dry runs.

    Raises
    ------
    RuntimeError
        If sbatch exits successfully but its stdout does not match the
        expected ``"Submitted batch job <ID>"`` format.
    subprocess.CalledProcessError
        If sbatch exits with a non-zero status.
    """
    cmd = build_sbatch_command(options, config, subjects, config_path=config_path)
    printable = shlex.join(cmd)
    array_detail = f"{len(subjects)} subject(s)"

    if dry_run:
        logger.info("[DRY RUN] Would submit: %s", printable)
        print(f"[DRY RUN] Would submit: {printable}")
        if audit is not None:
            audit.log("dry_run", detail=printable, n_subjects=len(subjects))
        return None

    config.resolve_slurm_log_dir().mkdir(parents=True, exist_ok=True)
    logger.info("Submitting job array (%s): %s", array_detail, printable)
    print(f"Submitting: {printable}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
            cwd=config.resolve_submit_dir(),
        )
    except subprocess.CalledProcessError as e:
        if audit is not None:
            audit.log("error", detail=f"sbatch failed: {e.stderr or e}")
        raise
    # sbatch stdout: "Submitted batch job 12345"
    output = result.stdout.strip()
    if not output.startswith("Submitted batch job "):
        raise RuntimeError(
            f"Unexpected sbatch output: {output!r}. "
            "Expected format: 'Submitted batch job <ID>'"
        )
    job_id = output.split()[-1]
    if audit is not None:
        audit.log("submitted", job_id=job_id, detail=printable, n_subjects=len(subjects))
    return job_id
