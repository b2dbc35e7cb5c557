from __future__ import annotations

import logging
from pathlib import Path

import click

from mpp_slurm.audit import AuditLogger, get_logger
from mpp_slurm.config import (
    BRAIN_EXTRACTION_METHODS,
    CUSTOM_BRAIN_MODES,
    MNI_REGISTRATION_METHODS,
    ClusterConfig,
    PipelineOptions,
)
from mpp_slurm.context import JobContext
from mpp_slurm.manifest import (
    array_spec_from_manifest,
    build_array_manifest,
    load_manifest,
    manifest_path,
    save_manifest,
)
from mpp_slurm.monitor import update_manifest_from_sacct
from mpp_slurm.runner import TaskRunner
from mpp_slurm.subjects import is_subject_file, resolve_subjects
from mpp_slurm.submit import build_job_name, submit_array


def pipeline_options(func):
    """Attach the pipeline option set shared by ``submit`` and ``task``."""
    decorators = [
        click.option(
            "--studyFolder",
            "study_folder",
            required=True,
            metavar="PATH",
            help="Study folder holding raw/<subject> (e.g. /data/raw/ADNI).",
        ),
        click.option(
            "--subjects",
            "--subject",
            "--subjectList",
            "--subjList",
            "subjects",
            required=True,
            metavar="PATH|LIST",
            help="File with subject IDs, or an inline whitespace-separated list.",
        ),
        click.option("--class", "class_name", default="3T", show_default=True, help="Class name (3T, 7T, ...)."),
        click.option("--domainX", "domain_x", default="T1w_MPR", show_default=True, help="Name of domain X."),
        click.option("--domainY", "domain_y", default="T2w_SPC", show_default=True, help="Name of domain Y."),
        click.option(
            "--windowSize",
            "window_size",
            type=int,
            default=30,
            show_default=True,
            help="Window size for bias correction; 20-30 is optimal at 7T.",
        ),
        click.option(
            "--brainSize",
            "brain_size",
            type=int,
            default=150,
            show_default=True,
            help="Average brain size in mm.",
        ),
        click.option(
            "--customBrain",
            "custom_brain",
            type=click.Choice(CUSTOM_BRAIN_MODES),
            default="NONE",
            show_default=True,
            help="MASK or CUSTOM reuse hand-corrected brain images and only run atlas registration.",
        ),
        click.option(
            "--brainExtractionMethod",
            "brain_extraction_method",
            type=click.Choice(BRAIN_EXTRACTION_METHODS),
            default="RPP",
            show_default=True,
            help="Registration (RPP) or segmentation (SPP) based brain extraction.",
        ),
        click.option(
            "--MNIRegistrationMethod",
            "mni_registration_method",
            type=click.Choice(MNI_REGISTRATION_METHODS),
            default="linear",
            show_default=True,
            help="Affine-only (linear) or FNIRT (nonlinear) registration to MNI.",
        ),
        click.option(
            "--printcom",
            "--PRINTCOM",
            "printcom",
            default="",
            metavar="COMMAND",
            help="Dry run: print pipeline commands with COMMAND (e.g. echo) instead of running them.",
        ),
    ]

    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def _make_options(**kwargs) -> PipelineOptions:
    try:
        return PipelineOptions(**kwargs)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    metavar="PATH",
    help="Path to YAML config file. Uses built-in defaults if omitted.",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """mpp-slurm: run the MPP pipeline as a Slurm job array, one task per subject."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    try:
        config = ClusterConfig.from_yaml(config_path) if config_path else ClusterConfig()
    except (ValueError, TypeError) as exc:
        raise click.ClickException(str(exc)) from exc
    ctx.obj["config"] = config
    ctx.obj["config_path"] = str(Path(config_path).resolve()) if config_path else None


@main.command()
@pipeline_options
@click.option("--job-name", "job_name", default=None, help="Suffix of the job allocation name.")
@click.option("--partition", default=None, help="Partition for the allocation.")
@click.option("--exclude", default=None, help="Node(s) to exclude.")
@click.option("--nodes", type=click.IntRange(min=1), default=None, help="Minimum number of nodes per task.")
@click.option("--time", "time_limit", default=None, help="Time limit per task (days-hours:minutes:seconds).")
@click.option("--ntasks", type=click.IntRange(min=1), default=None, help="Maximum number of tasks per allocation.")
@click.option("--mem", default=None, help="Real memory required per node (e.g. 2gb).")
@click.option("--export", "export", default=None, help="Environment variables propagated to the tasks.")
@click.option("--mail-type", "mail_type", default=None, help="Mail notification events (e.g. FAIL,END).")
@click.option("--mail-user", "mail_user", default=None, help="User receiving mail notifications.")
@click.option("--dry-run", is_flag=True, help="Print the sbatch command without submitting.")
@click.pass_context
def submit(
    ctx: click.Context,
    job_name: str | None,
    partition: str | None,
    exclude: str | None,
    nodes: int | None,
    time_limit: str | None,
    ntasks: int | None,
    mem: str | None,
    export: str | None,
    mail_type: str | None,
    mail_user: str | None,
    dry_run: bool,
    **pipeline_kwargs,
) -> None:
    """Submit one job array covering every subject."""
    config: ClusterConfig = ctx.obj["config"]
    overrides = {
        "job_name": job_name,
        "slurm_partition": partition,
        "slurm_exclude": exclude,
        "slurm_nodes": nodes,
        "slurm_time": time_limit,
        "slurm_ntasks": ntasks,
        "slurm_mem": mem,
        "slurm_export": export,
        "slurm_mail_type": mail_type,
        "slurm_mail_user": mail_user,
    }
    for attr, value in overrides.items():
        if value is not None:
            setattr(config, attr, value)
    # Tasks run with SLURM_SUBMIT_DIR set to this directory; pin it now.
    config.submit_dir = config.resolve_submit_dir().resolve()

    subjects_arg = pipeline_kwargs["subjects"]
    if is_subject_file(subjects_arg):
        pipeline_kwargs["subjects"] = str(Path(subjects_arg).resolve())
    if pipeline_kwargs["study_folder"]:
        pipeline_kwargs["study_folder"] = Path(pipeline_kwargs["study_folder"]).expanduser().absolute()
    options = _make_options(**pipeline_kwargs)

    subjects = resolve_subjects(options.subjects)
    if not subjects:
        raise click.UsageError(f"No subject IDs found in {options.subjects!r}")
    manifest = build_array_manifest(subjects)
    click.echo(f"Resolved {len(subjects)} subject(s); array {array_spec_from_manifest(manifest)}.")

    audit = get_logger(config, options.study_folder)
    job_id = submit_array(
        options,
        config,
        subjects,
        dry_run=dry_run,
        audit=audit,
        config_path=ctx.obj["config_path"],
    )
    if job_id is None:
        click.echo(f"[DRY RUN] Would submit {len(subjects)} array task(s).")
        return

    manifest["job_id"] = job_id
    manifest["audit_log"] = str(audit.log_file)
    path = manifest_path(config.resolve_slurm_log_dir(), build_job_name(options, config), job_id)
    save_manifest(manifest, path)
    click.echo(f"Submitted job array {job_id} with {len(subjects)} task(s). Manifest saved to {path}.")


@main.command()
@pipeline_options
@click.pass_context
def task(ctx: click.Context, **pipeline_kwargs) -> None:
    """Run one array task: stage data, run MPP.sh, stage results back.

    Reads the array index and job identity from the Slurm environment.
    """
    config: ClusterConfig = ctx.obj["config"]
    options = _make_options(**pipeline_kwargs)
    try:
        context = JobContext.from_environ()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    runner = TaskRunner(options, context, config, audit=get_logger(config, options.study_folder))
    ctx.exit(runner.run())


@main.command(name="manifest")
@click.option(
    "--subjects",
    "--subject",
    "--subjectList",
    "--subjList",
    "subjects",
    required=True,
    metavar="PATH|LIST",
    help="File with subject IDs, or an inline whitespace-separated list.",
)
def show_manifest(subjects: str) -> None:
    """Show the array index assigned to each subject without submitting."""
    resolved = resolve_subjects(subjects)
    if not resolved:
        click.echo("No subjects found.")
        return
    manifest = build_array_manifest(resolved)
    click.echo(manifest.to_string(index=False))
    click.echo(f"--array={array_spec_from_manifest(manifest)}")


def _status_audit(config: ClusterConfig, manifest) -> AuditLogger | None:
    # Prefer the configured log; otherwise the one recorded at submission.
    if config.log_file is not None:
        return AuditLogger(config.log_file)
    if "audit_log" in manifest.columns and manifest["audit_log"].notna().any():
        return AuditLogger(Path(manifest["audit_log"].dropna().iloc[0]))
    return None


@main.command()
@click.option(
    "--manifest",
    "manifest_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Manifest CSV written by 'submit'.",
)
@click.pass_context
def status(ctx: click.Context, manifest_file: str) -> None:
    """Poll sacct, record the state of every subject in the manifest, and show it."""
    config: ClusterConfig = ctx.obj["config"]
    try:
        manifest = load_manifest(manifest_file)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    audit = _status_audit(config, manifest)
    try:
        updated = update_manifest_from_sacct(manifest, audit=audit)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    save_manifest(updated, Path(manifest_file))
    click.echo(updated[["array_index", "subject", "status"]].to_string(index=False))
    counts = updated["status"].value_counts()
    click.echo("  ".join(f"{name}: {count}" for name, count in counts.items()))
