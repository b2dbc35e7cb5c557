"""runner.py — one array task: stage, run MPP.sh, stage back.

A task moves through ``setup → execute → cleanup``. Cleanup runs exactly
once on every exit path: normal completion, a failed stage, a failed
pipeline, or an intercepted termination signal (Slurm sends SIGTERM when the
time limit expires). SIGKILL cannot be intercepted; a task killed that way
leaves its scratch directory behind.

Typical usage::

    from mpp_slurm.context import JobContext
    from mpp_slurm.runner import TaskRunner

    runner = TaskRunner(options, JobContext.from_environ(), config)
    sys.exit(runner.run())
"""
from __future__ import annotations

__all__ = [
    "EXIT_OK",
    "EXIT_SUBJECT_RESOLUTION",
    "EXIT_STAGING",
    "EXIT_NO_INPUTS",
    "EXIT_CLEANUP",
    "EXIT_PIPELINE_MISSING",
    "TERMINATION_SIGNALS",
    "EarlyTermination",
    "TaskRunner",
]

import contextlib
import logging
import shlex
import signal
import subprocess
from typing import TYPE_CHECKING, Iterator

from mpp_slurm.config import ClusterConfig, PipelineOptions
from mpp_slurm.context import JobContext, allocated_hosts
from mpp_slurm.pipeline import (
    InputError,
    build_pipeline_command,
    collect_domain_images,
    resolve_templates,
)
from mpp_slurm.staging import (
    StagingError,
    Workspace,
    relocate_scheduler_logs,
    remove_scratch,
    stage_in,
    stage_out_logs,
    stage_out_results,
)
from mpp_slurm.subjects import SubjectResolutionError, resolve_subjects, subject_for_task

if TYPE_CHECKING:
    from mpp_slurm.audit import AuditLogger

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SUBJECT_RESOLUTION = 3
EXIT_STAGING = 4
EXIT_NO_INPUTS = 5
EXIT_CLEANUP = 6
EXIT_PIPELINE_MISSING = 127

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGSEGV)


class EarlyTermination(Exception):
    """Raised from the signal handler to unwind the task."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"terminated by signal {signum}")
        self.signum = signum


class TaskRunner:
    """Runs one subject of a job array.

    Parameters
    ----------
    options:
        Pipeline options forwarded by the submitter.
    context:
        Slurm identity of this task.
    config:
        Cluster configuration (scratch root, template roots, pipeline script).
    audit:
        Optional audit logger for stage transitions.
    """

    def __init__(
        self,
        options: PipelineOptions,
        context: JobContext,
        config: ClusterConfig,
        audit: AuditLogger | None = None,
    ) -> None:
        self.options = options
        self.context = context
        self.config = config
        self.audit = audit
        self.subject: str | None = None
        self.workspace: Workspace | None = None
        self._cleaned = False
        self._interruptible = False
        self._terminated = False
        self._pending_signal: int | None = None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def setup(self) -> None:
        """Resolve the subject, create scratch, and stage inputs.

        Raises
        ------
        SubjectResolutionError
            If the array index does not map to a subject.
        StagingError
            If the toolset or the subject's raw data cannot be staged.
        """
        subjects = resolve_subjects(self.options.subjects)
        self.subject = subject_for_task(subjects, self.context.array_task_id)
        toolset = self.config.pipeline_dir or self.context.submit_dir
        self.workspace = Workspace.create(
            self.options,
            self.subject,
            self.context,
            scratch_root=self.config.scratch_root,
            toolset_source=toolset,
            slurm_log_dir=self.config.resolve_slurm_log_dir(self.context.submit_dir),
        )
        self._print_banner()
        print(f"Transferring files from server to compute node {self.context.node_name}")
        stage_in(self.workspace)
        self._audit("staged", detail=str(self.workspace.scratch))

    def execute(self) -> int:
        """Discover inputs and run the pipeline; return its exit status.

        When ``printcom`` is set the command is printed instead of run.

        Raises
        ------
        InputError
            If no domain X image is found for the subject.
        """
        ws = self._require_workspace()
        x_images = collect_domain_images(ws.subject_dir, ws.subject, self.options.class_name, self.options.domain_x)
        print(f"Found {len(x_images)} {self.options.domain_x} Images for subject {ws.subject}")
        y_images = collect_domain_images(ws.subject_dir, ws.subject, self.options.class_name, self.options.domain_y)
        print(f"Found {len(y_images)} {self.options.domain_y} Images for subject {ws.subject}")
        if not x_images:
            raise InputError(
                f"No {self.options.domain_x} images for subject {ws.subject} under {ws.subject_dir}"
            )
        if not y_images:
            logger.warning("No %s images for subject %s", self.options.domain_y, ws.subject)

        templates = resolve_templates(self.config.template_root, self.config.pipeline_config_root)
        cmd = build_pipeline_command(
            ws.toolset_dir / self.config.pipeline_script,
            self.options,
            ws.subject,
            x_images,
            y_images,
            templates,
        )
        printable = shlex.join(cmd)

        if self.options.dry_run:
            logger.info("[DRY RUN] Would run: %s", printable)
            print(f"[DRY RUN] Would run: {printable}")
            return EXIT_OK

        logger.info("Running: %s", printable)
        out_log = ws.log_dir / f"{ws.subject}.out"
        err_log = ws.log_dir / f"{ws.subject}.err"
        try:
            with out_log.open("w") as out, err_log.open("w") as err:
                result = subprocess.run(cmd, cwd=ws.scratch, stdout=out, stderr=err)
        except OSError as exc:
            logger.error("Cannot start pipeline %s: %s", cmd[0], exc)
            self._audit("error", detail=f"pipeline not started: {exc}")
            return EXIT_PIPELINE_MISSING
        rc = result.returncode
        if rc < 0:
            # Killed by a signal; report it the way a shell would.
            logger.error("Pipeline for subject %s was killed by signal %d", ws.subject, -rc)
            rc = 128 - rc
        elif rc != 0:
            logger.error("Pipeline failed for subject %s with exit code %d", ws.subject, rc)
        self._audit("pipeline_finished", detail=f"exit code {rc}", returncode=rc)
        return rc

    def cleanup(self) -> list[str]:
        """Stage outputs back and delete scratch; safe to call repeatedly.

        Only the first call does any work. Returns the names of the steps
        that failed (empty when everything succeeded or nothing was staged).
        """
        if self._cleaned:
            return []
        self._cleaned = True
        ws = self.workspace
        if ws is None:
            return []

        print(" ")
        print("Transferring files from node to server")
        print(f"Writing files in permanent directory {ws.permanent_dir}")
        failed = []
        if not stage_out_results(ws):
            failed.append("results")
        if not stage_out_logs(ws):
            failed.append("logs")
        if not relocate_scheduler_logs(ws, self.context):
            failed.append("scheduler_logs")
        if not remove_scratch(ws):
            failed.append("scratch")
        if not failed:
            print("Files transferred to permanent directory, temporary directory removed")
        self._audit("cleanup", detail=",".join(failed) or "ok")
        return failed

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(self) -> int:
        """Run all stages and return the task's exit status."""
        rc = EXIT_OK
        with self.termination_handlers():
            try:
                self._interruptible = True
                try:
                    self.setup()
                    rc = self.execute()
                finally:
                    # From here on a signal is recorded, not raised.
                    self._interruptible = False
            except EarlyTermination as exc:
                self._audit("early_termination", detail=str(exc))
                rc = 128 + exc.signum
            except SubjectResolutionError as exc:
                logger.error("%s", exc)
                self._audit("error", detail=str(exc))
                rc = EXIT_SUBJECT_RESOLUTION
            except StagingError as exc:
                logger.error("%s", exc)
                self._audit("error", detail=str(exc))
                rc = EXIT_STAGING
            except InputError as exc:
                logger.error("%s", exc)
                self._audit("error", detail=str(exc))
                rc = EXIT_NO_INPUTS
            finally:
                failed = self.cleanup()
        if self._pending_signal is not None:
            self._audit("early_termination", detail=f"signal {self._pending_signal} received while unwinding")
            return 128 + self._pending_signal
        if failed and rc == EXIT_OK:
            rc = EXIT_CLEANUP
        return rc

    @contextlib.contextmanager
    def termination_handlers(self) -> Iterator[None]:
        """Install :meth:`handle_signal` for :data:`TERMINATION_SIGNALS`.

        The previous handlers are restored on exit.
        """
        previous = {}
        for signum in TERMINATION_SIGNALS:
            previous[signum] = signal.signal(signum, self.handle_signal)
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    def handle_signal(self, signum: int, frame) -> None:
        """Abort setup or the pipeline; once unwinding, only record *signum*.

        A signal that arrives after the main stages have finished (or while
        cleanup runs) must not interrupt cleanup, so it is kept and reported
        as the task's exit status after cleanup completes.
        """
        if not self._interruptible:
            if self._pending_signal is None and not self._terminated:
                self._pending_signal = signum
                self._print_termination_banner()
            logger.warning("Deferring signal %d until cleanup has finished", signum)
            return
        self._interruptible = False
        self._terminated = True
        self._print_termination_banner()
        logger.warning("Received signal %d during task %d", signum, self.context.array_task_id)
        raise EarlyTermination(signum)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _print_termination_banner(self) -> None:
        print(" ")
        print(" ############ WARNING:  EARLY TERMINATION #############")
        print(" ")

    def _require_workspace(self) -> Workspace:
        if self.workspace is None:
            raise RuntimeError("setup() must run before execute()")
        return self.workspace

    def _print_banner(self) -> None:
        ctx = self.context
        hosts = allocated_hosts(ctx)
        print("------------------------------------------------------")
        print(f" This job is allocated on {len(hosts)} node(s)")
        print("------------------------------------------------------")
        print(f"SLURM: sbatch is running on {ctx.submit_host}")
        print(f"SLURM: server calling directory is {ctx.submit_dir}")
        print(f"SLURM: node is {ctx.node_name}")
        print(f"SLURM: node working directory is {self.workspace.scratch}")
        print(f"SLURM: job name is {ctx.job_name}")
        print(f"SLURM: master job identifier of the job array is {ctx.array_job_id}")
        print(f"SLURM: job array index identifier is {ctx.array_task_id}")
        print(f"SLURM: job identifier-sum master job ID and job array index is {ctx.job_id}")
        print(f"subject: {self.subject}")
        print(f"class: {self.options.class_name}")
        print(f"domainX: {self.options.domain_x}")
        print(f"domainY: {self.options.domain_y}")
        print(f"MNIRegistrationMethod: {self.options.mni_registration_method}")
        print(f"windowSize: {self.options.window_size}")
        print(f"printcom: {self.options.printcom}")

    def _audit(self, event: str, **kwargs) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event,
            subject=self.subject or "",
            job_id=self.context.job_id,
            array_task_id=self.context.array_task_id,
            **kwargs,
        )
