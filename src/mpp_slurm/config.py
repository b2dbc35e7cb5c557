from __future__ import annotations

__all__ = [
    "CUSTOM_BRAIN_MODES",
    "BRAIN_EXTRACTION_METHODS",
    "MNI_REGISTRATION_METHODS",
    "PipelineOptions",
    "ClusterConfig",
]

from dataclasses import dataclass, field
from pathlib import Path

import yaml

CUSTOM_BRAIN_MODES = ("NONE", "MASK", "CUSTOM")
BRAIN_EXTRACTION_METHODS = ("RPP", "SPP")
MNI_REGISTRATION_METHODS = ("linear", "nonlinear")


@dataclass
class PipelineOptions:
    """Parameters forwarded from the submitter to every array task."""

    study_folder: Path
    subjects: str  # path to a subjects file, or an inline whitespace-separated list
    class_name: str = "3T"
    domain_x: str = "T1w_MPR"
    domain_y: str = "T2w_SPC"
    window_size: int = 30
    brain_size: int = 150
    custom_brain: str = "NONE"
    brain_extraction_method: str = "RPP"
    mni_registration_method: str = "linear"
    printcom: str = ""  # non-empty → dry run, e.g. "echo"

    def __post_init__(self) -> None:
        """Normalise paths and reject unsupported enum values.

        Raises
        ------
        ValueError
            If a mandatory value is empty or an enum-valued option is not
            one of its supported values.
        """
        if not str(self.study_folder):
            raise ValueError("study_folder is required")
        if not str(self.subjects).strip():
            raise ValueError("subjects is required")
        self.study_folder = Path(self.study_folder)
        for name, value, allowed in (
            ("custom_brain", self.custom_brain, CUSTOM_BRAIN_MODES),
            ("brain_extraction_method", self.brain_extraction_method, BRAIN_EXTRACTION_METHODS),
            ("mni_registration_method", self.mni_registration_method, MNI_REGISTRATION_METHODS),
        ):
            if value not in allowed:
                raise ValueError(
                    f"Unsupported {name} {value!r}. Supported: {', '.join(allowed)}"
                )

    @property
    def study_name(self) -> str:
        return self.study_folder.name

    @property
    def method_subpath(self) -> Path:
        """``<method>/<registration>/<class>``, shared by outputs and logs."""
        return Path(self.brain_extraction_method) / self.mni_registration_method / self.class_name

    @property
    def dry_run(self) -> bool:
        return bool(self.printcom)

    def to_cli_args(self) -> list[str]:
        """Return the option list that reproduces these options on the task CLI."""
        return [
            f"--studyFolder={self.study_folder}",
            f"--subjects={self.subjects}",
            f"--class={self.class_name}",
            f"--domainX={self.domain_x}",
            f"--domainY={self.domain_y}",
            f"--windowSize={self.window_size}",
            f"--brainSize={self.brain_size}",
            f"--customBrain={self.custom_brain}",
            f"--brainExtractionMethod={self.brain_extraction_method}",
            f"--MNIRegistrationMethod={self.mni_registration_method}",
            f"--printcom={self.printcom}",
        ]


@dataclass
class ClusterConfig:
    """Slurm defaults and site path conventions in one place."""

    # Slurm settings
    job_name: str = "RFLab"
    slurm_partition: str = "standard"
    slurm_exclude: str = ""  # omitted from sbatch if empty
    slurm_nodes: int = 1
    slurm_time: str = "0-05:00:00"
    slurm_ntasks: int = 1
    slurm_mem: str = "2gb"
    slurm_export: str = "ALL"
    slurm_mail_type: str = "FAIL,END"
    slurm_mail_user: str = ""  # omitted from sbatch if empty

    # Directory sbatch is invoked from; defaults to the current directory at runtime.
    submit_dir: Path | None = None

    # Scheduler stdout/stderr capture. Defaults to <submit_dir>/logs/slurm.
    slurm_log_dir: Path | None = None

    # Node-local scratch root; one subdirectory per array task.
    scratch_root: Path = field(default_factory=lambda: Path("/tmp/work"))

    # Pipeline toolset copied to every node. Defaults to the submit directory.
    pipeline_dir: Path | None = None
    pipeline_script: str = "MPP.sh"

    # Read-only shared resources
    template_root: Path = field(default_factory=lambda: Path("/opt/MPP/templates/MNI"))
    pipeline_config_root: Path = field(default_factory=lambda: Path("/opt/MPP/config"))

    # Command that starts the per-task runner on the node.
    runner_command: str = "mpp-slurm"

    # JSONL audit log. Defaults to <study_folder>/logs/mpp_audit.jsonl at runtime.
    log_file: Path | None = None

    def __post_init__(self) -> None:
        if self.slurm_nodes < 1:
            raise ValueError(f"slurm_nodes must be >= 1, got {self.slurm_nodes}")
        if self.slurm_ntasks < 1:
            raise ValueError(f"slurm_ntasks must be >= 1, got {self.slurm_ntasks}")
        if not self.pipeline_script:
            raise ValueError("pipeline_script must not be empty")

    def resolve_submit_dir(self) -> Path:
        return self.submit_dir if self.submit_dir is not None else Path.cwd()

    def resolve_slurm_log_dir(self, submit_dir: Path | None = None) -> Path:
        """Return the scheduler log directory.

        Uses ``slurm_log_dir`` when set; otherwise ``<submit_dir>/logs/slurm``
        where *submit_dir* falls back to :meth:`resolve_submit_dir`.
        """
        if self.slurm_log_dir is not None:
            return self.slurm_log_dir
        base = submit_dir if submit_dir is not None else self.resolve_submit_dir()
        return base / "logs" / "slurm"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "ClusterConfig":
        """Load config from a YAML file, overriding defaults.

        Raises
        ------
        ValueError
            If the file contains invalid YAML syntax or an unknown key.
        FileNotFoundError
            If *path* does not exist.
        """
        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config key(s) in {path}: {sorted(unknown)}")

        path_fields = {
            "submit_dir", "slurm_log_dir", "scratch_root", "pipeline_dir",
            "template_root", "pipeline_config_root", "log_file",
        }
        for key in path_fields:
            if data.get(key) is not None:
                data[key] = Path(data[key])

        return cls(**data)
