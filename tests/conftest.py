import os
import stat

import pytest

from mpp_slurm.config import ClusterConfig, PipelineOptions
from mpp_slurm.context import JobContext


# ---------------------------------------------------------------------------
# Fake pipeline toolset
# ---------------------------------------------------------------------------

# Stand-in for MPP.sh: writes one result file under the permanent output
# layout (relative to its working directory) and exits with $MPP_FAKE_EXIT.
FAKE_PIPELINE = """#!/bin/sh
for arg in "$@"; do
  case "$arg" in
    --studyName=*) study="${arg#--studyName=}" ;;
    --subject=*) subject="${arg#--subject=}" ;;
    --class=*) class="${arg#--class=}" ;;
    --brainExtractionMethod=*) method="${arg#--brainExtractionMethod=}" ;;
    --MNIRegistrationMethod=*) registration="${arg#--MNIRegistrationMethod=}" ;;
  esac
done
out="$study/preprocessed/$method/$registration/$class/$subject"
mkdir -p "$out"
echo done > "$out/result.txt"
echo "pipeline ran for $subject"
echo "pipeline warning" >&2
exit ${MPP_FAKE_EXIT:-0}
"""


def make_toolset(root):
    """Create a pipeline directory holding an executable fake MPP.sh."""
    root.mkdir(parents=True, exist_ok=True)
    script = root / "MPP.sh"
    script.write_text(FAKE_PIPELINE)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return root


def make_images(study, subject, class_name="3T", domain="T1w_MPR", count=1):
    """Create *count* raw images following the <subject>_-_<class>_-_<domain>N naming."""
    paths = []
    for i in range(1, count + 1):
        d = study / "raw" / subject / class_name / f"{domain}{i}"
        d.mkdir(parents=True, exist_ok=True)
        p = d / f"{subject}_-_{class_name}_-_{domain}{i}.nii.gz"
        p.touch()
        paths.append(p)
    return paths


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def study(tmp_path):
    """Study folder with three subjects, each holding one T1w and one T2w image."""
    study = tmp_path / "ADNI"
    for subject in ("2", "5", "10"):
        make_images(study, subject, domain="T1w_MPR")
        make_images(study, subject, domain="T2w_SPC")
    (study / "subjects.txt").write_text("5\n2\n10")
    return study


@pytest.fixture
def submit_dir(tmp_path):
    """Submit directory doubling as the pipeline toolset, with a Slurm log dir."""
    root = make_toolset(tmp_path / "MPP")
    (root / "logs" / "slurm").mkdir(parents=True)
    return root


@pytest.fixture
def cfg(tmp_path, submit_dir):
    """ClusterConfig pointing at temporary directories."""
    return ClusterConfig(
        submit_dir=submit_dir,
        scratch_root=tmp_path / "scratch",
        template_root=tmp_path / "templates",
        pipeline_config_root=tmp_path / "config",
        log_file=tmp_path / "audit.jsonl",
    )


@pytest.fixture
def options(study):
    return PipelineOptions(study_folder=study, subjects=str(study / "subjects.txt"))


def make_context(submit_dir, task_id=1, array_job_id="100", job_id=None):
    return JobContext(
        submit_host="login1",
        node_name="node10",
        submit_dir=submit_dir,
        job_name="ADNI_RPP_linear_3T_RFLab",
        array_job_id=array_job_id,
        array_task_id=task_id,
        job_id=job_id or f"{int(array_job_id) + task_id}",
    )


@pytest.fixture
def slurm_env(submit_dir, monkeypatch):
    """Populate the Slurm variables of array task 2 of job 100."""
    env = {
        "SLURM_SUBMIT_HOST": "login1",
        "SLURMD_NODENAME": "node10",
        "SLURM_SUBMIT_DIR": str(submit_dir),
        "SLURM_JOB_NAME": "ADNI_RPP_linear_3T_RFLab",
        "SLURM_ARRAY_JOB_ID": "100",
        "SLURM_ARRAY_TASK_ID": "2",
        "SLURM_JOB_ID": "102",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("SLURM_JOB_NODELIST", raising=False)
    monkeypatch.delenv("MPP_FAKE_EXIT", raising=False)
    return dict(os.environ)
