from pathlib import Path

import pytest

from mpp_slurm.config import ClusterConfig, PipelineOptions


# ---------------------------------------------------------------------------
# ClusterConfig defaults
# ---------------------------------------------------------------------------


def test_defaults():
    cfg = ClusterConfig()
    assert cfg.job_name == "RFLab"
    assert cfg.slurm_partition == "standard"
    assert cfg.slurm_exclude == ""
    assert cfg.slurm_nodes == 1
    assert cfg.slurm_time == "0-05:00:00"
    assert cfg.slurm_ntasks == 1
    assert cfg.slurm_mem == "2gb"
    assert cfg.slurm_export == "ALL"
    assert cfg.slurm_mail_type == "FAIL,END"
    assert cfg.scratch_root == Path("/tmp/work")
    assert cfg.pipeline_script == "MPP.sh"


def test_invalid_nodes_rejected():
    with pytest.raises(ValueError, match="slurm_nodes"):
        ClusterConfig(slurm_nodes=0)


def test_empty_pipeline_script_rejected():
    with pytest.raises(ValueError, match="pipeline_script"):
        ClusterConfig(pipeline_script="")


# ---------------------------------------------------------------------------
# Derived directories
# ---------------------------------------------------------------------------


def test_submit_dir_defaults_to_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert ClusterConfig().resolve_submit_dir() == tmp_path


def test_slurm_log_dir_defaults_under_submit_dir(tmp_path):
    cfg = ClusterConfig(submit_dir=tmp_path)
    assert cfg.resolve_slurm_log_dir() == tmp_path / "logs" / "slurm"


def test_slurm_log_dir_uses_given_submit_dir(tmp_path):
    cfg = ClusterConfig()
    assert cfg.resolve_slurm_log_dir(tmp_path / "MPP") == tmp_path / "MPP" / "logs" / "slurm"


def test_slurm_log_dir_explicit_wins(tmp_path):
    cfg = ClusterConfig(submit_dir=tmp_path, slurm_log_dir=tmp_path / "elsewhere")
    assert cfg.resolve_slurm_log_dir(tmp_path / "MPP") == tmp_path / "elsewhere"


# ---------------------------------------------------------------------------
# from_yaml
# ---------------------------------------------------------------------------


def test_from_yaml_overrides_and_converts_paths(tmp_path):
    yaml_file = tmp_path / "cluster.yaml"
    yaml_file.write_text(
        "slurm_partition: workstation\n"
        "slurm_mem: 16gb\n"
        f"scratch_root: {tmp_path / 'scratch'}\n"
        f"template_root: {tmp_path / 'templates'}\n"
    )
    cfg = ClusterConfig.from_yaml(yaml_file)
    assert cfg.slurm_partition == "workstation"
    assert cfg.slurm_mem == "16gb"
    assert cfg.scratch_root == tmp_path / "scratch"
    assert isinstance(cfg.template_root, Path)
    assert cfg.slurm_nodes == 1


def test_from_yaml_empty_file_gives_defaults(tmp_path):
    yaml_file = tmp_path / "cluster.yaml"
    yaml_file.write_text("")
    assert ClusterConfig.from_yaml(yaml_file) == ClusterConfig()


def test_from_yaml_invalid_syntax(tmp_path):
    yaml_file = tmp_path / "cluster.yaml"
    yaml_file.write_text("slurm_partition: [unclosed\n")
    with pytest.raises(ValueError, match="Invalid YAML"):
        ClusterConfig.from_yaml(yaml_file)


def test_from_yaml_unknown_key(tmp_path):
    yaml_file = tmp_path / "cluster.yaml"
    yaml_file.write_text("slurm_qos: high\n")
    with pytest.raises(ValueError, match="slurm_qos"):
        ClusterConfig.from_yaml(yaml_file)


def test_from_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ClusterConfig.from_yaml(tmp_path / "missing.yaml")


# ---------------------------------------------------------------------------
# PipelineOptions
# ---------------------------------------------------------------------------


def test_options_defaults(tmp_path):
    opts = PipelineOptions(study_folder=tmp_path / "ADNI", subjects="1 2")
    assert opts.class_name == "3T"
    assert opts.domain_x == "T1w_MPR"
    assert opts.domain_y == "T2w_SPC"
    assert opts.window_size == 30
    assert opts.brain_size == 150
    assert opts.custom_brain == "NONE"
    assert opts.brain_extraction_method == "RPP"
    assert opts.mni_registration_method == "linear"
    assert opts.dry_run is False


def test_options_study_folder_coerced_to_path():
    opts = PipelineOptions(study_folder="/data/raw/ADNI", subjects="1")
    assert opts.study_folder == Path("/data/raw/ADNI")
    assert opts.study_name == "ADNI"


def test_options_method_subpath():
    opts = PipelineOptions(
        study_folder="/data/ADNI",
        subjects="1",
        class_name="7T",
        brain_extraction_method="SPP",
        mni_registration_method="nonlinear",
    )
    assert opts.method_subpath == Path("SPP/nonlinear/7T")


def test_options_printcom_enables_dry_run():
    assert PipelineOptions(study_folder="/d", subjects="1", printcom="echo").dry_run is True


@pytest.mark.parametrize(
    "field,value",
    [
        ("custom_brain", "PARTIAL"),
        ("brain_extraction_method", "BET"),
        ("mni_registration_method", "affine"),
    ],
)
def test_options_reject_unsupported_enum(field, value):
    with pytest.raises(ValueError, match=field):
        PipelineOptions(study_folder="/d", subjects="1", **{field: value})


def test_options_require_subjects():
    with pytest.raises(ValueError, match="subjects"):
        PipelineOptions(study_folder="/d", subjects="  ")


def test_options_to_cli_args_forwards_everything():
    opts = PipelineOptions(
        study_folder="/data/ADNI",
        subjects="/data/ADNI/subjects.txt",
        brain_size=170,
        printcom="echo",
    )
    args = opts.to_cli_args()
    assert "--studyFolder=/data/ADNI" in args
    assert "--subjects=/data/ADNI/subjects.txt" in args
    assert "--brainSize=170" in args
    assert "--windowSize=30" in args
    assert "--customBrain=NONE" in args
    assert "--brainExtractionMethod=RPP" in args
    assert "--MNIRegistrationMethod=linear" in args
    assert "--printcom=echo" in args
    assert len(args) == 11
