"""mpp_slurm — run the MPP preprocessing pipeline as a Slurm job array.

A submitter resolves the subject list, assigns each subject a 1-based array
index, and submits a single ``sbatch`` job array. On every worker node the
per-task runner resolves its subject from the array index, stages the
toolset and raw data to local scratch, runs ``MPP.sh``, and stages results
and logs back to the study folder, cleaning up even when terminated early.

Typical usage::

    from mpp_slurm.config import ClusterConfig, PipelineOptions
    from mpp_slurm.subjects import resolve_subjects
    from mpp_slurm.submit import submit_array

    cfg      = ClusterConfig.from_yaml("/etc/mpp/cluster.yaml")
    options  = PipelineOptions(study_folder="/data/raw/ADNI", subjects="/data/raw/ADNI/subjects.txt")
    subjects = resolve_subjects(options.subjects)
    job_id   = submit_array(options, cfg, subjects)
"""

__version__ = "0.1.0"
