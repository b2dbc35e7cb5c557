from __future__ import annotations

"""mpp_slurm.pipeline — input discovery and ``MPP.sh`` command building.

Raw data naming convention
--------------------------
Scripts run by the pipeline assume nothing about input names; the runner
does. Under the staged subject directory it expects::

    <subject>/<class>/<domain>1/<subject>_-_<class>_-_<domain>1.nii.gz
    <subject>/<class>/<domain>2/<subject>_-_<class>_-_<domain>2.nii.gz
    ...

The trailing run index is optional. All matches for a domain are passed to
the pipeline as a single ``@``-joined argument.

Templates
---------
The MNI152 references and the FNIRT config are shared, read-only files under
the site template and config roots; their paths are passed to the pipeline
as-is and never staged.
"""

__all__ = [
    "IMAGE_DELIMITER",
    "InputError",
    "Templates",
    "resolve_templates",
    "collect_domain_images",
    "join_images",
    "build_pipeline_command",
]

import re
from dataclasses import dataclass
from pathlib import Path

from mpp_slurm.config import PipelineOptions

IMAGE_DELIMITER = "@"


class InputError(RuntimeError):
    """Raised when the staged data lacks the images the pipeline needs."""


@dataclass(frozen=True)
class Templates:
    x_template: Path
    x_template_brain: Path
    x_template_2mm: Path
    y_template: Path
    y_template_brain: Path
    y_template_2mm: Path
    template_mask: Path
    template_2mm_mask: Path
    fnirt_config: Path


def resolve_templates(template_root: Path, config_root: Path) -> Templates:
    """Return the fixed template paths under *template_root* and *config_root*."""
    return Templates(
        x_template=template_root / "MNI152_T1_0.7mm.nii.gz",
        x_template_brain=template_root / "MNI152_T1_0.7mm_brain.nii.gz",
        x_template_2mm=template_root / "MNI152_T1_2mm.nii.gz",
        y_template=template_root / "MNI152_T2_0.7mm.nii.gz",
        y_template_brain=template_root / "MNI152_T2_0.7mm_brain.nii.gz",
        y_template_2mm=template_root / "MNI152_T2_2mm.nii.gz",
        template_mask=template_root / "MNI152_T1_0.7mm_brain_mask.nii.gz",
        template_2mm_mask=template_root / "MNI152_T1_2mm_brain_mask_dil.nii.gz",
        fnirt_config=config_root / "T1_2_MNI152_2mm.cnf",
    )


def collect_domain_images(subject_dir: Path, subject: str, class_name: str, domain: str) -> list[Path]:
    """Return the sorted NIfTI images of one domain for *subject*.

    Searches ``<subject_dir>/<class_name>`` recursively for
    ``<subject>_-_<class>_-_<domain>[X].nii.gz`` where ``X`` is an optional
    single run-index character.

    Parameters
    ----------
    subject_dir:
        Staged subject directory on scratch, e.g. ``<scratch>/<subject>``.
    subject:
        Subject ID.
    class_name:
        Class name, e.g. ``3T``.
    domain:
        Domain name, e.g. ``T1w_MPR``.
    """
    pattern = re.compile(
        rf"^{re.escape(subject)}_-_{re.escape(class_name)}_-_{re.escape(domain)}[^._]?\.nii\.gz$"
    )
    class_dir = subject_dir / class_name
    if not class_dir.is_dir():
        return []
    return sorted(p for p in class_dir.rglob("*.nii.gz") if p.is_file() and pattern.match(p.name))


def join_images(images: list[Path]) -> str:
    return IMAGE_DELIMITER.join(str(p) for p in images)


def build_pipeline_command(
    pipeline: Path,
    options: PipelineOptions,
    subject: str,
    x_images: list[Path],
    y_images: list[Path],
    templates: Templates,
) -> list[str]:
    """Build the ``MPP.sh`` command for one subject.

    Parameters
    ----------
    pipeline:
        Path to the staged pipeline executable.
    options:
        Pipeline options of this submission.
    subject:
        Subject ID resolved for this array task.
    x_images / y_images:
        Domain X and domain Y inputs, joined with ``@``.
    templates:
        Resolved template and config paths.
    """
    return [
        str(pipeline),
        f"--studyName={options.study_name}",
        f"--subject={subject}",
        f"--class={options.class_name}",
        f"--domainX={options.domain_x}",
        f"--domainY={options.domain_y}",
        f"--x={join_images(x_images)}",
        f"--y={join_images(y_images)}",
        f"--xTemplate={templates.x_template}",
        f"--xTemplateBrain={templates.x_template_brain}",
        f"--xTemplate2mm={templates.x_template_2mm}",
        f"--yTemplate={templates.y_template}",
        f"--yTemplateBrain={templates.y_template_brain}",
        f"--yTemplate2mm={templates.y_template_2mm}",
        f"--templateMask={templates.template_mask}",
        f"--template2mmMask={templates.template_2mm_mask}",
        f"--brainSize={options.brain_size}",
        f"--MNIRegistrationMethod={options.mni_registration_method}",
        f"--windowSize={options.window_size}",
        f"--customBrain={options.custom_brain}",
        f"--brainExtractionMethod={options.brain_extraction_method}",
        f"--FNIRTConfig={templates.fnirt_config}",
        f"--printcom={options.printcom}",
    ]
