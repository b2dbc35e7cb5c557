from __future__ import annotations

__all__ = [
    "SubjectResolutionError",
    "is_subject_file",
    "resolve_subjects",
    "numeric_sort_key",
    "build_array_spec",
    "subject_for_task",
]

import os
import re
from pathlib import Path

_LEADING_NUMBER = re.compile(r"^\s*([-+]?\d+(?:\.\d*)?)")


class SubjectResolutionError(ValueError):
    """Raised when an array index does not map to a subject."""


def numeric_sort_key(subject: str) -> tuple[float, str]:
    """Sort key with ``sort -n`` semantics.

    The leading numeric prefix is compared first; IDs without one count as
    zero. Ties fall back to plain string order.
    """
    match = _LEADING_NUMBER.match(subject)
    value = float(match.group(1)) if match else 0.0
    return value, subject


def is_subject_file(file_or_list: str | Path) -> bool:
    """Return True if *file_or_list* names a regular file.

    An inline list longer than the filesystem name limit is not a file.
    """
    return os.path.isfile(file_or_list)


def resolve_subjects(file_or_list: str | Path) -> list[str]:
    """Return the numerically sorted subject list.

    If *file_or_list* names a regular file, its contents are read (including a
    final line without a trailing newline); otherwise the argument itself is
    the list. Either way IDs are split on any whitespace, so blank lines are
    dropped. Duplicates are kept as given.
    """
    if is_subject_file(file_or_list):
        text = Path(file_or_list).read_text()
    else:
        text = str(file_or_list)
    return sorted(text.split(), key=numeric_sort_key)


def build_array_spec(subjects: list[str]) -> str:
    """Return the Slurm ``--array`` value ``1,2,...,N`` for *subjects*.

    Raises
    ------
    ValueError
        If *subjects* is empty; Slurm rejects an empty array.
    """
    if not subjects:
        raise ValueError("Cannot build a job array for an empty subject list")
    return ",".join(str(i) for i in range(1, len(subjects) + 1))


def subject_for_task(subjects: list[str], task_id: int) -> str:
    """Return the subject at 1-based array index *task_id*.

    Raises
    ------
    SubjectResolutionError
        If *task_id* is outside ``[1, len(subjects)]``.
    """
    if not 1 <= task_id <= len(subjects):
        raise SubjectResolutionError(
            f"Array index {task_id} is out of range for {len(subjects)} subject(s)"
        )
    return subjects[task_id - 1]
