"""
sncompare/errors.py -- Error taxonomy for the comparison pipeline.

Fatal errors subclass :class:`PipelineError` and always name the stage
and the input that triggered them, so a failed batch run can be traced
back without re-running it.  Recoverable, row-level problems are either
caught inside the stage that raised them (``ConvergenceError``) or
reported through ``warnings`` (``EmptyResultWarning``).

Classes
-------
PipelineError
    Base class.  Carries ``stage`` and ``input_name``.
IngestionError
    Malformed or mismatched input files.  Aborts the run.
MergeError
    Sample-label collision or empty input set.  Aborts the run.
ConvergenceError
    One gene's model fit failed.  The gene is excluded, not the run.
EmptyGroupError
    A comparison (or subpopulation) selected no cells.  Fatal to that
    comparison only.
EmptyResultWarning
    A filter produced zero cells.  Non-fatal; an empty object flows on.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every fatal pipeline error.

    Parameters
    ----------
    message : str
        Human-readable description.
    stage : str
        Pipeline stage that raised the error (``"ingest"``, ``"merge"``, ...).
    input_name : str, optional
        Named input that triggered it (file path, sample label, gene, group).
    """

    def __init__(
        self,
        message: str,
        stage: str = "pipeline",
        input_name: str | None = None,
    ) -> None:
        self.stage = stage
        self.input_name = input_name
        self.detail = message
        prefix = f"[{stage}]"
        if input_name is not None:
            prefix += f" ({input_name})"
        super().__init__(f"{prefix} {message}")


class IngestionError(PipelineError, ValueError):
    """Input files are malformed, mismatched, or empty after filtering."""

    def __init__(self, message: str, input_name: str | None = None) -> None:
        super().__init__(message, stage="ingest", input_name=input_name)


class MergeError(PipelineError, ValueError):
    """Sample labels collide, or there is nothing to merge."""

    def __init__(self, message: str, input_name: str | None = None) -> None:
        super().__init__(message, stage="merge", input_name=input_name)


class ConvergenceError(PipelineError, RuntimeError):
    """The per-gene regression did not converge."""

    def __init__(
        self, message: str, input_name: str | None = None, n_iter: int | None = None,
    ) -> None:
        self.n_iter = n_iter
        super().__init__(message, stage="normalize", input_name=input_name)


class EmptyGroupError(PipelineError, ValueError):
    """A cell group used for a comparison or extraction is empty."""

    def __init__(
        self, message: str, stage: str = "de", input_name: str | None = None,
    ) -> None:
        super().__init__(message, stage=stage, input_name=input_name)


class EmptyResultWarning(UserWarning):
    """A filter removed every cell.  The empty result is still returned."""
