"""
sncompare/protocols.py -- Abstract protocols and shared types.

Types
-----
ProgressCallback
    Protocol — ``(current, total, message_key) -> None``.

EnrichmentService
    Protocol — ``enrich(genes, libraries) -> {library: [EnrichmentRecord]}``.
    The remote ontology lookup is an opaque collaborator; anything with
    this method can be plugged into the pipeline.

FileData
    NamedTuple — ``(content: bytes, name: str)``.  Wraps in-memory file
    contents so ingestion does not depend on the filesystem.

ComparisonInputs
    NamedTuple — two groups of expression values and raw counts passed to
    a registered differential-expression test.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from sncompare.enrichment import EnrichmentRecord


@runtime_checkable
class ProgressCallback(Protocol):
    """Progress reporting callback.

    Parameters
    ----------
    current : int
        Current step index (0-based).
    total : int
        Total number of steps.
    message_key : str
        Name of the step that is about to run.
    """

    def __call__(self, current: int, total: int, message_key: str) -> None: ...


@runtime_checkable
class EnrichmentService(Protocol):
    """Gene-set enrichment lookup against named ontology libraries."""

    def enrich(
        self, genes: Sequence[str], libraries: Sequence[str],
    ) -> dict[str, list[EnrichmentRecord]]: ...


class FileData(NamedTuple):
    """Minimal file representation for engine I/O.

    Attributes
    ----------
    content : bytes
        Raw file bytes (may be gzip-compressed).
    name : str
        Original filename; a ``.gz`` suffix marks compressed content.
    """

    content: bytes
    name: str


class ComparisonInputs(NamedTuple):
    """Per-comparison inputs handed to a differential-expression test.

    Matrices are cells x genes, restricted to the tested genes (in the
    order of ``genes``).  ``data`` holds log-normalized corrected values;
    ``counts`` holds the raw counts for count-based models.
    """

    data1: object
    data2: object
    counts1: object
    counts2: object
    genes: Sequence[str]
