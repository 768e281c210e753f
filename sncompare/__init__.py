"""
sncompare -- Two-condition single-cell RNA comparison engine.

Headless: importable from notebooks, scripts, tests and the ``sncompare``
command-line tool.

Usage:
    from sncompare import ConditionComparisonPipeline, SampleSpec
    from sncompare.de import CellGroup, differential_expression
    from sncompare.persist import load_dataset, save_dataset
"""

from sncompare.errors import (
    ConvergenceError,
    EmptyGroupError,
    EmptyResultWarning,
    IngestionError,
    MergeError,
    PipelineError,
)
from sncompare.protocols import (
    ComparisonInputs,
    EnrichmentService,
    FileData,
    ProgressCallback,
)
from sncompare.merge import merge_samples
from sncompare.persist import load_dataset, save_dataset
from sncompare.enrichment import EnrichmentRecord, EnrichrClient, enrich_de_results

__version__ = "0.1.0"

# --- Lazy imports for the scanpy / pydeseq2 backed stages ------------
_LAZY = {
    "read_10x_directory": "sncompare.ingest",
    "QCBounds": "sncompare.qc",
    "filter_cells": "sncompare.qc",
    "ConditionComparisonPipeline": "sncompare.pipeline",
    "PipelineParams": "sncompare.pipeline",
    "SampleSpec": "sncompare.pipeline",
    "normalize": "sncompare.normalize",
    "reduce_dimensions": "sncompare.reduce",
    "cluster_cells": "sncompare.cluster",
    "CellGroup": "sncompare.de",
    "DEComparison": "sncompare.de",
    "differential_expression": "sncompare.de",
    "find_all_markers": "sncompare.de",
    "extract_subpopulation": "sncompare.subpop",
    "build_audit": "sncompare.audit",
    "format_audit_text": "sncompare.audit",
}


def __getattr__(name: str):
    if name in _LAZY:
        import importlib
        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module 'sncompare' has no attribute {name!r}")


__all__ = [
    "PipelineError",
    "IngestionError",
    "MergeError",
    "ConvergenceError",
    "EmptyGroupError",
    "EmptyResultWarning",
    "ComparisonInputs",
    "EnrichmentService",
    "FileData",
    "ProgressCallback",
    "merge_samples",
    "load_dataset",
    "save_dataset",
    "EnrichmentRecord",
    "EnrichrClient",
    "enrich_de_results",
    *_LAZY,
]
