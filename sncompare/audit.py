"""
sncompare/audit.py -- Scientific audit log for reproducibility.

Captures parameters, seeds, library versions, per-stage statistics,
step timings, every recoverable exclusion (genes skipped by the
normalizer) and DE summaries of a completed
:class:`~sncompare.pipeline.ConditionComparisonPipeline`.

Functions
---------
get_library_versions()
    Return a dict of library name -> version string.

build_audit(pipeline)
    Build a JSON-serializable audit log from a pipeline.

format_audit_text(audit_dict)
    Format an audit dict as human-readable text for lab notebooks.
"""

from __future__ import annotations

import datetime
import platform
from dataclasses import asdict
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd


# ══════════════════════════════════════════════════════════════════════
# Library versions
# ══════════════════════════════════════════════════════════════════════

def get_library_versions() -> dict[str, str]:
    """Return ``{library: version}`` for all relevant scientific packages.

    Libraries that are not installed return ``"not installed"``.
    """
    libs: dict[str, str] = {}
    for name in (
        "anndata",
        "scanpy",
        "numpy",
        "pandas",
        "scipy",
        "statsmodels",
        "sklearn",
        "igraph",
        "leidenalg",
        "umap",
        "pydeseq2",
        "joblib",
        "requests",
    ):
        try:
            mod = __import__(name)
            libs[name] = getattr(mod, "__version__", "unknown")
        except ImportError:
            libs[name] = "not installed"
    return libs


# ══════════════════════════════════════════════════════════════════════
# JSON-safe serialiser
# ══════════════════════════════════════════════════════════════════════

def _safe_serialize(obj: Any) -> Any:
    """Recursively convert *obj* to JSON-safe Python primitives."""
    if obj is None or isinstance(obj, (str, bool)):
        return obj
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        value = float(obj)
        return None if np.isnan(value) else value
    if isinstance(obj, float):
        return None if np.isnan(obj) else obj
    if isinstance(obj, int):
        return obj
    if isinstance(obj, np.ndarray):
        return [_safe_serialize(v) for v in obj.tolist()]
    if isinstance(obj, pd.DataFrame):
        return _safe_serialize(obj.to_dict(orient="records"))
    if isinstance(obj, dict):
        return {str(k): _safe_serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_safe_serialize(v) for v in obj]
    if isinstance(obj, datetime.datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    # Fallback: stringify
    return str(obj)


# ══════════════════════════════════════════════════════════════════════
# Audit builder
# ══════════════════════════════════════════════════════════════════════

def build_audit(pipeline) -> dict:
    """Build a JSON-serializable audit log from a pipeline.

    Parameters
    ----------
    pipeline : ConditionComparisonPipeline
        Any state is accepted; sections of steps that have not run are
        empty.

    Returns
    -------
    dict
        Complete audit log, safe for ``json.dumps()``.
    """
    p = pipeline.params
    dataset = pipeline.dataset

    samples = [
        {"label": s.label, "condition": s.condition, "path": s.path}
        for s in pipeline.sample_specs
    ]

    results_summary: dict[str, Any] = {
        "comparisons": {
            name: res.summary() for name, res in pipeline.comparisons.items()
        },
        "n_marker_rows": (
            int(len(pipeline.markers)) if pipeline.markers is not None else 0
        ),
        "enrichment": {
            key: {lib: len(records) for lib, records in per_lib.items()}
            for key, per_lib in pipeline.enrichment.items()
        },
        "subpopulations": {
            name: build_audit(child)["results_summary"]
            for name, child in pipeline.children.items()
        },
    }
    if dataset is not None:
        results_summary["n_cells_final"] = int(dataset.n_obs)
        results_summary["n_genes_final"] = int(dataset.n_vars)
        results_summary["n_clusters"] = int(
            dataset.uns.get("clustering", {}).get("n_clusters", 0)
        )
        results_summary["clustering_run_id"] = dataset.uns.get("clustering", {}).get("run_id", "")

    audit = {
        "sncompare": {
            "pipeline": "condition_comparison",
            "timestamp": datetime.datetime.now(
                datetime.timezone.utc
            ).isoformat(),
            "pipeline_class": type(pipeline).__name__,
        },
        "environment": {
            "python": platform.python_version(),
            "platform": platform.platform(),
            "libraries": get_library_versions(),
        },
        "input_data": {
            "samples": samples,
            "n_cells_merged": (
                int(pipeline.merged.n_obs) if pipeline.merged is not None else "unknown"
            ),
            "n_genes_merged": (
                int(pipeline.merged.n_vars) if pipeline.merged is not None else "unknown"
            ),
        },
        "parameters": asdict(p),
        "seeds": {
            "vst_seed": p.vst_seed,
            "reduction_seed": p.reduction_seed,
            "cluster_seed": p.cluster_seed,
        },
        "execution": {
            "steps_completed": list(pipeline._step_log),
            "step_timings_seconds": dict(pipeline.step_timings),
            "total_seconds": pipeline.step_timings.get("total"),
            "step_stats": dict(pipeline.stage_stats),
        },
        "exclusions": {
            "n_skipped_genes": len(pipeline.skipped_genes),
            "skipped_genes": dict(pipeline.skipped_genes),
        },
        "results_summary": results_summary,
    }

    return _safe_serialize(audit)


# ══════════════════════════════════════════════════════════════════════
# Human-readable text formatter
# ══════════════════════════════════════════════════════════════════════

def _append_mapping(lines: list[str], mapping: dict, indent: int = 2) -> None:
    pad = " " * indent
    for k, v in mapping.items():
        if isinstance(v, dict):
            lines.append(f"{pad}{k}:")
            _append_mapping(lines, v, indent + 2)
        else:
            lines.append(f"{pad}{k}: {v}")


def format_audit_text(audit: dict, max_skipped: int = 20) -> str:
    """Format an audit dict as a human-readable text report.

    Suitable for pasting into a methods section, lab notebook, or
    supplementary materials.  At most *max_skipped* excluded genes are
    listed by name.
    """
    lines: list[str] = []
    sep = "=" * 60

    lines.append(sep)
    lines.append("sncompare -- Scientific Audit Log")
    lines.append(sep)
    lines.append("")

    meta = audit.get("sncompare", {})
    lines.append(f"Pipeline : {meta.get('pipeline', 'unknown')}")
    lines.append(f"Timestamp: {meta.get('timestamp', 'unknown')}")
    lines.append("")

    lines.append("--- Environment ---")
    _append_mapping(lines, audit.get("environment", {}))
    lines.append("")

    lines.append("--- Input Data ---")
    inputs = audit.get("input_data", {})
    for sample in inputs.get("samples", []):
        lines.append(
            f"  sample {sample.get('label')}: condition={sample.get('condition')} "
            f"path={sample.get('path')}"
        )
    for k in ("n_cells_merged", "n_genes_merged"):
        lines.append(f"  {k}: {inputs.get(k, 'unknown')}")
    lines.append("")

    lines.append("--- Parameters ---")
    _append_mapping(lines, audit.get("parameters", {}))
    lines.append("")

    lines.append("--- Seeds ---")
    _append_mapping(lines, audit.get("seeds", {}))
    lines.append("")

    lines.append("--- Execution ---")
    exe = audit.get("execution", {})
    total = exe.get("total_seconds")
    if total is not None:
        lines.append(f"  Total time: {total:.1f}s")
    timings = exe.get("step_timings_seconds", {})
    if timings:
        lines.append("  Step timings:")
        for step, secs in timings.items():
            lines.append(f"    {step}: {secs:.2f}s")
    step_stats = exe.get("step_stats", {})
    if step_stats:
        lines.append("  Step statistics:")
        _append_mapping(lines, step_stats, indent=4)
    lines.append("")

    excl = audit.get("exclusions", {})
    lines.append("--- Excluded Genes ---")
    lines.append(f"  n_skipped_genes: {excl.get('n_skipped_genes', 0)}")
    for i, (gene, reason) in enumerate(excl.get("skipped_genes", {}).items()):
        if i >= max_skipped:
            lines.append("    ...")
            break
        lines.append(f"    {gene}: {reason}")
    lines.append("")

    lines.append("--- Results Summary ---")
    _append_mapping(lines, audit.get("results_summary", {}))
    lines.append("")

    lines.append(sep)
    return "\n".join(lines)
