"""
config.py — Central configuration for the sncompare pipeline.

All default parameters and thresholds live here so that magic numbers
are not scattered across the stage modules.  Every stage function takes
its defaults from these dicts; ``PipelineParams`` (pipeline.py) snapshots
them for a run, and the CLI can override them from a JSON run config.

Sections
--------
1. INGESTION_DEFAULTS : dict
   → Sparse-matrix ingestion thresholds and file-name conventions.

2. QC_DEFAULTS : dict
   → Per-cell quality-control bounds.

3. VST_DEFAULTS : dict
   → Regularized negative-binomial normalizer.

4. REDUCTION_DEFAULTS : dict
   → Scaling, PCA and UMAP.

5. CLUSTER_DEFAULTS : dict
   → k-NN / shared-neighbor graph and community detection.

6. DE_DEFAULTS : dict
   → Differential expression test, correction and classification.

7. ENRICHMENT_CONFIG : dict
   → Remote enrichment service (Enrichr).

8. PARALLEL_CONFIG : dict
   → joblib worker settings for per-gene work.

Usage example
-------------
    from sncompare.config import QC_DEFAULTS, DE_DEFAULTS

    alpha = DE_DEFAULTS["alpha"]
    mito_pattern = QC_DEFAULTS["mito_pattern"]
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

# ──────────────────────────────────────────────────────────────────────
# 1. Ingestion
# ──────────────────────────────────────────────────────────────────────
INGESTION_DEFAULTS: dict = {
    # Keep a gene only if it is detected (count > 0) in at least this
    # many cells of the sample.
    "min_cells": 3,

    # Keep a cell only if at least this many genes are detected in it.
    "min_features": 200,

    # File names searched by read_10x_directory(), in priority order.
    "matrix_names": ["matrix.mtx.gz", "matrix.mtx"],
    "barcode_names": ["barcodes.tsv.gz", "barcodes.tsv"],
    "feature_names": [
        "features.tsv.gz", "features.tsv", "genes.tsv.gz", "genes.tsv",
    ],

    # Storage dtype for raw counts.  int32 covers any realistic UMI count.
    "counts_dtype": "int32",
}

# ──────────────────────────────────────────────────────────────────────
# 2. Quality control
# ──────────────────────────────────────────────────────────────────────
# Bounds are (lower, upper) with an inclusive lower and exclusive upper
# end unless stated otherwise.  None disables that side of the bound.
QC_DEFAULTS: dict = {
    "total_count": (300, 9001),
    "feature_count": (300, 5601),

    # Percentage (0-100) of counts from mitochondrial genes.
    "mito_fraction": (None, 5.0),

    # Regex matched against gene identifiers (case-sensitive).
    # Mouse symbols use "mt-"; human data would use "^MT-".
    "mito_pattern": r"^mt-",
}

# ──────────────────────────────────────────────────────────────────────
# 3. Variance-stabilizing normalizer (regularized NB regression)
# ──────────────────────────────────────────────────────────────────────
VST_DEFAULTS: dict = {
    # Number of genes ranked as highly variable by residual variance.
    "n_variable_features": 3000,

    # Genes / cells used to fit the per-gene model before regularization.
    # Parameters for all other genes come from the pooled smoother.
    "n_genes_fit": 2000,
    "n_cells_fit": 5000,

    # Genes detected in fewer cells are not modelled at all.
    "min_cells_detected": 5,

    # Pearson residuals are clipped to [-clip, clip].
    # None → sqrt(n_cells), the usual default.
    "residual_clip": None,

    # Upper bound for the NB overdispersion parameter theta.
    # theta → ∞ is a Poisson model; capping keeps the fit finite.
    "theta_max": 1e4,

    # IRLS / Newton iteration limits for each gene's fit.
    "max_iter": 50,
    "tol": 1e-6,

    # Fraction of genes in each lowess window used to pool parameters.
    "bandwidth_frac": 0.3,

    # Seed for gene / cell subsampling.
    "seed": 1448145,
}

# ──────────────────────────────────────────────────────────────────────
# 4. Dimensionality reduction
# ──────────────────────────────────────────────────────────────────────
REDUCTION_DEFAULTS: dict = {
    # Number of principal components computed.
    "n_pcs": 50,

    # Leading components used for UMAP, k-NN and clustering.
    # Cumulative explained variance plateaus around this rank.
    "n_dims": 30,

    # Residuals are centred; unit-variance scaling is optional because
    # Pearson residuals are already variance-stabilized.
    "do_scale": False,
    "scale_max": 10.0,

    "umap": {
        "n_neighbors": 30,
        "min_dist": 0.3,
        "spread": 1.0,
        "metric": "cosine",
    },

    "seed": 42,
}

# ──────────────────────────────────────────────────────────────────────
# 5. Neighbor graph & community detection
# ──────────────────────────────────────────────────────────────────────
CLUSTER_DEFAULTS: dict = {
    # Neighbors per cell, the cell itself included.
    "k": 20,

    # Shared-neighbor edges with Jaccard weight below this are dropped.
    "prune": 1.0 / 15.0,

    # Higher resolution → more, smaller clusters.
    "resolution": 0.5,

    # "leiden" or "louvain" (both modularity-optimizing, igraph backend).
    "algorithm": "leiden",

    # Leiden iterations; negative means "until the partition is stable".
    "n_iterations": -1,

    "seed": 0,
}

# ──────────────────────────────────────────────────────────────────────
# 6. Differential expression
# ──────────────────────────────────────────────────────────────────────
DE_DEFAULTS: dict = {
    # Key into sncompare.de.TEST_REGISTRY.
    "test": "wilcoxon",

    # statsmodels.stats.multitest method: "bonferroni", "fdr_bh", ...
    "correction": "bonferroni",

    # A gene is tested only if detected in at least this fraction of
    # cells in at least one of the two groups.
    "min_pct": 0.1,

    # Added to both group means before the log2 ratio.
    "pseudocount": 1.0,

    # Classification: significant iff padj < alpha AND |log2FC| > threshold.
    "alpha": 0.05,
    "log2fc_threshold": 0.5,

    # Column separator for exported DE tables.
    "export_sep": "\t",

    # pydeseq2 backend ("deseq2" test).  Single-cell counts have a zero
    # in almost every gene, so size factors use "poscounts".
    "deseq2": {
        "n_cpus": 1,
        "size_factors_fit_type": "poscounts",
        "refit_cooks": False,
        "cooks_filter": False,
        "independent_filter": False,
    },
}

# ──────────────────────────────────────────────────────────────────────
# 7. Enrichment service
# ──────────────────────────────────────────────────────────────────────
ENRICHMENT_CONFIG: dict = {
    "base_url": "https://maayanlab.cloud/Enrichr",
    "libraries": [
        "GO_Biological_Process_2023",
        "GO_Molecular_Function_2023",
        "GO_Cellular_Component_2023",
        "KEGG_2019_Mouse",
    ],
    "request_timeout": 60,
    "max_retries": 3,
    "backoff_base": 2,
}

# ──────────────────────────────────────────────────────────────────────
# 8. Parallelism
# ──────────────────────────────────────────────────────────────────────
PARALLEL_CONFIG: dict = {
    # joblib workers for per-gene fits and tests.  1 = sequential.
    "n_jobs": 1,

    # Genes per joblib task; small batches waste time on dispatch.
    "batch_size": 256,
}


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load a run configuration from a JSON file.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file is not ``.json``, is malformed, or its root is not an
        object.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, "
            f"got {type(data).__name__}."
        )
    return data
