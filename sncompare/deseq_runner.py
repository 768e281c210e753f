"""
deseq_runner.py — DESeq2 negative-binomial test for two cell groups.

This module encapsulates ALL interaction with the pydeseq2 library.  It
backs the ``"deseq2"`` entry of the differential-expression test
registry: each cell is treated as one sample, the design is
``~ group`` and the Wald test compares ``group1`` against ``group2``
on the raw counts.

What does DESeq2 do internally?
-------------------------------
1. Count normalization (size factors; "poscounts" for sparse data).
2. Dispersion estimation (gene-by-gene variability).
3. Dispersion trend and MAP shrinkage towards it.
4. Fitting a negative binomial GLM per gene.
5. Cook's distances (outliers are not refitted or filtered by default).
6. Wald test per gene.

Only the raw p-values are used; multiple-testing correction and
classification happen in :mod:`sncompare.de` so every registered test
is corrected the same way.

Functions
---------
build_deseq_dataset(counts1, counts2, genes)
    -> Creates the DeseqDataSet object from the two groups.

run_deseq2(dds, progress_callback)
    -> Runs the DESeq2 fit step by step with progress.

deseq2_test(inputs)
    -> Registry entry point: raw Wald p-values, one per gene.
"""

from __future__ import annotations

import gc
import logging
import time
from typing import Callable

import numpy as np
import pandas as pd
from scipy import sparse

from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats

from sncompare.config import DE_DEFAULTS
from sncompare.protocols import ComparisonInputs

logger = logging.getLogger(__name__)

GROUP_COL = "group"

# Number of progress steps reported by run_deseq2
N_DESEQ2_STEPS = 6


def _dense_counts(matrix) -> np.ndarray:
    if sparse.issparse(matrix):
        matrix = matrix.toarray()
    return np.asarray(matrix).astype(np.int64)


def build_deseq_dataset(
    counts1,
    counts2,
    genes,
    n_cpus: int = DE_DEFAULTS["deseq2"]["n_cpus"],
    refit_cooks: bool = DE_DEFAULTS["deseq2"]["refit_cooks"],
) -> DeseqDataSet:
    """
    Build a DeseqDataSet with one sample per cell.

    Parameters
    ----------
    counts1, counts2 : matrix (cells x genes)
        Raw counts of the two groups.
    genes : sequence of str
        Column labels.

    Returns
    -------
    DeseqDataSet
        ``metadata["group"]`` is ``"group1"`` / ``"group2"``.
    """
    c1, c2 = _dense_counts(counts1), _dense_counts(counts2)
    index = [f"g1_{i}" for i in range(c1.shape[0])] + [f"g2_{i}" for i in range(c2.shape[0])]
    counts_df = pd.DataFrame(np.vstack([c1, c2]), index=index, columns=list(genes))
    metadata_df = pd.DataFrame(
        {GROUP_COL: ["group1"] * c1.shape[0] + ["group2"] * c2.shape[0]},
        index=index,
    )

    dds = DeseqDataSet(
        counts=counts_df,
        metadata=metadata_df,
        design=f"~ {GROUP_COL}",
        n_cpus=n_cpus,
        refit_cooks=refit_cooks,
        quiet=True,
    )
    del counts_df
    gc.collect()
    return dds


def run_deseq2(
    dds: DeseqDataSet,
    progress_callback: Callable[[int, int, str], None] | None = None,
    fit_type: str = DE_DEFAULTS["deseq2"]["size_factors_fit_type"],
) -> tuple[DeseqDataSet, dict[str, float]]:
    """
    Run the DESeq2 fit, reporting progress between sub-steps.

    Returns the fitted dataset and a dict of step name -> seconds.
    """
    total = N_DESEQ2_STEPS
    step_timings: dict[str, float] = {}

    def _report(step: int, key: str):
        if progress_callback:
            progress_callback(step, total, key)

    _report(0, "deseq2.size_factors")
    t0 = time.monotonic()
    dds.fit_size_factors(fit_type=fit_type)
    step_timings["size_factors"] = time.monotonic() - t0

    _report(1, "deseq2.genewise_disp")
    t0 = time.monotonic()
    dds.fit_genewise_dispersions()
    step_timings["genewise_disp"] = time.monotonic() - t0
    gc.collect()

    _report(2, "deseq2.disp_trend")
    t0 = time.monotonic()
    dds.fit_dispersion_trend()
    dds.fit_dispersion_prior()
    step_timings["disp_trend"] = time.monotonic() - t0

    _report(3, "deseq2.map_disp")
    t0 = time.monotonic()
    dds.fit_MAP_dispersions()
    step_timings["map_disp"] = time.monotonic() - t0
    gc.collect()

    _report(4, "deseq2.fit_lfc")
    t0 = time.monotonic()
    dds.fit_LFC()
    step_timings["fit_lfc"] = time.monotonic() - t0
    gc.collect()

    # DeseqStats refuses a dataset flagged for refit whose outliers were never replaced
    _report(5, "deseq2.cooks")
    t0 = time.monotonic()
    dds.calculate_cooks()
    if dds.refit_cooks:
        dds.refit()
    dds.cooks_outlier()
    step_timings["cooks"] = time.monotonic() - t0

    _report(total, "deseq2.done")
    return dds, step_timings


def deseq2_test(inputs: ComparisonInputs) -> np.ndarray:
    """
    Wald-test p-values for group1 vs group2 on raw counts.

    Genes pydeseq2 cannot test (all-zero, or non-finite statistics)
    get p = 1.
    """
    cfg = DE_DEFAULTS["deseq2"]
    dds = build_deseq_dataset(inputs.counts1, inputs.counts2, inputs.genes)
    dds, timings = run_deseq2(dds)
    logger.debug("DESeq2 step timings: %s", timings)

    stats = DeseqStats(
        dds,
        contrast=[GROUP_COL, "group1", "group2"],
        cooks_filter=cfg["cooks_filter"],
        independent_filter=cfg["independent_filter"],
        quiet=True,
    )
    stats.summary()
    pvalues = stats.results_df["pvalue"].reindex(list(inputs.genes)).to_numpy(dtype=np.float64)
    n_bad = int(np.sum(~np.isfinite(pvalues)))
    if n_bad:
        logger.warning("DESeq2 returned no p-value for %d gene(s); set to 1.", n_bad)
    return np.where(np.isfinite(pvalues), pvalues, 1.0)
