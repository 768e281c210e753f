"""
merge.py -- Concatenate per-sample count matrices.

The merged gene axis is the union of the input gene axes in first-seen
order (genes of the first sample, then genes new in the second, ...),
and entries for genes a sample never measured are zero.  Cell
identifiers are prefixed with their sample label (``WT_AAACCTG...``) so
they stay unique, and the label is kept in ``obs["sample"]``.
"""

from __future__ import annotations

import logging
from typing import Sequence

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from sncompare.errors import MergeError
from sncompare.layers import SAMPLE_KEY, LayerKind, as_csr, get_layer

logger = logging.getLogger(__name__)

# obs columns carried into the merged object (others are stage-specific)
_CARRIED_OBS = ("total_count", "feature_count", "mito_fraction")


def _union_genes(samples: Sequence[tuple[ad.AnnData, str]]) -> pd.Index:
    seen: dict[str, int] = {}
    for adata, _ in samples:
        for gene in adata.var_names:
            if gene not in seen:
                seen[gene] = len(seen)
    return pd.Index(list(seen), dtype=str)


def _reindex_columns(
    counts, genes: pd.Index, gene_pos: pd.Index,
) -> sparse.csr_matrix:
    """Move the columns of *counts* to their positions in *gene_pos*."""
    coo = as_csr(counts).tocoo()
    new_cols = gene_pos.get_indexer(genes)[coo.col]
    return sparse.csr_matrix(
        (coo.data, (coo.row, new_cols)),
        shape=(coo.shape[0], len(gene_pos)),
    )


def merge_samples(samples: Sequence[tuple[ad.AnnData, str]]) -> ad.AnnData:
    """
    Merge an ordered sequence of ``(adata, sample_label)`` pairs.

    Parameters
    ----------
    samples : sequence of (AnnData, str)
        Raw-count objects with their sample labels, in the order they
        should appear in the merged cell axis.

    Returns
    -------
    AnnData
        Cells of all samples x union of genes, raw counts in ``X``.

    Raises
    ------
    MergeError
        If *samples* is empty, two samples share a label, or the
        prefixed cell identifiers are not unique.
    """
    samples = list(samples)
    if not samples:
        raise MergeError("No samples to merge.")

    labels = [str(label) for _, label in samples]
    seen_labels: set[str] = set()
    for label in labels:
        if label in seen_labels:
            raise MergeError("Sample label used more than once.", input_name=label)
        seen_labels.add(label)

    genes = _union_genes(samples)

    blocks, obs_frames = [], []
    var = pd.DataFrame(index=genes)
    for adata, label in samples:
        label = str(label)
        counts = get_layer(adata, LayerKind.COUNTS)
        blocks.append(_reindex_columns(counts, adata.var_names, genes))

        obs = pd.DataFrame(index=[f"{label}_{cell}" for cell in adata.obs_names])
        for col in _CARRIED_OBS:
            if col in adata.obs.columns:
                obs[col] = adata.obs[col].to_numpy()
        obs[SAMPLE_KEY] = label
        obs_frames.append(obs)

        if "gene_ids" in adata.var.columns:
            new = var.index.isin(adata.var_names)
            if "gene_ids" not in var.columns:
                var["gene_ids"] = pd.Series(index=var.index, dtype=object)
            missing = new & var["gene_ids"].isna().to_numpy()
            var.loc[missing, "gene_ids"] = (
                adata.var["gene_ids"].reindex(var.index[missing]).to_numpy()
            )

    if "gene_ids" in var.columns:
        var["gene_ids"] = var["gene_ids"].fillna(pd.Series(var.index, index=var.index)).astype(str)

    X = sparse.vstack(blocks, format="csr")
    obs = pd.concat(obs_frames, axis=0)
    if not obs.index.is_unique:
        dup = obs.index[obs.index.duplicated()][0]
        raise MergeError("Cell identifiers are not unique after prefixing.", input_name=dup)
    obs[SAMPLE_KEY] = pd.Categorical(obs[SAMPLE_KEY], categories=labels)

    merged = ad.AnnData(X=X, obs=obs, var=var)
    merged.uns["merge_stats"] = {
        "samples": np.array(labels, dtype=object),
        "cells_per_sample": np.array([a.n_obs for a, _ in samples], dtype=np.int64),
        "genes_per_sample": np.array([a.n_vars for a, _ in samples], dtype=np.int64),
        "n_genes_union": int(len(genes)),
    }
    logger.info(
        "Merged %d samples: %d cells x %d genes.",
        len(samples), merged.n_obs, merged.n_vars,
    )
    return merged
