"""
subpop.py -- Sub-population extraction and recursive re-analysis.

A sub-population is a fresh dataset: only the raw counts, the sample
label and the per-cell QC metrics of the selected cells are carried
over.  Every derived quantity (normalization layers, gene statistics,
embeddings, cluster labels) is dropped and recomputed by
:func:`analyze_population`, which runs the same normalize → reduce →
cluster chain used for the whole dataset.

The parent's cluster label is kept as ``obs["parent_cluster"]`` (plain
strings) for traceability only; the child's own ``obs["cluster"]`` lives
in a separate label space.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd

from sncompare.cluster import CLUSTER_KEY, cluster_cells
from sncompare.de import CellGroup
from sncompare.errors import EmptyGroupError
from sncompare.layers import SAMPLE_KEY, LayerKind, as_csr, get_layer
from sncompare.normalize import normalize
from sncompare.qc import QC_METRICS
from sncompare.reduce import reduce_dimensions

logger = logging.getLogger(__name__)

Selector = Union[CellGroup, Callable[[pd.DataFrame], Sequence[bool]], Sequence]


def _resolve(adata: ad.AnnData, selector: Selector, cluster_key: str) -> tuple[np.ndarray, str]:
    """Turn *selector* into a boolean mask and a display name."""
    if isinstance(selector, CellGroup):
        return selector.select(adata), selector.name
    if callable(selector):
        mask = np.asarray(selector(adata.obs), dtype=bool)
        if mask.shape != (adata.n_obs,):
            raise ValueError(
                f"Selector returned shape {mask.shape}, expected ({adata.n_obs},)."
            )
        return mask, getattr(selector, "__name__", "predicate")
    labels = [selector] if isinstance(selector, (str, int, np.integer)) else list(selector)
    group = CellGroup.where(
        f"{cluster_key}_{'_'.join(str(v) for v in labels)}", {cluster_key: labels},
    )
    return group.select(adata), group.name


def extract_subpopulation(
    adata: ad.AnnData,
    selector: Selector,
    cluster_key: str = CLUSTER_KEY,
) -> ad.AnnData:
    """
    Copy the cells matching *selector* into an independent dataset.

    Parameters
    ----------
    selector : CellGroup, callable or cluster label(s)
        A :class:`CellGroup`; a function ``obs -> bool mask``; or one or
        more values of ``obs[cluster_key]``.

    Raises
    ------
    EmptyGroupError
        If no cell matches.
    """
    mask, name = _resolve(adata, selector, cluster_key)
    if not mask.any():
        raise EmptyGroupError(
            f"Selection '{name}' matches no cells.",
            stage="subpopulation",
            input_name=name,
        )

    counts = as_csr(get_layer(adata, LayerKind.COUNTS))[mask].copy()
    obs = pd.DataFrame(index=adata.obs_names[mask].copy())
    for col in (SAMPLE_KEY, *QC_METRICS):
        if col in adata.obs.columns:
            obs[col] = adata.obs[col].to_numpy()[mask]
    if SAMPLE_KEY in obs.columns:
        obs[SAMPLE_KEY] = pd.Categorical(obs[SAMPLE_KEY].astype(str))
    if cluster_key in adata.obs.columns:
        obs["parent_cluster"] = adata.obs[cluster_key].astype(str).to_numpy()[mask]

    keep_var = [c for c in ("gene_ids", "feature_types", "mt") if c in adata.var.columns]
    var = adata.var[keep_var].copy()

    child = ad.AnnData(X=counts, obs=obs, var=var)
    parent_lineage = adata.uns.get("lineage", {})
    child.uns["lineage"] = {
        "parent_run_id": adata.uns.get("clustering", {}).get("run_id", ""),
        "selection": name,
        "n_cells_parent": int(adata.n_obs),
        "depth": int(parent_lineage.get("depth", 0)) + 1,
    }
    logger.info(
        "Extracted '%s': %d of %d cells.", name, child.n_obs, adata.n_obs,
    )
    return child


def analyze_population(
    adata: ad.AnnData,
    normalize_kwargs: Mapping | None = None,
    reduce_kwargs: Mapping | None = None,
    cluster_kwargs: Mapping | None = None,
) -> ad.AnnData:
    """
    Normalize, reduce and cluster *adata* from its raw counts.

    Works the same on a merged dataset and on an extracted
    sub-population.  Returns a new AnnData.
    """
    reduce_kwargs = dict(reduce_kwargs or {})
    cluster_kwargs = dict(cluster_kwargs or {})
    if "n_dims" in reduce_kwargs:
        cluster_kwargs.setdefault("n_dims", reduce_kwargs["n_dims"])

    out = normalize(adata, **dict(normalize_kwargs or {})).adata
    reduce_dimensions(out, **reduce_kwargs)
    cluster_cells(out, **cluster_kwargs)
    return out


def analyze_subpopulation(
    adata: ad.AnnData,
    selector: Selector,
    cluster_key: str = CLUSTER_KEY,
    **analysis_kwargs,
) -> ad.AnnData:
    """:func:`extract_subpopulation` followed by :func:`analyze_population`."""
    child = extract_subpopulation(adata, selector, cluster_key=cluster_key)
    return analyze_population(child, **analysis_kwargs)
