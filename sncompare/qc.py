"""
qc.py -- Per-cell quality-control metrics and filtering.

Metrics (written to ``adata.obs``):

- ``total_count``   — sum of counts over genes.
- ``feature_count`` — number of genes with count > 0.
- ``mito_fraction`` — 100 × counts from mitochondrial genes / total_count.

Metrics are tied to the matrix snapshot they were computed from: a
content digest is stored in ``adata.uns["qc_snapshot"]`` and the metrics
are recomputed only when the counts change.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import anndata as ad
import numpy as np
import scanpy as sc

from sncompare.config import QC_DEFAULTS
from sncompare.errors import EmptyResultWarning
from sncompare.layers import LayerKind, get_layer, has_layer, matrix_digest

logger = logging.getLogger(__name__)

QC_METRICS = ("total_count", "feature_count", "mito_fraction")


@dataclass(frozen=True)
class Bound:
    """A one- or two-sided interval predicate.

    ``None`` on either side means unbounded on that side.  By default the
    lower end is inclusive and the upper end exclusive, so
    ``Bound(300, 9001)`` keeps 300 … 9000.
    """

    lower: float | None = None
    upper: float | None = None
    lower_inclusive: bool = True
    upper_inclusive: bool = False

    def contains(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        mask = np.ones(values.shape, dtype=bool)
        if self.lower is not None:
            mask &= values >= self.lower if self.lower_inclusive else values > self.lower
        if self.upper is not None:
            mask &= values <= self.upper if self.upper_inclusive else values < self.upper
        return mask

    @classmethod
    def from_value(cls, value) -> Bound:
        """Build from a ``Bound``, a ``(lower, upper)`` pair, or ``None``."""
        if value is None:
            return cls()
        if isinstance(value, Bound):
            return value
        if isinstance(value, dict):
            return cls(**value)
        lower, upper = value
        return cls(lower=lower, upper=upper)


@dataclass(frozen=True)
class QCBounds:
    """Bounds applied to each of the three QC metrics."""

    total_count: Bound = field(
        default_factory=lambda: Bound.from_value(QC_DEFAULTS["total_count"])
    )
    feature_count: Bound = field(
        default_factory=lambda: Bound.from_value(QC_DEFAULTS["feature_count"])
    )
    mito_fraction: Bound = field(
        default_factory=lambda: Bound.from_value(QC_DEFAULTS["mito_fraction"])
    )

    @classmethod
    def from_config(cls, cfg: dict | None = None) -> QCBounds:
        cfg = {**QC_DEFAULTS, **(cfg or {})}
        return cls(**{name: Bound.from_value(cfg[name]) for name in QC_METRICS})


def mito_mask(var_names, pattern: str = QC_DEFAULTS["mito_pattern"]) -> np.ndarray:
    """Boolean mask of genes whose identifier matches *pattern*."""
    return np.asarray(var_names.str.contains(pattern, regex=True), dtype=bool)


def compute_qc_metrics(
    adata: ad.AnnData,
    mito_pattern: str = QC_DEFAULTS["mito_pattern"],
) -> ad.AnnData:
    """
    Annotate ``adata.obs`` with the three QC metrics.

    The computation is skipped when ``adata.uns["qc_snapshot"]`` already
    matches the current counts and pattern, so the metrics always
    describe the matrix as it is now.  Modifies *adata* in place and
    returns it.
    """
    counts = get_layer(adata, LayerKind.COUNTS)
    digest = f"{matrix_digest(counts)}:{mito_pattern}"
    if adata.uns.get("qc_snapshot") == digest and all(
        m in adata.obs.columns for m in QC_METRICS
    ):
        return adata

    mt = mito_mask(adata.var_names, mito_pattern)
    adata.var["mt"] = mt

    layer = LayerKind.COUNTS.value if has_layer(adata, LayerKind.COUNTS) else None
    cell_qc, _ = sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt"],
        layer=layer,
        percent_top=None,
        log1p=False,
        inplace=False,
    )

    # 0 / 0 for cells without counts
    pct = cell_qc["pct_counts_mt"].fillna(0.0).to_numpy(dtype=np.float64)

    adata.obs["total_count"] = cell_qc["total_counts"].to_numpy(dtype=np.float64)
    adata.obs["feature_count"] = cell_qc["n_genes_by_counts"].to_numpy(dtype=np.int64)
    adata.obs["mito_fraction"] = np.clip(pct, 0.0, 100.0)
    adata.uns["qc_snapshot"] = digest
    return adata


def filter_cells(
    adata: ad.AnnData,
    bounds: QCBounds | None = None,
    mito_pattern: str = QC_DEFAULTS["mito_pattern"],
) -> ad.AnnData:
    """
    Remove cells whose QC metrics fall outside *bounds*.

    Returns a new AnnData (the input is not modified).  If no cell
    passes, an :class:`EmptyResultWarning` is emitted and a zero-cell
    AnnData is returned.
    """
    bounds = bounds or QCBounds()
    adata = compute_qc_metrics(adata.copy(), mito_pattern=mito_pattern)

    masks = {
        name: getattr(bounds, name).contains(adata.obs[name].to_numpy())
        for name in QC_METRICS
    }
    keep = masks["total_count"] & masks["feature_count"] & masks["mito_fraction"]

    n_before = adata.n_obs
    filtered = adata[keep].copy()
    # per-cell metrics stay valid for the kept cells
    filtered.uns["qc_snapshot"] = (
        f"{matrix_digest(get_layer(filtered, LayerKind.COUNTS))}:{mito_pattern}"
    )
    filtered.uns["qc_stats"] = {
        "cells_before": int(n_before),
        "cells_after": int(filtered.n_obs),
        "cells_removed": int(n_before - filtered.n_obs),
        **{f"failed_{name}": int((~mask).sum()) for name, mask in masks.items()},
    }

    if filtered.n_obs == 0:
        warnings.warn(
            f"QC filter removed all {n_before} cells.",
            EmptyResultWarning,
            stacklevel=2,
        )
    logger.info("QC kept %d of %d cells.", filtered.n_obs, n_before)
    return filtered
