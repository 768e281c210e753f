"""
reduce.py -- Linear (PCA) and non-linear (UMAP) dimensionality reduction.

PCA runs on the Pearson residuals of the highly-variable genes.  The
top components come from a truncated ARPACK eigendecomposition of the
gene x gene covariance, or of the cell x cell Gram matrix when there
are fewer cells than genes.  The UMAP embedding is then built from the
leading ``n_dims`` components.

Both steps are seeded: identical input, parameters and seed give
identical coordinates.
"""

from __future__ import annotations

import logging
import warnings

import anndata as ad
import numpy as np
import scanpy as sc
from scipy.sparse.linalg import ArpackNoConvergence, eigsh

from sncompare.config import REDUCTION_DEFAULTS
from sncompare.layers import LayerKind, as_dense, get_layer

logger = logging.getLogger(__name__)


def _is_lapack_condition_error(exc: Exception) -> bool:
    """Return True if *exc* is a LAPACK reciprocal-condition-number error."""
    msg = str(exc)
    return "reciprocal condition number" in msg or b"reciprocal" in msg.encode(errors="replace")


# ══════════════════════════════════════════════════════════════════════
# 1. Scaling
# ══════════════════════════════════════════════════════════════════════

def scale_features(
    adata: ad.AnnData,
    genes=None,
    do_scale: bool = REDUCTION_DEFAULTS["do_scale"],
    scale_max: float = REDUCTION_DEFAULTS["scale_max"],
) -> tuple[np.ndarray, list[str]]:
    """
    Center (and optionally scale) the residuals of *genes*.

    *genes* defaults to the highly-variable genes.  Values are clipped to
    ``[-scale_max, scale_max]``.  Genes with zero variance are centered
    but not divided.

    Returns
    -------
    (matrix, genes) : (ndarray cells x genes, list of str)
    """
    if genes is None:
        if "highly_variable" not in adata.var.columns:
            raise KeyError("No highly-variable genes selected; run normalize() first.")
        mask = adata.var["highly_variable"].to_numpy(dtype=bool)
    else:
        mask = adata.var_names.isin(list(genes))
    if not mask.any():
        raise ValueError("No genes selected for dimensionality reduction.")

    residuals = get_layer(adata, LayerKind.RESIDUALS)
    Z = as_dense(residuals[:, mask])
    Z -= Z.mean(axis=0)
    if do_scale:
        sd = Z.std(axis=0, ddof=1) if Z.shape[0] > 1 else np.ones(Z.shape[1])
        sd[sd == 0] = 1.0
        Z /= sd
    np.clip(Z, -scale_max, scale_max, out=Z)
    return Z, list(adata.var_names[mask])


# ══════════════════════════════════════════════════════════════════════
# 2. PCA
# ══════════════════════════════════════════════════════════════════════

def _top_eigenpairs(M: np.ndarray, k: int, seed: int) -> tuple[np.ndarray, np.ndarray]:
    """Largest *k* eigenpairs of the symmetric matrix *M*, descending."""
    dim = M.shape[0]
    if k < dim - 1:
        v0 = np.random.default_rng(seed).uniform(-1.0, 1.0, dim)
        try:
            vals, vecs = eigsh(M, k=k, which="LA", v0=v0)
            order = np.argsort(vals)[::-1]
            return vals[order], vecs[:, order]
        except ArpackNoConvergence:
            warnings.warn("PCA: ARPACK did not converge; falling back to dense eigensolver.")
        except np.linalg.LinAlgError as exc:
            if not _is_lapack_condition_error(exc):
                raise
            warnings.warn("PCA: ARPACK hit LAPACK condition error; falling back to dense eigensolver.")

    vals, vecs = np.linalg.eigh(M)
    order = np.argsort(vals)[::-1][:k]
    return vals[order], vecs[:, order]


def _orient(loadings: np.ndarray, scores: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Flip each component so its largest-magnitude loading is positive."""
    idx = np.argmax(np.abs(loadings), axis=0)
    signs = np.sign(loadings[idx, np.arange(loadings.shape[1])])
    signs[signs == 0] = 1.0
    return loadings * signs, scores * signs


def elbow_rank(variance_ratio) -> int:
    """
    Suggest how many components to keep.

    The elbow is the point of the cumulative explained-variance curve
    farthest from the straight line joining its first and last points.
    """
    ratio = np.asarray(variance_ratio, dtype=np.float64)
    if ratio.size < 3:
        return int(ratio.size)
    cum = np.cumsum(ratio)
    x = np.arange(1, cum.size + 1, dtype=np.float64)
    x0, y0, x1, y1 = x[0], cum[0], x[-1], cum[-1]
    dist = np.abs((y1 - y0) * x - (x1 - x0) * cum + x1 * y0 - y1 * x0)
    return int(np.argmax(dist) + 1)


def run_pca(
    adata: ad.AnnData,
    n_pcs: int = REDUCTION_DEFAULTS["n_pcs"],
    genes=None,
    do_scale: bool = REDUCTION_DEFAULTS["do_scale"],
    scale_max: float = REDUCTION_DEFAULTS["scale_max"],
    seed: int = REDUCTION_DEFAULTS["seed"],
) -> ad.AnnData:
    """
    Principal components of the scaled residuals.

    Writes ``obsm["X_pca"]`` (cells x k), ``varm["PCs"]`` (genes x k,
    zero for genes outside the selection) and ``uns["pca"]`` (variance,
    variance ratio, elbow rank, gene list).  ``k`` is *n_pcs* capped at
    ``min(n_cells, n_genes) - 1``.
    """
    Z, used = scale_features(adata, genes=genes, do_scale=do_scale, scale_max=scale_max)
    n, p = Z.shape
    k = min(n_pcs, n - 1, p - 1) if min(n, p) > 1 else 1
    if k < n_pcs:
        logger.warning("PCA: requested %d components, computing %d.", n_pcs, k)

    denom = max(n - 1, 1)
    total_var = float(np.sum(Z ** 2) / denom)
    if p <= n:
        vals, loadings = _top_eigenpairs(Z.T @ Z / denom, k, seed)
        vals = np.maximum(vals, 0.0)
        scores = Z @ loadings
    else:
        vals, u = _top_eigenpairs(Z @ Z.T / denom, k, seed)
        vals = np.maximum(vals, 0.0)
        sv = np.sqrt(vals * denom)
        safe = np.where(sv > 0, sv, 1.0)
        scores = u * sv
        loadings = (Z.T @ u) / safe
    loadings, scores = _orient(loadings, scores)

    full = np.zeros((adata.n_vars, k))
    full[adata.var_names.get_indexer(used)] = loadings
    ratio = vals / total_var if total_var > 0 else np.zeros_like(vals)

    adata.obsm["X_pca"] = scores
    adata.varm["PCs"] = full
    adata.uns["pca"] = {
        "variance": vals,
        "variance_ratio": ratio,
        "elbow_rank": elbow_rank(ratio),
        "genes": np.array(used, dtype=object),
        "n_pcs": int(k),
        "seed": int(seed),
    }
    logger.info(
        "PCA: %d components on %d cells x %d genes (elbow at %d).",
        k, n, p, adata.uns["pca"]["elbow_rank"],
    )
    return adata


# ══════════════════════════════════════════════════════════════════════
# 3. UMAP
# ══════════════════════════════════════════════════════════════════════

def run_umap(
    adata: ad.AnnData,
    n_dims: int = REDUCTION_DEFAULTS["n_dims"],
    n_neighbors: int = REDUCTION_DEFAULTS["umap"]["n_neighbors"],
    min_dist: float = REDUCTION_DEFAULTS["umap"]["min_dist"],
    spread: float = REDUCTION_DEFAULTS["umap"]["spread"],
    metric: str = REDUCTION_DEFAULTS["umap"]["metric"],
    seed: int = REDUCTION_DEFAULTS["seed"],
) -> ad.AnnData:
    """Compute the 2-D UMAP embedding from the leading *n_dims* PCs."""
    if "X_pca" not in adata.obsm:
        raise KeyError("No PCA coordinates; run run_pca() first.")
    n_dims = min(n_dims, adata.obsm["X_pca"].shape[1])
    n_neighbors = max(2, min(n_neighbors, adata.n_obs - 1))

    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_dims,
        use_rep="X_pca",
        metric=metric,
        random_state=seed,
        key_added="umap_neighbors",
    )
    sc.tl.umap(
        adata,
        min_dist=min_dist,
        spread=spread,
        random_state=seed,
        neighbors_key="umap_neighbors",
    )
    adata.uns["umap_stats"] = {
        "n_dims": int(n_dims),
        "n_neighbors": int(n_neighbors),
        "min_dist": float(min_dist),
        "metric": metric,
        "seed": int(seed),
    }
    return adata


def reduce_dimensions(
    adata: ad.AnnData,
    n_pcs: int = REDUCTION_DEFAULTS["n_pcs"],
    n_dims: int = REDUCTION_DEFAULTS["n_dims"],
    do_scale: bool = REDUCTION_DEFAULTS["do_scale"],
    scale_max: float = REDUCTION_DEFAULTS["scale_max"],
    seed: int = REDUCTION_DEFAULTS["seed"],
    umap: bool = True,
    **umap_kwargs,
) -> ad.AnnData:
    """PCA followed by UMAP on the same object (modified in place)."""
    run_pca(adata, n_pcs=n_pcs, do_scale=do_scale, scale_max=scale_max, seed=seed)
    if umap:
        run_umap(adata, n_dims=n_dims, seed=seed, **umap_kwargs)
    return adata
