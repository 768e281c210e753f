"""
normalize.py -- Variance-stabilizing normalization (regularized NB regression).

For every gene the UMI counts are modelled as negative binomial with a
log-linear dependence on sequencing depth::

    log(mu_cg) = beta0_g + beta1_g * log10(total_count_c)
    var_cg     = mu_cg + mu_cg**2 / theta_g

Fitting proceeds in three steps:

1. Per-gene fit on a subsample of genes (and cells): Poisson IRLS for
   the coefficients, then a maximum-likelihood Newton search for theta.
2. Regularization: the fitted ``beta0``, ``beta1`` and ``log10(theta)``
   are smoothed against the gene's log10 mean expression with lowess,
   and every gene takes its parameters from the smoothed curve.  Pooling
   across genes keeps overdispersion estimates stable for genes with
   few counts.
3. Transformation: Pearson residuals ``(y - mu) / sqrt(var)`` (clipped),
   corrected counts (the counts expected had every cell been sequenced
   at the median depth), and ``log1p`` of the corrected counts.

Genes whose fit does not converge are excluded from the smoother input
and from the highly-variable set; the reason is kept in
``adata.var["vst_skip_reason"]``.

Functions
---------
fit_vst(adata, ...)
    → Fit and regularize the per-gene models; returns a ``VSTModel``.

normalize(adata, ...)
    → Fit + transform; returns a ``NormalizationResult``.

ensure_corrected(adata, refit=True)
    → Re-correct expression values when the cell set has changed since
      the model was fitted (subset analysis).
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field

import anndata as ad
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from sncompare.config import PARALLEL_CONFIG, VST_DEFAULTS
from sncompare.errors import ConvergenceError, PipelineError
from sncompare.layers import LayerKind, as_csr, get_layer, names_digest, set_layer

logger = logging.getLogger(__name__)

# Below this many converged genes the lowess curve is not trusted and the
# pooled median is used instead.
_MIN_GENES_FOR_SMOOTHING = 10

_THETA_MIN = 1e-3


# ══════════════════════════════════════════════════════════════════════
# Per-gene fitting
# ══════════════════════════════════════════════════════════════════════

def _poisson_irls(
    y: np.ndarray, design: np.ndarray, gene: str, max_iter: int, tol: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Fit a log-link Poisson GLM; return (coefficients, fitted mu)."""
    beta = np.zeros(design.shape[1])
    beta[0] = np.log(max(y.mean(), 1e-8))

    for it in range(1, max_iter + 1):
        eta = design @ beta
        mu = np.exp(eta)
        z = eta + (y - mu) / mu
        wx = design * mu[:, None]
        try:
            new_beta = np.linalg.solve(design.T @ wx, wx.T @ z)
        except np.linalg.LinAlgError as exc:
            raise ConvergenceError(
                f"Singular IRLS system: {exc}", input_name=gene, n_iter=it,
            ) from exc
        if not np.all(np.isfinite(new_beta)):
            raise ConvergenceError(
                "Non-finite IRLS coefficients.", input_name=gene, n_iter=it,
            )
        delta = np.max(np.abs(new_beta - beta) / (1.0 + np.abs(beta)))
        beta = new_beta
        if delta < tol:
            return beta, np.exp(design @ beta)

    raise ConvergenceError(
        f"IRLS did not converge in {max_iter} iterations.",
        input_name=gene, n_iter=max_iter,
    )


def _theta_ml(
    y: np.ndarray, mu: np.ndarray, gene: str,
    max_iter: int, tol: float, theta_max: float,
) -> float:
    """Maximum-likelihood NB overdispersion, Newton steps on log(theta).

    Data with no detectable overdispersion push theta towards infinity
    (the Poisson limit); the search stops at *theta_max*.
    """
    n = y.size
    resid = np.sum((y / mu - 1.0) ** 2)
    theta = n / resid if resid > 0 else theta_max
    log_t = np.log(np.clip(theta, _THETA_MIN, theta_max))
    log_max = np.log(theta_max)

    for it in range(1, max_iter + 1):
        th = np.exp(log_t)
        score = np.sum(
            digamma(y + th) - digamma(th) + np.log(th) + 1.0
            - np.log(th + mu) - (y + th) / (mu + th)
        )
        info = np.sum(
            -polygamma(1, y + th) + polygamma(1, th) - 1.0 / th
            + 2.0 / (mu + th) - (y + th) / (mu + th) ** 2
        )
        grad = score * th
        hess = th * score - th ** 2 * info
        if not (np.isfinite(grad) and np.isfinite(hess)):
            raise ConvergenceError(
                "Non-finite theta likelihood.", input_name=gene, n_iter=it,
            )
        step = -grad / hess if hess < 0 else np.sign(grad)
        step = float(np.clip(step, -2.0, 2.0))
        log_t += step
        if log_t >= log_max and grad > 0:
            return theta_max
        if abs(step) < tol:
            return float(np.exp(min(log_t, log_max)))

    raise ConvergenceError(
        f"Theta search did not converge in {max_iter} iterations.",
        input_name=gene, n_iter=max_iter,
    )


def _fit_gene(
    y: np.ndarray, design: np.ndarray, gene: str,
    max_iter: int, tol: float, theta_max: float,
) -> tuple[float, float, float]:
    beta, mu = _poisson_irls(y, design, gene, max_iter, tol)
    theta = _theta_ml(y, mu, gene, max_iter, tol, theta_max)
    return float(beta[0]), float(beta[1]), theta


def _fit_batch(
    Y: np.ndarray, design: np.ndarray, genes: list[str],
    max_iter: int, tol: float, theta_max: float,
) -> list[tuple[str, tuple[float, float, float] | None, str]]:
    """Fit one batch of genes (columns of *Y*); failures become reasons."""
    out = []
    for j, gene in enumerate(genes):
        try:
            params = _fit_gene(Y[:, j], design, gene, max_iter, tol, theta_max)
            out.append((gene, params, ""))
        except ConvergenceError as exc:
            out.append((gene, None, exc.detail))
    return out


# ══════════════════════════════════════════════════════════════════════
# Model container
# ══════════════════════════════════════════════════════════════════════

@dataclass
class VSTModel:
    """Regularized per-gene NB parameters.

    Arrays are aligned with ``genes``.  Genes that were never modelled
    (too few detecting cells) carry NaN parameters.
    """

    genes: pd.Index
    beta0: np.ndarray
    beta1: np.ndarray
    theta: np.ndarray
    log_mean: np.ndarray
    modelled: np.ndarray
    converged: np.ndarray
    skip_reasons: dict[str, str] = field(default_factory=dict)
    median_depth: float = 1.0
    n_genes_fit: int = 0

    def expected(self, log_depth: np.ndarray, cols: slice | np.ndarray) -> np.ndarray:
        """Fitted mean for cells with *log_depth* and genes *cols*."""
        return np.exp(self.beta0[cols][None, :] + self.beta1[cols][None, :] * log_depth[:, None])

    def transform(
        self,
        counts,
        pseudo_depth: float | None = None,
        clip: float | None = None,
        batch_size: int = PARALLEL_CONFIG["batch_size"],
    ) -> tuple[np.ndarray, sparse.csr_matrix]:
        """
        Compute Pearson residuals and corrected counts for *counts*
        (cells x genes, same gene order as the model).

        Returns
        -------
        residuals : ndarray (float32)
            Clipped to ``[-clip, clip]``; zero for unmodelled genes.
        corrected : csr_matrix (float32)
            Non-negative integer-valued counts at *pseudo_depth*;
            unmodelled genes keep their raw counts.
        """
        counts = as_csr(counts).astype(np.float64)
        n_cells, n_genes = counts.shape
        if n_genes != len(self.genes):
            raise ValueError(
                f"Counts have {n_genes} genes, the model has {len(self.genes)}."
            )
        depth = np.asarray(counts.sum(axis=1)).ravel()
        log_depth = np.log10(np.maximum(depth, 1.0))
        if pseudo_depth is None:
            pseudo_depth = self.median_depth
        log_pseudo = np.full(n_cells, np.log10(max(pseudo_depth, 1.0)))
        if clip is None:
            clip = float(np.sqrt(max(n_cells, 1)))

        residuals = np.zeros((n_cells, n_genes), dtype=np.float32)
        corrected_blocks = []
        csc = counts.tocsc()
        for start in range(0, n_genes, batch_size):
            cols = np.arange(start, min(start + batch_size, n_genes))
            y = csc[:, cols].toarray()
            ok = self.modelled[cols]
            block_res = np.zeros_like(y)
            block_corr = y.copy()
            if ok.any():
                mcols = cols[ok]
                theta = self.theta[mcols][None, :]
                mu = self.expected(log_depth, mcols)
                res = (y[:, ok] - mu) / np.sqrt(mu + mu ** 2 / theta)
                block_res[:, ok] = np.clip(res, -clip, clip)

                mu_p = self.expected(log_pseudo, mcols)
                corr = mu_p + res * np.sqrt(mu_p + mu_p ** 2 / theta)
                block_corr[:, ok] = np.maximum(np.round(corr), 0.0)
            residuals[:, cols] = block_res
            corrected_blocks.append(sparse.csc_matrix(block_corr.astype(np.float32)))

        corrected = sparse.hstack(corrected_blocks, format="csr") if corrected_blocks else (
            sparse.csr_matrix((n_cells, n_genes), dtype=np.float32)
        )
        return residuals, corrected


@dataclass
class NormalizationResult:
    """Output of :func:`normalize`."""

    adata: ad.AnnData
    model: VSTModel
    variable_genes: list[str]

    @property
    def skipped_genes(self) -> dict[str, str]:
        """``{gene: reason}`` for every gene excluded from the model."""
        return dict(self.model.skip_reasons)


# ══════════════════════════════════════════════════════════════════════
# Fitting
# ══════════════════════════════════════════════════════════════════════

def _sample_fit_genes(
    log_mean: np.ndarray, candidates: np.ndarray, n_fit: int, rng: np.random.Generator,
) -> np.ndarray:
    """Pick *n_fit* genes, weighting sparse regions of the mean axis up."""
    if candidates.size <= n_fit:
        return candidates
    x = log_mean[candidates]
    hist, edges = np.histogram(x, bins=50)
    bin_idx = np.clip(np.digitize(x, edges[1:-1]), 0, len(hist) - 1)
    weights = 1.0 / hist[bin_idx]
    chosen = rng.choice(candidates.size, size=n_fit, replace=False, p=weights / weights.sum())
    return np.sort(candidates[chosen])


def _smooth(x_fit: np.ndarray, y_fit: np.ndarray, x_all: np.ndarray, frac: float) -> np.ndarray:
    """Lowess curve through (x_fit, y_fit), evaluated at x_all."""
    if x_fit.size < _MIN_GENES_FOR_SMOOTHING:
        return np.full(x_all.shape, np.median(y_fit))
    curve = lowess(y_fit, x_fit, frac=frac, it=3, return_sorted=True)
    xs, idx = np.unique(curve[:, 0], return_index=True)
    ys = curve[idx, 1]
    if not np.all(np.isfinite(ys)):
        return np.full(x_all.shape, np.median(y_fit))
    return np.interp(x_all, xs, ys)


def fit_vst(
    adata: ad.AnnData,
    n_genes_fit: int = VST_DEFAULTS["n_genes_fit"],
    n_cells_fit: int = VST_DEFAULTS["n_cells_fit"],
    min_cells_detected: int = VST_DEFAULTS["min_cells_detected"],
    theta_max: float = VST_DEFAULTS["theta_max"],
    max_iter: int = VST_DEFAULTS["max_iter"],
    tol: float = VST_DEFAULTS["tol"],
    bandwidth_frac: float = VST_DEFAULTS["bandwidth_frac"],
    seed: int = VST_DEFAULTS["seed"],
    n_jobs: int = PARALLEL_CONFIG["n_jobs"],
) -> VSTModel:
    """
    Fit per-gene NB regressions against sequencing depth and regularize
    their parameters across genes.

    Raises
    ------
    PipelineError
        If the object has no cells, or no gene model converged at all.
    """
    if adata.n_obs == 0:
        raise PipelineError("Cannot normalize a dataset with no cells.", stage="normalize")

    counts = as_csr(get_layer(adata, LayerKind.COUNTS)).astype(np.float64)
    genes = pd.Index(adata.var_names)
    n_cells, n_genes = counts.shape
    rng = np.random.default_rng(seed)

    depth = np.asarray(counts.sum(axis=1)).ravel()
    log_depth = np.log10(np.maximum(depth, 1.0))
    gene_mean = np.asarray(counts.mean(axis=0)).ravel()
    log_mean = np.log10(np.maximum(gene_mean, 1e-12))
    detected = np.diff(counts.tocsc().indptr)

    skip_reasons: dict[str, str] = {}
    modelled = detected >= min_cells_detected
    for g in genes[~modelled]:
        skip_reasons[g] = f"detected in fewer than {min_cells_detected} cells"

    fit_genes = _sample_fit_genes(log_mean, np.flatnonzero(modelled), n_genes_fit, rng)
    if n_cells > n_cells_fit:
        fit_cells = np.sort(rng.choice(n_cells, size=n_cells_fit, replace=False))
    else:
        fit_cells = np.arange(n_cells)

    design = np.column_stack([np.ones(fit_cells.size), log_depth[fit_cells]])
    Y = counts[fit_cells][:, fit_genes].toarray()
    batch = PARALLEL_CONFIG["batch_size"]
    batches = [
        (Y[:, s:s + batch], [genes[i] for i in fit_genes[s:s + batch]])
        for s in range(0, fit_genes.size, batch)
    ]
    results = Parallel(n_jobs=n_jobs)(
        delayed(_fit_batch)(y, design, names, max_iter, tol, theta_max)
        for y, names in batches
    )

    raw = np.full((n_genes, 3), np.nan)
    converged = np.zeros(n_genes, dtype=bool)
    pos = genes.get_indexer
    for batch_result in results:
        for gene, params, reason in batch_result:
            i = pos([gene])[0]
            if params is None:
                skip_reasons[gene] = reason
                logger.warning("Gene %s excluded from the model: %s", gene, reason)
            else:
                raw[i] = params
                converged[i] = True

    ok = np.flatnonzero(converged)
    if ok.size == 0:
        raise PipelineError(
            "No gene model converged; cannot regularize parameters.",
            stage="normalize",
            input_name=f"{fit_genes.size} fitted genes",
        )

    # Pool parameters across genes: smooth against mean expression.
    raw[ok, 2] = np.log10(np.clip(raw[ok, 2], _THETA_MIN, theta_max))
    x_fit = log_mean[ok]
    x_all = log_mean[modelled]
    reg = np.full((n_genes, 3), np.nan)
    for k in range(3):
        reg[modelled, k] = _smooth(x_fit, raw[ok, k], x_all, bandwidth_frac)
    theta = np.clip(10.0 ** reg[:, 2], _THETA_MIN, theta_max)

    # Converged genes keep contributing; failed fit genes are dropped
    # from the ranking even though they receive pooled parameters.
    failed_fit = np.zeros(n_genes, dtype=bool)
    failed_fit[fit_genes] = ~converged[fit_genes]

    model = VSTModel(
        genes=genes,
        beta0=reg[:, 0],
        beta1=reg[:, 1],
        theta=theta,
        log_mean=log_mean,
        modelled=modelled,
        converged=modelled & ~failed_fit,
        skip_reasons=skip_reasons,
        median_depth=float(np.median(depth)),
        n_genes_fit=int(fit_genes.size),
    )
    logger.info(
        "VST fitted %d genes on %d cells (%d converged, %d skipped).",
        fit_genes.size, fit_cells.size, ok.size, len(skip_reasons),
    )
    return model


# ══════════════════════════════════════════════════════════════════════
# Public entry points
# ══════════════════════════════════════════════════════════════════════

def _rank_variable_genes(
    residuals: np.ndarray, eligible: np.ndarray, n_top: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Residual variance per gene and 0-based rank (NaN when not ranked)."""
    res_var = residuals.var(axis=0, ddof=1) if residuals.shape[0] > 1 else np.zeros(residuals.shape[1])
    res_var = np.where(eligible, res_var, np.nan)
    order = np.argsort(-np.nan_to_num(res_var, nan=-np.inf), kind="stable")
    order = order[eligible[order]][:n_top]
    rank = np.full(residuals.shape[1], np.nan)
    rank[order] = np.arange(order.size)
    return res_var, rank


def apply_model(
    adata: ad.AnnData,
    model: VSTModel,
    n_variable_features: int = VST_DEFAULTS["n_variable_features"],
    residual_clip: float | None = VST_DEFAULTS["residual_clip"],
    pseudo_depth: float | None = None,
) -> NormalizationResult:
    """Write the derived layers and gene statistics of *model* onto a copy."""
    adata = adata.copy()
    counts = as_csr(get_layer(adata, LayerKind.COUNTS))
    if pseudo_depth is None:
        pseudo_depth = float(np.median(np.asarray(counts.sum(axis=1)).ravel()))

    residuals, corrected = model.transform(counts, pseudo_depth=pseudo_depth, clip=residual_clip)
    data = corrected.copy()
    data.data = np.log1p(data.data)

    set_layer(adata, LayerKind.COUNTS, counts.copy())
    set_layer(adata, LayerKind.CORRECTED, corrected)
    set_layer(adata, LayerKind.DATA, data)
    set_layer(adata, LayerKind.RESIDUALS, residuals)

    dense_counts = counts.astype(np.float64)
    mean = np.asarray(dense_counts.mean(axis=0)).ravel()
    sq_mean = np.asarray(dense_counts.multiply(dense_counts).mean(axis=0)).ravel()

    res_var, rank = _rank_variable_genes(residuals, model.converged, n_variable_features)
    adata.var["mean"] = mean
    adata.var["variance"] = np.maximum(sq_mean - mean ** 2, 0.0)
    adata.var["residual_variance"] = res_var
    adata.var["highly_variable"] = ~np.isnan(rank)
    adata.var["highly_variable_rank"] = rank
    adata.var["vst_beta0"] = model.beta0
    adata.var["vst_beta1"] = model.beta1
    adata.var["vst_theta"] = model.theta
    adata.var["vst_converged"] = model.converged
    adata.var["vst_skip_reason"] = [model.skip_reasons.get(g, "") for g in adata.var_names]

    clip = residual_clip if residual_clip is not None else float(np.sqrt(max(adata.n_obs, 1)))
    adata.uns["vst"] = {
        "cells_digest": names_digest(adata.obs_names),
        "n_cells": int(adata.n_obs),
        "pseudo_depth": float(pseudo_depth),
        "residual_clip": float(clip),
        "n_genes_fit": int(model.n_genes_fit),
        "n_skipped": int(len(model.skip_reasons)),
    }
    variable = list(
        adata.var_names[np.argsort(np.nan_to_num(rank, nan=np.inf), kind="stable")][
            : int(adata.var["highly_variable"].sum())
        ]
    )
    adata.uns["hvg_stats"] = {
        "n_hvg": int(len(variable)),
        "n_total": int(adata.n_vars),
    }
    return NormalizationResult(adata=adata, model=model, variable_genes=variable)


def normalize(
    adata: ad.AnnData,
    n_variable_features: int = VST_DEFAULTS["n_variable_features"],
    residual_clip: float | None = VST_DEFAULTS["residual_clip"],
    **fit_kwargs,
) -> NormalizationResult:
    """
    Fit the regularized NB model and compute the derived layers.

    Returns a :class:`NormalizationResult`; ``result.adata`` is a new
    AnnData carrying the ``counts``, ``corrected``, ``data`` and
    ``residuals`` layers, gene-level model statistics in ``var``, and the
    highly-variable flags.  *fit_kwargs* go to :func:`fit_vst`.
    """
    model = fit_vst(adata, **fit_kwargs)
    result = apply_model(
        adata, model,
        n_variable_features=n_variable_features,
        residual_clip=residual_clip,
    )
    if result.skipped_genes:
        logger.warning(
            "%d gene(s) excluded from variance stabilization.",
            len(result.skipped_genes),
        )
    return result


def is_current(adata: ad.AnnData) -> bool:
    """True if the normalization layers were computed on exactly these cells."""
    vst = adata.uns.get("vst")
    if vst is None:
        return False
    return vst.get("cells_digest") == names_digest(adata.obs_names)


def ensure_corrected(adata: ad.AnnData, refit: bool = True, **kwargs) -> ad.AnnData:
    """
    Return *adata* with expression values corrected for its own cell set.

    - No ``data`` layer yet → normalize from the raw counts.
    - Layers fitted on a different cell set (e.g. the parent dataset of
      a subpopulation) → re-fit the model on these cells (``refit=True``)
      or re-correct with the stored per-gene parameters at the new
      median depth (``refit=False``).
    - Otherwise *adata* is returned unchanged.

    Layers supplied without a ``vst`` record are trusted as-is.
    """
    has_data = LayerKind.DATA.value in adata.layers
    if has_data and ("vst" not in adata.uns or is_current(adata)):
        return adata

    if has_data and not refit:
        logger.info(
            "Re-correcting %d cells with stored model parameters.", adata.n_obs,
        )
        model = VSTModel(
            genes=pd.Index(adata.var_names),
            beta0=adata.var["vst_beta0"].to_numpy(dtype=np.float64),
            beta1=adata.var["vst_beta1"].to_numpy(dtype=np.float64),
            theta=adata.var["vst_theta"].to_numpy(dtype=np.float64),
            log_mean=np.log10(np.maximum(adata.var["mean"].to_numpy(dtype=np.float64), 1e-12)),
            modelled=np.isfinite(adata.var["vst_beta0"].to_numpy(dtype=np.float64)),
            converged=adata.var["vst_converged"].to_numpy(dtype=bool),
            skip_reasons={
                g: r for g, r in zip(adata.var_names, adata.var["vst_skip_reason"]) if r
            },
        )
        return apply_model(adata, model, **{
            k: v for k, v in kwargs.items()
            if k in ("n_variable_features", "residual_clip")
        }).adata

    if has_data:
        logger.info(
            "Cell set changed since normalization (%d -> %d cells); re-fitting.",
            adata.uns["vst"].get("n_cells", -1), adata.n_obs,
        )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        return normalize(adata, **kwargs).adata
