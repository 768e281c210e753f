"""
sncompare/layers.py -- Typed access to expression layers.

Each derived expression matrix lives in ``adata.layers`` under the value
of a :class:`LayerKind`.  Callers ask for a kind (and optionally a
sample) instead of composing suffixed layer names by hand.

Raw counts are also kept in ``adata.X`` so that stage functions written
against plain AnnData objects keep working.
"""

from __future__ import annotations

import hashlib
from enum import Enum

import anndata as ad
import numpy as np
from scipy import sparse

SAMPLE_KEY = "sample"


class LayerKind(str, Enum):
    """Kinds of expression values carried alongside raw counts."""

    COUNTS = "counts"
    CORRECTED = "corrected"
    DATA = "data"
    RESIDUALS = "residuals"


def has_layer(adata: ad.AnnData, kind: LayerKind) -> bool:
    return LayerKind(kind).value in adata.layers


def get_layer(adata: ad.AnnData, kind: LayerKind):
    """Return the matrix stored for *kind*.

    ``COUNTS`` falls back to ``adata.X`` when no counts layer has been
    written yet (freshly ingested data).

    Raises
    ------
    KeyError
        If the layer has not been computed.
    """
    kind = LayerKind(kind)
    if kind.value in adata.layers:
        return adata.layers[kind.value]
    if kind is LayerKind.COUNTS:
        return adata.X
    raise KeyError(
        f"Layer '{kind.value}' has not been computed. "
        f"Available layers: {sorted(adata.layers.keys())}"
    )


def set_layer(adata: ad.AnnData, kind: LayerKind, matrix) -> None:
    """Store *matrix* as the layer for *kind* (shape must match)."""
    kind = LayerKind(kind)
    if matrix.shape != adata.shape:
        raise ValueError(
            f"Layer '{kind.value}' has shape {matrix.shape}, "
            f"expected {adata.shape}."
        )
    adata.layers[kind.value] = matrix


def sample_layer(adata: ad.AnnData, sample: str, kind: LayerKind):
    """Return the *kind* matrix restricted to the cells of one sample."""
    if SAMPLE_KEY not in adata.obs.columns:
        raise KeyError(f"adata.obs has no '{SAMPLE_KEY}' column.")
    mask = (adata.obs[SAMPLE_KEY].astype(str) == str(sample)).to_numpy()
    if not mask.any():
        raise KeyError(
            f"Sample '{sample}' not found. "
            f"Available: {sorted(adata.obs[SAMPLE_KEY].astype(str).unique())}"
        )
    return get_layer(adata, kind)[mask]


def as_dense(matrix) -> np.ndarray:
    """Densify a sparse matrix (or view) into a float64 ndarray."""
    if sparse.issparse(matrix):
        return np.asarray(matrix.toarray(), dtype=np.float64)
    return np.asarray(matrix, dtype=np.float64)


def as_csr(matrix) -> sparse.csr_matrix:
    if sparse.issparse(matrix):
        return sparse.csr_matrix(matrix)
    return sparse.csr_matrix(np.asarray(matrix))


def matrix_digest(matrix) -> str:
    """Content fingerprint of a matrix (shape, sparsity pattern, values)."""
    h = hashlib.sha1()
    h.update(repr(tuple(matrix.shape)).encode())
    if sparse.issparse(matrix):
        csr = sparse.csr_matrix(matrix)
        csr.sort_indices()
        for arr in (csr.indptr, csr.indices, csr.data):
            h.update(np.ascontiguousarray(arr).tobytes())
    else:
        h.update(np.ascontiguousarray(np.asarray(matrix)).tobytes())
    return h.hexdigest()


def names_digest(names) -> str:
    """Order-sensitive fingerprint of a list of identifiers."""
    h = hashlib.sha1()
    for name in names:
        h.update(str(name).encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()
