"""
persist.py -- Save and restore a dataset as a single ``.h5ad`` file.

Counts, layers, cell and gene metadata, embeddings, graphs and stage
records in ``uns`` all go into the one file, so an analysis can resume
without re-ingesting the raw triplets.
"""

from __future__ import annotations

import logging
from pathlib import Path

import anndata as ad

logger = logging.getLogger(__name__)


def save_dataset(adata: ad.AnnData, path: str | Path, compression: str | None = "gzip") -> Path:
    """Write *adata* to *path* (``.h5ad`` suffix added if missing)."""
    path = Path(path)
    if path.suffix != ".h5ad":
        path = path.with_suffix(".h5ad")
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path, compression=compression)
    logger.info("Saved %d cells x %d genes to %s.", adata.n_obs, adata.n_vars, path)
    return path


def load_dataset(path: str | Path) -> ad.AnnData:
    """Read a dataset written by :func:`save_dataset`.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset file not found: {path}")
    adata = ad.read_h5ad(path)
    logger.info("Loaded %d cells x %d genes from %s.", adata.n_obs, adata.n_vars, path)
    return adata
