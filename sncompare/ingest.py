"""
ingest.py -- Sparse count-matrix ingestion.

Reads the 10x-style triplet (Matrix Market file, barcode list, feature
list) into an AnnData object with cells as observations and genes as
variables, tags every cell with its sample label, and drops genes and
cells below the configured detection thresholds.

Every source may be a path or an in-memory :class:`FileData`, plain or
gzip-compressed (detected by a ``.gz`` suffix).

Functions
---------
read_10x_triplet(matrix, barcodes, features, sample, ...)
    → Load and filter one sample.

read_10x_directory(path, sample, ...)
    → Locate the triplet inside a directory, then read it.

filter_ingested(adata, min_cells, min_features)
    → Detection-threshold filter (genes first, then cells).
"""

from __future__ import annotations

import gzip
import io
import logging
from pathlib import Path
from typing import Union

import anndata as ad
import pandas as pd
import scanpy as sc
import scipy.io
from scipy import sparse

from sncompare.config import INGESTION_DEFAULTS
from sncompare.errors import IngestionError
from sncompare.layers import SAMPLE_KEY
from sncompare.protocols import FileData

logger = logging.getLogger(__name__)

Source = Union[str, Path, FileData]


# ══════════════════════════════════════════════════════════════════════
# Low-level readers
# ══════════════════════════════════════════════════════════════════════

def _source_name(source: Source) -> str:
    if isinstance(source, FileData):
        return source.name
    return str(source)


def _read_bytes(source: Source) -> bytes:
    """Return the decompressed bytes of *source*."""
    if isinstance(source, FileData):
        raw, name = source.content, source.name
    else:
        path = Path(source)
        if not path.exists():
            raise IngestionError("File not found.", input_name=str(path))
        raw, name = path.read_bytes(), path.name

    if name.endswith(".gz"):
        try:
            return gzip.decompress(raw)
        except (OSError, EOFError) as exc:
            raise IngestionError(
                f"Could not decompress gzip file: {exc}", input_name=name,
            ) from exc
    return raw


def _read_lines(source: Source) -> list[str]:
    """Read a text file into a list of non-empty, right-stripped lines."""
    text = _read_bytes(source).decode("utf-8")
    return [line.rstrip("\r\n") for line in text.split("\n") if line.strip()]


def _parse_features(lines: list[str]) -> pd.DataFrame:
    """
    Parse a features/genes file with 1, 2 or 3+ tab-separated columns.

    - **1 column** (gene name only): the name doubles as the gene id.
    - **2 columns** (gene_id + gene_name).
    - **3+ columns**: third column is the feature type.

    Returns a DataFrame with ``gene_ids``, ``gene_symbols`` and
    ``feature_types`` columns, one row per line.
    """
    ids, symbols, types = [], [], []
    for line in lines:
        cols = line.split("\t")
        if len(cols) == 1:
            ids.append(cols[0])
            symbols.append(cols[0])
            types.append("Gene Expression")
        else:
            ids.append(cols[0])
            symbols.append(cols[1])
            types.append(cols[2] if len(cols) >= 3 else "Gene Expression")
    return pd.DataFrame(
        {"gene_ids": ids, "gene_symbols": symbols, "feature_types": types}
    )


def _read_matrix(source: Source) -> sparse.csr_matrix:
    """Read a Matrix Market file (genes x cells) as CSR."""
    name = _source_name(source)
    try:
        mat = scipy.io.mmread(io.BytesIO(_read_bytes(source)))
    except (ValueError, IndexError) as exc:
        raise IngestionError(
            f"Not a valid Matrix Market file: {exc}", input_name=name,
        ) from exc
    return sparse.csr_matrix(mat)


# ══════════════════════════════════════════════════════════════════════
# Filtering
# ══════════════════════════════════════════════════════════════════════

def filter_ingested(
    adata: ad.AnnData,
    min_cells: int = INGESTION_DEFAULTS["min_cells"],
    min_features: int = INGESTION_DEFAULTS["min_features"],
    sample: str | None = None,
) -> ad.AnnData:
    """
    Drop genes detected in fewer than *min_cells* cells, then cells with
    fewer than *min_features* detected genes.

    Returns a new AnnData; the input is not modified.  When *sample* is
    given, an empty result raises ``IngestionError`` naming it.
    """
    adata = adata.copy()
    n_cells_before, n_genes_before = adata.n_obs, adata.n_vars

    sc.pp.filter_genes(adata, min_cells=min_cells)
    sc.pp.filter_cells(adata, min_genes=min_features)

    adata.uns["ingest_stats"] = {
        "cells_before": int(n_cells_before),
        "cells_after": int(adata.n_obs),
        "genes_before": int(n_genes_before),
        "genes_after": int(adata.n_vars),
        "min_cells": int(min_cells),
        "min_features": int(min_features),
    }
    if sample is not None and (adata.n_obs == 0 or adata.n_vars == 0):
        raise IngestionError(
            f"No data left after filtering (min_cells={min_cells}, "
            f"min_features={min_features}): {adata.n_obs} cells x "
            f"{adata.n_vars} genes.",
            input_name=sample,
        )
    return adata


# ══════════════════════════════════════════════════════════════════════
# Public readers
# ══════════════════════════════════════════════════════════════════════

def read_10x_triplet(
    matrix: Source,
    barcodes: Source,
    features: Source,
    sample: str,
    min_cells: int = INGESTION_DEFAULTS["min_cells"],
    min_features: int = INGESTION_DEFAULTS["min_features"],
) -> ad.AnnData:
    """
    Load one sample from its matrix / barcodes / features triplet.

    Parameters
    ----------
    matrix : path or FileData
        ``matrix.mtx(.gz)`` — genes as rows, cells as columns.
    barcodes : path or FileData
        ``barcodes.tsv(.gz)`` — one cell identifier per line.
    features : path or FileData
        ``features.tsv(.gz)`` / ``genes.tsv(.gz)`` — one gene per line.
    sample : str
        Sample label written to ``adata.obs["sample"]``.
    min_cells, min_features : int
        Detection thresholds (see :func:`filter_ingested`).

    Returns
    -------
    AnnData
        Cells x genes, raw integer counts in ``X``.

    Raises
    ------
    IngestionError
        If a file is missing or malformed, the three sources disagree in
        their dimensions, or nothing survives the filters.
    """
    mat = _read_matrix(matrix)
    cell_ids = [line.split("\t")[0] for line in _read_lines(barcodes)]
    feature_df = _parse_features(_read_lines(features))

    n_genes, n_cells = mat.shape
    if n_genes != len(feature_df):
        raise IngestionError(
            f"Matrix has {n_genes} rows but the feature list has "
            f"{len(feature_df)} entries.",
            input_name=_source_name(features),
        )
    if n_cells != len(cell_ids):
        raise IngestionError(
            f"Matrix has {n_cells} columns but the barcode list has "
            f"{len(cell_ids)} entries.",
            input_name=_source_name(barcodes),
        )
    if mat.nnz == 0:
        raise IngestionError("Matrix contains no counts.", input_name=_source_name(matrix))
    if mat.data.min() < 0:
        raise IngestionError(
            "Matrix contains negative counts.", input_name=_source_name(matrix),
        )

    counts = mat.T.tocsr().astype(INGESTION_DEFAULTS["counts_dtype"])
    var = feature_df.set_index("gene_symbols", drop=False)
    var.index = var.index.astype(str)
    var.index.name = None
    obs = pd.DataFrame(index=pd.Index(cell_ids, dtype=str))

    adata = ad.AnnData(X=counts, obs=obs, var=var)
    adata.var_names_make_unique()
    if not adata.obs_names.is_unique:
        raise IngestionError(
            "Barcode list contains duplicate cell identifiers.",
            input_name=_source_name(barcodes),
        )

    adata = filter_ingested(
        adata, min_cells=min_cells, min_features=min_features, sample=sample,
    )

    adata.obs[SAMPLE_KEY] = pd.Categorical([sample] * adata.n_obs)
    adata.uns["ingest_stats"]["sample"] = sample

    stats = adata.uns["ingest_stats"]
    logger.info(
        "Ingested sample %s: %d/%d cells, %d/%d genes kept.",
        sample, stats["cells_after"], stats["cells_before"],
        stats["genes_after"], stats["genes_before"],
    )
    return adata


def _find_first(directory: Path, names: list[str], kind: str) -> Path:
    for name in names:
        candidate = directory / name
        if candidate.exists():
            return candidate
    raise IngestionError(
        f"No {kind} file found (looked for {names}).", input_name=str(directory),
    )


def read_10x_directory(
    path: str | Path,
    sample: str,
    min_cells: int = INGESTION_DEFAULTS["min_cells"],
    min_features: int = INGESTION_DEFAULTS["min_features"],
) -> ad.AnnData:
    """Read the matrix / barcodes / features triplet found in *path*."""
    directory = Path(path)
    if not directory.is_dir():
        raise IngestionError("Not a directory.", input_name=str(directory))

    return read_10x_triplet(
        _find_first(directory, INGESTION_DEFAULTS["matrix_names"], "matrix"),
        _find_first(directory, INGESTION_DEFAULTS["barcode_names"], "barcode"),
        _find_first(directory, INGESTION_DEFAULTS["feature_names"], "feature"),
        sample=sample,
        min_cells=min_cells,
        min_features=min_features,
    )

