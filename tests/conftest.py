import gzip
from pathlib import Path

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scipy.io
from scipy import sparse


def make_counts(rng, means, n_cells, cell_prefix="c", genes=None):
    """Poisson counts (cells x genes) with a little per-cell depth variation."""
    means = np.asarray(means, dtype=np.float64)
    depth = rng.uniform(0.7, 1.3, n_cells)
    X = rng.poisson(depth[:, None] * means[None, :]).astype(np.int32)
    genes = genes if genes is not None else [f"g{j}" for j in range(means.size)]
    return ad.AnnData(
        X=sparse.csr_matrix(X),
        obs=pd.DataFrame(index=[f"{cell_prefix}{i}" for i in range(n_cells)]),
        var=pd.DataFrame(index=genes),
    )


def write_triplet(directory: Path, adata: ad.AnnData, compress: bool = False) -> Path:
    """Write *adata* as matrix.mtx / barcodes.tsv / features.tsv (genes x cells)."""
    directory.mkdir(parents=True, exist_ok=True)
    matrix = directory / "matrix.mtx"
    scipy.io.mmwrite(str(matrix), sparse.csr_matrix(adata.X).T.tocoo())
    barcodes = "\n".join(adata.obs_names) + "\n"
    features = "".join(
        f"ENSG{j:05d}\t{g}\tGene Expression\n" for j, g in enumerate(adata.var_names)
    )
    if compress:
        (directory / "matrix.mtx.gz").write_bytes(gzip.compress(matrix.read_bytes()))
        matrix.unlink()
        (directory / "barcodes.tsv.gz").write_bytes(gzip.compress(barcodes.encode()))
        (directory / "features.tsv.gz").write_bytes(gzip.compress(features.encode()))
    else:
        (directory / "barcodes.tsv").write_text(barcodes)
        (directory / "features.tsv").write_text(features)
    return directory


# Shared gene panel: two cell types (A high in g0-g9, B high in g10-g19),
# background genes, one mitochondrial gene and one condition-responsive gene.
GENES = [f"g{j}" for j in range(36)] + ["mt-Co1", "Up1"]


def _panel_means(cell_type: str, up_mean: float) -> np.ndarray:
    base = np.random.default_rng(1).uniform(0.5, 4.0, len(GENES))
    means = base.copy()
    if cell_type == "A":
        means[0:10] = 12.0
    else:
        means[10:20] = 12.0
    means[GENES.index("mt-Co1")] = 0.5
    means[GENES.index("Up1")] = up_mean
    return means


def simulate_sample(seed: int, n_per_type: int = 40, up_mean: float = 1.0) -> ad.AnnData:
    rng = np.random.default_rng(seed)
    parts = []
    for cell_type in ("A", "B"):
        part = make_counts(
            rng, _panel_means(cell_type, up_mean), n_per_type,
            cell_prefix=f"{cell_type}_", genes=GENES,
        )
        part.obs["cell_type"] = cell_type
        parts.append(part)
    return ad.concat(parts)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def wt_sample():
    return simulate_sample(seed=11, up_mean=1.0)


@pytest.fixture
def tg_sample():
    return simulate_sample(seed=22, up_mean=10.0)


@pytest.fixture
def de_dataset():
    """50 + 50 cells; ``Up1`` has mean 10 in group A and mean 1 in group B."""
    rng = np.random.default_rng(7)
    background = rng.uniform(1.0, 5.0, 20)
    genes = [f"bg{j}" for j in range(20)] + ["Up1"]
    a = make_counts(rng, np.append(background, 10.0), 50, cell_prefix="a", genes=genes)
    b = make_counts(rng, np.append(background, 1.0), 50, cell_prefix="b", genes=genes)
    a.obs["group"] = "A"
    b.obs["group"] = "B"
    return ad.concat([a, b])


@pytest.fixture
def analysed(wt_sample, tg_sample):
    """Merged two-condition dataset run through normalize/PCA/clustering."""
    from sncompare.cluster import cluster_cells
    from sncompare.merge import merge_samples
    from sncompare.normalize import normalize
    from sncompare.reduce import reduce_dimensions

    merged = merge_samples([(wt_sample, "WT"), (tg_sample, "TG")])
    merged.obs["cell_type"] = np.concatenate(
        [wt_sample.obs["cell_type"].to_numpy(), tg_sample.obs["cell_type"].to_numpy()]
    )
    out = normalize(merged).adata
    reduce_dimensions(out, n_pcs=10, n_dims=10, umap=False)
    cluster_cells(out, n_dims=10, k=15)
    return out
