"""
cluster.py -- Shared-nearest-neighbor graph and community detection.

1. k-nearest neighbors (Euclidean, each cell counts itself) in the
   leading PCA dimensions.
2. Shared-neighbor graph: edge weight is the Jaccard overlap of two
   cells' neighbor sets; weights below ``prune`` are dropped.
3. Modularity optimisation (Leiden via ``leidenalg``, or Louvain via
   igraph's multilevel algorithm) at a given resolution.

Labels are integers contiguous from 0, ordered by cluster size (0 is the
largest).  Every run records its own opaque run id in
``adata.uns["clustering"]``; a sub-population clustered later gets a
different id, so its labels never share a namespace with the parent's.
"""

from __future__ import annotations

import logging
import random

import anndata as ad
import igraph as ig
import leidenalg
import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.neighbors import NearestNeighbors

from sncompare.config import CLUSTER_DEFAULTS, REDUCTION_DEFAULTS
from sncompare.layers import names_digest

logger = logging.getLogger(__name__)

CLUSTER_KEY = "cluster"


def build_knn(X: np.ndarray, k: int = CLUSTER_DEFAULTS["k"]) -> np.ndarray:
    """Indices of the *k* nearest neighbors of every row (self included)."""
    n = X.shape[0]
    k = max(1, min(k, n))
    nn = NearestNeighbors(n_neighbors=k, metric="euclidean")
    nn.fit(X)
    _, idx = nn.kneighbors(X)
    return idx


def shared_neighbor_graph(
    knn: np.ndarray, prune: float = CLUSTER_DEFAULTS["prune"],
) -> sparse.csr_matrix:
    """
    Jaccard-weighted shared-neighbor graph from a kNN index matrix.

    The result is symmetric with an empty diagonal.
    """
    n, k = knn.shape
    rows = np.repeat(np.arange(n), k)
    A = sparse.csr_matrix((np.ones(n * k), (rows, knn.ravel())), shape=(n, n))
    A.data[:] = 1.0  # duplicate neighbor entries collapse to one

    shared = (A @ A.T).tocoo()
    jaccard = shared.data / (2.0 * k - shared.data)
    keep = (jaccard >= prune) & (shared.row != shared.col)
    snn = sparse.csr_matrix(
        (jaccard[keep], (shared.row[keep], shared.col[keep])), shape=(n, n),
    )
    return snn


def _to_igraph(snn: sparse.csr_matrix) -> ig.Graph:
    upper = sparse.triu(snn, k=1).tocoo()
    g = ig.Graph(n=snn.shape[0], edges=list(zip(upper.row.tolist(), upper.col.tolist())), directed=False)
    g.es["weight"] = upper.data.tolist()
    return g


def _relabel_by_size(membership) -> np.ndarray:
    """Map community ids to 0..n-1, largest community first."""
    membership = np.asarray(membership)
    ids, first, counts = np.unique(membership, return_index=True, return_counts=True)
    order = sorted(range(ids.size), key=lambda i: (-counts[i], first[i]))
    mapping = {ids[i]: new for new, i in enumerate(order)}
    return np.array([mapping[m] for m in membership], dtype=np.int64)


def detect_communities(
    snn: sparse.csr_matrix,
    resolution: float = CLUSTER_DEFAULTS["resolution"],
    algorithm: str = CLUSTER_DEFAULTS["algorithm"],
    n_iterations: int = CLUSTER_DEFAULTS["n_iterations"],
    seed: int = CLUSTER_DEFAULTS["seed"],
) -> np.ndarray:
    """
    Partition the shared-neighbor graph by modularity.

    Parameters
    ----------
    algorithm : {"leiden", "louvain"}
    n_iterations : int
        Leiden passes; negative runs until the partition is stable.

    Returns
    -------
    ndarray of int
        Cluster label per cell, contiguous from 0.
    """
    if snn.shape[0] == 0:
        return np.zeros(0, dtype=np.int64)
    g = _to_igraph(snn)

    if algorithm == "leiden":
        partition = leidenalg.find_partition(
            g,
            leidenalg.RBConfigurationVertexPartition,
            weights="weight",
            resolution_parameter=resolution,
            n_iterations=n_iterations,
            seed=seed,
        )
        membership = partition.membership
    elif algorithm == "louvain":
        ig.set_random_number_generator(random.Random(seed))
        try:
            membership = g.community_multilevel(
                weights="weight", resolution=resolution,
            ).membership
        finally:
            ig.set_random_number_generator(random)
    else:
        raise ValueError(
            f"Unknown clustering algorithm '{algorithm}'. Use 'leiden' or 'louvain'."
        )
    return _relabel_by_size(membership)


def cluster_cells(
    adata: ad.AnnData,
    n_dims: int = REDUCTION_DEFAULTS["n_dims"],
    k: int = CLUSTER_DEFAULTS["k"],
    prune: float = CLUSTER_DEFAULTS["prune"],
    resolution: float = CLUSTER_DEFAULTS["resolution"],
    algorithm: str = CLUSTER_DEFAULTS["algorithm"],
    n_iterations: int = CLUSTER_DEFAULTS["n_iterations"],
    seed: int = CLUSTER_DEFAULTS["seed"],
    key_added: str = CLUSTER_KEY,
) -> ad.AnnData:
    """
    Cluster cells in the leading *n_dims* PCA dimensions.

    Writes ``obs[key_added]`` (categorical int labels),
    ``obsp["snn"]`` and ``uns["clustering"]``.  Modifies *adata* in
    place and returns it.  Any previous labels under *key_added* are
    replaced.
    """
    if "X_pca" not in adata.obsm:
        raise KeyError("No PCA coordinates; run reduce_dimensions() first.")
    X = np.asarray(adata.obsm["X_pca"])[:, :n_dims]

    if adata.n_obs < 2:
        labels = np.zeros(adata.n_obs, dtype=np.int64)
        snn = sparse.csr_matrix((adata.n_obs, adata.n_obs))
    else:
        snn = shared_neighbor_graph(build_knn(X, k=k), prune=prune)
        labels = detect_communities(
            snn, resolution=resolution, algorithm=algorithm,
            n_iterations=n_iterations, seed=seed,
        )

    n_clusters = int(labels.max()) + 1 if labels.size else 0
    adata.obs[key_added] = pd.Categorical(labels, categories=list(range(n_clusters)))
    adata.obsp["snn"] = snn

    run_id = names_digest(
        [*adata.obs_names, algorithm, resolution, k, prune, n_dims, seed]
    )[:12]
    parent = adata.uns.get("lineage", {}).get("parent_run_id", "")
    adata.uns["clustering"] = {
        "run_id": run_id,
        "parent_run_id": parent,
        "key": key_added,
        "algorithm": algorithm,
        "resolution": float(resolution),
        "k": int(k),
        "n_dims": int(X.shape[1]),
        "seed": int(seed),
        "n_clusters": n_clusters,
        "sizes": np.bincount(labels, minlength=n_clusters).astype(np.int64),
    }
    logger.info(
        "Clustering (%s, resolution=%.2f): %d clusters on %d cells.",
        algorithm, resolution, n_clusters, adata.n_obs,
    )
    return adata
