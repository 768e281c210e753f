import numpy as np
import pytest

from sncompare.cluster import (
    build_knn,
    cluster_cells,
    detect_communities,
    shared_neighbor_graph,
)


def test_labels_are_contiguous_from_zero_and_size_ordered(analysed):
    labels = analysed.obs["cluster"].astype(int).to_numpy()
    n = analysed.uns["clustering"]["n_clusters"]

    assert n >= 2
    assert set(labels) == set(range(n))
    sizes = np.bincount(labels)
    assert np.all(np.diff(sizes) <= 0)


def test_clusters_follow_cell_types(analysed):
    for label in analysed.obs["cluster"].cat.categories:
        types = analysed.obs.loc[analysed.obs["cluster"] == label, "cell_type"]
        assert types.value_counts(normalize=True).iloc[0] > 0.9


def test_reclustering_is_idempotent(analysed):
    before = analysed.obs["cluster"].to_numpy().copy()
    run_id = analysed.uns["clustering"]["run_id"]

    cluster_cells(analysed, n_dims=10, k=15)

    np.testing.assert_array_equal(analysed.obs["cluster"].to_numpy(), before)
    assert analysed.uns["clustering"]["run_id"] == run_id


def test_run_id_changes_with_parameters(analysed):
    run_id = analysed.uns["clustering"]["run_id"]
    cluster_cells(analysed, n_dims=10, k=15, resolution=1.5)
    assert analysed.uns["clustering"]["run_id"] != run_id


def test_louvain_backend(analysed):
    cluster_cells(analysed, n_dims=10, k=15, algorithm="louvain", key_added="louvain")
    labels = analysed.obs["louvain"].astype(int).to_numpy()
    assert labels.min() == 0
    assert "cluster" in analysed.obs.columns


def test_unknown_algorithm_raises(analysed):
    snn = analysed.obsp["snn"]
    with pytest.raises(ValueError, match="Unknown clustering algorithm"):
        detect_communities(snn, algorithm="spectral")


def test_shared_neighbor_graph_is_symmetric_with_empty_diagonal(rng):
    X = rng.normal(size=(30, 4))
    snn = shared_neighbor_graph(build_knn(X, k=5), prune=0.0)

    assert (abs(snn - snn.T) > 1e-12).nnz == 0
    assert snn.diagonal().sum() == 0
    assert snn.data.max() <= 1.0


def test_pruning_drops_weak_edges(rng):
    X = rng.normal(size=(30, 4))
    knn = build_knn(X, k=5)
    loose = shared_neighbor_graph(knn, prune=0.0)
    strict = shared_neighbor_graph(knn, prune=0.3)
    assert strict.nnz < loose.nnz
    assert strict.data.min() >= 0.3


def test_requires_pca(wt_sample):
    with pytest.raises(KeyError):
        cluster_cells(wt_sample)
