import numpy as np
import pytest

from sncompare.normalize import normalize
from sncompare.reduce import elbow_rank, run_pca, run_umap, scale_features


@pytest.fixture
def normalized(wt_sample):
    return normalize(wt_sample).adata


def test_pca_is_deterministic_for_fixed_seed(normalized):
    a = run_pca(normalized.copy(), n_pcs=8, seed=3)
    b = run_pca(normalized.copy(), n_pcs=8, seed=3)

    np.testing.assert_array_equal(a.obsm["X_pca"], b.obsm["X_pca"])
    np.testing.assert_array_equal(a.varm["PCs"], b.varm["PCs"])


def test_pca_shapes_and_variance_order(normalized):
    out = run_pca(normalized, n_pcs=8)

    assert out.obsm["X_pca"].shape == (out.n_obs, 8)
    assert out.varm["PCs"].shape == (out.n_vars, 8)
    variance = out.uns["pca"]["variance"]
    assert np.all(np.diff(variance) <= 1e-9)
    assert out.uns["pca"]["variance_ratio"].sum() <= 1.0 + 1e-9
    assert 1 <= out.uns["pca"]["elbow_rank"] <= 8


def test_pca_separates_cell_types(normalized):
    out = run_pca(normalized, n_pcs=5)
    pc1 = out.obsm["X_pca"][:, 0]
    is_a = (out.obs["cell_type"] == "A").to_numpy()
    assert np.sign(pc1[is_a].mean()) != np.sign(pc1[~is_a].mean())


def test_components_capped_by_data_size(normalized):
    small = normalized[:6].copy()
    out = run_pca(small, n_pcs=50)
    assert out.obsm["X_pca"].shape[1] == 5


def test_scale_features_clips_and_centres(normalized):
    Z, genes = scale_features(normalized, do_scale=True, scale_max=1.0)
    assert Z.shape == (normalized.n_obs, len(genes))
    assert np.abs(Z).max() <= 1.0


def test_elbow_rank():
    assert elbow_rank([0.6, 0.3, 0.04, 0.03, 0.02, 0.01]) == 2
    assert elbow_rank([0.5, 0.3]) == 2


def test_umap_requires_pca(normalized):
    with pytest.raises(KeyError):
        run_umap(normalized)


def test_umap_embedding_is_two_dimensional(normalized):
    run_pca(normalized, n_pcs=8)
    run_umap(normalized, n_dims=8, n_neighbors=10)
    assert normalized.obsm["X_umap"].shape == (normalized.n_obs, 2)
    assert normalized.uns["umap_stats"]["n_dims"] == 8


def test_umap_is_deterministic_for_fixed_seed(normalized):
    run_pca(normalized, n_pcs=8)
    a = run_umap(normalized.copy(), n_dims=8, n_neighbors=10, seed=5)
    b = run_umap(normalized.copy(), n_dims=8, n_neighbors=10, seed=5)

    np.testing.assert_array_equal(a.obsm["X_umap"], b.obsm["X_umap"])
