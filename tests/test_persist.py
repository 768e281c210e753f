import numpy as np
import pytest

from sncompare.de import CellGroup, differential_expression
from sncompare.persist import load_dataset, save_dataset


def test_round_trip_keeps_layers_labels_and_records(analysed, tmp_path):
    path = save_dataset(analysed, tmp_path / "merged")
    assert path.suffix == ".h5ad"

    back = load_dataset(path)

    assert back.shape == analysed.shape
    assert list(back.obs_names) == list(analysed.obs_names)
    np.testing.assert_array_equal(back.X.toarray(), analysed.X.toarray())
    for name in analysed.layers:
        assert name in back.layers
    np.testing.assert_allclose(back.obsm["X_pca"], analysed.obsm["X_pca"])
    assert list(back.obs["cluster"].astype(int)) == list(analysed.obs["cluster"].astype(int))
    assert back.uns["clustering"]["run_id"] == analysed.uns["clustering"]["run_id"]
    assert back.uns["vst"]["cells_digest"] == analysed.uns["vst"]["cells_digest"]


def test_reloaded_dataset_supports_comparisons(analysed, tmp_path):
    back = load_dataset(save_dataset(analysed, tmp_path / "merged.h5ad"))
    result = differential_expression(
        back, CellGroup.where("TG", sample="TG"), CellGroup.where("WT", sample="WT"),
    )
    assert result.get("Up1").upregulated


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_dataset(tmp_path / "absent.h5ad")
