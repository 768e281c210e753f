import numpy as np
import pytest

from sncompare.layers import LayerKind, get_layer, sample_layer, set_layer
from sncompare.merge import merge_samples


def test_counts_fall_back_to_x(wt_sample):
    assert get_layer(wt_sample, LayerKind.COUNTS) is wt_sample.X


def test_missing_derived_layer_raises(wt_sample):
    with pytest.raises(KeyError, match="residuals"):
        get_layer(wt_sample, LayerKind.RESIDUALS)


def test_set_layer_checks_shape(wt_sample):
    with pytest.raises(ValueError):
        set_layer(wt_sample, LayerKind.DATA, np.zeros((2, 2)))
    set_layer(wt_sample, "data", np.zeros(wt_sample.shape))
    assert "data" in wt_sample.layers


def test_sample_layer_selects_one_sample(wt_sample, tg_sample):
    merged = merge_samples([(wt_sample, "WT"), (tg_sample, "TG")])

    tg = sample_layer(merged, "TG", LayerKind.COUNTS)

    assert tg.shape == (tg_sample.n_obs, merged.n_vars)
    np.testing.assert_array_equal(tg.toarray(), tg_sample.X.toarray())
    with pytest.raises(KeyError):
        sample_layer(merged, "KO", LayerKind.COUNTS)
