import numpy as np
import pytest

import sncompare.normalize as normalize_mod
from conftest import make_counts
from sncompare.errors import ConvergenceError, PipelineError
from sncompare.layers import LayerKind, get_layer
from sncompare.normalize import ensure_corrected, is_current, normalize


def test_layers_and_gene_statistics(wt_sample):
    result = normalize(wt_sample)
    out = result.adata

    for kind in LayerKind:
        assert kind.value in out.layers
    assert "data" not in wt_sample.layers  # input untouched

    residuals = np.asarray(get_layer(out, LayerKind.RESIDUALS))
    clip = out.uns["vst"]["residual_clip"]
    assert clip == pytest.approx(np.sqrt(out.n_obs))
    assert np.abs(residuals).max() <= clip + 1e-6

    corrected = get_layer(out, LayerKind.CORRECTED).toarray()
    assert (corrected >= 0).all()
    np.testing.assert_array_equal(corrected, np.round(corrected))
    np.testing.assert_allclose(get_layer(out, LayerKind.DATA).toarray(), np.log1p(corrected), rtol=1e-5)

    assert out.var["highly_variable"].sum() == len(result.variable_genes)
    assert is_current(out)


def test_variable_genes_are_ranked_by_residual_variance(wt_sample):
    out = normalize(wt_sample, n_variable_features=5).adata

    hv = out.var[out.var["highly_variable"]]
    assert len(hv) == 5
    rest = out.var[~out.var["highly_variable"] & out.var["vst_converged"]]
    assert hv["residual_variance"].min() >= rest["residual_variance"].max()


def test_non_converging_gene_is_skipped_not_fatal(wt_sample, monkeypatch):
    original = normalize_mod._fit_gene

    def _flaky(y, design, gene, *args):
        if gene == "g3":
            raise ConvergenceError("forced failure", input_name=gene, n_iter=1)
        return original(y, design, gene, *args)

    monkeypatch.setattr(normalize_mod, "_fit_gene", _flaky)

    result = normalize(wt_sample)

    assert "g3" in result.skipped_genes
    assert result.skipped_genes["g3"] == "forced failure"
    assert "g3" not in result.variable_genes
    assert not result.adata.var.loc["g3", "highly_variable"]
    assert result.adata.var.loc["g3", "vst_skip_reason"] == "forced failure"
    assert result.adata.n_vars == wt_sample.n_vars


def test_rarely_detected_gene_is_skipped_with_reason(rng):
    adata = make_counts(rng, np.append(rng.uniform(1.0, 5.0, 15), 0.0), 40)
    adata.X[0, 15] = 3

    result = normalize(adata, min_cells_detected=5)

    assert "g15" in result.skipped_genes
    assert "fewer than 5 cells" in result.skipped_genes["g15"]
    assert not result.adata.var.loc["g15", "highly_variable"]


def test_all_fits_failing_is_fatal(wt_sample, monkeypatch):
    def _always_fail(y, design, gene, *args):
        raise ConvergenceError("no", input_name=gene)

    monkeypatch.setattr(normalize_mod, "_fit_gene", _always_fail)

    with pytest.raises(PipelineError, match="No gene model converged"):
        normalize(wt_sample)


def test_zero_cells_is_fatal(wt_sample):
    with pytest.raises(PipelineError):
        normalize(wt_sample[:0].copy())


def test_ensure_corrected_refits_on_subset(wt_sample):
    out = normalize(wt_sample).adata
    subset = out[:30].copy()
    assert not is_current(subset)

    refit = ensure_corrected(subset)
    assert is_current(refit)
    assert refit.uns["vst"]["n_cells"] == 30

    recorrected = ensure_corrected(subset, refit=False)
    assert is_current(recorrected)
    np.testing.assert_allclose(
        recorrected.var["vst_theta"].to_numpy(), out.var["vst_theta"].to_numpy(),
    )


def test_ensure_corrected_is_noop_when_current(wt_sample):
    out = normalize(wt_sample).adata
    assert ensure_corrected(out) is out
