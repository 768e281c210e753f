import numpy as np
from pydeseq2.ds import DeseqStats

from sncompare.deseq_runner import N_DESEQ2_STEPS, build_deseq_dataset, deseq2_test, run_deseq2
from sncompare.protocols import ComparisonInputs


def _split(de_dataset):
    in_a = (de_dataset.obs["group"] == "A").to_numpy()
    return de_dataset.X[in_a], de_dataset.X[~in_a], list(de_dataset.var_names)


def test_fitted_dataset_is_accepted_by_wald_stats(de_dataset):
    counts_a, counts_b, genes = _split(de_dataset)
    seen = []

    dds, timings = run_deseq2(
        build_deseq_dataset(counts_a, counts_b, genes),
        progress_callback=lambda i, n, key: seen.append((i, n, key)),
    )
    stats = DeseqStats(dds, contrast=["group", "group1", "group2"], quiet=True)
    stats.summary()

    assert "cooks" in timings
    assert seen[-1] == (N_DESEQ2_STEPS, N_DESEQ2_STEPS, "deseq2.done")
    assert "deseq2.cooks" in [key for _, _, key in seen]
    assert stats.results_df.loc["Up1", "log2FoldChange"] > 1.0


def test_registry_entry_returns_one_pvalue_per_gene(de_dataset):
    counts_a, counts_b, genes = _split(de_dataset)
    pvalues = deseq2_test(ComparisonInputs(counts_a, counts_b, counts_a, counts_b, genes))

    assert pvalues.shape == (len(genes),)
    assert np.all((pvalues >= 0) & (pvalues <= 1))
    assert pvalues[genes.index("Up1")] < 1e-6
