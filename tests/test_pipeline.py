import json
import pickle

import pytest

from sncompare.audit import format_audit_text
from sncompare.errors import IngestionError
from sncompare.pipeline import ConditionComparisonPipeline, PipelineParams, SampleSpec

SMALL = dict(
    min_cells=0, min_features=0,
    total_count=None, feature_count=None, mito_fraction=(None, 50.0),
    n_pcs=8, n_dims=8, k=15, run_umap=False,
)


@pytest.fixture
def pipeline(wt_sample, tg_sample):
    return ConditionComparisonPipeline([
        SampleSpec("WT", adata=wt_sample),
        SampleSpec("TG", adata=tg_sample),
    ]).configure(**SMALL)


def test_configure_rejects_unknown_keys(pipeline):
    with pytest.raises(ValueError, match="Unknown parameter"):
        pipeline.configure(resolutoin=1.0)


def test_sample_spec_needs_a_source():
    with pytest.raises(ValueError):
        SampleSpec("WT")
    assert SampleSpec("WT", path="x").condition == "WT"


def test_full_run_compares_conditions(pipeline):
    seen = []
    pipeline.progress_callback = lambda i, n, key: seen.append(key)

    pipeline.run()

    result = pipeline.comparisons["TG_vs_WT"]
    assert result.get("Up1").upregulated
    assert seen[:3] == ["ingest", "quality_filter", "merge"]
    assert seen[-1] == "done"
    assert pipeline.dataset.n_obs == 160
    assert "cluster" in pipeline.dataset.obs.columns
    assert list(pipeline.dataset.obs["condition"].cat.categories) == ["WT", "TG"]
    assert "total" in pipeline.step_timings


def test_per_cluster_comparison_and_markers(pipeline):
    pipeline.run()
    cluster = pipeline.dataset.obs["cluster"].cat.categories[0]

    pipeline.compare_conditions(cluster=cluster).find_markers()

    assert f"TG_vs_WT_cluster{cluster}" in pipeline.comparisons
    assert pipeline.markers is not None and len(pipeline.markers) > 0


def test_explicit_reference_condition(pipeline):
    pipeline.configure(reference_condition="TG", test_condition="WT").run()
    assert "WT_vs_TG" in pipeline.comparisons
    assert pipeline.comparisons["WT_vs_TG"].get("Up1").downregulated


def test_subcluster_has_own_label_space(pipeline):
    pipeline.run()
    parent_labels = pipeline.dataset.obs["cluster"].to_numpy().copy()
    cluster = pipeline.dataset.obs["cluster"].cat.categories[0]

    child = pipeline.subcluster(cluster, name="sub", n_pcs=5, n_dims=5, k=10)

    assert pipeline.children["sub"] is child
    assert (pipeline.dataset.obs["cluster"].to_numpy() == parent_labels).all()
    assert child.dataset.uns["clustering"]["parent_run_id"] == (
        pipeline.dataset.uns["clustering"]["run_id"]
    )
    assert child.params.n_pcs == 5 and pipeline.params.n_pcs == 8
    assert set(child.dataset.obs["condition"].astype(str)) <= {"WT", "TG"}


def test_from_saved_dataset(pipeline, tmp_path):
    from sncompare.persist import load_dataset

    pipeline.run()
    path = pipeline.save(tmp_path / "dataset.h5ad")

    resumed = ConditionComparisonPipeline.from_dataset(load_dataset(path))
    resumed.compare_conditions()

    assert "TG_vs_WT" in resumed.comparisons


def test_audit_is_json_serializable(pipeline):
    pipeline.run()
    audit = pipeline.build_audit()

    text = json.dumps(audit)
    assert "TG_vs_WT" in text
    assert audit["seeds"]["cluster_seed"] == pipeline.params.cluster_seed
    assert audit["results_summary"]["n_cells_final"] == 160
    assert "sncompare -- Scientific Audit Log" in format_audit_text(audit)


def test_pickle_drops_callback(pipeline):
    pipeline.progress_callback = lambda *a: None
    restored = pickle.loads(pickle.dumps(pipeline))
    assert restored.progress_callback is None
    assert isinstance(restored.params, PipelineParams)


def test_steps_out_of_order_raise(pipeline):
    with pytest.raises(RuntimeError):
        pipeline.analyze()
    with pytest.raises(RuntimeError):
        pipeline.quality_filter()


def test_in_memory_samples_get_detection_thresholds(pipeline, wt_sample):
    pipeline.configure(min_cells=1).ingest()

    stats = pipeline.stage_stats["ingest_WT"]
    assert stats["cells_before"] == wt_sample.n_obs
    assert stats["min_cells"] == 1
    # genes never detected in a sample are dropped for that sample
    detected = int((wt_sample.X.getnnz(axis=0) > 0).sum())
    assert pipeline.samples["WT"].n_vars == detected


def test_in_memory_sample_filtered_to_nothing_names_the_sample(pipeline):
    pipeline.configure(min_features=10_000)
    with pytest.raises(IngestionError) as exc_info:
        pipeline.ingest()
    assert exc_info.value.input_name == "WT"
