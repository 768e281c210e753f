"""
sncompare/pipeline.py — Class-based orchestrator for the two-condition comparison.

Encapsulates the complete pipeline state, allowing step-by-step execution,
fluent chaining, recursive sub-population analysis and reproducibility
(pickle, audit log).

Usage
-----
Fluent chaining (full pipeline)::

    pipeline = (
        ConditionComparisonPipeline([
            SampleSpec("WT", path="data/wt"),
            SampleSpec("TG", path="data/tg"),
        ])
        .configure(reference_condition="WT", test_condition="TG")
        .ingest()
        .quality_filter()
        .merge()
        .analyze()
        .compare_conditions()
        .compare_conditions(cluster=3)
    )
    table = pipeline.comparisons["TG_vs_WT"].table

Resuming from a persisted dataset::

    pipeline = ConditionComparisonPipeline.from_dataset(load_dataset("merged.h5ad"))
    pipeline.compare_conditions(cluster=1)

Sub-clustering (independent child pipeline, own label space)::

    child = pipeline.subcluster(9)
    child.compare_conditions(cluster=1)
"""

from __future__ import annotations

import copy
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Sequence

import anndata as ad
import pandas as pd

from sncompare.cluster import CLUSTER_KEY, cluster_cells
from sncompare.config import (
    CLUSTER_DEFAULTS,
    DE_DEFAULTS,
    ENRICHMENT_CONFIG,
    INGESTION_DEFAULTS,
    PARALLEL_CONFIG,
    QC_DEFAULTS,
    REDUCTION_DEFAULTS,
    VST_DEFAULTS,
)
from sncompare.de import CellGroup, DEComparison, differential_expression, find_all_markers
from sncompare.enrichment import EnrichmentRecord, enrich_de_results
from sncompare.ingest import filter_ingested, read_10x_directory
from sncompare.layers import SAMPLE_KEY
from sncompare.merge import merge_samples
from sncompare.normalize import normalize
from sncompare.persist import save_dataset
from sncompare.protocols import EnrichmentService
from sncompare.qc import QCBounds, filter_cells
from sncompare.reduce import reduce_dimensions
from sncompare.subpop import Selector, extract_subpopulation

CONDITION_KEY = "condition"


# ─────────────────────────────────────────────────────────────────────
# Inputs and parameter snapshot
# ─────────────────────────────────────────────────────────────────────

@dataclass
class SampleSpec:
    """One input sample.

    Either ``path`` (a directory holding the matrix / barcodes / features
    triplet) or an already-ingested ``adata`` must be given.  ``condition``
    defaults to the label.
    """

    label: str
    path: str | Path | None = None
    condition: str | None = None
    adata: ad.AnnData | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.path is None and self.adata is None:
            raise ValueError(f"Sample '{self.label}' needs a path or an AnnData.")
        if self.condition is None:
            self.condition = self.label


@dataclass
class PipelineParams:
    """Parameter snapshot for reproducibility.

    Stores every tuneable knob of the pipeline so the exact configuration
    can be inspected, compared, or serialised alongside the results.
    """

    # Ingestion
    min_cells: int = INGESTION_DEFAULTS["min_cells"]
    min_features: int = INGESTION_DEFAULTS["min_features"]

    # QC
    total_count: tuple = QC_DEFAULTS["total_count"]
    feature_count: tuple = QC_DEFAULTS["feature_count"]
    mito_fraction: tuple = QC_DEFAULTS["mito_fraction"]
    mito_pattern: str = QC_DEFAULTS["mito_pattern"]

    # Normalization
    n_variable_features: int = VST_DEFAULTS["n_variable_features"]
    n_genes_fit: int = VST_DEFAULTS["n_genes_fit"]
    n_cells_fit: int = VST_DEFAULTS["n_cells_fit"]
    min_cells_detected: int = VST_DEFAULTS["min_cells_detected"]
    residual_clip: float | None = VST_DEFAULTS["residual_clip"]
    vst_seed: int = VST_DEFAULTS["seed"]

    # Reduction
    n_pcs: int = REDUCTION_DEFAULTS["n_pcs"]
    n_dims: int = REDUCTION_DEFAULTS["n_dims"]
    do_scale: bool = REDUCTION_DEFAULTS["do_scale"]
    scale_max: float = REDUCTION_DEFAULTS["scale_max"]
    umap_n_neighbors: int = REDUCTION_DEFAULTS["umap"]["n_neighbors"]
    umap_min_dist: float = REDUCTION_DEFAULTS["umap"]["min_dist"]
    umap_metric: str = REDUCTION_DEFAULTS["umap"]["metric"]
    reduction_seed: int = REDUCTION_DEFAULTS["seed"]
    run_umap: bool = True

    # Clustering
    k: int = CLUSTER_DEFAULTS["k"]
    prune: float = CLUSTER_DEFAULTS["prune"]
    resolution: float = CLUSTER_DEFAULTS["resolution"]
    algorithm: str = CLUSTER_DEFAULTS["algorithm"]
    cluster_seed: int = CLUSTER_DEFAULTS["seed"]

    # Differential expression
    test: str = DE_DEFAULTS["test"]
    correction: str = DE_DEFAULTS["correction"]
    min_pct: float = DE_DEFAULTS["min_pct"]
    pseudocount: float = DE_DEFAULTS["pseudocount"]
    alpha: float = DE_DEFAULTS["alpha"]
    log2fc_threshold: float = DE_DEFAULTS["log2fc_threshold"]
    reference_condition: str | None = None
    test_condition: str | None = None

    # Parallelism
    n_jobs: int = PARALLEL_CONFIG["n_jobs"]

    def qc_bounds(self) -> QCBounds:
        return QCBounds.from_config({
            "total_count": self.total_count,
            "feature_count": self.feature_count,
            "mito_fraction": self.mito_fraction,
        })

    def normalize_kwargs(self) -> dict:
        return {
            "n_variable_features": self.n_variable_features,
            "residual_clip": self.residual_clip,
            "n_genes_fit": self.n_genes_fit,
            "n_cells_fit": self.n_cells_fit,
            "min_cells_detected": self.min_cells_detected,
            "seed": self.vst_seed,
            "n_jobs": self.n_jobs,
        }

    def de_kwargs(self) -> dict:
        return {
            "test": self.test,
            "correction": self.correction,
            "min_pct": self.min_pct,
            "pseudocount": self.pseudocount,
            "alpha": self.alpha,
            "log2fc_threshold": self.log2fc_threshold,
            "n_jobs": self.n_jobs,
        }


# ─────────────────────────────────────────────────────────────────────
# Pipeline class
# ─────────────────────────────────────────────────────────────────────

class ConditionComparisonPipeline:
    """Class-based orchestrator for the two-condition single-cell comparison.

    Every mutating method returns ``self`` to allow fluent chaining.

    Pipeline stages
    ~~~~~~~~~~~~~~~~
    1. ``ingest()``             -- read each sample's count triplet
    2. ``quality_filter()``     -- per-cell QC metrics and bounds
    3. ``merge()``              -- one dataset, prefixed cell ids
    4. ``analyze()``            -- normalize → PCA/UMAP → clusters
    5. ``compare_conditions()`` -- test vs reference DE (optionally per cluster)
    6. ``find_markers()``       -- one-vs-rest markers per cluster
    7. ``run()``                -- stages 1-5 in sequence

    Key attributes
    ~~~~~~~~~~~~~~~
    params : PipelineParams
    samples : dict[str, AnnData]        -- after ``ingest()`` / ``quality_filter()``
    merged : AnnData | None             -- after ``merge()``
    dataset : AnnData | None            -- after ``analyze()``
    comparisons : dict[str, DEComparison]
    skipped_genes : dict[str, str]      -- genes excluded by the normalizer
    stage_stats : dict[str, dict]
    step_timings : dict[str, float]
    """

    TOTAL_STEPS: int = 7

    # ── Constructor ────────────────────────────────────────────────

    def __init__(self, samples: Sequence[SampleSpec] = ()) -> None:
        self.sample_specs: list[SampleSpec] = list(samples)
        self.params: PipelineParams = PipelineParams()

        # ── Intermediate state (populated by pipeline steps) ───────
        self.samples: dict[str, ad.AnnData] = {}
        self.merged: ad.AnnData | None = None
        self.dataset: ad.AnnData | None = None

        # Outputs
        self.comparisons: dict[str, DEComparison] = {}
        self.markers: pd.DataFrame | None = None
        self.enrichment: dict[str, dict[str, list[EnrichmentRecord]]] = {}
        self.children: dict[str, ConditionComparisonPipeline] = {}
        self.skipped_genes: dict[str, str] = {}
        self.stage_stats: dict[str, dict] = {}
        self.step_timings: dict[str, float] = {}

        # Pipeline tracking
        self._step_log: list[str] = []
        self._step: int = 0

        # Callback (set externally, NOT serialised)
        self.progress_callback: Callable[[int, int, str], None] | None = None

    @classmethod
    def from_dataset(
        cls, adata: ad.AnnData, params: PipelineParams | None = None,
    ) -> ConditionComparisonPipeline:
        """Resume from a merged (and possibly analysed) dataset."""
        pipeline = cls()
        if params is not None:
            pipeline.params = copy.deepcopy(params)
        pipeline.merged = adata
        if "X_pca" in adata.obsm and CLUSTER_KEY in adata.obs.columns:
            pipeline.dataset = adata
        pipeline._step_log.append("from_dataset")
        return pipeline

    # ── Configuration ──────────────────────────────────────────────

    def configure(self, **kwargs) -> ConditionComparisonPipeline:
        """Set pipeline parameters.  Returns *self* for chaining.

        Unknown keys raise ``ValueError``.
        """
        for key, value in kwargs.items():
            if hasattr(self.params, key):
                setattr(self.params, key, value)
            else:
                raise ValueError(
                    f"Unknown parameter: '{key}'.  "
                    f"Valid keys: {[f.name for f in self.params.__dataclass_fields__.values()]}"
                )
        return self

    # ── Progress helpers ───────────────────────────────────────────

    def _report(self, key: str) -> None:
        """Report progress for the current step, then advance."""
        if self.progress_callback:
            self.progress_callback(self._step, self.TOTAL_STEPS, key)
        self._step += 1

    def _require(self, attr: str, step: str) -> ad.AnnData:
        value = getattr(self, attr)
        if value is None:
            raise RuntimeError(f"Pipeline has no {attr} yet. Call .{step}() first.")
        return value

    # ── Step 1: Ingest ─────────────────────────────────────────────

    def ingest(self) -> ConditionComparisonPipeline:
        """Read every sample.  Fatal ``IngestionError`` names the sample."""
        self._report("ingest")
        t0 = time.monotonic()
        if not self.sample_specs:
            raise RuntimeError("No samples configured.")
        p = self.params

        self.samples = {}
        for spec in self.sample_specs:
            if spec.adata is not None:
                adata = filter_ingested(
                    spec.adata, min_cells=p.min_cells, min_features=p.min_features,
                    sample=spec.label,
                )
                adata.obs[SAMPLE_KEY] = pd.Categorical([spec.label] * adata.n_obs)
            else:
                adata = read_10x_directory(
                    spec.path, sample=spec.label,
                    min_cells=p.min_cells, min_features=p.min_features,
                )
            self.stage_stats[f"ingest_{spec.label}"] = dict(adata.uns["ingest_stats"])
            self.samples[spec.label] = adata

        self.step_timings["ingest"] = time.monotonic() - t0
        self._step_log.append("ingest")
        return self

    # ── Step 2: QC ─────────────────────────────────────────────────

    def quality_filter(self) -> ConditionComparisonPipeline:
        self._report("quality_filter")
        t0 = time.monotonic()
        if not self.samples:
            raise RuntimeError("No samples ingested. Call .ingest() first.")
        p = self.params
        bounds = p.qc_bounds()

        for label, adata in list(self.samples.items()):
            filtered = filter_cells(adata, bounds=bounds, mito_pattern=p.mito_pattern)
            self.samples[label] = filtered
            self.stage_stats[f"qc_{label}"] = dict(filtered.uns["qc_stats"])

        self.step_timings["quality_filter"] = time.monotonic() - t0
        self._step_log.append("quality_filter")
        return self

    # ── Step 3: Merge ──────────────────────────────────────────────

    def merge(self) -> ConditionComparisonPipeline:
        self._report("merge")
        t0 = time.monotonic()
        pairs = [(self.samples[s.label], s.label) for s in self.sample_specs if s.label in self.samples]
        merged = merge_samples(pairs)

        conditions = {s.label: s.condition for s in self.sample_specs}
        merged.obs[CONDITION_KEY] = pd.Categorical(
            merged.obs[SAMPLE_KEY].astype(str).map(conditions),
            categories=list(dict.fromkeys(conditions.values())),
        )
        self.merged = merged
        self.stage_stats["merge"] = {
            "n_cells": int(merged.n_obs),
            "n_genes": int(merged.n_vars),
        }

        self.step_timings["merge"] = time.monotonic() - t0
        self._step_log.append("merge")
        return self

    # ── Step 4: Analyze ────────────────────────────────────────────

    def analyze(self) -> ConditionComparisonPipeline:
        """Normalize, reduce and cluster the merged dataset."""
        merged = self._require("merged", "merge")
        p = self.params

        self._report("normalize")
        t0 = time.monotonic()
        result = normalize(merged, **p.normalize_kwargs())
        dataset = result.adata
        self.skipped_genes = result.skipped_genes
        self.stage_stats["normalize"] = dict(dataset.uns["vst"])
        self.step_timings["normalize"] = time.monotonic() - t0

        self._report("reduce")
        t0 = time.monotonic()
        reduce_dimensions(
            dataset,
            n_pcs=p.n_pcs, n_dims=p.n_dims, do_scale=p.do_scale,
            scale_max=p.scale_max, seed=p.reduction_seed, umap=p.run_umap,
            n_neighbors=p.umap_n_neighbors, min_dist=p.umap_min_dist,
            metric=p.umap_metric,
        )
        self.stage_stats["pca"] = {
            "n_pcs": int(dataset.uns["pca"]["n_pcs"]),
            "elbow_rank": int(dataset.uns["pca"]["elbow_rank"]),
        }
        self.step_timings["reduce"] = time.monotonic() - t0

        self._report("cluster")
        t0 = time.monotonic()
        cluster_cells(
            dataset,
            n_dims=p.n_dims, k=p.k, prune=p.prune, resolution=p.resolution,
            algorithm=p.algorithm, seed=p.cluster_seed,
        )
        clustering = dataset.uns["clustering"]
        self.stage_stats["clustering"] = {
            "run_id": clustering["run_id"],
            "n_clusters": int(clustering["n_clusters"]),
        }
        self.step_timings["cluster"] = time.monotonic() - t0

        self.dataset = dataset
        # Labels of a previous run are stale now.
        self.comparisons = {}
        self.markers = None
        self._step_log.append("analyze")
        return self

    # ── Step 5: Differential expression ────────────────────────────

    def _conditions(self) -> tuple[str, str]:
        p = self.params
        dataset = self._require("dataset", "analyze")
        if CONDITION_KEY in dataset.obs.columns:
            present = [str(c) for c in dataset.obs[CONDITION_KEY].cat.categories]
        else:
            present = [str(c) for c in dataset.obs[SAMPLE_KEY].cat.categories]
        ref = p.reference_condition or (present[0] if present else None)
        test = p.test_condition or next((c for c in present if c != ref), None)
        if ref is None or test is None:
            raise ValueError(f"Need two conditions to compare; found {present}.")
        return test, ref

    def compare_groups(
        self, group1: CellGroup, group2: CellGroup, name: str | None = None,
    ) -> DEComparison:
        """Run one comparison on the analysed dataset and store it."""
        dataset = self._require("dataset", "analyze")
        result = differential_expression(dataset, group1, group2, **self.params.de_kwargs())
        self.comparisons[name or result.name] = result
        return result

    def compare_conditions(self, cluster=None) -> ConditionComparisonPipeline:
        """Test condition vs reference condition, optionally within one cluster.

        The result is stored under ``"<test>_vs_<ref>"`` (with a
        ``"_cluster<c>"`` suffix when restricted).
        """
        self._report("differential_expression")
        t0 = time.monotonic()
        dataset = self._require("dataset", "analyze")
        key = CONDITION_KEY if CONDITION_KEY in dataset.obs.columns else SAMPLE_KEY
        test, ref = self._conditions()

        g1 = CellGroup.where(test, {key: test})
        g2 = CellGroup.where(ref, {key: ref})
        name = f"{test}_vs_{ref}"
        if cluster is not None:
            g1, g2 = g1.restrict(**{CLUSTER_KEY: cluster}), g2.restrict(**{CLUSTER_KEY: cluster})
            name += f"_cluster{cluster}"
        self.compare_groups(g1, g2, name=name)

        self.step_timings[f"de_{name}"] = time.monotonic() - t0
        self._step_log.append(f"compare_conditions:{name}")
        return self

    def find_markers(self, only_positive: bool = True) -> ConditionComparisonPipeline:
        dataset = self._require("dataset", "analyze")
        self.markers = find_all_markers(
            dataset, groupby=CLUSTER_KEY, only_positive=only_positive,
            **self.params.de_kwargs(),
        )
        self._step_log.append("find_markers")
        return self

    # ── Enrichment ─────────────────────────────────────────────────

    def enrich(
        self,
        service: EnrichmentService,
        comparison: str,
        direction: str = "up",
        libraries: Sequence[str] | None = None,
    ) -> ConditionComparisonPipeline:
        if comparison not in self.comparisons:
            raise KeyError(
                f"No comparison '{comparison}'. Available: {sorted(self.comparisons)}"
            )
        self.enrichment[f"{comparison}:{direction}"] = enrich_de_results(
            self.comparisons[comparison], service,
            libraries=libraries or ENRICHMENT_CONFIG["libraries"],
            direction=direction,
        )
        return self

    # ── Sub-populations ────────────────────────────────────────────

    def subcluster(self, selector: Selector, name: str | None = None, **overrides) -> ConditionComparisonPipeline:
        """Extract a sub-population and analyse it in a child pipeline.

        The child inherits a copy of the parameters (*overrides* applied
        on top) and keeps its own cluster label space.
        """
        dataset = self._require("dataset", "analyze")
        child_data = extract_subpopulation(dataset, selector)
        if CONDITION_KEY in dataset.obs.columns:
            child_data.obs[CONDITION_KEY] = pd.Categorical(
                dataset.obs.loc[child_data.obs_names, CONDITION_KEY].astype(str),
                categories=[str(c) for c in dataset.obs[CONDITION_KEY].cat.categories],
            )

        child = ConditionComparisonPipeline.from_dataset(child_data, params=self.params)
        child.configure(**overrides)
        child.analyze()
        self.children[name or child_data.uns["lineage"]["selection"]] = child
        return child

    # ── Convenience: run all ───────────────────────────────────────

    def run(self) -> ConditionComparisonPipeline:
        """ingest → quality_filter → merge → analyze → compare_conditions."""
        t0 = time.monotonic()
        self._step = 0
        (
            self
            .ingest()
            .quality_filter()
            .merge()
            .analyze()
            .compare_conditions()
        )
        self.step_timings["total"] = time.monotonic() - t0
        self._report("done")
        self._step_log.append("run_complete")
        return self

    # ── Output accessors ───────────────────────────────────────────

    def save(self, path: str | Path) -> Path:
        """Persist the analysed (or merged) dataset."""
        adata = self.dataset if self.dataset is not None else self._require("merged", "merge")
        return save_dataset(adata, path)

    def build_audit(self) -> dict:
        """JSON-serialisable audit of parameters, versions, stats and results."""
        from sncompare.audit import build_audit
        return build_audit(self)

    def params_dict(self) -> dict:
        return asdict(self.params)

    # ── Serialisation ──────────────────────────────────────────────

    def __getstate__(self) -> dict:
        state = self.__dict__.copy()
        state["progress_callback"] = None
        return state

    def __setstate__(self, state: dict) -> None:
        self.__dict__.update(state)
        if not hasattr(self, "progress_callback"):
            self.progress_callback = None

    # ── Repr ───────────────────────────────────────────────────────

    def __repr__(self) -> str:
        status = self._step_log[-1] if self._step_log else "not started"
        n_cells = self.dataset.n_obs if self.dataset is not None else "?"
        return (
            f"<ConditionComparisonPipeline "
            f"status={status!r} "
            f"cells={n_cells} "
            f"comparisons={sorted(self.comparisons)}>"
        )
