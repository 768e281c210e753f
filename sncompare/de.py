"""
de.py -- Differential expression between two explicitly selected cell groups.

Each comparison goes through the same stages:

    select groups → restrict gene universe → per-gene test
    → log2 fold-change → multiple-testing correction → classify

Groups are always passed as :class:`CellGroup` selectors; there is no
"current identity" stored on the dataset.  Results are returned as a
:class:`DEComparison` and never written into ``adata.var``, so the
statistics of one comparison cannot leak into another.

Classification
--------------
``significant``  iff ``padj < alpha`` and ``|log2fc| > log2fc_threshold``
``upregulated``  iff significant and ``log2fc > 0``
``downregulated`` iff significant and ``log2fc < 0``

with ``alpha = 0.05`` and ``log2fc_threshold = 0.5`` by default.

Tests
-----
Tests live in :data:`TEST_REGISTRY` and receive a
:class:`~sncompare.protocols.ComparisonInputs`; they return one raw
p-value per gene.  Built in: ``"wilcoxon"`` (Mann-Whitney U,
two-sided), ``"t-test"`` (Welch) and ``"deseq2"`` (pydeseq2 on raw
counts).  Add more with :func:`register_test`.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Mapping, Sequence

import anndata as ad
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse, stats
from statsmodels.stats.multitest import multipletests

from sncompare.config import DE_DEFAULTS, PARALLEL_CONFIG
from sncompare.deseq_runner import deseq2_test
from sncompare.errors import EmptyGroupError, EmptyResultWarning
from sncompare.layers import LayerKind, as_csr, as_dense, get_layer
from sncompare.normalize import ensure_corrected
from sncompare.protocols import ComparisonInputs

logger = logging.getLogger(__name__)

TestFunction = Callable[[ComparisonInputs], np.ndarray]

TEST_REGISTRY: dict[str, TestFunction] = {}
# Tests that see every gene at once (shared dispersion trend, ...).
_WHOLE_UNIVERSE_TESTS: set[str] = set()

_CORRECTION_ALIASES = {"bh": "fdr_bh", "fdr": "fdr_bh", "by": "fdr_by"}

TABLE_COLUMNS = [
    "gene", "log2fc", "pvalue", "padj", "significant", "upregulated",
    "regulation", "pct_1", "pct_2", "mean_1", "mean_2",
]


# ══════════════════════════════════════════════════════════════════════
# Group selectors
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class CellGroup:
    """
    A named, explicit cell selection.

    ``criteria`` maps an ``obs`` column to the accepted values; all
    criteria must hold.  ``cells`` restricts to explicit cell ids.
    ``invert`` selects every cell that does *not* match.

    Examples
    --------
    >>> wt = CellGroup.where("WT", sample="WT")
    >>> wt_c3 = wt.restrict(cluster=3)
    >>> rest = CellGroup.where("3", cluster=3).complement("rest")
    """

    name: str
    criteria: Mapping[str, tuple] = field(default_factory=dict)
    cells: tuple[str, ...] | None = None
    invert: bool = False

    @staticmethod
    def _as_tuple(value) -> tuple:
        if isinstance(value, (list, tuple, set, frozenset, np.ndarray, pd.Index)):
            return tuple(value)
        return (value,)

    @classmethod
    def where(cls, name: str, criteria: Mapping | None = None, **kw) -> CellGroup:
        merged = {**(criteria or {}), **kw}
        return cls(name=str(name), criteria={k: cls._as_tuple(v) for k, v in merged.items()})

    def restrict(self, **kw) -> CellGroup:
        """Same group, further limited by extra obs criteria."""
        criteria = {**self.criteria, **{k: self._as_tuple(v) for k, v in kw.items()}}
        return CellGroup(self.name, criteria, self.cells, self.invert)

    def complement(self, name: str) -> CellGroup:
        return CellGroup(name, self.criteria, self.cells, not self.invert)

    def select(self, adata: ad.AnnData) -> np.ndarray:
        """Boolean mask over ``adata.obs_names``."""
        mask = np.ones(adata.n_obs, dtype=bool)
        for key, values in self.criteria.items():
            if key not in adata.obs.columns:
                raise KeyError(
                    f"Group '{self.name}': obs has no column '{key}'. "
                    f"Available: {list(adata.obs.columns)}"
                )
            wanted = {str(v) for v in values}
            mask &= adata.obs[key].astype(str).isin(wanted).to_numpy()
        if self.cells is not None:
            mask &= adata.obs_names.isin(list(self.cells))
        return ~mask if self.invert else mask


# ══════════════════════════════════════════════════════════════════════
# Results
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DEResult:
    """One (comparison, gene) record."""

    gene: str
    log2fc: float
    pvalue: float
    padj: float
    significant: bool
    upregulated: bool

    @property
    def downregulated(self) -> bool:
        return self.significant and not self.upregulated


class DEComparison:
    """Immutable result of one pairwise comparison."""

    def __init__(self, group1: str, group2: str, table: pd.DataFrame, params: dict) -> None:
        self.group1 = group1
        self.group2 = group2
        self._table = table.reset_index(drop=True)
        self.params = dict(params)

    @property
    def name(self) -> str:
        return f"{self.group1}_vs_{self.group2}"

    @property
    def table(self) -> pd.DataFrame:
        """Copy of the result table (one row per tested gene)."""
        return self._table.copy()

    def __len__(self) -> int:
        return len(self._table)

    def records(self) -> Iterator[DEResult]:
        for row in self._table.itertuples(index=False):
            yield DEResult(
                gene=row.gene,
                log2fc=float(row.log2fc),
                pvalue=float(row.pvalue),
                padj=float(row.padj),
                significant=bool(row.significant),
                upregulated=bool(row.upregulated),
            )

    def get(self, gene: str) -> DEResult:
        for rec in self.records():
            if rec.gene == gene:
                return rec
        raise KeyError(f"Gene '{gene}' was not tested in {self.name}.")

    def up_genes(self) -> list[str]:
        t = self._table
        return t.loc[t["upregulated"].astype(bool), "gene"].tolist()

    def down_genes(self) -> list[str]:
        t = self._table
        sig = t["significant"].astype(bool) & ~t["upregulated"].astype(bool)
        return t.loc[sig, "gene"].tolist()

    def summary(self) -> dict:
        return {
            "comparison": self.name,
            "n_tested": int(len(self._table)),
            "n_significant": int(self._table["significant"].astype(bool).sum()),
            "n_up": len(self.up_genes()),
            "n_down": len(self.down_genes()),
            **{k: v for k, v in self.params.items() if k in ("test", "correction", "n_cells_1", "n_cells_2")},
        }

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"DEComparison({self.name}: {s['n_tested']} genes, "
            f"{s['n_up']} up, {s['n_down']} down)"
        )


# ══════════════════════════════════════════════════════════════════════
# Test registry
# ══════════════════════════════════════════════════════════════════════

def register_test(name: str, whole_universe: bool = False):
    """Decorator adding a test function to :data:`TEST_REGISTRY`."""
    def decorator(fn: TestFunction) -> TestFunction:
        TEST_REGISTRY[name] = fn
        if whole_universe:
            _WHOLE_UNIVERSE_TESTS.add(name)
        else:
            _WHOLE_UNIVERSE_TESTS.discard(name)
        return fn
    return decorator


@register_test("wilcoxon")
def wilcoxon_test(inputs: ComparisonInputs) -> np.ndarray:
    x1, x2 = as_dense(inputs.data1), as_dense(inputs.data2)
    with np.errstate(invalid="ignore", divide="ignore"):
        _, p = stats.mannwhitneyu(x1, x2, alternative="two-sided", axis=0)
    return np.nan_to_num(np.asarray(p, dtype=np.float64), nan=1.0)


@register_test("t-test")
def welch_t_test(inputs: ComparisonInputs) -> np.ndarray:
    x1, x2 = as_dense(inputs.data1), as_dense(inputs.data2)
    with np.errstate(invalid="ignore", divide="ignore"):
        _, p = stats.ttest_ind(x1, x2, equal_var=False, axis=0)
    return np.nan_to_num(np.asarray(p, dtype=np.float64), nan=1.0)


register_test("deseq2", whole_universe=True)(deseq2_test)


# ══════════════════════════════════════════════════════════════════════
# Engine
# ══════════════════════════════════════════════════════════════════════

def _detection_fraction(X: sparse.csr_matrix) -> np.ndarray:
    if X.shape[0] == 0:
        return np.zeros(X.shape[1])
    return np.asarray((X > 0).sum(axis=0)).ravel() / X.shape[0]


def _run_test(test: str, inputs: ComparisonInputs, n_jobs: int) -> np.ndarray:
    fn = TEST_REGISTRY[test]
    n_genes = len(inputs.genes)
    batch = PARALLEL_CONFIG["batch_size"]
    if test in _WHOLE_UNIVERSE_TESTS or n_genes <= batch:
        return np.asarray(fn(inputs), dtype=np.float64)

    def _chunk(start: int) -> ComparisonInputs:
        cols = slice(start, start + batch)
        return ComparisonInputs(
            inputs.data1[:, cols], inputs.data2[:, cols],
            inputs.counts1[:, cols], inputs.counts2[:, cols],
            list(inputs.genes)[cols],
        )

    parts = Parallel(n_jobs=n_jobs)(
        delayed(fn)(_chunk(s)) for s in range(0, n_genes, batch)
    )
    return np.concatenate([np.asarray(p, dtype=np.float64) for p in parts])


def correct_pvalues(pvalues: np.ndarray, method: str = DE_DEFAULTS["correction"]) -> np.ndarray:
    """Adjust raw p-values with a statsmodels ``multipletests`` method."""
    if pvalues.size == 0:
        return pvalues.copy()
    method = _CORRECTION_ALIASES.get(method, method)
    return multipletests(pvalues, method=method)[1]


def classify(
    log2fc: np.ndarray,
    padj: np.ndarray,
    alpha: float = DE_DEFAULTS["alpha"],
    log2fc_threshold: float = DE_DEFAULTS["log2fc_threshold"],
) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(significant, upregulated)`` boolean arrays."""
    significant = (padj < alpha) & (np.abs(log2fc) > log2fc_threshold)
    return significant, significant & (log2fc > 0)


def differential_expression(
    adata: ad.AnnData,
    group1: CellGroup,
    group2: CellGroup,
    test: str = DE_DEFAULTS["test"],
    correction: str = DE_DEFAULTS["correction"],
    min_pct: float = DE_DEFAULTS["min_pct"],
    pseudocount: float = DE_DEFAULTS["pseudocount"],
    alpha: float = DE_DEFAULTS["alpha"],
    log2fc_threshold: float = DE_DEFAULTS["log2fc_threshold"],
    genes: Sequence[str] | None = None,
    refit: bool = True,
    n_jobs: int = PARALLEL_CONFIG["n_jobs"],
) -> DEComparison:
    """
    Compare *group1* against *group2*.

    Expression values are the corrected layers of *adata*; when they were
    fitted on a different cell set (or never computed) they are
    recomputed first, see :func:`sncompare.normalize.ensure_corrected`.

    Parameters
    ----------
    min_pct : float
        Only genes detected in at least this fraction of cells of one
        of the two groups are tested.
    genes : sequence of str, optional
        Further restrict the tested genes.

    Raises
    ------
    EmptyGroupError
        If either group selects no cells.
    ValueError
        If the groups overlap or *test* is unknown.
    """
    if test not in TEST_REGISTRY:
        raise ValueError(f"Unknown test '{test}'. Available: {sorted(TEST_REGISTRY)}")

    m1, m2 = group1.select(adata), group2.select(adata)
    for grp, mask in ((group1, m1), (group2, m2)):
        if not mask.any():
            raise EmptyGroupError(
                f"Group '{grp.name}' selects no cells.", input_name=grp.name,
            )
    if (m1 & m2).any():
        raise ValueError(
            f"Groups '{group1.name}' and '{group2.name}' share {int((m1 & m2).sum())} cells."
        )

    adata = ensure_corrected(adata, refit=refit)
    data = as_csr(get_layer(adata, LayerKind.DATA))
    counts = as_csr(get_layer(adata, LayerKind.COUNTS))

    pct1 = _detection_fraction(data[m1])
    pct2 = _detection_fraction(data[m2])
    universe = np.maximum(pct1, pct2) >= min_pct
    if genes is not None:
        universe &= adata.var_names.isin(list(genes))
    idx = np.flatnonzero(universe)
    tested = list(adata.var_names[idx])

    params = {
        "test": test,
        "correction": correction,
        "min_pct": float(min_pct),
        "pseudocount": float(pseudocount),
        "alpha": float(alpha),
        "log2fc_threshold": float(log2fc_threshold),
        "n_cells_1": int(m1.sum()),
        "n_cells_2": int(m2.sum()),
    }
    if not tested:
        warnings.warn(
            f"No gene passes min_pct={min_pct} in {group1.name} vs {group2.name}.",
            EmptyResultWarning,
            stacklevel=2,
        )
        return DEComparison(group1.name, group2.name, pd.DataFrame(columns=TABLE_COLUMNS), params)

    d1, d2 = data[m1][:, idx], data[m2][:, idx]
    inputs = ComparisonInputs(d1, d2, counts[m1][:, idx], counts[m2][:, idx], tested)
    pvalues = _run_test(test, inputs, n_jobs)

    # Means on the corrected-count scale.
    mean1 = np.asarray(d1.expm1().mean(axis=0)).ravel()
    mean2 = np.asarray(d2.expm1().mean(axis=0)).ravel()
    log2fc = np.log2((mean1 + pseudocount) / (mean2 + pseudocount))

    padj = correct_pvalues(pvalues, correction)
    significant, upregulated = classify(log2fc, padj, alpha, log2fc_threshold)

    table = pd.DataFrame({
        "gene": tested,
        "log2fc": log2fc,
        "pvalue": pvalues,
        "padj": padj,
        "significant": significant,
        "upregulated": upregulated,
        "regulation": np.where(upregulated, "up", np.where(significant, "down", "ns")),
        "pct_1": pct1[idx],
        "pct_2": pct2[idx],
        "mean_1": mean1,
        "mean_2": mean2,
    })
    table = table.sort_values(["padj", "pvalue"], kind="mergesort")

    result = DEComparison(group1.name, group2.name, table, params)
    s = result.summary()
    logger.info(
        "DE %s (%s, %d vs %d cells): %d genes tested, %d up, %d down.",
        result.name, test, params["n_cells_1"], params["n_cells_2"],
        s["n_tested"], s["n_up"], s["n_down"],
    )
    return result


def find_all_markers(
    adata: ad.AnnData,
    groupby: str = "cluster",
    only_positive: bool = False,
    **kwargs,
) -> pd.DataFrame:
    """
    One-vs-rest comparison for every category of ``obs[groupby]``.

    Returns one long table with a ``group`` column.  A comparison whose
    groups turn out empty is logged and skipped.
    """
    if groupby not in adata.obs.columns:
        raise KeyError(f"obs has no column '{groupby}'.")
    adata = ensure_corrected(adata, refit=kwargs.pop("refit", True))

    values = adata.obs[groupby]
    categories = values.cat.categories if hasattr(values, "cat") else pd.unique(values)
    tables = []
    for cat in categories:
        target = CellGroup.where(str(cat), {groupby: cat})
        try:
            res = differential_expression(adata, target, target.complement("rest"), **kwargs)
        except EmptyGroupError as exc:
            logger.warning("Skipping markers for %s=%s: %s", groupby, cat, exc)
            continue
        t = res.table
        if only_positive:
            t = t[t["log2fc"] > 0]
        t.insert(0, "group", str(cat))
        tables.append(t)

    if not tables:
        return pd.DataFrame(columns=["group", *TABLE_COLUMNS])
    return pd.concat(tables, ignore_index=True)


def export_de_table(
    result: DEComparison | pd.DataFrame,
    path: str | Path,
    sep: str = DE_DEFAULTS["export_sep"],
) -> Path:
    """Write one row per tested gene to a delimited text file."""
    table = result.table if isinstance(result, DEComparison) else result
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, sep=sep, index=False)
    logger.info("DE table written: %s (%d rows).", path, len(table))
    return path
