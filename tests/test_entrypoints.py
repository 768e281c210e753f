import json

import pandas as pd

from conftest import write_triplet
from sncompare.cli import build_parser, main


def _write_run(tmp_path, wt_sample, tg_sample, **extra):
    write_triplet(tmp_path / "data" / "wt", wt_sample, compress=True)
    write_triplet(tmp_path / "data" / "tg", tg_sample)
    config = {
        "samples": [
            {"label": "WT", "path": "data/wt"},
            {"label": "TG", "path": "data/tg"},
        ],
        "params": {
            "min_cells": 0, "min_features": 0,
            "total_count": None, "feature_count": None, "mito_fraction": [None, 50.0],
            "n_pcs": 8, "n_dims": 8, "k": 15, "run_umap": False,
        },
        **extra,
    }
    path = tmp_path / "run.json"
    path.write_text(json.dumps(config))
    return path


def test_run_writes_dataset_tables_and_audit(tmp_path, wt_sample, tg_sample):
    config = _write_run(tmp_path, wt_sample, tg_sample, markers=True)
    out = tmp_path / "results"

    assert main(["run", "--config", str(config), "--out", str(out)]) == 0

    assert (out / "merged.h5ad").exists()
    table = pd.read_csv(out / "de" / "TG_vs_WT.tsv", sep="\t")
    assert "Up1" in set(table.loc[table["upregulated"], "gene"])
    assert (out / "markers.tsv").exists()
    audit = json.loads((out / "audit.json").read_text())
    assert audit["input_data"]["samples"][0]["label"] == "WT"
    assert (out / "audit.txt").read_text().startswith("=" * 60)


def test_de_subcommand_on_saved_dataset(tmp_path, analysed):
    analysed.write_h5ad(tmp_path / "ds.h5ad")
    out = tmp_path / "tg_vs_wt_A.tsv"

    code = main([
        "de", "--h5ad", str(tmp_path / "ds.h5ad"), "--groupby", "sample",
        "--group1", "TG", "--group2", "WT", "--within", "cell_type=A",
        "--out", str(out),
    ])

    assert code == 0
    table = pd.read_csv(out, sep="\t")
    assert "Up1" in set(table.loc[table["upregulated"], "gene"])


def test_errors_exit_non_zero(tmp_path, caplog):
    assert main(["run", "--config", str(tmp_path / "missing.json"), "--out", str(tmp_path)]) == 1
    assert "Config file not found" in caplog.text


def test_bad_within_argument(tmp_path, analysed):
    analysed.write_h5ad(tmp_path / "ds.h5ad")
    code = main([
        "de", "--h5ad", str(tmp_path / "ds.h5ad"), "--groupby", "sample",
        "--group1", "TG", "--group2", "WT", "--within", "cell_type",
        "--out", str(tmp_path / "x.tsv"),
    ])
    assert code == 1


def test_parser_defaults():
    args = build_parser().parse_args([
        "de", "--h5ad", "a.h5ad", "--groupby", "sample",
        "--group1", "TG", "--group2", "WT", "--out", "x.tsv",
    ])
    assert args.test == "wilcoxon"
    assert args.correction == "bonferroni"
    assert args.within == []
