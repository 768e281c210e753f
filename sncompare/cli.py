"""
Command-line entry point.

    sncompare run --config run.json --out results/
    sncompare de --h5ad results/merged.h5ad --groupby condition \\
        --group1 TG --group2 WT --within cluster=3 --out TG_vs_WT_c3.tsv

``run`` config (JSON)::

    {
      "samples": [
        {"label": "WT", "path": "data/wt"},
        {"label": "TG", "path": "data/tg", "condition": "TG"}
      ],
      "params": {"resolution": 0.5, "total_count": [300, 9001]},
      "per_cluster": true,
      "markers": true
    }
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from sncompare.config import DE_DEFAULTS, load_json_config
from sncompare.de import CellGroup, differential_expression, export_de_table
from sncompare.errors import PipelineError
from sncompare.persist import load_dataset
from sncompare.pipeline import ConditionComparisonPipeline, SampleSpec

logger = logging.getLogger("sncompare")


def _parse_within(items: list[str]) -> dict[str, str]:
    criteria = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"--within expects KEY=VALUE, got '{item}'.")
        criteria[key] = value
    return criteria


def run_command(args: argparse.Namespace) -> int:
    cfg = load_json_config(args.config)
    if "samples" not in cfg or not cfg["samples"]:
        raise ValueError(f"Config '{args.config}' lists no samples.")

    base = Path(args.config).parent
    specs = [
        SampleSpec(
            label=s["label"],
            path=(base / s["path"]) if not Path(s["path"]).is_absolute() else Path(s["path"]),
            condition=s.get("condition"),
        )
        for s in cfg["samples"]
    ]
    pipeline = ConditionComparisonPipeline(specs).configure(**cfg.get("params", {}))
    pipeline.progress_callback = lambda i, n, key: logger.info("[%d/%d] %s", i + 1, n, key)
    pipeline.run()

    if cfg.get("per_cluster", False):
        for cluster in pipeline.dataset.obs["cluster"].cat.categories:
            try:
                pipeline.compare_conditions(cluster=cluster)
            except PipelineError as exc:
                logger.warning("Skipping cluster %s: %s", cluster, exc)
    if cfg.get("markers", False):
        pipeline.find_markers()

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    pipeline.save(out / "merged.h5ad")
    for name, result in pipeline.comparisons.items():
        export_de_table(result, out / "de" / f"{name}.tsv")
    if pipeline.markers is not None:
        export_de_table(pipeline.markers, out / "markers.tsv")

    from sncompare.audit import format_audit_text

    audit = pipeline.build_audit()
    (out / "audit.json").write_text(json.dumps(audit, indent=2))
    (out / "audit.txt").write_text(format_audit_text(audit))
    logger.info("Results written to %s", out)
    return 0


def de_command(args: argparse.Namespace) -> int:
    adata = load_dataset(args.h5ad)
    within = _parse_within(args.within)
    g1 = CellGroup.where(args.group1, {args.groupby: args.group1, **within})
    g2 = CellGroup.where(args.group2, {args.groupby: args.group2, **within})
    result = differential_expression(
        adata, g1, g2,
        test=args.test, correction=args.correction, min_pct=args.min_pct,
    )
    export_de_table(result, args.out)
    print(result)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sncompare",
        description="Two-condition single-cell RNA comparison pipeline",
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Ingest, QC, merge, analyse and compare conditions")
    run.add_argument("--config", required=True, help="JSON run configuration")
    run.add_argument("--out", required=True, help="Output directory")
    run.set_defaults(func=run_command)

    de = sub.add_parser("de", help="One comparison on a saved dataset")
    de.add_argument("--h5ad", required=True, help="Dataset written by 'run'")
    de.add_argument("--groupby", required=True, help="obs column defining the groups")
    de.add_argument("--group1", required=True)
    de.add_argument("--group2", required=True)
    de.add_argument("--within", action="append", default=[], metavar="KEY=VALUE",
                    help="Restrict both groups (repeatable)")
    de.add_argument("--test", default=DE_DEFAULTS["test"])
    de.add_argument("--correction", default=DE_DEFAULTS["correction"])
    de.add_argument("--min-pct", type=float, default=DE_DEFAULTS["min_pct"])
    de.add_argument("--out", required=True, help="Output table (TSV)")
    de.set_defaults(func=de_command)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        return args.func(args)
    except (PipelineError, FileNotFoundError, ValueError, KeyError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
