#!/usr/bin/env python3
"""Run the moralised-discourse condition analysis end to end.

Documents are rebuilt from the word-level table, classified into the baseline
or contrarian climate-discourse condition by phrase matching, rolled up to
users, joined to moral-sentiment scores, and compared with one logit-family GLM
per (metric, stratum):

1) moral recognition (relevance > threshold), binomial;
2) moral relevance, quasi-binomial (Pearson chi2 scale).

Outputs include descriptive tables, the per-stratum results table with fit
status, a LaTeX table, prose substitutions, figures, and run-scoped manifests.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

from moral_discourse.condition_models import (
    DEFAULT_ALPHA,
    METRIC_SPECS,
    bootstrap_condition_effects,
    build_results_table,
    collect_fit_warnings,
)
from moral_discourse.conditions import classify_documents, roll_up_users, tag_entities
from moral_discourse.corpus import (
    DEFAULT_BATCH_SIZE,
    RECOGNITION_THRESHOLD,
    enrich_records,
    read_document_text,
    read_eligible_metadata,
    read_eligible_sentiment,
)
from moral_discourse.phrases import (
    build_phrase_sets,
    compile_condition_patterns,
    compile_entity_patterns,
    load_entity_phrases,
)
from moral_discourse.presentation import (
    build_condition_summary,
    build_entity_counts,
    build_foundation_summary,
    make_condition_probability_figure,
    make_relevance_distribution_figure,
    results_substitutions,
    write_latex_table,
)

DEFAULT_WORD_TABLE = Path("data_features/moral_sentiment/word_table.parquet")
DEFAULT_METADATA = Path("data_features/moral_sentiment/metadata.parquet")
DEFAULT_SENTIMENT = Path("data_features/moral_sentiment/moral_sentiment.parquet")
DEFAULT_OUTPUTS_ROOT = Path("outputs/moralised_discourse")
DEFAULT_SEED = 20231107
DEFAULT_BOOTSTRAP_REPS = 0


@dataclass(frozen=True)
class Config:
    word_table_path: Path
    metadata_path: Path
    sentiment_path: Path
    entity_phrases_path: Path | None
    outputs_root: Path
    run_id: str
    batch_size: int
    recognition_threshold: float
    case_sensitive: bool
    alpha: float
    bootstrap_reps: int
    seed: int


@dataclass
class AnalysisArtifacts:
    documents: pd.DataFrame
    classified: pd.DataFrame
    users: pd.DataFrame
    records: pd.DataFrame
    entity_tags: pd.DataFrame
    results: pd.DataFrame
    bootstrap: pd.DataFrame
    warnings: list[str] = field(default_factory=list)
    diagnostics: dict[str, Any] = field(default_factory=dict)


def parse_args(argv: list[str] | None = None) -> Config:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--word-table-path",
        type=Path,
        default=DEFAULT_WORD_TABLE,
        help="Path to the word-level Parquet file or dataset directory.",
    )
    parser.add_argument(
        "--metadata-path",
        type=Path,
        default=DEFAULT_METADATA,
        help="Path to document metadata (doc_id, user_id, eligibility flags).",
    )
    parser.add_argument(
        "--sentiment-path",
        type=Path,
        default=DEFAULT_SENTIMENT,
        help="Path to moral-sentiment scores (relevance, polarity, foundation vices).",
    )
    parser.add_argument(
        "--entity-phrases-path",
        type=Path,
        default=None,
        help="Optional JSON mapping entity names to phrase lists. Defaults to built-in entities.",
    )
    parser.add_argument(
        "--outputs-root",
        type=Path,
        default=DEFAULT_OUTPUTS_ROOT,
        help="Root directory for run-scoped outputs.",
    )
    parser.add_argument(
        "--run-id",
        type=str,
        default="",
        help="Optional run ID. Defaults to UTC timestamped run_*.",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help="Document ids per text-reconstruction batch.",
    )
    parser.add_argument(
        "--recognition-threshold",
        type=float,
        default=RECOGNITION_THRESHOLD,
        help="Relevance above this value counts as moral recognition.",
    )
    parser.add_argument(
        "--case-sensitive",
        action="store_true",
        help="Match phrases case-sensitively (default: case-insensitive).",
    )
    parser.add_argument(
        "--alpha",
        type=float,
        default=DEFAULT_ALPHA,
        help="Significance level for effect flags and intervals.",
    )
    parser.add_argument(
        "--bootstrap-reps",
        type=int,
        default=DEFAULT_BOOTSTRAP_REPS,
        help="Bootstrap replicates of the overall condition effect (0 disables).",
    )
    parser.add_argument("--seed", type=int, default=DEFAULT_SEED, help="Deterministic RNG seed.")

    args = parser.parse_args(argv)
    if args.batch_size < 1:
        parser.error("--batch-size must be >= 1")
    if not 0.0 <= args.recognition_threshold <= 1.0:
        parser.error("--recognition-threshold must lie in [0, 1]")
    if args.bootstrap_reps < 0:
        parser.error("--bootstrap-reps must be >= 0")
    run_id = args.run_id or datetime.now(UTC).strftime("run_%Y%m%d-%H%M%SZ")

    return Config(
        word_table_path=args.word_table_path,
        metadata_path=args.metadata_path,
        sentiment_path=args.sentiment_path,
        entity_phrases_path=args.entity_phrases_path,
        outputs_root=args.outputs_root,
        run_id=run_id,
        batch_size=args.batch_size,
        recognition_threshold=args.recognition_threshold,
        case_sensitive=args.case_sensitive,
        alpha=args.alpha,
        bootstrap_reps=args.bootstrap_reps,
        seed=args.seed,
    )


def ensure_dirs(*paths: Path) -> None:
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def sanitize_for_json(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): sanitize_for_json(v) for k, v in value.items()}
    if isinstance(value, list):
        return [sanitize_for_json(v) for v in value]
    if isinstance(value, tuple):
        return [sanitize_for_json(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating, float)):
        out = float(value)
        if np.isnan(out):
            return None
        if np.isposinf(out):
            return "inf"
        if np.isneginf(out):
            return "-inf"
        return out
    if value is pd.NA:
        return None
    return value


def run_analysis(cfg: Config) -> AnalysisArtifacts:
    # Lexicons compile first so a bad phrase fails before any data is read.
    patterns = compile_condition_patterns(build_phrase_sets(), case_sensitive=cfg.case_sensitive)
    entity_patterns = compile_entity_patterns(
        load_entity_phrases(cfg.entity_phrases_path), case_sensitive=cfg.case_sensitive
    )

    documents = read_document_text(cfg.word_table_path, batch_size=cfg.batch_size)
    metadata, metadata_stats = read_eligible_metadata(cfg.metadata_path)
    sentiment, sentiment_stats = read_eligible_sentiment(cfg.sentiment_path)

    classified = classify_documents(documents, patterns)
    users, rollup_stats = roll_up_users(classified, metadata)
    records = enrich_records(
        users,
        metadata,
        sentiment,
        documents,
        recognition_threshold=cfg.recognition_threshold,
    )
    entity_tags = tag_entities(documents, entity_patterns)

    metrics = tuple(METRIC_SPECS)
    results = build_results_table(records, entity_tags, metrics=metrics, alpha=cfg.alpha)
    rng = np.random.default_rng(cfg.seed)
    bootstrap = bootstrap_condition_effects(records, metrics, cfg.bootstrap_reps, rng)

    warnings: list[str] = []
    if rollup_stats["classified_documents_without_user"]:
        warnings.append(
            f"{rollup_stats['classified_documents_without_user']} classified documents "
            "have no eligible author and were dropped from the user rollup"
        )
    n_unscored = int((~records["scored"]).sum())
    if n_unscored:
        warnings.append(
            f"{n_unscored} enriched documents have no moral-sentiment score "
            "(kept as unscored; excluded from relevance models)"
        )
    warnings.extend(collect_fit_warnings(results))

    diagnostics: dict[str, Any] = {
        "documents_reconstructed": int(len(documents)),
        "metadata_filter": metadata_stats,
        "sentiment_filter": sentiment_stats,
        "rollup": rollup_stats,
        "enriched_records": int(len(records)),
        "scored_records": int(records["scored"].sum()),
        "unscored_records": n_unscored,
        "entity_tags": int(len(entity_tags)),
        "entities": sorted(entity_patterns),
        "bootstrap_replicates": int(cfg.bootstrap_reps),
    }

    return AnalysisArtifacts(
        documents=documents,
        classified=classified,
        users=users,
        records=records,
        entity_tags=entity_tags,
        results=results,
        bootstrap=bootstrap,
        warnings=warnings,
        diagnostics=diagnostics,
    )


def write_outputs(cfg: Config, artifacts: AnalysisArtifacts) -> dict[str, Path]:
    run_dir = cfg.outputs_root / cfg.run_id
    figures_dir = run_dir / "figures"
    tables_dir = run_dir / "tables"
    ensure_dirs(run_dir, figures_dir, tables_dir)

    records = artifacts.records.copy()
    records["condition"] = records["condition"].astype(str)
    users = artifacts.users.copy()
    users["condition"] = users["condition"].astype(str)
    condition_summary = build_condition_summary(artifacts.records)
    foundation_summary = build_foundation_summary(artifacts.records)
    entity_counts = build_entity_counts(artifacts.entity_tags, artifacts.records)
    substitutions = results_substitutions(artifacts.results)

    records_parquet = tables_dir / "enriched_records.parquet"
    records.to_parquet(records_parquet, index=False)
    users_csv = tables_dir / "users.csv"
    users.to_csv(users_csv, index=False)
    entity_tags_csv = tables_dir / "entity_tags.csv"
    artifacts.entity_tags.to_csv(entity_tags_csv, index=False)
    results_csv = tables_dir / "results_table.csv"
    artifacts.results.to_csv(results_csv, index=False)
    condition_summary_csv = tables_dir / "condition_summary.csv"
    condition_summary.to_csv(condition_summary_csv, index=False)
    foundation_summary_csv = tables_dir / "foundation_summary.csv"
    foundation_summary.to_csv(foundation_summary_csv, index=False)
    entity_counts_csv = tables_dir / "entity_counts.csv"
    entity_counts.to_csv(entity_counts_csv, index=False)

    table_outputs = [
        records_parquet,
        users_csv,
        entity_tags_csv,
        results_csv,
        condition_summary_csv,
        foundation_summary_csv,
        entity_counts_csv,
    ]
    if cfg.bootstrap_reps > 0:
        bootstrap_csv = tables_dir / "bootstrap_replicates.csv"
        artifacts.bootstrap.to_csv(bootstrap_csv, index=False)
        table_outputs.append(bootstrap_csv)

    results_tex = tables_dir / "results_table.tex"
    write_latex_table(artifacts.results, results_tex)
    substitutions_json = tables_dir / "substitutions.json"
    substitutions_json.write_text(
        json.dumps(substitutions, indent=2, sort_keys=True), encoding="utf-8"
    )
    table_outputs.extend([results_tex, substitutions_json])

    figure_outputs: list[Path] = []
    for metric in METRIC_SPECS:
        fig_path = figures_dir / f"{metric}_by_condition.png"
        make_condition_probability_figure(artifacts.results, metric, fig_path)
        figure_outputs.append(fig_path)
    relevance_fig = figures_dir / "relevance_distribution.png"
    make_relevance_distribution_figure(artifacts.records, relevance_fig)
    figure_outputs.append(relevance_fig)

    summary = {
        "run_id": cfg.run_id,
        "generated_at_utc": datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "counts": {
            **artifacts.diagnostics,
            "users": int(len(artifacts.users)),
            "users_by_condition": {
                str(k): int(v)
                for k, v in artifacts.users["condition"].value_counts(sort=False).items()
            },
        },
        "condition_summary": condition_summary.to_dict(orient="records"),
        "results": artifacts.results.to_dict(orient="records"),
        "warnings": artifacts.warnings,
        "artifacts": {
            "tables": [str(p) for p in table_outputs],
            "figures": [str(p) for p in figure_outputs],
        },
    }
    summary_out = tables_dir / "analysis_summary.json"
    summary_out.write_text(json.dumps(sanitize_for_json(summary), indent=2), encoding="utf-8")

    manifest = {
        "created_at_utc": datetime.now(UTC).isoformat(),
        "script": "moral_discourse/moralised_discourse_analysis.py",
        "config": asdict(cfg),
        "outputs_dir": str(run_dir),
        "analysis_summary_json": str(summary_out),
    }
    manifest_out = run_dir / "run_manifest.json"
    manifest_out.write_text(json.dumps(sanitize_for_json(manifest), indent=2), encoding="utf-8")

    return {
        "run_dir": run_dir,
        "summary": summary_out,
        "manifest": manifest_out,
        "results_csv": results_csv,
        "results_tex": results_tex,
    }


def main(argv: list[str] | None = None) -> None:
    cfg = parse_args(argv)
    artifacts = run_analysis(cfg)
    paths = write_outputs(cfg, artifacts)

    counts = artifacts.diagnostics
    print(f"Run ID: {cfg.run_id}")
    print(f"Documents reconstructed: {counts['documents_reconstructed']}")
    print(f"Classified documents: {counts['rollup']['classified_documents']}")
    print(f"Qualifying users: {counts['rollup']['qualifying_users']}")
    print(
        f"Enriched records: {counts['enriched_records']} "
        f"(scored: {counts['scored_records']}, unscored: {counts['unscored_records']})"
    )
    print(f"Results: {paths['results_csv']}")
    print(f"Summary: {paths['summary']}")
    print(f"Manifest: {paths['manifest']}")
    for message in artifacts.warnings:
        print(f"WARNING: {message}")


if __name__ == "__main__":
    main()
