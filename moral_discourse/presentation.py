"""Descriptive tables, prose substitutions, LaTeX results table and figures."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from moral_discourse.condition_models import METRIC_SPECS
from moral_discourse.conditions import CONDITION_DTYPE, require_columns
from moral_discourse.corpus import FOUNDATIONS
from moral_discourse.phrases import CONDITION_NAMES

CONDITION_PALETTE = {"baseline": "#1f77b4", "contrarian": "#d62728"}


def with_condition(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out["condition"] = out["condition"].astype(CONDITION_DTYPE)
    return out


def build_condition_summary(records: pd.DataFrame) -> pd.DataFrame:
    require_columns(
        records,
        ["doc_id", "user_id", "condition", "scored", "relevance", "recognition", "polarity"],
        "enriched records",
    )
    df = with_condition(records)
    rows: list[dict[str, Any]] = []
    for condition in CONDITION_NAMES:
        sub = df[df["condition"] == condition]
        scored = sub[sub["scored"].astype(bool)]
        n_docs = int(len(sub))
        n_scored = int(len(scored))
        rows.append(
            {
                "condition": condition,
                "n_users": int(sub["user_id"].nunique()),
                "n_documents": n_docs,
                "n_scored": n_scored,
                "scored_share": n_scored / n_docs if n_docs else float("nan"),
                "recognised_share": (
                    float(scored["recognition"].astype(bool).mean()) if n_scored else float("nan")
                ),
                "mean_relevance": float(scored["relevance"].mean()) if n_scored else float("nan"),
                "median_relevance": (
                    float(scored["relevance"].median()) if n_scored else float("nan")
                ),
                "mean_polarity": float(scored["polarity"].mean()) if n_scored else float("nan"),
            }
        )
    return pd.DataFrame(rows)


def build_foundation_summary(records: pd.DataFrame) -> pd.DataFrame:
    vice_cols = [f"{foundation}_vice" for foundation in FOUNDATIONS]
    require_columns(records, ["condition", "scored", *vice_cols], "enriched records")
    df = with_condition(records)
    scored = df[df["scored"].astype(bool)]

    rows: list[dict[str, Any]] = []
    for foundation in FOUNDATIONS:
        col = f"{foundation}_vice"
        for condition in CONDITION_NAMES:
            values = pd.to_numeric(
                scored.loc[scored["condition"] == condition, col], errors="coerce"
            ).dropna()
            rows.append(
                {
                    "foundation": foundation,
                    "condition": condition,
                    "n_scored": int(values.size),
                    "mean_vice": float(values.mean()) if values.size else float("nan"),
                    "median_vice": float(values.median()) if values.size else float("nan"),
                }
            )
    return pd.DataFrame(rows)


def build_entity_counts(entity_tags: pd.DataFrame, records: pd.DataFrame) -> pd.DataFrame:
    require_columns(entity_tags, ["doc_id", "entity"], "entity tags")
    require_columns(records, ["doc_id", "user_id", "condition"], "enriched records")
    tagged = entity_tags.merge(
        with_condition(records)[["doc_id", "user_id", "condition"]], on="doc_id", how="inner"
    )

    rows: list[dict[str, Any]] = []
    for entity in sorted(entity_tags["entity"].dropna().unique()):
        sub = tagged[tagged["entity"] == entity]
        for condition in CONDITION_NAMES:
            hits = sub[sub["condition"] == condition]
            rows.append(
                {
                    "entity": entity,
                    "condition": condition,
                    "n_documents": int(hits["doc_id"].nunique()),
                    "n_users": int(hits["user_id"].nunique()),
                }
            )
    return pd.DataFrame(rows, columns=["entity", "condition", "n_documents", "n_users"])


def substitution_key(value: str) -> str:
    return re.sub(r"[^0-9a-z]+", "_", value.lower()).strip("_")


def fmt_pct(x: Any) -> str:
    if x is None or not np.isfinite(x):
        return ""
    return f"{100.0 * float(x):.1f}"


def fmt_ratio(x: Any) -> str:
    if x is None or not np.isfinite(x):
        return ""
    return f"{float(x):.2f}"


def fmt_p(x: Any) -> str:
    if x is None or not np.isfinite(x):
        return ""
    if x < 0.001:
        return "<0.001"
    return f"{float(x):.3f}"


def results_substitutions(results: pd.DataFrame) -> dict[str, str]:
    """Flatten the results table into ``metric.stratum.field -> text``.

    Estimates of strata that are not reliable are blank strings, so prose never
    quotes a number from a degenerate, failed or warned fit.
    """
    out: dict[str, str] = {}
    for row in results.to_dict(orient="records"):
        prefix = f"{row['metric']}.{substitution_key(str(row['stratum']))}"
        reliable = bool(row["reliable"])
        out[f"{prefix}.n_obs"] = str(int(row["n_obs"]))
        out[f"{prefix}.fit_status"] = str(row["fit_status"])
        estimates = {
            "baseline_prob_pct": fmt_pct(row["baseline_prob"]),
            "contrarian_prob_pct": fmt_pct(row["contrarian_prob"]),
            "odds_ratio": fmt_ratio(row["odds_ratio"]),
            "effect": fmt_ratio(row["effect"]),
            "effect_p": fmt_p(row["effect_p"]),
        }
        for field, text in estimates.items():
            out[f"{prefix}.{field}"] = text if reliable else ""
    return out


def latex_escape(text: str) -> str:
    return re.sub(r"([&%$#_{}])", r"\\\1", text)


def write_latex_table(results: pd.DataFrame, out_path: Path) -> None:
    def fmt_int(x: float) -> str:
        if not np.isfinite(x):
            return ""
        return f"{int(x):,}"

    lines: list[str] = []
    lines.append(r"\begin{tabular}{@{}llr rr rr@{}}")
    lines.append(r"\toprule")
    lines.append(
        r"\textbf{Metric} & \textbf{Stratum} & \textbf{N} & "
        r"\multicolumn{2}{c}{\textbf{Probability \%}} & "
        r"\multicolumn{2}{c}{\textbf{Contrarian effect}} \\"
    )
    lines.append(r"\cmidrule(lr){4-5} \cmidrule(lr){6-7}")
    lines.append(
        r"& & & \textbf{Baseline} & \textbf{Contrarian} & \textbf{OR} & \textbf{$p$} \\"
    )
    lines.append(r"\midrule")

    for row in results.to_dict(orient="records"):
        spec = METRIC_SPECS.get(str(row["metric"]))
        metric = spec.label if spec is not None else str(row["metric"])
        stratum = latex_escape(str(row["stratum"]))
        n_obs = fmt_int(float(row["n_obs"]))
        if bool(row["reliable"]):
            cells = [
                fmt_pct(row["baseline_prob"]),
                fmt_pct(row["contrarian_prob"]),
                fmt_ratio(row["odds_ratio"]),
                latex_escape(fmt_p(row["effect_p"])).replace("<", "$<$"),
            ]
        else:
            cells = ["", "", "", ""]
        lines.append(f"{metric} & {stratum} & {n_obs} & " + " & ".join(cells) + r" \\")

    lines.append(r"\bottomrule")
    lines.append(r"\end{tabular}")
    out_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def make_condition_probability_figure(results: pd.DataFrame, metric: str, out_path: Path) -> None:
    sub = results[(results["metric"] == metric) & results["reliable"].astype(bool)]
    plot_df = sub.melt(
        id_vars=["stratum"],
        value_vars=["baseline_prob", "contrarian_prob"],
        var_name="condition",
        value_name="probability",
    )
    plot_df["condition"] = plot_df["condition"].str.replace("_prob", "", regex=False)

    fig, ax = plt.subplots(figsize=(9.0, 4.8))
    if plot_df.empty:
        ax.text(0.5, 0.5, "No reliable strata", ha="center", va="center", transform=ax.transAxes)
        ax.set_axis_off()
    else:
        sns.barplot(
            data=plot_df,
            x="stratum",
            y="probability",
            hue="condition",
            hue_order=list(CONDITION_NAMES),
            palette=CONDITION_PALETTE,
            ax=ax,
        )
        ax.set_ylim(0.0, 1.0)
        ax.set_xlabel("Stratum")
        ax.set_ylabel("Model-implied probability")
        ax.tick_params(axis="x", rotation=20)
        ax.grid(axis="y", linestyle="--", alpha=0.3)
        ax.legend(title="Condition", frameon=False)
    label = METRIC_SPECS[metric].label if metric in METRIC_SPECS else metric
    ax.set_title(f"{label} by condition")

    fig.tight_layout()
    fig.savefig(out_path, dpi=300)
    plt.close(fig)


def make_relevance_distribution_figure(records: pd.DataFrame, out_path: Path) -> None:
    require_columns(records, ["condition", "scored", "relevance"], "enriched records")
    scored = records[records["scored"].astype(bool)].copy()
    scored["condition"] = scored["condition"].astype(str)

    fig, ax = plt.subplots(figsize=(8.5, 4.8))
    if scored.empty:
        ax.text(0.5, 0.5, "No scored documents", ha="center", va="center", transform=ax.transAxes)
        ax.set_axis_off()
    else:
        sns.histplot(
            data=scored,
            x="relevance",
            hue="condition",
            hue_order=[c for c in CONDITION_NAMES if c in set(scored["condition"])],
            palette=CONDITION_PALETTE,
            bins=np.linspace(0.0, 1.0, 21),
            stat="density",
            common_norm=False,
            element="step",
            ax=ax,
        )
        ax.set_xlim(0.0, 1.0)
        ax.set_xlabel("Moral relevance")
        ax.set_ylabel("Density")
        ax.grid(axis="y", linestyle="--", alpha=0.3)
    ax.set_title("Moral relevance of scored documents by condition")

    fig.tight_layout()
    fig.savefig(out_path, dpi=300)
    plt.close(fig)
