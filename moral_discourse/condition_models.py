"""Condition-effect GLMs for moral recognition and moral relevance.

Every stratum (overall, and each entity) is fitted with the same single-predictor
model, ``metric ~ C(condition, Treatment(reference='baseline'))``:

- recognition: binomial logit on the boolean flag;
- relevance: quasi-binomial logit on the continuous [0, 1] score (Binomial
  family, Pearson chi2 scale, t-based inference), unscored rows dropped.

A stratum that cannot be estimated is reported through ``fit_status`` and
``fit_warning`` instead of aborting the run.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from scipy import special, stats
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    EstimationWarning,
    HessianInversionWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
    SingularMatrixWarning,
)

from moral_discourse.conditions import CONDITION_DTYPE, require_columns

REFERENCE_CONDITION = "baseline"
EFFECT_CONDITION = "contrarian"
CONDITION_TERM = f"C(condition, Treatment(reference='{REFERENCE_CONDITION}'))"
EFFECT_TERM = f"{CONDITION_TERM}[T.{EFFECT_CONDITION}]"
DEFAULT_ALPHA = 0.05
OVERALL_STRATUM = "overall"

ESTIMATION_WARNINGS = (
    ConvergenceWarning,
    EstimationWarning,
    HessianInversionWarning,
    PerfectSeparationWarning,
    SingularMatrixWarning,
)
NUMERIC_WARNING_MARKERS = ("overflow", "divide by zero", "invalid value", "separation")


@dataclass(frozen=True)
class MetricSpec:
    name: str
    label: str
    binary: bool
    family: str
    scale: str | None
    use_t: bool


METRIC_SPECS: dict[str, MetricSpec] = {
    "recognition": MetricSpec(
        name="recognition",
        label="Moral recognition",
        binary=True,
        family="binomial",
        scale=None,
        use_t=False,
    ),
    "relevance": MetricSpec(
        name="relevance",
        label="Moral relevance",
        binary=False,
        family="quasibinomial",
        scale="X2",
        use_t=True,
    ),
}

RESULT_COLUMNS = [
    "metric",
    "entity",
    "stratum",
    "family",
    "n_obs",
    "n_baseline",
    "n_contrarian",
    "intercept",
    "intercept_se",
    "effect",
    "effect_se",
    "effect_z",
    "effect_p",
    "effect_ci_low",
    "effect_ci_high",
    "odds_ratio",
    "significant",
    "baseline_log_odds",
    "contrarian_log_odds",
    "baseline_odds",
    "contrarian_odds",
    "baseline_prob",
    "contrarian_prob",
    "converged",
    "fit_status",
    "reliable",
    "fit_warning",
]


def logit(p: Any) -> Any:
    out = special.logit(np.asarray(p, dtype=float))
    return float(out) if np.ndim(out) == 0 else out


def odds_from_log_odds(log_odds: Any) -> Any:
    out = np.exp(np.asarray(log_odds, dtype=float))
    return float(out) if np.ndim(out) == 0 else out


def invlogit(log_odds: Any) -> Any:
    """odds / (1 + odds), evaluated without overflow for large log-odds."""
    out = special.expit(np.asarray(log_odds, dtype=float))
    return float(out) if np.ndim(out) == 0 else out


def critical_value(alpha: float, use_t: bool, df_resid: float) -> float:
    if use_t and df_resid > 0:
        return float(stats.t.ppf(1.0 - alpha / 2.0, df_resid))
    return float(stats.norm.ppf(1.0 - alpha / 2.0))


def stratum_frame(records: pd.DataFrame, spec: MetricSpec) -> pd.DataFrame:
    require_columns(records, ["doc_id", "condition", spec.name], "enriched records")
    frame = records[["doc_id", "condition", spec.name]].copy()
    frame["condition"] = frame["condition"].astype(CONDITION_DTYPE).astype(str)
    frame["response"] = pd.to_numeric(frame[spec.name], errors="coerce").astype(float)
    frame = frame.dropna(subset=["response"])
    frame = frame[frame["condition"].isin([REFERENCE_CONDITION, EFFECT_CONDITION])]
    # Fitting on a canonical row order keeps coefficients independent of input order.
    return frame.sort_values("doc_id", kind="stable").reset_index(drop=True)


def degenerate_reason(frame: pd.DataFrame) -> str | None:
    counts = frame["condition"].value_counts()
    n_base = int(counts.get(REFERENCE_CONDITION, 0))
    n_contra = int(counts.get(EFFECT_CONDITION, 0))
    if n_base == 0 or n_contra == 0:
        return (
            f"degenerate stratum: {n_base} {REFERENCE_CONDITION} and "
            f"{n_contra} {EFFECT_CONDITION} observations"
        )
    if frame["response"].nunique() < 2:
        return "degenerate stratum: response is constant across both conditions"
    return None


def separation_notes(frame: pd.DataFrame, spec: MetricSpec) -> list[str]:
    """Name each condition whose responses all sit on a bound of [0, 1].

    Such a condition drives its log-odds towards +/- infinity for both the
    binomial and the quasi-binomial fit.
    """
    notes: list[str] = []
    for condition, group in frame.groupby("condition", sort=True):
        mean = float(group["response"].mean())
        if spec.binary and group["response"].nunique() < 2:
            notes.append(
                f"quasi-separation: {spec.name} is constantly {int(mean)} "
                f"within {condition} condition"
            )
        elif not spec.binary and mean in (0.0, 1.0):
            notes.append(
                f"quasi-separation: {spec.name} mean is exactly {mean:g} "
                f"within {condition} condition"
            )
    return notes


def is_estimation_warning(caught: warnings.WarningMessage) -> bool:
    """True for warnings that put the fitted coefficients in doubt."""
    if issubclass(caught.category, ESTIMATION_WARNINGS):
        return True
    text = str(caught.message).lower()
    if issubclass(caught.category, RuntimeWarning):
        return any(marker in text for marker in NUMERIC_WARNING_MARKERS)
    return "separation" in text


def empty_result(
    spec: MetricSpec,
    entity: str | None,
    frame: pd.DataFrame,
    fit_status: str,
    fit_warning: str,
) -> dict[str, Any]:
    counts = frame["condition"].value_counts()
    row: dict[str, Any] = {col: np.nan for col in RESULT_COLUMNS}
    row.update(
        {
            "metric": spec.name,
            "entity": entity,
            "stratum": entity if entity is not None else OVERALL_STRATUM,
            "family": spec.family,
            "n_obs": int(len(frame)),
            "n_baseline": int(counts.get(REFERENCE_CONDITION, 0)),
            "n_contrarian": int(counts.get(EFFECT_CONDITION, 0)),
            "significant": False,
            "converged": False,
            "fit_status": fit_status,
            "reliable": False,
            "fit_warning": fit_warning,
        }
    )
    return row


def fit_condition_effect(
    records: pd.DataFrame,
    metric: str,
    entity: str | None = None,
    alpha: float = DEFAULT_ALPHA,
) -> dict[str, Any]:
    """Fit ``metric ~ condition`` on one labelled subset and summarise the effect."""
    if metric not in METRIC_SPECS:
        raise ValueError(f"Unknown metric {metric!r}; expected one of {sorted(METRIC_SPECS)}")
    spec = METRIC_SPECS[metric]
    frame = stratum_frame(records, spec)

    reason = degenerate_reason(frame)
    if reason is not None:
        return empty_result(spec, entity, frame, "degenerate", reason)

    notes = separation_notes(frame, spec)
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = smf.glm(
                formula=f"response ~ {CONDITION_TERM}",
                data=frame,
                family=sm.families.Binomial(),
            ).fit(scale=spec.scale, use_t=spec.use_t)
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError) as exc:
        notes.append(f"fit failed: {type(exc).__name__}: {exc}")
        return empty_result(spec, entity, frame, "failed", "; ".join(notes))

    for w in caught:
        if is_estimation_warning(w):
            notes.append(f"{w.category.__name__}: {w.message}")
    converged = bool(getattr(result, "converged", True))
    if not converged:
        notes.append("GLM iterations did not converge")

    params = result.params
    bse = result.bse
    intercept = float(params["Intercept"])
    effect = float(params[EFFECT_TERM])
    effect_se = float(bse[EFFECT_TERM])
    effect_p = float(result.pvalues[EFFECT_TERM])
    crit = critical_value(alpha, spec.use_t, float(result.df_resid))
    contrarian_log_odds = intercept + effect

    notes = list(dict.fromkeys(notes))
    fit_status = "warning" if notes else "ok"
    row = empty_result(spec, entity, frame, fit_status, "; ".join(notes))
    row.update(
        {
            "intercept": intercept,
            "intercept_se": float(bse["Intercept"]),
            "effect": effect,
            "effect_se": effect_se,
            "effect_z": float(result.tvalues[EFFECT_TERM]),
            "effect_p": effect_p,
            "effect_ci_low": effect - crit * effect_se,
            "effect_ci_high": effect + crit * effect_se,
            "odds_ratio": odds_from_log_odds(effect),
            "significant": bool(np.isfinite(effect_p) and effect_p < alpha),
            "baseline_log_odds": intercept,
            "contrarian_log_odds": contrarian_log_odds,
            "baseline_odds": odds_from_log_odds(intercept),
            "contrarian_odds": odds_from_log_odds(contrarian_log_odds),
            "baseline_prob": invlogit(intercept),
            "contrarian_prob": invlogit(contrarian_log_odds),
            "converged": converged,
            "reliable": fit_status == "ok",
        }
    )
    return row


def build_results_table(
    records: pd.DataFrame,
    entity_tags: pd.DataFrame,
    metrics: tuple[str, ...] = tuple(METRIC_SPECS),
    alpha: float = DEFAULT_ALPHA,
) -> pd.DataFrame:
    require_columns(entity_tags, ["doc_id", "entity"], "entity tags")
    entity_docs = {
        str(entity): set(group["doc_id"])
        for entity, group in entity_tags.groupby("entity", sort=True)
    }

    rows: list[dict[str, Any]] = []
    for metric in metrics:
        rows.append(fit_condition_effect(records, metric, entity=None, alpha=alpha))
        for entity, doc_ids in entity_docs.items():
            subset = records[records["doc_id"].isin(doc_ids)]
            rows.append(fit_condition_effect(subset, metric, entity=entity, alpha=alpha))

    results = pd.DataFrame(rows, columns=RESULT_COLUMNS)
    # The overall stratum carries entity=None; a string dtype would turn it into NaN.
    results["entity"] = pd.Series([row["entity"] for row in rows], dtype=object)
    return results


def collect_fit_warnings(results: pd.DataFrame) -> list[str]:
    out: list[str] = []
    for row in results.itertuples(index=False):
        if row.fit_status == "ok":
            continue
        out.append(f"[{row.metric} / {row.stratum}] {row.fit_status}: {row.fit_warning}")
    return out


def bootstrap_condition_effects(
    records: pd.DataFrame,
    metrics: tuple[str, ...],
    reps: int,
    rng: np.random.Generator,
) -> pd.DataFrame:
    """Refit the overall condition effect on ``reps`` resamples drawn with replacement.

    Returns one row per replicate and metric. Replicates are independent of each
    other; only the seeded generator ties them together.
    """
    columns = [
        "replicate",
        "metric",
        "n_obs",
        "intercept",
        "effect",
        "baseline_prob",
        "contrarian_prob",
        "fit_status",
    ]
    if reps <= 0 or records.empty:
        return pd.DataFrame(columns=columns)

    base = records.sort_values("doc_id", kind="stable").reset_index(drop=True)
    n = len(base)
    rows: list[dict[str, Any]] = []
    for rep in range(reps):
        idx = rng.integers(0, n, size=n)
        sample = base.iloc[idx].copy()
        # Resampled duplicates need distinct keys for the canonical sort.
        sample["doc_id"] = [f"{i:09d}" for i in range(n)]
        for metric in metrics:
            fit = fit_condition_effect(sample, metric)
            rows.append(
                {
                    "replicate": rep,
                    "metric": metric,
                    "n_obs": fit["n_obs"],
                    "intercept": fit["intercept"],
                    "effect": fit["effect"],
                    "baseline_prob": fit["baseline_prob"],
                    "contrarian_prob": fit["contrarian_prob"],
                    "fit_status": fit["fit_status"],
                }
            )
    return pd.DataFrame(rows, columns=columns)
